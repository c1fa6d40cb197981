"""
Token bucket rate limiting for image providers.

Each provider gets its own RateLimiter. Tokens refill lazily in whole
intervals; callers that find the bucket empty wait in a bounded FIFO queue
and are served in arrival order as tokens become available.
"""

import asyncio
import math
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional

from loguru import logger

from .errors import QueueFullError, RequestTimeoutError
from .types import RateLimitSpec

DEFAULT_SPEC = RateLimitSpec(capacity=60, refill_rate=1, refill_interval=1.0)


class RateLimiter:
    """Async token bucket with a bounded FIFO wait queue."""

    def __init__(
        self,
        spec: RateLimitSpec,
        name: str = "",
        max_queue_size: int = 50,
        queue_timeout: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.capacity = spec.capacity
        self.refill_rate = spec.refill_rate
        self.refill_interval = spec.refill_interval
        self.max_queue_size = max_queue_size
        self.queue_timeout = queue_timeout
        self._clock = clock

        self.tokens = spec.capacity
        self.last_refill = clock()
        self._queue: Deque[asyncio.Future] = deque()
        self._drain_task: Optional[asyncio.Task] = None

    def _refill(self) -> None:
        now = self._clock()
        intervals = math.floor((now - self.last_refill) / self.refill_interval)
        if intervals <= 0:
            return
        self.tokens = min(self.capacity, self.tokens + intervals * self.refill_rate)
        if self.tokens >= self.capacity:
            self.last_refill = now
        else:
            self.last_refill += intervals * self.refill_interval

    def wait_time(self) -> float:
        """Seconds until the next token is expected (0 if one is available)."""
        self._refill()
        if self.tokens > 0:
            return 0.0
        return max(0.0, self.refill_interval - (self._clock() - self.last_refill))

    async def acquire(self) -> None:
        """
        Take one token, waiting in the FIFO queue if the bucket is empty.

        Raises:
            QueueFullError: The wait queue already holds ``max_queue_size`` callers.
            RequestTimeoutError: No token was granted within ``queue_timeout``.
        """
        self._refill()
        if self.tokens > 0 and not self._queue:
            self.tokens -= 1
            return

        if len(self._queue) >= self.max_queue_size:
            raise QueueFullError(
                f"Rate limit queue full for {self.name or 'provider'}", provider=self.name or None
            )

        future = asyncio.get_running_loop().create_future()
        self._queue.append(future)
        logger.debug(f"Rate limiter '{self.name}' queued request (queue length {len(self._queue)})")
        self._ensure_drain()

        try:
            await asyncio.wait_for(future, timeout=self.queue_timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(
                f"Rate limit wait timed out after {self.queue_timeout}s", provider=self.name or None
            ) from None
        finally:
            if future in self._queue:
                self._queue.remove(future)

    def release(self) -> None:
        """Return a token to the bucket (never above capacity) and serve waiters."""
        self.tokens = min(self.capacity, self.tokens + 1)
        self._dispatch()

    def _dispatch(self) -> None:
        self._refill()
        while self._queue and self.tokens > 0:
            future = self._queue.popleft()
            if future.done():
                continue
            self.tokens -= 1
            future.set_result(True)
        if self._queue:
            self._ensure_drain()

    def _ensure_drain(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while self._queue:
            await asyncio.sleep(max(self.wait_time(), 0.001))
            self._dispatch()

    def status(self) -> Dict[str, Any]:
        self._refill()
        return {
            "tokens": self.tokens,
            "capacity": self.capacity,
            "queue_length": len(self._queue),
            "wait_time": self.wait_time(),
        }

    def reset(self) -> None:
        """Refill the bucket and reject every queued waiter."""
        self.tokens = self.capacity
        self.last_refill = self._clock()
        while self._queue:
            future = self._queue.popleft()
            if not future.done():
                future.set_exception(RequestTimeoutError("Rate limiter reset", provider=self.name or None))
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
        self._drain_task = None


class ProviderRateLimiters:
    """
    Owns one RateLimiter per provider, plus the quota tracker for each.

    Limits come from ``Settings.rate_limits`` when configured, otherwise from
    the provider's own ``rate_limit_spec()``.
    """

    def __init__(
        self,
        overrides: Optional[Dict[str, RateLimitSpec]] = None,
        max_queue_size: int = 50,
        queue_timeout: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._overrides = dict(overrides or {})
        self._max_queue_size = max_queue_size
        self._queue_timeout = queue_timeout
        self._clock = clock
        self._limiters: Dict[str, RateLimiter] = {}
        self._quota_trackers: Dict[str, Any] = {}

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], float] = time.monotonic) -> "ProviderRateLimiters":
        overrides = {
            name: RateLimitSpec(capacity=cfg.capacity, refill_rate=cfg.refill_rate, refill_interval=cfg.interval)
            for name, cfg in settings.rate_limits.items()
        }
        return cls(
            overrides=overrides,
            max_queue_size=settings.queue_max_size,
            queue_timeout=settings.queue_timeout,
            clock=clock,
        )

    def get_limiter(self, provider: str, spec: Optional[RateLimitSpec] = None) -> RateLimiter:
        """Return the provider's limiter, creating it on first use."""
        limiter = self._limiters.get(provider)
        if limiter is None:
            resolved = self._overrides.get(provider) or spec or DEFAULT_SPEC
            limiter = RateLimiter(
                resolved,
                name=provider,
                max_queue_size=self._max_queue_size,
                queue_timeout=self._queue_timeout,
                clock=self._clock,
            )
            self._limiters[provider] = limiter
            logger.debug(
                f"Rate limiter for '{provider}': capacity={resolved.capacity}, "
                f"{resolved.refill_rate} per {resolved.refill_interval}s"
            )
        return limiter

    def register(self, provider: str, spec: RateLimitSpec) -> RateLimiter:
        """Create a fresh limiter for a (re-)registered provider; configured overrides still win."""
        old = self._limiters.pop(provider, None)
        if old is not None:
            old.reset()
        return self.get_limiter(provider, spec)

    def update_limits(self, provider: str, spec: RateLimitSpec) -> RateLimiter:
        """Replace a provider's limiter; waiters on the old one are rejected."""
        old = self._limiters.pop(provider, None)
        if old is not None:
            old.reset()
        self._overrides[provider] = spec
        logger.info(f"Updated rate limits for '{provider}'")
        return self.get_limiter(provider)

    def set_quota_tracker(self, provider: str, tracker: Any) -> None:
        self._quota_trackers[provider] = tracker

    def get_quota_tracker(self, provider: str) -> Optional[Any]:
        return self._quota_trackers.get(provider)

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        return {name: limiter.status() for name, limiter in self._limiters.items()}

    def reset_all(self) -> None:
        for limiter in self._limiters.values():
            limiter.reset()


__all__ = [
    "RateLimiter",
    "ProviderRateLimiters",
    "DEFAULT_SPEC",
]

"""
Generation orchestrator for PixelMint.

This module provides the Orchestrator class which coordinates all components
of the generation core: provider registry and health, rate limiting, quota
and budget checks, the failover loop, the result cache and batch execution.
"""

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt

from ..config import Settings
from ..events import EventBus, EventType
from .analytics import CostAnalytics
from .batch import BatchExecutor
from .budget import BudgetLedger
from .cache import ResultCache
from .errors import (
    AllProvidersFailedError,
    BudgetExceededError,
    ErrorClassifier,
    GenerationError,
    InvalidInputError,
    QuotaExhaustedError,
    RateLimitedError,
    requires_initialization,
)
from .providers import RECOVERED_HEALTH, Provider, ProviderRegistry, ProviderState
from .quota import QuotaTracker
from .rate_limiter import ProviderRateLimiters
from .request_log import RequestLog, truncate_prompt
from .types import BatchOutcome, GenerationRequest, Priority


class Orchestrator:
    """
    Central coordinator for image generation requests.

    Owns every component of the generation core and drives a single logical
    ``generate`` call through cooldown, quota, budget and rate-limit gates,
    the provider call, error classification and failover.
    """

    def __init__(
        self,
        settings: Settings,
        events: Optional[EventBus] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the Orchestrator.

        Args:
            settings: Generation core settings.
            events: Event bus to publish on; a private one is created if omitted.
            clock: Monotonic clock used for cooldowns and rate limiting.
        """
        self.settings = settings
        self.events = events or EventBus()
        self._clock = clock
        self._is_initialized = False

        # Initialize components
        self._registry = ProviderRegistry()
        self._classifier = ErrorClassifier()
        self._rate_limiters = ProviderRateLimiters.from_settings(settings, clock=clock)
        self._budget = BudgetLedger(settings, self.events)
        self._cache = ResultCache(settings, self.events)
        self._analytics = CostAnalytics(self._budget, self._cache)
        self._request_log = RequestLog()
        self._batch = BatchExecutor(
            self.generate_request,
            events=self.events,
            max_concurrency=settings.batch_max_concurrency,
            request_timeout=settings.batch_request_timeout,
        )

        # Failover state
        self._active: Optional[str] = None
        self._failover_order: List[str] = list(settings.failover_order)
        self._cooldowns: Dict[str, float] = {}
        self._health_task: Optional[asyncio.Task] = None

    def initialize(self) -> bool:
        """
        Load persisted budget and cache state.

        Returns:
            True if both stores are on disk, False if either fell back to memory.
        """
        budget_ok = self._budget.initialize()
        cache_ok = self._cache.initialize() if self.settings.cache_enabled else True
        self._is_initialized = True

        if self._registry.has_any_providers():
            logger.info(f"Orchestrator initialized with providers: {', '.join(self._registry.names())}")
        else:
            logger.info("Orchestrator initialized (no providers registered yet)")
        return budget_ok and cache_ok

    def is_initialized(self) -> bool:
        """Check if the orchestrator is initialized."""
        return self._is_initialized

    @property
    def budget(self) -> BudgetLedger:
        return self._budget

    @property
    def cache(self) -> ResultCache:
        return self._cache

    @property
    def analytics(self) -> CostAnalytics:
        return self._analytics

    @property
    def rate_limiters(self) -> ProviderRateLimiters:
        return self._rate_limiters

    @property
    def batch_executor(self) -> BatchExecutor:
        return self._batch

    @property
    def request_log(self) -> RequestLog:
        return self._request_log

    @property
    def classifier(self) -> ErrorClassifier:
        return self._classifier

    @property
    def active_provider(self) -> Optional[str]:
        return self._active

    # ---- Registration & failover order ----

    def register_provider(self, provider: Provider) -> ProviderState:
        """
        Register a provider, replacing any provider with the same identity.

        The first provider registered becomes the active provider.
        """
        state = self._registry.register(provider)
        name = state.name
        self._rate_limiters.register(name, provider.rate_limit_spec())
        self._rate_limiters.set_quota_tracker(
            name,
            QuotaTracker(
                provider,
                events=self.events,
                update_interval=self.settings.quota_update_interval,
                warning_threshold=self.settings.quota_warning_threshold,
                blocking_threshold=self.settings.quota_blocking_threshold,
                clock=self._clock,
            ),
        )
        self._cooldowns.pop(name, None)
        if self._active is None:
            self._active = name
            logger.info(f"Active provider set to '{name}'")
        return state

    def set_active_provider(self, name: str) -> None:
        if not self._registry.is_registered(name):
            raise ValueError(f"Provider '{name}' is not registered")
        self._active = name
        logger.info(f"Active provider set to '{name}'")

    def set_failover_order(self, names: Sequence[str]) -> None:
        self._failover_order = [name.strip().lower() for name in names if name and name.strip()]
        logger.info(f"Failover order set to: {self._failover_order}")

    def is_in_cooldown(self, name: str) -> bool:
        until = self._cooldowns.get(name)
        if until is None:
            return False
        if self._clock() < until:
            return True
        del self._cooldowns[name]
        logger.debug(f"Cooldown ended for '{name}'")
        return False

    def is_eligible(self, name: str) -> bool:
        state = self._registry.get_state(name)
        return state is not None and state.is_healthy and not self.is_in_cooldown(name)

    def get_failover_sequence(self, preferred: Optional[str] = None) -> List[str]:
        """
        Eligible providers in the order they should be tried.

        Order: preferred (if given), active, configured failover order, then
        registration order. Unhealthy or cooling-down providers are omitted.
        """
        candidates = [preferred, self._active, *self._failover_order, *self._registry.names()]
        sequence: List[str] = []
        for name in candidates:
            if name and name not in sequence and self.is_eligible(name):
                sequence.append(name)
        return sequence

    # ---- Gates ----

    async def can_proceed(self, name: str, estimated_cost: float) -> Optional[GenerationError]:
        """
        Quota then budget pre-flight check for one provider.

        Returns:
            None if the provider may be called, otherwise the denial as a
            QuotaExhaustedError or BudgetExceededError carrying the shortfall.
        """
        tracker = self._rate_limiters.get_quota_tracker(name)
        if tracker is not None:
            await tracker.refresh_if_stale()
            if not tracker.can_make_request():
                snapshot = tracker.snapshot
                return QuotaExhaustedError(
                    f"Quota for {name} exhausted. Remaining: {snapshot.remaining}, Limit: {snapshot.limit}",
                    provider=name,
                    reset_time=snapshot.reset_time,
                )

        decision = self._budget.can_make_request(name, estimated_cost)
        if not decision.allowed:
            return BudgetExceededError(
                decision.message,
                provider=name,
                code=decision.reason,
                remaining=decision.remaining,
                required=decision.required,
            )
        return None

    # ---- Generation ----

    def _retry_wait(self, retry_state) -> float:
        error = retry_state.outcome.exception()
        delay = self._classifier.retry_delay(error, retry_state.attempt_number)
        return min(delay, self.settings.max_retry_delay)

    def _log_retry(self, retry_state) -> None:
        error = retry_state.outcome.exception()
        logger.warning(f"Retrying provider call (attempt {retry_state.attempt_number}): {error}")

    async def _call_provider(self, provider: Provider, prompt: str, options: Dict[str, Any]) -> bytes:
        """Call one provider, retrying retriable failures up to ``provider_retry_attempts`` times."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.settings.provider_retry_attempts),
            retry=retry_if_exception(self._classifier.is_retriable),
            wait=self._retry_wait,
            before_sleep=self._log_retry,
            reraise=True,
        ):
            with attempt:
                payload = await provider.generate(prompt, options)
        return payload

    def _within_attempt_cap(self, name: str, dispatched: int) -> bool:
        # The local fallback is free and never counts toward the cap.
        cap = self.settings.max_failover_attempts
        if cap is None or dispatched < cap:
            return True
        state = self._registry.get_state(name)
        return state is not None and state.is_local

    def _record_failure(self, state: ProviderState, error: GenerationError) -> None:
        state.record_failure(rate_limited=isinstance(error, RateLimitedError))
        if state.is_healthy:
            return
        self._cooldowns[state.name] = self._clock() + self.settings.cooldown_period
        logger.warning(
            f"Provider '{state.name}' disabled for {self.settings.cooldown_period:.0f}s "
            f"(health {state.health_score})"
        )
        self.events.emit(
            EventType.PROVIDER_DISABLED,
            provider=state.name,
            health_score=state.health_score,
            cooldown_seconds=self.settings.cooldown_period,
        )

    async def _generate(
        self,
        prompt: str,
        options: Optional[Dict[str, Any]] = None,
        preferred: Optional[str] = None,
        category: str = "unknown",
        trait_index: int = 0,
    ) -> Tuple[bytes, str]:
        if not isinstance(prompt, str) or not prompt.strip():
            raise InvalidInputError("Prompt must be a non-empty string", field="prompt")
        options = dict(options or {})

        sequence = self.get_failover_sequence(preferred)
        if not sequence:
            raise AllProvidersFailedError("No healthy providers available")

        self.events.emit(EventType.REQUEST_STARTED, prompt=truncate_prompt(prompt), providers=sequence)

        attempts: List[Tuple[str, str]] = []
        last_error: Optional[GenerationError] = None
        dispatched = 0

        for position, name in enumerate(sequence):
            if not self._within_attempt_cap(name, dispatched):
                continue
            if self.is_in_cooldown(name):
                attempts.append((name, "cooldown"))
                continue

            state = self._registry.get_state(name)
            provider = state.provider
            cost = provider.cost_per_unit()

            denial = await self.can_proceed(name, cost)
            if denial is not None:
                logger.info(f"Skipping {name} - {denial.message}")
                attempts.append((name, denial.message))
                last_error = denial
                continue

            limiter = self._rate_limiters.get_limiter(name, provider.rate_limit_spec())
            try:
                await limiter.acquire()
            except GenerationError as e:
                logger.warning(f"Rate limiter rejected request for {name}: {e.message}")
                self.events.emit(EventType.REQUEST_FAILED, provider=name, error=e.to_dict())
                raise
            if not state.is_local:
                dispatched += 1

            request_id = self._request_log.log_request(name, prompt, options)
            started = time.monotonic()
            try:
                payload = await self._call_provider(provider, prompt, options)
            except Exception as e:
                limiter.release()
                info = self._classifier.handle(
                    e, {"provider": name, "operation": "generate", "attempt": dispatched}
                )
                error = info.error
                last_error = error
                attempts.append((name, error.message))
                self._request_log.log_error(request_id, error)
                self._record_failure(state, error)
                self.events.emit(EventType.REQUEST_FAILED, provider=name, error=error.to_dict())

                remaining = [n for n in sequence[position + 1:] if self._within_attempt_cap(n, dispatched)]
                if not remaining:
                    break

                next_name = remaining[0]
                self.events.emit(
                    EventType.FAILOVER_OCCURRED,
                    from_provider=name,
                    to_provider=next_name,
                    reason=error.message,
                    retriable=error.retriable,
                )
                logger.info(f"Failing over from {name} to {next_name}")
                # Non-retriable errors have a zero delay and move on immediately.
                delay = min(info.retry_delay, self.settings.max_retry_delay)
                if delay > 0:
                    await asyncio.sleep(delay)
                continue

            latency_ms = (time.monotonic() - started) * 1000
            state.record_success()
            tracker = self._rate_limiters.get_quota_tracker(name)
            if tracker is not None:
                tracker.record_usage()
            await self._budget.record_spend_async(
                name, cost, category=category, trait_index=trait_index, success=True, request_id=request_id
            )
            self._request_log.log_response(request_id, "success", payload, latency_ms)
            self.events.emit(
                EventType.REQUEST_SUCCEEDED,
                provider=name,
                request_id=request_id,
                latency_ms=latency_ms,
                cost=cost,
                size=len(payload),
            )
            logger.debug(f"Generation succeeded on {name} in {latency_ms:.0f}ms")
            return payload, name

        if last_error is not None:
            last_message = last_error.message
        elif attempts:
            last_message = attempts[-1][1]
        else:
            last_message = "no provider attempted"
        logger.error(f"All providers failed: {last_message} (tried {[n for n, _ in attempts]})")
        raise AllProvidersFailedError(
            f"All providers failed: {last_message}", attempts=attempts, last_error=last_error
        ) from last_error

    @requires_initialization
    async def generate(self, prompt: str, options: Optional[Dict[str, Any]] = None, **context: Any) -> bytes:
        """
        Generate one image, failing over between providers as needed.

        Args:
            prompt: Non-empty prompt text.
            options: Provider options passed through unchanged (size, quality, ...).
            **context: Optional ``preferred``, ``category`` and ``trait_index``.

        Returns:
            The payload bytes from the first provider that succeeds.

        Raises:
            InvalidInputError: If the prompt is empty.
            QueueFullError, RequestTimeoutError: If rate-limit admission fails.
            AllProvidersFailedError: If no provider produced a payload.
        """
        payload, _ = await self._generate(prompt, options, **context)
        return payload

    @requires_initialization
    async def generate_request(self, request: GenerationRequest) -> bytes:
        """Generate through the result cache: lookup, generate on miss, then store."""
        key = self._cache.generate_cache_key(request.category, request.complexity, request.color_seed, request.index)
        if self.settings.cache_enabled:
            cached = await self._cache.get(key)
            if cached is not None:
                return cached

        payload, provider = await self._generate(
            request.prompt,
            request.options,
            preferred=request.provider,
            category=request.category,
            trait_index=request.index,
        )

        if self.settings.cache_enabled:
            state = self._registry.get_state(provider)
            await self._cache.set(
                key,
                payload,
                {
                    "category": request.category,
                    "provider": provider,
                    "cost": state.provider.cost_per_unit() if state else 0.0,
                    "complexity": request.complexity,
                    "color_seed": request.color_seed,
                    "index": request.index,
                },
            )
        return payload

    @requires_initialization
    async def generate_batch(
        self,
        requests: Sequence[GenerationRequest],
        max_concurrency: Optional[int] = None,
        priority: Union[Priority, str] = Priority.MEDIUM,
    ) -> List[BatchOutcome]:
        """Run a batch through the deduplicating executor."""
        return await self._batch.execute_batch(requests, max_concurrency=max_concurrency, priority=priority)

    # ---- Health ----

    async def validate_all_providers(self) -> Dict[str, bool]:
        """Check every provider's credential."""
        results: Dict[str, bool] = {}
        for state in self._registry.states():
            try:
                results[state.name] = bool(await state.provider.validate_credential())
            except Exception as e:
                logger.warning(f"Credential validation for '{state.name}' raised: {e}")
                results[state.name] = False
        return results

    async def perform_health_checks(self) -> Dict[str, bool]:
        """
        Refresh stale quotas and re-validate providers whose cooldown has ended.

        Returns:
            Mapping of provider name to current health.
        """
        for state in self._registry.states():
            tracker = self._rate_limiters.get_quota_tracker(state.name)
            if tracker is not None:
                await tracker.refresh_if_stale()

            if state.is_healthy or self.is_in_cooldown(state.name):
                continue

            try:
                valid = await state.provider.validate_credential()
            except Exception as e:
                logger.warning(f"Health check for '{state.name}' failed: {e}")
                valid = False

            if valid:
                state.health_score = RECOVERED_HEALTH
                logger.info(f"Provider '{state.name}' re-enabled after health check")
                self.events.emit(EventType.PROVIDER_RECOVERED, provider=state.name, health_score=state.health_score)

        return {state.name: state.is_healthy for state in self._registry.states()}

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.health_check_interval)
            try:
                await self.perform_health_checks()
            except Exception as e:
                logger.error(f"Health check run failed: {e}")

    def start_health_checks(self) -> asyncio.Task:
        """Start the periodic health check task on the running loop."""
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.get_running_loop().create_task(self._health_loop())
            logger.debug(f"Health checks every {self.settings.health_check_interval:.0f}s")
        return self._health_task

    async def shutdown(self) -> None:
        """Stop health checks, flush the cache and close provider clients."""
        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

        if self._cache.is_persistent:
            await self._cache.flush()

        for state in self._registry.states():
            close = getattr(state.provider, "aclose", None)
            if close is not None:
                await close()
        logger.info("Orchestrator shut down")

    # ---- Status ----

    def get_provider_status(self) -> List[Dict[str, Any]]:
        limiter_status = self._rate_limiters.get_status()
        status = []
        for state in self._registry.states():
            name = state.name
            until = self._cooldowns.get(name)
            tracker = self._rate_limiters.get_quota_tracker(name)
            status.append(
                {
                    "name": name,
                    "active": name == self._active,
                    "health_score": state.health_score,
                    "is_healthy": state.is_healthy,
                    "in_cooldown": self.is_in_cooldown(name),
                    "cooldown_remaining": max(0.0, until - self._clock()) if until else 0.0,
                    "requests": state.usage.requests_count,
                    "successes": state.usage.successful_requests,
                    "errors": state.usage.failed_requests,
                    "rate_limit_hits": state.usage.rate_limit_hits,
                    "last_request_time": state.usage.last_request_time,
                    "cost_per_unit": state.provider.cost_per_unit(),
                    "rate_limiter": limiter_status.get(name),
                    "quota": tracker.status() if tracker is not None else None,
                }
            )
        return status

    def get_configuration(self) -> Dict[str, Any]:
        return {
            "active_provider": self._active,
            "failover_order": list(self._failover_order),
            "registered_providers": self._registry.names(),
            "max_failover_attempts": self.settings.max_failover_attempts,
            "provider_retry_attempts": self.settings.provider_retry_attempts,
            "cooldown_period": self.settings.cooldown_period,
            "max_retry_delay": self.settings.max_retry_delay,
            "health_check_interval": self.settings.health_check_interval,
            "cache_enabled": self.settings.cache_enabled,
            "batch": self._batch.get_configuration(),
        }


__all__ = ["Orchestrator"]

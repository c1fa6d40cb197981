"""
Remote quota tracking for image providers.

A QuotaTracker keeps the last QuotaSnapshot reported by its provider,
refreshes it at most once per update interval, and blocks requests once the
used share crosses the blocking threshold.
"""

import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Set

from loguru import logger

from ..events import EventBus, EventType
from .types import QuotaSnapshot


class QuotaTracker:
    """Tracks one provider's remote quota."""

    def __init__(
        self,
        provider,
        events: Optional[EventBus] = None,
        update_interval: float = 300.0,
        warning_threshold: float = 0.8,
        blocking_threshold: float = 0.95,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.events = events
        self.update_interval = update_interval
        self.warning_threshold = warning_threshold
        self.blocking_threshold = blocking_threshold
        self._clock = clock

        self.snapshot = QuotaSnapshot()
        self._last_refresh: Optional[float] = None
        self._alerted: Set[str] = set()

    @property
    def name(self) -> str:
        return self.provider.identity()

    def should_refresh(self) -> bool:
        if self._last_refresh is None:
            return True
        return self._clock() - self._last_refresh >= self.update_interval

    async def refresh(self) -> QuotaSnapshot:
        """
        Fetch the provider's current quota.

        A failed fetch is logged and the previous snapshot is kept.
        """
        self._last_refresh = self._clock()
        try:
            snapshot = await self.provider.current_quota()
        except Exception as e:
            logger.warning(f"Failed to update quota for {self.name}: {e}")
            return self.snapshot

        snapshot.last_updated = datetime.now()
        self.snapshot = snapshot
        logger.debug(f"Quota for {self.name}: remaining={snapshot.remaining}, limit={snapshot.limit}")
        self._check_thresholds()
        return snapshot

    async def refresh_if_stale(self) -> QuotaSnapshot:
        if self.should_refresh():
            return await self.refresh()
        return self.snapshot

    def usage_ratio(self) -> Optional[float]:
        return self.snapshot.usage_ratio

    def get_usage_percentage(self) -> int:
        ratio = self.usage_ratio()
        return round(ratio * 100) if ratio is not None else 0

    def can_make_request(self) -> bool:
        """True unless the known quota is exhausted or past the blocking threshold."""
        if self.snapshot.remaining is None:
            return True
        if self.snapshot.remaining <= 0:
            return False
        ratio = self.usage_ratio()
        if ratio is None:
            return True
        return ratio < self.blocking_threshold

    def record_usage(self, units: float = 1) -> None:
        """Decrement the known remaining quota after a successful request."""
        if self.snapshot.remaining is not None:
            self.snapshot.remaining = max(0, self.snapshot.remaining - units)
            self._check_thresholds()

    def _check_thresholds(self) -> None:
        ratio = self.usage_ratio()
        if ratio is None:
            return
        if ratio < self.warning_threshold:
            self._alerted.clear()
            return

        blocking = ratio >= self.blocking_threshold
        key = f"{'blocking' if blocking else 'warning'}_{int(ratio * 10)}"
        if key in self._alerted:
            return
        self._alerted.add(key)

        if blocking:
            event_type = EventType.QUOTA_BLOCKING
            logger.error(f"{self.name}: Quota nearly exhausted ({round(ratio * 100)}%)")
        else:
            event_type = EventType.QUOTA_WARNING
            logger.warning(f"{self.name}: Quota warning ({round(ratio * 100)}%)")
        if self.events is not None:
            self.events.emit(
                event_type,
                provider=self.name,
                usage=round(ratio * 100),
                reset_time=self.snapshot.reset_time,
            )

    def status(self) -> Dict[str, Any]:
        return {
            "remaining": self.snapshot.remaining,
            "limit": self.snapshot.limit,
            "reset_time": self.snapshot.reset_time,
            "last_updated": self.snapshot.last_updated,
            "usage_percentage": self.get_usage_percentage(),
            "can_make_request": self.can_make_request(),
        }


__all__ = ["QuotaTracker"]

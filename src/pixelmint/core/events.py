"""
Lifecycle event publishing for PixelMint.

Components publish events to an EventBus owned by the Orchestrator; UI code and
other collaborators subscribe explicitly. Delivery is fire-and-forget: a failing
observer is logged and never affects control flow.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger


class EventType(str, Enum):
    """Events emitted by the generation core."""

    REQUEST_STARTED = "request:started"
    REQUEST_SUCCEEDED = "request:succeeded"
    REQUEST_FAILED = "request:failed"
    FAILOVER_OCCURRED = "failover:occurred"
    PROVIDER_DISABLED = "provider:disabled"
    PROVIDER_RECOVERED = "provider:recovered"
    QUOTA_WARNING = "quota:warning"
    QUOTA_BLOCKING = "quota:blocking"
    BUDGET_WARNING = "budget:warning"
    BUDGET_EXCEEDED = "budget:exceeded"
    BUDGET_SPEND_RECORDED = "budget:spend_recorded"
    BUDGET_LIMIT_CHANGED = "budget:limit_changed"
    BUDGET_RESET = "budget:reset"
    CACHE_HIT = "cache:hit"
    CACHE_MISS = "cache:miss"
    CACHE_STORED = "cache:stored"
    BATCH_STARTED = "batch:started"
    BATCH_PROGRESS = "batch:progress"
    BATCH_COMPLETED = "batch:completed"


@dataclass
class Event:
    """A single published event."""

    type: EventType
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


EventCallback = Callable[[Event], None]


class GenerationObserver:
    """Base class for observers interested in every event type."""

    def on_event(self, event: Event) -> None:
        """Called for each published event."""
        pass


class EventBus:
    """Explicit publish/subscribe channel for generation events."""

    def __init__(self):
        self._subscribers: Dict[Optional[EventType], List[EventCallback]] = {}
        self._lock = threading.RLock()

    def subscribe(self, callback: EventCallback, event_type: Optional[EventType] = None) -> EventCallback:
        """
        Register a callback.

        Args:
            callback: Callable receiving the Event.
            event_type: Only deliver events of this type; None means all events.

        Returns:
            The callback, so it can be passed to unsubscribe later.
        """
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(callback)
        return callback

    def add_observer(self, observer: GenerationObserver) -> None:
        """Register an observer object for all events."""
        self.subscribe(observer.on_event)

    def unsubscribe(self, callback: EventCallback, event_type: Optional[EventType] = None) -> None:
        """Remove a previously registered callback."""
        with self._lock:
            callbacks = self._subscribers.get(event_type, [])
            if callback in callbacks:
                callbacks.remove(callback)

    def emit(self, event_type: EventType, **data: Any) -> Event:
        """Publish an event to all matching subscribers."""
        event = Event(type=event_type, data=data)
        with self._lock:
            targets = list(self._subscribers.get(event_type, [])) + list(self._subscribers.get(None, []))
        logger.trace(f"Event {event_type.value}: {data}")
        for callback in targets:
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Observer notification failed for {event_type.value}: {e}")
        return event


__all__ = [
    "Event",
    "EventBus",
    "EventCallback",
    "EventType",
    "GenerationObserver",
]

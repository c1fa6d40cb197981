"""
Pytest configuration for PixelMint test suite.

This file provides common fixtures for all tests.
Note: Python path is configured via pytest.ini's pythonpath setting.
"""

import logging
from typing import Any, Dict, List, Optional

import pytest
from loguru import logger

from pixelmint.core.config import Settings
from pixelmint.core.events import EventBus
from pixelmint.core.orchestrator.types import QuotaSnapshot, RateLimitSpec


@pytest.fixture
def loguru_caplog(caplog):
    """Fixture to bridge loguru to pytest caplog with proper cleanup."""
    # Remove all handlers to avoid duplicate logs or side effects
    logger.remove()

    # Add caplog handler
    handler_id = logger.add(caplog.handler, format="{message}")
    caplog.set_level(logging.DEBUG)

    yield caplog

    # Cleanup: remove caplog handler
    try:
        logger.remove(handler_id)
    except ValueError:
        # Handler already removed
        pass


# ============================================================================
# Settings, Clock & Event Fixtures
# ============================================================================


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the environment, storing data under tmp_path."""
    return Settings(
        _env_file=None,
        data_dir=tmp_path,
        max_retry_delay=0,
        rate_limits={},
        failover_order=[],
    )


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class EventRecorder:
    """Collects every event published on a bus."""

    def __init__(self, bus: EventBus):
        self.events = []
        bus.subscribe(self.events.append)

    def of_type(self, event_type) -> List[Any]:
        return [event for event in self.events if event.type == event_type]

    def types(self) -> List[Any]:
        return [event.type for event in self.events]


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def recorder(event_bus):
    return EventRecorder(event_bus)


# ============================================================================
# Provider Fixtures
# ============================================================================


class FakeProvider:
    """
    Scriptable in-memory provider.

    ``outcomes`` is consumed one item per generate call: bytes are returned,
    exceptions are raised. When exhausted, ``default`` is returned.
    """

    def __init__(
        self,
        name: str,
        outcomes: Optional[List[Any]] = None,
        cost: float = 0.01,
        default: Optional[bytes] = None,
        quota: Optional[QuotaSnapshot] = None,
        valid: bool = True,
        spec: Optional[RateLimitSpec] = None,
    ):
        self.name = name
        self.outcomes = list(outcomes or [])
        self.cost = cost
        self.default = default if default is not None else f"{name}-image".encode()
        self.quota = quota or QuotaSnapshot()
        self.valid = valid
        self.spec = spec or RateLimitSpec(capacity=1000, refill_rate=1000, refill_interval=1.0)
        self.calls: List[Dict[str, Any]] = []
        self.validate_calls = 0

    def identity(self) -> str:
        return self.name

    async def generate(self, prompt: str, options: Optional[Dict[str, Any]] = None) -> bytes:
        self.calls.append({"prompt": prompt, "options": options})
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return self.default

    async def validate_credential(self) -> bool:
        self.validate_calls += 1
        return self.valid

    async def current_quota(self) -> QuotaSnapshot:
        return QuotaSnapshot(remaining=self.quota.remaining, limit=self.quota.limit, reset_time=self.quota.reset_time)

    def cost_per_unit(self) -> float:
        return self.cost

    def rate_limit_spec(self) -> RateLimitSpec:
        return self.spec

    @property
    def call_count(self) -> int:
        return len(self.calls)


@pytest.fixture
def make_provider():
    """Factory for FakeProvider instances."""
    return FakeProvider


@pytest.fixture
def orchestrator(settings, event_bus, clock):
    """An initialized Orchestrator with no providers, driven by a fake clock."""
    from pixelmint.core.orchestrator.manager import Orchestrator

    orch = Orchestrator(settings, events=event_bus, clock=clock)
    orch.initialize()
    return orch

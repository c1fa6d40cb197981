"""
Provider management for the generation orchestrator.

This module provides:
- Provider protocol describing the capabilities of an image provider
- ProviderState holding the mutable health of a registered provider
- ProviderRegistry class for registering providers and tracking their health
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from loguru import logger

from .types import ProviderUsage, QuotaSnapshot, RateLimitSpec

HEALTH_MAX = 100
HEALTH_MIN = 0
HEALTH_SUCCESS_BONUS = 5
HEALTH_FAILURE_PENALTY = 10
HEALTHY_THRESHOLD = 20
RECOVERED_HEALTH = 50

LOCAL_PROVIDER = "local"


@runtime_checkable
class Provider(Protocol):
    """Capability set every image provider implements."""

    def identity(self) -> str: ...

    async def generate(self, prompt: str, options: Optional[Dict[str, Any]] = None) -> bytes: ...

    async def validate_credential(self) -> bool: ...

    async def current_quota(self) -> QuotaSnapshot: ...

    def cost_per_unit(self) -> float: ...

    def rate_limit_spec(self) -> RateLimitSpec: ...


@dataclass
class ProviderState:
    """Registry entry for one provider; health lives here, not on the provider."""

    provider: Provider
    health_score: int = HEALTH_MAX
    usage: ProviderUsage = field(default_factory=ProviderUsage)

    @property
    def name(self) -> str:
        return self.provider.identity()

    @property
    def is_local(self) -> bool:
        return self.name == LOCAL_PROVIDER

    @property
    def is_healthy(self) -> bool:
        return self.is_local or self.health_score >= HEALTHY_THRESHOLD

    def record_success(self) -> None:
        self.health_score = min(HEALTH_MAX, self.health_score + HEALTH_SUCCESS_BONUS)
        self.usage.requests_count += 1
        self.usage.successful_requests += 1
        self.usage.last_request_time = datetime.now()

    def record_failure(self, rate_limited: bool = False) -> None:
        self.health_score = max(HEALTH_MIN, self.health_score - HEALTH_FAILURE_PENALTY)
        self.usage.requests_count += 1
        self.usage.failed_requests += 1
        self.usage.last_request_time = datetime.now()
        if rate_limited:
            self.usage.rate_limit_hits += 1


class ProviderRegistry:
    """
    Registry for managing image providers.

    Keeps registration order, which is the tail of every failover sequence.
    Re-registering an identity replaces its entry in place.
    """

    def __init__(self):
        self._states: Dict[str, ProviderState] = {}

    def register(self, provider: Provider) -> ProviderState:
        """
        Register a provider, replacing any provider with the same identity.

        Args:
            provider: Object implementing the Provider protocol.

        Returns:
            The fresh ProviderState for the provider.
        """
        if not isinstance(provider, Provider):
            raise TypeError(f"{type(provider).__name__} does not implement the Provider protocol")

        name = provider.identity()
        state = ProviderState(provider=provider)
        if name in self._states:
            logger.info(f"Replacing registered provider '{name}'")
        else:
            logger.info(f"Registered provider '{name}'")
        self._states[name] = state
        return state

    def get(self, name: str) -> Optional[Provider]:
        state = self._states.get(name)
        return state.provider if state else None

    def get_state(self, name: str) -> Optional[ProviderState]:
        return self._states.get(name)

    def is_registered(self, name: str) -> bool:
        return name in self._states

    def names(self) -> List[str]:
        """Provider names in registration order."""
        return list(self._states)

    def has_any_providers(self) -> bool:
        return bool(self._states)

    def states(self) -> List[ProviderState]:
        return list(self._states.values())

    def clear(self) -> None:
        """Clear all registered providers."""
        self._states.clear()


__all__ = [
    "Provider",
    "ProviderState",
    "ProviderRegistry",
    "HEALTHY_THRESHOLD",
    "RECOVERED_HEALTH",
    "LOCAL_PROVIDER",
]

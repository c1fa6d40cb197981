"""
Generation orchestrator package for PixelMint.

Provides failover across image providers with rate limiting, quota and
budget enforcement, error classification, result caching and batch
deduplication.
"""

from typing import Iterable, Optional

from loguru import logger

from ..config import Settings
from ..events import EventBus
from ..logger import setup_logging
from .analytics import CostAnalytics
from .batch import BatchExecutor, DuplicateGroup
from .budget import BudgetDecision, BudgetLedger, SpendRecord
from .cache import ResultCache
from .errors import (
    AllProvidersFailedError,
    BudgetExceededError,
    CredentialInvalidError,
    ErrorAction,
    ErrorClassifier,
    ErrorInfo,
    GenerationError,
    GenerationErrorType,
    InvalidInputError,
    NetworkFailureError,
    ProviderFaultError,
    QueueFullError,
    QuotaExhaustedError,
    RateLimitedError,
    RequestTimeoutError,
    classify_error,
)
from .manager import Orchestrator
from .providers import Provider, ProviderRegistry, ProviderState
from .quota import QuotaTracker
from .rate_limiter import ProviderRateLimiters, RateLimiter
from .request_log import RequestLog
from .types import BatchOutcome, GenerationRequest, Priority, QuotaSnapshot, RateLimitSpec


def create_orchestrator(
    settings: Optional[Settings] = None,
    providers: Optional[Iterable[Provider]] = None,
    events: Optional[EventBus] = None,
    configure_logging: bool = False,
) -> Orchestrator:
    """
    Build and initialize an Orchestrator.

    Args:
        settings: Settings to use; loaded from the environment if omitted.
        providers: Providers to register. When omitted, remote providers are
            built from API keys in the keyring and the local provider is added last.
        events: Optional shared event bus.
        configure_logging: Install the loguru sinks from settings first.

    Returns:
        The initialized Orchestrator.
    """
    # Import here to avoid circular imports (adapters import this package)
    from ...providers import create_default_providers

    settings = settings or Settings()
    if configure_logging:
        setup_logging(settings)
    orchestrator = Orchestrator(settings, events=events)

    if providers is None:
        providers = create_default_providers(settings)
    for provider in providers:
        orchestrator.register_provider(provider)

    if not orchestrator.initialize():
        logger.warning("Orchestrator running with in-memory storage")
    return orchestrator


__all__ = [
    "AllProvidersFailedError",
    "BatchExecutor",
    "BatchOutcome",
    "BudgetDecision",
    "BudgetExceededError",
    "BudgetLedger",
    "CostAnalytics",
    "CredentialInvalidError",
    "DuplicateGroup",
    "ErrorAction",
    "ErrorClassifier",
    "ErrorInfo",
    "GenerationError",
    "GenerationErrorType",
    "GenerationRequest",
    "InvalidInputError",
    "NetworkFailureError",
    "Orchestrator",
    "Priority",
    "Provider",
    "ProviderFaultError",
    "ProviderRateLimiters",
    "ProviderRegistry",
    "ProviderState",
    "QueueFullError",
    "QuotaExhaustedError",
    "QuotaSnapshot",
    "QuotaTracker",
    "RateLimitSpec",
    "RateLimitedError",
    "RateLimiter",
    "RequestLog",
    "RequestTimeoutError",
    "ResultCache",
    "SpendRecord",
    "classify_error",
    "create_orchestrator",
]

"""
Error handling and classification for the generation orchestrator.

This module contains:
- GenerationErrorType enum for categorizing errors
- GenerationError exception hierarchy (one class per error type)
- AllProvidersFailedError aggregate raised after failover exhaustion
- requires_initialization decorator
- classify_error function for error classification
- ErrorClassifier with retriability and backoff policy
"""

import random
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from functools import wraps
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx
from loguru import logger


class GenerationErrorType(str, Enum):
    """Types of generation errors."""

    CREDENTIAL_INVALID = "credential_invalid"
    RATE_LIMITED = "rate_limited"
    QUOTA_EXHAUSTED = "quota_exhausted"
    NETWORK_FAILURE = "network_failure"
    PROVIDER_FAULT = "provider_fault"
    INVALID_INPUT = "invalid_input"
    BUDGET_EXCEEDED = "budget_exceeded"
    REQUEST_TIMEOUT = "request_timeout"
    QUEUE_FULL = "queue_full"


class GenerationError(Exception):
    """Base class for every classified generation failure."""

    error_type: GenerationErrorType = GenerationErrorType.PROVIDER_FAULT
    default_code = "UNKNOWN_ERROR"
    default_message = "Generation failed"
    retriable = False

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        provider: Optional[str] = None,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message or self.default_message
        super().__init__(self.message)
        self.provider = provider
        self.code = code or self.default_code
        self.status_code = status_code
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        """Serializable summary used in logs and events."""
        return {
            "type": self.error_type.value,
            "name": type(self).__name__,
            "message": self.message,
            "provider": self.provider,
            "code": self.code,
            "retriable": self.retriable,
        }


class CredentialInvalidError(GenerationError):
    error_type = GenerationErrorType.CREDENTIAL_INVALID
    default_code = "INVALID_API_KEY"
    default_message = "Invalid or expired API key"
    retriable = False


class RateLimitedError(GenerationError):
    error_type = GenerationErrorType.RATE_LIMITED
    default_code = "RATE_LIMIT_EXCEEDED"
    default_message = "Rate limit exceeded"
    retriable = True

    def __init__(self, message: Optional[str] = None, *, retry_after: Optional[float] = 60, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class QuotaExhaustedError(GenerationError):
    error_type = GenerationErrorType.QUOTA_EXHAUSTED
    default_code = "QUOTA_EXCEEDED"
    default_message = "Monthly/daily quota exhausted"
    retriable = False

    def __init__(self, message: Optional[str] = None, *, reset_time: Optional[datetime] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.reset_time = reset_time


class NetworkFailureError(GenerationError):
    error_type = GenerationErrorType.NETWORK_FAILURE
    default_code = "NETWORK_ERROR"
    default_message = "Network connection failed"
    retriable = True


class ProviderFaultError(GenerationError):
    error_type = GenerationErrorType.PROVIDER_FAULT
    default_code = "UNKNOWN_ERROR"
    default_message = "Provider-specific error"
    retriable = True


class InvalidInputError(GenerationError):
    error_type = GenerationErrorType.INVALID_INPUT
    default_code = "VALIDATION_ERROR"
    default_message = "Invalid parameter"
    retriable = False

    def __init__(self, message: Optional[str] = None, *, field: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.field = field


class BudgetExceededError(GenerationError):
    """Local spend ceiling reached (distinct from a remote quota)."""

    error_type = GenerationErrorType.BUDGET_EXCEEDED
    default_code = "BUDGET_EXCEEDED"
    default_message = "Budget limit exceeded"
    retriable = False

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        remaining: Optional[float] = None,
        required: Optional[float] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.remaining = remaining
        self.required = required


class RequestTimeoutError(GenerationError):
    error_type = GenerationErrorType.REQUEST_TIMEOUT
    default_code = "REQUEST_TIMEOUT"
    default_message = "Request timed out"
    retriable = False


class QueueFullError(GenerationError):
    error_type = GenerationErrorType.QUEUE_FULL
    default_code = "QUEUE_FULL"
    default_message = "Request queue is full"
    retriable = False


class AllProvidersFailedError(Exception):
    """Raised once every eligible provider has been exhausted."""

    code = "ALL_PROVIDERS_FAILED"

    def __init__(
        self,
        message: str,
        attempts: Optional[List[Tuple[str, str]]] = None,
        last_error: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.attempts = attempts or []
        self.last_error = last_error

    @property
    def providers_tried(self) -> List[str]:
        return [name for name, _ in self.attempts]


class ErrorAction(str, Enum):
    """What the caller should do after a failure."""

    FAIL = "fail"
    RETRY_AFTER_DELAY = "retry_after_delay"
    RETRY_WITH_BACKOFF = "retry_with_backoff"


@dataclass
class ErrorInfo:
    """Result of handling one failure."""

    error: GenerationError
    action: ErrorAction
    retry_delay: float
    user_message: str


def requires_initialization(func):
    """Decorator to ensure the orchestrator is initialized before method execution."""
    @wraps(func)
    def sync_wrapper(self, *args, **kwargs):
        if not self.is_initialized():
            raise RuntimeError("Orchestrator not initialized")
        return func(self, *args, **kwargs)

    return sync_wrapper


def _extract_status(error: Exception) -> Optional[int]:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def _extract_headers(error: Exception) -> Optional[Mapping[str, str]]:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.headers
    headers = getattr(error, "headers", None)
    return headers if isinstance(headers, Mapping) else None


def parse_retry_after(headers: Optional[Mapping[str, str]], default: float = 60) -> float:
    """Parse a Retry-After header value in seconds."""
    if not headers:
        return default
    value = headers.get("retry-after") or headers.get("Retry-After")
    if value is None:
        return default
    try:
        return float(int(value))
    except (TypeError, ValueError):
        return default


def classify_error(error: BaseException, provider: Optional[str] = None) -> GenerationError:
    """
    Classify an exception into the generation error taxonomy.

    Precedence: already-typed errors pass through, then transport status code,
    then exception type, then message heuristics, then ProviderFault.

    Args:
        error: The exception to classify.
        provider: Optional provider name for context.

    Returns:
        A GenerationError subclass instance.
    """
    if isinstance(error, GenerationError):
        if error.provider is None:
            error.provider = provider
        return error

    message = str(error) or type(error).__name__
    status = _extract_status(error)

    if status is not None:
        if status in (401, 403):
            return CredentialInvalidError(message, provider=provider, status_code=status)
        if status == 429:
            retry_after = getattr(error, "retry_after", None)
            if retry_after is None:
                retry_after = parse_retry_after(_extract_headers(error))
            return RateLimitedError(message, provider=provider, retry_after=retry_after, status_code=status)
        if status == 402:
            return QuotaExhaustedError(message, provider=provider, status_code=status)
        if status == 400:
            return InvalidInputError(message, provider=provider, field="request", status_code=status)
        if status >= 500:
            return ProviderFaultError(message, provider=provider, code=f"HTTP_{status}", status_code=status)

    if isinstance(error, (httpx.TransportError, TimeoutError, ConnectionError)):
        return NetworkFailureError(message, provider=provider)

    lowered = message.lower()

    if any(keyword in lowered for keyword in ["network", "timeout", "timed out", "connection", "dns"]):
        return NetworkFailureError(message, provider=provider)

    if any(keyword in lowered for keyword in ["api key", "unauthorized", "forbidden", "authentication"]):
        return CredentialInvalidError(message, provider=provider)

    if any(keyword in lowered for keyword in ["rate limit", "too many requests"]):
        retry_after = getattr(error, "retry_after", None) or 60
        return RateLimitedError(message, provider=provider, retry_after=retry_after)

    if any(keyword in lowered for keyword in ["quota", "credit", "billing"]):
        return QuotaExhaustedError(message, provider=provider)

    if any(keyword in lowered for keyword in ["bad request", "malformed", "invalid"]):
        return InvalidInputError(message, provider=provider)

    return ProviderFaultError(message, provider=provider, code="UNKNOWN_ERROR")


_USER_MESSAGES = {
    GenerationErrorType.CREDENTIAL_INVALID: "Invalid API key. Please check your API key configuration.",
    GenerationErrorType.RATE_LIMITED: "Rate limit exceeded. Please wait before making more requests.",
    GenerationErrorType.QUOTA_EXHAUSTED: "API quota exhausted. Please check your account limits.",
    GenerationErrorType.NETWORK_FAILURE: "Network connection failed. Please check your internet connection.",
    GenerationErrorType.PROVIDER_FAULT: "Service temporarily unavailable. Please try again later.",
    GenerationErrorType.INVALID_INPUT: "Invalid request parameters. Please check your input.",
    GenerationErrorType.BUDGET_EXCEEDED: "Budget limit reached for this period.",
    GenerationErrorType.REQUEST_TIMEOUT: "The request timed out while waiting for capacity.",
    GenerationErrorType.QUEUE_FULL: "Too many requests are already waiting. Please try again shortly.",
}

_PROVIDER_HINTS = {
    "gemini": {
        GenerationErrorType.CREDENTIAL_INVALID: "Visit Google AI Studio to verify your API key.",
        GenerationErrorType.QUOTA_EXHAUSTED: "Check your usage in Google Cloud Console.",
    },
    "openai": {
        GenerationErrorType.CREDENTIAL_INVALID: "Visit OpenAI Platform to verify your API key.",
        GenerationErrorType.QUOTA_EXHAUSTED: "Check your usage limits in OpenAI Dashboard.",
    },
    "stable_diffusion": {
        GenerationErrorType.CREDENTIAL_INVALID: "Visit Stability AI Platform to verify your API key.",
        GenerationErrorType.QUOTA_EXHAUSTED: "Check your credit balance in Stability AI Dashboard.",
    },
}


class ErrorClassifier:
    """
    Maps failures to the error taxonomy and decides retry policy.

    Network failures and provider faults back off exponentially from
    ``base_delay`` up to ``max_delay`` with +/-25% jitter; rate limits honour
    the provider-supplied retry-after.
    """

    def __init__(
        self,
        max_retry_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 16.0,
        jitter: float = 0.25,
    ):
        self.max_retry_attempts = max_retry_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

    def classify(self, error: BaseException, context: Optional[Dict[str, Any]] = None) -> GenerationError:
        provider = (context or {}).get("provider")
        return classify_error(error, provider)

    def is_retriable(self, error: BaseException) -> bool:
        if isinstance(error, GenerationError):
            return bool(error.retriable)
        return self.classify(error).retriable

    def retry_delay(self, error: BaseException, attempt: int = 1) -> float:
        """Seconds to wait before the next attempt; 0 for non-retriable errors."""
        classified = self.classify(error)
        if not classified.retriable:
            return 0.0

        if isinstance(classified, RateLimitedError) and classified.retry_after:
            return float(classified.retry_after)

        delay = min(self.base_delay * (2 ** (max(attempt, 1) - 1)), self.max_delay)
        return max(0.0, delay + delay * random.uniform(-self.jitter, self.jitter))

    def determine_action(self, error: BaseException, attempt: int = 1) -> ErrorAction:
        classified = self.classify(error)
        if not classified.retriable or attempt >= self.max_retry_attempts:
            return ErrorAction.FAIL
        if isinstance(classified, RateLimitedError):
            return ErrorAction.RETRY_AFTER_DELAY
        return ErrorAction.RETRY_WITH_BACKOFF

    def format_user_message(self, error: GenerationError) -> str:
        message = _USER_MESSAGES.get(error.error_type, "An unexpected error occurred.")
        hint = _PROVIDER_HINTS.get(error.provider or "", {}).get(error.error_type)
        if hint:
            message = f"{message} {hint}"
        return message

    def handle(self, error: BaseException, context: Optional[Dict[str, Any]] = None) -> ErrorInfo:
        """
        Classify, log and decide what to do with a failure.

        Args:
            error: The raw or typed exception.
            context: Optional dict with "provider", "operation" and "attempt".

        Returns:
            ErrorInfo describing the classified error and the next action.
        """
        context = context or {}
        attempt = int(context.get("attempt") or 1)
        classified = self.classify(error, context)
        self._log(classified, context)
        return ErrorInfo(
            error=classified,
            action=self.determine_action(classified, attempt),
            retry_delay=self.retry_delay(classified, attempt),
            user_message=self.format_user_message(classified),
        )

    def _log(self, error: GenerationError, context: Dict[str, Any]) -> None:
        line = (
            f"[{error.provider or context.get('provider', 'unknown')}] {type(error).__name__}: {error.message} "
            f"(operation={context.get('operation', 'unknown')}, attempt={context.get('attempt', 1)})"
        )
        if isinstance(error, (NetworkFailureError, ProviderFaultError)):
            logger.error(line)
        elif isinstance(error, (RateLimitedError, QuotaExhaustedError, BudgetExceededError)):
            logger.warning(line)
        else:
            logger.info(line)


__all__ = [
    "GenerationErrorType",
    "GenerationError",
    "CredentialInvalidError",
    "RateLimitedError",
    "QuotaExhaustedError",
    "NetworkFailureError",
    "ProviderFaultError",
    "InvalidInputError",
    "BudgetExceededError",
    "RequestTimeoutError",
    "QueueFullError",
    "AllProvidersFailedError",
    "ErrorAction",
    "ErrorInfo",
    "ErrorClassifier",
    "classify_error",
    "parse_retry_after",
    "requires_initialization",
]

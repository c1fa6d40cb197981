"""
Tests for error handling in orchestrator.errors module.

This module tests error classification functionality including:
- Classification precedence (typed errors, status codes, exception types, messages)
- Retriability of each error type
- Retry delay and backoff policy
- User-facing messages with provider hints
- requires_initialization decorator
"""

import httpx
import pytest

from pixelmint.core.orchestrator.errors import (
    AllProvidersFailedError,
    CredentialInvalidError,
    ErrorAction,
    ErrorClassifier,
    GenerationErrorType,
    InvalidInputError,
    NetworkFailureError,
    ProviderFaultError,
    QueueFullError,
    QuotaExhaustedError,
    RateLimitedError,
    RequestTimeoutError,
    BudgetExceededError,
    classify_error,
    parse_retry_after,
    requires_initialization,
)


def _status_error(status: int, headers=None) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://api.example.com/generate")
    response = httpx.Response(status, request=request, headers=headers or {})
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


class TestErrorClassification:
    """Tests for classify_error function."""

    def test_typed_error_passes_through(self):
        """Test that an already classified error is returned unchanged."""
        # Arrange
        error = QuotaExhaustedError("out of credits")

        # Act
        classified = classify_error(error, provider="gemini")

        # Assert
        assert classified is error
        assert classified.provider == "gemini"

    def test_typed_error_keeps_existing_provider(self):
        """Test that the provider already set on a typed error wins."""
        # Arrange
        error = RateLimitedError(provider="openai")

        # Act
        classified = classify_error(error, provider="gemini")

        # Assert
        assert classified.provider == "openai"

    @pytest.mark.parametrize(
        "status,expected",
        [
            (401, CredentialInvalidError),
            (403, CredentialInvalidError),
            (429, RateLimitedError),
            (402, QuotaExhaustedError),
            (400, InvalidInputError),
            (500, ProviderFaultError),
            (503, ProviderFaultError),
        ],
    )
    def test_classify_by_status_code(self, status, expected):
        """Test that transport status codes map to the right error type."""
        # Arrange
        error = _status_error(status)

        # Act
        classified = classify_error(error, provider="openai")

        # Assert
        assert isinstance(classified, expected)
        assert classified.status_code == status
        assert classified.provider == "openai"

    def test_status_code_beats_message(self):
        """Test that a status code takes precedence over message keywords."""
        # Arrange
        error = Exception("network hiccup")
        error.status_code = 401

        # Act
        classified = classify_error(error)

        # Assert
        assert isinstance(classified, CredentialInvalidError)

    def test_server_error_code_includes_status(self):
        """Test that 5xx faults carry an HTTP_<status> code."""
        # Arrange
        error = Exception("Internal server error")
        error.status_code = 503

        # Act
        classified = classify_error(error)

        # Assert
        assert classified.code == "HTTP_503"
        assert classified.retriable is True

    def test_rate_limit_uses_retry_after_header(self):
        """Test that a 429 honours the Retry-After header."""
        # Arrange
        error = _status_error(429, headers={"Retry-After": "17"})

        # Act
        classified = classify_error(error)

        # Assert
        assert isinstance(classified, RateLimitedError)
        assert classified.retry_after == 17

    def test_rate_limit_defaults_to_sixty_seconds(self):
        """Test the default retry-after when the header is missing."""
        # Arrange
        error = Exception("rate limit exceeded")

        # Act
        classified = classify_error(error)

        # Assert
        assert isinstance(classified, RateLimitedError)
        assert classified.retry_after == 60

    def test_rate_limit_attribute_retry_after(self):
        """Test that a retry_after attribute on the raw error is kept."""
        # Arrange
        error = Exception("too many requests")
        error.retry_after = 12

        # Act
        classified = classify_error(error)

        # Assert
        assert classified.retry_after == 12

    def test_transport_error_is_network_failure(self):
        """Test that httpx transport errors are network failures."""
        # Arrange
        error = httpx.ConnectError("connection refused")

        # Act
        classified = classify_error(error)

        # Assert
        assert isinstance(classified, NetworkFailureError)
        assert classified.retriable is True

    def test_builtin_timeout_is_network_failure(self):
        """Test that a TimeoutError is a network failure."""
        # Act
        classified = classify_error(TimeoutError("Request timed out"))

        # Assert
        assert classified.error_type == GenerationErrorType.NETWORK_FAILURE

    @pytest.mark.parametrize(
        "message,expected",
        [
            ("DNS lookup failed", NetworkFailureError),
            ("unauthorized: invalid api key", CredentialInvalidError),
            ("quota exceeded: billing limit reached", QuotaExhaustedError),
            ("bad request: malformed input", InvalidInputError),
            ("Something went wrong", ProviderFaultError),
        ],
    )
    def test_classify_by_message(self, message, expected):
        """Test message heuristics for untyped errors."""
        # Act
        classified = classify_error(Exception(message))

        # Assert
        assert isinstance(classified, expected)

    def test_unknown_error_is_retriable_provider_fault(self):
        """Test fallback to a retriable provider fault."""
        # Act
        classified = classify_error(ValueError("weird"))

        # Assert
        assert classified.error_type == GenerationErrorType.PROVIDER_FAULT
        assert classified.code == "UNKNOWN_ERROR"
        assert classified.retriable is True

    def test_empty_message_uses_exception_name(self):
        """Test that an exception without a message still gets one."""
        # Act
        classified = classify_error(KeyError())

        # Assert
        assert classified.message


class TestRetriability:
    """Tests for the retriable flag of each error type."""

    @pytest.mark.parametrize(
        "error_cls,retriable",
        [
            (CredentialInvalidError, False),
            (RateLimitedError, True),
            (QuotaExhaustedError, False),
            (NetworkFailureError, True),
            (ProviderFaultError, True),
            (InvalidInputError, False),
            (BudgetExceededError, False),
            (RequestTimeoutError, False),
            (QueueFullError, False),
        ],
    )
    def test_retriable_flags(self, error_cls, retriable):
        """Test the fixed retriable flag per error type."""
        # Act
        error = error_cls()

        # Assert
        assert error.retriable is retriable
        assert ErrorClassifier().is_retriable(error) is retriable

    def test_to_dict(self):
        """Test the serializable error summary."""
        # Arrange
        error = CredentialInvalidError(provider="gemini")

        # Act
        data = error.to_dict()

        # Assert
        assert data["type"] == "credential_invalid"
        assert data["code"] == "INVALID_API_KEY"
        assert data["provider"] == "gemini"
        assert data["retriable"] is False


class TestErrorClassifier:
    """Tests for ErrorClassifier retry policy."""

    def test_non_retriable_delay_is_zero(self):
        """Test that non-retriable errors never wait."""
        # Arrange
        classifier = ErrorClassifier()

        # Act
        delay = classifier.retry_delay(CredentialInvalidError(), attempt=1)

        # Assert
        assert delay == 0

    def test_rate_limit_delay_is_retry_after(self):
        """Test that rate limits wait for the provider-supplied retry-after."""
        # Arrange
        classifier = ErrorClassifier()

        # Act
        delay = classifier.retry_delay(RateLimitedError(retry_after=30), attempt=3)

        # Assert
        assert delay == 30

    @pytest.mark.parametrize("attempt,base", [(1, 1), (2, 2), (3, 4), (4, 8), (5, 16), (8, 16)])
    def test_exponential_backoff_with_jitter(self, attempt, base):
        """Test backoff doubles per attempt up to 16s with +/-25% jitter."""
        # Arrange
        classifier = ErrorClassifier()

        # Act
        delay = classifier.retry_delay(NetworkFailureError(), attempt=attempt)

        # Assert
        assert base * 0.75 <= delay <= base * 1.25

    def test_determine_action(self):
        """Test the action chosen for each kind of failure."""
        # Arrange
        classifier = ErrorClassifier()

        # Act / Assert
        assert classifier.determine_action(CredentialInvalidError()) == ErrorAction.FAIL
        assert classifier.determine_action(RateLimitedError()) == ErrorAction.RETRY_AFTER_DELAY
        assert classifier.determine_action(NetworkFailureError()) == ErrorAction.RETRY_WITH_BACKOFF
        assert classifier.determine_action(NetworkFailureError(), attempt=5) == ErrorAction.FAIL

    def test_user_message_includes_provider_hint(self):
        """Test that provider-specific guidance is appended."""
        # Arrange
        classifier = ErrorClassifier()
        error = CredentialInvalidError(provider="gemini")

        # Act
        message = classifier.format_user_message(error)

        # Assert
        assert message.startswith("Invalid API key.")
        assert "Google AI Studio" in message

    def test_handle_returns_error_info(self, loguru_caplog):
        """Test handle classifies, decides and logs in one step."""
        # Arrange
        classifier = ErrorClassifier()

        # Act
        info = classifier.handle(Exception("connection reset"), {"provider": "openai", "operation": "generate"})

        # Assert
        assert isinstance(info.error, NetworkFailureError)
        assert info.error.provider == "openai"
        assert info.action == ErrorAction.RETRY_WITH_BACKOFF
        assert info.retry_delay > 0
        assert "Network connection failed" in info.user_message
        assert "NetworkFailureError" in loguru_caplog.text


class TestAllProvidersFailed:
    """Tests for the aggregate failover error."""

    def test_providers_tried(self):
        """Test attempt aggregation."""
        # Arrange
        last = NetworkFailureError("down")

        # Act
        error = AllProvidersFailedError("All providers failed: down", [("a", "boom"), ("b", "down")], last)

        # Assert
        assert error.providers_tried == ["a", "b"]
        assert error.last_error is last
        assert error.code == "ALL_PROVIDERS_FAILED"


class TestParseRetryAfter:
    """Tests for parse_retry_after helper."""

    def test_parse_values(self):
        """Test numeric, missing and malformed header values."""
        # Act / Assert
        assert parse_retry_after({"retry-after": "5"}) == 5
        assert parse_retry_after({}) == 60
        assert parse_retry_after(None, default=10) == 10
        assert parse_retry_after({"retry-after": "soon"}) == 60


class TestRequiresInitializationDecorator:
    """Tests for requires_initialization decorator."""

    def test_raises_when_not_initialized(self):
        """Test that decorated methods refuse to run before initialization."""
        # Arrange
        class Component:
            def __init__(self, ready):
                self.ready = ready

            def is_initialized(self):
                return self.ready

            @requires_initialization
            def work(self):
                return "done"

        # Act / Assert
        with pytest.raises(RuntimeError, match="not initialized"):
            Component(False).work()
        assert Component(True).work() == "done"

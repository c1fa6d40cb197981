"""
Tests for the Orchestrator in orchestrator.manager module.

This module tests:
- Provider registration, active provider and failover ordering
- The failover loop: retriable and non-retriable errors, exhaustion, attempt cap
- Quota and budget skips
- Health scoring, cooldown and recovery through health checks
- Cache-backed and batch generation
- Initialization guard, status reporting and shutdown
"""

import asyncio

import pytest

from pixelmint.core.config import Settings
from pixelmint.core.events import EventType
from pixelmint.core.orchestrator import create_orchestrator
from pixelmint.core.orchestrator import manager as manager_module
from pixelmint.core.orchestrator.errors import (
    AllProvidersFailedError,
    BudgetExceededError,
    CredentialInvalidError,
    InvalidInputError,
    NetworkFailureError,
    ProviderFaultError,
    QueueFullError,
    QuotaExhaustedError,
)
from pixelmint.core.orchestrator.manager import Orchestrator
from pixelmint.core.orchestrator.types import GenerationRequest, QuotaSnapshot, RateLimitSpec
from pixelmint.providers.local_adapter import LocalProvider


class TestRegistration:
    """Tests for provider registration and ordering."""

    def test_first_provider_becomes_active(self, orchestrator, make_provider):
        """Test that the first registered provider is active."""
        # Act
        orchestrator.register_provider(make_provider("alpha"))
        orchestrator.register_provider(make_provider("beta"))

        # Assert
        assert orchestrator.active_provider == "alpha"
        assert orchestrator.get_failover_sequence() == ["alpha", "beta"]

    def test_register_rejects_non_provider(self, orchestrator):
        """Test that objects without the provider capabilities are refused."""
        # Act / Assert
        with pytest.raises(TypeError):
            orchestrator.register_provider(object())

    def test_reregister_replaces_in_place(self, orchestrator, make_provider):
        """Test that re-registering an identity keeps its position with fresh health."""
        # Arrange
        orchestrator.register_provider(make_provider("alpha"))
        orchestrator.register_provider(make_provider("beta"))
        orchestrator._registry.get_state("alpha").health_score = 30

        # Act
        replacement = make_provider("alpha")
        state = orchestrator.register_provider(replacement)

        # Assert
        assert state.health_score == 100
        assert orchestrator._registry.get("alpha") is replacement
        assert orchestrator.get_failover_sequence() == ["alpha", "beta"]

    def test_sequence_order(self, orchestrator, make_provider):
        """Test preferred, active, configured order, then registration order."""
        # Arrange
        for name in ("alpha", "beta", "gamma", "delta"):
            orchestrator.register_provider(make_provider(name))
        orchestrator.set_active_provider("gamma")
        orchestrator.set_failover_order(["Delta", "unknown"])

        # Act
        sequence = orchestrator.get_failover_sequence(preferred="beta")

        # Assert
        assert sequence == ["beta", "gamma", "delta", "alpha"]

    def test_set_active_provider_requires_registration(self, orchestrator):
        """Test that an unregistered active provider is rejected."""
        # Act / Assert
        with pytest.raises(ValueError):
            orchestrator.set_active_provider("ghost")


class TestGenerate:
    """Tests for single generate calls."""

    @pytest.mark.asyncio
    async def test_success_records_everything(self, orchestrator, make_provider, recorder):
        """Test the bookkeeping of a successful call."""
        # Arrange
        provider = make_provider("alpha", cost=0.039)
        orchestrator.register_provider(provider)

        # Act
        payload = await orchestrator.generate("pixel cat", {"size": "512x512"}, category="body", trait_index=2)

        # Assert
        assert payload == b"alpha-image"
        assert provider.calls == [{"prompt": "pixel cat", "options": {"size": "512x512"}}]
        assert orchestrator.budget.get_current_spend("alpha", "daily") == pytest.approx(0.039)
        assert orchestrator.request_log.get_statistics()["success_rate"] == 100.0
        state = orchestrator._registry.get_state("alpha")
        assert state.health_score == 100
        assert state.usage.successful_requests == 1
        assert EventType.REQUEST_STARTED in recorder.types()
        assert recorder.of_type(EventType.REQUEST_SUCCEEDED)[0].data["provider"] == "alpha"

    @pytest.mark.asyncio
    async def test_retriable_failure_fails_over_after_delay(self, orchestrator, make_provider, recorder, mocker):
        """Test that a retriable error waits (capped) and moves to the next provider."""
        # Arrange
        orchestrator.settings.max_retry_delay = 5
        sleep = mocker.patch.object(manager_module.asyncio, "sleep", new=mocker.AsyncMock())
        first = make_provider("alpha", outcomes=[ProviderFaultError("boom")])
        second = make_provider("beta")
        orchestrator.register_provider(first)
        orchestrator.register_provider(second)

        # Act
        payload = await orchestrator.generate("pixel cat")

        # Assert
        assert payload == b"beta-image"
        assert first.call_count == 1
        sleep.assert_awaited_once()
        assert 0.75 <= sleep.await_args.args[0] <= 1.25
        failover = recorder.of_type(EventType.FAILOVER_OCCURRED)[0]
        assert failover.data["from_provider"] == "alpha"
        assert failover.data["to_provider"] == "beta"
        assert orchestrator._registry.get_state("alpha").health_score == 90

    @pytest.mark.asyncio
    async def test_non_retriable_failure_moves_on_without_delay(self, orchestrator, make_provider, mocker):
        """Test that a non-retriable error short-circuits to the next provider."""
        # Arrange
        orchestrator.settings.max_retry_delay = 5
        sleep = mocker.patch.object(manager_module.asyncio, "sleep", new=mocker.AsyncMock())
        first = make_provider("alpha", outcomes=[CredentialInvalidError()])
        orchestrator.register_provider(first)
        orchestrator.register_provider(make_provider("beta"))

        # Act
        payload = await orchestrator.generate("pixel cat")

        # Assert
        assert payload == b"beta-image"
        assert first.call_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exhaustion_aggregates_attempts(self, orchestrator, make_provider, recorder):
        """Test that every eligible provider is tried exactly once before failing."""
        # Arrange
        providers = [
            make_provider("alpha", outcomes=[ProviderFaultError("alpha down")]),
            make_provider("beta", outcomes=[CredentialInvalidError("bad key")]),
            make_provider("gamma", outcomes=[Exception("connection reset")]),
        ]
        for provider in providers:
            orchestrator.register_provider(provider)

        # Act
        with pytest.raises(AllProvidersFailedError) as exc_info:
            await orchestrator.generate("pixel cat")

        # Assert
        error = exc_info.value
        assert [p.call_count for p in providers] == [1, 1, 1]
        assert error.providers_tried == ["alpha", "beta", "gamma"]
        assert error.last_error.provider == "gamma"
        assert error.__cause__ is error.last_error
        assert "connection reset" in str(error)
        assert len(recorder.of_type(EventType.REQUEST_FAILED)) == 3
        assert len(recorder.of_type(EventType.FAILOVER_OCCURRED)) == 2

    @pytest.mark.asyncio
    async def test_attempt_cap(self, orchestrator, make_provider):
        """Test that no more than max_failover_attempts providers are dispatched."""
        # Arrange
        orchestrator.settings.max_failover_attempts = 2
        providers = [make_provider(name, outcomes=[ProviderFaultError()]) for name in ("a", "b", "c")]
        for provider in providers:
            orchestrator.register_provider(provider)

        # Act
        with pytest.raises(AllProvidersFailedError):
            await orchestrator.generate("pixel cat")

        # Assert
        assert [p.call_count for p in providers] == [1, 1, 0]

    @pytest.mark.asyncio
    async def test_local_fallback_reached_with_default_settings(self, tmp_path, clock, make_provider, mocker):
        """Test that the local provider runs after every remote provider fails."""
        # Arrange
        mocker.patch.object(manager_module.asyncio, "sleep", new=mocker.AsyncMock())
        orch = Orchestrator(Settings(_env_file=None, data_dir=tmp_path), clock=clock)
        orch.initialize()
        remotes = [
            make_provider(name, outcomes=[ProviderFaultError(f"{name} down")])
            for name in ("gemini", "stable_diffusion", "openai")
        ]
        for provider in remotes:
            orch.register_provider(provider)
        orch.register_provider(LocalProvider())

        # Act
        payload = await orch.generate("pixel cat")

        # Assert
        assert orch.get_failover_sequence()[-1] == "local"
        assert [p.call_count for p in remotes] == [1, 1, 1]
        assert payload.startswith(b"<svg")

    @pytest.mark.asyncio
    async def test_attempt_cap_does_not_count_local(self, orchestrator, make_provider):
        """Test that a capped failover still falls back to the local provider."""
        # Arrange
        orchestrator.settings.max_failover_attempts = 1
        providers = [make_provider(name, outcomes=[ProviderFaultError()]) for name in ("a", "b")]
        for provider in providers:
            orchestrator.register_provider(provider)
        orchestrator.register_provider(LocalProvider())

        # Act
        payload = await orchestrator.generate("pixel cat")

        # Assert
        assert [p.call_count for p in providers] == [1, 0]
        assert payload.startswith(b"<svg")

    @pytest.mark.asyncio
    async def test_quota_skip_does_not_count_as_attempt(self, orchestrator, make_provider):
        """Test that a quota-exhausted provider is skipped without using an attempt."""
        # Arrange
        orchestrator.settings.max_failover_attempts = 2
        exhausted = make_provider("alpha", quota=QuotaSnapshot(remaining=0, limit=100))
        failing = make_provider("beta", outcomes=[ProviderFaultError()])
        working = make_provider("gamma")
        for provider in (exhausted, failing, working):
            orchestrator.register_provider(provider)

        # Act
        payload = await orchestrator.generate("pixel cat")

        # Assert
        assert payload == b"gamma-image"
        assert exhausted.call_count == 0

    @pytest.mark.asyncio
    async def test_budget_skip_reports_shortfall(self, orchestrator, make_provider, recorder):
        """Test that a provider over budget is skipped and the error names remaining vs required."""
        # Arrange
        orchestrator.budget.set_budget_limit("alpha", "daily", 0.25)
        expensive = make_provider("alpha", cost=0.5)
        orchestrator.register_provider(expensive)

        # Act
        with pytest.raises(AllProvidersFailedError) as exc_info:
            await orchestrator.generate("pixel cat")

        # Assert
        error = exc_info.value
        assert expensive.call_count == 0
        assert isinstance(error.last_error, BudgetExceededError)
        assert error.last_error.code == "daily_limit_exceeded"
        assert error.last_error.remaining == pytest.approx(0.25)
        assert error.last_error.required == 0.5
        assert "Remaining: $0.25, Required: $0.50" in str(error)
        assert error.attempts == [("alpha", error.last_error.message)]
        assert error.__cause__ is error.last_error
        assert recorder.of_type(EventType.BUDGET_EXCEEDED)

    @pytest.mark.asyncio
    async def test_quota_denial_is_reported(self, orchestrator, make_provider):
        """Test that an exhausted remote quota surfaces as QuotaExhaustedError."""
        # Arrange
        orchestrator.register_provider(make_provider("alpha", quota=QuotaSnapshot(remaining=0, limit=100)))

        # Act
        with pytest.raises(AllProvidersFailedError) as exc_info:
            await orchestrator.generate("pixel cat")

        # Assert
        denial = exc_info.value.last_error
        assert isinstance(denial, QuotaExhaustedError)
        assert denial.provider == "alpha"
        assert "Remaining: 0" in denial.message

    @pytest.mark.asyncio
    async def test_retriable_error_retried_on_same_provider(self, orchestrator, make_provider, recorder, loguru_caplog):
        """Test that retriable errors are retried in place up to provider_retry_attempts."""
        # Arrange
        orchestrator.settings.provider_retry_attempts = 3
        flaky = make_provider("alpha", outcomes=[NetworkFailureError(), NetworkFailureError()])
        backup = make_provider("beta")
        orchestrator.register_provider(flaky)
        orchestrator.register_provider(backup)
        limiter = orchestrator.rate_limiters.get_limiter("alpha")

        # Act
        payload = await orchestrator.generate("pixel cat")

        # Assert
        assert payload == b"alpha-image"
        assert flaky.call_count == 3
        assert backup.call_count == 0
        assert limiter.status()["tokens"] == limiter.capacity - 1
        assert recorder.of_type(EventType.FAILOVER_OCCURRED) == []
        assert "Retrying provider call (attempt 1)" in loguru_caplog.text
        assert "Retrying provider call (attempt 2)" in loguru_caplog.text

    @pytest.mark.asyncio
    async def test_non_retriable_error_not_retried_on_same_provider(self, orchestrator, make_provider):
        """Test that retries never repeat a non-retriable failure."""
        # Arrange
        orchestrator.settings.provider_retry_attempts = 3
        rejected = make_provider("alpha", outcomes=[CredentialInvalidError()])
        backup = make_provider("beta")
        orchestrator.register_provider(rejected)
        orchestrator.register_provider(backup)

        # Act
        payload = await orchestrator.generate("pixel cat")

        # Assert
        assert payload == b"beta-image"
        assert rejected.call_count == 1

    @pytest.mark.asyncio
    async def test_empty_prompt(self, orchestrator, make_provider):
        """Test that an empty prompt is rejected before any provider call."""
        # Arrange
        provider = make_provider("alpha")
        orchestrator.register_provider(provider)

        # Act / Assert
        with pytest.raises(InvalidInputError):
            await orchestrator.generate("   ")
        assert provider.call_count == 0

    @pytest.mark.asyncio
    async def test_no_healthy_providers(self, orchestrator):
        """Test the error when nothing is registered."""
        # Act / Assert
        with pytest.raises(AllProvidersFailedError, match="No healthy providers"):
            await orchestrator.generate("pixel cat")

    @pytest.mark.asyncio
    async def test_requires_initialization(self, settings, make_provider):
        """Test that generate refuses to run before initialize()."""
        # Arrange
        orch = Orchestrator(settings)
        orch.register_provider(make_provider("alpha"))

        # Act / Assert
        with pytest.raises(RuntimeError, match="not initialized"):
            await orch.generate("pixel cat")

    @pytest.mark.asyncio
    async def test_queue_full_propagates(self, settings, make_provider, clock, event_bus, recorder):
        """Test that rate-limit admission failures reach the caller unchanged and are published."""
        # Arrange
        settings.queue_max_size = 0
        orch = Orchestrator(settings, events=event_bus, clock=clock)
        orch.initialize()
        orch.register_provider(
            make_provider("alpha", spec=RateLimitSpec(capacity=1, refill_rate=1, refill_interval=60.0))
        )
        await orch.generate("first")

        # Act / Assert
        with pytest.raises(QueueFullError):
            await orch.generate("second")
        failed = recorder.of_type(EventType.REQUEST_FAILED)
        assert len(failed) == 1
        assert failed[0].data["error"]["code"] == "QUEUE_FULL"
        assert recorder.types()[-1] == EventType.REQUEST_FAILED


class TestHealth:
    """Tests for health scoring, cooldown and recovery."""

    @pytest.mark.asyncio
    async def test_unhealthy_provider_enters_cooldown_and_recovers(
        self, orchestrator, make_provider, recorder, clock
    ):
        """Test disable on low health, skip during cooldown, recovery after a health check."""
        # Arrange
        flaky = make_provider("alpha", outcomes=[ProviderFaultError()])
        orchestrator.register_provider(flaky)
        orchestrator.register_provider(make_provider("beta"))
        orchestrator._registry.get_state("alpha").health_score = 25

        # Act - failure drops health below the threshold
        await orchestrator.generate("pixel cat")

        # Assert - disabled and skipped
        assert orchestrator._registry.get_state("alpha").health_score == 15
        assert orchestrator.is_in_cooldown("alpha") is True
        assert orchestrator.get_failover_sequence() == ["beta"]
        assert recorder.of_type(EventType.PROVIDER_DISABLED)[0].data["provider"] == "alpha"

        # Act - health check during cooldown does nothing
        health = await orchestrator.perform_health_checks()
        assert health["alpha"] is False
        assert flaky.validate_calls == 0

        # Act - cooldown ends and the health check re-validates
        clock.advance(orchestrator.settings.cooldown_period)
        health = await orchestrator.perform_health_checks()

        # Assert
        assert health["alpha"] is True
        assert orchestrator._registry.get_state("alpha").health_score == 50
        assert orchestrator.get_failover_sequence() == ["alpha", "beta"]
        assert recorder.of_type(EventType.PROVIDER_RECOVERED)[0].data["provider"] == "alpha"

    @pytest.mark.asyncio
    async def test_invalid_credential_stays_disabled(self, orchestrator, make_provider, clock):
        """Test that a failed re-validation leaves the provider unhealthy."""
        # Arrange
        provider = make_provider("alpha", valid=False)
        orchestrator.register_provider(provider)
        orchestrator._registry.get_state("alpha").health_score = 10

        # Act
        health = await orchestrator.perform_health_checks()

        # Assert
        assert health["alpha"] is False
        assert provider.validate_calls == 1

    def test_local_provider_always_healthy(self, orchestrator):
        """Test that the local provider is eligible regardless of its score."""
        # Arrange
        orchestrator.register_provider(LocalProvider())
        orchestrator._registry.get_state("local").health_score = 0

        # Act / Assert
        assert orchestrator.get_failover_sequence() == ["local"]

    def test_health_score_bounds(self, orchestrator, make_provider):
        """Test that health stays within [0, 100]."""
        # Arrange
        state = orchestrator.register_provider(make_provider("alpha"))

        # Act
        state.record_success()
        high = state.health_score
        for _ in range(20):
            state.record_failure(rate_limited=True)

        # Assert
        assert high == 100
        assert state.health_score == 0
        assert state.usage.rate_limit_hits == 20

    @pytest.mark.asyncio
    async def test_validate_all_providers(self, orchestrator, make_provider):
        """Test credential validation across providers."""
        # Arrange
        orchestrator.register_provider(make_provider("alpha"))
        orchestrator.register_provider(make_provider("beta", valid=False))

        # Act
        results = await orchestrator.validate_all_providers()

        # Assert
        assert results == {"alpha": True, "beta": False}


class TestCachedAndBatchGeneration:
    """Tests for cache-backed and batch generation."""

    @pytest.mark.asyncio
    async def test_generate_request_uses_cache(self, orchestrator, make_provider):
        """Test that a repeated request is served from the cache."""
        # Arrange
        provider = make_provider("alpha")
        orchestrator.register_provider(provider)
        request = GenerationRequest(prompt="pixel cat", category="body", complexity=2, color_seed=4, index=1)

        # Act
        first = await orchestrator.generate_request(request)
        second = await orchestrator.generate_request(request)

        # Assert
        assert first == second == b"alpha-image"
        assert provider.call_count == 1
        key = orchestrator.cache.generate_cache_key("body", 2, 4, 1)
        assert orchestrator.cache._entries[key].provider == "alpha"

    @pytest.mark.asyncio
    async def test_generate_batch_deduplicates(self, orchestrator, make_provider):
        """Test that duplicate batch entries trigger a single provider call."""
        # Arrange
        orchestrator.settings.cache_enabled = False
        provider = make_provider("alpha")
        orchestrator.register_provider(provider)
        requests = [GenerationRequest(prompt="pixel cat", index=i % 2) for i in range(4)]

        # Act
        outcomes = await orchestrator.generate_batch(requests, max_concurrency=2)

        # Assert
        assert provider.call_count == 2
        assert all(outcome.success for outcome in outcomes)
        assert [o.deduplicated for o in outcomes] == [False, False, True, True]


class TestStatusAndLifecycle:
    """Tests for status reporting and shutdown."""

    def test_provider_status(self, orchestrator, make_provider):
        """Test the per-provider status report."""
        # Arrange
        orchestrator.register_provider(make_provider("alpha", cost=0.05))

        # Act
        status = orchestrator.get_provider_status()

        # Assert
        assert status[0]["name"] == "alpha"
        assert status[0]["active"] is True
        assert status[0]["health_score"] == 100
        assert status[0]["cost_per_unit"] == 0.05
        assert status[0]["rate_limiter"]["capacity"] == 1000
        assert orchestrator.get_configuration()["registered_providers"] == ["alpha"]

    @pytest.mark.asyncio
    async def test_shutdown_closes_providers(self, orchestrator, make_provider, mocker):
        """Test that shutdown stops health checks and closes provider clients."""
        # Arrange
        orchestrator.settings.health_check_interval = 60
        provider = make_provider("alpha")
        provider.aclose = mocker.AsyncMock()
        orchestrator.register_provider(provider)
        task = orchestrator.start_health_checks()

        # Act
        await orchestrator.shutdown()

        # Assert
        assert task.cancelled()
        provider.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_create_orchestrator(self, settings, make_provider):
        """Test the factory registers the given providers and initializes."""
        # Act
        orch = create_orchestrator(settings, providers=[make_provider("alpha"), LocalProvider()])

        # Assert
        assert orch.is_initialized() is True
        assert orch.get_failover_sequence() == ["alpha", "local"]
        assert await orch.generate("pixel cat") == b"alpha-image"
        await orch.shutdown()

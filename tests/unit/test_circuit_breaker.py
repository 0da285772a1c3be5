import asyncio
from unittest.mock import AsyncMock

import pytest
from prometheus_client import REGISTRY

from bakame.core.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from bakame.core.exceptions import ConfigurationError
from bakame.models.schemas import CircuitBreakerConfig, CircuitState, FallbackResponse


async def _fail():
    raise RuntimeError("Error")


class TestCircuitBreaker:
    def test_initial_state(self):
        cb = CircuitBreaker("test")
        assert cb.state == CircuitState.CLOSED
        assert cb.name == "test"
        assert cb.config.failure_threshold == 5

    @pytest.mark.asyncio
    async def test_successful_call(self):
        cb = CircuitBreaker("test")
        operation = AsyncMock(return_value="success")

        result = await cb.call(operation)

        assert result == "success"
        assert cb.state == CircuitState.CLOSED
        operation.assert_awaited_once()
        assert cb.status().total_successes == 1

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self):
        cb = CircuitBreaker("test")

        for _ in range(4):
            assert await cb.call(_fail, fallback="fallback") == "fallback"
        assert cb.state == CircuitState.CLOSED

        await cb.call(_fail, fallback="fallback")
        assert cb.state == CircuitState.OPEN

        # OPEN: operation is not invoked at all
        operation = AsyncMock(return_value="should not run")
        assert await cb.call(operation, fallback="fallback") == "fallback"
        operation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        cb = CircuitBreaker("test", CircuitBreakerConfig(failure_threshold=2))
        await cb.call(_fail)
        await cb.call(AsyncMock(return_value="ok"))
        await cb.call(_fail)

        assert cb.state == CircuitState.CLOSED
        assert cb.status().consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_recovery_half_open(self):
        cb = CircuitBreaker(
            "test",
            CircuitBreakerConfig(failure_threshold=1, success_threshold=2, reset_timeout_ms=100),
        )
        await cb.call(_fail)
        assert cb.state == CircuitState.OPEN

        await asyncio.sleep(0.15)  # Wait for reset timeout
        assert cb.state == CircuitState.HALF_OPEN

        assert await cb.call(AsyncMock(return_value="recovered")) == "recovered"
        assert cb.state == CircuitState.HALF_OPEN
        await cb.call(AsyncMock(return_value="recovered"))
        assert cb.state == CircuitState.CLOSED
        assert cb.status().consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self):
        cb = CircuitBreaker(
            "test",
            CircuitBreakerConfig(failure_threshold=1, reset_timeout_ms=100),
        )
        await cb.call(_fail)
        await asyncio.sleep(0.15)
        assert cb.state == CircuitState.HALF_OPEN

        await cb.call(_fail)
        # Timer restarted: still OPEN right after the failed trial call
        assert cb.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_half_open_limits_trial_calls(self):
        cb = CircuitBreaker(
            "test",
            CircuitBreakerConfig(
                failure_threshold=1,
                success_threshold=1,
                reset_timeout_ms=50,
                request_timeout_ms=None,
            ),
        )
        await cb.call(_fail)
        await asyncio.sleep(0.1)

        release = asyncio.Event()

        async def slow_trial():
            await release.wait()
            return "trial"

        trial = asyncio.ensure_future(cb.call(slow_trial, fallback="fallback"))
        await asyncio.sleep(0)

        second = AsyncMock(return_value="second")
        assert await cb.call(second, fallback="fallback") == "fallback"
        second.assert_not_awaited()

        release.set()
        assert await trial == "trial"
        assert cb.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self):
        cb = CircuitBreaker(
            "test",
            CircuitBreakerConfig(failure_threshold=1, request_timeout_ms=50),
        )

        async def slow():
            await asyncio.sleep(0.5)
            return "late"

        assert await cb.call(slow, fallback="fallback") == "fallback"
        status = cb.status()
        assert status.state == CircuitState.OPEN
        assert status.last_failure.reason == "timeout"

    @pytest.mark.asyncio
    async def test_manual_reset(self):
        cb = CircuitBreaker("test", CircuitBreakerConfig(failure_threshold=1))
        await cb.call(_fail)
        assert cb.state == CircuitState.OPEN

        cb.reset()
        assert cb.state == CircuitState.CLOSED
        assert cb.status().last_failure is None

    @pytest.mark.asyncio
    async def test_stats(self):
        cb = CircuitBreaker("test")
        await cb.call(AsyncMock(return_value="ok"))
        await cb.call(_fail)
        await cb.call(AsyncMock(return_value="ok"))
        await cb.call(AsyncMock(return_value="ok"))

        stats = cb.stats()
        assert stats.total_requests == 4
        assert stats.failure_rate == 25.0
        assert stats.last_failure is not None
        assert stats.uptime_ms >= 0


class TestCircuitBreakerRegistry:
    def test_service_profiles(self):
        breakers = CircuitBreakerRegistry()

        weather = breakers.config_for("weather")
        assert weather.failure_threshold == 3
        assert weather.reset_timeout_ms == 60000
        assert weather.success_threshold == 3

        assert breakers.config_for("openai").reset_timeout_ms == 20000
        assert breakers.config_for("redis").failure_threshold == 10
        assert breakers.config_for("unknown") == CircuitBreakerConfig()

    def test_invalid_profile_raises(self):
        breakers = CircuitBreakerRegistry()
        with pytest.raises(ConfigurationError):
            breakers.register("broken", failure_threshold=0)

    @pytest.mark.asyncio
    async def test_execute_opens_per_service(self):
        breakers = CircuitBreakerRegistry()
        fallback = breakers.fallback_response("weather")

        for _ in range(3):
            assert await breakers.execute("weather", _fail, fallback) is fallback

        assert breakers.is_open("weather")
        assert breakers.is_closed("openai")
        assert await breakers.execute("openai", AsyncMock(return_value="ok")) == "ok"

    @pytest.mark.asyncio
    async def test_default_profile_opens_after_five_failures(self):
        breakers = CircuitBreakerRegistry()
        for _ in range(5):
            breakers.record_failure("svc", RuntimeError("boom"))
        assert breakers.is_open("svc")

        operation = AsyncMock(return_value="should not run")
        assert await breakers.execute("svc", operation, "fallback") == "fallback"
        operation.assert_not_awaited()

    def test_queries_do_not_create_records(self):
        breakers = CircuitBreakerRegistry()

        assert breakers.is_open("weather") is False
        assert breakers.is_closed("weather") is True
        status = breakers.get_status("weather")
        assert status.state == CircuitState.CLOSED
        assert status.total_requests == 0
        assert breakers.get_stats("weather").failure_rate == 0.0

        assert breakers.get_all_statuses() == {}

    def test_unknown_service_queries_leave_no_trace(self):
        breakers = CircuitBreakerRegistry()

        breakers.get_status("never-called-service")
        breakers.get_stats("never-called-service")
        breakers.reset("never-called-service")

        assert breakers.get_all_statuses() == {}
        assert REGISTRY.get_sample_value(
            "bakame_circuit_state", {"service": "never-called-service"}
        ) is None

    def test_record_failure_reason(self):
        breakers = CircuitBreakerRegistry()
        breakers.record_failure("openai", asyncio.TimeoutError())
        assert breakers.get_status("openai").last_failure.reason == "timeout"
        breakers.record_failure("openai", RuntimeError("boom"))

        status = breakers.get_status("openai")
        assert status.consecutive_failures == 2
        assert status.last_failure.reason == "error"
        assert status.last_failure.message == "boom"

        breakers.record_success("openai")
        assert breakers.get_status("openai").consecutive_failures == 0

    def test_fallback_response(self):
        breakers = CircuitBreakerRegistry()

        fallback = breakers.fallback_response("weather")
        assert isinstance(fallback, FallbackResponse)
        assert fallback.fallback is True
        assert fallback.service == "weather"
        assert fallback.retry_after == 60
        assert "Weather" in fallback.error

        assert breakers.fallback_response("other").retry_after == 30
        assert breakers.fallback_response("other", "custom").error == "custom"

    def test_system_health(self):
        breakers = CircuitBreakerRegistry()
        breakers.record_success("openai")
        assert breakers.get_system_health().healthy is True

        for _ in range(3):
            breakers.record_failure("weather", RuntimeError("down"))

        health = breakers.get_system_health()
        assert health.healthy is False
        assert health.open_circuits == ["weather"]
        assert health.services["openai"].healthy is True
        assert health.services["weather"].state == CircuitState.OPEN

    def test_reset_and_clear(self):
        breakers = CircuitBreakerRegistry()
        for _ in range(3):
            breakers.record_failure("weather")
        assert breakers.is_open("weather")

        breakers.reset("weather")
        assert breakers.is_closed("weather")

        breakers.clear()
        assert breakers.get_all_statuses() == {}

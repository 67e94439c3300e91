"""
Tests for per-target circuit breakers.
"""

import pytest

from reliable_actions.errors import CircuitOpenError, FaultClassification
from reliable_actions.recovery.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)


SERVER = FaultClassification.TRANSIENT_SERVICE


@pytest.mark.unit
class TestCircuitBreaker:
    """State machine transitions."""

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, clock):
        breaker = CircuitBreaker("drive", CircuitBreakerConfig(failure_threshold=3), clock=clock)

        for _ in range(3):
            await breaker.before_call()
            await breaker.record_failure(SERVER)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.before_call()
        assert exc_info.value.failure_count == 3
        assert exc_info.value.target == "drive"

    @pytest.mark.asyncio
    async def test_non_systemic_faults_ignored(self, clock):
        breaker = CircuitBreaker("drive", CircuitBreakerConfig(failure_threshold=1), clock=clock)

        await breaker.record_failure(FaultClassification.VALIDATION)
        await breaker.record_failure(FaultClassification.AUTHORIZATION)

        assert breaker.is_closed
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, clock):
        breaker = CircuitBreaker("drive", CircuitBreakerConfig(failure_threshold=2), clock=clock)

        await breaker.record_failure(SERVER)
        await breaker.record_success()
        await breaker.record_failure(SERVER)

        assert breaker.is_closed

    @pytest.mark.asyncio
    async def test_half_open_then_closed(self, clock):
        config = CircuitBreakerConfig(failure_threshold=1, success_threshold=2, timeout=30.0)
        breaker = CircuitBreaker("drive", config, clock=clock)
        await breaker.record_failure(SERVER)

        clock.advance(31.0)
        await breaker.before_call()
        assert breaker.is_half_open

        await breaker.record_success()
        assert breaker.is_half_open
        await breaker.record_success()
        assert breaker.is_closed

    @pytest.mark.asyncio
    async def test_failure_while_half_open_reopens(self, clock):
        config = CircuitBreakerConfig(failure_threshold=1, timeout=30.0)
        breaker = CircuitBreaker("drive", config, clock=clock)
        await breaker.record_failure(SERVER)

        clock.advance(31.0)
        await breaker.before_call()
        await breaker.record_failure(FaultClassification.NETWORK)

        assert breaker.is_open

    @pytest.mark.asyncio
    async def test_metrics_and_reset(self, clock):
        breaker = CircuitBreaker("drive", CircuitBreakerConfig(failure_threshold=1), clock=clock)
        await breaker.record_success(0.2)
        await breaker.record_failure(SERVER, 0.4)

        metrics = breaker.get_metrics()
        assert metrics["state"] == "open"
        assert metrics["failure_rate"] == 0.5
        assert metrics["average_call_duration"] == pytest.approx(0.3)

        breaker.reset()
        assert breaker.is_closed
        assert breaker.get_metrics()["window_calls"] == 0


@pytest.mark.unit
class TestCircuitBreakerRegistry:
    """Per-target breaker management."""

    def test_get_or_create(self):
        registry = CircuitBreakerRegistry()
        assert registry.get_circuit("slack") is registry.get_circuit("slack")
        assert registry.list_circuits() == ["slack"]

    def test_configure_override(self):
        registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=5))
        registry.configure("gmail", CircuitBreakerConfig(failure_threshold=1))

        assert registry.get_circuit("gmail").config.failure_threshold == 1
        assert registry.get_circuit("slack").config.failure_threshold == 5

    @pytest.mark.asyncio
    async def test_open_circuits_and_reset_all(self):
        registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=1))
        await registry.get_circuit("gmail").record_failure(SERVER)
        registry.get_circuit("slack")

        assert registry.get_open_circuits() == ["gmail"]
        assert set(registry.get_all_metrics()) == {"gmail", "slack"}

        registry.reset_all()
        assert registry.get_open_circuits() == []

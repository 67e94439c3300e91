"""
Tests for retry policies, backoff calculation and the retry engine.
"""

import asyncio
import threading

import pytest
from pydantic import ValidationError
from unittest.mock import AsyncMock, Mock

from reliable_actions.errors import (
    CircuitOpenError,
    ClassifiedFault,
    FaultClassification,
    RetryCancelledError,
)
from reliable_actions.events import EventBus
from reliable_actions.monitoring.metrics import MetricsRegistry
from reliable_actions.recovery.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from reliable_actions.recovery.classification import RateLimitInfo
from reliable_actions.recovery.retry import (
    DEFAULT_POLICIES,
    RATE_LIMIT_BUFFER,
    BackoffStrategy,
    CancellationToken,
    RetryEngine,
    RetryPolicy,
    add_jitter,
    backoff_delay,
    fibonacci,
    next_delay,
)


def fast_policy(**overrides):
    values = dict(max_attempts=3, initial_delay=1.0, max_delay=8.0, jitter_fraction=0.0, timeout=None)
    values.update(overrides)
    return RetryPolicy(**values)


def failing_then(result, *faults):
    """Callable raising each fault in turn, then returning ``result``."""
    calls = {"count": 0}

    async def fn():
        calls["count"] += 1
        if calls["count"] <= len(faults):
            raise faults[calls["count"] - 1]
        return result

    fn.calls = calls
    return fn


@pytest.mark.unit
class TestRetryPolicy:
    """Policy validation and defaults."""

    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.backoff == BackoffStrategy.EXPONENTIAL
        assert FaultClassification.VALIDATION not in policy.retryable_classifications
        assert FaultClassification.RATE_LIMITED in policy.retryable_classifications

    def test_max_delay_below_initial_is_rejected(self):
        with pytest.raises(ValidationError):
            RetryPolicy(initial_delay=5.0, max_delay=1.0)

    def test_zero_attempts_is_rejected(self):
        with pytest.raises(ValidationError):
            RetryPolicy(max_attempts=0)

    def test_policy_is_frozen(self):
        policy = RetryPolicy()
        with pytest.raises(ValidationError):
            policy.max_attempts = 10

    def test_default_policies_per_target(self):
        assert DEFAULT_POLICIES["gmail"].max_attempts == 5
        assert DEFAULT_POLICIES["gmail"].max_delay == 32.0
        assert DEFAULT_POLICIES["slack"].allow_auth_refresh is False
        assert DEFAULT_POLICIES["notion"].allow_auth_refresh is True

    def test_to_dict_is_json_friendly(self):
        data = RetryPolicy().to_dict()
        assert data["backoff"] == "exponential"
        assert data["retryable_classifications"] == sorted(data["retryable_classifications"])


@pytest.mark.unit
class TestBackoff:
    """Delay calculation."""

    def test_exponential_capped(self):
        policy = RetryPolicy(initial_delay=1.0, multiplier=2.0, max_delay=4.0, jitter_fraction=0.0)
        assert [backoff_delay(n, policy) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 4.0]

    def test_exponential_with_jitter_stays_in_band(self):
        policy = RetryPolicy(initial_delay=1.0, multiplier=2.0, max_delay=4.0, jitter_fraction=0.1)
        expected = [1.0, 2.0, 4.0, 4.0]
        for attempt, base in enumerate(expected, start=1):
            for _ in range(50):
                delay = next_delay(attempt, policy)
                assert base * 0.9 <= delay <= base * 1.1

    def test_linear_fixed_fibonacci(self):
        linear = fast_policy(backoff=BackoffStrategy.LINEAR, max_delay=100.0)
        fixed = fast_policy(backoff=BackoffStrategy.FIXED, initial_delay=2.0)
        fib = fast_policy(backoff=BackoffStrategy.FIBONACCI, max_delay=100.0)

        assert [backoff_delay(n, linear) for n in (1, 2, 3)] == [1.0, 2.0, 3.0]
        assert [backoff_delay(n, fixed) for n in (1, 2, 3)] == [2.0, 2.0, 2.0]
        assert [backoff_delay(n, fib) for n in (1, 2, 3, 4, 5, 6)] == [1.0, 1.0, 2.0, 3.0, 5.0, 8.0]

    def test_fibonacci(self):
        assert [fibonacci(n) for n in range(1, 8)] == [1, 1, 2, 3, 5, 8, 13]

    def test_jitter_bounds_and_floor(self):
        assert add_jitter(10.0, 0.5, rng=lambda: 0.0) == 5.0
        assert add_jitter(10.0, 0.5, rng=lambda: 1.0) == 15.0
        assert add_jitter(10.0, 0.0, rng=lambda: 0.0) == 10.0
        assert add_jitter(0.0, 1.0, rng=lambda: 0.0) == 0.0

    def test_retry_after_overrides_backoff(self):
        policy = fast_policy(max_delay=4.0)
        info = RateLimitInfo(retry_after=30.0)
        assert next_delay(1, policy, info) == 30.0 + RATE_LIMIT_BUFFER

    def test_reset_time_overrides_backoff(self, clock):
        policy = fast_policy()
        info = RateLimitInfo(reset_time=clock() + 10.0, retry_after=99.0)
        assert next_delay(1, policy, info, clock=clock) == 10.0 + RATE_LIMIT_BUFFER

    def test_reset_time_in_the_past(self, clock):
        info = RateLimitInfo(reset_time=clock() - 60.0)
        assert next_delay(1, fast_policy(), info, clock=clock) == RATE_LIMIT_BUFFER

    def test_empty_hint_falls_back_to_backoff(self):
        assert next_delay(2, fast_policy(), RateLimitInfo()) == 2.0


@pytest.mark.unit
class TestRetryEngineExecute:
    """Retry loop behaviour."""

    @pytest.mark.asyncio
    async def test_success_first_attempt(self, make_action, sleep):
        engine = RetryEngine(sleep=sleep)
        fn = failing_then({"id": "c1"})

        result = await engine.execute(make_action(), fn, policy=fast_policy())

        assert result == {"id": "c1"}
        assert fn.calls["count"] == 1
        assert sleep.delays == []
        stats = engine.get_statistics("notion")
        assert stats.successful_first_attempt == 1
        assert stats.total_retries == 0

    @pytest.mark.asyncio
    async def test_sync_callable(self, make_action, sleep):
        engine = RetryEngine(sleep=sleep)
        assert await engine.execute(make_action(), lambda: 42, policy=fast_policy()) == 42

    @pytest.mark.asyncio
    async def test_retries_transient_faults(self, make_action, sleep, http_error):
        engine = RetryEngine(sleep=sleep)
        fn = failing_then("ok", http_error("unavailable", 503), http_error("unavailable", 503))

        result = await engine.execute(make_action(), fn, policy=fast_policy())

        assert result == "ok"
        assert fn.calls["count"] == 3
        assert sleep.delays == [1.0, 2.0]
        stats = engine.get_statistics("notion")
        assert stats.successful_after_retries == 1
        assert stats.total_retries == 2
        assert stats.errors_by_classification == {"transient_service": 2}

    @pytest.mark.asyncio
    async def test_validation_never_retried(self, make_action, sleep, http_error):
        engine = RetryEngine(sleep=sleep)
        fn = failing_then("ok", http_error("bad request", 400))

        with pytest.raises(ClassifiedFault) as exc_info:
            await engine.execute(make_action(), fn, policy=fast_policy(max_attempts=10))

        fault = exc_info.value
        assert fault.classification == FaultClassification.VALIDATION
        assert fault.retryable is False
        assert fault.attempts == 1
        assert isinstance(fault.original_error, http_error)
        assert fn.calls["count"] == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_unclassified_never_retried(self, make_action, sleep):
        engine = RetryEngine(sleep=sleep)
        fn = failing_then("ok", ValueError("boom"))

        with pytest.raises(ClassifiedFault) as exc_info:
            await engine.execute(make_action(), fn, policy=fast_policy())

        assert exc_info.value.classification == FaultClassification.UNCLASSIFIED
        assert fn.calls["count"] == 1

    @pytest.mark.asyncio
    async def test_exhausted_attempts(self, make_action, sleep, http_error):
        engine = RetryEngine(sleep=sleep)
        fn = failing_then("never", *[http_error("unavailable", 503)] * 5)

        with pytest.raises(ClassifiedFault) as exc_info:
            await engine.execute(make_action(), fn, policy=fast_policy(max_attempts=3))

        assert exc_info.value.retryable is True
        assert exc_info.value.attempts == 3
        assert fn.calls["count"] == 3
        stats = engine.get_statistics("notion")
        assert stats.failed_after_retries == 1
        assert stats.total_retries == 2

    @pytest.mark.asyncio
    async def test_rate_limit_hint_used_as_delay(self, make_action, sleep, http_error):
        engine = RetryEngine(sleep=sleep)
        limited = http_error("slow down", 429, headers={"Retry-After": "7"})
        fn = failing_then("ok", limited)

        await engine.execute(make_action(), fn, policy=fast_policy(max_delay=4.0))

        assert sleep.delays == [7.0 + RATE_LIMIT_BUFFER]
        assert engine.get_statistics("notion").rate_limit_hits == 1

    @pytest.mark.asyncio
    async def test_attempt_timeout_is_retried(self, make_action, sleep):
        engine = RetryEngine(sleep=sleep)
        calls = {"count": 0}

        async def slow_then_fast():
            calls["count"] += 1
            if calls["count"] == 1:
                await asyncio.sleep(1)
            return "done"

        result = await engine.execute(make_action(), slow_then_fast, policy=fast_policy(timeout=0.01))

        assert result == "done"
        assert calls["count"] == 2
        assert engine.get_statistics("notion").errors_by_classification == {"timeout": 1}

    @pytest.mark.asyncio
    async def test_blocking_sync_call_is_bounded_by_timeout(self, make_action, sleep):
        engine = RetryEngine(sleep=sleep)
        release = threading.Event()
        calls = {"count": 0}

        def blocking_then_fast():
            calls["count"] += 1
            if calls["count"] == 1:
                release.wait(5)
            return "done"

        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            result = await engine.execute(make_action(), blocking_then_fast,
                                          policy=fast_policy(timeout=0.05))
        finally:
            release.set()

        assert result == "done"
        assert loop.time() - started < 2
        assert engine.get_statistics("notion").errors_by_classification == {"timeout": 1}

    @pytest.mark.asyncio
    async def test_sync_call_without_timeout_runs_off_loop_thread(self, make_action):
        engine = RetryEngine()
        loop_thread = threading.get_ident()

        result = await engine.execute(make_action(), threading.get_ident, policy=fast_policy())

        assert result != loop_thread

    @pytest.mark.asyncio
    async def test_policy_from_target(self, make_action, sleep, http_error):
        engine = RetryEngine(sleep=sleep, rng=lambda: 0.5)
        fn = failing_then("never", *[http_error("unavailable", 503)] * 10)

        with pytest.raises(ClassifiedFault):
            await engine.execute(make_action(target="gmail"), fn)

        assert fn.calls["count"] == 5
        assert sleep.delays == [2.0, 4.0, 8.0, 16.0]

    @pytest.mark.asyncio
    async def test_events_published(self, make_action, sleep, http_error):
        events = EventBus()
        engine = RetryEngine(sleep=sleep, events=events)
        fn = failing_then("ok", http_error("unavailable", 503))

        await engine.execute(make_action(), fn, policy=fast_policy())

        types = [e.type for e in events.recent(source="retry")]
        assert types == ["retry", "succeeded"]
        assert events.recent(event_type="retry")[0].payload["attempt"] == 1


@pytest.mark.unit
class TestAuthRefresh:
    """One free token refresh on authorization faults."""

    @pytest.mark.asyncio
    async def test_refresh_does_not_consume_attempt(self, make_action, sleep, http_error):
        engine = RetryEngine(sleep=sleep)
        refresh = AsyncMock()
        engine.register_token_refresh("notion", refresh)
        fn = failing_then("ok", http_error("unauthorized", 401))

        result = await engine.execute(make_action(), fn,
                                      policy=fast_policy(max_attempts=1, allow_auth_refresh=True))

        assert result == "ok"
        refresh.assert_awaited_once_with("notion")
        stats = engine.get_statistics("notion")
        assert stats.auth_refreshes == 1
        assert stats.successful_first_attempt == 1

    @pytest.mark.asyncio
    async def test_refresh_only_once(self, make_action, sleep, http_error):
        engine = RetryEngine(sleep=sleep)
        refresh = Mock()
        engine.register_token_refresh("notion", refresh)
        fn = failing_then("ok", http_error("unauthorized", 401), http_error("unauthorized", 401))

        with pytest.raises(ClassifiedFault) as exc_info:
            await engine.execute(make_action(), fn,
                                 policy=fast_policy(max_attempts=3, allow_auth_refresh=True))

        assert exc_info.value.classification == FaultClassification.AUTHORIZATION
        assert refresh.call_count == 1
        assert fn.calls["count"] == 2

    @pytest.mark.asyncio
    async def test_no_refresh_when_policy_disallows(self, make_action, sleep, http_error):
        engine = RetryEngine(sleep=sleep)
        refresh = Mock()
        engine.register_token_refresh("notion", refresh)
        fn = failing_then("ok", http_error("forbidden", 403))

        with pytest.raises(ClassifiedFault):
            await engine.execute(make_action(), fn, policy=fast_policy(allow_auth_refresh=False))

        refresh.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_refresh_raises_authorization(self, make_action, sleep, http_error):
        engine = RetryEngine(sleep=sleep)
        engine.register_token_refresh("notion", Mock(side_effect=RuntimeError("refresh down")))
        fn = failing_then("ok", http_error("unauthorized", 401))

        with pytest.raises(ClassifiedFault) as exc_info:
            await engine.execute(make_action(), fn, policy=fast_policy(allow_auth_refresh=True))

        assert exc_info.value.classification == FaultClassification.AUTHORIZATION
        assert engine.get_statistics("notion").auth_refreshes == 0


@pytest.mark.unit
class TestCancellationAndBreaker:
    """Cancellation between attempts and circuit-breaker gating."""

    @pytest.mark.asyncio
    async def test_cancelled_before_first_attempt(self, make_action, sleep):
        engine = RetryEngine(sleep=sleep)
        token = CancellationToken()
        token.cancel("shutdown")
        fn = failing_then("ok")

        with pytest.raises(RetryCancelledError):
            await engine.execute(make_action(), fn, policy=fast_policy(), cancel_token=token)

        assert fn.calls["count"] == 0

    @pytest.mark.asyncio
    async def test_cancel_during_wait_stops_loop(self, make_action, http_error):
        token = CancellationToken()

        async def never_ending_sleep(delay):
            token.cancel("operator")
            await asyncio.sleep(3600)

        engine = RetryEngine(sleep=never_ending_sleep)
        fn = failing_then("ok", http_error("unavailable", 503), http_error("unavailable", 503))

        with pytest.raises(RetryCancelledError) as exc_info:
            await engine.execute(make_action(), fn, policy=fast_policy(), cancel_token=token)

        assert exc_info.value.attempts == 1
        assert fn.calls["count"] == 1

    @pytest.mark.asyncio
    async def test_open_circuit_rejects_without_calling(self, make_action, sleep, http_error, clock):
        breakers = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=2), clock=clock)
        engine = RetryEngine(sleep=sleep, breakers=breakers)
        fn = failing_then("ok", *[http_error("unavailable", 503)] * 10)

        with pytest.raises(CircuitOpenError):
            await engine.execute(make_action(), fn, policy=fast_policy(max_attempts=5))

        assert fn.calls["count"] == 2
        assert breakers.get_open_circuits() == ["notion"]


@pytest.mark.unit
class TestRetryStatistics:
    """Statistics snapshots and metrics."""

    @pytest.mark.asyncio
    async def test_global_statistics(self, make_action, sleep, http_error):
        engine = RetryEngine(sleep=sleep)
        await engine.execute(make_action(target="notion"), failing_then(1), policy=fast_policy())
        await engine.execute(make_action(target="slack"),
                             failing_then(2, http_error("unavailable", 503)), policy=fast_policy())

        overall = engine.get_global_statistics()
        assert overall["targets"] == 2
        assert overall["total_operations"] == 2
        assert overall["total_retries"] == 1
        assert overall["success_rate"] == 1.0
        assert "notion:" in engine.format_statistics()

    @pytest.mark.asyncio
    async def test_statistics_snapshot_is_a_copy(self, make_action, sleep):
        engine = RetryEngine(sleep=sleep)
        await engine.execute(make_action(), failing_then(1), policy=fast_policy())

        snapshot = engine.get_statistics("notion")
        snapshot.total_operations = 99
        assert engine.get_statistics("notion").total_operations == 1

    @pytest.mark.asyncio
    async def test_reset_statistics(self, make_action, sleep):
        engine = RetryEngine(sleep=sleep)
        await engine.execute(make_action(), failing_then(1), policy=fast_policy())

        engine.reset_statistics("notion")
        assert engine.get_statistics("notion") is None

    @pytest.mark.asyncio
    async def test_metrics_counters(self, make_action, sleep, http_error):
        metrics = MetricsRegistry()
        engine = RetryEngine(sleep=sleep, metrics=metrics)
        await engine.execute(make_action(), failing_then("ok", http_error("unavailable", 503)),
                             policy=fast_policy())

        retries = metrics.get_metric("retry_retries_total")
        assert retries.get_value({"target": "notion"}) == 1
        faults = metrics.get_metric("retry_faults_total")
        assert faults.get_value({"target": "notion", "classification": "transient_service"}) == 1

    def test_custom_policy_overrides_builtin(self):
        engine = RetryEngine()
        custom = fast_policy(max_attempts=7)
        engine.set_policy("notion", custom)
        assert engine.get_policy("notion") is custom

        engine.reset_policy("notion")
        assert engine.get_policy("notion") == DEFAULT_POLICIES["notion"]
        assert engine.get_policy("unknown-service") == DEFAULT_POLICIES["generic"]

"""
Retry policies and the retry engine.

The engine runs a remote call under a per-target policy: each attempt is
bounded by the policy timeout, every fault is classified, retryable faults
wait out a backoff delay (or the server's rate-limit hint) and are tried
again, and everything else is raised as a ``ClassifiedFault``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..errors import (
    AttemptTimeoutError,
    CircuitOpenError,
    ClassifiedFault,
    FaultClassification,
    RetryCancelledError,
)
from ..events import EventBus
from ..models import ActionDescriptor
from ..monitoring.metrics import MetricsRegistry
from .circuit_breaker import CircuitBreakerRegistry
from .classification import RateLimitInfo, classify, extract_rate_limit_info


logger = logging.getLogger(__name__)


# Added to every server-provided rate-limit wait
RATE_LIMIT_BUFFER = 5.0

EVENT_SOURCE = "retry"


class BackoffStrategy(str, Enum):
    """Shape of the delay curve between attempts."""
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"
    FIBONACCI = "fibonacci"


DEFAULT_RETRYABLE: FrozenSet[FaultClassification] = frozenset({
    FaultClassification.TRANSIENT_SERVICE,
    FaultClassification.RATE_LIMITED,
    FaultClassification.NETWORK,
    FaultClassification.TIMEOUT,
})


class RetryPolicy(BaseModel):
    """
    Per-target retry policy.

    Durations are in seconds. ``timeout`` bounds a single attempt; ``None``
    disables the bound.
    """
    max_attempts: int = Field(default=3, ge=1, description="Attempts including the first")
    initial_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=8.0, ge=0)
    backoff: BackoffStrategy = Field(default=BackoffStrategy.EXPONENTIAL)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter_fraction: float = Field(default=0.1, ge=0.0, le=1.0)
    retryable_classifications: FrozenSet[FaultClassification] = Field(default=DEFAULT_RETRYABLE)
    timeout: Optional[float] = Field(default=10.0, gt=0)
    allow_auth_refresh: bool = Field(default=False)

    model_config = {"frozen": True}

    @field_validator("max_delay")
    @classmethod
    def _max_not_below_initial(cls, v: float, info) -> float:
        initial = info.data.get("initial_delay")
        if initial is not None and v < initial:
            raise ValueError("max_delay must be >= initial_delay")
        return v

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["retryable_classifications"] = sorted(data["retryable_classifications"])
        return data


def _policy(max_attempts: int, initial: float, max_delay: float, jitter: float,
            timeout: float, auth_refresh: bool) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts,
        initial_delay=initial,
        max_delay=max_delay,
        jitter_fraction=jitter,
        timeout=timeout,
        allow_auth_refresh=auth_refresh,
    )


GENERIC_TARGET = "generic"

DEFAULT_POLICIES: Dict[str, RetryPolicy] = {
    # Task and workspace APIs: short waits
    "notion": _policy(3, 1.0, 4.0, 0.1, 10.0, True),
    "trello": _policy(3, 1.0, 4.0, 0.1, 10.0, True),
    "asana": _policy(3, 1.0, 4.0, 0.1, 10.0, True),
    "slack": _policy(3, 1.0, 5.0, 0.1, 15.0, False),
    # Google APIs: more attempts, longer ceiling
    "gmail": _policy(5, 2.0, 32.0, 0.15, 20.0, True),
    "drive": _policy(5, 2.0, 32.0, 0.15, 30.0, True),
    "sheets": _policy(5, 2.0, 32.0, 0.15, 20.0, True),
    GENERIC_TARGET: _policy(3, 1.0, 8.0, 0.1, 10.0, False),
}


def fibonacci(n: int) -> int:
    """fib(1) = fib(2) = 1."""
    a, b = 1, 1
    for _ in range(2, n):
        a, b = b, a + b
    return b if n >= 2 else 1


def backoff_delay(attempt: int, policy: RetryPolicy) -> float:
    """Un-jittered, capped delay after failed attempt ``attempt`` (1-based)."""
    if policy.backoff == BackoffStrategy.EXPONENTIAL:
        delay = policy.initial_delay * (policy.multiplier ** (attempt - 1))
    elif policy.backoff == BackoffStrategy.LINEAR:
        delay = policy.initial_delay * attempt
    elif policy.backoff == BackoffStrategy.FIBONACCI:
        delay = policy.initial_delay * fibonacci(attempt)
    else:
        delay = policy.initial_delay
    return min(delay, policy.max_delay)


def add_jitter(delay: float, fraction: float, rng: Callable[[], float] = random.random) -> float:
    """Perturb ``delay`` uniformly within ±``fraction``; never negative."""
    if fraction <= 0:
        return delay
    jitter_amount = delay * fraction * (2 * rng() - 1)
    return max(0.0, delay + jitter_amount)


def next_delay(
    attempt: int,
    policy: RetryPolicy,
    rate_limit_info: Optional[RateLimitInfo] = None,
    rng: Callable[[], float] = random.random,
    clock: Callable[[], float] = time.time
) -> float:
    """
    Delay in seconds before the attempt following ``attempt``.

    A rate-limit reset time or retry-after hint overrides the backoff curve:
    the delay is the server's wait plus ``RATE_LIMIT_BUFFER``, unjittered.
    """
    if rate_limit_info is not None:
        if rate_limit_info.reset_time is not None:
            return max(0.0, rate_limit_info.reset_time - clock()) + RATE_LIMIT_BUFFER
        if rate_limit_info.retry_after is not None:
            return max(0.0, rate_limit_info.retry_after) + RATE_LIMIT_BUFFER

    return add_jitter(backoff_delay(attempt, policy), policy.jitter_fraction, rng)


def is_retryable(classification: FaultClassification, policy: RetryPolicy) -> bool:
    return classification in policy.retryable_classifications


class CancellationToken:
    """Cooperative cancellation observed between attempts."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class TargetStatistics:
    """Process-lifetime retry statistics for one target."""
    target: str
    total_operations: int = 0
    successful_first_attempt: int = 0
    successful_after_retries: int = 0
    failed_after_retries: int = 0
    total_retries: int = 0
    errors_by_classification: Dict[str, int] = field(default_factory=dict)
    rate_limit_hits: int = 0
    auth_refreshes: int = 0
    avg_success_time: float = 0.0
    last_updated: Optional[float] = None

    @property
    def successes(self) -> int:
        return self.successful_first_attempt + self.successful_after_retries

    @property
    def avg_retries_per_operation(self) -> float:
        return self.total_retries / max(self.total_operations, 1)

    @property
    def success_rate(self) -> float:
        return self.successes / max(self.total_operations, 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "total_operations": self.total_operations,
            "successful_first_attempt": self.successful_first_attempt,
            "successful_after_retries": self.successful_after_retries,
            "failed_after_retries": self.failed_after_retries,
            "total_retries": self.total_retries,
            "avg_retries_per_operation": self.avg_retries_per_operation,
            "errors_by_classification": dict(self.errors_by_classification),
            "rate_limit_hits": self.rate_limit_hits,
            "auth_refreshes": self.auth_refreshes,
            "avg_success_time": self.avg_success_time,
            "success_rate": self.success_rate,
            "last_updated": self.last_updated,
        }


TokenRefresh = Callable[[str], Any]


class RetryEngine:
    """
    Executes remote calls under per-target retry policies.

    Features:
    - Exponential, linear, fixed and fibonacci backoff with jitter
    - Rate-limit hints honoured over the backoff curve
    - Per-attempt timeout
    - One free token refresh per execution on authorization faults
    - Optional per-target circuit breakers
    - Per-target statistics mirrored into a metrics registry
    """

    def __init__(
        self,
        policies: Optional[Dict[str, RetryPolicy]] = None,
        default_policy: Optional[RetryPolicy] = None,
        metrics: Optional[MetricsRegistry] = None,
        events: Optional[EventBus] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random
    ):
        """
        Initialize retry engine.

        Args:
            policies: Per-target policy overrides on top of ``DEFAULT_POLICIES``
            default_policy: Policy for targets without one
            metrics: Registry receiving retry counters
            events: Event bus receiving retry events
            breakers: Per-target circuit breakers (disabled when omitted)
            sleep: Awaitable sleep used between attempts
            clock: Wall clock in epoch seconds
            rng: Uniform [0, 1) source for jitter
        """
        self._builtin_policies: Dict[str, RetryPolicy] = {**DEFAULT_POLICIES, **(policies or {})}
        self._custom_policies: Dict[str, RetryPolicy] = {}
        self.default_policy = default_policy or DEFAULT_POLICIES[GENERIC_TARGET]
        self.metrics = metrics
        self.events = events
        self.breakers = breakers
        self._sleep = sleep
        self._clock = clock
        self._rng = rng

        self._token_refreshers: Dict[str, TokenRefresh] = {}
        self._statistics: Dict[str, TargetStatistics] = {}
        self._lock = threading.RLock()

    # Policy registry

    def get_policy(self, target: str) -> RetryPolicy:
        """Custom policy if set, else the built-in one, else the default."""
        with self._lock:
            if target in self._custom_policies:
                return self._custom_policies[target]
            return self._builtin_policies.get(target, self.default_policy)

    def set_policy(self, target: str, policy: RetryPolicy) -> None:
        with self._lock:
            self._custom_policies[target] = policy
        logger.info(f"Custom retry policy set for {target}: {policy.to_dict()}")

    def reset_policy(self, target: str) -> None:
        with self._lock:
            self._custom_policies.pop(target, None)
        logger.info(f"Retry policy reset to default for {target}")

    def register_token_refresh(self, target: str, refresh: TokenRefresh) -> None:
        """
        Register the token refresher for a target.

        ``refresh(target)`` may be sync or async; its return value is ignored.
        """
        with self._lock:
            self._token_refreshers[target] = refresh
        logger.info(f"Token refresh function registered for {target}")

    # Policy helpers

    def classify(self, fault: BaseException) -> FaultClassification:
        return classify(fault)

    def is_retryable(self, classification: FaultClassification, policy: RetryPolicy) -> bool:
        return is_retryable(classification, policy)

    def next_delay(self, attempt: int, policy: RetryPolicy,
                   rate_limit_info: Optional[RateLimitInfo] = None) -> float:
        return next_delay(attempt, policy, rate_limit_info, rng=self._rng, clock=self._clock)

    # Execution

    async def execute(
        self,
        action: ActionDescriptor,
        fn: Callable[[], Any],
        policy: Optional[RetryPolicy] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> Any:
        """
        Execute ``fn`` with retries.

        Args:
            action: Action being executed; its target selects policy and stats
            fn: Zero-argument callable performing the remote call (sync or async)
            policy: Policy override for this execution
            cancel_token: Cancellation observed before each attempt

        Returns:
            Result of the first successful attempt

        Raises:
            ClassifiedFault: Non-retryable fault, or retries exhausted
            CircuitOpenError: Target circuit is open
            RetryCancelledError: Cancelled between attempts
        """
        target = action.target
        policy = policy or self.get_policy(target)
        breaker = self.breakers.get_circuit(target) if self.breakers is not None else None

        started = self._clock()
        attempt = 0
        refreshed = False
        last_error: Optional[BaseException] = None

        while True:
            if cancel_token is not None and cancel_token.cancelled:
                self._record_outcome(target, attempt, success=False)
                raise RetryCancelledError(target, attempt, last_error)

            if breaker is not None:
                try:
                    await breaker.before_call()
                except CircuitOpenError:
                    self._record_outcome(target, attempt, success=False)
                    logger.warning(f"Circuit open for {target}, skipping {action.action_type}")
                    raise

            attempt += 1
            attempt_started = self._clock()

            try:
                result = await self._invoke(fn, policy.timeout)
            except Exception as e:
                last_error = e
                classification = classify(e)
                self._record_fault(target, classification)

                if breaker is not None:
                    await breaker.record_failure(classification, self._clock() - attempt_started)

                if (
                    classification == FaultClassification.AUTHORIZATION
                    and policy.allow_auth_refresh
                    and not refreshed
                    and self._has_refresher(target)
                ):
                    refreshed = True
                    if await self._refresh_token(target, action):
                        # Refresh-retry does not consume an attempt
                        attempt -= 1
                        continue

                retryable = is_retryable(classification, policy)
                if not retryable or attempt >= policy.max_attempts:
                    self._record_outcome(target, attempt, success=False)
                    self._publish("failed", action, attempt=attempt,
                                  classification=classification.value, error=str(e))
                    if retryable:
                        logger.error(
                            f"{action.action_type} on {target} failed after {attempt} attempts: "
                            f"[{classification.value}] {e}"
                        )
                    else:
                        logger.error(
                            f"{action.action_type} on {target} failed with non-retryable "
                            f"[{classification.value}] fault: {e}"
                        )
                    raise ClassifiedFault(classification, retryable, e, attempt, target) from e

                info = None
                if classification == FaultClassification.RATE_LIMITED:
                    info = extract_rate_limit_info(e)
                delay = self.next_delay(attempt, policy, info)

                logger.warning(
                    f"Attempt {attempt}/{policy.max_attempts} of {action.action_type} on {target} "
                    f"failed [{classification.value}]: {e}. Retrying in {delay:.2f}s..."
                )
                self._publish("retry", action, attempt=attempt, delay=delay,
                              classification=classification.value)

                await self._wait(delay, cancel_token)
                continue

            if breaker is not None:
                await breaker.record_success(self._clock() - attempt_started)

            elapsed = self._clock() - started
            self._record_outcome(target, attempt, success=True, elapsed=elapsed)
            if attempt > 1:
                logger.info(f"{action.action_type} on {target} succeeded on attempt {attempt}")
            self._publish("succeeded", action, attempt=attempt, elapsed=elapsed)
            return result

    async def _invoke(self, fn: Callable[[], Any], timeout: Optional[float]) -> Any:
        """
        Run one attempt under ``timeout``.

        Synchronous callables run in a worker thread so a blocking call cannot
        hold the event loop past the deadline; the thread itself is left to
        finish in the background when the attempt times out.
        """
        async def run():
            if inspect.iscoroutinefunction(fn):
                return await fn()
            result = await asyncio.to_thread(fn)
            if inspect.isawaitable(result):
                result = await result
            return result

        if timeout is None:
            return await run()

        try:
            return await asyncio.wait_for(run(), timeout)
        except asyncio.TimeoutError:
            raise AttemptTimeoutError(timeout) from None

    async def _wait(self, delay: float, cancel_token: Optional[CancellationToken]) -> None:
        if cancel_token is None:
            await self._sleep(delay)
            return

        sleeper = asyncio.ensure_future(self._sleep(delay))
        canceller = asyncio.ensure_future(cancel_token.wait())
        try:
            await asyncio.wait({sleeper, canceller}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, canceller):
                if not task.done():
                    task.cancel()

    def _has_refresher(self, target: str) -> bool:
        with self._lock:
            return target in self._token_refreshers

    async def _refresh_token(self, target: str, action: ActionDescriptor) -> bool:
        with self._lock:
            refresh = self._token_refreshers[target]

        logger.info(f"Attempting to refresh auth token for {target}")
        try:
            result = refresh(target)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Failed to refresh auth token for {target}: {e}")
            return False

        with self._lock:
            self._stats(target).auth_refreshes += 1
        self._count("auth_refreshes_total", target)
        self._publish("auth_refreshed", action)
        logger.info(f"Auth token refreshed for {target}")
        return True

    # Statistics

    def _stats(self, target: str) -> TargetStatistics:
        stats = self._statistics.get(target)
        if stats is None:
            stats = TargetStatistics(target=target)
            self._statistics[target] = stats
        return stats

    def _record_fault(self, target: str, classification: FaultClassification) -> None:
        with self._lock:
            stats = self._stats(target)
            key = classification.value
            stats.errors_by_classification[key] = stats.errors_by_classification.get(key, 0) + 1
            if classification == FaultClassification.RATE_LIMITED:
                stats.rate_limit_hits += 1
            stats.last_updated = self._clock()

        self._count("faults_total", target, classification=classification.value)
        if classification == FaultClassification.RATE_LIMITED:
            self._count("rate_limit_hits_total", target)

    def _record_outcome(self, target: str, attempts: int, success: bool,
                        elapsed: float = 0.0) -> None:
        retries = max(attempts - 1, 0)
        with self._lock:
            stats = self._stats(target)
            stats.total_operations += 1
            stats.total_retries += retries
            if success:
                if attempts == 1:
                    stats.successful_first_attempt += 1
                else:
                    stats.successful_after_retries += 1
                n = stats.successes
                stats.avg_success_time = (stats.avg_success_time * (n - 1) + elapsed) / n
            else:
                stats.failed_after_retries += 1
            stats.last_updated = self._clock()

        self._count("operations_total", target, outcome="success" if success else "failure")
        if retries:
            self._count("retries_total", target, amount=retries)
        if success and self.metrics is not None:
            self.metrics.timer("retry_success_seconds", "Time to success including retries").observe(
                elapsed, {"target": target}
            )

    def _count(self, name: str, target: str, amount: float = 1.0, **labels: str) -> None:
        if self.metrics is None:
            return
        self.metrics.counter(f"retry_{name}").increment(amount, {"target": target, **labels})

    def _publish(self, event_type: str, action: ActionDescriptor, **payload: Any) -> None:
        if self.events is not None:
            self.events.publish(EVENT_SOURCE, event_type, {**action.summary(), **payload})

    def get_statistics(self, target: str) -> Optional[TargetStatistics]:
        """Copy of the statistics for a target, or None if never used."""
        with self._lock:
            stats = self._statistics.get(target)
            if stats is None:
                return None
            return TargetStatistics(
                **{**stats.__dict__, "errors_by_classification": dict(stats.errors_by_classification)}
            )

    def get_all_statistics(self) -> Dict[str, TargetStatistics]:
        with self._lock:
            targets = list(self._statistics)
        return {target: self.get_statistics(target) for target in targets}

    def get_global_statistics(self) -> Dict[str, Any]:
        """Statistics aggregated across all targets."""
        all_stats = list(self.get_all_statistics().values())
        total = sum(s.total_operations for s in all_stats)
        successes = sum(s.successes for s in all_stats)
        retries = sum(s.total_retries for s in all_stats)

        errors: Dict[str, int] = {}
        for s in all_stats:
            for key, count in s.errors_by_classification.items():
                errors[key] = errors.get(key, 0) + count

        weighted_time = sum(s.avg_success_time * s.successes for s in all_stats)

        return {
            "targets": len(all_stats),
            "total_operations": total,
            "successful_first_attempt": sum(s.successful_first_attempt for s in all_stats),
            "successful_after_retries": sum(s.successful_after_retries for s in all_stats),
            "failed_after_retries": sum(s.failed_after_retries for s in all_stats),
            "total_retries": retries,
            "avg_retries_per_operation": retries / max(total, 1),
            "errors_by_classification": errors,
            "rate_limit_hits": sum(s.rate_limit_hits for s in all_stats),
            "auth_refreshes": sum(s.auth_refreshes for s in all_stats),
            "avg_success_time": weighted_time / max(successes, 1),
            "success_rate": successes / max(total, 1),
        }

    def reset_statistics(self, target: Optional[str] = None) -> None:
        with self._lock:
            if target is None:
                self._statistics.clear()
            else:
                self._statistics.pop(target, None)
        logger.info(f"Retry statistics reset for {target or 'all targets'}")

    def format_statistics(self) -> str:
        """Human-readable statistics report."""
        lines: List[str] = ["Retry Statistics", "=" * 16]
        for target, stats in sorted(self.get_all_statistics().items()):
            lines.append(f"{target}:")
            lines.append(f"  - Total Operations: {stats.total_operations}")
            lines.append(f"  - First-Attempt Success: {stats.successful_first_attempt}")
            lines.append(f"  - Success After Retries: {stats.successful_after_retries}")
            lines.append(f"  - Failed After Retries: {stats.failed_after_retries}")
            lines.append(f"  - Total Retries: {stats.total_retries}")
            lines.append(f"  - Avg Retries/Operation: {stats.avg_retries_per_operation:.2f}")
            lines.append(f"  - Rate Limit Hits: {stats.rate_limit_hits}")
            lines.append(f"  - Auth Refreshes: {stats.auth_refreshes}")
            lines.append(f"  - Avg Success Time: {stats.avg_success_time:.3f}s")
            if stats.errors_by_classification:
                errors = ", ".join(
                    f"{k}={v}" for k, v in sorted(stats.errors_by_classification.items())
                )
                lines.append(f"  - Faults: {errors}")
        if len(lines) == 2:
            lines.append("(no operations recorded)")
        return "\n".join(lines)


__all__ = [
    "RATE_LIMIT_BUFFER",
    "BackoffStrategy",
    "DEFAULT_RETRYABLE",
    "DEFAULT_POLICIES",
    "GENERIC_TARGET",
    "RetryPolicy",
    "fibonacci",
    "backoff_delay",
    "add_jitter",
    "next_delay",
    "is_retryable",
    "CancellationToken",
    "TargetStatistics",
    "RetryEngine",
]

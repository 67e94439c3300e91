"""
Per-target circuit breakers.

A breaker counts systemic faults (service errors, network errors, timeouts)
against one remote target. When the count reaches the threshold the circuit
opens and the retry engine refuses calls to that target until the recovery
timeout has passed; a half-open probe period then decides whether it closes
again.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from ..errors import CircuitOpenError, FaultClassification


logger = logging.getLogger(__name__)


SYSTEMIC_CLASSIFICATIONS = frozenset({
    FaultClassification.TRANSIENT_SERVICE,
    FaultClassification.NETWORK,
    FaultClassification.TIMEOUT,
})


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Breaker thresholds. ``timeout`` is seconds spent open before probing."""
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout: float = 60.0
    window_size: int = 100


@dataclass(frozen=True)
class CallResult:
    """One call observed by a breaker."""
    success: bool
    duration: float
    timestamp: float
    classification: Optional[FaultClassification] = None


class CircuitBreaker:
    """
    Breaker for one target.

    Validation and authorization faults say nothing about the target's
    health and are ignored.
    """

    def __init__(self, name: str, config: Optional[CircuitBreakerConfig] = None,
                 clock: Callable[[], float] = time.time):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._lock = asyncio.Lock()

        self.failure_count = 0
        self.success_count = 0
        self.opened_at = 0.0
        self.state_changed_time = clock()
        self.window: Deque[CallResult] = deque(maxlen=self.config.window_size)

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state is CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state is CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state is CircuitState.HALF_OPEN

    async def before_call(self) -> None:
        """
        Admit or refuse a call.

        Raises:
            CircuitOpenError: Circuit open and the recovery timeout not yet elapsed
        """
        async with self._lock:
            if self.is_open and self._clock() - self.opened_at >= self.config.timeout:
                self._transition(CircuitState.HALF_OPEN)
            if self.is_open:
                raise CircuitOpenError(self.name, self.failure_count)

    async def record_success(self, duration: float = 0.0) -> None:
        async with self._lock:
            self.window.append(CallResult(True, duration, self._clock()))
            if self.is_half_open:
                self.success_count += 1
                if self.success_count >= self.config.success_threshold:
                    self._transition(CircuitState.CLOSED)
            else:
                self.failure_count = 0

    async def record_failure(self, classification: FaultClassification,
                             duration: float = 0.0) -> None:
        if classification not in SYSTEMIC_CLASSIFICATIONS:
            return

        async with self._lock:
            self.window.append(CallResult(False, duration, self._clock(), classification))
            self.failure_count += 1
            if self.is_half_open or self.failure_count >= self.config.failure_threshold:
                self._transition(CircuitState.OPEN)
            logger.debug(f"Circuit '{self.name}' failure {self.failure_count} "
                         f"[{classification.value}], state={self._state.value}")

    def _transition(self, new_state: CircuitState) -> None:
        if new_state is self._state:
            return
        old_state, self._state = self._state, new_state
        self.state_changed_time = self._clock()

        if new_state is CircuitState.OPEN:
            self.opened_at = self.state_changed_time
            logger.warning(f"Circuit '{self.name}' opened after {self.failure_count} systemic failures")
        elif new_state is CircuitState.HALF_OPEN:
            self.success_count = 0
            logger.info(f"Circuit '{self.name}' half-open, probing target")
        else:
            self.failure_count = 0
            self.success_count = 0
            logger.info(f"Circuit '{self.name}' closed ({old_state.value} -> closed)")

    def get_metrics(self) -> Dict[str, Any]:
        calls = list(self.window)
        metrics: Dict[str, Any] = {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "time_in_current_state": self._clock() - self.state_changed_time,
            "window_calls": len(calls),
        }
        if calls:
            metrics["failure_rate"] = sum(1 for c in calls if not c.success) / len(calls)
            metrics["average_call_duration"] = sum(c.duration for c in calls) / len(calls)
        return metrics

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.window.clear()
        self.state_changed_time = self._clock()
        logger.info(f"Circuit '{self.name}' reset")


class CircuitBreakerRegistry:
    """Creates one breaker per target on first use, honouring per-target overrides."""

    def __init__(self, default_config: Optional[CircuitBreakerConfig] = None,
                 clock: Callable[[], float] = time.time):
        self.default_config = default_config or CircuitBreakerConfig()
        self.circuits: Dict[str, CircuitBreaker] = {}
        self._overrides: Dict[str, CircuitBreakerConfig] = {}
        self._clock = clock

    def configure(self, name: str, config: CircuitBreakerConfig) -> None:
        """Use ``config`` for the target's breaker, replacing any existing one."""
        self._overrides[name] = config
        self.circuits.pop(name, None)

    def get_circuit(self, name: str) -> CircuitBreaker:
        circuit = self.circuits.get(name)
        if circuit is None:
            config = self._overrides.get(name, self.default_config)
            circuit = self.circuits[name] = CircuitBreaker(name, config, clock=self._clock)
        return circuit

    def list_circuits(self) -> List[str]:
        return list(self.circuits)

    def get_open_circuits(self) -> List[str]:
        return [name for name, circuit in self.circuits.items() if circuit.is_open]

    def get_all_metrics(self) -> Dict[str, Dict[str, Any]]:
        return {name: circuit.get_metrics() for name, circuit in self.circuits.items()}

    def reset_all(self) -> None:
        for circuit in self.circuits.values():
            circuit.reset()


__all__ = [
    "SYSTEMIC_CLASSIFICATIONS",
    "CircuitState",
    "CircuitBreakerConfig",
    "CallResult",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
]

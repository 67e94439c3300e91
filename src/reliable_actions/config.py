"""
Top-level configuration and wiring.

``ReliabilityConfig`` aggregates the per-component configs and builds a
fresh, fully wired set of components. Nothing here is a module-level
singleton: every ``build()`` returns new instances.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from .compensation.ledger import CompensationLedger, CompensationOptions
from .escalation.queue import EscalationConfig, EscalationQueue
from .events import EventBus
from .executor import ReliableExecutor
from .idempotency.cache import IdempotencyCache, IdempotencyConfig
from .monitoring.metrics import MetricsRegistry
from .persistence import FileRecordStore
from .recovery.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from .recovery.retry import RetryEngine, RetryPolicy


ENV_PREFIX = "RELIABLE_ACTIONS_"
PACKAGE_LOGGER = "reliable_actions"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {value!r}")


@dataclass
class ReliabilityComponents:
    """One wired set of components sharing metrics and events."""
    metrics: MetricsRegistry
    events: EventBus
    engine: RetryEngine
    cache: IdempotencyCache
    ledger: CompensationLedger
    executor: ReliableExecutor
    escalations: EscalationQueue


@dataclass
class ReliabilityConfig:
    """Configuration for the whole reliable execution core."""

    debug: bool = False
    idempotency: IdempotencyConfig = field(default_factory=IdempotencyConfig)
    compensation: CompensationOptions = field(default_factory=CompensationOptions)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    circuit_breaker: Optional[CircuitBreakerConfig] = None
    retry_policies: Dict[str, RetryPolicy] = field(default_factory=dict)
    default_policy: Optional[RetryPolicy] = None
    idempotency_store_path: Optional[str] = None
    escalation_store_path: Optional[str] = None
    event_history_size: int = 1000
    metrics_prefix: str = ""

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ReliabilityConfig":
        """
        Build a config from ``RELIABLE_ACTIONS_*`` variables.

        Unset variables keep their defaults. Malformed values raise ValueError.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value if value not in (None, "") else None

        def get_bool(name: str, default: bool) -> bool:
            value = get(name)
            return default if value is None else _parse_bool(ENV_PREFIX + name, value)

        def get_float(name: str, default: float) -> float:
            value = get(name)
            return default if value is None else float(value)

        idem_defaults = IdempotencyConfig()
        idempotency = IdempotencyConfig(
            default_ttl=get_float("DEFAULT_TTL", idem_defaults.default_ttl),
            decision_ttl=get_float("DECISION_TTL", idem_defaults.decision_ttl),
            classification_ttl=get_float("CLASSIFICATION_TTL", idem_defaults.classification_ttl),
            max_size=int(get_float("CACHE_MAX_SIZE", idem_defaults.max_size)),
        )

        comp_defaults = CompensationOptions()
        compensation = CompensationOptions(
            require_confirmation=get_bool("REQUIRE_CONFIRMATION", comp_defaults.require_confirmation),
            stop_on_failure=get_bool("STOP_ON_FAILURE", comp_defaults.stop_on_failure),
            timeout_per_action=get_float("COMPENSATION_TIMEOUT", comp_defaults.timeout_per_action),
        )

        esc_defaults = EscalationConfig()
        escalation = EscalationConfig(
            auto_expiry_enabled=get_bool("AUTO_EXPIRY", esc_defaults.auto_expiry_enabled),
            auto_approve_low_risk=get_bool("AUTO_APPROVE_LOW_RISK", esc_defaults.auto_approve_low_risk),
            auto_reject_high_risk=get_bool("AUTO_REJECT_HIGH_RISK", esc_defaults.auto_reject_high_risk),
            learning_feedback_enabled=get_bool("LEARNING_FEEDBACK", esc_defaults.learning_feedback_enabled),
        )

        return cls(
            debug=get_bool("DEBUG", False),
            idempotency=idempotency,
            compensation=compensation,
            escalation=escalation,
            circuit_breaker=CircuitBreakerConfig() if get_bool("CIRCUIT_BREAKER", False) else None,
            idempotency_store_path=get("IDEMPOTENCY_STORE"),
            escalation_store_path=get("ESCALATION_STORE"),
        )

    def configure_logging(self) -> None:
        """Lower the package logger to DEBUG when ``debug`` is set."""
        if self.debug:
            logging.getLogger(PACKAGE_LOGGER).setLevel(logging.DEBUG)

    def build(self) -> ReliabilityComponents:
        """Wire fresh components from this configuration."""
        self.configure_logging()

        metrics = MetricsRegistry(prefix=self.metrics_prefix)
        events = EventBus(history_size=self.event_history_size)
        breakers = (
            CircuitBreakerRegistry(default_config=self.circuit_breaker)
            if self.circuit_breaker is not None else None
        )

        engine = RetryEngine(
            policies=self.retry_policies,
            default_policy=self.default_policy,
            metrics=metrics,
            events=events,
            breakers=breakers,
        )
        cache = IdempotencyCache(
            config=self.idempotency,
            store=FileRecordStore(self.idempotency_store_path) if self.idempotency_store_path else None,
            metrics=metrics,
            events=events,
        )
        ledger = CompensationLedger(
            engine=engine,
            options=self.compensation,
            metrics=metrics,
            events=events,
        )
        executor = ReliableExecutor(engine=engine, cache=cache, ledger=ledger)
        escalations = EscalationQueue(
            executor=executor,
            config=self.escalation,
            store=FileRecordStore(self.escalation_store_path) if self.escalation_store_path else None,
            metrics=metrics,
            events=events,
        )

        return ReliabilityComponents(
            metrics=metrics,
            events=events,
            engine=engine,
            cache=cache,
            ledger=ledger,
            executor=executor,
            escalations=escalations,
        )

    def build_executor(self) -> ReliableExecutor:
        return self.build().executor


__all__ = ["ENV_PREFIX", "ReliabilityComponents", "ReliabilityConfig"]

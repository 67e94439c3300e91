"""
Reliable Actions - execution core for side-effecting actions

Runs externally visible actions against third-party services with:
retries classified by fault type, at-most-once execution per idempotency
key, reverse-order compensation of partially applied multi-step operations,
and escalation of risky actions to a human with deadline-driven expiry.
"""

import logging

from .errors import (
    FaultClassification,
    ReliabilityError,
    ClassifiedFault,
    CircuitOpenError,
    RetryCancelledError,
    AttemptTimeoutError,
    IdempotencyError,
    LedgerError,
    UnitOfWorkNotFoundError,
    UnitOfWorkStateError,
    UnrecordedActionError,
    EscalationError,
    EscalationNotFoundError,
    EscalationStateError,
)
from .models import ActionCategory, ActionDescriptor, Priority, RiskLevel
from .events import Event, EventBus
from .persistence import FileRecordStore, InMemoryRecordStore, RecordStore

# Retry policy engine
from .recovery import (
    BackoffStrategy, CancellationToken, RetryEngine, RetryPolicy, DEFAULT_POLICIES,
    CircuitBreaker, CircuitBreakerConfig, CircuitBreakerRegistry, CircuitState,
    classify, next_delay,
)

# Idempotency cache
from .idempotency import IdempotencyCache, IdempotencyConfig, IdempotencyRecord, derive_key

# Compensation ledger
from .compensation import (
    CompensationLedger, CompensationOptions, CompensationResult, CompensationStatus,
    ExecutedAction, Reversibility, UnitOfWork, UnitOfWorkState, ValidationReport,
)

# Escalation queue
from .escalation import Decision, EscalationConfig, EscalationEntry, EscalationQueue, EscalationStatus

# Monitoring
from .monitoring import (
    MetricsRegistry, Counter, Gauge, Histogram, Timer,
    JsonExporter, PrometheusExporter, LoggingExporter,
)

from .executor import ReliableExecutor
from .config import ReliabilityComponents, ReliabilityConfig

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "1.0.0"
__all__ = [
    # Errors
    "FaultClassification",
    "ReliabilityError",
    "ClassifiedFault",
    "CircuitOpenError",
    "RetryCancelledError",
    "AttemptTimeoutError",
    "IdempotencyError",
    "LedgerError",
    "UnitOfWorkNotFoundError",
    "UnitOfWorkStateError",
    "UnrecordedActionError",
    "EscalationError",
    "EscalationNotFoundError",
    "EscalationStateError",

    # Models and plumbing
    "ActionCategory",
    "ActionDescriptor",
    "Priority",
    "RiskLevel",
    "Event",
    "EventBus",
    "RecordStore",
    "InMemoryRecordStore",
    "FileRecordStore",

    # Retry
    "BackoffStrategy",
    "CancellationToken",
    "RetryEngine",
    "RetryPolicy",
    "DEFAULT_POLICIES",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    "classify",
    "next_delay",

    # Idempotency
    "IdempotencyCache",
    "IdempotencyConfig",
    "IdempotencyRecord",
    "derive_key",

    # Compensation
    "CompensationLedger",
    "CompensationOptions",
    "CompensationResult",
    "CompensationStatus",
    "ExecutedAction",
    "Reversibility",
    "UnitOfWork",
    "UnitOfWorkState",
    "ValidationReport",

    # Escalation
    "Decision",
    "EscalationConfig",
    "EscalationEntry",
    "EscalationQueue",
    "EscalationStatus",

    # Monitoring
    "MetricsRegistry",
    "Counter",
    "Gauge",
    "Histogram",
    "Timer",
    "JsonExporter",
    "PrometheusExporter",
    "LoggingExporter",

    # Wiring
    "ReliableExecutor",
    "ReliabilityComponents",
    "ReliabilityConfig",
]

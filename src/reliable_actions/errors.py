"""
Reliable Actions Error Model

This module provides the error handling framework for the reliable execution
core. Faults raised by remote calls are annotated with a retry-eligibility
category; misuse of the ledger or escalation queue raises state errors.
"""

from __future__ import annotations
from typing import Optional, Dict, Any
from enum import Enum


class FaultClassification(str, Enum):
    """Retry-eligibility category of a fault. Computed per fault, never stored."""

    TRANSIENT_SERVICE = "transient_service"
    RATE_LIMITED = "rate_limited"
    NETWORK = "network"
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    TIMEOUT = "timeout"
    UNCLASSIFIED = "unclassified"


class ReliabilityError(Exception):
    """
    Base class for all reliable-actions errors.

    Provides structured error information for logging and event payloads.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 cause: Optional[BaseException] = None):
        """
        Initialize a reliability error.

        Args:
            message: Error message
            details: Additional error details
            cause: Underlying exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        parts = [self.message]
        if self.details:
            parts.append(f"Details: {self.details}")
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary representation."""
        result: Dict[str, Any] = {
            "type": type(self).__name__,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        if self.cause:
            result["cause"] = str(self.cause)
        return result


class ClassifiedFault(ReliabilityError):
    """
    A fault annotated with its classification.

    This is the only error raised to callers of ``RetryEngine.execute`` after
    retries are exhausted or when a fault is not retryable.
    """

    def __init__(self, classification: FaultClassification, retryable: bool,
                 original_error: Optional[BaseException] = None,
                 attempts: int = 0, target: Optional[str] = None,
                 message: Optional[str] = None):
        if message is None:
            message = (
                f"[{classification.value}] {original_error}"
                if original_error is not None
                else f"[{classification.value}] operation failed"
            )
        super().__init__(
            message,
            details={"attempts": attempts, "target": target} if target else {"attempts": attempts},
            cause=original_error,
        )
        self.classification = classification
        self.retryable = retryable
        self.original_error = original_error
        self.attempts = attempts
        self.target = target

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["classification"] = self.classification.value
        result["retryable"] = self.retryable
        return result


class CircuitOpenError(ClassifiedFault):
    """Circuit for a target is open; the call was not attempted."""

    def __init__(self, target: str, failure_count: int):
        super().__init__(
            FaultClassification.TRANSIENT_SERVICE,
            retryable=False,
            target=target,
            message=f"Circuit '{target}' is open after {failure_count} failures",
        )
        self.failure_count = failure_count


class RetryCancelledError(ReliabilityError):
    """The retry loop observed a cancellation request between attempts."""

    def __init__(self, target: str, attempts: int,
                 last_error: Optional[BaseException] = None):
        super().__init__(
            f"Retry for '{target}' cancelled after {attempts} attempt(s)",
            details={"target": target, "attempts": attempts},
            cause=last_error,
        )
        self.target = target
        self.attempts = attempts


class AttemptTimeoutError(TimeoutError):
    """A single attempt exceeded the policy timeout."""

    def __init__(self, timeout: float):
        super().__init__(f"Operation timed out after {timeout:.3f}s")
        self.timeout = timeout


class IdempotencyError(ReliabilityError):
    """Idempotency cache errors."""


class LedgerError(ReliabilityError):
    """Compensation ledger errors."""


class UnitOfWorkNotFoundError(LedgerError):
    """Unknown unit of work."""

    def __init__(self, unit_of_work_id: str):
        super().__init__(f"Unit of work not found: {unit_of_work_id}",
                         details={"unit_of_work_id": unit_of_work_id})
        self.unit_of_work_id = unit_of_work_id


class UnitOfWorkStateError(LedgerError):
    """Operation not allowed in the unit's current state."""


class UnrecordedActionError(LedgerError):
    """
    An action executed but could not be recorded in its unit of work.

    The side effect happened and its result is cached, so a replay will not
    repeat it; it will not be compensated automatically either.
    """

    def __init__(self, unit_of_work_id: str, action_type: str, result: Any,
                 manual_instruction: str, cause: Optional[BaseException] = None):
        super().__init__(
            f"Action {action_type} executed but was not recorded in unit of work {unit_of_work_id}",
            details={"unit_of_work_id": unit_of_work_id, "action_type": action_type},
            cause=cause,
        )
        self.unit_of_work_id = unit_of_work_id
        self.result = result
        self.manual_instruction = manual_instruction


class EscalationError(ReliabilityError):
    """Escalation queue errors."""


class EscalationNotFoundError(EscalationError):
    """Unknown approval id."""

    def __init__(self, approval_id: str):
        super().__init__(f"Escalation not found: {approval_id}",
                         details={"approval_id": approval_id})
        self.approval_id = approval_id


class EscalationStateError(EscalationError):
    """The escalation already left the pending state."""

    def __init__(self, approval_id: str, decision: str):
        super().__init__(
            f"Escalation already decided: {approval_id} ({decision})",
            details={"approval_id": approval_id, "decision": decision},
        )
        self.approval_id = approval_id
        self.decision = decision


__all__ = [
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
]

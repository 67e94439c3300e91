"""
Compensation: reverse-order undo of partially applied multi-step operations.
"""

from .reversibility import (
    REVERSIBILITY_TABLE,
    Reversibility,
    ReversibilityRule,
    confirmation_instruction,
    get_reversibility,
    get_rule,
    manual_instruction,
    restore_parameters,
)
from .ledger import (
    CompensationLedger,
    CompensationOptions,
    CompensationResult,
    CompensationStatus,
    ExecutedAction,
    UnitOfWork,
    UnitOfWorkState,
    ValidationReport,
)

__all__ = [
    "REVERSIBILITY_TABLE",
    "Reversibility",
    "ReversibilityRule",
    "confirmation_instruction",
    "get_reversibility",
    "get_rule",
    "manual_instruction",
    "restore_parameters",
    "CompensationLedger",
    "CompensationOptions",
    "CompensationResult",
    "CompensationStatus",
    "ExecutedAction",
    "UnitOfWork",
    "UnitOfWorkState",
    "ValidationReport",
]

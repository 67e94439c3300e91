"""
Escalation queue: human decisions with deadline-driven expiry.
"""

from .queue import (
    Decision,
    EscalationConfig,
    EscalationEntry,
    EscalationQueue,
    EscalationStatus,
)

__all__ = [
    "Decision",
    "EscalationConfig",
    "EscalationEntry",
    "EscalationQueue",
    "EscalationStatus",
]

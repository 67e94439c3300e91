"""
Shared action models.

The action descriptor is the unit every component works on: the idempotency
cache keys it, the retry engine executes it, the ledger records it and the
escalation queue holds it for a human decision.
"""

from __future__ import annotations
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


class RiskLevel(str, Enum):
    """Risk framing supplied by upstream reasoning."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Priority(str, Enum):
    """Escalation priority. Sets the decision deadline."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ActionCategory(str, Enum):
    """Cache-lifetime class of an action type."""
    DECISION = "decision"
    CLASSIFICATION = "classification"
    OTHER = "other"


class ActionDescriptor(BaseModel):
    """
    Immutable description of one proposed side-effecting operation.

    Two descriptors with the same correlation id, action type, target and
    parameters (in any key order) describe the same logical action.
    """
    correlation_id: str = Field(..., min_length=1, description="Id of the signal/request this action serves")
    action_type: str = Field(..., min_length=1, description="Closed action-type tag, e.g. create_task")
    target: str = Field(default="generic", description="Remote service the action runs against")
    parameters: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict, description="Free-form context, not part of identity")

    model_config = {"frozen": True}

    @field_validator("action_type", "target", mode="before")
    @classmethod
    def _normalize_tag(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip()
        return v

    def with_parameters(self, modifications: Optional[Dict[str, Any]]) -> "ActionDescriptor":
        """Return a copy with ``modifications`` shallow-merged into the parameters."""
        if not modifications:
            return self
        merged = {**self.parameters, **modifications}
        return self.model_copy(update={"parameters": merged})

    def summary(self) -> Dict[str, Any]:
        """Short form for log lines and event payloads."""
        return {
            "correlation_id": self.correlation_id,
            "action_type": self.action_type,
            "target": self.target,
        }


def new_id(prefix: str) -> str:
    """Opaque identifier with a readable prefix."""
    return f"{prefix}_{uuid4().hex}"


__all__ = [
    "RiskLevel",
    "Priority",
    "ActionCategory",
    "ActionDescriptor",
    "new_id",
]

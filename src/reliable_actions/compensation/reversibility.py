"""
Reversibility table and remediation text.

Every action type maps to a small rule: its reversibility class and the name
of the inverse operation that undoes it. Types missing from the table are
treated as non-reversible.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional


class Reversibility(str, Enum):
    """How an executed action can be undone."""
    REVERSIBLE = "reversible"
    PARTIALLY_REVERSIBLE = "partially_reversible"
    NON_REVERSIBLE = "non_reversible"
    CONFIRMATION_REQUIRED = "confirmation_required"


@dataclass(frozen=True)
class ReversibilityRule:
    """Reversibility class of one action type and the inverse that undoes it."""
    reversibility: Reversibility
    inverse_action: Optional[str] = None


PREVIOUS_PREFIX = "previous_"


def _rule(reversibility: Reversibility, inverse: Optional[str] = None) -> ReversibilityRule:
    return ReversibilityRule(reversibility, inverse)


REVERSIBILITY_TABLE: Dict[str, ReversibilityRule] = {
    # Creation-style: undone by the matching delete
    "create_task": _rule(Reversibility.REVERSIBLE, "delete_task"),
    "create_card": _rule(Reversibility.REVERSIBLE, "delete_card"),
    "create_page": _rule(Reversibility.REVERSIBLE, "delete_page"),
    "create_folder": _rule(Reversibility.REVERSIBLE, "delete_folder"),

    # Undoing these deletes user-visible content
    "upload_file": _rule(Reversibility.CONFIRMATION_REQUIRED, "delete_file"),
    "file_document": _rule(Reversibility.CONFIRMATION_REQUIRED, "delete_file"),
    "delete_file": _rule(Reversibility.CONFIRMATION_REQUIRED),
    "delete_page": _rule(Reversibility.CONFIRMATION_REQUIRED),
    "delete_card": _rule(Reversibility.CONFIRMATION_REQUIRED),
    "delete_task": _rule(Reversibility.CONFIRMATION_REQUIRED),
    "delete_rows": _rule(Reversibility.CONFIRMATION_REQUIRED),

    # Restored from previous_* values captured in the original parameters
    "append_data": _rule(Reversibility.PARTIALLY_REVERSIBLE, "delete_rows"),
    "update_cell": _rule(Reversibility.PARTIALLY_REVERSIBLE, "update_cell"),
    "update_task": _rule(Reversibility.PARTIALLY_REVERSIBLE, "update_task"),
    "move_file": _rule(Reversibility.PARTIALLY_REVERSIBLE, "move_file"),
    "share_file": _rule(Reversibility.PARTIALLY_REVERSIBLE, "unshare_file"),

    # Outbound communication cannot be recalled
    "send_notification": _rule(Reversibility.NON_REVERSIBLE),
    "send_message": _rule(Reversibility.NON_REVERSIBLE),
    "send_email": _rule(Reversibility.NON_REVERSIBLE),
    "trigger_webhook": _rule(Reversibility.NON_REVERSIBLE),
    "log_action": _rule(Reversibility.NON_REVERSIBLE),
}

UNKNOWN_RULE = _rule(Reversibility.NON_REVERSIBLE)


def get_rule(action_type: str) -> ReversibilityRule:
    return REVERSIBILITY_TABLE.get(action_type, UNKNOWN_RULE)


def get_reversibility(action_type: str) -> Reversibility:
    return get_rule(action_type).reversibility


def restore_parameters(parameters: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Previous-state values captured in an action's parameters.

    ``{"previous_name": "A", "name": "B"}`` yields ``{"name": "A"}``.
    """
    return {
        key[len(PREVIOUS_PREFIX):]: value
        for key, value in parameters.items()
        if key.startswith(PREVIOUS_PREFIX) and len(key) > len(PREVIOUS_PREFIX)
    }


def result_id(result: Any) -> str:
    """Best-effort id of the remote object an action created."""
    if isinstance(result, Mapping):
        for key in ("id", "file_id", "page_id", "card_id", "task_id"):
            if result.get(key):
                return str(result[key])
    return "unknown"


def _truncate(value: Any, limit: int = 100) -> str:
    text = str(value)
    return text if len(text) <= limit else text[:limit] + "..."


def _timestamp(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat()


def manual_instruction(
    action_id: str,
    action_type: str,
    target: str,
    executed_at: float,
    parameters: Mapping[str, Any],
    result: Any
) -> str:
    """
    Human-readable remediation for an action that cannot be undone automatically.

    Built from the original parameters and result, never from a remote call.
    """
    lines: List[str] = [
        f"Action: {action_type} ({action_id})",
        f"Target: {target}",
        f"Executed at: {_timestamp(executed_at)}",
    ]

    if action_type in ("send_notification", "send_message"):
        lines.append("This notification/message cannot be automatically deleted")
        lines.append("Manual action: Inform recipients that the action was rolled back")
        if isinstance(result, Mapping) and result.get("channel"):
            lines.append(f"  Channel: {result['channel']}")
        if parameters.get("message"):
            lines.append(f'  Original message: "{_truncate(parameters["message"])}"')
    elif action_type == "send_email":
        lines.append("Email cannot be recalled")
        lines.append("Manual action: Send follow-up email explaining the situation")
        if parameters.get("to"):
            lines.append(f"  Recipient: {parameters['to']}")
    elif action_type == "trigger_webhook":
        lines.append("Webhook cannot be reversed")
        lines.append("Manual action: Contact the webhook recipient to handle the rollback")
        if parameters.get("url"):
            lines.append(f"  Webhook URL: {parameters['url']}")
    elif action_type == "log_action":
        lines.append("Log entries are intentionally non-reversible for audit purposes")
        lines.append("Manual action: Add a note indicating this workflow was rolled back")
    else:
        lines.append("This action is non-reversible")
        lines.append("Manual action: Review the action and take appropriate steps")
        lines.append(f"  Result: {_truncate(json.dumps(result, default=str), 500)}")

    return "\n".join(lines)


def confirmation_instruction(action_type: str, result: Any) -> str:
    return f"Manually confirm and delete: {action_type} with ID {result_id(result)}"


__all__ = [
    "Reversibility",
    "ReversibilityRule",
    "REVERSIBILITY_TABLE",
    "get_rule",
    "get_reversibility",
    "restore_parameters",
    "result_id",
    "manual_instruction",
    "confirmation_instruction",
]

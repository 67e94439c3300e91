"""
Idempotency key derivation.

A key is the SHA-256 of ``correlation_id|action_type|target|<canonical JSON
of parameters>``. Backslashes and ``|`` inside the three text fields are
escaped, so the material splits back into its fields in exactly one way.
Canonical JSON sorts object keys recursively, so the same parameters built
in a different key order yield the same key, while any change to a value,
the action type, the target or the correlation id yields a different one.
"""

from typing import Any, Dict

from ..canonjson import dumps_canonical, sha256_hex
from ..models import ActionDescriptor


KEY_SEPARATOR = "|"


def _escape(field: str) -> str:
    return field.replace("\\", "\\\\").replace(KEY_SEPARATOR, "\\" + KEY_SEPARATOR)


def key_material(action: ActionDescriptor) -> str:
    """The exact string hashed to produce the key."""
    return KEY_SEPARATOR.join([
        _escape(action.correlation_id),
        _escape(action.action_type),
        _escape(action.target),
        dumps_canonical(action.parameters),
    ])


def derive_key(action: ActionDescriptor) -> str:
    """Idempotency key of an action descriptor."""
    return sha256_hex(key_material(action))


def params_equivalent(a: Dict[str, Any], b: Dict[str, Any]) -> bool:
    """True if two parameter maps are equal up to key order."""
    return dumps_canonical(a) == dumps_canonical(b)


__all__ = ["derive_key", "key_material", "params_equivalent"]

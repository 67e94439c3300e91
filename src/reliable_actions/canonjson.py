"""
Canonical JSON encoding.

Sorts object keys recursively and encodes with no extra whitespace so that
logically-identical parameter maps always serialize to the same string,
whatever order their keys were built in.
"""

import hashlib
import json
from datetime import date, datetime
from enum import Enum
from typing import Any


def dumps_canonical(obj: Any) -> str:
    """
    Encode object as canonical JSON string.

    Deterministic key order, no extra whitespace. Recursively applies
    canonicalization to nested objects and arrays.

    Args:
        obj: Object to encode (dict, list, tuple, set, str, int, float, bool,
            None, enums, dates and pydantic models)

    Returns:
        Canonical JSON string with sorted keys and no extra whitespace

    Raises:
        TypeError: Non-string object key or a value with no stable encoding
    """
    return json.dumps(
        _canonicalize(obj),
        separators=(',', ':'),
        ensure_ascii=False,
        sort_keys=True,
        default=_fallback,
    )


def sha256_hex(text: str) -> str:
    """Hex SHA-256 digest of a UTF-8 string."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _canonicalize(v: Any) -> Any:
    """
    Recursively canonicalize a value.

    - Maps: string keys only, sorted, values canonicalized
    - Lists/tuples: elements canonicalized, order preserved
    - Sets: sorted by canonical form (no inherent order)
    - Primitives: pass through unchanged
    """
    if isinstance(v, dict):
        for k in v:
            if not isinstance(k, str):
                raise TypeError(f"Canonical JSON object keys must be strings, got {type(k).__name__}: {k!r}")
        return {k: _canonicalize(v[k]) for k in sorted(v)}
    if isinstance(v, (list, tuple)):
        return [_canonicalize(item) for item in v]
    if isinstance(v, (set, frozenset)):
        return sorted((_canonicalize(item) for item in v), key=dumps_canonical)
    return v


def _fallback(v: Any) -> Any:
    if isinstance(v, Enum):
        return v.value
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    if hasattr(v, "model_dump"):
        return _canonicalize(v.model_dump())
    raise TypeError(f"Object of type {type(v).__name__} has no canonical JSON form")

"""
Idempotency cache: at-most-once execution of logically identical actions.
"""

from .keys import derive_key, key_material, params_equivalent
from .cache import IdempotencyCache, IdempotencyConfig, IdempotencyRecord, LookupResult

__all__ = [
    "derive_key",
    "key_material",
    "params_equivalent",
    "IdempotencyCache",
    "IdempotencyConfig",
    "IdempotencyRecord",
    "LookupResult",
]

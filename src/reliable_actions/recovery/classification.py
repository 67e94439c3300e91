"""
Fault classification.

Maps an arbitrary exception raised by a remote call to a
``FaultClassification``. Rules are evaluated in a fixed priority order, first
against structured signals (flags, HTTP status, errno codes, exception types)
and then against the lower-cased message text, so that the same fault always
yields the same classification.
"""

import logging
import socket
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple

from ..errors import AttemptTimeoutError, ClassifiedFault, FaultClassification


logger = logging.getLogger(__name__)


NETWORK_ERROR_CODES = frozenset({
    "ECONNREFUSED",
    "ENOTFOUND",
    "ETIMEDOUT",
    "ECONNRESET",
    "EAI_AGAIN",
    "EHOSTUNREACH",
    "ENETUNREACH",
})

RATE_LIMIT_MARKERS = ("rate limit", "rate-limit", "ratelimit", "too many requests", "quota exceeded")
SERVER_ERROR_MARKERS = ("server error", "internal error", "service unavailable", "bad gateway",
                        "gateway timeout")
NETWORK_MARKERS = ("econnrefused", "enotfound", "etimedout", "econnreset", "eai_again",
                   "connection refused", "connection reset", "network", "dns",
                   "name or service not known", "getaddrinfo")
VALIDATION_MARKERS = ("validation", "invalid param", "invalid argument", "invalid input",
                      "is required", "missing required", "unprocessable")
AUTHORIZATION_MARKERS = ("unauthorized", "forbidden", "authentication", "invalid token",
                         "expired token", "token expired", "permission denied")
TIMEOUT_MARKERS = ("timeout", "timed out")


def _status_of(fault: BaseException) -> Optional[int]:
    """HTTP-like status carried by the fault or its response, if any."""
    for attr in ("status_code", "status"):
        value = getattr(fault, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value

    code = getattr(fault, "code", None)
    if isinstance(code, int) and not isinstance(code, bool) and 100 <= code < 600:
        return code

    response = getattr(fault, "response", None)
    if response is not None:
        for attr in ("status_code", "status"):
            value = getattr(response, attr, None)
            if isinstance(value, int) and not isinstance(value, bool):
                return value

    return None


def _error_code_of(fault: BaseException) -> Optional[str]:
    """Symbolic errno-style code, e.g. ``ECONNREFUSED``."""
    code = getattr(fault, "code", None)
    if isinstance(code, str):
        return code.upper()
    errno_value = getattr(fault, "errno", None)
    if isinstance(errno_value, str):
        return errno_value.upper()
    return None


def _flag(fault: BaseException, name: str) -> bool:
    return getattr(fault, name, False) is True


def _structured(fault: BaseException) -> Optional[FaultClassification]:
    status = _status_of(fault)
    error_code = _error_code_of(fault)

    if status == 429 or _flag(fault, "is_rate_limit"):
        return FaultClassification.RATE_LIMITED

    if (status is not None and 500 <= status < 600) or _flag(fault, "is_server_error"):
        return FaultClassification.TRANSIENT_SERVICE

    if (
        error_code in NETWORK_ERROR_CODES
        or isinstance(fault, (ConnectionError, socket.gaierror))
        or _flag(fault, "is_network_error")
    ):
        return FaultClassification.NETWORK

    if status in (400, 422) or _flag(fault, "is_validation_error"):
        return FaultClassification.VALIDATION

    if status in (401, 403) or _flag(fault, "is_auth_error"):
        return FaultClassification.AUTHORIZATION

    if isinstance(fault, (TimeoutError, AttemptTimeoutError)) or _flag(fault, "is_timeout"):
        return FaultClassification.TIMEOUT

    return None


def _textual(message: str) -> FaultClassification:
    text = message.lower()

    ordered: Tuple[Tuple[Tuple[str, ...], FaultClassification], ...] = (
        (RATE_LIMIT_MARKERS, FaultClassification.RATE_LIMITED),
        (SERVER_ERROR_MARKERS, FaultClassification.TRANSIENT_SERVICE),
        (NETWORK_MARKERS, FaultClassification.NETWORK),
        (VALIDATION_MARKERS, FaultClassification.VALIDATION),
        (AUTHORIZATION_MARKERS, FaultClassification.AUTHORIZATION),
        (TIMEOUT_MARKERS, FaultClassification.TIMEOUT),
    )
    for markers, classification in ordered:
        if any(marker in text for marker in markers):
            return classification

    return FaultClassification.UNCLASSIFIED


def classify(fault: BaseException) -> FaultClassification:
    """
    Classify a fault.

    Total and deterministic: every input yields exactly one classification,
    ``UNCLASSIFIED`` when no rule matches. A ``ClassifiedFault`` keeps the
    classification it already carries.

    Args:
        fault: Exception raised by a remote call

    Returns:
        Fault classification
    """
    if isinstance(fault, ClassifiedFault):
        return fault.classification

    classification = _structured(fault)
    if classification is not None:
        return classification

    classification = _textual(str(fault))
    if classification == FaultClassification.UNCLASSIFIED:
        logger.debug(f"No classification rule matched {type(fault).__name__}: {fault}")
    return classification


@dataclass
class RateLimitInfo:
    """Rate-limit hints carried by a fault. Times are epoch seconds."""
    reset_time: Optional[float] = None
    retry_after: Optional[float] = None
    remaining: Optional[int] = None
    limit: Optional[int] = None

    @property
    def has_hint(self) -> bool:
        return self.reset_time is not None or self.retry_after is not None


def _headers_of(fault: BaseException) -> Mapping[str, Any]:
    response = getattr(fault, "response", None)
    headers = getattr(response, "headers", None) if response is not None else None
    if headers is None:
        headers = getattr(fault, "headers", None)
    if not headers:
        return {}
    return {str(k).lower(): v for k, v in dict(headers).items()}


def _number(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def extract_rate_limit_info(fault: BaseException) -> RateLimitInfo:
    """
    Read rate-limit hints from a fault.

    Looks at ``Retry-After``, ``X-RateLimit-Reset``, ``X-RateLimit-Remaining``
    and ``X-RateLimit-Limit`` response headers, then at ``retry_after`` and
    ``reset_time`` attributes, which take precedence.
    """
    info = RateLimitInfo()
    headers = _headers_of(fault)

    reset = _number(headers.get("x-ratelimit-reset"))
    if reset is not None:
        info.reset_time = reset

    retry_after = _number(headers.get("retry-after"))
    if retry_after is not None:
        info.retry_after = retry_after

    remaining = _number(headers.get("x-ratelimit-remaining"))
    if remaining is not None:
        info.remaining = int(remaining)

    limit = _number(headers.get("x-ratelimit-limit"))
    if limit is not None:
        info.limit = int(limit)

    attr_reset = _number(getattr(fault, "reset_time", None))
    if attr_reset is not None:
        info.reset_time = attr_reset

    attr_retry_after = _number(getattr(fault, "retry_after", None))
    if attr_retry_after is not None:
        info.retry_after = attr_retry_after

    return info


__all__ = [
    "classify",
    "extract_rate_limit_info",
    "RateLimitInfo",
    "NETWORK_ERROR_CODES",
]

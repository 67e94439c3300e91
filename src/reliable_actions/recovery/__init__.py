"""
Retry policy engine.

Provides fault classification, backoff calculation, the retry engine and
per-target circuit breakers.
"""

from .classification import RateLimitInfo, classify, extract_rate_limit_info
from .retry import (
    BackoffStrategy,
    CancellationToken,
    DEFAULT_POLICIES,
    RATE_LIMIT_BUFFER,
    RetryEngine,
    RetryPolicy,
    TargetStatistics,
    is_retryable,
    next_delay,
)
from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerRegistry, CircuitState

__all__ = [
    "RateLimitInfo",
    "classify",
    "extract_rate_limit_info",
    "BackoffStrategy",
    "CancellationToken",
    "DEFAULT_POLICIES",
    "RATE_LIMIT_BUFFER",
    "RetryEngine",
    "RetryPolicy",
    "TargetStatistics",
    "is_retryable",
    "next_delay",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
]

from .breaker import BreakerOptions, BreakerRegistry, CircuitBreaker, CircuitState
from .json_safe import json_safe
from .retry import BackoffPolicy, Retrier, RetryPolicy, compute_backoff

__all__ = [
    "BackoffPolicy",
    "BreakerOptions",
    "BreakerRegistry",
    "CircuitBreaker",
    "CircuitState",
    "Retrier",
    "RetryPolicy",
    "compute_backoff",
    "json_safe",
]

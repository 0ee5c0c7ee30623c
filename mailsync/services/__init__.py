"""Sync support services module."""

from mailsync.services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from mailsync.services.error_classification import ClassifiedError, ErrorType, classify_error
from mailsync.services.rate_limiter import RateLimiter, RateLimiterConfig
from mailsync.services.retry_engine import RetryConfig, execute_with_retry

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "ClassifiedError",
    "ErrorType",
    "classify_error",
    "RateLimiter",
    "RateLimiterConfig",
    "RetryConfig",
    "execute_with_retry",
]

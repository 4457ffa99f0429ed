"""Resilience module for circuit breakers and retry logic."""

from tokenledger.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerError,
    CircuitState,
)
from tokenledger.resilience.retry import RetryPolicy, call_with_retry

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitState",
    "RetryPolicy",
    "call_with_retry",
]

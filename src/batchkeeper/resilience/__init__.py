from batchkeeper.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from batchkeeper.resilience.retry import RetryConfig, RetryPolicy, compute_delay, is_retryable_error

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    "RetryConfig",
    "RetryPolicy",
    "compute_delay",
    "is_retryable_error",
]

"""Resilience patterns for external collaborators.

- Circuit breaker around the shared cache backend
- Timeout policy around exercise generation
"""
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    CircuitStats,
)

from .timeout import TimeoutPolicy

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "CircuitStats",
    "TimeoutPolicy",
]

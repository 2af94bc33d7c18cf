"""Core module - configuration, security, errors and resilience helpers"""

from .circuit_breaker import (
    AsyncCircuitBreaker,
    CircuitBreakerOpen,
    CircuitBreakerStats,
    CircuitState,
    get_circuit_breaker_health,
    get_opportunity_source_circuit_breaker,
    get_oracle_circuit_breaker,
    get_relay_circuit_breaker,
)

__all__ = [
    "AsyncCircuitBreaker",
    "CircuitBreakerOpen",
    "CircuitBreakerStats",
    "CircuitState",
    "get_circuit_breaker_health",
    "get_opportunity_source_circuit_breaker",
    "get_oracle_circuit_breaker",
    "get_relay_circuit_breaker",
]

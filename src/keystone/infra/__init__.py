"""Infrastructure utilities: circuit breaking for remote calls."""

from __future__ import annotations

from keystone.infra.circuit_breaker import (
    BreakerState,
    CircuitBreaker,
    CircuitOpenError,
    api_breaker,
)

__all__ = [
    "BreakerState",
    "CircuitBreaker",
    "CircuitOpenError",
    "api_breaker",
]

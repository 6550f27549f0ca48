"""Synchronous three-state circuit breaker.

Key behavior notes:
  - ``is_open()`` doubles as the ``OPEN -> HALF_OPEN`` transition. The caller
    that observes the transition owns the single half-open probe; concurrent
    callers keep seeing an open circuit until the probe is resolved.
  - Any failure while ``HALF_OPEN`` re-opens the circuit immediately with a
    fresh failure timestamp; the failure count keeps accumulating.
  - A probe abandoned through cancellation or an excluded exception is
    released back to ``OPEN`` without counting as a failure.
"""

from beacon_core.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from beacon_core.circuit_breaker.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
)
from beacon_core.circuit_breaker.metrics import (
    BreakerListener,
    TelemetryBreakerListener,
)
from beacon_core.circuit_breaker.registry import BreakerRegistry, BreakerScope
from beacon_core.circuit_breaker.state import BreakerSnapshot, CircuitState

__all__ = [
    "BreakerListener",
    "BreakerRegistry",
    "BreakerScope",
    "BreakerSnapshot",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitOpenError",
    "CircuitState",
    "TelemetryBreakerListener",
]

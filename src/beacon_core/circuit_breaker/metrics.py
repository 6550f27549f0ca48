"""Observability hooks for circuit breakers."""

from typing import Protocol

from beacon_core.circuit_breaker.state import CircuitState
from beacon_core.telemetry import Severity, TelemetrySink, emit_event


class BreakerListener(Protocol):
    """Listener protocol for circuit breaker events.

    Hooks run synchronously inside the breaker's state transition; they must
    not block.
    """

    def on_state_change(
        self,
        name: str,
        old: CircuitState,
        new: CircuitState,
        failure_count: int,
    ) -> None:
        """Handle circuit state transitions."""

    def on_call_rejected(self, name: str) -> None:
        """Handle call rejection while the circuit is open."""


_TRANSITION_EVENTS: dict[CircuitState, tuple[str, Severity]] = {
    CircuitState.OPEN: ("circuit_breaker_opened", "critical"),
    CircuitState.HALF_OPEN: ("circuit_breaker_half_open", "info"),
    CircuitState.CLOSED: ("circuit_breaker_closed", "info"),
}


class TelemetryBreakerListener:
    """Forward breaker transitions and rejections to a telemetry sink."""

    def __init__(self, sink: TelemetrySink, *, source: str | None = None) -> None:
        """Create a listener reporting to ``sink``.

        Args:
            sink: Monitoring sink receiving the events.
            source: Event source name. Defaults to the breaker name.
        """
        self._sink = sink
        self._source = source

    def on_state_change(
        self,
        name: str,
        old: CircuitState,
        new: CircuitState,
        failure_count: int,
    ) -> None:
        """Report one transition with the resulting state and failure count."""
        event, severity = _TRANSITION_EVENTS[new]
        emit_event(
            self._sink,
            self._source or name,
            event,
            severity,
            breaker=name,
            previous_state=str(old),
            state=str(new),
            failure_count=failure_count,
        )

    def on_call_rejected(self, name: str) -> None:
        """Report a call short-circuited by an open breaker."""
        emit_event(
            self._sink,
            self._source or name,
            "circuit_breaker_rejected",
            "warning",
            breaker=name,
        )

"""Monitoring sink for breaker transitions, fallback usage and retries.

Telemetry is best-effort: a failing sink is logged and never affects the call
that emitted the event.
"""

from __future__ import annotations

from collections import Counter, deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Literal, Protocol

from beacon_core.logging import (
    StructuredLogger,
    get_logger,
    log_error,
    log_info,
    log_warning,
)

Severity = Literal["info", "warning", "error", "critical"]
SEVERITIES: tuple[Severity, ...] = ("info", "warning", "error", "critical")

_logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TelemetrySink(Protocol):
    """External collaborator receiving operational events."""

    def record_event(
        self,
        source: str,
        event: str,
        severity: Severity,
        attributes: Mapping[str, object] | None = None,
    ) -> None:
        """Record one monitoring event."""


@dataclass(frozen=True)
class TelemetryEvent:
    """One recorded monitoring event."""

    timestamp: datetime
    source: str
    event: str
    severity: Severity
    attributes: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Freeze attributes to keep recorded events read-only."""
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))


class LoggingTelemetrySink:
    """Sink that writes events to the structured log."""

    def __init__(self, logger: StructuredLogger | None = None) -> None:
        self._logger = _logger if logger is None else logger

    def record_event(
        self,
        source: str,
        event: str,
        severity: Severity,
        attributes: Mapping[str, object] | None = None,
    ) -> None:
        """Log the event at a level derived from ``severity``."""
        fields = dict(attributes or {})
        if severity in ("error", "critical"):
            log_error(
                self._logger,
                "telemetry.event",
                source=source,
                telemetry_event=event,
                severity=severity,
                **fields,
            )
        elif severity == "warning":
            log_warning(
                self._logger,
                "telemetry.event",
                source=source,
                telemetry_event=event,
                severity=severity,
                **fields,
            )
        else:
            log_info(
                self._logger,
                "telemetry.event",
                source=source,
                telemetry_event=event,
                severity=severity,
                **fields,
            )


class InMemoryTelemetrySink:
    """Bounded in-process event history with simple querying."""

    def __init__(self, max_events: int = 1000) -> None:
        if max_events < 1:
            raise ValueError("max_events must be >= 1")
        self._events: deque[TelemetryEvent] = deque(maxlen=max_events)

    def record_event(
        self,
        source: str,
        event: str,
        severity: Severity,
        attributes: Mapping[str, object] | None = None,
    ) -> None:
        """Append an event, dropping the oldest once the history is full."""
        self._events.append(
            TelemetryEvent(
                timestamp=_utcnow(),
                source=source,
                event=event,
                severity=severity,
                attributes=dict(attributes or {}),
            )
        )

    @property
    def events(self) -> tuple[TelemetryEvent, ...]:
        """Return all retained events, oldest first."""
        return tuple(self._events)

    def recent_events(
        self,
        source: str | None = None,
        severity: Severity | None = None,
        limit: int = 100,
    ) -> list[TelemetryEvent]:
        """Return up to ``limit`` most recent events, newest first."""
        selected = [
            item
            for item in reversed(self._events)
            if (source is None or item.source == source)
            and (severity is None or item.severity == severity)
        ]
        return selected[:limit]

    def summary(self) -> dict[str, object]:
        """Count retained events by severity, source and event name."""
        by_severity = dict.fromkeys(SEVERITIES, 0)
        by_severity.update(Counter(item.severity for item in self._events))
        return {
            "total_events": len(self._events),
            "by_severity": by_severity,
            "by_source": dict(Counter(item.source for item in self._events)),
            "by_event": dict(Counter(item.event for item in self._events)),
        }

    def clear(self) -> None:
        """Drop all retained events."""
        self._events.clear()


def emit_event(
    sink: TelemetrySink | None,
    source: str,
    event: str,
    severity: Severity,
    **attributes: object,
) -> None:
    """Forward one event to ``sink``; sink failures are logged and suppressed."""
    if sink is None:
        return
    try:
        sink.record_event(source, event, severity, attributes)
    except Exception:
        _logger.warning(
            "telemetry.sink_failed",
            exc_info=True,
            source=source,
            telemetry_event=event,
        )

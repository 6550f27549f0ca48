"""Online/offline tracking with backoff-scheduled reconnection probes."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Protocol

from beacon_core.health import HealthProbe
from beacon_core.logging import (
    StructuredLogger,
    get_logger,
    log_exception,
    log_info,
    log_warning,
)
from beacon_core.retry import backoff_delay, build_interruptible_sleep
from beacon_core.telemetry import TelemetrySink, emit_event

ConnectionCallback = Callable[[bool], None]
Unsubscribe = Callable[[], None]

_logger = get_logger(__name__)


@dataclass(frozen=True)
class ConnectionState:
    """Connectivity as seen by the monitor."""

    is_online: bool
    reconnect_attempts: int


@dataclass(frozen=True)
class ReconnectPolicy:
    """Backoff bounds for reconnection probes, in seconds."""

    base_delay: float = 2.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: float = 0.3
    max_attempts: int = 5

    def __post_init__(self) -> None:
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if self.jitter < 0:
            raise ValueError("jitter must be >= 0")
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")


class ConnectivityObserver(Protocol):
    """Platform connectivity signal source."""

    def is_online(self) -> bool:
        """Return the platform's current connectivity verdict."""

    def attach(
        self,
        on_online: Callable[[], None],
        on_offline: Callable[[], None],
    ) -> None:
        """Start delivering online/offline signals to the given callbacks."""

    def detach(self) -> None:
        """Stop delivering signals."""


class ManualConnectivityObserver:
    """Observer driven by host code, for example from OS network events."""

    def __init__(self, *, online: bool = True) -> None:
        self._online = online
        self._on_online: Callable[[], None] | None = None
        self._on_offline: Callable[[], None] | None = None

    def is_online(self) -> bool:
        """Return the last signalled connectivity."""
        return self._online

    def attach(
        self,
        on_online: Callable[[], None],
        on_offline: Callable[[], None],
    ) -> None:
        """Register signal callbacks."""
        self._on_online = on_online
        self._on_offline = on_offline

    def detach(self) -> None:
        """Drop signal callbacks."""
        self._on_online = None
        self._on_offline = None

    def set_online(self) -> None:
        """Signal that the platform reports connectivity."""
        self._online = True
        if self._on_online is not None:
            self._on_online()

    def set_offline(self) -> None:
        """Signal that the platform lost connectivity."""
        self._online = False
        if self._on_offline is not None:
            self._on_offline()


class ConnectionMonitor:
    """Track connectivity and probe for recovery while offline.

    Going offline starts a probe loop whose delays come from ``backoff_delay``
    with the policy's (longer) bounds. A successful probe or a platform online
    signal restores the online state and resets ``reconnect_attempts``. After
    ``max_attempts`` failed probes the loop stops; the monitor then stays
    offline until the platform reports connectivity again.

    Probing needs a running event loop. Signals received outside one still
    update the state, but no probe is scheduled.
    """

    def __init__(
        self,
        probe: HealthProbe,
        *,
        observer: ConnectivityObserver | None = None,
        policy: ReconnectPolicy | None = None,
        telemetry: TelemetrySink | None = None,
        source: str = "connection-monitor",
        rng: Callable[[], float] = random.random,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Create a monitor initialised from ``observer`` (online without one).

        Args:
            probe: Cheap health check returning whether the upstream answers.
            observer: Platform connectivity signal source.
            policy: Reconnection backoff bounds.
            telemetry: Optional monitoring sink.
            source: Telemetry source name.
            rng: Source of jitter in ``[0, 1)``.
            logger: Structured logger for connectivity events.
        """
        self._probe = probe
        self._observer = observer
        self._policy = ReconnectPolicy() if policy is None else policy
        self._telemetry = telemetry
        self._source = source
        self._rng = rng
        self._logger = _logger if logger is None else logger
        self._online = True if observer is None else bool(observer.is_online())
        self._reconnect_attempts = 0
        self._subscribers: list[ConnectionCallback] = []
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        if observer is not None:
            observer.attach(self.handle_online, self.handle_offline)
        if not self._online:
            self._start_reconnect_loop()

    @property
    def is_online(self) -> bool:
        """Return the current connectivity verdict."""
        return self._online

    @property
    def reconnect_attempts(self) -> int:
        """Return probes scheduled since connectivity was last confirmed."""
        return self._reconnect_attempts

    @property
    def state(self) -> ConnectionState:
        """Return a snapshot of the connection state."""
        return ConnectionState(
            is_online=self._online,
            reconnect_attempts=self._reconnect_attempts,
        )

    @property
    def is_probing(self) -> bool:
        """Return whether a reconnect loop is currently scheduled."""
        return (
            self._task is not None
            and not self._task.done()
            and not self._stop_event.is_set()
        )

    def subscribe(self, callback: ConnectionCallback) -> Unsubscribe:
        """Register ``callback`` and invoke it once with the current state."""
        self._subscribers.append(callback)
        self._invoke(callback, self._online)

        def _unsubscribe() -> None:
            with suppress(ValueError):
                self._subscribers.remove(callback)

        return _unsubscribe

    def _invoke(self, callback: ConnectionCallback, is_online: bool) -> None:
        try:
            callback(is_online)
        except Exception:
            log_exception(
                self._logger,
                "connection.subscriber_failed",
                callback=getattr(callback, "__name__", repr(callback)),
            )

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            self._invoke(callback, self._online)

    def handle_online(self) -> None:
        """Apply a platform online signal; no probe is needed."""
        self._mark_online(trigger="signal")

    def handle_offline(self) -> None:
        """Apply a platform offline signal and start probing for recovery."""
        if self._online:
            self._online = False
            log_warning(self._logger, "connection.lost")
            emit_event(self._telemetry, self._source, "connection_lost", "warning")
            self._notify()
        self._start_reconnect_loop()

    async def check_now(self) -> bool:
        """Probe once immediately; success marks the monitor online."""
        ok = await self._probe_once()
        if ok:
            self._mark_online(trigger="probe")
        return ok

    def _mark_online(self, *, trigger: str) -> None:
        self._reconnect_attempts = 0
        self._stop_reconnect_loop()
        if self._online:
            return
        self._online = True
        log_info(self._logger, "connection.restored", trigger=trigger)
        emit_event(
            self._telemetry,
            self._source,
            "connection_restored",
            "info",
            trigger=trigger,
        )
        self._notify()

    def _stop_reconnect_loop(self) -> None:
        self._stop_event.set()

    def _start_reconnect_loop(self) -> None:
        if self.is_probing:
            return
        if self._reconnect_attempts >= self._policy.max_attempts:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log_warning(
                self._logger,
                "connection.reconnect_unscheduled",
                reason="no running event loop",
            )
            return
        self._stop_event = asyncio.Event()
        self._task = loop.create_task(
            self._reconnect_loop(self._stop_event),
            name="connection-monitor-reconnect",
        )

    async def _probe_once(self) -> bool:
        try:
            return bool(await self._probe())
        except Exception as exc:
            log_warning(
                self._logger,
                "connection.probe_failed",
                error=f"{exc.__class__.__name__}: {exc}",
            )
            return False

    async def _reconnect_loop(self, stop_event: asyncio.Event) -> None:
        sleep = build_interruptible_sleep(stop_event)
        policy = self._policy
        while not self._online and not stop_event.is_set():
            if self._reconnect_attempts >= policy.max_attempts:
                log_warning(
                    self._logger,
                    "connection.reconnect_exhausted",
                    attempts=self._reconnect_attempts,
                )
                emit_event(
                    self._telemetry,
                    self._source,
                    "reconnect_exhausted",
                    "error",
                    attempts=self._reconnect_attempts,
                )
                return

            delay = backoff_delay(
                self._reconnect_attempts,
                policy.base_delay,
                policy.max_delay,
                policy.multiplier,
                jitter=policy.jitter,
                rng=self._rng,
            )
            self._reconnect_attempts += 1
            log_info(
                self._logger,
                "connection.reconnect_scheduled",
                attempt=self._reconnect_attempts,
                delay_seconds=delay,
            )
            await sleep(delay)
            if self._online or stop_event.is_set():
                return
            ok = await self._probe_once()
            if stop_event.is_set():
                return
            if ok:
                self._mark_online(trigger="probe")
                return

    async def close(self) -> None:
        """Stop probing, detach from the observer and drop subscribers."""
        task = self._task
        self._stop_reconnect_loop()
        if self._observer is not None:
            self._observer.detach()
        self._subscribers.clear()
        if task is None or task.done():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from beacon_core.connection import (
    ConnectionMonitor,
    ConnectionState,
    ManualConnectivityObserver,
    ReconnectPolicy,
)
from beacon_core.telemetry import InMemoryTelemetrySink
from tests.beacon_core.support.fakes import FakeLogger

FAST_POLICY = ReconnectPolicy(base_delay=0.0, max_delay=0.0, max_attempts=3)


class _ScriptedProbe:
    def __init__(self, *results: bool) -> None:
        self._results = list(results) or [False]
        self.calls = 0

    async def __call__(self) -> bool:
        self.calls += 1
        if len(self._results) > 1:
            return self._results.pop(0)
        return self._results[0]


async def _wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"base_delay": -1.0}, "base_delay must be >= 0"),
        ({"base_delay": 5.0, "max_delay": 1.0}, "max_delay must be >= base_delay"),
        ({"multiplier": 0.5}, "multiplier must be >= 1"),
        ({"jitter": -0.1}, "jitter must be >= 0"),
        ({"max_attempts": -1}, "max_attempts must be >= 0"),
    ],
)
def test_reconnect_policy_validation(
    overrides: dict[str, float],
    message: str,
) -> None:
    with pytest.raises(ValueError, match=message):
        ReconnectPolicy(**overrides)  # type: ignore[arg-type]


def test_monitor_without_observer_starts_online() -> None:
    monitor = ConnectionMonitor(_ScriptedProbe(True))

    assert monitor.state == ConnectionState(is_online=True, reconnect_attempts=0)
    assert monitor.is_probing is False


def test_subscribe_fires_immediately_and_unsubscribe_stops_delivery() -> None:
    observer = ManualConnectivityObserver()
    monitor = ConnectionMonitor(_ScriptedProbe(True), observer=observer)
    seen: list[bool] = []

    unsubscribe = monitor.subscribe(seen.append)
    unsubscribe()
    unsubscribe()
    observer.set_offline()

    assert seen == [True]


def test_offline_signal_without_event_loop_updates_state_only(
    fake_logger: FakeLogger,
) -> None:
    observer = ManualConnectivityObserver()
    monitor = ConnectionMonitor(
        _ScriptedProbe(True),
        observer=observer,
        logger=fake_logger,
    )

    observer.set_offline()

    assert monitor.is_online is False
    assert monitor.is_probing is False
    assert fake_logger.events == ["connection.lost", "connection.reconnect_unscheduled"]


def test_failing_subscriber_does_not_block_others(fake_logger: FakeLogger) -> None:
    observer = ManualConnectivityObserver()
    monitor = ConnectionMonitor(
        _ScriptedProbe(True),
        observer=observer,
        logger=fake_logger,
    )
    seen: list[bool] = []

    def _explode(is_online: bool) -> None:
        raise RuntimeError("render failed")

    monitor.subscribe(_explode)
    monitor.subscribe(seen.append)

    assert seen == [True]
    assert fake_logger.events == ["connection.subscriber_failed"]


@pytest.mark.asyncio
async def test_offline_signal_probes_until_reconnected() -> None:
    observer = ManualConnectivityObserver()
    sink = InMemoryTelemetrySink()
    probe = _ScriptedProbe(False, True)
    monitor = ConnectionMonitor(
        probe,
        observer=observer,
        policy=FAST_POLICY,
        telemetry=sink,
        source="monitor",
    )
    seen: list[bool] = []
    monitor.subscribe(seen.append)

    observer.set_offline()
    assert monitor.is_probing is True
    await _wait_until(lambda: monitor.is_online)

    assert probe.calls == 2
    assert monitor.reconnect_attempts == 0
    assert seen == [True, False, True]
    assert [item.event for item in sink.events] == [
        "connection_lost",
        "connection_restored",
    ]
    await monitor.close()


@pytest.mark.asyncio
async def test_reconnect_probes_stop_after_max_attempts(
    fake_logger: FakeLogger,
) -> None:
    observer = ManualConnectivityObserver()
    sink = InMemoryTelemetrySink()
    probe = _ScriptedProbe(False)
    monitor = ConnectionMonitor(
        probe,
        observer=observer,
        policy=ReconnectPolicy(
            base_delay=0.001,
            max_delay=0.004,
            jitter=0.0,
            max_attempts=3,
        ),
        telemetry=sink,
        logger=fake_logger,
    )

    observer.set_offline()
    await _wait_until(lambda: not monitor.is_probing)

    assert probe.calls == 3
    assert monitor.is_online is False
    assert monitor.reconnect_attempts == 3
    scheduled = fake_logger.fields_for("connection.reconnect_scheduled")
    assert [fields["delay_seconds"] for fields in scheduled] == [0.001, 0.002, 0.004]
    assert sink.recent_events(limit=1)[0].event == "reconnect_exhausted"
    await monitor.close()


@pytest.mark.asyncio
async def test_platform_online_signal_resets_attempts_and_stops_probing() -> None:
    observer = ManualConnectivityObserver()
    monitor = ConnectionMonitor(
        _ScriptedProbe(False),
        observer=observer,
        policy=ReconnectPolicy(base_delay=10.0, max_delay=10.0, max_attempts=3),
    )

    observer.set_offline()
    await asyncio.sleep(0)
    assert monitor.reconnect_attempts == 1

    observer.set_online()

    assert monitor.is_online is True
    assert monitor.reconnect_attempts == 0
    assert monitor.is_probing is False
    await monitor.close()


@pytest.mark.asyncio
async def test_check_now_marks_monitor_online() -> None:
    observer = ManualConnectivityObserver(online=False)
    monitor = ConnectionMonitor(
        _ScriptedProbe(True),
        observer=observer,
        policy=ReconnectPolicy(base_delay=10.0, max_delay=10.0),
    )
    assert monitor.is_online is False

    assert await monitor.check_now() is True

    assert monitor.is_online is True
    await monitor.close()


@pytest.mark.asyncio
async def test_check_now_treats_probe_errors_as_offline(
    fake_logger: FakeLogger,
) -> None:
    async def _probe() -> bool:
        raise OSError("unreachable")

    monitor = ConnectionMonitor(_probe, logger=fake_logger)

    assert await monitor.check_now() is False
    assert fake_logger.events == ["connection.probe_failed"]


@pytest.mark.asyncio
async def test_close_cancels_probe_loop_and_detaches_observer() -> None:
    observer = ManualConnectivityObserver(online=False)
    monitor = ConnectionMonitor(
        _ScriptedProbe(False),
        observer=observer,
        policy=ReconnectPolicy(base_delay=10.0, max_delay=10.0),
    )
    seen: list[bool] = []
    monitor.subscribe(seen.append)
    assert monitor.is_probing is True

    await monitor.close()
    observer.set_online()

    assert monitor.is_probing is False
    assert monitor.is_online is False
    assert seen == [False]

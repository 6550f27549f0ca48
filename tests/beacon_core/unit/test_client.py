from __future__ import annotations

import httpx
import pytest
from pytest_httpx import HTTPXMock

import beacon_core.cache.response_cache as cache_mod
import beacon_core.client as client_mod
from beacon_core.cache import CacheStats, ResponseCache
from beacon_core.circuit_breaker import (
    BreakerRegistry,
    BreakerScope,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
)
from beacon_core.client import ApiResponse, ResilientClient, create_client
from beacon_core.connection import (
    ConnectionMonitor,
    ManualConnectivityObserver,
    ReconnectPolicy,
)
from beacon_core.errors import HttpError, NetworkError
from beacon_core.retry import RetryOptions
from beacon_core.settings import ClientSettings
from beacon_core.telemetry import InMemoryTelemetrySink
from tests.beacon_core.support.fakes import (
    FakeClock,
    FakeLogger,
    RecordingSleep,
    ScriptedTransport,
    ok,
)

pytestmark = pytest.mark.asyncio

BASE_URL = "https://api.example.test"
RISKS_KEY = f"GET:{BASE_URL}/risks:"


@pytest.fixture
def clock(monkeypatch: pytest.MonkeyPatch, fake_clock: FakeClock) -> FakeClock:
    monkeypatch.setattr(cache_mod, "_utcnow", fake_clock.now)
    return fake_clock


def _breakers(
    *,
    failure_threshold: int = 5,
    scope: BreakerScope = BreakerScope.CLIENT,
) -> BreakerRegistry:
    return BreakerRegistry(
        "api",
        scope=scope,
        config=CircuitBreakerConfig(failure_threshold=failure_threshold),
    )


def _client(
    transport: ScriptedTransport,
    sleep: RecordingSleep,
    *,
    cache: ResponseCache[object] | None = None,
    breakers: BreakerRegistry | None = None,
    monitor: ConnectionMonitor | None = None,
    telemetry: InMemoryTelemetrySink | None = None,
    retry_options: RetryOptions | None = None,
    enable_cache: bool = True,
) -> ResilientClient:
    return ResilientClient(
        transport,
        name="api",
        base_url=f"{BASE_URL}/",
        retry_options=(
            RetryOptions(max_retries=2, base_delay=1.0, jitter=0.0)
            if retry_options is None
            else retry_options
        ),
        cache=cache,
        breakers=breakers,
        monitor=monitor,
        telemetry=telemetry,
        enable_cache=enable_cache,
        default_headers={"X-Client": "beacon-web"},
        timeout=5.0,
        sleep=sleep,
        logger=FakeLogger(),
    )


def _offline_monitor() -> ConnectionMonitor:
    async def _probe() -> bool:
        return False

    return ConnectionMonitor(
        _probe,
        observer=ManualConnectivityObserver(online=False),
        policy=ReconnectPolicy(base_delay=10.0, max_delay=10.0),
    )


async def test_build_url_joins_relative_and_keeps_absolute(
    recording_sleep: RecordingSleep,
) -> None:
    client = _client(ScriptedTransport(), recording_sleep)

    assert client.build_url("/risks") == f"{BASE_URL}/risks"
    assert client.build_url("risks") == f"{BASE_URL}/risks"
    assert client.build_url("https://other.test/x") == "https://other.test/x"


async def test_get_sends_merged_headers_and_writes_through(
    clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> None:
    transport = ScriptedTransport(ok({"risks": [1]}))
    client = _client(transport, recording_sleep)

    response = await client.get("/risks", headers={"X-Trace": "t-1"})

    assert response == ApiResponse(
        data={"risks": [1]},
        status=200,
        headers={"content-type": "application/json"},
    )
    assert transport.calls == [
        {
            "method": "GET",
            "url": f"{BASE_URL}/risks",
            "headers": {"X-Client": "beacon-web", "X-Trace": "t-1"},
            "body": None,
            "timeout": 5.0,
        }
    ]
    assert client.get_cache_stats() == CacheStats(size=1, keys=(RISKS_KEY,))


async def test_fresh_cache_hit_skips_network(
    clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> None:
    transport = ScriptedTransport(ok({"risks": [1]}))
    client = _client(transport, recording_sleep)
    await client.get("/risks", ttl=60.0)

    clock.advance(30.0)
    cached = await client.get("/risks")

    assert cached.from_cache is True
    assert cached.stale is False
    assert cached.data == {"risks": [1]}
    assert len(transport.calls) == 1


async def test_use_cache_false_refreshes_but_still_writes(
    clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> None:
    transport = ScriptedTransport(ok("first"), ok("second"))
    client = _client(transport, recording_sleep)
    await client.get("/risks")

    refreshed = await client.get("/risks", use_cache=False)
    cached = await client.get("/risks")

    assert refreshed.from_cache is False
    assert refreshed.data == "second"
    assert cached.data == "second"
    assert len(transport.calls) == 2


async def test_disabled_cache_never_reads_or_writes(
    clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> None:
    transport = ScriptedTransport(ok("live"))
    client = _client(transport, recording_sleep, enable_cache=False)

    await client.get("/risks")
    await client.get("/risks")

    assert len(transport.calls) == 2
    assert client.get_cache_stats().size == 0


async def test_get_retries_transient_failures_and_reports_them(
    clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> None:
    seen: list[int] = []
    sink = InMemoryTelemetrySink()
    transport = ScriptedTransport(
        HttpError("HTTP 503: Service Unavailable", status=503),
        NetworkError("Request timeout", status=408),
        ok("recovered"),
    )
    client = _client(
        transport,
        recording_sleep,
        telemetry=sink,
        retry_options=RetryOptions(
            max_retries=3,
            base_delay=1.0,
            jitter=0.0,
            on_retry=lambda attempt, error: seen.append(attempt),
        ),
    )

    response = await client.get("/risks")

    assert response.data == "recovered"
    assert len(transport.calls) == 3
    assert recording_sleep.delays == [1.0, 2.0]
    assert seen == [1, 2]
    retries = [item for item in sink.events if item.event == "retry_attempt"]
    assert [item.attributes["attempt"] for item in retries] == [1, 2]
    assert retries[0].attributes["url"] == f"{BASE_URL}/risks"
    assert client.get_breaker_state().failure_count == 0


async def test_terminal_failure_raises_after_single_attempt(
    clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> None:
    not_found = HttpError("HTTP 404: Not Found", status=404)
    transport = ScriptedTransport(not_found)
    client = _client(transport, recording_sleep)

    with pytest.raises(HttpError) as excinfo:
        await client.get("/risks/missing")

    assert excinfo.value is not_found
    assert len(transport.calls) == 1
    assert recording_sleep.delays == []


async def test_exhausted_retries_record_one_breaker_failure(
    clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> None:
    transport = ScriptedTransport(HttpError("HTTP 500", status=500))
    client = _client(transport, recording_sleep)

    with pytest.raises(HttpError):
        await client.get("/risks")

    assert len(transport.calls) == 3
    assert client.get_breaker_state().failure_count == 1
    assert client.get_breaker_state().state == CircuitState.CLOSED


async def test_open_breaker_serves_cached_value_without_network(
    clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> None:
    sink = InMemoryTelemetrySink()
    transport = ScriptedTransport(ok({"risks": [1]}))
    client = _client(
        transport,
        recording_sleep,
        breakers=_breakers(failure_threshold=1),
        telemetry=sink,
    )
    await client.get("/risks", ttl=5.0)
    transport.script(HttpError("HTTP 500", status=500))
    with pytest.raises(HttpError):
        await client.post("/risks", {"name": "flood"})
    assert client.get_breaker_state().state == CircuitState.OPEN
    clock.advance(10.0)
    calls_before = len(transport.calls)

    response = await client.get("/risks")

    assert response.from_cache is True
    assert response.stale is True
    assert response.data == {"risks": [1]}
    assert len(transport.calls) == calls_before
    fallback = sink.recent_events(source="api", severity="warning", limit=1)[0]
    assert fallback.event == "fallback_used"
    assert fallback.attributes["reason"] == "CircuitOpenError"


async def test_open_breaker_without_cached_value_raises_circuit_open(
    clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> None:
    transport = ScriptedTransport(HttpError("HTTP 500", status=500))
    client = _client(
        transport,
        recording_sleep,
        breakers=_breakers(failure_threshold=1),
        retry_options=RetryOptions(max_retries=0),
    )
    with pytest.raises(HttpError):
        await client.get("/risks")

    with pytest.raises(CircuitOpenError) as excinfo:
        await client.get("/alerts")

    assert excinfo.value.breaker_name == "api"
    assert len(transport.calls) == 1


async def test_failed_get_falls_back_to_expired_cache(
    clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> None:
    transport = ScriptedTransport(ok("cached"))
    client = _client(transport, recording_sleep)
    await client.get("/risks", ttl=1.0)
    clock.advance(5.0)
    transport.script(NetworkError("Network connection failed", retryable=True))

    response = await client.get("/risks")

    assert response == ApiResponse(
        data="cached",
        status=200,
        headers={},
        from_cache=True,
        stale=True,
    )
    assert len(transport.calls) == 4


async def test_mutations_are_never_cached_or_rescued(
    clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> None:
    transport = ScriptedTransport(ok({"id": 1}, status=201))
    client = _client(transport, recording_sleep)

    created = await client.post("/risks", {"name": "flood"})
    await client.put("/risks/1", {"name": "fire"})
    await client.delete("/risks/1")

    assert created.status == 201
    assert [call["method"] for call in transport.calls] == ["POST", "PUT", "DELETE"]
    assert transport.calls[0]["body"] == {"name": "flood"}
    assert client.get_cache_stats().size == 0

    await client.get("/risks")
    transport.script(HttpError("HTTP 400", status=400))
    with pytest.raises(HttpError):
        await client.post("/risks", {"bad": True})


async def test_offline_short_circuits_without_network(
    clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> None:
    transport = ScriptedTransport(ok("live"))
    client = _client(transport, recording_sleep, monitor=_offline_monitor())

    with pytest.raises(NetworkError, match="No internet connection available"):
        await client.post("/risks", {"name": "flood"})
    with pytest.raises(NetworkError) as excinfo:
        await client.get("/risks")

    assert excinfo.value.status is None
    assert transport.calls == []
    assert client.get_breaker_state().failure_count == 0
    await client.aclose()


async def test_offline_get_serves_cached_value(
    clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> None:
    cache: ResponseCache[object] = ResponseCache()
    cache.set(RISKS_KEY, "cached", 1.0)
    clock.advance(2.0)
    transport = ScriptedTransport(ok("live"))
    client = _client(
        transport,
        recording_sleep,
        cache=cache,
        monitor=_offline_monitor(),
    )

    response = await client.get("/risks")

    assert (response.data, response.from_cache, response.stale) == (
        "cached",
        True,
        True,
    )
    assert transport.calls == []
    await client.aclose()


async def test_endpoint_scope_isolates_breakers(
    clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> None:
    transport = ScriptedTransport(HttpError("HTTP 500", status=500))
    client = _client(
        transport,
        recording_sleep,
        breakers=_breakers(failure_threshold=1, scope=BreakerScope.ENDPOINT),
        retry_options=RetryOptions(max_retries=0),
    )
    with pytest.raises(HttpError):
        await client.get("/risks?page=1")
    transport.script(ok("alerts"))

    response = await client.get("/alerts")

    assert response.data == "alerts"
    assert client.get_breaker_state("/risks").state == CircuitState.OPEN
    assert client.get_breaker_state("/alerts").state == CircuitState.CLOSED


async def test_connection_helpers_without_monitor(
    recording_sleep: RecordingSleep,
) -> None:
    client = _client(ScriptedTransport(), recording_sleep)
    seen: list[bool] = []

    unsubscribe = client.on_connection_change(seen.append)
    unsubscribe()

    assert client.is_online() is True
    assert seen == [True]


async def test_clear_cache_and_aclose(
    clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> None:
    transport = ScriptedTransport(ok("live"))
    async with _client(transport, recording_sleep) as client:
        await client.get("/risks")
        client.clear_cache()
        assert client.get_cache_stats().size == 0

    assert transport.closed is True


async def test_create_client_wires_settings(httpx_mock: HTTPXMock) -> None:
    httpx_mock.add_response(
        url=f"{BASE_URL}/risks",
        method="GET",
        json={"risks": []},
    )
    settings = ClientSettings(base_url=BASE_URL, client_name="beacon-web")
    sink = InMemoryTelemetrySink()

    async with httpx.AsyncClient() as http_client:
        client = create_client(
            settings,
            http_client=http_client,
            telemetry=sink,
            configure_logging=False,
        )
        response = await client.get("/risks")
        await client.aclose()
        assert http_client.is_closed is False

    request = httpx_mock.get_request()
    assert request is not None
    assert request.headers["X-Client"] == "beacon-web"
    assert response.data == {"risks": []}
    assert client.get_breaker_state().name == "beacon-web"
    assert client.is_online() is True


async def test_create_client_owns_default_http_client() -> None:
    client = create_client(
        ClientSettings(base_url=BASE_URL),
        observer=ManualConnectivityObserver(),
        configure_logging=False,
    )

    await client.aclose()


async def test_endpoint_scope_default_state_aggregates_breakers(
    clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> None:
    registry = _breakers(failure_threshold=1, scope=BreakerScope.ENDPOINT)
    transport = ScriptedTransport(HttpError("HTTP 500", status=500))
    client = _client(
        transport,
        recording_sleep,
        breakers=registry,
        retry_options=RetryOptions(max_retries=0),
    )
    with pytest.raises(HttpError):
        await client.get("/risks")

    state = client.get_breaker_state()

    assert state.name == "api"
    assert state.state == CircuitState.OPEN
    assert state.failure_count == 1
    assert [item.name for item in registry.snapshots()] == ["api:/risks"]


async def test_cached_none_payload_is_served_from_cache(
    clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> None:
    transport = ScriptedTransport(ok(None, status=204))
    client = _client(transport, recording_sleep)
    await client.get("/risks")

    response = await client.get("/risks")

    assert response.from_cache is True
    assert response.data is None
    assert len(transport.calls) == 1


async def test_create_client_configures_logging_from_settings(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    calls: list[dict[str, object]] = []

    def fake_configure(**kwargs: object) -> None:
        calls.append(kwargs)

    monkeypatch.setattr(client_mod, "configure_structlog", fake_configure)
    settings = ClientSettings(
        base_url=BASE_URL,
        client_name="beacon-web",
        log_level="debug",
    )

    client = create_client(settings, observer=ManualConnectivityObserver())
    await client.aclose()
    quiet = create_client(
        settings,
        observer=ManualConnectivityObserver(),
        configure_logging=False,
    )
    await quiet.aclose()

    assert calls == [{"log_level": "DEBUG", "context": {"client": "beacon-web"}}]


async def test_create_client_follows_redirects(httpx_mock: HTTPXMock) -> None:
    httpx_mock.add_response(
        url=f"{BASE_URL}/old",
        method="GET",
        status_code=301,
        headers={"Location": f"{BASE_URL}/risks"},
    )
    httpx_mock.add_response(
        url=f"{BASE_URL}/risks",
        method="GET",
        json={"risks": [1]},
    )
    client = create_client(
        ClientSettings(base_url=BASE_URL),
        observer=ManualConnectivityObserver(),
        configure_logging=False,
    )

    response = await client.get("/old")
    await client.aclose()

    assert response.status == 200
    assert response.data == {"risks": [1]}

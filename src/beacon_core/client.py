"""Client facade composing connectivity, caching, circuit breaking and retries."""

from __future__ import annotations

import dataclasses
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from types import TracebackType
from typing import Any, Generic, TypeVar

import httpx

from beacon_core.cache import CacheStats, ResponseCache, build_cache_key
from beacon_core.circuit_breaker import (
    BreakerRegistry,
    BreakerSnapshot,
    TelemetryBreakerListener,
)
from beacon_core.connection import (
    ConnectionCallback,
    ConnectionMonitor,
    ConnectivityObserver,
    Unsubscribe,
)
from beacon_core.errors import NetworkError
from beacon_core.health import make_http_health_probe
from beacon_core.logging import (
    StructuredLogger,
    configure_structlog,
    get_logger,
    log_info,
    log_warning,
)
from beacon_core.retry import RetryOptions, retry_with_backoff
from beacon_core.settings import ClientSettings
from beacon_core.telemetry import LoggingTelemetrySink, TelemetrySink, emit_event
from beacon_core.transport import HttpxTransport, NetworkTransport, TransportResponse

T = TypeVar("T")

OFFLINE_MESSAGE = "No internet connection available"

_logger = get_logger(__name__)


@dataclass(frozen=True)
class ApiResponse(Generic[T]):
    """Result of a facade call.

    Attributes:
        data: Decoded response payload.
        status: HTTP status (200 for cache hits).
        headers: Response headers (empty for cache hits).
        from_cache: Whether the data came from the cache instead of the network.
        stale: Whether cached data had outlived its TTL (fallback only).
    """

    data: T
    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    from_cache: bool = False
    stale: bool = False


class ResilientClient:
    """Verb-shaped API client with retry, circuit breaking and cache fallback.

    Every call first consults the connection monitor, then the circuit breaker
    for its group, then runs through the retry executor. GET responses are
    cached; when a GET cannot be served live, the last cached value is returned
    (tagged ``from_cache``, and ``stale`` once expired) before any error
    reaches the caller. Mutating verbs are never cached or served stale.
    """

    def __init__(
        self,
        transport: NetworkTransport,
        *,
        name: str = "beacon-client",
        base_url: str = "",
        retry_options: RetryOptions | None = None,
        cache: ResponseCache[Any] | None = None,
        breakers: BreakerRegistry | None = None,
        monitor: ConnectionMonitor | None = None,
        telemetry: TelemetrySink | None = None,
        enable_cache: bool = True,
        default_headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Create a client from explicit collaborators.

        Args:
            transport: Request primitive issuing single attempts.
            name: Client name used for breakers and telemetry.
            base_url: Prefix for relative endpoints.
            retry_options: Retry policy. Defaults to ``RetryOptions()``.
            cache: Response cache. Defaults to a fresh ``ResponseCache``.
            breakers: Breaker registry. Defaults to one breaker per client.
            monitor: Connection monitor; without one the client assumes it is
                online.
            telemetry: Monitoring sink for retries, fallbacks and transitions.
            enable_cache: Whether GET responses are cached and rescued.
            default_headers: Headers sent with every request.
            timeout: Per-attempt timeout in seconds; transport default if unset.
            sleep: Sleep used between retries. Defaults to ``asyncio.sleep``.
            logger: Structured logger for client events.
        """
        self.name = name
        self._transport = transport
        self._base_url = base_url.rstrip("/")
        self._retry_options = RetryOptions() if retry_options is None else retry_options
        self._cache: ResponseCache[Any] = ResponseCache() if cache is None else cache
        self._telemetry = telemetry
        if breakers is None:
            listeners = (
                [TelemetryBreakerListener(telemetry)] if telemetry is not None else []
            )
            breakers = BreakerRegistry(name, listeners=listeners)
        self._breakers = breakers
        self._monitor = monitor
        self._enable_cache = enable_cache
        self._default_headers = dict(
            {"Content-Type": "application/json"}
            if default_headers is None
            else default_headers
        )
        self._timeout = timeout
        self._sleep = sleep
        self._logger = _logger if logger is None else logger

    async def __aenter__(self) -> ResilientClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    def build_url(self, endpoint: str) -> str:
        """Resolve ``endpoint`` against the base URL; absolute URLs pass through."""
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        path = endpoint if endpoint.startswith("/") else f"/{endpoint}"
        return f"{self._base_url}{path}"

    def _retry_options_for(self, url: str) -> RetryOptions:
        user_hook = self._retry_options.on_retry

        def _on_retry(attempt: int, error: BaseException) -> None:
            emit_event(
                self._telemetry,
                self.name,
                "retry_attempt",
                "info",
                url=url,
                attempt=attempt,
                error=str(error),
            )
            if user_hook is not None:
                user_hook(attempt, error)

        return dataclasses.replace(self._retry_options, on_retry=_on_retry)

    async def _execute(
        self,
        method: str,
        url: str,
        *,
        body: object,
        headers: Mapping[str, str] | None,
        group: str | None,
        timeout: float | None,
    ) -> TransportResponse:
        if not self.is_online():
            log_warning(self._logger, "client.offline", method=method, url=url)
            raise NetworkError(OFFLINE_MESSAGE)

        breaker = self._breakers.get(group)
        merged_headers = {**self._default_headers, **(headers or {})}
        resolved_timeout = self._timeout if timeout is None else timeout

        async def _attempt() -> TransportResponse:
            return await self._transport.send(
                method,
                url,
                headers=merged_headers,
                body=body,
                timeout=resolved_timeout,
            )

        return await breaker.call(
            retry_with_backoff,
            _attempt,
            self._retry_options_for(url),
            sleep=self._sleep,
            logger=self._logger,
        )

    def _rescue_from_cache(
        self,
        key: str,
        url: str,
        error: BaseException,
    ) -> ApiResponse[Any] | None:
        if not self._enable_cache:
            return None
        cached = self._cache.get_stale(key)
        if cached is None:
            return None
        log_warning(
            self._logger,
            "client.cache_fallback",
            url=url,
            error=str(error),
            error_type=error.__class__.__name__,
            stale=cached.stale,
            age_seconds=cached.age,
        )
        emit_event(
            self._telemetry,
            self.name,
            "fallback_used",
            "warning",
            url=url,
            reason=error.__class__.__name__,
            stale=cached.stale,
        )
        return ApiResponse(
            data=cached.data,
            status=200,
            headers={},
            from_cache=True,
            stale=cached.stale,
        )

    @staticmethod
    def _default_group(endpoint: str) -> str:
        return endpoint.split("?", 1)[0]

    async def get(
        self,
        endpoint: str,
        body: object = None,
        *,
        headers: Mapping[str, str] | None = None,
        ttl: float | None = None,
        use_cache: bool = True,
        group: str | None = None,
        timeout: float | None = None,
    ) -> ApiResponse[Any]:
        """Fetch ``endpoint``, serving fresh cache hits without network access.

        Args:
            endpoint: Relative path or absolute URL.
            body: Optional request payload; part of the cache key.
            headers: Extra headers for this call.
            ttl: Cache lifetime in seconds for the response.
            use_cache: Skip the fresh cache read when false; the response is
                still written through.
            group: Breaker group; defaults to the endpoint path.
            timeout: Per-attempt timeout override in seconds.

        Raises:
            NetworkError: The last observed error when no cached value exists.
        """
        url = self.build_url(endpoint)
        key = build_cache_key("GET", url, body)

        if self._enable_cache and use_cache:
            cached = self._cache.lookup(key)
            if cached is not None:
                log_info(self._logger, "client.cache_hit", url=url)
                return ApiResponse(
                    data=cached.data,
                    status=200,
                    headers={},
                    from_cache=True,
                )

        try:
            response = await self._execute(
                "GET",
                url,
                body=body,
                headers=headers,
                group=group or self._default_group(endpoint),
                timeout=timeout,
            )
        except Exception as exc:
            rescued = self._rescue_from_cache(key, url, exc)
            if rescued is None:
                raise
            return rescued

        if self._enable_cache:
            self._cache.set(key, response.data, ttl)
        return ApiResponse(
            data=response.data,
            status=response.status,
            headers=response.headers,
        )

    async def _mutate(
        self,
        method: str,
        endpoint: str,
        body: object,
        *,
        headers: Mapping[str, str] | None,
        group: str | None,
        timeout: float | None,
    ) -> ApiResponse[Any]:
        response = await self._execute(
            method,
            self.build_url(endpoint),
            body=body,
            headers=headers,
            group=group or self._default_group(endpoint),
            timeout=timeout,
        )
        return ApiResponse(
            data=response.data,
            status=response.status,
            headers=response.headers,
        )

    async def post(
        self,
        endpoint: str,
        body: object = None,
        *,
        headers: Mapping[str, str] | None = None,
        group: str | None = None,
        timeout: float | None = None,
    ) -> ApiResponse[Any]:
        """Send a POST; never cached."""
        return await self._mutate(
            "POST", endpoint, body, headers=headers, group=group, timeout=timeout
        )

    async def put(
        self,
        endpoint: str,
        body: object = None,
        *,
        headers: Mapping[str, str] | None = None,
        group: str | None = None,
        timeout: float | None = None,
    ) -> ApiResponse[Any]:
        """Send a PUT; never cached."""
        return await self._mutate(
            "PUT", endpoint, body, headers=headers, group=group, timeout=timeout
        )

    async def delete(
        self,
        endpoint: str,
        body: object = None,
        *,
        headers: Mapping[str, str] | None = None,
        group: str | None = None,
        timeout: float | None = None,
    ) -> ApiResponse[Any]:
        """Send a DELETE; never cached."""
        return await self._mutate(
            "DELETE", endpoint, body, headers=headers, group=group, timeout=timeout
        )

    def is_online(self) -> bool:
        """Return the connection monitor's verdict (online without a monitor)."""
        return True if self._monitor is None else self._monitor.is_online

    def on_connection_change(self, callback: ConnectionCallback) -> Unsubscribe:
        """Subscribe to connectivity changes; ``callback`` fires immediately."""
        if self._monitor is None:
            callback(True)
            return lambda: None
        return self._monitor.subscribe(callback)

    def clear_cache(self) -> None:
        """Drop every cached response."""
        self._cache.clear()

    def get_cache_stats(self) -> CacheStats:
        """Return cached response count and keys."""
        return self._cache.stats()

    def get_breaker_state(self, group: str | None = None) -> BreakerSnapshot:
        """Return the state and failure count of the breaker guarding ``group``.

        In endpoint scope without a group, the state aggregates every endpoint
        breaker.
        """
        return self._breakers.snapshot(group)

    async def aclose(self) -> None:
        """Stop the connection monitor and close an owned transport."""
        if self._monitor is not None:
            await self._monitor.close()
        close = getattr(self._transport, "aclose", None)
        if close is not None:
            await close()


def create_client(
    settings: ClientSettings | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
    observer: ConnectivityObserver | None = None,
    telemetry: TelemetrySink | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    configure_logging: bool = True,
) -> ResilientClient:
    """Build a fully wired client from settings.

    Args:
        settings: Client settings. Defaults to ``ClientSettings()`` from env.
        http_client: Shared HTTP client; one is created and owned if omitted.
        observer: Platform connectivity signal source.
        telemetry: Monitoring sink. Defaults to structured logging.
        sleep: Sleep used between retries.
        configure_logging: Configure structlog from ``settings.log_level``.
            Disable when the host application owns logging setup.
    """
    resolved = ClientSettings() if settings is None else settings
    if configure_logging:
        configure_structlog(
            log_level=resolved.log_level,
            context={"client": resolved.client_name},
        )
    owns_client = http_client is None
    resolved_http_client = (
        httpx.AsyncClient(follow_redirects=True)
        if http_client is None
        else http_client
    )
    sink: TelemetrySink = LoggingTelemetrySink() if telemetry is None else telemetry

    transport = HttpxTransport(
        resolved_http_client,
        default_timeout=resolved.timeout_seconds,
        owns_client=owns_client,
    )
    monitor = ConnectionMonitor(
        make_http_health_probe(resolved_http_client, resolved.health_check_url()),
        observer=observer,
        policy=resolved.reconnect_policy(),
        telemetry=sink,
        source=f"{resolved.client_name}:connection",
    )
    breakers = BreakerRegistry(
        resolved.client_name,
        scope=resolved.breaker_scope,
        config=resolved.breaker_config(),
        listeners=[TelemetryBreakerListener(sink)],
    )
    cache: ResponseCache[Any] = ResponseCache(
        max_entries=resolved.cache_max_entries,
        default_ttl=resolved.cache_default_ttl,
    )
    return ResilientClient(
        transport,
        name=resolved.client_name,
        base_url=resolved.base_url,
        retry_options=resolved.retry_options(),
        cache=cache,
        breakers=breakers,
        monitor=monitor,
        telemetry=sink,
        enable_cache=resolved.enable_cache,
        default_headers=resolved.default_headers(),
        timeout=resolved.timeout_seconds,
        sleep=sleep,
    )

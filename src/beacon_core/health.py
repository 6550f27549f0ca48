from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from typing import cast

import httpx

from beacon_core.logging import StructuredLogger, get_logger, log_warning

HealthProbe = Callable[[], Awaitable[bool]]
BoolCheck = Callable[[], bool] | Callable[[], Awaitable[bool]]

_logger = get_logger(__name__)


async def _resolve_bool_check(check: BoolCheck) -> bool:
    result = check()
    if inspect.isawaitable(result):
        awaited = await cast(Awaitable[object], result)
        return bool(awaited)
    return bool(result)


def make_callable_probe(
    check: BoolCheck,
    *,
    name: str = "health",
    logger: StructuredLogger | None = None,
) -> HealthProbe:
    """Build a health probe from a sync/async boolean callable.

    A check that raises counts as a failed probe.
    """
    resolved_logger = _logger if logger is None else logger

    async def _probe() -> bool:
        try:
            return await _resolve_bool_check(check)
        except Exception as exc:
            log_warning(
                resolved_logger,
                "health.probe_failed",
                probe=name,
                error=f"{exc.__class__.__name__}: {exc}",
            )
            return False

    _probe.__name__ = name
    return _probe


def make_http_health_probe(
    client: httpx.AsyncClient,
    url: str,
    *,
    method: str = "HEAD",
    timeout: float = 5.0,
    logger: StructuredLogger | None = None,
) -> HealthProbe:
    """Build a probe that succeeds when ``url`` answers with a 2xx status."""

    async def _check() -> bool:
        response = await client.request(
            method,
            url,
            headers={"Cache-Control": "no-cache"},
            timeout=timeout,
        )
        return response.is_success

    return make_callable_probe(_check, name="http_health", logger=logger)

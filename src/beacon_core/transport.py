"""Network transport boundary.

The resilience layer never touches HTTP directly. It issues one attempt through
a ``NetworkTransport`` and expects raw failures to arrive already classified as
``NetworkError``/``HttpError``.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from beacon_core.errors import HttpError, NetworkError

MAX_ERROR_BODY_LENGTH = 1024


@dataclass(frozen=True)
class TransportResponse:
    """Decoded response of one successful attempt."""

    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    data: Any = None


class NetworkTransport(Protocol):
    """Request primitive consumed by the client facade."""

    async def send(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        body: object = None,
        timeout: float | None = None,
    ) -> TransportResponse:
        """Issue one request attempt.

        Raises:
            HttpError: When the upstream answers with a non-success status.
            NetworkError: For transport failures and timeouts (status 408).
        """


def _truncate(value: str, *, limit: int = MAX_ERROR_BODY_LENGTH) -> str:
    return value[:limit]


def decode_response_body(response: httpx.Response) -> Any:
    """Decode JSON or text by content type; anything else stays bytes."""
    content_type = response.headers.get("content-type", "")
    if "application/json" in content_type:
        if not response.content:
            return None
        try:
            return response.json()
        except json.JSONDecodeError as exc:
            raise NetworkError(
                "Invalid JSON response body",
                status=response.status_code,
                cause=exc,
                retryable=False,
            ) from exc
    if content_type.startswith("text/"):
        return response.text
    return response.content


def _encode_body(body: object) -> dict[str, Any]:
    if body is None:
        return {}
    if isinstance(body, (bytes, str)):
        return {"content": body}
    return {"json": body}


class HttpxTransport:
    """``NetworkTransport`` backed by a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        default_timeout: float = 30.0,
        owns_client: bool = False,
    ) -> None:
        """Create a transport.

        Args:
            client: Shared async HTTP client.
            default_timeout: Per-attempt timeout in seconds.
            owns_client: Close ``client`` from ``aclose``. Otherwise the caller
                owns its lifecycle.
        """
        self._client = client
        self._default_timeout = default_timeout
        self._owns_client = owns_client

    async def aclose(self) -> None:
        """Close the underlying client when this transport owns it."""
        if self._owns_client:
            await self._client.aclose()

    async def send(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        body: object = None,
        timeout: float | None = None,
    ) -> TransportResponse:
        """Issue one request and classify any failure at this boundary."""
        resolved_timeout = self._default_timeout if timeout is None else timeout
        try:
            response = await self._client.request(
                method,
                url,
                headers=dict(headers or {}),
                timeout=resolved_timeout,
                **_encode_body(body),
            )
        except httpx.TimeoutException as exc:
            raise NetworkError("Request timeout", status=408, cause=exc) from exc
        except httpx.TransportError as exc:
            raise NetworkError(
                f"Network connection failed: {exc}",
                cause=exc,
                retryable=True,
            ) from exc

        if not response.is_success:
            raise HttpError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                status=response.status_code,
                response_body=_truncate(response.text),
            )

        return TransportResponse(
            status=response.status_code,
            headers=dict(response.headers),
            data=decode_response_body(response),
        )

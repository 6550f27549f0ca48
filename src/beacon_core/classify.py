"""Classification of raw call failures into retry verdicts."""

from __future__ import annotations

from dataclasses import dataclass

RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
TIMEOUT_STATUS = 408
NETWORK_MESSAGE_MARKERS = (
    "network",
    "timeout",
    "connection",
    "fetch",
    "econnrefused",
    "enotfound",
)


@dataclass(frozen=True)
class Classification:
    """Verdict for one observed failure."""

    is_network_error: bool
    is_retryable: bool


def classify(
    status: int | None = None,
    error: BaseException | None = None,
) -> Classification:
    """Classify a failure from its HTTP status and/or raised exception.

    Without a status the exception message is matched against known
    connectivity markers. Builtin ``TimeoutError`` is treated as status 408.
    With a status, only ``RETRYABLE_STATUSES`` are retryable; every other
    4xx is terminal.
    """
    if status is None and isinstance(error, TimeoutError):
        status = TIMEOUT_STATUS

    if status is None:
        if error is None:
            return Classification(is_network_error=False, is_retryable=False)
        if isinstance(error, ConnectionError):
            return Classification(is_network_error=True, is_retryable=True)
        message = str(error).lower()
        matched = any(marker in message for marker in NETWORK_MESSAGE_MARKERS)
        return Classification(is_network_error=matched, is_retryable=matched)

    return Classification(
        is_network_error=True,
        is_retryable=status in RETRYABLE_STATUSES,
    )

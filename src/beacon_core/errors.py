"""Shared error types for beacon_core."""

from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass

from beacon_core.classify import RETRYABLE_STATUSES, classify


class NetworkError(RuntimeError):
    """Failure observed at the network boundary.

    The error is classified once, when it is created, and is never mutated
    afterwards. ``status`` is ``None`` for transport-level failures.

    Attributes:
        message: Human-readable error message.
        status: HTTP status observed from the upstream, if any.
        is_network_error: Always true; marks errors created by this layer.
        is_retryable: Whether the failure is worth another attempt.
        cause: Original exception the failure was derived from, if any.
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        cause: BaseException | None = None,
        *,
        retryable: bool | None = None,
    ) -> None:
        """Initialize and classify a network error.

        Args:
            message: Human-readable error message.
            status: Optional HTTP status observed from the upstream.
            cause: Optional original exception.
            retryable: Explicit verdict for failures the boundary already
                recognised; classified from ``status``/``cause`` when omitted.
        """
        super().__init__(message)
        self.message = message
        self.status = status
        self.cause = cause
        self.is_network_error = True
        if retryable is None:
            retryable = classify(status, cause).is_retryable
        self.is_retryable = retryable
        if cause is not None:
            self.__cause__ = cause


class HttpError(NetworkError):
    """Raised when the upstream answers with a non-success HTTP status."""

    def __init__(
        self,
        message: str,
        status: int,
        response_body: str | None = None,
    ) -> None:
        """Initialize status-coded error metadata.

        Args:
            message: Human-readable error message.
            status: HTTP status returned by the upstream.
            response_body: Optional response payload text.
        """
        super().__init__(message, status=status)
        self.response_body = response_body


def is_retryable_error(
    error: BaseException,
    retryable_statuses: Collection[int] = RETRYABLE_STATUSES,
) -> bool:
    """Return whether ``error`` should be retried under ``retryable_statuses``.

    ``retryable_statuses`` can only widen the verdict recorded on a
    ``NetworkError``; unknown exceptions fall back to message classification.
    """
    if isinstance(error, NetworkError):
        if error.is_retryable:
            return True
        return error.status is not None and error.status in retryable_statuses
    return classify(None, error).is_retryable


@dataclass(frozen=True)
class ErrorSummary:
    """Presentation hints for UI collaborators rendering a failed call."""

    message: str
    is_retryable: bool
    should_show_fallback: bool


_STATUS_MESSAGES: dict[int, str] = {
    408: "The request took too long to complete. Please try again.",
    429: "Too many requests. Please wait a moment and try again.",
    500: "Server error occurred. Please try again later.",
    502: "Service temporarily unavailable. Please try again in a few moments.",
    503: "Service temporarily unavailable. Please try again in a few moments.",
    504: "Gateway timeout. The server took too long to respond. Please try again.",
}
_OFFLINE_MESSAGE = (
    "Unable to connect to the server. Please check your internet connection "
    "and try again."
)
_GENERIC_MESSAGE = "An unexpected error occurred. Please try again."


def user_message(error: BaseException) -> str:
    """Return a friendly message keyed off ``status``/``is_network_error``."""
    if isinstance(error, NetworkError):
        if error.status is None:
            return _OFFLINE_MESSAGE
        return _STATUS_MESSAGES.get(
            error.status,
            f"An error occurred ({error.status}). Please try again.",
        )
    return str(error) or _GENERIC_MESSAGE


def summarize_error(error: BaseException) -> ErrorSummary:
    """Summarize a failed call for display."""
    if isinstance(error, NetworkError):
        return ErrorSummary(
            message=user_message(error),
            is_retryable=error.is_retryable,
            should_show_fallback=not error.is_retryable or error.status == 503,
        )
    return ErrorSummary(
        message=_GENERIC_MESSAGE,
        is_retryable=True,
        should_show_fallback=False,
    )

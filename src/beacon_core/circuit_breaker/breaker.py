"""Core circuit breaker implementation."""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import ParamSpec, TypeVar

from beacon_core.circuit_breaker.exceptions import CircuitOpenError
from beacon_core.circuit_breaker.metrics import BreakerListener
from beacon_core.circuit_breaker.state import BreakerSnapshot, CircuitState
from beacon_core.logging import StructuredLogger, get_logger, log_info, log_warning

T = TypeVar("T")
P = ParamSpec("P")

_logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        failure_threshold: Failures required while ``CLOSED`` before opening.
        reset_timeout: Seconds since the last failure before a probe is allowed.
        excluded_exceptions: Exceptions that must not count as failures.
    """

    failure_threshold: int = 5
    reset_timeout: float = 60.0
    excluded_exceptions: tuple[type[BaseException], ...] = ()

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.reset_timeout < 0:
            raise ValueError("reset_timeout must be >= 0")


class CircuitBreaker:
    """Failure tracker guarding one upstream (or group of upstream calls).

    ``is_open()`` is both a query and the ``OPEN -> HALF_OPEN`` transition:
    once the reset timeout has elapsed, the first caller to check receives
    ``False`` and owns the single half-open probe. Every later check returns
    ``True`` until that probe is resolved by ``record_success()``,
    ``record_failure()`` or ``release_probe()``.
    """

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        listeners: Sequence[BreakerListener] | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Build a circuit breaker.

        Args:
            name: Breaker name used in errors, logs and metrics.
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            listeners: Optional listener hooks for breaker events.
            logger: Structured logger for transition events.
        """
        self.name = name
        self.config = CircuitBreakerConfig() if config is None else config
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._logger = _logger if logger is None else logger
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at: datetime | None = None
        self._opened_at: datetime | None = None

    @property
    def state(self) -> CircuitState:
        """Return the current state without advancing it."""
        return self._state

    @property
    def failure_count(self) -> int:
        """Return failures recorded since the last success."""
        return self._failure_count

    def snapshot(self) -> BreakerSnapshot:
        """Return a point-in-time view of the breaker."""
        return BreakerSnapshot(
            name=self.name,
            state=self._state,
            failure_count=self._failure_count,
            last_failure_at=self._last_failure_at,
            opened_at=self._opened_at,
        )

    def _elapsed_since_failure(self, now: datetime) -> float:
        if self._last_failure_at is None:
            return float("inf")
        return (now - self._last_failure_at).total_seconds()

    def retry_after(self) -> float:
        """Return seconds until a probe may be attempted (0 when not ``OPEN``)."""
        if self._state != CircuitState.OPEN:
            return 0.0
        elapsed = self._elapsed_since_failure(_utcnow())
        return max(self.config.reset_timeout - elapsed, 0.0)

    def _emit_state_change(self, old: CircuitState, new: CircuitState) -> None:
        for listener in self._listeners:
            try:
                listener.on_state_change(self.name, old, new, self._failure_count)
            except Exception:
                continue

    def _emit_call_rejected(self) -> None:
        for listener in self._listeners:
            try:
                listener.on_call_rejected(self.name)
            except Exception:
                continue

    def _transition(self, new: CircuitState, now: datetime) -> None:
        old = self._state
        if old == new:
            return
        self._state = new
        if new == CircuitState.OPEN:
            self._opened_at = now
            log_warning(
                self._logger,
                "circuit_breaker.opened",
                breaker=self.name,
                previous_state=str(old),
                failure_count=self._failure_count,
            )
        else:
            if new == CircuitState.CLOSED:
                self._opened_at = None
            log_info(
                self._logger,
                "circuit_breaker.state_changed",
                breaker=self.name,
                previous_state=str(old),
                state=str(new),
                failure_count=self._failure_count,
            )
        self._emit_state_change(old, new)

    def is_open(self) -> bool:
        """Return whether calls must be rejected right now.

        Call exactly once per attempt, immediately before issuing it.
        """
        if self._state == CircuitState.CLOSED:
            return False

        if self._state == CircuitState.OPEN:
            now = _utcnow()
            if self._elapsed_since_failure(now) < self.config.reset_timeout:
                self._emit_call_rejected()
                return True
            self._transition(CircuitState.HALF_OPEN, now)
            return False

        # HALF_OPEN: the probe has already been handed out.
        self._emit_call_rejected()
        return True

    def record_success(self) -> None:
        """Record a successful call; always resets to ``CLOSED``."""
        self._failure_count = 0
        self._last_failure_at = None
        self._transition(CircuitState.CLOSED, _utcnow())

    def record_failure(self) -> None:
        """Record a failed call, opening the circuit when warranted."""
        now = _utcnow()
        self._failure_count += 1
        self._last_failure_at = now
        if self._state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN, now)
        elif (
            self._state == CircuitState.CLOSED
            and self._failure_count >= self.config.failure_threshold
        ):
            self._transition(CircuitState.OPEN, now)

    def release_probe(self) -> None:
        """Abandon an unresolved half-open probe.

        The breaker returns to ``OPEN`` without a new failure timestamp, so the
        next ``is_open()`` check may hand out a fresh probe immediately.
        """
        if self._state != CircuitState.HALF_OPEN:
            return
        self._state = CircuitState.OPEN
        self._emit_state_change(CircuitState.HALF_OPEN, CircuitState.OPEN)

    def reset(self) -> None:
        """Force the breaker back to a healthy ``CLOSED`` state."""
        self.record_success()

    async def call(
        self,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """Invoke an async callable under circuit breaker protection.

        Args:
            func: Dangerous async callable to execute.
            *args: Positional arguments forwarded to ``func``.
            **kwargs: Keyword arguments forwarded to ``func``.

        Returns:
            The result of ``func`` when allowed and successful.

        Raises:
            CircuitOpenError: When the circuit is open and the call is rejected.
            Exception: The original exception from ``func`` when it is attempted
                and fails.
        """
        if self.is_open():
            raise CircuitOpenError(self.name, retry_after=self.retry_after())

        try:
            result = await func(*args, **kwargs)
        except self.config.excluded_exceptions:
            self.release_probe()
            raise
        except asyncio.CancelledError:
            self.release_probe()
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

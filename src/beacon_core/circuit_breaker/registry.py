"""Ownership of circuit breakers per client or per endpoint group."""

from collections.abc import Sequence
from enum import StrEnum

from beacon_core.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from beacon_core.circuit_breaker.metrics import BreakerListener
from beacon_core.circuit_breaker.state import BreakerSnapshot, CircuitState
from beacon_core.logging import StructuredLogger

_STATE_SEVERITY = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


def _closed_snapshot(name: str) -> BreakerSnapshot:
    return BreakerSnapshot(
        name=name,
        state=CircuitState.CLOSED,
        failure_count=0,
        last_failure_at=None,
        opened_at=None,
    )


class BreakerScope(StrEnum):
    """How many breakers a client keeps."""

    CLIENT = "client"
    ENDPOINT = "endpoint"


class BreakerRegistry:
    """Create and hold breakers sharing one configuration.

    With ``BreakerScope.CLIENT`` every group resolves to the same breaker, so
    any failing upstream call trips it for all of them. With
    ``BreakerScope.ENDPOINT`` each group gets its own breaker, created on
    first use.
    """

    def __init__(
        self,
        name: str,
        *,
        scope: BreakerScope = BreakerScope.CLIENT,
        config: CircuitBreakerConfig | None = None,
        listeners: Sequence[BreakerListener] | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        self.name = name
        self.scope = BreakerScope(scope)
        self._config = CircuitBreakerConfig() if config is None else config
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._logger = logger
        self._breakers: dict[str, CircuitBreaker] = {}

    def _breaker_name(self, group: str | None) -> str:
        if self.scope == BreakerScope.CLIENT or not group:
            return self.name
        return f"{self.name}:{group}"

    def get(self, group: str | None = None) -> CircuitBreaker:
        """Return the breaker guarding ``group``, creating it if needed."""
        breaker_name = self._breaker_name(group)
        breaker = self._breakers.get(breaker_name)
        if breaker is None:
            breaker = CircuitBreaker(
                breaker_name,
                config=self._config,
                listeners=self._listeners,
                logger=self._logger,
            )
            self._breakers[breaker_name] = breaker
        return breaker

    def snapshot(self, group: str | None = None) -> BreakerSnapshot:
        """Return the state of ``group`` without creating a breaker.

        In endpoint scope without a group, the result aggregates every
        breaker: the most severe state, the summed failure count and the
        latest timestamps.
        """
        if self.scope == BreakerScope.ENDPOINT and not group:
            return self._aggregate()
        breaker = self._breakers.get(self._breaker_name(group))
        if breaker is None:
            return _closed_snapshot(self._breaker_name(group))
        return breaker.snapshot()

    def _aggregate(self) -> BreakerSnapshot:
        snapshots = self.snapshots()
        if not snapshots:
            return _closed_snapshot(self.name)
        worst = max(snapshots, key=lambda item: _STATE_SEVERITY[item.state])
        failures = [
            item.last_failure_at for item in snapshots if item.last_failure_at
        ]
        opened = [item.opened_at for item in snapshots if item.opened_at]
        return BreakerSnapshot(
            name=self.name,
            state=worst.state,
            failure_count=sum(item.failure_count for item in snapshots),
            last_failure_at=max(failures, default=None),
            opened_at=max(opened, default=None),
        )

    def snapshots(self) -> tuple[BreakerSnapshot, ...]:
        """Return snapshots of every breaker created so far."""
        return tuple(breaker.snapshot() for breaker in self._breakers.values())

    def reset_all(self) -> None:
        """Reset every breaker to ``CLOSED``."""
        for breaker in self._breakers.values():
            breaker.reset()

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable, Collection
from contextlib import suppress
from dataclasses import dataclass
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from beacon_core.classify import RETRYABLE_STATUSES
from beacon_core.errors import NetworkError, is_retryable_error
from beacon_core.logging import StructuredLogger, get_logger, log_warning

T = TypeVar("T")

RetryHook = Callable[[int, BaseException], None]

_logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryOptions:
    """Retry attempt count and exponential backoff configuration.

    Delays are in seconds. ``jitter`` is the largest fraction of the computed
    delay that may be added at random.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.3
    retryable_statuses: frozenset[int] = RETRYABLE_STATUSES
    on_retry: RetryHook | None = None

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_delay < 0:
            raise ValueError("max_delay must be >= 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if self.jitter < 0:
            raise ValueError("jitter must be >= 0")
        object.__setattr__(
            self, "retryable_statuses", frozenset(self.retryable_statuses)
        )


def backoff_delay(
    attempt: int,
    base: float = 1.0,
    maximum: float = 30.0,
    multiplier: float = 2.0,
    *,
    jitter: float = 0.3,
    rng: Callable[[], float] = random.random,
) -> float:
    """Return the wait before retry ``attempt`` (0-based), in seconds.

    The unjittered delay ``min(base * multiplier**attempt, maximum)`` grows
    monotonically up to the cap; up to ``jitter`` of it is added at random.
    """
    raw = min(base * multiplier ** max(attempt, 0), maximum)
    raw = max(raw, 0.0)
    return raw + rng() * jitter * raw


class wait_backoff_jitter(wait_base):
    """Tenacity wait strategy backed by ``backoff_delay``."""

    def __init__(
        self,
        *,
        base: float,
        maximum: float,
        multiplier: float,
        jitter: float,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.base = base
        self.maximum = maximum
        self.multiplier = multiplier
        self.jitter = jitter
        self.rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        return backoff_delay(
            retry_state.attempt_number - 1,
            self.base,
            self.maximum,
            self.multiplier,
            jitter=self.jitter,
            rng=self.rng,
        )


def build_interruptible_sleep(
    stop_event: asyncio.Event,
) -> Callable[[float], Awaitable[None]]:
    """Build an async sleep that exits early when ``stop_event`` is set."""

    async def _interruptible_sleep(delay: float) -> None:
        if stop_event.is_set():
            return

        bounded_delay = max(delay, 0.0)
        with suppress(TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=bounded_delay)

    return _interruptible_sleep


def _build_before_sleep(
    options: RetryOptions,
    logger: StructuredLogger,
) -> Callable[[RetryCallState], None]:
    def _before_sleep(state: RetryCallState) -> None:
        outcome = state.outcome
        error = outcome.exception() if outcome is not None else None
        if error is None:
            return
        status = error.status if isinstance(error, NetworkError) else None
        log_warning(
            logger,
            "retry.scheduled",
            attempt=state.attempt_number,
            max_retries=options.max_retries,
            delay_seconds=state.upcoming_sleep,
            error=str(error),
            status=status,
        )
        if options.on_retry is not None:
            options.on_retry(state.attempt_number, error)

    return _before_sleep


def build_backoff_retrying(
    options: RetryOptions | None = None,
    *,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    rng: Callable[[], float] = random.random,
    logger: StructuredLogger | None = None,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` honouring ``options``.

    Attempts are capped at ``max_retries + 1``; errors that are not retryable
    stop the loop on the attempt that raised them, and the last observed error
    is re-raised unwrapped.
    """
    resolved = RetryOptions() if options is None else options
    retryable_statuses: Collection[int] = resolved.retryable_statuses
    wait = wait_backoff_jitter(
        base=resolved.base_delay,
        maximum=resolved.max_delay,
        multiplier=resolved.backoff_multiplier,
        jitter=resolved.jitter,
        rng=rng,
    )
    before_sleep = _build_before_sleep(resolved, _logger if logger is None else logger)
    retry = retry_if_exception(
        lambda error: is_retryable_error(error, retryable_statuses)
    )
    if sleep is None:
        return AsyncRetrying(
            retry=retry,
            wait=wait,
            stop=stop_after_attempt(resolved.max_retries + 1),
            before_sleep=before_sleep,
            reraise=True,
        )
    return AsyncRetrying(
        retry=retry,
        wait=wait,
        stop=stop_after_attempt(resolved.max_retries + 1),
        sleep=sleep,
        before_sleep=before_sleep,
        reraise=True,
    )


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
    *,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    rng: Callable[[], float] = random.random,
    logger: StructuredLogger | None = None,
) -> T:
    """Run ``operation`` until it succeeds, fails terminally or runs out of retries.

    Args:
        operation: Zero-argument coroutine factory issuing one attempt.
        options: Retry configuration. Defaults to ``RetryOptions()``.
        sleep: Awaitable sleep used between attempts. Defaults to
            ``asyncio.sleep``.
        rng: Source of jitter in ``[0, 1)``.
        logger: Logger receiving ``retry.scheduled`` events.

    Returns:
        The first successful result.

    Raises:
        Exception: The last error raised by ``operation``.
    """
    retrying = build_backoff_retrying(options, sleep=sleep, rng=rng, logger=logger)
    return await retrying(operation)

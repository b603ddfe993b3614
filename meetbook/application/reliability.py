"""Caller-side retry with exponential backoff, guarded by a circuit breaker.

The gateways never retry on their own apart from the single 401 refresh;
use cases wrap calendar and mail calls with :func:`call_with_retry`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

from meetbook.application.exceptions import GatewayUnavailable


logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    closed = "closed"
    open = "open"
    half_open = "half_open"


class CircuitBreaker:
    """
    Opens after `failure_threshold` consecutive transient failures and fails
    fast for `open_seconds`. After that a single trial call is let through:
    success closes the circuit, failure re-opens it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        open_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._threshold = failure_threshold if failure_threshold > 0 else 3
        self._open_seconds = open_seconds if open_seconds > 0 else 60.0
        self._clock = clock
        self._state = CircuitState.closed
        self._failures = 0
        self._opened_at = 0.0

    @property
    def state(self) -> CircuitState:
        return self._state

    def allow(self) -> bool:
        if self._state is CircuitState.open:
            if self._clock() - self._opened_at < self._open_seconds:
                return False
            logger.info("Circuit half-open, allowing a trial call", extra={"operation": self.name})
            self._state = CircuitState.half_open
        return True

    def record_success(self) -> None:
        if self._state is not CircuitState.closed:
            logger.info("Circuit closed", extra={"operation": self.name})
        self._state = CircuitState.closed
        self._failures = 0

    def record_failure(self) -> None:
        self._failures += 1
        if self._state is CircuitState.half_open or self._failures >= self._threshold:
            logger.error("Circuit opened", extra={"operation": self.name, "failures": self._failures})
            self._state = CircuitState.open
            self._opened_at = self._clock()
            self._failures = 0


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_backoff_seconds: float = 0.75
    backoff_multiplier: float = 2.0
    # Off for non-idempotent calls: a timed-out insert may still have landed.
    retry_timeouts: bool = True


NO_RETRY = RetryPolicy(max_attempts=1)


def is_transient(exc: BaseException) -> bool:
    """Network errors, 5xx, 429 and timeouts. 4xx answers are the caller's problem."""
    if isinstance(exc, TimeoutError):
        return True
    if isinstance(exc, GatewayUnavailable):
        return exc.status_code is None or exc.status_code >= 500 or exc.status_code == 429
    return False


async def call_with_retry(
    operation: str,
    call: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    breaker: CircuitBreaker | None,
    timeout: float,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """
    Run `call` with a per-attempt timeout. Transient failures are retried with
    exponential backoff and counted by the breaker; anything else propagates
    immediately. The last error is re-raised unchanged once attempts run out.
    An open circuit raises GatewayUnavailable without calling out.
    """
    attempts = max(policy.max_attempts, 1)
    backoff = max(policy.initial_backoff_seconds, 0.0)
    last_error: BaseException | None = None

    for attempt in range(1, attempts + 1):
        if breaker is not None and not breaker.allow():
            raise GatewayUnavailable(f"{operation} temporarily unavailable (circuit open)") from last_error

        try:
            async with asyncio.timeout(timeout):
                result = await call()
        except (GatewayUnavailable, TimeoutError) as e:
            if not is_transient(e):
                raise
            last_error = e
            if breaker is not None:
                breaker.record_failure()
            retryable = policy.retry_timeouts or not isinstance(e, TimeoutError)
            if not retryable or attempt == attempts:
                raise
            logger.warning(
                "Transient failure, retrying",
                extra={"operation": operation, "attempt": attempt, "error": str(e) or type(e).__name__},
            )
            await sleep(backoff)
            backoff *= policy.backoff_multiplier
            continue

        if breaker is not None:
            breaker.record_success()
        return result

    raise AssertionError("unreachable")

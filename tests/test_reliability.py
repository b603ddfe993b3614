from __future__ import annotations

import asyncio

import pytest

from meetbook.application.exceptions import GatewayUnavailable, InvalidInput
from meetbook.application.reliability import (
    CircuitBreaker,
    CircuitState,
    RetryPolicy,
    call_with_retry,
    is_transient,
)


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class _Script:
    """Fails with the queued errors in order, then returns "ok"."""

    def __init__(self, *errors: BaseException) -> None:
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


def _recording_sleep(delays: list[float]):
    async def sleep(seconds: float) -> None:
        delays.append(seconds)

    return sleep


@pytest.mark.parametrize(
    "exc, expected",
    [
        (GatewayUnavailable("network"), True),
        (GatewayUnavailable("server", status_code=502), True),
        (GatewayUnavailable("rate limited", status_code=429), True),
        (GatewayUnavailable("forbidden", status_code=403), False),
        (TimeoutError(), True),
        (InvalidInput("bad"), False),
    ],
)
def test_is_transient(exc, expected):
    assert is_transient(exc) is expected


async def test_transient_failures_are_retried_with_exponential_backoff():
    delays: list[float] = []
    call = _Script(GatewayUnavailable("down", status_code=503), GatewayUnavailable("down", status_code=503))

    result = await call_with_retry(
        "test",
        call,
        policy=RetryPolicy(max_attempts=3, initial_backoff_seconds=0.5, backoff_multiplier=2.0),
        breaker=None,
        timeout=1.0,
        sleep=_recording_sleep(delays),
    )

    assert result == "ok"
    assert call.calls == 3
    assert delays == [0.5, 1.0]


async def test_last_error_is_raised_when_attempts_run_out():
    last = GatewayUnavailable("still down", status_code=500)
    call = _Script(GatewayUnavailable("down", status_code=500), last)

    with pytest.raises(GatewayUnavailable) as exc_info:
        await call_with_retry(
            "test", call, policy=RetryPolicy(max_attempts=2), breaker=None, timeout=1.0, sleep=_recording_sleep([])
        )
    assert exc_info.value is last


async def test_client_errors_are_not_retried():
    call = _Script(GatewayUnavailable("forbidden", status_code=403))
    breaker = CircuitBreaker("test", failure_threshold=1)

    with pytest.raises(GatewayUnavailable):
        await call_with_retry("test", call, policy=RetryPolicy(), breaker=breaker, timeout=1.0)

    assert call.calls == 1
    assert breaker.state is CircuitState.closed


async def test_timeouts_are_not_retried_for_non_idempotent_calls():
    calls = 0

    async def hang() -> None:
        nonlocal calls
        calls += 1
        await asyncio.sleep(3600)

    with pytest.raises(TimeoutError):
        await call_with_retry(
            "test",
            hang,
            policy=RetryPolicy(max_attempts=3, retry_timeouts=False),
            breaker=None,
            timeout=0.01,
            sleep=_recording_sleep([]),
        )
    assert calls == 1


def test_breaker_opens_after_threshold_and_half_opens_after_cooldown():
    clock = _Clock()
    breaker = CircuitBreaker("test", failure_threshold=2, open_seconds=30.0, clock=clock)

    breaker.record_failure()
    assert breaker.allow()
    breaker.record_failure()
    assert breaker.state is CircuitState.open
    assert not breaker.allow()

    clock.now = 30.0
    assert breaker.allow()
    assert breaker.state is CircuitState.half_open

    breaker.record_failure()
    assert breaker.state is CircuitState.open
    assert not breaker.allow()

    clock.now = 60.0
    assert breaker.allow()
    breaker.record_success()
    assert breaker.state is CircuitState.closed


async def test_open_circuit_raises_without_calling_out():
    breaker = CircuitBreaker("test", failure_threshold=1, clock=_Clock())
    breaker.record_failure()
    call = _Script()

    with pytest.raises(GatewayUnavailable, match="circuit open"):
        await call_with_retry("test", call, policy=RetryPolicy(), breaker=breaker, timeout=1.0)
    assert call.calls == 0

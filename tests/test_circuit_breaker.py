"""Circuit breaker state transitions under a controlled clock."""

import asyncio

import pytest

from paysync.common.circuit_breaker import CircuitBreaker, CircuitState
from paysync.common.errors import CircuitOpenError, GatewayTimeoutError, TransientGatewayError, ValidationError


class Dependency:
    def __init__(self) -> None:
        self.calls = 0
        self.fail = True

    async def __call__(self):
        self.calls += 1
        if self.fail:
            raise TransientGatewayError("boom")
        return "ok"


class RecordingListener:
    def __init__(self) -> None:
        self.transitions = []

    def on_transition(self, name, old, new):
        self.transitions.append((old, new))


async def _trip(breaker, dependency, times):
    for _ in range(times):
        with pytest.raises(TransientGatewayError):
            await breaker.execute(dependency)


@pytest.mark.asyncio
async def test_opens_after_threshold_and_fails_fast(clock):
    """Threshold consecutive failures open the circuit; the next call never reaches the dependency."""

    breaker = CircuitBreaker("gateway.query_status", failure_threshold=3, reset_timeout=30, clock=clock)
    dependency = Dependency()

    await _trip(breaker, dependency, 3)
    assert breaker.state is CircuitState.OPEN

    with pytest.raises(CircuitOpenError) as info:
        await breaker.execute(dependency)
    assert dependency.calls == 3
    assert info.value.retry_after == pytest.approx(30)


@pytest.mark.asyncio
async def test_half_open_success_closes(clock):
    breaker = CircuitBreaker("gw", failure_threshold=2, reset_timeout=10, clock=clock)
    dependency = Dependency()
    await _trip(breaker, dependency, 2)

    clock.advance(10)
    dependency.fail = False
    assert await breaker.execute(dependency) == "ok"
    assert breaker.state is CircuitState.CLOSED
    assert breaker.snapshot()["consecutive_failures"] == 0


@pytest.mark.asyncio
async def test_half_open_failure_reopens_with_original_error(clock):
    breaker = CircuitBreaker("gw", failure_threshold=2, reset_timeout=10, clock=clock)
    dependency = Dependency()
    await _trip(breaker, dependency, 2)

    clock.advance(10)
    with pytest.raises(TransientGatewayError):
        await breaker.execute(dependency)
    assert breaker.state is CircuitState.OPEN
    assert breaker.snapshot()["next_probe_time"] == pytest.approx(clock.now + 10)


@pytest.mark.asyncio
async def test_half_open_admits_a_single_trial(clock):
    """Concurrent callers during the trial are rejected instead of piling onto a sick dependency."""

    breaker = CircuitBreaker("gw", failure_threshold=1, reset_timeout=5, clock=clock)
    await _trip(breaker, Dependency(), 1)
    clock.advance(5)

    release = asyncio.Event()

    async def slow_trial():
        await release.wait()
        return "ok"

    trial = asyncio.create_task(breaker.execute(slow_trial))
    await asyncio.sleep(0)
    assert breaker.state is CircuitState.HALF_OPEN

    with pytest.raises(CircuitOpenError):
        await breaker.execute(slow_trial)

    release.set()
    assert await trial == "ok"
    assert breaker.state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_validation_errors_do_not_trip(clock):
    breaker = CircuitBreaker("gw", failure_threshold=1, clock=clock)

    async def bad_request():
        raise ValidationError("amount mismatch")

    for _ in range(3):
        with pytest.raises(ValidationError):
            await breaker.execute(bad_request)
    assert breaker.state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_call_timeout_counts_as_failure(clock):
    breaker = CircuitBreaker("gw", failure_threshold=1, call_timeout=0.01, clock=clock)

    async def hang():
        await asyncio.sleep(1)

    with pytest.raises(GatewayTimeoutError):
        await breaker.execute(hang)
    assert breaker.state is CircuitState.OPEN
    assert breaker.snapshot()["stats"]["timeouts"] == 1


@pytest.mark.asyncio
async def test_listeners_see_every_transition(clock):
    listener = RecordingListener()
    breaker = CircuitBreaker("gw", failure_threshold=1, reset_timeout=1, clock=clock, listeners=[listener])
    dependency = Dependency()

    await _trip(breaker, dependency, 1)
    clock.advance(1)
    dependency.fail = False
    await breaker.execute(dependency)

    assert listener.transitions == [
        (CircuitState.CLOSED, CircuitState.OPEN),
        (CircuitState.OPEN, CircuitState.HALF_OPEN),
        (CircuitState.HALF_OPEN, CircuitState.CLOSED),
    ]


def test_reset_returns_to_closed_and_keeps_stats(clock):
    breaker = CircuitBreaker("gw", failure_threshold=1, clock=clock)
    asyncio.run(_trip(breaker, Dependency(), 1))

    breaker.reset()

    assert breaker.state is CircuitState.CLOSED
    assert breaker.snapshot()["stats"]["opens"] == 1

"""In-process circuit breaker guarding one gateway capability.

States:
- CLOSED: calls pass through; consecutive failures are counted.
- OPEN: calls fail fast with `CircuitOpenError` until `reset_timeout` elapses.
- HALF_OPEN: exactly one trial call is let through. Success closes the
  circuit, failure re-opens it for another `reset_timeout`.

State lives in memory only. A restart reverts every breaker to CLOSED.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from paysync.common.errors import AuthError, CircuitOpenError, GatewayTimeoutError, ValidationError
from paysync.common.logging import logger
from paysync.common.metrics import circuit_breaker_state, circuit_breaker_transitions_total


T = TypeVar("T")


class CircuitState(StrEnum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


STATE_GAUGE_VALUES = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}


class CircuitBreakerListener(Protocol):
    def on_transition(self, name: str, old: CircuitState, new: CircuitState) -> None: ...


class LoggingListener:
    def on_transition(self, name: str, old: CircuitState, new: CircuitState) -> None:
        log = logger.warning if new is CircuitState.OPEN else logger.info
        log("circuit_transition dependency=%s from=%s to=%s", name, old, new)


class MetricsListener:
    def __init__(self, service_name: str = "paysync") -> None:
        self.service_name = service_name

    def on_transition(self, name: str, old: CircuitState, new: CircuitState) -> None:
        circuit_breaker_state.labels(service=self.service_name, dependency=name).set(STATE_GAUGE_VALUES[new])
        circuit_breaker_transitions_total.labels(
            service=self.service_name,
            dependency=name,
            to_state=new.lower(),
        ).inc()


@dataclass
class CircuitStats:
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    timeouts: int = 0
    opens: int = 0
    closes: int = 0


@dataclass
class CircuitBreakerState:
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    last_failure_time: float | None = None
    next_probe_time: float | None = None
    stats: CircuitStats = field(default_factory=CircuitStats)


def counts_as_failure(exc: BaseException) -> bool:
    """Bad input and bad credentials say nothing about dependency health."""

    return not isinstance(exc, (ValidationError, AuthError))


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        call_timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        listeners: list[CircuitBreakerListener] | None = None,
        is_failure: Callable[[BaseException], bool] = counts_as_failure,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.call_timeout = call_timeout
        self._clock = clock
        self._listeners = list(listeners or [])
        self._is_failure = is_failure
        self._state = CircuitBreakerState()
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state.state

    def add_listener(self, listener: CircuitBreakerListener) -> None:
        self._listeners.append(listener)

    def _transition(self, new: CircuitState) -> None:
        old = self._state.state
        if old is new:
            return
        self._state.state = new
        if new is CircuitState.OPEN:
            self._state.stats.opens += 1
            self._state.next_probe_time = self._clock() + self.reset_timeout
        elif new is CircuitState.CLOSED:
            self._state.stats.closes += 1
            self._state.next_probe_time = None
        for listener in self._listeners:
            try:
                listener.on_transition(self.name, old, new)
            except Exception:
                logger.exception("circuit listener failed dependency=%s", self.name)

    def _admit(self) -> bool:
        """Decide whether this call may proceed; returns True for the half-open trial."""

        if self._state.state is CircuitState.OPEN:
            now = self._clock()
            if now < self._state.next_probe_time:
                self._reject(self._state.next_probe_time - now)
            self._transition(CircuitState.HALF_OPEN)
        if self._state.state is CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                self._reject(0.0)
            self._trial_in_flight = True
            return True
        return False

    def _reject(self, retry_after: float) -> None:
        self._state.stats.rejected_calls += 1
        raise CircuitOpenError(self.name, retry_after)

    def _on_success(self) -> None:
        self._state.consecutive_failures = 0
        self._state.stats.successful_calls += 1
        if self._state.state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.CLOSED)

    def _on_failure(self) -> None:
        self._state.consecutive_failures += 1
        self._state.last_failure_time = self._clock()
        self._state.stats.failed_calls += 1
        if self._state.state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
        elif self._state.consecutive_failures >= self.failure_threshold:
            self._transition(CircuitState.OPEN)

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run `operation` under the breaker and the per-call timeout."""

        self._state.stats.total_calls += 1
        trial = self._admit()
        try:
            try:
                result = await asyncio.wait_for(operation(), timeout=self.call_timeout)
            except asyncio.TimeoutError as exc:
                self._state.stats.timeouts += 1
                raise GatewayTimeoutError(f"{self.name} call timed out after {self.call_timeout}s") from exc
        except Exception as exc:
            if self._is_failure(exc):
                self._on_failure()
            elif trial:
                # The dependency answered; a client-side error still proves it is reachable.
                self._on_success()
            raise
        else:
            self._on_success()
            return result
        finally:
            if trial:
                self._trial_in_flight = False

    def reset(self) -> None:
        self._state = CircuitBreakerState(stats=self._state.stats)
        self._trial_in_flight = False

    def snapshot(self) -> dict[str, Any]:
        s = self._state
        return {
            "state": s.state.value,
            "healthy": s.state is CircuitState.CLOSED,
            "consecutive_failures": s.consecutive_failures,
            "last_failure_time": s.last_failure_time,
            "next_probe_time": s.next_probe_time,
            "stats": vars(s.stats).copy(),
        }

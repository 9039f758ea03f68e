"""Bounded exponential-backoff retry with jitter and cancellation.

Attempt 1 runs immediately. Before attempt n (n > 1) the executor waits
`min(max_delay, base_delay * factor ** (n - 1))`, randomized by +/-25 % when
jitter is on. Terminal errors abort at once; exhausting attempts re-raises the
last error tagged with the attempt count and elapsed time.
"""

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from paysync.common.config import settings
from paysync.common.errors import OperationCancelledError, PaySyncError, RateLimitedError, is_retryable
from paysync.common.logging import logger
from paysync.common.metrics import retries_total


T = TypeVar("T")

JITTER_RATIO = 0.25


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0
    jitter: bool = True
    is_retryable: Callable[[BaseException], bool] = field(default=is_retryable)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            factor=settings.retry_factor,
            max_delay=settings.retry_max_delay_seconds,
            jitter=settings.retry_jitter,
        )

    def delay_before(self, attempt: int, rng: random.Random | None = None) -> float:
        """Backoff to sleep before `attempt` (1-based); zero for the first."""

        if attempt <= 1:
            return 0.0
        delay = min(self.max_delay, self.base_delay * self.factor ** (attempt - 1))
        if self.jitter:
            delay *= (rng or random).uniform(1 - JITTER_RATIO, 1 + JITTER_RATIO)
        return delay


def _tag(exc: BaseException, attempts: int, elapsed: float) -> None:
    if isinstance(exc, PaySyncError):
        exc.attempts = attempts
        exc.elapsed = elapsed
    else:
        exc.add_note(f"retry gave up after {attempts} attempts in {elapsed:.3f}s")


class RetryExecutor:
    def __init__(
        self,
        dependency: str,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
        service_name: str = "paysync",
    ) -> None:
        self.dependency = dependency
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng
        self.service_name = service_name

    async def _wait(self, delay: float, cancel: asyncio.Event | None) -> None:
        if cancel is None:
            await self._sleep(delay)
            return
        if cancel.is_set():
            raise OperationCancelledError(f"{self.dependency} retry cancelled")
        try:
            await asyncio.wait_for(cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise OperationCancelledError(f"{self.dependency} retry cancelled during backoff")

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
        cancel: asyncio.Event | None = None,
    ) -> T:
        policy = policy or self.policy
        started = time.monotonic()
        attempt = 1
        while True:
            if cancel is not None and cancel.is_set():
                raise OperationCancelledError(f"{self.dependency} cancelled before attempt {attempt}")
            try:
                return await operation()
            except Exception as exc:
                elapsed = time.monotonic() - started
                if not policy.is_retryable(exc) or attempt >= policy.max_attempts:
                    _tag(exc, attempt, elapsed)
                    raise
                delay = policy.delay_before(attempt + 1, self._rng)
                if isinstance(exc, RateLimitedError):
                    delay = max(delay, exc.retry_after)
                retries_total.labels(service=self.service_name, dependency=self.dependency).inc()
                logger.warning(
                    "retrying dependency=%s attempt=%s max_attempts=%s backoff_s=%.3f error=%s",
                    self.dependency,
                    attempt,
                    policy.max_attempts,
                    delay,
                    exc,
                )
                await self._wait(delay, cancel)
                attempt += 1

"""Sliding-window limiter for outbound calls to one gateway capability."""

import time
from collections import deque
from typing import Any, Awaitable, Callable, TypeVar

from paysync.common.errors import RateLimitedError
from paysync.common.metrics import rate_limited_total


T = TypeVar("T")


class SlidingWindowRateLimiter:
    """Allow at most `max_requests` calls in any rolling `window` seconds.

    Timestamps are kept in a FIFO deque; entries older than the window are
    evicted on every acquire. There is no fairness beyond that ordering.
    """

    def __init__(
        self,
        name: str,
        max_requests: int = 10,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        service_name: str = "paysync",
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        self.name = name
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._requests: deque[float] = deque()
        self.service_name = service_name

    def _evict(self, now: float) -> None:
        while self._requests and now - self._requests[0] >= self.window:
            self._requests.popleft()

    def try_acquire(self) -> float:
        """Record a call and return 0.0, or return the seconds to wait."""

        now = self._clock()
        self._evict(now)
        if len(self._requests) >= self.max_requests:
            return self._requests[0] + self.window - now
        self._requests.append(now)
        return 0.0

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        wait = self.try_acquire()
        if wait > 0:
            rate_limited_total.labels(service=self.service_name, dependency=self.name).inc()
            raise RateLimitedError(self.name, wait)
        return await operation()

    def status(self) -> dict[str, Any]:
        now = self._clock()
        self._evict(now)
        blocked_for = 0.0
        if len(self._requests) >= self.max_requests:
            blocked_for = self._requests[0] + self.window - now
        return {
            "requests_in_window": len(self._requests),
            "max_requests": self.max_requests,
            "window_seconds": self.window,
            "blocked_for_seconds": blocked_for,
        }

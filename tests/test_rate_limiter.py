"""Sliding-window limiter behavior."""

import pytest

from paysync.common.errors import RateLimitedError
from paysync.common.rate_limiter import SlidingWindowRateLimiter


def test_refuses_once_window_is_full(clock):
    limiter = SlidingWindowRateLimiter("gw", max_requests=2, window=60, clock=clock)

    assert limiter.try_acquire() == 0.0
    clock.advance(10)
    assert limiter.try_acquire() == 0.0
    clock.advance(5)

    assert limiter.try_acquire() == pytest.approx(45)
    assert limiter.status()["requests_in_window"] == 2


def test_window_slides(clock):
    limiter = SlidingWindowRateLimiter("gw", max_requests=1, window=60, clock=clock)
    limiter.try_acquire()

    clock.advance(60)

    assert limiter.try_acquire() == 0.0


@pytest.mark.asyncio
async def test_execute_raises_with_retry_hint_without_calling(clock):
    limiter = SlidingWindowRateLimiter("gw", max_requests=1, window=30, clock=clock)
    calls = []

    async def operation():
        calls.append(1)
        return "ok"

    assert await limiter.execute(operation) == "ok"
    with pytest.raises(RateLimitedError) as info:
        await limiter.execute(operation)

    assert calls == [1]
    assert info.value.retryable
    assert info.value.retry_after == pytest.approx(30)

"""Per-key serialization guard."""

import asyncio

import pytest

from paysync.common.single_flight import KeyedLock


@pytest.mark.asyncio
async def test_same_key_is_serialized_and_cleaned_up():
    guard = KeyedLock()
    trace = []

    async def worker(name):
        async with guard.hold("pay-1"):
            trace.append(f"{name}-in")
            await asyncio.sleep(0.01)
            trace.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))

    assert trace == ["a-in", "a-out", "b-in", "b-out"]
    assert guard.active_keys() == 0


@pytest.mark.asyncio
async def test_different_keys_run_concurrently():
    guard = KeyedLock()
    inside = asyncio.Event()
    release = asyncio.Event()

    async def holder():
        async with guard.hold("pay-1"):
            inside.set()
            await release.wait()

    task = asyncio.create_task(holder())
    await inside.wait()

    async with guard.hold("pay-2"):
        assert guard.active_keys() == 2

    release.set()
    await task
    assert guard.active_keys() == 0

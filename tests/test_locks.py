"""Tests for the per-key lock table."""

import asyncio

from storage_server.locks import KeyedLocks


async def test_same_key_is_serialized() -> None:
    locks = KeyedLocks()
    active = 0
    peak = 0

    async def worker() -> None:
        nonlocal active, peak
        async with locks.hold("k"):
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

    await asyncio.gather(*(worker() for _ in range(5)))
    assert peak == 1


async def test_different_keys_run_concurrently() -> None:
    locks = KeyedLocks()
    entered = asyncio.Event()

    async def first() -> None:
        async with locks.hold("a"):
            await asyncio.wait_for(entered.wait(), timeout=1)

    async def second() -> None:
        async with locks.hold("b"):
            entered.set()

    await asyncio.gather(first(), second())


async def test_locks_are_released_from_table() -> None:
    locks = KeyedLocks()
    async with locks.hold("a"):
        assert len(locks) == 1
    assert len(locks) == 0


async def test_lock_released_on_error() -> None:
    locks = KeyedLocks()
    try:
        async with locks.hold("a"):
            raise RuntimeError("boom")
    except RuntimeError:
        pass
    assert len(locks) == 0
    async with locks.hold("a"):
        pass

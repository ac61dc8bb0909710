"""Tests for keyed exclusive sections and backoff."""

from __future__ import annotations

import asyncio

import pytest

from buildns.core.backoff import backoff_delay
from buildns.core.locks import KeyedLock


class TestKeyedLock:
    """Tests for KeyedLock."""

    @pytest.mark.asyncio
    async def test_same_key_is_exclusive(self):
        locks = KeyedLock()
        active = 0
        peak = 0

        async def worker():
            nonlocal active, peak
            async with locks.hold("d1"):
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0)
                active -= 1

        await asyncio.gather(*(worker() for _ in range(10)))

        assert peak == 1
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self):
        locks = KeyedLock()
        entered = asyncio.Event()

        async def holder():
            async with locks.hold("d1"):
                entered.set()
                await asyncio.sleep(0.05)

        task = asyncio.create_task(holder())
        await entered.wait()

        async with asyncio.timeout(0.5):
            async with locks.hold("d2"):
                assert locks.locked("d1")
                assert locks.locked("d2")

        await task
        assert not locks.locked("d1")

    @pytest.mark.asyncio
    async def test_overlapping_key_sets_do_not_deadlock(self):
        locks = KeyedLock()
        order = []

        async def worker(name, *keys):
            async with locks.hold(*keys):
                order.append(name)
                await asyncio.sleep(0)

        async with asyncio.timeout(1.0):
            await asyncio.gather(
                worker("ab", "a", "b"),
                worker("ba", "b", "a"),
                worker("aa", "a", "a"),
            )

        assert sorted(order) == ["aa", "ab", "ba"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        locks = KeyedLock()

        with pytest.raises(RuntimeError):
            async with locks.hold("d1"):
                raise RuntimeError("boom")

        assert not locks.locked("d1")
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_is_forgotten(self):
        locks = KeyedLock()

        async with locks.hold("d1"):
            waiter = asyncio.create_task(locks._acquire("d1"))
            await asyncio.sleep(0)
            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter

        assert len(locks) == 0


class TestBackoff:
    """Tests for backoff_delay."""

    def test_doubles_and_caps(self):
        assert backoff_delay(1, 30, 3600, jitter=0) == 30
        assert backoff_delay(2, 30, 3600, jitter=0) == 60
        assert backoff_delay(4, 30, 3600, jitter=0) == 240
        assert backoff_delay(20, 30, 3600, jitter=0) == 3600

    def test_jitter_is_bounded(self):
        for attempt in range(1, 6):
            base = backoff_delay(attempt, 1, 60, jitter=0)
            delay = backoff_delay(attempt, 1, 60, jitter=0.2)
            assert base <= delay <= base * 1.2

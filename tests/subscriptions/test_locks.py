"""
Tests for per-key asyncio locks and the injectable clock.
"""

import asyncio
from datetime import UTC, date, datetime

import pytest

from urbain.transit.subscriptions.clock import FrozenClock, SystemClock
from urbain.transit.subscriptions.locks import KeyedLock


@pytest.mark.unit
class TestKeyedLock:
    """Test per-key serialization."""

    @pytest.mark.asyncio
    async def test_same_key_serializes(self):
        locks = KeyedLock()
        active = 0
        peak = 0

        async def worker():
            nonlocal active, peak
            async with locks.hold("sub-1"):
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(*(worker() for _ in range(5)))

        assert peak == 1

    @pytest.mark.asyncio
    async def test_different_keys_run_together(self):
        locks = KeyedLock()
        both_inside = asyncio.Event()
        inside = set()

        async def worker(key):
            async with locks.hold(key):
                inside.add(key)
                if len(inside) == 2:
                    both_inside.set()
                await asyncio.wait_for(both_inside.wait(), timeout=1)

        await asyncio.gather(worker("a"), worker("b"))

        assert both_inside.is_set()

    @pytest.mark.asyncio
    async def test_locks_dropped_when_released(self):
        locks = KeyedLock()

        async with locks.hold("sub-1"):
            assert locks.locked("sub-1")
            assert len(locks) == 1

        assert not locks.locked("sub-1")
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        locks = KeyedLock()

        with pytest.raises(RuntimeError):
            async with locks.hold("sub-1"):
                raise RuntimeError("boom")

        assert len(locks) == 0


@pytest.mark.unit
class TestClocks:
    """Test time sources."""

    def test_frozen_clock_from_date(self):
        clock = FrozenClock(date(2024, 1, 31))

        assert clock.today() == date(2024, 1, 31)
        assert clock.now().tzinfo is UTC

    def test_frozen_clock_advance(self):
        clock = FrozenClock(datetime(2024, 1, 31, 23, 0))

        clock.advance(seconds=3600)

        assert clock.today() == date(2024, 2, 1)

    def test_system_clock_is_utc(self):
        assert SystemClock().now().tzinfo is UTC

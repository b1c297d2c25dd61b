"""
Unit tests for the bounded concurrency primitives.
"""
import asyncio

import pytest

from broadband_sync.core.parallel import (
    BoundedWritePool,
    collect_in_parallel,
    iterate_in_parallel,
    take_in_parallel,
)


class ConcurrencyTracker:
    """Callback that records how many calls overlap."""

    def __init__(self, delay: float = 0.01):
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.started = []

    async def __call__(self, item):
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.started.append(item)
        try:
            await asyncio.sleep(self.delay)
            return item * 2
        finally:
            self.active -= 1


class TestTakeInParallel:
    @pytest.mark.asyncio
    async def test_never_exceeds_concurrency(self):
        tracker = ConcurrencyTracker()

        results = await collect_in_parallel(range(50), 10, tracker)

        assert sorted(results) == [i * 2 for i in range(50)]
        assert tracker.peak == 10

    @pytest.mark.asyncio
    async def test_accepts_async_iterables(self):
        async def produce():
            for i in range(5):
                await asyncio.sleep(0)
                yield i

        results = await collect_in_parallel(produce(), 2, ConcurrencyTracker())

        assert sorted(results) == [0, 2, 4, 6, 8]

    @pytest.mark.asyncio
    async def test_yields_in_completion_order(self):
        async def slow_first(item):
            await asyncio.sleep(0.05 if item == 0 else 0.0)
            return item

        results = await collect_in_parallel([0, 1, 2], 3, slow_first)

        assert results[-1] == 0

    @pytest.mark.asyncio
    async def test_empty_input(self):
        assert await collect_in_parallel([], 4, ConcurrencyTracker()) == []

    @pytest.mark.asyncio
    async def test_rejects_non_positive_concurrency(self):
        with pytest.raises(ValueError):
            await collect_in_parallel([1], 0, ConcurrencyTracker())

    @pytest.mark.asyncio
    async def test_error_sets_cancellation_and_waits_for_in_flight(self):
        cancellation = asyncio.Event()
        finished = []

        async def callback(item):
            if item == 0:
                raise RuntimeError("broken file")
            await asyncio.sleep(0.02)
            finished.append(item)
            return item

        with pytest.raises(RuntimeError, match="broken file"):
            await iterate_in_parallel(take_in_parallel(range(100), 3, callback, cancellation))

        assert cancellation.is_set()
        # The two siblings dispatched alongside the failing item completed
        assert sorted(finished) == [1, 2]

    @pytest.mark.asyncio
    async def test_preset_cancellation_schedules_nothing(self):
        cancellation = asyncio.Event()
        cancellation.set()
        tracker = ConcurrencyTracker()

        assert await collect_in_parallel(range(10), 2, tracker, cancellation) == []
        assert tracker.started == []

    @pytest.mark.asyncio
    async def test_cancellation_stops_new_work(self):
        cancellation = asyncio.Event()
        tracker = ConcurrencyTracker()
        seen = []

        async for result in take_in_parallel(range(20), 2, tracker, cancellation):
            seen.append(result)
            cancellation.set()

        # Work already dispatched finishes, nothing new starts
        assert len(tracker.started) == 2
        assert len(seen) == 2


class TestBoundedWritePool:
    @pytest.mark.asyncio
    async def test_backpressure_bounds_in_flight_writes(self):
        pool = BoundedWritePool(capacity=5)
        done = []

        async def write(i):
            await asyncio.sleep(0.005)
            done.append(i)

        for i in range(40):
            await pool.submit(write(i))
            assert pool.in_flight <= 5

        await pool.drain()

        assert sorted(done) == list(range(40))
        assert pool.peak_in_flight == 5
        assert pool.completed == 40
        assert pool.in_flight == 0

    @pytest.mark.asyncio
    async def test_write_error_surfaces_on_drain(self):
        cancellation = asyncio.Event()
        pool = BoundedWritePool(capacity=3, cancellation=cancellation)

        async def failing():
            raise ConnectionError("scratch store down")

        await pool.submit(failing())

        with pytest.raises(ConnectionError):
            await pool.drain()
        assert cancellation.is_set()

    @pytest.mark.asyncio
    async def test_write_error_surfaces_on_next_submit(self):
        pool = BoundedWritePool(capacity=3)

        async def failing():
            raise ConnectionError("scratch store down")

        async def ok():
            return None

        await pool.submit(failing())
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        with pytest.raises(ConnectionError):
            await pool.submit(ok())

    def test_rejects_non_positive_capacity(self):
        with pytest.raises(ValueError):
            BoundedWritePool(capacity=0)

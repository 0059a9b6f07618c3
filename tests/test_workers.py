"""Tests for the bounded worker pool."""

import asyncio

import pytest

from sitepress.workers import WorkerPool, run_with_worker_pool


async def test_results_follow_input_order():
    delays = [0.03, 0.0, 0.02, 0.01, 0.0]

    async def fn(delay, index, worker_id):
        await asyncio.sleep(delay)
        return index * 10

    assert await run_with_worker_pool(delays, 3, fn) == [0, 10, 20, 30, 40]


async def test_in_flight_never_exceeds_width():
    in_flight = 0
    peak = 0
    workers_seen = set()

    async def fn(item, index, worker_id):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        workers_seen.add(worker_id)
        await asyncio.sleep(0.005)
        in_flight -= 1
        return item

    assert await run_with_worker_pool(list(range(12)), 3, fn) == list(range(12))
    assert peak == 3
    assert workers_seen == {0, 1, 2}


async def test_width_never_exceeds_item_count():
    seen = set()

    async def fn(item, index, worker_id):
        seen.add(worker_id)
        await asyncio.sleep(0)

    await run_with_worker_pool(["a", "b"], 8, fn)
    assert seen <= {0, 1}


async def test_empty_input():
    async def fn(item, index, worker_id):
        raise AssertionError("not called")

    assert await run_with_worker_pool([], 4, fn) == []


async def test_first_exception_propagates_and_stops_siblings():
    finished = []

    async def fn(item, index, worker_id):
        if item == 1:
            raise ValueError("boom")
        await asyncio.sleep(0.01)
        finished.append(item)

    with pytest.raises(ValueError, match="boom"):
        await run_with_worker_pool(list(range(20)), 2, fn)
    await asyncio.sleep(0.05)
    assert len(finished) < 19


async def test_worker_pool_clamps_width():
    pool = WorkerPool(20, hard_max=8)
    assert pool.max_workers == 8
    assert pool.width_for(3) == 3
    assert pool.width_for(0) == 0
    assert pool.width_for(10, requested=2) == 2
    assert WorkerPool(0).max_workers == 1


async def test_worker_pool_map_counts_items():
    pool = WorkerPool(2)

    async def fn(item, index, worker_id):
        return item.upper()

    assert await pool.map(["a", "b", "c"], fn) == ["A", "B", "C"]
    stats = pool.get_stats()
    assert stats["items_processed"] == 3
    assert stats["active_runs"] == 0

"""
Frontier Store Tests

Dedup, dispatch and teardown of the Redis-backed frontier.
"""

import asyncio

import pytest

from stepcrawl.crawler.models import PathState
from stepcrawl.storage.frontier import FrontierAlreadyExists, FrontierNotDrained, FrontierNotFound


FID = "crawl-1"


@pytest.fixture
async def created(frontier):
    await frontier.create(FID)
    return frontier


async def test_create_twice_fails(created):
    with pytest.raises(FrontierAlreadyExists):
        await created.create(FID)
    assert await created.exists(FID)


async def test_operations_on_missing_frontier(frontier):
    with pytest.raises(FrontierNotFound):
        await frontier.mark_visited("missing", "/")
    with pytest.raises(FrontierNotFound):
        await frontier.enqueue("missing", ["/"])
    with pytest.raises(FrontierNotFound):
        await frontier.dequeue_batch("missing", 5)


async def test_enqueue_is_idempotent(created):
    assert await created.enqueue(FID, ["/a", "/b", "/a"]) == 2
    assert await created.enqueue(FID, ["/a", "/b"]) == 0
    assert await created.enqueue(FID, ["/b", "/c", ""]) == 1
    assert await created.remaining_count(FID) == 3


async def test_visited_paths_are_never_requeued(created):
    await created.enqueue(FID, ["/a"])
    assert await created.mark_visited(FID, "/a") is True
    assert await created.mark_visited(FID, "/a") is False

    assert await created.enqueue(FID, ["/a"]) == 0
    assert await created.get_state(FID, "/a") is PathState.VISITED
    assert await created.remaining_count(FID) == 0
    assert await created.is_visited(FID, "/a")


async def test_dispatched_paths_are_not_requeued(created):
    await created.enqueue(FID, ["/a"])
    assert await created.dequeue_batch(FID, 1) == ["/a"]
    assert await created.enqueue(FID, ["/a"]) == 0
    assert await created.get_state(FID, "/a") is PathState.DISPATCHED


async def test_dequeue_respects_limit(created):
    await created.enqueue(FID, [f"/p{i}" for i in range(5)])

    batch = await created.dequeue_batch(FID, 2)

    assert len(batch) == 2
    assert await created.get_stats(FID) == {'queued': 3, 'dispatched': 2, 'visited': 0}
    # Dispatched paths still count as remaining work
    assert await created.remaining_count(FID) == 5
    assert await created.dequeue_batch(FID, 0) == []


async def test_concurrent_dequeues_never_share_paths(created):
    paths = {f"/p{i}" for i in range(10)}
    await created.enqueue(FID, paths)

    batches = await asyncio.gather(*(created.dequeue_batch(FID, 3) for _ in range(4)))

    handed_out = [path for batch in batches for path in batch]
    assert all(len(batch) <= 3 for batch in batches)
    assert len(handed_out) == len(set(handed_out))
    assert set(handed_out) == paths


async def test_concurrent_enqueues_add_each_path_once(created):
    results = await asyncio.gather(
        created.enqueue(FID, ["/a", "/b", "/c"]),
        created.enqueue(FID, ["/b", "/c", "/d"]),
    )
    assert sum(results) == 4
    assert await created.remaining_count(FID) == 4


async def test_mark_visited_clears_dispatched(created):
    await created.enqueue(FID, ["/a"])
    await created.dequeue_batch(FID, 1)
    await created.mark_visited(FID, "/a")

    assert await created.get_stats(FID) == {'queued': 0, 'dispatched': 0, 'visited': 1}


async def test_reclaim_returns_orphans_to_queue(created):
    await created.enqueue(FID, ["/a", "/b"])
    await created.dequeue_batch(FID, 2)
    await created.mark_visited(FID, "/a")

    assert await created.reclaim_dispatched(FID) == 1
    assert await created.get_state(FID, "/b") is PathState.QUEUED
    assert await created.reclaim_dispatched(FID) == 0


async def test_destroy_requires_drained_frontier(created):
    await created.enqueue(FID, ["/a"])
    with pytest.raises(FrontierNotDrained):
        await created.destroy(FID)

    await created.mark_visited(FID, "/a")
    assert await created.destroy(FID) is True
    assert not await created.exists(FID)
    assert await created.visited_count(FID) == 0

    # Second destroy from a retried step is a no-op
    assert await created.destroy(FID) is False

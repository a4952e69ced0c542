import asyncio

import pytest

from src.memory.tasks import BackgroundTaskQueue


@pytest.mark.asyncio
async def test_failures_are_collected_not_raised():
    queue = BackgroundTaskQueue()
    results = []

    async def ok():
        results.append("done")

    async def boom():
        raise RuntimeError("boom")

    queue.submit("ok", ok)
    queue.submit("boom", boom)
    await queue.drain()

    assert results == ["done"]
    assert queue.pending_count == 0
    assert [failure.name for failure in queue.failures] == ["boom"]
    assert isinstance(queue.failures[0].error, RuntimeError)


@pytest.mark.asyncio
async def test_closed_queue_rejects_work_and_cancels_stragglers():
    queue = BackgroundTaskQueue()
    started = asyncio.Event()

    async def slow():
        started.set()
        await asyncio.sleep(30)

    task = queue.submit("slow", slow)
    await started.wait()
    await queue.close(timeout=0.05)

    assert task.cancelled()
    assert queue.submit("late", slow) is None
    assert not queue.failures


def test_submit_without_running_loop_is_dropped():
    queue = BackgroundTaskQueue()
    called = []

    def factory():
        called.append(True)
        return asyncio.sleep(0)

    assert queue.submit("orphan", factory) is None
    assert called == []


@pytest.mark.asyncio
async def test_is_pending_tracks_named_tasks():
    queue = BackgroundTaskQueue()
    release = asyncio.Event()

    async def wait():
        await release.wait()

    queue.submit("summarize:t1", wait)

    assert queue.is_pending("summarize:t1") is True
    assert queue.is_pending("summarize:t2") is False

    release.set()
    await queue.drain()
    assert queue.is_pending("summarize:t1") is False

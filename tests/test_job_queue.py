"""Tests for the bounded priority job queue."""

import asyncio

import pytest

from termtune.core.job_queue import JobQueue
from termtune.exceptions import JobCancelled, QueueClosed, QueueFull
from termtune.models.job import CancelToken, Job, JobPriority, JobState


def make_job(job_id: str, priority: JobPriority = JobPriority.PREFETCH) -> Job:
    return Job(id=job_id, source_ref=f"src-{job_id}", priority=priority)


class TestOrdering:
    @pytest.mark.asyncio
    async def test_higher_priority_dequeues_first(self) -> None:
        queue = JobQueue(capacity=10)
        await queue.enqueue(make_job("a", JobPriority.PREFETCH))
        await queue.enqueue(make_job("b", JobPriority.PREFETCH))
        await queue.enqueue(make_job("c", JobPriority.NOW_PLAYING))

        order = [(await queue.dequeue()).id for _ in range(3)]

        assert order == ["c", "a", "b"]

    @pytest.mark.asyncio
    async def test_fifo_within_priority(self) -> None:
        queue = JobQueue(capacity=10)
        for job_id in ("first", "second", "third"):
            await queue.enqueue(make_job(job_id))

        order = [(await queue.dequeue()).id for _ in range(3)]

        assert order == ["first", "second", "third"]

    @pytest.mark.asyncio
    async def test_snapshot_is_in_dequeue_order(self) -> None:
        queue = JobQueue(capacity=10)
        await queue.enqueue(make_job("a"))
        await queue.enqueue(make_job("b", JobPriority.NOW_PLAYING))

        assert [job.id for job in queue.snapshot()] == ["b", "a"]


class TestCapacity:
    @pytest.mark.asyncio
    async def test_non_blocking_enqueue_raises_when_full(self) -> None:
        queue = JobQueue(capacity=2)
        await queue.enqueue(make_job("a"))
        await queue.enqueue(make_job("b"))

        with pytest.raises(QueueFull):
            await queue.enqueue(make_job("c"))
        assert len(queue) == 2

    @pytest.mark.asyncio
    async def test_blocking_enqueue_waits_for_space(self) -> None:
        queue = JobQueue(capacity=1)
        await queue.enqueue(make_job("a"))

        blocked = asyncio.create_task(queue.enqueue(make_job("b"), block=True))
        await asyncio.sleep(0.01)
        assert not blocked.done()

        assert (await queue.dequeue()).id == "a"
        await asyncio.wait_for(blocked, timeout=1)
        assert (await queue.dequeue()).id == "b"

    @pytest.mark.asyncio
    async def test_blocked_enqueue_aborts_on_cancel_token(self) -> None:
        queue = JobQueue(capacity=1)
        await queue.enqueue(make_job("a"))
        token = CancelToken()

        blocked = asyncio.create_task(
            queue.enqueue(make_job("b"), block=True, cancel_token=token)
        )
        await asyncio.sleep(0.01)
        token.cancel()

        with pytest.raises(JobCancelled):
            await asyncio.wait_for(blocked, timeout=1)
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_cancel_frees_capacity(self) -> None:
        queue = JobQueue(capacity=1)
        await queue.enqueue(make_job("a"))

        cancelled = await queue.cancel("a")
        await queue.enqueue(make_job("b"))

        assert cancelled.state == JobState.CANCELLED
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_duplicate_id_is_rejected(self) -> None:
        queue = JobQueue(capacity=5)
        await queue.enqueue(make_job("a"))

        with pytest.raises(ValueError):
            await queue.enqueue(make_job("a"))

    def test_capacity_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            JobQueue(capacity=0)


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_job_is_skipped(self) -> None:
        queue = JobQueue(capacity=5)
        await queue.enqueue(make_job("a"))
        await queue.enqueue(make_job("b"))

        await queue.cancel("a")

        assert (await queue.dequeue()).id == "b"

    @pytest.mark.asyncio
    async def test_cancel_unknown_job_returns_none(self) -> None:
        queue = JobQueue(capacity=5)
        assert await queue.cancel("missing") is None

    @pytest.mark.asyncio
    async def test_job_cancelled_directly_is_skipped(self) -> None:
        queue = JobQueue(capacity=5)
        job = make_job("a")
        await queue.enqueue(job)
        await queue.enqueue(make_job("b"))

        job.cancel()

        assert queue.get("a") is None
        assert (await queue.dequeue()).id == "b"


class TestClose:
    @pytest.mark.asyncio
    async def test_close_wakes_consumers_with_none(self) -> None:
        queue = JobQueue(capacity=5)
        consumer = asyncio.create_task(queue.dequeue())
        await asyncio.sleep(0.01)

        await queue.close()

        assert await asyncio.wait_for(consumer, timeout=1) is None

    @pytest.mark.asyncio
    async def test_close_cancels_and_returns_queued_jobs(self) -> None:
        queue = JobQueue(capacity=5)
        job = make_job("a")
        await queue.enqueue(job)

        abandoned = await queue.close()

        assert abandoned == [job]
        assert job.state == JobState.CANCELLED
        assert await queue.dequeue() is None

    @pytest.mark.asyncio
    async def test_enqueue_after_close_raises(self) -> None:
        queue = JobQueue(capacity=5)
        await queue.close()

        with pytest.raises(QueueClosed):
            await queue.enqueue(make_job("a"))

    @pytest.mark.asyncio
    async def test_close_releases_blocked_producers(self) -> None:
        queue = JobQueue(capacity=1)
        await queue.enqueue(make_job("a"))
        blocked = asyncio.create_task(queue.enqueue(make_job("b"), block=True))
        await asyncio.sleep(0.01)

        await queue.close()

        with pytest.raises(QueueClosed):
            await asyncio.wait_for(blocked, timeout=1)

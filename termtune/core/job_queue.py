"""
A bounded priority queue of download jobs sitting between the playlist and the
worker pool. Higher priority first, FIFO within a priority.
"""

import asyncio
import heapq
import itertools
import logging

from termtune.exceptions import QueueClosed, QueueFull
from termtune.models.job import CancelToken, Job, JobState

log = logging.getLogger(__name__)


class JobQueue:
    """
    Bounded priority FIFO with backpressure.

    Heap entries are `(-priority, sequence, job)`. Cancelled jobs stay in the heap
    until they surface and are skipped by `dequeue`, but they stop counting
    against capacity as soon as they are cancelled through `cancel`.
    """

    def __init__(self, capacity: int = 1000):
        if capacity < 1:
            raise ValueError("Queue capacity must be at least 1.")
        self.capacity = capacity
        self._heap: list[tuple[int, int, Job]] = []
        self._live: dict[str, Job] = {}
        self._sequence = itertools.count()
        self._cond = asyncio.Condition()
        self._closed = False

    def __len__(self) -> int:
        return len(self._live)

    @property
    def closed(self) -> bool:
        return self._closed

    def _is_full(self) -> bool:
        if len(self._live) < self.capacity:
            return False
        # Jobs cancelled directly through Job.cancel() never told us.
        self._live = {k: j for k, j in self._live.items() if j.state == JobState.QUEUED}
        return len(self._live) >= self.capacity

    async def enqueue(
        self,
        job: Job,
        block: bool = False,
        cancel_token: CancelToken | None = None,
    ) -> None:
        """
        Adds a queued job.

        Args:
            job: A job in the QUEUED state whose id is not already queued.
            block: Wait for space instead of raising when the queue is full.
            cancel_token: Aborts a blocked submission. Defaults to the job's token.

        Raises:
            QueueFull: The queue is at capacity and `block` is False.
            QueueClosed: The queue has been closed.
            JobCancelled: The token fired while waiting for space.
        """
        if job.state != JobState.QUEUED:
            raise ValueError(f"Job '{job.id}' is {job.state.value}, not queued.")
        token = cancel_token or job.cancel_token

        async with self._cond:
            if self._closed:
                raise QueueClosed("Job queue is closed.")
            if job.id in self._live:
                raise ValueError(f"Job '{job.id}' is already queued.")

            if self._is_full():
                if not block:
                    raise QueueFull(
                        f"Job queue is full ({self.capacity} jobs); "
                        f"cannot accept '{job.display_name}'."
                    )
                watcher = asyncio.create_task(self._wake_on_cancel(token))
                try:
                    while self._is_full():
                        token.raise_if_cancelled()
                        if self._closed:
                            raise QueueClosed("Job queue is closed.")
                        await self._cond.wait()
                    token.raise_if_cancelled()
                    if self._closed:
                        raise QueueClosed("Job queue is closed.")
                finally:
                    watcher.cancel()

            heapq.heappush(self._heap, (-int(job.priority), next(self._sequence), job))
            self._live[job.id] = job
            self._cond.notify_all()

    async def _wake_on_cancel(self, token: CancelToken) -> None:
        await token.wait()
        async with self._cond:
            self._cond.notify_all()

    async def dequeue(self) -> Job | None:
        """
        Waits for the highest-priority queued job and removes it. Returns None
        once the queue is closed.
        """
        async with self._cond:
            while True:
                if self._closed:
                    return None
                while self._heap:
                    _, _, job = heapq.heappop(self._heap)
                    if self._live.get(job.id) is job:
                        del self._live[job.id]
                        self._cond.notify_all()
                    if job.state == JobState.QUEUED:
                        return job
                await self._cond.wait()

    async def cancel(self, job_id: str) -> Job | None:
        """
        Cancels a queued job in O(1). The heap entry is skipped when it surfaces.
        Returns the cancelled job, or None if no such job is queued.
        """
        async with self._cond:
            job = self._live.pop(job_id, None)
            if job is None:
                return None
            job.cancel()
            self._cond.notify_all()
            return job

    def get(self, job_id: str) -> Job | None:
        job = self._live.get(job_id)
        if job is not None and job.state == JobState.QUEUED:
            return job
        return None

    def snapshot(self) -> list[Job]:
        """Live queued jobs in dequeue order."""
        entries = sorted(
            (e for e in self._heap if e[2].state == JobState.QUEUED),
            key=lambda e: (e[0], e[1]),
        )
        return [job for _, _, job in entries]

    async def close(self) -> list[Job]:
        """
        Closes the queue. Blocked producers get QueueClosed, consumers get None,
        and every job still queued is cancelled and returned.
        """
        async with self._cond:
            self._closed = True
            abandoned = [job for job in self._live.values() if job.state == JobState.QUEUED]
            for job in abandoned:
                job.cancel()
            self._live.clear()
            self._heap.clear()
            self._cond.notify_all()
        if abandoned:
            log.debug(f"Job queue closed with {len(abandoned)} jobs still queued.")
        return abandoned

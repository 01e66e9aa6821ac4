"""
The download worker pool: a fixed set of asyncio workers that drain the job
queue, fetch audio through a resolver, and publish it into the content cache.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from contextlib import suppress
from pathlib import Path

from termtune.core.job_queue import JobQueue
from termtune.exceptions import (
    CacheWriteError,
    JobCancelled,
    PermanentFetchError,
    TransientFetchError,
)
from termtune.media.resolver import Resolver
from termtune.models.config import PlayerConfig
from termtune.models.job import Job, JobPriority, JobState
from termtune.models.stats import PipelineStats
from termtune.models.track import Track
from termtune.storage.cache import ContentCache
from termtune.utils.structured_logger import PipelineLogger

log = logging.getLogger(__name__)

JobListener = Callable[[Job], None]


class WorkerPool:
    """
    Runs download jobs with a bounded number of concurrent fetches and a
    per-job retry budget.

    Jobs reach a terminal state exactly once; listeners are told about every
    state change, which is the only way errors leave the pool.
    """

    def __init__(
        self,
        config: PlayerConfig,
        queue: JobQueue,
        cache: ContentCache,
        resolver: Resolver,
        stats: PipelineStats | None = None,
        pipeline_logger: PipelineLogger | None = None,
    ):
        self.config = config
        self.queue = queue
        self.cache = cache
        self.resolver = resolver
        self.stats = stats or PipelineStats()
        self.pipeline_logger = pipeline_logger

        self.semaphore = asyncio.Semaphore(config.max_concurrent_downloads)
        self._jobs: dict[str, Job] = {}
        self._running: dict[str, Job] = {}
        self._workers: list[asyncio.Task] = []
        self._listeners: list[JobListener] = []
        self._idle = asyncio.Event()
        self._idle.set()

    # --- Lifecycle ---

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"download-worker-{n}")
            for n in range(self.config.worker_count)
        ]
        log.debug(f"Started {len(self._workers)} download workers.")

    async def shutdown(self, grace_period: float = 5.0) -> None:
        """
        Closes the queue, cancels every live job, and waits for the workers to
        finish. Workers that ignore cancellation for `grace_period` seconds are
        cancelled outright.
        """
        for job in await self.queue.close():
            self._finish(job)
        # Includes jobs dequeued but still waiting for a download slot.
        for job in list(self._jobs.values()):
            job.cancel()

        if self._workers:
            _, pending = await asyncio.wait(self._workers, timeout=grace_period)
            for task in pending:
                task.cancel()
            for task in pending:
                with suppress(asyncio.CancelledError):
                    await task
        self._workers = []
        log.debug("Download workers stopped.")

    # --- Scheduling ---

    def add_listener(self, listener: JobListener) -> None:
        self._listeners.append(listener)

    def get_job(self, track_id: str) -> Job | None:
        return self._jobs.get(track_id)

    @property
    def running_count(self) -> int:
        return len(self._running)

    @property
    def live_jobs(self) -> list[Job]:
        return list(self._jobs.values())

    async def schedule(
        self,
        track: Track,
        priority: JobPriority = JobPriority.PREFETCH,
        block: bool = False,
    ) -> Job | None:
        """
        Schedules a download for `track`.

        Returns None if the track is already cached. If a job for the track is
        live, it is returned as is, except that a queued prefetch job is upgraded
        to now-playing by cancelling it and queueing a new one.

        Raises:
            QueueFull: The queue is at capacity and `block` is False.
            QueueClosed: The pool is shutting down.
        """
        if track.track_id in self.cache:
            return None

        existing = self._jobs.get(track.track_id)
        if existing is not None and not existing.is_terminal:
            upgrade = priority > existing.priority and existing.state == JobState.QUEUED
            if not upgrade:
                return existing
            if await self.queue.cancel(existing.id) is None:
                return existing
            log.debug(f"Upgrading '{existing.display_name}' to {priority.name}.")
            self._finish(existing)

        job = Job(
            id=track.track_id,
            source_ref=track.source_ref,
            priority=priority,
            title=track.display_name,
        )
        self._jobs[job.id] = job
        self._idle.clear()
        try:
            await self.queue.enqueue(job, block=block)
        except BaseException:
            self._jobs.pop(job.id, None)
            if not self._jobs:
                self._idle.set()
            raise
        self.stats.jobs_scheduled += 1
        self._notify(job)
        return job

    async def cancel(self, track_id: str) -> bool:
        """
        Cancels the live job for `track_id`. Queued jobs are cancelled at once;
        running jobs stop cooperatively at their next checkpoint.
        """
        job = self._jobs.get(track_id)
        if job is None or job.is_terminal:
            return False
        if job.state == JobState.QUEUED:
            if await self.queue.cancel(track_id) is None:
                # Dequeued but not yet running; the worker sees the state.
                job.cancel()
            self._finish(job)
            return True
        return job.cancel()

    async def join(self) -> None:
        """Waits until there are no live jobs."""
        await self._idle.wait()

    # --- Workers ---

    def _notify(self, job: Job) -> None:
        for listener in self._listeners:
            try:
                listener(job)
            except Exception:
                log.exception(f"Job listener failed for '{job.display_name}'.")

    def _finish(self, job: Job) -> None:
        """Bookkeeping for a job that reached a terminal state."""
        if self._jobs.get(job.id) is job:
            del self._jobs[job.id]
        if job.state == JobState.SUCCEEDED:
            self.stats.jobs_succeeded += 1
        elif job.state == JobState.FAILED:
            self.stats.jobs_failed += 1
        elif job.state == JobState.CANCELLED:
            self.stats.jobs_cancelled += 1
            if self.pipeline_logger:
                self.pipeline_logger.job_cancelled(job.id, job.state.value)
        self._notify(job)
        if not self._jobs:
            self._idle.set()

    async def _worker(self, n: int) -> None:
        while True:
            job = await self.queue.dequeue()
            if job is None:
                break
            try:
                await self._run_job(job)
            except asyncio.CancelledError:
                # Shutdown ran past its grace period.
                self._abandon(job)
                raise
            except Exception as e:
                log.exception(f"Worker {n} crashed on '{job.display_name}'.")
                if job.state == JobState.RUNNING:
                    job.error = str(e)
                    job.transition(JobState.FAILED)
                    self._running.pop(job.id, None)
                    self._finish(job)

    def _abandon(self, job: Job) -> None:
        """Moves a job whose worker was cancelled to CANCELLED and reports it."""
        if job.state == JobState.RUNNING:
            job.cancel_token.cancel()
            job.transition(JobState.CANCELLED)
        else:
            job.cancel()
        self._running.pop(job.id, None)
        if self._jobs.get(job.id) is job:
            self._finish(job)

    async def _run_job(self, job: Job) -> None:
        async with self.semaphore:
            if job.state != JobState.QUEUED:
                # Cancelled while waiting for a download slot.
                if job.is_terminal and self._jobs.get(job.id) is job:
                    self._finish(job)
                return
            job.transition(JobState.RUNNING)
            self._running[job.id] = job
            self.stats.record_running(len(self._running))
            self._notify(job)
            try:
                await self._execute(job)
            finally:
                self._running.pop(job.id, None)
        self._finish(job)

    async def _execute(self, job: Job) -> None:
        """Attempts the job until it succeeds, fails permanently, or runs out of retries."""
        while True:
            staged = self.cache.staging_path(job.id)
            started = time.monotonic()
            if self.pipeline_logger:
                self.pipeline_logger.job_started(job.id, job.priority.name, job.attempt)
            try:
                result = await self._attempt(job, staged)
            except JobCancelled:
                job.transition(JobState.CANCELLED)
                return
            except PermanentFetchError as e:
                self._fail(job, str(e), permanent=True)
                return
            except (TransientFetchError, asyncio.TimeoutError, OSError) as e:
                error = str(e) or f"timed out after {self.config.download_timeout:g}s"
                if job.attempt >= self.config.max_download_retries:
                    self._fail(job, error, permanent=False)
                    return
                job.attempt += 1
                job.error = error
                self.stats.retries += 1
                delay = self.config.retry_delay * (
                    self.config.retry_backoff ** (job.attempt - 1)
                )
                if self.pipeline_logger:
                    self.pipeline_logger.job_retry(job.id, job.attempt, delay, error)
                log.debug(
                    f"Attempt {job.attempt} for '{job.display_name}' failed: {error}. "
                    f"Retrying in {delay:.1f}s."
                )
                if await self._wait_or_cancelled(job, delay):
                    job.transition(JobState.CANCELLED)
                    return
                continue

            await self._publish(job, staged, result, time.monotonic() - started)
            return

    async def _attempt(self, job: Job, staged: Path) -> Path:
        """
        One fetch into `staged`, bounded by `download_timeout`.

        A timed-out fetch gets its own token cancelled and is waited for, so it
        keeps its download slot until it has actually stopped. The staging file
        is discarded on every exit except a successful fetch.
        """
        try:
            job.cancel_token.raise_if_cancelled()
        except JobCancelled:
            self.cache.discard_staging(staged)
            raise

        token = job.cancel_token.child()
        fetch = asyncio.ensure_future(self.resolver.fetch(job.source_ref, staged, token))
        try:
            done, _ = await asyncio.wait({fetch}, timeout=self.config.download_timeout or None)
            if not done:
                token.cancel()
                await self._settle(job, fetch)
                raise asyncio.TimeoutError
            result = fetch.result()
            job.cancel_token.raise_if_cancelled()
            return result
        except BaseException:
            if not fetch.done():
                fetch.cancel()
            self.cache.discard_staging(staged)
            raise

    async def _settle(self, job: Job, fetch: asyncio.Future) -> None:
        """Waits for an abandoned fetch to return. Its outcome no longer matters."""
        try:
            await fetch
        except Exception as e:
            log.debug(f"Timed-out fetch for '{job.display_name}' ended with {e!r}.")

    async def _wait_or_cancelled(self, job: Job, delay: float) -> bool:
        """Sleeps for `delay` seconds. Returns True if the job was cancelled meanwhile."""
        try:
            await asyncio.wait_for(job.cancel_token.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _publish(self, job: Job, staged: Path, result: Path, elapsed: float) -> None:
        size = 0
        try:
            entry = await asyncio.to_thread(self.cache.put_file, job.id, result)
            size = entry.size_bytes
        except CacheWriteError as e:
            job.cached = False
            self.stats.cache_write_failures += 1
            log.warning(f"Could not cache '{job.display_name}': {e}")
        finally:
            if result != staged:
                self.cache.discard_staging(staged)

        job.error = None
        self.stats.bytes_downloaded += size
        job.transition(JobState.SUCCEEDED)
        if self.pipeline_logger:
            self.pipeline_logger.job_succeeded(job.id, size, elapsed, job.cached)

    def _fail(self, job: Job, error: str, permanent: bool) -> None:
        job.error = error
        job.transition(JobState.FAILED)
        if self.pipeline_logger:
            self.pipeline_logger.job_failed(job.id, error, job.attempt + 1, permanent)
        log.warning(f"Download failed for '{job.display_name}': {error}")

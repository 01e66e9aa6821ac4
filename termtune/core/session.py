"""
Wires the cache, job queue, worker pool, playback engine and playlist manager
into one running player, and routes events between them.
"""

import asyncio
import copy
import logging
from contextlib import suppress
from pathlib import Path

from termtune.core.job_queue import JobQueue
from termtune.core.playback_engine import PlaybackEngine
from termtune.core.playlist_manager import PlaylistManager
from termtune.core.worker_pool import WorkerPool
from termtune.media.output import AudioOutput, create_output
from termtune.media.resolver import Resolver, ResolverRegistry
from termtune.models.cache import CacheEntry
from termtune.models.config import PlayerConfig
from termtune.models.job import Job
from termtune.models.playback import PlaybackEvent
from termtune.models.stats import PipelineStats
from termtune.storage.cache import ContentCache
from termtune.utils.structured_logger import create_structured_logger

log = logging.getLogger(__name__)


class PlayerSession:
    """
    Owns every component of a running player.

    Engine and job events arrive on whichever task produced them; they are put on
    one event queue and handled by a single routing task, so the playlist
    manager sees them in order and outside the producer's call stack.
    """

    def __init__(
        self,
        config: PlayerConfig,
        resolver: Resolver | None = None,
        output: AudioOutput | None = None,
        cache: ContentCache | None = None,
        log_dir: Path | None = None,
    ):
        self.config = config
        self.stats = PipelineStats()
        self.base_logger, self.pipeline_logger, self.playback_logger = (
            create_structured_logger(log_dir=log_dir, enable_json=config.json_log)
        )

        self.cache = cache or ContentCache(
            config.resolve_cache_dir(),
            config.cache_quota_bytes,
            cleanup_interval=config.cleanup_interval,
            on_evict=self._on_evict,
            stats_callback=self.stats.record_cache_lookup,
        )
        self.resolver = resolver or ResolverRegistry.default(
            max_connections=config.max_concurrent_downloads
        )
        self.queue = JobQueue(config.queue_capacity)
        self.pool = WorkerPool(
            config,
            self.queue,
            self.cache,
            self.resolver,
            stats=self.stats,
            pipeline_logger=self.pipeline_logger,
        )
        self.engine = PlaybackEngine(
            config,
            self.cache,
            output or create_output(config),
            playback_logger=self.playback_logger,
        )
        self.playlist = PlaylistManager(config, self.engine, self.pool)

        self._events: asyncio.Queue = asyncio.Queue()
        self._router: asyncio.Task | None = None
        self.pool.add_listener(self._on_job)
        self.engine.add_listener(self._on_playback_event)

    async def __aenter__(self) -> "PlayerSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    async def start(self) -> None:
        self.base_logger.set_session_context(
            workers=self.config.worker_count,
            max_concurrent=self.config.max_concurrent_downloads,
            output=self.config.output_backend,
        )
        await self.cache.start_background_cleanup()
        await self.pool.start()
        await self.engine.start()
        self._router = asyncio.create_task(self._route_events(), name="event-router")
        log.debug("Player session started.")

    async def close(self) -> None:
        """Stops everything in reverse order of startup."""
        await self.engine.shutdown()
        await self.pool.shutdown()
        if self._router is not None:
            self._router.cancel()
            with suppress(asyncio.CancelledError):
                await self._router
            self._router = None
        await self.cache.stop_background_cleanup()
        self.cache.flush()
        closer = getattr(self.resolver, "aclose", None)
        if closer is not None:
            await closer()
        self.base_logger.close()
        log.debug("Player session closed.")

    def _on_job(self, job: Job) -> None:
        # Jobs keep changing after the callback returns; route a copy.
        self._events.put_nowait(copy.copy(job))

    def _on_playback_event(self, event: PlaybackEvent) -> None:
        self._events.put_nowait(event)

    def _on_evict(self, entry: CacheEntry, reason: str) -> None:
        self.stats.evictions += 1
        self.pipeline_logger.cache_evicted(entry.key, entry.size_bytes, reason)

    async def _route_events(self) -> None:
        while True:
            event = await self._events.get()
            try:
                if isinstance(event, Job):
                    await self.playlist.on_job_update(event)
                else:
                    await self.playlist.on_playback_event(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception(f"Failed to handle {event!r}.")
            finally:
                self._events.task_done()

    async def drain_events(self) -> None:
        """Waits until every event queued so far has been handled."""
        await self._events.join()

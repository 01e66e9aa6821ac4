"""
The playlist and its manager: ordered tracks, the current position, shuffle,
prefetch scheduling, and the reactions to playback and download events.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field

from termtune.core.playback_engine import PlaybackEngine
from termtune.core.worker_pool import WorkerPool
from termtune.exceptions import InvalidTransition, QueueClosed, QueueFull
from termtune.models.config import PlayerConfig
from termtune.models.job import Job, JobPriority, JobState
from termtune.models.playback import (
    PlaybackEvent,
    PlaybackStatus,
    StateChanged,
    TrackEnded,
    TrackFailed,
)
from termtune.models.track import DownloadStatus, Track

log = logging.getLogger(__name__)


@dataclass
class Playlist:
    """
    Ordered tracks plus the play position.

    Under shuffle, `shuffle_order` is a permutation of the indices that starts
    with the track that was current when it was built, and `shuffle_position`
    points at the current track within it.
    """

    tracks: list[Track] = field(default_factory=list)
    current_index: int = -1
    shuffle_enabled: bool = False
    shuffle_order: list[int] = field(default_factory=list)
    shuffle_position: int = 0

    def __len__(self) -> int:
        return len(self.tracks)

    @property
    def current(self) -> Track | None:
        if 0 <= self.current_index < len(self.tracks):
            return self.tracks[self.current_index]
        return None

    def build_shuffle_order(self, rng: random.Random) -> None:
        indices = [i for i in range(len(self.tracks)) if i != self.current_index]
        rng.shuffle(indices)
        if 0 <= self.current_index < len(self.tracks):
            indices.insert(0, self.current_index)
        self.shuffle_order = indices
        self.shuffle_position = 0

    def next_index(self, rng: random.Random, consume: bool = True) -> int | None:
        """
        The index that follows the current one in play order, or None at the end
        of a sequential playlist. With `consume`, shuffle state advances.
        """
        if not self.tracks:
            return None
        if not self.shuffle_enabled:
            nxt = self.current_index + 1
            return nxt if nxt < len(self.tracks) else None

        position = self.shuffle_position + 1
        if position >= len(self.shuffle_order):
            if not consume:
                return None
            self.build_shuffle_order(rng)
            position = 1 if len(self.shuffle_order) > 1 else 0
        if consume:
            self.shuffle_position = position
        return self.shuffle_order[position]

    def previous_index(self) -> int | None:
        if not self.tracks:
            return None
        if not self.shuffle_enabled:
            prev = self.current_index - 1
            return prev if prev >= 0 else None
        if self.shuffle_position == 0:
            return None
        self.shuffle_position -= 1
        return self.shuffle_order[self.shuffle_position]

    def upcoming(self, count: int) -> list[Track]:
        """The next `count` tracks in play order, without changing any state."""
        if count <= 0 or not self.tracks:
            return []
        if self.shuffle_enabled:
            order = self.shuffle_order[self.shuffle_position + 1 :]
        else:
            order = range(self.current_index + 1, len(self.tracks))
        return [self.tracks[i] for i in list(order)[:count]]

    def index_removed(self, index: int) -> None:
        """Keeps the shuffle permutation consistent after `tracks[index]` is removed."""
        if not self.shuffle_order:
            return
        try:
            removed_position = self.shuffle_order.index(index)
        except ValueError:
            removed_position = None
        order = [i for i in self.shuffle_order if i != index]
        self.shuffle_order = [i - 1 if i > index else i for i in order]
        if removed_position is not None and removed_position < self.shuffle_position:
            self.shuffle_position -= 1
        self.shuffle_position = max(
            0, min(self.shuffle_position, len(self.shuffle_order) - 1)
        )


class PlaylistManager:
    """
    Owns the playlist and drives the engine and the worker pool from it.

    All operations, whether they come from the UI or from engine and job events,
    run under one lock so they never interleave.
    """

    def __init__(
        self,
        config: PlayerConfig,
        engine: PlaybackEngine,
        pool: WorkerPool,
        rng: random.Random | None = None,
    ):
        self.config = config
        self.engine = engine
        self.pool = pool
        self.playlist = Playlist()
        self.download_status: dict[str, DownloadStatus] = {}
        self._lock = asyncio.Lock()
        self._rng = rng or random.Random()

    # --- Read-only views ---

    @property
    def current(self) -> Track | None:
        return self.playlist.current

    @property
    def tracks(self) -> list[Track]:
        return list(self.playlist.tracks)

    def status_of(self, track_id: str) -> DownloadStatus:
        return self.download_status.get(track_id, DownloadStatus.NOT_DOWNLOADED)

    # --- Editing ---

    async def add(self, track: Track, play: bool = False) -> int:
        """
        Appends a track. If nothing is current, it becomes current (and plays if
        `play` is set). Returns its index.
        """
        async with self._lock:
            index = self._append(track)
            if self.playlist.current_index < 0:
                await self._transition_to(index, autoplay=play)
            else:
                await self._schedule_prefetch()
            return index

    async def add_many(self, tracks: list[Track], play: bool = False) -> None:
        async with self._lock:
            start_idle = self.playlist.current_index < 0
            first = None
            for track in tracks:
                index = self._append(track)
                first = index if first is None else first
            if first is None:
                return
            if start_idle:
                await self._transition_to(first, autoplay=play)
            else:
                await self._schedule_prefetch()

    def _append(self, track: Track) -> int:
        self.playlist.tracks.append(track)
        index = len(self.playlist.tracks) - 1
        pl = self.playlist
        if pl.shuffle_enabled:
            if not pl.shuffle_order:
                pl.shuffle_order.append(index)
            else:
                # New tracks join the not-yet-played part of the permutation.
                position = self._rng.randint(
                    pl.shuffle_position + 1, len(pl.shuffle_order)
                )
                pl.shuffle_order.insert(position, index)
        return index

    async def insert_after_current(self, track: Track) -> int:
        """Queues a track to play next."""
        async with self._lock:
            pl = self.playlist
            index = pl.current_index + 1 if pl.current_index >= 0 else len(pl.tracks)
            pl.tracks.insert(index, track)
            if pl.shuffle_order:
                pl.shuffle_order = [i + 1 if i >= index else i for i in pl.shuffle_order]
                pl.shuffle_order.insert(pl.shuffle_position + 1, index)
            if pl.current_index < 0:
                await self._transition_to(index, autoplay=False)
            else:
                await self._schedule_prefetch()
            return index

    async def replace_upcoming(self, tracks: list[Track]) -> None:
        """Drops everything after the current track and appends `tracks`."""
        async with self._lock:
            pl = self.playlist
            keep = pl.current_index + 1 if pl.current_index >= 0 else 0
            for dropped in pl.tracks[keep:]:
                await self.pool.cancel(dropped.track_id)
            pl.tracks = pl.tracks[:keep]
            if pl.shuffle_enabled:
                pl.build_shuffle_order(self._rng)
            for track in tracks:
                self._append(track)
            if pl.current_index < 0 and pl.tracks:
                await self._transition_to(0, autoplay=False)
            else:
                await self._schedule_prefetch()

    async def remove(self, index: int) -> Track:
        """
        Removes `tracks[index]`. Removing the current track stops playback, makes
        the track that slid into its place current (or the new last track), and
        loads it.

        Raises:
            IndexError: If `index` is out of range.
        """
        async with self._lock:
            pl = self.playlist
            if not 0 <= index < len(pl.tracks):
                raise IndexError(f"No track at position {index}.")

            removed = pl.tracks.pop(index)
            pl.index_removed(index)
            if not any(t.track_id == removed.track_id for t in pl.tracks):
                await self.pool.cancel(removed.track_id)

            if index < pl.current_index:
                pl.current_index -= 1
                await self._schedule_prefetch()
                return removed
            if index > pl.current_index:
                await self._schedule_prefetch()
                return removed

            was_playing = self.engine.snapshot().status in (
                PlaybackStatus.PLAYING,
                PlaybackStatus.LOADING,
                PlaybackStatus.SEEKING,
            )
            await self._stop_engine()
            if not pl.tracks:
                pl.current_index = -1
                pl.shuffle_order = []
                pl.shuffle_position = 0
                return removed
            if pl.shuffle_enabled and pl.shuffle_order:
                target = pl.shuffle_order[pl.shuffle_position]
            else:
                target = min(index, len(pl.tracks) - 1)
            await self._transition_to(target, autoplay=was_playing)
            return removed

    async def clear(self) -> None:
        async with self._lock:
            await self._stop_engine()
            for track in self.playlist.tracks:
                await self.pool.cancel(track.track_id)
            self.playlist = Playlist(shuffle_enabled=self.playlist.shuffle_enabled)

    # --- Navigation ---

    async def next(self) -> Track | None:
        """Advances in play order. At the end of the list, playback stays stopped."""
        async with self._lock:
            return await self._advance()

    async def previous(self) -> Track | None:
        async with self._lock:
            index = self.playlist.previous_index()
            if index is None:
                return None
            await self._stop_engine()
            await self._transition_to(index, autoplay=True)
            return self.playlist.current

    async def jump_to(self, index: int) -> Track:
        async with self._lock:
            pl = self.playlist
            if not 0 <= index < len(pl.tracks):
                raise IndexError(f"No track at position {index}.")
            await self._stop_engine()
            if pl.shuffle_enabled:
                pl.current_index = index
                pl.build_shuffle_order(self._rng)
            await self._transition_to(index, autoplay=True)
            return pl.tracks[index]

    async def toggle_shuffle(self) -> bool:
        """
        Turns shuffle on (building a permutation that starts at the current
        track) or off (resuming sequential order from the current track).
        """
        async with self._lock:
            pl = self.playlist
            pl.shuffle_enabled = not pl.shuffle_enabled
            if pl.shuffle_enabled:
                pl.build_shuffle_order(self._rng)
            else:
                pl.shuffle_order = []
                pl.shuffle_position = 0
            await self._schedule_prefetch()
            return pl.shuffle_enabled

    async def redownload(self, index: int) -> Job | None:
        """Drops the cached copy of a track and downloads it again."""
        async with self._lock:
            pl = self.playlist
            if not 0 <= index < len(pl.tracks):
                raise IndexError(f"No track at position {index}.")
            track = pl.tracks[index]
            if not self.pool.cache.remove(track.track_id):
                if track.track_id in self.pool.cache:
                    log.info(f"'{track.display_name}' is playing; not re-downloading.")
                    return None
            priority = (
                JobPriority.NOW_PLAYING if index == pl.current_index else JobPriority.PREFETCH
            )
            return await self._schedule(track, priority)

    # --- Event handling ---

    async def on_playback_event(self, event: PlaybackEvent) -> None:
        async with self._lock:
            current = self.playlist.current
            if current is None or getattr(event, "track_id", None) != current.track_id:
                return
            if isinstance(event, TrackEnded):
                await self._advance()
            elif isinstance(event, TrackFailed):
                self.download_status[current.track_id] = DownloadStatus.FAILED
                if self.config.auto_skip_failed:
                    log.info(f"Skipping '{current.display_name}': {event.error}")
                    await self._advance()
            elif isinstance(event, StateChanged) and event.current == PlaybackStatus.PLAYING:
                duration_ms = self.engine.snapshot().duration_ms
                if duration_ms:
                    current.duration_s = duration_ms // 1000

    async def on_job_update(self, job: Job) -> None:
        async with self._lock:
            if job.state == JobState.SUCCEEDED:
                status = DownloadStatus.DOWNLOADED if job.cached else DownloadStatus.FAILED
            elif job.state == JobState.FAILED:
                status = DownloadStatus.FAILED
            elif job.state == JobState.CANCELLED:
                if self.download_status.get(job.id) == DownloadStatus.DOWNLOADING:
                    self.download_status.pop(job.id, None)
                return
            else:
                status = DownloadStatus.DOWNLOADING
            self.download_status[job.id] = status

            current = self.playlist.current
            if status != DownloadStatus.FAILED or current is None:
                return
            if current.track_id != job.id:
                return
            # The engine would only time out waiting for this track.
            log.warning(f"Download failed for the current track '{current.display_name}'.")
            await self._stop_engine()
            if self.config.auto_skip_failed:
                await self._advance()

    # --- Internals (lock held) ---

    async def _advance(self) -> Track | None:
        index = self.playlist.next_index(self._rng)
        if index is None:
            await self._stop_engine()
            return None
        await self._stop_engine()
        await self._transition_to(index, autoplay=True)
        return self.playlist.current

    async def _transition_to(self, index: int, autoplay: bool) -> None:
        """Makes `index` current, schedules its download, loads it, and prefetches."""
        pl = self.playlist
        pl.current_index = index
        if pl.shuffle_enabled:
            if index in pl.shuffle_order:
                pl.shuffle_position = pl.shuffle_order.index(index)
            else:
                pl.build_shuffle_order(self._rng)

        track = pl.tracks[index]
        await self._schedule(track, JobPriority.NOW_PLAYING)
        try:
            await self.engine.begin_load(track.track_id, autoplay=autoplay)
        except InvalidTransition as e:
            log.debug(f"Engine not ready for '{track.display_name}': {e}")
        await self._schedule_prefetch()

    async def _schedule_prefetch(self) -> None:
        for track in self.playlist.upcoming(self.config.prefetch_count):
            await self._schedule(track, JobPriority.PREFETCH)

    async def _schedule(self, track: Track, priority: JobPriority) -> Job | None:
        try:
            job = await self.pool.schedule(track, priority)
        except (QueueFull, QueueClosed) as e:
            log.warning(f"Could not schedule '{track.display_name}': {e}")
            return None
        if job is None:
            self.download_status[track.track_id] = DownloadStatus.DOWNLOADED
        elif not job.is_terminal:
            self.download_status[track.track_id] = DownloadStatus.DOWNLOADING
        return job

    async def _stop_engine(self) -> None:
        if self.engine.snapshot().status in (PlaybackStatus.IDLE, PlaybackStatus.STOPPED):
            return
        await self.engine.stop()

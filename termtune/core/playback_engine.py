"""
The audio playback engine: owns the single now-playing stream, advances its
clock on a fixed tick, and executes transport commands one at a time.
"""

import asyncio
import dataclasses
import logging
from collections.abc import Callable
from contextlib import suppress

from termtune.exceptions import (
    DecodeError,
    InvalidTransition,
    LoadTimeout,
    NotReady,
    PlaybackError,
)
from termtune.media.output import AudioOutput, AudioStream
from termtune.models.cache import CacheEntry
from termtune.models.config import PlayerConfig
from termtune.models.playback import (
    Command,
    Load,
    Pause,
    Play,
    PlaybackEvent,
    PlaybackState,
    PlaybackStatus,
    Seek,
    SeekRelative,
    SetVolume,
    Shutdown,
    StateChanged,
    StepVolume,
    Stop,
    Toggle,
    TrackEnded,
    TrackFailed,
)
from termtune.storage.cache import ContentCache
from termtune.utils.structured_logger import PlaybackLogger

log = logging.getLogger(__name__)

EventListener = Callable[[PlaybackEvent], None]


@dataclasses.dataclass
class _PendingLoad:
    track_id: str
    autoplay: bool
    deadline: float
    ready: asyncio.Future | None = None


class PlaybackEngine:
    """
    A single task reads commands from a channel and, between commands, ticks the
    clock. Every caller gets the command's result (or error) through a future;
    nothing outside the task ever touches the state or the stream.

    State machine::

        IDLE -> LOADING -> PLAYING <-> PAUSED -> STOPPED
                              |  SEEKING  |

    IDLE and STOPPED end a track; a new track re-enters through LOADING.
    """

    def __init__(
        self,
        config: PlayerConfig,
        cache: ContentCache,
        output: AudioOutput,
        playback_logger: PlaybackLogger | None = None,
    ):
        self.config = config
        self.cache = cache
        self.output = output
        self.playback_logger = playback_logger

        self._state = PlaybackState(volume=config.default_volume)
        self._commands: asyncio.Queue = asyncio.Queue()
        self._listeners: list[EventListener] = []
        self._stream: AudioStream | None = None
        self._pinned_key: str | None = None
        self._pending: _PendingLoad | None = None
        self._task: asyncio.Task | None = None

    # --- Lifecycle ---

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="playback-engine")
            log.debug("Playback engine started.")

    async def shutdown(self) -> None:
        """Stops playback, releases the stream, and ends the engine task."""
        if self._task is None or self._task.done():
            self._release()
            return
        await self._submit(Shutdown())
        with suppress(asyncio.CancelledError):
            await self._task
        log.debug("Playback engine stopped.")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # --- Public API ---

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def snapshot(self) -> PlaybackState:
        """A copy of the current state; safe to hold on to."""
        return dataclasses.replace(self._state)

    async def load(self, track_id: str, autoplay: bool = False) -> None:
        """
        Loads a track, waiting up to `load_timeout` for its cache entry.

        Raises:
            InvalidTransition: Not in IDLE or STOPPED.
            LoadTimeout: The entry did not appear in time.
            DecodeError: The cached data cannot be played.
        """
        ready = asyncio.get_running_loop().create_future()
        await self._submit(Load(track_id, autoplay=autoplay, wait=True), ready)
        await ready

    async def begin_load(self, track_id: str, autoplay: bool = True) -> None:
        """
        Starts loading a track and returns once the engine is LOADING. Failures
        surface as TrackFailed events.
        """
        await self._submit(Load(track_id, autoplay=autoplay, wait=True))

    async def try_load(self, track_id: str, autoplay: bool = False) -> None:
        """
        Loads a track only if it is already cached.

        Raises:
            NotReady: There is no complete cache entry for the track.
        """
        ready = asyncio.get_running_loop().create_future()
        await self._submit(Load(track_id, autoplay=autoplay, wait=False), ready)
        await ready

    async def play(self) -> None:
        await self._submit(Play())

    async def pause(self) -> None:
        await self._submit(Pause())

    async def toggle(self) -> PlaybackStatus:
        return await self._submit(Toggle())

    async def seek(self, position_ms: int) -> int:
        """Seeks to `position_ms`, clamped into the track. Returns the new position."""
        return await self._submit(Seek(position_ms))

    async def seek_relative(self, delta_ms: int | None = None) -> int:
        """Seeks by `delta_ms` (default: forward by the configured seek step)."""
        if delta_ms is None:
            delta_ms = self.config.seek_seconds * 1000
        return await self._submit(SeekRelative(delta_ms))

    async def stop(self) -> None:
        await self._submit(Stop())

    async def set_volume(self, volume: float) -> float:
        return await self._submit(SetVolume(volume))

    async def volume_up(self) -> float:
        return await self._submit(StepVolume(1))

    async def volume_down(self) -> float:
        return await self._submit(StepVolume(-1))

    async def _submit(self, command: Command, ready: asyncio.Future | None = None):
        if not self.running:
            raise PlaybackError("Playback engine is not running.")
        reply = asyncio.get_running_loop().create_future()
        await self._commands.put((command, reply, ready))
        return await reply

    # --- Engine task ---

    def _needs_tick(self) -> bool:
        return self._pending is not None or self._state.status == PlaybackStatus.PLAYING

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self.config.tick_interval
        next_tick = loop.time() + interval
        # One long-lived get() so a tick timeout never drops a queued command.
        getter: asyncio.Future | None = None

        try:
            while True:
                if self._needs_tick():
                    timeout = max(0.0, next_tick - loop.time())
                else:
                    timeout = None
                if getter is None:
                    getter = asyncio.ensure_future(self._commands.get())
                done, _ = await asyncio.wait({getter}, timeout=timeout)
                if not done:
                    await self._safe_tick()
                    next_tick += interval
                    if next_tick <= loop.time():
                        next_tick = loop.time() + interval
                    continue

                command, reply, ready = getter.result()
                getter = None

                if not self._needs_tick():
                    next_tick = loop.time() + interval

                if isinstance(command, Shutdown):
                    self._release()
                    if not reply.done():
                        reply.set_result(None)
                    break

                await self._dispatch(command, reply, ready)
        finally:
            if getter is not None:
                getter.cancel()

    async def _dispatch(
        self, command: Command, reply: asyncio.Future, ready: asyncio.Future | None
    ) -> None:
        try:
            result = await self._handle(command, ready)
        except PlaybackError as e:
            if not reply.done():
                reply.set_exception(e)
            if ready is not None and not ready.done():
                ready.cancel()
        except Exception as e:
            log.exception(f"Playback command {command!r} failed.")
            if not reply.done():
                reply.set_exception(e)
            if ready is not None and not ready.done():
                ready.cancel()
        else:
            if not reply.done():
                reply.set_result(result)

    async def _safe_tick(self) -> None:
        """Runs one tick. An unexpected error fails the current track, not the engine."""
        try:
            await self._tick()
        except Exception as e:
            log.exception("Playback tick failed.")
            if self._pending is None:
                self._release()
            self._fail_load(PlaybackError(f"Playback failed: {e}"))

    async def _handle(self, command: Command, ready: asyncio.Future | None):
        status = self._state.status

        if isinstance(command, Load):
            return await self._handle_load(command, ready)

        if isinstance(command, Play):
            self._play()
            return None

        if isinstance(command, Pause):
            self._pause()
            return None

        if isinstance(command, Toggle):
            if status == PlaybackStatus.PLAYING:
                self._pause()
            else:
                self._play()
            return self._state.status

        if isinstance(command, Seek):
            return self._seek(command.position_ms)

        if isinstance(command, SeekRelative):
            return self._seek(self._state.position_ms + command.delta_ms)

        if isinstance(command, Stop):
            if status == PlaybackStatus.IDLE:
                raise InvalidTransition("Nothing to stop.")
            if status != PlaybackStatus.STOPPED:
                self._release()
                self._set_status(PlaybackStatus.STOPPED)
            return None

        if isinstance(command, SetVolume):
            return self._apply_volume(command.volume)

        if isinstance(command, StepVolume):
            return self._apply_volume(
                self._state.volume + command.steps * self.config.volume_step
            )

        raise PlaybackError(f"Unknown command {command!r}.")

    async def _handle_load(self, command: Load, ready: asyncio.Future | None) -> None:
        status = self._state.status
        if status not in (PlaybackStatus.IDLE, PlaybackStatus.STOPPED):
            raise InvalidTransition(
                f"Cannot load a track while {status.value}; stop first."
            )

        entry = self.cache.acquire(command.track_id)
        if entry is None and not command.wait:
            raise NotReady(f"Track '{command.track_id}' is not cached yet.")

        loop = asyncio.get_running_loop()
        self._state.current_track_id = command.track_id
        self._state.position_ms = 0
        self._state.duration_ms = 0
        self._pending = _PendingLoad(
            track_id=command.track_id,
            autoplay=command.autoplay,
            deadline=loop.time() + self.config.load_timeout,
            ready=ready,
        )
        self._set_status(PlaybackStatus.LOADING)
        if entry is not None:
            await self._complete_load(entry)
        else:
            log.debug(f"Waiting for '{command.track_id}' to be cached.")

    async def _complete_load(self, entry: CacheEntry) -> None:
        pending = self._pending
        try:
            stream = await asyncio.to_thread(self.output.open, entry.path)
        except DecodeError as e:
            self.cache.unpin(entry.key)
            self._fail_load(e)
            return
        except Exception as e:
            # Any output failure is treated as an unplayable track.
            log.debug(f"Audio output failed to open '{entry.key}'.", exc_info=True)
            self.cache.unpin(entry.key)
            self._fail_load(DecodeError(f"Cannot open '{entry.key}': {e}"))
            return

        self._pending = None
        self._stream = stream
        self._pinned_key = entry.key
        stream.set_volume(self._state.volume)
        self._state.duration_ms = stream.duration_ms
        self._state.position_ms = 0
        if self.playback_logger:
            self.playback_logger.track_loaded(
                entry.key, stream.duration_ms, str(entry.path)
            )
        if pending.autoplay:
            stream.play()
            self._set_status(PlaybackStatus.PLAYING)
        if pending.ready is not None and not pending.ready.done():
            pending.ready.set_result(None)

    def _fail_load(self, error: PlaybackError) -> None:
        pending = self._pending
        self._pending = None
        track_id = pending.track_id if pending else self._state.current_track_id
        if pending and pending.ready is not None and not pending.ready.done():
            pending.ready.set_exception(error)
        log.warning(f"Could not load '{track_id}': {error}")
        if self.playback_logger:
            self.playback_logger.track_failed(track_id, str(error))
        self._set_status(PlaybackStatus.STOPPED)
        self._emit(TrackFailed(track_id, str(error)))

    def _play(self) -> None:
        status = self._state.status
        loaded = status == PlaybackStatus.LOADING and self._stream is not None
        if not (loaded or status == PlaybackStatus.PAUSED):
            raise InvalidTransition(f"Cannot play while {status.value}.")
        self._stream.play()
        self._set_status(PlaybackStatus.PLAYING)

    def _pause(self) -> None:
        status = self._state.status
        if status != PlaybackStatus.PLAYING:
            raise InvalidTransition(f"Cannot pause while {status.value}.")
        self._stream.pause()
        self._state.position_ms = min(self._stream.position_ms(), self._state.duration_ms)
        self._set_status(PlaybackStatus.PAUSED)

    def _seek(self, position_ms: int) -> int:
        status = self._state.status
        if status not in (PlaybackStatus.PLAYING, PlaybackStatus.PAUSED):
            raise InvalidTransition(f"Cannot seek while {status.value}.")
        target = max(0, min(int(position_ms), self._state.duration_ms))
        self._set_status(PlaybackStatus.SEEKING)
        self._stream.seek(target)
        self._state.position_ms = target
        self._set_status(status)
        return target

    def _apply_volume(self, volume: float) -> float:
        volume = round(max(0.0, min(1.0, volume)), 4)
        self._state.volume = volume
        if self._stream is not None:
            self._stream.set_volume(volume)
        return volume

    async def _tick(self) -> None:
        if self._pending is not None:
            pending = self._pending
            entry = None
            if pending.track_id in self.cache:
                entry = self.cache.acquire(pending.track_id)
            if entry is not None:
                await self._complete_load(entry)
            elif asyncio.get_running_loop().time() >= pending.deadline:
                self._fail_load(
                    LoadTimeout(
                        f"Track '{pending.track_id}' was not ready within "
                        f"{self.config.load_timeout:g}s."
                    )
                )
            return

        if self._state.status != PlaybackStatus.PLAYING or self._stream is None:
            return

        position = self._stream.position_ms()
        self._state.position_ms = min(position, self._state.duration_ms)
        if self._stream.ended or position >= self._state.duration_ms:
            track_id = self._state.current_track_id
            self._state.position_ms = self._state.duration_ms
            self._release()
            self._set_status(PlaybackStatus.STOPPED)
            if self.playback_logger:
                self.playback_logger.track_ended(track_id, self._state.position_ms)
            self._emit(TrackEnded(track_id))

    def _release(self) -> None:
        """Closes the stream, drops any pending load, and unpins the cache entry."""
        if self._pending is not None:
            ready = self._pending.ready
            if ready is not None and not ready.done():
                ready.set_exception(PlaybackError("Load was interrupted."))
            self._pending = None
        if self._stream is not None:
            try:
                self._stream.close()
            except Exception as e:
                log.warning(f"Error closing audio stream: {e}")
            self._stream = None
        if self._pinned_key is not None:
            self.cache.unpin(self._pinned_key)
            self._pinned_key = None

    # --- Events ---

    def _set_status(self, status: PlaybackStatus) -> None:
        previous = self._state.status
        if previous == status:
            return
        self._state.status = status
        self._emit(StateChanged(previous, status, self._state.current_track_id))

    def _emit(self, event: PlaybackEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                log.exception(f"Playback listener failed for {event!r}.")

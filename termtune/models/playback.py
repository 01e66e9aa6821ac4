"""
Playback state, the transport commands accepted by the engine, and the events
it emits.
"""

from dataclasses import dataclass, field
from enum import Enum


class PlaybackStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    PLAYING = "playing"
    PAUSED = "paused"
    SEEKING = "seeking"
    STOPPED = "stopped"


@dataclass
class PlaybackState:
    """
    The engine's now-playing state. Owned exclusively by the playback engine;
    everyone else only ever sees a copy via ``PlaybackEngine.snapshot()``.
    """

    status: PlaybackStatus = PlaybackStatus.IDLE
    current_track_id: str | None = None
    position_ms: int = 0
    duration_ms: int = 0
    volume: float = 0.7

    @property
    def progress(self) -> float:
        if self.duration_ms <= 0:
            return 0.0
        return min(1.0, self.position_ms / self.duration_ms)


# --- Commands (delivered through the engine's command channel) ---


@dataclass(frozen=True)
class Load:
    track_id: str
    autoplay: bool = False
    wait: bool = True


@dataclass(frozen=True)
class Play:
    pass


@dataclass(frozen=True)
class Pause:
    pass


@dataclass(frozen=True)
class Toggle:
    pass


@dataclass(frozen=True)
class Seek:
    position_ms: int


@dataclass(frozen=True)
class SeekRelative:
    delta_ms: int


@dataclass(frozen=True)
class Stop:
    pass


@dataclass(frozen=True)
class SetVolume:
    volume: float


@dataclass(frozen=True)
class StepVolume:
    steps: int


@dataclass(frozen=True)
class Shutdown:
    pass


Command = (
    Load
    | Play
    | Pause
    | Toggle
    | Seek
    | SeekRelative
    | Stop
    | SetVolume
    | StepVolume
    | Shutdown
)


# --- Events ---


@dataclass(frozen=True)
class StateChanged:
    previous: PlaybackStatus
    current: PlaybackStatus
    track_id: str | None = None


@dataclass(frozen=True)
class TrackEnded:
    track_id: str


@dataclass(frozen=True)
class TrackFailed:
    track_id: str
    error: str = field(default="")


PlaybackEvent = StateChanged | TrackEnded | TrackFailed

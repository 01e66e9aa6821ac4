"""
Audio outputs: something that can open a cached file and report how far
playback has really got.
"""

import logging
import math
import time
from collections.abc import Callable
from pathlib import Path
from typing import Protocol, runtime_checkable

from mutagen import MutagenError

from termtune.exceptions import ConfigurationError, DecodeError
from termtune.media.integrity import FileIntegrityChecker
from termtune.models.config import PlayerConfig

log = logging.getLogger(__name__)


@runtime_checkable
class AudioStream(Protocol):
    """An open, decodable stream. Owned by the playback engine."""

    duration_ms: int

    def position_ms(self) -> int: ...

    def play(self) -> None: ...

    def pause(self) -> None: ...

    def seek(self, position_ms: int) -> None: ...

    def set_volume(self, volume: float) -> None: ...

    def close(self) -> None: ...

    @property
    def ended(self) -> bool: ...


@runtime_checkable
class AudioOutput(Protocol):
    def open(self, path: Path) -> AudioStream:
        """
        Opens `path` for playback, paused at position 0.

        Raises:
            DecodeError: If the data is corrupt or in an unsupported format.
        """
        ...


class PcmClockStream:
    """
    A headless stream that paces a PCM clock: the decoded position advances in
    whole buffers of `buffer_size` frames at `sample_rate`, as a sound card
    pulling buffers would.
    """

    def __init__(
        self,
        duration_ms: int,
        sample_rate: int = 44100,
        buffer_size: int = 4096,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.duration_ms = duration_ms
        self.sample_rate = sample_rate
        self.buffer_size = buffer_size
        self.volume = 1.0
        self.closed = False
        self._clock = clock
        self._total_frames = math.ceil(duration_ms * sample_rate / 1000)
        self._base_frames = 0
        self._started_at: float | None = None

    @property
    def playing(self) -> bool:
        return self._started_at is not None

    def _frames(self) -> int:
        frames = self._base_frames
        if self._started_at is not None:
            elapsed = self._clock() - self._started_at
            buffers = int(elapsed * self.sample_rate // self.buffer_size)
            frames += buffers * self.buffer_size
        return min(frames, self._total_frames)

    def position_ms(self) -> int:
        if self._frames() >= self._total_frames:
            return self.duration_ms
        return self._frames() * 1000 // self.sample_rate

    def play(self) -> None:
        if self._started_at is None and not self.closed:
            self._started_at = self._clock()

    def pause(self) -> None:
        if self._started_at is not None:
            self._base_frames = self._frames()
            self._started_at = None

    def seek(self, position_ms: int) -> None:
        position_ms = max(0, min(position_ms, self.duration_ms))
        self._base_frames = min(
            self._total_frames, position_ms * self.sample_rate // 1000
        )
        if self._started_at is not None:
            self._started_at = self._clock()

    def set_volume(self, volume: float) -> None:
        self.volume = max(0.0, min(1.0, volume))

    def close(self) -> None:
        self._started_at = None
        self.closed = True

    @property
    def ended(self) -> bool:
        return self._frames() >= self._total_frames


class PcmClockOutput:
    """Probes files with mutagen and opens a PcmClockStream for them."""

    def __init__(
        self,
        sample_rate: int = 44100,
        buffer_size: int = 4096,
        probe: Callable[[Path], int] = FileIntegrityChecker.duration_ms,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sample_rate = sample_rate
        self.buffer_size = buffer_size
        self._probe = probe
        self._clock = clock

    def open(self, path: Path) -> PcmClockStream:
        try:
            duration_ms = self._probe(path)
        except (MutagenError, ValueError, OSError) as e:
            raise DecodeError(f"Cannot decode '{path.name}': {e}") from e
        if duration_ms <= 0:
            raise DecodeError(f"'{path.name}' has no playable audio.")
        return PcmClockStream(
            duration_ms,
            sample_rate=self.sample_rate,
            buffer_size=self.buffer_size,
            clock=self._clock,
        )


def create_output(config: PlayerConfig) -> AudioOutput:
    """Builds the output backend named by `output_backend`."""
    if config.output_backend == "mpv":
        try:
            from termtune.media.mpv_output import MpvOutput
        except (ImportError, OSError) as e:
            raise ConfigurationError(
                "The mpv output needs python-mpv and libmpv. "
                "Install with: pip install 'termtune[mpv]'"
            ) from e
        return MpvOutput()
    return PcmClockOutput(sample_rate=config.sample_rate, buffer_size=config.buffer_size)

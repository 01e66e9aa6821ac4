"""
Real audio output through libmpv (the optional `mpv` extra).
"""

import logging
import threading
from pathlib import Path

import mpv

from termtune.exceptions import DecodeError

log = logging.getLogger(__name__)


class MpvStream:
    """One loaded file in a dedicated, audio-only mpv instance."""

    def __init__(self, player: mpv.MPV, duration_ms: int):
        self._player = player
        self.duration_ms = duration_ms
        self._eof = threading.Event()
        self._player.observe_property("eof-reached", self._handle_eof)

    def _handle_eof(self, _name, value):
        if value:
            self._eof.set()

    def position_ms(self) -> int:
        if self._eof.is_set():
            return self.duration_ms
        return int((self._player.time_pos or 0) * 1000)

    def play(self) -> None:
        self._player.pause = False

    def pause(self) -> None:
        self._player.pause = True

    def seek(self, position_ms: int) -> None:
        self._eof.clear()
        self._player.seek(position_ms / 1000, reference="absolute", precision="exact")

    def set_volume(self, volume: float) -> None:
        self._player.volume = round(max(0.0, min(1.0, volume)) * 100)

    def close(self) -> None:
        self._player.terminate()

    @property
    def ended(self) -> bool:
        return self._eof.is_set()


class MpvOutput:
    LOAD_TIMEOUT = 10.0

    def open(self, path: Path) -> MpvStream:
        player = mpv.MPV(vo="null", video=False, ytdl=False, keep_open="yes", pause=True)
        try:
            player.play(str(path))
            player.wait_for_property("duration", timeout=self.LOAD_TIMEOUT)
            duration = player.duration
        except Exception as e:
            player.terminate()
            raise DecodeError(f"mpv could not open '{path.name}': {e}") from e
        if not duration:
            player.terminate()
            raise DecodeError(f"'{path.name}' has no playable audio.")
        return MpvStream(player, int(duration * 1000))

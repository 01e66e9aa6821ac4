"""
Provides methods for checking the integrity of downloaded audio files.
"""

import logging
from pathlib import Path

import mutagen
from mutagen import MutagenError

log = logging.getLogger(__name__)


class FileIntegrityChecker:
    """A collection of static methods for validating audio file integrity."""

    @staticmethod
    def probe(filepath: str | Path) -> mutagen.FileType:
        """
        Opens an audio file with mutagen and returns the parsed file.

        Raises:
            ValueError: If the format is not recognized or has no stream info.
            MutagenError: If mutagen cannot parse the file.
            OSError: If the file cannot be read.
        """
        audio = mutagen.File(filepath)
        if audio is None:
            raise ValueError("unrecognized audio format")
        if audio.info is None or not getattr(audio.info, "length", 0):
            raise ValueError("no valid stream info")
        return audio

    @staticmethod
    def check(filepath: str | Path) -> bool:
        """
        Performs a basic integrity check on any format mutagen understands
        (MP3, FLAC, Ogg, M4A and friends; Matroska/WebM is not supported).

        Returns:
            True if the file appears to be valid audio with a positive duration.
        """
        try:
            FileIntegrityChecker.probe(filepath)
            return True
        except (MutagenError, ValueError) as e:
            log.warning(f"Integrity check failed for '{filepath}': {e}")
            return False
        except OSError as e:
            log.debug(f"Integrity check could not read '{filepath}': {e}")
            return False

    @staticmethod
    def duration_ms(filepath: str | Path) -> int:
        """Returns the stream duration in milliseconds. Raises like `probe`."""
        audio = FileIntegrityChecker.probe(filepath)
        return int(round(audio.info.length * 1000))

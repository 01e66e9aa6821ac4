"""
Track references and their download status as seen by the playlist.
"""

from dataclasses import dataclass, field
from enum import Enum


class DownloadStatus(str, Enum):
    """Per-track download status tracked by the playlist manager."""

    NOT_DOWNLOADED = "not_downloaded"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    FAILED = "failed"


@dataclass(slots=True)
class Track:
    track_id: str
    source_ref: str
    title: str = ""
    artists: list[str] = field(default_factory=list)
    duration_s: int = 0

    @property
    def display_name(self) -> str:
        title = self.title or self.track_id
        if self.artists:
            return f"{', '.join(self.artists)} - {title}"
        return title

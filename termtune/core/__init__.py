"""
Core Pipeline Layer.

This package holds the download-cache-playback pipeline: the job queue, the
download worker pool, the playback engine, the playlist manager, and the
session that wires them together.
"""

from .job_queue import JobQueue
from .playback_engine import PlaybackEngine
from .playlist_manager import Playlist, PlaylistManager
from .session import PlayerSession
from .worker_pool import WorkerPool

__all__ = [
    "JobQueue",
    "PlaybackEngine",
    "PlayerSession",
    "Playlist",
    "PlaylistManager",
    "WorkerPool",
]

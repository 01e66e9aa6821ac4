"""
Data Models Layer.

This package contains the Pydantic configuration model and the dataclasses that
describe jobs, cache entries, tracks, playback state, and session statistics.
"""

from .cache import CacheEntry, CacheUsage
from .config import PlayerConfig
from .job import CancelToken, Job, JobPriority, JobState
from .playback import PlaybackState, PlaybackStatus
from .stats import PipelineStats
from .track import DownloadStatus, Track

__all__ = [
    "CacheEntry",
    "CacheUsage",
    "CancelToken",
    "DownloadStatus",
    "Job",
    "JobPriority",
    "JobState",
    "PipelineStats",
    "PlaybackState",
    "PlaybackStatus",
    "PlayerConfig",
    "Track",
]

"""
Counters for a pipeline session: job outcomes, transfer volume, and cache activity.
"""

import time
from dataclasses import dataclass, field


@dataclass
class PipelineStats:
    """Tracks statistics for a download/playback session."""

    jobs_scheduled: int = 0
    jobs_succeeded: int = 0
    jobs_failed: int = 0
    jobs_cancelled: int = 0
    retries: int = 0
    cache_write_failures: int = 0
    bytes_downloaded: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    evictions: int = 0
    peak_running: int = 0

    _started_at: float = field(default_factory=time.monotonic, repr=False)

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._started_at

    @property
    def avg_speed_bps(self) -> float:
        elapsed = self.elapsed_seconds
        return self.bytes_downloaded / elapsed if elapsed > 0 else 0.0

    def record_cache_lookup(self, is_hit: bool) -> None:
        if is_hit:
            self.cache_hits += 1
        else:
            self.cache_misses += 1

    def record_running(self, running: int) -> None:
        self.peak_running = max(self.peak_running, running)

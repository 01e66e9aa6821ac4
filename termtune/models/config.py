"""
Pydantic model for application configuration.
Provides robust validation for all pipeline and playback tunables.
"""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

OUTPUT_BACKENDS = ("pcm", "mpv")


class PlayerConfig(BaseModel):
    """A validated configuration model for the player and its download pipeline."""

    model_config = ConfigDict(validate_assignment=True, str_strip_whitespace=True)

    # Job queue & worker pool
    queue_capacity: int = 1000
    worker_count: int = 10
    max_concurrent_downloads: int = 4
    max_download_retries: int = 3
    retry_delay: float = 2.0
    retry_backoff: float = 1.0
    download_timeout: float = 120.0

    # Content cache
    cache_dir: str = ""
    max_cache_size_mb: int = 1024
    cleanup_interval: float = 86400.0

    # Playback engine
    tick_interval_ms: int = 50
    load_timeout: float = 30.0
    default_volume: float = 0.7
    volume_step: float = 0.05
    seek_seconds: int = 5
    sample_rate: int = 44100
    buffer_size: int = 4096
    output_backend: str = "pcm"

    # Playlist
    prefetch_count: int = 3
    auto_skip_failed: bool = True

    # Logging
    json_log: bool = False

    # Internal fields not loaded from INI file
    config_path: str = Field(default="", repr=False)

    @field_validator("queue_capacity")
    @classmethod
    def validate_capacity(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Queue capacity must be at least 1.")
        return v

    @field_validator("worker_count", "max_concurrent_downloads")
    @classmethod
    def validate_workers(cls, v: int) -> int:
        """Ensures a reasonable number of workers."""
        if v < 1 or v > 64:
            raise ValueError("Worker counts must be between 1 and 64.")
        return v

    @field_validator("max_download_retries", "prefetch_count")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Value cannot be negative.")
        return v

    @field_validator("retry_backoff")
    @classmethod
    def validate_backoff(cls, v: float) -> float:
        if v < 1.0:
            raise ValueError("Retry backoff multiplier must be >= 1.0.")
        return v

    @field_validator("default_volume")
    @classmethod
    def validate_volume(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("Default volume must be between 0.0 and 1.0.")
        return v

    @field_validator("volume_step")
    @classmethod
    def validate_volume_step(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("Volume step must be in (0.0, 1.0].")
        return v

    @field_validator("tick_interval_ms", "sample_rate", "buffer_size", "seek_seconds")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Value must be positive.")
        return v

    @field_validator(
        "retry_delay", "download_timeout", "cleanup_interval", "load_timeout"
    )
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Durations cannot be negative.")
        return v

    @field_validator("output_backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in OUTPUT_BACKENDS:
            raise ValueError(f"Output backend must be one of: {', '.join(OUTPUT_BACKENDS)}.")
        return v

    @model_validator(mode="after")
    def validate_download_limits(self) -> "PlayerConfig":
        """Concurrent downloads are capped by the number of workers."""
        if self.max_concurrent_downloads > self.worker_count:
            raise ValueError(
                "max_concurrent_downloads cannot exceed worker_count "
                f"({self.max_concurrent_downloads} > {self.worker_count})."
            )
        if self.max_cache_size_mb < 1:
            raise ValueError("Cache size must be at least 1 MB.")
        return self

    @property
    def cache_quota_bytes(self) -> int:
        return self.max_cache_size_mb * 1024 * 1024

    @property
    def tick_interval(self) -> float:
        return self.tick_interval_ms / 1000

    def resolve_cache_dir(self) -> Path:
        """The configured cache directory, or a default next to the config file."""
        if self.cache_dir:
            return Path(self.cache_dir).expanduser()
        if self.config_path:
            return Path(self.config_path) / "cache"
        return Path("~/.cache/termtune").expanduser()

    @classmethod
    def get_ini_keys(cls) -> set[str]:
        """Returns a set of all keys that are expected in the INI file."""
        internal_fields = {"config_path"}
        return {key for key in cls.model_fields if key not in internal_fields}

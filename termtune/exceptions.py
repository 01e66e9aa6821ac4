"""
Defines custom exceptions for the application to allow for more specific error handling.
"""


class TermtuneError(Exception):
    """Base exception for all application-specific errors."""


class ConfigurationError(TermtuneError):
    """Raised for issues related to configuration loading or validation."""


# --- Download pipeline ---


class FetchError(TermtuneError):
    """Base class for errors raised by a resolver while fetching audio."""


class TransientFetchError(FetchError):
    """A retryable fetch failure (network hiccup, timeout, 5xx, rate limit)."""


class PermanentFetchError(FetchError):
    """A fetch failure that retrying cannot fix (not found, unauthorized)."""


class QueueFull(TermtuneError):
    """Raised by a non-blocking enqueue when the job queue is at capacity."""


class QueueClosed(TermtuneError):
    """Raised when submitting to a job queue that has been shut down."""


class JobCancelled(TermtuneError):
    """Raised when a job or a blocked submission is cancelled."""


class InvalidJobTransition(TermtuneError):
    """Raised when a job is moved to a state it cannot reach from its current one."""


# --- Content cache ---


class CacheWriteError(TermtuneError):
    """
    Raised when a payload cannot be published to the cache (disk error, quota).
    Never fatal to the download pipeline.
    """


# --- Playback ---


class PlaybackError(TermtuneError):
    """Base class for playback engine errors."""


class NotReady(PlaybackError):
    """Raised when a track has no complete cache entry yet."""


class LoadTimeout(PlaybackError):
    """Raised when a track's cache entry did not become ready within the load bound."""


class DecodeError(PlaybackError):
    """Raised when cached audio is corrupt or in an unsupported format."""


class InvalidTransition(PlaybackError):
    """Raised when a transport command is not valid in the current playback state."""

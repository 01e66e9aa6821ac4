"""
Helper functions for formatting data into human-readable strings.
"""


def format_size(bytes_size: int) -> str:
    """Formats bytes into a human-readable size string (e.g., '145.3 MB')."""
    if bytes_size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    while bytes_size >= 1024 and i < len(units) - 1:
        bytes_size /= 1024
        i += 1
    return f"{bytes_size:.1f} {units[i]}"


def format_duration(seconds: float) -> str:
    """
    Formats a duration in seconds into a human-readable string (e.g., '2h 34m 12s').
    """
    s = int(seconds)
    hours, remainder = divmod(s, 3600)
    minutes, secs = divmod(remainder, 60)
    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def format_clock(milliseconds: int) -> str:
    """Formats a playback position as a clock string (e.g., '3:07' or '1:02:09')."""
    total = max(0, int(milliseconds)) // 1000
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def format_volume(volume: float) -> str:
    """Formats a [0, 1] volume as a percentage string."""
    return f"{round(volume * 100):d}%"


def format_speed(bytes_per_second: float) -> str:
    """Formats a transfer rate (e.g., '2.4 MB/s')."""
    return f"{format_size(int(bytes_per_second))}/s"


def format_percent(part: float, whole: float) -> str:
    if whole <= 0:
        return "0%"
    return f"{part / whole * 100:.0f}%"

"""
Data model for entries held by the content cache.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, NamedTuple


@dataclass
class CacheEntry:
    """One cached audio payload, keyed by track id."""

    key: str
    path: Path
    size_bytes: int
    last_accessed_at: float
    complete: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "file": self.path.name,
            "size_bytes": self.size_bytes,
            "last_accessed_at": self.last_accessed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], data_dir: Path) -> "CacheEntry":
        """Rebuilds an entry from a manifest record. Entries on disk are complete."""
        return cls(
            key=str(data["key"]),
            path=data_dir / str(data["file"]),
            size_bytes=int(data["size_bytes"]),
            last_accessed_at=float(data["last_accessed_at"]),
            complete=True,
        )


class CacheUsage(NamedTuple):
    """Point-in-time view of cache accounting."""

    used_bytes: int
    quota_bytes: int
    entry_count: int
    pinned_count: int

    @property
    def free_bytes(self) -> int:
        return max(0, self.quota_bytes - self.used_bytes)

"""
An on-disk content cache for downloaded audio, bounded by a byte quota and
evicted by recency. Publishes are write-then-rename, so readers only ever see
complete files.
"""

import asyncio
import hashlib
import json
import logging
import os
import threading
import time
import uuid
from collections import OrderedDict
from collections.abc import Callable
from contextlib import suppress
from pathlib import Path

from termtune.exceptions import CacheWriteError
from termtune.media.integrity import FileIntegrityChecker
from termtune.models.cache import CacheEntry, CacheUsage

log = logging.getLogger(__name__)

Validator = Callable[[Path], bool]
EvictionCallback = Callable[[CacheEntry, str], None]


class ContentCache:
    """
    Manages the audio cache: an LRU table of complete entries, a quota, pins for
    entries in use, a persisted manifest, and a periodic integrity sweep.

    The entry table and size accounting are guarded by a single lock. Renames,
    writes and unlinks happen outside it; space for an in-flight publish is held
    by an incomplete placeholder entry so the quota holds at all times.
    """

    MANIFEST_NAME = "index.json"
    MANIFEST_VERSION = 1
    STAGING_SUFFIX = ".part"
    DATA_SUFFIX = ".audio"

    def __init__(
        self,
        cache_dir: Path,
        max_size_bytes: int,
        cleanup_interval: float = 86400.0,
        validator: Validator | None = FileIntegrityChecker.check,
        on_evict: EvictionCallback | None = None,
        stats_callback: Callable[[bool], None] | None = None,
    ):
        """
        Args:
            cache_dir: Root directory of the cache.
            max_size_bytes: The quota. The sum of entry sizes never exceeds it.
            cleanup_interval: Seconds between background sweeps (0 disables).
            validator: Integrity probe used by the sweep (None skips the probe).
            on_evict: Called with (entry, reason) after an entry leaves the cache.
            stats_callback: Reports lookups as hits (True) or misses (False).
        """
        self.cache_dir = Path(cache_dir)
        self.data_dir = self.cache_dir / "audio"
        self.staging_dir = self.cache_dir / "tmp"
        self.manifest_path = self.cache_dir / self.MANIFEST_NAME
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.staging_dir.mkdir(parents=True, exist_ok=True)

        self.max_size_bytes = max_size_bytes
        self.cleanup_interval = cleanup_interval
        self._validator = validator
        self._on_evict = on_evict
        self._stats_callback = stats_callback

        self._lock = threading.Lock()
        # Serializes manifest writes; taken before _lock, never inside it.
        self._flush_lock = threading.Lock()
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._used_bytes = 0
        self._pins: dict[str, int] = {}
        self._staging: set[Path] = set()
        self._dirty = False
        self._cleanup_task: asyncio.Task | None = None

        self._load_manifest()

    # --- Background cleanup ---

    async def start_background_cleanup(self):
        """Starts the periodic background sweep task."""
        if self.cleanup_interval <= 0:
            log.debug("Cache background cleanup disabled.")
            return
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            log.debug("Started cache background cleanup task.")

    async def _cleanup_loop(self):
        """Runs the sweep periodically in the background."""
        while True:
            try:
                await asyncio.to_thread(self.sweep)
                await asyncio.sleep(self.cleanup_interval)
            except asyncio.CancelledError:
                log.debug("Cache cleanup task cancelled.")
                break
            except Exception as e:
                log.warning(f"Error in cache cleanup loop: {e}")
                await asyncio.sleep(self.cleanup_interval)

    async def stop_background_cleanup(self):
        """Stops the background cleanup task gracefully."""
        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._cleanup_task
            log.debug("Stopped cache background cleanup task.")

    # --- Paths ---

    def _file_for(self, key: str) -> Path:
        """Generates a safe filename for a given cache key."""
        hashed_key = hashlib.md5(key.encode("utf-8")).hexdigest()  # noqa: S324
        return self.data_dir / f"{hashed_key}{self.DATA_SUFFIX}"

    def staging_path(self, key: str) -> Path:
        """
        Returns a fresh staging path for a download of `key`. The sweep leaves it
        alone until it is published or discarded.
        """
        hashed_key = hashlib.md5(key.encode("utf-8")).hexdigest()  # noqa: S324
        path = self.staging_dir / f"{hashed_key}-{uuid.uuid4().hex[:8]}{self.STAGING_SUFFIX}"
        with self._lock:
            self._staging.add(path)
        return path

    def discard_staging(self, path: Path) -> None:
        """Deletes a staging file that will not be published."""
        with self._lock:
            self._staging.discard(path)
        with suppress(FileNotFoundError):
            path.unlink()

    # --- Reads ---

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and entry.complete

    def get(self, key: str) -> CacheEntry | None:
        """
        Returns the complete entry for `key` and marks it most recently used, or
        None on a miss.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.complete:
                self._mark_used(entry)
            else:
                entry = None

        if entry is not None and not entry.path.is_file():
            log.warning(f"Cache file for '{key}' vanished, dropping entry.")
            self._drop(key, reason="missing")
            entry = None

        if self._stats_callback:
            self._stats_callback(entry is not None)
        return entry

    def acquire(self, key: str) -> CacheEntry | None:
        """Looks up and pins an entry in one step. Pair with `unpin`."""
        entry = self.get(key)
        if entry is None:
            return None
        with self._lock:
            # It may have been evicted between the lookup and the pin.
            if self._entries.get(key) is not entry:
                return None
            self._pins[key] = self._pins.get(key, 0) + 1
        return entry

    def touch(self, key: str) -> bool:
        """Updates recency without reading data."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not entry.complete:
                return False
            self._mark_used(entry)
            return True

    def _mark_used(self, entry: CacheEntry) -> None:
        entry.last_accessed_at = time.time()
        self._entries.move_to_end(entry.key)
        self._dirty = True

    def pin(self, key: str) -> bool:
        """Protects an entry from eviction. Pins nest."""
        with self._lock:
            if key not in self._entries:
                return False
            self._pins[key] = self._pins.get(key, 0) + 1
            return True

    def unpin(self, key: str) -> None:
        with self._lock:
            count = self._pins.get(key, 0)
            if count <= 1:
                self._pins.pop(key, None)
            else:
                self._pins[key] = count - 1

    def is_pinned(self, key: str) -> bool:
        with self._lock:
            return self._pins.get(key, 0) > 0

    def entries(self) -> list[CacheEntry]:
        """Complete entries, least recently used first."""
        with self._lock:
            return [e for e in self._entries.values() if e.complete]

    def usage(self) -> CacheUsage:
        with self._lock:
            return CacheUsage(
                used_bytes=self._used_bytes,
                quota_bytes=self.max_size_bytes,
                entry_count=sum(1 for e in self._entries.values() if e.complete),
                pinned_count=sum(1 for k in self._pins if k in self._entries),
            )

    # --- Writes ---

    def put(self, key: str, data: bytes) -> CacheEntry:
        """Stores an in-memory payload. See `put_file`."""
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None and existing.complete:
                return existing
        staged = self.staging_path(key)
        try:
            with open(staged, "wb") as f:
                f.write(data)
        except OSError as e:
            self.discard_staging(staged)
            raise CacheWriteError(f"Failed to stage '{key}': {e}") from e
        return self.put_file(key, staged)

    def put_file(self, key: str, staged_path: Path) -> CacheEntry:
        """
        Publishes a fully written staging file under `key`.

        Evicts least recently used, unpinned entries until the payload fits. A put
        for a key that already has a complete entry is a no-op returning that
        entry. The staging file is consumed either way.

        Raises:
            CacheWriteError: If the file is unreadable, cannot fit even after
                eviction, or cannot be renamed into place.
        """
        try:
            size = staged_path.stat().st_size
        except OSError as e:
            self.discard_staging(staged_path)
            raise CacheWriteError(f"Staged file for '{key}' is unreadable: {e}") from e

        final_path = self._file_for(key)
        victims: list[CacheEntry] = []
        error: CacheWriteError | None = None
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None:
                self._staging.discard(staged_path)
            else:
                try:
                    victims = self._make_room(size)
                except CacheWriteError as e:
                    self._staging.discard(staged_path)
                    error = CacheWriteError(
                        f"'{key}' ({size} bytes) does not fit in the cache quota "
                        f"({self.max_size_bytes} bytes): {e}"
                    )
                else:
                    entry = CacheEntry(
                        key=key,
                        path=final_path,
                        size_bytes=size,
                        last_accessed_at=time.time(),
                        complete=False,
                    )
                    self._entries[key] = entry
                    self._used_bytes += size

        if existing is not None or error is not None:
            with suppress(FileNotFoundError):
                staged_path.unlink()
            if error is not None:
                raise error
            if not existing.complete:
                raise CacheWriteError(f"A publish for '{key}' is already in progress.")
            return existing

        self._unlink_evicted(victims, reason="quota")

        try:
            os.replace(staged_path, final_path)
        except OSError as e:
            with self._lock:
                self._entries.pop(key, None)
                self._used_bytes -= size
                self._staging.discard(staged_path)
            with suppress(FileNotFoundError):
                staged_path.unlink()
            raise CacheWriteError(f"Failed to publish '{key}': {e}") from e

        with self._lock:
            self._staging.discard(staged_path)
            entry.complete = True
            entry.last_accessed_at = time.time()
            self._entries.move_to_end(key)
            self._dirty = True

        log.debug(f"Cached '{key}' ({size} bytes).")
        self.flush()
        return entry

    def _make_room(self, size: int) -> list[CacheEntry]:
        """
        Picks and unlinks (from the table) the LRU entries that must go for `size`
        more bytes to fit. Must be called with the lock held.
        """
        if size > self.max_size_bytes:
            raise CacheWriteError("payload larger than the whole cache quota")

        total = self._used_bytes
        victims: list[CacheEntry] = []
        if total + size > self.max_size_bytes:
            for key, entry in self._entries.items():
                if total + size <= self.max_size_bytes:
                    break
                if not entry.complete or self._pins.get(key, 0) > 0:
                    continue
                victims.append(entry)
                total -= entry.size_bytes
        if total + size > self.max_size_bytes:
            raise CacheWriteError("not enough unpinned entries to evict")

        for entry in victims:
            del self._entries[entry.key]
        self._used_bytes = total
        if victims:
            self._dirty = True
        return victims

    def _unlink_evicted(self, victims: list[CacheEntry], reason: str) -> None:
        for entry in victims:
            try:
                entry.path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                log.warning(f"Failed to delete cache file {entry.path.name}: {e}")
            log.debug(f"Evicted '{entry.key}' from cache ({reason}).")
            if self._on_evict:
                self._on_evict(entry, reason)

    def _drop(self, key: str, reason: str) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not entry.complete:
                return None
            del self._entries[key]
            self._used_bytes -= entry.size_bytes
            self._dirty = True
        self._unlink_evicted([entry], reason)
        return entry

    def remove(self, key: str) -> bool:
        """Removes an entry. Pinned entries are left alone."""
        if self.is_pinned(key):
            log.debug(f"Not removing pinned cache entry '{key}'.")
            return False
        removed = self._drop(key, reason="removed") is not None
        if removed:
            self.flush()
        return removed

    def clear(self) -> int:
        """Removes all unpinned entries. Returns the number removed."""
        log.info("Clearing all cache entries...")
        with self._lock:
            victims = [
                e
                for k, e in self._entries.items()
                if e.complete and self._pins.get(k, 0) == 0
            ]
            for entry in victims:
                del self._entries[entry.key]
                self._used_bytes -= entry.size_bytes
            self._dirty = True
        self._unlink_evicted(victims, reason="cleared")
        self.flush()
        return len(victims)

    # --- Sweep ---

    def sweep(self) -> int:
        """
        Removes entries whose files are missing, truncated, or fail the integrity
        probe, then deletes staging remnants and orphan files. Returns the number
        of entries removed.
        """
        bad: list[str] = []
        for entry in self.entries():
            try:
                actual = entry.path.stat().st_size
            except OSError:
                bad.append(entry.key)
                continue
            if actual != entry.size_bytes:
                log.warning(
                    f"Cache entry '{entry.key}' has size {actual}, "
                    f"expected {entry.size_bytes}."
                )
                bad.append(entry.key)
            elif self._validator is not None and not self._validator(entry.path):
                bad.append(entry.key)

        removed = 0
        for key in bad:
            if self.is_pinned(key):
                continue
            if self._drop(key, reason="invalid") is not None:
                removed += 1

        remnants = self._remove_remnants()
        self.flush()
        if removed or remnants:
            log.info(
                f"Cache sweep: removed {removed} invalid entries and "
                f"{remnants} leftover files."
            )
        return removed

    def _remove_remnants(self) -> int:
        with self._lock:
            live_staging = set(self._staging)
            known = {e.path.name for e in self._entries.values()}

        cleaned = 0
        live_names = tuple(p.name for p in live_staging)
        for path in self.staging_dir.iterdir():
            # Resolvers may write side files next to their staging path.
            if live_names and path.name.startswith(live_names):
                continue
            cleaned += self._unlink_quietly(path)
        for path in self.data_dir.iterdir():
            if path.name in known:
                continue
            cleaned += self._unlink_quietly(path)
        return cleaned

    @staticmethod
    def _unlink_quietly(path: Path) -> int:
        try:
            if path.is_file():
                path.unlink()
                return 1
        except OSError as e:
            log.warning(f"Failed to remove leftover cache file {path.name}: {e}")
        return 0

    # --- Manifest ---

    def _load_manifest(self) -> None:
        if not self.manifest_path.is_file():
            return
        try:
            with open(self.manifest_path, encoding="utf-8") as f:
                data = json.load(f)
            records = data.get("entries", [])
            loaded = [CacheEntry.from_dict(r, self.data_dir) for r in records]
        except (json.JSONDecodeError, OSError, KeyError, TypeError, ValueError) as e:
            log.warning(f"Cache manifest unreadable, starting empty: {e}")
            return

        loaded.sort(key=lambda e: e.last_accessed_at)
        for entry in loaded:
            try:
                if entry.path.stat().st_size != entry.size_bytes:
                    continue
            except OSError:
                continue
            self._entries[entry.key] = entry
            self._used_bytes += entry.size_bytes

        # The quota may have shrunk since the manifest was written.
        if self._used_bytes > self.max_size_bytes:
            with self._lock:
                victims = self._make_room(0)
            self._unlink_evicted(victims, reason="quota")
        self._dirty = len(self._entries) != len(records)
        log.debug(f"Loaded {len(self._entries)} cache entries from manifest.")

    def flush(self) -> None:
        """Writes the manifest if anything changed since the last write."""
        with self._flush_lock:
            with self._lock:
                if not self._dirty:
                    return
                payload = {
                    "version": self.MANIFEST_VERSION,
                    "entries": [e.to_dict() for e in self._entries.values() if e.complete],
                }
                self._dirty = False

            tmp_path = self.manifest_path.with_suffix(".json.tmp")
            try:
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2)
                os.replace(tmp_path, self.manifest_path)
            except OSError as e:
                log.warning(f"Failed to write cache manifest: {e}")
                with self._lock:
                    self._dirty = True

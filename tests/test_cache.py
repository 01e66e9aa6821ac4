"""Tests for the on-disk content cache."""

import asyncio
import json
import threading

import pytest

from termtune.exceptions import CacheWriteError
from termtune.models.cache import CacheEntry
from termtune.storage.cache import ContentCache

KB = 1024


def make_cache(tmp_path, quota: int, **kwargs) -> ContentCache:
    kwargs.setdefault("validator", None)
    return ContentCache(tmp_path / "cache", quota, cleanup_interval=0, **kwargs)


class TestPutAndGet:
    def test_put_then_get(self, cache):
        entry = cache.put("a", b"hello")

        assert entry.complete
        assert entry.path.read_bytes() == b"hello"
        assert cache.get("a") is entry
        assert "a" in cache

    def test_miss_returns_none(self, cache):
        assert cache.get("missing") is None

    def test_duplicate_put_keeps_first_entry(self, cache):
        first = cache.put("a", b"first")
        second = cache.put("a", b"second payload")

        assert second is first
        assert cache.get("a").path.read_bytes() == b"first"
        assert cache.usage().entry_count == 1
        assert cache.usage().used_bytes == len(b"first")

    def test_put_file_consumes_staging(self, cache):
        staged = cache.staging_path("a")
        staged.write_bytes(b"x" * 10)

        cache.put_file("a", staged)

        assert not staged.exists()
        assert list(cache.staging_dir.iterdir()) == []

    def test_lookups_are_reported(self, tmp_path):
        lookups: list[bool] = []
        cache = make_cache(tmp_path, 10 * KB, stats_callback=lookups.append)
        cache.put("a", b"x")

        cache.get("a")
        cache.get("b")

        assert lookups == [True, False]

    def test_vanished_file_is_a_miss(self, cache):
        entry = cache.put("a", b"x")
        entry.path.unlink()

        assert cache.get("a") is None
        assert "a" not in cache


class TestEviction:
    def test_lru_entries_are_evicted_to_fit(self, tmp_path):
        evicted: list[str] = []
        cache = make_cache(
            tmp_path, 100 * KB, on_evict=lambda entry, reason: evicted.append(entry.key)
        )
        cache.put("x", b"\x00" * (40 * KB))
        cache.put("y", b"\x00" * (30 * KB))
        cache.put("z", b"\x00" * (25 * KB))
        cache.get("x")  # y is now least recently used

        cache.put("new", b"\x00" * (10 * KB))

        assert evicted == ["y"]
        assert "new" in cache
        assert cache.usage().used_bytes <= 100 * KB

    def test_touch_refreshes_recency(self, tmp_path):
        cache = make_cache(tmp_path, 100 * KB)
        cache.put("old", b"\x00" * (50 * KB))
        cache.put("newer", b"\x00" * (40 * KB))

        assert cache.touch("old")
        assert not cache.touch("missing")
        cache.put("big", b"\x00" * (20 * KB))

        assert "old" in cache
        assert "newer" not in cache

    def test_quota_example(self, tmp_path):
        # 95 of 100 units used, the least recent entry is X; a 10 unit put
        # must evict X and leave the total at or under quota.
        unit = KB
        cache = make_cache(tmp_path, 100 * unit)
        cache.put("X", b"\x00" * (5 * unit))
        cache.put("Y", b"\x00" * (45 * unit))
        cache.put("Z", b"\x00" * (45 * unit))

        cache.put("new", b"\x00" * (10 * unit))

        assert "X" not in cache
        assert "new" in cache
        assert cache.usage().used_bytes <= 100 * unit
        assert not cache._file_for("X").exists()

    def test_pinned_entries_survive_eviction(self, tmp_path):
        cache = make_cache(tmp_path, 100 * KB)
        cache.put("old", b"\x00" * (60 * KB))
        cache.put("newer", b"\x00" * (30 * KB))
        assert cache.pin("old")

        cache.put("big", b"\x00" * (40 * KB))

        assert "old" in cache
        assert "newer" not in cache
        assert "big" in cache

    def test_put_fails_when_only_pinned_entries_remain(self, tmp_path):
        cache = make_cache(tmp_path, 100 * KB)
        cache.put("a", b"\x00" * (90 * KB))
        cache.pin("a")

        with pytest.raises(CacheWriteError):
            cache.put("b", b"\x00" * (20 * KB))
        assert "a" in cache
        assert "b" not in cache
        assert list(cache.staging_dir.iterdir()) == []

    def test_payload_larger_than_quota_is_rejected(self, tmp_path):
        cache = make_cache(tmp_path, 10)

        with pytest.raises(CacheWriteError):
            cache.put("a", b"\x00" * 20)
        assert cache.usage().used_bytes == 0


class TestPins:
    def test_pins_nest(self, cache):
        cache.put("a", b"x")
        cache.pin("a")
        cache.pin("a")

        cache.unpin("a")
        assert cache.is_pinned("a")
        cache.unpin("a")
        assert not cache.is_pinned("a")

    def test_acquire_pins(self, cache):
        cache.put("a", b"x")

        entry = cache.acquire("a")

        assert entry is not None
        assert cache.is_pinned("a")
        assert cache.acquire("missing") is None

    def test_remove_skips_pinned(self, cache):
        cache.put("a", b"x")
        cache.pin("a")

        assert not cache.remove("a")
        cache.unpin("a")
        assert cache.remove("a")
        assert "a" not in cache

    def test_clear_keeps_pinned(self, cache):
        cache.put("a", b"x")
        cache.put("b", b"y")
        cache.pin("b")

        assert cache.clear() == 1
        assert "b" in cache


class TestManifest:
    def test_entries_survive_reload(self, tmp_path):
        cache = make_cache(tmp_path, 10 * KB)
        cache.put("a", b"one")
        cache.put("b", b"two")
        cache.get("a")
        cache.flush()

        reloaded = make_cache(tmp_path, 10 * KB)

        assert [e.key for e in reloaded.entries()] == ["b", "a"]
        assert reloaded.get("a").path.read_bytes() == b"one"
        assert reloaded.usage().used_bytes == 6

    def test_manifest_is_json(self, cache):
        cache.put("a", b"one")

        data = json.loads(cache.manifest_path.read_text())

        assert data["version"] == ContentCache.MANIFEST_VERSION
        assert [record["key"] for record in data["entries"]] == ["a"]

    def test_truncated_files_are_dropped_on_load(self, tmp_path):
        cache = make_cache(tmp_path, 10 * KB)
        entry = cache.put("a", b"complete")
        entry.path.write_bytes(b"trunc")

        reloaded = make_cache(tmp_path, 10 * KB)

        assert "a" not in reloaded

    def test_shrunken_quota_evicts_on_load(self, tmp_path):
        cache = make_cache(tmp_path, 10 * KB)
        cache.put("a", b"\x00" * (4 * KB))
        cache.put("b", b"\x00" * (4 * KB))

        reloaded = make_cache(tmp_path, 5 * KB)

        assert "a" not in reloaded
        assert "b" in reloaded

    def test_corrupt_manifest_starts_empty(self, tmp_path):
        cache = make_cache(tmp_path, 10 * KB)
        cache.manifest_path.write_text("{not json")

        reloaded = make_cache(tmp_path, 10 * KB)

        assert reloaded.entries() == []

    def test_entry_round_trip(self, tmp_path):
        entry = CacheEntry(
            key="k", path=tmp_path / "f.audio", size_bytes=3, last_accessed_at=1.5
        )
        restored = CacheEntry.from_dict(entry.to_dict(), tmp_path)

        assert restored.key == "k"
        assert restored.path == entry.path
        assert restored.complete


class TestSweep:
    def test_sweep_removes_remnants(self, cache):
        cache.put("a", b"x")
        orphan = cache.data_dir / "orphan.audio"
        orphan.write_bytes(b"junk")
        stale = cache.staging_dir / "dead.part"
        stale.write_bytes(b"junk")

        cache.sweep()

        assert not orphan.exists()
        assert not stale.exists()
        assert "a" in cache

    def test_sweep_keeps_live_staging_files(self, cache):
        staged = cache.staging_path("a")
        staged.write_bytes(b"partial")
        side_file = staged.with_name(staged.name + ".m4a")
        side_file.write_bytes(b"partial")

        cache.sweep()

        assert staged.exists()
        assert side_file.exists()

    def test_sweep_drops_truncated_entries(self, cache):
        entry = cache.put("a", b"complete")
        with open(entry.path, "r+b") as f:
            f.truncate(3)

        assert cache.sweep() == 1
        assert "a" not in cache

    def test_sweep_drops_entries_failing_validation(self, tmp_path):
        cache = make_cache(tmp_path, 10 * KB, validator=lambda path: False)
        cache.put("a", b"not audio")

        assert cache.sweep() == 1
        assert "a" not in cache

    def test_sweep_spares_pinned_entries(self, tmp_path):
        cache = make_cache(tmp_path, 10 * KB, validator=lambda path: False)
        cache.put("a", b"not audio")
        cache.pin("a")

        assert cache.sweep() == 0
        assert "a" in cache

    def test_default_validator_rejects_garbage(self, tmp_path):
        cache = ContentCache(tmp_path / "cache", 10 * KB, cleanup_interval=0)
        cache.put("a", b"not audio at all" * 32)

        assert cache.sweep() == 1


class TestBackgroundCleanup:
    @pytest.mark.asyncio
    async def test_disabled_when_interval_is_zero(self, cache):
        await cache.start_background_cleanup()

        assert cache._cleanup_task is None

    @pytest.mark.asyncio
    async def test_start_and_stop(self, tmp_path):
        cache = ContentCache(tmp_path / "cache", 10 * KB, cleanup_interval=60, validator=None)
        stale = cache.staging_dir / "dead.part"
        stale.write_bytes(b"junk")

        await cache.start_background_cleanup()
        for _ in range(100):
            if not stale.exists():
                break
            await asyncio.sleep(0.01)
        await cache.stop_background_cleanup()

        assert not stale.exists()
        assert cache._cleanup_task.done()


class TestThreadSafety:
    def test_concurrent_puts_and_gets_respect_quota(self, tmp_path):
        cache = make_cache(tmp_path, 64 * KB)
        peak_used: list[int] = []
        failures: list[Exception] = []

        def writer(n: int) -> None:
            for i in range(25):
                try:
                    cache.put(f"w{n}-{i}", b"\x01" * (4 * KB))
                except CacheWriteError as e:
                    failures.append(e)
                cache.get(f"w{n}-{i - 1}")
                peak_used.append(cache.usage().used_bytes)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        usage = cache.usage()
        entries = cache.entries()
        assert failures == []
        assert max(peak_used) <= 64 * KB
        assert usage.used_bytes == sum(e.size_bytes for e in entries) == 64 * KB
        assert all(e.path.stat().st_size == 4 * KB for e in entries)
        manifest = json.loads(cache.manifest_path.read_text())
        assert {r["key"] for r in manifest["entries"]} == {e.key for e in entries}

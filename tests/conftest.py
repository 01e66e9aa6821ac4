"""Shared fixtures for termtune tests.

- Fakes: a scripted resolver and a controllable clock
- Config and cache fixtures rooted in tmp_path
- A polling helper for conditions reached by background tasks
"""

import asyncio
from collections.abc import Callable
from contextlib import suppress
from pathlib import Path

import pytest

from termtune.models.config import PlayerConfig
from termtune.models.job import CancelToken
from termtune.models.track import Track
from termtune.storage.cache import ContentCache

MB = 1024 * 1024


# =============================================================================
# Fakes
# =============================================================================


class FakeResolver:
    """Resolver fake that plays back a script of failures per source.

    Usage:
        resolver = FakeResolver(script={"a.mp3": [TransientFetchError("x")]})
        # First fetch of a.mp3 raises, later ones succeed.

    Setting `gate` makes every fetch wait until the gate is set or the job is
    cancelled.
    """

    def __init__(
        self,
        payload: bytes = b"\x00" * 1024,
        script: dict[str, list[BaseException]] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.payload = payload
        self.script = script or {}
        self.delay = delay
        self.gate: asyncio.Event | None = None
        self.calls: list[str] = []
        self.active = 0
        self.peak_active = 0

    def call_count(self, source_ref: str) -> int:
        return self.calls.count(source_ref)

    async def fetch(
        self, source_ref: str, destination: Path, cancel_token: CancelToken
    ) -> Path:
        self.calls.append(source_ref)
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            if self.delay:
                # Like a real resolver, a slow fetch stops at its cancel token.
                with suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(cancel_token.wait(), timeout=self.delay)
            if self.gate is not None:
                await self._wait_for_gate(cancel_token)
            cancel_token.raise_if_cancelled()
            outcomes = self.script.get(source_ref)
            if outcomes:
                raise outcomes.pop(0)
            destination.write_bytes(self.payload)
            return destination
        finally:
            self.active -= 1

    async def _wait_for_gate(self, cancel_token: CancelToken) -> None:
        waiters = {
            asyncio.create_task(self.gate.wait()),
            asyncio.create_task(cancel_token.wait()),
        }
        _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., PlayerConfig]:
    """Builds a fast, test-sized config; keyword arguments override fields."""

    def _make(**overrides) -> PlayerConfig:
        values = {
            "cache_dir": str(tmp_path / "cache"),
            "worker_count": 4,
            "max_concurrent_downloads": 2,
            "retry_delay": 0.0,
            "download_timeout": 5.0,
            "tick_interval_ms": 10,
            "load_timeout": 2.0,
            "prefetch_count": 2,
            "cleanup_interval": 0.0,
        }
        values.update(overrides)
        return PlayerConfig(**values)

    return _make


@pytest.fixture
def config(make_config) -> PlayerConfig:
    return make_config()


@pytest.fixture
def cache(tmp_path: Path) -> ContentCache:
    """A 10 MB cache that skips the mutagen integrity probe."""
    return ContentCache(tmp_path / "cache", 10 * MB, cleanup_interval=0, validator=None)


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tracks() -> list[Track]:
    return [Track(track_id=f"t{i}", source_ref=f"src-{i}", title=f"Song {i}") for i in range(6)]


async def _wait_until(
    predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01
) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met within timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_until() -> Callable:
    """Polls a predicate until it holds, failing the test after a timeout."""
    return _wait_until

"""
Resolvers turn a track's source reference into audio bytes on disk.
Backends are picked by the scheme of the source reference.
"""

import asyncio
import hashlib
import logging
import os
import re
from pathlib import Path
from typing import Protocol, runtime_checkable
from urllib.parse import unquote, urlparse

import aiofiles
import aiohttp

from termtune.exceptions import PermanentFetchError, TransientFetchError
from termtune.media.ytdlp_resolver import YtDlpResolver
from termtune.models.job import CancelToken
from termtune.models.track import Track
from termtune.utils.circuit_breaker import CircuitBreaker

log = logging.getLogger(__name__)

PERMANENT_HTTP_STATUSES = frozenset({401, 403, 404, 410})

_connection_pool: aiohttp.ClientSession | None = None
_pool_lock = asyncio.Lock()


@runtime_checkable
class Resolver(Protocol):
    """
    Fetches the audio behind `source_ref` into `destination`.

    Implementations check `cancel_token` between chunks, raise
    TransientFetchError or PermanentFetchError on failure, and return the path
    that holds the finished payload.
    """

    async def fetch(
        self, source_ref: str, destination: Path, cancel_token: CancelToken
    ) -> Path: ...


async def get_connection_pool(max_connections: int = 4) -> aiohttp.ClientSession:
    """
    Gets or creates a shared aiohttp ClientSession for downloads.

    Only one connection pool is created for the lifetime of the application run.

    Args:
        max_connections: Maximum concurrent connections per host.
    """
    global _connection_pool
    async with _pool_lock:
        if _connection_pool and not _connection_pool.closed:
            return _connection_pool

        connector = aiohttp.TCPConnector(
            limit=max_connections * 2,
            limit_per_host=max_connections,
            ttl_dns_cache=600,  # 10 minutes
            keepalive_timeout=30,
            enable_cleanup_closed=True,
            force_close=False,
        )
        # Per-attempt deadlines are enforced by the worker pool.
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=15, sock_read=90)
        _connection_pool = aiohttp.ClientSession(
            connector=connector,
            timeout=timeout,
            headers={"Accept-Encoding": "gzip, deflate, br"},
        )
        log.debug(f"Created download pool with limit_per_host={max_connections}")

    return _connection_pool


async def close_connection_pool() -> None:
    """Closes the shared global connection pool."""
    global _connection_pool
    async with _pool_lock:
        if _connection_pool and not _connection_pool.closed:
            await _connection_pool.close()
            _connection_pool = None
            log.debug("Shared downloader connection pool closed.")


class FileResolver:
    """Copies local files (plain paths or file:// URLs) chunk by chunk."""

    CHUNK_SIZE = 262144  # 256 KB

    @staticmethod
    def to_path(source_ref: str) -> Path:
        if source_ref.startswith("file://"):
            return Path(unquote(urlparse(source_ref).path))
        return Path(source_ref).expanduser()

    async def fetch(
        self, source_ref: str, destination: Path, cancel_token: CancelToken
    ) -> Path:
        source = self.to_path(source_ref)
        try:
            async with aiofiles.open(source, "rb") as src, aiofiles.open(
                destination, "wb"
            ) as dst:
                while True:
                    cancel_token.raise_if_cancelled()
                    chunk = await src.read(self.CHUNK_SIZE)
                    if not chunk:
                        break
                    await dst.write(chunk)
        except (FileNotFoundError, IsADirectoryError, PermissionError) as e:
            raise PermanentFetchError(f"Cannot read '{source}': {e}") from e
        except OSError as e:
            raise TransientFetchError(f"Copy of '{source}' failed: {e}") from e
        return destination


class HttpResolver:
    """
    Streams http(s) URLs to disk with adaptive chunk sizing.

    Each host gets its own circuit breaker so a dead host fails fast.
    """

    MIN_CHUNK_SIZE = 131072  # 128 KB
    MAX_CHUNK_SIZE = 1048576  # 1 MB

    def __init__(
        self,
        max_connections: int = 4,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
    ):
        self.max_connections = max_connections
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._breakers: dict[str, CircuitBreaker] = {}
        self._chunk_size = self.MIN_CHUNK_SIZE

    def _breaker_for(self, host: str) -> CircuitBreaker:
        breaker = self._breakers.get(host)
        if breaker is None:
            breaker = CircuitBreaker(
                host,
                failure_threshold=self.failure_threshold,
                recovery_timeout=self.recovery_timeout,
            )
            self._breakers[host] = breaker
        return breaker

    def _adapt_chunk_size(self, speed_bps: float) -> int:
        """Adapts the chunk size to the observed transfer speed."""
        if speed_bps > 10 * 1024 * 1024:  # > 10 MB/s
            self._chunk_size = self.MAX_CHUNK_SIZE
        elif speed_bps > 5 * 1024 * 1024:  # > 5 MB/s
            self._chunk_size = 524288  # 512 KB
        elif speed_bps > 1 * 1024 * 1024:  # > 1 MB/s
            self._chunk_size = 262144  # 256 KB
        else:
            self._chunk_size = self.MIN_CHUNK_SIZE
        return self._chunk_size

    async def fetch(
        self, source_ref: str, destination: Path, cancel_token: CancelToken
    ) -> Path:
        host = urlparse(source_ref).netloc or source_ref
        async with self._breaker_for(host):
            session = await get_connection_pool(self.max_connections)
            try:
                async with session.get(source_ref, allow_redirects=True) as response:
                    if response.status in PERMANENT_HTTP_STATUSES:
                        raise PermanentFetchError(
                            f"HTTP {response.status} for {source_ref}"
                        )
                    if response.status >= 400:
                        raise TransientFetchError(
                            f"HTTP {response.status} for {source_ref}"
                        )
                    await self._stream_to_file(response, destination, cancel_token)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise TransientFetchError(
                    f"Download of '{os.path.basename(urlparse(source_ref).path)}' "
                    f"failed: {e}"
                ) from e
        return destination

    async def _stream_to_file(
        self,
        response: aiohttp.ClientResponse,
        destination: Path,
        cancel_token: CancelToken,
    ) -> None:
        loop = asyncio.get_running_loop()
        async with aiofiles.open(destination, "wb") as f:
            bytes_downloaded = 0
            started = last_speed_check = loop.time()
            chunk_size = self._chunk_size

            async for chunk in response.content.iter_chunked(chunk_size):
                cancel_token.raise_if_cancelled()
                await f.write(chunk)
                bytes_downloaded += len(chunk)

                now = loop.time()
                if now - last_speed_check > 2.0:
                    self._adapt_chunk_size(bytes_downloaded / (now - started))
                    last_speed_check = now

        expected = response.content_length
        if expected is not None and bytes_downloaded < expected:
            raise TransientFetchError(
                f"Connection closed after {bytes_downloaded} of {expected} bytes."
            )

    async def aclose(self) -> None:
        await close_connection_pool()


_YOUTUBE_HOSTS = ("youtube.com", "www.youtube.com", "music.youtube.com", "youtu.be")
_WINDOWS_DRIVE = re.compile(r"^[a-zA-Z]:[\\/]")


class ResolverRegistry:
    """
    Routes each source reference to the resolver registered for its scheme.
    The registry is itself a Resolver, so the worker pool only ever sees one.
    """

    def __init__(self):
        self._by_scheme: dict[str, Resolver] = {}

    def register(self, resolver: Resolver, *schemes: str) -> None:
        for scheme in schemes:
            self._by_scheme[scheme.lower()] = resolver

    @staticmethod
    def scheme_of(source_ref: str) -> str:
        if source_ref.startswith("yt:"):
            return "yt"
        if _WINDOWS_DRIVE.match(source_ref):
            return "file"
        parsed = urlparse(source_ref)
        if parsed.netloc.lower() in _YOUTUBE_HOSTS:
            return "yt"
        return parsed.scheme.lower() or "file"

    def resolver_for(self, source_ref: str) -> Resolver:
        scheme = self.scheme_of(source_ref)
        resolver = self._by_scheme.get(scheme)
        if resolver is None:
            raise PermanentFetchError(f"No resolver for '{scheme}' sources.")
        return resolver

    async def fetch(
        self, source_ref: str, destination: Path, cancel_token: CancelToken
    ) -> Path:
        resolver = self.resolver_for(source_ref)
        return await resolver.fetch(source_ref, destination, cancel_token)

    def track_for(self, source_ref: str, title: str = "") -> Track:
        """
        Builds a Track for a user-supplied source. Local paths are made absolute
        so the same file always maps to the same track id.
        """
        scheme = self.scheme_of(source_ref)
        if scheme == "file":
            path = FileResolver.to_path(source_ref).resolve()
            source_ref = str(path)
            default_title = path.stem
        elif scheme == "yt":
            default_title = source_ref.removeprefix("yt:")
        else:
            default_title = unquote(Path(urlparse(source_ref).path).stem) or source_ref
        track_id = hashlib.sha1(source_ref.encode("utf-8")).hexdigest()[:16]  # noqa: S324
        return Track(
            track_id=track_id, source_ref=source_ref, title=title or default_title
        )

    async def aclose(self) -> None:
        seen: set[int] = set()
        for resolver in self._by_scheme.values():
            if id(resolver) in seen:
                continue
            seen.add(id(resolver))
            closer = getattr(resolver, "aclose", None)
            if closer is not None:
                await closer()

    @classmethod
    def default(cls, max_connections: int = 4) -> "ResolverRegistry":
        """A registry with the file, HTTP and yt-dlp backends."""
        registry = cls()
        registry.register(FileResolver(), "file")
        registry.register(HttpResolver(max_connections=max_connections), "http", "https")
        registry.register(YtDlpResolver(), "yt")
        return registry

"""
Resolver for YouTube sources (`yt:<video id>` and YouTube URLs) using yt-dlp.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Any

import yt_dlp
from yt_dlp.utils import DownloadCancelled

from termtune.exceptions import JobCancelled, PermanentFetchError, TransientFetchError
from termtune.models.job import CancelToken

log = logging.getLogger(__name__)


class YtDlpResolver:
    """
    Downloads the audio stream of a YouTube video with the yt_dlp library.

    yt-dlp is blocking, so each fetch runs in a worker thread. Cancellation is
    checked from the progress hook, which yt-dlp calls between fragments.
    Formats mutagen can read are preferred so the cache sweep can verify them.
    """

    WATCH_URL = "https://music.youtube.com/watch?v={video_id}"
    FORMAT = "bestaudio[ext=m4a]/bestaudio[ext=mp3]/bestaudio/best"

    GONE_PATTERNS = ("HTTP Error 404", "HTTP Error 410")
    PERMANENT_PATTERNS = ("Video unavailable", "Private video", "Sign in", "cookies")
    TRANSIENT_PATTERNS = (
        "HTTP Error 403",
        "403 Forbidden",
        "HTTP Error 429",
        "HTTP Error 5",  # 500, 502, 503, ...
        # Network failures arrive wrapped in DownloadError, not as OSError.
        "urlopen error",
        "timed out",
        "Connection reset",
        "Connection refused",
        "Temporary failure",
        "Network is unreachable",
        "IncompleteRead",
        "Unable to download",
    )

    def __init__(self, cookies_path: Path | None = None):
        self._cookies_path = cookies_path

    @classmethod
    def to_url(cls, source_ref: str) -> str:
        if source_ref.startswith("yt:"):
            return cls.WATCH_URL.format(video_id=source_ref[3:])
        return source_ref

    def _build_options(self, destination: Path, cancel_token: CancelToken) -> dict[str, Any]:
        def check_cancelled(_progress: dict[str, Any]) -> None:
            if cancel_token.is_cancelled:
                raise DownloadCancelled("cancelled")

        opts: dict[str, Any] = {
            "format": self.FORMAT,
            "outtmpl": f"{destination}.%(ext)s",
            "color": "never",
            "quiet": True,
            "no_warnings": True,
            "noprogress": True,
            "noplaylist": True,
            # The worker pool owns the retry budget.
            "retries": 0,
            "fragment_retries": 0,
            "progress_hooks": [check_cancelled],
        }
        if self._cookies_path and self._cookies_path.exists():
            opts["cookiefile"] = str(self._cookies_path)
        return opts

    def _download(self, url: str, destination: Path, cancel_token: CancelToken) -> Path:
        opts = self._build_options(destination, cancel_token)
        with yt_dlp.YoutubeDL(opts) as ydl:
            info = ydl.extract_info(url, download=True)
            if not info:
                raise yt_dlp.utils.DownloadError(f"yt-dlp returned no media for {url}")
            requested = (info.get("requested_downloads") or [{}])[0]
            downloaded = Path(requested.get("filepath") or ydl.prepare_filename(info))
        os.replace(downloaded, destination)
        return destination

    def _classify(self, error: Exception, url: str) -> Exception:
        message = str(error)
        # yt-dlp keeps the underlying exception in exc_info.
        wrapped = (getattr(error, "exc_info", None) or (None, None, None))[1]
        if any(p in message for p in self.GONE_PATTERNS):
            return PermanentFetchError(f"{url} is not available: {message}")
        if any(p in message for p in self.TRANSIENT_PATTERNS):
            return TransientFetchError(f"yt-dlp: {message}")
        if any(p.lower() in message.lower() for p in self.PERMANENT_PATTERNS):
            return PermanentFetchError(f"{url} is not available: {message}")
        if isinstance(error, OSError) or isinstance(wrapped, OSError):
            return TransientFetchError(f"yt-dlp: {message}")
        return PermanentFetchError(f"yt-dlp failed for {url}: {message}")

    async def fetch(
        self, source_ref: str, destination: Path, cancel_token: CancelToken
    ) -> Path:
        url = self.to_url(source_ref)
        log.debug(f"Fetching {url} with yt-dlp")
        try:
            return await asyncio.to_thread(self._download, url, destination, cancel_token)
        except DownloadCancelled as e:
            raise JobCancelled(f"Download of {url} was cancelled.") from e
        except (yt_dlp.utils.YoutubeDLError, OSError) as e:
            raise self._classify(e, url) from e
        finally:
            for leftover in destination.parent.glob(f"{destination.name}.*"):
                leftover.unlink(missing_ok=True)

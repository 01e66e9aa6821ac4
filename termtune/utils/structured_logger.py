"""
Structured event logging for the download pipeline and the playback engine.

Every event becomes a console line through the standard `logging` tree and,
when a log directory is configured, a JSON-lines record stamped with the
session context so a listening session can be replayed from the file.
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TextIO


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


class StructuredLogger:
    """
    Emits named events with keyword context.

    Usage:
        logger = StructuredLogger("termtune", log_dir=Path("logs"))
        logger.info("job_succeeded", track_id="abc", size_bytes=4812311)

    Console lines look like ``[job_succeeded] track_id=abc size_bytes=4812311``.
    """

    def __init__(
        self,
        name: str,
        log_dir: Path | None = None,
        enable_json: bool = True,
        enable_console: bool = True,
    ):
        self.name = name
        self.log_dir = log_dir
        self.enable_json = enable_json and log_dir is not None
        self.enable_console = enable_console
        self._logger = logging.getLogger(name)

        self._sink: TextIO | None = None
        if self.enable_json:
            log_dir.mkdir(parents=True, exist_ok=True)
            stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self.json_path = log_dir / f"termtune_{stamp}.jsonl"
            self._sink = self.json_path.open("a", encoding="utf-8")

        self._session_context: dict[str, Any] = {
            "session_id": uuid.uuid4().hex[:12],
            "session_start": _now(),
        }

    def set_session_context(self, **kwargs) -> None:
        """Adds fields that are copied into every JSON record from now on."""
        self._session_context.update(kwargs)

    @staticmethod
    def _console_line(event: str, context: dict[str, Any]) -> str:
        fields = " ".join(f"{key}={value}" for key, value in context.items())
        return f"[{event}] {fields}" if fields else f"[{event}]"

    def _write_record(self, level: int, event: str, component: str | None, context: dict) -> None:
        if self._sink is None or self._sink.closed:
            return

        record = {
            "timestamp": _now(),
            "level": logging.getLevelName(level),
            "event": event,
            **self._session_context,
            **context,
        }
        if component:
            record["component"] = component

        try:
            self._sink.write(json.dumps(record, default=str) + "\n")
            self._sink.flush()
        except (OSError, TypeError, ValueError) as e:
            # A broken log file must never take playback down with it.
            self._logger.warning(f"JSON event log disabled: {e}")
            self.close()

    def log(self, level: int, event: str, component: str | None = None, **context) -> None:
        if self.enable_console:
            self._logger.log(level, self._console_line(event, context))
        if self.enable_json:
            self._write_record(level, event, component, context)

    def debug(self, event: str, **context) -> None:
        self.log(logging.DEBUG, event, **context)

    def info(self, event: str, **context) -> None:
        self.log(logging.INFO, event, **context)

    def warning(self, event: str, **context) -> None:
        self.log(logging.WARNING, event, **context)

    def error(self, event: str, **context) -> None:
        self.log(logging.ERROR, event, **context)

    def close(self) -> None:
        if self._sink is not None and not self._sink.closed:
            self._sink.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class _Channel:
    """Typed event helpers that tag their records with a component name."""

    component = ""

    def __init__(self, logger: StructuredLogger):
        self.logger = logger

    def _event(self, level: int, event: str, **context) -> None:
        self.logger.log(level, event, component=self.component, **context)


class PipelineLogger(_Channel):
    """Download job and cache events."""

    component = "pipeline"

    def job_started(self, track_id: str, priority: str, attempt: int):
        self._event(
            logging.DEBUG, "job_started", track_id=track_id, priority=priority, attempt=attempt
        )

    def job_retry(self, track_id: str, attempt: int, delay_s: float, error: str):
        self._event(
            logging.WARNING,
            "job_retry",
            track_id=track_id,
            attempt=attempt,
            delay_s=round(delay_s, 2),
            error=error,
        )

    def job_succeeded(self, track_id: str, size_bytes: int, duration_s: float, cached: bool):
        self._event(
            logging.INFO,
            "job_succeeded",
            track_id=track_id,
            size_mb=round(size_bytes / (1024 * 1024), 2),
            duration_s=round(duration_s, 2),
            cached=cached,
        )

    def job_failed(self, track_id: str, error: str, attempts: int, permanent: bool):
        self._event(
            logging.ERROR,
            "job_failed",
            track_id=track_id,
            error=error,
            attempts=attempts,
            permanent=permanent,
        )

    def job_cancelled(self, track_id: str, state: str):
        self._event(logging.DEBUG, "job_cancelled", track_id=track_id, state=state)

    def cache_evicted(self, key: str, size_bytes: int, reason: str):
        self._event(
            logging.DEBUG, "cache_evicted", key=key, size_bytes=size_bytes, reason=reason
        )


class PlaybackLogger(_Channel):
    """Playback engine events."""

    component = "playback"

    def track_loaded(self, track_id: str, duration_ms: int, path: str):
        self._event(
            logging.INFO, "track_loaded", track_id=track_id, duration_ms=duration_ms, path=path
        )

    def track_ended(self, track_id: str, position_ms: int):
        self._event(logging.DEBUG, "track_ended", track_id=track_id, position_ms=position_ms)

    def track_failed(self, track_id: str, error: str):
        self._event(logging.ERROR, "track_failed", track_id=track_id, error=error)


def create_structured_logger(
    log_dir: Path | None = None, enable_json: bool = False
) -> tuple[StructuredLogger, PipelineLogger, PlaybackLogger]:
    """Returns the shared base logger and its pipeline and playback channels."""
    base = StructuredLogger("termtune", log_dir=log_dir, enable_json=enable_json)
    return base, PipelineLogger(base), PlaybackLogger(base)

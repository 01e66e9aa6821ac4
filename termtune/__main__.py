"""
Console entry point: runs the typer app and turns uncaught errors into
suggestion panels with a matching exit code.
"""

import asyncio
import logging
import os
import sys

import typer
from rich.console import Console

from termtune.cli.app import app
from termtune.cli.formatters import format_error_with_suggestions
from termtune.exceptions import (
    CacheWriteError,
    ConfigurationError,
    FetchError,
    PlaybackError,
    TermtuneError,
)

log = logging.getLogger("termtune")

_STAGES: tuple[tuple[type[Exception], str], ...] = (
    (ConfigurationError, "configuration"),
    (FetchError, "download"),
    (CacheWriteError, "cache"),
    (PlaybackError, "playback"),
)


def _use_utf8_stdio() -> None:
    """Track titles are arbitrary unicode; the Windows console default is not."""
    if os.name != "nt":
        return
    for stream in (sys.stdout, sys.stderr):
        try:
            stream.reconfigure(encoding="utf-8")
        except (TypeError, AttributeError):
            pass


def _stage_of(error: Exception) -> dict | None:
    for error_type, stage in _STAGES:
        if isinstance(error, error_type):
            return {"stage": stage}
    return None


def main() -> None:
    """Runs the CLI and maps failures to exit codes."""
    _use_utf8_stdio()
    console = Console(stderr=True)

    try:
        app()
    except (typer.Exit, typer.Abort):
        pass
    except (KeyboardInterrupt, asyncio.CancelledError):
        console.print("\n[yellow]⏹  Stopped. Pending downloads were cancelled.[/yellow]")
        sys.exit(130)
    except TermtuneError as e:
        console.print(format_error_with_suggestions(e, _stage_of(e)))
        sys.exit(1)
    except Exception as e:
        console.print(format_error_with_suggestions(e, {"stage": "unexpected"}))
        log.debug("Unhandled exception", exc_info=True)
        sys.exit(2)


if __name__ == "__main__":
    main()

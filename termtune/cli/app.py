"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import logging
import os
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)

from termtune import __version__
from termtune.core.session import PlayerSession
from termtune.exceptions import PlaybackError, QueueClosed, QueueFull, TermtuneError
from termtune.models.config import PlayerConfig
from termtune.models.job import Job, JobPriority, JobState
from termtune.models.track import Track
from termtune.storage.cache import ContentCache
from termtune.storage.config_manager import ConfigManager
from termtune.utils.formatting import format_volume

from .formatters import print_cache_status, print_config, print_summary_panel
from .player_view import PlayerView

console = Console()

logging.basicConfig(
    level="WARNING",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            show_level=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("termtune")

app = typer.Typer(
    name="termtune",
    help=(
        "A terminal music player that downloads ahead of playback. Use 'termtune"
        " <command> --help' for more info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)
cache_app = typer.Typer(help="Inspect and maintain the content cache.")
app.add_typer(cache_app, name="cache")


def get_config_dir() -> Path:
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / "termtune"


CONFIG_DIR = get_config_dir()
CONFIG_FILE = CONFIG_DIR / "config.ini"
LOG_DIR = CONFIG_DIR / "logs"

# Key sequences as returned by typer.getchar(); arrows differ between
# POSIX terminals and the Windows console.
SEEK_FORWARD_KEYS = {"l", "\x1b[C", "\xe0M", "\x00M"}
SEEK_BACK_KEYS = {"h", "\x1b[D", "\xe0K", "\x00K"}
QUIT_KEYS = {"q", "Q", "\x1b"}


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-vv for debug).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
):
    """termtune: a terminal music player."""
    if version:
        console.print(f"[bold]termtune[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    log_level = "WARNING"
    if verbose >= 2:
        log_level = "DEBUG"
    elif verbose == 1:
        log_level = "INFO"
    logging.getLogger("termtune").setLevel(log_level)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


def _load_config(cli_options: dict | None = None) -> PlayerConfig:
    try:
        return ConfigManager(CONFIG_FILE).load_config(cli_options)
    except TermtuneError as e:
        console.print(f"[red]✗ Configuration is invalid: {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from e


def _open_cache(config: PlayerConfig) -> ContentCache:
    return ContentCache(
        config.resolve_cache_dir(), config.cache_quota_bytes, cleanup_interval=0
    )


def _build_session(config: PlayerConfig) -> PlayerSession:
    return PlayerSession(config, log_dir=LOG_DIR if config.json_log else None)


@app.command()
def init(
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing configuration file."
    ),
):
    """Write a configuration file with the default settings."""
    if (
        CONFIG_FILE.exists()
        and not force
        and not typer.confirm("Configuration file already exists. Overwrite it?")
    ):
        raise typer.Abort()

    ConfigManager(CONFIG_FILE).save_new_config()
    console.print(f"\n[bold green]✓ Configuration saved to '{CONFIG_FILE}'[/bold green]")
    console.print("Ready to play! Try: [cyan]termtune play <FILE or URL>[/cyan]")


@app.command(name="config")
def show_config():
    """Display the configuration in effect."""
    config = _load_config()
    print_config(CONFIG_FILE, config, from_file=CONFIG_FILE.is_file())


async def _handle_key(session: PlayerSession, view: PlayerView, key: str) -> bool:
    """Applies one key press. Returns False when the player should quit."""
    engine = session.engine
    playlist = session.playlist

    if key in QUIT_KEYS:
        return False
    try:
        if key == " ":
            status = await engine.toggle()
            view.notify(status.value.capitalize())
        elif key == "n":
            track = await playlist.next()
            view.notify(f"Next: {track.display_name}" if track else "End of playlist")
        elif key == "p":
            track = await playlist.previous()
            view.notify(
                f"Previous: {track.display_name}" if track else "Start of playlist"
            )
        elif key in ("+", "="):
            view.notify(f"Volume {format_volume(await engine.volume_up())}")
        elif key in ("-", "_"):
            view.notify(f"Volume {format_volume(await engine.volume_down())}")
        elif key in SEEK_FORWARD_KEYS:
            await engine.seek_relative()
        elif key in SEEK_BACK_KEYS:
            await engine.seek_relative(-session.config.seek_seconds * 1000)
        elif key == "s":
            enabled = await playlist.toggle_shuffle()
            view.notify("Shuffle on" if enabled else "Shuffle off")
        elif key == "r":
            index = playlist.playlist.current_index
            if index < 0:
                view.notify("Nothing to remove")
            else:
                removed = await playlist.remove(index)
                view.notify(f"Removed: {removed.display_name}")
    except PlaybackError as e:
        view.notify(str(e))
    return True


@app.command()
def play(
    sources: list[str] = typer.Argument(  # noqa: B008
        ..., help="Local files, file:// or http(s) URLs, or YouTube links."
    ),
    shuffle: bool = typer.Option(False, "--shuffle", "-s", help="Start shuffled."),
    volume: float | None = typer.Option(
        None, "--volume", help="Initial volume between 0.0 and 1.0."
    ),
    output: str | None = typer.Option(
        None, "--output", "-o", help="Audio output backend: 'pcm' or 'mpv'."
    ),
):
    """Play tracks, downloading upcoming ones in the background."""
    config = _load_config({"default_volume": volume, "output_backend": output})

    async def _play_async():
        async with _build_session(config) as session:
            tracks = [session.resolver.track_for(source) for source in sources]
            await session.playlist.add_many(tracks, play=True)
            if shuffle:
                await session.playlist.toggle_shuffle()

            async with PlayerView(session, console) as view:
                while True:
                    try:
                        key = await asyncio.to_thread(typer.getchar)
                    except (KeyboardInterrupt, EOFError):
                        break
                    if not await _handle_key(session, view, key):
                        break

        print_summary_panel(session.stats, title="Session Complete")

    asyncio.run(_play_async())


@app.command()
def fetch(
    sources: list[str] = typer.Argument(  # noqa: B008
        ..., help="Local files, file:// or http(s) URLs, or YouTube links."
    ),
    workers: int | None = typer.Option(
        None, "-w", "--workers", help="Maximum number of simultaneous downloads."
    ),
):
    """Download tracks into the cache without playing them."""
    cli_options = {"max_concurrent_downloads": workers}
    if workers is not None:
        cli_options["worker_count"] = max(workers, PlayerConfig().worker_count)
    config = _load_config(cli_options)

    async def _fetch_async() -> list[Job]:
        failed: list[Job] = []
        async with _build_session(config) as session:
            tracks: list[Track] = [session.resolver.track_for(s) for s in sources]

            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=console,
            ) as progress:
                task_id = progress.add_task("Downloading", total=len(tracks))

                def on_job(job: Job) -> None:
                    if not job.is_terminal:
                        return
                    if job.state == JobState.FAILED:
                        failed.append(job)
                    progress.advance(task_id)

                session.pool.add_listener(on_job)
                for track in tracks:
                    try:
                        job = await session.pool.schedule(
                            track, JobPriority.NOW_PLAYING, block=True
                        )
                    except (QueueFull, QueueClosed) as e:
                        log.warning(f"Could not schedule '{track.display_name}': {e}")
                        progress.advance(task_id)
                        continue
                    if job is None:
                        console.print(f"[dim]○ Already cached: {track.display_name}[/dim]")
                        progress.advance(task_id)
                await session.pool.join()

        for job in failed:
            console.print(f"[red]✗ {job.display_name}: {job.error}[/red]")
        print_summary_panel(session.stats)
        return failed

    if asyncio.run(_fetch_async()):
        raise typer.Exit(code=1)


@cache_app.command("status")
def cache_status():
    """Show cache usage and the most recently used entries."""
    config = _load_config()
    cache = _open_cache(config)
    print_cache_status(cache.usage(), cache.entries(), cache.cache_dir)


@cache_app.command("sweep")
def cache_sweep():
    """Drop broken entries and remove leftover partial downloads."""
    config = _load_config()
    cache = _open_cache(config)
    console.print("[cyan]Sweeping content cache...[/cyan]")
    removed = cache.sweep()
    cache.flush()
    console.print(f"[green]✓ Sweep finished ({removed} broken entries removed).[/green]")


@cache_app.command("clear")
def cache_clear(
    force: bool = typer.Option(
        False, "--force", "-f", help="Bypass the confirmation prompt."
    ),
):
    """Remove every entry from the content cache."""
    if not force and not typer.confirm(
        "Are you sure you want to clear the content cache? "
        "Every track will have to be downloaded again."
    ):
        console.print("[yellow]Operation cancelled.[/yellow]")
        raise typer.Abort()

    config = _load_config()
    cache = _open_cache(config)
    console.print("[cyan]Clearing content cache...[/cyan]")
    removed = cache.clear()
    cache.flush()
    console.print(
        f"[green]✓ Cache cleared successfully ({removed} entries removed).[/green]"
    )

"""
Functions for formatting and displaying data in the console using Rich.
"""

from pathlib import Path

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from termtune.models.cache import CacheEntry, CacheUsage
from termtune.models.config import PlayerConfig
from termtune.models.stats import PipelineStats
from termtune.utils.formatting import (
    format_duration,
    format_percent,
    format_size,
    format_speed,
)


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions_map = {
        "ConfigurationError": [
            "• Check the values in your config.ini.",
            "• Run `termtune init --force` to write a fresh default configuration.",
            "• Run `termtune config` to see the settings in effect.",
        ],
        "PermanentFetchError": [
            "• The source does not exist or is not accessible.",
            "• Check the path or URL for typos.",
            "• For YouTube sources, the video may be private or region locked.",
        ],
        "TransientFetchError": [
            "• A network connection issue occurred.",
            "• The source server might be temporarily unavailable.",
            "• Raise `max_download_retries` or `retry_delay` in the config.",
        ],
        "CircuitOpenError": [
            "• Too many downloads from this host failed and it is cooling down.",
            "• Check your internet connection.",
            "• Reduce `max_concurrent_downloads` if you are being rate-limited.",
        ],
        "QueueFull": [
            "• Too many downloads are waiting.",
            "• Raise `queue_capacity` in the config.",
        ],
        "CacheWriteError": [
            "• The cache directory may be full or read-only.",
            "• Raise `max_cache_size_mb` or run `termtune cache clear`.",
        ],
        "DecodeError": [
            "• The file is corrupt or in a format that cannot be decoded.",
            "• Run `termtune cache sweep` to drop broken entries.",
        ],
        "LoadTimeout": [
            "• The track was not downloaded in time.",
            "• Raise `load_timeout` in the config.",
        ],
        "TimeoutError": [
            "• A download timed out, which may indicate network throttling.",
            "• Raise `download_timeout` in the config.",
        ],
    }

    suggestions = suggestions_map.get(
        error_type, ["• Run the command with -vv for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(Text("\n".join(suggestions)))

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def print_config(config_path: Path, config: PlayerConfig, from_file: bool = True):
    """Displays the configuration in effect."""
    console = Console()
    content = ""
    for key in sorted(PlayerConfig.get_ini_keys()):
        value = getattr(config, key)
        if key == "cache_dir" and not value:
            value = f"{config.resolve_cache_dir()} [dim](default)[/dim]"
        content += f"{key} = {value}\n"

    source = f"[dim]{config_path}[/dim]" if from_file else "[dim]defaults[/dim]"
    console.print(
        Panel(content.strip(), title=f"Configuration ({source})", border_style="cyan")
    )


def print_cache_status(usage: CacheUsage, entries: list[CacheEntry], cache_dir: Path):
    """Displays cache usage and the most recently used entries."""
    console = Console()

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()
    table.add_row("Location:", f"[dim]{cache_dir}[/dim]")
    table.add_row(
        "Used:",
        f"{format_size(usage.used_bytes)} / {format_size(usage.quota_bytes)} "
        f"[dim]({format_percent(usage.used_bytes, usage.quota_bytes)})[/dim]",
    )
    table.add_row("Free:", f"[green]{format_size(usage.free_bytes)}[/green]")
    table.add_row("Entries:", str(usage.entry_count))
    console.print(Panel(table, title="[bold]Content Cache[/bold]", border_style="cyan"))

    if not entries:
        console.print("[dim]The cache is empty.[/dim]")
        return

    recent = Table(title="Most Recently Used", box=box.ROUNDED)
    recent.add_column("Key", style="cyan")
    recent.add_column("Size", justify="right", style="green")
    for entry in reversed(entries[-10:]):
        recent.add_row(entry.key, format_size(entry.size_bytes))
    console.print(recent)


def print_summary_panel(stats: PipelineStats, title: str = "Fetch Complete!"):
    """Displays a final summary of a download or playback session."""
    console = Console()
    duration_s = stats.elapsed_seconds

    stats_table = Table(show_header=False, box=None, padding=(0, 2))
    stats_table.add_column(style="bold cyan", justify="right", width=20)
    stats_table.add_column(style="white", justify="left")

    stats_table.add_row(
        "✓ Downloaded:", f"[bold green]{stats.jobs_succeeded}[/bold green]"
    )
    if stats.jobs_cancelled > 0:
        stats_table.add_row("○ Cancelled:", f"[yellow]{stats.jobs_cancelled}[/yellow]")
    if stats.jobs_failed > 0:
        stats_table.add_row("✗ Failed:", f"[bold red]{stats.jobs_failed}[/bold red]")
    if stats.retries > 0:
        stats_table.add_row("↻ Retries:", f"[yellow]{stats.retries}[/yellow]")
    if stats.cache_write_failures > 0:
        stats_table.add_row(
            "⚠ Not Cached:", f"[yellow]{stats.cache_write_failures}[/yellow]"
        )

    stats_table.add_row("", "")

    stats_table.add_row(
        "Total Size:", f"[cyan]{format_size(stats.bytes_downloaded)}[/cyan]"
    )
    stats_table.add_row(
        "Avg. Speed:", f"[magenta]{format_speed(stats.avg_speed_bps)}[/magenta]"
    )
    stats_table.add_row("Time Elapsed:", f"[blue]{format_duration(duration_s)}[/blue]")
    stats_table.add_row(
        "Peak Concurrent:", f"[green]{stats.peak_running}[/green]"
    )

    lookups = stats.cache_hits + stats.cache_misses
    if lookups:
        stats_table.add_row("", "")
        stats_table.add_row(
            "Cache Hit Rate:",
            f"[green]{format_percent(stats.cache_hits, lookups)}[/green] "
            f"[dim]({stats.cache_hits}/{lookups})[/dim]",
        )
    if stats.evictions > 0:
        stats_table.add_row("Evictions:", f"[yellow]{stats.evictions}[/yellow]")

    border_color = "green" if stats.jobs_failed == 0 else "yellow"

    console.print()
    console.print(
        Panel(
            stats_table,
            title=f"🎵 [bold]{title}[/bold]",
            border_style=border_color,
            box=box.DOUBLE,
            expand=False,
            padding=(1, 2),
        )
    )
    console.print()


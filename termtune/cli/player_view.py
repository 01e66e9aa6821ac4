"""
A Rich Live now-playing view: current track and position, the playlist with
each track's download status, and pipeline activity.
"""

import asyncio
import logging
from contextlib import suppress

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.table import Table
from rich.text import Text

from termtune.core.session import PlayerSession
from termtune.models.playback import PlaybackStatus
from termtune.models.track import DownloadStatus
from termtune.utils.formatting import (
    format_clock,
    format_duration,
    format_size,
    format_volume,
)

log = logging.getLogger(__name__)

STATUS_STYLES = {
    PlaybackStatus.IDLE: ("■", "dim"),
    PlaybackStatus.LOADING: ("…", "yellow"),
    PlaybackStatus.PLAYING: ("▶", "green"),
    PlaybackStatus.PAUSED: ("⏸", "cyan"),
    PlaybackStatus.SEEKING: ("⇄", "magenta"),
    PlaybackStatus.STOPPED: ("■", "red"),
}

DOWNLOAD_STYLES = {
    DownloadStatus.NOT_DOWNLOADED: ("·", "dim"),
    DownloadStatus.DOWNLOADING: ("↓", "yellow"),
    DownloadStatus.DOWNLOADED: ("✓", "green"),
    DownloadStatus.FAILED: ("✗", "red"),
}

KEY_HELP = (
    "[bold]space[/] play/pause  [bold]n[/]/[bold]p[/] next/prev  "
    "[bold]+[/]/[bold]-[/] volume  [bold]←[/]/[bold]→[/] seek  "
    "[bold]s[/] shuffle  [bold]r[/] remove  [bold]q[/] quit"
)


class PlayerView:
    """Renders a running player session until the context exits."""

    REFRESH_INTERVAL = 0.2

    def __init__(self, session: PlayerSession, console: Console):
        self.session = session
        self.console = console
        self.message = ""
        self._live: Live | None = None
        self._layout: Layout | None = None
        self._refresher: asyncio.Task | None = None

    def notify(self, message: str) -> None:
        """Shows a one-line message in the footer until the next one."""
        self.message = message
        self._update_display()

    def _create_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="now_playing", size=6),
            Layout(name="playlist", ratio=1),
            Layout(name="footer", size=4),
        )
        return layout

    def _generate_header(self) -> Panel:
        stats = self.session.stats
        header_text = Text()
        header_text.append("🎵 termtune ", style="bold cyan")
        header_text.append("│ ", style="dim")
        header_text.append(
            f"Session: {format_duration(stats.elapsed_seconds)}", style="yellow"
        )
        running = self.session.pool.running_count
        if running:
            header_text.append(" │ ", style="dim")
            header_text.append(f"↓ {running} downloading", style="magenta")
        if self.session.playlist.playlist.shuffle_enabled:
            header_text.append(" │ ", style="dim")
            header_text.append("🔀 shuffle", style="green")
        return Panel(header_text, border_style="cyan")

    def _generate_now_playing(self) -> Panel:
        state = self.session.engine.snapshot()
        track = self.session.playlist.current
        icon, style = STATUS_STYLES[state.status]

        grid = Table.grid(padding=(0, 1), expand=True)
        grid.add_column(width=2)
        grid.add_column(ratio=1)
        grid.add_column(justify="right")

        title = track.display_name if track else "Nothing queued"
        grid.add_row(
            Text(icon, style=style),
            Text(title, style="bold", overflow="ellipsis", no_wrap=True),
            Text(state.status.value, style=style),
        )
        grid.add_row(
            "",
            ProgressBar(total=1.0, completed=state.progress, complete_style=style),
            Text(
                f"{format_clock(state.position_ms)} / "
                f"{format_clock(state.duration_ms)}",
                style="dim",
            ),
        )
        grid.add_row("", Text(f"Volume {format_volume(state.volume)}", style="cyan"), "")
        return Panel(grid, title="[bold]Now Playing[/bold]", border_style="green")

    def _generate_playlist_panel(self) -> Panel:
        manager = self.session.playlist
        tracks = manager.tracks
        if not tracks:
            return Panel(
                Text("The playlist is empty.", style="dim italic", justify="center"),
                title="[bold]Playlist[/bold]",
                border_style="blue",
            )

        current = manager.playlist.current_index
        # Keep the current track in view on long playlists.
        visible = max(1, self.console.height - 17)
        start = max(0, min(current - visible // 3, len(tracks) - visible))

        table = Table.grid(padding=(0, 1), expand=True)
        table.add_column(justify="right", style="dim", width=4)
        table.add_column(width=1)
        table.add_column(ratio=1)
        for index in range(start, min(len(tracks), start + visible)):
            track = tracks[index]
            icon, style = DOWNLOAD_STYLES[manager.status_of(track.track_id)]
            name = Text(track.display_name, overflow="ellipsis", no_wrap=True)
            if index == current:
                name.stylize("bold green")
            table.add_row(str(index + 1), Text(icon, style=style), name)

        return Panel(
            table,
            title=f"[bold]Playlist ({len(tracks)})[/bold]",
            border_style="blue",
        )

    def _generate_footer(self) -> Panel:
        usage = self.session.cache.usage()
        footer = Table.grid(expand=True)
        footer.add_row(Text.from_markup(KEY_HELP))
        status = Text(self.message, style="yellow")
        status.append(
            f"  cache {format_size(usage.used_bytes)}/{format_size(usage.quota_bytes)}",
            style="dim",
        )
        footer.add_row(status)
        return Panel(footer, border_style="dim")

    def _update_display(self):
        if not self._layout:
            return
        self._layout["header"].update(self._generate_header())
        self._layout["now_playing"].update(self._generate_now_playing())
        self._layout["playlist"].update(self._generate_playlist_panel())
        self._layout["footer"].update(self._generate_footer())

    async def _refresh_loop(self):
        while True:
            try:
                self._update_display()
            except Exception:
                log.debug("Failed to render the player view.", exc_info=True)
            await asyncio.sleep(self.REFRESH_INTERVAL)

    async def __aenter__(self):
        self._layout = self._create_layout()
        self._update_display()
        self._live = Live(
            self._layout,
            console=self.console,
            refresh_per_second=8,
            screen=True,
        )
        self._live.start()
        self._refresher = asyncio.create_task(self._refresh_loop(), name="player-view")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._refresher:
            self._refresher.cancel()
            with suppress(asyncio.CancelledError):
                await self._refresher
        if self._live:
            self._live.stop()

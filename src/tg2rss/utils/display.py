"""
Rich Terminal Display Components.

Provides console UI for:
- Progress bar over channels during a one-shot sync
- Summary reports
- Status messages
"""

from __future__ import annotations

from typing import Any

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table


console = Console()


class ProgressDisplay:
    """
    Rich terminal UI for sync progress.

    Example:
        display = ProgressDisplay()
        display.start(feed_dir="feeds")

        display.update(channels_total=5, channels_done=2, entries_added=7)

        display.stop()
    """

    def __init__(self) -> None:
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(bar_width=40),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=console,
        )
        self._live: Live | None = None
        self._task_id: Any = None
        self._stats: dict[str, Any] = {}

    def start(self, feed_dir: str) -> None:
        """Start the progress display."""
        self._stats = {
            "feed_dir": feed_dir,
            "entries_added": 0,
            "channels_failed": 0,
        }
        self._task_id = self.progress.add_task("[cyan]SYNC", total=None)
        self._live = Live(
            self._build_display(),
            console=console,
            refresh_per_second=4,
        )
        self._live.start()

    def stop(self) -> None:
        """Stop the progress display."""
        if self._live:
            self._live.stop()
            self._live = None

    def update(
        self,
        channels_total: int | None = None,
        channels_done: int | None = None,
        channels_failed: int | None = None,
        entries_added: int | None = None,
    ) -> None:
        """Update progress display."""
        if self._task_id is not None:
            if channels_total is not None:
                self.progress.update(self._task_id, total=channels_total)
            if channels_done is not None:
                self.progress.update(self._task_id, completed=channels_done)

        if channels_failed is not None:
            self._stats["channels_failed"] = channels_failed
        if entries_added is not None:
            self._stats["entries_added"] = entries_added

        if self._live:
            self._live.update(self._build_display())

    def _build_display(self) -> Panel:
        info_table = Table.grid(padding=(0, 2))
        info_table.add_column(style="dim")
        info_table.add_column()
        info_table.add_row("Feeds:", self._stats.get("feed_dir", ""))

        stats_table = Table.grid(padding=(0, 3))
        stats_table.add_column(justify="center")
        stats_table.add_column(justify="center")
        stats_table.add_row(
            f"[green]New entries:[/green] {self._stats.get('entries_added', 0):,}",
            f"[red]Failed:[/red] {self._stats.get('channels_failed', 0):,}",
        )

        return Panel(
            Group(info_table, self.progress, stats_table),
            title="[bold white]tg2rss - Sync[/bold white]",
            border_style="blue",
            padding=(1, 2),
        )

    def __enter__(self) -> "ProgressDisplay":
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()


def print_summary(stats: dict[str, Any]) -> None:
    """Print a summary table after sync completion."""
    table = Table(title="Sync Summary", border_style="green")

    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Duration", f"{stats.get('duration', 0):.1f}s")
    table.add_row(
        "Channels",
        f"{stats.get('channels_processed', 0)}/{stats.get('channels_total', 0)}",
    )
    table.add_row("Channels Failed", f"{stats.get('channels_failed', 0):,}")
    table.add_row("New Entries", f"{stats.get('entries_added', 0):,}")

    console.print(table)


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[red bold]Error:[/red bold] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green bold]✓[/green bold] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow bold]⚠[/yellow bold] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[blue]ℹ[/blue] {message}")

"""
tg2rss CLI - Command Line Interface.

Mirror Telegram channels into RSS feeds.

Commands:
    serve   Run the periodic sync and serve feeds over HTTP
    sync    Run a single sync pass and exit
    add     Start tracking a channel
    status  Show the cursor of every known channel
    feeds   List feed files
    config  Manage configuration
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from tg2rss import __version__
from tg2rss.config import Settings, load_settings
from tg2rss.core.engine import SyncStats
from tg2rss.core.store import JsonCursorStore
from tg2rss.errors import SourceFetchError, StoreReadError
from tg2rss.feeds.document import list_feeds, parse_feed
from tg2rss.service import open_engine, serve as run_service
from tg2rss.utils.display import (
    ProgressDisplay,
    print_error,
    print_info,
    print_success,
    print_summary,
    print_warning,
)
from tg2rss.utils.logger import setup_logging


# Create the Typer app
app = typer.Typer(
    name="tg2rss",
    help="Mirror Telegram channels into RSS feeds.",
    add_completion=True,
    rich_markup_mode="rich",
)

console = Console()

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to config file.",
    exists=True,
    dir_okay=False,
)
FeedDirOption = typer.Option(
    None,
    "--feed-dir",
    "-f",
    help="Directory for feed files (overrides config).",
)
ChannelOption = typer.Option(
    None,
    "--channel",
    help="Channel username to mirror (can be repeated).",
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold cyan]tg2rss[/bold cyan] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """tg2rss - Mirror Telegram channels into RSS feeds."""
    pass


# =============================================================================
# SERVE Command
# =============================================================================
@app.command()
def serve(
    config_file: Optional[Path] = ConfigOption,
    feed_dir: Optional[Path] = FeedDirOption,
    channels: Optional[list[str]] = ChannelOption,
    host: Optional[str] = typer.Option(None, "--host", help="Bind address."),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port."),
    interval: Optional[int] = typer.Option(
        None,
        "--interval",
        "-i",
        help="Seconds between sync passes.",
    ),
) -> None:
    """
    Sync channels periodically and serve the feeds over HTTP.

    Example:
        tg2rss serve --channel durov --port 8080
    """
    settings = _load_or_exit(
        config_file,
        feed_dir=feed_dir,
        channels=channels,
        host=host,
        port=port,
        interval=interval,
    )
    _setup_logging(settings)

    for problem in settings.validate_paths():
        print_warning(problem)

    try:
        asyncio.run(run_service(settings))
    except KeyboardInterrupt:
        print_info("Interrupted")


# =============================================================================
# SYNC Command
# =============================================================================
@app.command()
def sync(
    config_file: Optional[Path] = ConfigOption,
    feed_dir: Optional[Path] = FeedDirOption,
    channels: Optional[list[str]] = ChannelOption,
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Minimal output.",
    ),
) -> None:
    """
    Run one sync pass over every channel and exit.

    Example:
        tg2rss sync --channel durov --feed-dir ./feeds
    """
    settings = _load_or_exit(config_file, feed_dir=feed_dir, channels=channels)
    _setup_logging(settings, quiet=quiet)

    problems = settings.validate_paths()
    if problems:
        for problem in problems:
            print_error(problem)
        raise typer.Exit(1)

    display = ProgressDisplay() if not quiet else None

    def on_progress(stats: SyncStats) -> None:
        if display:
            display.update(
                channels_total=stats.channels_total,
                channels_done=stats.channels_processed + stats.channels_failed,
                channels_failed=stats.channels_failed,
                entries_added=stats.entries_added,
            )

    async def run() -> SyncStats:
        async with open_engine(settings) as engine:
            return await engine.sync_all(on_progress=on_progress)

    try:
        if display:
            display.start(feed_dir=str(settings.feed_dir))
        stats = asyncio.run(run())
    finally:
        if display:
            display.stop()

    if not quiet:
        console.print()
        print_summary({
            "duration": stats.duration_seconds,
            "channels_total": stats.channels_total,
            "channels_processed": stats.channels_processed,
            "channels_failed": stats.channels_failed,
            "entries_added": stats.entries_added,
        })

    if stats.errors:
        console.print()
        print_warning(f"{len(stats.errors)} errors occurred:")
        for err in stats.errors[:10]:
            print_error(f"  • {err}")
        if len(stats.errors) > 10:
            print_info(f"  ... and {len(stats.errors) - 10} more")
        raise typer.Exit(1)

    print_success("Sync completed successfully!")


# =============================================================================
# ADD Command
# =============================================================================
@app.command()
def add(
    username: str = typer.Argument(..., help="Channel username, @name or t.me link."),
    config_file: Optional[Path] = ConfigOption,
    feed_dir: Optional[Path] = FeedDirOption,
) -> None:
    """
    Start tracking a channel; its feed appears after the next sync.

    Example:
        tg2rss add @durov
    """
    settings = _load_or_exit(config_file, feed_dir=feed_dir)
    _setup_logging(settings, quiet=True)

    async def run() -> bool:
        async with open_engine(settings) as engine:
            return await engine.add_channel(username)

    try:
        added = asyncio.run(run())
    except SourceFetchError as e:
        print_error(str(e))
        raise typer.Exit(1)

    if not added:
        print_error(f"Channel not found: {username}")
        raise typer.Exit(1)
    print_success(f"Tracking {username}")


# =============================================================================
# STATUS Command
# =============================================================================
@app.command()
def status(
    config_file: Optional[Path] = ConfigOption,
    cursor_file: Optional[Path] = typer.Option(
        None,
        "--cursor-file",
        help="Path to cursor store (overrides config).",
    ),
) -> None:
    """Show the sync cursor of every known channel."""
    settings = _load_or_exit(config_file)
    store = JsonCursorStore(cursor_file or settings.sync.cursor_file)

    try:
        records = store.items()
    except StoreReadError as e:
        print_error(str(e))
        raise typer.Exit(1)

    if not records:
        print_info("No sync state found. Run a sync first.")
        raise typer.Exit(0)

    table = Table(title="Channel Status", border_style="blue")
    table.add_column("Channel", style="cyan")
    table.add_column("Last Message", justify="right")
    table.add_column("Feed File")

    for key, info in records:
        table.add_row(key, str(info.last_processed_message_id), info.feed_file_name)

    console.print(table)


# =============================================================================
# FEEDS Command
# =============================================================================
@app.command()
def feeds(
    config_file: Optional[Path] = ConfigOption,
    feed_dir: Optional[Path] = FeedDirOption,
) -> None:
    """List feed files and their entry counts."""
    settings = _load_or_exit(config_file, feed_dir=feed_dir)
    names = list_feeds(settings.feed_dir)

    if not names:
        print_info(f"No feeds in {settings.feed_dir}")
        raise typer.Exit(0)

    table = Table(title="Feeds", border_style="green")
    table.add_column("File", style="cyan")
    table.add_column("Title")
    table.add_column("Entries", justify="right")

    for name in names:
        try:
            document = parse_feed((settings.feed_dir / name).read_bytes())
        except (OSError, ValueError) as e:
            table.add_row(name, f"[red]unreadable: {e}[/red]", "-")
            continue
        table.add_row(name, document.title, str(len(document)))

    console.print(table)


# =============================================================================
# CONFIG Command
# =============================================================================
@app.command()
def config(
    show: bool = typer.Option(
        False,
        "--show",
        help="Show current configuration.",
    ),
    init: bool = typer.Option(
        False,
        "--init",
        help="Write a config file with default values.",
    ),
    output: Path = typer.Option(
        Path("config.toml"),
        "--output",
        "-o",
        help="Output path for config file.",
    ),
) -> None:
    """Manage configuration."""
    if init:
        if output.exists():
            print_error(f"Refusing to overwrite {output}")
            raise typer.Exit(1)
        Settings().to_file(output)
        print_success(f"Generated config file: {output}")
        return

    if show:
        settings = _load_or_exit(None)
        table = Table(title="Current Configuration", border_style="cyan")
        table.add_column("Setting", style="cyan")
        table.add_column("Value")

        channels = ", ".join(settings.source.channels)
        table.add_row("Feed Directory", str(settings.feed_dir))
        table.add_row("Cursor File", str(settings.sync.cursor_file))
        table.add_row("Channels", channels or "[dim]not set[/dim]")
        table.add_row("Subscriptions File", str(settings.source.subscriptions_file))
        table.add_row("Batch Limit", f"{settings.sync.batch_limit} messages")
        table.add_row("Interval", f"{settings.sync.interval_seconds}s")
        table.add_row("Listen", f"{settings.server.host}:{settings.server.port}")

        console.print(table)
        return

    # Default: show help
    console.print("Use --show to view config or --init to create config file.")


# =============================================================================
# Helper Functions
# =============================================================================
def _load_or_exit(config_file: Path | None, **overrides: Any) -> Settings:
    try:
        return _build_settings(config_file, **overrides)
    except (ValidationError, ValueError) as e:
        print_error(str(e))
        raise typer.Exit(1)


def _build_settings(
    config_file: Path | None = None,
    **overrides: Any,
) -> Settings:
    """Build settings from config file and CLI overrides."""
    settings = load_settings(config_file)

    data = settings.model_dump()
    if overrides.get("feed_dir"):
        data["feed_dir"] = overrides["feed_dir"]
    if overrides.get("channels"):
        data["source"]["channels"] = [*settings.source.channels, *overrides["channels"]]
    if overrides.get("host"):
        data["server"]["host"] = overrides["host"]
    if overrides.get("port"):
        data["server"]["port"] = overrides["port"]
    if overrides.get("interval"):
        data["sync"]["interval_seconds"] = overrides["interval"]

    # Re-validate so overrides go through the same checks as config values
    return Settings.model_validate(data)


def _setup_logging(settings: Settings, quiet: bool = False) -> None:
    setup_logging(
        level="WARNING" if quiet else settings.logging.level,
        log_file=settings.logging.file,
        format_style=settings.logging.format,
        max_file_size_mb=settings.logging.max_file_size_mb,
        backup_count=settings.logging.backup_count,
    )


if __name__ == "__main__":
    app()

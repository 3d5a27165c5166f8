"""
Exception taxonomy for tg2rss.

Every failure that can abort a channel's sync pass maps to one of these
types. The sync engine wraps them in ChannelSyncError so the caller knows
which channel failed and can move on to the next one.
"""

from __future__ import annotations

from pathlib import Path


class Tg2RssError(Exception):
    """Base exception for tg2rss errors."""


class ConfigError(Tg2RssError, ValueError):
    """Raised when a config file cannot be understood."""


class SourceFetchError(Tg2RssError):
    """Raised when the channel source cannot deliver channels or messages."""

    def __init__(
        self,
        message: str,
        channel: str | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.channel = channel
        self.status = status


class StoreError(Tg2RssError):
    """Base exception for cursor store failures."""


class StoreReadError(StoreError):
    """Cursor store could not be read. "Not found" is never this error."""


class StoreWriteError(StoreError):
    """Cursor store could not be written or flushed."""


class DocumentPersistError(Tg2RssError):
    """Feed document could not be written and renamed into place."""

    def __init__(self, message: str, path: Path | str | None = None) -> None:
        super().__init__(message)
        self.path = Path(path) if path is not None else None


class ChannelSyncError(Tg2RssError):
    """A single channel's sync pass failed; its cursor was left unchanged."""

    def __init__(self, channel_key: str, cause: BaseException) -> None:
        super().__init__(f"Sync failed for channel {channel_key}: {cause}")
        self.channel_key = channel_key
        self.cause = cause

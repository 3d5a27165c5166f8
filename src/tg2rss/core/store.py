"""
Cursor Store - Durable per-channel sync state.

Provides persistent tracking of:
- The last message id mirrored into each channel's feed
- The feed file assigned to each channel

Records live in a single JSON document keyed by the string form of the
channel id. Writes land in memory first and reach disk on flush(); an
unflushed update lost in a crash is safe because the next pass re-fetches
the same window.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from tg2rss.errors import StoreReadError, StoreWriteError
from tg2rss.utils.logger import get_logger

log = get_logger(__name__)


@dataclass
class ChannelInfo:
    """Sync state for a single channel."""

    last_processed_message_id: int = 0
    feed_file_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "last_processed_message_id": self.last_processed_message_id,
            "rss_feed_file_name": self.feed_file_name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChannelInfo":
        """Create from dictionary."""
        last_id = data.get("last_processed_message_id", 0)
        file_name = data.get("rss_feed_file_name", data.get("feed_file_name", ""))
        if isinstance(last_id, bool) or not isinstance(last_id, int):
            raise ValueError(f"last_processed_message_id must be an integer: {last_id!r}")
        if not isinstance(file_name, str) or not file_name:
            raise ValueError(f"feed file name must be a non-empty string: {file_name!r}")
        return cls(last_processed_message_id=last_id, feed_file_name=file_name)


class CursorStore(Protocol):
    """Capability interface for cursor persistence."""

    def get(self, key: str) -> ChannelInfo | None:
        """Return the stored info, or None when the channel was never synced."""
        ...

    def put(self, key: str, info: ChannelInfo) -> None:
        """Record new info for a channel."""
        ...

    def flush(self) -> None:
        """Make every put so far durable."""
        ...

    def items(self) -> list[tuple[str, ChannelInfo]]:
        """All known channels, sorted by key."""
        ...


class InMemoryCursorStore:
    """
    Cursor store that never touches disk.

    Used for dry runs and as a test double.
    """

    def __init__(self, initial: dict[str, ChannelInfo] | None = None) -> None:
        self._data: dict[str, ChannelInfo] = dict(initial or {})
        self.flush_count = 0

    def get(self, key: str) -> ChannelInfo | None:
        info = self._data.get(key)
        return ChannelInfo(**vars(info)) if info else None

    def put(self, key: str, info: ChannelInfo) -> None:
        self._data[key] = ChannelInfo(**vars(info))

    def flush(self) -> None:
        self.flush_count += 1

    def items(self) -> list[tuple[str, ChannelInfo]]:
        return [(key, self._data[key]) for key in sorted(self._data)]


class JsonCursorStore:
    """
    JSON document backed cursor store.

    Example:
        store = JsonCursorStore(Path("db.json"))

        info = store.get("durov") or ChannelInfo(feed_file_name="durov.xml")
        info.last_processed_message_id = 42
        store.put("durov", info)

        # Persist
        store.flush()
    """

    def __init__(self, path: Path | str) -> None:
        """
        Initialize cursor store.

        Args:
            path: Path to the JSON document
        """
        self.path = Path(path)
        self._lock = threading.Lock()
        self._data: dict[str, Any] | None = None
        self._dirty = False

    def _load(self) -> dict[str, Any]:
        """Read the document from disk once. Missing file means empty store."""
        if self._data is not None:
            return self._data

        if not self.path.exists():
            self._data = {}
            return self._data

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise StoreReadError(f"Corrupted cursor store {self.path}: {e}") from e
        except OSError as e:
            raise StoreReadError(f"Could not read cursor store {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise StoreReadError(f"Cursor store {self.path} is not a JSON object")

        self._data = data
        log.debug("Loaded %d channel records from %s", len(data), self.path)
        return self._data

    def get(self, key: str) -> ChannelInfo | None:
        with self._lock:
            record = self._load().get(key)
        if record is None:
            return None

        try:
            return ChannelInfo.from_dict(record)
        except (TypeError, ValueError, AttributeError) as e:
            raise StoreReadError(f"Invalid record for channel {key}: {e}") from e

    def put(self, key: str, info: ChannelInfo) -> None:
        with self._lock:
            self._load()[key] = info.to_dict()
            self._dirty = True

    def flush(self) -> None:
        """Write the document atomically (temp file + rename)."""
        with self._lock:
            if not self._dirty or self._data is None:
                return
            payload = json.dumps(self._data, indent=2, sort_keys=True)
            self._write_atomic(payload)
            self._dirty = False

    def _write_atomic(self, payload: str) -> None:
        directory = self.path.parent
        tmp_name: str | None = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=directory
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as e:
            raise StoreWriteError(f"Could not write cursor store {self.path}: {e}") from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    log.warning("Could not remove temporary file %s", tmp_name)

    def items(self) -> list[tuple[str, ChannelInfo]]:
        with self._lock:
            data = dict(self._load())
        result = []
        for key in sorted(data):
            try:
                result.append((key, ChannelInfo.from_dict(data[key])))
            except (TypeError, ValueError, AttributeError) as e:
                raise StoreReadError(f"Invalid record for channel {key}: {e}") from e
        return result

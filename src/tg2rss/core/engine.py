"""
Sync Engine - Incremental channel to feed synchronization.

For every channel the engine runs one bounded pass:
1. Observe the newest message id (the head)
2. Work out how many messages are new, capped at the batch limit
3. Convert them to feed entries and prepend them to the feed
4. Persist the feed atomically
5. Only then advance and flush the channel's cursor

A failure anywhere before step 5 leaves the cursor where it was, so the
next pass fetches the same window again.

Catch-up is deliberately bounded: when more than `batch_limit` messages
are pending, only the newest `batch_limit` are mirrored and the cursor
still jumps to the head. Older pending messages are skipped for good.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from tg2rss.config import BATCH_LIMIT, Settings, normalize_username
from tg2rss.core.store import ChannelInfo, CursorStore
from tg2rss.errors import ChannelSyncError, SourceFetchError
from tg2rss.feeds import document as feeds
from tg2rss.feeds.document import FeedEntry, FeedMetadata
from tg2rss.sources.base import Channel, ChannelSource, Message
from tg2rss.utils.logger import get_logger

log = get_logger(__name__)


@dataclass
class SyncBatch:
    """What a single channel pass decided to mirror."""

    observed_head_id: int
    quota: int
    messages: list[Message] = field(default_factory=list)


@dataclass
class SyncStats:
    """Statistics for a sync pass over all channels."""

    channels_total: int = 0
    channels_processed: int = 0
    channels_failed: int = 0
    entries_added: int = 0
    start_time: float = 0.0
    end_time: float = 0.0
    errors: list[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        """Duration in seconds."""
        if self.end_time and self.start_time:
            return self.end_time - self.start_time
        if self.start_time:
            return time.time() - self.start_time
        return 0.0

    @property
    def success(self) -> bool:
        return not self.errors


# Progress callback type
ProgressCallback = Callable[[SyncStats], None]


def compute_quota(head_id: int, last_processed_id: int, batch_limit: int = BATCH_LIMIT) -> int:
    """
    Number of messages to mirror this pass.

    `head_id - last_processed_id` can go negative if upstream numbering was
    reset; that mirrors nothing.
    """
    pending = head_id - last_processed_id
    return max(0, min(pending, batch_limit))


def to_entry(channel: Channel, message: Message) -> FeedEntry:
    """Convert an upstream message into a feed entry."""
    link = channel.message_link(message.id)
    return FeedEntry(
        title=str(message.id),
        description=feeds.clean_text(message.text),
        link=link,
        guid=link,
    )


class SyncEngine:
    """
    Drives incremental synchronization of every subscribed channel.

    Example:
        engine = SyncEngine(source, store, feed_dir=Path("feeds"))

        # One pass over all channels
        stats = await engine.sync_all()

        # Or a single channel
        added = await engine.sync_channel(channel)
    """

    def __init__(
        self,
        source: ChannelSource,
        store: CursorStore,
        feed_dir: Path | str,
        batch_limit: int = BATCH_LIMIT,
        channel_timeout: float | None = None,
    ) -> None:
        """
        Initialize sync engine.

        Args:
            source: Where channels and messages come from
            store: Cursor store
            feed_dir: Directory holding the feed files
            batch_limit: Maximum messages mirrored per channel per pass
            channel_timeout: Time budget for one channel (None = unlimited)
        """
        self.source = source
        self.store = store
        self.feed_dir = Path(feed_dir)
        self.batch_limit = batch_limit
        self.channel_timeout = channel_timeout

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        source: ChannelSource,
        store: CursorStore,
    ) -> "SyncEngine":
        return cls(
            source=source,
            store=store,
            feed_dir=settings.feed_dir,
            batch_limit=settings.sync.batch_limit,
            channel_timeout=settings.sync.channel_timeout_seconds,
        )

    def feed_path(self, info: ChannelInfo) -> Path:
        return self.feed_dir / info.feed_file_name

    async def sync_all(self, on_progress: ProgressCallback | None = None) -> SyncStats:
        """
        Run one pass over every subscribed channel.

        A failing channel is logged and recorded; the pass carries on with
        the remaining channels.
        """
        stats = SyncStats()
        stats.start_time = time.time()
        log.info("Starting RSS feeds update")

        try:
            channels = await self.source.list_channels()
        except SourceFetchError as e:
            log.error("Could not list channels: %s", e)
            stats.errors.append(f"list channels: {e}")
            stats.end_time = time.time()
            return stats
        except Exception as e:
            log.exception("Unexpected error while listing channels")
            stats.errors.append(f"list channels: {e}")
            stats.end_time = time.time()
            return stats

        stats.channels_total = len(channels)
        if on_progress:
            on_progress(stats)

        self.feed_dir.mkdir(parents=True, exist_ok=True)

        for channel in channels:
            try:
                added = await self._sync_with_budget(channel)
            except ChannelSyncError as e:
                stats.channels_failed += 1
                stats.errors.append(str(e))
                log.error("%s", e)
            except Exception as e:
                stats.channels_failed += 1
                stats.errors.append(f"Sync failed for channel {channel.key}: {e}")
                log.exception("Unexpected error while syncing %s", channel.key)
            else:
                stats.channels_processed += 1
                stats.entries_added += added

            if on_progress:
                on_progress(stats)

        stats.end_time = time.time()
        log.info(
            "RSS feeds update finished. Processed %d channels with %d new messages",
            stats.channels_processed,
            stats.entries_added,
        )
        return stats

    async def _sync_with_budget(self, channel: Channel) -> int:
        if self.channel_timeout is None:
            return await self.sync_channel(channel)
        try:
            return await asyncio.wait_for(self.sync_channel(channel), self.channel_timeout)
        except asyncio.TimeoutError as e:
            raise ChannelSyncError(
                channel.key,
                TimeoutError(f"no result within {self.channel_timeout:g}s"),
            ) from e

    async def sync_channel(self, channel: Channel) -> int:
        """
        Mirror new messages of one channel into its feed.

        Returns:
            Number of entries added

        Raises:
            ChannelSyncError: If any step failed; the cursor is unchanged
        """
        log.debug("Starting processing of [%s]", channel.title)
        try:
            return await self._sync_channel(channel)
        except ChannelSyncError:
            raise
        except Exception as e:
            raise ChannelSyncError(channel.key, e) from e

    async def _sync_channel(self, channel: Channel) -> int:
        info = self.store.get(channel.key)
        if info is None:
            info = ChannelInfo(
                last_processed_message_id=0,
                feed_file_name=channel.feed_file_name,
            )

        batch = await self.fetch_batch(channel, info.last_processed_message_id)
        if batch is None:
            log.debug("There are no messages in %s", channel.username)
            return 0

        if batch.observed_head_id == info.last_processed_message_id:
            log.debug("No new messages in %s", channel.username)
            return 0

        entries = [to_entry(channel, message) for message in batch.messages]
        # File IO and fsync stay off the event loop that serves the feeds
        await asyncio.to_thread(self._commit, channel, info, entries, batch.observed_head_id)

        log.info("%s: %d new entries", channel.username, len(entries))
        return len(entries)

    def _commit(
        self,
        channel: Channel,
        info: ChannelInfo,
        entries: list[FeedEntry],
        head_id: int,
    ) -> None:
        """Write the feed, then advance and flush the cursor."""
        if entries:
            path = self.feed_path(info)
            document = feeds.open_or_create(
                path,
                FeedMetadata(title=channel.title, link=channel.link),
            )
            feeds.persist(feeds.merge(document, entries), path)

        # Re-baselines the cursor when upstream numbering went backwards
        info.last_processed_message_id = head_id
        self.store.put(channel.key, info)
        self.store.flush()

    async def fetch_batch(self, channel: Channel, last_processed_id: int) -> SyncBatch | None:
        """
        Pull the bounded set of new messages from the source.

        The head and the batch come from one newest-first iteration, so a
        message arriving mid-pass cannot slip in ahead of the observed head.

        Returns:
            The batch, or None if the channel has no messages at all
        """
        async with aclosing(self.source.iter_messages(channel)) as messages:
            head = await anext(messages, None)
            if head is None:
                return None

            quota = compute_quota(head.id, last_processed_id, self.batch_limit)
            batch = SyncBatch(observed_head_id=head.id, quota=quota)
            pending = head.id - last_processed_id

            if pending < 0:
                log.warning(
                    "%s: head id %d is behind cursor %d, upstream numbering changed",
                    channel.username,
                    head.id,
                    last_processed_id,
                )
            elif pending > self.batch_limit:
                log.warning(
                    "%s: %d messages pending, mirroring the newest %d and skipping %d",
                    channel.username,
                    pending,
                    self.batch_limit,
                    pending - self.batch_limit,
                )
            log.debug("%d messages will be processed", quota)

            if quota == 0:
                return batch

            batch.messages.append(head)
            while len(batch.messages) < quota:
                message = await anext(messages, None)
                # Deleted messages leave gaps, so the quota can reach past the cursor
                if message is None or message.id <= last_processed_id:
                    break
                batch.messages.append(message)

        return batch

    async def add_channel(self, username: str) -> bool:
        """
        Start tracking a channel.

        Returns:
            True if the channel is (now) tracked, False if it does not exist
        """
        username = normalize_username(username)
        log.info("Adding new channel: %s", username)

        feed_path = self.feed_dir / f"{username}.xml"
        if feed_path.exists():
            if feed_path.is_file():
                log.info("Feed already exists for %s", username)
                return True
            log.warning("Not a file for feed %s", username)
            return False

        channel = await self.source.resolve_channel(username)
        if channel is None:
            log.error("Channel %s not found", username)
            return False

        await self.source.subscribe(channel)
        log.info("Successfully subscribed to %s", username)
        return True

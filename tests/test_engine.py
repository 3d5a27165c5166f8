"""Tests for the incremental sync engine."""

import threading
from pathlib import Path

import pytest

from tg2rss.core.engine import SyncEngine, compute_quota
from tg2rss.core.store import ChannelInfo, InMemoryCursorStore
from tg2rss.errors import ChannelSyncError, DocumentPersistError, StoreReadError
from tg2rss.feeds import document as feeds
from tg2rss.feeds.document import FeedEntry, FeedMetadata
from tg2rss.sources.base import Message

from conftest import FakeSource


def feed_titles(path: Path) -> list[str]:
    return [entry.title for entry in feeds.parse_feed(path.read_bytes()).entries]


class TestComputeQuota:
    """Test the per-pass message quota."""

    @pytest.mark.parametrize(
        ("head", "last", "expected"),
        [
            (5, 0, 5),
            (30, 20, 10),
            (45, 20, 10),
            (20, 20, 0),
            (5, 100, 0),
        ],
    )
    def test_quota(self, head: int, last: int, expected: int) -> None:
        assert compute_quota(head, last, batch_limit=10) == expected


class TestSyncChannel:
    """Test a single channel pass."""

    @pytest.mark.asyncio
    async def test_first_sync_creates_feed(
        self,
        engine: SyncEngine,
        source: FakeSource,
        store: InMemoryCursorStore,
        feed_dir: Path,
    ) -> None:
        """Fresh channel with messages [5, 4, 3] and no feed file."""
        channel = source.add("durov", [3, 4, 5], title="Durov's Channel")

        added = await engine.sync_channel(channel)

        assert added == 3
        document = feeds.parse_feed((feed_dir / "durov.xml").read_bytes())
        assert [e.title for e in document.entries] == ["5", "4", "3"]
        assert document.title == "Durov's Channel"
        assert document.link == "https://t.me/durov"
        assert document.entries[0].link == "https://t.me/durov/5"
        assert document.entries[0].description == "message 5"
        assert store.get("durov") == ChannelInfo(5, "durov.xml")

    @pytest.mark.asyncio
    async def test_new_entries_prepended(
        self,
        engine: SyncEngine,
        source: FakeSource,
        store: InMemoryCursorStore,
        feed_dir: Path,
    ) -> None:
        """Entries from H > L land ahead of the existing ones."""
        channel = source.add("durov", list(range(1, 21)))
        await engine.sync_channel(channel)
        assert store.get("durov").last_processed_message_id == 20

        source.post(channel, 21, 22, 23, 24, 25)
        added = await engine.sync_channel(channel)

        assert added == 5
        titles = feed_titles(feed_dir / "durov.xml")
        assert titles[:7] == ["25", "24", "23", "22", "21", "20", "19"]
        assert len(titles) == 15
        assert store.get("durov").last_processed_message_id == 25

    @pytest.mark.asyncio
    async def test_second_pass_without_news_is_noop(
        self,
        engine: SyncEngine,
        source: FakeSource,
        store: InMemoryCursorStore,
        feed_dir: Path,
    ) -> None:
        channel = source.add("durov", [1, 2, 3])
        assert await engine.sync_channel(channel) == 3
        before = (feed_dir / "durov.xml").read_bytes()
        flushes = store.flush_count

        assert await engine.sync_channel(channel) == 0

        assert (feed_dir / "durov.xml").read_bytes() == before
        assert store.get("durov").last_processed_message_id == 3
        assert store.flush_count == flushes

    @pytest.mark.asyncio
    async def test_head_equal_to_cursor_is_noop(
        self,
        engine: SyncEngine,
        source: FakeSource,
        store: InMemoryCursorStore,
        feed_dir: Path,
    ) -> None:
        channel = source.add("durov", [7, 8, 9])
        store.put("durov", ChannelInfo(9, "durov.xml"))

        assert await engine.sync_channel(channel) == 0

        assert not (feed_dir / "durov.xml").exists()
        assert store.get("durov").last_processed_message_id == 9

    @pytest.mark.asyncio
    async def test_bounded_catch_up(
        self,
        engine: SyncEngine,
        source: FakeSource,
        store: InMemoryCursorStore,
        feed_dir: Path,
    ) -> None:
        """25 pending messages: the newest 10 are mirrored, the cursor jumps to H."""
        channel = source.add("durov", list(range(1, 31)))
        store.put("durov", ChannelInfo(5, "durov.xml"))

        added = await engine.sync_channel(channel)

        assert added == 10
        assert feed_titles(feed_dir / "durov.xml") == [str(i) for i in range(30, 20, -1)]
        assert store.get("durov").last_processed_message_id == 30

    @pytest.mark.asyncio
    async def test_fewer_messages_than_quota(
        self,
        engine: SyncEngine,
        source: FakeSource,
        store: InMemoryCursorStore,
        feed_dir: Path,
    ) -> None:
        """Gaps in numbering just yield fewer entries."""
        channel = source.add("durov", [2, 9])

        assert await engine.sync_channel(channel) == 2
        assert feed_titles(feed_dir / "durov.xml") == ["9", "2"]
        assert store.get("durov").last_processed_message_id == 9

    @pytest.mark.asyncio
    async def test_gap_does_not_refetch_processed(
        self,
        engine: SyncEngine,
        source: FakeSource,
        store: InMemoryCursorStore,
        feed_dir: Path,
    ) -> None:
        """Messages 6-8 were deleted: quota is 4 but only 9 is new."""
        channel = source.add("durov", [3, 4, 5, 9])
        store.put("durov", ChannelInfo(5, "durov.xml"))

        assert await engine.sync_channel(channel) == 1
        assert feed_titles(feed_dir / "durov.xml") == ["9"]
        assert store.get("durov").last_processed_message_id == 9

    @pytest.mark.asyncio
    async def test_control_characters_keep_history(
        self,
        engine: SyncEngine,
        source: FakeSource,
        store: InMemoryCursorStore,
        feed_dir: Path,
    ) -> None:
        """A form feed in one message must not make the next pass drop the feed."""
        channel = source.add("durov", [1, 2, 3])
        await engine.sync_channel(channel)

        source.messages["durov"].insert(0, Message(id=4, text="form\x0cfeed"))
        assert await engine.sync_channel(channel) == 1

        source.post(channel, 5)
        assert await engine.sync_channel(channel) == 1

        path = feed_dir / "durov.xml"
        assert feed_titles(path) == ["5", "4", "3", "2", "1"]
        assert feeds.parse_feed(path.read_bytes()).entries[1].description == "formfeed"
        assert store.get("durov").last_processed_message_id == 5

    @pytest.mark.asyncio
    async def test_commit_runs_off_the_event_loop(
        self,
        engine: SyncEngine,
        source: FakeSource,
        feed_dir: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        channel = source.add("durov", [1, 2])
        real_persist = feeds.persist
        threads: list[int] = []

        def recording_persist(document: feeds.FeedDocument, path: Path) -> None:
            threads.append(threading.get_ident())
            real_persist(document, path)

        monkeypatch.setattr(feeds, "persist", recording_persist)

        assert await engine.sync_channel(channel) == 2
        assert len(threads) == 1
        assert threads[0] != threading.get_ident()
        assert feed_titles(feed_dir / "durov.xml") == ["2", "1"]

    @pytest.mark.asyncio
    async def test_empty_channel(
        self,
        engine: SyncEngine,
        source: FakeSource,
        store: InMemoryCursorStore,
        feed_dir: Path,
    ) -> None:
        channel = source.add("durov", [])

        assert await engine.sync_channel(channel) == 0
        assert store.get("durov") is None
        assert not (feed_dir / "durov.xml").exists()

    @pytest.mark.asyncio
    async def test_numbering_reset_rebaselines_cursor(
        self,
        engine: SyncEngine,
        source: FakeSource,
        store: InMemoryCursorStore,
        feed_dir: Path,
    ) -> None:
        channel = source.add("durov", [3, 4, 5])
        store.put("durov", ChannelInfo(100, "durov.xml"))

        assert await engine.sync_channel(channel) == 0

        assert not (feed_dir / "durov.xml").exists()
        assert store.get("durov").last_processed_message_id == 5

    @pytest.mark.asyncio
    async def test_metadata_not_rederived(
        self,
        engine: SyncEngine,
        source: FakeSource,
        feed_dir: Path,
    ) -> None:
        feeds.persist(
            feeds.FeedDocument(
                title="Old title",
                link="https://t.me/durov",
                description="kept",
                entries=[FeedEntry("1", "first", "https://t.me/durov/1")],
            ),
            feed_dir / "durov.xml",
        )
        channel = source.add("durov", [1, 2], title="New title")

        await engine.sync_channel(channel)

        document = feeds.parse_feed((feed_dir / "durov.xml").read_bytes())
        assert document.title == "Old title"
        assert document.description == "kept"

    @pytest.mark.asyncio
    async def test_uses_stored_feed_file_name(
        self,
        engine: SyncEngine,
        source: FakeSource,
        store: InMemoryCursorStore,
        feed_dir: Path,
    ) -> None:
        channel = source.add("durov", [1])
        store.put("durov", ChannelInfo(0, "legacy-name.xml"))

        await engine.sync_channel(channel)

        assert (feed_dir / "legacy-name.xml").exists()
        assert not (feed_dir / "durov.xml").exists()


class TestFailureHandling:
    """Cursor must stay put whenever a pass fails."""

    @pytest.mark.asyncio
    async def test_persist_failure_keeps_cursor(
        self,
        engine: SyncEngine,
        source: FakeSource,
        store: InMemoryCursorStore,
        feed_dir: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        channel = source.add("durov", [1, 2, 3])
        store.put("durov", ChannelInfo(1, "durov.xml"))

        def broken_persist(document: feeds.FeedDocument, path: Path) -> None:
            raise DocumentPersistError("disk full", path)

        monkeypatch.setattr(feeds, "persist", broken_persist)

        with pytest.raises(ChannelSyncError) as exc_info:
            await engine.sync_channel(channel)

        assert isinstance(exc_info.value.cause, DocumentPersistError)
        assert exc_info.value.channel_key == "durov"
        assert store.get("durov").last_processed_message_id == 1

        # Once the disk recovers, the same window is fetched again
        monkeypatch.undo()
        assert await engine.sync_channel(channel) == 2
        assert feed_titles(feed_dir / "durov.xml") == ["3", "2"]

    @pytest.mark.asyncio
    async def test_source_failure_keeps_cursor(
        self,
        engine: SyncEngine,
        source: FakeSource,
        store: InMemoryCursorStore,
    ) -> None:
        channel = source.add("durov", [1, 2, 3])
        source.failing.add("durov")

        with pytest.raises(ChannelSyncError):
            await engine.sync_channel(channel)

        assert store.get("durov") is None

    @pytest.mark.asyncio
    async def test_store_read_failure_aborts(
        self,
        source: FakeSource,
        feed_dir: Path,
    ) -> None:
        class BrokenStore(InMemoryCursorStore):
            def get(self, key: str) -> ChannelInfo | None:
                raise StoreReadError("corrupted")

        engine = SyncEngine(source, BrokenStore(), feed_dir)
        channel = source.add("durov", [1])

        with pytest.raises(ChannelSyncError):
            await engine.sync_channel(channel)

        assert not (feed_dir / "durov.xml").exists()

    @pytest.mark.asyncio
    async def test_unexpected_error_is_wrapped(
        self,
        engine: SyncEngine,
        source: FakeSource,
        store: InMemoryCursorStore,
        feed_dir: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        channel = source.add("durov", [1, 2, 3])
        store.put("durov", ChannelInfo(1, "durov.xml"))

        def broken_open(path: Path, metadata: FeedMetadata) -> feeds.FeedDocument:
            raise ValueError("unexpected")

        monkeypatch.setattr(feeds, "open_or_create", broken_open)

        with pytest.raises(ChannelSyncError) as exc_info:
            await engine.sync_channel(channel)

        assert isinstance(exc_info.value.cause, ValueError)
        assert store.get("durov").last_processed_message_id == 1
        assert not (feed_dir / "durov.xml").exists()


class TestSyncAll:
    """Test passes over every channel."""

    @pytest.mark.asyncio
    async def test_failures_are_isolated(
        self,
        engine: SyncEngine,
        source: FakeSource,
        store: InMemoryCursorStore,
    ) -> None:
        source.add("broken", [1, 2])
        source.add("durov", [1, 2, 3])
        source.failing.add("broken")

        stats = await engine.sync_all()

        assert stats.channels_total == 2
        assert stats.channels_processed == 1
        assert stats.channels_failed == 1
        assert stats.entries_added == 3
        assert not stats.success
        assert "broken" in stats.errors[0]
        assert store.get("broken") is None
        assert store.get("durov").last_processed_message_id == 3

    @pytest.mark.asyncio
    async def test_listing_failure_reported(
        self,
        engine: SyncEngine,
        source: FakeSource,
    ) -> None:
        source.fail_listing = True

        stats = await engine.sync_all()

        assert stats.channels_total == 0
        assert len(stats.errors) == 1

    @pytest.mark.asyncio
    async def test_unexpected_listing_failure_reported(
        self,
        engine: SyncEngine,
        source: FakeSource,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        async def broken_listing() -> list:
            raise ValueError("bad Retry-After")

        monkeypatch.setattr(source, "list_channels", broken_listing)

        stats = await engine.sync_all()

        assert stats.channels_total == 0
        assert stats.errors == ["list channels: bad Retry-After"]

    @pytest.mark.asyncio
    async def test_stalled_channel_times_out(
        self,
        source: FakeSource,
        store: InMemoryCursorStore,
        feed_dir: Path,
    ) -> None:
        engine = SyncEngine(source, store, feed_dir, channel_timeout=0.05)
        source.add("stuck", [1])
        source.add("durov", [1, 2])
        source.stalling.add("stuck")

        stats = await engine.sync_all()

        assert stats.channels_failed == 1
        assert stats.channels_processed == 1
        assert "stuck" in stats.errors[0]
        assert store.get("stuck") is None

    @pytest.mark.asyncio
    async def test_progress_callback(
        self,
        engine: SyncEngine,
        source: FakeSource,
    ) -> None:
        source.add("durov", [1])
        source.add("telegram", [1, 2])
        seen: list[int] = []

        stats = await engine.sync_all(on_progress=lambda s: seen.append(s.channels_processed))

        assert seen == [0, 1, 2]
        assert stats.success
        assert stats.duration_seconds >= 0


class TestAddChannel:
    """Test on-demand channel tracking."""

    @pytest.mark.asyncio
    async def test_subscribes_known_channel(
        self,
        engine: SyncEngine,
        source: FakeSource,
    ) -> None:
        channel = source.add("durov", [1])
        source.channels.clear()

        assert await engine.add_channel("@durov") is True
        assert source.subscribed == ["durov"]
        assert channel.key in source.channels

    @pytest.mark.asyncio
    async def test_unknown_channel(self, engine: SyncEngine, source: FakeSource) -> None:
        assert await engine.add_channel("nosuchchannel") is False
        assert source.subscribed == []

    @pytest.mark.asyncio
    async def test_existing_feed_skips_lookup(
        self,
        engine: SyncEngine,
        source: FakeSource,
        feed_dir: Path,
    ) -> None:
        feeds.persist(
            feeds.FeedDocument.create(FeedMetadata("t", "https://t.me/durov")),
            feed_dir / "durov.xml",
        )

        assert await engine.add_channel("durov") is True
        assert source.subscribed == []

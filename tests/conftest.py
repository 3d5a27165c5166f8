"""Shared fixtures: an in-memory channel source and a wired sync engine."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, AsyncIterator

import pytest

from tg2rss.core.engine import SyncEngine
from tg2rss.core.store import InMemoryCursorStore
from tg2rss.errors import SourceFetchError
from tg2rss.sources.base import Channel, Message


class FakeSource:
    """ChannelSource double holding messages in memory, newest first."""

    def __init__(self) -> None:
        self.channels: dict[str, Channel] = {}
        self.messages: dict[str, list[Message]] = {}
        self.known: dict[str, Channel] = {}
        self.failing: set[str] = set()
        self.stalling: set[str] = set()
        self.fail_listing = False
        self.subscribed: list[str] = []
        self.closed = False

    def add(self, username: str, ids: list[int], title: str | None = None) -> Channel:
        """Register a subscribed channel whose messages have `ids` (any order)."""
        channel = Channel(
            id=username.lower(),
            username=username,
            title=title or f"{username} channel",
        )
        self.channels[channel.key] = channel
        self.known[channel.key] = channel
        self.messages[channel.key] = []
        self.post(channel, *ids)
        return channel

    def post(self, channel: Channel, *ids: int) -> None:
        """Publish messages; the list is kept newest first."""
        current = self.messages.setdefault(channel.key, [])
        current.extend(Message(id=i, text=f"message {i}") for i in ids)
        current.sort(key=lambda m: m.id, reverse=True)

    async def list_channels(self) -> list[Channel]:
        if self.fail_listing:
            raise SourceFetchError("listing failed")
        return list(self.channels.values())

    async def iter_messages(
        self, channel: Channel, limit: int | None = None
    ) -> AsyncIterator[Message]:
        if channel.key in self.failing:
            raise SourceFetchError("upstream unavailable", channel=channel.username)
        if channel.key in self.stalling:
            await asyncio.sleep(3600)
        for index, message in enumerate(self.messages.get(channel.key, [])):
            if limit is not None and index >= limit:
                return
            yield message

    async def resolve_channel(self, username: str) -> Channel | None:
        return self.known.get(username.lower())

    async def subscribe(self, channel: Channel) -> None:
        self.subscribed.append(channel.username)
        self.channels[channel.key] = channel

    async def aclose(self) -> None:
        self.closed = True

    async def __aenter__(self) -> "FakeSource":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def store() -> InMemoryCursorStore:
    return InMemoryCursorStore()


@pytest.fixture
def feed_dir(tmp_path: Path) -> Path:
    path = tmp_path / "feeds"
    path.mkdir()
    return path


@pytest.fixture
def engine(source: FakeSource, store: InMemoryCursorStore, feed_dir: Path) -> SyncEngine:
    return SyncEngine(source, store, feed_dir, batch_limit=10)

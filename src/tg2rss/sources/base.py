"""Channel source interface shared by the sync engine and its test doubles."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Protocol


@dataclass(frozen=True)
class Channel:
    """A channel being mirrored into a feed."""

    id: str
    username: str
    title: str
    description: str = ""

    @property
    def key(self) -> str:
        """Cursor store key for this channel."""
        return str(self.id)

    @property
    def link(self) -> str:
        return f"https://t.me/{self.username}"

    @property
    def feed_file_name(self) -> str:
        return f"{self.username}.xml"

    def message_link(self, message_id: int) -> str:
        """Permalink of a message in this channel."""
        return f"https://t.me/{self.username}/{message_id}"


@dataclass(frozen=True)
class Message:
    """A single upstream message."""

    id: int
    text: str


class ChannelSource(Protocol):
    """
    Where channels and their messages come from.

    Implementations raise SourceFetchError for any failure talking to the
    upstream service.
    """

    async def list_channels(self) -> list[Channel]:
        """Channels currently subscribed to."""
        ...

    def iter_messages(
        self, channel: Channel, limit: int | None = None
    ) -> AsyncIterator[Message]:
        """Messages of `channel`, newest first, at most `limit` of them."""
        ...

    async def resolve_channel(self, username: str) -> Channel | None:
        """Look up a channel by username. None if it does not exist."""
        ...

    async def subscribe(self, channel: Channel) -> None:
        """Start tracking `channel` so list_channels() includes it."""
        ...

    async def aclose(self) -> None:
        ...

    async def __aenter__(self) -> Any:
        ...

    async def __aexit__(self, *args: Any) -> None:
        ...

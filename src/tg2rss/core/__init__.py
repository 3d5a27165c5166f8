"""Core sync components for tg2rss."""

from tg2rss.core.dispatcher import AddChannel, Command, Dispatcher, SyncAllChannels
from tg2rss.core.engine import SyncEngine, SyncStats
from tg2rss.core.store import ChannelInfo, CursorStore, InMemoryCursorStore, JsonCursorStore

__all__ = [
    "AddChannel",
    "ChannelInfo",
    "Command",
    "CursorStore",
    "Dispatcher",
    "InMemoryCursorStore",
    "JsonCursorStore",
    "SyncAllChannels",
    "SyncEngine",
    "SyncStats",
]

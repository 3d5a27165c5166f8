"""Channel sources for tg2rss."""

from tg2rss.sources.base import Channel, ChannelSource, Message
from tg2rss.sources.telegram_web import TelegramWebSource

__all__ = ["Channel", "ChannelSource", "Message", "TelegramWebSource"]

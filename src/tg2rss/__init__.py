"""tg2rss - Mirror Telegram channels into RSS feeds."""

__version__ = "1.0.0"
__author__ = "tg2rss Contributors"

from tg2rss.config import BATCH_LIMIT, Settings

__all__ = ["BATCH_LIMIT", "Settings", "__version__"]

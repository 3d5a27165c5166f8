"""RSS feed documents."""

from tg2rss.feeds.document import FeedDocument, FeedEntry, FeedMetadata

__all__ = ["FeedDocument", "FeedEntry", "FeedMetadata"]

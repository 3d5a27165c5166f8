"""HTTP read surface."""

from tg2rss.web.app import create_app

__all__ = ["create_app"]

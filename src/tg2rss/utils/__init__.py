"""Utility modules for tg2rss."""

from tg2rss.utils.logger import setup_logging, get_logger
from tg2rss.utils.display import ProgressDisplay

__all__ = ["setup_logging", "get_logger", "ProgressDisplay"]

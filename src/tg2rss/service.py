"""
Service runner.

Wires the channel source, cursor store, sync engine and dispatcher
together and runs them next to the HTTP server on one event loop.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

import uvicorn

from tg2rss.config import Settings
from tg2rss.core.dispatcher import Dispatcher
from tg2rss.core.engine import SyncEngine
from tg2rss.core.store import CursorStore, JsonCursorStore
from tg2rss.sources.base import ChannelSource
from tg2rss.sources.telegram_web import TelegramWebSource
from tg2rss.utils.logger import get_logger
from tg2rss.web.app import create_app

log = get_logger(__name__)


@asynccontextmanager
async def open_engine(
    settings: Settings,
    source: ChannelSource | None = None,
    store: CursorStore | None = None,
) -> AsyncIterator[SyncEngine]:
    """Build a sync engine from settings and close its source afterwards."""
    settings.feed_dir.mkdir(parents=True, exist_ok=True)
    source = source if source is not None else TelegramWebSource(settings.source)
    store = store if store is not None else JsonCursorStore(settings.sync.cursor_file)
    try:
        yield SyncEngine.from_settings(settings, source, store)
    finally:
        await source.aclose()


async def serve(settings: Settings) -> None:
    """Run the sync worker, the periodic timer and the HTTP server until stopped."""
    log.info("Serving RSS feeds from %s", settings.feed_dir.resolve())

    async with open_engine(settings) as engine:
        dispatcher = Dispatcher(engine, capacity=settings.sync.queue_capacity)
        app = create_app(settings, dispatcher)
        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=settings.server.host,
                port=settings.server.port,
                log_config=None,
                access_log=settings.logging.access_log,
            )
        )

        worker = asyncio.create_task(dispatcher.supervise(), name="sync-worker")
        timer = asyncio.create_task(
            dispatcher.run_timer(settings.sync.interval_seconds), name="sync-timer"
        )
        try:
            await server.serve()
        finally:
            for task in (timer, worker):
                task.cancel()
            await asyncio.gather(timer, worker, return_exceptions=True)
            log.info("Stopped")

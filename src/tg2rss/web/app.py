"""
FastAPI application serving the mirrored feeds.

Routes:
    GET  /rss/{name}   feed file as application/xml
    GET  /feeds        list of available feeds
    POST /channels     queue a channel to be tracked
    GET  /health       liveness check

Feed files are only ever replaced atomically by the sync engine, so reads
can run concurrently with a sync pass.
"""

from __future__ import annotations

from pathlib import Path

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field, field_validator

from tg2rss import __version__
from tg2rss.config import Settings, is_valid_username, normalize_username
from tg2rss.core.dispatcher import AddChannel, Dispatcher
from tg2rss.feeds.document import list_feeds
from tg2rss.utils.logger import get_logger

log = get_logger(__name__)

XML_MEDIA_TYPE = "application/xml"


class FeedInfo(BaseModel):
    """A feed available for download."""

    name: str
    url: str


class FeedList(BaseModel):
    feeds: list[FeedInfo]


class AddChannelRequest(BaseModel):
    """Body of POST /channels."""

    username: str = Field(..., description="Channel username, @name or t.me link")

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        name = normalize_username(v)
        if not is_valid_username(name):
            raise ValueError(f"Invalid channel username: {v!r}")
        return name


class AddChannelResponse(BaseModel):
    username: str
    queued: bool


def _resolve_feed(feed_dir: Path, name: str) -> Path:
    """Map a requested file name to a path inside feed_dir, or 404."""
    if "/" in name or "\\" in name or name.startswith(".") or not name.endswith(".xml"):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Feed not found")
    path = feed_dir / name
    if not path.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Feed not found")
    return path


def create_app(settings: Settings, dispatcher: Dispatcher | None = None) -> FastAPI:
    """
    Build the HTTP application.

    Args:
        settings: Application settings
        dispatcher: Dispatcher receiving add-channel requests (None disables them)
    """
    app = FastAPI(
        title="tg2rss",
        description="RSS feeds mirrored from Telegram channels",
        version=__version__,
    )
    feed_dir = Path(settings.feed_dir)
    prefix = settings.server.feed_prefix.rstrip("/")

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get(prefix + "/{name}", response_class=FileResponse)
    async def get_feed(name: str) -> FileResponse:
        path = _resolve_feed(feed_dir, name)
        return FileResponse(path, media_type=XML_MEDIA_TYPE)

    @app.get("/feeds", response_model=FeedList)
    async def get_feeds(request: Request) -> FeedList:
        base = str(request.base_url).rstrip("/")
        return FeedList(
            feeds=[
                FeedInfo(name=name, url=f"{base}{prefix}/{name}")
                for name in list_feeds(feed_dir)
            ]
        )

    @app.post(
        "/channels",
        response_model=AddChannelResponse,
        status_code=status.HTTP_202_ACCEPTED,
    )
    async def add_channel(body: AddChannelRequest) -> AddChannelResponse:
        if dispatcher is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Channel tracking is not enabled",
            )
        if not dispatcher.submit(AddChannel(body.username)):
            log.warning("Rejected add request for %s: queue full", body.username)
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Sync queue is full, try again later",
            )
        return AddChannelResponse(username=body.username, queued=True)

    return app

"""
Telegram Web Preview Source.

Reads public channels through the web preview at https://t.me/s/<username>:
- Channel metadata from the page header
- Messages newest first, paging backwards with ?before=<id>
- Rate limiting and retry logic for transient failures
- Subscriptions persisted to a small JSON file
"""

from __future__ import annotations

import asyncio
import json
import math
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any, AsyncIterator

import httpx
from bs4 import BeautifulSoup, Tag

from tg2rss.config import SourceConfig, is_valid_username, normalize_username
from tg2rss.errors import SourceFetchError
from tg2rss.sources.base import Channel, Message
from tg2rss.utils.logger import get_logger

log = get_logger(__name__)

# Wait used when a 429 carries no usable Retry-After
DEFAULT_RETRY_AFTER = 60.0


def parse_retry_after(value: str | None, limit: float, default: float = DEFAULT_RETRY_AFTER) -> float:
    """
    Seconds to wait according to a Retry-After header, at most `limit`.

    The header is either delay-seconds or an HTTP date. Anything
    unparsable falls back to `default`.
    """
    delay = default
    if value is not None:
        value = value.strip()
        try:
            delay = float(value)
            if math.isnan(delay):
                delay = default
        except ValueError:
            try:
                when = parsedate_to_datetime(value)
            except (TypeError, ValueError):
                log.debug("Unparsable Retry-After %r", value)
            else:
                if when.tzinfo is None:
                    when = when.replace(tzinfo=timezone.utc)
                delay = (when - datetime.now(timezone.utc)).total_seconds()
    return min(max(delay, 0.0), limit)


def parse_channel(html: str, username: str) -> Channel | None:
    """Extract channel metadata from a preview page. None if it is not a channel."""
    soup = BeautifulSoup(html, "html.parser")
    info = soup.select_one("div.tgme_channel_info")
    if info is None:
        return None

    title_el = info.select_one("div.tgme_channel_info_header_title")
    title = title_el.get_text(strip=True) if title_el else ""
    if not title:
        og_title = soup.find("meta", attrs={"property": "og:title"})
        title = og_title.get("content", "") if isinstance(og_title, Tag) else ""

    description_el = info.select_one("div.tgme_channel_info_description")
    description = _message_text(description_el) if description_el else ""

    return Channel(
        id=username.lower(),
        username=username,
        title=title or username,
        description=description.strip(),
    )


def _message_text(element: Tag) -> str:
    for br in element.find_all("br"):
        br.replace_with("\n")
    return element.get_text()


def parse_messages(html: str) -> list[Message]:
    """Extract messages from a preview page, newest first."""
    soup = BeautifulSoup(html, "html.parser")
    messages: dict[int, Message] = {}

    for post in soup.select("div.tgme_widget_message[data-post]"):
        data_post = str(post.get("data-post", ""))
        _, _, raw_id = data_post.rpartition("/")
        try:
            message_id = int(raw_id)
        except ValueError:
            log.debug("Skipping post with unexpected id %r", data_post)
            continue

        text_el = post.select_one("div.tgme_widget_message_text.js-message_text")
        if text_el is None:
            text_el = post.select_one("div.tgme_widget_message_text")
        text = _message_text(text_el) if text_el is not None else ""
        messages[message_id] = Message(id=message_id, text=text.strip())

    return [messages[k] for k in sorted(messages, reverse=True)]


class TelegramWebSource:
    """
    Channel source backed by the public Telegram web preview.

    Example:
        async with TelegramWebSource(settings.source) as source:
            for channel in await source.list_channels():
                async for message in source.iter_messages(channel, limit=10):
                    print(message.id, message.text)
    """

    def __init__(
        self,
        config: SourceConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the source.

        Args:
            config: Source configuration
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._channels: dict[str, Channel] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers={"User-Agent": self.config.user_agent},
                timeout=httpx.Timeout(self.config.request_timeout_seconds),
                follow_redirects=False,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "TelegramWebSource":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def _fetch_page(
        self,
        username: str,
        before: int | None = None,
    ) -> str | None:
        """
        Fetch a preview page with retry logic.

        Handles:
        - Rate limiting (429) honouring Retry-After
        - Transient transport errors with linear backoff

        Returns:
            Page HTML, or None when the preview redirects away (no such channel)
        """
        client = await self._get_client()
        params = {"before": str(before)} if before is not None else None
        max_retries = self.config.max_retries
        retry_delay = 1.0

        for attempt in range(max_retries):
            try:
                response = await client.get(f"/s/{username}", params=params)
            except httpx.TransportError as e:
                if attempt < max_retries - 1:
                    await asyncio.sleep(retry_delay * (attempt + 1))
                    continue
                raise SourceFetchError(f"Connection error: {e}", channel=username) from e

            if response.status_code == 429:
                retry_after = parse_retry_after(
                    response.headers.get("Retry-After"),
                    self.config.max_retry_after_seconds,
                )
                if attempt < max_retries - 1:
                    log.warning("Rate limited on %s, retrying in %.0fs", username, retry_after)
                    await asyncio.sleep(retry_after)
                    continue
                raise SourceFetchError(
                    f"Rate limit exceeded. Retry after {retry_after:g}s",
                    channel=username,
                    status=429,
                )

            if response.is_redirect or response.status_code == 404:
                return None

            if response.status_code >= 400:
                raise SourceFetchError(
                    f"Unexpected HTTP {response.status_code} for {username}",
                    channel=username,
                    status=response.status_code,
                )

            return response.text

        raise SourceFetchError("Max retries exceeded", channel=username)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def _load_subscriptions(self) -> list[str]:
        path = self.config.subscriptions_file
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            log.error("Could not read subscriptions file %s: %s", path, e)
            return []
        if not isinstance(data, list):
            log.error("Subscriptions file %s is not a JSON list", path)
            return []
        return [str(name) for name in data]

    def _save_subscriptions(self, usernames: list[str]) -> None:
        path = Path(self.config.subscriptions_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(usernames, indent=2), encoding="utf-8")

    def subscribed_usernames(self) -> list[str]:
        """Configured channels followed by runtime subscriptions, deduplicated."""
        names: list[str] = []
        seen: set[str] = set()
        for raw in [*self.config.channels, *self._load_subscriptions()]:
            name = normalize_username(raw)
            if not is_valid_username(name):
                log.warning("Ignoring invalid channel username %r", raw)
                continue
            if name.lower() not in seen:
                seen.add(name.lower())
                names.append(name)
        return names

    # =========================================================================
    # ChannelSource interface
    # =========================================================================

    async def list_channels(self) -> list[Channel]:
        """
        Resolve every subscribed channel.

        Channels that cannot be resolved right now are skipped for this pass
        and retried on the next one.
        """
        channels = []
        for username in self.subscribed_usernames():
            try:
                channel = await self.resolve_channel(username)
            except SourceFetchError as e:
                log.error("Could not resolve channel %s: %s", username, e)
                continue
            if channel is None:
                log.warning("Channel %s not found, skipping", username)
                continue
            channels.append(channel)
        return channels

    async def resolve_channel(self, username: str) -> Channel | None:
        username = normalize_username(username)
        if not is_valid_username(username):
            return None

        cached = self._channels.get(username.lower())
        if cached is not None:
            return cached

        html = await self._fetch_page(username)
        if html is None:
            return None

        channel = parse_channel(html, username)
        if channel is not None:
            self._channels[channel.key] = channel
        return channel

    async def subscribe(self, channel: Channel) -> None:
        current = self._load_subscriptions()
        if channel.username.lower() in {n.lower() for n in current}:
            return
        try:
            self._save_subscriptions([*current, channel.username])
        except OSError as e:
            raise SourceFetchError(
                f"Could not save subscription: {e}", channel=channel.username
            ) from e
        log.info("Subscribed to %s", channel.username)

    async def iter_messages(
        self,
        channel: Channel,
        limit: int | None = None,
    ) -> AsyncIterator[Message]:
        """Yield messages newest first, paging backwards until `limit` is reached."""
        if limit is not None and limit <= 0:
            return

        yielded = 0
        before: int | None = None
        while True:
            html = await self._fetch_page(channel.username, before=before)
            if html is None:
                raise SourceFetchError(
                    f"Channel {channel.username} is not available",
                    channel=channel.username,
                )

            page = parse_messages(html)
            if before is not None:
                page = [m for m in page if m.id < before]
            if not page:
                return

            for message in page:
                yield message
                yielded += 1
                if limit is not None and yielded >= limit:
                    return

            before = page[-1].id

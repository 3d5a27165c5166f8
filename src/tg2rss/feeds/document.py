"""
Feed Document Adapter.

Loads, merges and persists the RSS 2.0 document backing a channel's feed:
- open_or_create() falls back to a fresh document instead of failing
- merge() prepends new entries without touching existing ones
- persist() replaces the file atomically so concurrent readers never see
  a partial write
"""

from __future__ import annotations

import os
import re
import tempfile
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Sequence

from tg2rss.errors import DocumentPersistError
from tg2rss.utils.logger import get_logger

log = get_logger(__name__)

DEFAULT_DESCRIPTION = "Not supported yet"

# Characters XML 1.0 does not allow anywhere in a document
XML_ILLEGAL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\ud800-\udfff\ufffe\uffff]")


@dataclass(frozen=True)
class FeedEntry:
    """One feed item derived from one upstream message."""

    title: str
    description: str
    link: str
    guid: str | None = None


@dataclass(frozen=True)
class FeedMetadata:
    """Channel-level metadata used when a feed is first created."""

    title: str
    link: str
    description: str = DEFAULT_DESCRIPTION


@dataclass
class FeedDocument:
    """An RSS channel with its entries, newest first."""

    title: str
    link: str
    description: str
    entries: list[FeedEntry] = field(default_factory=list)

    @classmethod
    def create(cls, metadata: FeedMetadata) -> "FeedDocument":
        return cls(
            title=metadata.title,
            link=metadata.link,
            description=metadata.description,
        )

    def __len__(self) -> int:
        return len(self.entries)


def _text(element: ET.Element | None) -> str:
    if element is None or element.text is None:
        return ""
    return element.text


def parse_feed(content: str | bytes) -> FeedDocument:
    """
    Parse an RSS 2.0 document.

    Raises:
        ValueError: If the content is not an RSS document
    """
    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise ValueError(f"Malformed feed XML: {e}") from e

    channel = root.find("channel")
    if root.tag != "rss" or channel is None:
        raise ValueError("Not an RSS 2.0 document")

    entries = []
    for item in channel.findall("item"):
        guid = item.find("guid")
        entries.append(
            FeedEntry(
                title=_text(item.find("title")),
                description=_text(item.find("description")),
                link=_text(item.find("link")),
                guid=_text(guid) if guid is not None else None,
            )
        )

    return FeedDocument(
        title=_text(channel.find("title")),
        link=_text(channel.find("link")),
        description=_text(channel.find("description")),
        entries=entries,
    )


def clean_text(text: str) -> str:
    """Drop characters that would make the document unparsable."""
    return XML_ILLEGAL_CHARS.sub("", text)


def _add_text(parent: ET.Element, tag: str, text: str, attrib: dict[str, str] | None = None) -> None:
    ET.SubElement(parent, tag, attrib or {}).text = clean_text(text)


def render_feed(document: FeedDocument) -> bytes:
    """
    Serialize a document as pretty printed RSS 2.0 (UTF-8).

    Characters XML 1.0 forbids (most C0 controls, lone surrogates) are
    dropped, so the output always parses back.
    """
    root = ET.Element("rss", {"version": "2.0"})
    channel = ET.SubElement(root, "channel")
    _add_text(channel, "title", document.title)
    _add_text(channel, "link", document.link)
    _add_text(channel, "description", document.description)

    for entry in document.entries:
        item = ET.SubElement(channel, "item")
        _add_text(item, "title", entry.title)
        _add_text(item, "link", entry.link)
        _add_text(item, "description", entry.description)
        if entry.guid is not None:
            is_permalink = "true" if entry.guid == entry.link else "false"
            _add_text(item, "guid", entry.guid, {"isPermaLink": is_permalink})

    ET.indent(root, space="  ")
    return ET.tostring(root, encoding="utf-8", xml_declaration=True) + b"\n"


def open_or_create(path: Path | str, metadata: FeedMetadata) -> FeedDocument:
    """
    Load the feed at `path`, or start a fresh one.

    A missing or unreadable file is not an error: the channel simply gets
    a new document built from `metadata` with no entries.
    """
    path = Path(path)
    try:
        content = path.read_bytes()
    except FileNotFoundError:
        log.debug("Feed %s does not exist, creating it", path)
        return FeedDocument.create(metadata)
    except OSError as e:
        log.warning("Could not read feed %s (%s), starting a fresh one", path, e)
        return FeedDocument.create(metadata)

    try:
        return parse_feed(content)
    except ValueError as e:
        log.warning("Could not parse feed %s (%s), starting a fresh one", path, e)
        return FeedDocument.create(metadata)


def merge(document: FeedDocument, new_entries: Sequence[FeedEntry]) -> FeedDocument:
    """
    Return a copy of `document` with `new_entries` prepended.

    The entries are expected newest first. Nothing is deduplicated; the
    channel cursor is what keeps entries from being fetched twice.
    """
    return replace(document, entries=[*new_entries, *document.entries])


def persist(document: FeedDocument, path: Path | str) -> None:
    """
    Write `document` to `path`, replacing any previous content atomically.

    Raises:
        DocumentPersistError: If the file could not be written or renamed
    """
    path = Path(path)
    payload = render_feed(document)
    tmp_name: str | None = None
    try:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        # mkstemp creates 0600 files, feeds are served to everyone
        os.chmod(tmp_name, 0o644)
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as e:
        raise DocumentPersistError(f"Could not write feed {path}: {e}", path) from e
    finally:
        if tmp_name is not None:
            try:
                os.unlink(tmp_name)
            except OSError:
                log.warning("Could not remove temporary file %s", tmp_name)

    log.debug("Wrote %d entries to %s", len(document.entries), path)


def list_feeds(feed_dir: Path | str) -> list[str]:
    """Names of the feed files in `feed_dir`, sorted."""
    feed_dir = Path(feed_dir)
    if not feed_dir.is_dir():
        return []
    return sorted(
        p.name for p in feed_dir.iterdir() if p.suffix == ".xml" and p.is_file()
    )

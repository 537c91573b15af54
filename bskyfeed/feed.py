"""Fetch and parse the RSS feed into FeedItems."""
import logging
from datetime import datetime, timezone

import feedparser
import requests

from bskyfeed.errors import ParseError, TransientFetchError
from bskyfeed.models import Enclosure, Feed, FeedItem

logger = logging.getLogger(__name__)

USER_AGENT = "bskyfeed/0.1"


def _text(value) -> str:
    return (value or "").strip()


def _published_at(entry) -> datetime | None:
    parsed = entry.get("published_parsed") or entry.get("updated_parsed")
    if not parsed:
        return None
    return datetime(*parsed[:6], tzinfo=timezone.utc)


def _enclosure(entry) -> Enclosure | None:
    """First enclosure (or media:content) URL with its alt text."""
    url = None
    for enclosure in entry.get("enclosures", []):
        if enclosure.get("href"):
            url = enclosure["href"]
            break
    media = entry.get("media_content") or []
    if url is None and media:
        url = media[0].get("url")
    if not url:
        return None

    # media:text inside media:content
    alt = entry.get("media_text")
    if isinstance(alt, list):
        alt = "".join(alt)
    return Enclosure(url=url.strip(), alt=_text(alt) or None)


def parse_entry(entry) -> FeedItem:
    """Convert a feedparser entry to a FeedItem."""
    return FeedItem(
        guid=entry.get("id") or None,
        title=_text(entry.get("title")),
        link=_text(entry.get("link")),
        description=_text(entry.get("description") or entry.get("summary")),
        published_at=_published_at(entry),
        enclosure=_enclosure(entry),
    )


def parse_feed(content: bytes) -> Feed:
    """Parse raw feed bytes.

    Raises:
        ParseError: the document is malformed and yielded no entries
    """
    parsed = feedparser.parse(content)
    if parsed.bozo and not parsed.entries:
        raise ParseError(f"Malformed feed: {parsed.get('bozo_exception')}")
    if parsed.bozo:
        logger.warning(f"[FETCH] Parser flagged feed as bozo: {parsed.get('bozo_exception')}")

    return Feed(
        title=_text(parsed.feed.get("title")) or None,
        items=[parse_entry(entry) for entry in parsed.entries],
    )


class FeedFetcher:
    """Retrieve a feed over HTTP and parse it."""

    def __init__(self, session: requests.Session | None = None, timeout: float = 30):
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch(self, url: str) -> Feed:
        logger.info(f"[FETCH] Fetching feed from {url}")
        try:
            response = self.session.get(url, timeout=self.timeout, headers={"User-Agent": USER_AGENT})
            response.raise_for_status()
        except requests.RequestException as e:
            raise TransientFetchError(f"Error fetching feed {url}: {e}") from e

        feed = parse_feed(response.content)
        logger.info(f"[FETCH] {feed.title}: {len(feed.items)} item(s)")
        return feed

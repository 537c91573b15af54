"""Data models for the feed pipeline."""
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Enclosure:
    """Media attached to a feed item."""

    url: str
    alt: str | None = None


@dataclass
class FeedItem:
    """RSS feed item. Transient, never persisted."""

    guid: str | None
    title: str
    link: str
    description: str
    published_at: datetime | None = None
    enclosure: Enclosure | None = None


@dataclass
class Feed:
    """Parsed feed."""

    title: str | None
    items: list[FeedItem] = field(default_factory=list)


@dataclass
class NormalizedMedia:
    """Image bytes ready for upload."""

    data: bytes
    mime_type: str

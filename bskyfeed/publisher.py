"""Publish feed items as Bluesky posts with an external link card."""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone

import requests

from bskyfeed.errors import PublishError
from bskyfeed.models import FeedItem, NormalizedMedia

logger = logging.getLogger(__name__)

DEFAULT_SERVICE = "https://bsky.social"


def _iso(dt: datetime | None) -> str:
    dt = dt or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class Publisher(ABC):
    """Downstream target for new feed items."""

    def login(self) -> None:
        """Authenticate once per run, before the first publish."""

    @abstractmethod
    def publish(self, item: FeedItem, media: NormalizedMedia | None = None) -> None:
        """Post ``item``.

        Raises:
            PublishError: the post was not created
        """


class LogPublisher(Publisher):
    """Logs the post it would make. For local runs."""

    def publish(self, item: FeedItem, media: NormalizedMedia | None = None) -> None:
        logger.info(f"[PUBLISH] (log only) {item.title}: {item.link}")
        logger.debug(
            f"  createdAt={_iso(item.published_at)} description={item.description[:80]!r} "
            f"alt={item.enclosure.alt if item.enclosure else None!r} "
            f"thumb={len(media.data) if media else 0} bytes"
        )


class BlueskyPublisher(Publisher):
    """Creates app.bsky.feed.post records over XRPC."""

    def __init__(
        self,
        identifier: str,
        password: str,
        service: str = DEFAULT_SERVICE,
        session: requests.Session | None = None,
        timeout: float = 30,
    ):
        self.identifier = identifier
        self.password = password
        self.service = service.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.did: str | None = None
        self._access_jwt: str | None = None

    def _xrpc(self, method: str, **kwargs) -> dict:
        url = f"{self.service}/xrpc/{method}"
        headers = kwargs.pop("headers", {})
        if self._access_jwt:
            headers["Authorization"] = f"Bearer {self._access_jwt}"
        try:
            response = self.session.post(url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise PublishError(f"{method} failed: {e}") from e
        if not response.ok:
            raise PublishError(f"{method} returned {response.status_code}: {response.text[:200]}")
        return response.json()

    def login(self) -> None:
        session = self._xrpc(
            "com.atproto.server.createSession",
            json={"identifier": self.identifier, "password": self.password},
        )
        self.did = session["did"]
        self._access_jwt = session["accessJwt"]
        logger.info(f"Logged in to {self.service} as {session.get('handle', self.identifier)}")

    def upload_blob(self, media: NormalizedMedia) -> dict:
        result = self._xrpc(
            "com.atproto.repo.uploadBlob",
            data=media.data,
            headers={"Content-Type": media.mime_type},
        )
        return result["blob"]

    def build_record(self, item: FeedItem, thumb: dict | None = None) -> dict:
        external = {
            "uri": item.link,
            "title": item.title,
            "description": item.description,
        }
        if thumb is not None:
            external["thumb"] = thumb
        return {
            "$type": "app.bsky.feed.post",
            "text": "",
            "createdAt": _iso(item.published_at),
            "embed": {
                "$type": "app.bsky.embed.external",
                "external": external,
            },
        }

    def publish(self, item: FeedItem, media: NormalizedMedia | None = None) -> None:
        if self.did is None:
            raise PublishError("publish called before login")

        thumb = self.upload_blob(media) if media is not None else None
        result = self._xrpc(
            "com.atproto.repo.createRecord",
            json={
                "repo": self.did,
                "collection": "app.bsky.feed.post",
                "record": self.build_record(item, thumb),
            },
        )
        logger.info(f"[PUBLISH] {item.title}: {result.get('uri')}")

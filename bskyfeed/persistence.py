"""Round-trip the state database through durable storage between runs.

Two backends:

* ``NoOpPersister`` keeps nothing; every run starts cold.
* ``ReleasesPersister`` stores each snapshot of the database as the single
  asset of a GitHub release tagged with the UTC time of the upload. Restore
  reads the newest one that actually carries the file.
"""
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.utils import format_datetime
from pathlib import Path

import requests

from bskyfeed.errors import PersistenceError, TransientFetchError

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
GITHUB_API_VERSION = "2022-11-28"
TAG_PREFIX = "database-"


class DatabasePersister(ABC):
    """Moves the state file to and from durable storage."""

    @abstractmethod
    def restore(self, path: Path) -> None:
        """Fetch the last persisted state into ``path``, if there is one.

        Must not raise: missing or unreadable state is a cold start.
        """

    @abstractmethod
    def persist(self, path: Path) -> None:
        """Store the file at ``path``.

        Raises:
            PersistenceError: the state could not be stored
        """


class NoOpPersister(DatabasePersister):
    """Keeps nothing between runs."""

    def restore(self, path: Path) -> None:
        pass

    def persist(self, path: Path) -> None:
        pass


class GitHubReleasesClient:
    """Minimal GitHub REST client for releases and their assets."""

    def __init__(self, token: str, repository: str, session: requests.Session | None = None, timeout: float = 30):
        if "/" not in repository:
            raise ValueError(f"Repository must be 'owner/repo', got {repository!r}")
        self.repository = repository
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        })

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TransientFetchError(f"{method} {url} failed: {e}") from e
        if not response.ok:
            raise TransientFetchError(f"{method} {url} returned {response.status_code}: {response.text[:200]}")
        return response

    def list_releases(self, limit: int = 10) -> list[dict]:
        """Most recently created releases first."""
        response = self._request(
            "GET",
            f"{GITHUB_API}/repos/{self.repository}/releases",
            params={"per_page": limit},
        )
        return response.json()

    def create_release(self, tag: str, name: str) -> dict:
        response = self._request(
            "POST",
            f"{GITHUB_API}/repos/{self.repository}/releases",
            json={
                "tag_name": tag,
                "name": name,
                "draft": False,
                "prerelease": True,
            },
        )
        return response.json()

    def upload_asset(self, release: dict, data: bytes, name: str) -> dict:
        # upload_url is a URI template like ".../assets{?name,label}"
        upload_url = re.sub(r"\{[^}]*\}$", "", release["upload_url"])
        response = self._request(
            "POST",
            upload_url,
            params={"name": name, "label": name},
            data=data,
            headers={"Content-Type": "application/octet-stream"},
        )
        return response.json()

    def download_asset(self, asset: dict) -> bytes:
        response = self._request(
            "GET",
            asset["url"],
            headers={"Accept": "application/octet-stream"},
        )
        return response.content


def snapshot_tag(now: datetime) -> str:
    """Release tag for a snapshot taken at ``now`` (UTC)."""
    stamp = now.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return TAG_PREFIX + stamp.replace("+00:00", "Z").replace(":", "-")


def _asset(release: dict, name: str) -> dict | None:
    return next((a for a in release.get("assets", []) if a.get("name") == name), None)


def latest_snapshot(releases: list[dict], asset_name: str | None = None) -> dict | None:
    """Newest database snapshot among ``releases``.

    With ``asset_name``, releases lacking that asset are passed over, so a
    release left behind by a failed upload never hides an older good one.
    Tags are fixed-width UTC timestamps, so the greatest tag is the newest.
    """
    snapshots = [
        r for r in releases
        if r.get("tag_name", "").startswith(TAG_PREFIX)
        and (asset_name is None or _asset(r, asset_name) is not None)
    ]
    if not snapshots:
        return None
    return max(snapshots, key=lambda r: r["tag_name"])


class ReleasesPersister(DatabasePersister):
    """Keeps the state file as an asset on timestamped GitHub releases."""

    LIST_LIMIT = 10

    def __init__(self, client: GitHubReleasesClient):
        self.client = client

    def restore(self, path: Path) -> None:
        path = Path(path)
        try:
            releases = self.client.list_releases(limit=self.LIST_LIMIT)
        except (TransientFetchError, ValueError) as e:
            logger.warning(f"[RESTORE] Could not list releases, starting fresh: {e}")
            return

        release = latest_snapshot(releases, asset_name=path.name)
        if release is None:
            logger.info(f"[RESTORE] No snapshot carrying {path.name} found, starting fresh")
            return

        try:
            data = self.client.download_asset(_asset(release, path.name))
            path.write_bytes(data)
        except (TransientFetchError, OSError) as e:
            logger.warning(f"[RESTORE] Could not restore {path.name} from {release['tag_name']}, starting fresh: {e}")
            path.unlink(missing_ok=True)
            return
        logger.info(f"[RESTORE] Downloaded database from {release['tag_name']} ({len(data)} bytes)")

    def persist(self, path: Path) -> None:
        path = Path(path)
        now = datetime.now(timezone.utc)
        tag = snapshot_tag(now)
        try:
            data = path.read_bytes()
            release = self.client.create_release(
                tag=tag,
                name=f"Persisting database at {format_datetime(now, usegmt=True)}",
            )
            self.client.upload_asset(release, data, path.name)
        except (OSError, TransientFetchError) as e:
            raise PersistenceError(f"Failed to persist {path} as {tag}: {e}") from e
        logger.info(f"[PERSIST] Uploaded {path.name} to release {tag}")

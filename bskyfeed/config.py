"""Environment configuration and component factories.

All settings come from environment variables, optionally loaded from a
``.env`` file. ``load_config`` gathers them into a nested dict; the
``get_*`` factories pick each pluggable component once from that dict.
"""
import os
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

from bskyfeed.dedup import GuidFallback
from bskyfeed.errors import ConfigError
from bskyfeed.media import DEFAULT_QUALITY, CjpegliCompressor, Compressor, MozjpegCompressor
from bskyfeed.persistence import DatabasePersister, GitHubReleasesClient, NoOpPersister, ReleasesPersister
from bskyfeed.publisher import DEFAULT_SERVICE, BlueskyPublisher, LogPublisher, Publisher

PUBLISHERS = ("bluesky", "log")


def _int(env: dict, name: str, default: int) -> int:
    raw = env.get(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def load_config(env: dict | None = None, env_file: Path | None = None) -> dict:
    """Read configuration from ``env`` (default: the process environment).

    Raises:
        ConfigError: a required value is missing or a value is invalid
    """
    if env is None:
        load_dotenv(env_file or find_dotenv(usecwd=True))
        env = dict(os.environ)

    feed_url = env.get("FEED_URL")
    if not feed_url:
        raise ConfigError("FEED_URL is not set")

    try:
        fallback = GuidFallback(env.get("GUID_FALLBACK") or GuidFallback.SKIP.value)
    except ValueError:
        raise ConfigError(f"GUID_FALLBACK must be one of {[f.value for f in GuidFallback]}")

    publisher = env.get("PUBLISHER") or "bluesky"
    if publisher not in PUBLISHERS:
        raise ConfigError(f"PUBLISHER must be one of {PUBLISHERS}, got {publisher!r}")

    quality = _int(env, "JPEG_QUALITY", DEFAULT_QUALITY)
    if not 1 <= quality <= 100:
        raise ConfigError(f"JPEG_QUALITY must be between 1 and 100, got {quality}")

    return {
        "feed": {
            "url": feed_url,
            "guid_fallback": fallback,
            "request_timeout": _int(env, "REQUEST_TIMEOUT", 30),
        },
        "database": {"path": Path(env.get("DATABASE_PATH") or "database.db")},
        "persistence": {
            "use_actions": bool(env.get("USE_ACTIONS")),
            "github_token": env.get("GITHUB_TOKEN"),
            "github_repository": env.get("GITHUB_REPOSITORY"),
        },
        "publisher": {
            "kind": publisher,
            "username": env.get("BSKY_USERNAME"),
            "password": env.get("BSKY_PASSWORD"),
            "service": env.get("BSKY_SERVICE") or DEFAULT_SERVICE,
        },
        "compressor": {
            "cjpegli_path": env.get("CJPEGLI_PATH") or None,
            "mozjpeg_path": env.get("MOZJPEG_PATH") or "cjpeg",
            "quality": quality,
            "timeout": _int(env, "COMPRESSOR_TIMEOUT", 120),
        },
        "logging": {
            "dir": Path(env.get("LOG_DIR") or "logs"),
            "retention_days": _int(env, "LOG_RETENTION_DAYS", 30),
        },
    }


def get_persister(config: dict) -> DatabasePersister:
    """Releases-backed persister under GitHub Actions, no-op otherwise."""
    settings = config["persistence"]
    if not settings["use_actions"]:
        return NoOpPersister()

    if not settings["github_token"] or not settings["github_repository"]:
        raise ConfigError("USE_ACTIONS requires GITHUB_TOKEN and GITHUB_REPOSITORY")
    if "/" not in settings["github_repository"]:
        raise ConfigError(f"GITHUB_REPOSITORY must be 'owner/repo', got {settings['github_repository']!r}")
    client = GitHubReleasesClient(
        token=settings["github_token"],
        repository=settings["github_repository"],
        timeout=config["feed"]["request_timeout"],
    )
    return ReleasesPersister(client)


def get_compressor(config: dict) -> Compressor:
    """cjpegli when CJPEGLI_PATH is set, mozjpeg's cjpeg otherwise."""
    settings = config["compressor"]
    if settings["cjpegli_path"]:
        return CjpegliCompressor(settings["cjpegli_path"], settings["quality"], settings["timeout"])
    return MozjpegCompressor(settings["mozjpeg_path"], settings["quality"], settings["timeout"])


def get_publisher(config: dict) -> Publisher:
    settings = config["publisher"]
    if settings["kind"] == "log":
        return LogPublisher()

    if not settings["username"] or not settings["password"]:
        raise ConfigError("BSKY_USERNAME and BSKY_PASSWORD are required for the bluesky publisher")
    return BlueskyPublisher(
        identifier=settings["username"],
        password=settings["password"],
        service=settings["service"],
        timeout=config["feed"]["request_timeout"],
    )

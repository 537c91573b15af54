"""Run orchestration: restore, fetch, dedup, publish, record, persist."""
import logging
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from bskyfeed.database import StateStore
from bskyfeed.dedup import GuidFallback, entry_key, select_new
from bskyfeed.feed import FeedFetcher
from bskyfeed.media import MediaNormalizer, timer
from bskyfeed.models import FeedItem
from bskyfeed.persistence import DatabasePersister
from bskyfeed.publisher import Publisher

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    IDLE = "idle"
    RESTORING = "restoring"
    FETCHING = "fetching"
    DEDUPING = "deduping"
    PUBLISHING = "publishing"
    RECORDING = "recording"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class PipelineResult:
    """Outcome of one pipeline run."""

    state: RunState = RunState.IDLE
    feed_title: str | None = None
    fetched: int = 0
    new: int = 0
    published: int = 0
    failures: list[tuple[FeedItem | None, str]] = field(default_factory=list)
    error: str | None = None

    @property
    def exit_code(self) -> int:
        return 0 if self.state is RunState.DONE else 1


def _enter(result: PipelineResult, state: RunState) -> None:
    logger.debug(f"{result.state.value} -> {state.value}")
    result.state = state


def open_store(db_path: Path) -> StateStore:
    """Open the state store, discarding a restored file SQLite cannot read."""
    try:
        return StateStore(db_path)
    except sqlite3.DatabaseError as e:
        logger.warning(f"[RESTORE] Unreadable database {db_path} ({e}), starting fresh")
        Path(db_path).unlink(missing_ok=True)
        return StateStore(db_path)


def process_item(
    item: FeedItem,
    key: str,
    store: StateStore,
    normalizer: MediaNormalizer,
    publisher: Publisher,
    result: PipelineResult,
) -> None:
    """Publish one item, then record it. Raises on any failure."""
    _enter(result, RunState.PUBLISHING)
    logger.info(f"[PUBLISH] {item.title}: {item.link}")
    media = normalizer.normalize(item.enclosure.url) if item.enclosure else None
    with timer(f"Publishing {key}", logger):
        publisher.publish(item, media)

    _enter(result, RunState.RECORDING)
    store.record(key)
    result.published += 1


def run_pipeline(
    config: dict,
    persister: DatabasePersister,
    fetcher: FeedFetcher,
    normalizer: MediaNormalizer,
    publisher: Publisher,
) -> PipelineResult:
    """Run the pipeline once for the configured feed.

    Items are handled strictly in feed order. A failing item stops the loop;
    everything recorded before it is still persisted, and the run reports
    failure.
    """
    result = PipelineResult()
    db_path = Path(config["database"]["path"])
    feed_url = config["feed"]["url"]
    fallback = GuidFallback(config["feed"].get("guid_fallback", GuidFallback.SKIP))

    _enter(result, RunState.RESTORING)
    try:
        persister.restore(db_path)
    except Exception as e:
        logger.warning(f"[RESTORE] Restore failed, starting fresh: {e}", exc_info=True)

    try:
        store = open_store(db_path)
    except Exception as e:
        logger.error(f"[RESTORE] ✗ Could not open state store {db_path}: {e}")
        result.error = str(e)
        _enter(result, RunState.FAILED)
        return result

    try:
        _enter(result, RunState.FETCHING)
        try:
            feed = fetcher.fetch(feed_url)
        except Exception as e:
            logger.error(f"[FETCH] ✗ {e}")
            result.error = str(e)
            _enter(result, RunState.FAILED)
            return result
        result.feed_title = feed.title
        result.fetched = len(feed.items)

        _enter(result, RunState.DEDUPING)
        new_items = select_new(feed.items, store, fallback)
        result.new = len(new_items)

        if new_items:
            try:
                publisher.login()
            except Exception as e:
                logger.error(f"[PUBLISH] ✗ Login failed: {e}")
                result.failures.append((None, f"Login failed: {e}"))
                new_items = []

        for index, item in enumerate(new_items):
            try:
                process_item(item, entry_key(item, fallback), store, normalizer, publisher, result)
            except Exception as e:
                logger.error(f"[PUBLISH] ✗ {item.title}: {type(e).__name__}: {e}", exc_info=True)
                result.failures.append((item, str(e)))
                remaining = len(new_items) - index - 1
                if remaining:
                    logger.info(f"[PUBLISH] Leaving {remaining} item(s) for the next run")
                break
    finally:
        store.close()

    _enter(result, RunState.PERSISTING)
    try:
        persister.persist(db_path)
    except Exception as e:
        logger.error(f"[PERSIST] ✗ {e}")
        result.error = str(e)
        _enter(result, RunState.FAILED)
        return result
    logger.info(f"[PERSIST] Persisted {db_path}")

    if result.failures:
        result.error = result.failures[-1][1]
        _enter(result, RunState.FAILED)
    else:
        _enter(result, RunState.DONE)

    logger.info(f"Published: {result.published}, New: {result.new}, Failed: {len(result.failures)}")
    return result

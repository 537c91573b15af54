"""Select feed items that have not been published yet."""
import logging
from enum import Enum

from bskyfeed.database import StateStore
from bskyfeed.models import FeedItem

logger = logging.getLogger(__name__)


class GuidFallback(str, Enum):
    """What to do with items that carry no guid."""

    SKIP = "skip"  # never published, never tracked
    LINK = "link"  # the item's link becomes its key


def entry_key(item: FeedItem, fallback: GuidFallback = GuidFallback.SKIP) -> str | None:
    """Stable dedup key for an item, or None if it cannot be tracked."""
    if item.guid:
        return item.guid
    if fallback is GuidFallback.LINK and item.link and item.link.strip():
        return item.link.strip()
    return None


def select_new(
    items: list[FeedItem],
    store: StateStore,
    fallback: GuidFallback = GuidFallback.SKIP,
) -> list[FeedItem]:
    """Return items not yet recorded in ``store``, in feed order.

    The store is queried once for all candidate keys. Items without a key are
    dropped, and a key repeated within the feed is only returned once.
    """
    keyed = [(entry_key(item, fallback), item) for item in items]
    candidates = {key for key, _ in keyed if key is not None}
    existing = store.contains_any(candidates) if candidates else set()

    skipped = sum(1 for key, _ in keyed if key is None)
    if skipped:
        logger.info(f"[DEDUP] Skipping {skipped} item(s) without a guid")

    new_items = []
    seen = set(existing)
    for key, item in keyed:
        if key is None or key in seen:
            continue
        seen.add(key)
        new_items.append(item)

    logger.info(f"[DEDUP] {len(new_items)} new of {len(items)} item(s)")
    return new_items

"""
Viewport result cache.

An entry answers a later request when it is younger than the TTL and its
bounds fully contain the requested bounds for the same category set, so a
zoom-in reuses the wider fetch while any pan or zoom-out is a miss. Partial
overlaps are never merged. Expiry is checked lazily on lookup and the store
is an LRU capped at CACHE_MAX_ENTRIES.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Tuple

from trakke.categories import Category, coerce_category
from trakke.config import get_config
from trakke.models import POI, ViewportBounds

logger = logging.getLogger(__name__)

CacheKey = Tuple[Tuple[float, float, float, float], Tuple[str, ...]]


def category_key(categories: Iterable) -> Tuple[str, ...]:
    """Order-insensitive, de-duplicated category tuple."""
    return tuple(sorted({coerce_category(c).value for c in categories}))


@dataclass
class CacheEntry:
    key: CacheKey
    pois: List[POI]
    bounds: ViewportBounds
    fetched_at: float


class ViewportCache:
    """In-memory, per-pipeline cache of normalized viewport results."""

    def __init__(
        self,
        ttl: Optional[float] = None,
        max_entries: Optional[int] = None,
        precision: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        cache_config = get_config().cache_config
        self.ttl = ttl if ttl is not None else cache_config.ttl_viewport
        self.max_entries = max_entries if max_entries is not None else cache_config.max_entries
        self.precision = precision if precision is not None else cache_config.bounds_precision
        self._clock = clock
        self._entries: "OrderedDict[CacheKey, CacheEntry]" = OrderedDict()

    def make_key(self, bounds: ViewportBounds, categories: Iterable[Category]) -> CacheKey:
        return (bounds.quantized(self.precision), category_key(categories))

    def entry_for(self, bounds: ViewportBounds, categories: Iterable[Category]) -> Optional[CacheEntry]:
        """Return the live entry that covers bounds for exactly these categories."""
        cats = category_key(categories)
        now = self._clock()
        hit: Optional[CacheEntry] = None
        for key, entry in list(self._entries.items()):
            if key[1] != cats:
                continue
            if now - entry.fetched_at >= self.ttl:
                logger.debug(f"[CACHE] dropping expired entry {key}")
                del self._entries[key]
                continue
            if entry.bounds.contains(bounds, precision=self.precision):
                if hit is None or entry.fetched_at > hit.fetched_at:
                    hit = entry
        if hit is not None:
            self._entries.move_to_end(hit.key)
        return hit

    def lookup(self, bounds: ViewportBounds, categories: Iterable[Category]) -> Tuple[List[POI], bool]:
        entry = self.entry_for(bounds, categories)
        if entry is None:
            return [], False
        return list(entry.pois), True

    def store(self, bounds: ViewportBounds, categories: Iterable[Category], pois: List[POI]) -> CacheEntry:
        """Store a full result, replacing same-key and superseded narrower entries."""
        key = self.make_key(bounds, categories)
        cats = key[1]
        for other_key, other in list(self._entries.items()):
            if other_key[1] == cats and bounds.contains(other.bounds, precision=self.precision):
                del self._entries[other_key]

        entry = CacheEntry(key=key, pois=list(pois), bounds=bounds, fetched_at=self._clock())
        self._entries[key] = entry
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"[CACHE] evicted least recently used entry {evicted}")
        return entry

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

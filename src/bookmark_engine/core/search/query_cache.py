"""Bounded FIFO cache of search results."""

import json
from collections.abc import Sequence
from dataclasses import asdict, dataclass
from typing import Any

from bookmark_engine.config import QUERY_CACHE_SIZE
from bookmark_engine.models.node import SearchResult

CacheKey = tuple[str, str]


def make_key(terms: Sequence[str], options: Any) -> CacheKey:
    """Key from the normalized query terms and the serialized options dataclass."""
    return " ".join(terms), json.dumps(asdict(options), sort_keys=True)


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0


class QueryCache:
    """First-in first-out result cache.

    Reads do not refresh an entry's position; the oldest insertion is evicted
    once ``max_entries`` is reached. All entries are dropped whenever the
    store generation passed to :meth:`sync` changes.
    """

    def __init__(self, max_entries: int = QUERY_CACHE_SIZE) -> None:
        self.max_entries = max_entries
        self._entries: dict[CacheKey, tuple[SearchResult, ...]] = {}
        self._generation: int | None = None
        self.stats = CacheStats()

    def __len__(self) -> int:
        return len(self._entries)

    def sync(self, generation: int) -> None:
        if generation != self._generation:
            self._entries.clear()
            self._generation = generation

    def get(self, key: CacheKey) -> tuple[SearchResult, ...] | None:
        results = self._entries.get(key)
        if results is None:
            self.stats.misses += 1
        else:
            self.stats.hits += 1
        return results

    def put(self, key: CacheKey, results: Sequence[SearchResult]) -> None:
        if self.max_entries <= 0:
            return
        if key not in self._entries and len(self._entries) >= self.max_entries:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            self.stats.evictions += 1
        self._entries[key] = tuple(results)

    def clear(self) -> None:
        self._entries.clear()

"""Index-backed bookmark search with additive multi-field scoring."""

import time
from collections.abc import Callable, Iterable, Sequence
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, Literal

from loguru import logger

from bookmark_engine.config import CANDIDATE_MULTIPLIER, MIN_CANDIDATES
from bookmark_engine.core.database.store import BookmarkStore
from bookmark_engine.core.search.query_cache import QueryCache, make_key
from bookmark_engine.errors import InvalidInputError, StorageUnavailableError
from bookmark_engine.models.node import HighlightSpan, Record, SearchResult

SortBy = Literal["relevance", "title", "date_added", "url"]

TITLE_PREFIX_WEIGHT = 100
TITLE_CONTAINS_WEIGHT = 50
URL_WEIGHT = 30
DOMAIN_WEIGHT = 20
KEYWORD_WEIGHT = 15
TAG_WEIGHT = 10
META_TITLE_WEIGHT = 40
META_KEYWORDS_WEIGHT = 25
META_DESCRIPTION_WEIGHT = 10

# Upper bound of a prefix range: term <= value < term + sentinel.
PREFIX_SENTINEL = "\uffff"


@dataclass(frozen=True)
class SearchOptions:
    limit: int = 100
    sort_by: SortBy = "relevance"
    min_score: float = 0
    include_url: bool = True
    include_domain: bool = True
    include_keywords: bool = True
    include_tags: bool = True
    include_metadata: bool = True
    include_folders: bool = False


_SORT_KEYS: dict[str, Callable[[SearchResult], Any]] = {
    "relevance": lambda r: (-r.score, r.record.title_lower),
    "title": lambda r: (r.record.title_lower, r.record.id),
    "date_added": lambda r: (-r.record.date_added, r.record.title_lower),
    "url": lambda r: (r.record.url_lower, r.record.title_lower),
}


def tokenize_query(query: str) -> tuple[str, ...]:
    """Lowercase, whitespace-delimited search terms."""
    return tuple(query.lower().split())


def find_spans(text: str, term: str) -> list[HighlightSpan]:
    """Every (non-overlapping) occurrence of ``term`` in ``text``."""
    spans = []
    start = text.find(term)
    while start != -1 and term:
        end = start + len(term)
        spans.append(HighlightSpan(start=start, end=end, text=text[start:end]))
        start = text.find(term, end)
    return spans


def score_record(record: Record, terms: Sequence[str], options: SearchOptions) -> SearchResult:
    """Sum the field weights of every term that matches ``record``.

    Metadata weights are scaled by the record's freshness boost.
    """
    boost = record.meta_boost if record.meta_boost is not None else 1.0
    score = 0.0
    matched: dict[str, None] = {}
    highlights: dict[str, list[HighlightSpan]] = {}

    def hit(field: str, text: str, term: str, weight: float) -> None:
        nonlocal score
        score += weight
        matched[field] = None
        highlights.setdefault(field, []).extend(find_spans(text, term))

    keywords_text = " ".join(record.keywords)
    tags = tuple(tag.lower() for tag in record.tags)
    meta_keywords_text = " ".join(record.meta_keywords_tokens)

    for term in terms:
        if record.title_lower.startswith(term):
            hit("title", record.title_lower, term, TITLE_PREFIX_WEIGHT)
        elif term in record.title_lower:
            hit("title", record.title_lower, term, TITLE_CONTAINS_WEIGHT)
        if options.include_url and term in record.url_lower:
            hit("url", record.url_lower, term, URL_WEIGHT)
        if options.include_domain and term in record.domain:
            hit("domain", record.domain, term, DOMAIN_WEIGHT)
        if options.include_keywords and any(term in keyword for keyword in record.keywords):
            hit("keywords", keywords_text, term, KEYWORD_WEIGHT)
        if options.include_tags and any(term in tag for tag in tags):
            hit("tags", " ".join(tags), term, TAG_WEIGHT)
        if options.include_metadata:
            if term in record.meta_title_lower:
                hit("meta_title", record.meta_title_lower, term, round(META_TITLE_WEIGHT * boost))
            if any(term in token for token in record.meta_keywords_tokens):
                hit("meta_keywords", meta_keywords_text, term, round(META_KEYWORDS_WEIGHT * boost))
            if term in record.meta_description_lower:
                hit(
                    "meta_description",
                    record.meta_description_lower,
                    term,
                    round(META_DESCRIPTION_WEIGHT * boost),
                )

    return SearchResult(
        record=record,
        score=score,
        matched_fields=tuple(matched),
        highlights={field: tuple(spans) for field, spans in highlights.items()},
    )


def sort_results(results: Iterable[SearchResult], sort_by: SortBy) -> list[SearchResult]:
    return sorted(results, key=_SORT_KEYS[sort_by])


class SearchEngine:
    """Read-only search over a :class:`BookmarkStore`."""

    def __init__(self, store: BookmarkStore, *, cache: QueryCache | None = None) -> None:
        self._store = store
        self.cache = cache if cache is not None else QueryCache()

    async def search(self, query: str, options: SearchOptions | None = None) -> list[SearchResult]:
        """Ranked results for ``query``.

        Raises:
            InvalidInputError: Empty query, non-positive limit or unknown sort key.
            StorageUnavailableError: The store has not been initialized.
        """
        options = options or SearchOptions()
        terms = tokenize_query(query)
        if not terms:
            msg = "Search query is empty"
            raise InvalidInputError(msg)
        if options.limit <= 0:
            msg = f"Search limit must be positive, got {options.limit}"
            raise InvalidInputError(msg)
        if options.sort_by not in _SORT_KEYS:
            msg = f"Unknown sort order {options.sort_by!r}"
            raise InvalidInputError(msg)
        if not self._store.is_initialized:
            msg = "Bookmark store is not initialized. Run 'bookmark-engine import' first."
            raise StorageUnavailableError(msg)

        self.cache.sync(self._store.generation)
        key = make_key(terms, options)
        cached = self.cache.get(key)
        if cached is not None:
            return list(cached)

        started = time.perf_counter()
        candidates = await self._candidates(terms, options)
        if candidates:
            results = [
                scored
                for record in candidates
                if self._eligible(record, options)
                and (scored := score_record(record, terms, options)).score > options.min_score
            ]
        else:
            results = await self._full_scan(terms, options)

        results = sort_results(results, options.sort_by)[: options.limit]
        self.cache.put(key, results)
        logger.debug(
            "Search {!r}: {} candidates, {} results in {:.1f} ms",
            query,
            len(candidates),
            len(results),
            (time.perf_counter() - started) * 1000,
        )
        return results

    @staticmethod
    def _eligible(record: Record, options: SearchOptions) -> bool:
        return options.include_folders or not record.is_folder

    async def _candidates(self, terms: Sequence[str], options: SearchOptions) -> list[Record]:
        """Union of per-term index hits, capped at ``max(200, limit * 3)``."""
        cap = max(MIN_CANDIDATES, options.limit * CANDIDATE_MULTIPLIER)
        columns = ["title_lower"]
        if options.include_domain:
            columns.append("domain")
        if options.include_url:
            columns.append("url_lower")

        found: dict[str, Record] = {}

        def collect(records: Iterable[Record]) -> bool:
            for record in records:
                found.setdefault(record.id, record)
                if len(found) >= cap:
                    return True
            return False

        for term in terms:
            for column in columns:
                hits = await self._store.range_scan(column, term, term + PREFIX_SENTINEL, limit=cap)
                if collect(hits):
                    return list(found.values())
            if collect(await self._store.match_substring(term, limit=cap)):
                break
        return list(found.values())

    async def _full_scan(self, terms: Sequence[str], options: SearchOptions) -> list[SearchResult]:
        """Score every record until ``options.limit`` matches are collected."""
        results: list[SearchResult] = []
        async with aclosing(self._store.iter_records()) as records:
            async for record in records:
                if not self._eligible(record, options):
                    continue
                scored = score_record(record, terms, options)
                if scored.score > options.min_score:
                    results.append(scored)
                    if len(results) >= options.limit:
                        break
        return results

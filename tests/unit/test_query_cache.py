"""Tests for the search result cache."""

from bookmark_engine.core.search.query_cache import QueryCache, make_key
from bookmark_engine.core.search.searcher import SearchOptions


def test_key_depends_on_terms_and_options() -> None:
    base = make_key(("react",), SearchOptions())
    assert make_key(("react",), SearchOptions()) == base
    assert make_key(("react",), SearchOptions(limit=5)) != base
    assert make_key(("react", "router"), SearchOptions()) != base


def test_get_counts_hits_and_misses() -> None:
    cache = QueryCache()
    key = make_key(("a",), SearchOptions())
    assert cache.get(key) is None
    cache.put(key, [])
    assert cache.get(key) == ()
    assert (cache.stats.hits, cache.stats.misses) == (1, 1)


def test_evicts_oldest_insertion_even_if_recently_read() -> None:
    cache = QueryCache(max_entries=2)
    a, b, c = (make_key((term,), SearchOptions()) for term in "abc")
    cache.put(a, [])
    cache.put(b, [])
    cache.get(a)

    cache.put(c, [])

    assert cache.get(a) is None
    assert cache.get(b) == ()
    assert len(cache) == 2
    assert cache.stats.evictions == 1


def test_overwriting_a_key_does_not_evict() -> None:
    cache = QueryCache(max_entries=1)
    key = make_key(("a",), SearchOptions())
    cache.put(key, [])
    cache.put(key, [])
    assert cache.stats.evictions == 0
    assert len(cache) == 1


def test_sync_clears_on_generation_change() -> None:
    cache = QueryCache()
    key = make_key(("a",), SearchOptions())
    cache.sync(1)
    cache.put(key, [])
    cache.sync(1)
    assert len(cache) == 1
    cache.sync(2)
    assert len(cache) == 0


def test_zero_capacity_disables_caching() -> None:
    cache = QueryCache(max_entries=0)
    key = make_key(("a",), SearchOptions())
    cache.put(key, [])
    assert cache.get(key) is None

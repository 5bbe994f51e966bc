"""Tests for the SQLite bookmark store."""

import asyncio
import sqlite3
from collections.abc import Sequence
from dataclasses import replace
from pathlib import Path

import aiosqlite
import pytest

from bookmark_engine.core.database import store as store_module
from bookmark_engine.core.database.schema import PARENT_INDEX
from bookmark_engine.core.database.store import BookmarkStore, calculate_batch_size
from bookmark_engine.core.importer.records import flatten_tree
from bookmark_engine.core.search.searcher import PREFIX_SENTINEL
from bookmark_engine.errors import InvalidInputError, MigrationBlockedError, StorageUnavailableError
from bookmark_engine.models.node import BookmarkNode, CrawlMetadata, Record

GIB = 1024**3


@pytest.mark.asyncio
async def test_initialize_creates_healthy_database(store: BookmarkStore) -> None:
    report = await store.check_health()
    assert report.is_healthy, report
    assert not store.recovered


@pytest.mark.asyncio
async def test_concurrent_initialize_shares_one_open(tmp_path: Path) -> None:
    store = BookmarkStore(tmp_path / "b.db")
    await asyncio.gather(store.initialize(), store.initialize(), store.initialize())
    try:
        assert store.is_initialized
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_initialize_recreates_corrupted_database(tmp_path: Path) -> None:
    db_path = tmp_path / "b.db"
    db_path.write_bytes(b"this is definitely not sqlite " * 200)

    store = BookmarkStore(db_path)
    await store.initialize()
    try:
        assert store.recovered
        assert await store.count() == 0
        assert (await store.check_health()).is_healthy
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_calls_before_initialize_raise(tmp_path: Path) -> None:
    store = BookmarkStore(tmp_path / "b.db")
    with pytest.raises(StorageUnavailableError):
        await store.get_by_id("1")
    report = await store.check_health()
    assert not report.is_healthy
    assert report.errors


@pytest.mark.asyncio
async def test_close_is_idempotent(tmp_path: Path) -> None:
    store = BookmarkStore(tmp_path / "b.db")
    await store.initialize()
    await store.close()
    await store.close()
    assert not store.is_initialized


@pytest.mark.asyncio
@pytest.mark.parametrize("journal_mode", ["wal", "delete"])
async def test_initialize_reports_locked_database_as_blocked_upgrade(
    tmp_path: Path, journal_mode: str
) -> None:
    db_path = tmp_path / "b.db"
    holder = sqlite3.connect(db_path, isolation_level=None)
    holder.execute(f"PRAGMA journal_mode={journal_mode}")
    holder.execute("CREATE TABLE other_consumer (value TEXT)")
    holder.execute("BEGIN IMMEDIATE")
    store = BookmarkStore(db_path, busy_timeout=0.05)
    try:
        with pytest.raises(MigrationBlockedError, match="Close other consumers"):
            await store.initialize()
        assert not store.is_initialized
        assert not store.recovered
    finally:
        holder.execute("ROLLBACK")
        holder.close()

    await store.initialize()
    try:
        assert (await store.check_health()).is_healthy
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_initialize_recreates_database_after_timeout(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    real_open = BookmarkStore._open
    attempts: list[int] = []

    async def slow_first_open(self: BookmarkStore) -> aiosqlite.Connection:
        attempts.append(len(attempts))
        if len(attempts) == 1:
            await asyncio.sleep(3600)
        return await real_open(self)

    monkeypatch.setattr(BookmarkStore, "_open", slow_first_open)
    store = BookmarkStore(tmp_path / "b.db", init_timeout=0.05)
    await store.initialize()
    try:
        assert len(attempts) == 2
        assert store.recovered
        assert (await store.check_health()).is_healthy
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_initialize_gives_up_after_one_recovery(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    attempts: list[int] = []

    async def hanging_open(self: BookmarkStore) -> None:
        attempts.append(len(attempts))
        await asyncio.sleep(3600)

    monkeypatch.setattr(BookmarkStore, "_open", hanging_open)
    store = BookmarkStore(tmp_path / "b.db", init_timeout=0.05)

    with pytest.raises(StorageUnavailableError) as excinfo:
        await store.initialize()

    assert excinfo.value.recovery_attempted
    assert len(attempts) == 2
    assert not store.is_initialized


@pytest.mark.asyncio
async def test_get_by_id_round_trips_record(
    populated_store: BookmarkStore, sample_roots: list[BookmarkNode]
) -> None:
    expected = {r.id: r for r in flatten_tree(sample_roots)}["11"]
    assert await populated_store.get_by_id("11") == expected
    assert await populated_store.get_by_id("missing") is None


@pytest.mark.asyncio
async def test_get_many_skips_unknown_ids(populated_store: BookmarkStore) -> None:
    found = await populated_store.get_many(["11", "nope", "21"])
    assert set(found) == {"11", "21"}


@pytest.mark.asyncio
async def test_get_children_in_index_order_with_paging(populated_store: BookmarkStore) -> None:
    children = await populated_store.get_children("1")
    assert [r.id for r in children] == ["10", "20", "30"]

    page = await populated_store.get_children("1", offset=1, limit=1)
    assert [r.id for r in page] == ["20"]

    top = await populated_store.get_children(None)
    assert [r.id for r in top] == ["0"]


@pytest.mark.asyncio
async def test_get_children_without_parent_index(populated_store: BookmarkStore) -> None:
    async with populated_store.transaction() as conn:
        await conn.execute(f"DROP INDEX {PARENT_INDEX}")

    page = await populated_store.get_children("10", offset=1, limit=5)

    assert [r.id for r in page] == ["12", "13"]
    assert not (await populated_store.check_health()).is_healthy


@pytest.mark.asyncio
async def test_get_children_rejects_negative_paging(populated_store: BookmarkStore) -> None:
    with pytest.raises(InvalidInputError):
        await populated_store.get_children("1", offset=-1)


@pytest.mark.asyncio
async def test_get_descendants_shallowest_first(populated_store: BookmarkStore) -> None:
    parent = await populated_store.get_by_id("1")
    assert parent is not None
    descendants = await populated_store.get_descendants(parent)
    ids = [r.id for r in descendants]
    assert ids[:3] == ["10", "20", "30"]
    assert set(ids) == {"10", "20", "30", "11", "12", "13", "21", "22"}


@pytest.mark.asyncio
async def test_range_scan_uses_prefix_bounds(populated_store: BookmarkStore) -> None:
    hits = await populated_store.range_scan("title_lower", "react", "react" + PREFIX_SENTINEL, limit=10)
    assert sorted(r.id for r in hits) == ["11", "12"]
    with pytest.raises(InvalidInputError):
        await populated_store.range_scan("path_string", "a", "b", limit=10)


@pytest.mark.asyncio
async def test_count_and_iter_records(populated_store: BookmarkStore) -> None:
    assert await populated_store.count() == 12
    assert await populated_store.count(bookmarks_only=True) == 6

    depths = [record.depth async for record in populated_store.iter_records()]
    assert depths == sorted(depths)


@pytest.mark.asyncio
async def test_update_and_delete(populated_store: BookmarkStore) -> None:
    record = await populated_store.get_by_id("30")
    assert record is not None
    before = populated_store.generation

    await populated_store.update(replace(record, title="Python 3 docs", title_lower="python 3 docs"))
    await populated_store.delete("22")

    updated = await populated_store.get_by_id("30")
    assert updated is not None
    assert updated.title == "Python 3 docs"
    assert await populated_store.get_by_id("22") is None
    assert populated_store.generation == before + 2


@pytest.mark.asyncio
async def test_update_unknown_record_raises(populated_store: BookmarkStore) -> None:
    record = await populated_store.get_by_id("30")
    assert record is not None
    with pytest.raises(InvalidInputError, match="not found"):
        await populated_store.update(replace(record, id="999"))


@pytest.mark.asyncio
async def test_insert_batch_reports_failed_batch_and_keeps_others(
    store: BookmarkStore,
    sample_roots: list[BookmarkNode],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A batch that keeps failing is reported; the other batches are stored."""
    records = flatten_tree(sample_roots)
    real_insert = store_module._insert_records
    attempts = 0

    async def flaky_insert(conn: aiosqlite.Connection, batch: Sequence[Record]) -> None:
        nonlocal attempts
        if any(r.id == "12" for r in batch):
            attempts += 1
            raise sqlite3.OperationalError("disk I/O error")
        await real_insert(conn, batch)

    monkeypatch.setattr(store_module, "_insert_records", flaky_insert)
    progress: list[tuple[int, int]] = []

    report = await store.insert_batch(records, batch_size=4, on_progress=lambda d, t: progress.append((d, t)))

    assert report.batches == 3
    assert report.processed == 12
    assert len(report.failures) == 1
    assert "12" in report.failed_ids
    assert report.succeeded == 8
    assert attempts == store.retries + 1
    assert progress == [(4, 12), (8, 12), (12, 12)]
    assert await store.count() == 8


@pytest.mark.asyncio
async def test_insert_batch_retries_transient_failure(
    store: BookmarkStore,
    sample_roots: list[BookmarkNode],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    real_insert = store_module._insert_records
    failures = iter([sqlite3.OperationalError("database is locked")])

    async def locked_once(conn: aiosqlite.Connection, batch: Sequence[Record]) -> None:
        exc = next(failures, None)
        if exc is not None:
            raise exc
        await real_insert(conn, batch)

    monkeypatch.setattr(store_module, "_insert_records", locked_once)

    report = await store.insert_batch(flatten_tree(sample_roots))

    assert report.ok
    assert await store.count() == 12


@pytest.mark.asyncio
async def test_delete_batch_and_update_batch(populated_store: BookmarkStore) -> None:
    record = await populated_store.get_by_id("21")
    assert record is not None

    await populated_store.update_batch([replace(record, title="HN"), replace(record, id="ghost")])
    report = await populated_store.delete_batch(["22", "30"])

    assert report.ok
    stored = await populated_store.get_by_id("21")
    assert stored is not None
    assert stored.title == "HN"
    assert await populated_store.get_by_id("ghost") is None
    assert await populated_store.count() == 10


@pytest.mark.asyncio
async def test_settings_round_trip(store: BookmarkStore) -> None:
    await store.save_setting("theme", "dark", description="UI theme")
    await store.save_setting("page_size", 25)

    assert await store.get_setting("theme") == "dark"
    assert await store.get_setting("missing", "fallback") == "fallback"
    assert await store.list_settings() == {"page_size": 25, "theme": "dark"}

    await store.delete_setting("theme")
    assert await store.get_setting("theme") is None


@pytest.mark.asyncio
async def test_search_history_most_recent_first(store: BookmarkStore) -> None:
    await store.add_search_history("react", results=2, execution_time_ms=1.5)
    await store.add_search_history("python", results=1, execution_time_ms=0.7, source="mcp")

    history = await store.get_search_history()
    assert [h["query"] for h in history] == ["python", "react"]
    assert history[0]["source"] == "mcp"

    await store.clear_search_history()
    assert await store.get_search_history() == []


@pytest.mark.asyncio
async def test_favicon_cache_is_case_insensitive(store: BookmarkStore) -> None:
    await store.save_favicon("Example.COM", "https://example.com/favicon.ico", data=b"\x00\x01")
    favicon = await store.get_favicon("example.com")
    assert favicon is not None
    assert favicon["data"] == b"\x00\x01"
    assert await store.get_favicon("other.org") is None


@pytest.mark.asyncio
async def test_crawl_metadata_updates_derived_fields(populated_store: BookmarkStore) -> None:
    metadata = CrawlMetadata(
        bookmark_id="30",
        url="https://docs.python.org/3/",
        title="3.12 Documentation",
        description="The official Python documentation.",
        keywords=("Python", "docs"),
        crawled_at=1_700_000_000_000,
    )
    await populated_store.save_crawl_metadata(metadata)

    record = await populated_store.get_by_id("30")
    assert record is not None
    assert record.meta_title_lower == "3 12 documentation"
    assert record.meta_keywords_tokens == ("python", "docs")
    assert record.meta_boost is not None
    assert record.metadata_updated_at == 1_700_000_000_000
    assert await populated_store.get_crawl_metadata("30") == metadata

    await populated_store.delete_crawl_metadata("30")
    cleared = await populated_store.get_by_id("30")
    assert cleared is not None
    assert cleared.meta_title_lower == ""
    assert cleared.meta_boost is None
    assert await populated_store.get_crawl_metadata("30") is None


@pytest.mark.asyncio
async def test_replace_all_restores_crawl_metadata(
    populated_store: BookmarkStore, sample_roots: list[BookmarkNode]
) -> None:
    await populated_store.save_crawl_metadata(
        CrawlMetadata(bookmark_id="13", url="https://preactjs.com/", title="Fast 3kB alternative")
    )

    report = await populated_store.replace_all(flatten_tree(sample_roots))

    assert report.ok
    record = await populated_store.get_by_id("13")
    assert record is not None
    assert record.meta_title_lower == "fast 3kb alternative"


@pytest.mark.asyncio
async def test_global_stats(populated_store: BookmarkStore) -> None:
    stats = await populated_store.refresh_global_stats()

    assert stats["total_bookmarks"] == 6
    assert stats["total_folders"] == 6
    assert stats["max_depth"] == 3
    assert stats["total_domains"] == 6
    assert stats["duplicate_urls"] == 0
    assert stats["empty_folders"] == 1
    assert len(stats["top_domains"]) == 6
    assert await populated_store.get_global_stats() == stats


@pytest.mark.asyncio
async def test_database_stats_and_clear_all(populated_store: BookmarkStore) -> None:
    await populated_store.save_setting("k", "v")
    counts = await populated_store.get_database_stats()
    assert counts["bookmarks"] == 12
    assert counts["settings"] == 1

    await populated_store.clear_all()

    counts = await populated_store.get_database_stats()
    assert all(count == 0 for count in counts.values())


@pytest.mark.parametrize(
    ("total", "available", "expected"),
    [
        (0, GIB, 1),
        (500, GIB, 500),
        (5000, GIB, 2000),
        (5000, 16 * GIB, 5000),
        (200_000, 16 * GIB, 1000),
    ],
)
def test_calculate_batch_size(total: int, available: int, expected: int) -> None:
    assert calculate_batch_size(total, available_bytes=available) == expected

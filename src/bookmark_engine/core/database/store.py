"""Async SQLite store holding the mirrored bookmark records.

All writes go through :meth:`BookmarkStore.transaction`, which serializes them
on one connection. Batched writes run one transaction per batch, sequentially,
retrying a failed batch a fixed number of times before reporting it.
"""

import asyncio
import json
import sqlite3
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

import aiosqlite
import psutil
from loguru import logger

from bookmark_engine import config
from bookmark_engine.core.database.schema import (
    COLLECTIONS,
    FTS_TABLE,
    PARENT_INDEX,
    HealthReport,
    check_health,
    has_index,
    migrate_schema,
    table_names,
)
from bookmark_engine.core.importer.records import (
    compute_meta_boost,
    normalize_meta_text,
    tokenize_meta_keywords,
)
from bookmark_engine.errors import (
    InvalidInputError,
    MigrationBlockedError,
    StorageUnavailableError,
    TransientWriteError,
)
from bookmark_engine.models.node import CrawlMetadata, Record
from bookmark_engine.protocols import BatchProgress

T = TypeVar("T")

_CORRUPTION_SIGNATURES = ("file is not a database", "malformed", "disk image")
_LOCK_SIGNATURES = ("database is locked", "database table is locked")

RECORD_COLUMNS: tuple[str, ...] = (
    "id",
    "parent_id",
    "idx",
    "title",
    "url",
    "date_added",
    "date_modified",
    "title_lower",
    "url_lower",
    "domain",
    "keywords",
    "tags",
    "path",
    "path_string",
    "id_path",
    "depth",
    "is_folder",
    "children_count",
    "meta_title_lower",
    "meta_description_lower",
    "meta_keywords_tokens",
    "meta_boost",
    "metadata_updated_at",
)

_UPSERT_SQL = (
    f"INSERT INTO bookmarks ({', '.join(RECORD_COLUMNS)}) "
    f"VALUES ({', '.join('?' * len(RECORD_COLUMNS))}) "
    "ON CONFLICT(id) DO UPDATE SET "
    + ", ".join(f"{col} = excluded.{col}" for col in RECORD_COLUMNS[1:])
)

_UPDATE_SQL = (
    "UPDATE bookmarks SET "
    + ", ".join(f"{col} = ?" for col in RECORD_COLUMNS[1:])
    + " WHERE id = ?"
)

_SEARCHABLE_COLUMNS = frozenset({"title_lower", "url_lower", "domain"})

_COPY_CRAWL_METADATA_SQL = """\
UPDATE bookmarks SET
    meta_title_lower = (SELECT c.title_lower FROM crawl_metadata c WHERE c.bookmark_id = bookmarks.id),
    meta_description_lower = (SELECT c.description_lower FROM crawl_metadata c WHERE c.bookmark_id = bookmarks.id),
    meta_keywords_tokens = (SELECT c.keywords_tokens FROM crawl_metadata c WHERE c.bookmark_id = bookmarks.id),
    meta_boost = (SELECT c.meta_boost FROM crawl_metadata c WHERE c.bookmark_id = bookmarks.id),
    metadata_updated_at = (SELECT c.crawled_at FROM crawl_metadata c WHERE c.bookmark_id = bookmarks.id)
WHERE id IN (SELECT bookmark_id FROM crawl_metadata)
"""


def record_to_row(record: Record) -> tuple[Any, ...]:
    return (
        record.id,
        record.parent_id,
        record.index,
        record.title,
        record.url,
        record.date_added,
        record.date_modified,
        record.title_lower,
        record.url_lower,
        record.domain,
        json.dumps(list(record.keywords)),
        json.dumps(list(record.tags)),
        json.dumps(list(record.path)),
        record.path_string,
        record.id_path,
        record.depth,
        int(record.is_folder),
        record.children_count,
        record.meta_title_lower,
        record.meta_description_lower,
        json.dumps(list(record.meta_keywords_tokens)),
        record.meta_boost,
        record.metadata_updated_at,
    )


def row_to_record(row: sqlite3.Row) -> Record:
    return Record(
        id=row["id"],
        parent_id=row["parent_id"],
        index=row["idx"],
        title=row["title"],
        url=row["url"],
        date_added=row["date_added"],
        date_modified=row["date_modified"],
        title_lower=row["title_lower"],
        url_lower=row["url_lower"],
        domain=row["domain"],
        keywords=tuple(json.loads(row["keywords"])),
        tags=tuple(json.loads(row["tags"])),
        path=tuple(json.loads(row["path"])),
        path_string=row["path_string"],
        id_path=row["id_path"],
        depth=row["depth"],
        is_folder=bool(row["is_folder"]),
        children_count=row["children_count"],
        meta_title_lower=row["meta_title_lower"],
        meta_description_lower=row["meta_description_lower"],
        meta_keywords_tokens=tuple(json.loads(row["meta_keywords_tokens"])),
        meta_boost=row["meta_boost"],
        metadata_updated_at=row["metadata_updated_at"],
    )


async def upsert_records(conn: aiosqlite.Connection, records: Sequence[Record]) -> None:
    await conn.executemany(_UPSERT_SQL, [record_to_row(r) for r in records])


async def _insert_records(conn: aiosqlite.Connection, records: Sequence[Record]) -> None:
    await upsert_records(conn, records)


async def _update_records(conn: aiosqlite.Connection, records: Sequence[Record]) -> None:
    rows = []
    for record in records:
        row = record_to_row(record)
        rows.append((*row[1:], row[0]))
    await conn.executemany(_UPDATE_SQL, rows)


async def _delete_records(conn: aiosqlite.Connection, ids: Sequence[str]) -> None:
    await conn.executemany("DELETE FROM bookmarks WHERE id = ?", [(i,) for i in ids])


def calculate_batch_size(total: int, *, available_bytes: int | None = None) -> int:
    """Pick a batch size from available memory and the number of records."""
    if available_bytes is None:
        available_bytes = psutil.virtual_memory().available
    if available_bytes >= config.LARGE_MEMORY_THRESHOLD_BYTES:
        base = config.LARGE_MEMORY_BATCH_SIZE
    else:
        base = config.DEFAULT_BATCH_SIZE
    if total < config.SMALL_INPUT_THRESHOLD:
        return max(total, 1)
    if total > config.HUGE_INPUT_THRESHOLD:
        return min(base, config.HUGE_INPUT_BATCH_SIZE)
    return base


def _is_corruption(exc: BaseException) -> bool:
    message = str(exc).lower()
    return isinstance(exc, sqlite3.DatabaseError) and any(
        sig in message for sig in _CORRUPTION_SIGNATURES
    )


def _destroy_database_files(db_path: str) -> None:
    if db_path == ":memory:":
        return
    for suffix in ("", "-wal", "-shm", "-journal"):
        Path(db_path + suffix).unlink(missing_ok=True)


@dataclass(frozen=True)
class BatchFailure:
    """One batch that still failed after its retries."""

    start: int
    record_ids: tuple[str, ...]
    error: TransientWriteError


@dataclass
class BatchReport:
    """Outcome of a batched write."""

    total: int
    processed: int = 0
    batches: int = 0
    failures: list[BatchFailure] = field(default_factory=list)

    @property
    def failed_ids(self) -> tuple[str, ...]:
        return tuple(i for failure in self.failures for i in failure.record_ids)

    @property
    def succeeded(self) -> int:
        return self.processed - len(self.failed_ids)

    @property
    def ok(self) -> bool:
        return not self.failures


class BookmarkStore:
    """Versioned SQLite store for bookmark records and auxiliary collections.

    Construct one per database and share it; ``initialize()`` must complete
    before any other call.
    """

    def __init__(
        self,
        db_path: Path | str,
        *,
        init_timeout: float = config.INIT_TIMEOUT_SECONDS,
        busy_timeout: float = config.BUSY_TIMEOUT_SECONDS,
        retries: int = config.WRITE_RETRIES,
        retry_delay: float = config.WRITE_RETRY_DELAY_SECONDS,
    ) -> None:
        self.db_path = str(db_path)
        self.init_timeout = init_timeout
        self.busy_timeout = busy_timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self.generation = 0
        self.recovered = False
        self._conn: aiosqlite.Connection | None = None
        self._init_task: asyncio.Task[None] | None = None
        self._write_lock = asyncio.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._conn is not None

    # --- Lifecycle ---

    async def initialize(self) -> None:
        """Open, create or migrate the database.

        Concurrent callers share the same in-flight initialization.

        Raises:
            MigrationBlockedError: Another connection prevents the schema upgrade.
            StorageUnavailableError: The database could not be opened, even after
                one destroy-and-recreate recovery.
        """
        if self._conn is not None:
            return
        if self._init_task is None:
            self._init_task = asyncio.create_task(self._initialize())
        task = self._init_task
        try:
            await asyncio.shield(task)
        except BaseException:
            if task.done() and self._init_task is task:
                self._init_task = None
            raise

    async def _initialize(self) -> None:
        try:
            self._conn = await asyncio.wait_for(self._open(), timeout=self.init_timeout)
            return
        except MigrationBlockedError:
            raise
        except TimeoutError:
            logger.warning(
                "Opening {} timed out after {}s; recreating the database",
                self.db_path,
                self.init_timeout,
            )
        except sqlite3.Error as exc:
            if not _is_corruption(exc):
                msg = f"Cannot open bookmark store {self.db_path}: {exc}"
                raise StorageUnavailableError(msg) from exc
            logger.warning("Bookmark store {} is corrupted ({}); recreating it", self.db_path, exc)

        self.recovered = True
        _destroy_database_files(self.db_path)
        try:
            self._conn = await asyncio.wait_for(self._open(), timeout=self.init_timeout)
        except (TimeoutError, sqlite3.Error, MigrationBlockedError) as exc:
            msg = (
                f"Bookmark store {self.db_path} could not be opened and the automatic "
                f"repair failed ({exc}). Remove the file or restore a backup, then retry."
            )
            raise StorageUnavailableError(msg, recovery_attempted=True) from exc
        logger.info("Bookmark store {} was recreated; run a full import to repopulate it", self.db_path)

    async def _open(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(self.db_path, timeout=self.busy_timeout)
        try:
            conn.row_factory = aiosqlite.Row
            # Switching the journal mode needs the same lock as the upgrade.
            await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute("PRAGMA foreign_keys=ON")
            await migrate_schema(conn)
        except sqlite3.OperationalError as exc:
            await conn.close()
            if any(sig in str(exc) for sig in _LOCK_SIGNATURES):
                msg = (
                    f"Schema upgrade of {self.db_path} is blocked by another connection "
                    f"({exc}). Close other consumers and retry."
                )
                raise MigrationBlockedError(msg) from exc
            raise
        except BaseException:
            await conn.close()
            raise
        return conn

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
        self._conn = None
        self._init_task = None

    def _require_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            msg = "Bookmark store is not initialized; call initialize() first"
            raise StorageUnavailableError(msg)
        return self._conn

    # --- Transactions ---

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run the body as one write transaction, committing on success."""
        conn = self._require_conn()
        async with self._write_lock:
            try:
                yield conn
                await conn.commit()
            except BaseException:
                await conn.rollback()
                raise
        self.generation += 1

    async def _write_with_retry(
        self,
        work: Callable[[aiosqlite.Connection], Awaitable[None]],
        *,
        label: str,
        record_ids: tuple[str, ...] = (),
        retry_delay: float | None = None,
    ) -> None:
        delay = self.retry_delay if retry_delay is None else retry_delay
        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                async with self.transaction() as conn:
                    await work(conn)
                return
            except sqlite3.Error as exc:
                if attempt == attempts:
                    msg = f"{label} failed after {attempts} attempts: {exc}"
                    raise TransientWriteError(msg, record_ids=record_ids) from exc
                logger.warning("{} failed (attempt {}/{}): {}", label, attempt, attempts, exc)
                await asyncio.sleep(delay * attempt)

    async def _run_batches(
        self,
        items: Sequence[T],
        write: Callable[[aiosqlite.Connection, Sequence[T]], Awaitable[None]],
        *,
        key: Callable[[T], str],
        label: str,
        batch_size: int | None,
        on_progress: BatchProgress | None,
    ) -> BatchReport:
        self._require_conn()
        total = len(items)
        report = BatchReport(total=total)
        if not total:
            return report
        size = batch_size or calculate_batch_size(total)
        logger.debug("{}: {} records in batches of {}", label, total, size)

        for start in range(0, total, size):
            batch = items[start : start + size]
            ids = tuple(key(item) for item in batch)
            try:
                await self._write_with_retry(
                    lambda conn, b=batch: write(conn, b),
                    label=f"{label} batch at {start}",
                    record_ids=ids,
                )
            except TransientWriteError as exc:
                logger.error("{}", exc)
                report.failures.append(BatchFailure(start=start, record_ids=ids, error=exc))
            report.processed += len(batch)
            report.batches += 1
            if on_progress is not None:
                on_progress(report.processed, total)
        return report

    # --- Bookmarks ---

    async def insert_batch(
        self,
        records: Sequence[Record],
        *,
        batch_size: int | None = None,
        on_progress: BatchProgress | None = None,
    ) -> BatchReport:
        """Insert (or overwrite) records in sequential batches."""
        return await self._run_batches(
            records,
            _insert_records,
            key=lambda r: r.id,
            label="Insert",
            batch_size=batch_size,
            on_progress=on_progress,
        )

    async def update_batch(
        self,
        records: Sequence[Record],
        *,
        batch_size: int | None = None,
        on_progress: BatchProgress | None = None,
    ) -> BatchReport:
        """Overwrite existing records; ids that are not stored are ignored."""
        return await self._run_batches(
            records,
            _update_records,
            key=lambda r: r.id,
            label="Update",
            batch_size=batch_size,
            on_progress=on_progress,
        )

    async def delete_batch(
        self,
        ids: Sequence[str],
        *,
        batch_size: int | None = None,
        on_progress: BatchProgress | None = None,
    ) -> BatchReport:
        return await self._run_batches(
            ids,
            _delete_records,
            key=lambda i: i,
            label="Delete",
            batch_size=batch_size,
            on_progress=on_progress,
        )

    async def update(self, record: Record) -> None:
        """Overwrite a stored record.

        Raises:
            InvalidInputError: If no record with this id exists.
        """
        if await self.get_by_id(record.id) is None:
            msg = f"Bookmark '{record.id}' not found."
            raise InvalidInputError(msg)
        await self._write_with_retry(
            lambda conn: _update_records(conn, [record]),
            label=f"Update {record.id}",
            record_ids=(record.id,),
        )

    async def delete(self, record_id: str) -> None:
        await self._write_with_retry(
            lambda conn: _delete_records(conn, [record_id]),
            label=f"Delete {record_id}",
            record_ids=(record_id,),
        )

    async def get_by_id(self, record_id: str) -> Record | None:
        conn = self._require_conn()
        rows = await conn.execute_fetchall("SELECT * FROM bookmarks WHERE id = ?", (record_id,))
        return row_to_record(rows[0]) if rows else None

    async def get_many(self, record_ids: Iterable[str]) -> dict[str, Record]:
        conn = self._require_conn()
        ids = list(record_ids)
        result: dict[str, Record] = {}
        # Stay well below SQLite's bound-parameter limit.
        for start in range(0, len(ids), 500):
            chunk = ids[start : start + 500]
            placeholders = ",".join("?" * len(chunk))
            rows = await conn.execute_fetchall(
                f"SELECT * FROM bookmarks WHERE id IN ({placeholders})", chunk
            )
            for row in rows:
                record = row_to_record(row)
                result[record.id] = record
        return result

    async def get_children(
        self,
        parent_id: str | None,
        *,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[Record]:
        """Children of ``parent_id`` ordered by index, one page at a time.

        Uses the composite ``(parent_id, idx)`` index so only the requested
        page is read; databases without it fall back to sorting the parent's
        children in memory.
        """
        if offset < 0 or (limit is not None and limit < 0):
            msg = f"Invalid page: offset={offset}, limit={limit}"
            raise InvalidInputError(msg)
        conn = self._require_conn()

        if await has_index(conn, PARENT_INDEX):
            rows = await conn.execute_fetchall(
                f"SELECT * FROM bookmarks INDEXED BY {PARENT_INDEX} "
                "WHERE parent_id IS ? ORDER BY idx LIMIT ? OFFSET ?",
                (parent_id, -1 if limit is None else limit, offset),
            )
            return [row_to_record(row) for row in rows]

        logger.debug("Index {} missing; sorting children of {} in memory", PARENT_INDEX, parent_id)
        rows = await conn.execute_fetchall(
            "SELECT * FROM bookmarks WHERE parent_id IS ?", (parent_id,)
        )
        records = sorted((row_to_record(row) for row in rows), key=lambda r: r.index)
        end = None if limit is None else offset + limit
        return records[offset:end]

    async def get_descendants(self, record: Record) -> list[Record]:
        """All records below ``record``, shallowest first."""
        conn = self._require_conn()
        prefix = record.id_path + "/"
        rows = await conn.execute_fetchall(
            "SELECT * FROM bookmarks WHERE substr(id_path, 1, ?) = ? ORDER BY depth, idx",
            (len(prefix), prefix),
        )
        return [row_to_record(row) for row in rows]

    async def range_scan(
        self, column: str, low: str, high: str, *, limit: int
    ) -> list[Record]:
        """Records with ``low <= column < high`` read through the column's index."""
        if column not in _SEARCHABLE_COLUMNS:
            msg = f"Column {column!r} has no search index"
            raise InvalidInputError(msg)
        conn = self._require_conn()
        rows = await conn.execute_fetchall(
            f"SELECT * FROM bookmarks WHERE {column} >= ? AND {column} < ? "
            f"ORDER BY {column} LIMIT ?",
            (low, high, limit),
        )
        return [row_to_record(row) for row in rows]

    async def match_substring(self, term: str, *, limit: int) -> list[Record]:
        """Records whose lowercase title or url contains ``term`` (3+ chars).

        Returns an empty list when the trigram index is unavailable.
        """
        if len(term) < 3:
            return []
        conn = self._require_conn()
        if FTS_TABLE not in await table_names(conn):
            return []
        phrase = '"' + term.replace('"', '""') + '"'
        rows = await conn.execute_fetchall(
            f"SELECT b.* FROM {FTS_TABLE} f JOIN bookmarks b ON b.rowid = f.rowid "
            f"WHERE {FTS_TABLE} MATCH ? LIMIT ?",
            (phrase, limit),
        )
        return [row_to_record(row) for row in rows]

    async def iter_records(self) -> AsyncIterator[Record]:
        """Stream every record, parents before children."""
        conn = self._require_conn()
        async with conn.execute(
            "SELECT * FROM bookmarks ORDER BY depth, parent_id, idx"
        ) as cursor:
            async for row in cursor:
                yield row_to_record(row)

    async def count(self, *, bookmarks_only: bool = False) -> int:
        conn = self._require_conn()
        sql = "SELECT COUNT(*) FROM bookmarks"
        if bookmarks_only:
            sql += " WHERE is_folder = 0"
        rows = await conn.execute_fetchall(sql)
        return rows[0][0]

    async def replace_all(
        self,
        records: Sequence[Record],
        *,
        on_progress: BatchProgress | None = None,
    ) -> BatchReport:
        """Drop all bookmark records and insert ``records`` in batches.

        Crawled metadata survives the reload and is copied back onto the new
        records.
        """

        async def clear(conn: aiosqlite.Connection) -> None:
            await conn.execute("DELETE FROM bookmarks")

        await self._write_with_retry(clear, label="Clear bookmarks")
        report = await self.insert_batch(records, on_progress=on_progress)
        await self._write_with_retry(
            lambda conn: conn.execute(_COPY_CRAWL_METADATA_SQL),
            label="Restore crawl metadata",
        )
        return report

    # --- Settings ---

    async def get_setting(self, key: str, default: Any = None) -> Any:
        conn = self._require_conn()
        rows = await conn.execute_fetchall("SELECT value FROM settings WHERE key = ?", (key,))
        return json.loads(rows[0][0]) if rows else default

    async def save_setting(self, key: str, value: Any, *, description: str | None = None) -> None:
        type_name = type(value).__name__
        payload = json.dumps(value)
        await self._write_with_retry(
            lambda conn: conn.execute(
                "INSERT OR REPLACE INTO settings (key, value, type, description, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (key, payload, type_name, description, _now_ms()),
            ),
            label=f"Save setting {key}",
        )

    async def delete_setting(self, key: str) -> None:
        await self._write_with_retry(
            lambda conn: conn.execute("DELETE FROM settings WHERE key = ?", (key,)),
            label=f"Delete setting {key}",
        )

    async def list_settings(self) -> dict[str, Any]:
        conn = self._require_conn()
        rows = await conn.execute_fetchall("SELECT key, value FROM settings ORDER BY key")
        return {row[0]: json.loads(row[1]) for row in rows}

    # --- Search history ---

    async def add_search_history(
        self,
        query: str,
        *,
        results: int,
        execution_time_ms: float,
        source: str = "cli",
    ) -> None:
        await self._write_with_retry(
            lambda conn: conn.execute(
                "INSERT INTO search_history (query, results, timestamp, execution_time_ms, source) "
                "VALUES (?, ?, ?, ?, ?)",
                (query, results, _now_ms(), execution_time_ms, source),
            ),
            label="Record search history",
        )

    async def get_search_history(self, *, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent searches first."""
        conn = self._require_conn()
        rows = await conn.execute_fetchall(
            "SELECT id, query, results, timestamp, execution_time_ms, source "
            "FROM search_history ORDER BY timestamp DESC, id DESC LIMIT ?",
            (limit,),
        )
        return [dict(row) for row in rows]

    async def clear_search_history(self) -> None:
        await self._write_with_retry(
            lambda conn: conn.execute("DELETE FROM search_history"),
            label="Clear search history",
        )

    # --- Favicon cache ---

    async def save_favicon(self, domain: str, favicon_url: str, *, data: bytes | None = None) -> None:
        await self._write_with_retry(
            lambda conn: conn.execute(
                "INSERT OR REPLACE INTO favicon_cache (domain, favicon_url, data, updated_at) "
                "VALUES (?, ?, ?, ?)",
                (domain.lower(), favicon_url, data, _now_ms()),
            ),
            label=f"Save favicon {domain}",
        )

    async def get_favicon(self, domain: str) -> dict[str, Any] | None:
        conn = self._require_conn()
        rows = await conn.execute_fetchall(
            "SELECT domain, favicon_url, data, updated_at FROM favicon_cache WHERE domain = ?",
            (domain.lower(),),
        )
        return dict(rows[0]) if rows else None

    # --- Crawl metadata ---

    async def save_crawl_metadata(self, metadata: CrawlMetadata) -> None:
        """Store crawled page metadata and refresh the bookmark's derived meta fields."""
        title_lower = normalize_meta_text(metadata.title)
        description_lower = normalize_meta_text(metadata.description)
        tokens = json.dumps(list(tokenize_meta_keywords(metadata.keywords)))
        boost = compute_meta_boost(metadata.crawled_at, metadata.status)

        async def work(conn: aiosqlite.Connection) -> None:
            await conn.execute(
                "INSERT OR REPLACE INTO crawl_metadata "
                "(bookmark_id, url, final_url, title, description, keywords, status, "
                " http_status, crawled_at, title_lower, description_lower, keywords_tokens, "
                " meta_boost) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    metadata.bookmark_id,
                    metadata.url,
                    metadata.final_url,
                    metadata.title,
                    metadata.description,
                    json.dumps(list(metadata.keywords)),
                    metadata.status,
                    metadata.http_status,
                    metadata.crawled_at,
                    title_lower,
                    description_lower,
                    tokens,
                    boost,
                ),
            )
            await conn.execute(
                "UPDATE bookmarks SET meta_title_lower = ?, meta_description_lower = ?, "
                "meta_keywords_tokens = ?, meta_boost = ?, metadata_updated_at = ? WHERE id = ?",
                (title_lower, description_lower, tokens, boost, metadata.crawled_at, metadata.bookmark_id),
            )

        await self._write_with_retry(
            work,
            label=f"Save crawl metadata {metadata.bookmark_id}",
            record_ids=(metadata.bookmark_id,),
            retry_delay=config.CRAWL_METADATA_RETRY_DELAY_SECONDS,
        )

    async def get_crawl_metadata(self, bookmark_id: str) -> CrawlMetadata | None:
        conn = self._require_conn()
        rows = await conn.execute_fetchall(
            "SELECT * FROM crawl_metadata WHERE bookmark_id = ?", (bookmark_id,)
        )
        if not rows:
            return None
        row = rows[0]
        return CrawlMetadata(
            bookmark_id=row["bookmark_id"],
            url=row["url"],
            final_url=row["final_url"],
            title=row["title"],
            description=row["description"],
            keywords=tuple(json.loads(row["keywords"])),
            status=row["status"],
            http_status=row["http_status"],
            crawled_at=row["crawled_at"],
        )

    async def delete_crawl_metadata(self, bookmark_id: str) -> None:
        async def work(conn: aiosqlite.Connection) -> None:
            await conn.execute("DELETE FROM crawl_metadata WHERE bookmark_id = ?", (bookmark_id,))
            await conn.execute(
                "UPDATE bookmarks SET meta_title_lower = '', meta_description_lower = '', "
                "meta_keywords_tokens = '[]', meta_boost = NULL, metadata_updated_at = NULL "
                "WHERE id = ?",
                (bookmark_id,),
            )

        await self._write_with_retry(work, label=f"Delete crawl metadata {bookmark_id}")

    # --- Statistics ---

    async def refresh_global_stats(self) -> dict[str, Any]:
        """Recompute the aggregate snapshot and store it under the 'basic' key."""
        conn = self._require_conn()
        (totals,) = await conn.execute_fetchall(
            "SELECT COALESCE(SUM(is_folder = 0), 0), COALESCE(SUM(is_folder = 1), 0), "
            "COUNT(*), COALESCE(MAX(depth), 0) FROM bookmarks"
        )
        total_bookmarks, total_folders, total_nodes, max_depth = totals
        domain_rows = await conn.execute_fetchall(
            "SELECT domain, COUNT(*) AS n FROM bookmarks WHERE domain != '' "
            "GROUP BY domain ORDER BY n DESC, domain LIMIT 10"
        )
        (domain_count,) = await conn.execute_fetchall(
            "SELECT COUNT(DISTINCT domain) FROM bookmarks WHERE domain != ''"
        )
        (duplicates,) = await conn.execute_fetchall(
            "SELECT COALESCE(SUM(n - 1), 0) FROM "
            "(SELECT COUNT(*) AS n FROM bookmarks WHERE url IS NOT NULL GROUP BY url_lower)"
        )
        (empty_folders,) = await conn.execute_fetchall(
            "SELECT COUNT(*) FROM bookmarks WHERE is_folder = 1 AND children_count = 0"
        )

        stats = {
            "total_bookmarks": total_bookmarks,
            "total_folders": total_folders,
            "total_nodes": total_nodes,
            "max_depth": max_depth,
            "total_domains": domain_count[0],
            "top_domains": [
                {
                    "domain": row[0],
                    "count": row[1],
                    "percentage": round(100 * row[1] / total_bookmarks, 1) if total_bookmarks else 0.0,
                }
                for row in domain_rows
            ],
            "duplicate_urls": duplicates[0],
            "empty_folders": empty_folders[0],
            "last_updated": _now_ms(),
        }
        payload = json.dumps(stats)
        await self._write_with_retry(
            lambda c: c.execute(
                "INSERT OR REPLACE INTO global_stats (key, value, updated_at) VALUES ('basic', ?, ?)",
                (payload, stats["last_updated"]),
            ),
            label="Save global stats",
        )
        return stats

    async def get_global_stats(self) -> dict[str, Any] | None:
        conn = self._require_conn()
        rows = await conn.execute_fetchall("SELECT value FROM global_stats WHERE key = 'basic'")
        return json.loads(rows[0][0]) if rows else None

    async def get_database_stats(self) -> dict[str, int]:
        """Row count per collection."""
        conn = self._require_conn()
        counts: dict[str, int] = {}
        for name in COLLECTIONS:
            rows = await conn.execute_fetchall(f"SELECT COUNT(*) FROM {name}")
            counts[name] = rows[0][0]
        return counts

    async def clear_all(self) -> None:
        async def work(conn: aiosqlite.Connection) -> None:
            for name in COLLECTIONS:
                await conn.execute(f"DELETE FROM {name}")

        await self._write_with_retry(work, label="Clear all collections")

    # --- Health ---

    async def check_health(self) -> HealthReport:
        """Structured schema report; never raises."""
        if self._conn is None:
            return HealthReport(
                is_healthy=False,
                version=None,
                expected_tables=(),
                existing_tables=(),
                errors=("Bookmark store is not initialized",),
            )
        return await check_health(self._conn)


def _now_ms() -> int:
    return int(time.time() * 1000)

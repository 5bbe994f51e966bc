"""SQLite schema creation, migration and health checks for the bookmark store.

Schema revisions are detected from what exists in ``sqlite_master`` and
``PRAGMA table_info`` rather than trusted from the stored version number, so a
database left half-migrated by a crash is completed on the next open.
"""

import sqlite3
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import aiosqlite
from loguru import logger

SCHEMA_VERSION = 4

COLLECTIONS: tuple[str, ...] = (
    "bookmarks",
    "global_stats",
    "settings",
    "search_history",
    "favicon_cache",
    "crawl_metadata",
)

FTS_TABLE = "bookmarks_fts"
PARENT_INDEX = "idx_bookmarks_parent_index"

EXPECTED_TABLES: tuple[str, ...] = (*COLLECTIONS, "metadata", FTS_TABLE)

EXPECTED_INDEXES: tuple[str, ...] = (
    "idx_bookmarks_parent",
    PARENT_INDEX,
    "idx_bookmarks_title",
    "idx_bookmarks_url",
    "idx_bookmarks_domain",
    "idx_bookmarks_id_path",
    "idx_search_history_timestamp",
)

_BASE_SQL = """\
CREATE TABLE IF NOT EXISTS bookmarks (
    id TEXT PRIMARY KEY,
    parent_id TEXT,
    idx INTEGER NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    url TEXT,
    date_added INTEGER NOT NULL DEFAULT 0,
    date_modified INTEGER,
    title_lower TEXT NOT NULL DEFAULT '',
    url_lower TEXT NOT NULL DEFAULT '',
    domain TEXT NOT NULL DEFAULT '',
    keywords TEXT NOT NULL DEFAULT '[]',
    tags TEXT NOT NULL DEFAULT '[]',
    path TEXT NOT NULL DEFAULT '[]',
    path_string TEXT NOT NULL DEFAULT '',
    id_path TEXT NOT NULL DEFAULT '',
    depth INTEGER NOT NULL DEFAULT 0,
    is_folder INTEGER NOT NULL DEFAULT 0,
    children_count INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_bookmarks_parent ON bookmarks(parent_id);
CREATE INDEX IF NOT EXISTS idx_bookmarks_title ON bookmarks(title_lower);
CREATE INDEX IF NOT EXISTS idx_bookmarks_url ON bookmarks(url_lower);
CREATE INDEX IF NOT EXISTS idx_bookmarks_domain ON bookmarks(domain);
CREATE INDEX IF NOT EXISTS idx_bookmarks_id_path ON bookmarks(id_path);

CREATE TABLE IF NOT EXISTS global_stats (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    type TEXT NOT NULL,
    description TEXT,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS search_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    query TEXT NOT NULL,
    results INTEGER NOT NULL DEFAULT 0,
    timestamp INTEGER NOT NULL,
    execution_time_ms REAL NOT NULL DEFAULT 0,
    source TEXT NOT NULL DEFAULT 'cli'
);

CREATE INDEX IF NOT EXISTS idx_search_history_timestamp ON search_history(timestamp);

CREATE TABLE IF NOT EXISTS favicon_cache (
    domain TEXT PRIMARY KEY,
    favicon_url TEXT NOT NULL,
    data BLOB,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

_CRAWL_METADATA_SQL = """\
CREATE TABLE IF NOT EXISTS crawl_metadata (
    bookmark_id TEXT PRIMARY KEY,
    url TEXT NOT NULL,
    final_url TEXT,
    title TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    keywords TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL,
    http_status INTEGER,
    crawled_at INTEGER NOT NULL,
    title_lower TEXT NOT NULL DEFAULT '',
    description_lower TEXT NOT NULL DEFAULT '',
    keywords_tokens TEXT NOT NULL DEFAULT '[]',
    meta_boost REAL NOT NULL DEFAULT 1.0
);
"""

_META_COLUMNS: dict[str, str] = {
    "meta_title_lower": "TEXT NOT NULL DEFAULT ''",
    "meta_description_lower": "TEXT NOT NULL DEFAULT ''",
    "meta_keywords_tokens": "TEXT NOT NULL DEFAULT '[]'",
    "meta_boost": "REAL",
    "metadata_updated_at": "INTEGER",
}

_FTS_SQL = f"""\
CREATE VIRTUAL TABLE IF NOT EXISTS {FTS_TABLE} USING fts5(
    title_lower, url_lower,
    content='bookmarks',
    content_rowid='rowid',
    tokenize='trigram'
);

CREATE TRIGGER IF NOT EXISTS bookmarks_ai AFTER INSERT ON bookmarks BEGIN
    INSERT INTO {FTS_TABLE}(rowid, title_lower, url_lower)
    VALUES (new.rowid, new.title_lower, new.url_lower);
END;

CREATE TRIGGER IF NOT EXISTS bookmarks_ad AFTER DELETE ON bookmarks BEGIN
    INSERT INTO {FTS_TABLE}({FTS_TABLE}, rowid, title_lower, url_lower)
    VALUES ('delete', old.rowid, old.title_lower, old.url_lower);
END;

CREATE TRIGGER IF NOT EXISTS bookmarks_au AFTER UPDATE OF title_lower, url_lower ON bookmarks BEGIN
    INSERT INTO {FTS_TABLE}({FTS_TABLE}, rowid, title_lower, url_lower)
    VALUES ('delete', old.rowid, old.title_lower, old.url_lower);
    INSERT INTO {FTS_TABLE}(rowid, title_lower, url_lower)
    VALUES (new.rowid, new.title_lower, new.url_lower);
END;

INSERT INTO {FTS_TABLE}({FTS_TABLE}) VALUES ('rebuild');
"""


async def table_names(conn: aiosqlite.Connection) -> set[str]:
    rows = await conn.execute_fetchall("SELECT name FROM sqlite_master WHERE type = 'table'")
    return {row[0] for row in rows}


async def index_names(conn: aiosqlite.Connection) -> set[str]:
    rows = await conn.execute_fetchall(
        "SELECT name FROM sqlite_master WHERE type = 'index' AND name NOT LIKE 'sqlite_%'"
    )
    return {row[0] for row in rows}


async def column_names(conn: aiosqlite.Connection, table: str) -> set[str]:
    rows = await conn.execute_fetchall(f"PRAGMA table_info({table})")
    return {row[1] for row in rows}


async def has_index(conn: aiosqlite.Connection, name: str) -> bool:
    rows = await conn.execute_fetchall(
        "SELECT 1 FROM sqlite_master WHERE type = 'index' AND name = ?", (name,)
    )
    return bool(rows)


# --- Revisions ---


async def _base_applied(conn: aiosqlite.Connection) -> bool:
    tables = await table_names(conn)
    return {"bookmarks", "global_stats", "settings", "search_history", "favicon_cache"} <= tables


async def _apply_base(conn: aiosqlite.Connection) -> None:
    await conn.executescript(_BASE_SQL)


async def _crawl_metadata_applied(conn: aiosqlite.Connection) -> bool:
    if "crawl_metadata" not in await table_names(conn):
        return False
    return set(_META_COLUMNS) <= await column_names(conn, "bookmarks")


async def _apply_crawl_metadata(conn: aiosqlite.Connection) -> None:
    await conn.executescript(_CRAWL_METADATA_SQL)
    existing = await column_names(conn, "bookmarks")
    for name, ddl in _META_COLUMNS.items():
        if name not in existing:
            await conn.execute(f"ALTER TABLE bookmarks ADD COLUMN {name} {ddl}")


async def _parent_index_applied(conn: aiosqlite.Connection) -> bool:
    return await has_index(conn, PARENT_INDEX)


async def _apply_parent_index(conn: aiosqlite.Connection) -> None:
    await conn.execute(f"CREATE INDEX IF NOT EXISTS {PARENT_INDEX} ON bookmarks(parent_id, idx)")


async def _fts_applied(conn: aiosqlite.Connection) -> bool:
    return FTS_TABLE in await table_names(conn)


async def _apply_fts(conn: aiosqlite.Connection) -> None:
    try:
        await conn.executescript(_FTS_SQL)
    except sqlite3.OperationalError as exc:
        if "trigram" not in str(exc):
            raise
        # SQLite builds older than 3.34 lack the trigram tokenizer; substring
        # candidates are then simply not available.
        logger.warning("Trigram full-text index unavailable: {}", exc)


@dataclass(frozen=True)
class Revision:
    number: int
    name: str
    is_applied: Callable[[aiosqlite.Connection], Awaitable[bool]]
    apply: Callable[[aiosqlite.Connection], Awaitable[None]]


REVISIONS: tuple[Revision, ...] = (
    Revision(1, "base", _base_applied, _apply_base),
    Revision(2, "crawl_metadata", _crawl_metadata_applied, _apply_crawl_metadata),
    Revision(3, "parent_index", _parent_index_applied, _apply_parent_index),
    Revision(4, "fts", _fts_applied, _apply_fts),
)


async def get_metadata(conn: aiosqlite.Connection, key: str) -> str | None:
    """Return a value from the metadata table, or None if missing."""
    try:
        rows = await conn.execute_fetchall("SELECT value FROM metadata WHERE key = ?", (key,))
    except sqlite3.OperationalError:
        return None
    return rows[0][0] if rows else None


async def set_metadata(conn: aiosqlite.Connection, key: str, value: str) -> None:
    await conn.execute(
        "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
        (key, value),
    )


async def get_schema_version(conn: aiosqlite.Connection) -> int | None:
    """Return the recorded schema version, or None if the metadata table doesn't exist."""
    value = await get_metadata(conn, "schema_version")
    return int(value) if value is not None else None


async def migrate_schema(conn: aiosqlite.Connection) -> list[str]:
    """Apply every schema revision that is not present yet.

    Returns:
        Names of the revisions applied by this call.
    """
    applied: list[str] = []
    for revision in REVISIONS:
        if await revision.is_applied(conn):
            continue
        logger.debug("Applying schema revision {} ({})", revision.number, revision.name)
        await revision.apply(conn)
        applied.append(revision.name)

    if applied or await get_schema_version(conn) != SCHEMA_VERSION:
        await set_metadata(conn, "schema_version", str(SCHEMA_VERSION))
    await conn.commit()
    if applied:
        logger.info("Schema migrated to version {}: {}", SCHEMA_VERSION, ", ".join(applied))
    return applied


@dataclass(frozen=True)
class HealthReport:
    """Expected vs. existing schema objects."""

    is_healthy: bool
    version: int | None
    expected_tables: tuple[str, ...]
    existing_tables: tuple[str, ...]
    missing_tables: tuple[str, ...] = ()
    extra_tables: tuple[str, ...] = ()
    missing_indexes: tuple[str, ...] = ()
    extra_indexes: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    checked_at: int = field(default_factory=lambda: int(time.time() * 1000))


def _is_internal_table(name: str) -> bool:
    return name.startswith("sqlite_") or name.startswith(f"{FTS_TABLE}_")


async def check_health(conn: aiosqlite.Connection) -> HealthReport:
    """Compare expected tables and indexes with what exists. Never raises."""
    try:
        tables = {t for t in await table_names(conn) if not _is_internal_table(t)}
        indexes = await index_names(conn)
        version = await get_schema_version(conn)
    except sqlite3.Error as exc:
        return HealthReport(
            is_healthy=False,
            version=None,
            expected_tables=EXPECTED_TABLES,
            existing_tables=(),
            missing_tables=EXPECTED_TABLES,
            missing_indexes=EXPECTED_INDEXES,
            errors=(f"Schema inspection failed: {exc}",),
        )

    missing_tables = tuple(t for t in EXPECTED_TABLES if t not in tables)
    missing_indexes = tuple(i for i in EXPECTED_INDEXES if i not in indexes)
    errors: list[str] = []
    if version != SCHEMA_VERSION:
        errors.append(f"Schema version {version} does not match expected {SCHEMA_VERSION}")
    return HealthReport(
        is_healthy=not missing_tables and not missing_indexes and not errors,
        version=version,
        expected_tables=EXPECTED_TABLES,
        existing_tables=tuple(sorted(tables)),
        missing_tables=missing_tables,
        extra_tables=tuple(sorted(tables - set(EXPECTED_TABLES))),
        missing_indexes=missing_indexes,
        extra_indexes=tuple(sorted(indexes - set(EXPECTED_INDEXES))),
        errors=tuple(errors),
    )

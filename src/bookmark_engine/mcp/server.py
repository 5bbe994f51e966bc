"""MCP server exposing bookmark search, browsing and reorganization tools."""

import asyncio
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger
from mcp.server.fastmcp import Context, FastMCP

from bookmark_engine.config import resolve_bookmarks_file, resolve_data_directory
from bookmark_engine.core.search.searcher import SearchOptions
from bookmark_engine.core.tree.differ import diff
from bookmark_engine.core.tree.navigation import get_breadcrumbs
from bookmark_engine.core.tree.proposal import apply_edit_script
from bookmark_engine.engine import BookmarkEngine
from bookmark_engine.errors import BookmarkEngineError
from bookmark_engine.hosts.bookmarks_file import BookmarksFileHost
from bookmark_engine.models.node import Record


def _iso(ms: int | None) -> str | None:
    if not ms:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=UTC).isoformat()


def _record_entry(record: Record, *, detailed: bool = False) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "id": record.id,
        "title": record.title,
        "is_folder": record.is_folder,
    }
    if record.url:
        entry["url"] = record.url
    if record.is_folder:
        entry["children_count"] = record.children_count
    if detailed:
        entry.update(
            parent_id=record.parent_id,
            index=record.index,
            path=record.path_string,
            depth=record.depth,
            domain=record.domain,
            date_added=_iso(record.date_added),
            date_modified=_iso(record.date_modified),
        )
    return entry


# --- Core functions (testable without MCP context) ---


async def bookmarks_search(
    engine: BookmarkEngine,
    *,
    query: str = "",
    limit: int = 20,
    sort_by: str = "relevance",
    include_folders: bool = False,
) -> dict[str, Any]:
    """Search bookmarks by title, url, domain, keywords and crawled page metadata.

    Args:
        query: Search words; every word adds to a result's score.
        limit: Max results (1-100, default 20).
        sort_by: "relevance", "title", "date_added" or "url".
        include_folders: Also return matching folders.
    """
    if not query.strip():
        return {"error": "No search query provided.", "results": [], "count": 0}

    options = SearchOptions(
        limit=max(1, min(limit, 100)),
        sort_by=sort_by,  # type: ignore[arg-type]
        include_folders=include_folders,
    )
    try:
        results = await engine.search(query, options)
    except BookmarkEngineError as e:
        return {"error": str(e), "results": [], "count": 0}

    serialized = []
    for r in results:
        entry = _record_entry(r.record)
        entry["path"] = r.record.path_string
        entry["score"] = r.score
        entry["matched_fields"] = list(r.matched_fields)
        serialized.append(entry)
    return {"results": serialized, "count": len(serialized)}


async def bookmarks_list_children(
    engine: BookmarkEngine,
    *,
    parent_id: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> dict[str, Any]:
    """List a folder's children in order, one page at a time.

    Args:
        parent_id: Folder id; omit for the top level.
        offset: Pagination offset.
        limit: Max children (1-200, default 50).
    """
    limit = max(1, min(limit, 200))
    if parent_id is not None:
        parent = await engine.store.get_by_id(parent_id)
        if parent is None:
            return {"error": f"Bookmark '{parent_id}' not found.", "children": [], "count": 0}
        if not parent.is_folder:
            return {"error": f"Bookmark '{parent_id}' is not a folder.", "children": [], "count": 0}
        total = parent.children_count
    else:
        total = None

    try:
        # One extra row tells whether another page exists.
        records = await engine.get_children(parent_id, offset=offset, limit=limit + 1)
    except BookmarkEngineError as e:
        return {"error": str(e), "children": [], "count": 0}

    page = records[:limit]
    output: dict[str, Any] = {
        "children": [_record_entry(record) for record in page],
        "count": len(page),
        "has_more": len(records) > limit,
    }
    if total is not None:
        output["total"] = total
    if output["has_more"]:
        output["next_offset"] = offset + limit
    return output


async def bookmarks_get(engine: BookmarkEngine, *, node_id: str) -> dict[str, Any]:
    """Read one bookmark or folder with its breadcrumbs."""
    record = await engine.store.get_by_id(node_id)
    if record is None:
        return {"error": f"Bookmark '{node_id}' not found."}
    crumbs = await get_breadcrumbs(engine.store, node_id)
    result: dict[str, Any] = {
        "node": _record_entry(record, detailed=True),
        "breadcrumbs": " > ".join(c.title[:40] for c in crumbs if c.title),
    }
    metadata = await engine.store.get_crawl_metadata(node_id)
    if metadata is not None:
        result["metadata"] = {
            "title": metadata.title,
            "description": metadata.description,
            "keywords": list(metadata.keywords),
            "status": metadata.status,
            "crawled_at": _iso(metadata.crawled_at),
        }
    return result


async def bookmarks_health(engine: BookmarkEngine) -> dict[str, Any]:
    """Schema health report of the bookmark database."""
    report = await engine.store.check_health()
    return {
        "is_healthy": report.is_healthy,
        "version": report.version,
        "missing_tables": list(report.missing_tables),
        "extra_tables": list(report.extra_tables),
        "missing_indexes": list(report.missing_indexes),
        "extra_indexes": list(report.extra_indexes),
        "errors": list(report.errors),
        "needs_reload": engine.mirror.needs_reload,
    }


async def bookmarks_stats(engine: BookmarkEngine) -> dict[str, Any]:
    """Aggregate statistics: totals, top domains, duplicates and empty folders."""
    stats = await engine.store.get_global_stats()
    if stats is None:
        stats = await engine.store.refresh_global_stats()
    return {"stats": stats, "collections": await engine.store.get_database_stats()}


async def bookmarks_reorganize(
    engine: BookmarkEngine,
    *,
    edits: list[dict[str, Any]],
    dry_run: bool = False,
) -> dict[str, Any]:
    """Apply a list of edits to the browser's bookmarks.

    Each edit is one of:
      {"action": "add", "parent_id": ..., "title": ..., "url": ..., "index": ..., "ref": ...}
      {"action": "edit", "node_id": ..., "title": ..., "url": ...}
      {"action": "move", "node_id": ..., "target_id": ..., "position": "inside"|"before"|"after"}
      {"action": "delete", "node_id": ...}
    An "add" with a "ref" name can be referenced by later edits in place of an id.

    Args:
        edits: Edits applied in order to a copy of the current tree.
        dry_run: Only report the operations that would run.
    """
    if not edits:
        return {"error": "No edits provided."}

    proposal = await engine.new_proposal()
    try:
        apply_edit_script(proposal, edits)
    except BookmarkEngineError as e:
        return {"error": str(e)}

    result = diff(proposal.original, proposal.roots, temp_prefix=proposal.temp_prefix)
    output: dict[str, Any] = {
        "operations": [op.describe() for op in result.operations],
        "statistics": {
            "creates": result.statistics.creates,
            "updates": result.statistics.updates,
            "moves": result.statistics.moves,
            "deletes": result.statistics.deletes,
        },
    }
    if dry_run or not result.has_changes:
        output["applied"] = 0
        output["success"] = True
        return output

    applied = await engine.apply(result.operations)
    output["applied"] = applied.applied
    output["success"] = applied.success
    if applied.errors:
        output["errors"] = [
            {"kind": e.kind, "node_id": e.node_id, "message": e.message} for e in applied.errors
        ]
    return output


# --- MCP Server Setup ---


@dataclass
class ServerContext:
    """Shared resources for the MCP server lifetime."""

    engine: BookmarkEngine
    data_dir: Path
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def _resolve_paths() -> tuple[Path, Path]:
    data_dir = resolve_data_directory()
    bookmarks_env = os.environ.get("BOOKMARK_ENGINE_BOOKMARKS_FILE")
    bookmarks_file = Path(bookmarks_env).expanduser() if bookmarks_env else resolve_bookmarks_file()
    if bookmarks_file is None or not bookmarks_file.is_file():
        msg = "No Chromium bookmarks file found. Set BOOKMARK_ENGINE_BOOKMARKS_FILE."
        raise FileNotFoundError(msg)
    return data_dir, bookmarks_file


@asynccontextmanager
async def server_lifespan(_server: FastMCP) -> AsyncIterator[ServerContext]:
    """Mirror the bookmarks file on startup, close the store on shutdown."""
    data_dir, bookmarks_file = _resolve_paths()
    engine = BookmarkEngine.for_directory(data_dir, BookmarksFileHost(bookmarks_file))
    try:
        stats = await engine.start()
        if stats is not None:
            logger.info("Indexed {} bookmarks from {}", stats.bookmarks, bookmarks_file)
        yield ServerContext(engine=engine, data_dir=data_dir)
    finally:
        await engine.close()


mcp_server = FastMCP(
    "bookmark-engine",
    instructions="""\
Bookmarks are a tree of folders and links. Search results show matching
bookmarks with their folder path; use bookmarks_list_children_tool to browse a
folder and bookmarks_get_tool for details and breadcrumbs.

## Reorganizing
bookmarks_reorganize_tool changes the real browser bookmarks. Run it with
dry_run=true first and check the listed operations before applying.
""",
    lifespan=server_lifespan,
)


def _ctx(mcp_ctx: Context) -> ServerContext:
    return mcp_ctx.request_context.lifespan_context  # type: ignore[return-value]


# --- MCP Tool Wrappers ---


@mcp_server.tool()
async def bookmarks_search_tool(
    ctx: Context,
    query: str = "",
    limit: int = 20,
    sort_by: str = "relevance",
    include_folders: bool = False,
) -> dict[str, Any]:
    """Search bookmarks by title, url, domain, keywords and page metadata.

    Titles that start with a query word rank highest, then titles containing
    it, then url, domain, keyword and metadata matches.

    Args:
        query: Search words.
        limit: Max results (1-100, default 20).
        sort_by: "relevance", "title", "date_added" or "url".
        include_folders: Also return matching folders.
    """
    return await bookmarks_search(
        _ctx(ctx).engine,
        query=query,
        limit=limit,
        sort_by=sort_by,
        include_folders=include_folders,
    )


@mcp_server.tool()
async def bookmarks_list_children_tool(
    ctx: Context,
    parent_id: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> dict[str, Any]:
    """List a folder's children in order.

    Pagination: When has_more is true, use next_offset in a follow-up call.

    Args:
        parent_id: Folder id; omit for the top level.
        offset: Pagination offset.
        limit: Max children (1-200, default 50).
    """
    return await bookmarks_list_children(
        _ctx(ctx).engine, parent_id=parent_id, offset=offset, limit=limit
    )


@mcp_server.tool()
async def bookmarks_get_tool(ctx: Context, node_id: str) -> dict[str, Any]:
    """Read a bookmark or folder with its breadcrumbs and crawled metadata.

    Args:
        node_id: Bookmark id from search or list results.
    """
    return await bookmarks_get(_ctx(ctx).engine, node_id=node_id)


@mcp_server.tool()
async def bookmarks_stats_tool(ctx: Context) -> dict[str, Any]:
    """Bookmark statistics: totals, top domains, duplicate urls, empty folders."""
    return await bookmarks_stats(_ctx(ctx).engine)


@mcp_server.tool()
async def bookmarks_health_tool(ctx: Context) -> dict[str, Any]:
    """Check the bookmark database schema."""
    return await bookmarks_health(_ctx(ctx).engine)


@mcp_server.tool()
async def bookmarks_reorganize_tool(
    ctx: Context,
    edits: list[dict[str, Any]],
    dry_run: bool = True,
) -> dict[str, Any]:
    """Add, edit, move or delete bookmarks in the browser.

    Edits are applied in order to a copy of the current tree; the difference
    is then replayed against the browser's bookmarks file and re-indexed.

    Args:
        edits: List of {"action": "add"|"edit"|"move"|"delete", ...} edits.
        dry_run: Only report the operations (default true).
    """
    server_ctx = _ctx(ctx)
    async with server_ctx.write_lock:
        return await bookmarks_reorganize(server_ctx.engine, edits=edits, dry_run=dry_run)


def run_mcp_server() -> None:
    """Run the MCP server with stdio transport."""
    from bookmark_engine.logging_config import configure_logging

    configure_logging(verbose=False)
    mcp_server.run(transport="stdio")

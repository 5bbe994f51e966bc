"""CLI for the bookmark engine (import, search, browse, reconcile, MCP server)."""

import asyncio
import json
import time
from pathlib import Path
from typing import Annotated, Any

import typer
from loguru import logger

from bookmark_engine.config import DATABASE_FILENAME, resolve_bookmarks_file, resolve_data_directory
from bookmark_engine.core.database.store import BookmarkStore
from bookmark_engine.core.search.searcher import SearchEngine, SearchOptions
from bookmark_engine.core.tree.differ import diff, diff_history
from bookmark_engine.core.tree.navigation import load_tree
from bookmark_engine.core.tree.proposal import ProposalTree, apply_edit_script
from bookmark_engine.engine import BookmarkEngine
from bookmark_engine.errors import BookmarkEngineError
from bookmark_engine.hosts.bookmarks_file import BookmarksFileHost
from bookmark_engine.logging_config import configure_logging

app = typer.Typer(help="Bookmark engine: index, search and reorganize your browser bookmarks.")

DataDirOption = Annotated[
    Path | None,
    typer.Option("--data-dir", "-d", help="Bookmark database directory"),
]
BookmarksFileOption = Annotated[
    Path | None,
    typer.Option("--bookmarks-file", "-b", help="Chromium 'Bookmarks' file"),
]


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    log_file: Annotated[
        Path | None,
        typer.Option("--log-file", help="Also write a debug log to this file"),
    ] = None,
) -> None:
    configure_logging(verbose=verbose, log_file=log_file)


def _open_store(data_dir: Path | None) -> BookmarkStore:
    """Store in the data directory, raising if no database exists yet."""
    db_path = (data_dir or resolve_data_directory()) / DATABASE_FILENAME
    if not db_path.exists():
        logger.error("Bookmark database not found: {}. Run 'import' first.", db_path)
        raise typer.Exit(1)
    return BookmarkStore(db_path)


def _open_host(bookmarks_file: Path | None) -> BookmarksFileHost:
    path = bookmarks_file or resolve_bookmarks_file()
    if path is None or not path.is_file():
        logger.error("Bookmarks file not found: {}. Pass --bookmarks-file.", path or "(no default found)")
        raise typer.Exit(1)
    try:
        return BookmarksFileHost(path)
    except (OSError, ValueError) as e:
        logger.error("Cannot read bookmarks file {}: {}", path, e)
        raise typer.Exit(1) from e


def _load_edits(edits_file: Path) -> list[dict[str, Any]]:
    try:
        with open(edits_file, encoding="utf-8") as f:
            edits = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error("Cannot read edit script {}: {}", edits_file, e)
        raise typer.Exit(1) from e
    if not isinstance(edits, list):
        logger.error("Edit script must be a JSON list of edits")
        raise typer.Exit(1)
    return edits


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except BookmarkEngineError as e:
        logger.error("{}", e)
        raise typer.Exit(1) from e


@app.command(name="import")
def import_cmd(
    bookmarks_file: BookmarksFileOption = None,
    data_dir: DataDirOption = None,
) -> None:
    """Mirror a bookmarks file into the bookmark database."""
    host = _open_host(bookmarks_file)
    dst = data_dir or resolve_data_directory()

    async def run() -> None:
        engine = BookmarkEngine.for_directory(dst, host)
        try:
            await engine.start(reload=False)
            stats = await engine.reload()
        finally:
            await engine.close()
        typer.echo(
            f"Imported {stats.records_loaded} records "
            f"({stats.bookmarks} bookmarks, {stats.folders} folders) in {stats.duration_ms} ms"
        )
        if stats.records_failed:
            typer.echo(f"{stats.records_failed} records failed to store; run 'import' again.")

    _run(run())


@app.command()
def search(
    query: str = typer.Argument(..., help="Search query"),
    limit: int = typer.Option(10, "--limit", "-n", help="Max results"),
    sort_by: str = typer.Option("relevance", "--sort", "-s", help="relevance, title, date_added or url"),
    folders: bool = typer.Option(False, "--folders", help="Include folders in results"),
    data_dir: DataDirOption = None,
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Search bookmarks by title, url, domain, keywords and page metadata."""
    store = _open_store(data_dir)
    options = SearchOptions(limit=limit, sort_by=sort_by, include_folders=folders)  # type: ignore[arg-type]

    async def run() -> list[Any]:
        await store.initialize()
        try:
            started = time.perf_counter()
            results = await SearchEngine(store).search(query, options)
            await store.add_search_history(
                query,
                results=len(results),
                execution_time_ms=(time.perf_counter() - started) * 1000,
                source="cli",
            )
            return results
        finally:
            await store.close()

    results = _run(run())

    if output_json:
        data = {
            "results": [
                {
                    "id": r.record.id,
                    "title": r.record.title,
                    "url": r.record.url,
                    "path": r.record.path_string,
                    "score": r.score,
                    "matched_fields": list(r.matched_fields),
                }
                for r in results
            ],
            "count": len(results),
        }
        typer.echo(json.dumps(data, indent=2))
        return

    typer.echo(f"Found {len(results)} results:\n")
    for r in results:
        typer.echo(f"  {r.record.title[:80]}  ({r.score:g})")
        if r.record.url:
            typer.echo(f"    {r.record.url}")
        typer.echo(f"    id={r.record.id}  path={r.record.path_string}")
        typer.echo()


@app.command()
def children(
    parent_id: Annotated[str | None, typer.Argument(help="Folder id (omit for top level)")] = None,
    offset: int = typer.Option(0, "--offset", help="Skip this many children"),
    limit: Annotated[int | None, typer.Option("--limit", "-n", help="Max children")] = None,
    data_dir: DataDirOption = None,
) -> None:
    """List the children of a folder in order."""
    store = _open_store(data_dir)

    async def run() -> list[Any]:
        await store.initialize()
        try:
            return await store.get_children(parent_id, offset=offset, limit=limit)
        finally:
            await store.close()

    for record in _run(run()):
        marker = "+" if record.is_folder else "-"
        suffix = f" ({record.children_count})" if record.is_folder else f"  {record.url}"
        typer.echo(f"  {record.index:>3} {marker} {record.title}{suffix}  [id={record.id}]")


@app.command()
def health(data_dir: DataDirOption = None) -> None:
    """Check the database schema: tables, indexes and version."""
    store = _open_store(data_dir)

    async def run() -> Any:
        await store.initialize()
        try:
            return await store.check_health()
        finally:
            await store.close()

    report = _run(run())
    typer.echo(f"Schema version: {report.version}")
    typer.echo(f"Healthy: {'yes' if report.is_healthy else 'no'}")
    for label, items in (
        ("Missing tables", report.missing_tables),
        ("Extra tables", report.extra_tables),
        ("Missing indexes", report.missing_indexes),
        ("Extra indexes", report.extra_indexes),
        ("Errors", report.errors),
    ):
        if items:
            typer.echo(f"{label}: {', '.join(items)}")
    if not report.is_healthy:
        raise typer.Exit(1)


@app.command()
def stats(data_dir: DataDirOption = None) -> None:
    """Show bookmark statistics and collection sizes."""
    store = _open_store(data_dir)

    async def run() -> tuple[Any, dict[str, int]]:
        await store.initialize()
        try:
            return await store.refresh_global_stats(), await store.get_database_stats()
        finally:
            await store.close()

    global_stats, counts = _run(run())
    typer.echo(f"Bookmarks: {global_stats['total_bookmarks']}")
    typer.echo(f"Folders: {global_stats['total_folders']}")
    typer.echo(f"Max depth: {global_stats['max_depth']}")
    typer.echo(f"Domains: {global_stats['total_domains']}")
    typer.echo(f"Duplicate urls: {global_stats['duplicate_urls']}")
    typer.echo(f"Empty folders: {global_stats['empty_folders']}")
    if global_stats["top_domains"]:
        typer.echo("\nTop domains:")
        for entry in global_stats["top_domains"]:
            typer.echo(f"  {entry['domain']}: {entry['count']} ({entry['percentage']}%)")
    typer.echo("\nCollections:")
    for name, count in counts.items():
        typer.echo(f"  {name}: {count}")


@app.command(name="diff")
def diff_cmd(
    edits_file: Path = typer.Argument(..., help="JSON edit script"),
    history: bool = typer.Option(False, "--history", help="Show one step per edit"),
    data_dir: DataDirOption = None,
) -> None:
    """Show the operations an edit script would apply, without applying them."""
    edits = _load_edits(edits_file)
    store = _open_store(data_dir)

    async def run() -> Any:
        await store.initialize()
        try:
            proposal = ProposalTree(await load_tree(store))
        finally:
            await store.close()
        apply_edit_script(proposal, edits)
        if history:
            return diff_history(proposal.history)
        return diff(proposal.original, proposal.roots)

    result = _run(run())
    s = result.statistics
    typer.echo(
        f"{s.total} operations: {s.creates} creates, {s.updates} updates, "
        f"{s.moves} moves, {s.deletes} deletes\n"
    )
    for operation in result.operations:
        typer.echo(f"  {operation.describe()}")


@app.command()
def apply(
    edits_file: Path = typer.Argument(..., help="JSON edit script"),
    bookmarks_file: BookmarksFileOption = None,
    data_dir: DataDirOption = None,
) -> None:
    """Apply an edit script to the bookmarks file and re-index."""
    edits = _load_edits(edits_file)
    host = _open_host(bookmarks_file)
    dst = data_dir or resolve_data_directory()

    def progress(current: int, total: int, description: str) -> None:
        typer.echo(f"  [{current}/{total}] {description}")

    async def run() -> Any:
        engine = BookmarkEngine.for_directory(dst, host)
        try:
            await engine.start()
            proposal = await engine.new_proposal()
            apply_edit_script(proposal, edits)
            return await engine.apply_proposal(proposal, on_progress=progress)
        finally:
            await engine.close()

    result = _run(run())
    if result.success:
        typer.echo(f"Applied {result.applied} operations.")
        return
    typer.echo(f"Applied {result.applied} operations, {len(result.errors)} failed:")
    for error in result.errors:
        typer.echo(f"  {error.kind} {error.node_id}: {error.message}")
    raise typer.Exit(1)


@app.command()
def serve() -> None:
    """Start the MCP server (stdio transport)."""
    from bookmark_engine.mcp.server import run_mcp_server

    run_mcp_server()

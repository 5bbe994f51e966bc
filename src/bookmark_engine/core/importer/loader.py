"""Full mirror of the tree host into the bookmark store."""

import time
from dataclasses import dataclass

from loguru import logger

from bookmark_engine.core.database.store import BookmarkStore
from bookmark_engine.core.importer.records import flatten_tree
from bookmark_engine.protocols import BatchProgress, TreeHostProtocol


@dataclass(frozen=True)
class ReloadStats:
    """Summary of a full reload."""

    records_loaded: int
    records_failed: int
    bookmarks: int
    folders: int
    duration_ms: int


async def reload_from_host(
    store: BookmarkStore,
    host: TreeHostProtocol,
    *,
    on_progress: BatchProgress | None = None,
) -> ReloadStats:
    """Replace the stored records with a fresh snapshot of the host's tree.

    Args:
        store: Initialized store.
        host: Authoritative tree host.
        on_progress: Called with (processed, total) after each batch.

    Returns:
        ReloadStats with record counts.
    """
    started = time.perf_counter()
    roots = await host.get_tree()
    records = flatten_tree(roots)
    report = await store.replace_all(records, on_progress=on_progress)
    await store.refresh_global_stats()

    folders = sum(1 for r in records if r.is_folder)
    duration_ms = int((time.perf_counter() - started) * 1000)
    if report.failures:
        logger.warning(
            "Reload incomplete: {} of {} records failed to store",
            len(report.failed_ids),
            len(records),
        )
    logger.info(
        "Reload complete: {} records ({} bookmarks, {} folders) in {} ms",
        report.succeeded,
        len(records) - folders,
        folders,
        duration_ms,
    )
    return ReloadStats(
        records_loaded=report.succeeded,
        records_failed=len(report.failed_ids),
        bookmarks=len(records) - folders,
        folders=folders,
        duration_ms=duration_ms,
    )

"""Apply host change notifications to the store as targeted patches.

Events are queued by :meth:`MirrorChannel.publish` (the host listener) and
applied one at a time by a single consumer task, so at most one mirror update
is in flight and patches never interleave.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace

from loguru import logger

from bookmark_engine.core.database.store import BookmarkStore, upsert_records
from bookmark_engine.core.importer.records import (
    extract_domain,
    extract_keywords,
    flatten_tree,
    format_path,
)
from bookmark_engine.errors import InvalidInputError
from bookmark_engine.models.events import (
    ChangeEvent,
    ChildrenReordered,
    NodeChanged,
    NodeCreated,
    NodeMoved,
    NodeRemoved,
)
from bookmark_engine.models.node import Record


@dataclass
class MirrorStats:
    applied: int = 0
    self_caused: int = 0
    external: int = 0
    failed: int = 0


def rebase_descendants(
    descendants: Sequence[Record], *, old: Record, new: Record
) -> list[Record]:
    """Recompute path, id path and depth of ``descendants`` after ``old`` became ``new``."""
    result = []
    for record in descendants:
        path = (*new.path, new.title, *record.path[old.depth + 1 :])
        result.append(
            replace(
                record,
                path=path,
                path_string=format_path(path),
                id_path=new.id_path + record.id_path[len(old.id_path) :],
                depth=record.depth - old.depth + new.depth,
            )
        )
    return result


class MirrorChannel:
    """Single-writer apply loop for host change notifications."""

    def __init__(
        self,
        store: BookmarkStore,
        *,
        is_self_change: Callable[[], bool] | None = None,
    ) -> None:
        self._store = store
        self._is_self_change = is_self_change or (lambda: False)
        self._queue: asyncio.Queue[ChangeEvent | None] = asyncio.Queue()
        self._lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None
        self.stats = MirrorStats()
        self.needs_reload = False

    def publish(self, event: ChangeEvent) -> None:
        """Queue an event; used as the host's change listener."""
        self._queue.put_nowait(event)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Apply queued events, then end the consumer task."""
        if self._task is None:
            return
        self._queue.put_nowait(None)
        await self._task
        self._task = None

    async def drain(self) -> None:
        """Wait until every queued event has been applied."""
        if self._task is None or self._task.done():
            return
        await self._queue.join()

    @asynccontextmanager
    async def paused(self) -> AsyncIterator[None]:
        """Hold off event application for the duration of the block."""
        async with self._lock:
            yield

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                if event is None:
                    return
                async with self._lock:
                    await self.apply(event)
            except Exception:
                self.stats.failed += 1
                self.needs_reload = True
                logger.exception("Failed to mirror {}; a full reload is needed", type(event).__name__)
            finally:
                self._queue.task_done()

    async def apply(self, event: ChangeEvent) -> None:
        """Patch the store for one event."""
        if self._is_self_change():
            self.stats.self_caused += 1
            origin = "self"
        else:
            self.stats.external += 1
            origin = "external"
        logger.debug("Mirroring {} ({})", event, origin)

        match event:
            case NodeCreated():
                await self._apply_created(event)
            case NodeRemoved():
                await self._apply_removed(event)
            case NodeChanged():
                await self._apply_changed(event)
            case NodeMoved():
                await self._apply_moved(event)
            case ChildrenReordered():
                await self._apply_reordered(event)
        self.stats.applied += 1

    async def _require(self, node_id: str) -> Record:
        record = await self._store.get_by_id(node_id)
        if record is None:
            msg = f"Bookmark '{node_id}' is not mirrored"
            raise InvalidInputError(msg)
        return record

    async def _apply_created(self, event: NodeCreated) -> None:
        node = event.node
        if await self._store.get_by_id(node.id) is not None:
            logger.debug("Skipping create of {}: already mirrored", node.id)
            return
        parent = await self._require(node.parent_id) if node.parent_id else None
        records = flatten_tree([node], parent=parent, start_index=node.index)

        async with self._store.transaction() as conn:
            await conn.execute(
                "UPDATE bookmarks SET idx = idx + 1 WHERE parent_id IS ? AND idx >= ?",
                (node.parent_id, node.index),
            )
            await upsert_records(conn, records)
            if parent is not None:
                await conn.execute(
                    "UPDATE bookmarks SET children_count = children_count + 1 WHERE id = ?",
                    (parent.id,),
                )

    async def _apply_removed(self, event: NodeRemoved) -> None:
        record = await self._store.get_by_id(event.node_id)
        if record is None:
            logger.debug("Skipping removal of {}: not mirrored", event.node_id)
            return
        prefix = record.id_path + "/"

        async with self._store.transaction() as conn:
            await conn.execute(
                "DELETE FROM bookmarks WHERE id = ? OR substr(id_path, 1, ?) = ?",
                (record.id, len(prefix), prefix),
            )
            await conn.execute(
                "UPDATE bookmarks SET idx = idx - 1 WHERE parent_id IS ? AND idx > ?",
                (record.parent_id, record.index),
            )
            if record.parent_id is not None:
                await conn.execute(
                    "UPDATE bookmarks SET children_count = children_count - 1 WHERE id = ?",
                    (record.parent_id,),
                )

    async def _apply_changed(self, event: NodeChanged) -> None:
        record = await self._require(event.node_id)
        url = event.url if not record.is_folder else None
        updated = replace(
            record,
            title=event.title,
            url=url,
            title_lower=event.title.lower(),
            url_lower=(url or "").lower(),
            domain=extract_domain(url),
            keywords=extract_keywords(event.title, url),
            date_modified=int(time.time() * 1000),
        )
        rebased: list[Record] = []
        if record.is_folder and record.title != event.title:
            descendants = await self._store.get_descendants(record)
            rebased = rebase_descendants(descendants, old=record, new=updated)

        async with self._store.transaction() as conn:
            await upsert_records(conn, [updated, *rebased])

    async def _apply_moved(self, event: NodeMoved) -> None:
        record = await self._require(event.node_id)
        if record.parent_id == event.parent_id and record.index == event.index:
            logger.debug("Skipping move of {}: already in place", event.node_id)
            return
        new_parent = await self._require(event.parent_id)
        parent_changed = record.parent_id != new_parent.id

        path = (*new_parent.path, new_parent.title)
        moved = replace(
            record,
            parent_id=new_parent.id,
            index=event.index,
            path=path,
            path_string=format_path(path),
            id_path=f"{new_parent.id_path}/{record.id}",
            depth=new_parent.depth + 1,
        )
        rebased: list[Record] = []
        if parent_changed:
            descendants = await self._store.get_descendants(record)
            rebased = rebase_descendants(descendants, old=record, new=moved)

        async with self._store.transaction() as conn:
            await conn.execute(
                "UPDATE bookmarks SET idx = idx - 1 WHERE parent_id IS ? AND idx > ? AND id != ?",
                (record.parent_id, record.index, record.id),
            )
            await conn.execute(
                "UPDATE bookmarks SET idx = idx + 1 WHERE parent_id IS ? AND idx >= ? AND id != ?",
                (new_parent.id, event.index, record.id),
            )
            await upsert_records(conn, [moved, *rebased])
            if parent_changed:
                await conn.execute(
                    "UPDATE bookmarks SET children_count = children_count - 1 WHERE id = ?",
                    (record.parent_id,),
                )
                await conn.execute(
                    "UPDATE bookmarks SET children_count = children_count + 1 WHERE id = ?",
                    (new_parent.id,),
                )

    async def _apply_reordered(self, event: ChildrenReordered) -> None:
        async with self._store.transaction() as conn:
            await conn.executemany(
                "UPDATE bookmarks SET idx = ? WHERE id = ? AND parent_id = ?",
                [(i, child_id, event.parent_id) for i, child_id in enumerate(event.child_ids)],
            )

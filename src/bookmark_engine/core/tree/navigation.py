"""Tree navigation over the store: in-memory trees and breadcrumbs."""

from collections import defaultdict
from collections.abc import Iterable

from bookmark_engine.core.database.store import BookmarkStore
from bookmark_engine.models.node import BookmarkNode, Record


def build_tree(records: Iterable[Record]) -> list[BookmarkNode]:
    """Assemble records into frozen trees, children ordered by index.

    Records whose parent is not among ``records`` become roots.
    """
    by_parent: dict[str | None, list[Record]] = defaultdict(list)
    ids: set[str] = set()
    for record in records:
        by_parent[record.parent_id].append(record)
        ids.add(record.id)

    def build(record: Record) -> BookmarkNode:
        children = sorted(by_parent.get(record.id, ()), key=lambda r: r.index)
        return BookmarkNode(
            id=record.id,
            title=record.title,
            parent_id=record.parent_id,
            index=record.index,
            url=record.url,
            date_added=record.date_added,
            date_modified=record.date_modified,
            children=tuple(build(child) for child in children),
        )

    roots = [
        record
        for parent_id, group in by_parent.items()
        if parent_id is None or parent_id not in ids
        for record in group
    ]
    roots.sort(key=lambda r: r.index)
    return [build(record) for record in roots]


async def load_tree(store: BookmarkStore) -> list[BookmarkNode]:
    """The "original" tree as currently mirrored in the store."""
    return build_tree([record async for record in store.iter_records()])


async def get_breadcrumbs(store: BookmarkStore, node_id: str) -> tuple[Record, ...]:
    """Ancestors of a node from the root down, excluding the node itself."""
    record = await store.get_by_id(node_id)
    if record is None:
        return ()
    ancestor_ids = [part for part in record.id_path.strip("/").split("/")[:-1] if part]
    found = await store.get_many(ancestor_ids)
    return tuple(found[i] for i in ancestor_ids if i in found)

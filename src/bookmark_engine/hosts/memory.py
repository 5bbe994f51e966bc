"""In-process authoritative tree host."""

import itertools
import time
from collections.abc import Sequence
from dataclasses import dataclass, field

from loguru import logger

from bookmark_engine.errors import OperationExecutionError
from bookmark_engine.models.events import ChangeEvent, NodeChanged, NodeCreated, NodeMoved, NodeRemoved
from bookmark_engine.models.node import BookmarkNode
from bookmark_engine.protocols import ChangeListener


@dataclass
class _Entry:
    id: str
    title: str
    parent_id: str | None
    url: str | None
    date_added: int
    date_modified: int | None = None
    children: list[str] = field(default_factory=list)


def _now_ms() -> int:
    return int(time.time() * 1000)


class InMemoryTreeHost:
    """Mutable bookmark tree that notifies listeners of every change.

    Ids are assigned from an increasing counter and never reused. Nodes in
    ``permanent_ids`` (by default the top-level ones) cannot be changed,
    like a browser's root folders, and a folder holding only such nodes
    accepts no new children.
    """

    def __init__(self, roots: Sequence[BookmarkNode] = ()) -> None:
        self._entries: dict[str, _Entry] = {}
        self._roots: list[str] = []
        self._listeners: list[ChangeListener] = []
        for root in roots:
            self._load(root, None)
        self.permanent_ids: set[str] = set(self._roots)
        numeric = [int(node_id) for node_id in self._entries if node_id.isdigit()]
        self._ids = itertools.count(max(numeric, default=0) + 1)

    def _load(self, node: BookmarkNode, parent_id: str | None) -> None:
        self._entries[node.id] = _Entry(
            id=node.id,
            title=node.title,
            parent_id=parent_id,
            url=node.url,
            date_added=node.date_added,
            date_modified=node.date_modified,
        )
        if parent_id is None:
            self._roots.append(node.id)
        else:
            self._entries[parent_id].children.append(node.id)
        for child in node.children:
            self._load(child, node.id)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._entries

    def _siblings(self, entry: _Entry) -> list[str]:
        return self._roots if entry.parent_id is None else self._entries[entry.parent_id].children

    def _require(self, node_id: str, message: str = "Can't find bookmark for id.") -> _Entry:
        entry = self._entries.get(node_id)
        if entry is None:
            msg = f"{message} ({node_id})"
            raise OperationExecutionError(msg)
        return entry

    def _require_mutable(self, node_id: str) -> _Entry:
        entry = self._require(node_id)
        if entry.id in self.permanent_ids:
            msg = f"Can't modify the root bookmark folders. ({node_id})"
            raise OperationExecutionError(msg)
        return entry

    def _require_folder(self, parent_id: str) -> _Entry:
        parent = self._require(parent_id, "Can't find parent bookmark id.")
        if parent.url is not None:
            msg = f"Parameter 'parentId' does not specify a folder. ({parent_id})"
            raise OperationExecutionError(msg)
        if parent.children and all(child_id in self.permanent_ids for child_id in parent.children):
            msg = f"Can't modify the root bookmark folders. ({parent_id})"
            raise OperationExecutionError(msg)
        return parent

    def snapshot(self, node_id: str) -> BookmarkNode:
        """Frozen copy of a node and its subtree."""
        entry = self._require(node_id)
        return BookmarkNode(
            id=entry.id,
            title=entry.title,
            parent_id=entry.parent_id,
            index=self._siblings(entry).index(entry.id),
            url=entry.url,
            date_added=entry.date_added,
            date_modified=entry.date_modified,
            children=tuple(self.snapshot(child_id) for child_id in entry.children),
        )

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def _emit(self, event: ChangeEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    async def get_tree(self) -> list[BookmarkNode]:
        return [self.snapshot(root_id) for root_id in self._roots]

    async def create(
        self,
        parent_id: str,
        title: str,
        url: str | None = None,
        index: int | None = None,
    ) -> BookmarkNode:
        parent = self._require_folder(parent_id)
        position = len(parent.children) if index is None else max(0, min(index, len(parent.children)))
        entry = _Entry(id=str(next(self._ids)), title=title, parent_id=parent_id, url=url, date_added=_now_ms())
        self._entries[entry.id] = entry
        parent.children.insert(position, entry.id)

        node = self.snapshot(entry.id)
        logger.debug("Host created {} under {} at {}", entry.id, parent_id, position)
        self._emit(NodeCreated(node))
        return node

    async def update(
        self, node_id: str, *, title: str | None = None, url: str | None = None
    ) -> BookmarkNode:
        entry = self._require_mutable(node_id)
        if url is not None and entry.url is None:
            msg = f"Can't set URL of a bookmark folder. ({node_id})"
            raise OperationExecutionError(msg)
        if title is not None:
            entry.title = title
        if url is not None:
            entry.url = url
        entry.date_modified = _now_ms()

        self._emit(NodeChanged(node_id=node_id, title=entry.title, url=entry.url))
        return self.snapshot(node_id)

    async def move(self, node_id: str, *, parent_id: str, index: int) -> BookmarkNode:
        entry = self._require_mutable(node_id)
        parent = self._require_folder(parent_id)
        ancestor: str | None = parent_id
        while ancestor is not None:
            if ancestor == node_id:
                msg = f"Can't move a folder to itself or its descendant. ({node_id})"
                raise OperationExecutionError(msg)
            ancestor = self._entries[ancestor].parent_id

        old_parent_id = entry.parent_id
        if old_parent_id is None:
            msg = f"Can't move a top-level bookmark node. ({node_id})"
            raise OperationExecutionError(msg)
        old_siblings = self._entries[old_parent_id].children
        old_index = old_siblings.index(node_id)
        old_siblings.remove(node_id)
        position = max(0, min(index, len(parent.children)))
        parent.children.insert(position, node_id)
        entry.parent_id = parent_id

        self._emit(
            NodeMoved(
                node_id=node_id,
                parent_id=parent_id,
                index=position,
                old_parent_id=old_parent_id,
                old_index=old_index,
            )
        )
        return self.snapshot(node_id)

    async def remove(self, node_id: str) -> None:
        entry = self._require_mutable(node_id)
        if entry.children:
            msg = f"Can't remove non-empty folder (use recursive to force). ({node_id})"
            raise OperationExecutionError(msg)
        self._detach(entry)

    async def remove_subtree(self, node_id: str) -> None:
        self._detach(self._require_mutable(node_id))

    def _detach(self, entry: _Entry) -> None:
        siblings = self._siblings(entry)
        index = siblings.index(entry.id)
        siblings.remove(entry.id)
        stack = [entry.id]
        while stack:
            removed = self._entries.pop(stack.pop())
            stack.extend(removed.children)
        self._emit(NodeRemoved(node_id=entry.id, parent_id=entry.parent_id, index=index))

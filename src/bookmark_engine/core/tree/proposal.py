"""Editable proposal tree built from persistent, copy-on-write nodes.

Every edit produces new nodes only along the path from the edited parent to
the root; untouched subtrees are shared with earlier snapshots. Each edit
appends the new roots to :attr:`ProposalTree.history`.
"""

import time
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import replace
from typing import Any, Literal

from loguru import logger

from bookmark_engine.config import TEMP_ID_PREFIX
from bookmark_engine.errors import InvalidInputError
from bookmark_engine.models.node import BookmarkNode

MovePosition = Literal["inside", "before", "after"]

Roots = tuple[BookmarkNode, ...]


def _now_ms() -> int:
    return int(time.time() * 1000)


def renumber(children: Sequence[BookmarkNode], parent_id: str | None) -> Roots:
    """Assign indexes 0..n-1 and ``parent_id``, reusing nodes that already match."""
    return tuple(
        child
        if child.index == i and child.parent_id == parent_id
        else replace(child, index=i, parent_id=parent_id)
        for i, child in enumerate(children)
    )


def locate(roots: Roots, node_id: str) -> list[int] | None:
    """Child positions leading from the roots to ``node_id``."""
    for i, node in enumerate(roots):
        if node.id == node_id:
            return [i]
        below = locate(node.children, node_id)
        if below is not None:
            return [i, *below]
    return None


def node_at(roots: Roots, path: Sequence[int]) -> BookmarkNode:
    node = roots[path[0]]
    for i in path[1:]:
        node = node.children[i]
    return node


def children_at(roots: Roots, path: Sequence[int]) -> Roots:
    """Children of the node at ``path``; the empty path means the roots themselves."""
    return node_at(roots, path).children if path else roots


def with_children(roots: Roots, path: Sequence[int], children: Roots) -> Roots:
    """Copy of ``roots`` where the node at ``path`` has ``children``."""
    if not path:
        return children
    i = path[0]
    node = roots[i]
    new_node = replace(node, children=with_children(node.children, path[1:], children) if len(path) > 1 else children)
    return (*roots[:i], new_node, *roots[i + 1 :])


class ProposalTree:
    """The user's working copy of the bookmark tree.

    Node ids of staged additions start with ``temp_prefix`` until the host
    assigns real ones.
    """

    def __init__(self, roots: Sequence[BookmarkNode], *, temp_prefix: str = TEMP_ID_PREFIX) -> None:
        self.temp_prefix = temp_prefix
        self._roots: Roots = tuple(roots)
        self.history: list[Roots] = [self._roots]

    @property
    def roots(self) -> Roots:
        return self._roots

    @property
    def original(self) -> Roots:
        return self.history[0]

    @property
    def has_edits(self) -> bool:
        return len(self.history) > 1

    def find(self, node_id: str) -> BookmarkNode | None:
        path = locate(self._roots, node_id)
        return node_at(self._roots, path) if path is not None else None

    def _require_path(self, node_id: str) -> list[int]:
        path = locate(self._roots, node_id)
        if path is None:
            msg = f"Bookmark '{node_id}' not found in proposal."
            raise InvalidInputError(msg)
        return path

    def _commit(self, roots: Roots) -> None:
        self._roots = roots
        self.history.append(roots)

    def _root_slot(self, roots: Roots) -> tuple[list[int], str | None]:
        # A single top-level folder is the host's hidden root; its children
        # are the permanent folders that accept new nodes.
        if len(roots) == 1 and roots[0].is_folder:
            first = roots[0].children[0] if roots[0].children else None
            if first is not None and first.is_folder:
                return [0, 0], first.id
            return [0], roots[0].id
        return [], None

    def add(
        self,
        parent_id: str,
        title: str,
        *,
        url: str | None = None,
        index: int | None = None,
    ) -> BookmarkNode:
        """Stage a new bookmark (``url`` given) or folder under ``parent_id``."""
        path = self._require_path(parent_id)
        parent = node_at(self._roots, path)
        if not parent.is_folder:
            msg = f"Cannot add below bookmark '{parent_id}': not a folder."
            raise InvalidInputError(msg)

        node = BookmarkNode(
            id=f"{self.temp_prefix}{uuid.uuid4().hex[:12]}",
            title=title,
            parent_id=parent_id,
            url=url,
            date_added=_now_ms(),
        )
        children = list(parent.children)
        position = len(children) if index is None else max(0, min(index, len(children)))
        children.insert(position, node)
        self._commit(with_children(self._roots, path, renumber(children, parent_id)))
        return children_at(self._roots, path)[position]

    def edit(self, node_id: str, *, title: str | None = None, url: str | None = None) -> BookmarkNode:
        """Change title and/or url of a node."""
        path = self._require_path(node_id)
        node = node_at(self._roots, path)
        if url is not None and node.is_folder:
            msg = f"Folder '{node_id}' cannot have a url."
            raise InvalidInputError(msg)
        if title is None and url is None:
            return node

        updated = replace(
            node,
            title=node.title if title is None else title,
            url=node.url if url is None else url,
            date_modified=_now_ms(),
        )
        siblings = list(children_at(self._roots, path[:-1]))
        siblings[path[-1]] = updated
        self._commit(with_children(self._roots, path[:-1], tuple(siblings)))
        return updated

    def delete(self, node_id: str) -> BookmarkNode:
        """Remove a node together with its subtree."""
        path = self._require_path(node_id)
        node = node_at(self._roots, path)
        siblings = list(children_at(self._roots, path[:-1]))
        del siblings[path[-1]]
        self._commit(with_children(self._roots, path[:-1], renumber(siblings, node.parent_id)))
        return node

    def move(self, node_id: str, target_id: str, position: MovePosition = "inside") -> BookmarkNode:
        """Move a node inside, before or after ``target_id``.

        A target that cannot be found puts the node at index 0 of the first
        root folder.
        """
        if position not in ("inside", "before", "after"):
            msg = f"Unknown move position {position!r}"
            raise InvalidInputError(msg)
        path = self._require_path(node_id)
        node = node_at(self._roots, path)
        target_path = locate(self._roots, target_id)
        if target_path is not None and target_path[: len(path)] == path:
            msg = f"Cannot move '{node_id}' relative to itself or one of its descendants."
            raise InvalidInputError(msg)
        if target_path is not None and position == "inside" and not node_at(self._roots, target_path).is_folder:
            msg = f"Cannot move into bookmark '{target_id}': not a folder."
            raise InvalidInputError(msg)

        siblings = list(children_at(self._roots, path[:-1]))
        del siblings[path[-1]]
        roots = with_children(self._roots, path[:-1], renumber(siblings, node.parent_id))

        target_path = locate(roots, target_id)
        if target_path is None:
            logger.warning("Move target {} not found; placing {} in the first root folder", target_id, node_id)
            dest_path, dest_parent_id = self._root_slot(roots)
            slot = 0
        elif position == "inside":
            dest_path, dest_parent_id = target_path, target_id
            slot = len(children_at(roots, dest_path))
        else:
            dest_path = target_path[:-1]
            dest_parent_id = node_at(roots, target_path).parent_id
            slot = target_path[-1] + (1 if position == "after" else 0)

        dest_children = list(children_at(roots, dest_path))
        dest_children.insert(slot, node)
        self._commit(with_children(roots, dest_path, renumber(dest_children, dest_parent_id)))
        return children_at(self._roots, dest_path)[slot]


def apply_edit_script(proposal: ProposalTree, edits: Sequence[Mapping[str, Any]]) -> dict[str, str]:
    """Run a list of edits (``{"action": "add" | "edit" | "move" | "delete", ...}``).

    An ``add`` may carry a ``ref`` name; later edits can use that name
    wherever a node id is expected.

    Returns:
        Mapping of each ``ref`` to the temporary id assigned to it.
    """
    refs: dict[str, str] = {}

    def node_ref(edit: Mapping[str, Any], key: str) -> str:
        value = edit.get(key)
        if not isinstance(value, str) or not value:
            msg = f"Edit {edit!r} is missing '{key}'"
            raise InvalidInputError(msg)
        return refs.get(value, value)

    for edit in edits:
        match edit.get("action"):
            case "add":
                node = proposal.add(
                    node_ref(edit, "parent_id"),
                    edit.get("title", ""),
                    url=edit.get("url"),
                    index=edit.get("index"),
                )
                if edit.get("ref"):
                    refs[edit["ref"]] = node.id
            case "edit":
                proposal.edit(node_ref(edit, "node_id"), title=edit.get("title"), url=edit.get("url"))
            case "move":
                proposal.move(
                    node_ref(edit, "node_id"),
                    node_ref(edit, "target_id"),
                    edit.get("position", "inside"),
                )
            case "delete":
                proposal.delete(node_ref(edit, "node_id"))
            case other:
                msg = f"Unknown edit action {other!r}"
                raise InvalidInputError(msg)
    return refs

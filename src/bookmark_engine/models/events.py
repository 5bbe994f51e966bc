"""Change notifications emitted by a tree host."""

from dataclasses import dataclass
from typing import TypeAlias

from bookmark_engine.models.node import BookmarkNode


@dataclass(frozen=True)
class NodeCreated:
    """``node`` (with its subtree, if any) was inserted at ``node.parent_id``/``node.index``."""

    node: BookmarkNode


@dataclass(frozen=True)
class NodeRemoved:
    node_id: str
    parent_id: str | None
    index: int


@dataclass(frozen=True)
class NodeChanged:
    node_id: str
    title: str
    url: str | None = None


@dataclass(frozen=True)
class NodeMoved:
    node_id: str
    parent_id: str
    index: int
    old_parent_id: str
    old_index: int


@dataclass(frozen=True)
class ChildrenReordered:
    parent_id: str
    child_ids: tuple[str, ...]


ChangeEvent: TypeAlias = NodeCreated | NodeRemoved | NodeChanged | NodeMoved | ChildrenReordered

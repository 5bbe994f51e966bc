"""Typed operations describing how one bookmark tree diverges from another."""

import time
from dataclasses import dataclass, field
from typing import ClassVar, TypeAlias

from bookmark_engine.models.node import BookmarkNode


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Position:
    """A slot in a parent's child list."""

    parent_id: str | None
    index: int


@dataclass(frozen=True)
class FieldChange:
    field: str
    old_value: str | None
    new_value: str | None


@dataclass(frozen=True)
class CreateOperation:
    """Create ``node`` under ``parent_id`` at ``index``."""

    kind: ClassVar[str] = "create"

    node: BookmarkNode
    parent_id: str
    index: int
    timestamp: int = field(default_factory=_now_ms)

    @property
    def node_id(self) -> str:
        return self.node.id

    def describe(self) -> str:
        noun = "folder" if self.node.is_folder else "bookmark"
        return f"Create {noun} '{self.node.title}' in {self.parent_id} at {self.index}"


@dataclass(frozen=True)
class DeleteOperation:
    """Delete ``node`` and its subtree.

    ``evacuated_ids`` are descendants that survive elsewhere in the new tree;
    they are moved out before the delete is dispatched.
    """

    kind: ClassVar[str] = "delete"

    node: BookmarkNode
    parent_id: str | None
    index: int
    descendant_count: int = 0
    evacuated_ids: tuple[str, ...] = ()
    timestamp: int = field(default_factory=_now_ms)

    @property
    def node_id(self) -> str:
        return self.node.id

    def describe(self) -> str:
        if self.node.is_folder:
            return f"Delete folder '{self.node.title}' ({self.descendant_count} descendants)"
        return f"Delete bookmark '{self.node.title}'"


@dataclass(frozen=True)
class UpdateOperation:
    """Change title and/or url of an existing node."""

    kind: ClassVar[str] = "update"

    node_id: str
    changes: tuple[FieldChange, ...]
    timestamp: int = field(default_factory=_now_ms)

    def new_values(self) -> dict[str, str | None]:
        return {change.field: change.new_value for change in self.changes}

    def describe(self) -> str:
        fields = ", ".join(change.field for change in self.changes)
        return f"Update {fields} of {self.node_id}"


@dataclass(frozen=True)
class MoveOperation:
    """Move a node from ``source`` to ``target``.

    ``target.index`` is the node's index once the move is done.
    """

    kind: ClassVar[str] = "move"

    node_id: str
    source: Position
    target: Position
    timestamp: int = field(default_factory=_now_ms)

    def describe(self) -> str:
        return f"Move {self.node_id} to {self.target.parent_id} at {self.target.index}"


Operation: TypeAlias = CreateOperation | DeleteOperation | UpdateOperation | MoveOperation


@dataclass(frozen=True)
class DiffStatistics:
    total: int = 0
    creates: int = 0
    updates: int = 0
    moves: int = 0
    deletes: int = 0
    new_folders: int = 0
    new_bookmarks: int = 0


@dataclass(frozen=True)
class DiffResult:
    """Operations turning one snapshot into another, in replay order."""

    operations: tuple[Operation, ...]
    statistics: DiffStatistics
    affected_ids: frozenset[str]

    @property
    def has_changes(self) -> bool:
        return bool(self.operations)

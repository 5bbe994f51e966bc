"""Compute the operations that turn one bookmark tree into another.

Operations are emitted in replay order: applying them one after another to
the old tree yields the new tree. Every index is the position the node takes
at the moment its operation runs. Deletes whose folder still holds nodes that
survive elsewhere are emitted last, after those nodes have been moved out.
"""

from bisect import bisect_left
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from itertools import pairwise

from loguru import logger

from bookmark_engine.config import TEMP_ID_PREFIX
from bookmark_engine.errors import InvalidInputError
from bookmark_engine.models.node import BookmarkNode
from bookmark_engine.models.operation import (
    CreateOperation,
    DeleteOperation,
    DiffResult,
    DiffStatistics,
    FieldChange,
    MoveOperation,
    Operation,
    Position,
    UpdateOperation,
)

SYNTHETIC_ROOT_ID = "__root__"

TreeLike = BookmarkNode | Sequence[BookmarkNode]

_COMPARED_FIELDS = ("title", "url")


@dataclass
class _Snapshot:
    nodes: dict[str, BookmarkNode] = field(default_factory=dict)
    parent_of: dict[str, str] = field(default_factory=dict)
    children: dict[str, list[str]] = field(default_factory=lambda: {SYNTHETIC_ROOT_ID: []})
    order: list[str] = field(default_factory=list)

    def position(self, node_id: str) -> Position:
        parent_id = self.parent_of[node_id]
        return Position(_public(parent_id), self.children[parent_id].index(node_id))


def _public(parent_id: str) -> str | None:
    return None if parent_id == SYNTHETIC_ROOT_ID else parent_id


def _as_roots(tree: TreeLike) -> Sequence[BookmarkNode]:
    return (tree,) if isinstance(tree, BookmarkNode) else tree


def _flatten(tree: TreeLike) -> _Snapshot:
    """Index a tree in preorder under the synthetic root."""
    snapshot = _Snapshot()

    def visit(parent_id: str, children: Iterable[BookmarkNode]) -> None:
        siblings = snapshot.children[parent_id]
        for child in children:
            if child.id in snapshot.nodes:
                msg = f"Duplicate bookmark id {child.id!r} in tree"
                raise InvalidInputError(msg)
            snapshot.nodes[child.id] = child
            snapshot.parent_of[child.id] = parent_id
            snapshot.children[child.id] = []
            snapshot.order.append(child.id)
            siblings.append(child.id)
            visit(child.id, child.children)

    visit(SYNTHETIC_ROOT_ID, _as_roots(tree))
    return snapshot


def _bare(node: BookmarkNode) -> BookmarkNode:
    return replace(node, children=()) if node.children else node


def _in_order(ids: Sequence[str], position: Mapping[str, int]) -> set[str]:
    """Longest subsequence of ``ids`` whose positions increase."""
    tails: list[int] = []
    tail_at: list[int] = []
    previous = [-1] * len(ids)
    for i, node_id in enumerate(ids):
        k = bisect_left(tails, position[node_id])
        if k == len(tails):
            tails.append(position[node_id])
            tail_at.append(i)
        else:
            tails[k] = position[node_id]
            tail_at[k] = i
        previous[i] = tail_at[k - 1] if k else -1

    result: set[str] = set()
    i = tail_at[-1] if tail_at else -1
    while i != -1:
        result.add(ids[i])
        i = previous[i]
    return result


def _diff_operations(old_tree: TreeLike, new_tree: TreeLike) -> list[Operation]:
    old = _flatten(old_tree)
    new = _flatten(new_tree)
    deleted = old.nodes.keys() - new.nodes.keys()
    created = new.nodes.keys() - old.nodes.keys()

    # Child lists of the old tree as the operations emitted so far leave them.
    current = {parent_id: list(ids) for parent_id, ids in old.children.items()}

    deletes_first: list[Operation] = []
    deletes_last: list[DeleteOperation] = []
    for node_id in old.order:
        parent_id = old.parent_of[node_id]
        if node_id not in deleted or parent_id in deleted or parent_id == SYNTHETIC_ROOT_ID:
            continue
        removed = 0
        survivors: list[str] = []
        stack = list(reversed(old.children[node_id]))
        while stack:
            child_id = stack.pop()
            if child_id in deleted:
                removed += 1
                stack.extend(reversed(old.children[child_id]))
            else:
                survivors.append(child_id)
        operation = DeleteOperation(
            node=_bare(old.nodes[node_id]),
            parent_id=parent_id,
            index=current[parent_id].index(node_id),
            descendant_count=removed,
            evacuated_ids=tuple(survivors),
        )
        if survivors:
            deletes_last.append(operation)
        else:
            deletes_first.append(operation)
            current[parent_id].remove(node_id)

    # Bring every existing parent's surviving children into their new order.
    # Children already in the right relative order stay put; every other one
    # is placed right after its predecessor in the new order. Nodes that
    # leave later (deferred deletes, moves into new folders) are skipped.
    moves: list[Operation] = []
    for parent_id in new.order:
        if parent_id in created:
            continue
        wanted = [child_id for child_id in new.children[parent_id] if child_id not in created]
        siblings = current[parent_id]
        position = {child_id: i for i, child_id in enumerate(siblings)}
        stable = _in_order([child_id for child_id in wanted if child_id in position], position)
        previous: str | None = None
        for child_id in wanted:
            if child_id not in stable:
                current[old.parent_of[child_id]].remove(child_id)
                index = siblings.index(previous) + 1 if previous is not None else 0
                siblings.insert(index, child_id)
                moves.append(
                    MoveOperation(
                        node_id=child_id,
                        source=old.position(child_id),
                        target=Position(parent_id, index),
                    )
                )
            previous = child_id

    updates: list[Operation] = []
    for node_id in new.order:
        if node_id in created or new.parent_of[node_id] == SYNTHETIC_ROOT_ID:
            continue
        before, after = old.nodes[node_id], new.nodes[node_id]
        changes = tuple(
            FieldChange(name, getattr(before, name), getattr(after, name))
            for name in _COMPARED_FIELDS
            if getattr(before, name) != getattr(after, name)
        )
        if changes:
            updates.append(UpdateOperation(node_id=node_id, changes=changes))

    # New nodes, parents before children, each right after its predecessor.
    # Existing nodes that now live inside a new folder move in alongside them.
    placements: list[Operation] = []
    for parent_id in new.order:
        child_ids = new.children[parent_id]
        if parent_id not in created and not any(child_id in created for child_id in child_ids):
            continue
        siblings = current.setdefault(parent_id, [])
        previous = None
        for child_id in child_ids:
            if child_id in created or parent_id in created:
                index = siblings.index(previous) + 1 if previous is not None else 0
                if child_id in created:
                    placement: Operation = CreateOperation(
                        node=_bare(new.nodes[child_id]), parent_id=parent_id, index=index
                    )
                else:
                    current[old.parent_of[child_id]].remove(child_id)
                    placement = MoveOperation(
                        node_id=child_id,
                        source=old.position(child_id),
                        target=Position(parent_id, index),
                    )
                siblings.insert(index, child_id)
                placements.append(placement)
            previous = child_id

    # Deferred deletes run after everything above, so index them from there.
    evacuated: list[Operation] = []
    for operation in deletes_last:
        siblings = current[old.parent_of[operation.node.id]]
        evacuated.append(replace(operation, index=siblings.index(operation.node.id)))
        siblings.remove(operation.node.id)

    return [*deletes_first, *moves, *updates, *placements, *evacuated]


def _referenced_ids(operation: Operation) -> tuple[str | None, ...]:
    match operation:
        case CreateOperation(parent_id=parent_id):
            return (parent_id,)
        case DeleteOperation(node=node):
            return (node.id,)
        case UpdateOperation(node_id=node_id):
            return (node_id,)
        case MoveOperation(node_id=node_id, target=target):
            return (node_id, target.parent_id)
    return ()


def drop_unreplayable(
    operations: Iterable[Operation], *, temp_prefix: str = TEMP_ID_PREFIX
) -> list[Operation]:
    """Drop operations on temporary ids that no create in the list introduces."""
    operations = list(operations)
    introduced = {op.node.id for op in operations if isinstance(op, CreateOperation)}
    kept = []
    for operation in operations:
        unresolved = [
            node_id
            for node_id in _referenced_ids(operation)
            if node_id is not None and node_id.startswith(temp_prefix) and node_id not in introduced
        ]
        if unresolved:
            logger.debug("Dropping '{}': temporary id {} is never created", operation.describe(), unresolved[0])
            continue
        kept.append(operation)
    return kept


def build_result(operations: Sequence[Operation]) -> DiffResult:
    creates = [op for op in operations if isinstance(op, CreateOperation)]
    new_folders = sum(1 for op in creates if op.node.is_folder)
    statistics = DiffStatistics(
        total=len(operations),
        creates=len(creates),
        updates=sum(1 for op in operations if isinstance(op, UpdateOperation)),
        moves=sum(1 for op in operations if isinstance(op, MoveOperation)),
        deletes=sum(1 for op in operations if isinstance(op, DeleteOperation)),
        new_folders=new_folders,
        new_bookmarks=len(creates) - new_folders,
    )
    affected = frozenset(
        op.node.id if isinstance(op, (CreateOperation, DeleteOperation)) else op.node_id
        for op in operations
    )
    return DiffResult(operations=tuple(operations), statistics=statistics, affected_ids=affected)


def diff(old_tree: TreeLike, new_tree: TreeLike, *, temp_prefix: str = TEMP_ID_PREFIX) -> DiffResult:
    """Operations that turn ``old_tree`` into ``new_tree``.

    Either argument may be a single root node or a sequence of roots.
    Changes directly below the synthetic shared root (the top-level nodes
    themselves) are not reported.
    """
    operations = drop_unreplayable(_diff_operations(old_tree, new_tree), temp_prefix=temp_prefix)
    result = build_result(operations)
    logger.debug("Diff: {}", result.statistics)
    return result


def diff_history(snapshots: Sequence[TreeLike], *, temp_prefix: str = TEMP_ID_PREFIX) -> DiffResult:
    """Concatenate the step-wise diffs of consecutive snapshots.

    Unlike :func:`diff` of the first and last snapshot, a node that was added
    and then moved within the history keeps both steps, and the move refers
    to the id introduced by the create.
    """
    operations: list[Operation] = []
    for before, after in pairwise(snapshots):
        operations.extend(_diff_operations(before, after))
    return build_result(drop_unreplayable(operations, temp_prefix=temp_prefix))

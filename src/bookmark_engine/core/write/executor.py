"""Replay diff operations against the authoritative tree host."""

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import assert_never

from loguru import logger

from bookmark_engine.config import (
    EXECUTOR_BATCH_SIZE,
    SELF_CHANGE_CLEAR_DELAY_SECONDS,
    SETTLE_DELAY_SECONDS,
)
from bookmark_engine.errors import OperationExecutionError
from bookmark_engine.models.operation import (
    CreateOperation,
    DeleteOperation,
    MoveOperation,
    Operation,
    UpdateOperation,
)
from bookmark_engine.protocols import OperationProgress, TreeHostProtocol


@dataclass(frozen=True)
class OperationError:
    """An operation the host rejected."""

    operation: Operation
    message: str

    @property
    def node_id(self) -> str:
        return self.operation.node_id

    @property
    def kind(self) -> str:
        return self.operation.kind


@dataclass(frozen=True)
class ApplyResult:
    success: bool
    errors: tuple[OperationError, ...] = ()
    applied: int = 0
    id_map: dict[str, str] = field(default_factory=dict)


def order_for_dispatch(operations: Iterable[Operation]) -> list[Operation]:
    """Stable order: deletes, moves, updates, creates, then evacuating deletes.

    Operations touching a node created in the same list are kept with the
    creates so they run after the node exists. The output of ``diff`` is
    already in this order. Do not reorder ``diff_history`` output: each of
    its indexes only holds right after the operations before it.
    """
    operations = list(operations)
    introduced = {op.node.id for op in operations if isinstance(op, CreateOperation)}

    def rank(operation: Operation) -> int:
        match operation:
            case DeleteOperation(node=node, evacuated_ids=evacuated):
                if node.id in introduced:
                    return 3
                return 4 if evacuated else 0
            case MoveOperation(node_id=node_id, target=target):
                return 3 if node_id in introduced or target.parent_id in introduced else 1
            case UpdateOperation(node_id=node_id):
                return 3 if node_id in introduced else 2
            case CreateOperation():
                return 3
            case _:
                assert_never(operation)

    return sorted(operations, key=rank)


class ReconciliationExecutor:
    """Applies operations to a host in batches and reloads the store afterwards.

    ``self_change`` is true while an apply is running and for
    ``clear_delay`` seconds after it finishes, so the mirror can tell
    notifications it caused from external ones.
    """

    def __init__(
        self,
        host: TreeHostProtocol,
        *,
        reload: Callable[[], Awaitable[object]] | None = None,
        batch_size: int = EXECUTOR_BATCH_SIZE,
        settle_delay: float = SETTLE_DELAY_SECONDS,
        clear_delay: float = SELF_CHANGE_CLEAR_DELAY_SECONDS,
    ) -> None:
        self._host = host
        self._reload = reload
        self.batch_size = batch_size
        self.settle_delay = settle_delay
        self.clear_delay = clear_delay
        self.self_change = False
        self._clear_handle: asyncio.TimerHandle | None = None

    async def apply(
        self,
        operations: Sequence[Operation],
        *,
        on_progress: OperationProgress | None = None,
    ) -> ApplyResult:
        """Run ``operations`` in the order given, continuing past failures.

        Args:
            operations: Operations in replay order.
            on_progress: Called with (current_index, total, description) after
                each operation, successful or not.

        Returns:
            ApplyResult with one OperationError per rejected operation.
        """
        self._mark_self_change()
        total = len(operations)
        errors: list[OperationError] = []
        id_map: dict[str, str] = {}
        logger.info("Applying {} operations in batches of {}", total, self.batch_size)

        try:
            for start in range(0, total, self.batch_size):
                if start:
                    await asyncio.sleep(0)
                for offset, operation in enumerate(operations[start : start + self.batch_size]):
                    current = start + offset + 1
                    try:
                        await self._dispatch(operation, id_map)
                    except Exception as exc:
                        logger.warning("Operation {}/{} failed: {}: {}", current, total, operation.describe(), exc)
                        errors.append(OperationError(operation=operation, message=str(exc)))
                    if on_progress:
                        on_progress(current, total, operation.describe())

            if self.settle_delay > 0:
                await asyncio.sleep(self.settle_delay)
            if self._reload is not None:
                await self._reload()
        finally:
            self._schedule_clear()

        applied = total - len(errors)
        if errors:
            logger.warning("Applied {} of {} operations; {} failed", applied, total, len(errors))
        else:
            logger.info("Applied {} operations", total)
        return ApplyResult(success=not errors, errors=tuple(errors), applied=applied, id_map=id_map)

    async def _dispatch(self, operation: Operation, id_map: dict[str, str]) -> None:
        def resolve(node_id: str) -> str:
            return id_map.get(node_id, node_id)

        match operation:
            case DeleteOperation(node=node):
                if node.is_folder:
                    await self._host.remove_subtree(resolve(node.id))
                else:
                    await self._host.remove(resolve(node.id))
            case MoveOperation(node_id=node_id, target=target):
                if target.parent_id is None:
                    msg = f"Cannot move {node_id} to the top level"
                    raise OperationExecutionError(msg)
                await self._host.move(resolve(node_id), parent_id=resolve(target.parent_id), index=target.index)
            case UpdateOperation(node_id=node_id):
                await self._host.update(resolve(node_id), **operation.new_values())
            case CreateOperation(node=node, parent_id=parent_id, index=index):
                created = await self._host.create(resolve(parent_id), node.title, url=node.url, index=index)
                id_map[node.id] = created.id
            case _:
                assert_never(operation)

    def _mark_self_change(self) -> None:
        if self._clear_handle is not None:
            self._clear_handle.cancel()
            self._clear_handle = None
        self.self_change = True

    def _schedule_clear(self) -> None:
        def clear() -> None:
            self.self_change = False
            self._clear_handle = None

        if self.clear_delay <= 0:
            clear()
            return
        self._clear_handle = asyncio.get_running_loop().call_later(self.clear_delay, clear)

"""Composition root wiring the store, search, mirror and executor together."""

from collections.abc import Sequence
from pathlib import Path

from loguru import logger

from bookmark_engine.config import (
    DATABASE_FILENAME,
    SELF_CHANGE_CLEAR_DELAY_SECONDS,
    SETTLE_DELAY_SECONDS,
)
from bookmark_engine.core.database.store import BookmarkStore
from bookmark_engine.core.importer.loader import ReloadStats, reload_from_host
from bookmark_engine.core.importer.mirror import MirrorChannel
from bookmark_engine.core.search.searcher import SearchEngine, SearchOptions
from bookmark_engine.core.tree.differ import TreeLike, diff
from bookmark_engine.core.tree.navigation import load_tree
from bookmark_engine.core.tree.proposal import ProposalTree
from bookmark_engine.core.write.executor import ApplyResult, ReconciliationExecutor
from bookmark_engine.models.node import BookmarkNode, Record, SearchResult
from bookmark_engine.models.operation import DiffResult, Operation
from bookmark_engine.protocols import OperationProgress, TreeHostProtocol


class BookmarkEngine:
    """Owns one store and everything built on it.

    Usage::

        async with BookmarkEngine(store, host) as engine:
            results = await engine.search("react")
    """

    def __init__(
        self,
        store: BookmarkStore,
        host: TreeHostProtocol,
        *,
        settle_delay: float = SETTLE_DELAY_SECONDS,
        clear_delay: float = SELF_CHANGE_CLEAR_DELAY_SECONDS,
    ) -> None:
        self.store = store
        self.host = host
        self.search_engine = SearchEngine(store)
        self.executor = ReconciliationExecutor(
            host,
            reload=self.reload,
            settle_delay=settle_delay,
            clear_delay=clear_delay,
        )
        self.mirror = MirrorChannel(store, is_self_change=lambda: self.executor.self_change)
        self._listening = False

    @classmethod
    def for_directory(cls, data_dir: Path, host: TreeHostProtocol, **kwargs: float) -> "BookmarkEngine":
        data_dir.mkdir(parents=True, exist_ok=True)
        return cls(BookmarkStore(data_dir / DATABASE_FILENAME), host, **kwargs)

    async def __aenter__(self) -> "BookmarkEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def start(self, *, reload: bool = True) -> ReloadStats | None:
        """Initialize the store, optionally mirror the host, then follow its changes."""
        await self.store.initialize()
        stats = await self.reload() if reload else None
        if not self._listening:
            self.host.add_listener(self.mirror.publish)
            self._listening = True
        await self.mirror.start()
        return stats

    async def reload(self) -> ReloadStats:
        """Replace the store contents with the host's current tree."""
        await self.mirror.drain()
        async with self.mirror.paused():
            stats = await reload_from_host(self.store, self.host)
        self.mirror.needs_reload = False
        return stats

    async def close(self) -> None:
        await self.mirror.stop()
        await self.store.close()
        logger.debug("Bookmark engine closed")

    # --- Reads ---

    async def search(self, query: str, options: SearchOptions | None = None) -> list[SearchResult]:
        return await self.search_engine.search(query, options)

    async def get_children(
        self, parent_id: str | None, *, offset: int = 0, limit: int | None = None
    ) -> list[Record]:
        return await self.store.get_children(parent_id, offset=offset, limit=limit)

    async def original_tree(self) -> list[BookmarkNode]:
        return await load_tree(self.store)

    async def new_proposal(self) -> ProposalTree:
        """A proposal tree starting from the mirrored tree."""
        return ProposalTree(await self.original_tree())

    # --- Reconciliation ---

    def diff(self, old_tree: TreeLike, new_tree: TreeLike) -> DiffResult:
        return diff(old_tree, new_tree)

    async def apply(
        self,
        operations: Sequence[Operation],
        *,
        on_progress: OperationProgress | None = None,
    ) -> ApplyResult:
        """Replay ``operations`` against the host, then reload the store."""
        return await self.executor.apply(operations, on_progress=on_progress)

    async def apply_proposal(
        self,
        proposal: ProposalTree,
        *,
        on_progress: OperationProgress | None = None,
    ) -> ApplyResult:
        """Apply everything that changed between a proposal's start and its current state."""
        result = diff(proposal.original, proposal.roots, temp_prefix=proposal.temp_prefix)
        if not result.has_changes:
            logger.info("Proposal has no changes")
            return ApplyResult(success=True)
        logger.info(
            "Applying proposal: {} creates, {} updates, {} moves, {} deletes",
            result.statistics.creates,
            result.statistics.updates,
            result.statistics.moves,
            result.statistics.deletes,
        )
        return await self.apply(result.operations, on_progress=on_progress)

"""Indexed bookmark store, search and tree reconciliation."""

from bookmark_engine.core.database.store import BookmarkStore
from bookmark_engine.core.search.searcher import SearchEngine, SearchOptions
from bookmark_engine.core.tree.differ import diff
from bookmark_engine.core.tree.proposal import ProposalTree
from bookmark_engine.core.write.executor import ReconciliationExecutor
from bookmark_engine.engine import BookmarkEngine
from bookmark_engine.protocols import TreeHostProtocol

__all__ = [
    "BookmarkEngine",
    "BookmarkStore",
    "ProposalTree",
    "ReconciliationExecutor",
    "SearchEngine",
    "SearchOptions",
    "TreeHostProtocol",
    "diff",
]

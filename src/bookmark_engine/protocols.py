"""Protocols for dependency injection in the bookmark engine."""

from collections.abc import Callable
from typing import Protocol, runtime_checkable

from bookmark_engine.models.events import ChangeEvent
from bookmark_engine.models.node import BookmarkNode

ChangeListener = Callable[[ChangeEvent], None]

# (current_index, total, description), called after every executed operation.
OperationProgress = Callable[[int, int, str], None]

# (processed, total), called after every store batch.
BatchProgress = Callable[[int, int], None]


@runtime_checkable
class TreeHostProtocol(Protocol):
    """Protocol for the authoritative bookmark tree (e.g. the browser)."""

    async def get_tree(self) -> list[BookmarkNode]:
        """Return a full snapshot of the tree roots."""
        ...

    async def create(
        self,
        parent_id: str,
        title: str,
        url: str | None = None,
        index: int | None = None,
    ) -> BookmarkNode:
        """Create a bookmark (with url) or folder and return it with its new id."""
        ...

    async def update(
        self, node_id: str, *, title: str | None = None, url: str | None = None
    ) -> BookmarkNode:
        """Change title and/or url of a node."""
        ...

    async def move(self, node_id: str, *, parent_id: str, index: int) -> BookmarkNode:
        """Move a node; ``index`` is its final position under ``parent_id``."""
        ...

    async def remove(self, node_id: str) -> None:
        """Remove a bookmark or an empty folder."""
        ...

    async def remove_subtree(self, node_id: str) -> None:
        """Remove a folder and everything below it."""
        ...

    def add_listener(self, listener: ChangeListener) -> None:
        """Subscribe to change notifications."""
        ...

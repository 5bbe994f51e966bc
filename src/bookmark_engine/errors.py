"""Exception types raised by the bookmark engine."""


class BookmarkEngineError(Exception):
    """Base class for bookmark engine errors."""


class StorageUnavailableError(BookmarkEngineError):
    """The store is not initialized or could not be opened or repaired."""

    def __init__(self, message: str, *, recovery_attempted: bool = False) -> None:
        super().__init__(message)
        self.recovery_attempted = recovery_attempted


class MigrationBlockedError(BookmarkEngineError):
    """A schema upgrade could not run because another connection holds the database."""


class TransientWriteError(BookmarkEngineError):
    """A batched write still failed after its retries were exhausted."""

    def __init__(self, message: str, *, record_ids: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.record_ids = record_ids


class OperationExecutionError(BookmarkEngineError):
    """The tree host rejected a single operation (stale id, invalid target, ...)."""


class InvalidInputError(BookmarkEngineError, ValueError):
    """Malformed query, missing field, or an id that does not resolve to a node."""

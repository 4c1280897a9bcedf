"""Error types shared by the cache store and the vector store sync."""


class TwosChatError(RuntimeError):
    """Base error for TwosChat operations."""


class TwosFetchError(TwosChatError):
    """Raised when the Twos export endpoint cannot be read."""

    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status


class CacheStoreError(TwosChatError):
    """Raised when the local SQLite cache cannot be opened or written."""


class IndexServiceError(TwosChatError):
    """Raised when the external indexing service rejects a request."""

    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status

    def __str__(self):
        base = super().__str__()
        return f"{base} (HTTP {self.status})" if self.status else base


class PreconditionError(TwosChatError):
    """Raised before any I/O when credentials or prior resources are missing."""


class EmptySnapshotError(PreconditionError):
    """Raised when a snapshot has no entries to index."""

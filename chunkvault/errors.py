"""Exception hierarchy shared across chunkvault."""

from __future__ import annotations


class ChunkvaultError(RuntimeError):
    """Base error for chunkvault failures."""


class InvalidInputError(ChunkvaultError, ValueError):
    """Raised for rejected arguments such as empty embedding input."""


class ProviderUnavailableError(ChunkvaultError):
    """Raised when a single embedding provider cannot serve a request."""


class StorageError(ChunkvaultError):
    """Raised when the index store cannot complete an operation."""


class NotInitializedError(StorageError):
    """Raised when a store is used before ``initialize()``."""


class MigrationError(StorageError):
    """Raised when a schema migration fails."""


class CorruptRecordError(StorageError):
    """Raised when a stored blob cannot be decoded or has the wrong shape."""


class DimensionMismatchError(StorageError):
    """Raised when a vector does not match the dimension pinned by the index."""


class ExtractionError(ChunkvaultError):
    """Raised when a single file cannot be split into chunks."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class ChecksumError(ChunkvaultError):
    """Raised when a file cannot be read while hashing."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path

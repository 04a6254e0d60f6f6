"""chunkvault package initialization."""

from __future__ import annotations

from .checksum import checksum, chunk_checksum, file_checksum
from .config import Config, config_dir_context, load_config, set_data_dir
from .embeddings import EmbeddingCache, EmbeddingService, build_embedding_service
from .errors import (
    ChecksumError,
    ChunkvaultError,
    ExtractionError,
    InvalidInputError,
    ProviderUnavailableError,
    StorageError,
)
from .services.change_service import ChangeDetector
from .services.index_service import IndexOptions, IndexResult, build_index
from .services.search_service import SearchHit, search_index
from .store import IndexStore, open_store

__all__ = [
    "__version__",
    "ChangeDetector",
    "ChecksumError",
    "ChunkvaultError",
    "Config",
    "EmbeddingCache",
    "EmbeddingService",
    "ExtractionError",
    "IndexOptions",
    "IndexResult",
    "IndexStore",
    "InvalidInputError",
    "ProviderUnavailableError",
    "SearchHit",
    "StorageError",
    "build_embedding_service",
    "build_index",
    "checksum",
    "chunk_checksum",
    "config_dir_context",
    "file_checksum",
    "get_version",
    "load_config",
    "open_store",
    "search_index",
    "set_data_dir",
]

__version__ = "0.1.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__

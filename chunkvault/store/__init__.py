"""Index storage: records, schema and the local/remote backends."""

from __future__ import annotations

from pathlib import Path

from ..config import (
    BACKUP_DIRNAME,
    Config,
    index_dir,
    index_key,
    resolve_account_id,
    resolve_api_key,
    resolve_backup_dir,
    resolve_d1_database_id,
    resolve_store_path,
)
from ..errors import StorageError
from ..text import Messages
from .d1 import D1Backend, D1HttpTransport, D1Transport
from .index_store import IndexStore, StoreBackend
from .records import ChunkRecord, FileRecord, IndexMetadata, IndexStats, ValidationReport
from .schema import SCHEMA_VERSION
from .sqlite import SQLiteBackend

__all__ = [
    "ChunkRecord",
    "D1Backend",
    "D1HttpTransport",
    "D1Transport",
    "FileRecord",
    "IndexMetadata",
    "IndexStats",
    "IndexStore",
    "SCHEMA_VERSION",
    "SQLiteBackend",
    "StoreBackend",
    "ValidationReport",
    "open_store",
]


def open_store(
    config: Config,
    root: Path | str,
    *,
    check_dimension: bool = True,
    transport: D1Transport | None = None,
) -> IndexStore:
    """Open and initialize the index store for *root* as configured.

    With ``check_dimension=False`` the store adopts the dimension already
    pinned by the index instead of requiring the configured one.
    """

    dimension = config.embedding_dimension if check_dimension else None
    if config.store_backend == "remote":
        if transport is None:
            account_id = resolve_account_id(config)
            api_key = resolve_api_key(config)
            database_id = resolve_d1_database_id(config)
            if not (account_id and api_key and database_id):
                raise StorageError(Messages.ERROR_D1_CREDENTIALS)
            transport = D1HttpTransport(
                account_id=account_id,
                api_key=api_key,
                database_id=database_id,
                endpoint=config.cloudflare_endpoint,
                timeout=config.request_timeout or None,
            )
        backend: StoreBackend = D1Backend(transport, location=f"d1:{index_key(root)}")
        backup_dir = index_dir(root) / BACKUP_DIRNAME
    else:
        backend = SQLiteBackend(resolve_store_path(config, root))
        backup_dir = resolve_backup_dir(config, root)
    store = IndexStore(
        backend,
        index_id=index_key(root),
        backup_dir=backup_dir,
        dimension=dimension,
    )
    return store.initialize()

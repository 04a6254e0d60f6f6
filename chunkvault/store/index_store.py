"""Schema-versioned metadata and chunk store."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Protocol, Sequence

from ..config import DEFAULT_EMBEDDING_DIMENSION
from ..errors import (
    CorruptRecordError,
    DimensionMismatchError,
    MigrationError,
    NotInitializedError,
    StorageError,
)
from ..text import Messages
from .records import ChunkRecord, FileRecord, IndexMetadata, IndexStats, ValidationReport
from .schema import (
    BOOTSTRAP_SQL,
    CHUNK_COLUMNS_SQL,
    DATA_TABLES,
    DIMENSION_SETTING,
    EXPORT_FORMAT,
    MIGRATIONS,
    SCHEMA_VERSION,
    Migration,
    UPSERT_CHUNK_SQL,
    UPSERT_FILE_SQL,
    UPSERT_METADATA_SQL,
    UPSERT_SETTING_SQL,
    chunk_params,
    chunk_record_from_row,
    dump_tables,
    file_record_from_row,
    metadata_from_row,
    metadata_params,
    now_ms,
    restore_statements,
    scope_clause,
    setting_key,
    vector_length,
)

logger = logging.getLogger(__name__)


class StoreBackend(Protocol):
    """SQL execution primitives a store backend provides."""

    backup_suffix: str

    @property
    def location(self) -> str:
        ...

    def open(self) -> None:
        ...

    def close(self) -> None:
        ...

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        ...

    def execute_batch(self, statements: Sequence[tuple[str, Sequence[Any]]]) -> None:
        ...

    def snapshot(self, destination: Path, index_id: str) -> None:
        ...

    def restore(self, source: Path, index_id: str) -> None:
        ...

    def compact(self) -> None:
        ...


def _backup_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace(":", "-").replace(".", "-")


class IndexStore:
    """Persist file records, chunks and index metadata on a backend.

    The store must be initialized before use; initialization applies pending
    schema migrations in order and pins the embedding dimension of the index.
    Passing ``dimension=None`` adopts whatever dimension the index already has.
    """

    def __init__(
        self,
        backend: StoreBackend,
        *,
        index_id: str,
        backup_dir: Path | str,
        dimension: int | None = DEFAULT_EMBEDDING_DIMENSION,
    ) -> None:
        self.backend = backend
        self.index_id = index_id
        self.backup_dir = Path(backup_dir)
        self._requested_dimension = dimension
        self.embedding_dimension: int | None = None
        self._initialized = False

    # Lifecycle ---------------------------------------------------------------

    def initialize(self) -> "IndexStore":
        if self._initialized:
            return self
        self.backend.open()
        try:
            self._migrate()
            self._pin_dimension(self._requested_dimension)
        except Exception:
            self.backend.close()
            raise
        self._initialized = True
        logger.debug("Opened index store at %s", self.backend.location)
        return self

    def close(self) -> None:
        if self._initialized:
            self.backend.close()
            self._initialized = False

    def __enter__(self) -> "IndexStore":
        return self.initialize()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def _require(self) -> None:
        if not self._initialized:
            raise NotInitializedError(Messages.ERROR_STORE_NOT_INITIALIZED)

    def _query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        self._require()
        return self.backend.query(sql, params)

    def _write(self, statements: Sequence[tuple[str, Sequence[Any]]]) -> None:
        self._require()
        self.backend.execute_batch(statements)

    def _scalar(self, sql: str, params: Sequence[Any] = ()) -> int:
        rows = self._query(sql, params)
        if not rows:
            return 0
        value = next(iter(rows[0].values()))
        return int(value or 0)

    # Schema ------------------------------------------------------------------

    def _current_schema_version(self) -> int:
        rows = self.backend.query("SELECT MAX(version) AS version FROM schema_migrations")
        if not rows or rows[0].get("version") is None:
            return 0
        return int(rows[0]["version"])

    def _migrate(self) -> None:
        try:
            self.backend.execute_batch([(BOOTSTRAP_SQL, ())])
            current = self._current_schema_version()
        except StorageError as exc:
            raise MigrationError(
                Messages.ERROR_MIGRATION_FAILED.format(version=0, name="bootstrap", reason=str(exc))
            ) from exc
        for migration in MIGRATIONS:
            if migration.version <= current:
                continue
            try:
                statements = self._migration_statements(migration)
                self.backend.execute_batch(statements)
            except StorageError as exc:
                raise MigrationError(
                    Messages.ERROR_MIGRATION_FAILED.format(
                        version=migration.version,
                        name=migration.name,
                        reason=str(exc),
                    )
                ) from exc
            logger.info("Applied schema migration %d (%s)", migration.version, migration.name)

    def _table_columns(self, table: str) -> set[str]:
        return {row["name"] for row in self.backend.query(f"PRAGMA table_info({table})")}

    def _migration_statements(self, migration: Migration) -> list[tuple[str, Sequence[Any]]]:
        statements: list[tuple[str, Sequence[Any]]] = [
            (f"ALTER TABLE {table} ADD COLUMN {column} {declaration}", ())
            for table, column, declaration in migration.columns
            if column not in self._table_columns(table)
        ]
        statements.extend((statement, ()) for statement in migration.statements)
        statements.append(
            (
                "INSERT INTO schema_migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (migration.version, migration.name, now_ms()),
            )
        )
        return statements

    def _pin_dimension(self, requested: int | None) -> None:
        key = setting_key(self.index_id, DIMENSION_SETTING)
        rows = self.backend.query("SELECT value FROM index_settings WHERE key = ?", (key,))
        pinned: int | None = None
        if rows:
            try:
                pinned = int(rows[0]["value"])
            except (TypeError, ValueError) as exc:
                raise CorruptRecordError(
                    Messages.ERROR_STORE_QUERY.format(reason=f"invalid {DIMENSION_SETTING}")
                ) from exc
        if pinned is None:
            pinned = int(requested or DEFAULT_EMBEDDING_DIMENSION)
            self.backend.execute_batch([(UPSERT_SETTING_SQL, (key, str(pinned)))])
        elif requested is not None and int(requested) != pinned:
            raise DimensionMismatchError(
                Messages.ERROR_DIMENSION_PINNED.format(pinned=pinned, requested=requested)
            )
        self.embedding_dimension = pinned

    @property
    def schema_version(self) -> int:
        self._require()
        return self._current_schema_version()

    # File records ------------------------------------------------------------

    def get_file_record(self, path: str) -> FileRecord | None:
        rows = self._query(
            "SELECT * FROM indexed_files WHERE index_id = ? AND path = ? AND deleted_at IS NULL",
            (self.index_id, path),
        )
        return file_record_from_row(rows[0]) if rows else None

    def set_file_record(
        self,
        path: str,
        checksum: str,
        size: int,
        mtime: int,
        chunk_count: int,
    ) -> None:
        """Record a completed (re)index of *path*; revives a soft-deleted record."""

        self._write(
            [
                (
                    UPSERT_FILE_SQL,
                    (
                        path,
                        checksum,
                        int(size),
                        int(mtime),
                        now_ms(),
                        int(chunk_count),
                        self.index_id,
                    ),
                ),
                (
                    "DELETE FROM deleted_files WHERE index_id = ? AND path = ?",
                    (self.index_id, path),
                ),
            ]
        )

    def update_file_mtime(self, path: str, mtime: int) -> None:
        """Refresh the stored mtime only; checksum and last_indexed stay untouched."""

        self._write(
            [
                (
                    "UPDATE indexed_files SET last_modified = ? "
                    "WHERE index_id = ? AND path = ? AND deleted_at IS NULL",
                    (int(mtime), self.index_id, path),
                )
            ]
        )

    def get_all_tracked_files(self) -> list[str]:
        rows = self._query(
            "SELECT path FROM indexed_files WHERE index_id = ? AND deleted_at IS NULL ORDER BY path",
            (self.index_id,),
        )
        return [row["path"] for row in rows]

    def get_tracked_records(self) -> dict[str, FileRecord]:
        rows = self._query(
            "SELECT * FROM indexed_files WHERE index_id = ? AND deleted_at IS NULL ORDER BY path",
            (self.index_id,),
        )
        return {row["path"]: file_record_from_row(row) for row in rows}

    def mark_file_deleted(self, path: str) -> bool:
        """Soft-delete *path* and its chunks; returns False when it is not tracked."""

        record = self.get_file_record(path)
        if record is None:
            return False
        timestamp = now_ms()
        self._write(
            [
                (
                    "UPDATE indexed_files SET deleted_at = ? "
                    "WHERE index_id = ? AND path = ? AND deleted_at IS NULL",
                    (timestamp, self.index_id, path),
                ),
                (
                    "INSERT OR REPLACE INTO deleted_files "
                    "(path, deleted_at, chunk_count, cleaned_up, index_id) VALUES (?, ?, ?, 0, ?)",
                    (path, timestamp, record.chunk_count, self.index_id),
                ),
                (
                    "UPDATE code_chunks SET deleted_at = ?, updated_at = ? "
                    "WHERE index_id = ? AND file_path = ? AND deleted_at IS NULL",
                    (timestamp, timestamp, self.index_id, path),
                ),
            ]
        )
        logger.info("Soft-deleted %s (%d chunks)", path, record.chunk_count)
        return True

    def cleanup_deleted_files(self) -> int:
        """Hard-purge soft-deleted files not yet cleaned; returns how many were purged."""

        rows = self._query(
            "SELECT path FROM deleted_files WHERE index_id = ? AND cleaned_up = 0 ORDER BY path",
            (self.index_id,),
        )
        for row in rows:
            path = row["path"]
            scope = (self.index_id, path)
            self._write(
                [
                    (
                        "DELETE FROM code_chunks "
                        "WHERE index_id = ? AND file_path = ? AND deleted_at IS NOT NULL",
                        scope,
                    ),
                    (
                        "DELETE FROM indexed_files "
                        "WHERE index_id = ? AND path = ? AND deleted_at IS NOT NULL",
                        scope,
                    ),
                    (
                        "UPDATE deleted_files SET cleaned_up = 1 WHERE index_id = ? AND path = ?",
                        scope,
                    ),
                ]
            )
        if rows:
            logger.info("Purged %d deleted file(s) from the index", len(rows))
        return len(rows)

    # Chunks ------------------------------------------------------------------

    def _check_vector(self, chunk: ChunkRecord) -> None:
        length = vector_length(chunk.embedding)
        if length != self.embedding_dimension:
            raise DimensionMismatchError(
                Messages.ERROR_VECTOR_DIMENSION.format(
                    chunk_id=chunk.id,
                    got=length,
                    expected=self.embedding_dimension,
                )
            )

    def save_chunk(self, chunk: ChunkRecord) -> None:
        self.save_chunks([chunk])

    def save_chunks(self, chunks: Iterable[ChunkRecord]) -> int:
        """Upsert *chunks* by id in a single transaction."""

        self._require()
        timestamp = now_ms()
        statements: list[tuple[str, Sequence[Any]]] = []
        for chunk in chunks:
            self._check_vector(chunk)
            statements.append((UPSERT_CHUNK_SQL, chunk_params(chunk, timestamp, self.index_id)))
        self._write(statements)
        return len(statements)

    def get_chunks(self, file_path: str) -> list[ChunkRecord]:
        rows = self._query(
            f"SELECT {CHUNK_COLUMNS_SQL} FROM code_chunks "
            "WHERE index_id = ? AND file_path = ? AND deleted_at IS NULL "
            "ORDER BY start_line, end_line",
            (self.index_id, file_path),
        )
        return [chunk_record_from_row(row, dimension=self.embedding_dimension) for row in rows]

    def get_all_chunks(self, language: str | None = None) -> list[ChunkRecord]:
        sql = (
            f"SELECT {CHUNK_COLUMNS_SQL} FROM code_chunks "
            "WHERE index_id = ? AND deleted_at IS NULL"
        )
        params: tuple = (self.index_id,)
        if language:
            sql += " AND language = ?"
            params += (language,)
        rows = self._query(sql + " ORDER BY file_path, start_line", params)
        return [chunk_record_from_row(row, dimension=self.embedding_dimension) for row in rows]

    def delete_chunks(self, file_path: str) -> None:
        timestamp = now_ms()
        self._write(
            [
                (
                    "UPDATE code_chunks SET deleted_at = ?, updated_at = ? "
                    "WHERE index_id = ? AND file_path = ? AND deleted_at IS NULL",
                    (timestamp, timestamp, self.index_id, file_path),
                )
            ]
        )

    def count_chunks(self) -> int:
        return self._scalar(
            "SELECT COUNT(*) AS n FROM code_chunks WHERE index_id = ? AND deleted_at IS NULL",
            (self.index_id,),
        )

    def count_files(self) -> int:
        return self._scalar(
            "SELECT COUNT(*) AS n FROM indexed_files WHERE index_id = ? AND deleted_at IS NULL",
            (self.index_id,),
        )

    # Index metadata ----------------------------------------------------------

    def save_index(self, metadata: IndexMetadata) -> None:
        if not metadata.schema_version:
            metadata.schema_version = self.schema_version
        metadata.index_id = self.index_id
        self._write([(UPSERT_METADATA_SQL, metadata_params(metadata, now_ms()))])

    def load_index(self) -> IndexMetadata | None:
        rows = self._query("SELECT * FROM index_metadata WHERE id = ?", (self.index_id,))
        return metadata_from_row(rows[0]) if rows else None

    # Maintenance -------------------------------------------------------------

    def get_stats(self) -> IndexStats:
        self._require()
        scope = (self.index_id,)
        files = self._query(
            "SELECT COUNT(*) AS n, COALESCE(SUM(file_size), 0) AS bytes "
            "FROM indexed_files WHERE index_id = ? AND deleted_at IS NULL",
            scope,
        )[0]
        language_rows = self._query(
            "SELECT language, COUNT(*) AS chunks, COUNT(DISTINCT file_path) AS files "
            "FROM code_chunks WHERE index_id = ? AND deleted_at IS NULL "
            "GROUP BY language ORDER BY language",
            scope,
        )
        metadata = self.load_index()
        return IndexStats(
            total_files=int(files["n"] or 0),
            total_chunks=self.count_chunks(),
            total_bytes=int(files["bytes"] or 0),
            deleted_files=self._scalar(
                "SELECT COUNT(*) AS n FROM deleted_files WHERE index_id = ?", scope
            ),
            pending_cleanup=self._scalar(
                "SELECT COUNT(*) AS n FROM deleted_files WHERE index_id = ? AND cleaned_up = 0",
                scope,
            ),
            inactive_chunks=self._scalar(
                "SELECT COUNT(*) AS n FROM code_chunks WHERE index_id = ? AND deleted_at IS NOT NULL",
                scope,
            ),
            chunks_by_language={row["language"]: int(row["chunks"]) for row in language_rows},
            files_by_language={row["language"]: int(row["files"]) for row in language_rows},
            embedding_dimension=int(self.embedding_dimension or 0),
            schema_version=self.schema_version,
            last_updated=metadata.last_updated if metadata else None,
        )

    def validate_index(self) -> ValidationReport:
        self._require()
        scope = (self.index_id,)
        report = ValidationReport()
        orphans = self._query(
            "SELECT c.id AS id FROM code_chunks c "
            "LEFT JOIN indexed_files f ON f.path = c.file_path "
            "AND f.index_id = c.index_id AND f.deleted_at IS NULL "
            "WHERE c.index_id = ? AND c.deleted_at IS NULL AND f.path IS NULL ORDER BY c.id",
            scope,
        )
        report.orphaned_chunks = [row["id"] for row in orphans]
        rows = self._query(
            f"SELECT {CHUNK_COLUMNS_SQL} FROM code_chunks "
            "WHERE index_id = ? AND deleted_at IS NULL ORDER BY id",
            scope,
        )
        for row in rows:
            try:
                chunk_record_from_row(row, dimension=self.embedding_dimension)
            except CorruptRecordError:
                report.corrupt_chunks.append(row["id"])
        mismatches = self._query(
            "SELECT f.path AS path FROM indexed_files f "
            "LEFT JOIN code_chunks c ON c.file_path = f.path "
            "AND c.index_id = f.index_id AND c.deleted_at IS NULL "
            "WHERE f.index_id = ? AND f.deleted_at IS NULL GROUP BY f.path, f.chunk_count "
            "HAVING f.chunk_count != COUNT(c.id) ORDER BY f.path",
            scope,
        )
        report.count_mismatches = [row["path"] for row in mismatches]
        return report

    def vacuum(self) -> int:
        """Purge chunks replaced by re-indexing, then compact; returns purged rows."""

        condition = (
            "index_id = ? AND deleted_at IS NOT NULL AND file_path NOT IN "
            "(SELECT path FROM deleted_files WHERE index_id = ? AND cleaned_up = 0)"
        )
        scope = (self.index_id, self.index_id)
        count = self._scalar(f"SELECT COUNT(*) AS n FROM code_chunks WHERE {condition}", scope)
        self._write([(f"DELETE FROM code_chunks WHERE {condition}", scope)])
        self.backend.compact()
        logger.info("Vacuumed %d replaced chunk(s)", count)
        return count

    def clear_index(self, dimension: int | None = None) -> None:
        """Remove all data of this index; the dimension is re-pinned to *dimension* when given."""

        self._require()
        pinned = int(dimension or self.embedding_dimension or DEFAULT_EMBEDDING_DIMENSION)
        statements: list[tuple[str, Sequence[Any]]] = []
        for table in reversed(DATA_TABLES):
            clause, params = scope_clause(table, self.index_id)
            statements.append((f"DELETE FROM {table} WHERE {clause}", params))
        statements.append(
            (UPSERT_SETTING_SQL, (setting_key(self.index_id, DIMENSION_SETTING), str(pinned)))
        )
        self._write(statements)
        self.embedding_dimension = pinned
        logger.info("Cleared index %s", self.index_id)

    # Backup and export -------------------------------------------------------

    def create_backup(self) -> Path:
        self._require()
        destination = self.backup_dir / (
            f"index-backup-{_backup_timestamp()}{self.backend.backup_suffix}"
        )
        self.backend.snapshot(destination, self.index_id)
        logger.info("Wrote index backup %s", destination)
        return destination

    def restore_backup(self, path: Path | str) -> Path:
        """Replace the index with a backup; returns the pre-restore snapshot path."""

        self._require()
        source = Path(path).expanduser()
        if not source.is_file():
            raise StorageError(Messages.ERROR_BACKUP_MISSING.format(path=source))
        snapshot = self.backup_dir / (
            f"index-before-restore-{_backup_timestamp()}{self.backend.backup_suffix}"
        )
        self.backend.snapshot(snapshot, self.index_id)
        self.backend.restore(source, self.index_id)
        self._migrate()
        self._pin_dimension(None)
        logger.info("Restored index from %s (previous state saved to %s)", source, snapshot)
        return snapshot

    def export_index(self) -> dict[str, Any]:
        self._require()
        return {
            "format": EXPORT_FORMAT,
            "schema_version": self.schema_version,
            "embedding_dimension": self.embedding_dimension,
            "exported_at": now_ms(),
            "tables": dump_tables(self.backend.query, self.index_id),
        }

    def import_index(self, payload: dict[str, Any]) -> None:
        self._require()
        try:
            statements = restore_statements(payload, self.index_id)
        except ValueError as exc:
            raise StorageError(
                Messages.ERROR_BACKUP_INVALID.format(path="<payload>")
            ) from exc
        self._write(statements)
        self._pin_dimension(None)


__all__ = ["IndexStore", "StoreBackend", "SCHEMA_VERSION"]

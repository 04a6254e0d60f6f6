"""Relational schema, migrations and row codecs for the index store."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

import numpy as np

from ..errors import CorruptRecordError
from ..text import Messages
from .records import ChunkRecord, FileRecord, IndexMetadata

LEGACY_METADATA_ROW_ID = "default"
DIMENSION_SETTING = "embedding_dimension"
_LEGACY_INDEX_ID = (
    f"COALESCE((SELECT index_id FROM index_metadata WHERE id = '{LEGACY_METADATA_ROW_ID}'), '')"
)


@dataclass(frozen=True, slots=True)
class Migration:
    version: int
    name: str
    statements: tuple[str, ...]
    # (table, column, declaration); each is added only when the column is missing.
    columns: tuple[tuple[str, str, str], ...] = ()


BOOTSTRAP_SQL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    applied_at INTEGER NOT NULL
)
"""

MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        version=1,
        name="index_storage",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS index_metadata (
                id TEXT PRIMARY KEY DEFAULT 'default',
                index_id TEXT NOT NULL,
                version TEXT NOT NULL DEFAULT '1.0.0',
                files_indexed INTEGER NOT NULL DEFAULT 0,
                chunks_indexed INTEGER NOT NULL DEFAULT 0,
                last_updated INTEGER NOT NULL,
                schema_version INTEGER NOT NULL DEFAULT 1
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS indexed_files (
                path TEXT PRIMARY KEY,
                checksum TEXT NOT NULL,
                file_size INTEGER NOT NULL,
                last_modified INTEGER NOT NULL,
                last_indexed INTEGER NOT NULL,
                chunk_count INTEGER NOT NULL DEFAULT 0,
                deleted_at INTEGER
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_indexed_files_checksum ON indexed_files(checksum)",
            "CREATE INDEX IF NOT EXISTS idx_indexed_files_last_modified ON indexed_files(last_modified)",
            "CREATE INDEX IF NOT EXISTS idx_indexed_files_last_indexed ON indexed_files(last_indexed)",
            "CREATE INDEX IF NOT EXISTS idx_indexed_files_deleted_at ON indexed_files(deleted_at)",
            """
            CREATE TABLE IF NOT EXISTS code_chunks (
                id TEXT PRIMARY KEY,
                file_path TEXT NOT NULL REFERENCES indexed_files(path) ON DELETE CASCADE,
                content TEXT NOT NULL,
                start_line INTEGER NOT NULL,
                end_line INTEGER NOT NULL,
                language TEXT NOT NULL,
                chunk_type TEXT NOT NULL,
                name TEXT,
                signature TEXT,
                symbols TEXT NOT NULL DEFAULT '[]',
                dependencies TEXT NOT NULL DEFAULT '[]',
                exports TEXT NOT NULL DEFAULT '[]',
                imports TEXT NOT NULL DEFAULT '[]',
                metadata TEXT NOT NULL DEFAULT '{}',
                embedding TEXT NOT NULL,
                checksum TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                deleted_at INTEGER
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_code_chunks_file_path ON code_chunks(file_path, start_line)",
            "CREATE INDEX IF NOT EXISTS idx_code_chunks_language ON code_chunks(language)",
            "CREATE INDEX IF NOT EXISTS idx_code_chunks_deleted_at ON code_chunks(deleted_at)",
        ),
    ),
    Migration(
        version=2,
        name="deleted_files",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS deleted_files (
                path TEXT PRIMARY KEY,
                deleted_at INTEGER NOT NULL,
                chunk_count INTEGER NOT NULL DEFAULT 0,
                cleaned_up INTEGER NOT NULL DEFAULT 0
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_deleted_files_cleaned_up ON deleted_files(cleaned_up)",
        ),
    ),
    Migration(
        version=3,
        name="index_settings",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS index_settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """,
        ),
    ),
    Migration(
        version=4,
        name="index_scoping",
        columns=(
            ("indexed_files", "index_id", "TEXT NOT NULL DEFAULT ''"),
            ("code_chunks", "index_id", "TEXT NOT NULL DEFAULT ''"),
            ("deleted_files", "index_id", "TEXT NOT NULL DEFAULT ''"),
        ),
        statements=(
            # Rows written before scoping belong to the index named by the legacy metadata row.
            f"UPDATE indexed_files SET index_id = {_LEGACY_INDEX_ID} WHERE index_id = ''",
            f"UPDATE code_chunks SET index_id = {_LEGACY_INDEX_ID} WHERE index_id = ''",
            f"UPDATE deleted_files SET index_id = {_LEGACY_INDEX_ID} WHERE index_id = ''",
            f"UPDATE index_settings SET key = {_LEGACY_INDEX_ID} || ':' || key "
            "WHERE instr(key, ':') = 0",
            f"UPDATE index_metadata SET id = index_id WHERE id = '{LEGACY_METADATA_ROW_ID}'",
            "CREATE INDEX IF NOT EXISTS idx_indexed_files_index_id ON indexed_files(index_id, deleted_at)",
            "CREATE INDEX IF NOT EXISTS idx_code_chunks_index_id ON code_chunks(index_id, deleted_at)",
            "CREATE INDEX IF NOT EXISTS idx_deleted_files_index_id ON deleted_files(index_id, cleaned_up)",
        ),
    ),
)
SCHEMA_VERSION = MIGRATIONS[-1].version

# Tables holding index data, in dependency order.
DATA_TABLES: tuple[str, ...] = (
    "index_metadata",
    "indexed_files",
    "code_chunks",
    "deleted_files",
    "index_settings",
)
TABLE_COLUMNS: dict[str, tuple[str, ...]] = {
    "index_metadata": (
        "id",
        "index_id",
        "version",
        "files_indexed",
        "chunks_indexed",
        "last_updated",
        "schema_version",
    ),
    "indexed_files": (
        "path",
        "checksum",
        "file_size",
        "last_modified",
        "last_indexed",
        "chunk_count",
        "deleted_at",
        "index_id",
    ),
    "code_chunks": (
        "id",
        "file_path",
        "content",
        "start_line",
        "end_line",
        "language",
        "chunk_type",
        "name",
        "signature",
        "symbols",
        "dependencies",
        "exports",
        "imports",
        "metadata",
        "embedding",
        "checksum",
        "created_at",
        "updated_at",
        "deleted_at",
        "index_id",
    ),
    "deleted_files": ("path", "deleted_at", "chunk_count", "cleaned_up", "index_id"),
    "index_settings": ("key", "value"),
}

UPSERT_FILE_SQL = """
INSERT INTO indexed_files (
    path, checksum, file_size, last_modified, last_indexed, chunk_count, deleted_at, index_id
)
VALUES (?, ?, ?, ?, ?, ?, NULL, ?)
ON CONFLICT(path) DO UPDATE SET
    index_id = excluded.index_id,
    checksum = excluded.checksum,
    file_size = excluded.file_size,
    last_modified = excluded.last_modified,
    last_indexed = excluded.last_indexed,
    chunk_count = excluded.chunk_count,
    deleted_at = NULL
"""

UPSERT_CHUNK_SQL = """
INSERT INTO code_chunks (
    id, file_path, content, start_line, end_line, language, chunk_type, name, signature,
    symbols, dependencies, exports, imports, metadata, embedding, checksum,
    created_at, updated_at, deleted_at, index_id
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?)
ON CONFLICT(id) DO UPDATE SET
    index_id = excluded.index_id,
    file_path = excluded.file_path,
    content = excluded.content,
    start_line = excluded.start_line,
    end_line = excluded.end_line,
    language = excluded.language,
    chunk_type = excluded.chunk_type,
    name = excluded.name,
    signature = excluded.signature,
    symbols = excluded.symbols,
    dependencies = excluded.dependencies,
    exports = excluded.exports,
    imports = excluded.imports,
    metadata = excluded.metadata,
    embedding = excluded.embedding,
    checksum = excluded.checksum,
    updated_at = excluded.updated_at,
    deleted_at = NULL
"""

UPSERT_METADATA_SQL = """
INSERT INTO index_metadata (id, index_id, version, files_indexed, chunks_indexed, last_updated, schema_version)
VALUES (?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    index_id = excluded.index_id,
    version = excluded.version,
    files_indexed = excluded.files_indexed,
    chunks_indexed = excluded.chunks_indexed,
    last_updated = excluded.last_updated,
    schema_version = excluded.schema_version
"""

UPSERT_SETTING_SQL = """
INSERT INTO index_settings (key, value) VALUES (?, ?)
ON CONFLICT(key) DO UPDATE SET value = excluded.value
"""

CHUNK_COLUMNS_SQL = ", ".join(TABLE_COLUMNS["code_chunks"])


def now_ms() -> int:
    return int(time.time() * 1000)


def _json_list(values: Sequence[str] | None) -> str:
    return json.dumps(list(values or []), ensure_ascii=False)


def encode_embedding(vector: Sequence[float]) -> str:
    array = np.asarray(vector, dtype=np.float64)
    return json.dumps(array.tolist())


def vector_length(vector: Sequence[float]) -> int:
    return int(np.asarray(vector).size)


def decode_embedding(raw: Any, *, chunk_id: str, dimension: int | None) -> np.ndarray:
    """Decode a stored embedding blob, validating it as a finite float array."""

    try:
        values = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        array = np.asarray(values, dtype=np.float32)
    except (TypeError, ValueError) as exc:
        raise CorruptRecordError(
            Messages.ERROR_CORRUPT_EMBEDDING.format(chunk_id=chunk_id, reason=str(exc))
        ) from exc
    if array.ndim != 1 or array.size == 0:
        raise CorruptRecordError(
            Messages.ERROR_CORRUPT_EMBEDDING.format(chunk_id=chunk_id, reason="not a flat array")
        )
    if dimension is not None and array.size != dimension:
        raise CorruptRecordError(
            Messages.ERROR_CORRUPT_EMBEDDING.format(
                chunk_id=chunk_id,
                reason=f"expected {dimension} values, found {array.size}",
            )
        )
    if not np.all(np.isfinite(array)):
        raise CorruptRecordError(
            Messages.ERROR_CORRUPT_EMBEDDING.format(chunk_id=chunk_id, reason="non-finite value")
        )
    return array


def _decode_json(raw: Any, *, field: str, chunk_id: str, expected: type) -> Any:
    if raw is None:
        return expected()
    try:
        value = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise CorruptRecordError(
            Messages.ERROR_CORRUPT_FIELD.format(field=field, chunk_id=chunk_id, reason=str(exc))
        ) from exc
    if not isinstance(value, expected):
        raise CorruptRecordError(
            Messages.ERROR_CORRUPT_FIELD.format(
                field=field,
                chunk_id=chunk_id,
                reason=f"expected {expected.__name__}",
            )
        )
    return value


def setting_key(index_id: str, name: str) -> str:
    """Key of the per-index setting *name* in ``index_settings``."""

    return f"{index_id}:{name}"


def scope_clause(table: str, index_id: str) -> tuple[str, tuple]:
    """Return the WHERE clause and parameters selecting the rows of one index."""

    if table == "index_settings":
        prefix = setting_key(index_id, "")
        return "substr(key, 1, ?) = ?", (len(prefix), prefix)
    return "index_id = ?", (index_id,)


def _to_int(value: Any, *, table: str, key: Any, column: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise CorruptRecordError(
            Messages.ERROR_CORRUPT_ROW.format(table=table, key=key, reason=f"invalid {column}")
        ) from exc


def _row_int(row: Mapping[str, Any], column: str, *, table: str, key: Any) -> int:
    return _to_int(row[column], table=table, key=key, column=column)


def _row_optional_int(row: Mapping[str, Any], column: str, *, table: str, key: Any) -> int | None:
    value = row[column]
    return None if value is None else _to_int(value, table=table, key=key, column=column)


def file_record_from_row(row: Mapping[str, Any]) -> FileRecord:
    path = row["path"]
    scope = {"table": "indexed_files", "key": path}
    return FileRecord(
        path=path,
        checksum=row["checksum"],
        file_size=_row_int(row, "file_size", **scope),
        last_modified=_row_int(row, "last_modified", **scope),
        last_indexed=_row_int(row, "last_indexed", **scope),
        chunk_count=_row_optional_int(row, "chunk_count", **scope) or 0,
        deleted_at=_row_optional_int(row, "deleted_at", **scope),
    )


def chunk_record_from_row(row: Mapping[str, Any], *, dimension: int | None) -> ChunkRecord:
    chunk_id = row["id"]
    scope = {"table": "code_chunks", "key": chunk_id}
    return ChunkRecord(
        id=chunk_id,
        file_path=row["file_path"],
        content=row["content"],
        start_line=_row_int(row, "start_line", **scope),
        end_line=_row_int(row, "end_line", **scope),
        language=row["language"],
        chunk_type=row["chunk_type"],
        name=row["name"],
        signature=row["signature"],
        symbols=_decode_json(row["symbols"], field="symbols", chunk_id=chunk_id, expected=list),
        dependencies=_decode_json(
            row["dependencies"], field="dependencies", chunk_id=chunk_id, expected=list
        ),
        exports=_decode_json(row["exports"], field="exports", chunk_id=chunk_id, expected=list),
        imports=_decode_json(row["imports"], field="imports", chunk_id=chunk_id, expected=list),
        metadata=_decode_json(row["metadata"], field="metadata", chunk_id=chunk_id, expected=dict),
        embedding=decode_embedding(row["embedding"], chunk_id=chunk_id, dimension=dimension),
        checksum=row["checksum"],
        created_at=_row_optional_int(row, "created_at", **scope),
        updated_at=_row_optional_int(row, "updated_at", **scope),
        deleted_at=_row_optional_int(row, "deleted_at", **scope),
    )


def chunk_params(chunk: ChunkRecord, timestamp: int, index_id: str) -> tuple:
    return (
        chunk.id,
        chunk.file_path,
        chunk.content,
        int(chunk.start_line),
        int(chunk.end_line),
        chunk.language,
        chunk.chunk_type,
        chunk.name,
        chunk.signature,
        _json_list(chunk.symbols),
        _json_list(chunk.dependencies),
        _json_list(chunk.exports),
        _json_list(chunk.imports),
        json.dumps(chunk.metadata or {}, ensure_ascii=False),
        encode_embedding(chunk.embedding),
        chunk.checksum,
        chunk.created_at or timestamp,
        timestamp,
        index_id,
    )


def metadata_from_row(row: Mapping[str, Any]) -> IndexMetadata:
    scope = {"table": "index_metadata", "key": row["id"]}
    return IndexMetadata(
        index_id=row["index_id"],
        files_indexed=_row_int(row, "files_indexed", **scope),
        chunks_indexed=_row_int(row, "chunks_indexed", **scope),
        version=row["version"],
        schema_version=_row_int(row, "schema_version", **scope),
        last_updated=_row_optional_int(row, "last_updated", **scope),
    )


def metadata_params(metadata: IndexMetadata, timestamp: int) -> tuple:
    # One metadata row per index, keyed by the index id.
    return (
        metadata.index_id,
        metadata.index_id,
        metadata.version,
        int(metadata.files_indexed),
        int(metadata.chunks_indexed),
        metadata.last_updated or timestamp,
        metadata.schema_version or SCHEMA_VERSION,
    )


EXPORT_FORMAT = "chunkvault-index"


def dump_tables(
    query: Callable[[str, Sequence[Any]], list[Mapping[str, Any]]],
    index_id: str,
) -> dict[str, list[dict[str, Any]]]:
    """Return the rows of one index from every data table as plain dictionaries."""

    tables: dict[str, list[dict[str, Any]]] = {}
    for table in DATA_TABLES:
        columns = ", ".join(TABLE_COLUMNS[table])
        clause, params = scope_clause(table, index_id)
        tables[table] = [
            dict(row) for row in query(f"SELECT {columns} FROM {table} WHERE {clause}", params)
        ]
    return tables


def _rescope_row(table: str, row: dict[str, Any], index_id: str) -> dict[str, Any]:
    row = dict(row)
    if table == "index_settings":
        if "key" in row:
            row["key"] = setting_key(index_id, str(row["key"]).rpartition(":")[2])
        return row
    row["index_id"] = index_id
    if table == "index_metadata":
        row["id"] = index_id
    return row


def restore_statements(payload: Any, index_id: str) -> list[tuple[str, tuple]]:
    """Return the statements that replace the data of *index_id* with *payload*.

    Rows are re-keyed to *index_id*, so an export can be imported under another
    root. Rows of other indexes sharing the database are left alone.
    Raises ValueError when *payload* is not an index export.
    """

    if not isinstance(payload, dict) or payload.get("format") != EXPORT_FORMAT:
        raise ValueError("unknown export format")
    tables = payload.get("tables")
    if not isinstance(tables, dict):
        raise ValueError("missing tables")
    statements: list[tuple[str, tuple]] = []
    for table in reversed(DATA_TABLES):
        clause, params = scope_clause(table, index_id)
        statements.append((f"DELETE FROM {table} WHERE {clause}", params))
    for table in DATA_TABLES:
        rows = tables.get(table) or []
        if not isinstance(rows, list):
            raise ValueError(f"table {table} is not a list")
        for row in rows:
            if not isinstance(row, dict):
                raise ValueError(f"row in {table} is not an object")
            if not any(column in row for column in TABLE_COLUMNS[table]):
                continue
            row = _rescope_row(table, row, index_id)
            present = [column for column in TABLE_COLUMNS[table] if column in row]
            placeholders = ", ".join("?" for _ in present)
            statements.append(
                (
                    f"INSERT INTO {table} ({', '.join(present)}) VALUES ({placeholders})",
                    tuple(row[column] for column in present),
                )
            )
    return statements

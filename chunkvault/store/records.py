"""Record types persisted by the index store."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

INDEX_FORMAT_VERSION = "1.0.0"


@dataclass(slots=True)
class FileRecord:
    path: str
    checksum: str
    file_size: int
    last_modified: int
    last_indexed: int
    chunk_count: int = 0
    deleted_at: int | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass(slots=True)
class ChunkRecord:
    id: str
    file_path: str
    content: str
    start_line: int
    end_line: int
    language: str
    chunk_type: str
    embedding: Sequence[float]
    checksum: str
    name: str | None = None
    signature: str | None = None
    symbols: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    exports: list[str] = field(default_factory=list)
    imports: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: int | None = None
    updated_at: int | None = None
    deleted_at: int | None = None


@dataclass(slots=True)
class IndexMetadata:
    index_id: str
    files_indexed: int = 0
    chunks_indexed: int = 0
    version: str = INDEX_FORMAT_VERSION
    schema_version: int = 0
    last_updated: int | None = None


@dataclass(slots=True)
class IndexStats:
    total_files: int
    total_chunks: int
    total_bytes: int
    deleted_files: int
    pending_cleanup: int
    inactive_chunks: int
    chunks_by_language: dict[str, int]
    files_by_language: dict[str, int]
    embedding_dimension: int
    schema_version: int
    last_updated: int | None = None


@dataclass(slots=True)
class ValidationReport:
    orphaned_chunks: list[str] = field(default_factory=list)
    corrupt_chunks: list[str] = field(default_factory=list)
    count_mismatches: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not (self.orphaned_chunks or self.corrupt_chunks or self.count_mismatches)

    @property
    def issues(self) -> list[str]:
        messages = [f"orphaned chunk {chunk_id}" for chunk_id in self.orphaned_chunks]
        messages.extend(f"corrupt chunk {chunk_id}" for chunk_id in self.corrupt_chunks)
        messages.extend(f"chunk count mismatch for {path}" for path in self.count_mismatches)
        return messages

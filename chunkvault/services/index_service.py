"""Logic helpers for the `chunkvault index` command."""

from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Sequence

import numpy as np

from .change_service import ChangeDetector
from ..checksum import checksum
from ..chunking import DEFAULT_INCLUDE_PATTERNS, Chunker, CodeChunker, ExtractedChunk
from ..config import (
    DEFAULT_EXCLUDE_PATTERNS,
    DEFAULT_MAX_FILE_SIZE,
    DEFAULT_STORAGE_BATCH_SIZE,
    Config,
)
from ..embeddings import EmbeddingService
from ..errors import ChecksumError
from ..store import ChunkRecord, IndexMetadata, IndexStore
from ..text import Messages
from ..utils import CollectedFile, collect_files, ensure_positive, resolve_directory

logger = logging.getLogger(__name__)


class IndexStatus(str, Enum):
    EMPTY = "empty"
    UP_TO_DATE = "up_to_date"
    STORED = "stored"


class IndexStage(str, Enum):
    COLLECT = "collect"
    DETECT_DELETED = "detect_deleted"
    FILTER = "filter"
    EXTRACT = "extract"
    EMBED = "embed"
    STORE = "store"
    METADATA = "metadata"
    DONE = "done"


ProgressCallback = Callable[[IndexStage, float, str], None]


@dataclass(slots=True)
class IndexOptions:
    include_patterns: tuple[str, ...] = DEFAULT_INCLUDE_PATTERNS
    exclude_patterns: tuple[str, ...] = DEFAULT_EXCLUDE_PATTERNS
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    include_hidden: bool = False
    respect_gitignore: bool = True
    incremental: bool = True
    detect_deletions: bool = True
    auto_cleanup: bool = True
    storage_batch_size: int = DEFAULT_STORAGE_BATCH_SIZE
    languages: tuple[str, ...] = ()

    @classmethod
    def from_config(cls, config: Config, **overrides) -> "IndexOptions":
        options = cls(
            include_patterns=tuple(config.include_patterns) or DEFAULT_INCLUDE_PATTERNS,
            exclude_patterns=tuple(config.exclude_patterns),
            max_file_size=config.max_file_size,
            include_hidden=config.include_hidden,
            respect_gitignore=config.respect_gitignore,
            incremental=config.incremental,
            detect_deletions=config.detect_deletions,
            auto_cleanup=config.auto_cleanup,
            storage_batch_size=config.storage_batch_size,
        )
        for name, value in overrides.items():
            if value is not None:
                setattr(options, name, value)
        return options


@dataclass(slots=True)
class FileFailure:
    path: str
    stage: str
    message: str


@dataclass(slots=True)
class IndexSummary:
    total_tokens: int = 0
    total_bytes: int = 0
    chunks_by_language: dict[str, int] = field(default_factory=dict)
    chunks_by_type: dict[str, int] = field(default_factory=dict)
    avg_chunks_per_file: float = 0.0


@dataclass(slots=True)
class IndexResult:
    status: IndexStatus
    files_indexed: int = 0
    chunks_indexed: int = 0
    errors_count: int = 0
    duration_ms: int = 0
    failed_files: list[str] = field(default_factory=list)
    failures: list[FileFailure] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)
    files_cleaned: int = 0
    summary: IndexSummary = field(default_factory=IndexSummary)


@dataclass(slots=True)
class _PendingFile:
    source: CollectedFile
    key: str
    chunks: list[ExtractedChunk] = field(default_factory=list)
    records: list[ChunkRecord] = field(default_factory=list)


def _chunk(items: Sequence, size: int):
    for idx in range(0, len(items), size):
        yield items[idx : idx + size]


def _scaled(start: float, end: float, done: int, total: int) -> float:
    if total <= 0:
        return end
    return start + (end - start) * done / total


def _chunk_record(chunk: ExtractedChunk, file_key: str, vector: np.ndarray, provider: str) -> ChunkRecord:
    return ChunkRecord(
        id=chunk.id,
        file_path=file_key,
        content=chunk.content,
        start_line=chunk.start_line,
        end_line=chunk.end_line,
        language=chunk.language,
        chunk_type=chunk.chunk_type,
        embedding=vector,
        checksum=checksum(chunk.content),
        name=chunk.name,
        signature=chunk.signature,
        symbols=[*chunk.functions, *chunk.classes],
        dependencies=list(chunk.dependencies),
        exports=list(chunk.exports),
        imports=list(chunk.imports),
        metadata={"provider": provider},
    )


def build_index(
    root: Path | str,
    *,
    store: IndexStore,
    embedder: EmbeddingService,
    chunker: Chunker | None = None,
    options: IndexOptions | None = None,
    progress: ProgressCallback | None = None,
) -> IndexResult:
    """Bring the index of *root* up to date with the files on disk.

    Per-file extraction and embedding problems are collected on the result;
    storage errors abort the run. File records are written only after all of
    a file's chunks are stored, so an interrupted run is retried next time.
    """

    started = time.perf_counter()
    options = options or IndexOptions()
    chunker = chunker or CodeChunker()
    batch_size = ensure_positive(options.storage_batch_size, "storage_batch_size")
    directory = resolve_directory(root)
    detector = ChangeDetector(store)

    def report(stage: IndexStage, percent: float, message: str) -> None:
        logger.debug("[%s %.0f%%] %s", stage.value, percent, message)
        if progress is not None:
            progress(stage, percent, message)

    def elapsed_ms() -> int:
        return int((time.perf_counter() - started) * 1000)

    # Collect
    report(IndexStage.COLLECT, 0.0, Messages.PROGRESS_COLLECT)
    files = collect_files(
        directory,
        include_patterns=options.include_patterns,
        exclude_patterns=options.exclude_patterns,
        max_file_size=options.max_file_size,
        include_hidden=options.include_hidden,
        respect_gitignore=options.respect_gitignore,
    )
    report(IndexStage.COLLECT, 5.0, Messages.PROGRESS_FOUND.format(count=len(files)))

    # Detect deleted
    deleted: list[str] = []
    cleaned = 0
    if options.incremental and options.detect_deletions:
        deleted = detector.detect_deleted_files(str(item.path) for item in files)
        for path in deleted:
            store.mark_file_deleted(path)
        if deleted and options.auto_cleanup:
            cleaned = store.cleanup_deleted_files()
        report(IndexStage.DETECT_DELETED, 5.0, Messages.PROGRESS_DELETED.format(count=len(deleted)))

    # Filter unchanged
    pending: list[_PendingFile] = []
    for idx, item in enumerate(files, start=1):
        key = str(item.path)
        if not options.incremental or detector.file_needs_reindexing(item.path):
            pending.append(_PendingFile(source=item, key=key))
        if idx % 100 == 0 or idx == len(files):
            report(
                IndexStage.FILTER,
                _scaled(5.0, 10.0, idx, len(files)),
                Messages.PROGRESS_FILTER.format(count=len(pending)),
            )

    if not pending:
        if deleted:
            _save_metadata(store)
        report(IndexStage.DONE, 100.0, Messages.PROGRESS_NOTHING)
        return IndexResult(
            status=IndexStatus.UP_TO_DATE if files else IndexStatus.EMPTY,
            duration_ms=elapsed_ms(),
            files_deleted=deleted,
            files_cleaned=cleaned,
        )

    failures: list[FileFailure] = []

    # Extract
    extracted: list[_PendingFile] = []
    languages = set(options.languages)
    for idx, entry in enumerate(pending):
        report(
            IndexStage.EXTRACT,
            _scaled(10.0, 85.0, idx, len(pending)),
            Messages.PROGRESS_EXTRACT.format(path=entry.source.rel_path),
        )
        try:
            chunks = chunker.chunk_file(entry.source.path)
        except Exception as exc:
            logger.warning("Extraction failed for %s: %s", entry.key, exc)
            failures.append(FileFailure(entry.key, IndexStage.EXTRACT.value, str(exc)))
            continue
        entry.chunks = [
            chunk
            for chunk in chunks
            if chunk.content.strip() and (not languages or chunk.language in languages)
        ]
        extracted.append(entry)

    # Embed
    report(IndexStage.EMBED, 85.0, Messages.PROGRESS_EMBED)
    texts = [chunk.content for entry in extracted for chunk in entry.chunks]
    embedded = embedder.embed_batch_with_providers(texts) if texts else []
    expected = store.embedding_dimension
    ready: list[_PendingFile] = []
    offset = 0
    for entry in extracted:
        results = embedded[offset : offset + len(entry.chunks)]
        offset += len(entry.chunks)
        mismatched = next(
            (vector.size for vector, _ in results if vector.size != expected), None
        )
        if mismatched is not None:
            message = Messages.ERROR_FILE_DIMENSION.format(
                path=entry.key, got=mismatched, expected=expected
            )
            logger.warning(message)
            failures.append(FileFailure(entry.key, IndexStage.EMBED.value, message))
            continue
        entry.records = [
            _chunk_record(chunk, entry.key, vector, provider)
            for chunk, (vector, provider) in zip(entry.chunks, results)
        ]
        ready.append(entry)
    report(IndexStage.EMBED, 90.0, Messages.PROGRESS_EMBED)

    # Store
    report(IndexStage.STORE, 90.0, Messages.PROGRESS_STORE)
    for entry in ready:
        store.delete_chunks(entry.key)
    records = [record for entry in ready for record in entry.records]
    batches = list(_chunk(records, batch_size))
    for idx, batch in enumerate(batches, start=1):
        store.save_chunks(batch)
        report(IndexStage.STORE, _scaled(90.0, 95.0, idx, len(batches)), Messages.PROGRESS_STORE)

    # Update metadata
    report(IndexStage.METADATA, 95.0, Messages.PROGRESS_METADATA)
    indexed: list[_PendingFile] = []
    for entry in ready:
        try:
            current = detector.snapshot(entry.source.path)
        except ChecksumError as exc:
            logger.warning("Cannot record %s: %s", entry.key, exc)
            failures.append(FileFailure(entry.key, IndexStage.METADATA.value, str(exc)))
            continue
        store.set_file_record(
            entry.key,
            current.checksum,
            current.size,
            current.mtime_ms,
            len(entry.records),
        )
        indexed.append(entry)
    _save_metadata(store)
    report(IndexStage.DONE, 100.0, Messages.PROGRESS_DONE)

    chunks_indexed = sum(len(entry.records) for entry in indexed)
    return IndexResult(
        status=IndexStatus.STORED,
        files_indexed=len(indexed),
        chunks_indexed=chunks_indexed,
        errors_count=len(failures),
        duration_ms=elapsed_ms(),
        failed_files=[failure.path for failure in failures],
        failures=failures,
        files_deleted=deleted,
        files_cleaned=cleaned,
        summary=_summarize(indexed),
    )


def _save_metadata(store: IndexStore) -> None:
    store.save_index(
        IndexMetadata(
            index_id=store.index_id,
            files_indexed=store.count_files(),
            chunks_indexed=store.count_chunks(),
            schema_version=store.schema_version,
        )
    )


def _summarize(entries: Sequence[_PendingFile]) -> IndexSummary:
    records = [record for entry in entries for record in entry.records]
    by_language = Counter(record.language for record in records)
    by_type = Counter(record.chunk_type for record in records)
    return IndexSummary(
        total_tokens=sum(len(record.content) // 4 for record in records),
        total_bytes=sum(entry.source.size for entry in entries),
        chunks_by_language=dict(sorted(by_language.items())),
        chunks_by_type=dict(sorted(by_type.items())),
        avg_chunks_per_file=(len(records) / len(entries)) if entries else 0.0,
    )

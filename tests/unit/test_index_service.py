import os

import numpy as np
import pytest

from chunkvault.chunking import CodeChunker
from chunkvault.config import Config
from chunkvault.embeddings import EmbeddingService
from chunkvault.errors import ExtractionError, StorageError
from chunkvault.services.index_service import (
    IndexOptions,
    IndexStage,
    IndexStatus,
    build_index,
)
from chunkvault.store import IndexStore, SQLiteBackend

DIM = 4


class FakeProvider:
    name = "fake"

    def __init__(self, dimension=DIM):
        self.dimension = dimension
        self.calls = []

    def embed(self, texts):
        self.calls.append(list(texts))
        return np.vstack(
            [np.full(self.dimension, float(len(text) % 7 + 1), dtype=np.float32) for text in texts]
        )


class FailingChunker:
    def __init__(self, failing_names):
        self.failing_names = set(failing_names)
        self.inner = CodeChunker()
        self.calls = []

    def chunk_file(self, path):
        self.calls.append(path.name)
        if path.name in self.failing_names:
            raise ExtractionError(f"cannot parse {path.name}", path=str(path))
        return self.inner.chunk_file(path)


@pytest.fixture
def store(tmp_path):
    store = IndexStore(
        SQLiteBackend(tmp_path / "store" / "index.db"),
        index_id="test",
        backup_dir=tmp_path / "store" / "backups",
        dimension=DIM,
    ).initialize()
    yield store
    store.close()


@pytest.fixture
def source(tmp_path):
    root = tmp_path / "src"
    root.mkdir()
    return root.resolve()


def _embedder(dimension=DIM):
    provider = FakeProvider(dimension)
    return EmbeddingService(provider, None, dimension=DIM), provider


def _bump_mtime(path, seconds=5):
    stat = path.stat()
    shifted = stat.st_mtime_ns + seconds * 1_000_000_000
    os.utime(path, ns=(stat.st_atime_ns, shifted))


def _ten_line_file(path, marker="0"):
    lines = [f"value_{idx} = {marker if idx == 4 else idx}" for idx in range(10)]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def _assert_metadata_matches_store(store):
    metadata = store.load_index()
    assert metadata is not None
    assert metadata.files_indexed == store.count_files()
    assert metadata.chunks_indexed == store.count_chunks()


def test_concrete_scenario_edit_rerun_delete(store, source):
    target = _ten_line_file(source / "a.py")
    embedder, _ = _embedder()

    first = build_index(source, store=store, embedder=embedder)
    assert first.status == IndexStatus.STORED
    assert first.files_indexed == 1
    assert first.chunks_indexed >= 1
    _assert_metadata_matches_store(store)

    _ten_line_file(target, marker="edited")
    _bump_mtime(target)
    second = build_index(source, store=store, embedder=embedder)
    assert second.files_indexed == 1
    _assert_metadata_matches_store(store)

    third = build_index(source, store=store, embedder=embedder)
    assert third.status == IndexStatus.UP_TO_DATE
    assert third.files_indexed == 0
    _assert_metadata_matches_store(store)

    target.unlink()
    fourth = build_index(source, store=store, embedder=embedder)
    assert fourth.files_deleted == [str(target)]
    assert fourth.files_cleaned == 1
    assert store.get_all_tracked_files() == []
    _assert_metadata_matches_store(store)
    assert store.load_index().files_indexed == 0
    assert store.load_index().chunks_indexed == 0
    rows = store.backend.query(
        "SELECT COUNT(*) AS n FROM code_chunks WHERE file_path = ?", (str(target),)
    )
    assert rows[0]["n"] == 0


def test_second_run_is_idempotent(store, source):
    for name in ("a.py", "b.md", "c.txt"):
        (source / name).write_text(f"content of {name}\nmore\n", encoding="utf-8")
    embedder, provider = _embedder()

    first = build_index(source, store=store, embedder=embedder)
    calls_after_first = len(provider.calls)
    second = build_index(source, store=store, embedder=embedder)

    assert first.files_indexed == 3
    assert second.files_indexed == 0
    assert second.status == IndexStatus.UP_TO_DATE
    assert len(provider.calls) == calls_after_first


def test_partial_failure_is_isolated(store, source):
    for name in ("a.py", "b.py", "c.py"):
        (source / name).write_text(f"def {name[0]}():\n    return 1\n", encoding="utf-8")
    embedder, _ = _embedder()
    chunker = FailingChunker({"b.py"})

    result = build_index(source, store=store, embedder=embedder, chunker=chunker)

    failing = str(source / "b.py")
    assert result.errors_count == 1
    assert result.failed_files == [failing]
    assert result.failures[0].stage == IndexStage.EXTRACT.value
    assert result.files_indexed == 2
    assert store.get_chunks(str(source / "a.py"))
    assert store.get_chunks(str(source / "c.py"))
    assert store.get_file_record(failing) is None

    retry = build_index(source, store=store, embedder=embedder, chunker=CodeChunker())
    assert retry.files_indexed == 1


def test_touched_file_is_not_reindexed(store, source):
    target = source / "a.py"
    target.write_text("x = 1\n", encoding="utf-8")
    embedder, _ = _embedder()
    build_index(source, store=store, embedder=embedder)

    stat = target.stat()
    os.utime(target, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))
    result = build_index(source, store=store, embedder=embedder)

    assert result.files_indexed == 0
    assert store.get_file_record(str(target)).last_modified == (stat.st_mtime_ns + 5_000_000_000) // 1_000_000


def test_reindex_replaces_chunks(store, source):
    target = source / "a.py"
    target.write_text("def old():\n    return 1\n", encoding="utf-8")
    embedder, _ = _embedder()
    build_index(source, store=store, embedder=embedder)

    target.write_text("def new():\n    return 2\n", encoding="utf-8")
    _bump_mtime(target)
    build_index(source, store=store, embedder=embedder)

    names = [chunk.name for chunk in store.get_chunks(str(target))]
    assert names == ["new"]
    assert store.get_file_record(str(target)).chunk_count == 1
    assert store.validate_index().is_valid


def test_progress_reports_ordered_stages(store, source):
    (source / "a.py").write_text("x = 1\n", encoding="utf-8")
    embedder, _ = _embedder()
    events = []

    build_index(
        source,
        store=store,
        embedder=embedder,
        progress=lambda stage, percent, message: events.append((stage, percent)),
    )

    stages = []
    for stage, _ in events:
        if not stages or stages[-1] != stage:
            stages.append(stage)
    assert stages == [
        IndexStage.COLLECT,
        IndexStage.DETECT_DELETED,
        IndexStage.FILTER,
        IndexStage.EXTRACT,
        IndexStage.EMBED,
        IndexStage.STORE,
        IndexStage.METADATA,
        IndexStage.DONE,
    ]
    percents = [percent for _, percent in events]
    assert percents == sorted(percents)
    assert percents[-1] == 100.0


def test_nothing_to_index_short_circuits(store, source):
    embedder, provider = _embedder()
    events = []

    result = build_index(
        source,
        store=store,
        embedder=embedder,
        progress=lambda stage, percent, message: events.append((stage, percent)),
    )

    assert result.status == IndexStatus.EMPTY
    assert result.errors_count == 0
    assert events[-1] == (IndexStage.DONE, 100.0)
    assert provider.calls == []


def test_dimension_mismatch_fails_file_and_keeps_metadata(store, source):
    target = source / "a.py"
    target.write_text("x = 1\n", encoding="utf-8")
    provider = FakeProvider(dimension=8)
    embedder = EmbeddingService(provider, None, dimension=DIM)

    result = build_index(source, store=store, embedder=embedder)

    assert result.failed_files == [str(target)]
    assert result.failures[0].stage == IndexStage.EMBED.value
    assert store.get_file_record(str(target)) is None
    assert store.count_chunks() == 0


def test_storage_batches_respect_batch_size(store, source, monkeypatch):
    for idx in range(5):
        (source / f"f{idx}.py").write_text(f"v = {idx}\n", encoding="utf-8")
    embedder, _ = _embedder()
    batches = []
    original = store.save_chunks

    def recording_save_chunks(chunks):
        chunks = list(chunks)
        batches.append(len(chunks))
        return original(chunks)

    monkeypatch.setattr(store, "save_chunks", recording_save_chunks)

    build_index(source, store=store, embedder=embedder, options=IndexOptions(storage_batch_size=2))

    assert batches == [2, 2, 1]


def test_storage_error_aborts_run(store, source, monkeypatch):
    (source / "a.py").write_text("x = 1\n", encoding="utf-8")
    embedder, _ = _embedder()

    def broken_save(chunks):
        raise StorageError("disk full")

    monkeypatch.setattr(store, "save_chunks", broken_save)

    with pytest.raises(StorageError):
        build_index(source, store=store, embedder=embedder)
    assert store.get_file_record(str(source / "a.py")) is None


def test_full_mode_reindexes_everything(store, source):
    (source / "a.py").write_text("x = 1\n", encoding="utf-8")
    embedder, _ = _embedder()
    build_index(source, store=store, embedder=embedder)

    result = build_index(
        source, store=store, embedder=embedder, options=IndexOptions(incremental=False)
    )

    assert result.files_indexed == 1


def test_deletion_without_auto_cleanup_keeps_soft_deleted_rows(store, source):
    target = source / "a.py"
    target.write_text("x = 1\n", encoding="utf-8")
    embedder, _ = _embedder()
    build_index(source, store=store, embedder=embedder)
    target.unlink()

    result = build_index(
        source, store=store, embedder=embedder, options=IndexOptions(auto_cleanup=False)
    )

    assert result.files_deleted == [str(target)]
    assert result.files_cleaned == 0
    assert store.get_stats().pending_cleanup == 1
    assert store.cleanup_deleted_files() == 1


def test_language_filter_and_summary(store, source):
    (source / "a.py").write_text("def f():\n    return 1\n", encoding="utf-8")
    (source / "notes.md").write_text("# Notes\nsome text\n", encoding="utf-8")
    embedder, _ = _embedder()

    result = build_index(
        source, store=store, embedder=embedder, options=IndexOptions(languages=("python",))
    )

    assert result.files_indexed == 2
    assert result.summary.chunks_by_language == {"python": result.chunks_indexed}
    assert store.get_file_record(str(source / "notes.md")).chunk_count == 0
    assert result.summary.avg_chunks_per_file == result.chunks_indexed / 2
    assert result.summary.total_bytes > 0


def test_options_from_config_uses_defaults_and_overrides():
    config = Config(include_patterns=(), storage_batch_size=7, auto_cleanup=False)

    options = IndexOptions.from_config(config, incremental=False, max_file_size=None)

    assert "*.py" in options.include_patterns
    assert options.storage_batch_size == 7
    assert options.auto_cleanup is False
    assert options.incremental is False
    assert options.max_file_size == config.max_file_size

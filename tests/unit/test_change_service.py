import os

import pytest

from chunkvault.checksum import ChecksumCache, checksum
from chunkvault.errors import ChecksumError
from chunkvault.services.change_service import ChangeDetector
from chunkvault.store import IndexStore, SQLiteBackend
from chunkvault.utils import mtime_ms


@pytest.fixture
def store(tmp_path):
    store = IndexStore(
        SQLiteBackend(tmp_path / "db" / "index.db"),
        index_id="changes",
        backup_dir=tmp_path / "backups",
        dimension=4,
    ).initialize()
    yield store
    store.close()


def _write(path, text, mtime_ms_value=None):
    path.write_text(text, encoding="utf-8")
    if mtime_ms_value is not None:
        ns = mtime_ms_value * 1_000_000
        os.utime(path, ns=(ns, ns))
    return path


def _record(store, path):
    stat = path.stat()
    store.set_file_record(str(path), checksum(path.read_bytes()), stat.st_size, mtime_ms(stat), 1)


def test_untracked_file_needs_reindexing(store):
    detector = ChangeDetector(store)

    assert detector.needs_reindexing("/new.py", "abc", 1) is True


def test_unchanged_mtime_takes_fast_path(store):
    store.set_file_record("/a.py", "old-sum", 1, 5000, 1)
    detector = ChangeDetector(store)

    assert detector.needs_reindexing("/a.py", "different-sum", 5000) is False


def test_touched_file_with_same_content_updates_mtime(store):
    store.set_file_record("/a.py", "same", 1, 5000, 1)
    detector = ChangeDetector(store)

    assert detector.needs_reindexing("/a.py", "same", 9000) is False
    assert store.get_file_record("/a.py").last_modified == 9000


@pytest.mark.parametrize("new_mtime", [9000, 1000])
def test_content_change_detected_regardless_of_mtime_direction(store, new_mtime):
    store.set_file_record("/a.py", "old", 1, 5000, 1)
    detector = ChangeDetector(store)

    assert detector.needs_reindexing("/a.py", "new", new_mtime) is True
    assert store.get_file_record("/a.py").last_modified == 5000


def test_soft_deleted_record_counts_as_untracked(store):
    store.set_file_record("/a.py", "same", 1, 5000, 1)
    store.mark_file_deleted("/a.py")

    assert ChangeDetector(store).needs_reindexing("/a.py", "same", 5000) is True


def test_file_needs_reindexing_skips_hash_on_fast_path(store, tmp_path, monkeypatch):
    target = _write(tmp_path / "a.py", "print(1)\n", 1_700_000_000_000)
    _record(store, target)

    def fail_checksum(path, *args, **kwargs):
        raise AssertionError("checksum should not be computed")

    monkeypatch.setattr("chunkvault.services.change_service.file_checksum", fail_checksum)

    assert ChangeDetector(store).file_needs_reindexing(target) is False


def test_file_needs_reindexing_after_touch_and_edit(store, tmp_path):
    target = _write(tmp_path / "a.py", "print(1)\n", 1_700_000_000_000)
    _record(store, target)
    detector = ChangeDetector(store)

    _write(target, "print(1)\n", 1_700_000_100_000)
    assert detector.file_needs_reindexing(target) is False
    assert store.get_file_record(str(target)).last_modified == 1_700_000_100_000

    _write(target, "print(2)\n", 1_600_000_000_000)
    assert detector.file_needs_reindexing(target) is True


def test_checksum_error_fails_open(store, tmp_path, monkeypatch):
    target = _write(tmp_path / "a.py", "x = 1\n", 1_700_000_000_000)
    _record(store, target)
    _write(target, "x = 1\n", 1_700_000_500_000)

    def broken_checksum(path, *args, **kwargs):
        raise ChecksumError("unreadable", path=str(path))

    monkeypatch.setattr("chunkvault.services.change_service.file_checksum", broken_checksum)

    assert ChangeDetector(store).file_needs_reindexing(target) is True


def test_missing_file_needs_reindexing(store, tmp_path):
    target = _write(tmp_path / "gone.py", "x\n")
    _record(store, target)
    target.unlink()

    assert ChangeDetector(store).file_needs_reindexing(target) is True


def test_snapshot_uses_checksum_cache(store, tmp_path, monkeypatch):
    target = _write(tmp_path / "a.py", "x = 1\n")
    cache = ChecksumCache()
    detector = ChangeDetector(store, checksum_cache=cache)

    first = detector.snapshot(target)
    assert len(cache) == 1

    monkeypatch.setattr(
        "chunkvault.services.change_service.file_checksum",
        lambda *a, **k: pytest.fail("cache miss"),
    )
    second = detector.snapshot(target)

    assert first == second
    assert first.checksum == checksum(b"x = 1\n")
    assert first.size == 6


def test_current_checksum_matches_file_contents(store, tmp_path):
    target = _write(tmp_path / "a.py", "y = 2\n")

    assert ChangeDetector(store).current_checksum(target) == checksum(b"y = 2\n")
    with pytest.raises(ChecksumError):
        ChangeDetector(store).current_checksum(tmp_path / "missing.py")

def test_snapshot_of_missing_file_raises(store, tmp_path):
    with pytest.raises(ChecksumError):
        ChangeDetector(store).snapshot(tmp_path / "missing.py")


def test_detect_deleted_files(store):
    for path in ("/a.py", "/b.py", "/c.py"):
        store.set_file_record(path, "s", 1, 1, 0)
    store.mark_file_deleted("/c.py")

    deleted = ChangeDetector(store).detect_deleted_files(["/a.py"])

    assert deleted == ["/b.py"]


def test_size_change_with_same_mtime_is_hashed(store, tmp_path):
    target = _write(tmp_path / "a.py", "x = 1\n", 1_700_000_000_000)
    _record(store, target)

    _write(target, "x = 12345\n", 1_700_000_000_000)

    assert ChangeDetector(store).file_needs_reindexing(target) is True

"""Decide which files need (re)indexing from stored metadata."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from ..checksum import ChecksumCache, file_checksum
from ..errors import ChecksumError
from ..store import IndexStore
from ..utils import mtime_ms

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FileSnapshot:
    path: str
    checksum: str
    size: int
    mtime_ms: int


class ChangeDetector:
    """Hybrid mtime + checksum change detection over an :class:`IndexStore`.

    An unchanged mtime and size short-circuit to "unchanged" without hashing.
    Otherwise the content checksum decides, whichever way the mtime moved:
    equal bytes only refresh the stored mtime so the next run takes the fast
    path again.
    """

    def __init__(self, store: IndexStore, checksum_cache: ChecksumCache | None = None) -> None:
        self.store = store
        self.checksum_cache = checksum_cache if checksum_cache is not None else ChecksumCache()

    def needs_reindexing(self, path: str, current_checksum: str, current_mtime_ms: int) -> bool:
        record = self.store.get_file_record(path)
        if record is None:
            return True
        if int(current_mtime_ms) == record.last_modified:
            return False
        if current_checksum == record.checksum:
            self.store.update_file_mtime(path, int(current_mtime_ms))
            logger.debug("mtime of %s moved without a content change", path)
            return False
        return True

    def file_needs_reindexing(self, path: Path | str) -> bool:
        """Stat *path* and hash it only when the mtime fast path does not apply."""

        file_path = Path(path)
        key = str(file_path)
        record = self.store.get_file_record(key)
        if record is None:
            return True
        try:
            stat = file_path.stat()
        except OSError as exc:
            logger.info("Cannot stat %s, scheduling reindex: %s", key, exc)
            return True
        current_mtime = mtime_ms(stat)
        if current_mtime == record.last_modified and int(stat.st_size) == record.file_size:
            return False
        try:
            digest = self._checksum(file_path, stat)
        except ChecksumError as exc:
            logger.info("Checksum failed, scheduling reindex: %s", exc)
            return True
        if digest != record.checksum:
            return True
        if current_mtime != record.last_modified:
            self.store.update_file_mtime(key, current_mtime)
            logger.debug("mtime of %s moved without a content change", key)
        return False

    def current_checksum(self, path: Path | str) -> str:
        file_path = Path(path)
        try:
            stat = file_path.stat()
        except OSError as exc:
            raise ChecksumError(str(exc), path=file_path) from exc
        return self._checksum(file_path, stat)

    def snapshot(self, path: Path | str) -> FileSnapshot:
        """Return checksum, size and mtime of *path* as they are on disk now."""

        file_path = Path(path)
        try:
            stat = file_path.stat()
        except OSError as exc:
            raise ChecksumError(str(exc), path=file_path) from exc
        return FileSnapshot(
            path=str(file_path),
            checksum=self._checksum(file_path, stat),
            size=int(stat.st_size),
            mtime_ms=mtime_ms(stat),
        )

    def detect_deleted_files(self, current_paths: Iterable[str]) -> list[str]:
        present = set(current_paths)
        return [path for path in self.store.get_all_tracked_files() if path not in present]

    def _checksum(self, path: Path, stat: os.stat_result) -> str:
        key = str(path)
        cached = self.checksum_cache.get(key, stat.st_mtime_ns, stat.st_size)
        if cached is not None:
            return cached
        digest = file_checksum(path)
        self.checksum_cache.set(key, stat.st_mtime_ns, stat.st_size, digest)
        return digest

"""Content hashing helpers used for change detection and chunk identity."""

from __future__ import annotations

import hashlib
from collections import OrderedDict
from pathlib import Path
from threading import Lock

from .errors import ChecksumError
from .text import Messages

DEFAULT_BLOCK_SIZE = 64 * 1024
CHECKSUM_CACHE_MAX_ENTRIES = 1000


def checksum(data: bytes | str) -> str:
    """Return the SHA-256 hex digest of *data* (strings are UTF-8 encoded)."""

    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def chunk_checksum(file_path: str, content: str, start_line: int, end_line: int) -> str:
    """Return the identity hash of a chunk.

    The file path and line range are folded into the digest so identical code
    at two different locations never shares an id.
    """

    return checksum(f"{file_path}:{start_line}-{end_line}:{content}")


def file_checksum(path: Path | str, block_size: int = DEFAULT_BLOCK_SIZE) -> str:
    """Return the SHA-256 hex digest of a file's raw bytes, read in blocks."""

    digest = hashlib.sha256()
    try:
        with open(path, "rb") as handle:
            while True:
                block = handle.read(block_size)
                if not block:
                    break
                digest.update(block)
    except OSError as exc:
        raise ChecksumError(
            Messages.ERROR_CHECKSUM_READ.format(path=path, reason=exc.strerror or exc),
            path=str(path),
        ) from exc
    return digest.hexdigest()


def verify_checksum(data: bytes | str, expected: str) -> bool:
    return checksum(data) == (expected or "").strip().lower()


class ChecksumCache:
    """Bounded FIFO cache of file checksums keyed by ``(path, mtime_ns, size)``.

    A file whose stat tuple changed produces a different key, so a hit always
    refers to the bytes that were hashed.
    """

    def __init__(self, max_entries: int = CHECKSUM_CACHE_MAX_ENTRIES) -> None:
        self.max_entries = max(int(max_entries), 0)
        self._entries: "OrderedDict[tuple[str, int, int], str]" = OrderedDict()
        self._lock = Lock()

    def get(self, path: str, mtime_ns: int, size: int) -> str | None:
        with self._lock:
            return self._entries.get((path, mtime_ns, size))

    def set(self, path: str, mtime_ns: int, size: int, digest: str) -> None:
        if self.max_entries <= 0:
            return
        key = (path, mtime_ns, size)
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._entries.popitem(last=False)
            self._entries[key] = digest

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

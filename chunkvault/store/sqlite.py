"""Embedded SQLite backend for the index store."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from threading import RLock
from typing import Any, Sequence

from ..errors import StorageError
from ..text import Messages


def _connect(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.execute("PRAGMA synchronous = NORMAL;")
    conn.execute("PRAGMA temp_store = MEMORY;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    # code_chunks rows are written before their indexed_files row during a run.
    conn.execute("PRAGMA foreign_keys = OFF;")
    return conn


class SQLiteBackend:
    """Single-connection SQLite backend; write-ahead logging keeps readers unblocked."""

    backup_suffix = ".db"

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._conn: sqlite3.Connection | None = None
        self._lock = RLock()

    @property
    def location(self) -> str:
        return str(self.path)

    def open(self) -> None:
        if self._conn is not None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = _connect(self.path)
        except (OSError, sqlite3.Error) as exc:
            raise StorageError(
                Messages.ERROR_STORE_OPEN.format(path=self.path, reason=str(exc))
            ) from exc

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _require(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError(Messages.ERROR_STORE_NOT_INITIALIZED)
        return self._conn

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        conn = self._require()
        with self._lock:
            try:
                rows = conn.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as exc:
                raise StorageError(Messages.ERROR_STORE_QUERY.format(reason=str(exc))) from exc
        return [dict(row) for row in rows]

    def execute_batch(self, statements: Sequence[tuple[str, Sequence[Any]]]) -> None:
        """Run *statements* in one immediate transaction."""

        if not statements:
            return
        conn = self._require()
        with self._lock:
            try:
                with conn:
                    conn.execute("BEGIN IMMEDIATE;")
                    for sql, params in statements:
                        conn.execute(sql, tuple(params))
            except sqlite3.Error as exc:
                raise StorageError(Messages.ERROR_STORE_QUERY.format(reason=str(exc))) from exc

    def snapshot(self, destination: Path, index_id: str) -> None:
        # The database file is copied whole.
        conn = self._require()
        destination.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            try:
                target = sqlite3.connect(destination)
                try:
                    conn.backup(target)
                finally:
                    target.close()
            except sqlite3.Error as exc:
                raise StorageError(Messages.ERROR_STORE_QUERY.format(reason=str(exc))) from exc

    def restore(self, source: Path, index_id: str) -> None:
        conn = self._require()
        with self._lock:
            try:
                origin = sqlite3.connect(source)
                try:
                    origin.backup(conn)
                finally:
                    origin.close()
            except sqlite3.Error as exc:
                raise StorageError(Messages.ERROR_STORE_QUERY.format(reason=str(exc))) from exc

    def compact(self) -> None:
        conn = self._require()
        with self._lock:
            try:
                conn.execute("VACUUM;")
            except sqlite3.Error as exc:
                raise StorageError(Messages.ERROR_STORE_QUERY.format(reason=str(exc))) from exc

"""Cloudflare D1 backend for the index store."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Protocol, Sequence

from ..config import DEFAULT_CLOUDFLARE_ENDPOINT
from ..errors import StorageError
from ..http import post_json
from ..text import Messages
from .schema import EXPORT_FORMAT, dump_tables, now_ms, restore_statements

logger = logging.getLogger(__name__)


class D1Transport(Protocol):
    """Minimal SQL transport to a D1 database."""

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        ...

    def batch(self, statements: Sequence[tuple[str, Sequence[Any]]]) -> None:
        ...


class D1HttpTransport:
    """D1 transport over the Cloudflare REST ``/query`` endpoint."""

    def __init__(
        self,
        *,
        account_id: str,
        api_key: str,
        database_id: str,
        endpoint: str = DEFAULT_CLOUDFLARE_ENDPOINT,
        timeout: float | None = None,
    ) -> None:
        self.url = (
            f"{endpoint.rstrip('/')}/accounts/{account_id}/d1/database/{database_id}/query"
        )
        self._headers = {"Authorization": f"Bearer {api_key}"}
        self.timeout = timeout

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        payload = post_json(
            self.url,
            {"sql": sql, "params": list(params)},
            provider="D1",
            headers=self._headers,
            timeout=self.timeout,
            error_type=StorageError,
        )
        return parse_d1_response(payload)

    def batch(self, statements: Sequence[tuple[str, Sequence[Any]]]) -> None:
        # The REST endpoint takes one parameterised statement per request.
        for sql, params in statements:
            self.query(sql, params)


def parse_d1_response(payload: object) -> list[dict[str, Any]]:
    """Return the result rows of a ``{success, errors, result: [{results}]}`` body."""

    if not isinstance(payload, dict):
        raise StorageError(Messages.ERROR_D1_REQUEST.format(reason="malformed response"))
    if not payload.get("success", False):
        errors = payload.get("errors") or []
        reason = "; ".join(
            str(item.get("message", item)) if isinstance(item, dict) else str(item)
            for item in errors
        ) or "success=false"
        raise StorageError(Messages.ERROR_D1_REQUEST.format(reason=reason))
    results = payload.get("result") or []
    if isinstance(results, dict):
        results = [results]
    rows: list[dict[str, Any]] = []
    for item in results:
        if not isinstance(item, dict):
            continue
        if item.get("success") is False:
            raise StorageError(
                Messages.ERROR_D1_REQUEST.format(reason=str(item.get("error") or "statement failed"))
            )
        rows.extend(row for row in item.get("results") or [] if isinstance(row, dict))
    return rows


class D1Backend:
    """Remote backend shared by many indexes.

    Snapshots are JSON exports of a single index kept on the local disk.
    """

    backup_suffix = ".json"

    def __init__(self, transport: D1Transport, *, location: str = "d1") -> None:
        self.transport = transport
        self._location = location
        self._open = False

    @property
    def location(self) -> str:
        return self._location

    def open(self) -> None:
        self._open = True

    def close(self) -> None:
        self._open = False

    def _require(self) -> D1Transport:
        if not self._open:
            raise StorageError(Messages.ERROR_STORE_NOT_INITIALIZED)
        return self.transport

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        return self._require().query(sql, params)

    def execute_batch(self, statements: Sequence[tuple[str, Sequence[Any]]]) -> None:
        if statements:
            self._require().batch(list(statements))

    def snapshot(self, destination: Path, index_id: str) -> None:
        payload = {
            "format": EXPORT_FORMAT,
            "exported_at": now_ms(),
            "tables": dump_tables(self.query, index_id),
        }
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")

    def restore(self, source: Path, index_id: str) -> None:
        try:
            payload = json.loads(source.read_text(encoding="utf-8"))
            statements = restore_statements(payload, index_id)
        except (OSError, ValueError) as exc:
            raise StorageError(Messages.ERROR_BACKUP_INVALID.format(path=source)) from exc
        self.execute_batch(statements)

    def compact(self) -> None:
        logger.debug("D1 manages its own storage; nothing to compact")

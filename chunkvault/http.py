"""JSON-over-HTTP helper shared by the embedding providers and the D1 store."""

from __future__ import annotations

import json
import logging
import time
from typing import Mapping
from urllib import error as urlerror
from urllib import request as urlrequest

from .errors import ChunkvaultError, ProviderUnavailableError
from .text import Messages

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}
_MAX_RETRIES = 2
_RETRY_BASE_DELAY = 0.5
_RETRY_MAX_DELAY = 4.0


def _sleep(seconds: float) -> None:
    time.sleep(seconds)


def _backoff_delay(attempt: int) -> float:
    return min(_RETRY_MAX_DELAY, _RETRY_BASE_DELAY * (2**attempt))


def post_json(
    url: str,
    payload: object,
    *,
    provider: str,
    headers: Mapping[str, str] | None = None,
    timeout: float | None = None,
    max_retries: int = _MAX_RETRIES,
    error_type: type[ChunkvaultError] = ProviderUnavailableError,
) -> object:
    """POST *payload* as JSON and return the decoded response body.

    Transient HTTP statuses are retried with exponential backoff; every other
    failure is raised as *error_type*.
    """

    data = json.dumps(payload).encode("utf-8")
    attempt = 0
    while True:
        request = urlrequest.Request(url, data=data, method="POST")
        request.add_header("Content-Type", "application/json")
        for key, value in (headers or {}).items():
            request.add_header(key, value)
        try:
            with urlrequest.urlopen(request, timeout=timeout) as response:
                body = response.read().decode("utf-8", errors="replace")
            break
        except urlerror.HTTPError as exc:
            if exc.code in _RETRYABLE_STATUS_CODES and attempt < max_retries:
                logger.debug("%s returned HTTP %s; retrying", provider, exc.code)
                _sleep(_backoff_delay(attempt))
                attempt += 1
                continue
            reason = f"HTTP {exc.code}"
            try:
                detail = exc.read().decode("utf-8", errors="replace").strip()
            except Exception:
                detail = ""
            if detail:
                reason = f"{reason}: {detail[:200]}"
            raise error_type(
                Messages.ERROR_PROVIDER_FAILED.format(provider=provider, reason=reason)
            ) from exc
        except urlerror.URLError as exc:
            raise error_type(
                Messages.ERROR_PROVIDER_FAILED.format(provider=provider, reason=str(exc.reason))
            ) from exc
        except (OSError, ValueError) as exc:  # pragma: no cover - network edge cases
            raise error_type(
                Messages.ERROR_PROVIDER_FAILED.format(provider=provider, reason=str(exc))
            ) from exc
    try:
        return json.loads(body)
    except json.JSONDecodeError as exc:
        raise error_type(Messages.ERROR_PROVIDER_PAYLOAD.format(provider=provider)) from exc

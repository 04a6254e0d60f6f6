"""OpenAI-backed embedding backend, an alternative primary tier."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import time
from typing import Iterator, Sequence

import numpy as np
from dotenv import load_dotenv
from openai import OpenAI

from ..config import DEFAULT_OPENAI_MODEL
from ..errors import ProviderUnavailableError
from ..text import Messages

PROVIDER_NAME = "openai"


class OpenAIEmbeddingBackend:
    """Embedding backend that calls OpenAI's embeddings API."""

    name = PROVIDER_NAME

    def __init__(
        self,
        *,
        api_key: str | None,
        model_name: str = DEFAULT_OPENAI_MODEL,
        dimensions: int | None = None,
        chunk_size: int | None = None,
        concurrency: int = 1,
        timeout: float | None = None,
    ) -> None:
        load_dotenv()
        if not api_key:
            raise ProviderUnavailableError(
                Messages.ERROR_PROVIDER_CREDENTIALS.format(provider=PROVIDER_NAME)
            )
        self.model_name = model_name
        self.dimensions = dimensions
        self.chunk_size = chunk_size if chunk_size and chunk_size > 0 else None
        self.concurrency = max(int(concurrency or 1), 1)
        client_kwargs: dict[str, object] = {"api_key": api_key}
        if timeout:
            client_kwargs["timeout"] = timeout
        self._client = OpenAI(**client_kwargs)

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.empty((0, 0), dtype=np.float32)
        batches = list(_chunk(texts, self.chunk_size))
        if self.concurrency > 1 and len(batches) > 1:
            with ThreadPoolExecutor(max_workers=min(self.concurrency, len(batches))) as executor:
                results = list(executor.map(self._embed_batch, batches))
        else:
            results = [self._embed_batch(batch) for batch in batches]
        vectors = [vector for batch in results for vector in batch]
        if not vectors:
            raise ProviderUnavailableError(Messages.ERROR_NO_EMBEDDINGS.format(provider=PROVIDER_NAME))
        return np.vstack(vectors)

    def _embed_batch(self, batch: Sequence[str]) -> list[np.ndarray]:
        request: dict[str, object] = {"model": self.model_name, "input": list(batch)}
        if self.dimensions:
            request["dimensions"] = self.dimensions
        attempt = 0
        while True:
            try:
                response = self._client.embeddings.create(**request)
                break
            except Exception as exc:  # pragma: no cover - API client variations
                if _should_retry_openai_error(exc) and attempt < _MAX_RETRIES:
                    _sleep(_backoff_delay(attempt))
                    attempt += 1
                    continue
                raise ProviderUnavailableError(_format_openai_error(exc)) from exc
        data = getattr(response, "data", None) or []
        if len(data) != len(batch):
            raise ProviderUnavailableError(
                Messages.ERROR_PROVIDER_COUNT.format(
                    provider=PROVIDER_NAME, got=len(data), expected=len(batch)
                )
            )
        ordered = sorted(data, key=lambda item: getattr(item, "index", 0))
        return [np.asarray(item.embedding, dtype=np.float32) for item in ordered]


def _chunk(items: Sequence[str], size: int | None) -> Iterator[Sequence[str]]:
    if size is None or size <= 0:
        yield items
        return
    for idx in range(0, len(items), size):
        yield items[idx : idx + size]


_RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}
_MAX_RETRIES = 2
_RETRY_BASE_DELAY = 0.5
_RETRY_MAX_DELAY = 4.0


def _sleep(seconds: float) -> None:
    time.sleep(seconds)


def _backoff_delay(attempt: int) -> float:
    return min(_RETRY_MAX_DELAY, _RETRY_BASE_DELAY * (2**attempt))


def _extract_status_code(exc: Exception) -> int | None:
    for attr in ("status_code", "status", "http_status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    if response is not None:
        value = getattr(response, "status_code", None)
        if isinstance(value, int):
            return value
    return None


def _should_retry_openai_error(exc: Exception) -> bool:
    if _extract_status_code(exc) in _RETRYABLE_STATUS_CODES:
        return True
    name = exc.__class__.__name__.lower()
    if "ratelimit" in name or "timeout" in name:
        return True
    message = str(exc).lower()
    return any(
        token in message
        for token in ("rate limit", "timeout", "temporar", "overload", "service unavailable")
    )


def _format_openai_error(exc: Exception) -> str:
    message = getattr(exc, "message", None) or str(exc)
    return f"{Messages.ERROR_OPENAI_PREFIX}{message}"

"""Cloudflare Workers AI embedding backend."""

from __future__ import annotations

from typing import Iterator, Sequence

import numpy as np

from ..config import DEFAULT_CLOUDFLARE_ENDPOINT, DEFAULT_WORKERS_AI_MODEL
from ..errors import ProviderUnavailableError
from ..http import post_json
from ..text import Messages

PROVIDER_NAME = "workers-ai"


class WorkersAIEmbeddingBackend:
    """Primary embedding backend calling the Workers AI ``ai/run`` endpoint."""

    name = PROVIDER_NAME

    def __init__(
        self,
        *,
        account_id: str | None,
        api_key: str | None,
        model_name: str = DEFAULT_WORKERS_AI_MODEL,
        endpoint: str = DEFAULT_CLOUDFLARE_ENDPOINT,
        chunk_size: int | None = None,
        timeout: float | None = None,
    ) -> None:
        if not account_id or not api_key:
            raise ProviderUnavailableError(
                Messages.ERROR_PROVIDER_CREDENTIALS.format(provider=PROVIDER_NAME)
            )
        self.account_id = account_id
        self.api_key = api_key
        self.model_name = model_name
        self.endpoint = endpoint.rstrip("/")
        self.chunk_size = chunk_size if chunk_size and chunk_size > 0 else None
        self.timeout = timeout

    @property
    def url(self) -> str:
        return f"{self.endpoint}/accounts/{self.account_id}/ai/run/{self.model_name}"

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.empty((0, 0), dtype=np.float32)
        vectors: list[np.ndarray] = []
        for batch in _chunk(texts, self.chunk_size):
            vectors.extend(self._embed_batch(batch))
        return np.vstack(vectors)

    def _embed_batch(self, batch: Sequence[str]) -> list[np.ndarray]:
        payload = post_json(
            self.url,
            {"text": list(batch)},
            provider=PROVIDER_NAME,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout,
        )
        return parse_workers_ai_response(payload, expected=len(batch))


def parse_workers_ai_response(payload: object, *, expected: int) -> list[np.ndarray]:
    """Validate a ``{success, errors, result: {shape, data}}`` response body."""

    if not isinstance(payload, dict):
        raise ProviderUnavailableError(Messages.ERROR_PROVIDER_PAYLOAD.format(provider=PROVIDER_NAME))
    if payload.get("success") is False:
        errors = payload.get("errors") or []
        reason = "; ".join(
            str(item.get("message", item)) if isinstance(item, dict) else str(item)
            for item in errors
        ) or "success=false"
        raise ProviderUnavailableError(
            Messages.ERROR_PROVIDER_FAILED.format(provider=PROVIDER_NAME, reason=reason)
        )
    result = payload.get("result")
    data = result.get("data") if isinstance(result, dict) else None
    if not isinstance(data, list) or not data:
        raise ProviderUnavailableError(Messages.ERROR_NO_EMBEDDINGS.format(provider=PROVIDER_NAME))
    if len(data) != expected:
        raise ProviderUnavailableError(
            Messages.ERROR_PROVIDER_COUNT.format(
                provider=PROVIDER_NAME, got=len(data), expected=expected
            )
        )
    vectors: list[np.ndarray] = []
    for row in data:
        try:
            vector = np.asarray(row, dtype=np.float32)
        except (TypeError, ValueError) as exc:
            raise ProviderUnavailableError(
                Messages.ERROR_PROVIDER_PAYLOAD.format(provider=PROVIDER_NAME)
            ) from exc
        if vector.ndim != 1 or vector.size == 0 or not np.all(np.isfinite(vector)):
            raise ProviderUnavailableError(
                Messages.ERROR_PROVIDER_PAYLOAD.format(provider=PROVIDER_NAME)
            )
        vectors.append(vector)
    return vectors


def _chunk(items: Sequence[str], size: int | None) -> Iterator[Sequence[str]]:
    if size is None or size <= 0:
        yield items
        return
    for idx in range(0, len(items), size):
        yield items[idx : idx + size]

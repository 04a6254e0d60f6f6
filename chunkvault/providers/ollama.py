"""Ollama embedding backend for a locally reachable inference service."""

from __future__ import annotations

from typing import Sequence

import numpy as np

from ..config import DEFAULT_OLLAMA_MODEL, DEFAULT_OLLAMA_URL
from ..errors import ProviderUnavailableError
from ..http import post_json
from ..text import Messages

PROVIDER_NAME = "ollama"


class OllamaEmbeddingBackend:
    """Secondary embedding backend posting to ``/api/embeddings``, one text per call."""

    name = PROVIDER_NAME

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_OLLAMA_URL,
        model_name: str = DEFAULT_OLLAMA_MODEL,
        timeout: float | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model_name = model_name
        self.timeout = timeout

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.empty((0, 0), dtype=np.float32)
        vectors = [self._embed_one(text) for text in texts]
        if len({vector.size for vector in vectors}) != 1:
            raise ProviderUnavailableError(
                Messages.ERROR_PROVIDER_PAYLOAD.format(provider=PROVIDER_NAME)
            )
        return np.vstack(vectors)

    def _embed_one(self, text: str) -> np.ndarray:
        payload = post_json(
            f"{self.base_url}/api/embeddings",
            {"model": self.model_name, "prompt": text},
            provider=PROVIDER_NAME,
            timeout=self.timeout,
            max_retries=0,
        )
        embedding = payload.get("embedding") if isinstance(payload, dict) else None
        if not isinstance(embedding, list) or not embedding:
            raise ProviderUnavailableError(
                Messages.ERROR_NO_EMBEDDINGS.format(provider=PROVIDER_NAME)
            )
        try:
            vector = np.asarray(embedding, dtype=np.float32)
        except (TypeError, ValueError) as exc:
            raise ProviderUnavailableError(
                Messages.ERROR_PROVIDER_PAYLOAD.format(provider=PROVIDER_NAME)
            ) from exc
        if vector.ndim != 1 or not np.all(np.isfinite(vector)):
            raise ProviderUnavailableError(
                Messages.ERROR_PROVIDER_PAYLOAD.format(provider=PROVIDER_NAME)
            )
        return vector

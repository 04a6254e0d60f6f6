"""In-process fastembed backend, an alternative secondary tier."""

from __future__ import annotations

from pathlib import Path
from typing import Iterator, Sequence

import numpy as np

from ..config import DEFAULT_FASTEMBED_MODEL, data_dir
from ..errors import ProviderUnavailableError
from ..text import Messages

PROVIDER_NAME = "fastembed"


def _load_fastembed():
    try:
        from fastembed import TextEmbedding
    except ImportError as exc:
        raise ProviderUnavailableError(Messages.ERROR_LOCAL_DEP_MISSING) from exc
    return TextEmbedding


def resolve_fastembed_cache_dir(*, create: bool = True) -> Path:
    """Return the cache directory used for downloaded local models."""
    cache_dir = data_dir() / "models"
    if create:
        cache_dir.mkdir(parents=True, exist_ok=True)
    return cache_dir


class LocalEmbeddingBackend:
    """Embedding backend that runs a lightweight local model via fastembed."""

    name = PROVIDER_NAME

    def __init__(
        self,
        *,
        model_name: str = DEFAULT_FASTEMBED_MODEL,
        chunk_size: int | None = None,
    ) -> None:
        self.model_name = model_name
        self.chunk_size = chunk_size if chunk_size and chunk_size > 0 else None
        TextEmbedding = _load_fastembed()
        try:
            self._model = TextEmbedding(
                model_name=model_name,
                cache_dir=str(resolve_fastembed_cache_dir()),
            )
        except Exception as exc:
            raise ProviderUnavailableError(
                Messages.ERROR_LOCAL_MODEL_LOAD.format(model=model_name, reason=str(exc))
            ) from exc

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.empty((0, 0), dtype=np.float32)
        vectors: list[np.ndarray] = []
        for chunk in _chunk(texts, self.chunk_size):
            try:
                for embedding in self._model.embed(list(chunk)):
                    vectors.append(np.asarray(embedding, dtype=np.float32))
            except Exception as exc:
                raise ProviderUnavailableError(
                    Messages.ERROR_LOCAL_MODEL_EMBED.format(reason=str(exc))
                ) from exc
        if not vectors:
            raise ProviderUnavailableError(Messages.ERROR_NO_EMBEDDINGS.format(provider=PROVIDER_NAME))
        return np.vstack(vectors)


def _chunk(items: Sequence[str], size: int | None) -> Iterator[Sequence[str]]:
    if size is None or size <= 0:
        yield items
        return
    for idx in range(0, len(items), size):
        yield items[idx : idx + size]

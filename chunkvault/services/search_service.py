"""Logic helpers for the `chunkvault search` command."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity

from ..embeddings import EmbeddingService
from ..errors import DimensionMismatchError, InvalidInputError
from ..store import ChunkRecord, IndexStore
from ..text import Messages


@dataclass(slots=True)
class SearchHit:
    chunk: ChunkRecord
    score: float

    @property
    def path(self) -> str:
        return self.chunk.file_path


def search_index(
    query: str,
    *,
    store: IndexStore,
    embedder: EmbeddingService,
    top_k: int = 10,
    language: str | None = None,
) -> list[SearchHit]:
    """Rank active chunks of *store* by cosine similarity to *query*."""

    clean_query = (query or "").strip()
    if not clean_query:
        raise InvalidInputError(Messages.ERROR_EMPTY_QUERY)
    if top_k <= 0:
        raise InvalidInputError(Messages.ERROR_BATCH_SIZE.format(name="top_k"))

    query_vector = np.asarray(embedder.embed(clean_query), dtype=np.float32)
    expected = store.embedding_dimension
    if query_vector.size != expected:
        raise DimensionMismatchError(
            Messages.ERROR_QUERY_DIMENSION.format(got=query_vector.size, expected=expected)
        )
    chunks = store.get_all_chunks(language=language)
    if not chunks:
        return []

    matrix = np.vstack([np.asarray(chunk.embedding, dtype=np.float32) for chunk in chunks])
    scores = cosine_similarity(query_vector.reshape(1, -1), matrix)[0]
    limit = min(top_k, len(chunks))
    # Stable sort keeps store order (path, start line) among equal scores.
    order = np.argsort(-scores, kind="stable")[:limit]
    return [SearchHit(chunk=chunks[idx], score=float(scores[idx])) for idx in order]

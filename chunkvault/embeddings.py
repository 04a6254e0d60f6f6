"""Embedding service with a provider fallback chain and a bounded cache."""

from __future__ import annotations

import hashlib
import logging
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from threading import Lock
from typing import Iterator, Protocol, Sequence

import numpy as np

from .config import (
    Config,
    DEFAULT_EMBED_BATCH_SIZE,
    DEFAULT_EMBED_CACHE_SIZE,
    DEFAULT_EMBEDDING_DIMENSION,
    resolve_account_id,
    resolve_api_key,
    resolve_openai_api_key,
)
from .errors import InvalidInputError, ProviderUnavailableError
from .text import Messages

logger = logging.getLogger(__name__)

PLACEHOLDER_PROVIDER = "placeholder"


class EmbeddingProvider(Protocol):
    name: str

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        ...


@dataclass(slots=True)
class EmbeddingCacheEntry:
    vector: np.ndarray
    provider: str
    inserted_at: float


def embedding_cache_key(text: str) -> str:
    """Return a stable hash for embedding cache lookups."""

    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()


class EmbeddingCache:
    """Process-local embedding cache bounded by entry count.

    Lookups refresh an entry's position, inserts evict the oldest entry once the
    cache is full. All access goes through one lock so a single cache can be
    shared by concurrent embedding batches.
    """

    def __init__(self, max_entries: int = DEFAULT_EMBED_CACHE_SIZE) -> None:
        self.max_entries = max(int(max_entries), 0)
        self._entries: "OrderedDict[str, EmbeddingCacheEntry]" = OrderedDict()
        self._lock = Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> EmbeddingCacheEntry | None:
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                self.misses += 1
                return None
            self._entries[key] = entry
            self.hits += 1
            return entry

    def set(self, key: str, vector: np.ndarray, provider: str) -> None:
        if self.max_entries <= 0:
            return
        array = np.array(vector, dtype=np.float32)
        array.setflags(write=False)
        with self._lock:
            self._entries.pop(key, None)
            while len(self._entries) >= self.max_entries:
                self._entries.popitem(last=False)
            self._entries[key] = EmbeddingCacheEntry(
                vector=array,
                provider=provider,
                inserted_at=time.time(),
            )

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries


def placeholder_embedding(text: str, dimension: int = DEFAULT_EMBEDDING_DIMENSION) -> np.ndarray:
    """Return a deterministic, L2-normalised vector derived from a hash of *text*.

    The vector carries no semantic meaning.
    """

    seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
    rng = np.random.default_rng(seed)
    vector = rng.standard_normal(dimension).astype(np.float32)
    norm = float(np.linalg.norm(vector))
    if norm > 0:
        vector /= norm
    return vector


def _chunk(items: Sequence, size: int) -> Iterator[Sequence]:
    for idx in range(0, len(items), size):
        yield items[idx : idx + size]


class EmbeddingService:
    """Turn text into vectors: primary tier, then secondary, then placeholder."""

    def __init__(
        self,
        primary: EmbeddingProvider | None = None,
        secondary: EmbeddingProvider | None = None,
        *,
        dimension: int = DEFAULT_EMBEDDING_DIMENSION,
        cache: EmbeddingCache | None = None,
        batch_size: int = DEFAULT_EMBED_BATCH_SIZE,
        concurrency: int = 1,
    ) -> None:
        self.primary = primary
        self.secondary = secondary
        self.dimension = int(dimension)
        self.cache = cache if cache is not None else EmbeddingCache()
        self.batch_size = max(int(batch_size or 1), 1)
        self.concurrency = max(int(concurrency or 1), 1)
        self.placeholder_count = 0
        self._counter_lock = Lock()

    @property
    def tiers(self) -> list[EmbeddingProvider]:
        return [tier for tier in (self.primary, self.secondary) if tier is not None]

    def embed(self, text: str) -> np.ndarray:
        return self.embed_with_provider(text)[0]

    def embed_with_provider(self, text: str) -> tuple[np.ndarray, str]:
        return self.embed_batch_with_providers([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> list[np.ndarray]:
        return [vector for vector, _ in self.embed_batch_with_providers(texts)]

    def embed_batch_with_providers(self, texts: Sequence[str]) -> list[tuple[np.ndarray, str]]:
        """Embed *texts* and report which tier served each item."""

        for text in texts:
            if not isinstance(text, str) or not text.strip():
                raise InvalidInputError(Messages.ERROR_EMPTY_TEXT)
        if not texts:
            return []

        keys = [embedding_cache_key(text) for text in texts]
        resolved: dict[str, tuple[np.ndarray, str]] = {}
        misses: "OrderedDict[str, str]" = OrderedDict()
        for key, text in zip(keys, texts):
            if key in resolved or key in misses:
                continue
            entry = self.cache.get(key)
            if entry is not None:
                resolved[key] = (entry.vector, entry.provider)
            else:
                misses[key] = text

        batches = list(_chunk(list(misses.items()), self.batch_size))
        if self.concurrency > 1 and len(batches) > 1:
            with ThreadPoolExecutor(max_workers=min(self.concurrency, len(batches))) as executor:
                batch_results = list(executor.map(self._embed_misses, batches))
        else:
            batch_results = [self._embed_misses(batch) for batch in batches]
        for result in batch_results:
            for key, (vector, provider) in result.items():
                self.cache.set(key, vector, provider)
                resolved[key] = (vector, provider)

        return [resolved[key] for key in keys]

    def _embed_misses(self, batch: Sequence[tuple[str, str]]) -> dict[str, tuple[np.ndarray, str]]:
        texts = [text for _, text in batch]
        for tier in self.tiers:
            try:
                vectors = _validate_vectors(tier, tier.embed(texts), len(texts))
            except Exception as exc:
                logger.info(
                    "%s embedding failed for %d text(s), falling back: %s",
                    tier.name,
                    len(texts),
                    exc,
                )
                continue
            return {key: (vector, tier.name) for (key, _), vector in zip(batch, vectors)}

        logger.warning("%s (%d text(s))", Messages.WARNING_PLACEHOLDER_EMBEDDING, len(texts))
        with self._counter_lock:
            self.placeholder_count += len(texts)
        return {
            key: (placeholder_embedding(text, self.dimension), PLACEHOLDER_PROVIDER)
            for key, text in batch
        }

    def clear_cache(self) -> None:
        self.cache.clear()

    def cache_size(self) -> int:
        return len(self.cache)


def _validate_vectors(tier: EmbeddingProvider, vectors: np.ndarray, expected: int) -> list[np.ndarray]:
    array = np.asarray(vectors, dtype=np.float32)
    if array.ndim != 2 or array.shape[0] != expected or array.shape[1] == 0:
        raise ProviderUnavailableError(
            Messages.ERROR_PROVIDER_COUNT.format(
                provider=tier.name,
                got=array.shape[0] if array.ndim else 0,
                expected=expected,
            )
        )
    return [array[idx] for idx in range(expected)]


def build_embedding_service(config: Config, *, cache: EmbeddingCache | None = None) -> EmbeddingService:
    """Assemble the provider chain described by *config*.

    The primary tier is only attempted when its credentials are configured; a
    tier that cannot be constructed is left out of the chain.
    """

    primary: EmbeddingProvider | None = None
    secondary: EmbeddingProvider | None = None
    timeout = config.request_timeout or None

    try:
        if config.remote_provider == "workers-ai":
            account_id = resolve_account_id(config)
            api_key = resolve_api_key(config)
            if account_id and api_key:
                from .providers.workers_ai import WorkersAIEmbeddingBackend

                primary = WorkersAIEmbeddingBackend(
                    account_id=account_id,
                    api_key=api_key,
                    model_name=config.workers_ai_model,
                    endpoint=config.cloudflare_endpoint,
                    chunk_size=config.embed_batch_size,
                    timeout=timeout,
                )
            else:
                logger.info("Workers AI credentials not configured; skipping primary tier")
        elif config.remote_provider == "openai":
            from .providers.openai import OpenAIEmbeddingBackend

            primary = OpenAIEmbeddingBackend(
                api_key=resolve_openai_api_key(config),
                model_name=config.openai_model,
                dimensions=config.embedding_dimension,
                chunk_size=config.embed_batch_size,
                concurrency=config.embed_concurrency,
                timeout=timeout,
            )
    except ProviderUnavailableError as exc:
        logger.info("Primary embedding tier unavailable: %s", exc)

    try:
        if config.local_provider == "ollama":
            from .providers.ollama import OllamaEmbeddingBackend

            secondary = OllamaEmbeddingBackend(
                base_url=config.ollama_url,
                model_name=config.ollama_model,
                timeout=timeout,
            )
        elif config.local_provider == "fastembed":
            from .providers.local import LocalEmbeddingBackend

            secondary = LocalEmbeddingBackend(
                model_name=config.fastembed_model,
                chunk_size=config.embed_batch_size,
            )
    except ProviderUnavailableError as exc:
        logger.info("Secondary embedding tier unavailable: %s", exc)

    return EmbeddingService(
        primary,
        secondary,
        dimension=config.embedding_dimension,
        cache=cache if cache is not None else EmbeddingCache(config.embed_cache_size),
        batch_size=config.embed_batch_size,
        concurrency=config.embed_concurrency,
    )

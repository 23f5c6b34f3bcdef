"""Embedding access through the persistent cache.

Wraps an :class:`EmbeddingProvider` so repeated texts are served from the
embedding cache and only misses reach the provider.
"""

from __future__ import annotations

from loguru import logger

from .protocols import EmbeddingProvider
from .storage.embedding_cache import EmbeddingCache


class CachedEmbedder:
    """Embedding provider decorated with the shared embedding cache.

    Args:
        provider: Underlying embedding adapter
        cache: Embedding cache; ``None`` calls the provider every time
    """

    def __init__(self, provider: EmbeddingProvider, cache: EmbeddingCache | None = None):
        self._provider = provider
        self._cache = cache

    @property
    def provider_name(self) -> str:
        return self._provider.provider

    @property
    def model(self) -> str:
        return self._provider.model

    async def embed(self, text: str) -> list[float]:
        if self._cache is not None:
            cached = await self._cache.get(text, self.provider_name, self.model)
            if cached is not None:
                return cached

        vector = await self._provider.embed(text)
        if self._cache is not None:
            await self._cache.set(text, vector, self.provider_name, self.model)
        return vector

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed texts in order, sending only cache misses to the provider."""
        if not texts:
            return []

        hits: dict[str, list[float]] = {}
        if self._cache is not None:
            hits = await self._cache.get_batch(texts, self.provider_name, self.model)

        misses = list(dict.fromkeys(t for t in texts if t not in hits))
        if misses:
            vectors = await self._provider.embed_batch(misses)
            if len(vectors) != len(misses):
                raise ValueError(
                    f"Embedding provider returned {len(vectors)} vectors "
                    f"for {len(misses)} texts"
                )
            fresh = dict(zip(misses, vectors))
            if self._cache is not None:
                await self._cache.set_batch(fresh, self.provider_name, self.model)
            hits.update(fresh)

        logger.debug(f"Embedded {len(texts)} texts ({len(misses)} sent to provider)")
        return [hits[t] for t in texts]

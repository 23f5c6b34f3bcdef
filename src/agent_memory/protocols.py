"""Interfaces for the external collaborators the engine consumes."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from .models import Summary


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Text-to-vector adapter.

    ``provider`` and ``model`` partition the embedding cache; vectors from
    one (provider, model) pair always share a dimensionality.
    """

    provider: str
    model: str

    async def embed(self, text: str) -> list[float]:
        """Embed a single text."""
        ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts, preserving order."""
        ...


@runtime_checkable
class Summarizer(Protocol):
    """Produces a session summary. Invoked by the caller on a summarize action."""

    async def summarize(
        self, text: str, context: dict[str, Any] | None = None
    ) -> Summary:
        ...

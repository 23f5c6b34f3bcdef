"""
Shared fixtures for the memory engine tests.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from agent_memory.storage.database import Database

VOCABULARY = ("apple", "banana", "car", "dog")


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeEmbeddingProvider:
    """Bag-of-words embedding over a tiny vocabulary; records every call."""

    provider = "fake"
    model = "bow-4"

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.embed_calls: list[str] = []
        self.batch_calls: list[list[str]] = []

    @staticmethod
    def vector_for(text: str) -> list[float]:
        lowered = text.lower()
        return [1.0 if word in lowered else 0.0 for word in VOCABULARY]

    async def embed(self, text: str) -> list[float]:
        if self.fail:
            raise RuntimeError("embedding backend unavailable")
        self.embed_calls.append(text)
        return self.vector_for(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if self.fail:
            raise RuntimeError("embedding backend unavailable")
        self.batch_calls.append(list(texts))
        return [self.vector_for(t) for t in texts]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_provider():
    return FakeEmbeddingProvider()


@pytest.fixture
async def db(clock):
    with tempfile.TemporaryDirectory() as tmpdir:
        database = Database(os.path.join(tmpdir, "test.db"), clock=clock)
        await database.initialize()
        yield database
        await database.close()

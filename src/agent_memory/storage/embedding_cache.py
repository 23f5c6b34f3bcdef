"""Persistent embedding cache with LRU and TTL eviction.

Entries are keyed by a hash of (provider, model, text), so the same text
embedded by different models never collides. Cache rows are independent of
semantic chunks: evicting an entry never touches stored chunks.

Features:
- TTL: entries older than ``ttl_ms`` are invisible to reads (0 disables)
- LRU: ``prune()`` evicts least recently used entries down to ``max_entries``
- Auto-prune once inserts push the count past the headroom
- ``enabled=False`` turns every operation into a miss / no-op
"""

from __future__ import annotations

import hashlib
from collections.abc import Mapping
from datetime import datetime, timedelta

import aiosqlite
from loguru import logger
from pydantic import BaseModel, Field

from ..config import EmbeddingCacheConfig
from ..errors import DatabaseError, StoreInitializationError
from ..vectors import deserialize_embedding, serialize_embedding
from .database import Database, from_db_time, to_db_time

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS embedding_cache (
        cache_key TEXT PRIMARY KEY,
        provider TEXT NOT NULL,
        model TEXT NOT NULL,
        vector BLOB NOT NULL,
        dimensions INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        accessed_at TEXT NOT NULL,
        access_seq INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_embedding_cache_seq ON embedding_cache(access_seq)",
    "CREATE INDEX IF NOT EXISTS idx_embedding_cache_created ON embedding_cache(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_embedding_cache_model ON embedding_cache(provider, model)",
)

# access_seq orders entries by recency without relying on clock resolution
_NEXT_SEQ = "(SELECT COALESCE(MAX(access_seq), 0) + 1 FROM embedding_cache)"

_UPSERT = f"""
    INSERT INTO embedding_cache (
        cache_key, provider, model, vector, dimensions,
        created_at, accessed_at, access_seq
    ) VALUES (?, ?, ?, ?, ?, ?, ?, {_NEXT_SEQ})
    ON CONFLICT(cache_key) DO UPDATE SET
        vector = excluded.vector,
        dimensions = excluded.dimensions,
        created_at = excluded.created_at,
        accessed_at = excluded.accessed_at,
        access_seq = excluded.access_seq
"""

_TOUCH = f"""
    UPDATE embedding_cache
    SET accessed_at = ?, access_seq = {_NEXT_SEQ}
    WHERE cache_key = ?
"""

# SQLite's default host parameter limit is 999 on older builds
_BATCH_SIZE = 500


def make_cache_key(text: str, provider: str, model: str) -> str:
    digest = hashlib.sha256()
    for part in (provider, model, text):
        digest.update(part.encode("utf-8"))
        digest.update(b"\x00")
    return digest.hexdigest()


class ProviderStats(BaseModel):
    provider: str
    model: str
    count: int


class CacheStats(BaseModel):
    total_entries: int = 0
    providers: list[ProviderStats] = Field(default_factory=list)
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None


class EmbeddingCache:
    """SQLite-backed embedding memoization.

    Args:
        db: Shared database
        config: Capacity, TTL and enable switch
    """

    def __init__(self, db: Database, config: EmbeddingCacheConfig | None = None):
        self._db = db
        self._config = config or EmbeddingCacheConfig()

    @property
    def config(self) -> EmbeddingCacheConfig:
        return self._config

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    async def initialize(self) -> None:
        try:
            await self._db.create_schema(_SCHEMA)
        except aiosqlite.Error as e:
            raise StoreInitializationError("embedding cache", cause=e) from e

    def _expiry_cutoff(self) -> str | None:
        """Entries created before this instant are expired; None if TTL is off."""
        if self._config.ttl_ms <= 0:
            return None
        return to_db_time(self._db.now() - timedelta(milliseconds=self._config.ttl_ms))

    def _live_clause(self) -> tuple[str, tuple]:
        cutoff = self._expiry_cutoff()
        if cutoff is None:
            return "", ()
        return " AND created_at >= ?", (cutoff,)

    async def get(self, text: str, provider: str, model: str) -> list[float] | None:
        """Return the cached vector, or None on miss. Hits refresh recency."""
        if not self.enabled:
            return None

        key = make_cache_key(text, provider, model)
        live_sql, live_params = self._live_clause()
        row = await self._db.fetchone(
            f"SELECT vector FROM embedding_cache WHERE cache_key = ?{live_sql}",
            (key, *live_params),
        )
        if row is None:
            return None

        async with self._db.transaction() as db:
            await db.execute(_TOUCH, (to_db_time(self._db.now()), key))
        return deserialize_embedding(row["vector"])

    async def get_batch(
        self, texts: list[str], provider: str, model: str
    ) -> dict[str, list[float]]:
        """Look up many texts at once.

        Returns:
            Mapping of text to vector for the hits only
        """
        if not self.enabled or not texts:
            return {}

        keys = {make_cache_key(text, provider, model): text for text in texts}
        live_sql, live_params = self._live_clause()
        hits: dict[str, list[float]] = {}
        hit_keys: list[str] = []

        key_list = list(keys)
        for start in range(0, len(key_list), _BATCH_SIZE):
            chunk = key_list[start : start + _BATCH_SIZE]
            rows = await self._db.fetchall(
                f"SELECT cache_key, vector FROM embedding_cache "
                f"WHERE cache_key IN ({', '.join('?' * len(chunk))}){live_sql}",
                (*chunk, *live_params),
            )
            for row in rows:
                hits[keys[row["cache_key"]]] = deserialize_embedding(row["vector"])
                hit_keys.append(row["cache_key"])

        if hit_keys:
            now = to_db_time(self._db.now())
            async with self._db.transaction() as db:
                await db.executemany(_TOUCH, [(now, key) for key in hit_keys])

        logger.debug(f"Embedding cache batch lookup: {len(hits)}/{len(keys)} hits")
        return hits

    async def has(self, text: str, provider: str, model: str) -> bool:
        """Whether a live entry exists. Does not refresh recency."""
        if not self.enabled:
            return False
        live_sql, live_params = self._live_clause()
        row = await self._db.fetchone(
            f"SELECT 1 FROM embedding_cache WHERE cache_key = ?{live_sql}",
            (make_cache_key(text, provider, model), *live_params),
        )
        return row is not None

    async def set(
        self, text: str, vector: list[float], provider: str, model: str
    ) -> None:
        if not self.enabled:
            return
        await self.set_batch({text: vector}, provider, model)

    async def set_batch(
        self, entries: Mapping[str, list[float]], provider: str, model: str
    ) -> None:
        """Store several vectors. Insertion order defines their recency."""
        if not self.enabled or not entries:
            return

        now = to_db_time(self._db.now())
        params = [
            (
                make_cache_key(text, provider, model),
                provider,
                model,
                serialize_embedding(vector),
                len(vector),
                now,
                now,
            )
            for text, vector in entries.items()
        ]
        try:
            async with self._db.transaction() as db:
                await db.executemany(_UPSERT, params)
        except aiosqlite.Error as e:
            raise DatabaseError(
                "Failed to write embedding cache entries",
                operation="embedding_cache.set",
                cause=e,
            ) from e

        threshold = self._config.max_entries * (1 + self._config.prune_headroom)
        if await self._count() > threshold:
            await self.prune()

    async def delete(self, text: str, provider: str, model: str) -> bool:
        async with self._db.transaction() as db:
            cursor = await db.execute(
                "DELETE FROM embedding_cache WHERE cache_key = ?",
                (make_cache_key(text, provider, model),),
            )
            return cursor.rowcount > 0

    async def clear(self) -> int:
        async with self._db.transaction() as db:
            cursor = await db.execute("DELETE FROM embedding_cache")
            removed = cursor.rowcount
        logger.info(f"Cleared {removed} embedding cache entries")
        return removed

    async def prune(self) -> int:
        """Drop expired entries, then least recently used ones above capacity.

        Returns:
            Number of entries removed
        """
        if not self.enabled:
            return 0

        cutoff = self._expiry_cutoff()
        async with self._db.transaction() as db:
            expired = 0
            if cutoff is not None:
                cursor = await db.execute(
                    "DELETE FROM embedding_cache WHERE created_at < ?", (cutoff,)
                )
                expired = cursor.rowcount

            async with db.execute("SELECT COUNT(*) FROM embedding_cache") as cursor:
                (count,) = await cursor.fetchone()

            evicted = 0
            overflow = count - self._config.max_entries
            if overflow > 0:
                cursor = await db.execute(
                    """
                    DELETE FROM embedding_cache WHERE cache_key IN (
                        SELECT cache_key FROM embedding_cache
                        ORDER BY access_seq ASC LIMIT ?
                    )
                    """,
                    (overflow,),
                )
                evicted = cursor.rowcount

        if expired or evicted:
            logger.info(
                f"Embedding cache pruned: {expired} expired, {evicted} evicted (LRU)"
            )
        return expired + evicted

    async def get_stats(self) -> CacheStats:
        rows = await self._db.fetchall(
            "SELECT provider, model, COUNT(*) AS count FROM embedding_cache "
            "GROUP BY provider, model ORDER BY provider, model"
        )
        bounds = await self._db.fetchone(
            "SELECT MIN(created_at) AS oldest, MAX(created_at) AS newest "
            "FROM embedding_cache"
        )
        providers = [
            ProviderStats(provider=row["provider"], model=row["model"], count=row["count"])
            for row in rows
        ]
        return CacheStats(
            total_entries=sum(p.count for p in providers),
            providers=providers,
            oldest_entry=from_db_time(bounds["oldest"]),
            newest_entry=from_db_time(bounds["newest"]),
        )

    async def _count(self) -> int:
        row = await self._db.fetchone("SELECT COUNT(*) FROM embedding_cache")
        return row[0]

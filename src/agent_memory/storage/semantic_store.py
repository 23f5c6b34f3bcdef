"""Semantic layer: text chunks searchable by FTS5 keywords and embeddings.

Hybrid search combines:
- FTS5 search: bm25 keyword ranking over chunk text
- Vector search: cosine similarity against stored embeddings, in process

Scores from each source are normalised and merged with configurable weights.
"""

from __future__ import annotations

import re

import aiosqlite
from loguru import logger

from ..config import SemanticStoreConfig
from ..embedding import CachedEmbedder
from ..errors import SemanticSearchError, StoreInitializationError
from ..models import SemanticChunk, SemanticSearchResult
from ..vectors import cosine_similarity, deserialize_embedding, serialize_embedding
from .database import Database, dump_json, from_db_time, load_json, to_db_time

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS semantic_chunks (
        id TEXT PRIMARY KEY,
        timestamp TEXT NOT NULL,
        text TEXT NOT NULL,
        tags TEXT NOT NULL DEFAULT '[]',
        source_event_id TEXT,
        source_type TEXT NOT NULL,
        session_id TEXT,
        embedding BLOB,
        embedding_provider TEXT,
        embedding_model TEXT,
        dimensions INTEGER,
        metadata TEXT NOT NULL DEFAULT '{}'
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_semantic_session ON semantic_chunks(session_id)",
    "CREATE INDEX IF NOT EXISTS idx_semantic_source ON semantic_chunks(source_event_id)",
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS semantic_chunks_fts
    USING fts5(text, content=semantic_chunks, content_rowid=rowid)
    """,
    # Triggers to keep FTS5 in sync with semantic_chunks
    """
    CREATE TRIGGER IF NOT EXISTS semantic_chunks_ai AFTER INSERT ON semantic_chunks BEGIN
        INSERT INTO semantic_chunks_fts(rowid, text) VALUES (new.rowid, new.text);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS semantic_chunks_ad AFTER DELETE ON semantic_chunks BEGIN
        INSERT INTO semantic_chunks_fts(semantic_chunks_fts, rowid, text)
        VALUES('delete', old.rowid, old.text);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS semantic_chunks_au AFTER UPDATE OF text ON semantic_chunks BEGIN
        INSERT INTO semantic_chunks_fts(semantic_chunks_fts, rowid, text)
        VALUES('delete', old.rowid, old.text);
        INSERT INTO semantic_chunks_fts(rowid, text) VALUES (new.rowid, new.text);
    END
    """,
)

_INSERT = """
    INSERT INTO semantic_chunks (
        id, timestamp, text, tags, source_event_id, source_type, session_id,
        embedding, embedding_provider, embedding_model, dimensions, metadata
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def build_fts_query(query: str) -> str:
    """Turn free text into an FTS5 prefix query joined by OR.

    Each term is quoted so punctuation can never be parsed as FTS5 syntax.
    """
    terms = dict.fromkeys(t.lower() for t in _TOKEN_RE.findall(query))
    return " OR ".join(f'"{term}"*' for term in terms)


def _row_to_chunk(row: aiosqlite.Row) -> SemanticChunk:
    blob = row["embedding"]
    return SemanticChunk(
        id=row["id"],
        timestamp=from_db_time(row["timestamp"]),
        text=row["text"],
        tags=load_json(row["tags"], []),
        source_event_id=row["source_event_id"],
        source_type=row["source_type"],
        session_id=row["session_id"],
        embedding=deserialize_embedding(blob) if blob else None,
        embedding_provider=row["embedding_provider"],
        embedding_model=row["embedding_model"],
        metadata=load_json(row["metadata"], {}),
    )


class SemanticStore:
    """Chunk storage with hybrid keyword/vector search.

    Args:
        db: Shared database
        embedder: Cached embedder used when chunks or queries lack vectors
        config: Hybrid search weights
    """

    def __init__(
        self,
        db: Database,
        embedder: CachedEmbedder | None = None,
        config: SemanticStoreConfig | None = None,
    ):
        self._db = db
        self._embedder = embedder
        self._config = config or SemanticStoreConfig()

    @property
    def embedder(self) -> CachedEmbedder | None:
        return self._embedder

    async def initialize(self) -> None:
        try:
            await self._db.create_schema(_SCHEMA)
        except aiosqlite.Error as e:
            raise StoreInitializationError("semantic store", cause=e) from e

    async def add(self, chunk: SemanticChunk) -> SemanticChunk:
        """Store a chunk, embedding its text first when no vector is supplied.

        An embedding failure is logged and the chunk is stored without a
        vector; it stays reachable through keyword search.

        Raises:
            SemanticSearchError: On dimension mismatch or write failure
        """
        if chunk.embedding is None and self._embedder is not None:
            try:
                vector = await self._embedder.embed(chunk.text)
            except Exception as e:
                logger.warning(f"Embedding failed for chunk {chunk.id}: {e}")
            else:
                chunk = self._with_embedding(chunk, vector)
        return (await self._insert([chunk]))[0]

    async def add_batch(self, chunks: list[SemanticChunk]) -> list[SemanticChunk]:
        """Store several chunks, embedding the ones without vectors in one batch."""
        if not chunks:
            return []

        pending = [i for i, c in enumerate(chunks) if c.embedding is None]
        if pending and self._embedder is not None:
            try:
                vectors = await self._embedder.embed_batch(
                    [chunks[i].text for i in pending]
                )
            except Exception as e:
                logger.warning(f"Batch embedding failed for {len(pending)} chunks: {e}")
            else:
                chunks = list(chunks)
                for i, vector in zip(pending, vectors):
                    chunks[i] = self._with_embedding(chunks[i], vector)
        return await self._insert(chunks)

    async def get(self, chunk_id: str) -> SemanticChunk | None:
        row = await self._db.fetchone(
            "SELECT * FROM semantic_chunks WHERE id = ?", (chunk_id,)
        )
        return _row_to_chunk(row) if row else None

    async def set_embedding(
        self,
        chunk_id: str,
        vector: list[float],
        provider: str | None = None,
        model: str | None = None,
    ) -> bool:
        """Attach or replace a chunk's vector. Text stays unchanged."""
        await self._check_dimensions(provider, model, len(vector), exclude_id=chunk_id)
        async with self._db.transaction() as db:
            cursor = await db.execute(
                """
                UPDATE semantic_chunks
                SET embedding = ?, embedding_provider = ?, embedding_model = ?,
                    dimensions = ?
                WHERE id = ?
                """,
                (serialize_embedding(vector), provider, model, len(vector), chunk_id),
            )
            return cursor.rowcount > 0

    async def delete(self, chunk_id: str) -> bool:
        async with self._db.transaction() as db:
            cursor = await db.execute(
                "DELETE FROM semantic_chunks WHERE id = ?", (chunk_id,)
            )
            return cursor.rowcount > 0

    async def delete_by_session(self, session_id: str) -> int:
        async with self._db.transaction() as db:
            cursor = await db.execute(
                "DELETE FROM semantic_chunks WHERE session_id = ?", (session_id,)
            )
            deleted = cursor.rowcount
        logger.info(f"Deleted {deleted} semantic chunks for session {session_id}")
        return deleted

    async def count(self, session_id: str | None = None) -> int:
        if session_id is None:
            row = await self._db.fetchone("SELECT COUNT(*) FROM semantic_chunks")
        else:
            row = await self._db.fetchone(
                "SELECT COUNT(*) FROM semantic_chunks WHERE session_id = ?",
                (session_id,),
            )
        return row[0]

    async def clear(self) -> None:
        async with self._db.transaction() as db:
            await db.execute("DELETE FROM semantic_chunks")

    async def search_fts(
        self,
        query: str,
        limit: int = 10,
        session_id: str | None = None,
    ) -> list[SemanticSearchResult]:
        """Keyword search. Scores are absolute bm25 values, higher is better."""
        fts_query = build_fts_query(query)
        if not fts_query:
            return []

        sql = """
            SELECT c.*, bm25(semantic_chunks_fts) AS rank
            FROM semantic_chunks_fts
            JOIN semantic_chunks c ON c.rowid = semantic_chunks_fts.rowid
            WHERE semantic_chunks_fts MATCH ?
        """
        params: list = [fts_query]
        if session_id is not None:
            sql += " AND c.session_id = ?"
            params.append(session_id)
        sql += " ORDER BY rank LIMIT ?"
        params.append(limit)

        try:
            rows = await self._db.fetchall(sql, params)
        except aiosqlite.Error as e:
            raise SemanticSearchError(
                f"FTS search failed for query {query!r}", cause=e
            ) from e

        return [
            SemanticSearchResult(
                chunk=_row_to_chunk(row), score=abs(row["rank"]), match_type="fts"
            )
            for row in rows
        ]

    async def search_vector(
        self,
        query_vector: list[float],
        limit: int = 10,
        session_id: str | None = None,
    ) -> list[SemanticSearchResult]:
        """Cosine similarity against every stored vector of the same dimensionality."""
        if not query_vector:
            return []

        sql = "SELECT * FROM semantic_chunks WHERE embedding IS NOT NULL AND dimensions = ?"
        params: list = [len(query_vector)]
        if session_id is not None:
            sql += " AND session_id = ?"
            params.append(session_id)

        try:
            rows = await self._db.fetchall(sql, params)
        except aiosqlite.Error as e:
            raise SemanticSearchError("Vector search failed", cause=e) from e

        results = []
        for row in rows:
            chunk = _row_to_chunk(row)
            score = cosine_similarity(query_vector, chunk.embedding)
            results.append(
                SemanticSearchResult(chunk=chunk, score=score, match_type="vector")
            )
        results.sort(key=lambda r: r.score, reverse=True)
        return results[:limit]

    async def search(
        self,
        query: str,
        limit: int | None = None,
        session_id: str | None = None,
        query_vector: list[float] | None = None,
        use_fts: bool = True,
        use_vector: bool = True,
    ) -> list[SemanticSearchResult]:
        """Hybrid search.

        When both sources run, each result scores
        ``fts_weight * fts_norm + vector_weight * vector_score`` where keyword
        scores are divided by ``max(best_fts_score, 1)``. With a single source
        the normalised score of that source is used as-is.

        Args:
            query: Free-text query
            limit: Maximum results (defaults to ``default_limit``)
            session_id: Restrict to one session
            query_vector: Precomputed query embedding; computed through the
                embedder when omitted
            use_fts: Include keyword search
            use_vector: Include vector search

        Returns:
            Results ordered by combined score descending
        """
        if limit is None:
            limit = self._config.default_limit
        if limit <= 0:
            return []

        if use_vector and query_vector is None and self._embedder is not None:
            try:
                query_vector = await self._embedder.embed(query)
            except Exception as e:
                raise SemanticSearchError(
                    "Failed to embed search query", cause=e
                ) from e

        run_vector = use_vector and bool(query_vector)
        fts_results = (
            await self.search_fts(query, limit * 2, session_id) if use_fts else []
        )
        vector_results = (
            await self.search_vector(query_vector, limit * 2, session_id)
            if run_vector
            else []
        )

        max_fts = max((r.score for r in fts_results), default=0.0)
        fts_norm = max(max_fts, 1.0)
        both = use_fts and run_vector
        fts_weight = self._config.fts_weight if both else 1.0
        vector_weight = self._config.vector_weight if both else 1.0

        merged: dict[str, SemanticSearchResult] = {}
        for r in fts_results:
            merged[r.chunk.id] = SemanticSearchResult(
                chunk=r.chunk,
                score=fts_weight * (r.score / fts_norm),
                match_type="fts",
            )
        for r in vector_results:
            weighted = vector_weight * r.score
            existing = merged.get(r.chunk.id)
            if existing is None:
                merged[r.chunk.id] = SemanticSearchResult(
                    chunk=r.chunk, score=weighted, match_type="vector"
                )
            else:
                merged[r.chunk.id] = SemanticSearchResult(
                    chunk=r.chunk,
                    score=existing.score + weighted,
                    match_type="hybrid",
                )

        results = sorted(merged.values(), key=lambda r: r.score, reverse=True)
        logger.debug(
            f"Semantic search {query!r}: fts={len(fts_results)}, "
            f"vector={len(vector_results)}, merged={len(results)}"
        )
        return results[:limit]

    def _with_embedding(self, chunk: SemanticChunk, vector: list[float]) -> SemanticChunk:
        return chunk.model_copy(
            update={
                "embedding": vector,
                "embedding_provider": self._embedder.provider_name,
                "embedding_model": self._embedder.model,
            }
        )

    async def _check_dimensions(
        self,
        provider: str | None,
        model: str | None,
        dimensions: int,
        exclude_id: str | None = None,
    ) -> None:
        row = await self._db.fetchone(
            "SELECT dimensions FROM semantic_chunks "
            "WHERE embedding IS NOT NULL AND embedding_provider IS ? "
            "AND embedding_model IS ? AND id IS NOT ? LIMIT 1",
            (provider, model, exclude_id),
        )
        if row is not None and row["dimensions"] != dimensions:
            raise SemanticSearchError(
                f"Embedding dimension mismatch for {provider}/{model}: "
                f"expected {row['dimensions']}, got {dimensions}"
            )

    async def _insert(self, chunks: list[SemanticChunk]) -> list[SemanticChunk]:
        seen: dict[tuple[str | None, str | None], int] = {}
        for chunk in chunks:
            if chunk.embedding is None:
                continue
            pair = (chunk.embedding_provider, chunk.embedding_model)
            dims = len(chunk.embedding)
            if pair in seen:
                if seen[pair] != dims:
                    raise SemanticSearchError(
                        f"Embedding dimension mismatch for {pair[0]}/{pair[1]} "
                        f"within batch: {seen[pair]} vs {dims}"
                    )
                continue
            await self._check_dimensions(pair[0], pair[1], dims)
            seen[pair] = dims

        params = [
            (
                c.id,
                to_db_time(c.timestamp),
                c.text,
                dump_json(c.tags),
                c.source_event_id,
                c.source_type,
                c.session_id,
                serialize_embedding(c.embedding) if c.embedding is not None else None,
                c.embedding_provider,
                c.embedding_model,
                len(c.embedding) if c.embedding is not None else None,
                dump_json(c.model_dump(mode="json")["metadata"]),
            )
            for c in chunks
        ]
        try:
            async with self._db.transaction() as db:
                await db.executemany(_INSERT, params)
        except aiosqlite.Error as e:
            raise SemanticSearchError(
                f"Failed to store {len(chunks)} semantic chunks", cause=e
            ) from e

        logger.debug(f"Stored {len(chunks)} semantic chunks")
        return chunks

"""Summary layer: append-only session summaries."""

from __future__ import annotations

from datetime import datetime

import aiosqlite
from loguru import logger

from ..errors import StoreInitializationError, SummarizationError
from ..models import Summary
from .database import Database, dump_json, from_db_time, load_json, to_db_time

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS summaries (
        id TEXT PRIMARY KEY,
        timestamp TEXT NOT NULL,
        session_id TEXT NOT NULL,
        short TEXT NOT NULL,
        bullets TEXT NOT NULL DEFAULT '[]',
        decisions TEXT NOT NULL DEFAULT '[]',
        todos TEXT NOT NULL DEFAULT '[]',
        covered_event_ids TEXT NOT NULL DEFAULT '[]',
        token_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_summaries_session_ts ON summaries(session_id, timestamp)",
)


def _row_to_summary(row: aiosqlite.Row) -> Summary:
    return Summary(
        id=row["id"],
        timestamp=from_db_time(row["timestamp"]),
        session_id=row["session_id"],
        short=row["short"],
        bullets=load_json(row["bullets"], []),
        decisions=load_json(row["decisions"], []),
        todos=load_json(row["todos"], []),
        covered_event_ids=load_json(row["covered_event_ids"], []),
        token_count=row["token_count"],
    )


class SummaryStore:
    """Newer summaries supersede older ones; nothing is overwritten."""

    def __init__(self, db: Database):
        self._db = db

    async def initialize(self) -> None:
        try:
            await self._db.create_schema(_SCHEMA)
        except aiosqlite.Error as e:
            raise StoreInitializationError("summary store", cause=e) from e

    async def add(self, summary: Summary) -> Summary:
        dumped = summary.model_dump(mode="json")
        try:
            async with self._db.transaction() as db:
                await db.execute(
                    """
                    INSERT INTO summaries (
                        id, timestamp, session_id, short, bullets, decisions,
                        todos, covered_event_ids, token_count
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        summary.id,
                        to_db_time(summary.timestamp),
                        summary.session_id,
                        summary.short,
                        dump_json(summary.bullets),
                        dump_json(dumped["decisions"]),
                        dump_json(dumped["todos"]),
                        dump_json(summary.covered_event_ids),
                        summary.token_count,
                    ),
                )
        except aiosqlite.Error as e:
            raise SummarizationError(
                f"Failed to store summary {summary.id}", cause=e
            ) from e

        logger.debug(
            f"Stored summary {summary.id} for session {summary.session_id} "
            f"covering {len(summary.covered_event_ids)} events"
        )
        return summary

    async def get(self, summary_id: str) -> Summary | None:
        row = await self._db.fetchone(
            "SELECT * FROM summaries WHERE id = ?", (summary_id,)
        )
        return _row_to_summary(row) if row else None

    async def get_latest(self, session_id: str) -> Summary | None:
        row = await self._db.fetchone(
            "SELECT * FROM summaries WHERE session_id = ? "
            "ORDER BY timestamp DESC, rowid DESC LIMIT 1",
            (session_id,),
        )
        return _row_to_summary(row) if row else None

    async def list(
        self,
        session_id: str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[Summary]:
        """List summaries, newest first."""
        clauses: list[str] = []
        params: list = []
        if session_id is not None:
            clauses.append("session_id = ?")
            params.append(session_id)
        if since is not None:
            clauses.append("timestamp >= ?")
            params.append(to_db_time(since))

        sql = "SELECT * FROM summaries"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY timestamp DESC, rowid DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        rows = await self._db.fetchall(sql, params)
        return [_row_to_summary(row) for row in rows]

    async def delete_by_session(self, session_id: str) -> int:
        async with self._db.transaction() as db:
            cursor = await db.execute(
                "DELETE FROM summaries WHERE session_id = ?", (session_id,)
            )
            return cursor.rowcount

    async def clear(self) -> None:
        async with self._db.transaction() as db:
            await db.execute("DELETE FROM summaries")

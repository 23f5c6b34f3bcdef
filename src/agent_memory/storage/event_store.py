"""Event layer: append-only log of everything observed in a session."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

import aiosqlite
from loguru import logger

from ..errors import EventRecordError, StoreInitializationError
from ..models import EventType, MemoryEvent
from .database import Database, dump_json, from_db_time, load_json, to_db_time

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS events (
        id TEXT PRIMARY KEY,
        timestamp TEXT NOT NULL,
        type TEXT NOT NULL,
        session_id TEXT NOT NULL,
        intent TEXT,
        entities TEXT NOT NULL DEFAULT '[]',
        summary TEXT NOT NULL DEFAULT '',
        payload TEXT NOT NULL DEFAULT '{}',
        links TEXT NOT NULL DEFAULT '[]',
        parent_id TEXT,
        tags TEXT NOT NULL DEFAULT '[]'
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_session_ts ON events(session_id, timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_events_type ON events(type)",
    "CREATE INDEX IF NOT EXISTS idx_events_ts ON events(timestamp)",
)

_INSERT = """
    INSERT INTO events (
        id, timestamp, type, session_id, intent, entities,
        summary, payload, links, parent_id, tags
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


def _event_params(event: MemoryEvent) -> tuple:
    dumped = event.model_dump(mode="json")
    return (
        event.id,
        to_db_time(event.timestamp),
        event.type.value,
        event.session_id,
        event.intent,
        dump_json(dumped["entities"]),
        event.summary,
        dump_json(dumped["payload"]),
        dump_json(dumped["links"]),
        event.parent_id,
        dump_json(event.tags),
    )


def _row_to_event(row: aiosqlite.Row) -> MemoryEvent:
    return MemoryEvent(
        id=row["id"],
        timestamp=from_db_time(row["timestamp"]),
        type=row["type"],
        session_id=row["session_id"],
        intent=row["intent"],
        entities=load_json(row["entities"], []),
        summary=row["summary"],
        payload=load_json(row["payload"], {}),
        links=load_json(row["links"], []),
        parent_id=row["parent_id"],
        tags=load_json(row["tags"], []),
    )


class EventStore:
    """Immutable event log. There is no update operation."""

    def __init__(self, db: Database):
        self._db = db

    async def initialize(self) -> None:
        try:
            await self._db.create_schema(_SCHEMA)
        except aiosqlite.Error as e:
            raise StoreInitializationError("event store", cause=e) from e

    async def add(self, event: MemoryEvent) -> MemoryEvent:
        """Persist a single event.

        Raises:
            EventRecordError: If the event cannot be written (e.g. duplicate id)
        """
        try:
            async with self._db.transaction() as db:
                await db.execute(_INSERT, _event_params(event))
        except aiosqlite.Error as e:
            raise EventRecordError(f"Failed to record event {event.id}", cause=e) from e

        logger.debug(f"Recorded {event.type.value} event {event.id}")
        return event

    async def add_batch(self, events: list[MemoryEvent]) -> list[MemoryEvent]:
        """Persist several events atomically."""
        if not events:
            return []
        try:
            async with self._db.transaction() as db:
                await db.executemany(_INSERT, [_event_params(e) for e in events])
        except aiosqlite.Error as e:
            raise EventRecordError(
                f"Failed to record batch of {len(events)} events", cause=e
            ) from e

        logger.debug(f"Recorded batch of {len(events)} events")
        return events

    async def get(self, event_id: str) -> MemoryEvent | None:
        row = await self._db.fetchone("SELECT * FROM events WHERE id = ?", (event_id,))
        return _row_to_event(row) if row else None

    async def query(
        self,
        session_id: str | None = None,
        types: Iterable[EventType] | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        tags: Iterable[str] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[MemoryEvent]:
        """Query events, newest first.

        Args:
            session_id: Restrict to one session
            types: Restrict to these event types
            since: Inclusive lower bound on timestamp
            until: Inclusive upper bound on timestamp
            tags: Match events carrying any of these tags
            limit: Maximum number of events
            offset: Number of matching events to skip

        Returns:
            Matching events ordered by timestamp descending
        """
        clauses: list[str] = []
        params: list = []

        if session_id is not None:
            clauses.append("session_id = ?")
            params.append(session_id)
        if types:
            type_values = [EventType(t).value for t in types]
            clauses.append(f"type IN ({', '.join('?' * len(type_values))})")
            params.extend(type_values)
        if since is not None:
            clauses.append("timestamp >= ?")
            params.append(to_db_time(since))
        if until is not None:
            clauses.append("timestamp <= ?")
            params.append(to_db_time(until))
        if tags:
            tag_values = list(tags)
            clauses.append(
                "EXISTS (SELECT 1 FROM json_each(events.tags) "
                f"WHERE json_each.value IN ({', '.join('?' * len(tag_values))}))"
            )
            params.extend(tag_values)

        sql = "SELECT * FROM events"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY timestamp DESC, rowid DESC"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        elif offset:
            sql += " LIMIT -1 OFFSET ?"
            params.append(offset)

        rows = await self._db.fetchall(sql, params)
        return [_row_to_event(row) for row in rows]

    async def get_recent(
        self, limit: int = 10, session_id: str | None = None
    ) -> list[MemoryEvent]:
        return await self.query(session_id=session_id, limit=limit)

    async def count(self, session_id: str | None = None) -> int:
        if session_id is None:
            row = await self._db.fetchone("SELECT COUNT(*) FROM events")
        else:
            row = await self._db.fetchone(
                "SELECT COUNT(*) FROM events WHERE session_id = ?", (session_id,)
            )
        return row[0]

    async def delete(self, event_id: str) -> bool:
        async with self._db.transaction() as db:
            cursor = await db.execute("DELETE FROM events WHERE id = ?", (event_id,))
            return cursor.rowcount > 0

    async def delete_batch(self, event_ids: list[str]) -> int:
        if not event_ids:
            return 0
        placeholders = ", ".join("?" * len(event_ids))
        async with self._db.transaction() as db:
            cursor = await db.execute(
                f"DELETE FROM events WHERE id IN ({placeholders})", event_ids
            )
            return cursor.rowcount

    async def delete_by_session(self, session_id: str) -> int:
        async with self._db.transaction() as db:
            cursor = await db.execute(
                "DELETE FROM events WHERE session_id = ?", (session_id,)
            )
            deleted = cursor.rowcount
        logger.info(f"Deleted {deleted} events for session {session_id}")
        return deleted

    async def delete_before(self, cutoff: datetime) -> int:
        """Retention helper: drop every event older than ``cutoff``."""
        async with self._db.transaction() as db:
            cursor = await db.execute(
                "DELETE FROM events WHERE timestamp < ?", (to_db_time(cutoff),)
            )
            deleted = cursor.rowcount
        logger.info(f"Deleted {deleted} events older than {cutoff.isoformat()}")
        return deleted

    async def clear(self) -> None:
        async with self._db.transaction() as db:
            await db.execute("DELETE FROM events")

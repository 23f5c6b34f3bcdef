"""Shared SQLite backend for every memory store.

One aiosqlite connection in autocommit mode. Writes run inside explicit
``BEGIN IMMEDIATE`` transactions that are serialised by a process-wide
``asyncio.Lock``, which makes read-modify-write sequences atomic.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite
from loguru import logger

from ..errors import DatabaseError, StoreInitializationError

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime | None) -> str | None:
    """Format a datetime as a sortable ISO-8601 UTC string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def load_json(value: str | None, default: Any = None) -> Any:
    if value is None:
        return default
    return json.loads(value)


class Database:
    """Async SQLite connection shared by the stores.

    Args:
        db_path: Path to the SQLite file, or ``:memory:``
        clock: Callable returning the current UTC time. Injected in tests.
    """

    def __init__(self, db_path: str = ":memory:", clock: Clock | None = None):
        self.db_path = db_path
        self._clock = clock or _utcnow
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        logger.info(f"Database configured with db_path: {db_path}")

    @property
    def is_initialized(self) -> bool:
        return self._db is not None

    def now(self) -> datetime:
        return self._clock()

    async def initialize(self) -> None:
        """Open the connection and enable WAL mode. Safe to call twice."""
        if self._db is not None:
            return

        try:
            if self.db_path != ":memory:":
                db_dir = Path(self.db_path).parent
                db_dir.mkdir(parents=True, exist_ok=True)
                logger.debug(f"Ensured database directory exists: {db_dir}")

            self._db = await aiosqlite.connect(self.db_path, isolation_level=None)
            self._db.row_factory = aiosqlite.Row
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute("PRAGMA foreign_keys=ON")
        except (aiosqlite.Error, OSError) as e:
            if self._db is not None:
                await self._db.close()
                self._db = None
            raise StoreInitializationError("database", cause=e) from e

        logger.info("SQLite database initialized successfully")

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._db is None:
            raise DatabaseError(
                "Database not initialized. Call initialize() first.",
                operation="connect",
            )
        return self._db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block inside one write transaction.

        Commits on success; rolls back and re-raises on any exception.
        """
        db = self.connection
        async with self._write_lock:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise

    async def create_schema(self, statements: Iterable[str]) -> None:
        """Execute DDL statements in one transaction."""
        async with self.transaction() as db:
            for statement in statements:
                await db.execute(statement)

    async def fetchone(
        self, sql: str, params: Iterable[Any] = ()
    ) -> aiosqlite.Row | None:
        async with self.connection.execute(sql, tuple(params)) as cursor:
            return await cursor.fetchone()

    async def fetchall(
        self, sql: str, params: Iterable[Any] = ()
    ) -> list[aiosqlite.Row]:
        async with self.connection.execute(sql, tuple(params)) as cursor:
            return list(await cursor.fetchall())

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("SQLite database connection closed")

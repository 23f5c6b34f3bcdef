"""Profile layer: whitelisted user preferences, one row per key."""

from __future__ import annotations

import aiosqlite
from loguru import logger

from ..config import ConflictStrategy
from ..errors import ProfileError, ProfileKeyNotAllowedError, StoreInitializationError
from ..models import PROFILE_KEYS, ProfileItem
from ..rules.preferences import resolve_conflict
from .database import Database, dump_json, from_db_time, load_json, to_db_time

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS profile (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        confidence REAL NOT NULL DEFAULT 0.5,
        explicit INTEGER NOT NULL DEFAULT 0,
        source_event_id TEXT,
        expires_at TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_profile_source ON profile(source_event_id)",
    "CREATE INDEX IF NOT EXISTS idx_profile_expires ON profile(expires_at)",
)

_LIVE = "(expires_at IS NULL OR expires_at > ?)"


def _row_to_item(row: aiosqlite.Row) -> ProfileItem:
    return ProfileItem(
        key=row["key"],
        value=load_json(row["value"]),
        confidence=row["confidence"],
        explicit=bool(row["explicit"]),
        source_event_id=row["source_event_id"],
        expires_at=from_db_time(row["expires_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )


class ProfileStore:
    """User preference store with a key whitelist and lazy expiry.

    Args:
        db: Shared database
        allowed_keys: Whitelisted keys; ``None`` accepts any key
        conflict_strategy: How a new value for an existing key is resolved
    """

    def __init__(
        self,
        db: Database,
        allowed_keys: list[str] | tuple[str, ...] | None = PROFILE_KEYS,
        conflict_strategy: ConflictStrategy = "explicit",
    ):
        self._db = db
        self._conflict_strategy = conflict_strategy
        self._allowed_keys = None if allowed_keys is None else tuple(allowed_keys)

    @property
    def allowed_keys(self) -> tuple[str, ...] | None:
        return self._allowed_keys

    async def initialize(self) -> None:
        try:
            await self._db.create_schema(_SCHEMA)
        except aiosqlite.Error as e:
            raise StoreInitializationError("profile store", cause=e) from e

    def is_key_allowed(self, key: str) -> bool:
        return self._allowed_keys is None or key in self._allowed_keys

    async def set(self, item: ProfileItem) -> ProfileItem:
        """Upsert a preference by key.

        When a live item already exists, the configured conflict strategy
        decides whether it is replaced. The stored item is returned, which is
        the existing one when it wins.

        Raises:
            ProfileKeyNotAllowedError: If the key is not whitelisted
        """
        if not self.is_key_allowed(item.key):
            raise ProfileKeyNotAllowedError(item.key, list(self._allowed_keys or ()))

        now = self._db.now()
        stored = item.model_copy(update={"updated_at": now})
        try:
            async with self._db.transaction() as db:
                async with db.execute(
                    f"SELECT * FROM profile WHERE key = ? AND {_LIVE}",
                    (item.key, to_db_time(now)),
                ) as cursor:
                    row = await cursor.fetchone()

                existing = _row_to_item(row) if row is not None else None
                resolution = resolve_conflict(
                    existing, stored, self._conflict_strategy
                )
                if not resolution.incoming_wins:
                    if resolution.needs_review:
                        logger.warning(
                            f"Profile conflict on '{item.key}' needs review: "
                            f"kept {existing.value!r}, rejected {item.value!r}"
                        )
                    else:
                        logger.debug(
                            f"Kept profile item '{item.key}': {resolution.reason}"
                        )
                    return existing

                await db.execute(
                    """
                    INSERT INTO profile (
                        key, value, confidence, explicit, source_event_id,
                        expires_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        confidence = excluded.confidence,
                        explicit = excluded.explicit,
                        source_event_id = excluded.source_event_id,
                        expires_at = excluded.expires_at,
                        updated_at = excluded.updated_at
                    """,
                    (
                        stored.key,
                        dump_json(stored.value),
                        stored.confidence,
                        int(stored.explicit),
                        stored.source_event_id,
                        to_db_time(stored.expires_at),
                        to_db_time(stored.updated_at),
                    ),
                )
        except aiosqlite.Error as e:
            raise ProfileError(f"Failed to set profile item '{item.key}'", cause=e) from e

        logger.debug(f"Profile item '{item.key}' set (explicit={item.explicit})")
        return stored

    async def get(self, key: str) -> ProfileItem | None:
        row = await self._db.fetchone(
            f"SELECT * FROM profile WHERE key = ? AND {_LIVE}",
            (key, to_db_time(self._db.now())),
        )
        return _row_to_item(row) if row else None

    async def get_all(self) -> list[ProfileItem]:
        """All live items, explicit first, then by confidence descending."""
        rows = await self._db.fetchall(
            f"SELECT * FROM profile WHERE {_LIVE} "
            "ORDER BY explicit DESC, confidence DESC, key",
            (to_db_time(self._db.now()),),
        )
        return [_row_to_item(row) for row in rows]

    async def has(self, key: str) -> bool:
        return await self.get(key) is not None

    async def get_by_source_event(self, event_id: str) -> list[ProfileItem]:
        rows = await self._db.fetchall(
            f"SELECT * FROM profile WHERE source_event_id = ? AND {_LIVE} ORDER BY key",
            (event_id, to_db_time(self._db.now())),
        )
        return [_row_to_item(row) for row in rows]

    async def delete(self, key: str) -> bool:
        async with self._db.transaction() as db:
            cursor = await db.execute("DELETE FROM profile WHERE key = ?", (key,))
            return cursor.rowcount > 0

    async def cleanup_expired(self) -> int:
        """Delete expired rows and return how many were removed."""
        async with self._db.transaction() as db:
            cursor = await db.execute(
                "DELETE FROM profile WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (to_db_time(self._db.now()),),
            )
            removed = cursor.rowcount
        if removed:
            logger.info(f"Removed {removed} expired profile items")
        return removed

    async def clear(self) -> None:
        async with self._db.transaction() as db:
            await db.execute("DELETE FROM profile")

"""Task-state layer: versioned task progress with snapshots and rollback.

Every update or rollback snapshots the pre-change state and bumps the
version by exactly one. Rollback restores content but never rewinds the
version number, so history stays append-only.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from uuid import uuid4

import aiosqlite
from loguru import logger
from pydantic import ValidationError

from ..errors import StoreInitializationError, TaskStateConflictError, TaskStateError
from ..models import (
    ACTIVE_TASK_STATUSES,
    TaskState,
    TaskStateInput,
    TaskStateSnapshot,
    TaskStatus,
    TaskStateUpdate,
)
from .database import Database, dump_json, from_db_time, load_json, to_db_time

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS task_states (
        id TEXT PRIMARY KEY,
        goal TEXT NOT NULL,
        status TEXT NOT NULL,
        constraints TEXT NOT NULL DEFAULT '[]',
        plan TEXT NOT NULL DEFAULT '[]',
        done TEXT NOT NULL DEFAULT '[]',
        blocked TEXT NOT NULL DEFAULT '[]',
        next_action TEXT,
        session_id TEXT,
        metadata TEXT NOT NULL DEFAULT '{}',
        version INTEGER NOT NULL,
        updated_at TEXT NOT NULL,
        update_seq INTEGER NOT NULL,
        action_id TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task_snapshots (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        task_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        state TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        UNIQUE (task_id, version),
        FOREIGN KEY (task_id) REFERENCES task_states(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_task_states_session ON task_states(session_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_task_states_updated ON task_states(updated_at)",
)

# update_seq breaks updated_at ties so "most recently updated" stays total
_UPSERT = """
    INSERT INTO task_states (
        id, goal, status, constraints, plan, done, blocked, next_action,
        session_id, metadata, version, updated_at, update_seq, action_id
    ) VALUES (
        ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?,
        (SELECT COALESCE(MAX(update_seq), 0) + 1 FROM task_states), ?
    )
    ON CONFLICT(id) DO UPDATE SET
        goal = excluded.goal,
        status = excluded.status,
        constraints = excluded.constraints,
        plan = excluded.plan,
        done = excluded.done,
        blocked = excluded.blocked,
        next_action = excluded.next_action,
        session_id = excluded.session_id,
        metadata = excluded.metadata,
        version = excluded.version,
        updated_at = excluded.updated_at,
        update_seq = excluded.update_seq,
        action_id = excluded.action_id
"""


def _row_to_state(row: aiosqlite.Row) -> TaskState:
    return TaskState(
        id=row["id"],
        goal=row["goal"],
        status=row["status"],
        constraints=load_json(row["constraints"], []),
        plan=load_json(row["plan"], []),
        done=load_json(row["done"], []),
        blocked=load_json(row["blocked"], []),
        next_action=row["next_action"],
        session_id=row["session_id"],
        metadata=load_json(row["metadata"], {}),
        version=row["version"],
        updated_at=from_db_time(row["updated_at"]),
    )


class TaskStateStore:
    """Versioned task-state persistence.

    Read-merge-write for ``update`` and ``rollback`` runs inside one database
    transaction, so concurrent callers on the same task produce consecutive
    versions instead of lost updates.
    """

    def __init__(self, db: Database):
        self._db = db

    async def initialize(self) -> None:
        try:
            await self._db.create_schema(_SCHEMA)
        except aiosqlite.Error as e:
            raise StoreInitializationError("task state store", cause=e) from e

    async def create(self, task: TaskStateInput) -> TaskState:
        """Create a new task at version 1. No snapshot is recorded."""
        state = TaskState(
            **task.model_dump(include=set(TaskStateInput.model_fields)),
            id=str(uuid4()),
            version=1,
            updated_at=self._db.now(),
        )
        try:
            async with self._db.transaction() as db:
                await self._save(db, state, action_id=None)
        except aiosqlite.Error as e:
            raise TaskStateError("Failed to create task", cause=e) from e

        logger.debug(f"Created task {state.id}: {state.goal!r}")
        return state

    async def get(self, task_id: str) -> TaskState | None:
        row = await self._db.fetchone(
            "SELECT * FROM task_states WHERE id = ?", (task_id,)
        )
        return _row_to_state(row) if row else None

    async def update(self, task_id: str, patch: TaskStateUpdate) -> TaskState:
        """Apply a partial update and bump the version.

        Args:
            task_id: Task to update
            patch: Fields to change, plus optional ``action_id`` and
                ``expected_version``

        Returns:
            The new state, or the unchanged current state when ``action_id``
            repeats the action that produced the current version

        Raises:
            TaskStateError: If the task does not exist
            TaskStateConflictError: If ``expected_version`` does not match
        """
        try:
            async with self._db.transaction() as db:
                current, applied_action = await self._load(db, task_id)

                if patch.action_id is not None and patch.action_id == applied_action:
                    logger.debug(
                        f"Duplicate action {patch.action_id} for task {task_id}, "
                        f"returning version {current.version}"
                    )
                    return current

                if (
                    patch.expected_version is not None
                    and patch.expected_version != current.version
                ):
                    raise TaskStateConflictError(
                        task_id, patch.expected_version, current.version
                    )

                now = self._db.now()
                await self._snapshot(db, current, now)

                merged = current.model_dump(mode="json")
                merged.update(patch.changes())
                merged.update(
                    id=current.id,
                    version=current.version + 1,
                    updated_at=now,
                )
                try:
                    updated = TaskState.model_validate(merged)
                except ValidationError as e:
                    raise TaskStateError(
                        f"Invalid update for task {task_id}", cause=e
                    ) from e
                await self._save(db, updated, action_id=patch.action_id)
        except aiosqlite.Error as e:
            raise TaskStateError(f"Failed to update task {task_id}", cause=e) from e

        logger.debug(f"Task {task_id} updated to version {updated.version}")
        return updated

    async def rollback(self, task_id: str, target_version: int) -> TaskState:
        """Restore the content captured in the snapshot of ``target_version``.

        The resulting version is the current version plus one.

        Raises:
            TaskStateError: If the task does not exist
            TaskStateConflictError: If no snapshot exists for ``target_version``
        """
        try:
            async with self._db.transaction() as db:
                current, _ = await self._load(db, task_id)

                async with db.execute(
                    "SELECT state FROM task_snapshots WHERE task_id = ? AND version = ?",
                    (task_id, target_version),
                ) as cursor:
                    row = await cursor.fetchone()
                if row is None:
                    raise TaskStateConflictError(
                        task_id,
                        target_version,
                        current.version,
                        message=(
                            f"No snapshot for version {target_version} of task "
                            f"{task_id} (current version {current.version})"
                        ),
                    )

                now = self._db.now()
                await self._snapshot(db, current, now)

                restored_fields = load_json(row["state"])
                restored_fields.update(
                    id=current.id,
                    version=current.version + 1,
                    updated_at=now,
                )
                restored = TaskState.model_validate(restored_fields)
                await self._save(db, restored, action_id=None)
        except aiosqlite.Error as e:
            raise TaskStateError(f"Failed to roll back task {task_id}", cause=e) from e

        logger.info(
            f"Task {task_id} rolled back to content of version {target_version} "
            f"as version {restored.version}"
        )
        return restored

    async def get_current(self, session_id: str | None = None) -> TaskState | None:
        """Most recently updated pending or in-progress task, optionally per session."""
        tasks = await self.list(
            session_id=session_id, statuses=ACTIVE_TASK_STATUSES, limit=1
        )
        return tasks[0] if tasks else None

    async def list(
        self,
        session_id: str | None = None,
        statuses: Iterable[TaskStatus] | None = None,
        limit: int | None = None,
    ) -> list[TaskState]:
        """List tasks, most recently updated first."""
        clauses: list[str] = []
        params: list = []
        if session_id is not None:
            clauses.append("session_id = ?")
            params.append(session_id)
        if statuses is not None:
            status_values = [TaskStatus(s).value for s in statuses]
            if not status_values:
                return []
            clauses.append(f"status IN ({', '.join('?' * len(status_values))})")
            params.extend(status_values)

        sql = "SELECT * FROM task_states"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY updated_at DESC, update_seq DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        rows = await self._db.fetchall(sql, params)
        return [_row_to_state(row) for row in rows]

    async def get_snapshots(
        self, task_id: str, limit: int | None = None
    ) -> list[TaskStateSnapshot]:
        """Snapshots of a task, newest version first."""
        sql = (
            "SELECT task_id, version, state, timestamp FROM task_snapshots "
            "WHERE task_id = ? ORDER BY version DESC"
        )
        params: list = [task_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        rows = await self._db.fetchall(sql, params)
        return [
            TaskStateSnapshot(
                task_id=row["task_id"],
                version=row["version"],
                state=TaskState.model_validate(load_json(row["state"])),
                timestamp=from_db_time(row["timestamp"]),
            )
            for row in rows
        ]

    async def clear(self) -> None:
        async with self._db.transaction() as db:
            await db.execute("DELETE FROM task_snapshots")
            await db.execute("DELETE FROM task_states")
        logger.info("Cleared all task states and snapshots")

    async def _load(
        self, db: aiosqlite.Connection, task_id: str
    ) -> tuple[TaskState, str | None]:
        async with db.execute(
            "SELECT * FROM task_states WHERE id = ?", (task_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise TaskStateError(f"Task not found: {task_id}")
        return _row_to_state(row), row["action_id"]

    async def _snapshot(
        self, db: aiosqlite.Connection, state: TaskState, now: datetime
    ) -> None:
        await db.execute(
            "INSERT INTO task_snapshots (task_id, version, state, timestamp) "
            "VALUES (?, ?, ?, ?)",
            (
                state.id,
                state.version,
                dump_json(state.model_dump(mode="json")),
                to_db_time(now),
            ),
        )

    async def _save(
        self, db: aiosqlite.Connection, state: TaskState, action_id: str | None
    ) -> None:
        dumped = state.model_dump(mode="json")
        await db.execute(
            _UPSERT,
            (
                state.id,
                state.goal,
                state.status.value,
                dump_json(dumped["constraints"]),
                dump_json(dumped["plan"]),
                dump_json(state.done),
                dump_json(state.blocked),
                state.next_action,
                state.session_id,
                dump_json(dumped["metadata"]),
                state.version,
                to_db_time(state.updated_at),
                action_id,
            ),
        )

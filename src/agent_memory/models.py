"""Core data models for the memory layers."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field, JsonValue


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


class EventType(str, Enum):
    USER_MSG = "USER_MSG"
    ASSISTANT_MSG = "ASSISTANT_MSG"
    TOOL_CALL = "TOOL_CALL"
    TOOL_RESULT = "TOOL_RESULT"
    DECISION = "DECISION"
    STATE_CHANGE = "STATE_CHANGE"
    MEMORY_WRITE = "MEMORY_WRITE"
    MEMORY_READ = "MEMORY_READ"
    ERROR = "ERROR"
    SYSTEM = "SYSTEM"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Statuses that make a task eligible to be the session's current task
ACTIVE_TASK_STATUSES = (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)


class MemoryLayer(str, Enum):
    EVENT = "event"
    TASK_STATE = "task_state"
    SUMMARY = "summary"
    PROFILE = "profile"
    SEMANTIC = "semantic"


PROFILE_KEYS: tuple[str, ...] = (
    "language",
    "tone",
    "format",
    "verbosity",
    "code_style",
    "timezone",
    "units",
    "restrictions",
    "expertise_level",
    "custom",
)


# ── Event layer ──────────────────────────────────────────────────────


class EventEntity(BaseModel):
    type: str
    value: str
    confidence: float | None = None


class EventLink(BaseModel):
    """Relationship from one event to another (e.g. a tool result to its call)."""

    type: str
    target_id: str


class MemoryEvent(BaseModel):
    """An immutable record of something that happened in a session."""

    id: str = Field(default_factory=_uuid)
    timestamp: datetime = Field(default_factory=_utcnow)
    type: EventType
    session_id: str
    intent: str | None = None
    entities: list[EventEntity] = Field(default_factory=list)
    summary: str = ""
    payload: dict[str, JsonValue] = Field(default_factory=dict)
    links: list[EventLink] = Field(default_factory=list)
    parent_id: str | None = None
    tags: list[str] = Field(default_factory=list)


# ── Task-state layer ─────────────────────────────────────────────────


class TaskConstraint(BaseModel):
    id: str = Field(default_factory=_uuid)
    type: Literal["must", "should", "must_not"]
    description: str
    source: str | None = None


class PlanStep(BaseModel):
    id: str = Field(default_factory=_uuid)
    description: str
    status: Literal["pending", "in_progress", "completed", "skipped", "failed"] = (
        "pending"
    )
    dependencies: list[str] = Field(default_factory=list)
    result: str | None = None
    action_id: str | None = None
    blocked_by: list[str] = Field(default_factory=list)


class TaskStateInput(BaseModel):
    """Fields accepted when creating a task. Id, version and timestamp are assigned."""

    goal: str
    status: TaskStatus = TaskStatus.PENDING
    constraints: list[TaskConstraint] = Field(default_factory=list)
    plan: list[PlanStep] = Field(default_factory=list)
    done: list[str] = Field(default_factory=list)
    blocked: list[str] = Field(default_factory=list)
    next_action: str | None = None
    session_id: str | None = None
    metadata: dict[str, JsonValue] = Field(default_factory=dict)


class TaskState(TaskStateInput):
    id: str = Field(default_factory=_uuid)
    version: int = Field(default=1, ge=1)
    updated_at: datetime = Field(default_factory=_utcnow)


class TaskStateUpdate(BaseModel):
    """Partial update for a task. Only fields explicitly set are applied.

    ``action_id`` makes the update idempotent: repeating an update with the
    action id that produced the current version returns the current state.
    ``expected_version`` turns on optimistic locking for this call.
    """

    goal: str | None = None
    status: TaskStatus | None = None
    constraints: list[TaskConstraint] | None = None
    plan: list[PlanStep] | None = None
    done: list[str] | None = None
    blocked: list[str] | None = None
    next_action: str | None = None
    session_id: str | None = None
    metadata: dict[str, JsonValue] | None = None
    action_id: str | None = None
    expected_version: int | None = None

    def changes(self) -> dict:
        return self.model_dump(
            mode="json",
            exclude_unset=True,
            exclude={"action_id", "expected_version"},
        )


class TaskStateSnapshot(BaseModel):
    task_id: str
    version: int
    state: TaskState
    timestamp: datetime = Field(default_factory=_utcnow)


# ── Summary layer ────────────────────────────────────────────────────


class SummaryDecision(BaseModel):
    description: str
    reasoning: str | None = None
    timestamp: datetime | None = None
    source_event_id: str | None = None


class SummaryTodo(BaseModel):
    description: str
    priority: Literal["low", "medium", "high"] | None = None
    due_date: datetime | None = None
    completed: bool = False


class Summary(BaseModel):
    id: str = Field(default_factory=_uuid)
    timestamp: datetime = Field(default_factory=_utcnow)
    session_id: str
    short: str
    bullets: list[str] = Field(default_factory=list)
    decisions: list[SummaryDecision] = Field(default_factory=list)
    todos: list[SummaryTodo] = Field(default_factory=list)
    covered_event_ids: list[str] = Field(default_factory=list)
    token_count: int = 0


# ── Profile layer ────────────────────────────────────────────────────


class ProfileItem(BaseModel):
    """A user preference. Explicit items are hard constraints stated by the user."""

    key: str
    value: JsonValue
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    explicit: bool = False
    source_event_id: str | None = None
    expires_at: datetime | None = None
    updated_at: datetime = Field(default_factory=_utcnow)


# ── Semantic layer ───────────────────────────────────────────────────


class SemanticChunk(BaseModel):
    id: str = Field(default_factory=_uuid)
    timestamp: datetime = Field(default_factory=_utcnow)
    text: str
    tags: list[str] = Field(default_factory=list)
    source_event_id: str | None = None
    source_type: str = "event"
    session_id: str | None = None
    embedding: list[float] | None = None
    embedding_provider: str | None = None
    embedding_model: str | None = None
    metadata: dict[str, JsonValue] = Field(default_factory=dict)


class SemanticSearchResult(BaseModel):
    chunk: SemanticChunk
    score: float
    match_type: Literal["fts", "vector", "hybrid"]


# ── Retrieval ────────────────────────────────────────────────────────


class MemoryWarning(BaseModel):
    type: Literal["conflict", "stale", "incomplete", "overflow", "custom"]
    message: str
    details: dict[str, JsonValue] = Field(default_factory=dict)


class MemoryBundle(BaseModel):
    """Bounded context assembled from every layer for a single prompt."""

    profile: list[ProfileItem] = Field(default_factory=list)
    task_state: TaskState | None = None
    recent_events: list[MemoryEvent] = Field(default_factory=list)
    retrieved_chunks: list[SemanticSearchResult] = Field(default_factory=list)
    summary: Summary | None = None
    warnings: list[MemoryWarning] = Field(default_factory=list)
    total_tokens: int = 0
    timestamp: datetime = Field(default_factory=_utcnow)

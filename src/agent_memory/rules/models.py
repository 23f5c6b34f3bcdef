"""Rule data: conditions, actions and policy rules.

Rules are plain data so they can be exported, imported and toggled at
runtime. The engine only decides which actions fire; callers execute them.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, JsonValue

from ..models import EventType, MemoryLayer


class ConditionType(str, Enum):
    EVENT_TYPE = "event_type"
    CONTENT_MATCH = "content_match"
    TOKEN_THRESHOLD = "token_threshold"
    TIME_ELAPSED = "time_elapsed"
    CUSTOM = "custom"


class ActionType(str, Enum):
    WRITE = "write"
    RETRIEVE = "retrieve"
    SKIP = "skip"
    SUMMARIZE = "summarize"
    EXTRACT_PROFILE = "extract_profile"


class RuleCondition(BaseModel):
    type: ConditionType
    params: dict[str, JsonValue] = Field(default_factory=dict)

    @classmethod
    def event_type(cls, *types: EventType | str) -> "RuleCondition":
        return cls(
            type=ConditionType.EVENT_TYPE,
            params={"types": [EventType(t).value for t in types]},
        )

    @classmethod
    def content_match(
        cls, *patterns: str, regex: bool = False, case_sensitive: bool = False
    ) -> "RuleCondition":
        """Match when any pattern occurs in the event text."""
        return cls(
            type=ConditionType.CONTENT_MATCH,
            params={
                "patterns": list(patterns),
                "regex": regex,
                "case_sensitive": case_sensitive,
            },
        )

    @classmethod
    def token_threshold(cls, threshold: int) -> "RuleCondition":
        return cls(type=ConditionType.TOKEN_THRESHOLD, params={"threshold": threshold})

    @classmethod
    def time_elapsed(cls, seconds: float) -> "RuleCondition":
        return cls(type=ConditionType.TIME_ELAPSED, params={"seconds": seconds})

    @classmethod
    def custom(cls, name: str, **params: JsonValue) -> "RuleCondition":
        return cls(type=ConditionType.CUSTOM, params={"name": name, **params})


class RuleAction(BaseModel):
    type: ActionType
    layers: list[MemoryLayer] = Field(default_factory=list)
    reason: str | None = None

    @classmethod
    def write(cls, *layers: MemoryLayer) -> "RuleAction":
        return cls(type=ActionType.WRITE, layers=list(layers))

    @classmethod
    def retrieve(cls, *layers: MemoryLayer) -> "RuleAction":
        """Retrieve from the given layers; no layers means all of them."""
        return cls(type=ActionType.RETRIEVE, layers=list(layers or MemoryLayer))

    @classmethod
    def skip(cls, reason: str) -> "RuleAction":
        return cls(type=ActionType.SKIP, reason=reason)

    @classmethod
    def summarize(cls) -> "RuleAction":
        return cls(type=ActionType.SUMMARIZE)

    @classmethod
    def extract_profile(cls) -> "RuleAction":
        return cls(type=ActionType.EXTRACT_PROFILE)


class PolicyRule(BaseModel):
    id: str
    name: str
    priority: int = 0
    condition: RuleCondition
    action: RuleAction
    enabled: bool = True
    description: str | None = None

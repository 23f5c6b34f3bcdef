"""Default condition evaluator and the context it evaluates against."""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from ..errors import WritePolicyError
from ..models import EventType, MemoryEvent
from .models import ConditionType, RuleCondition


class RuleContext(BaseModel):
    """Everything a condition may look at for one incoming event.

    ``flags`` carries caller-computed facts such as ``is_new_session`` or
    ``has_active_task`` for custom predicates.
    """

    event: MemoryEvent | None = None
    text: str | None = None
    session_id: str | None = None
    token_count: int = 0
    last_activity_at: datetime | None = None
    now: datetime | None = None
    flags: dict[str, bool] = Field(default_factory=dict)

    def content(self) -> str:
        """Text searched by content conditions: explicit text, else the event."""
        if self.text is not None:
            return self.text
        if self.event is None:
            return ""
        parts = [self.event.summary]
        if self.event.payload:
            parts.append(json.dumps(self.event.payload, ensure_ascii=False))
        return " ".join(p for p in parts if p)


CustomPredicate = Callable[[RuleContext, Mapping[str, Any]], bool]
ConditionFn = Callable[[RuleCondition, RuleContext], bool]


def _has_user_query(context: RuleContext, params: Mapping[str, Any]) -> bool:
    if "has_user_query" in context.flags:
        return context.flags["has_user_query"]
    event = context.event
    return event is not None and event.type == EventType.USER_MSG and bool(
        context.content().strip()
    )


def _flag(name: str) -> CustomPredicate:
    def predicate(context: RuleContext, params: Mapping[str, Any]) -> bool:
        return context.flags.get(name, False)

    return predicate


DEFAULT_PREDICATES: dict[str, CustomPredicate] = {
    "has_user_query": _has_user_query,
    "is_new_session": _flag("is_new_session"),
    "has_active_task": _flag("has_active_task"),
}


class ConditionEvaluator:
    """Evaluates rule conditions; custom predicates are looked up by name.

    Args:
        predicates: Extra named predicates, merged over the defaults
    """

    def __init__(self, predicates: Mapping[str, CustomPredicate] | None = None):
        self._predicates: dict[str, CustomPredicate] = dict(DEFAULT_PREDICATES)
        if predicates:
            self._predicates.update(predicates)

    def register(self, name: str, predicate: CustomPredicate) -> None:
        self._predicates[name] = predicate

    def __call__(self, condition: RuleCondition, context: RuleContext) -> bool:
        params = condition.params

        if condition.type == ConditionType.EVENT_TYPE:
            return context.event is not None and context.event.type.value in params.get(
                "types", []
            )

        if condition.type == ConditionType.CONTENT_MATCH:
            return self._content_matches(context.content(), params)

        if condition.type == ConditionType.TOKEN_THRESHOLD:
            return context.token_count >= params["threshold"]

        if condition.type == ConditionType.TIME_ELAPSED:
            if context.last_activity_at is None:
                return False
            now = context.now or datetime.now(timezone.utc)
            elapsed = (now - context.last_activity_at).total_seconds()
            return elapsed >= params["seconds"]

        name = params.get("name")
        predicate = self._predicates.get(name)
        if predicate is None:
            raise WritePolicyError(f"Unknown custom condition: {name!r}")
        return bool(predicate(context, params))

    @staticmethod
    def _content_matches(content: str, params: Mapping[str, Any]) -> bool:
        patterns = params.get("patterns", [])
        case_sensitive = params.get("case_sensitive", False)
        if params.get("regex", False):
            flags = 0 if case_sensitive else re.IGNORECASE
            return any(re.search(p, content, flags) for p in patterns)

        haystack = content if case_sensitive else content.lower()
        return any(
            (p if case_sensitive else p.lower()) in haystack for p in patterns
        )

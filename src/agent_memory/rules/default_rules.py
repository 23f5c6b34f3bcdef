"""Built-in retrieval and write rules, plus helpers for common custom rules."""

from __future__ import annotations

from ..models import EventType, MemoryLayer
from .models import PolicyRule, RuleAction, RuleCondition

PREFERENCE_PHRASES = ("always use", "prefer", "from now on", "remember to")


def default_retrieval_rules() -> list[PolicyRule]:
    return [
        PolicyRule(
            id="retrieve-on-query",
            name="Retrieve context for user queries",
            priority=100,
            condition=RuleCondition.custom("has_user_query"),
            action=RuleAction.retrieve(),
        ),
        PolicyRule(
            id="retrieve-on-task-active",
            name="Retrieve task state while a task is active",
            priority=80,
            condition=RuleCondition.custom("has_active_task"),
            action=RuleAction.retrieve(MemoryLayer.TASK_STATE),
        ),
        PolicyRule(
            id="retrieve-on-new-session",
            name="Retrieve profile at session start",
            priority=50,
            condition=RuleCondition.custom("is_new_session"),
            action=RuleAction.retrieve(MemoryLayer.PROFILE),
        ),
    ]


def default_write_rules(summarize_token_threshold: int = 4000) -> list[PolicyRule]:
    return [
        PolicyRule(
            id="write-decisions",
            name="Persist decisions",
            priority=100,
            condition=RuleCondition.event_type(EventType.DECISION),
            action=RuleAction.write(MemoryLayer.SEMANTIC, MemoryLayer.SUMMARY),
        ),
        PolicyRule(
            id="write-state-changes",
            name="Persist state changes",
            priority=90,
            condition=RuleCondition.event_type(EventType.STATE_CHANGE),
            action=RuleAction.write(MemoryLayer.SEMANTIC),
        ),
        PolicyRule(
            id="write-preferences",
            name="Record stated preferences",
            priority=80,
            condition=RuleCondition.content_match(*PREFERENCE_PHRASES),
            action=RuleAction.write(MemoryLayer.PROFILE),
        ),
        PolicyRule(
            id="auto-summarize",
            name="Summarize long sessions",
            priority=70,
            condition=RuleCondition.token_threshold(summarize_token_threshold),
            action=RuleAction.summarize(),
        ),
        PolicyRule(
            id="write-important-results",
            name="Persist tool results",
            priority=60,
            condition=RuleCondition.event_type(EventType.TOOL_RESULT),
            action=RuleAction.write(MemoryLayer.SEMANTIC),
        ),
    ]


def create_event_type_write_rule(
    rule_id: str,
    event_types: list[EventType],
    layers: list[MemoryLayer],
    priority: int = 50,
) -> PolicyRule:
    return PolicyRule(
        id=rule_id,
        name=f"Write {', '.join(t.value for t in event_types)} events",
        priority=priority,
        condition=RuleCondition.event_type(*event_types),
        action=RuleAction.write(*layers),
    )


def create_content_pattern_rule(
    rule_id: str,
    patterns: list[str],
    action: RuleAction,
    priority: int = 50,
    regex: bool = False,
) -> PolicyRule:
    return PolicyRule(
        id=rule_id,
        name=f"Match content: {', '.join(patterns)}",
        priority=priority,
        condition=RuleCondition.content_match(*patterns, regex=regex),
        action=action,
    )

"""Rule-based write and retrieval policy."""

from __future__ import annotations

from .conditions import ConditionEvaluator, RuleContext
from .default_rules import (
    create_content_pattern_rule,
    create_event_type_write_rule,
    default_retrieval_rules,
    default_write_rules,
)
from .engine import RuleEngine
from .models import ActionType, ConditionType, PolicyRule, RuleAction, RuleCondition
from .preferences import ConflictResolution, extract_preferences, resolve_conflict
from .write_policy import PolicyDecision, WritePolicyEngine

__all__ = [
    "ActionType",
    "ConditionEvaluator",
    "ConditionType",
    "ConflictResolution",
    "PolicyDecision",
    "PolicyRule",
    "RuleAction",
    "RuleCondition",
    "RuleContext",
    "RuleEngine",
    "WritePolicyEngine",
    "create_content_pattern_rule",
    "create_event_type_write_rule",
    "default_retrieval_rules",
    "default_write_rules",
    "extract_preferences",
    "resolve_conflict",
]

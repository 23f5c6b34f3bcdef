"""Rule engine: evaluate-all matching of prioritized policy rules.

Every enabled rule whose condition holds is returned, highest priority
first, so several actions can fire for a single event. A condition that
raises is logged and treated as non-matching; it never aborts evaluation.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from loguru import logger

from .conditions import ConditionEvaluator, ConditionFn, RuleContext
from .models import ActionType, PolicyRule


class RuleEngine:
    def __init__(self, rules: Iterable[PolicyRule] = ()):
        self._rules: dict[str, PolicyRule] = {}
        self._default_evaluator = ConditionEvaluator()
        for rule in rules:
            self.add_rule(rule)

    def add_rule(self, rule: PolicyRule) -> None:
        """Add a rule, replacing any existing rule with the same id."""
        if rule.id in self._rules:
            logger.debug(f"Replacing rule '{rule.id}'")
        self._rules[rule.id] = rule

    def remove_rule(self, rule_id: str) -> bool:
        return self._rules.pop(rule_id, None) is not None

    def get_rule(self, rule_id: str) -> PolicyRule | None:
        return self._rules.get(rule_id)

    def get_rules(self) -> list[PolicyRule]:
        """All rules by priority descending; equal priorities keep insertion order."""
        return sorted(self._rules.values(), key=lambda r: r.priority, reverse=True)

    def get_rules_by_action(self, action_type: ActionType) -> list[PolicyRule]:
        return [r for r in self.get_rules() if r.action.type == action_type]

    def enable_rule(self, rule_id: str) -> bool:
        return self._set_enabled(rule_id, True)

    def disable_rule(self, rule_id: str) -> bool:
        return self._set_enabled(rule_id, False)

    def _set_enabled(self, rule_id: str, enabled: bool) -> bool:
        rule = self._rules.get(rule_id)
        if rule is None:
            return False
        self._rules[rule_id] = rule.model_copy(update={"enabled": enabled})
        return True

    def evaluate(
        self, context: RuleContext, evaluator: ConditionFn | None = None
    ) -> list[PolicyRule]:
        """Return every enabled rule whose condition matches ``context``.

        Args:
            context: Facts about the incoming event
            evaluator: Condition evaluator; defaults to :class:`ConditionEvaluator`

        Returns:
            Matching rules, highest priority first
        """
        evaluate_condition = evaluator or self._default_evaluator
        matched: list[PolicyRule] = []
        for rule in self.get_rules():
            if not rule.enabled:
                continue
            try:
                if evaluate_condition(rule.condition, context):
                    matched.append(rule)
            except Exception as e:
                logger.warning(f"Condition of rule '{rule.id}' failed, skipping: {e}")
        return matched

    def clear(self) -> None:
        self._rules.clear()

    def import_rules(
        self, rules: Iterable[PolicyRule | dict[str, Any]], replace: bool = False
    ) -> int:
        """Load rules from models or exported dicts.

        Args:
            rules: Rules to add
            replace: Drop all existing rules first

        Returns:
            Number of rules imported
        """
        parsed = [
            r if isinstance(r, PolicyRule) else PolicyRule.model_validate(r)
            for r in rules
        ]
        if replace:
            self.clear()
        for rule in parsed:
            self.add_rule(rule)
        logger.debug(f"Imported {len(parsed)} rules")
        return len(parsed)

    def export_rules(self) -> list[dict[str, Any]]:
        return [r.model_dump(mode="json") for r in self.get_rules()]

    def __len__(self) -> int:
        return len(self._rules)

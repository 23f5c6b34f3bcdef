"""Write policy: folds the matching rules into a single decision per event."""

from __future__ import annotations

from loguru import logger
from pydantic import BaseModel, Field

from ..config import ConflictStrategy, WritePolicyConfig
from ..errors import ProfileKeyNotAllowedError
from ..models import PROFILE_KEYS, MemoryLayer, ProfileItem
from .conditions import ConditionFn, RuleContext
from .default_rules import default_retrieval_rules, default_write_rules
from .engine import RuleEngine
from .models import ActionType
from .preferences import ConflictResolution, extract_preferences, resolve_conflict


class PolicyDecision(BaseModel):
    """What the caller should do for one event.

    A matching skip rule clears ``write_layers`` and ``extract_profile``.
    """

    write_layers: list[MemoryLayer] = Field(default_factory=list)
    retrieve_layers: list[MemoryLayer] = Field(default_factory=list)
    summarize: bool = False
    extract_profile: bool = False
    skip_reason: str | None = None
    matched_rule_ids: list[str] = Field(default_factory=list)

    @property
    def should_write(self) -> bool:
        return bool(self.write_layers) and self.skip_reason is None


class WritePolicyEngine:
    """Decides which layers to write to and read from for each event.

    Args:
        config: Thresholds and whether to load the built-in rules
        engine: Rule engine to use; a new one is created when omitted
        evaluator: Condition evaluator passed to every evaluation
        allowed_profile_keys: Whitelist for profile writes; ``None`` allows all
        conflict_strategy: Resolution used by :meth:`resolve_conflict`
    """

    def __init__(
        self,
        config: WritePolicyConfig | None = None,
        engine: RuleEngine | None = None,
        evaluator: ConditionFn | None = None,
        allowed_profile_keys: list[str] | tuple[str, ...] | None = PROFILE_KEYS,
        conflict_strategy: ConflictStrategy = "explicit",
    ):
        self._config = config or WritePolicyConfig()
        self._evaluator = evaluator
        self._allowed_keys = allowed_profile_keys
        self._conflict_strategy = conflict_strategy
        if engine is None:
            engine = RuleEngine()
            if self._config.use_default_rules:
                engine.import_rules(default_retrieval_rules())
                engine.import_rules(
                    default_write_rules(self._config.summarize_token_threshold)
                )
        self._engine = engine

    @property
    def engine(self) -> RuleEngine:
        return self._engine

    def decide(self, context: RuleContext) -> PolicyDecision:
        decision = PolicyDecision()
        for rule in self._engine.evaluate(context, self._evaluator):
            decision.matched_rule_ids.append(rule.id)
            action = rule.action
            if action.type == ActionType.WRITE:
                _extend_unique(decision.write_layers, action.layers)
            elif action.type == ActionType.RETRIEVE:
                _extend_unique(decision.retrieve_layers, action.layers)
            elif action.type == ActionType.SUMMARIZE:
                decision.summarize = True
            elif action.type == ActionType.EXTRACT_PROFILE:
                decision.extract_profile = True
            elif action.type == ActionType.SKIP and decision.skip_reason is None:
                decision.skip_reason = action.reason or rule.id

        if decision.skip_reason is not None:
            decision.write_layers = []
            decision.extract_profile = False

        logger.debug(
            f"Policy decision: write={[layer.value for layer in decision.write_layers]}, "
            f"retrieve={[layer.value for layer in decision.retrieve_layers]}, "
            f"rules={decision.matched_rule_ids}"
        )
        return decision

    def validate_profile_key(self, key: str) -> None:
        if self._allowed_keys is not None and key not in self._allowed_keys:
            raise ProfileKeyNotAllowedError(key, list(self._allowed_keys))

    def should_summarize(self, event_count: int, token_count: int) -> bool:
        return (
            event_count >= self._config.summarize_event_threshold
            or token_count >= self._config.summarize_token_threshold
        )

    def extract_preferences(
        self, content: str, source_event_id: str | None = None
    ) -> list[ProfileItem]:
        """Whitelisted preferences stated in ``content``."""
        return extract_preferences(content, self._allowed_keys, source_event_id)

    def resolve_conflict(
        self, existing: ProfileItem | None, incoming: ProfileItem
    ) -> ConflictResolution:
        return resolve_conflict(existing, incoming, self._conflict_strategy)


def _extend_unique(target: list[MemoryLayer], layers: list[MemoryLayer]) -> None:
    for layer in layers:
        if layer not in target:
            target.append(layer)

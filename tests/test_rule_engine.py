"""Tests for the rule engine, condition evaluation and write policy."""

from datetime import datetime, timedelta, timezone

import pytest

from agent_memory.config import WritePolicyConfig
from agent_memory.errors import ProfileKeyNotAllowedError, WritePolicyError
from agent_memory.models import EventType, MemoryEvent, MemoryLayer, ProfileItem
from agent_memory.rules import (
    ActionType,
    ConditionEvaluator,
    PolicyRule,
    RuleAction,
    RuleCondition,
    RuleContext,
    RuleEngine,
    WritePolicyEngine,
    create_content_pattern_rule,
    create_event_type_write_rule,
    extract_preferences,
    resolve_conflict,
)

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _context(type_=EventType.USER_MSG, summary="", **kwargs) -> RuleContext:
    event = MemoryEvent(type=type_, session_id="s1", summary=summary)
    return RuleContext(event=event, session_id="s1", now=NOW, **kwargs)


def _rule(rule_id, priority, condition=None, action=None, **kwargs) -> PolicyRule:
    return PolicyRule(
        id=rule_id,
        name=rule_id,
        priority=priority,
        condition=condition or RuleCondition.event_type(EventType.USER_MSG),
        action=action or RuleAction.write(MemoryLayer.SEMANTIC),
        **kwargs,
    )


# ── Engine ───────────────────────────────────────────────────────────


def test_evaluate_returns_all_matches_by_priority():
    engine = RuleEngine(
        [
            _rule("low", 10),
            _rule("high", 100),
            _rule("other-type", 50, RuleCondition.event_type(EventType.ERROR)),
            _rule("mid", 50),
        ]
    )

    matched = engine.evaluate(_context())

    assert [r.id for r in matched] == ["high", "mid", "low"]


def test_disabled_rules_are_ignored():
    engine = RuleEngine([_rule("a", 10), _rule("b", 20, enabled=False)])

    assert [r.id for r in engine.evaluate(_context())] == ["a"]

    engine.enable_rule("b")
    assert [r.id for r in engine.evaluate(_context())] == ["b", "a"]
    engine.disable_rule("a")
    assert [r.id for r in engine.evaluate(_context())] == ["b"]
    assert not engine.enable_rule("missing")


def test_failing_condition_is_skipped():
    engine = RuleEngine([_rule("boom", 100), _rule("ok", 10)])

    def evaluator(condition, context):
        if condition is engine.get_rule("boom").condition:
            raise RuntimeError("bad condition")
        return True

    assert [r.id for r in engine.evaluate(_context(), evaluator)] == ["ok"]


def test_unknown_custom_predicate():
    condition = RuleCondition.custom("no_such_predicate")

    with pytest.raises(WritePolicyError):
        ConditionEvaluator()(condition, _context())

    engine = RuleEngine([_rule("unknown", 10, condition), _rule("ok", 5)])
    assert [r.id for r in engine.evaluate(_context())] == ["ok"]


def test_registered_custom_predicate_receives_params():
    evaluator = ConditionEvaluator()
    evaluator.register(
        "long_summary", lambda ctx, params: len(ctx.content()) > params["min_length"]
    )
    condition = RuleCondition.custom("long_summary", min_length=5)

    assert evaluator(condition, _context(summary="a long message"))
    assert not evaluator(condition, _context(summary="hey"))


def test_equal_priority_keeps_insertion_order():
    engine = RuleEngine([_rule("first", 10), _rule("second", 10), _rule("third", 10)])

    assert [r.id for r in engine.get_rules()] == ["first", "second", "third"]


def test_rule_management():
    engine = RuleEngine()
    engine.add_rule(_rule("a", 10))
    engine.add_rule(_rule("b", 20, action=RuleAction.summarize()))
    engine.add_rule(_rule("a", 30))

    assert len(engine) == 2
    assert engine.get_rule("a").priority == 30
    assert [r.id for r in engine.get_rules_by_action(ActionType.SUMMARIZE)] == ["b"]
    assert engine.remove_rule("a")
    assert not engine.remove_rule("a")
    assert engine.get_rule("a") is None


def test_export_and_import_rules():
    source = RuleEngine([_rule("a", 10), _rule("b", 20, action=RuleAction.skip("noise"))])
    exported = source.export_rules()

    target = RuleEngine([_rule("old", 1)])
    assert target.import_rules(exported, replace=True) == 2

    assert [r.id for r in target.get_rules()] == ["b", "a"]
    assert target.get_rule("b").action.reason == "noise"
    assert target.get_rule("old") is None


# ── Conditions ───────────────────────────────────────────────────────


def test_content_match_substring_and_regex():
    evaluator = ConditionEvaluator()
    context = _context(summary="Please ALWAYS use tabs")

    assert evaluator(RuleCondition.content_match("always use"), context)
    assert not evaluator(
        RuleCondition.content_match("always use", case_sensitive=True), context
    )
    assert evaluator(RuleCondition.content_match(r"\btabs?\b", regex=True), context)
    assert not evaluator(RuleCondition.content_match(r"^tabs", regex=True), context)


def test_content_prefers_explicit_text_and_includes_payload():
    event = MemoryEvent(
        type=EventType.TOOL_RESULT, session_id="s1", summary="ran", payload={"out": "ok"}
    )

    assert RuleContext(event=event).content() == 'ran {"out": "ok"}'
    assert RuleContext(event=event, text="override").content() == "override"
    assert RuleContext().content() == ""


def test_token_and_time_conditions():
    evaluator = ConditionEvaluator()

    assert evaluator(RuleCondition.token_threshold(100), _context(token_count=100))
    assert not evaluator(RuleCondition.token_threshold(100), _context(token_count=99))

    elapsed = RuleCondition.time_elapsed(3600)
    assert evaluator(elapsed, _context(last_activity_at=NOW - timedelta(hours=2)))
    assert not evaluator(elapsed, _context(last_activity_at=NOW - timedelta(minutes=5)))
    assert not evaluator(elapsed, _context())


# ── Write policy ─────────────────────────────────────────────────────


@pytest.fixture
def policy():
    return WritePolicyEngine()


def test_decision_events_are_written(policy):
    decision = policy.decide(_context(EventType.DECISION, "Use SQLite for storage"))

    assert decision.write_layers == [MemoryLayer.SEMANTIC, MemoryLayer.SUMMARY]
    assert decision.should_write
    assert "write-decisions" in decision.matched_rule_ids


def test_stated_preference_writes_profile_and_retrieves(policy):
    decision = policy.decide(
        _context(summary="From now on, answer in Korean please")
    )

    assert decision.write_layers == [MemoryLayer.PROFILE]
    assert set(decision.retrieve_layers) == set(MemoryLayer)
    assert decision.matched_rule_ids == ["retrieve-on-query", "write-preferences"]


def test_flags_drive_retrieval_rules(policy):
    decision = policy.decide(
        _context(
            EventType.SYSTEM,
            "session started",
            flags={"is_new_session": True, "has_active_task": True},
        )
    )

    assert decision.retrieve_layers == [MemoryLayer.TASK_STATE, MemoryLayer.PROFILE]
    assert not decision.should_write


def test_token_threshold_triggers_summarize(policy):
    assert policy.decide(_context(EventType.ASSISTANT_MSG, "ok", token_count=5000)).summarize
    assert not policy.decide(_context(EventType.ASSISTANT_MSG, "ok", token_count=10)).summarize


def test_skip_rule_clears_writes(policy):
    policy.engine.add_rule(
        create_content_pattern_rule(
            "skip-secrets", ["password"], RuleAction.skip("contains secret"), priority=200
        )
    )
    policy.engine.add_rule(
        _rule(
            "extract",
            10,
            RuleCondition.event_type(EventType.DECISION),
            RuleAction.extract_profile(),
        )
    )

    decision = policy.decide(_context(EventType.DECISION, "the password is hunter2"))

    assert decision.skip_reason == "contains secret"
    assert decision.write_layers == []
    assert not decision.extract_profile
    assert not decision.should_write


def test_custom_event_type_rule(policy):
    policy.engine.add_rule(
        create_event_type_write_rule(
            "write-errors", [EventType.ERROR], [MemoryLayer.EVENT, MemoryLayer.SEMANTIC]
        )
    )

    decision = policy.decide(_context(EventType.ERROR, "disk full"))

    assert decision.write_layers == [MemoryLayer.EVENT, MemoryLayer.SEMANTIC]


def test_without_default_rules_nothing_fires():
    policy = WritePolicyEngine(WritePolicyConfig(use_default_rules=False))

    decision = policy.decide(_context(EventType.DECISION, "anything"))

    assert len(policy.engine) == 0
    assert decision.matched_rule_ids == []


def test_validate_profile_key(policy):
    policy.validate_profile_key("language")
    with pytest.raises(ProfileKeyNotAllowedError):
        policy.validate_profile_key("favorite_color")

    WritePolicyEngine(allowed_profile_keys=None).validate_profile_key("favorite_color")


def test_should_summarize_thresholds():
    policy = WritePolicyEngine(
        WritePolicyConfig(summarize_token_threshold=100, summarize_event_threshold=5)
    )

    assert policy.should_summarize(event_count=5, token_count=0)
    assert policy.should_summarize(event_count=0, token_count=100)
    assert not policy.should_summarize(event_count=4, token_count=99)


# ── Preferences ──────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Please reply in Korean from now on", {"language": "Korean"}),
        ("응답은 use 한국어", {"language": "Korean"}),
        ("I prefer markdown tables", {"format": "markdown"}),
        ("Use plain text, and be concise", {"format": "plain", "verbosity": "concise"}),
        (
            "Could you be more detailed and more formal?",
            {"verbosity": "detailed", "tone": "formal"},
        ),
        ("be casual", {"tone": "casual"}),
        ("What is the weather like?", {}),
    ],
)
def test_extract_preferences(text, expected):
    items = extract_preferences(text, source_event_id="evt-1")

    assert {i.key: i.value for i in items} == expected
    assert all(not i.explicit and i.source_event_id == "evt-1" for i in items)


def test_extract_preferences_respects_whitelist(policy):
    assert [i.confidence for i in policy.extract_preferences("speak English")] == [0.9]
    assert extract_preferences("speak English", allowed_keys=["tone"]) == []

    restricted = WritePolicyEngine(allowed_profile_keys=["format"])
    assert [i.key for i in restricted.extract_preferences("use json, speak English")] == [
        "format"
    ]


def _pref(value, confidence=0.5, explicit=False):
    return ProfileItem(key="tone", value=value, confidence=confidence, explicit=explicit)


@pytest.mark.parametrize(
    "strategy, existing, incoming, incoming_wins, needs_review",
    [
        ("latest", _pref("a", 0.9, True), _pref("b", 0.1), True, False),
        ("confidence", _pref("a", 0.6), _pref("b", 0.7), True, False),
        ("confidence", _pref("a", 0.6), _pref("b", 0.6), False, False),
        ("explicit", _pref("a", 0.2, True), _pref("b", 0.99), False, False),
        ("explicit", _pref("a", 0.99), _pref("b", 0.2, True), True, False),
        ("explicit", _pref("a", 0.9), _pref("b", 0.1), True, False),
        ("manual", _pref("a"), _pref("b", 1.0, True), False, True),
    ],
)
def test_resolve_conflict_strategies(
    strategy, existing, incoming, incoming_wins, needs_review
):
    resolution = resolve_conflict(existing, incoming, strategy)

    assert resolution.incoming_wins is incoming_wins
    assert resolution.winner.value == ("b" if incoming_wins else "a")
    assert resolution.needs_review is needs_review


def test_resolve_conflict_without_existing_value():
    resolution = resolve_conflict(None, _pref("b"), "manual")

    assert resolution.incoming_wins
    assert not resolution.needs_review


def test_policy_uses_configured_conflict_strategy():
    policy = WritePolicyEngine(conflict_strategy="confidence")

    resolution = policy.resolve_conflict(_pref("a", 0.9, True), _pref("b", 0.95))

    assert resolution.incoming_wins

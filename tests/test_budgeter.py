"""Tests for token estimation and budget allocation."""

import pytest

from agent_memory.budgeter import LAYER_PRIORITY, MemoryBudgeter
from agent_memory.config import TokenBudget, TokenEstimationConfig
from agent_memory.errors import TokenBudgetExceededError
from agent_memory.models import (
    EventType,
    MemoryBundle,
    MemoryEvent,
    ProfileItem,
    SemanticChunk,
    SemanticSearchResult,
    Summary,
    TaskState,
)


@pytest.fixture
def budgeter():
    return MemoryBudgeter()


@pytest.mark.parametrize(
    "text, expected",
    [
        ("", 0),
        ("abcd", 2),
        ("a" * 40, 11),
        ("a" * 120, 33),
    ],
)
def test_estimate_tokens(budgeter, text, expected):
    assert budgeter.estimate_tokens(text) == expected


def test_estimate_tokens_respects_estimation_settings():
    budgeter = MemoryBudgeter(estimation=TokenEstimationConfig(chars_per_token=2, overhead_percent=0))
    assert budgeter.estimate_tokens("abcde") == 3


def test_estimate_object_tokens(budgeter):
    assert budgeter.estimate_object_tokens(None) == 0
    assert budgeter.estimate_object_tokens({"k": "v"}) == budgeter.estimate_tokens('{"k": "v"}')


def test_default_allocation_gives_each_layer_its_budget(budgeter):
    allocation = budgeter.allocate()

    assert allocation.profile == 200
    assert allocation.task_state == 300
    assert allocation.summary == 400
    assert allocation.recent_events == 500
    assert allocation.semantic_chunks == 800
    assert allocation.remaining == 0


def test_small_total_starves_low_priority_layers():
    budgeter = MemoryBudgeter(TokenBudget(total=600))

    allocation = budgeter.allocate()

    assert (
        allocation.profile,
        allocation.task_state,
        allocation.summary,
        allocation.recent_events,
        allocation.semantic_chunks,
    ) == (200, 300, 100, 0, 0)
    assert allocation.remaining == 0


def test_unused_layer_budget_becomes_remaining(budgeter):
    allocation = budgeter.allocate({"profile": 50})

    assert allocation.profile == 50
    assert allocation.semantic_chunks == 800
    assert allocation.remaining == 150


@pytest.mark.parametrize("total", [0, 150, 600, 1000, 2200, 5000])
def test_allocation_never_exceeds_budgets(total):
    budget = TokenBudget(total=total)
    allocation = MemoryBudgeter(budget).allocate({"summary": 10_000, "recent_events": 30})

    granted = [allocation.for_layer(layer) for layer in LAYER_PRIORITY]
    assert sum(granted) <= total
    assert allocation.remaining == total - sum(granted)
    for layer in LAYER_PRIORITY:
        assert 0 <= allocation.for_layer(layer) <= getattr(budget, layer)
    assert allocation.recent_events <= 30


def test_trim_to_fit_stops_at_first_overflow(budgeter):
    costs = {"a": 3, "b": 5, "c": 1}

    result = budgeter.trim_to_fit(["a", "b", "c"], 7, costs.__getitem__)

    assert result.items == ["a"]
    assert result.used_tokens == 3
    assert result.dropped == 2


def test_trim_to_fit_keeps_everything_that_fits(budgeter):
    result = budgeter.trim_to_fit([1, 2, 3], 6, lambda x: x)

    assert result.items == [1, 2, 3]
    assert result.dropped == 0


def test_validate_budget(budgeter):
    budgeter.validate_budget("profile", 200)
    assert budgeter.is_within_budget("total", 2200)
    assert not budgeter.is_within_budget("profile", 201)

    with pytest.raises(TokenBudgetExceededError) as exc_info:
        budgeter.validate_budget("profile", 201)
    assert exc_info.value.layer == "profile"
    assert exc_info.value.budget == 200
    assert exc_info.value.actual == 201


def test_with_budget_keeps_estimation():
    budgeter = MemoryBudgeter(estimation=TokenEstimationConfig(chars_per_token=1, overhead_percent=0))

    narrowed = budgeter.with_budget(TokenBudget(total=10))

    assert narrowed.budget.total == 10
    assert narrowed.estimate_tokens("abc") == 3


def _bundle() -> MemoryBundle:
    return MemoryBundle(
        profile=[ProfileItem(key="language", value="en")],
        task_state=TaskState(goal="Ship v1"),
        summary=Summary(session_id="s1", short="Worked on release", bullets=["tagged"]),
        recent_events=[
            MemoryEvent(type=EventType.USER_MSG, session_id="s1", summary="hi", payload={"a": 1})
        ],
        retrieved_chunks=[
            SemanticSearchResult(
                chunk=SemanticChunk(text="release notes"), score=1.0, match_type="fts"
            )
        ],
    )


def test_calculate_bundle_tokens_sums_layers(budgeter):
    bundle = _bundle()

    usage = budgeter.calculate_bundle_tokens(bundle)

    assert usage["profile"] == budgeter.estimate_tokens('language: "en"')
    assert usage["summary"] == budgeter.estimate_tokens("Worked on release\ntagged")
    assert usage["recent_events"] == budgeter.estimate_tokens('hi{"a": 1}')
    assert usage["semantic_chunks"] == budgeter.estimate_tokens("release notes")
    assert usage["task_state"] > 0
    assert usage["total"] == sum(v for k, v in usage.items() if k != "total")


def test_empty_bundle_uses_no_tokens(budgeter):
    usage = budgeter.calculate_bundle_tokens(MemoryBundle())
    assert usage["total"] == 0


def test_get_utilization(budgeter):
    bundle = MemoryBundle(retrieved_chunks=[
        SemanticSearchResult(
            chunk=SemanticChunk(text="a" * 40), score=1.0, match_type="vector"
        )
    ])

    utilization = budgeter.get_utilization(bundle)

    assert utilization["semantic_chunks"] == pytest.approx(11 / 800)
    assert utilization["profile"] == 0.0
    assert utilization["total"] == pytest.approx(11 / 2200)


def test_get_utilization_with_zero_budget():
    budgeter = MemoryBudgeter(TokenBudget(profile=0))
    bundle = MemoryBundle(profile=[ProfileItem(key="language", value="en")])

    assert budgeter.get_utilization(bundle)["profile"] == 0.0

"""Tests for rendering memory bundles into prompt text."""

from datetime import datetime, timezone

import pytest

from agent_memory.injector import InjectionOptions, MemoryInjector, truncate
from agent_memory.models import (
    EventType,
    MemoryBundle,
    MemoryEvent,
    MemoryWarning,
    PlanStep,
    ProfileItem,
    SemanticChunk,
    SemanticSearchResult,
    Summary,
    SummaryDecision,
    SummaryTodo,
    TaskConstraint,
    TaskState,
    TaskStatus,
)

TS = datetime(2026, 1, 1, 9, 30, 5, tzinfo=timezone.utc)


@pytest.fixture
def bundle():
    return MemoryBundle(
        profile=[
            ProfileItem(key="language", value="ko", explicit=True),
            ProfileItem(key="restrictions", value={"avoid": ["pork"]}, confidence=0.75),
        ],
        task_state=TaskState(
            goal="Ship v1",
            status=TaskStatus.IN_PROGRESS,
            constraints=[TaskConstraint(type="must", description="keep the API stable")],
            plan=[
                PlanStep(id="p1", description="write changelog"),
                PlanStep(id="p2", description="run tests", status="in_progress"),
                PlanStep(id="p3", description="tag release"),
            ],
            done=["p1"],
            next_action="run tests",
        ),
        summary=Summary(
            session_id="s1",
            short="Preparing the release",
            bullets=["changelog drafted"],
            decisions=[SummaryDecision(description="use semantic versioning")],
            todos=[
                SummaryTodo(description="notify users"),
                SummaryTodo(description="bump version", completed=True),
            ],
        ),
        recent_events=[
            MemoryEvent(
                type=EventType.USER_MSG,
                session_id="s1",
                summary="is it done yet?",
                timestamp=TS,
            )
        ],
        retrieved_chunks=[
            SemanticSearchResult(
                chunk=SemanticChunk(text="x" * 300, source_type="DECISION"),
                score=0.876,
                match_type="fts",
            )
        ],
        warnings=[MemoryWarning(type="stale", message="Task state is old")],
    )


def test_sections_render_in_order(bundle):
    text = MemoryInjector().inject(bundle)

    headings = [line for line in text.splitlines() if line.startswith("## ")]
    assert headings == [
        "## User Preferences (Hard Constraints)",
        "## Current Task State",
        "## Conversation Summary",
        "## Recent Events",
        "## Related Information",
        "## Warnings",
    ]


def test_section_contents(bundle):
    text = MemoryInjector().inject(bundle)

    assert "- **language**: ko (explicit)" in text
    assert '- **restrictions**: {"avoid": ["pork"]} (confidence: 0.75)' in text
    assert "**Status**: in_progress" in text
    assert "  - [must] keep the API stable" in text
    assert "  ✓ write changelog\n  → run tests\n  ○ tag release" in text
    assert "**Next Action**: run tests" in text
    assert "Decisions made:\n- use semantic versioning" in text
    assert "Outstanding items:\n- notify users" in text
    assert "bump version" not in text
    assert "- [09:30:05] [USER_MSG] is it done yet?" in text
    assert "1. [DECISION] (score: 0.88)\n   " + "x" * 197 + "..." in text
    assert "[stale] Task state is old" in text


def test_include_flags_and_titles(bundle):
    injector = MemoryInjector()

    text = injector.inject(
        bundle,
        InjectionOptions(
            include_task_state=False,
            include_events=False,
            include_warnings=False,
            include_chunks=False,
            section_titles={"profile": "Preferences"},
        ),
    )

    assert text.startswith("## Preferences\n")
    assert "Ship v1" not in text
    assert "Warnings" not in text
    assert "## Conversation Summary" in text


def test_empty_bundle_renders_nothing():
    assert MemoryInjector().inject(MemoryBundle()) == ""


def test_chunk_length_is_configurable(bundle):
    injector = MemoryInjector(InjectionOptions(max_chunk_chars=20))

    assert "   " + "x" * 17 + "...\n" in injector.inject(bundle) + "\n"


def test_truncate():
    assert truncate("short", 10) == "short"
    assert truncate("abcdefghij", 10) == "abcdefghij"
    assert truncate("abcdefghijk", 10) == "abcdefg..."

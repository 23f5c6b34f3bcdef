"""Renders a memory bundle into prompt text.

Sections appear in a fixed order: preferences, task state, summary, recent
events, related information, warnings. Empty sections are omitted.
"""

from __future__ import annotations

import json

from loguru import logger
from pydantic import BaseModel, Field

from .models import (
    MemoryBundle,
    MemoryEvent,
    MemoryWarning,
    ProfileItem,
    SemanticSearchResult,
    Summary,
    TaskState,
)

SECTION_TITLES = {
    "profile": "User Preferences (Hard Constraints)",
    "task_state": "Current Task State",
    "summary": "Conversation Summary",
    "events": "Recent Events",
    "chunks": "Related Information",
    "warnings": "Warnings",
}


class InjectionOptions(BaseModel):
    include_profile: bool = True
    include_task_state: bool = True
    include_summary: bool = True
    include_events: bool = True
    include_chunks: bool = True
    include_warnings: bool = True
    max_chunk_chars: int = Field(default=200, ge=4)
    section_titles: dict[str, str] = Field(default_factory=dict)


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 3] + "..."


def format_profile(items: list[ProfileItem]) -> str:
    lines = []
    for item in items:
        strength = "explicit" if item.explicit else f"confidence: {item.confidence:.2f}"
        value = (
            item.value
            if isinstance(item.value, str)
            else json.dumps(item.value, ensure_ascii=False)
        )
        lines.append(f"- **{item.key}**: {value} ({strength})")
    return "\n".join(lines)


def format_task_state(state: TaskState) -> str:
    lines = [f"**Goal**: {state.goal}", f"**Status**: {state.status.value}"]

    if state.constraints:
        lines.append("**Constraints**:")
        for c in state.constraints:
            lines.append(f"  - [{c.type}] {c.description}")

    if state.plan:
        lines.append("**Plan**:")
        for step in state.plan:
            if step.id in state.done or step.status == "completed":
                marker = "✓"
            elif step.status == "in_progress":
                marker = "→"
            else:
                marker = "○"
            lines.append(f"  {marker} {step.description}")

    if state.blocked:
        lines.append(f"**Blocked**: {', '.join(state.blocked)}")
    if state.next_action:
        lines.append(f"**Next Action**: {state.next_action}")

    return "\n".join(lines)


def format_summary(summary: Summary) -> str:
    lines = [summary.short]

    if summary.bullets:
        lines += ["", "Key points:"]
        lines += [f"- {bullet}" for bullet in summary.bullets]

    if summary.decisions:
        lines += ["", "Decisions made:"]
        lines += [f"- {d.description}" for d in summary.decisions]

    open_todos = [t for t in summary.todos if not t.completed]
    if open_todos:
        lines += ["", "Outstanding items:"]
        lines += [f"- {t.description}" for t in open_todos]

    return "\n".join(lines)


def format_events(events: list[MemoryEvent]) -> str:
    return "\n".join(
        f"- [{event.timestamp.strftime('%H:%M:%S')}] [{event.type.value}] {event.summary}"
        for event in events
    )


def format_chunks(results: list[SemanticSearchResult], max_chars: int = 200) -> str:
    return "\n\n".join(
        f"{i}. [{r.chunk.source_type or 'unknown'}] (score: {r.score:.2f})\n"
        f"   {truncate(r.chunk.text, max_chars)}"
        for i, r in enumerate(results, start=1)
    )


def format_warnings(warnings: list[MemoryWarning]) -> str:
    return "\n".join(f"[{w.type}] {w.message}" for w in warnings)


class MemoryInjector:
    """Formats :class:`MemoryBundle` instances as markdown prompt sections.

    Args:
        options: Default options, overridable per call
    """

    def __init__(self, options: InjectionOptions | None = None):
        self.options = options or InjectionOptions()

    def inject(self, bundle: MemoryBundle, options: InjectionOptions | None = None) -> str:
        """Render every included, non-empty layer of ``bundle``.

        Returns:
            The sections joined by blank lines, or ``""`` when nothing applies
        """
        opts = options or self.options
        sections: list[tuple[str, str]] = []

        if opts.include_profile and bundle.profile:
            sections.append(("profile", format_profile(bundle.profile)))
        if opts.include_task_state and bundle.task_state is not None:
            sections.append(("task_state", format_task_state(bundle.task_state)))
        if opts.include_summary and bundle.summary is not None:
            sections.append(("summary", format_summary(bundle.summary)))
        if opts.include_events and bundle.recent_events:
            sections.append(("events", format_events(bundle.recent_events)))
        if opts.include_chunks and bundle.retrieved_chunks:
            sections.append(
                ("chunks", format_chunks(bundle.retrieved_chunks, opts.max_chunk_chars))
            )
        if opts.include_warnings and bundle.warnings:
            sections.append(("warnings", format_warnings(bundle.warnings)))

        titles = {**SECTION_TITLES, **opts.section_titles}
        text = "\n\n".join(f"## {titles[name]}\n{body}" for name, body in sections)
        logger.debug(
            f"Injected memory sections {[name for name, _ in sections]} "
            f"({len(text)} chars)"
        )
        return text

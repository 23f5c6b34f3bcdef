"""Preference extraction from user text and profile conflict resolution."""

from __future__ import annotations

import re

from pydantic import BaseModel

from ..config import ConflictStrategy
from ..models import ProfileItem


def _ci(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE)


_ASK = r"(?:use|speak|respond in|reply in|answer in|write in)\s+"

_LANGUAGE_PATTERNS = (
    (_ci(_ASK + r"(?:chinese|中文)"), "Chinese"),
    (_ci(_ASK + r"english"), "English"),
    (_ci(_ASK + r"(?:japanese|日本語)"), "Japanese"),
    (_ci(_ASK + r"(?:korean|한국어)"), "Korean"),
    (_ci(_ASK + r"(?:spanish|español)"), "Spanish"),
)

_FORMAT_PATTERNS = (
    (_ci(r"(?:use|prefer)\s+markdown"), "markdown"),
    (_ci(r"(?:use|prefer)\s+plain\s*text"), "plain"),
    (_ci(r"(?:use|prefer)\s+json"), "json"),
)

# (key, confidence, choices); the first matching choice wins
_CHOICE_PATTERNS = (
    (
        "verbosity",
        0.8,
        (
            (_ci(r"(?:be|more)\s+(?:brief|concise|short)"), "concise"),
            (_ci(r"(?:be|more)\s+(?:detailed|verbose|thorough)"), "detailed"),
        ),
    ),
    (
        "tone",
        0.75,
        (
            (_ci(r"(?:be|more)\s+(?:formal|professional)"), "formal"),
            (_ci(r"(?:be|more)\s+(?:casual|friendly|informal)"), "casual"),
        ),
    ),
)


def extract_preferences(
    content: str,
    allowed_keys: list[str] | tuple[str, ...] | None = None,
    source_event_id: str | None = None,
) -> list[ProfileItem]:
    """Pick stated preferences out of a user message.

    Extracted items are inferred (``explicit=False``) with a fixed
    confidence per kind. Keys outside ``allowed_keys`` are dropped.
    """
    found: list[tuple[str, str, float]] = []

    for pattern, value in _LANGUAGE_PATTERNS:
        if pattern.search(content):
            found.append(("language", value, 0.9))
    for pattern, value in _FORMAT_PATTERNS:
        if pattern.search(content):
            found.append(("format", value, 0.85))
    for key, confidence, choices in _CHOICE_PATTERNS:
        for pattern, value in choices:
            if pattern.search(content):
                found.append((key, value, confidence))
                break

    return [
        ProfileItem(
            key=key,
            value=value,
            confidence=confidence,
            source_event_id=source_event_id,
        )
        for key, value, confidence in found
        if allowed_keys is None or key in allowed_keys
    ]


class ConflictResolution(BaseModel):
    winner: ProfileItem
    incoming_wins: bool
    reason: str
    needs_review: bool = False


def resolve_conflict(
    existing: ProfileItem | None,
    incoming: ProfileItem,
    strategy: ConflictStrategy = "explicit",
) -> ConflictResolution:
    """Decide whether ``incoming`` replaces ``existing`` for the same key."""

    def take_incoming(reason: str) -> ConflictResolution:
        return ConflictResolution(winner=incoming, incoming_wins=True, reason=reason)

    def keep_existing(reason: str, needs_review: bool = False) -> ConflictResolution:
        return ConflictResolution(
            winner=existing,
            incoming_wins=False,
            reason=reason,
            needs_review=needs_review,
        )

    if existing is None:
        return take_incoming("No existing value")

    if strategy == "latest":
        return take_incoming("Using latest value")

    if strategy == "confidence":
        if incoming.confidence > existing.confidence:
            return take_incoming(
                f"Higher confidence: {incoming.confidence} > {existing.confidence}"
            )
        return keep_existing(
            f"Lower confidence: {incoming.confidence} <= {existing.confidence}"
        )

    if strategy == "explicit":
        if existing.explicit and not incoming.explicit:
            return keep_existing("Keeping explicit user preference")
        if incoming.explicit and not existing.explicit:
            return take_incoming("New value is explicit user preference")
        return take_incoming("Both same explicit status, using latest")

    if strategy == "manual":
        return keep_existing("Manual review required for conflict", needs_review=True)

    raise ValueError(f"Unknown conflict strategy: {strategy}")

"""Temporal decay: down-weight search scores by the age of each chunk."""

from __future__ import annotations

import math
from datetime import datetime, timezone

from ..config import TemporalDecayConfig
from ..models import SemanticSearchResult

SECONDS_PER_DAY = 86_400.0


def decay_multiplier(age_days: float, config: TemporalDecayConfig) -> float:
    """Multiplier in [min_multiplier, 1] for an item ``age_days`` old.

    - exponential: ``exp(-ln2 / half_life_days * age)``
    - linear: ``max(0, 1 - age / linear_window_days)``
    - step: multiplier of the first bucket covering the age, else the default
    """
    age = max(0.0, age_days)

    if config.strategy == "exponential":
        rate = math.log(2) / config.half_life_days
        multiplier = math.exp(-rate * age)
    elif config.strategy == "linear":
        multiplier = max(0.0, 1.0 - age / config.linear_window_days)
    else:
        multiplier = config.step_default_multiplier
        for max_age_days, bucket_multiplier in config.step_buckets:
            if age <= max_age_days:
                multiplier = bucket_multiplier
                break

    return max(config.min_multiplier, multiplier)


class TemporalDecay:
    """Applies the configured decay strategy to search results."""

    def __init__(self, config: TemporalDecayConfig | None = None):
        self._config = config or TemporalDecayConfig()

    @property
    def config(self) -> TemporalDecayConfig:
        return self._config

    def multiplier(
        self, timestamp: datetime, reference_time: datetime | None = None
    ) -> float:
        now = reference_time or datetime.now(timezone.utc)
        age_days = (now - timestamp).total_seconds() / SECONDS_PER_DAY
        return decay_multiplier(age_days, self._config)

    def apply(
        self,
        results: list[SemanticSearchResult],
        reference_time: datetime | None = None,
    ) -> list[SemanticSearchResult]:
        """Return copies with decayed scores, re-sorted by score (stable)."""
        now = reference_time or datetime.now(timezone.utc)
        decayed = [
            r.model_copy(
                update={"score": r.score * self.multiplier(r.chunk.timestamp, now)}
            )
            for r in results
        ]
        decayed.sort(key=lambda r: r.score, reverse=True)
        return decayed

"""Token estimation and per-layer budget allocation.

Token counts here are an approximation (characters divided by a fixed ratio
plus a percentage overhead), not the output of a real tokenizer. Integrators
that need exact counts for a specific model must measure separately.
"""

from __future__ import annotations

import json
import math
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from loguru import logger
from pydantic import BaseModel

from .config import TokenBudget, TokenEstimationConfig
from .errors import TokenBudgetExceededError
from .models import MemoryBundle, MemoryEvent, ProfileItem, SemanticSearchResult, Summary

T = TypeVar("T")

# Allocation order: earlier layers are served first from the global budget
LAYER_PRIORITY: tuple[str, ...] = (
    "profile",
    "task_state",
    "summary",
    "recent_events",
    "semantic_chunks",
)


class BudgetAllocation(BaseModel):
    profile: int = 0
    task_state: int = 0
    summary: int = 0
    recent_events: int = 0
    semantic_chunks: int = 0
    remaining: int = 0

    def for_layer(self, layer: str) -> int:
        return getattr(self, layer)


@dataclass
class TrimResult(Generic[T]):
    """Kept prefix of a trimmed list."""

    items: list[T] = field(default_factory=list)
    used_tokens: int = 0
    dropped: int = 0


class MemoryBudgeter:
    """Estimates token cost and fits memory layers into their budgets.

    Args:
        budget: Per-layer and global token ceilings
        estimation: Characters-per-token ratio and overhead
    """

    def __init__(
        self,
        budget: TokenBudget | None = None,
        estimation: TokenEstimationConfig | None = None,
    ):
        self.budget = budget or TokenBudget()
        self._estimation = estimation or TokenEstimationConfig()

    def with_budget(self, budget: TokenBudget) -> "MemoryBudgeter":
        """Same estimation settings, different ceilings."""
        return MemoryBudgeter(budget, self._estimation)

    def estimate_tokens(self, text: str) -> int:
        """Approximate tokens: ``ceil(len / chars_per_token)`` plus overhead."""
        if not text:
            return 0
        base = math.ceil(len(text) / self._estimation.chars_per_token)
        # round() absorbs float noise such as 30 * 0.1 == 3.0000000000000004
        overhead = math.ceil(round(base * self._estimation.overhead_percent, 9))
        return base + overhead

    def estimate_object_tokens(self, obj: Any) -> int:
        """Estimate the cost of an object via its JSON form."""
        if obj is None:
            return 0
        if isinstance(obj, BaseModel):
            return self.estimate_tokens(obj.model_dump_json())
        return self.estimate_tokens(json.dumps(obj, ensure_ascii=False, default=str))

    # Per-entity estimators used by the retriever

    def profile_item_tokens(self, item: ProfileItem) -> int:
        return self.estimate_tokens(
            f"{item.key}: {json.dumps(item.value, ensure_ascii=False)}"
        )

    def event_tokens(self, event: MemoryEvent) -> int:
        payload = json.dumps(event.payload, ensure_ascii=False) if event.payload else ""
        return self.estimate_tokens(event.summary + payload)

    def summary_tokens(self, summary: Summary) -> int:
        parts = [summary.short, *summary.bullets]
        parts.extend(d.description for d in summary.decisions)
        parts.extend(t.description for t in summary.todos)
        return self.estimate_tokens("\n".join(parts))

    def chunk_tokens(self, result: SemanticSearchResult) -> int:
        return self.estimate_tokens(result.chunk.text)

    def allocate(self, available: Mapping[str, int] | None = None) -> BudgetAllocation:
        """Assign tokens to layers in priority order.

        Each layer receives ``min(layer_budget, available_for_layer,
        remaining_global)``; the global remainder shrinks after each layer.

        Args:
            available: Tokens each layer could actually use; layers not
                listed may use their full budget

        Returns:
            Allocation per layer plus the unallocated remainder
        """
        remaining = self.budget.total
        allocation: dict[str, int] = {}
        for layer in LAYER_PRIORITY:
            layer_budget = getattr(self.budget, layer)
            wanted = layer_budget if available is None else available.get(layer, layer_budget)
            amount = max(0, min(layer_budget, wanted, remaining))
            allocation[layer] = amount
            remaining -= amount
        return BudgetAllocation(**allocation, remaining=remaining)

    def trim_to_fit(
        self,
        items: Sequence[T],
        budget: int,
        estimator: Callable[[T], int],
    ) -> TrimResult[T]:
        """Keep the longest prefix whose cumulative cost fits ``budget``.

        Stops at the first item that would overflow; later items are dropped
        even if they are small enough to fit.
        """
        kept: list[T] = []
        used = 0
        for item in items:
            cost = estimator(item)
            if used + cost > budget:
                break
            kept.append(item)
            used += cost
        return TrimResult(items=kept, used_tokens=used, dropped=len(items) - len(kept))

    def is_within_budget(self, layer: str, tokens: int) -> bool:
        return tokens <= getattr(self.budget, layer)

    def validate_budget(self, layer: str, tokens: int) -> None:
        """Raise if ``tokens`` exceeds the budget of ``layer`` (or ``total``)."""
        limit = getattr(self.budget, layer)
        if tokens > limit:
            raise TokenBudgetExceededError(layer, limit, tokens)

    def calculate_bundle_tokens(self, bundle: MemoryBundle) -> dict[str, int]:
        """Per-layer token estimates of a bundle plus their ``total``."""
        usage = {
            "profile": sum(self.profile_item_tokens(i) for i in bundle.profile),
            "task_state": self.estimate_object_tokens(bundle.task_state),
            "summary": self.summary_tokens(bundle.summary) if bundle.summary else 0,
            "recent_events": sum(self.event_tokens(e) for e in bundle.recent_events),
            "semantic_chunks": sum(
                self.chunk_tokens(r) for r in bundle.retrieved_chunks
            ),
        }
        usage["total"] = sum(usage.values())
        return usage

    def get_utilization(self, bundle: MemoryBundle) -> dict[str, float]:
        """Fraction of each budget used by a bundle (0.0 for zero budgets)."""
        usage = self.calculate_bundle_tokens(bundle)
        utilization = {}
        for layer, used in usage.items():
            limit = getattr(self.budget, layer)
            utilization[layer] = used / limit if limit > 0 else 0.0
        logger.debug(f"Budget utilization: {utilization}")
        return utilization

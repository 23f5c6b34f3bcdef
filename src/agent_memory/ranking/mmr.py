"""Maximal Marginal Relevance re-ranking.

Greedy selection that trades relevance against similarity to what has
already been selected:

    mmr(c) = lambda * relevance(c) - (1 - lambda) * max_sim(c, selected)

Near-duplicates (similarity at or above ``duplicate_threshold``) have their
similarity term multiplied by ``duplicate_penalty``.
"""

from __future__ import annotations

import re
from itertools import combinations

from ..config import MMRConfig
from ..models import SemanticSearchResult
from ..vectors import cosine_similarity

_NON_WORD = re.compile(r"[^\w\s]", re.UNICODE)


def tokenize(text: str) -> set[str]:
    """Lowercased word set, ignoring punctuation and one-character tokens."""
    return {t for t in _NON_WORD.sub(" ", text.lower()).split() if len(t) > 1}


def jaccard_similarity(a: set[str], b: set[str]) -> float:
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def overlap_similarity(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / min(len(a), len(b))


class MMRReranker:
    """Diversity-aware re-ranking of scored search results."""

    def __init__(self, config: MMRConfig | None = None):
        self._config = config or MMRConfig()

    @property
    def config(self) -> MMRConfig:
        return self._config

    def similarity(
        self,
        a: SemanticSearchResult,
        b: SemanticSearchResult,
        tokens_a: set[str] | None = None,
        tokens_b: set[str] | None = None,
    ) -> float:
        """Cosine over embeddings when both have one, otherwise text similarity."""
        ea, eb = a.chunk.embedding, b.chunk.embedding
        if self._config.use_embeddings and ea and eb and len(ea) == len(eb):
            return cosine_similarity(ea, eb)

        ta = tokens_a if tokens_a is not None else tokenize(a.chunk.text)
        tb = tokens_b if tokens_b is not None else tokenize(b.chunk.text)
        if self._config.similarity == "overlap":
            return overlap_similarity(ta, tb)
        return jaccard_similarity(ta, tb)

    def rerank(
        self, results: list[SemanticSearchResult], k: int | None = None
    ) -> list[SemanticSearchResult]:
        """Select up to ``k`` results in MMR order.

        Relevance is the result score divided by ``max(best_score, 1)``.
        Ties keep the earlier candidate, so ``lambda = 1`` yields plain top-k.
        """
        if not results:
            return []
        k = len(results) if k is None else min(k, len(results))
        if k <= 0:
            return []

        lam = self._config.lambda_
        norm = max(max(r.score for r in results), 1.0)
        tokens = [tokenize(r.chunk.text) for r in results]
        remaining = list(range(len(results)))
        selected: list[int] = []

        while remaining and len(selected) < k:
            best_idx = remaining[0]
            best_value = float("-inf")
            for idx in remaining:
                relevance = results[idx].score / norm
                max_sim = 0.0
                for chosen in selected:
                    sim = self.similarity(
                        results[idx], results[chosen], tokens[idx], tokens[chosen]
                    )
                    if sim > max_sim:
                        max_sim = sim
                if max_sim >= self._config.duplicate_threshold:
                    max_sim *= self._config.duplicate_penalty

                value = lam * relevance - (1 - lam) * max_sim
                if value > best_value:
                    best_value = value
                    best_idx = idx

            selected.append(best_idx)
            remaining.remove(best_idx)

        return [results[i] for i in selected]

    def needs_diversity_reranking(
        self, results: list[SemanticSearchResult], threshold: float | None = None
    ) -> bool:
        """Whether any two results are at least ``threshold`` similar."""
        limit = self._config.duplicate_threshold if threshold is None else threshold
        return any(
            self.similarity(a, b) >= limit for a, b in combinations(results, 2)
        )

    def get_mmr_stats(
        self,
        original: list[SemanticSearchResult],
        reranked: list[SemanticSearchResult],
    ) -> dict[str, float | int]:
        """Average pairwise similarity before and after re-ranking."""
        before = self._average_similarity(original)
        after = self._average_similarity(reranked)
        return {
            "input_count": len(original),
            "output_count": len(reranked),
            "avg_similarity_before": before,
            "avg_similarity_after": after,
            "diversity_gain": before - after,
        }

    def _average_similarity(self, results: list[SemanticSearchResult]) -> float:
        pairs = list(combinations(results, 2))
        if not pairs:
            return 0.0
        return sum(self.similarity(a, b) for a, b in pairs) / len(pairs)

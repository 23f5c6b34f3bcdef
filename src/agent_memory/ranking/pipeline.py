"""Ranking pipeline for semantic search results.

Stages, in order:
1. Drop results below ``min_score``
2. Temporal decay (if enabled), re-sorted by decayed score
3. MMR re-ranking (if enabled), otherwise a plain cut to ``limit``
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from loguru import logger

from ..config import RankingConfig
from ..models import SemanticSearchResult
from .mmr import MMRReranker
from .temporal_decay import TemporalDecay


@dataclass
class PipelineMetadata:
    input_count: int = 0
    output_count: int = 0
    filtered_count: int = 0
    temporal_decay_applied: bool = False
    mmr_applied: bool = False


@dataclass
class PipelineResult:
    results: list[SemanticSearchResult] = field(default_factory=list)
    metadata: PipelineMetadata = field(default_factory=PipelineMetadata)


class RankingPipeline:
    def __init__(self, config: RankingConfig | None = None):
        self._config = config or RankingConfig()
        self._decay = TemporalDecay(self._config.temporal_decay)
        self._mmr = MMRReranker(self._config.mmr)

    @property
    def mmr(self) -> MMRReranker:
        return self._mmr

    @property
    def decay(self) -> TemporalDecay:
        return self._decay

    def process(
        self,
        results: list[SemanticSearchResult],
        limit: int | None = None,
        reference_time: datetime | None = None,
    ) -> PipelineResult:
        meta = PipelineMetadata(input_count=len(results))
        if not self._config.enabled:
            out = list(results[:limit] if limit is not None else results)
            meta.output_count = len(out)
            return PipelineResult(results=out, metadata=meta)

        ranked = [r for r in results if r.score >= self._config.min_score]
        meta.filtered_count = len(results) - len(ranked)

        if self._config.temporal_decay.enabled and ranked:
            ranked = self._decay.apply(ranked, reference_time)
            meta.temporal_decay_applied = True

        if self._config.mmr.enabled and ranked:
            ranked = self._mmr.rerank(ranked, limit)
            meta.mmr_applied = True
        elif limit is not None:
            ranked = ranked[:limit]

        meta.output_count = len(ranked)
        logger.debug(
            f"Ranking pipeline: {meta.input_count} in, {meta.filtered_count} "
            f"filtered, {meta.output_count} out"
        )
        return PipelineResult(results=ranked, metadata=meta)

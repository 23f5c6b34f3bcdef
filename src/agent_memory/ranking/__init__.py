"""Re-ranking of semantic search results: temporal decay and MMR."""

from __future__ import annotations

from .mmr import MMRReranker, jaccard_similarity, overlap_similarity, tokenize
from .pipeline import PipelineMetadata, PipelineResult, RankingPipeline
from .temporal_decay import TemporalDecay, decay_multiplier

__all__ = [
    "MMRReranker",
    "PipelineMetadata",
    "PipelineResult",
    "RankingPipeline",
    "TemporalDecay",
    "decay_multiplier",
    "jaccard_similarity",
    "overlap_similarity",
    "tokenize",
]

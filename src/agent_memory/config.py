"""Memory engine configuration models."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, model_validator

from .models import PROFILE_KEYS

DAY_MS = 24 * 60 * 60 * 1000

ConflictStrategy = Literal["latest", "confidence", "explicit", "manual"]


class StorageConfig(BaseModel):
    """Database location. ``:memory:`` keeps everything in process."""

    db_path: str = "./memory/agent_memory.db"

    @model_validator(mode="after")
    def _validate_path(self) -> "StorageConfig":
        if self.db_path == ":memory:":
            return self
        normalized = os.path.normpath(self.db_path)
        parts = normalized.replace("\\", "/").split("/")
        if ".." in parts:
            raise ValueError(
                f"db_path must not contain '..' components: {self.db_path!r}"
            )
        self.db_path = normalized
        return self


class TokenBudget(BaseModel):
    """Per-layer token ceilings plus the advisory global total."""

    profile: int = Field(default=200, ge=0)
    task_state: int = Field(default=300, ge=0)
    summary: int = Field(default=400, ge=0)
    recent_events: int = Field(default=500, ge=0)
    semantic_chunks: int = Field(default=800, ge=0)
    total: int = Field(default=2200, ge=0)


class TokenEstimationConfig(BaseModel):
    chars_per_token: float = Field(default=4.0, gt=0)
    overhead_percent: float = Field(default=0.1, ge=0)


class EmbeddingCacheConfig(BaseModel):
    """Embedding cache limits.

    ``ttl_ms = 0`` disables expiry. Inserts trigger an automatic prune once
    the entry count exceeds ``max_entries * (1 + prune_headroom)``.
    """

    enabled: bool = True
    max_entries: int = Field(default=50_000, ge=1)
    ttl_ms: int = Field(default=7 * DAY_MS, ge=0)
    prune_headroom: float = Field(default=0.1, ge=0)


class SemanticStoreConfig(BaseModel):
    """Hybrid search weights (must sum to 1.0)."""

    fts_weight: float = Field(default=0.3, ge=0, le=1)
    vector_weight: float = Field(default=0.7, ge=0, le=1)
    default_limit: int = Field(default=10, ge=1)

    @model_validator(mode="after")
    def _validate_weights(self) -> "SemanticStoreConfig":
        if abs(self.fts_weight + self.vector_weight - 1.0) > 1e-6:
            raise ValueError("fts_weight and vector_weight must sum to 1.0")
        return self


class TemporalDecayConfig(BaseModel):
    """Age-based down-weighting of search scores.

    Step decay walks ``step_buckets`` in order and uses the multiplier of the
    first bucket whose ``max_age_days`` is not exceeded, falling back to
    ``step_default_multiplier`` for anything older.
    """

    enabled: bool = True
    strategy: Literal["exponential", "linear", "step"] = "exponential"
    half_life_days: float = Field(default=30.0, gt=0)
    linear_window_days: float = Field(default=90.0, gt=0)
    step_buckets: list[tuple[float, float]] = Field(
        default_factory=lambda: [(7.0, 1.0)]
    )
    step_default_multiplier: float = Field(default=0.5, ge=0, le=1)
    min_multiplier: float = Field(default=0.0, ge=0, le=1)

    @model_validator(mode="after")
    def _sort_buckets(self) -> "TemporalDecayConfig":
        self.step_buckets = sorted(self.step_buckets, key=lambda b: b[0])
        return self


class MMRConfig(BaseModel):
    """Maximal Marginal Relevance re-ranking.

    ``lambda_`` of 1.0 is pure relevance, 0.0 is pure diversity.
    """

    enabled: bool = True
    lambda_: float = Field(default=0.7, ge=0, le=1, alias="lambda")
    similarity: Literal["jaccard", "overlap"] = "jaccard"
    use_embeddings: bool = True
    duplicate_threshold: float = Field(default=0.8, ge=0, le=1)
    duplicate_penalty: float = Field(default=1.5, ge=1)

    model_config = {"populate_by_name": True}


class RankingConfig(BaseModel):
    enabled: bool = True
    min_score: float = 0.0
    temporal_decay: TemporalDecayConfig = Field(default_factory=TemporalDecayConfig)
    mmr: MMRConfig = Field(default_factory=MMRConfig)


class RetrievalConfig(BaseModel):
    max_recent_events: int = Field(default=10, ge=0)
    max_semantic_chunks: int = Field(default=5, ge=0)
    recent_events_window_minutes: float = Field(default=30.0, gt=0)
    enable_semantic_search: bool = True
    enable_fts: bool = True
    enable_rerank: bool = True
    stale_threshold_hours: float = Field(default=24.0, gt=0)


class ProfileConfig(BaseModel):
    """``allowed_keys = None`` accepts every key.

    ``conflict_strategy`` decides which value wins when a key is set again:
    ``latest`` always takes the new value, ``confidence`` takes it only with
    higher confidence, ``explicit`` lets explicit items beat inferred ones and
    otherwise takes the new value, ``manual`` keeps the old value and flags
    the conflict for review.
    """

    allowed_keys: list[str] | None = Field(default_factory=lambda: list(PROFILE_KEYS))
    conflict_strategy: ConflictStrategy = "explicit"


class WritePolicyConfig(BaseModel):
    use_default_rules: bool = True
    summarize_token_threshold: int = Field(default=4000, ge=1)
    summarize_event_threshold: int = Field(default=50, ge=1)


class MemoryConfig(BaseModel):
    """Top-level memory engine configuration."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    token_budget: TokenBudget = Field(default_factory=TokenBudget)
    token_estimation: TokenEstimationConfig = Field(
        default_factory=TokenEstimationConfig
    )
    embedding_cache: EmbeddingCacheConfig = Field(default_factory=EmbeddingCacheConfig)
    semantic: SemanticStoreConfig = Field(default_factory=SemanticStoreConfig)
    ranking: RankingConfig = Field(default_factory=RankingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    profile: ProfileConfig = Field(default_factory=ProfileConfig)
    write_policy: WritePolicyConfig = Field(default_factory=WritePolicyConfig)

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> "MemoryConfig":
        """Load configuration from a YAML file.

        ``${VAR}`` references are replaced with environment variables; unknown
        variables are left as-is.

        Raises:
            FileNotFoundError: If the configuration file is not found.
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        content = path.read_text(encoding="utf-8")
        pattern = re.compile(r"\$\{(\w+)\}")

        def replacer(match: re.Match) -> str:
            return os.getenv(match.group(1), match.group(0))

        data = yaml.safe_load(pattern.sub(replacer, content)) or {}
        return cls.model_validate(data)

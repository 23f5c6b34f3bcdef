"""Memory manager - facade wiring every memory component together.

Owns the shared database and builds the stores, embedding cache, budgeter,
ranking pipeline, retriever and write policy from one ``MemoryConfig``.
"""

from __future__ import annotations

from loguru import logger

from .budgeter import MemoryBudgeter
from .config import MemoryConfig
from .embedding import CachedEmbedder
from .injector import InjectionOptions, MemoryInjector
from .models import MemoryBundle, MemoryEvent, MemoryLayer, SemanticChunk
from .protocols import EmbeddingProvider
from .ranking.pipeline import RankingPipeline
from .retriever import MemoryRetriever, RetrievalOptions
from .rules.conditions import RuleContext
from .rules.write_policy import PolicyDecision, WritePolicyEngine
from .storage.database import Clock, Database
from .storage.embedding_cache import EmbeddingCache
from .storage.event_store import EventStore
from .storage.profile_store import ProfileStore
from .storage.semantic_store import SemanticStore
from .storage.summary_store import SummaryStore
from .storage.task_state_store import TaskStateStore


class MemoryManager:
    """Single entry point for the memory layers.

    Usage::

        async with MemoryManager(config, embedding_provider=provider) as memory:
            await memory.record_event(event)
            bundle = await memory.retrieve(RetrievalOptions(session_id="s1"))

    Args:
        config: Memory configuration (uses defaults if not provided)
        embedding_provider: Adapter used for semantic embeddings; semantic
            search falls back to keywords only when omitted
        clock: Current-time source shared by every component
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        clock: Clock | None = None,
    ):
        self.config = config or MemoryConfig()
        self.db = Database(self.config.storage.db_path, clock=clock)

        self.embedding_cache = EmbeddingCache(self.db, self.config.embedding_cache)
        self.embedder = (
            CachedEmbedder(embedding_provider, self.embedding_cache)
            if embedding_provider is not None
            else None
        )

        self.events = EventStore(self.db)
        self.task_states = TaskStateStore(self.db)
        self.summaries = SummaryStore(self.db)
        self.profiles = ProfileStore(
            self.db,
            self.config.profile.allowed_keys,
            self.config.profile.conflict_strategy,
        )
        self.semantic = SemanticStore(self.db, self.embedder, self.config.semantic)

        self.budgeter = MemoryBudgeter(
            self.config.token_budget, self.config.token_estimation
        )
        self.ranking = RankingPipeline(self.config.ranking)
        self.retriever = MemoryRetriever(
            events=self.events,
            task_states=self.task_states,
            summaries=self.summaries,
            profiles=self.profiles,
            semantic=self.semantic,
            budgeter=self.budgeter,
            ranking=self.ranking,
            config=self.config.retrieval,
            clock=self.db.now,
        )
        self.policy = WritePolicyEngine(
            self.config.write_policy,
            allowed_profile_keys=self.config.profile.allowed_keys,
            conflict_strategy=self.config.profile.conflict_strategy,
        )
        self.injector = MemoryInjector()

        logger.debug(f"MemoryManager full config: {self.config.model_dump()}")

    async def initialize(self) -> None:
        """Open the database and create every table."""
        await self.db.initialize()
        for store in (
            self.events,
            self.task_states,
            self.summaries,
            self.profiles,
            self.semantic,
            self.embedding_cache,
        ):
            await store.initialize()
        logger.info(f"MemoryManager ready (db_path={self.db.db_path!r})")

    async def close(self) -> None:
        await self.db.close()

    async def __aenter__(self) -> "MemoryManager":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def retrieve(self, options: RetrievalOptions | None = None) -> MemoryBundle:
        return await self.retriever.retrieve(options)

    async def build_context(
        self,
        options: RetrievalOptions | None = None,
        injection: InjectionOptions | None = None,
    ) -> str:
        """Retrieve a bundle and render it as prompt text."""
        bundle = await self.retriever.retrieve(options)
        return self.injector.inject(bundle, injection)

    def decide(self, context: RuleContext) -> PolicyDecision:
        return self.policy.decide(context)

    async def record_event(
        self,
        event: MemoryEvent,
        token_count: int = 0,
        flags: dict[str, bool] | None = None,
    ) -> PolicyDecision:
        """Persist an event and apply the writes it triggers.

        The event is always logged. When the policy selects the semantic
        layer, the event summary is stored as a chunk. When it selects the
        profile layer or requests extraction, preferences stated in the
        summary are saved to the profile. Summarization is left to the caller
        through the returned decision.
        """
        await self.events.add(event)
        decision = self.policy.decide(
            RuleContext(
                event=event,
                session_id=event.session_id,
                token_count=token_count,
                now=self.db.now(),
                flags=flags or {},
            )
        )

        if (
            decision.should_write
            and MemoryLayer.SEMANTIC in decision.write_layers
            and event.summary.strip()
        ):
            await self.semantic.add(
                SemanticChunk(
                    text=event.summary,
                    tags=event.tags,
                    source_event_id=event.id,
                    source_type=event.type.value,
                    session_id=event.session_id,
                    timestamp=event.timestamp,
                )
            )

        if decision.skip_reason is None and (
            decision.extract_profile or MemoryLayer.PROFILE in decision.write_layers
        ):
            for item in self.policy.extract_preferences(event.summary, event.id):
                await self.profiles.set(item)
        return decision

    async def clear(self) -> None:
        """Remove all data from every layer."""
        await self.events.clear()
        await self.task_states.clear()
        await self.summaries.clear()
        await self.profiles.clear()
        await self.semantic.clear()
        await self.embedding_cache.clear()
        logger.info("All memory layers cleared")

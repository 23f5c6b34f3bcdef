"""Multi-layer retrieval into a token-bounded memory bundle.

All five layers are read concurrently. Each layer is trimmed to its own
budget, semantic results are re-ranked, and warnings are attached for stale
task state, layers dropped by trimming, and a total over the global budget.
Retrieval is all-or-nothing: any layer failure raises ``RetrievalError``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from loguru import logger
from pydantic import BaseModel

from .budgeter import MemoryBudgeter
from .config import RetrievalConfig, TokenBudget
from .errors import RetrievalError
from .models import (
    MemoryBundle,
    MemoryEvent,
    MemoryLayer,
    MemoryWarning,
    ProfileItem,
    SemanticSearchResult,
    Summary,
    TaskState,
)
from .ranking.pipeline import RankingPipeline
from .storage.event_store import EventStore
from .storage.profile_store import ProfileStore
from .storage.semantic_store import SemanticStore
from .storage.summary_store import SummaryStore
from .storage.task_state_store import TaskStateStore


async def _join_all(*coros: Awaitable[Any]) -> list[Any]:
    """Await every coroutine concurrently; on the first failure cancel the rest.

    Sibling tasks are cancelled and awaited before the first error is
    re-raised, so no task outlives the call.
    """
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    failed = next(
        (t for t in tasks if t in done and not t.cancelled() and t.exception()), None
    )
    if failed is not None:
        for task in pending:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise failed.exception()
    return [task.result() for task in tasks]


class RetrievalOptions(BaseModel):
    """Per-call retrieval parameters.

    ``layers = None`` reads every layer. Limits and budget fall back to the
    retriever configuration when unset.
    """

    session_id: str | None = None
    task_id: str | None = None
    query: str | None = None
    layers: list[MemoryLayer] | None = None
    token_budget: TokenBudget | None = None
    max_recent_events: int | None = None
    max_semantic_chunks: int | None = None


class MemoryRetriever:
    """Builds :class:`MemoryBundle` instances from the stores.

    Args:
        events: Event store
        task_states: Task-state store
        summaries: Summary store
        profiles: Profile store
        semantic: Semantic store
        budgeter: Token budgeter
        ranking: Re-ranking pipeline for semantic results
        config: Limits, feature switches and staleness threshold
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        events: EventStore,
        task_states: TaskStateStore,
        summaries: SummaryStore,
        profiles: ProfileStore,
        semantic: SemanticStore,
        budgeter: MemoryBudgeter | None = None,
        ranking: RankingPipeline | None = None,
        config: RetrievalConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._events = events
        self._task_states = task_states
        self._summaries = summaries
        self._profiles = profiles
        self._semantic = semantic
        self._budgeter = budgeter or MemoryBudgeter()
        self._ranking = ranking or RankingPipeline()
        self._config = config or RetrievalConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def retrieve(self, options: RetrievalOptions | None = None) -> MemoryBundle:
        """Assemble a bundle from every requested layer.

        Raises:
            RetrievalError: If any layer fails; no partial bundle is returned
        """
        options = options or RetrievalOptions()
        layers = set(options.layers) if options.layers is not None else set(MemoryLayer)
        budgeter = (
            self._budgeter.with_budget(options.token_budget)
            if options.token_budget is not None
            else self._budgeter
        )
        budget = budgeter.budget
        now = self._clock()

        try:
            profile, task_state, events, summary, chunks = await _join_all(
                self._retrieve_profile(layers),
                self._retrieve_task_state(options, layers),
                self._retrieve_events(options, layers, now),
                self._retrieve_summary(options, layers),
                self._retrieve_semantic(options, layers, now),
            )
        except Exception as e:
            logger.error(f"Memory retrieval failed: {e}")
            raise RetrievalError("Memory retrieval failed", cause=e) from e

        profile_fit = budgeter.trim_to_fit(
            profile, budget.profile, budgeter.profile_item_tokens
        )
        task_fit = budgeter.trim_to_fit(
            [task_state] if task_state else [],
            budget.task_state,
            budgeter.estimate_object_tokens,
        )
        summary_fit = budgeter.trim_to_fit(
            [summary] if summary else [], budget.summary, budgeter.summary_tokens
        )
        events_fit = budgeter.trim_to_fit(
            events, budget.recent_events, budgeter.event_tokens
        )
        chunks_fit = budgeter.trim_to_fit(
            chunks, budget.semantic_chunks, budgeter.chunk_tokens
        )

        bundle = MemoryBundle(
            profile=profile_fit.items,
            task_state=task_fit.items[0] if task_fit.items else None,
            recent_events=events_fit.items,
            retrieved_chunks=chunks_fit.items,
            summary=summary_fit.items[0] if summary_fit.items else None,
            total_tokens=sum(
                fit.used_tokens
                for fit in (profile_fit, task_fit, summary_fit, events_fit, chunks_fit)
            ),
            timestamp=now,
        )

        if task_fit.dropped:
            bundle.warnings.append(
                MemoryWarning(
                    type="incomplete",
                    message="Task state exceeds its token budget and was omitted",
                    details={"layer": "task_state", "task_id": task_state.id},
                )
            )
        if summary_fit.dropped:
            bundle.warnings.append(
                MemoryWarning(
                    type="incomplete",
                    message="Summary exceeds its token budget and was omitted",
                    details={"layer": "summary", "summary_id": summary.id},
                )
            )
        if bundle.task_state is not None:
            age = now - bundle.task_state.updated_at
            threshold = timedelta(hours=self._config.stale_threshold_hours)
            if age > threshold:
                age_hours = age.total_seconds() / 3600
                bundle.warnings.append(
                    MemoryWarning(
                        type="stale",
                        message=f"Task state was last updated {age_hours:.1f} hours ago",
                        details={
                            "task_id": bundle.task_state.id,
                            "updated_at": bundle.task_state.updated_at.isoformat(),
                            "age_hours": age_hours,
                        },
                    )
                )
        if bundle.total_tokens > budget.total:
            bundle.warnings.append(
                MemoryWarning(
                    type="overflow",
                    message=(
                        f"Bundle uses {bundle.total_tokens} tokens, "
                        f"over the total budget of {budget.total}"
                    ),
                    details={"total_tokens": bundle.total_tokens, "budget": budget.total},
                )
            )

        logger.debug(
            f"Retrieved bundle: profile={len(bundle.profile)}, "
            f"task={'yes' if bundle.task_state else 'no'}, "
            f"events={len(bundle.recent_events)}, chunks={len(bundle.retrieved_chunks)}, "
            f"summary={'yes' if bundle.summary else 'no'}, tokens={bundle.total_tokens}"
        )
        return bundle

    async def _retrieve_profile(self, layers: set[MemoryLayer]) -> list[ProfileItem]:
        if MemoryLayer.PROFILE not in layers:
            return []
        return await self._profiles.get_all()

    async def _retrieve_task_state(
        self, options: RetrievalOptions, layers: set[MemoryLayer]
    ) -> TaskState | None:
        if MemoryLayer.TASK_STATE not in layers:
            return None
        if options.task_id is not None:
            return await self._task_states.get(options.task_id)
        return await self._task_states.get_current(options.session_id)

    async def _retrieve_events(
        self, options: RetrievalOptions, layers: set[MemoryLayer], now: datetime
    ) -> list[MemoryEvent]:
        if MemoryLayer.EVENT not in layers or options.session_id is None:
            return []
        limit = (
            options.max_recent_events
            if options.max_recent_events is not None
            else self._config.max_recent_events
        )
        if limit <= 0:
            return []
        since = now - timedelta(minutes=self._config.recent_events_window_minutes)
        return await self._events.query(
            session_id=options.session_id, since=since, limit=limit
        )

    async def _retrieve_summary(
        self, options: RetrievalOptions, layers: set[MemoryLayer]
    ) -> Summary | None:
        if MemoryLayer.SUMMARY not in layers or options.session_id is None:
            return None
        return await self._summaries.get_latest(options.session_id)

    async def _retrieve_semantic(
        self, options: RetrievalOptions, layers: set[MemoryLayer], now: datetime
    ) -> list[SemanticSearchResult]:
        if (
            MemoryLayer.SEMANTIC not in layers
            or not options.query
            or not self._config.enable_semantic_search
        ):
            return []
        limit = (
            options.max_semantic_chunks
            if options.max_semantic_chunks is not None
            else self._config.max_semantic_chunks
        )
        if limit <= 0:
            return []

        candidates = await self._semantic.search(
            options.query,
            limit=limit * 2,
            session_id=options.session_id,
            use_fts=self._config.enable_fts,
        )
        if not self._config.enable_rerank:
            return candidates[:limit]
        return self._ranking.process(candidates, limit=limit, reference_time=now).results

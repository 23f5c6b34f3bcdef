"""
agent-memory - persistent memory engine for conversational agents

Five memory layers (events, task state, summaries, profile, semantic chunks)
over one SQLite database, with an embedding cache, token budgeting,
temporal-decay and MMR re-ranking, and a rule-based write policy.
"""

from .models import (
    EventType,
    MemoryBundle,
    MemoryEvent,
    MemoryLayer,
    MemoryWarning,
    ProfileItem,
    SemanticChunk,
    SemanticSearchResult,
    Summary,
    TaskState,
    TaskStateInput,
    TaskStateUpdate,
    TaskStatus,
)
from .config import MemoryConfig, TokenBudget
from .errors import MemoryEngineError, RetrievalError, TaskStateConflictError, TaskStateError
from .budgeter import MemoryBudgeter
from .embedding import CachedEmbedder
from .injector import InjectionOptions, MemoryInjector
from .protocols import EmbeddingProvider, Summarizer
from .retriever import MemoryRetriever, RetrievalOptions
from .memory_manager import MemoryManager

__all__ = [
    "EventType",
    "MemoryBundle",
    "MemoryEvent",
    "MemoryLayer",
    "MemoryWarning",
    "ProfileItem",
    "SemanticChunk",
    "SemanticSearchResult",
    "Summary",
    "TaskState",
    "TaskStateInput",
    "TaskStateUpdate",
    "TaskStatus",
    "MemoryConfig",
    "TokenBudget",
    "MemoryEngineError",
    "RetrievalError",
    "TaskStateConflictError",
    "TaskStateError",
    "MemoryBudgeter",
    "CachedEmbedder",
    "InjectionOptions",
    "MemoryInjector",
    "EmbeddingProvider",
    "Summarizer",
    "MemoryRetriever",
    "RetrievalOptions",
    "MemoryManager",
]

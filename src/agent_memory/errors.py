"""Exception hierarchy for the memory engine.

Every error carries a machine-readable ``code`` and, when it wraps a lower
level failure, the original exception as ``cause``.
"""

from __future__ import annotations


class MemoryEngineError(Exception):
    """Base class for all memory engine errors."""

    code = "MEMORY_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        cause: BaseException | None = None,
    ):
        self.message = message
        self.code = code or type(self).code
        self.cause = cause
        super().__init__(message)

    def __str__(self) -> str:
        if self.cause is not None:
            return f"[{self.code}] {self.message}: {self.cause}"
        return f"[{self.code}] {self.message}"


class StoreInitializationError(MemoryEngineError):
    """Storage backend could not be opened or migrated."""

    code = "STORE_INIT_ERROR"

    def __init__(self, store: str, cause: BaseException | None = None):
        self.store = store
        super().__init__(f"Failed to initialize {store}", cause=cause)


class EventRecordError(MemoryEngineError):
    code = "EVENT_RECORD_ERROR"


class TaskStateError(MemoryEngineError):
    code = "TASK_STATE_ERROR"


class TaskStateConflictError(TaskStateError):
    """Version mismatch on an update, or rollback to an unknown version."""

    code = "TASK_STATE_CONFLICT"

    def __init__(
        self,
        task_id: str,
        expected_version: int,
        actual_version: int,
        message: str | None = None,
    ):
        self.task_id = task_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            message
            or (
                f"Version conflict for task {task_id}: "
                f"expected {expected_version}, found {actual_version}"
            )
        )


class ProfileError(MemoryEngineError):
    code = "PROFILE_ERROR"


class ProfileKeyNotAllowedError(ProfileError):
    """Profile key is outside the configured whitelist."""

    code = "PROFILE_KEY_NOT_ALLOWED"

    def __init__(self, key: str, allowed_keys: list[str]):
        self.key = key
        self.allowed_keys = list(allowed_keys)
        super().__init__(
            f"Profile key '{key}' is not allowed. "
            f"Allowed keys: {', '.join(self.allowed_keys)}"
        )


class SummarizationError(MemoryEngineError):
    code = "SUMMARIZATION_ERROR"


class SemanticSearchError(MemoryEngineError):
    code = "SEMANTIC_SEARCH_ERROR"


class RetrievalError(MemoryEngineError):
    code = "RETRIEVAL_ERROR"


class TokenBudgetExceededError(MemoryEngineError):
    """Raised only by explicit budget validation, never by trimming."""

    code = "TOKEN_BUDGET_EXCEEDED"

    def __init__(self, layer: str, budget: int, actual: int):
        self.layer = layer
        self.budget = budget
        self.actual = actual
        super().__init__(
            f"Token budget exceeded for {layer}: {actual} > {budget}"
        )


class WritePolicyError(MemoryEngineError):
    code = "WRITE_POLICY_ERROR"


class DatabaseError(MemoryEngineError):
    code = "DATABASE_ERROR"

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        cause: BaseException | None = None,
    ):
        self.operation = operation
        super().__init__(message, cause=cause)

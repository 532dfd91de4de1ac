"""Pipeline error taxonomy.

ValidationError and ConflictError are never retried. TransientError is retried
with backoff by the job orchestrator. PermanentFailure puts the unit of work in
a terminal FAILED state until an operator re-runs it.
"""

from typing import Any

from knowledge_pipeline.llm.exceptions import (
    LLMConnectionError,
    LLMError,
    LLMRateLimitError,
)


class PipelineError(Exception):
    """Base exception for pipeline operations."""

    error_type = "pipeline_error"


class ValidationError(PipelineError):
    """Bad input. Never retried."""

    error_type = "validation_error"


class NotFoundError(ValidationError):
    """A referenced record does not exist."""

    error_type = "not_found"


class TransientError(PipelineError):
    """Network, timeout or quota problem. Retried with backoff up to a cap."""

    error_type = "transient_error"

    def __init__(self, message: str, retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(message)


class QuotaExceededError(TransientError):
    """The generation collaborator's quota is exhausted.

    Bulk operations stop at this error instead of continuing with the next item.
    `partial` carries what the halted operation committed before the error.
    """

    error_type = "quota_exceeded"

    def __init__(self, message: str, retry_after: float | None = None, partial: Any = None):
        super().__init__(message, retry_after=retry_after)
        self.partial = partial


class ConflictError(PipelineError):
    """An optimistic precondition failed; the caller must re-fetch and retry."""

    error_type = "conflict"


class PermanentFailure(PipelineError):
    """Unexpected failure during processing. Requires operator intervention."""

    error_type = "permanent_failure"


class JobCancelledError(PipelineError):
    """The job was cancelled while it was running."""

    error_type = "cancelled"


def classify_error(error: Exception) -> PipelineError:
    """Map an arbitrary exception onto the pipeline taxonomy.

    Pipeline errors are returned unchanged. LLM provider errors are mapped by
    kind; anything else becomes a PermanentFailure.
    """
    if isinstance(error, PipelineError):
        return error
    if isinstance(error, LLMRateLimitError):
        return QuotaExceededError(str(error), retry_after=error.retry_after)
    if isinstance(error, LLMConnectionError):
        return TransientError(str(error))
    if isinstance(error, LLMError):
        return PermanentFailure(str(error))
    if isinstance(error, TimeoutError):
        return TransientError(f"Timed out: {error}")
    return PermanentFailure(f"{type(error).__name__}: {error}")


def is_retryable(error: Exception) -> bool:
    """Check if an error should be retried."""
    return isinstance(classify_error(error), TransientError)

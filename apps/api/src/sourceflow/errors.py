from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for every failure the pipeline classifies.

    `retryable` tells the job queue whether a failed job may go back to
    pending; `http_status` is what the HTTP surface answers with.
    """

    retryable: bool = False
    http_status: int = 500


class ValidationError(PipelineError):
    http_status = 400


class TransientError(PipelineError):
    """`retry_after` is the server-requested wait in seconds, if it sent one."""

    retryable = True
    http_status = 503

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class PermanentFailure(PipelineError):
    http_status = 500


class ConflictError(PipelineError):
    http_status = 409


class IntegrityError(PipelineError):
    """A child references a parent that is missing or already removed."""

    http_status = 409


class InvalidTransition(PipelineError):
    http_status = 409

    def __init__(self, source_id: str, current: str, target: str) -> None:
        super().__init__(f"invalid transition for source {source_id}: {current} -> {target}")
        self.source_id = source_id
        self.current = current
        self.target = target


class NotFoundError(PipelineError):
    http_status = 404


class RateLimitedError(PipelineError):
    http_status = 429


class AuthenticationError(PipelineError):
    http_status = 401


class SourceCancelled(PipelineError):
    """Raised inside a handler when the target source is flagged for deletion."""

"""Error taxonomy for queue operations."""

from __future__ import annotations


class JobQueueError(RuntimeError):
    """Base error for queue operations."""


class ValidationError(JobQueueError):
    """Input rejected before anything is persisted."""


class ConflictError(JobQueueError):
    """Job status no longer matches the precondition of a mutation."""

    def __init__(self, message: str, *, job_id: int | None = None) -> None:
        super().__init__(message)
        self.job_id = job_id


class NotFoundError(JobQueueError):
    """Job id does not exist."""

    def __init__(self, job_id: int) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class TransientHostError(JobQueueError):
    """Host-level failure: process spawn or liveness check."""


class StoreUnavailableError(JobQueueError):
    """Persistence layer could not be reached."""

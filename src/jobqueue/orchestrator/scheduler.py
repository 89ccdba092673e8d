"""Dispatch ordering and concurrency admission."""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

from jobqueue.orchestrator.models import JobStatus, JobView

if TYPE_CHECKING:
    from jobqueue.orchestrator.repository import JobRepository


def dispatch_key(job: JobView) -> tuple[int, float, int]:
    """Sort key: highest priority first, then oldest insert, then lowest id."""

    return (-job.priority, job.insert_time.timestamp(), job.job_id)


def select_next(candidates: Iterable[JobView]) -> JobView | None:
    waiting = [job for job in candidates if job.status == JobStatus.WAITING]
    if not waiting:
        return None
    return min(waiting, key=dispatch_key)


class Scheduler:
    """Decides whether there is room for one more job and which job it is."""

    def __init__(self, concurrency_limit: int) -> None:
        if concurrency_limit < 1:
            raise ValueError(f"Concurrency limit must be positive, got {concurrency_limit}.")
        self.concurrency_limit = concurrency_limit

    def has_free_slot(self, active: int) -> bool:
        return active < self.concurrency_limit

    def pick(self, repository: JobRepository, *, active: int | None = None) -> JobView | None:
        """Return the head of the queue when a slot is free.

        ``active`` defaults to the persisted RUNNING + STARTING count. The head is
        read fresh from the store so the choice reflects jobs queued a moment ago.
        """

        if active is None:
            active = repository.count_by_status((JobStatus.RUNNING, JobStatus.STARTING))
        if not self.has_free_slot(active):
            return None
        return repository.next_waiting()

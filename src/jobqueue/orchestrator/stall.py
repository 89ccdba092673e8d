"""Stall detection and the sweeps that reconcile store state with the host."""

from __future__ import annotations

import logging
from collections.abc import Collection
from dataclasses import dataclass

from jobqueue.orchestrator.errors import (
    ConflictError,
    NotFoundError,
    TransientHostError,
)
from jobqueue.orchestrator.inspector import ProcessInspector
from jobqueue.orchestrator.models import JobStatus, JobView
from jobqueue.orchestrator.repository import JobRepository

logger = logging.getLogger(__name__)

_PER_JOB_ERRORS = (ConflictError, NotFoundError, TransientHostError)


@dataclass(slots=True)
class ReconcileSummary:
    stalled: int = 0
    requeued: int = 0
    start_failed: int = 0

    def __add__(self, other: ReconcileSummary) -> ReconcileSummary:
        return ReconcileSummary(
            stalled=self.stalled + other.stalled,
            requeued=self.requeued + other.requeued,
            start_failed=self.start_failed + other.start_failed,
        )


class StallDetector:
    """A RUNNING job is stalled when its recorded process is gone."""

    def __init__(self, inspector: ProcessInspector) -> None:
        self.inspector = inspector

    def is_stalled(self, job: JobView) -> bool:
        if job.status != JobStatus.RUNNING:
            return False
        if job.pid is None:
            return True
        return not self.inspector.is_alive(job.pid)


class StalledJobReconciler:
    """Repairs jobs whose process died without recording a final status."""

    def __init__(
        self,
        repository: JobRepository,
        detector: StallDetector,
        *,
        max_start_attempts: int = 0,
    ) -> None:
        self.repository = repository
        self.detector = detector
        self.max_start_attempts = max_start_attempts

    def clean_stalled_jobs(self) -> int:
        """Move every RUNNING job with a dead process to STALLED."""

        stalled = 0
        for job in self.repository.list_running():
            try:
                if not self.detector.is_stalled(job):
                    continue
                self.repository.mark_stalled(job.job_id)
            except _PER_JOB_ERRORS as error:
                logger.warning(
                    "Skipping stall check for job %s (%s): %s",
                    job.job_id,
                    job.command,
                    error,
                )
                continue
            stalled += 1
            logger.warning(
                "Job %s (%s) stalled: process %s is gone",
                job.job_id,
                job.command,
                job.pid,
            )
        return stalled

    def clean_stalled_starting_jobs(self, exclude: Collection[int] = ()) -> ReconcileSummary:
        """Send abandoned STARTING and START_FAILED jobs back to the queue.

        Jobs in ``exclude`` belong to live children of the calling runner and are
        left alone. With a start attempt limit, jobs that used it up become
        START_FAILED and stay there.
        """

        summary = ReconcileSummary()
        candidates = self.repository.list_by_status(JobStatus.STARTING)
        candidates += self.repository.list_by_status(JobStatus.START_FAILED)
        for job in candidates:
            if job.job_id in exclude:
                continue
            try:
                if self._attempts_exhausted(job):
                    if job.status == JobStatus.STARTING:
                        self.repository.mark_start_failed(job.job_id)
                        summary.start_failed += 1
                        logger.error(
                            "Job %s (%s) gave up after %s start attempts",
                            job.job_id,
                            job.command,
                            job.start_attempts,
                        )
                    continue
                self.repository.mark_waiting(
                    job.job_id,
                    expected=(job.status,),
                    event_type="start_requeued",
                )
            except _PER_JOB_ERRORS as error:
                logger.warning(
                    "Skipping requeue of job %s (%s): %s",
                    job.job_id,
                    job.command,
                    error,
                )
                continue
            summary.requeued += 1
            logger.warning(
                "Job %s (%s) requeued from %s",
                job.job_id,
                job.command,
                job.status.value,
            )
        return summary

    def reconcile(self, exclude: Collection[int] = ()) -> ReconcileSummary:
        summary = ReconcileSummary(stalled=self.clean_stalled_jobs())
        return summary + self.clean_stalled_starting_jobs(exclude)

    def _attempts_exhausted(self, job: JobView) -> bool:
        return 0 < self.max_start_attempts <= job.start_attempts

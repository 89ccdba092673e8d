"""Long-running dispatcher loop that supervises per-job workers."""

from __future__ import annotations

import logging
import os
import random
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from jobqueue.orchestrator.errors import (
    ConflictError,
    JobQueueError,
    NotFoundError,
    StoreUnavailableError,
)
from jobqueue.orchestrator.executor import ChildHandle, JobExecutor
from jobqueue.orchestrator.guard import SingleInstanceGuard
from jobqueue.orchestrator.models import (
    ACTIVE_STATUSES,
    ROUTINE_RETENTION_STATUSES,
    JobStatus,
)
from jobqueue.orchestrator.repository import JobRepository
from jobqueue.orchestrator.scheduler import Scheduler
from jobqueue.orchestrator.stall import ReconcileSummary, StalledJobReconciler

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunnerSummary:
    """Counters accumulated over one runner lifetime."""

    iterations: int = 0
    dispatched: int = 0
    reaped: int = 0
    stalled: int = 0
    requeued: int = 0
    start_failed: int = 0
    garbage_collected: int = 0
    already_running_pid: int | None = None


class QueueRunner:
    """Poll the store, dispatch jobs to detached workers, repair stalled jobs.

    Children are tracked only for jobs this instance dispatched. The store is
    the source of truth, so a restarted runner recovers everything else through
    the reconciliation sweeps.
    """

    def __init__(  # noqa: PLR0913
        self,
        repository: JobRepository,
        executor: JobExecutor,
        scheduler: Scheduler,
        reconciler: StalledJobReconciler,
        guard: SingleInstanceGuard,
        *,
        busy_sleep_seconds: float = 1.0,
        idle_sleep_seconds: float = 10.0,
        gc_probability: float = 0.001,
        auto_cleanup: bool = True,
        routine_retention: timedelta = timedelta(days=7),
        max_iterations: int | None = None,
        random_source: Callable[[], float] = random.random,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.scheduler = scheduler
        self.reconciler = reconciler
        self.guard = guard
        self.busy_sleep_seconds = busy_sleep_seconds
        self.idle_sleep_seconds = idle_sleep_seconds
        self.gc_probability = gc_probability
        self.auto_cleanup = auto_cleanup
        self.routine_retention = routine_retention
        self.max_iterations = max_iterations
        self._random = random_source

        self.children: dict[int, ChildHandle] = {}
        self.summary = RunnerSummary()
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self, *, signal_name: str = "manual") -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name
        logger.info("Runner stop requested (%s)", signal_name)

    def run(self) -> RunnerSummary:
        other_pid = self.guard.is_already_running()
        if other_pid is not None:
            logger.debug("Queue runner still running (pid %s)", other_pid)
            self.summary.already_running_pid = other_pid
            return self.summary

        logger.info("Queue runner started (pid %s)", os.getpid())
        try:
            self._absorb(self.reconciler.reconcile())
        except StoreUnavailableError as error:
            logger.warning("Startup reconciliation skipped: %s", error)
        except JobQueueError as error:
            logger.error("Startup reconciliation failed: %s", error)

        with self._signal_handlers():
            while not self._stop_requested:
                if (
                    self.max_iterations is not None
                    and self.summary.iterations >= self.max_iterations
                ):
                    break
                if self.check_queue():
                    break

        if self.children:
            logger.info(
                "Queue runner leaves %d worker(s) running: %s",
                len(self.children),
                sorted(self.children),
            )
        logger.info("Queue runner terminated (pid %s)", os.getpid())
        return self.summary

    def check_queue(self) -> bool:
        """Run one loop iteration. Returns True when a stop arrived while sleeping."""

        self.summary.iterations += 1
        try:
            sleep_seconds = self._iterate()
        except StoreUnavailableError as error:
            logger.warning("Job store unavailable, backing off: %s", error)
            sleep_seconds = self.busy_sleep_seconds
        except JobQueueError as error:
            logger.error("Runner iteration failed: %s", error)
            sleep_seconds = self.busy_sleep_seconds
        except Exception:
            logger.exception("Unexpected runner error")
            sleep_seconds = self.busy_sleep_seconds
        self._sleep_with_stop(sleep_seconds)
        return self._stop_requested

    def _iterate(self) -> float:
        self._maybe_garbage_collect()
        self._reap_children()

        active = self.repository.count_by_status(ACTIVE_STATUSES)
        if active > len(self.children):
            logger.info(
                "Number of active jobs differs from number of children: %d vs. %d",
                active,
                len(self.children),
            )
            if self._reconcile_mismatch(active):
                return self.busy_sleep_seconds
            # Nothing repaired: the surplus are live jobs started outside this
            # runner. They only take capacity, so dispatch goes on without a back-off.
            active = self.repository.count_by_status(ACTIVE_STATUSES)

        if not self.scheduler.has_free_slot(active):
            logger.debug(
                "Queue is at the limit: %d/%d",
                active,
                self.scheduler.concurrency_limit,
            )
            return self.busy_sleep_seconds

        job = self.scheduler.pick(self.repository, active=active)
        if job is None:
            logger.debug("Queue is empty: 0/%d", self.scheduler.concurrency_limit)
            return self.idle_sleep_seconds

        try:
            handle = self.executor.dispatch(job)
        except ConflictError as error:
            logger.info("Job %s (%s) was claimed elsewhere: %s", job.job_id, job.command, error)
            return self.busy_sleep_seconds
        if handle is not None:
            self.children[handle.job_id] = handle
            self.summary.dispatched += 1
        return self.busy_sleep_seconds

    def _reconcile_mismatch(self, active: int) -> bool:
        """Repair persisted state that no tracked child explains.

        Returns True when any job was repaired.
        """

        stalled = self.reconciler.clean_stalled_jobs()
        self.summary.stalled += stalled
        starting = ReconcileSummary()
        if active - stalled > len(self.children):
            starting = self.reconciler.clean_stalled_starting_jobs(exclude=set(self.children))
            self._absorb(starting)
        return bool(stalled or starting.requeued or starting.start_failed)

    def _reap_children(self) -> None:
        for job_id, handle in list(self.children.items()):
            exit_code = handle.poll()
            if exit_code is None:
                continue
            del self.children[job_id]
            self.summary.reaped += 1
            logger.debug("Worker %s for job %s exited with %s", handle.pid, job_id, exit_code)
            try:
                job = self.repository.get_job(job_id)
                if job.status != JobStatus.STARTING:
                    continue
                self.repository.mark_start_failed(job_id)
            except (ConflictError, NotFoundError) as error:
                logger.warning("Cannot settle reaped job %s: %s", job_id, error)
                continue
            self.summary.start_failed += 1
            logger.error(
                "Job %s (%s) never started: worker %s exited with %s",
                job_id,
                job.command,
                handle.pid,
                exit_code,
            )

    def _maybe_garbage_collect(self) -> None:
        if not self.auto_cleanup or self.gc_probability <= 0:
            return
        if self._random() >= self.gc_probability:
            return
        removed = self.repository.cleanup_queue(
            older_than=self.routine_retention,
            statuses=ROUTINE_RETENTION_STATUSES,
        )
        self.summary.garbage_collected += removed
        if removed:
            logger.info("Retention sweep removed %d job(s)", removed)

    def _absorb(self, reconciled: ReconcileSummary) -> None:
        self.summary.stalled += reconciled.stalled
        self.summary.requeued += reconciled.requeued
        self.summary.start_failed += reconciled.start_failed

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

"""Job execution: per-job foreground worker and detached dispatch."""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

from jobqueue.orchestrator.errors import ConflictError, JobQueueError
from jobqueue.orchestrator.models import JobStatus, JobView
from jobqueue.orchestrator.repository import JobRepository
from jobqueue.orchestrator.scheduler import Scheduler

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_NOTHING_TO_DO = -1
EXIT_START_FAILED = 127


@dataclass(slots=True)
class ChildHandle:
    """A worker process spawned by the runner."""

    job_id: int
    process: subprocess.Popen[bytes]

    @property
    def pid(self) -> int:
        return self.process.pid

    def poll(self) -> int | None:
        return self.process.poll()


class JobExecutor:
    """Runs job commands and records their outcome in the store."""

    def __init__(
        self,
        repository: JobRepository,
        *,
        db_path: Path,
        command_prefix: str = "",
        python_executable: str | None = None,
    ) -> None:
        self.repository = repository
        self.db_path = db_path
        self.command_prefix = command_prefix
        self.python_executable = python_executable or sys.executable

    def build_command(self, command: str) -> str:
        if not self.command_prefix:
            return command
        return f"{self.command_prefix} {command}"

    def worker_argv(self, job_id: int) -> list[str]:
        return [
            self.python_executable,
            "-m",
            "jobqueue.main",
            "run",
            str(job_id),
            "--db-path",
            str(self.db_path),
        ]

    def run_foreground(self, job_id: int) -> int:
        """Run one job in this process and return its exit code.

        The job is confirmed RUNNING under the pid of the spawned command, so
        stall detection follows the command itself rather than this worker.
        A command that cannot be spawned or confirmed yields EXIT_START_FAILED;
        EXIT_NOTHING_TO_DO means the job was not this worker's to run.
        """

        job = self.repository.get_job(job_id)
        if job.status not in (JobStatus.WAITING, JobStatus.STARTING):
            logger.warning(
                "Running job %s (%s) that already ran, status %s",
                job.job_id,
                job.command,
                job.status.value,
            )
        if job.status == JobStatus.WAITING:
            try:
                job = self.repository.mark_starting(job_id)
            except ConflictError as error:
                logger.error("Cannot claim job %s (%s): %s", job.job_id, job.command, error)
                return EXIT_NOTHING_TO_DO
        if job.status != JobStatus.STARTING:
            logger.error(
                "Job %s (%s) cannot be confirmed as running from %s, not starting it",
                job.job_id,
                job.command,
                job.status.value,
            )
            return EXIT_NOTHING_TO_DO

        command = self.build_command(job.command)
        try:
            process = subprocess.Popen(  # noqa: S602
                command,
                shell=True,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as error:
            logger.error("Job %s (%s) failed to start: %s", job.job_id, job.command, error)
            self._record_spawn_failure(job, error)
            return EXIT_START_FAILED

        try:
            self.repository.mark_running(job_id, process.pid)
        except JobQueueError as error:
            logger.error(
                "Job %s (%s) was not confirmed as running, aborting: %s",
                job.job_id,
                job.command,
                error,
            )
            _terminate_process(process)
            return EXIT_START_FAILED

        logger.info("Job %s started as pid %s: %s", job.job_id, process.pid, command)
        stdout, stderr = process.communicate()
        exit_code = process.returncode
        if stdout:
            logger.info("Job %s output:\n%s", job.job_id, stdout.rstrip())
        if stderr:
            logger.warning("Job %s error output:\n%s", job.job_id, stderr.rstrip())

        try:
            if exit_code == EXIT_OK:
                self.repository.mark_done(job_id, exit_code=exit_code)
                logger.info("Job %s (%s) done", job.job_id, job.command)
            else:
                self.repository.mark_failed(job_id, exit_code=exit_code)
                logger.error(
                    "Job %s (%s) failed with exit code %s",
                    job.job_id,
                    job.command,
                    exit_code,
                )
        except ConflictError as error:
            logger.error(
                "Cannot record exit code %s of job %s (%s): %s",
                exit_code,
                job.job_id,
                job.command,
                error,
            )
        return exit_code

    def dispatch(self, job: JobView) -> ChildHandle | None:
        """Claim ``job`` and hand it to a detached worker process.

        ConflictError propagates when the claim loses. A worker that cannot be
        spawned leaves the job STARTING for the stalled-starting sweep.
        """

        self.repository.mark_starting(job.job_id)
        argv = self.worker_argv(job.job_id)
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as error:
            logger.error(
                "Cannot spawn worker for job %s (%s): %s",
                job.job_id,
                job.command,
                error,
            )
            return None
        logger.info("Dispatched job %s (%s) to worker %s", job.job_id, job.command, process.pid)
        return ChildHandle(job_id=job.job_id, process=process)

    def process_next(self, scheduler: Scheduler) -> int:
        """Run the head of the queue in this process if a slot is free."""

        job = scheduler.pick(self.repository)
        if job is None:
            return EXIT_NOTHING_TO_DO
        try:
            self.repository.mark_starting(job.job_id)
        except ConflictError as error:
            logger.info("Job %s was claimed elsewhere: %s", job.job_id, error)
            return EXIT_NOTHING_TO_DO

        active = self.repository.count_by_status((JobStatus.RUNNING, JobStatus.STARTING))
        if active > scheduler.concurrency_limit:
            logger.info(
                "Concurrency limit %s exceeded after claiming job %s, putting it back",
                scheduler.concurrency_limit,
                job.job_id,
            )
            self.repository.mark_waiting(
                job.job_id,
                expected=(JobStatus.STARTING,),
                event_type="claim_rolled_back",
            )
            return EXIT_NOTHING_TO_DO
        return self.run_foreground(job.job_id)

    def _record_spawn_failure(self, job: JobView, error: OSError) -> None:
        try:
            self.repository.mark_running(job.job_id, os.getpid())
            self.repository.mark_failed(job.job_id, reason=str(error))
        except JobQueueError as store_error:
            logger.error(
                "Cannot record start failure of job %s (%s): %s",
                job.job_id,
                job.command,
                store_error,
            )


def _terminate_process(process: subprocess.Popen[str] | subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)

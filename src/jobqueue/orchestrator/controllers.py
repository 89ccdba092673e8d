"""Controllers for queue CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

from jobqueue.config import Settings
from jobqueue.orchestrator.executor import EXIT_NOTHING_TO_DO, EXIT_OK, JobExecutor
from jobqueue.orchestrator.guard import SingleInstanceGuard
from jobqueue.orchestrator.inspector import PsutilProcessInspector
from jobqueue.orchestrator.models import (
    AGGRESSIVE_RETENTION_STATUSES,
    ROUTINE_RETENTION_STATUSES,
    priority_name,
)
from jobqueue.orchestrator.repository import JobRepository
from jobqueue.orchestrator.runner import QueueRunner
from jobqueue.orchestrator.scheduler import Scheduler
from jobqueue.orchestrator.stall import StallDetector, StalledJobReconciler


@dataclass(slots=True)
class AddJobCommand:
    """CLI input for enqueue."""

    db_path: Path | None
    command: str
    priority: int | None


@dataclass(slots=True)
class JobIdCommand:
    """CLI input for commands addressing one job."""

    db_path: Path | None
    job_id: int


@dataclass(slots=True)
class ClearQueueCommand:
    db_path: Path | None
    force: bool


@dataclass(slots=True)
class QueueCommand:
    """CLI input for commands acting on the whole queue."""

    db_path: Path | None


@dataclass(slots=True)
class RunnerCommand:
    db_path: Path | None
    max_iterations: int | None = None


@dataclass(slots=True)
class CommandResult:
    """Printable lines plus the process exit code."""

    lines: list[str] = field(default_factory=list)
    exit_code: int = EXIT_OK


class QueueCliController:
    """Application service for queue CLI commands."""

    def add_job(self, command: AddJobCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            _garbage_collect(repository, settings)
            job = repository.add_job(command.command, command.priority)
            length = repository.queue_length()
            position = repository.queue_position(job.job_id)
        return [
            f"Job queued: {job.job_id} priority={priority_name(job.priority)}",
            f"Queue length: {length}",
            f"Position: {position}",
        ]

    def remove_job(self, command: JobIdCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            _garbage_collect(repository, settings)
            job = repository.remove_job(command.job_id)
        return [f"Job removed: {job.job_id} {job.command}"]

    def clear_queue(self, command: ClearQueueCommand) -> CommandResult:
        if not command.force:
            return CommandResult(
                lines=[
                    "This removes every job that is not running.",
                    "Use --force to confirm.",
                ],
                exit_code=EXIT_NOTHING_TO_DO,
            )
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            _garbage_collect(repository, settings)
            removed = repository.clear_queue()
        return CommandResult(lines=[f"Queue cleared: removed={removed}"])

    def list_jobs(self, command: QueueCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            _garbage_collect(repository, settings)
            waiting = repository.list_waiting()
            running = repository.list_running()

        now = datetime.now(tz=UTC)
        lines = [f"Waiting: {len(waiting)}"]
        for position, job in enumerate(waiting, start=1):
            lines.append(
                f"  {position:>4} id={job.job_id} prio={priority_name(job.priority):<7} "
                f"queued={job.insert_time.isoformat(timespec='seconds')} {job.command}",
            )
        lines.append(f"Running: {len(running)}")
        for job in running:
            started = job.start_time or job.insert_time
            lines.append(
                f"  pid={job.pid or '-'} id={job.job_id} "
                f"started={started.isoformat(timespec='seconds')} "
                f"elapsed={_format_elapsed(now - started)} {job.command}",
            )
        return lines

    def inspect_job(self, command: JobIdCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(command.job_id)

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Command: {job.command}",
            f"Status: {job.status.value}",
            f"Priority: {job.priority} ({priority_name(job.priority)})",
            f"Pid: {job.pid if job.pid is not None else '-'}",
            f"Inserted: {job.insert_time.isoformat()}",
            f"Started: {job.start_time.isoformat() if job.start_time else '-'}",
            f"Ended: {job.end_time.isoformat() if job.end_time else '-'}",
            f"Start attempts: {job.start_attempts}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def cleanup(self, command: QueueCommand) -> list[str]:
        """Stalled sweep plus the aggressive retention sweep."""

        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            reconciler = _reconciler(repository, settings)
            stalled = reconciler.clean_stalled_jobs()
            removed = repository.cleanup_queue(
                older_than=timedelta(days=settings.retention.aggressive_retention_days),
                statuses=AGGRESSIVE_RETENTION_STATUSES,
            )
        return [
            "Cleanup summary: "
            f"stalled={stalled} removed={removed}",
        ]

    def process_next(self, command: QueueCommand) -> CommandResult:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            _garbage_collect(repository, settings)
            exit_code = _executor(repository, settings).process_next(
                Scheduler(settings.runner.concurrency),
            )
        if exit_code == EXIT_NOTHING_TO_DO:
            return CommandResult(lines=["Nothing to process."], exit_code=exit_code)
        return CommandResult(exit_code=exit_code)

    def run_job(self, command: JobIdCommand) -> CommandResult:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            exit_code = _executor(repository, settings).run_foreground(command.job_id)
        return CommandResult(exit_code=exit_code)

    def run_runner(self, command: RunnerCommand) -> CommandResult:
        settings = _settings(command.db_path)
        inspector = PsutilProcessInspector()
        with _repository(settings) as repository:
            runner = QueueRunner(
                repository=repository,
                executor=_executor(repository, settings),
                scheduler=Scheduler(settings.runner.concurrency),
                reconciler=_reconciler(repository, settings, inspector=inspector),
                guard=SingleInstanceGuard(
                    inspector=inspector,
                    command_pattern=settings.runner.runner_pattern,
                    workdir=Path.cwd(),
                ),
                busy_sleep_seconds=settings.runner.busy_sleep_seconds,
                idle_sleep_seconds=settings.runner.idle_sleep_seconds,
                gc_probability=settings.runner.gc_probability,
                auto_cleanup=settings.retention.auto_cleanup,
                routine_retention=timedelta(days=settings.retention.retention_days),
                max_iterations=command.max_iterations,
            )
            summary = runner.run()

        if summary.already_running_pid is not None:
            return CommandResult(
                lines=[f"Queue runner already running (pid {summary.already_running_pid})"],
            )
        return CommandResult(
            lines=[
                "Runner summary: "
                f"iterations={summary.iterations} dispatched={summary.dispatched} "
                f"reaped={summary.reaped} stalled={summary.stalled} "
                f"requeued={summary.requeued} start_failed={summary.start_failed} "
                f"garbage_collected={summary.garbage_collected}",
            ],
        )


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _executor(repository: JobRepository, settings: Settings) -> JobExecutor:
    return JobExecutor(
        repository,
        db_path=settings.db_path,
        command_prefix=settings.runner.command_prefix,
    )


def _reconciler(
    repository: JobRepository,
    settings: Settings,
    *,
    inspector: PsutilProcessInspector | None = None,
) -> StalledJobReconciler:
    return StalledJobReconciler(
        repository,
        StallDetector(inspector or PsutilProcessInspector()),
        max_start_attempts=settings.runner.max_start_attempts,
    )


def _garbage_collect(repository: JobRepository, settings: Settings) -> int:
    if not settings.retention.auto_cleanup:
        return 0
    return repository.cleanup_queue(
        older_than=timedelta(days=settings.retention.retention_days),
        statuses=ROUTINE_RETENTION_STATUSES,
    )


def _format_elapsed(delta: timedelta) -> str:
    total = max(0, int(delta.total_seconds()))
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
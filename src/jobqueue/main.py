"""CLI entrypoint for jobqueue."""

import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from jobqueue import __version__
from jobqueue.config import Settings
from jobqueue.logging_config import configure_logging
from jobqueue.orchestrator.controllers import (
    AddJobCommand,
    ClearQueueCommand,
    CommandResult,
    JobIdCommand,
    QueueCliController,
    QueueCommand,
    RunnerCommand,
)
from jobqueue.orchestrator.errors import JobQueueError
from jobqueue.orchestrator.models import JobPriority

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path (defaults to JOBQUEUE_DB_PATH).",
)


@click.group()
@click.version_option(version=__version__, prog_name="jobqueue")
def jobqueue() -> None:
    """Persistent priority job queue with a single-host runner."""

    try:
        settings = Settings.from_env()
        settings.validate()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    configure_logging(settings.logging)


@jobqueue.command("add")
@_DB_PATH_OPTION
@click.option(
    "--priority",
    type=click.IntRange(min=int(JobPriority.LOWEST), max=int(JobPriority.HIGHEST)),
    default=None,
    help="1 (lowest) to 5 (highest), default 3.",
)
@click.argument("command")
def add(db_path: Path | None, priority: int | None, command: str) -> None:
    """Queue a shell command. An identical waiting command is re-prioritized."""

    with _handle_errors():
        _emit_lines(
            QUEUE_CONTROLLER.add_job(
                AddJobCommand(db_path=db_path, command=command, priority=priority),
            ),
        )


@jobqueue.command("remove")
@_DB_PATH_OPTION
@click.argument("job_id", type=int)
def remove(db_path: Path | None, job_id: int) -> None:
    """Remove a waiting job."""

    with _handle_errors():
        _emit_lines(QUEUE_CONTROLLER.remove_job(JobIdCommand(db_path=db_path, job_id=job_id)))


@jobqueue.command("clear")
@_DB_PATH_OPTION
@click.option("--force", is_flag=True, default=False, help="Confirm clearing the queue.")
@click.option(
    "--delay-seconds",
    type=click.FloatRange(min=0),
    default=5.0,
    show_default=True,
    help="Grace period to abort with Ctrl+C.",
)
def clear(db_path: Path | None, force: bool, delay_seconds: float) -> None:
    """Remove every job that is not running."""

    if force and delay_seconds > 0:
        click.echo(f"Clearing the queue in {delay_seconds:g}s, press Ctrl+C to abort.")
        time.sleep(delay_seconds)
    with _handle_errors():
        result = QUEUE_CONTROLLER.clear_queue(ClearQueueCommand(db_path=db_path, force=force))
    _finish(result)


@jobqueue.command("list")
@_DB_PATH_OPTION
def list_jobs(db_path: Path | None) -> None:
    """Show waiting and running jobs."""

    with _handle_errors():
        _emit_lines(QUEUE_CONTROLLER.list_jobs(QueueCommand(db_path=db_path)))


@jobqueue.command("inspect")
@_DB_PATH_OPTION
@click.argument("job_id", type=int)
def inspect(db_path: Path | None, job_id: int) -> None:
    """Inspect one job with event history."""

    with _handle_errors():
        _emit_lines(QUEUE_CONTROLLER.inspect_job(JobIdCommand(db_path=db_path, job_id=job_id)))


@jobqueue.command("cleanup")
@_DB_PATH_OPTION
def cleanup(db_path: Path | None) -> None:
    """Mark stalled jobs and drop old finished ones."""

    with _handle_errors():
        _emit_lines(QUEUE_CONTROLLER.cleanup(QueueCommand(db_path=db_path)))


@jobqueue.command("process")
@_DB_PATH_OPTION
def process(db_path: Path | None) -> None:
    """Run the next waiting job in the foreground."""

    with _handle_errors():
        result = QUEUE_CONTROLLER.process_next(QueueCommand(db_path=db_path))
    _finish(result)


@jobqueue.command("run")
@_DB_PATH_OPTION
@click.argument("job_id", type=int)
def run(db_path: Path | None, job_id: int) -> None:
    """Run one job in the foreground (per-job worker)."""

    with _handle_errors():
        result = QUEUE_CONTROLLER.run_job(JobIdCommand(db_path=db_path, job_id=job_id))
    _finish(result)


@jobqueue.command("runner")
@_DB_PATH_OPTION
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many loop iterations.",
)
def runner(db_path: Path | None, max_iterations: int | None) -> None:
    """Main queue runner. Safe to start from cron, exits if one is already running."""

    with _handle_errors():
        result = QUEUE_CONTROLLER.run_runner(
            RunnerCommand(db_path=db_path, max_iterations=max_iterations),
        )
    _finish(result)


@contextmanager
def _handle_errors() -> Iterator[None]:
    try:
        yield
    except (JobQueueError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _finish(result: CommandResult) -> None:
    _emit_lines(result.lines)
    if result.exit_code:
        raise SystemExit(result.exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    jobqueue()

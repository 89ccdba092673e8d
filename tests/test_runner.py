from __future__ import annotations

import os
import signal
import sys
import time
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from jobqueue.orchestrator.errors import ConflictError, StoreUnavailableError
from jobqueue.orchestrator.executor import JobExecutor
from jobqueue.orchestrator.guard import SingleInstanceGuard
from jobqueue.orchestrator.inspector import ProcessInfo, PsutilProcessInspector
from jobqueue.orchestrator.models import JobStatus, JobView
from jobqueue.orchestrator.repository import JobRepository
from jobqueue.orchestrator.runner import QueueRunner
from jobqueue.orchestrator.scheduler import Scheduler
from jobqueue.orchestrator.stall import ReconcileSummary, StallDetector, StalledJobReconciler
from jobqueue.storage.common import utc_now

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Runner Loop"),
]

_PATTERN = r"jobqueue(?:\.main)?\s+runner\b"
_SRC_DIR = Path(__file__).resolve().parents[1] / "src"


class _FakeHandle:
    def __init__(self, job_id: int, pid: int) -> None:
        self.job_id = job_id
        self.pid = pid
        self.exit_code: int | None = None

    def poll(self) -> int | None:
        return self.exit_code


class _FakeExecutor:
    """Claims jobs like the real executor but never spawns anything."""

    def __init__(self, repository: JobRepository, *, on_dispatch=None) -> None:
        self.repository = repository
        self.handles: list[_FakeHandle] = []
        self.on_dispatch = on_dispatch

    def dispatch(self, job: JobView) -> _FakeHandle:
        self.repository.mark_starting(job.job_id)
        handle = _FakeHandle(job.job_id, 60_000 + job.job_id)
        self.handles.append(handle)
        if self.on_dispatch is not None:
            self.on_dispatch(handle)
        return handle


def _runner(  # noqa: PLR0913
    repository: JobRepository,
    inspector,
    executor,
    *,
    concurrency: int = 1,
    max_iterations: int | None = None,
    workdir: Path | None = None,
    **kwargs,
) -> QueueRunner:
    kwargs.setdefault("gc_probability", 0.0)
    return QueueRunner(
        repository=repository,
        executor=executor,
        scheduler=Scheduler(concurrency),
        reconciler=StalledJobReconciler(repository, StallDetector(inspector)),
        guard=SingleInstanceGuard(inspector, _PATTERN, workdir or Path.cwd()),
        busy_sleep_seconds=0,
        idle_sleep_seconds=0,
        max_iterations=max_iterations,
        **kwargs,
    )


def test_exits_immediately_when_another_runner_owns_directory(
    repository: JobRepository,
    fake_inspector,
    tmp_path: Path,
) -> None:
    fake_inspector.processes = [
        ProcessInfo(pid=999_100, cwd=str(tmp_path), cmdline="jobqueue runner"),
    ]
    job = repository.add_job("echo hi")
    repository.mark_starting(job.job_id)
    executor = _FakeExecutor(repository)

    summary = _runner(
        repository,
        fake_inspector,
        executor,
        max_iterations=5,
        workdir=tmp_path,
    ).run()

    assert summary.already_running_pid == 999_100
    assert summary.iterations == 0
    assert executor.handles == []
    assert repository.get_job(job.job_id).status == JobStatus.STARTING


def test_startup_reconciliation_then_dispatch(repository: JobRepository, fake_inspector) -> None:
    dead = repository.add_job("echo dead")
    repository.mark_starting(dead.job_id)
    repository.mark_running(dead.job_id, pid=70_001)
    orphan = repository.add_job("echo orphan", 5)
    repository.mark_starting(orphan.job_id)
    executor = _FakeExecutor(repository)

    summary = _runner(repository, fake_inspector, executor, max_iterations=1).run()

    assert summary.stalled == 1
    assert summary.requeued == 1
    assert summary.dispatched == 1
    assert repository.get_job(dead.job_id).status == JobStatus.STALLED
    assert [handle.job_id for handle in executor.handles] == [orphan.job_id]


def test_concurrency_limit_blocks_extra_dispatch(repository: JobRepository, fake_inspector) -> None:
    first = repository.add_job("sleep 100", 5)
    second = repository.add_job("echo later", 1)
    executor = _FakeExecutor(repository)
    runner = _runner(repository, fake_inspector, executor, concurrency=1)

    runner.check_queue()
    runner.check_queue()
    runner.check_queue()

    assert runner.summary.dispatched == 1
    assert set(runner.children) == {first.job_id}
    assert repository.get_job(second.job_id).status == JobStatus.WAITING


def test_reaped_child_that_never_confirmed_is_start_failed(
    repository: JobRepository,
    fake_inspector,
) -> None:
    job = repository.add_job("echo crash")
    executor = _FakeExecutor(repository)
    runner = _runner(repository, fake_inspector, executor)

    runner.check_queue()
    executor.handles[0].exit_code = 1
    runner.check_queue()

    assert runner.summary.reaped == 1
    assert runner.summary.start_failed == 1
    assert runner.children == {}
    assert repository.get_job(job.job_id).status == JobStatus.START_FAILED


def test_reaped_child_that_finished_is_left_alone(
    repository: JobRepository,
    fake_inspector,
) -> None:
    job = repository.add_job("echo ok")
    executor = _FakeExecutor(repository)
    runner = _runner(repository, fake_inspector, executor)

    runner.check_queue()
    repository.mark_running(job.job_id, pid=executor.handles[0].pid)
    repository.mark_done(job.job_id)
    executor.handles[0].exit_code = 0
    runner.check_queue()

    assert runner.summary.reaped == 1
    assert runner.summary.start_failed == 0
    assert repository.get_job(job.job_id).status == JobStatus.DONE


def test_untracked_live_job_counts_against_capacity(
    repository: JobRepository,
    fake_inspector,
) -> None:
    adopted = repository.add_job("echo adopted")
    repository.mark_starting(adopted.job_id)
    repository.mark_running(adopted.job_id, pid=70_100)
    fake_inspector.alive = {70_100}
    waiting = repository.add_job("echo waiting")
    executor = _FakeExecutor(repository)

    single = _runner(repository, fake_inspector, executor, concurrency=1)
    single.check_queue()
    assert executor.handles == []
    assert repository.get_job(adopted.job_id).status == JobStatus.RUNNING

    double = _runner(repository, fake_inspector, executor, concurrency=2)
    double.check_queue()
    assert [handle.job_id for handle in executor.handles] == [waiting.job_id]


def test_mismatch_reconciles_dead_job_and_backs_off(
    repository: JobRepository,
    fake_inspector,
) -> None:
    lost = repository.add_job("echo lost")
    repository.mark_starting(lost.job_id)
    repository.mark_running(lost.job_id, pid=70_200)
    abandoned = repository.add_job("echo abandoned")
    repository.mark_starting(abandoned.job_id)
    executor = _FakeExecutor(repository)
    runner = _runner(repository, fake_inspector, executor)

    runner.check_queue()

    assert runner.summary.stalled == 1
    assert runner.summary.requeued == 1
    assert executor.handles == []
    assert repository.get_job(lost.job_id).status == JobStatus.STALLED
    assert repository.get_job(abandoned.job_id).status == JobStatus.WAITING

    runner.check_queue()
    assert [handle.job_id for handle in executor.handles] == [abandoned.job_id]


def test_store_unavailable_aborts_iteration_only(
    repository: JobRepository,
    fake_inspector,
    monkeypatch,
) -> None:
    repository.add_job("echo later")
    executor = _FakeExecutor(repository)
    runner = _runner(repository, fake_inspector, executor)
    original = repository.count_by_status
    failures = iter([StoreUnavailableError("database is locked")])

    def _flaky_count(statuses):
        for error in failures:
            raise error
        return original(statuses)

    monkeypatch.setattr(repository, "count_by_status", _flaky_count)

    runner.check_queue()
    assert executor.handles == []
    runner.check_queue()

    assert runner.summary.iterations == 2
    assert runner.summary.dispatched == 1


def test_unexpected_error_is_logged_and_loop_continues(
    repository: JobRepository,
    fake_inspector,
    caplog,
) -> None:
    repository.add_job("echo boom")

    def _explode(handle):
        raise RuntimeError("executor exploded")

    runner = _runner(
        repository,
        fake_inspector,
        _FakeExecutor(repository, on_dispatch=_explode),
        max_iterations=2,
    )

    summary = runner.run()

    assert summary.iterations == 2
    assert "Unexpected runner error" in caplog.text


def test_randomized_retention_sweep(repository: JobRepository, fake_inspector, force_fields) -> None:
    old = repository.add_job("echo old")
    repository.mark_starting(old.job_id)
    repository.mark_running(old.job_id, pid=70_300)
    repository.mark_done(old.job_id)
    force_fields(repository, old.job_id, end_time=utc_now() - timedelta(days=8))

    runner = _runner(
        repository,
        fake_inspector,
        _FakeExecutor(repository),
        gc_probability=0.5,
        random_source=lambda: 0.1,
    )
    runner.check_queue()

    assert runner.summary.garbage_collected == 1
    assert repository.count_by_status((JobStatus.DONE,)) == 0


def test_retention_sweep_skipped_when_auto_cleanup_disabled(
    repository: JobRepository,
    fake_inspector,
    force_fields,
) -> None:
    old = repository.add_job("echo old")
    repository.mark_starting(old.job_id)
    repository.mark_running(old.job_id, pid=70_400)
    repository.mark_done(old.job_id)
    force_fields(repository, old.job_id, end_time=utc_now() - timedelta(days=8))

    runner = _runner(
        repository,
        fake_inspector,
        _FakeExecutor(repository),
        gc_probability=1.0,
        auto_cleanup=False,
        random_source=lambda: 0.0,
    )
    runner.check_queue()

    assert runner.summary.garbage_collected == 0
    assert repository.count_by_status((JobStatus.DONE,)) == 1


def test_sigterm_stops_loop_without_touching_children(
    repository: JobRepository,
    fake_inspector,
) -> None:
    repository.add_job("echo one")
    repository.add_job("echo two")
    previous_handler = signal.getsignal(signal.SIGTERM)

    def _terminate_self(handle):
        os.kill(os.getpid(), signal.SIGTERM)

    executor = _FakeExecutor(repository, on_dispatch=_terminate_self)
    runner = _runner(repository, fake_inspector, executor, concurrency=5, max_iterations=50)

    summary = runner.run()

    assert runner.stop_requested
    assert summary.dispatched == 1
    assert len(runner.children) == 1
    assert signal.getsignal(signal.SIGTERM) is previous_handler


def test_request_stop_before_run_skips_loop(repository: JobRepository, fake_inspector) -> None:
    runner = _runner(repository, fake_inspector, _FakeExecutor(repository), max_iterations=5)
    runner.request_stop()

    summary = runner.run()

    assert summary.iterations == 0


@pytest.mark.skipif(not hasattr(os, "killpg"), reason="needs POSIX process groups")
def test_killed_job_is_stalled_and_next_job_dispatched(
    tmp_path: Path,
    monkeypatch,
) -> None:
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join(filter(None, [str(_SRC_DIR), os.environ.get("PYTHONPATH")])),
    )
    monkeypatch.chdir(tmp_path)
    db_path = tmp_path / "e2e.db"
    repository = JobRepository(db_path)
    repository.init_schema()
    inspector = PsutilProcessInspector()
    executor = JobExecutor(repository, db_path=db_path, python_executable=sys.executable)
    runner = _runner(repository, inspector, executor, concurrency=1, workdir=tmp_path)
    first = repository.add_job("sleep 100", 5)
    second = repository.add_job("sleep 0", 1)
    try:
        runner.check_queue()
        assert set(runner.children) == {first.job_id}
        worker = runner.children[first.job_id]
        _wait_for(lambda: repository.get_job(first.job_id).status == JobStatus.RUNNING)

        runner.check_queue()
        assert repository.get_job(second.job_id).status == JobStatus.WAITING

        os.killpg(worker.pid, signal.SIGKILL)
        worker.process.wait(timeout=10)
        job_pid = repository.get_job(first.job_id).pid
        assert job_pid is not None
        _wait_for(lambda: not inspector.is_alive(job_pid))

        _wait_for(
            lambda: runner.check_queue() is False
            and repository.get_job(second.job_id).status != JobStatus.WAITING,
        )
        stalled = repository.get_job(first.job_id)
        assert stalled.status == JobStatus.STALLED
        assert stalled.pid is None
        assert stalled.end_time is not None
        _wait_for(lambda: repository.get_job(second.job_id).status == JobStatus.DONE)
    finally:
        for handle in runner.children.values():
            if handle.poll() is None:
                try:
                    os.killpg(handle.pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
                handle.process.wait(timeout=10)
        repository.close()


def _wait_for(predicate, timeout: float = 30.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.1)
    raise AssertionError("condition not reached in time")


def test_startup_requeue_merges_into_waiting_duplicate(
    repository: JobRepository,
    fake_inspector,
) -> None:
    orphan = repository.add_job("echo same", 5)
    repository.mark_starting(orphan.job_id)
    queued_again = repository.add_job("echo same", 1)
    executor = _FakeExecutor(repository)

    summary = _runner(repository, fake_inspector, executor, max_iterations=1).run()

    assert summary.requeued == 1
    assert summary.dispatched == 1
    assert [handle.job_id for handle in executor.handles] == [queued_again.job_id]
    dispatched = repository.get_job(queued_again.job_id)
    assert dispatched.status == JobStatus.STARTING
    assert dispatched.priority == 5


def test_loop_requeue_with_waiting_duplicate_keeps_dispatching(
    repository: JobRepository,
    fake_inspector,
    monkeypatch,
) -> None:
    foreign = repository.add_job("echo same")
    repository.mark_starting(foreign.job_id)
    queued_again = repository.add_job("echo same")
    executor = _FakeExecutor(repository)
    runner = _runner(repository, fake_inspector, executor, max_iterations=3)
    monkeypatch.setattr(runner.reconciler, "reconcile", lambda exclude=(): ReconcileSummary())

    summary = runner.run()

    assert summary.requeued == 1
    assert summary.dispatched == 1
    assert [handle.job_id for handle in executor.handles] == [queued_again.job_id]
    assert repository.count_by_status((JobStatus.WAITING,)) == 0


def test_failed_startup_reconciliation_is_logged(
    repository: JobRepository,
    fake_inspector,
    monkeypatch,
    caplog,
) -> None:
    job = repository.add_job("echo next")
    executor = _FakeExecutor(repository)
    runner = _runner(repository, fake_inspector, executor, max_iterations=1)

    def _broken_reconcile(exclude=()):
        raise ConflictError("Job 1 changed concurrently", job_id=1)

    monkeypatch.setattr(runner.reconciler, "reconcile", _broken_reconcile)

    summary = runner.run()

    assert "Startup reconciliation failed" in caplog.text
    assert summary.dispatched == 1
    assert executor.handles[0].job_id == job.job_id

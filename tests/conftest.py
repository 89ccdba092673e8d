"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from jobqueue.orchestrator.inspector import ProcessInfo
from jobqueue.orchestrator.repository import JobRepository
from jobqueue.storage.common import to_db_datetime
from jobqueue.storage.sqlmodel_models import QueueJob

_ENV_VARS = (
    "JOBQUEUE_DB_PATH",
    "JOBQUEUE_SQLITE_BUSY_TIMEOUT_MS",
    "JOBQUEUE_CONCURRENCY",
    "JOBQUEUE_AUTO_CLEANUP",
    "JOBQUEUE_COMMAND_PREFIX",
    "JOBQUEUE_BUSY_SLEEP_SECONDS",
    "JOBQUEUE_IDLE_SLEEP_SECONDS",
    "JOBQUEUE_GC_PROBABILITY",
    "JOBQUEUE_MAX_START_ATTEMPTS",
    "JOBQUEUE_RUNNER_PATTERN",
    "JOBQUEUE_RETENTION_DAYS",
    "JOBQUEUE_AGGRESSIVE_RETENTION_DAYS",
    "JOBQUEUE_LOG_LEVEL",
    "JOBQUEUE_LOG_FILE",
)


@pytest.fixture(autouse=True)
def _clean_jobqueue_env(monkeypatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(tmp_path / "queue.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


def force_job_fields(repository: JobRepository, job_id: int, **values: object) -> None:
    """Write columns directly, bypassing the state machine."""

    normalized = {
        key: to_db_datetime(value) if hasattr(value, "tzinfo") else value
        for key, value in values.items()
    }
    with Session(repository.engine) as session:
        session.exec(
            sa_update(QueueJob).where(col(QueueJob.id) == job_id).values(**normalized),
        )
        session.commit()


@dataclass
class FakeInspector:
    """In-memory process table."""

    alive: set[int] = field(default_factory=set)
    processes: list[ProcessInfo] = field(default_factory=list)
    calls: list[int] = field(default_factory=list)

    def is_alive(self, pid: int) -> bool:
        self.calls.append(pid)
        return pid in self.alive

    def find_by_command_pattern(self, pattern: str) -> list[ProcessInfo]:
        del pattern
        return list(self.processes)


@pytest.fixture()
def fake_inspector() -> FakeInspector:
    return FakeInspector()


@pytest.fixture()
def force_fields():
    return force_job_fields

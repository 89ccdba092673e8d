"""Domain models for the job queue and its state machine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    WAITING = "WAITING"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"
    START_FAILED = "START_FAILED"
    STALLED = "STALLED"


class JobPriority(IntEnum):
    """Dispatch priority, higher runs first."""

    LOWEST = 1
    LOW = 2
    MEDIUM = 3
    HIGH = 4
    HIGHEST = 5


DEFAULT_PRIORITY = JobPriority.MEDIUM

ACTIVE_STATUSES = frozenset({JobStatus.RUNNING, JobStatus.STARTING})
TERMINAL_STATUSES = frozenset(
    {JobStatus.DONE, JobStatus.FAILED, JobStatus.START_FAILED, JobStatus.STALLED},
)
ROUTINE_RETENTION_STATUSES = frozenset({JobStatus.DONE})
AGGRESSIVE_RETENTION_STATUSES = frozenset(
    {JobStatus.DONE, JobStatus.FAILED, JobStatus.STALLED},
)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.WAITING: frozenset({JobStatus.STARTING}),
    JobStatus.STARTING: frozenset(
        {JobStatus.RUNNING, JobStatus.START_FAILED, JobStatus.WAITING},
    ),
    JobStatus.START_FAILED: frozenset({JobStatus.WAITING}),
    JobStatus.RUNNING: frozenset({JobStatus.DONE, JobStatus.FAILED, JobStatus.STALLED}),
    JobStatus.DONE: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.STALLED: frozenset(),
}


def allowed_sources(target: JobStatus) -> frozenset[JobStatus]:
    """Statuses a job may be in to move to ``target``."""

    return frozenset(
        source for source, targets in ALLOWED_TRANSITIONS.items() if target in targets
    )


def is_valid_transition(source: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[source]


def priority_name(priority: int) -> str:
    try:
        return JobPriority(priority).name
    except ValueError:
        return "ERROR"


@dataclass(slots=True)
class JobView:
    """Readable job view for CLI, scheduler and runner logic."""

    job_id: int
    command: str
    priority: int
    status: JobStatus
    pid: int | None
    insert_time: datetime
    start_time: datetime | None
    end_time: datetime | None
    start_attempts: int = 0


@dataclass(slots=True)
class JobEventView:
    """Job transition entry for audit trail."""

    event_id: int
    job_id: int
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job with its event stream."""

    job: JobView
    events: list[JobEventView]

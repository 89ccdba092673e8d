"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Final

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, col, select

from jobqueue.orchestrator.errors import (
    ConflictError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from jobqueue.orchestrator.models import (
    DEFAULT_PRIORITY,
    JobDetails,
    JobEventView,
    JobPriority,
    JobStatus,
    JobView,
    allowed_sources,
)
from jobqueue.storage.alembic_runner import upgrade_head
from jobqueue.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from jobqueue.storage.sqlmodel_models import QueueJob, QueueJobEvent


class _Unset:
    def __repr__(self) -> str:
        return "<unset>"


UNSET: Final = _Unset()


class JobRepository:
    """Queue persistence facade.

    Every public call opens its own session on a fresh connection, so reads
    always reflect writes committed by other processes sharing the file.
    Status changes go through :meth:`transition`, which only updates a row
    that still shows the status it was read with.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        try:
            upgrade_head(self.db_path)
        except OperationalError as error:
            raise StoreUnavailableError(
                f"Cannot migrate job store {self.db_path}: {error}",
            ) from error

    # -- enqueue / remove / clear ---------------------------------------------

    def add_job(self, command: str, priority: int | None = None) -> JobView:
        """Queue a command, or re-prioritize the identical waiting one."""

        if not command or not command.strip():
            raise ValidationError("Job command must not be empty.")
        resolved_priority = validate_priority(priority)

        while True:
            with self._session() as session:
                existing = session.exec(
                    select(QueueJob).where(
                        QueueJob.command == command,
                        QueueJob.status == JobStatus.WAITING.value,
                    ),
                ).one_or_none()
                if existing is not None:
                    if existing.priority == resolved_priority:
                        return _to_job_view(existing)
                    previous_priority = existing.priority
                    existing.priority = resolved_priority
                    session.add(existing)
                    self._add_event(
                        session=session,
                        job_id=_require_id(existing),
                        event_type="priority_updated",
                        status_from=JobStatus.WAITING,
                        status_to=JobStatus.WAITING,
                        details={"from": previous_priority, "to": resolved_priority},
                    )
                    session.commit()
                    session.refresh(existing)
                    return _to_job_view(existing)

                row = QueueJob(
                    command=command,
                    priority=resolved_priority,
                    status=JobStatus.WAITING.value,
                    insert_time=to_db_datetime(utc_now()),
                )
                session.add(row)
                try:
                    session.flush()
                except IntegrityError:
                    # Another process queued the same command in between.
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    job_id=_require_id(row),
                    event_type="enqueued",
                    status_from=None,
                    status_to=JobStatus.WAITING,
                    details={"priority": resolved_priority},
                )
                session.commit()
                session.refresh(row)
                return _to_job_view(row)

    def remove_job(self, job_id: int) -> JobView:
        """Delete a waiting job. Dispatched jobs cannot be removed."""

        with self._session() as session:
            row = session.get(QueueJob, job_id)
            if row is None:
                raise NotFoundError(job_id)
            removed = _to_job_view(row)
            if removed.status != JobStatus.WAITING:
                raise ConflictError(
                    f"Only waiting jobs can be removed, job {job_id} is {row.status}.",
                    job_id=job_id,
                )
            result = session.exec(
                sa_delete(QueueJob).where(
                    col(QueueJob.id) == job_id,
                    col(QueueJob.status) == JobStatus.WAITING.value,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConflictError(
                    f"Job {job_id} changed concurrently while removing.",
                    job_id=job_id,
                )
            session.commit()
        return removed

    def clear_queue(self) -> int:
        """Delete every job that is not running."""

        with self._session() as session:
            result = session.exec(
                sa_delete(QueueJob).where(col(QueueJob.status) != JobStatus.RUNNING.value),
            )
            session.commit()
            return int(result.rowcount or 0)

    def cleanup_queue(
        self,
        *,
        older_than: timedelta,
        statuses: Iterable[JobStatus],
    ) -> int:
        """Retention sweep: delete terminal jobs that ended before the window."""

        cutoff = to_db_datetime(utc_now() - older_than)
        values = [status.value for status in statuses]
        if not values:
            return 0
        with self._session() as session:
            result = session.exec(
                sa_delete(QueueJob).where(
                    col(QueueJob.status).in_(values),
                    col(QueueJob.end_time).is_not(None),
                    col(QueueJob.end_time) < cutoff,
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    # -- reads ----------------------------------------------------------------

    def get_job(self, job_id: int) -> JobView:
        with self._session() as session:
            row = session.get(QueueJob, job_id)
            if row is None:
                raise NotFoundError(job_id)
            return _to_job_view(row)

    def count_by_status(self, statuses: Iterable[JobStatus]) -> int:
        values = [status.value for status in statuses]
        with self._session() as session:
            return int(
                session.exec(
                    select(func.count(col(QueueJob.id))).where(col(QueueJob.status).in_(values)),
                ).one(),
            )

    def next_waiting(self) -> JobView | None:
        """Head of the queue: highest priority first, then oldest."""

        waiting = self.list_waiting(limit=1)
        return waiting[0] if waiting else None

    def list_waiting(self, *, limit: int | None = None) -> list[JobView]:
        with self._session() as session:
            statement = (
                select(QueueJob)
                .where(QueueJob.status == JobStatus.WAITING.value)
                .order_by(
                    col(QueueJob.priority).desc(),
                    col(QueueJob.insert_time).asc(),
                    col(QueueJob.id).asc(),
                )
            )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def list_running(self) -> list[JobView]:
        with self._session() as session:
            rows = session.exec(
                select(QueueJob)
                .where(QueueJob.status == JobStatus.RUNNING.value)
                .order_by(col(QueueJob.start_time).asc(), col(QueueJob.id).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def list_by_status(self, status: JobStatus) -> list[JobView]:
        with self._session() as session:
            rows = session.exec(
                select(QueueJob)
                .where(QueueJob.status == status.value)
                .order_by(col(QueueJob.id).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def queue_length(self) -> int:
        return self.count_by_status((JobStatus.WAITING,))

    def queue_position(self, job_id: int) -> int:
        """1-based dispatch position of a waiting job."""

        for position, job in enumerate(self.list_waiting(), start=1):
            if job.job_id == job_id:
                return position
        raise NotFoundError(job_id)

    def get_job_details(self, job_id: int) -> JobDetails:
        """Return job with its transition history."""

        with self._session() as session:
            row = session.get(QueueJob, job_id)
            if row is None:
                raise NotFoundError(job_id)
            job = _to_job_view(row)
            event_rows = session.exec(
                select(QueueJobEvent)
                .where(QueueJobEvent.job_id == job_id)
                .order_by(col(QueueJobEvent.created_at).asc(), col(QueueJobEvent.id).asc()),
            ).all()

        events: list[JobEventView] = []
        for event_row in event_rows:
            details: dict[str, Any] = {}
            if event_row.details_json:
                parsed = json.loads(event_row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                JobEventView(
                    event_id=event_row.id or 0,
                    job_id=event_row.job_id,
                    event_type=event_row.event_type,
                    status_from=(
                        JobStatus(event_row.status_from)
                        if event_row.status_from is not None
                        else None
                    ),
                    status_to=(
                        JobStatus(event_row.status_to) if event_row.status_to is not None else None
                    ),
                    created_at=to_utc_aware_datetime(event_row.created_at),
                    details=details,
                ),
            )
        return JobDetails(job=job, events=events)

    # -- state machine --------------------------------------------------------

    def transition(  # noqa: PLR0913
        self,
        job_id: int,
        new_status: JobStatus,
        *,
        expected: Iterable[JobStatus] | None = None,
        pid: int | None | _Unset = UNSET,
        start_time: datetime | None | _Unset = UNSET,
        end_time: datetime | None | _Unset = UNSET,
        increment_start_attempts: bool = False,
        event_type: str | None = None,
        details: dict[str, object] | None = None,
    ) -> JobView:
        """Move a job along one state machine edge.

        Raises ConflictError when the edge is not allowed from the job's current
        status, when the job is gone, or when another process changed the status
        between the read and the guarded update. A move back to WAITING merges
        into an identical waiting command instead (see :meth:`mark_waiting`).
        """

        sources = allowed_sources(new_status)
        if expected is not None:
            sources = sources & frozenset(expected)
        if not sources:
            raise ConflictError(
                f"No allowed transition into {new_status.value} for job {job_id}.",
                job_id=job_id,
            )

        values: dict[str, object] = {"status": new_status.value}
        if not isinstance(pid, _Unset):
            values["pid"] = pid
        if not isinstance(start_time, _Unset):
            values["start_time"] = to_db_datetime(start_time) if start_time else None
        if not isinstance(end_time, _Unset):
            values["end_time"] = to_db_datetime(end_time) if end_time else None
        if increment_start_attempts:
            values["start_attempts"] = col(QueueJob.start_attempts) + 1

        with self._session() as session:
            current_raw = session.exec(
                select(QueueJob.status).where(QueueJob.id == job_id),
            ).one_or_none()
            if current_raw is None:
                raise ConflictError(
                    f"Job {job_id} no longer exists, cannot move to {new_status.value}.",
                    job_id=job_id,
                )
            current = JobStatus(current_raw)
            if current not in sources:
                raise ConflictError(
                    f"Job {job_id} is {current.value}, cannot move to {new_status.value}.",
                    job_id=job_id,
                )

            if new_status == JobStatus.RUNNING and isinstance(pid, int):
                self._release_reused_pid(session=session, job_id=job_id, pid=pid)
            if new_status == JobStatus.WAITING:
                merged = self._merge_into_waiting(session=session, job_id=job_id, current=current)
                if merged is not None:
                    return merged

            try:
                result = session.exec(
                    sa_update(QueueJob)
                    .where(
                        col(QueueJob.id) == job_id,
                        col(QueueJob.status) == current.value,
                    )
                    .values(**values),
                )
            except IntegrityError as error:
                session.rollback()
                raise ConflictError(
                    f"Job {job_id} cannot move to {new_status.value}: {error.orig}",
                    job_id=job_id,
                ) from error
            if result.rowcount != 1:
                session.rollback()
                raise ConflictError(
                    f"Job {job_id} changed concurrently while moving to {new_status.value}.",
                    job_id=job_id,
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type or new_status.value.lower(),
                status_from=current,
                status_to=new_status,
                details=dict(details or {}, **({"pid": pid} if isinstance(pid, int) else {})),
            )
            session.commit()
            row = session.get(QueueJob, job_id)
            if row is None:  # pragma: no cover - deleted right after commit
                raise ConflictError(f"Job {job_id} vanished after update.", job_id=job_id)
            return _to_job_view(row)

    def mark_starting(self, job_id: int) -> JobView:
        """Claim a waiting job for dispatch."""

        return self.transition(
            job_id,
            JobStatus.STARTING,
            expected=(JobStatus.WAITING,),
            increment_start_attempts=True,
            event_type="dispatch_claimed",
        )

    def mark_running(self, job_id: int, pid: int) -> JobView:
        return self.transition(
            job_id,
            JobStatus.RUNNING,
            pid=pid,
            start_time=utc_now(),
            end_time=None,
        )

    def mark_done(self, job_id: int, *, exit_code: int = 0) -> JobView:
        return self.transition(
            job_id,
            JobStatus.DONE,
            pid=None,
            end_time=utc_now(),
            details={"exit_code": exit_code},
        )

    def mark_failed(
        self,
        job_id: int,
        *,
        exit_code: int | None = None,
        reason: str | None = None,
    ) -> JobView:
        details: dict[str, object] = {"exit_code": exit_code}
        if reason:
            details["reason"] = reason
        return self.transition(
            job_id,
            JobStatus.FAILED,
            pid=None,
            end_time=utc_now(),
            details=details,
        )

    def mark_start_failed(self, job_id: int) -> JobView:
        return self.transition(job_id, JobStatus.START_FAILED, end_time=utc_now())

    def mark_stalled(self, job_id: int) -> JobView:
        return self.transition(job_id, JobStatus.STALLED, pid=None, end_time=utc_now())

    def mark_waiting(
        self,
        job_id: int,
        *,
        expected: Iterable[JobStatus] | None = None,
        event_type: str = "requeued",
    ) -> JobView:
        """Send a job back to the queue.

        When the same command is already waiting, the job is merged into that
        row, which keeps the higher priority, and the surviving job is returned.
        """

        return self.transition(
            job_id,
            JobStatus.WAITING,
            expected=expected,
            pid=None,
            start_time=None,
            end_time=None,
            event_type=event_type,
        )

    # -- internals ------------------------------------------------------------

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except OperationalError as error:
            raise StoreUnavailableError(
                f"Job store unavailable ({self.db_path}): {error}",
            ) from error

    def _release_reused_pid(self, *, session: Session, job_id: int, pid: int) -> None:
        # The pid now belongs to a fresh process, so whatever RUNNING row still
        # holds it lost its process without recording an exit.
        stale_ids = session.exec(
            select(QueueJob.id).where(
                QueueJob.status == JobStatus.RUNNING.value,
                QueueJob.pid == pid,
                QueueJob.id != job_id,
            ),
        ).all()
        now = to_db_datetime(utc_now())
        for stale_id in stale_ids:
            if stale_id is None:
                continue
            session.exec(
                sa_update(QueueJob)
                .where(
                    col(QueueJob.id) == stale_id,
                    col(QueueJob.status) == JobStatus.RUNNING.value,
                )
                .values(status=JobStatus.STALLED.value, pid=None, end_time=now),
            )
            self._add_event(
                session=session,
                job_id=stale_id,
                event_type="pid_reused",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.STALLED,
                details={"pid": pid, "reused_by_job_id": job_id},
            )

    def _merge_into_waiting(
        self,
        *,
        session: Session,
        job_id: int,
        current: JobStatus,
    ) -> JobView | None:
        """Fold a re-queued job into the waiting job with the same command.

        Returns the surviving waiting job, or None when there is nothing to
        merge with.
        """

        row = session.get(QueueJob, job_id)
        if row is None:
            return None
        survivor = session.exec(
            select(QueueJob).where(
                QueueJob.command == row.command,
                QueueJob.status == JobStatus.WAITING.value,
                QueueJob.id != job_id,
            ),
        ).one_or_none()
        if survivor is None:
            return None

        previous_priority = survivor.priority
        survivor.priority = max(survivor.priority, row.priority)
        session.add(survivor)
        result = session.exec(
            sa_delete(QueueJob).where(
                col(QueueJob.id) == job_id,
                col(QueueJob.status) == current.value,
            ),
        )
        if result.rowcount != 1:
            session.rollback()
            raise ConflictError(
                f"Job {job_id} changed concurrently while merging into the waiting queue.",
                job_id=job_id,
            )
        self._add_event(
            session=session,
            job_id=_require_id(survivor),
            event_type="merged",
            status_from=JobStatus.WAITING,
            status_to=JobStatus.WAITING,
            details={
                "merged_job_id": job_id,
                "merged_from": current.value,
                "priority_from": previous_priority,
                "priority_to": survivor.priority,
            },
        )
        session.commit()
        session.refresh(survivor)
        return _to_job_view(survivor)

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: int,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            QueueJobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def validate_priority(priority: int | None) -> int:
    """Resolve the default and reject anything outside 1..5."""

    if priority is None:
        return int(DEFAULT_PRIORITY)
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise ValidationError(f"Priority must be an integer, got {priority!r}.")
    if not JobPriority.LOWEST <= priority <= JobPriority.HIGHEST:
        raise ValidationError(
            f"Priority must be between {int(JobPriority.LOWEST)}-{int(JobPriority.HIGHEST)}, "
            f"got {priority}.",
        )
    return priority


def _require_id(row: QueueJob) -> int:
    if row.id is None:
        raise RuntimeError("Job row has no id after flush.")
    return row.id


def _to_job_view(row: QueueJob) -> JobView:
    return JobView(
        job_id=_require_id(row),
        command=row.command,
        priority=row.priority,
        status=JobStatus(row.status),
        pid=row.pid,
        insert_time=to_utc_aware_datetime(row.insert_time),
        start_time=to_utc_aware_datetime(row.start_time) if row.start_time is not None else None,
        end_time=to_utc_aware_datetime(row.end_time) if row.end_time is not None else None,
        start_attempts=row.start_attempts,
    )

"""SQLModel ORM tables for queue storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, SmallInteger, Text, text
from sqlmodel import Field, SQLModel


class QueueJob(SQLModel, table=True):
    __tablename__ = "queue_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_queue_jobs_dispatch", "status", "priority", "insert_time"),
        Index(
            "uq_queue_jobs_waiting_command",
            "command",
            unique=True,
            sqlite_where=text("status = 'WAITING'"),
        ),
        Index(
            "uq_queue_jobs_running_pid",
            "pid",
            unique=True,
            sqlite_where=text("status = 'RUNNING'"),
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    command: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = Field(default=3, sa_column=Column(SmallInteger, nullable=False))
    status: str = Field(index=True)
    pid: int | None = None
    start_attempts: int = Field(default=0)
    insert_time: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    start_time: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    end_time: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class QueueJobEvent(SQLModel, table=True):
    __tablename__ = "queue_job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_queue_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: int = Field(
        sa_column=Column(
            ForeignKey("queue_jobs.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))

"""Initial queue jobs schema."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261005_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "queue_jobs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("command", sa.Text(), nullable=False),
        sa.Column("priority", sa.SmallInteger(), nullable=False, server_default="3"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("pid", sa.Integer(), nullable=True),
        sa.Column("insert_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_queue_jobs_status", "queue_jobs", ["status"])
    op.create_index(
        "idx_queue_jobs_dispatch",
        "queue_jobs",
        ["status", "priority", "insert_time"],
    )
    op.create_index(
        "uq_queue_jobs_waiting_command",
        "queue_jobs",
        ["command"],
        unique=True,
        sqlite_where=sa.text("status = 'WAITING'"),
    )
    op.create_index(
        "uq_queue_jobs_running_pid",
        "queue_jobs",
        ["pid"],
        unique=True,
        sqlite_where=sa.text("status = 'RUNNING'"),
    )


def downgrade() -> None:
    op.drop_index("uq_queue_jobs_running_pid", table_name="queue_jobs")
    op.drop_index("uq_queue_jobs_waiting_command", table_name="queue_jobs")
    op.drop_index("idx_queue_jobs_dispatch", table_name="queue_jobs")
    op.drop_index("ix_queue_jobs_status", table_name="queue_jobs")
    op.drop_table("queue_jobs")

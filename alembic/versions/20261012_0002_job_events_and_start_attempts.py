"""Add job transition events and start attempt counter."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261012_0002"
down_revision = "20261005_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("queue_jobs") as batch_op:
        batch_op.add_column(
            sa.Column("start_attempts", sa.Integer(), nullable=False, server_default="0"),
        )
    op.execute(
        sa.text(
            """
            UPDATE queue_jobs
            SET start_attempts = 1
            WHERE status <> 'WAITING'
            """,
        ),
    )

    op.create_table(
        "queue_job_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["queue_jobs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_queue_job_events_job_id", "queue_job_events", ["job_id"])
    op.create_index(
        "idx_queue_job_events_job_time",
        "queue_job_events",
        ["job_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_queue_job_events_job_time", table_name="queue_job_events")
    op.drop_index("ix_queue_job_events_job_id", table_name="queue_job_events")
    op.drop_table("queue_job_events")
    with op.batch_alter_table("queue_jobs") as batch_op:
        batch_op.drop_column("start_attempts")

"""create jobs and job_events tables

Revision ID: 4f1c2a9e7b30
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "4f1c2a9e7b30"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
  """Create the job record and audit event tables."""
  op.create_table(
    "jobs",
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("job_kind", sa.String(), nullable=False),
    sa.Column("owner_id", sa.String(), nullable=False),
    sa.Column("book_id", sa.String(), nullable=True),
    sa.Column("label", sa.String(), nullable=True),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("external_job_id", sa.String(), nullable=False),
    sa.Column("progress", sa.Float(), nullable=False, server_default=sa.text("0")),
    sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("1")),
    sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("result_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("error", sa.Text(), nullable=True),
    sa.Column("error_code", sa.String(), nullable=True),
    sa.Column("logs_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'[]'::jsonb")),
    sa.Column("created_at", sa.String(), nullable=False),
    sa.Column("updated_at", sa.String(), nullable=False),
    sa.Column("started_at", sa.String(), nullable=True),
    sa.Column("completed_at", sa.String(), nullable=True),
    sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.PrimaryKeyConstraint("job_id"),
    sa.UniqueConstraint("external_job_id"),
    sa.CheckConstraint("status IN ('queued', 'starting', 'processing', 'succeeded', 'failed', 'canceled')", name="ck_jobs_status"),
    sa.CheckConstraint("job_kind IN ('training', 'storybook')", name="ck_jobs_kind"),
    sa.CheckConstraint("progress >= 0 AND progress <= 100", name="ck_jobs_progress_range"),
  )
  op.create_index("ix_jobs_owner_id", "jobs", ["owner_id"], unique=False)
  op.create_index("ix_jobs_book_id", "jobs", ["book_id"], unique=False)
  op.create_index("ix_jobs_status", "jobs", ["status"], unique=False)
  op.create_index("ix_jobs_kind_status", "jobs", ["job_kind", "status"], unique=False)
  op.create_index("ix_jobs_owner_kind_status", "jobs", ["owner_id", "job_kind", "status"], unique=False)

  op.create_table(
    "job_events",
    sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("event_type", sa.String(), nullable=False),
    sa.Column("message", sa.Text(), nullable=False),
    sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("event_timestamp", sa.String(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index("ix_job_events_job_id", "job_events", ["job_id"], unique=False)
  op.create_index("ix_job_events_event_type", "job_events", ["event_type"], unique=False)


def downgrade() -> None:
  op.drop_index("ix_job_events_event_type", table_name="job_events")
  op.drop_index("ix_job_events_job_id", table_name="job_events")
  op.drop_table("job_events")
  op.drop_index("ix_jobs_owner_kind_status", table_name="jobs")
  op.drop_index("ix_jobs_kind_status", table_name="jobs")
  op.drop_index("ix_jobs_status", table_name="jobs")
  op.drop_index("ix_jobs_book_id", table_name="jobs")
  op.drop_index("ix_jobs_owner_id", table_name="jobs")
  op.drop_table("jobs")

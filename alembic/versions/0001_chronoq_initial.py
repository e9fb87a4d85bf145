"""Initial job store schema: jobs and their attempt history.

Revision ID: 0001_chronoq_initial
Revises: 
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_chronoq_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    job_status = sa.Enum(
        "pending",
        "claimed",
        "queued",
        "running",
        "succeeded",
        "failed",
        "retrying",
        "dead_lettered",
        "cancelled",
        name="jobstatus",
    )
    attempt_outcome = sa.Enum("success", "failure", "timeout", name="attemptoutcome")

    op.create_table(
        "jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("job_type", sa.String(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("schedule", sa.String(), nullable=False),
        sa.Column("status", job_status, nullable=False, server_default="pending"),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("occurrence_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("lease_owner", sa.String(), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_jobs_job_type", "jobs", ["job_type"])
    op.create_index("ix_jobs_status", "jobs", ["status"])
    op.create_index("ix_jobs_next_run_at", "jobs", ["next_run_at"])
    op.create_index("ix_jobs_lease_owner", "jobs", ["lease_owner"])
    # Lease reaper scan
    op.create_index("ix_jobs_lease_expires_at", "jobs", ["lease_expires_at"])
    # Due-job claim scan
    op.create_index("ix_jobs_status_next_run_at", "jobs", ["status", "next_run_at"])

    op.create_table(
        "job_attempts",
        sa.Column("job_id", sa.String(), primary_key=True),
        sa.Column("attempt_number", sa.Integer(), primary_key=True),
        sa.Column("occurrence_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("occurrence_attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("outcome", attempt_outcome, nullable=True),
        sa.Column("error_detail", sa.Text(), nullable=True),
    )
    op.create_index("ix_job_attempts_worker_id", "job_attempts", ["worker_id"])
    op.create_index("ix_job_attempts_outcome", "job_attempts", ["outcome"])


def downgrade() -> None:
    op.drop_table("job_attempts")
    op.drop_table("jobs")

    op.execute("DROP TYPE IF EXISTS attemptoutcome")
    op.execute("DROP TYPE IF EXISTS jobstatus")

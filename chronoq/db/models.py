"""
Persisted schema: the `jobs` table and its `job_attempts` history.

Each table has a non-table twin (`JobSnapshot`, `AttemptRecord`) sharing the
same fields. Stores hand out snapshots, never live ORM rows, so callers can
hold on to them across sessions and compare versions.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import DateTime, Enum as SAEnum, Index, Text
from sqlalchemy.types import TypeDecorator
from sqlmodel import JSON, Column, Field, SQLModel

from ..control_plane.state_machine import AttemptOutcome, JobStatus


def utcnow() -> datetime:
    # Keep timezone-aware timestamps for lease correctness.
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamps on every backend.

    SQLite drops tzinfo on the way in and hands back naive values; re-attach
    UTC so lease comparisons never mix naive and aware datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def _values(enum_cls):
    return [member.value for member in enum_cls]


class JobBase(SQLModel):
    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    job_type: str = Field(index=True)
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    schedule: str

    status: JobStatus = Field(
        default=JobStatus.PENDING,
        sa_column=Column(
            SAEnum(JobStatus, name="jobstatus", values_callable=_values),
            nullable=False,
            index=True,
        ),
    )
    next_run_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime(), index=True))
    occurrence_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime()))

    attempt_count: int = 0
    total_attempts: int = 0
    max_attempts: int = 3

    lease_owner: Optional[str] = Field(default=None, index=True)
    lease_expires_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime(), index=True))

    version: int = 1
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text))

    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(UTCDateTime(), nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=Column(UTCDateTime(), nullable=False))


class Job(JobBase, table=True):
    __tablename__ = "jobs"
    # Claim query: status = pending AND next_run_at <= now ORDER BY next_run_at
    __table_args__ = (Index("ix_jobs_status_next_run_at", "status", "next_run_at"),)


class JobSnapshot(JobBase):
    """Immutable-by-convention copy of a job row."""

    @property
    def dedup_key(self) -> str:
        occurrence = self.occurrence_at.isoformat() if self.occurrence_at else "none"
        return f"{self.id}:{occurrence}"


class AttemptBase(SQLModel):
    """
    One execution try.

    `attempt_number` increases across the job's whole life (it mirrors
    `jobs.total_attempts`); `occurrence_attempt` restarts at 1 for every
    scheduled occurrence.
    """

    job_id: str = Field(primary_key=True)
    attempt_number: int = Field(primary_key=True)
    occurrence_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime()))
    occurrence_attempt: int = 1

    worker_id: Optional[str] = Field(default=None, index=True)
    started_at: datetime = Field(default_factory=utcnow, sa_column=Column(UTCDateTime(), nullable=False))
    finished_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime()))

    outcome: Optional[AttemptOutcome] = Field(
        default=None,
        sa_column=Column(SAEnum(AttemptOutcome, name="attemptoutcome", values_callable=_values), index=True),
    )
    error_detail: Optional[str] = Field(default=None, sa_column=Column(Text))


class JobAttempt(AttemptBase, table=True):
    __tablename__ = "job_attempts"


class AttemptRecord(AttemptBase):
    pass

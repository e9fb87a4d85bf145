"""
Job state machine.

Statuses, the allowed transition table, and one planner per transition.
A planner takes the current job snapshot and returns the column changes for
the transition (always including the bumped ``version``). Stores apply the
changes with a compare-and-swap on the old version, so every backend shares
the exact same semantics and only differs in how it persists atomically.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, Mapping, Optional

from ..exceptions import InvalidTransitionError
from .retry_policy import RetryDecision
from .schedule import next_fire_time, parse_schedule

if TYPE_CHECKING:
    from ..db.models import JobSnapshot


class JobStatus(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRYING = "retrying"
    DEAD_LETTERED = "dead_lettered"
    CANCELLED = "cancelled"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.CLAIMED, JobStatus.CANCELLED}),
    JobStatus.CLAIMED: frozenset({JobStatus.QUEUED, JobStatus.PENDING, JobStatus.CANCELLED}),
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.PENDING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({
        JobStatus.SUCCEEDED,
        JobStatus.PENDING,
        JobStatus.RETRYING,
        JobStatus.DEAD_LETTERED,
    }),
    JobStatus.RETRYING: frozenset({JobStatus.PENDING, JobStatus.CANCELLED}),
    # Manual replay by an operator.
    JobStatus.DEAD_LETTERED: frozenset({JobStatus.PENDING}),
    JobStatus.SUCCEEDED: frozenset(),
    # Kept for schema compatibility; nothing transitions into it.
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

LEASED_STATUSES = frozenset({JobStatus.CLAIMED, JobStatus.QUEUED, JobStatus.RUNNING})

EDITABLE_FIELDS = frozenset({"payload", "schedule", "max_attempts", "next_run_at", "occurrence_at"})


def can_transition(source: JobStatus, target: JobStatus) -> bool:
    return target in TRANSITIONS.get(source, frozenset())


def ensure_transition(job: "JobSnapshot", target: JobStatus) -> None:
    if not can_transition(job.status, target):
        raise InvalidTransitionError(job.id, job.status.value, target.value)


def _stamp(job: "JobSnapshot", now: datetime, **changes: Any) -> Dict[str, Any]:
    changes["version"] = job.version + 1
    changes["updated_at"] = now
    return changes


def _release_lease() -> Dict[str, Any]:
    return {"lease_owner": None, "lease_expires_at": None}


def claim(job: "JobSnapshot", *, claimant_id: str, now: datetime, lease_ttl_seconds: float) -> Dict[str, Any]:
    ensure_transition(job, JobStatus.CLAIMED)
    return _stamp(
        job,
        now,
        status=JobStatus.CLAIMED,
        lease_owner=claimant_id,
        lease_expires_at=now + timedelta(seconds=lease_ttl_seconds),
    )


def queued(job: "JobSnapshot", *, now: datetime) -> Dict[str, Any]:
    ensure_transition(job, JobStatus.QUEUED)
    return _stamp(job, now, status=JobStatus.QUEUED)


def release_claim(job: "JobSnapshot", *, now: datetime) -> Dict[str, Any]:
    """Claimed -> Pending after a synchronous enqueue failure. ``next_run_at`` is untouched so the job stays due."""
    if job.status != JobStatus.CLAIMED:
        raise InvalidTransitionError(job.id, job.status.value, JobStatus.PENDING.value)
    return _stamp(job, now, status=JobStatus.PENDING, **_release_lease())


def running(job: "JobSnapshot", *, worker_id: str, now: datetime, lease_ttl_seconds: float) -> Dict[str, Any]:
    ensure_transition(job, JobStatus.RUNNING)
    return _stamp(
        job,
        now,
        status=JobStatus.RUNNING,
        lease_owner=worker_id,
        lease_expires_at=now + timedelta(seconds=lease_ttl_seconds),
        attempt_count=job.attempt_count + 1,
        total_attempts=job.total_attempts + 1,
    )


def outcome(
    job: "JobSnapshot",
    *,
    result: AttemptOutcome,
    now: datetime,
    retry: Optional[RetryDecision],
    error_detail: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Running -> Succeeded | Pending (recurring success) | Retrying | DeadLettered.

    ``retry`` is the retry policy's decision for a failed attempt; a missing
    or terminal decision dead-letters the job.
    """
    if job.status != JobStatus.RUNNING:
        raise InvalidTransitionError(job.id, job.status.value, "outcome")

    if result == AttemptOutcome.SUCCESS:
        schedule = parse_schedule(job.schedule)
        if schedule.recurring:
            upcoming = next_fire_time(schedule, max(now, job.occurrence_at or now))
            return _stamp(
                job,
                now,
                status=JobStatus.PENDING,
                next_run_at=upcoming,
                occurrence_at=upcoming,
                attempt_count=0,
                last_error=None,
                **_release_lease(),
            )
        return _stamp(
            job,
            now,
            status=JobStatus.SUCCEEDED,
            next_run_at=None,
            last_error=None,
            **_release_lease(),
        )

    if retry is None or retry.is_terminal:
        return _stamp(
            job,
            now,
            status=JobStatus.DEAD_LETTERED,
            next_run_at=None,
            last_error=error_detail,
            **_release_lease(),
        )
    return _stamp(
        job,
        now,
        status=JobStatus.RETRYING,
        next_run_at=now + timedelta(seconds=retry.delay),
        last_error=error_detail,
        **_release_lease(),
    )


def lease_expired(job: "JobSnapshot", *, now: datetime) -> Dict[str, Any]:
    """
    Crash recovery. Claimed/Queued jobs go straight back to Pending. A Running
    job's lost attempt counts against its budget: it dead-letters when the
    budget is spent, otherwise it is due again immediately.
    """
    if job.status not in LEASED_STATUSES:
        raise InvalidTransitionError(job.id, job.status.value, JobStatus.PENDING.value)
    if job.status == JobStatus.RUNNING and job.attempt_count >= job.max_attempts:
        return _stamp(
            job,
            now,
            status=JobStatus.DEAD_LETTERED,
            next_run_at=None,
            last_error="lease_expired_max_attempts",
            **_release_lease(),
        )
    changes = _stamp(job, now, status=JobStatus.PENDING, next_run_at=now, **_release_lease())
    if job.status == JobStatus.RUNNING:
        changes["last_error"] = "lease_expired"
    return changes


def retry_due(job: "JobSnapshot", *, now: datetime) -> Dict[str, Any]:
    if job.status != JobStatus.RETRYING:
        raise InvalidTransitionError(job.id, job.status.value, JobStatus.PENDING.value)
    return _stamp(job, now, status=JobStatus.PENDING)


def cancel(job: "JobSnapshot", *, now: datetime) -> Dict[str, Any]:
    ensure_transition(job, JobStatus.CANCELLED)
    return _stamp(job, now, status=JobStatus.CANCELLED, next_run_at=None, **_release_lease())


def replay(job: "JobSnapshot", *, now: datetime) -> Dict[str, Any]:
    if job.status != JobStatus.DEAD_LETTERED:
        raise InvalidTransitionError(job.id, job.status.value, JobStatus.PENDING.value)
    return _stamp(
        job,
        now,
        status=JobStatus.PENDING,
        next_run_at=now,
        attempt_count=0,
        last_error=None,
    )


def edit(job: "JobSnapshot", changes: Mapping[str, Any], *, now: datetime) -> Dict[str, Any]:
    """Operator edits. In-flight jobs are owned by a lease holder and cannot be edited."""
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"fields not editable: {', '.join(sorted(unknown))}")
    if job.status in LEASED_STATUSES:
        raise InvalidTransitionError(job.id, job.status.value, "edit")
    return _stamp(job, now, **dict(changes))

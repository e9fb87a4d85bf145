"""
In-process JobStore.

Same contract and the same state-machine planners as the SQL store; the
compare-and-swap is a version check under one asyncio lock. Useful for tests
and single-process deployments only: nothing is shared across processes.
"""
from __future__ import annotations

import asyncio
import random
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import structlog

from ..db.models import AttemptRecord, JobSnapshot, utcnow
from ..exceptions import ConflictError, JobNotFoundError
from . import state_machine
from .job_store import JobStore, Planner, PolicyResolver
from .state_machine import AttemptOutcome, JobStatus

logger = structlog.get_logger(__name__)


class InMemoryJobStore(JobStore):
    def __init__(self, policies: Optional[PolicyResolver] = None, rng: Optional[random.Random] = None) -> None:
        super().__init__(policies=policies, rng=rng)
        self._jobs: Dict[str, JobSnapshot] = {}
        self._attempts: Dict[Tuple[str, int], AttemptRecord] = {}
        self._lock = asyncio.Lock()

    def _get(self, job_id: str) -> JobSnapshot:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _swap(self, current: JobSnapshot, changes: Dict) -> Optional[JobSnapshot]:
        stored = self._jobs.get(current.id)
        if stored is None or stored.version != current.version:
            return None
        updated = current.model_copy(update=changes)
        self._jobs[current.id] = updated
        return updated

    async def _transition(self, job_id: str, version: Optional[int], planner: Planner) -> JobSnapshot:
        async with self._lock:
            current = self._get(job_id)
            self._check_version(current, version)
            changes = planner(current)
            updated = self._swap(current, changes)
        if updated is None:
            raise ConflictError(job_id, version)
        self._log_transition("job_transition", current, changes)
        return updated

    # -------------------------
    # Job API boundary
    # -------------------------

    async def insert_job(self, job: JobSnapshot) -> JobSnapshot:
        async with self._lock:
            if job.id in self._jobs:
                raise ConflictError(job.id, message=f"Job {job.id} already exists")
            self._jobs[job.id] = job
        logger.info("job_created", job_id=job.id, job_type=job.job_type, next_run_at=str(job.next_run_at))
        return job

    async def get_job(self, job_id: str) -> Optional[JobSnapshot]:
        return self._jobs.get(job_id)

    async def list_jobs(
        self,
        *,
        status: Optional[JobStatus] = None,
        job_type: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[JobSnapshot]:
        jobs = [
            job for job in self._jobs.values()
            if (status is None or job.status == status) and (job_type is None or job.job_type == job_type)
        ]
        jobs.sort(key=lambda job: (job.created_at, job.id))
        return jobs[offset:offset + limit]

    async def list_attempts(self, job_id: str) -> List[AttemptRecord]:
        attempts = [a for (jid, _), a in self._attempts.items() if jid == job_id]
        return sorted(attempts, key=lambda a: a.attempt_number)

    # -------------------------
    # Claim protocol
    # -------------------------

    async def claim_due_jobs(
        self,
        now: datetime,
        batch_size: int,
        claimant_id: str,
        lease_ttl_seconds: float,
    ) -> List[JobSnapshot]:
        claimed: List[JobSnapshot] = []
        async with self._lock:
            due = sorted(
                (
                    job for job in self._jobs.values()
                    if job.status == JobStatus.PENDING
                    and job.next_run_at is not None
                    and job.next_run_at <= now
                    and (job.lease_expires_at is None or job.lease_expires_at <= now)
                ),
                key=lambda job: (job.next_run_at, job.id),
            )
            for current in due[:batch_size]:
                changes = state_machine.claim(
                    current,
                    claimant_id=claimant_id,
                    now=now,
                    lease_ttl_seconds=lease_ttl_seconds,
                )
                updated = self._swap(current, changes)
                if updated is not None:
                    claimed.append(updated)
        for job in claimed:
            logger.info("job_claimed", job_id=job.id, claimant_id=claimant_id, version=job.version)
        return claimed

    async def mark_running(
        self,
        job_id: str,
        version: int,
        worker_id: str,
        lease_ttl_seconds: float,
        now: Optional[datetime] = None,
    ) -> JobSnapshot:
        now = now or utcnow()
        async with self._lock:
            current = self._get(job_id)
            self._check_version(current, version)
            changes = state_machine.running(current, worker_id=worker_id, now=now, lease_ttl_seconds=lease_ttl_seconds)
            updated = self._swap(current, changes)
            if updated is None:
                raise ConflictError(job_id, version)
            self._attempts[(job_id, updated.total_attempts)] = AttemptRecord(
                job_id=job_id,
                attempt_number=updated.total_attempts,
                occurrence_at=updated.occurrence_at,
                occurrence_attempt=updated.attempt_count,
                worker_id=worker_id,
                started_at=now,
            )
        self._log_transition("job_started", current, changes, worker_id=worker_id, attempt=updated.attempt_count)
        return updated

    async def record_outcome(
        self,
        job_id: str,
        version: int,
        outcome: AttemptOutcome,
        error_detail: Optional[str] = None,
        *,
        retryable: bool = True,
        worker_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> JobSnapshot:
        now = now or utcnow()
        async with self._lock:
            current = self._get(job_id)
            self._check_version(current, version, worker_id)
            changes = self._outcome_changes(current, outcome, error_detail, retryable, now)
            updated = self._swap(current, changes)
            if updated is None:
                raise ConflictError(job_id, version)
            self._finish_attempt(current, outcome, error_detail, now)
        self._log_transition("job_outcome_recorded", current, changes, outcome=outcome.value)
        return updated

    def _finish_attempt(
        self,
        job: JobSnapshot,
        outcome: AttemptOutcome,
        error_detail: Optional[str],
        now: datetime,
    ) -> None:
        key = (job.id, job.total_attempts)
        attempt = self._attempts.get(key) or AttemptRecord(
            job_id=job.id,
            attempt_number=job.total_attempts,
            occurrence_at=job.occurrence_at,
            occurrence_attempt=job.attempt_count,
            worker_id=job.lease_owner,
            started_at=now,
        )
        self._attempts[key] = attempt.model_copy(
            update={"finished_at": now, "outcome": outcome, "error_detail": error_detail}
        )

    async def promote_due_retries(self, now: datetime) -> int:
        promoted = 0
        async with self._lock:
            for current in list(self._jobs.values()):
                if current.status != JobStatus.RETRYING or current.next_run_at is None or current.next_run_at > now:
                    continue
                if self._swap(current, state_machine.retry_due(current, now=now)) is not None:
                    promoted += 1
        if promoted:
            logger.info("retries_promoted", count=promoted)
        return promoted

    async def reclaim_expired_leases(self, now: datetime) -> int:
        recovered = []
        async with self._lock:
            for current in list(self._jobs.values()):
                if current.status not in state_machine.LEASED_STATUSES:
                    continue
                if current.lease_expires_at is None or current.lease_expires_at >= now:
                    continue
                changes = state_machine.lease_expired(current, now=now)
                if self._swap(current, changes) is None:
                    continue
                if current.status == JobStatus.RUNNING:
                    self._finish_attempt(current, AttemptOutcome.TIMEOUT, "lease_expired", now)
                recovered.append((current, changes))
        for current, changes in recovered:
            self._log_transition("lease_reclaimed", current, changes, lease_owner=current.lease_owner)
        return len(recovered)

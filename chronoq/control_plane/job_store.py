"""
Job Store

Durable record of every job plus the atomic claim/update primitives the
scheduler and workers coordinate through. There is no cross-process lock:
every state-changing write is a compare-and-swap on `version`, so a stale
writer is rejected with `ConflictError` instead of overwriting newer state.

`JobStore` is the backend-neutral contract and carries the shared transition
logic; `SqlJobStore` persists through SQLAlchemy (PostgreSQL in production,
where the claim query also uses FOR UPDATE SKIP LOCKED so concurrent
schedulers do not even contend for the same rows).
"""
from __future__ import annotations

import random
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional

import structlog
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from ..db.database import Database
from ..db.models import AttemptRecord, Job, JobAttempt, JobSnapshot, utcnow
from ..exceptions import ConflictError, JobNotFoundError, LeaseExpiredError, StoreUnavailableError
from . import state_machine
from .retry_policy import RetryPolicy, next_retry
from .state_machine import AttemptOutcome, JobStatus

logger = structlog.get_logger(__name__)

PolicyResolver = Callable[[str], RetryPolicy]
Planner = Callable[[JobSnapshot], Dict[str, Any]]


class JobStore(ABC):
    """
    Backend-neutral contract.

    Every mutating call takes the version the caller last observed; a
    mismatch raises `ConflictError` and the caller must re-read and redo its
    higher-level operation rather than resubmit blindly.
    """

    def __init__(self, policies: Optional[PolicyResolver] = None, rng: Optional[random.Random] = None) -> None:
        self._policy_for = policies or (lambda job_type: RetryPolicy())
        self._rng = rng

    # -------------------------
    # Job API boundary
    # -------------------------

    @abstractmethod
    async def insert_job(self, job: JobSnapshot) -> JobSnapshot: ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[JobSnapshot]: ...

    @abstractmethod
    async def list_jobs(
        self,
        *,
        status: Optional[JobStatus] = None,
        job_type: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[JobSnapshot]: ...

    @abstractmethod
    async def list_attempts(self, job_id: str) -> List[AttemptRecord]: ...

    async def update_job(self, job_id: str, version: int, changes: Mapping[str, Any], now: Optional[datetime] = None) -> JobSnapshot:
        now = now or utcnow()
        return await self._transition(job_id, version, lambda job: state_machine.edit(job, changes, now=now))

    async def cancel_job(self, job_id: str, version: int, now: Optional[datetime] = None) -> JobSnapshot:
        now = now or utcnow()
        return await self._transition(job_id, version, lambda job: state_machine.cancel(job, now=now))

    async def replay_job(self, job_id: str, version: int, now: Optional[datetime] = None) -> JobSnapshot:
        now = now or utcnow()
        return await self._transition(job_id, version, lambda job: state_machine.replay(job, now=now))

    # -------------------------
    # Claim protocol
    # -------------------------

    @abstractmethod
    async def claim_due_jobs(
        self,
        now: datetime,
        batch_size: int,
        claimant_id: str,
        lease_ttl_seconds: float,
    ) -> List[JobSnapshot]:
        """
        Atomically claim up to `batch_size` Pending jobs with
        ``next_run_at <= now`` and no live lease, ordered by `next_run_at`.
        Two concurrent callers never both get the same job.
        """

    async def mark_queued(self, job_id: str, version: int, now: Optional[datetime] = None) -> JobSnapshot:
        now = now or utcnow()
        return await self._transition(job_id, version, lambda job: state_machine.queued(job, now=now))

    async def release_claim(self, job_id: str, version: int, now: Optional[datetime] = None) -> JobSnapshot:
        now = now or utcnow()
        return await self._transition(job_id, version, lambda job: state_machine.release_claim(job, now=now))

    @abstractmethod
    async def mark_running(
        self,
        job_id: str,
        version: int,
        worker_id: str,
        lease_ttl_seconds: float,
        now: Optional[datetime] = None,
    ) -> JobSnapshot:
        """Queued -> Running; opens the Attempt Record for this try."""

    @abstractmethod
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
        """
        Close the open Attempt Record, then either schedule the next
        occurrence (success) or ask the retry policy what happens next.
        """

    @abstractmethod
    async def promote_due_retries(self, now: datetime) -> int:
        """Retrying -> Pending for every job whose backoff has elapsed."""

    @abstractmethod
    async def reclaim_expired_leases(self, now: datetime) -> int:
        """Return jobs whose lease holder died to Pending (crash recovery)."""

    # -------------------------
    # Shared helpers
    # -------------------------

    @abstractmethod
    async def _transition(self, job_id: str, version: Optional[int], planner: Planner) -> JobSnapshot:
        """Load, version-check, plan, compare-and-swap."""

    def _outcome_changes(
        self,
        job: JobSnapshot,
        outcome: AttemptOutcome,
        error_detail: Optional[str],
        retryable: bool,
        now: datetime,
    ) -> Dict[str, Any]:
        retry = None
        if outcome != AttemptOutcome.SUCCESS and retryable:
            retry = next_retry(
                job.attempt_count,
                self._policy_for(job.job_type),
                max_attempts=job.max_attempts,
                rng=self._rng,
            )
        return state_machine.outcome(job, result=outcome, now=now, retry=retry, error_detail=error_detail)

    @staticmethod
    def _check_version(job: JobSnapshot, version: Optional[int], worker_id: Optional[str] = None) -> None:
        if version is None or job.version == version:
            return
        if worker_id is not None and job.lease_owner != worker_id:
            raise LeaseExpiredError(
                job.id,
                version,
                job.version,
                message=f"Lease on job {job.id} no longer held by {worker_id}",
            )
        raise ConflictError(job.id, version, job.version)

    @staticmethod
    def _log_transition(event: str, before: JobSnapshot, changes: Mapping[str, Any], **extra: Any) -> None:
        logger.info(
            event,
            job_id=before.id,
            job_type=before.job_type,
            from_status=before.status.value,
            to_status=changes.get("status", before.status).value,
            version=changes.get("version", before.version),
            **extra,
        )


class SqlJobStore(JobStore):
    def __init__(
        self,
        db: Database,
        policies: Optional[PolicyResolver] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        super().__init__(policies=policies, rng=rng)
        self.db = db

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.db.session() as session:
                async with session.begin():
                    yield session
        except (OperationalError, InterfaceError) as e:
            logger.error("job_store_unavailable", error=str(e))
            raise StoreUnavailableError(str(e)) from e

    @staticmethod
    async def _load(session: AsyncSession, job_id: str) -> JobSnapshot:
        stmt = (
            select(Job)
            .where(Job.id == job_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        row = (await session.execute(stmt)).scalars().first()
        if row is None:
            raise JobNotFoundError(job_id)
        return JobSnapshot.model_validate(row)

    @staticmethod
    async def _compare_and_swap(session: AsyncSession, job: JobSnapshot, changes: Dict[str, Any]) -> bool:
        result = await session.execute(
            update(Job)
            .where(Job.id == job.id, Job.version == job.version)
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _transition(self, job_id: str, version: Optional[int], planner: Planner) -> JobSnapshot:
        async with self._transaction() as session:
            current = await self._load(session, job_id)
            self._check_version(current, version)
            changes = planner(current)
            if not await self._compare_and_swap(session, current, changes):
                raise ConflictError(job_id, current.version)
        self._log_transition("job_transition", current, changes)
        return current.model_copy(update=changes)

    # -------------------------
    # Job API boundary
    # -------------------------

    async def insert_job(self, job: JobSnapshot) -> JobSnapshot:
        try:
            async with self._transaction() as session:
                session.add(Job(**job.model_dump()))
        except IntegrityError as e:
            raise ConflictError(job.id, message=f"Job {job.id} already exists") from e
        logger.info("job_created", job_id=job.id, job_type=job.job_type, next_run_at=str(job.next_run_at))
        return job

    async def get_job(self, job_id: str) -> Optional[JobSnapshot]:
        async with self._transaction() as session:
            row = await session.get(Job, job_id, populate_existing=True)
            return JobSnapshot.model_validate(row) if row else None

    async def list_jobs(
        self,
        *,
        status: Optional[JobStatus] = None,
        job_type: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[JobSnapshot]:
        stmt = select(Job)
        if status is not None:
            stmt = stmt.where(Job.status == status)
        if job_type is not None:
            stmt = stmt.where(Job.job_type == job_type)
        stmt = stmt.order_by(Job.created_at, Job.id).limit(limit).offset(offset)
        async with self._transaction() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [JobSnapshot.model_validate(row) for row in rows]

    async def list_attempts(self, job_id: str) -> List[AttemptRecord]:
        stmt = select(JobAttempt).where(JobAttempt.job_id == job_id).order_by(JobAttempt.attempt_number)
        async with self._transaction() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [AttemptRecord.model_validate(row) for row in rows]

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
        stmt = (
            select(Job)
            .where(
                Job.status == JobStatus.PENDING,
                Job.next_run_at.is_not(None),
                Job.next_run_at <= now,
                or_(Job.lease_expires_at.is_(None), Job.lease_expires_at <= now),
            )
            .order_by(Job.next_run_at, Job.id)
            .limit(batch_size)
            # Concurrent schedulers skip rows another claimant is holding.
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        claimed: List[JobSnapshot] = []
        async with self._transaction() as session:
            rows = (await session.execute(stmt)).scalars().all()
            for row in rows:
                current = JobSnapshot.model_validate(row)
                changes = state_machine.claim(
                    current,
                    claimant_id=claimant_id,
                    now=now,
                    lease_ttl_seconds=lease_ttl_seconds,
                )
                # Version CAS is what guarantees exclusivity on backends without SKIP LOCKED.
                if await self._compare_and_swap(session, current, changes):
                    claimed.append(current.model_copy(update=changes))

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
        async with self._transaction() as session:
            current = await self._load(session, job_id)
            self._check_version(current, version)
            changes = state_machine.running(current, worker_id=worker_id, now=now, lease_ttl_seconds=lease_ttl_seconds)
            if not await self._compare_and_swap(session, current, changes):
                raise ConflictError(job_id, version)
            updated = current.model_copy(update=changes)
            session.add(
                JobAttempt(
                    job_id=job_id,
                    attempt_number=updated.total_attempts,
                    occurrence_at=updated.occurrence_at,
                    occurrence_attempt=updated.attempt_count,
                    worker_id=worker_id,
                    started_at=now,
                )
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
        async with self._transaction() as session:
            current = await self._load(session, job_id)
            self._check_version(current, version, worker_id)
            changes = self._outcome_changes(current, outcome, error_detail, retryable, now)
            if not await self._compare_and_swap(session, current, changes):
                raise ConflictError(job_id, version)
            await self._finish_attempt(session, current, outcome, error_detail, now)
        self._log_transition("job_outcome_recorded", current, changes, outcome=outcome.value)
        return current.model_copy(update=changes)

    @staticmethod
    async def _finish_attempt(
        session: AsyncSession,
        job: JobSnapshot,
        outcome: AttemptOutcome,
        error_detail: Optional[str],
        now: datetime,
    ) -> None:
        attempt = await session.get(JobAttempt, (job.id, job.total_attempts))
        if attempt is None:
            attempt = JobAttempt(
                job_id=job.id,
                attempt_number=job.total_attempts,
                occurrence_at=job.occurrence_at,
                occurrence_attempt=job.attempt_count,
                worker_id=job.lease_owner,
                started_at=now,
            )
            session.add(attempt)
        attempt.finished_at = now
        attempt.outcome = outcome
        attempt.error_detail = error_detail

    async def promote_due_retries(self, now: datetime) -> int:
        stmt = (
            select(Job)
            .where(Job.status == JobStatus.RETRYING, Job.next_run_at <= now)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        promoted = 0
        async with self._transaction() as session:
            for row in (await session.execute(stmt)).scalars().all():
                current = JobSnapshot.model_validate(row)
                if await self._compare_and_swap(session, current, state_machine.retry_due(current, now=now)):
                    promoted += 1
        if promoted:
            logger.info("retries_promoted", count=promoted)
        return promoted

    async def reclaim_expired_leases(self, now: datetime) -> int:
        # Lock rows to avoid double-reaping when multiple reapers run.
        stmt = (
            select(Job)
            .where(
                Job.status.in_(list(state_machine.LEASED_STATUSES)),
                Job.lease_expires_at < now,
            )
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        recovered: List[tuple] = []
        async with self._transaction() as session:
            for row in (await session.execute(stmt)).scalars().all():
                current = JobSnapshot.model_validate(row)
                changes = state_machine.lease_expired(current, now=now)
                if not await self._compare_and_swap(session, current, changes):
                    continue
                if current.status == JobStatus.RUNNING:
                    await self._finish_attempt(session, current, AttemptOutcome.TIMEOUT, "lease_expired", now)
                recovered.append((current, changes))

        for current, changes in recovered:
            self._log_transition("lease_reclaimed", current, changes, lease_owner=current.lease_owner)
        return len(recovered)

"""
Job API boundary.

What the (external) REST layer calls: create / get / update / list / cancel,
plus manual replay of dead-lettered jobs. Cancellation and replay re-read
and retry on version conflicts, as the optimistic-concurrency contract asks
of every higher-level operation.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog

from ..db.models import AttemptRecord, JobSnapshot, utcnow
from ..exceptions import ConflictError, JobNotFoundError
from .handlers import HandlerRegistry
from .job_store import JobStore
from .schedule import first_run_at, parse_schedule
from .state_machine import JobStatus

logger = structlog.get_logger(__name__)


class JobService:
    def __init__(
        self,
        store: JobStore,
        registry: Optional[HandlerRegistry] = None,
        *,
        default_max_attempts: int = 3,
        clock: Callable[[], datetime] = utcnow,
        max_conflict_retries: int = 5,
    ) -> None:
        """
        Args:
            store: job store backend
            registry: when given, job types are validated at creation
            default_max_attempts: used when neither the caller nor the type's policy sets one
            clock: time source
            max_conflict_retries: re-read/retry budget for cancel and replay
        """
        self.store = store
        self.registry = registry
        self.default_max_attempts = default_max_attempts
        self.clock = clock
        self.max_conflict_retries = max_conflict_retries

    async def create_job(
        self,
        job_type: str,
        payload: Dict[str, Any],
        schedule: str,
        *,
        max_attempts: Optional[int] = None,
        job_id: Optional[str] = None,
    ) -> str:
        if self.registry is not None:
            self.registry.resolve(job_type)
        parsed = parse_schedule(schedule)
        now = self.clock()
        run_at = first_run_at(parsed, now)

        if max_attempts is None:
            max_attempts = (
                self.registry.policy_for(job_type).max_attempts if self.registry else self.default_max_attempts
            )
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        job = JobSnapshot(
            id=job_id or str(uuid.uuid4()),
            job_type=job_type,
            payload=payload,
            schedule=schedule.strip(),
            status=JobStatus.PENDING,
            next_run_at=run_at,
            occurrence_at=run_at,
            max_attempts=max_attempts,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert_job(job)
        return job.id

    async def get_job(self, job_id: str) -> Optional[JobSnapshot]:
        return await self.store.get_job(job_id)

    async def get_attempts(self, job_id: str) -> List[AttemptRecord]:
        return await self.store.list_attempts(job_id)

    async def list_jobs(
        self,
        *,
        status: Optional[JobStatus] = None,
        job_type: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[JobSnapshot]:
        return await self.store.list_jobs(status=status, job_type=job_type, limit=limit, offset=offset)

    async def update_job(self, job_id: str, version: int, **fields: Any) -> JobSnapshot:
        """
        Edit payload, schedule or max_attempts. A new schedule on a Pending
        job also moves its next run. Raises ConflictError on a stale version.
        """
        changes: Dict[str, Any] = dict(fields)
        if "schedule" in changes:
            parsed = parse_schedule(changes["schedule"])
            changes["schedule"] = changes["schedule"].strip()
            current = await self.store.get_job(job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            if current.status == JobStatus.PENDING:
                run_at = first_run_at(parsed, self.clock())
                changes["next_run_at"] = run_at
                changes["occurrence_at"] = run_at
        if "max_attempts" in changes and changes["max_attempts"] < 1:
            raise ValueError("max_attempts must be at least 1")
        return await self.store.update_job(job_id, version, changes, now=self.clock())

    async def cancel_job(self, job_id: str) -> JobSnapshot:
        """
        Cancel a job that is not running. Idempotent for already-cancelled jobs.
        An in-flight claim/queue step for the job fails its version check and
        the job never re-enters Pending.
        """
        for _ in range(self.max_conflict_retries):
            job = await self.store.get_job(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status == JobStatus.CANCELLED:
                return job
            try:
                cancelled = await self.store.cancel_job(job_id, job.version, now=self.clock())
            except ConflictError:
                logger.info("job_cancel_conflict_retry", job_id=job_id, version=job.version)
                continue
            logger.info("job_cancelled", job_id=job_id, from_status=job.status.value)
            return cancelled
        raise ConflictError(job_id, message=f"Job {job_id} kept changing while cancelling")

    async def replay_job(self, job_id: str) -> JobSnapshot:
        """Operator replay of a dead-lettered job: attempt count reset, due now."""
        for _ in range(self.max_conflict_retries):
            job = await self.store.get_job(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            try:
                replayed = await self.store.replay_job(job_id, job.version, now=self.clock())
            except ConflictError:
                continue
            logger.info("job_replayed", job_id=job_id)
            return replayed
        raise ConflictError(job_id, message=f"Job {job_id} kept changing while replaying")

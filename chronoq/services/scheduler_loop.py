"""
Scheduler Loop

Each tick: promote Retrying jobs whose backoff elapsed, claim a batch of due
jobs, hand each one to the task queue and mark it Queued. Expired leases are
reclaimed on a separate, slower cadence. Any number of replicas can run this
loop against the same store; the store's claim primitive keeps them apart.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, List, Optional

import structlog

from ..control_plane.job_store import JobStore
from ..control_plane.task_queue import TaskEnvelope, TaskQueue
from ..db.models import JobSnapshot, utcnow
from ..exceptions import ConflictError, InvalidTransitionError, TransportError
from ..utils.metrics import JOB_CLAIMED, JOB_QUEUED, MetricsCollector
from .backoff import InfraBackoff, sleep_or_stop
from .lease_reaper import LeaseReaper

logger = structlog.get_logger(__name__)


class SchedulerLoop:
    def __init__(
        self,
        store: JobStore,
        queue: TaskQueue,
        *,
        instance_id: str,
        batch_size: int = 100,
        lease_ttl_seconds: float = 60,
        tick_interval_seconds: float = 1.0,
        reclaim_interval_seconds: float = 15,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = utcnow,
        backoff: Optional[InfraBackoff] = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.instance_id = instance_id
        self.batch_size = batch_size
        self.lease_ttl_seconds = lease_ttl_seconds
        self.tick_interval_seconds = tick_interval_seconds
        self.reclaim_interval_seconds = reclaim_interval_seconds
        self.metrics = metrics or MetricsCollector()
        self.clock = clock
        self.backoff = backoff or InfraBackoff()
        self.reaper = LeaseReaper(store, clock=clock)
        self._stop = asyncio.Event()
        self._last_reclaim: Optional[float] = None

    async def tick(self) -> List[JobSnapshot]:
        """One claim/hand-off pass. Returns the jobs that reached Queued."""
        now = self.clock()
        await self.store.promote_due_retries(now)
        claimed = await self.store.claim_due_jobs(now, self.batch_size, self.instance_id, self.lease_ttl_seconds)

        queued: List[JobSnapshot] = []
        for job in claimed:
            latency = (now - job.next_run_at).total_seconds() if job.next_run_at else None
            await self.metrics.emit(JOB_CLAIMED, job.id, latency, job_type=job.job_type)
            handed_off = await self._hand_off(job)
            if handed_off is not None:
                queued.append(handed_off)
        return queued

    async def _hand_off(self, job: JobSnapshot) -> Optional[JobSnapshot]:
        envelope = TaskEnvelope.for_claimed_job(job)
        try:
            message_id = await self.queue.enqueue(envelope)
        except TransportError as e:
            logger.error("job_enqueue_failed", job_id=job.id, error=str(e))
            await self._rollback_claim(job)
            return None

        try:
            queued = await self.store.mark_queued(job.id, job.version)
        except (ConflictError, InvalidTransitionError) as e:
            # Cancelled or reclaimed meanwhile; the worker will find the
            # envelope's version stale and drop it.
            logger.warning("job_handoff_abandoned", job_id=job.id, version=job.version, reason=str(e))
            return None
        # On TransportError the lease expires and the reaper returns the job to Pending.

        await self.metrics.emit(JOB_QUEUED, job.id, job_type=job.job_type, message_id=message_id)
        return queued

    async def _rollback_claim(self, job: JobSnapshot) -> None:
        try:
            await self.store.release_claim(job.id, job.version)
        except (ConflictError, InvalidTransitionError, TransportError) as e:
            # Leave the lease to expire; the reaper recovers the job.
            logger.warning("job_claim_rollback_skipped", job_id=job.id, reason=str(e))

    async def reclaim(self) -> int:
        return await self.reaper.run_once()

    def _reclaim_due(self) -> bool:
        loop_time = asyncio.get_running_loop().time()
        if self._last_reclaim is None or loop_time - self._last_reclaim >= self.reclaim_interval_seconds:
            self._last_reclaim = loop_time
            return True
        return False

    async def run(self) -> None:
        logger.info(
            "scheduler_started",
            instance_id=self.instance_id,
            batch_size=self.batch_size,
            tick_interval_seconds=self.tick_interval_seconds,
        )
        while not self._stop.is_set():
            try:
                if self._reclaim_due():
                    await self.reclaim()
                queued = await self.tick()
                self.backoff.reset()
            except TransportError as e:
                delay = self.backoff.next_delay()
                logger.error("scheduler_infra_error", error=str(e), retry_in=delay)
                await sleep_or_stop(delay, self._stop)
                continue
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("scheduler_error", error=str(e), exc_info=True)
                await sleep_or_stop(self.backoff.next_delay(), self._stop)
                continue

            # A full batch means more work is probably due right now.
            if len(queued) < self.batch_size:
                await sleep_or_stop(self.tick_interval_seconds, self._stop)
        logger.info("scheduler_stopped", instance_id=self.instance_id)

    def stop(self) -> None:
        self._stop.set()

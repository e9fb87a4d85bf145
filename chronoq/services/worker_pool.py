"""
Worker Pool

Dequeues task envelopes, moves the job to Running, executes its handler under
a timeout no longer than the lease TTL, records the outcome, and only then
acks the message. A crash anywhere before the ack leaves the message to be
redelivered; the store's version check turns the redelivery into a no-op.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, List, Optional

import structlog

from ..control_plane.handlers import HandlerRegistry
from ..control_plane.job_store import JobStore
from ..control_plane.state_machine import AttemptOutcome, JobStatus
from ..control_plane.task_queue import Delivery, TaskQueue
from ..db.models import JobSnapshot, utcnow
from ..exceptions import (
    ConflictError,
    HandlerError,
    InvalidTransitionError,
    JobNotFoundError,
    LeaseExpiredError,
    TerminalError,
    TransportError,
    UnknownJobTypeError,
)
from ..utils.metrics import (
    JOB_DEAD_LETTERED,
    JOB_FAILED,
    JOB_STARTED,
    JOB_SUCCEEDED,
    MetricsCollector,
)
from .backoff import InfraBackoff, sleep_or_stop

logger = structlog.get_logger(__name__)

# Results returned by WorkerPool.process
PROCESSED = "processed"
DUPLICATE = "duplicate"
DEFERRED = "deferred"
MISSING = "missing"
STALE = "stale"


class WorkerPool:
    def __init__(
        self,
        store: JobStore,
        queue: TaskQueue,
        registry: HandlerRegistry,
        *,
        worker_id: str,
        concurrency: int = 4,
        lease_ttl_seconds: float = 60,
        lease_grace_seconds: float = 5,
        visibility_timeout_seconds: float = 90,
        dequeue_wait_seconds: float = 5,
        handoff_retry_delay_seconds: float = 1,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = utcnow,
        backoff_factory: Optional[Callable[[], InfraBackoff]] = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.registry = registry
        self.worker_id = worker_id
        self.concurrency = concurrency
        self.lease_ttl_seconds = lease_ttl_seconds
        self.lease_grace_seconds = lease_grace_seconds
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self.dequeue_wait_seconds = dequeue_wait_seconds
        self.handoff_retry_delay_seconds = handoff_retry_delay_seconds
        self.metrics = metrics or MetricsCollector()
        self.clock = clock
        self.backoff_factory = backoff_factory or InfraBackoff
        self._stop = asyncio.Event()

    def _timeout_for(self, job_type: str) -> float:
        # Leave room to record the outcome before the lease runs out.
        ceiling = max(self.lease_ttl_seconds - self.lease_grace_seconds, self.lease_ttl_seconds / 2)
        if job_type in self.registry:
            configured = self.registry.resolve(job_type).timeout_seconds
            if configured:
                return min(configured, ceiling)
        return ceiling

    async def process(self, delivery: Delivery) -> str:
        """Handle one delivery end to end. Returns what happened to it."""
        envelope = delivery.envelope
        log = logger.bind(
            job_id=envelope.job_id,
            version=envelope.version,
            worker_id=self.worker_id,
            redelivered=delivery.redelivered,
        )

        try:
            job = await self.store.mark_running(
                envelope.job_id,
                envelope.version,
                self.worker_id,
                self.lease_ttl_seconds,
                now=self.clock(),
            )
        except JobNotFoundError:
            log.warning("task_for_missing_job")
            await self.queue.ack(delivery.ack_token)
            return MISSING
        except (ConflictError, InvalidTransitionError):
            return await self._handle_stale_delivery(delivery)

        started = self.clock()
        queued_for = (started - job.occurrence_at).total_seconds() if job.occurrence_at else None
        await self.metrics.emit(JOB_STARTED, job.id, queued_for, job_type=job.job_type, attempt=job.attempt_count)

        outcome, error_detail, retryable = await self._execute(job, log)

        try:
            final = await self.store.record_outcome(
                job.id,
                job.version,
                outcome,
                error_detail,
                retryable=retryable,
                worker_id=self.worker_id,
                now=self.clock(),
            )
        except LeaseExpiredError:
            # Reclaimed while we ran; the reaper already closed this attempt.
            log.warning("outcome_discarded_lease_lost", outcome=outcome.value)
            await self.queue.ack(delivery.ack_token)
            return STALE
        except (ConflictError, InvalidTransitionError) as e:
            log.warning("outcome_discarded_conflict", outcome=outcome.value, error=str(e))
            await self.queue.ack(delivery.ack_token)
            return STALE

        # Ack only after the outcome is committed.
        await self.queue.ack(delivery.ack_token)
        await self._emit_outcome(final, outcome, (self.clock() - started).total_seconds())
        return PROCESSED

    async def _handle_stale_delivery(self, delivery: Delivery) -> str:
        envelope = delivery.envelope
        current = await self.store.get_job(envelope.job_id)
        if (
            current is not None
            and current.status == JobStatus.CLAIMED
            and current.version == envelope.version - 1
        ):
            # Arrived before the scheduler committed MarkQueued.
            logger.info("task_arrived_before_queued", job_id=envelope.job_id, version=envelope.version)
            await self.queue.nack(delivery.ack_token, requeue_delay=self.handoff_retry_delay_seconds)
            return DEFERRED

        logger.info(
            "duplicate_task_dropped",
            job_id=envelope.job_id,
            version=envelope.version,
            redelivered=delivery.redelivered,
            current_version=current.version if current else None,
            current_status=current.status.value if current else None,
        )
        await self.queue.ack(delivery.ack_token)
        return DUPLICATE

    async def _execute(self, job: JobSnapshot, log) -> tuple:
        """Run the handler; returns ``(outcome, error_detail, retryable)``."""
        try:
            spec = self.registry.resolve(job.job_type)
        except UnknownJobTypeError as e:
            log.error("unknown_job_type", job_type=job.job_type)
            return AttemptOutcome.FAILURE, str(e), False

        timeout = self._timeout_for(job.job_type)
        try:
            await asyncio.wait_for(spec.invoke(job.payload), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("job_timed_out", timeout_seconds=timeout)
            return AttemptOutcome.TIMEOUT, f"Timed out after {timeout}s", True
        except asyncio.CancelledError:
            raise
        except TerminalError as e:
            log.warning("job_failed_terminal", error=str(e))
            return AttemptOutcome.FAILURE, f"{type(e).__name__}: {e}", False
        except HandlerError as e:
            log.warning("job_failed", error=str(e))
            return AttemptOutcome.FAILURE, f"{type(e).__name__}: {e}", True
        except Exception as e:
            log.warning("job_failed", error=str(e), exc_info=True)
            return AttemptOutcome.FAILURE, f"{type(e).__name__}: {e}", True
        return AttemptOutcome.SUCCESS, None, True

    async def _emit_outcome(self, job: JobSnapshot, outcome: AttemptOutcome, duration: float) -> None:
        if outcome == AttemptOutcome.SUCCESS:
            await self.metrics.emit(JOB_SUCCEEDED, job.id, duration, job_type=job.job_type)
            return
        await self.metrics.emit(JOB_FAILED, job.id, duration, job_type=job.job_type, outcome=outcome.value)
        if job.status == JobStatus.DEAD_LETTERED:
            await self.metrics.emit(JOB_DEAD_LETTERED, job.id, job_type=job.job_type)

    async def _consume(self, slot: int) -> None:
        backoff = self.backoff_factory()
        while not self._stop.is_set():
            try:
                delivery = await self.queue.dequeue(
                    self.visibility_timeout_seconds,
                    wait_seconds=self.dequeue_wait_seconds,
                )
                if delivery is not None:
                    await self.process(delivery)
                backoff.reset()
            except TransportError as e:
                delay = backoff.next_delay()
                logger.error("worker_infra_error", slot=slot, error=str(e), retry_in=delay)
                await sleep_or_stop(delay, self._stop)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("worker_error", slot=slot, error=str(e), exc_info=True)
                await sleep_or_stop(backoff.next_delay(), self._stop)

    async def run(self) -> None:
        logger.info("worker_pool_started", worker_id=self.worker_id, concurrency=self.concurrency)
        tasks: List[asyncio.Task] = [
            asyncio.create_task(self._consume(slot), name=f"chronoq-worker-{slot}")
            for slot in range(self.concurrency)
        ]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("worker_pool_stopped", worker_id=self.worker_id)

    def stop(self) -> None:
        self._stop.set()

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import START
from chronoq.control_plane.state_machine import JobStatus
from chronoq.exceptions import QueueUnavailableError, StoreUnavailableError
from chronoq.services.backoff import InfraBackoff
from chronoq.services.scheduler_loop import SchedulerLoop
from chronoq.utils.metrics import JOB_CLAIMED, JOB_QUEUED, MetricsCollector


@pytest.fixture
def metrics():
    return AsyncMock(spec=MetricsCollector)


@pytest.fixture
def scheduler(memory_store, memory_queue, metrics, clock):
    return SchedulerLoop(
        memory_store,
        memory_queue,
        instance_id="sched-a",
        batch_size=10,
        lease_ttl_seconds=60,
        tick_interval_seconds=0.01,
        metrics=metrics,
        clock=clock,
        backoff=InfraBackoff(initial=0.01, maximum=0.02),
    )


@pytest.mark.asyncio
async def test_tick_hands_due_job_to_queue(scheduler, service, memory_store, memory_queue, metrics):
    job_id = await service.create_job("report", {"n": 1}, START.isoformat())

    queued = await scheduler.tick()

    assert [job.id for job in queued] == [job_id]
    job = await memory_store.get_job(job_id)
    assert job.status == JobStatus.QUEUED
    assert job.lease_owner == "sched-a"

    delivery = await memory_queue.dequeue(visibility_timeout=30)
    assert delivery.envelope.job_id == job_id
    assert delivery.envelope.version == job.version
    assert delivery.envelope.payload == {"n": 1}

    events = [c.args[0] for c in metrics.emit.call_args_list]
    assert events == [JOB_CLAIMED, JOB_QUEUED]


@pytest.mark.asyncio
async def test_tick_ignores_jobs_not_yet_due(scheduler, service, memory_queue):
    await service.create_job("report", {}, "*/10 * * * *")
    assert await scheduler.tick() == []
    assert memory_queue.pending_count() == 0


@pytest.mark.asyncio
async def test_enqueue_failure_rolls_claim_back(scheduler, service, memory_store, memory_queue):
    job_id = await service.create_job("report", {}, START.isoformat())
    memory_queue.enqueue = AsyncMock(side_effect=QueueUnavailableError("redis down"))

    assert await scheduler.tick() == []

    job = await memory_store.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.lease_owner is None
    assert job.next_run_at == START


@pytest.mark.asyncio
async def test_cancel_during_hand_off_is_not_overwritten(scheduler, service, memory_store, memory_queue):
    job_id = await service.create_job("report", {}, START.isoformat())
    enqueue = memory_queue.enqueue

    async def enqueue_then_cancel(envelope):
        message_id = await enqueue(envelope)
        await service.cancel_job(envelope.job_id)
        return message_id

    memory_queue.enqueue = enqueue_then_cancel

    assert await scheduler.tick() == []
    job = await memory_store.get_job(job_id)
    assert job.status == JobStatus.CANCELLED
    assert job.next_run_at is None


@pytest.mark.asyncio
async def test_tick_promotes_due_retries_first(scheduler, memory_store, make_job, clock):
    await memory_store.insert_job(make_job(status=JobStatus.RETRYING, next_run_at=START - timedelta(seconds=1)))
    queued = await scheduler.tick()
    assert [job.id for job in queued] == ["job-1"]


@pytest.mark.asyncio
async def test_reclaim_recovers_abandoned_claim(scheduler, memory_store, make_job, clock):
    await memory_store.insert_job(make_job())
    await memory_store.claim_due_jobs(START, 10, "crashed-scheduler", 60)

    clock.advance(61)
    assert await scheduler.reclaim() == 1
    queued = await scheduler.tick()
    assert queued[0].lease_owner == "sched-a"


@pytest.mark.asyncio
async def test_run_until_stopped(scheduler, service, memory_queue):
    await service.create_job("report", {}, START.isoformat())
    task = asyncio.create_task(scheduler.run())
    for _ in range(100):
        if memory_queue.pending_count():
            break
        await asyncio.sleep(0.01)
    scheduler.stop()
    await asyncio.wait_for(task, timeout=1)
    assert memory_queue.pending_count() == 1


@pytest.mark.asyncio
async def test_run_backs_off_on_store_outage(scheduler):
    calls = []

    async def flaky_tick():
        calls.append(1)
        if len(calls) == 1:
            raise StoreUnavailableError("db down")
        scheduler.stop()
        return []

    scheduler.tick = flaky_tick
    await asyncio.wait_for(scheduler.run(), timeout=1)
    assert len(calls) == 2

import pytest

from chronoq.config import JobTypePolicy
from chronoq.control_plane.handlers import HandlerRegistry
from chronoq.control_plane.memory_store import InMemoryJobStore
from chronoq.control_plane.task_queue import InMemoryTaskQueue
from chronoq.exceptions import ConfigurationError
from chronoq.main import _parse_args
from chronoq.runtime import build_registry, open_runtime
from chronoq.services.scheduler_loop import SchedulerLoop
from chronoq.services.worker_pool import WorkerPool


@pytest.mark.asyncio
async def test_open_runtime_with_memory_backends(settings):
    registry = HandlerRegistry()
    registry.register("report", lambda payload: None)

    async with open_runtime(settings, registry) as runtime:
        assert isinstance(runtime.store, InMemoryJobStore)
        assert isinstance(runtime.queue, InMemoryTaskQueue)
        assert runtime.database is None
        assert runtime.redis_client is None

        scheduler = runtime.scheduler()
        worker = runtime.worker_pool()
        assert isinstance(scheduler, SchedulerLoop)
        assert scheduler.instance_id == "test-instance"
        assert isinstance(worker, WorkerPool)
        assert worker.concurrency == 2

        job_id = await runtime.jobs.create_job("report", {}, "2020-01-01T00:00:00Z")
        await scheduler.tick()
        delivery = await runtime.queue.dequeue(settings.visibility_timeout_seconds)
        await worker.process(delivery)
        assert (await runtime.jobs.get_job(job_id)).status.value == "succeeded"


@pytest.mark.asyncio
async def test_unknown_backend_rejected(settings):
    settings.store_backend = "cassandra"
    with pytest.raises(ConfigurationError):
        async with open_runtime(settings):
            pass


def test_registry_is_frozen_with_configured_policies(settings):
    settings.job_type_policies = {"report": JobTypePolicy(max_attempts=9, timeout_seconds=4)}
    registry = HandlerRegistry()
    registry.register("report", lambda payload: None)

    built = build_registry(settings, registry)

    assert built.policy_for("report").max_attempts == 9
    assert built.resolve("report").timeout_seconds == 4
    with pytest.raises(ConfigurationError):
        built.register("late", lambda payload: None)


def test_cli_arguments():
    args = _parse_args(["worker", "--create-schema"])
    assert args.role == "worker"
    assert args.create_schema is True
    with pytest.raises(SystemExit):
        _parse_args(["janitor"])

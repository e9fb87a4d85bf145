"""
Process runtime.

`open_runtime` builds every long-lived handle a process needs (database
engine, Redis client, job store, task queue, metrics, job API) from settings,
hands them out as one `Runtime`, and releases them on exit. Nothing is kept
in module globals; tests build a `Runtime` around fakes instead.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import redis.asyncio as redis
import structlog

from .config import ChronoqSettings
from .control_plane.handlers import HandlerRegistry
from .control_plane.job_service import JobService
from .control_plane.job_store import JobStore, SqlJobStore
from .control_plane.memory_store import InMemoryJobStore
from .control_plane.queue_manager import QueueManager
from .control_plane.task_queue import InMemoryTaskQueue, TaskQueue
from .db.database import Database
from .exceptions import ConfigurationError
from .services.backoff import InfraBackoff
from .services.scheduler_loop import SchedulerLoop
from .services.worker_pool import WorkerPool
from .utils.metrics import MetricsCollector

logger = structlog.get_logger(__name__)


@dataclass
class Runtime:
    settings: ChronoqSettings
    registry: HandlerRegistry
    store: JobStore
    queue: TaskQueue
    metrics: MetricsCollector
    jobs: JobService
    database: Optional[Database] = None
    redis_client: Optional[redis.Redis] = None

    def _infra_backoff(self) -> InfraBackoff:
        return InfraBackoff(
            initial=self.settings.infra_backoff_initial_seconds,
            maximum=self.settings.infra_backoff_max_seconds,
        )

    def scheduler(self) -> SchedulerLoop:
        s = self.settings
        return SchedulerLoop(
            self.store,
            self.queue,
            instance_id=s.instance_id,
            batch_size=s.claim_batch_size,
            lease_ttl_seconds=s.lease_ttl_seconds,
            tick_interval_seconds=s.scheduler_tick_interval_seconds,
            reclaim_interval_seconds=s.lease_reaper_interval_seconds,
            metrics=self.metrics,
            backoff=self._infra_backoff(),
        )

    def worker_pool(self) -> WorkerPool:
        s = self.settings
        return WorkerPool(
            self.store,
            self.queue,
            self.registry,
            worker_id=s.instance_id,
            concurrency=s.worker_concurrency,
            lease_ttl_seconds=s.lease_ttl_seconds,
            lease_grace_seconds=s.lease_grace_seconds,
            visibility_timeout_seconds=s.visibility_timeout_seconds,
            dequeue_wait_seconds=s.dequeue_wait_seconds,
            handoff_retry_delay_seconds=s.handoff_retry_delay_seconds,
            metrics=self.metrics,
            backoff_factory=self._infra_backoff,
        )


def build_registry(settings: ChronoqSettings, registry: Optional[HandlerRegistry] = None) -> HandlerRegistry:
    """Apply configured per-type policies and hooks, then freeze."""
    registry = registry or HandlerRegistry(default_policy=settings.default_retry_policy())
    registry.load_hooks(settings.handler_modules)
    for job_type in settings.job_type_policies:
        registry.set_policy(job_type, settings.retry_policy_for(job_type), settings.timeout_for(job_type))
    registry.freeze()
    logger.info("handler_registry_ready", job_types=list(registry.job_types))
    return registry


@asynccontextmanager
async def open_runtime(
    settings: ChronoqSettings,
    registry: Optional[HandlerRegistry] = None,
    *,
    create_schema: bool = False,
) -> AsyncIterator[Runtime]:
    registry = build_registry(settings, registry)

    database: Optional[Database] = None
    redis_client: Optional[redis.Redis] = None
    queue: Optional[TaskQueue] = None
    try:
        if settings.store_backend == "sql":
            database = Database(settings.database_url)
            if create_schema:
                await database.create_all()
            store: JobStore = SqlJobStore(database, policies=registry.policy_for)
        elif settings.store_backend == "memory":
            store = InMemoryJobStore(policies=registry.policy_for)
        else:
            raise ConfigurationError(f"Unknown store backend '{settings.store_backend}'")

        if settings.queue_backend == "redis":
            redis_client = redis.from_url(settings.redis_url, decode_responses=True)
            queue = QueueManager(
                redis_client,
                stream_key=settings.queue_stream_key,
                consumer_group=settings.queue_consumer_group,
                consumer_name=settings.instance_id,
            )
        elif settings.queue_backend == "memory":
            queue = InMemoryTaskQueue()
        else:
            raise ConfigurationError(f"Unknown queue backend '{settings.queue_backend}'")

        metrics = MetricsCollector(redis_client)
        jobs = JobService(store, registry, default_max_attempts=settings.default_max_attempts)
        logger.info(
            "runtime_opened",
            store_backend=settings.store_backend,
            queue_backend=settings.queue_backend,
            instance_id=settings.instance_id,
        )
        yield Runtime(
            settings=settings,
            registry=registry,
            store=store,
            queue=queue,
            metrics=metrics,
            jobs=jobs,
            database=database,
            redis_client=redis_client,
        )
    finally:
        if queue is not None:
            # Closes the Redis client as well.
            await queue.close()
        elif redis_client is not None:
            await redis_client.aclose()
        if database is not None:
            await database.dispose()
        logger.info("runtime_closed")

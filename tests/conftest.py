"""
Pytest configuration and shared fixtures for all tests.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import redis.asyncio as redis

from chronoq.config import ChronoqSettings
from chronoq.control_plane.handlers import HandlerRegistry
from chronoq.control_plane.job_service import JobService
from chronoq.control_plane.job_store import SqlJobStore
from chronoq.control_plane.memory_store import InMemoryJobStore
from chronoq.control_plane.retry_policy import RetryPolicy
from chronoq.control_plane.state_machine import JobStatus
from chronoq.control_plane.task_queue import InMemoryTaskQueue
from chronoq.db.database import Database
from chronoq.db.models import JobSnapshot

START = datetime(2026, 1, 1, 0, 9, tzinfo=timezone.utc)

# Deterministic delays: 5s, 10s, 20s...
TEST_POLICY = RetryPolicy(base_delay=5, max_delay=300, max_attempts=3, jitter=False)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    """Test settings with in-memory backends."""
    return ChronoqSettings(
        _env_file=None,
        store_backend="memory",
        queue_backend="memory",
        instance_id="test-instance",
        lease_ttl_seconds=60,
        retry_jitter=False,
        worker_concurrency=2,
    )


@pytest.fixture
def registry():
    return HandlerRegistry(default_policy=TEST_POLICY)


@pytest.fixture
def memory_store(registry):
    return InMemoryJobStore(policies=registry.policy_for)


@pytest.fixture
def memory_queue(clock):
    return InMemoryTaskQueue(clock=clock, poll_interval=0.01)


@pytest.fixture
def service(memory_store, clock):
    return JobService(memory_store, clock=clock)


@pytest.fixture
async def database(tmp_path):
    """File-backed SQLite database (aiosqlite) with the schema created."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'chronoq.db'}")
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def sql_store(database, registry):
    return SqlJobStore(database, policies=registry.policy_for)


@pytest.fixture
def make_job():
    """Factory for Pending job snapshots, due at START unless overridden."""

    def _make(**overrides) -> JobSnapshot:
        fields = {
            "id": "job-1",
            "job_type": "report",
            "payload": {"to": "ops@example.com"},
            "schedule": START.isoformat(),
            "status": JobStatus.PENDING,
            "next_run_at": START,
            "occurrence_at": START,
            "max_attempts": 3,
            "created_at": START,
            "updated_at": START,
        }
        fields.update(overrides)
        return JobSnapshot(**fields)

    return _make


@pytest.fixture
async def mock_redis():
    """Mock Redis client for unit tests."""
    redis_client = AsyncMock(spec=redis.Redis)
    redis_client.get = AsyncMock(return_value=None)
    redis_client.setex = AsyncMock()
    redis_client.incr = AsyncMock()
    redis_client.expire = AsyncMock()
    redis_client.xadd = AsyncMock(return_value="msg-123-0")
    redis_client.xreadgroup = AsyncMock(return_value=[])
    redis_client.xautoclaim = AsyncMock(return_value=["0-0", [], []])
    redis_client.xack = AsyncMock()
    redis_client.xlen = AsyncMock(return_value=0)
    redis_client.xpending = AsyncMock(return_value={"pending": 0})
    redis_client.xrange = AsyncMock(return_value=[])
    redis_client.xgroup_create = AsyncMock()
    redis_client.zadd = AsyncMock()
    redis_client.zrem = AsyncMock(return_value=1)
    redis_client.zcard = AsyncMock(return_value=0)
    redis_client.zrange = AsyncMock(return_value=[])
    redis_client.zrangebyscore = AsyncMock(return_value=[])
    redis_client.zremrangebyrank = AsyncMock()
    redis_client.aclose = AsyncMock()
    return redis_client

import pytest

from chronoq.config import ChronoqSettings
from chronoq.control_plane.retry_policy import RetryPolicy


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("LEASE_TTL_SECONDS", "JOB_TYPE_POLICIES", "HANDLER_MODULES", "INSTANCE_ID", "RETRY_JITTER"):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = ChronoqSettings(_env_file=None)
    assert settings.store_backend == "sql"
    assert settings.queue_backend == "redis"
    assert settings.lease_ttl_seconds == 60
    assert settings.claim_batch_size == 100
    assert settings.instance_id
    assert settings.default_retry_policy() == RetryPolicy(base_delay=5, max_delay=300, max_attempts=3, jitter=True)


def test_environment_aliases(monkeypatch):
    monkeypatch.setenv("LEASE_TTL_SECONDS", "15")
    monkeypatch.setenv("INSTANCE_ID", "sched-7")
    monkeypatch.setenv("JOBS_CONSUMER_GROUP", "pool-a")
    monkeypatch.setenv("RETRY_JITTER", "false")
    monkeypatch.setenv("HANDLER_MODULES", '["myapp.jobs:register"]')

    settings = ChronoqSettings(_env_file=None)

    assert settings.lease_ttl_seconds == 15
    assert settings.instance_id == "sched-7"
    assert settings.queue_consumer_group == "pool-a"
    assert settings.retry_jitter is False
    assert settings.handler_modules == ["myapp.jobs:register"]


def test_per_type_policy_overrides_merge_with_defaults(monkeypatch):
    monkeypatch.setenv("JOB_TYPE_POLICIES", '{"sync": {"max_attempts": 10, "timeout_seconds": 30}}')
    settings = ChronoqSettings(_env_file=None, retry_base_delay_seconds=2)

    policy = settings.retry_policy_for("sync")
    assert policy.max_attempts == 10
    assert policy.base_delay == 2
    assert policy.max_delay == 300
    assert settings.timeout_for("sync") == 30
    assert settings.retry_policy_for("other") == settings.default_retry_policy()
    assert settings.timeout_for("other") is None

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from chronoq.utils.metrics import JOB_CLAIMED, JOB_EVENTS, JOB_QUEUED, JOB_STARTED, MetricsCollector


@pytest.mark.asyncio
async def test_emit_without_redis_only_logs():
    await MetricsCollector().emit(JOB_CLAIMED, "job-1", 0.5, job_type="report")


@pytest.mark.asyncio
async def test_emit_updates_counter_and_latency(mock_redis):
    metrics = MetricsCollector(mock_redis, histogram_size=100, ttl_seconds=60)
    await metrics.emit(JOB_CLAIMED, "job-1", 0.25, job_type="report")

    mock_redis.incr.assert_awaited_once_with("metrics:job_claimed:job_type=report", 1)
    key, mapping = mock_redis.zadd.call_args.args
    assert key == "metrics:job_claimed_latency:job_type=report"
    assert list(mapping.values()) == [0.25]
    mock_redis.zremrangebyrank.assert_awaited_once_with(key, 0, -101)


@pytest.mark.asyncio
async def test_emit_without_latency_skips_histogram(mock_redis):
    await MetricsCollector(mock_redis).emit("job_dead_lettered", "job-1")
    mock_redis.incr.assert_awaited_once()
    mock_redis.zadd.assert_not_called()


@pytest.mark.asyncio
async def test_metric_write_failure_never_propagates(mock_redis):
    mock_redis.incr.side_effect = RedisConnectionError("down")
    await MetricsCollector(mock_redis).emit(JOB_CLAIMED, "job-1", 1.0)


def test_metric_key_labels_sorted():
    metrics = MetricsCollector()
    assert metrics._build_metric_key("job_started", {"b": 2, "a": 1}) == "metrics:job_started:a=1:b=2"
    assert metrics._build_metric_key("job_started") == "metrics:job_started"


@pytest.mark.asyncio
async def test_histogram_statistics(mock_redis):
    mock_redis.zrange.return_value = [(str(i), float(i)) for i in range(1, 101)]
    stats = await MetricsCollector(mock_redis).get_histogram(JOB_CLAIMED)
    assert stats["count"] == 100
    assert stats["min"] == 1.0
    assert stats["max"] == 100.0
    assert stats["p50"] == 51.0


@pytest.mark.asyncio
async def test_counter_read(mock_redis):
    mock_redis.get.return_value = "7"
    assert await MetricsCollector(mock_redis).get_counter(JOB_CLAIMED) == 7


def test_lifecycle_events_cover_the_job_lifecycle():
    assert JOB_EVENTS == (
        "job_claimed",
        "job_queued",
        "job_started",
        "job_succeeded",
        "job_failed",
        "job_dead_lettered",
    )


@pytest.mark.asyncio
async def test_queued_jobs_share_one_counter_key(mock_redis):
    metrics = MetricsCollector(mock_redis)
    await metrics.emit(JOB_QUEUED, "job-1", job_type="report", message_id="1-0")
    await metrics.emit(JOB_QUEUED, "job-2", job_type="report", message_id="2-0")

    keys = {c.args[0] for c in mock_redis.incr.await_args_list}
    assert keys == {"metrics:job_queued:job_type=report"}


@pytest.mark.asyncio
async def test_attempt_number_stays_out_of_metric_keys(mock_redis):
    await MetricsCollector(mock_redis).emit(JOB_STARTED, "job-1", 0.1, job_type="report", attempt=3)
    mock_redis.incr.assert_awaited_once_with("metrics:job_started:job_type=report", 1)

import time
from typing import Any, Dict, Optional

import structlog
from redis.exceptions import RedisError

logger = structlog.get_logger(__name__)

JOB_CLAIMED = "job_claimed"
JOB_QUEUED = "job_queued"
JOB_STARTED = "job_started"
JOB_SUCCEEDED = "job_succeeded"
JOB_FAILED = "job_failed"
JOB_DEAD_LETTERED = "job_dead_lettered"

JOB_EVENTS = (JOB_CLAIMED, JOB_QUEUED, JOB_STARTED, JOB_SUCCEEDED, JOB_FAILED, JOB_DEAD_LETTERED)

# Only these labels become part of a Redis key; anything else (ids, attempt
# numbers) is logged but never stored as its own series.
KEY_LABELS = ("job_type", "outcome")


class MetricsCollector:
    """
    Job lifecycle metrics events.

    Each event is logged; when a Redis client is given, a counter and a
    latency histogram are also kept under ``metrics:<name>:<labels>`` for an
    external exporter. Metric writes never fail the caller.
    """

    def __init__(self, redis_client=None, histogram_size: int = 1000, ttl_seconds: int = 86400):
        self.redis = redis_client
        self.histogram_size = histogram_size
        self.ttl_seconds = ttl_seconds

    async def emit(self, event: str, job_id: str, latency: Optional[float] = None, **labels: Any) -> None:
        """Record one lifecycle event for `job_id`; `latency` in seconds."""
        logger.info("metric", metric=event, job_id=job_id, latency=latency, **labels)
        if self.redis is None:
            return
        labels = {k: v for k, v in labels.items() if k in KEY_LABELS and v is not None}
        try:
            await self.increment_counter(event, 1, labels)
            if latency is not None:
                await self.record_timer(event, latency, labels)
        except RedisError as e:
            logger.warning("metrics_write_failed", metric=event, error=str(e))

    async def increment_counter(self, metric_name: str, value: int = 1, labels: Dict = None):
        """Increment counter metric"""
        key = self._build_metric_key(metric_name, labels)
        await self.redis.incr(key, value)
        await self.redis.expire(key, self.ttl_seconds)

    async def record_timer(self, metric_name: str, duration: float, labels: Dict = None):
        """Record timer metric into a bounded sorted set for percentile calculation"""
        key = self._build_metric_key(f"{metric_name}_latency", labels)
        member = f"{time.time_ns()}"
        await self.redis.zadd(key, {member: duration})
        # Keep only the most recent values
        await self.redis.zremrangebyrank(key, 0, -(self.histogram_size + 1))
        await self.redis.expire(key, self.ttl_seconds)

    def _build_metric_key(self, metric_name: str, labels: Dict = None) -> str:
        """Build Redis key for metric"""
        if labels:
            label_str = ":".join(f"{k}={v}" for k, v in sorted(labels.items()))
            return f"metrics:{metric_name}:{label_str}"
        return f"metrics:{metric_name}"

    async def get_counter(self, metric_name: str, labels: Dict = None) -> int:
        key = self._build_metric_key(metric_name, labels)
        value = await self.redis.get(key)
        return int(value) if value else 0

    async def get_histogram(self, metric_name: str, labels: Dict = None) -> Dict[str, float]:
        """Get latency histogram statistics"""
        key = self._build_metric_key(f"{metric_name}_latency", labels)
        values = await self.redis.zrange(key, 0, -1, withscores=True)

        if not values:
            return {}

        numeric_values = sorted(float(score) for _, score in values)
        n = len(numeric_values)
        return {
            "count": n,
            "min": numeric_values[0],
            "max": numeric_values[-1],
            "mean": sum(numeric_values) / n,
            "p50": numeric_values[int(n * 0.5)],
            "p95": numeric_values[min(int(n * 0.95), n - 1)],
            "p99": numeric_values[min(int(n * 0.99), n - 1)],
        }

import json
import time
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError, ResponseError

from ..exceptions import QueueUnavailableError
from .task_queue import Delivery, TaskEnvelope, TaskQueue

logger = structlog.get_logger(__name__)


class QueueManager(TaskQueue):
    """
    Redis Streams task queue.

    - one stream, one consumer group shared by every worker process
    - dequeue first reclaims messages idle longer than the visibility
      timeout (XAUTOCLAIM), then reads new ones (XREADGROUP)
    - nack with a delay parks the envelope in a sorted set until due
    - a SETEX marker per hand-off keeps a retried enqueue from duplicating

    Ack tokens are stream message ids.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        stream_key: str = "chronoq:tasks",
        consumer_group: str = "workers",
        consumer_name: str = "default",
        maxlen: int = 100000,
        dedupe_ttl_seconds: int = 86400,
    ):
        self.redis = redis_client
        self.stream_key = stream_key
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name
        self.delayed_key = f"{stream_key}:delayed"
        self.maxlen = maxlen
        self.dedupe_ttl_seconds = dedupe_ttl_seconds
        self._group_ready = False

    # -------------------------
    # Streams / consumer groups
    # -------------------------

    async def ensure_consumer_group(self) -> None:
        """Ensure the consumer group exists for the stream."""
        if self._group_ready:
            return
        try:
            await self.redis.xgroup_create(
                name=self.stream_key,
                groupname=self.consumer_group,
                id="0",
                mkstream=True,
            )
        except ResponseError as e:
            # Group might already exist, which is fine
            if "BUSYGROUP" not in str(e):
                raise
        self._group_ready = True

    def _dedupe_key(self, envelope: TaskEnvelope) -> str:
        return f"{self.stream_key}:dedupe:{envelope.message_key}"

    async def enqueue(self, envelope: TaskEnvelope) -> str:
        try:
            await self.ensure_consumer_group()
            existing = await self.redis.get(self._dedupe_key(envelope))
            if existing:
                logger.info("task_enqueue_deduplicated", job_id=envelope.job_id, message_id=existing)
                return existing

            message_id = await self.redis.xadd(
                self.stream_key,
                {"job_id": envelope.job_id, "envelope": envelope.to_json(), "enqueued_at": time.time()},
                maxlen=self.maxlen,
            )
            await self.redis.setex(self._dedupe_key(envelope), self.dedupe_ttl_seconds, message_id)
        except RedisError as e:
            raise QueueUnavailableError(f"enqueue failed: {e}") from e
        return message_id

    async def dequeue(self, visibility_timeout: float, wait_seconds: float = 0.0) -> Optional[Delivery]:
        try:
            await self.ensure_consumer_group()
            await self.promote_delayed()

            # Redeliver first: anything pending past the visibility window.
            claimed = await self.redis.xautoclaim(
                self.stream_key,
                self.consumer_group,
                self.consumer_name,
                min_idle_time=int(visibility_timeout * 1000),
                start_id="0-0",
                count=1,
            )
            entries = claimed[1] if claimed and len(claimed) > 1 else []
            if entries:
                message_id, fields = entries[0]
                return await self._to_delivery(message_id, fields, redelivered=True)

            resp = await self.redis.xreadgroup(
                groupname=self.consumer_group,
                consumername=self.consumer_name,
                streams={self.stream_key: ">"},
                count=1,
                block=int(wait_seconds * 1000) if wait_seconds > 0 else None,
            )
        except RedisError as e:
            raise QueueUnavailableError(f"dequeue failed: {e}") from e

        if not resp:
            return None
        # resp: [(stream, [(message_id, fields)]) ...]
        _, entries = resp[0]
        if not entries:
            return None
        message_id, fields = entries[0]
        return await self._to_delivery(message_id, fields, redelivered=False)

    async def _to_delivery(self, message_id: str, fields: Optional[Dict[str, Any]], redelivered: bool) -> Optional[Delivery]:
        raw = (fields or {}).get("envelope")
        try:
            envelope = TaskEnvelope.from_json(raw)
        except (TypeError, ValueError):
            # Poison message (missing/garbled envelope). Ack to avoid wedging the stream.
            logger.error("task_poison_message", message_id=message_id, fields=fields)
            await self.redis.xack(self.stream_key, self.consumer_group, message_id)
            return None
        return Delivery(envelope=envelope, ack_token=str(message_id), redelivered=redelivered)

    async def ack(self, ack_token: str) -> None:
        """ACK a message in the configured consumer group."""
        try:
            await self.redis.xack(self.stream_key, self.consumer_group, ack_token)
        except RedisError as e:
            raise QueueUnavailableError(f"ack failed: {e}") from e

    async def nack(self, ack_token: str, requeue_delay: float = 0.0) -> None:
        """
        Re-deliver explicitly. The original entry is acked only after its
        replacement is stored, so a crash in between at worst duplicates it.
        """
        try:
            msg = await self.redis.xrange(self.stream_key, min=ack_token, max=ack_token, count=1)
            if not msg:
                # Message already trimmed from the stream; just release it.
                await self.redis.xack(self.stream_key, self.consumer_group, ack_token)
                return
            _, fields = msg[0]
            fields = dict(fields)
            if requeue_delay > 0:
                await self.redis.zadd(self.delayed_key, {fields["envelope"]: time.time() + requeue_delay})
            else:
                await self.redis.xadd(
                    self.stream_key,
                    {**fields, "requeued_from": str(ack_token)},
                    maxlen=self.maxlen,
                )
            await self.redis.xack(self.stream_key, self.consumer_group, ack_token)
        except RedisError as e:
            raise QueueUnavailableError(f"nack failed: {e}") from e

    async def promote_delayed(self, batch_size: int = 100) -> int:
        """Move due delayed envelopes back onto the stream."""
        due: List[str] = await self.redis.zrangebyscore(self.delayed_key, 0, time.time(), start=0, num=batch_size)
        promoted = 0
        for raw in due:
            # ZREM decides which consumer promotes the entry.
            if await self.redis.zrem(self.delayed_key, raw) != 1:
                continue
            try:
                job_id = json.loads(raw).get("job_id", "")
            except ValueError:
                job_id = ""
            await self.redis.xadd(
                self.stream_key,
                {"job_id": job_id, "envelope": raw, "enqueued_at": time.time()},
                maxlen=self.maxlen,
            )
            promoted += 1
        return promoted

    async def get_stats(self) -> Dict[str, Any]:
        """Get queue statistics."""
        try:
            length = await self.redis.xlen(self.stream_key)
            try:
                pending_info = await self.redis.xpending(self.stream_key, self.consumer_group)
                # xpending returns dict/tuple with the pending count first
                if isinstance(pending_info, dict):
                    pending_count = pending_info.get("pending", 0)
                elif isinstance(pending_info, (list, tuple)) and pending_info:
                    pending_count = pending_info[0]
                else:
                    pending_count = 0
            except ResponseError:
                pending_count = 0
            delayed_count = await self.redis.zcard(self.delayed_key)
        except RedisError as e:
            raise QueueUnavailableError(f"stats failed: {e}") from e
        return {"length": length, "pending": pending_count, "delayed": delayed_count}

    async def close(self) -> None:
        await self.redis.aclose()

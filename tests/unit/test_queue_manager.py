from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from chronoq.control_plane.queue_manager import QueueManager
from chronoq.control_plane.task_queue import TaskEnvelope
from chronoq.exceptions import QueueUnavailableError, TransportError


def _envelope():
    return TaskEnvelope(job_id="job-1", version=3, type="report", payload={}, dedup_key="job-1:occ")


def _fields(envelope):
    return {"job_id": envelope.job_id, "envelope": envelope.to_json(), "enqueued_at": "0"}


@pytest.mark.asyncio
async def test_enqueue_adds_to_stream_and_marks_dedupe(mock_redis):
    qm = QueueManager(mock_redis, stream_key="chronoq:tasks")
    message_id = await qm.enqueue(_envelope())

    assert message_id == "msg-123-0"
    mock_redis.xgroup_create.assert_awaited_once()
    stream, fields = mock_redis.xadd.call_args.args[:2]
    assert stream == "chronoq:tasks"
    assert TaskEnvelope.from_json(fields["envelope"]) == _envelope()
    mock_redis.setex.assert_awaited_once_with("chronoq:tasks:dedupe:job-1:occ#3", 86400, "msg-123-0")


@pytest.mark.asyncio
async def test_enqueue_of_same_hand_off_is_deduplicated(mock_redis):
    mock_redis.get.return_value = "1-0"
    qm = QueueManager(mock_redis)
    assert await qm.enqueue(_envelope()) == "1-0"
    mock_redis.xadd.assert_not_called()


@pytest.mark.asyncio
async def test_existing_consumer_group_is_fine(mock_redis):
    mock_redis.xgroup_create.side_effect = ResponseError("BUSYGROUP Consumer Group name already exists")
    qm = QueueManager(mock_redis)
    await qm.ensure_consumer_group()
    await qm.ensure_consumer_group()
    mock_redis.xgroup_create.assert_awaited_once()


@pytest.mark.asyncio
async def test_redis_failure_becomes_transport_error(mock_redis):
    mock_redis.xadd.side_effect = RedisConnectionError("connection refused")
    qm = QueueManager(mock_redis)
    with pytest.raises(QueueUnavailableError):
        await qm.enqueue(_envelope())
    assert issubclass(QueueUnavailableError, TransportError)


@pytest.mark.asyncio
async def test_dequeue_reads_new_message(mock_redis):
    envelope = _envelope()
    mock_redis.xreadgroup.return_value = [("chronoq:tasks", [("5-0", _fields(envelope))])]
    qm = QueueManager(mock_redis, consumer_name="w1")

    delivery = await qm.dequeue(visibility_timeout=30, wait_seconds=2)

    assert delivery.envelope == envelope
    assert delivery.ack_token == "5-0"
    assert delivery.redelivered is False
    assert mock_redis.xautoclaim.call_args.kwargs["min_idle_time"] == 30000
    assert mock_redis.xreadgroup.call_args.kwargs["block"] == 2000
    assert mock_redis.xreadgroup.call_args.kwargs["consumername"] == "w1"


@pytest.mark.asyncio
async def test_dequeue_prefers_messages_past_visibility_window(mock_redis):
    envelope = _envelope()
    mock_redis.xautoclaim.return_value = ["0-0", [("2-0", _fields(envelope))], []]
    qm = QueueManager(mock_redis)

    delivery = await qm.dequeue(visibility_timeout=30)

    assert delivery.ack_token == "2-0"
    assert delivery.redelivered is True
    mock_redis.xreadgroup.assert_not_called()


@pytest.mark.asyncio
async def test_dequeue_nothing_available(mock_redis):
    qm = QueueManager(mock_redis)
    assert await qm.dequeue(visibility_timeout=30) is None
    assert mock_redis.xreadgroup.call_args.kwargs["block"] is None


@pytest.mark.asyncio
async def test_poison_message_is_acked_and_skipped(mock_redis):
    mock_redis.xreadgroup.return_value = [("chronoq:tasks", [("7-0", {"job_id": "x", "envelope": "{not json"})])]
    qm = QueueManager(mock_redis)
    assert await qm.dequeue(visibility_timeout=30) is None
    mock_redis.xack.assert_awaited_once_with("chronoq:tasks", "workers", "7-0")


@pytest.mark.asyncio
async def test_ack(mock_redis):
    qm = QueueManager(mock_redis)
    await qm.ack("5-0")
    mock_redis.xack.assert_awaited_once_with("chronoq:tasks", "workers", "5-0")


@pytest.mark.asyncio
async def test_nack_with_delay_parks_envelope(mock_redis):
    envelope = _envelope()
    mock_redis.xrange.return_value = [("5-0", _fields(envelope))]
    qm = QueueManager(mock_redis)

    await qm.nack("5-0", requeue_delay=10)

    delayed_key, mapping = mock_redis.zadd.call_args.args
    assert delayed_key == "chronoq:tasks:delayed"
    assert list(mapping) == [envelope.to_json()]
    mock_redis.xack.assert_awaited_once_with("chronoq:tasks", "workers", "5-0")


@pytest.mark.asyncio
async def test_nack_without_delay_requeues_copy(mock_redis):
    mock_redis.xrange.return_value = [("5-0", _fields(_envelope()))]
    qm = QueueManager(mock_redis)

    await qm.nack("5-0")

    fields = mock_redis.xadd.call_args.args[1]
    assert fields["requeued_from"] == "5-0"
    mock_redis.zadd.assert_not_called()
    mock_redis.xack.assert_awaited_once()


@pytest.mark.asyncio
async def test_promote_delayed_moves_due_envelopes(mock_redis):
    raw = _envelope().to_json()
    mock_redis.zrangebyscore.return_value = [raw]
    qm = QueueManager(mock_redis)

    assert await qm.promote_delayed() == 1
    fields = mock_redis.xadd.call_args.args[1]
    assert fields["envelope"] == raw
    assert fields["job_id"] == "job-1"


@pytest.mark.asyncio
async def test_promote_delayed_skips_entry_taken_by_other_consumer(mock_redis):
    mock_redis.zrangebyscore.return_value = [_envelope().to_json()]
    mock_redis.zrem = AsyncMock(return_value=0)
    qm = QueueManager(mock_redis)
    assert await qm.promote_delayed() == 0
    mock_redis.xadd.assert_not_called()


@pytest.mark.asyncio
async def test_stats(mock_redis):
    mock_redis.xlen.return_value = 4
    mock_redis.xpending.return_value = {"pending": 2}
    mock_redis.zcard.return_value = 1
    qm = QueueManager(mock_redis)
    assert await qm.get_stats() == {"length": 4, "pending": 2, "delayed": 1}

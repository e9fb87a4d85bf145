"""
Task Queue contract.

Producers (scheduler loop) and consumers (worker pool) only see this
interface. Delivery is at-least-once: a message handed out by `dequeue` is
invisible to other consumers for the visibility window and comes back if it
is neither acked nor nacked in time. Consumers tolerate duplicates by
checking job status/version in the store before acting.
"""
from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field

from ..db.models import JobSnapshot, utcnow

logger = structlog.get_logger(__name__)


class TaskEnvelope(BaseModel):
    """
    Wire-level message: ``{job_id, version, type, payload, dedup_key}``.

    `version` is the version the job holds once the scheduler has marked it
    Queued; a worker presents it to `mark_running`.
    """

    job_id: str
    version: int
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    dedup_key: str

    @classmethod
    def for_claimed_job(cls, job: JobSnapshot) -> "TaskEnvelope":
        return cls(
            job_id=job.id,
            version=job.version + 1,
            type=job.job_type,
            payload=job.payload,
            dedup_key=job.dedup_key,
        )

    @property
    def message_key(self) -> str:
        """Unique per hand-off: one occurrence is handed off once per claim."""
        return f"{self.dedup_key}#{self.version}"

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str) -> "TaskEnvelope":
        return cls.model_validate_json(raw)


@dataclass(frozen=True)
class Delivery:
    envelope: TaskEnvelope
    ack_token: str
    # Handed out before and never acked (visibility window lapsed or nacked).
    redelivered: bool = False


class TaskQueue(ABC):
    @abstractmethod
    async def enqueue(self, envelope: TaskEnvelope) -> str:
        """Returns the message id. Re-enqueueing the same hand-off returns the original id."""

    @abstractmethod
    async def dequeue(self, visibility_timeout: float, wait_seconds: float = 0.0) -> Optional[Delivery]:
        """Hand one task to this consumer, or None if nothing arrived within `wait_seconds`."""

    @abstractmethod
    async def ack(self, ack_token: str) -> None: ...

    @abstractmethod
    async def nack(self, ack_token: str, requeue_delay: float = 0.0) -> None:
        """Explicitly request redelivery after `requeue_delay` seconds."""

    async def close(self) -> None:
        return None


@dataclass
class _Message:
    message_id: str
    envelope: TaskEnvelope
    visible_at: datetime
    delivered: bool = False
    ack_token: Optional[str] = None


@dataclass
class InMemoryTaskQueue(TaskQueue):
    """
    Single-process queue with real visibility-timeout semantics. Time comes
    from `clock` so tests can step past a visibility window.
    """

    clock: Callable[[], datetime] = utcnow
    poll_interval: float = 0.05
    _messages: List[_Message] = field(default_factory=list)
    _keys: Dict[str, str] = field(default_factory=dict)
    _by_token: Dict[str, _Message] = field(default_factory=dict)
    _arrived: asyncio.Event = field(default_factory=asyncio.Event)

    async def enqueue(self, envelope: TaskEnvelope) -> str:
        existing = self._keys.get(envelope.message_key)
        if existing is not None:
            logger.info("task_enqueue_deduplicated", job_id=envelope.job_id, message_id=existing)
            return existing
        message_id = str(uuid.uuid4())
        self._messages.append(_Message(message_id=message_id, envelope=envelope, visible_at=self.clock()))
        self._keys[envelope.message_key] = message_id
        self._arrived.set()
        return message_id

    def _take_visible(self, visibility_timeout: float) -> Optional[Delivery]:
        now = self.clock()
        for message in self._messages:
            if message.visible_at > now:
                continue
            if message.ack_token is not None:
                # Visibility window lapsed without ack/nack: redeliver.
                self._by_token.pop(message.ack_token, None)
            redelivered = message.delivered
            message.delivered = True
            message.ack_token = str(uuid.uuid4())
            message.visible_at = now + timedelta(seconds=visibility_timeout)
            self._by_token[message.ack_token] = message
            return Delivery(message.envelope, message.ack_token, redelivered)
        return None

    async def dequeue(self, visibility_timeout: float, wait_seconds: float = 0.0) -> Optional[Delivery]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait_seconds
        while True:
            delivery = self._take_visible(visibility_timeout)
            if delivery is not None:
                return delivery
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            self._arrived.clear()
            try:
                await asyncio.wait_for(self._arrived.wait(), timeout=min(remaining, self.poll_interval))
            except asyncio.TimeoutError:
                pass

    async def ack(self, ack_token: str) -> None:
        message = self._by_token.pop(ack_token, None)
        if message is None:
            # Token superseded by a redelivery; the newer holder owns the message.
            logger.warning("task_ack_stale_token", ack_token=ack_token)
            return
        self._messages.remove(message)
        self._keys.pop(message.envelope.message_key, None)

    async def nack(self, ack_token: str, requeue_delay: float = 0.0) -> None:
        message = self._by_token.pop(ack_token, None)
        if message is None:
            logger.warning("task_nack_stale_token", ack_token=ack_token)
            return
        message.ack_token = None
        message.visible_at = self.clock() + timedelta(seconds=max(requeue_delay, 0.0))
        self._arrived.set()

    def pending_count(self) -> int:
        return len(self._messages)

"""
Work queue — at-least-once delivery with a dead-letter queue.

    enqueue ──► visible ──receive──► in flight ──ack──► gone
                  ▲                      │
                  │                      ├─ release(delay) ─┐
                  └──── delay elapsed ◄──┘                  │
                                         │                  │
                  visibility timeout ◄───┘                  │
                  (redelivered)                             │
                                                            ▼
              receive_count ≥ max_receive_count ───────► dead letter

A message released or timing out after its max_receive_count-th receive
moves to the dead-letter queue unchanged.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from genflow._types import Clock, utcnow
from genflow.logging import get_logger
from genflow.queue._codec import encode_body
from genflow.queue._policy import QueuePolicy, DEAD_LETTER_POLICY
from genflow.queue._types import QueueMessage, Delivery, QueueStats

logger = get_logger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# Queue Protocol
# ═══════════════════════════════════════════════════════════════════════════════


class Queue(Protocol):
    """Work queue protocol."""

    name: str

    @property
    def policy(self) -> QueuePolicy: ...

    async def send(
        self,
        body: str,
        attributes: dict[str, str] | None = None,
        delay: timedelta = timedelta(0),
    ) -> str:
        """Raw send. Returns message_id."""
        ...

    async def enqueue(self, operation_id: str, source: str) -> str:
        """Send a job message. Returns message_id."""
        ...

    async def receive(
        self,
        max_messages: int = 1,
        visibility_timeout: timedelta | None = None,
    ) -> list[Delivery]: ...

    async def ack(self, receipt: str) -> bool:
        """Delete the delivered message. False if the receipt is stale."""
        ...

    async def release(self, receipt: str, delay: timedelta = timedelta(0)) -> bool:
        """Make the message visible again after delay, or dead-letter it."""
        ...

    async def stats(self) -> QueueStats: ...


# ═══════════════════════════════════════════════════════════════════════════════
# Memory Queue
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(slots=True)
class _Entry:
    message_id: str
    body: str
    attributes: dict[str, str]
    sent_at: datetime
    visible_at: datetime
    receive_count: int = 0
    receipt: str | None = None

    def snapshot(self) -> QueueMessage:
        return QueueMessage(
            message_id=self.message_id,
            body=self.body,
            attributes=dict(self.attributes),
            sent_at=self.sent_at,
            receive_count=self.receive_count,
        )


class MemoryQueue:
    """
    In-process queue with SQS-style semantics.

    Note: no awaits happen while the entry table is mutated, so operations
    are atomic between coroutines without a lock.

    Example:
        dlq = MemoryQueue("generation-dlq", DEAD_LETTER_POLICY)
        queue = MemoryQueue("generation", QueuePolicy(), dead_letter=dlq)
    """

    def __init__(
        self,
        name: str = "generation",
        policy: QueuePolicy = QueuePolicy(),
        dead_letter: MemoryQueue | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.name = name
        self._policy = policy
        self._dead_letter = dead_letter
        self._clock = clock
        self._entries: dict[str, _Entry] = {}

    @property
    def policy(self) -> QueuePolicy:
        return self._policy

    @property
    def dead_letter(self) -> MemoryQueue | None:
        return self._dead_letter

    async def send(
        self,
        body: str,
        attributes: dict[str, str] | None = None,
        delay: timedelta = timedelta(0),
    ) -> str:
        now = self._clock()
        message_id = uuid.uuid4().hex
        self._entries[message_id] = _Entry(
            message_id=message_id,
            body=body,
            attributes=dict(attributes or {}),
            sent_at=now,
            visible_at=now + delay,
        )
        return message_id

    async def enqueue(self, operation_id: str, source: str) -> str:
        message_id = await self.send(
            encode_body(operation_id, self._clock()),
            {"operationId": operation_id, "source": source},
        )
        logger.info(
            "message_enqueued",
            queue=self.name,
            message_id=message_id,
            operation_id=operation_id,
            source=source,
        )
        return message_id

    async def receive(
        self,
        max_messages: int = 1,
        visibility_timeout: timedelta | None = None,
    ) -> list[Delivery]:
        now = self._clock()
        self._sweep(now)

        timeout = (
            self._policy.visibility_timeout if visibility_timeout is None else visibility_timeout
        )
        ready = sorted(
            (e for e in self._entries.values() if e.receipt is None and e.visible_at <= now),
            key=lambda e: e.sent_at,
        )

        deliveries: list[Delivery] = []
        for entry in ready[:max_messages]:
            entry.receive_count += 1
            entry.receipt = uuid.uuid4().hex
            entry.visible_at = now + timeout
            deliveries.append(
                Delivery(
                    message_id=entry.message_id,
                    receipt=entry.receipt,
                    body=entry.body,
                    attributes=dict(entry.attributes),
                    receive_count=entry.receive_count,
                    sent_at=entry.sent_at,
                )
            )
        return deliveries

    async def ack(self, receipt: str) -> bool:
        entry = self._by_receipt(receipt)
        if entry is None:
            return False
        del self._entries[entry.message_id]
        return True

    async def release(self, receipt: str, delay: timedelta = timedelta(0)) -> bool:
        entry = self._by_receipt(receipt)
        if entry is None:
            return False

        if self._exhausted(entry):
            self._move_to_dead_letter(entry)
            return True

        entry.receipt = None
        entry.visible_at = self._clock() + delay
        return True

    async def stats(self) -> QueueStats:
        now = self._clock()
        self._sweep(now)

        visible = in_flight = delayed = 0
        oldest: datetime | None = None
        for entry in self._entries.values():
            if entry.receipt is not None:
                in_flight += 1
            elif entry.visible_at > now:
                delayed += 1
            else:
                visible += 1
            if oldest is None or entry.sent_at < oldest:
                oldest = entry.sent_at

        return QueueStats(
            visible=visible,
            in_flight=in_flight,
            delayed=delayed,
            oldest_age=now - oldest if oldest is not None else None,
        )

    def messages(self) -> list[QueueMessage]:
        """Snapshot of every stored message, oldest first."""
        return [e.snapshot() for e in sorted(self._entries.values(), key=lambda e: e.sent_at)]

    def __len__(self) -> int:
        return len(self._entries)

    # ───────────────────────────────────────────────────────────────────────────

    def _by_receipt(self, receipt: str) -> _Entry | None:
        for entry in self._entries.values():
            if entry.receipt == receipt:
                return entry
        return None

    def _exhausted(self, entry: _Entry) -> bool:
        limit = self._policy.max_receive_count
        return (
            limit is not None
            and self._dead_letter is not None
            and entry.receive_count >= limit
        )

    def _move_to_dead_letter(self, entry: _Entry) -> None:
        dead_letter = self._dead_letter
        if dead_letter is None:
            return
        del self._entries[entry.message_id]
        dead_letter._accept(entry)
        logger.warning(
            "message_dead_lettered",
            queue=self.name,
            dead_letter_queue=dead_letter.name,
            message_id=entry.message_id,
            receive_count=entry.receive_count,
            operation_id=entry.attributes.get("operationId"),
        )

    def _accept(self, entry: _Entry) -> None:
        """Take a dead-lettered message verbatim."""
        self._entries[entry.message_id] = _Entry(
            message_id=entry.message_id,
            body=entry.body,
            attributes=dict(entry.attributes),
            sent_at=entry.sent_at,
            visible_at=self._clock(),
        )

    def _sweep(self, now: datetime) -> None:
        """Expire retention, return timed-out deliveries, dead-letter exhausted ones."""
        for entry in list(self._entries.values()):
            if entry.sent_at + self._policy.retention <= now:
                del self._entries[entry.message_id]
                logger.warning(
                    "message_expired", queue=self.name, message_id=entry.message_id
                )
                continue

            if entry.receipt is not None and entry.visible_at <= now:
                if self._exhausted(entry):
                    self._move_to_dead_letter(entry)
                else:
                    entry.receipt = None


# ═══════════════════════════════════════════════════════════════════════════════
# Redrive — operator helper
# ═══════════════════════════════════════════════════════════════════════════════


async def redrive(
    source: Queue,
    target: Queue,
    max_messages: int | None = None,
) -> int:
    """
    Move messages from a dead-letter queue back to the work queue.

    Bodies are moved unchanged; attribute source becomes "redrive".
    Returns how many were moved.
    """
    moved = 0
    while max_messages is None or moved < max_messages:
        batch = await source.receive(max_messages=10)
        if not batch:
            break
        for delivery in batch:
            if max_messages is not None and moved >= max_messages:
                await source.release(delivery.receipt)
                continue
            attributes = {**delivery.attributes, "source": "redrive"}
            await target.send(delivery.body, attributes)
            await source.ack(delivery.receipt)
            moved += 1

    logger.info("queue_redriven", source=source.name, target=target.name, moved=moved)
    return moved


__all__ = (
    "Queue",
    "MemoryQueue",
    "redrive",
    "DEAD_LETTER_POLICY",
)

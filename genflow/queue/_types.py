"""
Queue types — messages, deliveries, stats.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta


@dataclass(frozen=True, slots=True)
class QueueMessage:
    """A message at rest: what a dead-letter inspection sees."""

    message_id: str
    body: str
    attributes: dict[str, str]
    sent_at: datetime
    receive_count: int = 0


@dataclass(frozen=True, slots=True)
class Delivery:
    """
    One receive of a message.

    receipt identifies this delivery only; ack/release with a receipt from an
    earlier delivery of the same message is a no-op.
    """

    message_id: str
    receipt: str
    body: str
    attributes: dict[str, str] = field(default_factory=dict)
    receive_count: int = 1
    sent_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class MessageBody:
    """Decoded body: a weak reference to a job, no job state."""

    operation_id: str
    timestamp: datetime | None = None


@dataclass(frozen=True)
class MessageError:
    """Body is not a valid job message."""

    message: str


@dataclass(frozen=True, slots=True)
class QueueStats:
    """
    Point-in-time depth.

    visible: ready to receive; in_flight: received, not yet acked;
    delayed: released with a delay that has not elapsed.
    """

    visible: int
    in_flight: int
    delayed: int
    oldest_age: timedelta | None

    @property
    def depth(self) -> int:
        return self.visible + self.in_flight + self.delayed

    def breaches(
        self,
        max_backlog: int = 100,
        max_age: timedelta = timedelta(minutes=15),
    ) -> tuple[str, ...]:
        """Names of exceeded thresholds: "backlog", "oldest_message"."""
        found: list[str] = []
        if self.visible > max_backlog:
            found.append("backlog")
        if self.oldest_age is not None and self.oldest_age > max_age:
            found.append("oldest_message")
        return tuple(found)


__all__ = (
    "QueueMessage",
    "Delivery",
    "MessageBody",
    "MessageError",
    "QueueStats",
)

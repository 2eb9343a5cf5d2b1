"""
Queue policy — visibility, redelivery budget, retention.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import timedelta


@dataclass(frozen=True, slots=True)
class QueuePolicy:
    """
    Queue configuration.

    visibility_timeout: how long a received message stays hidden. Must exceed
        the worker's execution timeout.
    max_receive_count: receives allowed before a message that is released or
        times out again moves to the dead-letter queue. None disables
        dead-lettering (the dead-letter queue itself).
    retention: messages older than this are dropped.

    Example:
        QueuePolicy().with_visibility_timeout(seconds=300).with_max_receive_count(3)
    """

    visibility_timeout: timedelta = timedelta(seconds=300)
    max_receive_count: int | None = 3
    retention: timedelta = timedelta(days=4)

    def with_visibility_timeout(self, *, seconds: float) -> QueuePolicy:
        return replace(self, visibility_timeout=timedelta(seconds=seconds))

    def with_max_receive_count(self, count: int | None) -> QueuePolicy:
        if count is not None and count < 1:
            raise ValueError("max_receive_count must be >= 1")
        return replace(self, max_receive_count=count)

    def with_retention(self, *, days: float) -> QueuePolicy:
        return replace(self, retention=timedelta(days=days))


DEAD_LETTER_POLICY = QueuePolicy(
    visibility_timeout=timedelta(seconds=60),
    max_receive_count=None,
    retention=timedelta(days=14),
)


__all__ = ("QueuePolicy", "DEAD_LETTER_POLICY")

"""
Notifications — fire-and-forget, never part of the job's state.

    dispatcher = Dispatcher(notifier)
    dispatcher.dispatch(Notification(NotificationType.GENERATION_COMPLETE, email, data))
    ...
    await dispatcher.drain()  # on shutdown
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from genflow.logging import get_logger

logger = get_logger(__name__)


class NotificationType(StrEnum):
    WELCOME = "welcome"
    PAYMENT_CONFIRMATION = "payment-confirmation"
    GENERATION_STARTED = "generation-started"
    GENERATION_COMPLETE = "generation-complete"
    GENERATION_FAILED = "generation-failed"
    DEPLOYMENT_COMPLETE = "deployment-complete"


@dataclass(frozen=True, slots=True)
class Notification:
    """
    {type, email, data}. data carries projectName, operationId and, per
    type, deploymentUrl or error.
    """

    type: NotificationType
    email: str
    data: dict[str, Any] = field(default_factory=dict)


class Notifier(Protocol):
    async def send(self, notification: Notification) -> None: ...


class MemoryNotifier:
    """Keeps sent notifications in order. For local runs and tests."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []

    async def send(self, notification: Notification) -> None:
        self.sent.append(notification)

    def of_type(self, type: NotificationType) -> list[Notification]:
        return [n for n in self.sent if n.type == type]


class Dispatcher:
    """
    Sends notifications as background tasks.

    Failures are logged and dropped. Tasks are referenced until done so the
    event loop cannot collect them mid-flight.
    """

    def __init__(self, notifier: Notifier) -> None:
        self._notifier = notifier
        self._tasks: set[asyncio.Task[None]] = set()

    def dispatch(self, notification: Notification) -> None:
        task = asyncio.create_task(self._send(notification))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, notification: Notification) -> None:
        try:
            await self._notifier.send(notification)
        except Exception as e:
            logger.warning(
                "notification_failed",
                type=notification.type.value,
                operation_id=notification.data.get("operationId"),
                error=str(e),
            )
        else:
            logger.info(
                "notification_sent",
                type=notification.type.value,
                operation_id=notification.data.get("operationId"),
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight notification."""
        while self._tasks:
            await asyncio.gather(*tuple(self._tasks))


__all__ = (
    "NotificationType",
    "Notification",
    "Notifier",
    "MemoryNotifier",
    "Dispatcher",
)

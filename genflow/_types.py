"""
Shared types: the injectable clock and the storage error every backend returns.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

type Clock = Callable[[], datetime]
"""Time source. Injected into stores, queues and the worker so tests can move time."""


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class StoreError:
    """Backend unreachable, constraint violated, or driver failure."""

    message: str
    cause: Exception | None = None


__all__ = (
    "Clock",
    "utcnow",
    "StoreError",
)

"""
Idempotency types — records, reservations, results.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum, auto
from typing import Any


# ═══════════════════════════════════════════════════════════════════════════════
# Record State — Reservation Lifecycle
# ═══════════════════════════════════════════════════════════════════════════════


class RecordState(Enum):
    """
    State of an idempotency record.

    Lifecycle:
        PENDING (reserved, in flight) → COMPLETED (result cached)
                                      → (abandoned: record removed)
        COMPLETED → (expired: purged)
    """

    PENDING = auto()
    COMPLETED = auto()


# ═══════════════════════════════════════════════════════════════════════════════
# Idempotency Record — Stored State
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class IdempotencyRecord[T]:
    """
    A stored idempotency record.

    value is set only for COMPLETED; token only for PENDING.
    input_hash guards against two different requests sharing a key.
    """

    key: str
    state: RecordState
    value: T | None
    created_at: datetime
    expires_at: datetime | None
    token: str | None = None
    input_hash: str | None = None

    def is_expired(self, now: datetime) -> bool:
        if self.expires_at is None:
            return False
        return now >= self.expires_at

    @property
    def is_pending(self) -> bool:
        return self.state == RecordState.PENDING

    @property
    def is_completed(self) -> bool:
        return self.state == RecordState.COMPLETED


# ═══════════════════════════════════════════════════════════════════════════════
# Reservation — check_or_reserve() outcomes
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class Existing[T]:
    """A result is already cached for the key."""

    record: IdempotencyRecord[T]


@dataclass(frozen=True, slots=True)
class Reserved:
    """The caller now holds the key and must commit() or abandon()."""

    token: str


@dataclass(frozen=True, slots=True)
class InFlight[T]:
    """Another caller holds the key."""

    record: IdempotencyRecord[T]


type Reservation[T] = Existing[T] | Reserved | InFlight[T]


# ═══════════════════════════════════════════════════════════════════════════════
# Result Types
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class IdempotencyResult[T]:
    """
    Successful idempotent execution.

    from_cache: True when no side effect ran for this call.
    """

    value: T
    from_cache: bool
    key: str


class IdempotencyErrorKind(Enum):
    CONFLICT = auto()  # Key in flight and policy says FAIL
    TIMEOUT = auto()  # Waited for in-flight holder too long
    STORE_ERROR = auto()  # Store unavailable and fail-open disabled
    EXECUTION = auto()  # Wrapped operation failed
    INPUT_MISMATCH = auto()  # Cached result belongs to a different input


@dataclass(frozen=True, slots=True)
class IdempotencyError:
    """
    Idempotent execution error.

    original_error carries the wrapped operation's error for EXECUTION.
    """

    kind: IdempotencyErrorKind
    message: str
    original_error: Any | None = None


__all__ = (
    "RecordState",
    "IdempotencyRecord",
    "Existing",
    "Reserved",
    "InFlight",
    "Reservation",
    "IdempotencyResult",
    "IdempotencyError",
    "IdempotencyErrorKind",
)

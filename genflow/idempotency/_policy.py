"""
Knobs for the idempotency executor: record lifetimes, what a caller does
when the key is already reserved, and how store outages are treated.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import timedelta
from enum import Enum, auto


class OnPending(Enum):
    """
    Behavior when the key is reserved by a request still in flight.

    WAIT polls until the holder commits and returns its value; a retried
    POST /generate lands here. FAIL answers CONFLICT at once.
    """

    WAIT = auto()
    FAIL = auto()


WAIT = OnPending.WAIT
FAIL = OnPending.FAIL


def _span(
    seconds: float | None = None,
    minutes: float | None = None,
    hours: float | None = None,
    delta: timedelta | None = None,
) -> timedelta | None:
    if delta is not None:
        return delta
    total = (seconds or 0) + (minutes or 0) * 60 + (hours or 0) * 3600
    return timedelta(seconds=total) if total > 0 else None


@dataclass(frozen=True, slots=True)
class Policy:
    """
    Defaults: results live 24h, reservations 5m, duplicates WAIT up to 30s,
    and an unreachable store lets the operation run unguarded (fail_open).

        I.Policy().with_ttl(hours=1).with_on_pending(I.FAIL).with_fail_open(False)
    """

    result_ttl: timedelta | None = timedelta(hours=24)
    reservation_ttl: timedelta = timedelta(minutes=5)
    conflict_strategy: OnPending = OnPending.WAIT
    pending_wait_timeout: timedelta = timedelta(seconds=30)
    poll_interval: timedelta = timedelta(milliseconds=100)
    fail_open: bool = True

    def with_ttl(
        self,
        *,
        seconds: float | None = None,
        minutes: float | None = None,
        hours: float | None = None,
        delta: timedelta | None = None,
    ) -> Policy:
        """How long a committed result is replayed. None keeps it forever."""
        return replace(self, result_ttl=_span(seconds, minutes, hours, delta))

    def with_reservation_ttl(
        self,
        *,
        seconds: float | None = None,
        minutes: float | None = None,
        delta: timedelta | None = None,
    ) -> Policy:
        """After this, a reservation left by a crashed holder can be taken over."""
        ttl = _span(seconds, minutes, delta=delta)
        return replace(self, reservation_ttl=ttl or timedelta(minutes=5))

    def with_on_pending(self, strategy: OnPending) -> Policy:
        return replace(self, conflict_strategy=strategy)

    def with_wait_timeout(
        self,
        *,
        seconds: float | None = None,
        delta: timedelta | None = None,
    ) -> Policy:
        """Upper bound on WAIT; past it the caller gets TIMEOUT."""
        timeout = _span(seconds, delta=delta) or timedelta(seconds=30)
        return replace(self, pending_wait_timeout=timeout)

    def with_poll_interval(self, *, seconds: float) -> Policy:
        return replace(self, poll_interval=timedelta(seconds=seconds))

    def with_fail_open(self, enabled: bool = True) -> Policy:
        """False surfaces STORE_ERROR instead of running unguarded."""
        return replace(self, fail_open=enabled)


__all__ = (
    "OnPending",
    "WAIT",
    "FAIL",
    "Policy",
)

"""
Idempotency store — reservation protocol and in-memory implementation.

All methods return Result so the engine can fail open on store errors.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Protocol

from kungfu import Result, Ok

from genflow._types import Clock, StoreError, utcnow
from genflow.idempotency._types import (
    RecordState,
    IdempotencyRecord,
    Existing,
    Reserved,
    InFlight,
    Reservation,
)


# ═══════════════════════════════════════════════════════════════════════════════
# Store Protocol
# ═══════════════════════════════════════════════════════════════════════════════


class Store[T](Protocol):
    """
    Idempotency store protocol.

    check_or_reserve must be atomic: among concurrent callers racing on one
    key, at most one receives Reserved.
    """

    async def get(self, key: str) -> Result[IdempotencyRecord[T] | None, StoreError]:
        """Live record for key, Ok(None) if absent or expired."""
        ...

    async def check_or_reserve(
        self,
        key: str,
        ttl: timedelta,
        input_hash: str | None = None,
    ) -> Result[Reservation[T], StoreError]:
        """
        Existing if a result is cached, InFlight if another caller holds the
        key, otherwise reserve it (PENDING, expiring after ttl) and return
        Reserved with a fresh token.
        """
        ...

    async def commit(
        self,
        key: str,
        value: T,
        ttl: timedelta | None,
        token: str | None = None,
    ) -> Result[bool, StoreError]:
        """
        Cache value and release the reservation.

        Ok(False) if a result was already committed (first writer wins) or,
        when token is given, if the caller no longer holds the reservation.
        """
        ...

    async def abandon(
        self, key: str, token: str | None = None
    ) -> Result[bool, StoreError]:
        """Drop a PENDING reservation so a later attempt can execute."""
        ...

    async def delete(self, key: str) -> Result[bool, StoreError]:
        """Remove any record for key. Ok(True) if one existed."""
        ...

    async def purge_expired(
        self, now: datetime | None = None
    ) -> Result[int, StoreError]:
        """Remove records expired at `now` (default: store clock). Returns the count."""
        ...


type StoreAny = Store[Any]


def new_token() -> str:
    return uuid.uuid4().hex


# ═══════════════════════════════════════════════════════════════════════════════
# Memory Store
# ═══════════════════════════════════════════════════════════════════════════════


class MemoryStore[T]:
    """
    In-memory idempotency store.

    Note: single process only. The lock makes check_or_reserve atomic
    between coroutines, nothing more.
    """

    def __init__(self, clock: Clock = utcnow) -> None:
        self._records: dict[str, IdempotencyRecord[T]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _live(self, key: str) -> IdempotencyRecord[T] | None:
        record = self._records.get(key)
        if record is None:
            return None
        if record.is_expired(self._clock()):
            del self._records[key]
            return None
        return record

    async def get(self, key: str) -> Result[IdempotencyRecord[T] | None, StoreError]:
        async with self._lock:
            return Ok(self._live(key))

    async def check_or_reserve(
        self,
        key: str,
        ttl: timedelta,
        input_hash: str | None = None,
    ) -> Result[Reservation[T], StoreError]:
        async with self._lock:
            record = self._live(key)
            if record is not None:
                if record.is_completed:
                    return Ok(Existing(record))
                return Ok(InFlight(record))

            now = self._clock()
            token = new_token()
            self._records[key] = IdempotencyRecord(
                key=key,
                state=RecordState.PENDING,
                value=None,
                created_at=now,
                expires_at=now + ttl,
                token=token,
                input_hash=input_hash,
            )
            return Ok(Reserved(token))

    async def commit(
        self,
        key: str,
        value: T,
        ttl: timedelta | None,
        token: str | None = None,
    ) -> Result[bool, StoreError]:
        async with self._lock:
            record = self._live(key)
            now = self._clock()
            expires_at = now + ttl if ttl else None

            if record is None:
                if token is not None:
                    # Reservation expired or was abandoned
                    return Ok(False)
                self._records[key] = IdempotencyRecord(
                    key=key,
                    state=RecordState.COMPLETED,
                    value=value,
                    created_at=now,
                    expires_at=expires_at,
                )
                return Ok(True)

            if record.is_completed:
                return Ok(False)
            if token is not None and record.token != token:
                return Ok(False)

            self._records[key] = replace(
                record,
                state=RecordState.COMPLETED,
                value=value,
                expires_at=expires_at,
                token=None,
            )
            return Ok(True)

    async def abandon(
        self, key: str, token: str | None = None
    ) -> Result[bool, StoreError]:
        async with self._lock:
            record = self._live(key)
            if record is None or not record.is_pending:
                return Ok(False)
            if token is not None and record.token != token:
                return Ok(False)
            del self._records[key]
            return Ok(True)

    async def delete(self, key: str) -> Result[bool, StoreError]:
        async with self._lock:
            return Ok(self._records.pop(key, None) is not None)

    async def purge_expired(
        self, now: datetime | None = None
    ) -> Result[int, StoreError]:
        async with self._lock:
            now = now or self._clock()
            expired = [k for k, r in self._records.items() if r.is_expired(now)]
            for k in expired:
                del self._records[k]
            return Ok(len(expired))


__all__ = (
    "StoreError",
    "Store",
    "StoreAny",
    "MemoryStore",
    "new_token",
)

"""
SQLAlchemy integration — durable idempotency store.

Usage:
    session_factory, engine = await create_database("sqlite+aiosqlite:///app.db")
    store = SQLAlchemyStore(session_factory)

    result = await (
        I.idempotent(create_job)
        .key(lambda req: req.key)
        .store(store)
        .build()
        .run(request)
    )

Reservation is the primary key: of two concurrent INSERTs for one key, the
database lets exactly one through. commit/abandon are conditional UPDATE and
DELETE statements on (key, state, token).
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, cast

from sqlalchemy import String, Text, update, delete
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from kungfu import Result, Ok, Error

from genflow._types import Clock, utcnow
from genflow.db import Base, UTCDateTime
from genflow.idempotency._types import (
    IdempotencyRecord,
    RecordState,
    Existing,
    Reserved,
    InFlight,
    Reservation,
)
from genflow.idempotency._store import StoreError, new_token


# ═══════════════════════════════════════════════════════════════════════════════
# Table
# ═══════════════════════════════════════════════════════════════════════════════


class IdempotencyStatus:
    """Values of the state column."""

    PENDING = "pending"
    COMPLETED = "completed"


class IdempotencyTable(Base):
    __tablename__ = "idempotency_records"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    state: Mapped[str] = mapped_column(String(16), nullable=False)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    input_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, index=True
    )


# ═══════════════════════════════════════════════════════════════════════════════
# SQLAlchemy Store
# ═══════════════════════════════════════════════════════════════════════════════


class SQLAlchemyStore[T]:
    """
    Idempotency store over an async SQLAlchemy session factory.

    Values are stored as text; encode/decode default to JSON.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        encode: Callable[[T], str] = json.dumps,
        decode: Callable[[str], T] = json.loads,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._encode = encode
        self._decode = decode
        self._clock = clock

    async def get(self, key: str) -> Result[IdempotencyRecord[T] | None, StoreError]:
        try:
            async with self._session_factory() as session:
                row = await session.get(IdempotencyTable, key)
                if row is None or self._expired(row):
                    return Ok(None)
                return Ok(self._to_record(row))

        except Exception as e:
            return Error(StoreError(f"Failed to get: {e}", e))

    async def check_or_reserve(
        self,
        key: str,
        ttl: timedelta,
        input_hash: str | None = None,
    ) -> Result[Reservation[T], StoreError]:
        try:
            async with self._session_factory() as session:
                now = self._clock()

                # Clear an expired record so the key can be reserved again
                await session.execute(
                    delete(IdempotencyTable).where(
                        IdempotencyTable.key == key,
                        IdempotencyTable.expires_at <= now,
                    )
                )
                await session.commit()

                token = new_token()
                session.add(
                    IdempotencyTable(
                        key=key,
                        state=IdempotencyStatus.PENDING,
                        value=None,
                        token=token,
                        input_hash=input_hash,
                        created_at=now,
                        expires_at=now + ttl,
                    )
                )
                try:
                    await session.commit()
                    return Ok(Reserved(token))
                except IntegrityError:
                    await session.rollback()

                row = await session.get(IdempotencyTable, key, populate_existing=True)
                if row is None:
                    return Error(StoreError(f"Record vanished during reserve: {key}"))

                record = self._to_record(row)
                if record.is_completed:
                    return Ok(Existing(record))
                return Ok(InFlight(record))

        except Exception as e:
            return Error(StoreError(f"Failed to reserve: {e}", e))

    async def commit(
        self,
        key: str,
        value: T,
        ttl: timedelta | None,
        token: str | None = None,
    ) -> Result[bool, StoreError]:
        try:
            async with self._session_factory() as session:
                now = self._clock()
                encoded = self._encode(value)
                expires_at = now + ttl if ttl else None

                conditions = [
                    IdempotencyTable.key == key,
                    IdempotencyTable.state == IdempotencyStatus.PENDING,
                ]
                if token is not None:
                    conditions.append(IdempotencyTable.token == token)

                stmt = (
                    update(IdempotencyTable)
                    .where(*conditions)
                    .values(
                        state=IdempotencyStatus.COMPLETED,
                        value=encoded,
                        token=None,
                        expires_at=expires_at,
                    )
                )
                cursor = cast(CursorResult[Any], await session.execute(stmt))
                await session.commit()
                if cursor.rowcount > 0:
                    return Ok(True)

                if token is not None:
                    return Ok(False)

                # Unreserved commit: first writer inserts
                session.add(
                    IdempotencyTable(
                        key=key,
                        state=IdempotencyStatus.COMPLETED,
                        value=encoded,
                        token=None,
                        input_hash=None,
                        created_at=now,
                        expires_at=expires_at,
                    )
                )
                try:
                    await session.commit()
                    return Ok(True)
                except IntegrityError:
                    await session.rollback()
                    return Ok(False)

        except Exception as e:
            return Error(StoreError(f"Failed to commit: {e}", e))

    async def abandon(
        self, key: str, token: str | None = None
    ) -> Result[bool, StoreError]:
        try:
            async with self._session_factory() as session:
                conditions = [
                    IdempotencyTable.key == key,
                    IdempotencyTable.state == IdempotencyStatus.PENDING,
                ]
                if token is not None:
                    conditions.append(IdempotencyTable.token == token)

                stmt = delete(IdempotencyTable).where(*conditions)
                cursor = cast(CursorResult[Any], await session.execute(stmt))
                await session.commit()
                return Ok(cursor.rowcount > 0)

        except Exception as e:
            return Error(StoreError(f"Failed to abandon: {e}", e))

    async def delete(self, key: str) -> Result[bool, StoreError]:
        try:
            async with self._session_factory() as session:
                stmt = delete(IdempotencyTable).where(IdempotencyTable.key == key)
                cursor = cast(CursorResult[Any], await session.execute(stmt))
                await session.commit()
                return Ok(cursor.rowcount > 0)

        except Exception as e:
            return Error(StoreError(f"Failed to delete: {e}", e))

    async def purge_expired(
        self, now: datetime | None = None
    ) -> Result[int, StoreError]:
        try:
            async with self._session_factory() as session:
                stmt = delete(IdempotencyTable).where(
                    IdempotencyTable.expires_at <= (now or self._clock())
                )
                cursor = cast(CursorResult[Any], await session.execute(stmt))
                await session.commit()
                return Ok(cursor.rowcount)

        except Exception as e:
            return Error(StoreError(f"Failed to purge: {e}", e))

    def _expired(self, row: IdempotencyTable) -> bool:
        return row.expires_at is not None and self._clock() >= row.expires_at

    def _to_record(self, row: IdempotencyTable) -> IdempotencyRecord[T]:
        completed = row.state == IdempotencyStatus.COMPLETED
        return IdempotencyRecord(
            key=row.key,
            state=RecordState.COMPLETED if completed else RecordState.PENDING,
            value=self._decode(row.value) if completed and row.value is not None else None,
            created_at=row.created_at,
            expires_at=row.expires_at,
            token=row.token,
            input_hash=row.input_hash,
        )


__all__ = (
    "IdempotencyStatus",
    "IdempotencyTable",
    "SQLAlchemyStore",
)

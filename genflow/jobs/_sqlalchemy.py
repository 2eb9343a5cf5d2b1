"""
SQLAlchemy integration — durable job store.

Indexes mirror the lookups the pipeline makes:
    (project_name, created_at)   find_latest_by_project_name
    (status, created_at)         list_by_status
    (owner_email, created_at)    per-owner listings
    payment_session_id           payment confirmation
    project_name WHERE active    unique: one pending/processing job per project

transition() is a single conditional UPDATE:
    UPDATE jobs SET status = :new, ...
     WHERE operation_id = :id AND status = :expected
       [AND (lease_expires_at IS NULL OR lease_expires_at <= :now)]
rowcount 0 means another writer got there first.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, cast

from sqlalchemy import (
    Index,
    Integer,
    String,
    Text,
    delete,
    or_,
    select,
    text,
    update,
)
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from kungfu import Result, Ok, Error

from genflow._types import Clock, utcnow
from genflow.db import Base, UTCDateTime
from genflow.jobs._errors import (
    ConflictError,
    StaleStateError,
    NotFound,
    StoreError,
)
from genflow.jobs._policy import JobStorePolicy
from genflow.jobs._store import check_payload_kind
from genflow.jobs._transitions import check_edge
from genflow.jobs._types import (
    ACTIVE_STATUSES,
    JobKind,
    JobStatus,
    JobPayload,
    JobRecord,
    JobPatch,
    encode_payload,
    decode_payload,
)

_ACTIVE = [s.value for s in ACTIVE_STATUSES]
_ACTIVE_PREDICATE = "status IN ({})".format(", ".join(f"'{s}'" for s in _ACTIVE))


# ═══════════════════════════════════════════════════════════════════════════════
# Table
# ═══════════════════════════════════════════════════════════════════════════════


class JobTable(Base):
    __tablename__ = "jobs"

    operation_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    owner_email: Mapped[str] = mapped_column(String(320), nullable=False)
    project_name: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    payment_session_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    deployed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lease_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("ix_jobs_project_created", "project_name", "created_at"),
        Index("ix_jobs_status_created", "status", "created_at"),
        Index("ix_jobs_owner_created", "owner_email", "created_at"),
        Index(
            "uq_jobs_active_project",
            "project_name",
            unique=True,
            sqlite_where=text(_ACTIVE_PREDICATE),
            postgresql_where=text(_ACTIVE_PREDICATE),
        ),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# SQLAlchemy Job Store
# ═══════════════════════════════════════════════════════════════════════════════


class SQLAlchemyJobStore:
    """Job store over an async SQLAlchemy session factory."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy: JobStorePolicy = JobStorePolicy(),
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._policy = policy
        self._clock = clock

    async def create(
        self,
        operation_id: str,
        kind: JobKind,
        owner_email: str,
        project_name: str,
        payload: JobPayload,
        payment_session_id: str | None = None,
    ) -> Result[JobRecord, ConflictError | StoreError]:
        check_payload_kind(kind, payload)
        try:
            async with self._session_factory() as session:
                active = await self._active_for(session, project_name)
                if active is not None:
                    return Error(ConflictError(project_name, active.operation_id))

                now = self._clock()
                row = JobTable(
                    operation_id=operation_id,
                    kind=kind.value,
                    status=JobStatus.PENDING.value,
                    owner_email=owner_email,
                    project_name=project_name,
                    payload=json.dumps(encode_payload(payload)),
                    payment_session_id=payment_session_id,
                    created_at=now,
                    updated_at=now,
                    expires_at=now + self._policy.ttl,
                    attempts=0,
                )
                session.add(row)
                try:
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    # Lost a race on the active-project index, or a reused id
                    active = await self._active_for(session, project_name)
                    if active is not None:
                        return Error(ConflictError(project_name, active.operation_id))
                    return Error(StoreError(f"Duplicate operation_id: {operation_id}", e))

                return Ok(self._to_record(row))

        except Exception as e:
            return Error(StoreError(f"Failed to create job: {e}", e))

    async def get(self, operation_id: str) -> Result[JobRecord, NotFound | StoreError]:
        try:
            async with self._session_factory() as session:
                row = await session.get(JobTable, operation_id)
                if row is None:
                    return Error(NotFound(operation_id))
                return Ok(self._to_record(row))

        except Exception as e:
            return Error(StoreError(f"Failed to get job: {e}", e))

    async def find_latest_by_project_name(
        self, project_name: str
    ) -> Result[JobRecord, NotFound | StoreError]:
        stmt = (
            select(JobTable)
            .where(JobTable.project_name == project_name)
            .order_by(JobTable.created_at.desc())
            .limit(1)
        )
        return await self._find_one(stmt, project_name)

    async def find_by_payment_session(
        self, session_id: str
    ) -> Result[JobRecord, NotFound | StoreError]:
        stmt = (
            select(JobTable)
            .where(JobTable.payment_session_id == session_id)
            .order_by(JobTable.created_at.desc())
            .limit(1)
        )
        return await self._find_one(stmt, session_id)

    async def list_by_status(
        self, status: JobStatus, limit: int = 100
    ) -> Result[list[JobRecord], StoreError]:
        try:
            async with self._session_factory() as session:
                stmt = (
                    select(JobTable)
                    .where(JobTable.status == status.value)
                    .order_by(JobTable.created_at)
                    .limit(limit)
                )
                rows = (await session.execute(stmt)).scalars().all()
                return Ok([self._to_record(r) for r in rows])

        except Exception as e:
            return Error(StoreError(f"Failed to list jobs: {e}", e))

    async def transition(
        self,
        operation_id: str,
        expected: JobStatus,
        new: JobStatus,
        patch: JobPatch = JobPatch(),
        *,
        lease_expired_before: datetime | None = None,
    ) -> Result[JobRecord, StaleStateError | NotFound | StoreError]:
        check_edge(expected, new)
        patch.check(new)
        try:
            async with self._session_factory() as session:
                conditions: list[Any] = [
                    JobTable.operation_id == operation_id,
                    JobTable.status == expected.value,
                ]
                if lease_expired_before is not None:
                    conditions.append(
                        or_(
                            JobTable.lease_expires_at.is_(None),
                            JobTable.lease_expires_at <= lease_expired_before,
                        )
                    )

                stmt = (
                    update(JobTable)
                    .where(*conditions)
                    .values(**self._values(patch, new))
                )
                cursor = cast(CursorResult[Any], await session.execute(stmt))
                await session.commit()

                row = await session.get(JobTable, operation_id, populate_existing=True)
                if row is None:
                    return Error(NotFound(operation_id))
                if cursor.rowcount == 0:
                    actual = row.status
                    if actual == expected.value:
                        actual = f"{actual} (leased)"
                    return Error(StaleStateError(operation_id, expected, actual))
                return Ok(self._to_record(row))

        except Exception as e:
            return Error(StoreError(f"Failed to transition job: {e}", e))

    async def purge_expired(
        self, now: datetime | None = None
    ) -> Result[int, StoreError]:
        now = now or self._clock()
        try:
            async with self._session_factory() as session:
                stmt = delete(JobTable).where(
                    JobTable.expires_at <= now,
                    or_(
                        JobTable.lease_expires_at.is_(None),
                        JobTable.lease_expires_at <= now,
                    ),
                )
                cursor = cast(CursorResult[Any], await session.execute(stmt))
                await session.commit()
                return Ok(cursor.rowcount)

        except Exception as e:
            return Error(StoreError(f"Failed to purge jobs: {e}", e))

    # ───────────────────────────────────────────────────────────────────────────

    def _values(self, patch: JobPatch, new: JobStatus) -> dict[str, Any]:
        values: dict[str, Any] = {
            "status": new.value,
            "updated_at": self._clock(),
        }
        # Each terminal field has one incoming edge, so it is written at most once
        if patch.completed_at is not None:
            values["completed_at"] = patch.completed_at
        if patch.failure_reason is not None:
            values["failure_reason"] = patch.failure_reason
        if patch.deployed_at is not None:
            values["deployed_at"] = patch.deployed_at
        if patch.clear_lease:
            values["lease_expires_at"] = None
        elif patch.lease_expires_at is not None:
            values["lease_expires_at"] = patch.lease_expires_at
        if patch.bump_attempts:
            values["attempts"] = JobTable.attempts + 1
        return values

    async def _active_for(
        self, session: AsyncSession, project_name: str
    ) -> JobTable | None:
        stmt = select(JobTable).where(
            JobTable.project_name == project_name,
            JobTable.status.in_(_ACTIVE),
        )
        return (await session.execute(stmt)).scalars().first()

    async def _find_one(
        self, stmt: Any, key: str
    ) -> Result[JobRecord, NotFound | StoreError]:
        try:
            async with self._session_factory() as session:
                row = (await session.execute(stmt)).scalars().first()
                if row is None:
                    return Error(NotFound(key))
                return Ok(self._to_record(row))

        except Exception as e:
            return Error(StoreError(f"Failed to find job: {e}", e))

    def _to_record(self, row: JobTable) -> JobRecord:
        match decode_payload(json.loads(row.payload)):
            case Error(err):
                raise ValueError(f"Stored payload unreadable: {err.message}")
            case Ok(payload):
                return JobRecord(
                    operation_id=row.operation_id,
                    kind=JobKind(row.kind),
                    status=JobStatus(row.status),
                    owner_email=row.owner_email,
                    project_name=row.project_name,
                    payload=payload,
                    created_at=row.created_at,
                    updated_at=row.updated_at,
                    expires_at=row.expires_at,
                    payment_session_id=row.payment_session_id,
                    completed_at=row.completed_at,
                    failure_reason=row.failure_reason,
                    deployed_at=row.deployed_at,
                    attempts=row.attempts,
                    lease_expires_at=row.lease_expires_at,
                )


__all__ = (
    "JobTable",
    "SQLAlchemyJobStore",
)

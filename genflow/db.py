"""
Database layer — declarative base, UTC column type, engine setup.

Tables live next to the stores that own them:
    genflow.idempotency._sqlalchemy.IdempotencyTable
    genflow.jobs._sqlalchemy.JobTable
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime
from sqlalchemy.engine import Dialect
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator


# ═══════════════════════════════════════════════════════════════════════════════
# Base
# ═══════════════════════════════════════════════════════════════════════════════


class Base(DeclarativeBase):
    pass


# ═══════════════════════════════════════════════════════════════════════════════
# UTC DateTime — naive UTC in storage, aware UTC in Python
# ═══════════════════════════════════════════════════════════════════════════════


class UTCDateTime(TypeDecorator[datetime]):
    """
    Stores naive UTC, returns aware UTC.

    Note: SQLite drops tzinfo; comparing naive and aware datetimes raises.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(
        self, value: datetime | None, dialect: Dialect
    ) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(UTC)
        return value.replace(tzinfo=None)

    def process_result_value(
        self, value: Any | None, dialect: Dialect
    ) -> datetime | None:
        if value is None:
            return None
        return value.replace(tzinfo=UTC)


# ═══════════════════════════════════════════════════════════════════════════════
# Database Setup
# ═══════════════════════════════════════════════════════════════════════════════


async def create_database(
    url: str = "sqlite+aiosqlite:///:memory:",
    echo: bool = False,
) -> tuple[async_sessionmaker[AsyncSession], AsyncEngine]:
    """Create tables and return (session_factory, engine)."""
    # Register tables on Base.metadata
    from genflow.idempotency import _sqlalchemy as _idempotency_tables  # noqa: F401
    from genflow.jobs import _sqlalchemy as _job_tables  # noqa: F401

    engine = create_async_engine(url, echo=echo)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return async_sessionmaker(engine, expire_on_commit=False), engine


__all__ = (
    "Base",
    "UTCDateTime",
    "create_database",
)

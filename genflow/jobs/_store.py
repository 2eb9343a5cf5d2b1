"""
Job record store — protocol and in-memory implementation.

The store is the only shared mutable state in the pipeline. Every status
change goes through transition(), a compare-and-set on status:

    transition(id, expected=PENDING, new=PROCESSING)
        ├── Ok(record)              → caller won
        ├── Error(StaleStateError)  → someone else moved it first
        └── Error(NotFound)
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Protocol

from kungfu import Result, Ok, Error

from genflow._types import Clock, utcnow
from genflow.jobs._errors import (
    ConflictError,
    StaleStateError,
    NotFound,
    StoreError,
)
from genflow.jobs._policy import JobStorePolicy
from genflow.jobs._transitions import check_edge
from genflow.jobs._types import (
    JobKind,
    JobStatus,
    JobPayload,
    JobRecord,
    JobPatch,
)


# ═══════════════════════════════════════════════════════════════════════════════
# Store Protocol
# ═══════════════════════════════════════════════════════════════════════════════


class JobStore(Protocol):
    """Job record store protocol."""

    async def create(
        self,
        operation_id: str,
        kind: JobKind,
        owner_email: str,
        project_name: str,
        payload: JobPayload,
        payment_session_id: str | None = None,
    ) -> Result[JobRecord, ConflictError | StoreError]:
        """New pending job. ConflictError if the project already has an active job."""
        ...

    async def get(self, operation_id: str) -> Result[JobRecord, NotFound | StoreError]: ...

    async def find_latest_by_project_name(
        self, project_name: str
    ) -> Result[JobRecord, NotFound | StoreError]:
        """Newest job for the project by created_at."""
        ...

    async def find_by_payment_session(
        self, session_id: str
    ) -> Result[JobRecord, NotFound | StoreError]: ...

    async def list_by_status(
        self, status: JobStatus, limit: int = 100
    ) -> Result[list[JobRecord], StoreError]:
        """Oldest first."""
        ...

    async def transition(
        self,
        operation_id: str,
        expected: JobStatus,
        new: JobStatus,
        patch: JobPatch = JobPatch(),
        *,
        lease_expired_before: datetime | None = None,
    ) -> Result[JobRecord, StaleStateError | NotFound | StoreError]:
        """
        Conditional write: applies only while status == expected.

        lease_expired_before additionally requires the processing lease to
        have lapsed at that instant (re-acquisition of a crashed job).

        Raises:
            ValueError: expected → new is not an allowed edge
        """
        ...

    async def purge_expired(
        self, now: datetime | None = None
    ) -> Result[int, StoreError]:
        """Drop expired jobs, abandoned pending ones included; a live lease is kept."""
        ...


def check_payload_kind(kind: JobKind, payload: JobPayload) -> None:
    if payload.kind != kind:
        raise ValueError(f"{kind} job given {payload.kind} payload")


# ═══════════════════════════════════════════════════════════════════════════════
# Memory Store
# ═══════════════════════════════════════════════════════════════════════════════


class MemoryJobStore:
    """
    In-memory job store.

    Note: single process only; the lock serializes writes between coroutines.
    """

    def __init__(
        self,
        policy: JobStorePolicy = JobStorePolicy(),
        clock: Clock = utcnow,
    ) -> None:
        self._jobs: dict[str, JobRecord] = {}
        self._lock = asyncio.Lock()
        self._policy = policy
        self._clock = clock

    def _active_for(self, project_name: str) -> JobRecord | None:
        for job in self._jobs.values():
            if job.project_name == project_name and job.status.is_active:
                return job
        return None

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
        async with self._lock:
            if operation_id in self._jobs:
                return Error(StoreError(f"Duplicate operation_id: {operation_id}"))

            active = self._active_for(project_name)
            if active is not None:
                return Error(ConflictError(project_name, active.operation_id))

            now = self._clock()
            job = JobRecord(
                operation_id=operation_id,
                kind=kind,
                status=JobStatus.PENDING,
                owner_email=owner_email,
                project_name=project_name,
                payload=payload,
                created_at=now,
                updated_at=now,
                expires_at=now + self._policy.ttl,
                payment_session_id=payment_session_id,
            )
            self._jobs[operation_id] = job
            return Ok(job)

    async def get(self, operation_id: str) -> Result[JobRecord, NotFound | StoreError]:
        job = self._jobs.get(operation_id)
        if job is None:
            return Error(NotFound(operation_id))
        return Ok(job)

    async def find_latest_by_project_name(
        self, project_name: str
    ) -> Result[JobRecord, NotFound | StoreError]:
        matches = [j for j in self._jobs.values() if j.project_name == project_name]
        if not matches:
            return Error(NotFound(project_name))
        return Ok(max(matches, key=lambda j: j.created_at))

    async def find_by_payment_session(
        self, session_id: str
    ) -> Result[JobRecord, NotFound | StoreError]:
        for job in self._jobs.values():
            if job.payment_session_id == session_id:
                return Ok(job)
        return Error(NotFound(session_id))

    async def list_by_status(
        self, status: JobStatus, limit: int = 100
    ) -> Result[list[JobRecord], StoreError]:
        matches = sorted(
            (j for j in self._jobs.values() if j.status == status),
            key=lambda j: j.created_at,
        )
        return Ok(matches[:limit])

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
        async with self._lock:
            job = self._jobs.get(operation_id)
            if job is None:
                return Error(NotFound(operation_id))
            if job.status != expected:
                return Error(StaleStateError(operation_id, expected, job.status))
            if lease_expired_before is not None and job.lease_live(lease_expired_before):
                return Error(
                    StaleStateError(operation_id, expected, f"{job.status} (leased)")
                )

            updated = patch.apply(job, new, self._clock())
            self._jobs[operation_id] = updated
            return Ok(updated)

    async def purge_expired(
        self, now: datetime | None = None
    ) -> Result[int, StoreError]:
        async with self._lock:
            now = now or self._clock()
            expired = [
                op_id
                for op_id, job in self._jobs.items()
                if job.is_expired(now) and not job.lease_live(now)
            ]
            for op_id in expired:
                del self._jobs[op_id]
            return Ok(len(expired))


__all__ = (
    "JobStore",
    "MemoryJobStore",
    "check_payload_kind",
)

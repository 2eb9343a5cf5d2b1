"""
Job types — record, status, patch, versioned payloads.

Lifecycle:
    pending → processing → completed → deployed
                  │   ▲
                  │   └── processing (lease re-acquired / released)
                  └─────→ failed
    pending ──────────→ failed (dead-lettered before acquisition)
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any

from kungfu import Result, Ok, Error
from pydantic import Field, TypeAdapter, ValidationError

from genflow.jobs._errors import PayloadError


# ═══════════════════════════════════════════════════════════════════════════════
# Kind & Status
# ═══════════════════════════════════════════════════════════════════════════════


class JobKind(StrEnum):
    CREATE = "create"
    UPDATE = "update"


class JobStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEPLOYED = "deployed"

    @property
    def is_terminal(self) -> bool:
        """No further worker transitions (deployed is downstream only)."""
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.DEPLOYED)

    @property
    def is_active(self) -> bool:
        """Holds the project: at most one active job per project_name."""
        return self in (JobStatus.PENDING, JobStatus.PROCESSING)


ACTIVE_STATUSES: tuple[JobStatus, ...] = (JobStatus.PENDING, JobStatus.PROCESSING)


# ═══════════════════════════════════════════════════════════════════════════════
# Payload — closed, versioned tagged union over kind
# ═══════════════════════════════════════════════════════════════════════════════

PAYLOAD_VERSION = 1


@dataclass(frozen=True, slots=True)
class CreatePayload:
    """
    New website from a template.

    langs: text id → text; images: image slot → URL or upload reference.
    """

    template_id: Annotated[str, Field(min_length=1)]
    langs: dict[str, str] = field(default_factory=dict)
    images: dict[str, str] = field(default_factory=dict)
    version: int = PAYLOAD_VERSION

    @property
    def kind(self) -> JobKind:
        return JobKind.CREATE


@dataclass(frozen=True, slots=True)
class UpdatePayload:
    """Content edits to an existing website."""

    langs: dict[str, str] = field(default_factory=dict)
    images: dict[str, str] = field(default_factory=dict)
    version: int = PAYLOAD_VERSION

    @property
    def kind(self) -> JobKind:
        return JobKind.UPDATE


type JobPayload = CreatePayload | UpdatePayload

_CREATE: TypeAdapter[CreatePayload] = TypeAdapter(CreatePayload)
_UPDATE: TypeAdapter[UpdatePayload] = TypeAdapter(UpdatePayload)


def encode_payload(payload: JobPayload) -> dict[str, Any]:
    """Payload → tagged dict: {"kind", "version", ...fields}."""
    match payload:
        case CreatePayload(template_id=t, langs=langs, images=images, version=v):
            return {
                "kind": JobKind.CREATE.value,
                "version": v,
                "template_id": t,
                "langs": dict(langs),
                "images": dict(images),
            }
        case UpdatePayload(langs=langs, images=images, version=v):
            return {
                "kind": JobKind.UPDATE.value,
                "version": v,
                "langs": dict(langs),
                "images": dict(images),
            }


def _adapter(kind: object) -> TypeAdapter[Any] | None:
    match kind:
        case JobKind.CREATE.value:
            return _CREATE
        case JobKind.UPDATE.value:
            return _UPDATE
        case _:
            return None


def decode_payload(data: Any) -> Result[JobPayload, PayloadError]:
    """Tagged dict → payload. Unknown kind or version is rejected."""
    if not isinstance(data, dict):
        return Error(PayloadError("payload must be an object"))

    version = data.get("version")
    if version != PAYLOAD_VERSION:
        return Error(PayloadError(f"unsupported payload version: {version!r}"))

    adapter = _adapter(data.get("kind"))
    if adapter is None:
        return Error(PayloadError(f"unknown payload kind: {data.get('kind')!r}"))

    fields = {k: v for k, v in data.items() if k != "kind"}
    try:
        return Ok(adapter.validate_python(fields))
    except ValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(p) for p in first["loc"])
        return Error(PayloadError(f"{where}: {first['msg']}"))


# ═══════════════════════════════════════════════════════════════════════════════
# Job Record
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class JobRecord:
    """
    A generation job.

    Note: completed_at / failure_reason are written by terminal transitions
    only and never cleared.
    """

    operation_id: str
    kind: JobKind
    status: JobStatus
    owner_email: str
    project_name: str
    payload: JobPayload
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    payment_session_id: str | None = None
    completed_at: datetime | None = None
    failure_reason: str | None = None
    deployed_at: datetime | None = None
    attempts: int = 0
    lease_expires_at: datetime | None = None

    def lease_live(self, now: datetime) -> bool:
        return self.lease_expires_at is not None and now < self.lease_expires_at

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


# ═══════════════════════════════════════════════════════════════════════════════
# Patch — fields written alongside a transition
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class JobPatch:
    """
    Fields to set with a transition. None means "leave as is".

    clear_lease drops lease_expires_at; bump_attempts counts an acquisition.
    """

    completed_at: datetime | None = None
    failure_reason: str | None = None
    deployed_at: datetime | None = None
    lease_expires_at: datetime | None = None
    clear_lease: bool = False
    bump_attempts: bool = False

    def check(self, status: JobStatus) -> None:
        if self.completed_at is not None and status != JobStatus.COMPLETED:
            raise ValueError("completed_at is only set on completion")
        if self.failure_reason is not None and status != JobStatus.FAILED:
            raise ValueError("failure_reason is only set on failure")
        if self.deployed_at is not None and status != JobStatus.DEPLOYED:
            raise ValueError("deployed_at is only set on deployment")

    def apply(self, record: JobRecord, status: JobStatus, now: datetime) -> JobRecord:
        """New record with status, patch fields and updated_at applied."""
        self.check(status)

        lease = record.lease_expires_at
        if self.clear_lease:
            lease = None
        elif self.lease_expires_at is not None:
            lease = self.lease_expires_at

        return replace(
            record,
            status=status,
            updated_at=now,
            completed_at=record.completed_at or self.completed_at,
            failure_reason=record.failure_reason or self.failure_reason,
            deployed_at=record.deployed_at or self.deployed_at,
            lease_expires_at=lease,
            attempts=record.attempts + 1 if self.bump_attempts else record.attempts,
        )


__all__ = (
    "JobKind",
    "JobStatus",
    "ACTIVE_STATUSES",
    "PAYLOAD_VERSION",
    "CreatePayload",
    "UpdatePayload",
    "JobPayload",
    "encode_payload",
    "decode_payload",
    "JobRecord",
    "JobPatch",
)

"""
Jobs — durable generation job records with conditional transitions.

    from genflow import jobs as J

    store = J.SQLAlchemyJobStore(session_factory)
    created = await store.create(
        operation_id, J.JobKind.CREATE, email, "acme",
        J.CreatePayload(template_id="bistro"),
    )

    match await store.transition(op_id, J.JobStatus.PENDING, J.JobStatus.PROCESSING):
        case Ok(job): ...                    # acquired
        case Error(J.StaleStateError()): ... # duplicate delivery, drop it
"""

from genflow.jobs._errors import (
    ConflictError,
    StaleStateError,
    NotFound,
    PayloadError,
    StoreError,
)
from genflow.jobs._types import (
    JobKind,
    JobStatus,
    ACTIVE_STATUSES,
    PAYLOAD_VERSION,
    CreatePayload,
    UpdatePayload,
    JobPayload,
    encode_payload,
    decode_payload,
    JobRecord,
    JobPatch,
)
from genflow.jobs._transitions import EDGES, check_edge
from genflow.jobs._policy import JobStorePolicy
from genflow.jobs._store import JobStore, MemoryJobStore
from genflow.jobs._sqlalchemy import JobTable, SQLAlchemyJobStore

__all__ = (
    # Errors
    "ConflictError",
    "StaleStateError",
    "NotFound",
    "PayloadError",
    "StoreError",
    # Types
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
    # Transitions
    "EDGES",
    "check_edge",
    # Store
    "JobStorePolicy",
    "JobStore",
    "MemoryJobStore",
    "JobTable",
    "SQLAlchemyJobStore",
)

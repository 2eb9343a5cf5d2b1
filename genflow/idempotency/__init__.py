"""
Idempotency — deduplicate retried requests via nodnod graphs.

    from genflow import idempotency as I

    # Graph API
    spec = I.IdempotencySpec(
        key=I.fingerprint("POST", "/generate", user_id, body),
        input_value=request,
        operation=create_job,
        store=I.MemoryStore(),
        policy=I.Policy().with_ttl(hours=24),
    )
    result = await I.run_idempotent(spec)

    # Builder API
    executor = (
        I.idempotent(create_job)
        .key(lambda req: req.key)
        .store(I.SQLAlchemyStore(session_factory))
        .policy(I.Policy().with_ttl(hours=24))
        .build()
    )
    result = await executor.run(request)

Store contract — check_or_reserve / commit / abandon:

    check_or_reserve(key)
        ├── Existing(record)  → cached value, no side effect
        ├── InFlight(record)  → WAIT (poll) or FAIL (CONFLICT)
        └── Reserved(token)   → run operation
                                   ├── Ok  → commit(key, value, token)
                                   └── Err → abandon(key, token)

Store unavailable → fail open (run uncached) unless policy disables it.
"""

from genflow.idempotency._types import (
    RecordState,
    IdempotencyRecord,
    Existing,
    Reserved,
    InFlight,
    Reservation,
    IdempotencyResult,
    IdempotencyError,
    IdempotencyErrorKind,
)
from genflow.idempotency._store import (
    Store,
    StoreAny,
    StoreError,
    MemoryStore,
)
from genflow.idempotency._policy import (
    Policy,
    OnPending,
    WAIT,
    FAIL,
)
from genflow.idempotency._key import (
    fingerprint,
    input_hash,
    normalize,
)
from genflow.idempotency._graph import (
    IdempotencySpec,
    run_idempotent,
    Outcome,
    OutcomeOk,
    OutcomeError,
    IdempotencyOutcome,
    FinalResultNode,
)
from genflow.idempotency._builder import (
    idempotent,
    Idempotent,
    IdempotentExecutor,
)
from genflow.idempotency._sqlalchemy import (
    IdempotencyStatus,
    IdempotencyTable,
    SQLAlchemyStore,
)

__all__ = (
    # Types
    "RecordState",
    "IdempotencyRecord",
    "Existing",
    "Reserved",
    "InFlight",
    "Reservation",
    "IdempotencyResult",
    "IdempotencyError",
    "IdempotencyErrorKind",
    # Store
    "Store",
    "StoreAny",
    "StoreError",
    "MemoryStore",
    # Policy
    "Policy",
    "OnPending",
    "WAIT",
    "FAIL",
    # Keys
    "fingerprint",
    "input_hash",
    "normalize",
    # Spec & API
    "IdempotencySpec",
    "run_idempotent",
    # Outcome
    "Outcome",
    "OutcomeOk",
    "OutcomeError",
    "IdempotencyOutcome",
    "FinalResultNode",
    # Builder
    "idempotent",
    "Idempotent",
    "IdempotentExecutor",
    # SQLAlchemy
    "IdempotencyStatus",
    "IdempotencyTable",
    "SQLAlchemyStore",
)

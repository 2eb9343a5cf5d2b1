"""
Idempotency graph — reservation routing as nodnod nodes.

Architecture:
    IdempotencySpec (injected)
         │
         ▼
    SpecNode → ReserveNode (check_or_reserve)
                    │
         ┌──────────┼──────────────┬───────────────────┐
         ▼          ▼              ▼                   ▼
    CachedNode  ReservedNode  InFlightNode   StoreUnavailableNode
         │          │              │                   │
    ValidatedCacheNode             │                   │
         │          │              │                   │
         └──────────┴──────┬───────┴───────────────────┘
                           ▼
              IdempotencyOutcome (@polymorphic)
                           │
                           ▼
                    FinalResultNode

Note: no 'from __future__ import annotations' here, nodnod reads type
hints at runtime for dependency resolution.
"""

import asyncio
from dataclasses import dataclass
from typing import Any

from nodnod import NodeError, polymorphic, case

from kungfu import Result, Ok, Error

from genflow import graph as G
from genflow.logging import get_logger
from genflow.idempotency._types import (
    IdempotencyRecord,
    IdempotencyResult,
    IdempotencyError,
    IdempotencyErrorKind,
    Existing,
    Reserved,
    InFlight,
    Reservation,
)
from genflow.idempotency._store import StoreError, StoreAny
from genflow.idempotency._policy import Policy, OnPending

logger = get_logger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# Input — Spec (injected)
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class IdempotencySpec:
    """
    One keyed call: where to reserve, what to run, and under which policy.

    operation(input_value) must return an awaitable Result (LazyCoroResult
    or coroutine).

    Note: input_hash is optional. If provided, a cached result is only
    returned when the hash stored with it matches.
    """

    key: str
    input_value: Any
    operation: Any
    store: StoreAny
    policy: Policy
    input_hash: str | None = None


# ═══════════════════════════════════════════════════════════════════════════════
# Entry Node
# ═══════════════════════════════════════════════════════════════════════════════


@G.node
class SpecNode:
    """Wraps IdempotencySpec for graph."""

    def __init__(self, spec: IdempotencySpec) -> None:
        self.spec = spec

    @classmethod
    def __compose__(cls, spec: IdempotencySpec) -> "SpecNode":
        return cls(spec)


# ═══════════════════════════════════════════════════════════════════════════════
# Reserve
# ═══════════════════════════════════════════════════════════════════════════════


@G.node
class ReserveNode:
    """Atomically reads or reserves the key."""

    def __init__(
        self,
        reservation: Reservation[Any] | None,
        spec: IdempotencySpec,
        store_error: StoreError | None = None,
    ) -> None:
        self.reservation = reservation
        self.spec = spec
        self.store_error = store_error

    @classmethod
    async def __compose__(cls, spec_node: SpecNode) -> "ReserveNode":
        spec = spec_node.spec
        result = await spec.store.check_or_reserve(
            spec.key, spec.policy.reservation_ttl, spec.input_hash
        )

        match result:
            case Ok(reservation):
                return cls(reservation, spec)
            case Error(err):
                return cls(None, spec, store_error=err)


# ═══════════════════════════════════════════════════════════════════════════════
# State Nodes — each validates one reservation outcome
# ═══════════════════════════════════════════════════════════════════════════════


@G.node
class CachedNode:
    """Validates: a result is already committed."""

    def __init__(self, record: IdempotencyRecord[Any], spec: IdempotencySpec) -> None:
        self.record = record
        self.spec = spec

    @classmethod
    def __compose__(cls, reserve: ReserveNode) -> "CachedNode":
        match reserve.reservation:
            case Existing(record):
                return cls(record, reserve.spec)
            case _:
                raise NodeError("Not cached")


@G.node
class ReservedNode:
    """Validates: this caller holds the reservation."""

    def __init__(self, token: str, spec: IdempotencySpec) -> None:
        self.token = token
        self.spec = spec

    @classmethod
    def __compose__(cls, reserve: ReserveNode) -> "ReservedNode":
        match reserve.reservation:
            case Reserved(token):
                return cls(token, reserve.spec)
            case _:
                raise NodeError("Not reserved")


@G.node
class InFlightNode:
    """Validates: another caller holds the reservation."""

    def __init__(self, record: IdempotencyRecord[Any], spec: IdempotencySpec) -> None:
        self.record = record
        self.spec = spec

    @classmethod
    def __compose__(cls, reserve: ReserveNode) -> "InFlightNode":
        match reserve.reservation:
            case InFlight(record):
                return cls(record, reserve.spec)
            case _:
                raise NodeError("Not in flight")


@G.node
class StoreUnavailableNode:
    """Validates: store returned error."""

    def __init__(self, error: StoreError, spec: IdempotencySpec) -> None:
        self.error = error
        self.spec = spec

    @classmethod
    def __compose__(cls, reserve: ReserveNode) -> "StoreUnavailableNode":
        if reserve.store_error is None:
            raise NodeError("Store available")
        return cls(reserve.store_error, reserve.spec)


@G.node
class ValidatedCacheNode:
    """Validates: cached record belongs to the same input (when hashed)."""

    def __init__(self, cached: CachedNode) -> None:
        self.cached = cached

    @classmethod
    def __compose__(cls, cached: CachedNode) -> "ValidatedCacheNode":
        if _hash_mismatch(cached.spec, cached.record):
            raise NodeError("Input hash mismatch")
        return cls(cached)


# ═══════════════════════════════════════════════════════════════════════════════
# Outcome Types
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class OutcomeOk:
    """Successful outcome."""

    value: Any
    from_cache: bool
    key: str


@dataclass(frozen=True)
class OutcomeError:
    """Error outcome."""

    kind: IdempotencyErrorKind
    message: str
    original_error: Any | None = None


type Outcome = OutcomeOk | OutcomeError


# ═══════════════════════════════════════════════════════════════════════════════
# Execution helpers — shared by the reserved, waiting and fail-open paths
# ═══════════════════════════════════════════════════════════════════════════════


def _hash_mismatch(spec: IdempotencySpec, record: IdempotencyRecord[Any]) -> bool:
    if spec.input_hash is None or record.input_hash is None:
        return False
    return record.input_hash != spec.input_hash


def _from_cache(spec: IdempotencySpec, record: IdempotencyRecord[Any]) -> Outcome:
    if _hash_mismatch(spec, record):
        return OutcomeError(
            kind=IdempotencyErrorKind.INPUT_MISMATCH,
            message=f"Key collision: {spec.key} (different input)",
        )
    return OutcomeOk(value=record.value, from_cache=True, key=spec.key)


async def _abandon(spec: IdempotencySpec, token: str) -> None:
    match await spec.store.abandon(spec.key, token):
        case Error(err):
            # Reservation expires on its own after reservation_ttl
            logger.warning(
                "idempotency_abandon_failed", key=spec.key, error=err.message
            )
        case Ok(_):
            pass


async def _commit(spec: IdempotencySpec, token: str, value: Any) -> Outcome:
    match await spec.store.commit(spec.key, value, spec.policy.result_ttl, token):
        case Ok(True):
            return OutcomeOk(value=value, from_cache=False, key=spec.key)
        case Ok(False):
            # Lost the reservation; the first committed result stands
            match await spec.store.get(spec.key):
                case Ok(record) if record is not None and record.is_completed:
                    logger.info("idempotency_commit_lost", key=spec.key)
                    return OutcomeOk(value=record.value, from_cache=True, key=spec.key)
                case _:
                    return OutcomeOk(value=value, from_cache=False, key=spec.key)
        case Error(err):
            logger.warning(
                "idempotency_commit_failed", key=spec.key, error=err.message
            )
            return OutcomeOk(value=value, from_cache=False, key=spec.key)


async def _invoke(spec: IdempotencySpec) -> Result[Any, Any]:
    return await spec.operation(spec.input_value)


async def _execute(spec: IdempotencySpec, token: str) -> Outcome:
    """Run the operation while holding the reservation."""
    try:
        result = await _invoke(spec)
    except Exception as e:
        await _abandon(spec, token)
        return OutcomeError(
            kind=IdempotencyErrorKind.EXECUTION,
            message=str(e),
            original_error=e,
        )

    match result:
        case Ok(value):
            return await _commit(spec, token, value)
        case Error(err):
            await _abandon(spec, token)
            return OutcomeError(
                kind=IdempotencyErrorKind.EXECUTION,
                message="Operation returned Error",
                original_error=err,
            )


async def _execute_unprotected(spec: IdempotencySpec, error: StoreError) -> Outcome:
    """Fail open: run without a reservation, cache nothing."""
    logger.warning(
        "idempotency_store_unavailable", key=spec.key, error=error.message
    )
    try:
        result = await _invoke(spec)
    except Exception as e:
        return OutcomeError(
            kind=IdempotencyErrorKind.EXECUTION,
            message=str(e),
            original_error=e,
        )

    match result:
        case Ok(value):
            return OutcomeOk(value=value, from_cache=False, key=spec.key)
        case Error(err):
            return OutcomeError(
                kind=IdempotencyErrorKind.EXECUTION,
                message="Operation returned Error",
                original_error=err,
            )


async def _store_failure(spec: IdempotencySpec, error: StoreError) -> Outcome:
    if spec.policy.fail_open:
        return await _execute_unprotected(spec, error)
    return OutcomeError(
        kind=IdempotencyErrorKind.STORE_ERROR,
        message=error.message,
        original_error=error.cause,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# Polymorphic Outcome
# ═══════════════════════════════════════════════════════════════════════════════


@polymorphic[Outcome]
class IdempotencyOutcome:
    """
    Polymorphic router — each @case depends on a validated state node.

    Note: cases run in order; a case raising NodeError passes to the next.
    """

    @case
    async def store_unavailable(cls, node: StoreUnavailableNode) -> Outcome:
        """Fail open or STORE_ERROR, per policy."""
        return await _store_failure(node.spec, node.error)

    @case
    def cached(cls, validated: ValidatedCacheNode) -> Outcome:
        """Return committed result."""
        node = validated.cached
        return OutcomeOk(value=node.record.value, from_cache=True, key=node.spec.key)

    @case
    def input_mismatch(cls, cached: CachedNode) -> Outcome:
        """
        INPUT_MISMATCH — cached result has different input.

        Note: reached only when ValidatedCacheNode failed.
        """
        return _from_cache(cached.spec, cached.record)

    @case
    async def execute_reserved(cls, node: ReservedNode) -> Outcome:
        """This caller won the reservation: run and commit."""
        return await _execute(node.spec, node.token)

    @case
    def in_flight_conflict(cls, node: InFlightNode) -> Outcome:
        """CONFLICT error (in flight + FAIL policy)."""
        if node.spec.policy.conflict_strategy != OnPending.FAIL:
            raise NodeError("Policy not FAIL")
        return OutcomeError(
            kind=IdempotencyErrorKind.CONFLICT,
            message=f"Request in flight: {node.spec.key}",
        )

    @case
    async def in_flight_wait(cls, node: InFlightNode) -> Outcome:
        """
        Wait for the holder to commit.

        If the holder abandons, the next poll reserves the key and this
        caller executes instead.
        """
        spec = node.spec
        if spec.policy.conflict_strategy != OnPending.WAIT:
            raise NodeError("Policy not WAIT")

        poll = spec.policy.poll_interval.total_seconds()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + spec.policy.pending_wait_timeout.total_seconds()

        while loop.time() < deadline:
            await asyncio.sleep(poll)

            result = await spec.store.check_or_reserve(
                spec.key, spec.policy.reservation_ttl, spec.input_hash
            )
            match result:
                case Error(err):
                    return await _store_failure(spec, err)
                case Ok(Existing(record)):
                    return _from_cache(spec, record)
                case Ok(Reserved(token)):
                    return await _execute(spec, token)
                case Ok(InFlight(_)):
                    continue

        return OutcomeError(
            kind=IdempotencyErrorKind.TIMEOUT,
            message=f"Timeout waiting for in-flight request: {spec.key}",
        )


# ═══════════════════════════════════════════════════════════════════════════════
# Final Node
# ═══════════════════════════════════════════════════════════════════════════════


@G.node
class FinalResultNode:
    """Converts Outcome to typed Result."""

    def __init__(self, outcome: Outcome) -> None:
        self.outcome = outcome

    @classmethod
    def __compose__(cls, outcome: IdempotencyOutcome) -> "FinalResultNode":
        return cls(outcome.value)

    def to_result(self) -> Result[IdempotencyResult[Any], IdempotencyError]:
        match self.outcome:
            case OutcomeOk(value=v, from_cache=fc, key=k):
                return Ok(IdempotencyResult(value=v, from_cache=fc, key=k))
            case OutcomeError(kind=kind, message=msg, original_error=orig):
                return Error(
                    IdempotencyError(kind=kind, message=msg, original_error=orig)
                )


# ═══════════════════════════════════════════════════════════════════════════════
# Public API
# ═══════════════════════════════════════════════════════════════════════════════

_compiled = G.graph(FinalResultNode)


async def run_idempotent(
    spec: IdempotencySpec,
) -> Result[IdempotencyResult[Any], IdempotencyError]:
    """Execute idempotent operation via graph."""
    node = await _compiled(spec)
    return node.to_result()


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "IdempotencySpec",
    "Outcome",
    "OutcomeOk",
    "OutcomeError",
    "SpecNode",
    "ReserveNode",
    "CachedNode",
    "ReservedNode",
    "InFlightNode",
    "StoreUnavailableNode",
    "ValidatedCacheNode",
    "IdempotencyOutcome",
    "FinalResultNode",
    "run_idempotent",
)

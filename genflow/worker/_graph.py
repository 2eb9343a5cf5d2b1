"""
Delivery graph — one queue delivery routed through the job state machine.

Architecture:
    DeliverySpec (injected)
         │
         ▼
    SpecNode → DecodeNode → LoadNode (jobs.get)
                  │             │
                  │   ┌─────────┼──────────┬───────────┬───────────┬────────────┐
                  ▼   ▼         ▼          ▼           ▼           ▼            ▼
          Malformed Missing StoreDown  Terminal    Leased      Pending   ExpiredLease
                  │   │         │          │           │           │            │
                  └───┴─────────┴──────────┴─────┬─────┴───────────┴────────────┘
                                                 ▼
                                   DeliveryOutcome (@polymorphic)
                                                 │
                                                 ▼
                                         FinalDeliveryNode

Every path ends in exactly one settle action for the message: ACK (done with
it) or RELEASE (redeliver after a delay, or dead-letter once exhausted).

Note: no 'from __future__ import annotations' here, nodnod reads type
hints at runtime for dependency resolution.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

from nodnod import NodeError, polymorphic, case

from kungfu import Ok, Error

from genflow import graph as G
from genflow.logging import get_logger
from genflow.jobs import (
    JobRecord,
    JobStatus,
    JobPatch,
    NotFound,
    StaleStateError,
    StoreError,
)
from genflow.queue import MessageError, decode_body
from genflow.worker._context import WorkerContext
from genflow.worker._errors import ExecutionFailure
from genflow.worker._executor import ExecutionRequest, ExecutionReceipt
from genflow.worker._notifier import NotificationType

logger = get_logger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# Input — Spec (injected)
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class DeliverySpec:
    """
    One unit of work for the graph.

    body is the raw message body; operation_id bypasses decoding (direct
    invocation without a queue). final_attempt: no redelivery will follow,
    so a transient failure is terminal.
    """

    context: WorkerContext
    body: str | None = None
    operation_id: str | None = None
    receive_count: int = 1
    final_attempt: bool = False


# ═══════════════════════════════════════════════════════════════════════════════
# Outcome Types
# ═══════════════════════════════════════════════════════════════════════════════


class Action(StrEnum):
    ACK = "ack"
    RELEASE = "release"


@dataclass(frozen=True)
class Settlement:
    """What to do with the message, and why."""

    action: Action
    reason: str
    operation_id: str | None = None
    status: JobStatus | None = None
    delay: timedelta = timedelta(0)


def _ack(reason: str, job_id: str | None, status: JobStatus | None = None) -> Settlement:
    return Settlement(Action.ACK, reason, job_id, status)


def _release(
    reason: str,
    job_id: str | None,
    status: JobStatus | None = None,
    delay: timedelta = timedelta(0),
) -> Settlement:
    return Settlement(Action.RELEASE, reason, job_id, status, delay)


# ═══════════════════════════════════════════════════════════════════════════════
# Entry / Load Nodes
# ═══════════════════════════════════════════════════════════════════════════════


@G.node
class SpecNode:
    def __init__(self, spec: DeliverySpec) -> None:
        self.spec = spec

    @classmethod
    def __compose__(cls, spec: DeliverySpec) -> "SpecNode":
        return cls(spec)


@G.node
class DecodeNode:
    """Message body → operation_id."""

    def __init__(
        self,
        spec: DeliverySpec,
        operation_id: str | None,
        error: MessageError | None = None,
    ) -> None:
        self.spec = spec
        self.operation_id = operation_id
        self.error = error

    @classmethod
    def __compose__(cls, spec_node: SpecNode) -> "DecodeNode":
        spec = spec_node.spec
        if spec.operation_id is not None:
            return cls(spec, spec.operation_id)

        match decode_body(spec.body or ""):
            case Ok(body):
                return cls(spec, body.operation_id)
            case Error(err):
                return cls(spec, None, error=err)


@G.node
class LoadNode:
    """Reads the job the message points at."""

    def __init__(
        self,
        spec: DeliverySpec,
        operation_id: str,
        now: datetime,
        job: JobRecord | None = None,
        store_error: StoreError | None = None,
    ) -> None:
        self.spec = spec
        self.operation_id = operation_id
        self.now = now
        self.job = job
        self.store_error = store_error

    @classmethod
    async def __compose__(cls, decoded: DecodeNode) -> "LoadNode":
        if decoded.operation_id is None:
            raise NodeError("Undecodable message")

        spec = decoded.spec
        op_id = decoded.operation_id
        result = await spec.context.jobs.get(op_id)
        now = spec.context.clock()

        match result:
            case Ok(job):
                return cls(spec, op_id, now, job=job)
            case Error(NotFound()):
                return cls(spec, op_id, now)
            case Error(err):
                return cls(spec, op_id, now, store_error=err)


# ═══════════════════════════════════════════════════════════════════════════════
# State Nodes — each validates one job state
# ═══════════════════════════════════════════════════════════════════════════════


@G.node
class MalformedNode:
    def __init__(self, spec: DeliverySpec, error: MessageError) -> None:
        self.spec = spec
        self.error = error

    @classmethod
    def __compose__(cls, decoded: DecodeNode) -> "MalformedNode":
        if decoded.error is None:
            raise NodeError("Well-formed")
        return cls(decoded.spec, decoded.error)


@G.node
class MissingNode:
    """Validates: no such job (purged, or never created)."""

    def __init__(self, loaded: LoadNode) -> None:
        self.loaded = loaded

    @classmethod
    def __compose__(cls, loaded: LoadNode) -> "MissingNode":
        if loaded.job is not None or loaded.store_error is not None:
            raise NodeError("Job exists")
        return cls(loaded)


@G.node
class StoreDownNode:
    def __init__(self, loaded: LoadNode, error: StoreError) -> None:
        self.loaded = loaded
        self.error = error

    @classmethod
    def __compose__(cls, loaded: LoadNode) -> "StoreDownNode":
        if loaded.store_error is None:
            raise NodeError("Store available")
        return cls(loaded, loaded.store_error)


@G.node
class JobNode:
    """Validates: the job was read."""

    def __init__(self, spec: DeliverySpec, job: JobRecord, now: datetime) -> None:
        self.spec = spec
        self.job = job
        self.now = now

    @classmethod
    def __compose__(cls, loaded: LoadNode) -> "JobNode":
        if loaded.job is None:
            raise NodeError("No job")
        return cls(loaded.spec, loaded.job, loaded.now)


@G.node
class TerminalNode:
    """Validates: completed, failed or deployed. Nothing left to do."""

    def __init__(self, node: JobNode) -> None:
        self.node = node

    @classmethod
    def __compose__(cls, node: JobNode) -> "TerminalNode":
        if not node.job.status.is_terminal:
            raise NodeError("Not terminal")
        return cls(node)


@G.node
class LeasedNode:
    """Validates: processing under a live lease held elsewhere."""

    def __init__(self, node: JobNode) -> None:
        self.node = node

    @classmethod
    def __compose__(cls, node: JobNode) -> "LeasedNode":
        job = node.job
        if job.status != JobStatus.PROCESSING or not job.lease_live(node.now):
            raise NodeError("Not leased")
        return cls(node)


@G.node
class PendingNode:
    def __init__(self, node: JobNode) -> None:
        self.node = node

    @classmethod
    def __compose__(cls, node: JobNode) -> "PendingNode":
        if node.job.status != JobStatus.PENDING:
            raise NodeError("Not pending")
        return cls(node)


@G.node
class ExpiredLeaseNode:
    """Validates: processing, but the holder's lease lapsed (crashed worker)."""

    def __init__(self, node: JobNode) -> None:
        self.node = node

    @classmethod
    def __compose__(cls, node: JobNode) -> "ExpiredLeaseNode":
        job = node.job
        if job.status != JobStatus.PROCESSING or job.lease_live(node.now):
            raise NodeError("Lease live")
        return cls(node)


# ═══════════════════════════════════════════════════════════════════════════════
# Helpers — terminal writes and execution
# ═══════════════════════════════════════════════════════════════════════════════


def _store_unavailable(spec: DeliverySpec, job_id: str, err: StoreError) -> Settlement:
    logger.warning("job_store_unavailable", operation_id=job_id, error=err.message)
    return _release(
        "store_unavailable",
        job_id,
        delay=spec.context.policy.redelivery_delay(spec.receive_count),
    )


def _lease_remaining(job: JobRecord, now: datetime) -> timedelta:
    if job.lease_expires_at is None:
        return timedelta(0)
    return max(job.lease_expires_at - now, timedelta(0))


async def _complete(
    spec: DeliverySpec, job: JobRecord, receipt: ExecutionReceipt
) -> Settlement:
    ctx = spec.context
    now = ctx.clock()
    result = await ctx.jobs.transition(
        job.operation_id,
        JobStatus.PROCESSING,
        JobStatus.COMPLETED,
        JobPatch(completed_at=now, clear_lease=True),
    )

    match result:
        case Ok(done):
            logger.info(
                "job_completed",
                operation_id=done.operation_id,
                project_name=done.project_name,
                deployment_url=receipt.deployment_url,
            )
            ctx.notify(
                NotificationType.GENERATION_COMPLETE,
                done,
                deploymentUrl=receipt.deployment_url,
            )
            return _ack("completed", done.operation_id, done.status)
        case Error(StaleStateError() as err):
            # Re-acquired and finished elsewhere
            logger.info("job_completion_lost", operation_id=job.operation_id, actual=str(err.actual))
            return _ack("duplicate", job.operation_id)
        case Error(NotFound()):
            return _ack("missing", job.operation_id)
        case Error(err):
            # Redeliver once the lease lapses; the probe then records the artifact
            logger.warning("job_store_unavailable", operation_id=job.operation_id, error=err.message)
            return _release(
                "store_unavailable",
                job.operation_id,
                JobStatus.PROCESSING,
                delay=_lease_remaining(job, now),
            )


async def _fail(
    spec: DeliverySpec,
    job: JobRecord,
    reason: str,
    settle: Action,
    label: str,
) -> Settlement:
    ctx = spec.context
    result = await ctx.jobs.transition(
        job.operation_id,
        job.status,
        JobStatus.FAILED,
        JobPatch(failure_reason=reason, clear_lease=True),
    )

    match result:
        case Ok(failed):
            logger.error(
                "job_failed",
                operation_id=failed.operation_id,
                project_name=failed.project_name,
                reason=reason,
            )
            ctx.notify(NotificationType.GENERATION_FAILED, failed, error=reason)
            return Settlement(settle, label, failed.operation_id, failed.status)
        case Error(StaleStateError()):
            return _ack("duplicate", job.operation_id)
        case Error(NotFound()):
            return _ack("missing", job.operation_id)
        case Error(err):
            logger.warning("job_store_unavailable", operation_id=job.operation_id, error=err.message)
            return _release(
                "store_unavailable",
                job.operation_id,
                job.status,
                delay=_lease_remaining(job, ctx.clock()),
            )


async def _retry_later(
    spec: DeliverySpec, job: JobRecord, failure: ExecutionFailure
) -> Settlement:
    """Give the lease back and let the queue redeliver after a backoff."""
    ctx = spec.context
    now = ctx.clock()
    delay = ctx.policy.redelivery_delay(spec.receive_count)

    match await ctx.jobs.transition(
        job.operation_id,
        JobStatus.PROCESSING,
        JobStatus.PROCESSING,
        JobPatch(lease_expires_at=now),
    ):
        case Ok(_):
            pass
        case Error(_):
            # Still leased: redelivery before the lease lapses would be dropped
            delay = max(delay, _lease_remaining(job, now))

    logger.warning(
        "job_retry_scheduled",
        operation_id=job.operation_id,
        receive_count=spec.receive_count,
        delay_seconds=delay.total_seconds(),
        reason=failure.reason,
    )
    return _release("retrying", job.operation_id, JobStatus.PROCESSING, delay)


async def _run(spec: DeliverySpec, job: JobRecord) -> Settlement:
    """Execute a job this worker holds the lease for."""
    result = await spec.context.execute(ExecutionRequest.from_job(job))

    match result:
        case Ok(receipt):
            return await _complete(spec, job, receipt)
        case Error(failure) if not failure.transient:
            return await _fail(spec, job, failure.reason, Action.ACK, "failed")
        case Error(failure) if spec.final_attempt:
            return await _fail(
                spec, job, f"exhausted: {failure.reason}", Action.RELEASE, "exhausted"
            )
        case Error(failure):
            return await _retry_later(spec, job, failure)


async def _probe(spec: DeliverySpec, job: JobRecord) -> ExecutionReceipt | None:
    try:
        return await spec.context.executor.probe(ExecutionRequest.from_job(job))
    except Exception as e:
        logger.warning("executor_probe_failed", operation_id=job.operation_id, error=str(e))
        return None


# ═══════════════════════════════════════════════════════════════════════════════
# Polymorphic Outcome
# ═══════════════════════════════════════════════════════════════════════════════


@polymorphic[Settlement]
class DeliveryOutcome:
    """
    Routes the delivery by job state.

    Note: cases run in order; a case raising NodeError passes to the next.
    """

    @case
    def malformed(cls, node: MalformedNode) -> Settlement:
        """Poison message: release until the queue dead-letters it."""
        logger.error("message_malformed", error=node.error.message)
        return _release("malformed", None)

    @case
    def missing(cls, node: MissingNode) -> Settlement:
        logger.warning("job_missing", operation_id=node.loaded.operation_id)
        return _ack("missing", node.loaded.operation_id)

    @case
    def store_down(cls, node: StoreDownNode) -> Settlement:
        return _store_unavailable(node.loaded.spec, node.loaded.operation_id, node.error)

    @case
    def terminal(cls, node: TerminalNode) -> Settlement:
        """Duplicate delivery of a finished job."""
        job = node.node.job
        logger.info("duplicate_delivery", operation_id=job.operation_id, status=job.status.value)
        return _ack("duplicate", job.operation_id, job.status)

    @case
    def leased(cls, node: LeasedNode) -> Settlement:
        """Duplicate delivery while another worker runs the job."""
        job = node.node.job
        logger.info("duplicate_delivery", operation_id=job.operation_id, status=job.status.value)
        return _ack("duplicate", job.operation_id, job.status)

    @case
    async def acquire(cls, node: PendingNode) -> Settlement:
        """pending → processing, then execute."""
        spec, job = node.node.spec, node.node.job
        ctx = spec.context
        now = ctx.clock()

        result = await ctx.jobs.transition(
            job.operation_id,
            JobStatus.PENDING,
            JobStatus.PROCESSING,
            JobPatch(lease_expires_at=now + ctx.policy.lease, bump_attempts=True),
        )

        match result:
            case Ok(acquired):
                logger.info(
                    "job_acquired",
                    operation_id=acquired.operation_id,
                    project_name=acquired.project_name,
                    attempt=acquired.attempts,
                )
                ctx.notify(NotificationType.GENERATION_STARTED, acquired)
                return await _run(spec, acquired)
            case Error(StaleStateError()):
                logger.info("duplicate_delivery", operation_id=job.operation_id, status="acquired")
                return _ack("duplicate", job.operation_id)
            case Error(NotFound()):
                return _ack("missing", job.operation_id)
            case Error(err):
                return _store_unavailable(spec, job.operation_id, err)

    @case
    async def reacquire(cls, node: ExpiredLeaseNode) -> Settlement:
        """
        Take over a job whose worker died mid-run.

        The previous attempt may have finished its side effects, so probe
        the executor before running again.
        """
        spec, job = node.node.spec, node.node.job
        ctx = spec.context
        now = ctx.clock()

        result = await ctx.jobs.transition(
            job.operation_id,
            JobStatus.PROCESSING,
            JobStatus.PROCESSING,
            JobPatch(lease_expires_at=now + ctx.policy.lease, bump_attempts=True),
            lease_expired_before=now,
        )

        match result:
            case Ok(acquired):
                logger.warning(
                    "job_reacquired",
                    operation_id=acquired.operation_id,
                    attempt=acquired.attempts,
                )
                receipt = await _probe(spec, acquired)
                if receipt is not None:
                    return await _complete(spec, acquired, receipt)
                return await _run(spec, acquired)
            case Error(StaleStateError()):
                return _ack("duplicate", job.operation_id)
            case Error(NotFound()):
                return _ack("missing", job.operation_id)
            case Error(err):
                return _store_unavailable(spec, job.operation_id, err)


# ═══════════════════════════════════════════════════════════════════════════════
# Final Node
# ═══════════════════════════════════════════════════════════════════════════════


@G.node
class FinalDeliveryNode:
    def __init__(self, settlement: Settlement) -> None:
        self.settlement = settlement

    @classmethod
    def __compose__(cls, outcome: DeliveryOutcome) -> "FinalDeliveryNode":
        return cls(outcome.value)


_compiled = G.graph(FinalDeliveryNode)


async def process_delivery(spec: DeliverySpec) -> Settlement:
    """Route one delivery through the job state machine."""
    node = await _compiled(spec)
    return node.settlement


__all__ = (
    "DeliverySpec",
    "Action",
    "Settlement",
    "DeliveryOutcome",
    "FinalDeliveryNode",
    "process_delivery",
)

"""
Generation service — the producer side.

Payment and edit confirmations enter here: the request is deduplicated by
its idempotency key, a pending job is recorded, and its id is enqueued.
Everything after that happens in the worker; callers observe progress
through status() or notifications.

    service = GenerationService(jobs, queue, notifier, idempotency_store)

    # edit confirmation: create + enqueue in one step
    match await service.submit(GenerationRequest(JobKind.UPDATE, email, "acme", payload)):
        case Ok(submission): ...
        case Error(ConflictError()): ...   # "already processing"

    # paid generation: register at checkout, enqueue on the payment webhook
    await service.register(request, payment_session_id="cs_123")
    await service.confirm_payment("cs_123")
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from combinators import lift as L
from kungfu import LazyCoroResult, Result, Ok, Error

from genflow import idempotency as I
from genflow._types import Clock, StoreError, utcnow
from genflow.jobs import (
    ConflictError,
    JobKind,
    JobPatch,
    JobPayload,
    JobRecord,
    JobStatus,
    JobStore,
    NotFound,
    StaleStateError,
    encode_payload,
)
from genflow.logging import get_logger
from genflow.queue import Queue
from genflow.worker import Dispatcher, Notification, NotificationType, Notifier

logger = get_logger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# Request / Response
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class GenerationRequest:
    kind: JobKind
    owner_email: str
    project_name: str
    payload: JobPayload

    def body(self) -> dict[str, object]:
        """Canonical request body, the input to the idempotency key."""
        return {
            "kind": self.kind.value,
            "projectName": self.project_name,
            "payload": encode_payload(self.payload),
        }


@dataclass(frozen=True, slots=True)
class Submission:
    operation_id: str
    from_cache: bool = False


@dataclass(frozen=True)
class ServiceError:
    """Request could not be accepted (store, queue or idempotency failure)."""

    message: str
    cause: object | None = None


type SubmitError = ConflictError | NotFound | ServiceError


@dataclass(frozen=True, slots=True)
class _Registration:
    request: GenerationRequest
    payment_session_id: str


@dataclass(frozen=True, slots=True)
class _Enqueue:
    request: GenerationRequest
    source: str


# ═══════════════════════════════════════════════════════════════════════════════
# Service
# ═══════════════════════════════════════════════════════════════════════════════


class GenerationService:
    def __init__(
        self,
        jobs: JobStore,
        queue: Queue,
        notifier: Notifier,
        idempotency_store: I.StoreAny | None = None,
        *,
        policy: I.Policy = I.Policy(),
        clock: Clock = utcnow,
    ) -> None:
        self._jobs = jobs
        self._queue = queue
        self._dispatcher = Dispatcher(notifier)
        self._clock = clock

        store = idempotency_store if idempotency_store is not None else I.MemoryStore(clock)

        self._submit = (
            I.idempotent(self._create_and_enqueue)
            .key(lambda c: I.fingerprint("POST", "/generate", c.request.owner_email, c.request.body()))
            .store(store)
            .policy(policy)
            .build()
        )
        self._register = (
            I.idempotent(self._create_registered)
            .key(
                lambda r: I.fingerprint(
                    "POST",
                    "/checkout",
                    r.request.owner_email,
                    {**r.request.body(), "paymentSessionId": r.payment_session_id},
                )
            )
            .store(store)
            .policy(policy)
            .build()
        )
        self._confirm = (
            I.idempotent(self._enqueue_paid)
            .key(lambda session_id: I.fingerprint("POST", "/payment-webhook", None, {"sessionId": session_id}))
            .store(store)
            .policy(policy)
            .build()
        )

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    # ───────────────────────────────────────────────────────────────────────────
    # Producers
    # ───────────────────────────────────────────────────────────────────────────

    async def submit(
        self, request: GenerationRequest, source: str = "edit"
    ) -> Result[Submission, SubmitError]:
        """
        Record a pending job and enqueue it.

        A repeated request with the same key returns the first operation_id
        without creating another job.
        """
        result = await self._submit.run(_Enqueue(request, source))
        return _unwrap(result)

    async def confirm_edit(
        self, owner_email: str, project_name: str, payload: JobPayload
    ) -> Result[Submission, SubmitError]:
        return await self.submit(
            GenerationRequest(JobKind.UPDATE, owner_email, project_name, payload),
            source="edit",
        )

    async def register(
        self, request: GenerationRequest, payment_session_id: str
    ) -> Result[Submission, SubmitError]:
        """Record a pending job at checkout. Nothing is enqueued until payment."""
        result = await self._register.run(_Registration(request, payment_session_id))
        match result:
            case Ok(idem) if not idem.from_cache:
                self._notify(NotificationType.WELCOME, request.owner_email, request.project_name, idem.value)
        return _unwrap(result)

    async def confirm_payment(
        self, payment_session_id: str
    ) -> Result[Submission, SubmitError]:
        """Payment webhook: enqueue the job registered for this checkout session."""
        return _unwrap(await self._confirm.run(payment_session_id))

    # ───────────────────────────────────────────────────────────────────────────
    # Queries / downstream signals
    # ───────────────────────────────────────────────────────────────────────────

    async def status(self, operation_id: str) -> Result[JobRecord, NotFound | StoreError]:
        return await self._jobs.get(operation_id)

    async def latest_for_project(
        self, project_name: str
    ) -> Result[JobRecord, NotFound | StoreError]:
        return await self._jobs.find_latest_by_project_name(project_name)

    async def mark_deployed(
        self, operation_id: str
    ) -> Result[JobRecord, StaleStateError | NotFound | StoreError]:
        """completed → deployed, once the published site is live."""
        result = await self._jobs.transition(
            operation_id,
            JobStatus.COMPLETED,
            JobStatus.DEPLOYED,
            JobPatch(deployed_at=self._clock()),
        )
        match result:
            case Ok(job):
                logger.info("job_deployed", operation_id=operation_id, project_name=job.project_name)
                self._notify(
                    NotificationType.DEPLOYMENT_COMPLETE,
                    job.owner_email,
                    job.project_name,
                    job.operation_id,
                )
        return result

    async def drain(self) -> None:
        await self._dispatcher.drain()

    # ───────────────────────────────────────────────────────────────────────────
    # Idempotent operations
    # ───────────────────────────────────────────────────────────────────────────

    def _create_and_enqueue(self, command: _Enqueue) -> LazyCoroResult[str, SubmitError]:
        async def run() -> Result[str, SubmitError]:
            match await self._create(command.request, None):
                case Ok(job):
                    pass
                case Error(err):
                    return Error(err)
            return await self._enqueue(job, command.source)

        return LazyCoroResult(run)

    def _create_registered(self, command: _Registration) -> LazyCoroResult[str, SubmitError]:
        async def run() -> Result[str, SubmitError]:
            match await self._create(command.request, command.payment_session_id):
                case Ok(job):
                    return Ok(job.operation_id)
                case Error(err):
                    return Error(err)

        return LazyCoroResult(run)

    def _enqueue_paid(self, session_id: str) -> LazyCoroResult[str, SubmitError]:
        async def run() -> Result[str, SubmitError]:
            match await self._jobs.find_by_payment_session(session_id):
                case Ok(job):
                    pass
                case Error(NotFound() as err):
                    return Error(err)
                case Error(err):
                    return Error(ServiceError(err.message, err))

            if job.status == JobStatus.FAILED:
                logger.warning(
                    "payment_for_failed_job",
                    operation_id=job.operation_id,
                    failure_reason=job.failure_reason,
                )
                return Error(ServiceError(f"job {job.operation_id} failed: {job.failure_reason}"))
            if job.status != JobStatus.PENDING:
                logger.info(
                    "payment_already_processed",
                    operation_id=job.operation_id,
                    status=job.status.value,
                )
                return Ok(job.operation_id)

            enqueued = await self._enqueue(job, "payment", free_project=False)
            match enqueued:
                case Ok(_):
                    self._notify(
                        NotificationType.PAYMENT_CONFIRMATION,
                        job.owner_email,
                        job.project_name,
                        job.operation_id,
                    )
            return enqueued

        return LazyCoroResult(run)

    async def _create(
        self, request: GenerationRequest, payment_session_id: str | None
    ) -> Result[JobRecord, ConflictError | ServiceError]:
        result = await self._jobs.create(
            str(uuid.uuid4()),
            request.kind,
            request.owner_email,
            request.project_name,
            request.payload,
            payment_session_id=payment_session_id,
        )
        match result:
            case Ok(job):
                logger.info(
                    "job_created",
                    operation_id=job.operation_id,
                    project_name=job.project_name,
                    kind=job.kind.value,
                )
                return Ok(job)
            case Error(ConflictError() as err):
                logger.info(
                    "job_conflict",
                    project_name=err.project_name,
                    active_operation_id=err.active_operation_id,
                )
                return Error(err)
            case Error(err):
                return Error(ServiceError(err.message, err))

    async def _enqueue(
        self, job: JobRecord, source: str, *, free_project: bool = True
    ) -> Result[str, ServiceError]:
        sent = await L.catching_async(
            lambda: self._queue.enqueue(job.operation_id, source),
            on_error=lambda e: ServiceError(f"enqueue failed: {e}", e),
        )

        match sent:
            case Ok(_):
                return Ok(job.operation_id)
            case Error(err):
                logger.error("enqueue_failed", operation_id=job.operation_id, error=err.message)
                if not free_project:
                    # A paid job stays pending; the retried webhook enqueues it
                    return Error(err)
                # Release the project; the job would otherwise block it until expiry
                await self._jobs.transition(
                    job.operation_id,
                    JobStatus.PENDING,
                    JobStatus.FAILED,
                    JobPatch(failure_reason=err.message),
                )
                return Error(err)

    def _notify(
        self,
        type: NotificationType,
        email: str,
        project_name: str,
        operation_id: str,
    ) -> None:
        self._dispatcher.dispatch(
            Notification(
                type=type,
                email=email,
                data={"projectName": project_name, "operationId": operation_id},
            )
        )


def _unwrap(
    result: Result[I.IdempotencyResult[str], I.IdempotencyError],
) -> Result[Submission, SubmitError]:
    match result:
        case Ok(idem):
            return Ok(Submission(idem.value, from_cache=idem.from_cache))
        case Error(err) if isinstance(err.original_error, (ConflictError, NotFound, ServiceError)):
            return Error(err.original_error)
        case Error(err):
            return Error(ServiceError(err.message, err))


__all__ = (
    "GenerationRequest",
    "Submission",
    "ServiceError",
    "SubmitError",
    "GenerationService",
)

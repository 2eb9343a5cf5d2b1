"""
Generation worker — consumes the queue and settles every delivery.

    worker = Worker(jobs, queue, executor, notifier, policy=settings.worker_policy())
    stop = asyncio.Event()
    await worker.run(stop)
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import structlog
from combinators import batch_all, lift as L
from kungfu import Ok, Error

from genflow._types import Clock, utcnow
from genflow.jobs import JobStatus, JobPatch, JobStore
from genflow.logging import get_logger
from genflow.queue import Delivery, Queue, decode_body
from genflow.worker._context import WorkerContext
from genflow.worker._executor import DeploymentExecutor
from genflow.worker._graph import (
    Action,
    DeliverySpec,
    Settlement,
    process_delivery,
)
from genflow.worker._notifier import Dispatcher, NotificationType, Notifier
from genflow.worker._policy import WorkerPolicy

logger = get_logger(__name__)

# Dead letters are held out of sight while reconciling
_INSPECT_VISIBILITY = timedelta(minutes=5)


class Worker:
    """
    One consumer process.

    Deliveries run concurrently up to policy.max_concurrency. Each ends in
    exactly one ack or release, including when the handler itself blows up.
    """

    def __init__(
        self,
        jobs: JobStore,
        queue: Queue,
        executor: DeploymentExecutor,
        notifier: Notifier,
        *,
        dead_letter: Queue | None = None,
        policy: WorkerPolicy = WorkerPolicy(),
        clock: Clock = utcnow,
    ) -> None:
        if policy.lease >= queue.policy.visibility_timeout:
            raise ValueError("lease must lapse before the queue visibility timeout")

        self._queue = queue
        self._dead_letter = dead_letter
        self._policy = policy
        self._dispatcher = Dispatcher(notifier)
        self._context = WorkerContext(
            jobs=jobs,
            executor=executor,
            dispatcher=self._dispatcher,
            policy=policy,
            clock=clock,
        )

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    def _final(self, delivery: Delivery) -> bool:
        limit = self._queue.policy.max_receive_count
        return limit is not None and delivery.receive_count >= limit

    async def handle(self, delivery: Delivery) -> Settlement:
        spec = DeliverySpec(
            context=self._context,
            body=delivery.body,
            receive_count=delivery.receive_count,
            final_attempt=self._final(delivery),
        )

        with structlog.contextvars.bound_contextvars(
            message_id=delivery.message_id,
            receive_count=delivery.receive_count,
        ):
            try:
                settlement = await process_delivery(spec)
            except Exception as e:
                logger.exception("delivery_failed", error=str(e))
                settlement = Settlement(
                    Action.RELEASE,
                    "error",
                    delay=self._policy.redelivery_delay(delivery.receive_count),
                )

            await self._settle(delivery, settlement)
        return settlement

    async def _settle(self, delivery: Delivery, settlement: Settlement) -> None:
        match settlement.action:
            case Action.ACK:
                settled = await self._queue.ack(delivery.receipt)
            case Action.RELEASE:
                settled = await self._queue.release(delivery.receipt, settlement.delay)

        logger.info(
            "delivery_settled",
            action=settlement.action.value,
            reason=settlement.reason,
            operation_id=settlement.operation_id,
            stale_receipt=not settled,
        )

    async def run_once(self) -> list[Settlement]:
        """Receive one batch and settle all of it."""
        deliveries = await self._queue.receive(max_messages=self._policy.batch_size)
        if not deliveries:
            return []

        results = await batch_all(
            deliveries,
            lambda d: L.catching_async(lambda: self.handle(d), on_error=str),
            concurrency=self._policy.max_concurrency,
        )

        settlements: list[Settlement] = []
        for result in results.unwrap():
            match result:
                case Ok(settlement):
                    settlements.append(settlement)
                case Error(err):
                    # Settling itself failed; visibility timeout redelivers
                    logger.error("delivery_unsettled", error=err)
        return settlements

    async def run(self, stop: asyncio.Event) -> None:
        """Poll until stop is set, then wait for in-flight notifications."""
        logger.info("worker_started", queue=self._queue.name)
        while not stop.is_set():
            try:
                if await self.run_once():
                    continue
            except Exception:
                # Queue endpoint down; keep polling
                logger.exception("queue_receive_failed", queue=self._queue.name)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._policy.poll_interval)
            except asyncio.TimeoutError:
                pass

        await self._dispatcher.drain()
        logger.info("worker_stopped", queue=self._queue.name)

    async def run_now(self, operation_id: str) -> Settlement:
        """
        Process a job directly, without a queue message.

        Note: no redelivery follows, so a transient failure is terminal.
        """
        spec = DeliverySpec(
            context=self._context,
            operation_id=operation_id,
            final_attempt=True,
        )
        with structlog.contextvars.bound_contextvars(operation_id=operation_id):
            return await process_delivery(spec)

    async def reconcile_dead_letters(self) -> int:
        """
        Fail every job whose message was dead-lettered but is not terminal.

        Dead letters stay in the dead-letter queue. Returns jobs failed.
        """
        if self._dead_letter is None:
            return 0

        jobs = self._context.jobs
        now = self._context.clock()
        seen: list[Delivery] = []
        failed = 0

        while batch := await self._dead_letter.receive(
            max_messages=self._policy.batch_size,
            visibility_timeout=_INSPECT_VISIBILITY,
        ):
            seen.extend(batch)

        for delivery in seen:
            match decode_body(delivery.body):
                case Ok(body):
                    op_id = body.operation_id
                case Error(_):
                    continue

            match await jobs.get(op_id):
                case Ok(job) if job.status.is_active and not job.lease_live(now):
                    pass
                case _:
                    continue

            match await jobs.transition(
                op_id,
                job.status,
                JobStatus.FAILED,
                JobPatch(failure_reason="dead-lettered", clear_lease=True),
            ):
                case Ok(done):
                    failed += 1
                    logger.error(
                        "job_dead_lettered",
                        operation_id=op_id,
                        project_name=done.project_name,
                    )
                    self._context.notify(
                        NotificationType.GENERATION_FAILED, done, error="dead-lettered"
                    )
                case Error(err):
                    logger.warning(
                        "dead_letter_reconcile_skipped",
                        operation_id=op_id,
                        error=err.message,
                    )

        for delivery in seen:
            await self._dead_letter.release(delivery.receipt)
        return failed

    async def health(
        self,
        max_backlog: int = 100,
        max_age: timedelta = timedelta(minutes=15),
    ) -> tuple[str, ...]:
        """Exceeded alarm thresholds, logged as queue_alarm. Empty when healthy."""
        stats = await self._queue.stats()
        breaches = list(stats.breaches(max_backlog=max_backlog, max_age=max_age))

        if self._dead_letter is not None:
            dead = await self._dead_letter.stats()
            if dead.depth > 0:
                breaches.append("dead_letters")

        if breaches:
            logger.warning(
                "queue_alarm",
                queue=self._queue.name,
                breaches=breaches,
                visible=stats.visible,
                in_flight=stats.in_flight,
                oldest_age_seconds=(
                    stats.oldest_age.total_seconds() if stats.oldest_age else None
                ),
            )
        return tuple(breaches)


__all__ = ("Worker",)

"""
Generation Pipeline Example — payment to deployed site, exactly once.

Run: python examples/generation_pipeline.py
"""

import asyncio

from kungfu import Ok, Error

from genflow import idempotency as I
from genflow import jobs as J
from genflow import queue as Q
from genflow import worker as W
from genflow.config import Settings
from genflow.db import create_database
from genflow.logging import setup_logging
from genflow.service import GenerationRequest, GenerationService


def banner(title: str) -> None:
    print(f"\n{'═' * 60}\n  {title}\n{'═' * 60}")


# ═══════════════════════════════════════════════════════════════════════════════
# Executor (simulated build + publish)
# ═══════════════════════════════════════════════════════════════════════════════


class FlakyPublisher:
    """Fails the first call with a transient error, then publishes."""

    def __init__(self) -> None:
        self.calls = 0
        self.published: set[str] = set()

    async def execute(self, request: W.ExecutionRequest) -> W.ExecutionReceipt:
        self.calls += 1
        print(f"  [PUBLISH] {request.project_name} (call #{self.calls})")
        await asyncio.sleep(0.01)
        if self.calls == 1:
            raise W.TransientExecutorError("source control API rate limited")
        self.published.add(request.operation_id)
        return W.ExecutionReceipt(deployment_url=f"https://{request.project_name}.example.com")

    async def probe(self, request: W.ExecutionRequest) -> W.ExecutionReceipt | None:
        if request.operation_id in self.published:
            return W.ExecutionReceipt(deployment_url=f"https://{request.project_name}.example.com")
        return None


class PrintNotifier:
    async def send(self, notification: W.Notification) -> None:
        print(f"  [EMAIL] {notification.type.value}: {notification.data}")


# ═══════════════════════════════════════════════════════════════════════════════
# Demo
# ═══════════════════════════════════════════════════════════════════════════════


async def main() -> None:
    setup_logging(level="WARNING", format="console")
    settings = Settings(_env_file=None, executor_backoff_seconds=0.05)

    session_factory, engine = await create_database()
    jobs = J.SQLAlchemyJobStore(session_factory, settings.job_store_policy())
    dlq = Q.MemoryQueue("generation-dlq", settings.dlq_policy())
    queue = Q.MemoryQueue("generation", settings.queue_policy(), dead_letter=dlq)
    notifier = PrintNotifier()
    publisher = FlakyPublisher()

    service = GenerationService(
        jobs,
        queue,
        notifier,
        I.SQLAlchemyStore(session_factory),
        policy=settings.idempotency_policy(),
    )
    worker = W.Worker(
        jobs,
        queue,
        publisher,
        notifier,
        dead_letter=dlq,
        policy=settings.worker_policy(),
    )

    request = GenerationRequest(
        J.JobKind.CREATE,
        "owner@acme.example",
        "acme",
        J.CreatePayload(template_id="bistro", langs={"hero.title": "Acme Bakery"}),
    )

    banner("1. Checkout + payment webhook (delivered twice)")
    registered = (await service.register(request, payment_session_id="cs_123")).unwrap()
    for _ in range(2):
        match await service.confirm_payment("cs_123"):
            case Ok(s):
                print(f"   operation={s.operation_id[:8]} cached={s.from_cache}")
            case Error(e):
                print(f"   error: {e}")
    print(f"   messages queued: {len(queue)}")

    banner("2. Conflicting edit while generation is pending")
    match await service.confirm_edit("owner@acme.example", "acme", J.UpdatePayload()):
        case Error(J.ConflictError() as e):
            print(f"   rejected: {e.message}")
        case other:
            print(f"   unexpected: {other}")

    banner("3. Worker: first attempt fails, retry publishes")
    for settlement in await worker.run_once():
        print(f"   {settlement.action.value}: {settlement.reason}")

    banner("4. Downstream deploy signal")
    await service.mark_deployed(registered.operation_id)
    job = (await service.status(registered.operation_id)).unwrap()
    print(f"   status={job.status.value} attempts={job.attempts} publisher calls={publisher.calls}")

    await service.drain()
    await worker.dispatcher.drain()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())

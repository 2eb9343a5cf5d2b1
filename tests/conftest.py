"""Shared test fixtures for the genflow test suite."""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genflow import jobs as J
from genflow import queue as Q
from genflow import worker as W
from genflow.db import create_database


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class StubExecutor:
    """Counts calls; raises queued failures first, then succeeds."""

    def __init__(
        self,
        failures: list[Exception] | None = None,
        probe_receipt: W.ExecutionReceipt | None = None,
    ) -> None:
        self.calls: list[W.ExecutionRequest] = []
        self.probes: list[W.ExecutionRequest] = []
        self.failures = list(failures or [])
        self.probe_receipt = probe_receipt

    async def execute(self, request: W.ExecutionRequest) -> W.ExecutionReceipt:
        self.calls.append(request)
        if self.failures:
            raise self.failures.pop(0)
        return W.ExecutionReceipt(deployment_url=f"https://{request.project_name}.example.com")

    async def probe(self, request: W.ExecutionRequest) -> W.ExecutionReceipt | None:
        self.probes.append(request)
        return self.probe_receipt


class FailingNotifier:
    """Every send raises."""

    def __init__(self) -> None:
        self.attempts = 0

    async def send(self, notification: W.Notification) -> None:
        self.attempts += 1
        raise ConnectionError("smtp unavailable")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def jobs(clock: FakeClock) -> J.MemoryJobStore:
    return J.MemoryJobStore(clock=clock)


@pytest.fixture
def dlq(clock: FakeClock) -> Q.MemoryQueue:
    return Q.MemoryQueue("generation-dlq", Q.DEAD_LETTER_POLICY, clock=clock)


@pytest.fixture
def queue(clock: FakeClock, dlq: Q.MemoryQueue) -> Q.MemoryQueue:
    return Q.MemoryQueue("generation", Q.QueuePolicy(), dead_letter=dlq, clock=clock)


@pytest.fixture
def executor() -> StubExecutor:
    return StubExecutor()


@pytest.fixture
def notifier() -> W.MemoryNotifier:
    return W.MemoryNotifier()


@pytest.fixture
def worker_policy() -> W.WorkerPolicy:
    """Millisecond backoff so retries do not slow the suite down."""
    return W.WorkerPolicy(
        attempts=3,
        backoff_initial=0.001,
        backoff_factor=2.0,
        backoff_max=0.01,
        execution_timeout=2.0,
        lease=timedelta(seconds=10),
        max_concurrency=10,
        batch_size=10,
        poll_interval=0.01,
    )


@pytest.fixture
def worker(
    jobs: J.MemoryJobStore,
    queue: Q.MemoryQueue,
    dlq: Q.MemoryQueue,
    executor: StubExecutor,
    notifier: W.MemoryNotifier,
    worker_policy: W.WorkerPolicy,
    clock: FakeClock,
) -> W.Worker:
    return W.Worker(
        jobs,
        queue,
        executor,
        notifier,
        dead_letter=dlq,
        policy=worker_policy,
        clock=clock,
    )


@pytest.fixture
def create_payload() -> J.CreatePayload:
    return J.CreatePayload(
        template_id="bistro",
        langs={"hero.title": "Acme Bakery"},
        images={"hero": "uploads/hero.jpg"},
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """File-backed SQLite so concurrent sessions use separate connections."""
    factory, engine = await create_database(f"sqlite+aiosqlite:///{tmp_path / 'genflow.db'}")
    yield factory
    await engine.dispose()

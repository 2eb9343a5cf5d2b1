"""Tests for the generation worker.

Scenarios run the real delivery graph against MemoryJobStore, MemoryQueue
and a counting stub executor, with time moved by FakeClock.
"""

import asyncio
from datetime import timedelta

import pytest

from genflow import jobs as J
from genflow import queue as Q
from genflow import worker as W
from tests.conftest import FailingNotifier, FakeClock, StubExecutor


class FlakyReceiveQueue(Q.MemoryQueue):
    """First receive raises, as a queue client does during an outage."""

    failures = 0

    async def receive(self, max_messages=1, visibility_timeout=None):
        if self.failures == 0:
            self.failures += 1
            raise ConnectionError("queue endpoint unreachable")
        return await super().receive(max_messages, visibility_timeout)


async def submit(
    jobs: J.MemoryJobStore,
    queue: Q.MemoryQueue,
    operation_id: str,
    project: str = "acme",
) -> J.JobRecord:
    job = (
        await jobs.create(
            operation_id,
            J.JobKind.CREATE,
            "owner@example.com",
            project,
            J.CreatePayload(template_id="bistro"),
        )
    ).unwrap()
    await queue.enqueue(operation_id, source="payment")
    return job


async def status(jobs: J.MemoryJobStore, operation_id: str) -> J.JobRecord:
    return (await jobs.get(operation_id)).unwrap()


class SlowExecutor(StubExecutor):
    async def execute(self, request: W.ExecutionRequest) -> W.ExecutionReceipt:
        self.calls.append(request)
        await asyncio.sleep(1)
        return W.ExecutionReceipt()


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_job_completes_and_message_is_acked(
        self, worker, jobs, queue, executor, notifier
    ):
        """op-1 for acme: pending → processing → completed, queue empty."""
        await submit(jobs, queue, "op-1")

        [settlement] = await worker.run_once()
        await worker.dispatcher.drain()

        assert settlement.action == W.Action.ACK
        assert settlement.reason == "completed"
        job = await status(jobs, "op-1")
        assert job.status == J.JobStatus.COMPLETED
        assert job.completed_at is not None
        assert job.lease_expires_at is None
        assert job.attempts == 1
        assert len(queue) == 0
        assert len(executor.calls) == 1
        assert executor.calls[0].project_name == "acme"
        assert [n.type for n in notifier.sent] == [
            W.NotificationType.GENERATION_STARTED,
            W.NotificationType.GENERATION_COMPLETE,
        ]
        complete = notifier.sent[-1]
        assert complete.email == "owner@example.com"
        assert complete.data == {
            "projectName": "acme",
            "operationId": "op-1",
            "deploymentUrl": "https://acme.example.com",
        }

    @pytest.mark.asyncio
    async def test_transient_errors_retried_within_delivery(self, worker, jobs, queue, executor):
        executor.failures = [W.TransientExecutorError("rate limited")] * 2
        await submit(jobs, queue, "op-1")

        [settlement] = await worker.run_once()

        assert settlement.reason == "completed"
        assert len(executor.calls) == 3


class TestDuplicateDelivery:
    @pytest.mark.asyncio
    async def test_same_job_delivered_twice_executes_once(self, worker, jobs, queue, executor):
        """op-2 enqueued twice and handled concurrently."""
        await submit(jobs, queue, "op-2")
        await queue.enqueue("op-2", source="payment")

        settlements = await worker.run_once()

        assert sorted(s.reason for s in settlements) == ["completed", "duplicate"]
        assert all(s.action == W.Action.ACK for s in settlements)
        assert len(executor.calls) == 1
        assert len(queue) == 0
        assert (await status(jobs, "op-2")).status == J.JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_redelivery_after_completion_is_discarded(self, worker, jobs, queue, executor):
        await submit(jobs, queue, "op-1")
        await worker.run_once()

        await queue.enqueue("op-1", source="redrive")
        [settlement] = await worker.run_once()

        assert settlement.reason == "duplicate"
        assert settlement.status == J.JobStatus.COMPLETED
        assert len(executor.calls) == 1

    @pytest.mark.asyncio
    async def test_live_lease_means_another_worker_owns_it(
        self, worker, jobs, queue, executor, clock: FakeClock
    ):
        await submit(jobs, queue, "op-1")
        await jobs.transition(
            "op-1",
            J.JobStatus.PENDING,
            J.JobStatus.PROCESSING,
            J.JobPatch(lease_expires_at=clock.now + timedelta(seconds=10)),
        )

        [settlement] = await worker.run_once()

        assert settlement.action == W.Action.ACK
        assert settlement.reason == "duplicate"
        assert executor.calls == []
        assert (await status(jobs, "op-1")).status == J.JobStatus.PROCESSING


class TestFailures:
    @pytest.mark.asyncio
    async def test_fatal_error_fails_job_without_retry(
        self, worker, jobs, queue, dlq, executor, notifier
    ):
        executor.failures = [W.FatalExecutorError("template bistro not found")]
        await submit(jobs, queue, "op-1")

        [settlement] = await worker.run_once()
        await worker.dispatcher.drain()

        assert settlement.action == W.Action.ACK
        assert settlement.reason == "failed"
        job = await status(jobs, "op-1")
        assert job.status == J.JobStatus.FAILED
        assert "template bistro not found" in job.failure_reason
        assert len(executor.calls) == 1
        assert len(queue) == 0
        assert len(dlq) == 0
        [failed] = notifier.of_type(W.NotificationType.GENERATION_FAILED)
        assert failed.data["error"] == job.failure_reason

    @pytest.mark.asyncio
    async def test_transient_failure_releases_lease_and_message(
        self, worker, jobs, queue, executor, clock: FakeClock
    ):
        executor.failures = [W.TransientExecutorError("upstream 503")] * 3
        await submit(jobs, queue, "op-1")

        [settlement] = await worker.run_once()

        assert settlement.action == W.Action.RELEASE
        assert settlement.reason == "retrying"
        assert settlement.delay > timedelta(0)
        job = await status(jobs, "op-1")
        assert job.status == J.JobStatus.PROCESSING
        assert not job.lease_live(clock.now)
        # Backoff holds the message back until time moves
        assert await queue.receive() == []

    @pytest.mark.asyncio
    async def test_dead_letter_after_repeated_failures(
        self, worker, jobs, queue, dlq, executor, notifier, clock: FakeClock
    ):
        """Executor fails on every try: job failed, message in the DLQ only."""
        executor.failures = [W.TransientExecutorError("deploy API down")] * 100
        await submit(jobs, queue, "op-1")

        reasons = []
        for _ in range(4):
            reasons.extend(s.reason for s in await worker.run_once())
            clock.advance(seconds=1)
        await worker.dispatcher.drain()

        assert reasons == ["retrying", "retrying", "exhausted"]
        job = await status(jobs, "op-1")
        assert job.status == J.JobStatus.FAILED
        assert job.failure_reason.startswith("exhausted:")
        assert job.attempts == 3
        assert len(queue) == 0
        assert len(dlq) == 1
        assert len(executor.calls) == 9
        assert len(notifier.of_type(W.NotificationType.GENERATION_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_execution_timeout_is_transient(self, jobs, queue, notifier, worker_policy, clock):
        slow = SlowExecutor()
        policy = W.WorkerPolicy(
            attempts=1,
            backoff_initial=0.001,
            backoff_max=0.01,
            execution_timeout=0.05,
            lease=worker_policy.lease,
        )
        worker = W.Worker(jobs, queue, slow, notifier, policy=policy, clock=clock)
        await submit(jobs, queue, "op-1")

        [settlement] = await worker.run_once()

        assert settlement.reason == "retrying"
        assert (await status(jobs, "op-1")).status == J.JobStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_change_state(self, jobs, queue, executor, worker_policy, clock):
        failing = FailingNotifier()
        worker = W.Worker(jobs, queue, executor, failing, policy=worker_policy, clock=clock)
        await submit(jobs, queue, "op-1")

        [settlement] = await worker.run_once()
        await worker.dispatcher.drain()

        assert settlement.reason == "completed"
        assert failing.attempts == 2
        assert (await status(jobs, "op-1")).status == J.JobStatus.COMPLETED
        assert len(queue) == 0


class TestLeaseRecovery:
    async def crashed(self, jobs, queue, clock: FakeClock) -> None:
        """A worker acquired op-1 and died; its lease has since lapsed."""
        await submit(jobs, queue, "op-1")
        await jobs.transition(
            "op-1",
            J.JobStatus.PENDING,
            J.JobStatus.PROCESSING,
            J.JobPatch(lease_expires_at=clock.now + timedelta(seconds=10), bump_attempts=True),
        )
        clock.advance(seconds=11)

    @pytest.mark.asyncio
    async def test_reacquired_job_is_executed(self, worker, jobs, queue, executor, clock):
        await self.crashed(jobs, queue, clock)

        [settlement] = await worker.run_once()

        assert settlement.reason == "completed"
        assert len(executor.probes) == 1
        assert len(executor.calls) == 1
        assert (await status(jobs, "op-1")).attempts == 2

    @pytest.mark.asyncio
    async def test_probe_hit_completes_without_rerun(self, worker, jobs, queue, executor, clock):
        """The crashed attempt already deployed; nothing runs twice."""
        executor.probe_receipt = W.ExecutionReceipt(deployment_url="https://acme.example.com")
        await self.crashed(jobs, queue, clock)

        [settlement] = await worker.run_once()

        assert settlement.reason == "completed"
        assert executor.calls == []
        assert (await status(jobs, "op-1")).status == J.JobStatus.COMPLETED


class TestEdgeMessages:
    @pytest.mark.asyncio
    async def test_missing_job_is_acked(self, worker, queue, executor):
        await queue.enqueue("ghost", source="payment")

        [settlement] = await worker.run_once()

        assert settlement.action == W.Action.ACK
        assert settlement.reason == "missing"
        assert len(queue) == 0
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_malformed_message_ends_in_dead_letter(self, worker, queue, dlq):
        await queue.send("not a job message")

        for _ in range(3):
            [settlement] = await worker.run_once()
            assert settlement.reason == "malformed"

        assert len(queue) == 0
        assert len(dlq) == 1


class TestDirectInvocation:
    @pytest.mark.asyncio
    async def test_run_now_completes_job(self, worker, jobs, queue, executor):
        await submit(jobs, queue, "op-1")

        settlement = await worker.run_now("op-1")

        assert settlement.reason == "completed"
        assert (await status(jobs, "op-1")).status == J.JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_run_now_transient_failure_is_final(self, worker, jobs, queue, executor):
        executor.failures = [W.TransientExecutorError("down")] * 3
        await submit(jobs, queue, "op-1")

        settlement = await worker.run_now("op-1")

        assert settlement.reason == "exhausted"
        assert (await status(jobs, "op-1")).status == J.JobStatus.FAILED


class TestOperations:
    @pytest.mark.asyncio
    async def test_reconcile_fails_jobs_stuck_behind_dead_letters(
        self, worker, jobs, dlq, clock: FakeClock, notifier
    ):
        await jobs.create(
            "op-1", J.JobKind.CREATE, "owner@example.com", "acme", J.CreatePayload(template_id="bistro")
        )
        await dlq.send(Q.encode_body("op-1", clock.now), {"source": "payment"})

        failed = await worker.reconcile_dead_letters()
        await worker.dispatcher.drain()

        assert failed == 1
        job = await status(jobs, "op-1")
        assert job.status == J.JobStatus.FAILED
        assert job.failure_reason == "dead-lettered"
        # Dead letters stay for inspection
        assert len(dlq) == 1
        assert len(await dlq.receive()) == 1
        assert len(notifier.of_type(W.NotificationType.GENERATION_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_health_reports_dead_letters(self, worker, dlq, clock: FakeClock):
        assert await worker.health() == ()

        await dlq.send(Q.encode_body("op-1", clock.now))

        assert await worker.health() == ("dead_letters",)

    def test_lease_must_lapse_before_visibility_timeout(self, jobs, executor, notifier, clock):
        short = Q.MemoryQueue("q", Q.QueuePolicy().with_visibility_timeout(seconds=5), clock=clock)

        with pytest.raises(ValueError):
            W.Worker(jobs, short, executor, notifier, policy=W.WorkerPolicy())

    def test_policy_rejects_lease_shorter_than_execution(self):
        with pytest.raises(ValueError):
            W.WorkerPolicy(execution_timeout=300, lease=timedelta(seconds=60))

    @pytest.mark.asyncio
    async def test_run_stops_on_event(self, worker, jobs, queue):
        await submit(jobs, queue, "op-1")
        stop = asyncio.Event()

        task = asyncio.create_task(worker.run(stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert (await status(jobs, "op-1")).status == J.JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_run_survives_receive_failure(
        self, jobs, dlq, executor, notifier, worker_policy, clock
    ):
        """An unreachable queue endpoint does not end the poll loop."""
        queue = FlakyReceiveQueue("generation", Q.QueuePolicy(), dead_letter=dlq, clock=clock)
        worker = W.Worker(
            jobs, queue, executor, notifier, dead_letter=dlq, policy=worker_policy, clock=clock
        )
        await submit(jobs, queue, "op-1")
        stop = asyncio.Event()

        task = asyncio.create_task(worker.run(stop))
        await asyncio.sleep(0.1)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert queue.failures == 1
        assert (await status(jobs, "op-1")).status == J.JobStatus.COMPLETED

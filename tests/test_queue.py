"""Tests for the work queue and dead-letter queue."""

import json
from datetime import timedelta

import pytest
from kungfu import Error

from genflow import queue as Q
from tests.conftest import FakeClock


class TestCodec:
    def test_body_carries_operation_id_only(self, clock: FakeClock):
        raw = Q.encode_body("op-1", clock.now)

        assert set(json.loads(raw)) == {"operationId", "timestamp"}
        assert Q.decode_body(raw).unwrap().operation_id == "op-1"

    def test_timestamp_is_optional(self):
        body = Q.decode_body('{"operationId": "op-1"}').unwrap()

        assert body.timestamp is None

    @pytest.mark.parametrize("raw", ["not json", "[]", "{}", '{"operationId": ""}'])
    def test_malformed_bodies_are_rejected(self, raw: str):
        assert isinstance(Q.decode_body(raw), Error)


class TestMemoryQueue:
    """Tests for visibility, redelivery and dead-lettering."""

    @pytest.mark.asyncio
    async def test_received_message_is_hidden(self, queue: Q.MemoryQueue):
        await queue.enqueue("op-1", source="payment")

        first = await queue.receive(max_messages=10)
        second = await queue.receive(max_messages=10)

        assert len(first) == 1
        assert first[0].attributes == {"operationId": "op-1", "source": "payment"}
        assert first[0].receive_count == 1
        assert second == []

    @pytest.mark.asyncio
    async def test_ack_removes_message(self, queue: Q.MemoryQueue):
        await queue.enqueue("op-1", source="edit")
        [delivery] = await queue.receive()

        assert await queue.ack(delivery.receipt) is True
        assert await queue.ack(delivery.receipt) is False
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_visibility_timeout_redelivers(self, queue: Q.MemoryQueue, clock: FakeClock):
        await queue.enqueue("op-1", source="edit")
        [first] = await queue.receive()

        clock.advance(seconds=301)
        [second] = await queue.receive()

        assert second.message_id == first.message_id
        assert second.receive_count == 2
        # The earlier receipt no longer settles the message
        assert await queue.ack(first.receipt) is False

    @pytest.mark.asyncio
    async def test_zero_visibility_timeout_is_honoured(self, queue: Q.MemoryQueue):
        await queue.enqueue("op-1", source="edit")

        [first] = await queue.receive(visibility_timeout=timedelta(0))
        [second] = await queue.receive()

        assert second.message_id == first.message_id
        assert second.receive_count == 2

    @pytest.mark.asyncio
    async def test_release_with_delay(self, queue: Q.MemoryQueue, clock: FakeClock):
        await queue.enqueue("op-1", source="edit")
        [delivery] = await queue.receive()

        await queue.release(delivery.receipt, timedelta(seconds=30))

        assert await queue.receive() == []
        clock.advance(seconds=30)
        assert len(await queue.receive()) == 1

    @pytest.mark.asyncio
    async def test_third_failed_receive_moves_to_dead_letter(
        self, queue: Q.MemoryQueue, dlq: Q.MemoryQueue
    ):
        await queue.enqueue("op-1", source="payment")

        for _ in range(3):
            [delivery] = await queue.receive()
            await queue.release(delivery.receipt)

        assert len(queue) == 0
        [dead] = dlq.messages()
        assert json.loads(dead.body)["operationId"] == "op-1"
        assert dead.attributes["source"] == "payment"

    @pytest.mark.asyncio
    async def test_timed_out_final_receive_is_dead_lettered(
        self, queue: Q.MemoryQueue, dlq: Q.MemoryQueue, clock: FakeClock
    ):
        await queue.enqueue("op-1", source="payment")
        for _ in range(3):
            await queue.receive()
            clock.advance(seconds=301)

        assert await queue.receive() == []
        assert len(dlq) == 1

    @pytest.mark.asyncio
    async def test_retention_drops_old_messages(self, queue: Q.MemoryQueue, clock: FakeClock):
        await queue.enqueue("op-1", source="edit")

        clock.advance(days=4)

        assert await queue.receive() == []
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_receives_oldest_first(self, queue: Q.MemoryQueue, clock: FakeClock):
        await queue.enqueue("op-1", source="edit")
        clock.advance(seconds=1)
        await queue.enqueue("op-2", source="edit")

        deliveries = await queue.receive(max_messages=10)

        assert [d.attributes["operationId"] for d in deliveries] == ["op-1", "op-2"]

    @pytest.mark.asyncio
    async def test_stats(self, queue: Q.MemoryQueue, clock: FakeClock):
        await queue.enqueue("op-1", source="edit")
        await queue.enqueue("op-2", source="edit")
        await queue.enqueue("op-3", source="edit")
        [delivery] = await queue.receive()
        await queue.release(delivery.receipt, timedelta(minutes=1))
        await queue.receive()

        clock.advance(seconds=20)
        stats = await queue.stats()

        assert (stats.visible, stats.in_flight, stats.delayed) == (1, 1, 1)
        assert stats.depth == 3
        assert stats.oldest_age == timedelta(seconds=20)


class TestQueueStats:
    def test_breaches(self):
        stats = Q.QueueStats(visible=101, in_flight=0, delayed=0, oldest_age=timedelta(minutes=16))

        assert stats.breaches() == ("backlog", "oldest_message")

    def test_healthy(self):
        stats = Q.QueueStats(visible=3, in_flight=2, delayed=0, oldest_age=timedelta(seconds=5))

        assert stats.breaches() == ()


class TestRedrive:
    @pytest.mark.asyncio
    async def test_redrive_moves_dead_letters_back(self, queue: Q.MemoryQueue, dlq: Q.MemoryQueue):
        await queue.enqueue("op-1", source="payment")
        for _ in range(3):
            [delivery] = await queue.receive()
            await queue.release(delivery.receipt)

        moved = await Q.redrive(dlq, queue)

        assert moved == 1
        assert len(dlq) == 0
        [message] = queue.messages()
        assert message.attributes["source"] == "redrive"
        assert message.receive_count == 0

    @pytest.mark.asyncio
    async def test_redrive_respects_limit(
        self, queue: Q.MemoryQueue, dlq: Q.MemoryQueue, clock: FakeClock
    ):
        for i in range(3):
            await dlq.send(Q.encode_body(f"op-{i}", clock.now), {"source": "payment"})

        moved = await Q.redrive(dlq, queue, max_messages=2)

        assert moved == 2
        assert len(dlq) == 1
        assert len(queue) == 2

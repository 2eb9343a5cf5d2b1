"""
Queue — at-least-once job delivery with dead-lettering.

    from genflow import queue as Q

    dlq = Q.MemoryQueue("generation-dlq", Q.DEAD_LETTER_POLICY)
    queue = Q.MemoryQueue("generation", Q.QueuePolicy(), dead_letter=dlq)

    await queue.enqueue(operation_id, source="payment")
    for delivery in await queue.receive(max_messages=10):
        ...
        await queue.ack(delivery.receipt)
"""

from genflow.queue._types import (
    QueueMessage,
    Delivery,
    MessageBody,
    MessageError,
    QueueStats,
)
from genflow.queue._policy import QueuePolicy, DEAD_LETTER_POLICY
from genflow.queue._codec import encode_body, decode_body
from genflow.queue._queue import Queue, MemoryQueue, redrive

__all__ = (
    "QueueMessage",
    "Delivery",
    "MessageBody",
    "MessageError",
    "QueueStats",
    "QueuePolicy",
    "DEAD_LETTER_POLICY",
    "encode_body",
    "decode_body",
    "Queue",
    "MemoryQueue",
    "redrive",
)

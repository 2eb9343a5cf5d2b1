"""
Worker — drives generation jobs from the queue to a terminal state.

    from genflow import worker as W

    worker = W.Worker(jobs, queue, executor, notifier, dead_letter=dlq)
    await worker.run_once()

Per delivery:

    decode → load job ─┬─ terminal / leased ───────────► ack (duplicate)
                       ├─ pending ─► acquire ─┐
                       └─ lease lapsed ─► reacquire ─► probe
                                              ▼
                                      execute (retry, timeout)
                                       ├─ ok ────────► completed, ack
                                       ├─ fatal ─────► failed, ack
                                       ├─ transient ─► release (backoff)
                                       └─ transient, last delivery
                                                     ► failed, release → DLQ
"""

from genflow.worker._errors import (
    ExecutorError,
    TransientExecutorError,
    FatalExecutorError,
    ExecutionFailure,
    classify,
)
from genflow.worker._executor import (
    ExecutionRequest,
    ExecutionReceipt,
    DeploymentExecutor,
)
from genflow.worker._notifier import (
    NotificationType,
    Notification,
    Notifier,
    MemoryNotifier,
    Dispatcher,
)
from genflow.worker._policy import WorkerPolicy
from genflow.worker._context import WorkerContext
from genflow.worker._graph import (
    DeliverySpec,
    Action,
    Settlement,
    process_delivery,
)
from genflow.worker._worker import Worker

__all__ = (
    # Errors
    "ExecutorError",
    "TransientExecutorError",
    "FatalExecutorError",
    "ExecutionFailure",
    "classify",
    # Executor
    "ExecutionRequest",
    "ExecutionReceipt",
    "DeploymentExecutor",
    # Notifications
    "NotificationType",
    "Notification",
    "Notifier",
    "MemoryNotifier",
    "Dispatcher",
    # Worker
    "WorkerPolicy",
    "WorkerContext",
    "DeliverySpec",
    "Action",
    "Settlement",
    "process_delivery",
    "Worker",
)

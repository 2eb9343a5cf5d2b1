"""
Worker context — collaborators shared by every delivery.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import combinators
from combinators import flow, lift as L
from kungfu import Result, Ok, Error

from genflow._types import Clock
from genflow.jobs import JobRecord, JobStore
from genflow.worker._errors import ExecutionFailure, classify
from genflow.worker._executor import (
    DeploymentExecutor,
    ExecutionRequest,
    ExecutionReceipt,
)
from genflow.worker._notifier import Dispatcher, Notification, NotificationType
from genflow.worker._policy import WorkerPolicy


@dataclass(frozen=True, slots=True)
class WorkerContext:
    jobs: JobStore
    executor: DeploymentExecutor
    dispatcher: Dispatcher
    policy: WorkerPolicy
    clock: Clock

    async def execute(
        self, request: ExecutionRequest
    ) -> Result[ExecutionReceipt, ExecutionFailure]:
        """Executor call with transient-only retry under one overall timeout."""
        executor = self.executor
        pipeline = (
            flow(
                L.catching_async(
                    lambda: executor.execute(request),
                    on_error=classify,
                )
            )
            .retry(policy=self.policy.retry_policy())
            .timeout(seconds=self.policy.execution_timeout)
            .compile()
        )

        match await pipeline:
            case Ok(receipt):
                return Ok(receipt)
            case Error(combinators.TimeoutError() as e):
                return Error(classify(e))
            case Error(failure):
                return Error(failure)

    def notify(
        self, type: NotificationType, job: JobRecord, **data: Any
    ) -> None:
        self.dispatcher.dispatch(
            Notification(
                type=type,
                email=job.owner_email,
                data={
                    "projectName": job.project_name,
                    "operationId": job.operation_id,
                    **data,
                },
            )
        )


__all__ = ("WorkerContext",)

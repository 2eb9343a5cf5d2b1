"""
Deployment executor contract.

The executor performs the external side effects (build, publish). It must be
safe to call again after a partial failure; probe() lets the worker skip a
re-run when a previous attempt already produced the artifact.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from genflow.jobs import JobKind, JobPayload, JobRecord


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    operation_id: str
    kind: JobKind
    project_name: str
    owner_email: str
    payload: JobPayload

    @classmethod
    def from_job(cls, job: JobRecord) -> ExecutionRequest:
        return cls(
            operation_id=job.operation_id,
            kind=job.kind,
            project_name=job.project_name,
            owner_email=job.owner_email,
            payload=job.payload,
        )


@dataclass(frozen=True, slots=True)
class ExecutionReceipt:
    """What the executor produced."""

    deployment_url: str | None = None
    detail: dict[str, str] = field(default_factory=dict)


class DeploymentExecutor(Protocol):
    async def execute(self, request: ExecutionRequest) -> ExecutionReceipt:
        """
        Build and publish.

        Raises:
            TransientExecutorError: worth retrying
            FatalExecutorError: retrying cannot help
        """
        ...

    async def probe(self, request: ExecutionRequest) -> ExecutionReceipt | None:
        """Receipt if the artifact for this request already exists, else None."""
        ...


__all__ = (
    "ExecutionRequest",
    "ExecutionReceipt",
    "DeploymentExecutor",
)

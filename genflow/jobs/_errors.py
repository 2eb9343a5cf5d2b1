"""
Job store errors — returned inside Result, never raised.
"""

from __future__ import annotations

from dataclasses import dataclass

from genflow._types import StoreError


@dataclass(frozen=True)
class ConflictError:
    """
    A job is already pending or processing for this project.

    Surfaced to the producer's caller as "already processing".
    """

    project_name: str
    active_operation_id: str | None = None

    @property
    def message(self) -> str:
        return f"Project {self.project_name!r} already has a job in flight"


@dataclass(frozen=True)
class StaleStateError:
    """Conditional transition lost: status was not what the caller expected."""

    operation_id: str
    expected: str
    actual: str | None

    @property
    def message(self) -> str:
        return (
            f"Job {self.operation_id}: expected {self.expected}, found {self.actual}"
        )


@dataclass(frozen=True)
class NotFound:
    """No job matches the lookup."""

    key: str

    @property
    def message(self) -> str:
        return f"Job not found: {self.key}"


@dataclass(frozen=True)
class PayloadError:
    """Payload does not match any known kind/version."""

    message: str


__all__ = (
    "ConflictError",
    "StaleStateError",
    "NotFound",
    "PayloadError",
    "StoreError",
)

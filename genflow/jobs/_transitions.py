"""
Allowed status edges.

Anything outside this table is a programming error and raises ValueError
before the store is touched.
"""

from __future__ import annotations

from genflow.jobs._types import JobStatus

EDGES: frozenset[tuple[JobStatus, JobStatus]] = frozenset({
    (JobStatus.PENDING, JobStatus.PROCESSING),  # acquire
    (JobStatus.PROCESSING, JobStatus.PROCESSING),  # re-acquire / release lease
    (JobStatus.PROCESSING, JobStatus.COMPLETED),
    (JobStatus.PROCESSING, JobStatus.FAILED),
    (JobStatus.PENDING, JobStatus.FAILED),  # dead-lettered, never acquired
    (JobStatus.COMPLETED, JobStatus.DEPLOYED),
})


def check_edge(expected: JobStatus, new: JobStatus) -> None:
    if (expected, new) not in EDGES:
        raise ValueError(f"Illegal job transition: {expected} -> {new}")


__all__ = ("EDGES", "check_edge")

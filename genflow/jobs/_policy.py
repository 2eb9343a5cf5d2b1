"""
Job store policy.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import timedelta


@dataclass(frozen=True, slots=True)
class JobStorePolicy:
    """
    ttl: lifetime of a job record before purge_expired() may drop it.
    A job whose processing lease is still live is never purged.

    Example:
        JobStorePolicy().with_ttl(days=7)
    """

    ttl: timedelta = timedelta(days=7)

    def with_ttl(
        self,
        *,
        days: float | None = None,
        hours: float | None = None,
        delta: timedelta | None = None,
    ) -> JobStorePolicy:
        if delta is None:
            delta = timedelta(days=days or 0, hours=hours or 0)
        if delta <= timedelta(0):
            raise ValueError("ttl must be positive")
        return replace(self, ttl=delta)


__all__ = ("JobStorePolicy",)

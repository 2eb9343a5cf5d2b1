"""
Worker policy — executor retry, timeout, lease, concurrency.

Timing invariant:

    execution_timeout  <  lease  <  queue visibility_timeout
         240s              270s           300s

A worker that crashes leaves its lease to lapse before the queue redelivers,
so the redelivered message re-acquires the job instead of discarding itself
as a duplicate.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from combinators import RetryPolicy

from genflow.worker._errors import ExecutionFailure


@dataclass(frozen=True, slots=True)
class WorkerPolicy:
    """
    attempts / backoff_*: in-delivery executor retries (transient only),
        delay = backoff_initial * backoff_factor ** attempt.
    execution_timeout: seconds for all attempts together.
    lease: how long an acquisition holds a processing job.
    max_concurrency: deliveries handled at once.
    batch_size: messages per receive.
    poll_interval: seconds to sleep when the queue is empty.
    """

    attempts: int = 3
    backoff_initial: float = 2.0
    backoff_factor: float = 2.0
    backoff_max: float = 60.0
    execution_timeout: float = 240.0
    lease: timedelta = timedelta(seconds=270)
    max_concurrency: int = 100
    batch_size: int = 10
    poll_interval: float = 1.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.lease.total_seconds() <= self.execution_timeout:
            raise ValueError("lease must outlast execution_timeout")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")

    def retry_policy(self) -> RetryPolicy[ExecutionFailure]:
        return RetryPolicy.exponential(
            times=self.attempts,
            initial=self.backoff_initial,
            multiplier=self.backoff_factor,
            max_delay=max(self.backoff_max, self.backoff_initial),
            retry_on=lambda failure: failure.transient,
        )

    def redelivery_delay(self, receive_count: int) -> timedelta:
        """Queue-level backoff after a transient failure."""
        seconds = self.backoff_initial * self.backoff_factor ** receive_count
        return timedelta(seconds=min(seconds, self.backoff_max))


__all__ = ("WorkerPolicy",)

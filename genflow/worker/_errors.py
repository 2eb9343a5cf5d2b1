"""
Executor errors and their classification.

Executors raise; the worker converts every exception into an
ExecutionFailure value that is either transient (retry, redeliver) or fatal
(fail the job now).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import combinators


class ExecutorError(Exception):
    """Base for errors raised by a deployment executor."""


class TransientExecutorError(ExecutorError):
    """Presumed retryable: timeout, rate limit, upstream unavailable."""


class FatalExecutorError(ExecutorError):
    """Presumed permanent: invalid payload, missing template."""


_TRANSIENT: tuple[type[BaseException], ...] = (
    TransientExecutorError,
    asyncio.TimeoutError,
    combinators.TimeoutError,
    ConnectionError,
)
_FATAL: tuple[type[BaseException], ...] = (
    FatalExecutorError,
    ValueError,
    KeyError,
    TypeError,
)


@dataclass(frozen=True)
class ExecutionFailure:
    """Classified executor failure."""

    transient: bool
    reason: str
    cause: Exception | None = None


def classify(exc: Exception) -> ExecutionFailure:
    """
    Map an exception to transient/fatal.

    Unknown exceptions are transient: the redelivery budget bounds them.
    """
    reason = f"{type(exc).__name__}: {exc}"
    if isinstance(exc, _TRANSIENT):
        return ExecutionFailure(transient=True, reason=reason, cause=exc)
    if isinstance(exc, _FATAL):
        return ExecutionFailure(transient=False, reason=reason, cause=exc)
    return ExecutionFailure(transient=True, reason=reason, cause=exc)


__all__ = (
    "ExecutorError",
    "TransientExecutorError",
    "FatalExecutorError",
    "ExecutionFailure",
    "classify",
)

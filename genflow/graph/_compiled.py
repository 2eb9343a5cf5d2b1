"""
Compiled graph: one agent per target, reused across runs.

The worker compiles its delivery graph at construction and runs it for every
queue message.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, cast

from nodnod import EventLoopAgent

from genflow.graph._run import build_agent, execute


@dataclass(slots=True, frozen=True)
class Compiled[T]:
    """
    Pre-built graph.

    Example:
        pipeline = graph(FinalDeliveryNode)
        node = await pipeline(spec)
    """

    _target: type[T]
    _agent: EventLoopAgent

    async def __call__(self, *inputs: object) -> T:
        """Inject each input under its runtime type and run."""
        injections = tuple((cast(type[Any], type(v)), v) for v in inputs)
        return await execute(self._agent, self._target, injections, "compiled")


def graph[T](target: type[T]) -> Compiled[T]:
    """Pre-compile the dependency graph of `target`."""
    return Compiled(_target=target, _agent=build_agent(target))


__all__ = ("Compiled", "graph")

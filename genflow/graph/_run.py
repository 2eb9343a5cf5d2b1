"""
Scope handling for nodnod graphs.

A graph is built once from its target node; every run gets a fresh scope
with the caller's inputs pushed under their types.
"""

from __future__ import annotations

from typing import Any, cast
from collections.abc import Callable, Coroutine

from nodnod import Scope, Value, EventLoopAgent, Node

type Injection = tuple[type[Any], Any]
type AgentRun = Callable[[Scope, dict[type[Any], Scope]], Coroutine[Any, Any, None]]


class TypedScope:
    """nodnod.Scope with typed push/lookup."""

    __slots__ = ("_scope",)

    def __init__(self, detail: str = "scope") -> None:
        self._scope = Scope(detail=detail)

    @property
    def inner(self) -> Scope:
        return self._scope

    def inject[T](self, typ: type[T], value: T) -> TypedScope:
        self._scope.push(Value(typ, value))
        return self

    def get[T](self, typ: type[T]) -> T:
        found = self._scope.get(typ)
        if found is None:
            raise KeyError(f"{typ.__name__} was not resolved")
        return cast(T, found.value)

    async def __aenter__(self) -> TypedScope:
        await self._scope.__aenter__()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self._scope.__aexit__(*args)


def build_agent(target: type[Any]) -> EventLoopAgent:
    return EventLoopAgent.build({cast(type[Node[Any, Any]], target)})


async def execute[T](
    agent: EventLoopAgent,
    target: type[T],
    injections: tuple[Injection, ...],
    detail: str,
) -> T:
    async with TypedScope(detail=detail) as scope:
        for typ, value in injections:
            scope.inject(typ, value)
        await cast(AgentRun, getattr(agent, "run"))(scope.inner, {})
        return scope.get(target)


__all__ = ("TypedScope", "Injection", "execute", "build_agent")

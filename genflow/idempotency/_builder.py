"""
idempotent(op).key(...).store(...).policy(...).build() → IdempotentExecutor.

The executor derives the key for each input, packs an IdempotencySpec and
hands it to the decision graph in `_graph`.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from collections.abc import Callable

from kungfu import LazyCoroResult, Result, Ok

from genflow.idempotency._types import (
    IdempotencyResult,
    IdempotencyError,
)
from genflow.idempotency._store import StoreAny, MemoryStore
from genflow.idempotency._policy import Policy
from genflow.idempotency._key import input_hash
from genflow.idempotency._graph import IdempotencySpec, run_idempotent


type KeyFn[K] = Callable[[K], str]
type Operation[K, T, E] = Callable[[K], LazyCoroResult[T, E]]


@dataclass(slots=True, frozen=True)
class Idempotent[K, T, E]:
    """Immutable configuration; every setter returns a copy."""

    _operation: Operation[K, T, E]
    _key_fn: KeyFn[K] | None = None
    _store: StoreAny | None = None
    _policy: Policy = Policy()
    _hash_input: bool = False

    def key(self, fn: KeyFn[K]) -> Idempotent[K, T, E]:
        return replace(self, _key_fn=fn)

    def store(self, s: StoreAny) -> Idempotent[K, T, E]:
        return replace(self, _store=s)

    def policy(self, p: Policy) -> Idempotent[K, T, E]:
        return replace(self, _policy=p)

    def hash_input(self, enabled: bool = True) -> Idempotent[K, T, E]:
        """Reject a cached result whose recorded input differs (INPUT_MISMATCH)."""
        return replace(self, _hash_input=enabled)

    def build(self) -> IdempotentExecutor[K, T, E]:
        if self._key_fn is None:
            raise ValueError("idempotent(): key() must be set before build()")
        return IdempotentExecutor(
            operation=self._operation,
            key_fn=self._key_fn,
            store=self._store if self._store is not None else MemoryStore(),
            policy=self._policy,
            hash_input=self._hash_input,
        )


@dataclass(slots=True, frozen=True)
class IdempotentExecutor[K, T, E]:
    operation: Operation[K, T, E]
    key_fn: KeyFn[K]
    store: StoreAny
    policy: Policy
    hash_input: bool = False

    def spec(self, input_val: K) -> IdempotencySpec:
        return IdempotencySpec(
            key=self.key_fn(input_val),
            input_value=input_val,
            operation=self.operation,
            store=self.store,
            policy=self.policy,
            input_hash=input_hash(input_val) if self.hash_input else None,
        )

    def run(self, input_val: K) -> LazyCoroResult[IdempotencyResult[T], IdempotencyError]:
        """Lazy: nothing touches the store until the result is awaited."""
        spec = self.spec(input_val)

        async def go() -> Result[IdempotencyResult[T], IdempotencyError]:
            return await run_idempotent(spec)

        return LazyCoroResult(go)

    async def invalidate(self, input_val: K) -> bool:
        """Forget the record for `input_val`; False if absent or the store failed."""
        match await self.store.delete(self.key_fn(input_val)):
            case Ok(deleted):
                return deleted
            case _:
                return False


def idempotent[K, T, E](operation: Operation[K, T, E]) -> Idempotent[K, T, E]:
    """
    Wrap `operation` so repeated inputs with the same key run it once.

    Example:
        submit = (
            I.idempotent(create_job)
            .key(lambda req: I.fingerprint("POST", "/generate", req.email, req.body))
            .store(I.SQLAlchemyStore(session_factory))
            .policy(I.Policy().with_ttl(hours=24))
            .build()
        )

        match await submit.run(request):
            case Ok(I.IdempotencyResult(value=job, from_cache=cached)): ...
    """
    return Idempotent(_operation=operation)


__all__ = (
    "Idempotent",
    "IdempotentExecutor",
    "idempotent",
)

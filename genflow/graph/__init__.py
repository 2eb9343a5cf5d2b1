"""
Graph — decision logic as nodnod dependency graphs.

    from genflow import graph as G

    @G.node
    class LoadJob:
        @classmethod
        async def __compose__(cls, spec: DeliverySpec) -> "LoadJob":
            return cls(await spec.context.jobs.get(spec.operation_id))

    load = G.graph(LoadJob)
    node = await load(spec)
"""

from nodnod import scalar_node as node

from genflow.graph._run import TypedScope
from genflow.graph._compiled import (
    Compiled,
    graph,
)

__all__ = (
    "node",
    "TypedScope",
    "graph",
    "Compiled",
)

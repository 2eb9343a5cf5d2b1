"""
genflow — idempotent, at-least-once website generation.

    from genflow import idempotency as I  # Request deduplication
    from genflow import jobs as J         # Job records, conditional transitions
    from genflow import queue as Q        # Work queue + dead letters
    from genflow import worker as W       # Delivery state machine
    from genflow import graph as G        # Computation graphs
"""

from genflow import graph
from genflow import idempotency
from genflow import jobs
from genflow import queue
from genflow import worker
from genflow._types import Clock, StoreError, utcnow

__version__ = "0.1.0"

__all__ = (
    "graph",
    "idempotency",
    "jobs",
    "queue",
    "worker",
    "Clock",
    "StoreError",
    "utcnow",
)

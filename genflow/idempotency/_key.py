"""
Idempotency keys — deterministic request fingerprints.

    key = fingerprint("POST", "/generate", user_id, body)

Same method, route, caller and body (regardless of dict key order) give the
same key.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any


def normalize(body: Any) -> str:
    """Canonical JSON text: sorted keys, compact separators."""
    return json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)


def fingerprint(method: str, route: str, caller: str | None, body: Any) -> str:
    """sha256 hex of `METHOD:route:caller:normalized-body`."""
    raw = f"{method.upper()}:{route}:{caller or 'anonymous'}:{normalize(body)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def input_hash(value: Any) -> str:
    """Fingerprint of an operation input alone, for collision detection."""
    return hashlib.sha256(normalize(value).encode("utf-8")).hexdigest()


__all__ = ("normalize", "fingerprint", "input_hash")

"""
Message body codec.

    {"operationId": "0b6c…", "timestamp": "2026-01-01T00:00:00+00:00"}
"""

from __future__ import annotations

import json
from datetime import datetime

from kungfu import Result, Ok, Error

from genflow.queue._types import MessageBody, MessageError


def encode_body(operation_id: str, timestamp: datetime) -> str:
    return json.dumps({"operationId": operation_id, "timestamp": timestamp.isoformat()})


def decode_body(raw: str) -> Result[MessageBody, MessageError]:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        return Error(MessageError(f"invalid JSON: {e}"))

    if not isinstance(data, dict):
        return Error(MessageError("body must be an object"))

    operation_id = data.get("operationId")
    if not isinstance(operation_id, str) or not operation_id:
        return Error(MessageError("operationId is required"))

    # Producers outside this package may send {operationId} alone
    raw_timestamp = data.get("timestamp")
    if raw_timestamp is None:
        return Ok(MessageBody(operation_id=operation_id))

    try:
        timestamp = datetime.fromisoformat(raw_timestamp)
    except (TypeError, ValueError):
        return Error(MessageError("timestamp must be ISO 8601"))

    return Ok(MessageBody(operation_id=operation_id, timestamp=timestamp))


__all__ = ("encode_body", "decode_body")

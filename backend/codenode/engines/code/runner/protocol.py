"""
Wire protocol between the host and the runner worker: one JSON object per line.

host -> worker:  task, call_result
worker -> host:  log, call, result, error

Result items carry ``index``, the ordinal of the input item they pair with.
"""

import json
from typing import Any

TASK = "task"
CALL_RESULT = "call_result"
LOG = "log"
CALL = "call"
RESULT = "result"
ERROR = "error"

HOST_TO_WORKER = frozenset({TASK, CALL_RESULT})
WORKER_TO_HOST = frozenset({LOG, CALL, RESULT, ERROR})

# Exit status of a worker that hit its own deadline
TIMEOUT_EXIT_CODE = 124


class ProtocolError(ValueError):
    """A line that is not a well-formed envelope."""

    pass


def _default(obj: Any) -> Any:
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    return str(obj)


def encode_message(kind: str, **payload: Any) -> bytes:
    if kind not in HOST_TO_WORKER and kind not in WORKER_TO_HOST:
        raise ProtocolError(f"Unknown message type: {kind!r}")
    body = {"type": kind, **payload}
    return json.dumps(body, default=_default, ensure_ascii=False, separators=(",", ":")).encode("utf-8") + b"\n"


def decode_message(line: bytes | str, allowed: frozenset[str] | None = None) -> dict[str, Any]:
    """Parse one envelope; *allowed* restricts the accepted types."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    try:
        msg = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON envelope: {e}") from e
    if not isinstance(msg, dict) or not isinstance(msg.get("type"), str):
        raise ProtocolError("Envelope must be an object with a string 'type'")
    kinds = allowed if allowed is not None else HOST_TO_WORKER | WORKER_TO_HOST
    if msg["type"] not in kinds:
        raise ProtocolError(f"Unexpected message type: {msg['type']!r}")
    return msg

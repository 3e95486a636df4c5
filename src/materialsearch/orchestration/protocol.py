"""Messages of the UI streaming protocol and their SSE framing."""

from __future__ import annotations

import json
from typing import Any, Mapping

from .types import TurnResult

__all__ = [
    "DONE_SENTINEL",
    "status_message",
    "meta_message",
    "event_message",
    "done_message",
    "error_message",
    "format_sse",
    "format_sse_done",
]

DONE_SENTINEL = "[DONE]"


def status_message(message: str) -> dict[str, Any]:
    return {"type": "status", "message": message}


def meta_message(thread_id: str, turn_id: str, **extra: Any) -> dict[str, Any]:
    return {"type": "meta", "threadId": thread_id, "turnId": turn_id, **extra}


def event_message(method: str, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
    return {"type": "event", "method": method, "params": dict(params or {})}


def done_message(result: TurnResult) -> dict[str, Any]:
    return {"type": "done", **result.to_payload()}


def error_message(message: str, **extra: Any) -> dict[str, Any]:
    return {"type": "error", "message": message, **extra}


def format_sse(payload: Mapping[str, Any]) -> str:
    """One ``data:`` frame; non-ASCII text is kept as-is."""

    return f"data: {json.dumps(payload, ensure_ascii=False, default=str)}\n\n"


def format_sse_done() -> str:
    return f"data: {DONE_SENTINEL}\n\n"

"""Translation of raw agent stream events into the UI event protocol.

Raw events arrive as Agents SDK stream events (``raw_response_event``,
``run_item_stream_event``, ``agent_updated_stream_event``), bare Responses API
events, or plain dicts. :func:`translate_event` classifies each one by its
discriminator fields in a fixed priority order:

1. the outer stream-event ``type``;
2. for raw response events, the inner Responses event ``type``;
3. for run items, the item ``name``.

Anything that does not classify becomes a ``passthrough`` event carrying the
raw payload. Translation never raises.

Answer text (``answer-delta`` / ``answer-snapshot``) is consumed by the
orchestrator but never forwarded; the UI receives the answer once, in the
``done`` message.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, MutableMapping

from ..utils.payloads import get_field, to_jsonable
from .accounting import TokenUsage

__all__ = ["EventKind", "TranslatedEvent", "translate_event"]

LOGGER = logging.getLogger(__name__)


class EventKind(str, Enum):
    STATUS = "status"
    META = "meta"
    REASONING_SUMMARY = "reasoning-summary"
    USAGE_UPDATE = "usage-update"
    COMPACTION = "compaction-triggered"
    TOOL_PROGRESS = "tool-progress"
    ANSWER_DELTA = "answer-delta"
    ANSWER_SNAPSHOT = "answer-snapshot"
    RESPONSE_STARTED = "response-started"
    PASSTHROUGH = "passthrough"


_FORWARDED = frozenset(
    {
        EventKind.REASONING_SUMMARY,
        EventKind.USAGE_UPDATE,
        EventKind.COMPACTION,
        EventKind.TOOL_PROGRESS,
        EventKind.RESPONSE_STARTED,
        EventKind.PASSTHROUGH,
    }
)

_REASONING_PHASES: Mapping[str, tuple[str, str]] = {
    "response.reasoning_summary_part.added": ("added", "item/reasoning/summaryPartAdded"),
    "response.reasoning_summary_part.done": ("done", "item/reasoning/summaryPartDone"),
    "response.reasoning_summary_text.delta": ("delta", "item/reasoning/summaryTextDelta"),
}
_ANSWER_PREFIXES = ("response.output_text.", "response.content_part.", "response.refusal.")
# superseded by summary_part.done, which carries the same text
_SUPERSEDED = frozenset({"response.reasoning_summary_text.done"})


@dataclass(slots=True, frozen=True)
class TranslatedEvent:
    kind: EventKind
    method: str
    params: Mapping[str, Any] = field(default_factory=dict)
    text: str = ""
    phase: str | None = None
    index: int = 0
    usage: TokenUsage | None = None
    response_id: str | None = None

    @property
    def forwarded(self) -> bool:
        return self.kind in _FORWARDED


def translate_event(raw: Any, *, tool_names: MutableMapping[str, str] | None = None) -> list[TranslatedEvent]:
    """Map one raw stream event to zero or more normalized events.

    ``tool_names`` maps call ids to tool names across a stream so tool output
    events, which carry only a call id, can report the tool they belong to.
    """

    try:
        return _classify(raw, tool_names)
    except Exception:
        LOGGER.debug("Event translation failed; passing through", exc_info=True)
        return [_passthrough(raw)]


def _classify(raw: Any, tool_names: MutableMapping[str, str] | None) -> list[TranslatedEvent]:
    event_type = get_field(raw, "type", default="")
    if event_type in ("raw_response_event", "raw_model_stream_event"):
        data = get_field(raw, "data")
        if get_field(data, "type") == "model":
            data = get_field(data, "event")
        return _classify_response_event(data)
    if event_type == "run_item_stream_event":
        return _classify_run_item(raw, tool_names)
    if event_type == "agent_updated_stream_event":
        agent = get_field(raw, "new_agent", "agent")
        name = get_field(agent, "name", default="")
        return [TranslatedEvent(EventKind.PASSTHROUGH, "agent_updated", {"name": name})]
    if isinstance(event_type, str) and event_type.startswith("response."):
        return _classify_response_event(raw)
    return [_passthrough(raw)]


def _classify_response_event(event: Any) -> list[TranslatedEvent]:
    etype = str(get_field(event, "type", default=""))
    if not etype:
        return [_passthrough(event)]

    if "compaction" in etype:
        return [TranslatedEvent(EventKind.COMPACTION, "turn/compaction", {"type": etype})]

    if etype == "response.created":
        response_id = get_field(get_field(event, "response"), "id")
        return [
            TranslatedEvent(
                EventKind.RESPONSE_STARTED,
                "response.created",
                {"responseId": response_id},
                response_id=response_id,
            )
        ]

    if etype == "response.in_progress":
        return []

    if etype == "response.completed":
        response = get_field(event, "response")
        response_id = get_field(response, "id")
        usage = TokenUsage.from_payload(get_field(response, "usage"))
        params: dict[str, Any] = {"responseId": response_id}
        if usage is not None:
            params.update(usage.to_dict())
        return [
            TranslatedEvent(
                EventKind.USAGE_UPDATE,
                "turn/usage",
                params,
                usage=usage,
                response_id=response_id,
            )
        ]

    if etype in _REASONING_PHASES:
        phase, method = _REASONING_PHASES[etype]
        index = int(get_field(event, "summary_index", default=0))
        if phase == "delta":
            text = get_field(event, "delta", default="")
        else:
            text = get_field(get_field(event, "part"), "text", default="")
        params = {"phase": phase, "index": index, "itemId": get_field(event, "item_id"), "text": text}
        return [TranslatedEvent(EventKind.REASONING_SUMMARY, method, params, text=text, phase=phase, index=index)]

    if etype in _SUPERSEDED:
        return []

    if etype.startswith(_ANSWER_PREFIXES):
        if etype.endswith(".delta"):
            return [TranslatedEvent(EventKind.ANSWER_DELTA, etype, text=get_field(event, "delta", default=""))]
        return []

    if etype in ("response.output_item.added", "response.output_item.done"):
        item = get_field(event, "item")
        item_kind = get_field(item, "type", default="")
        if item_kind == "compaction":
            if etype.endswith("added"):
                return [TranslatedEvent(EventKind.COMPACTION, "turn/compaction", {"type": etype})]
            return []
        if item_kind == "message":
            return []
        params = {"itemType": item_kind, "itemId": get_field(item, "id")}
        name = get_field(item, "name")
        if name:
            params["name"] = name
        return [TranslatedEvent(EventKind.PASSTHROUGH, etype, params)]

    return [_passthrough(event)]


def _classify_run_item(raw: Any, tool_names: MutableMapping[str, str] | None) -> list[TranslatedEvent]:
    name = str(get_field(raw, "name", default=""))
    item = get_field(raw, "item")
    raw_item = get_field(item, "raw_item")
    method = f"run_item/{name}" if name else "run_item"

    if name == "tool_called":
        tool_name = get_field(raw_item, "name", default="")
        call_id = get_field(raw_item, "call_id", "id")
        if tool_names is not None and call_id and tool_name:
            tool_names[call_id] = tool_name
        params = {"phase": "called", "name": tool_name, "callId": call_id}
        return [TranslatedEvent(EventKind.TOOL_PROGRESS, method, params)]
    if name == "tool_output":
        call_id = get_field(raw_item, "call_id", "id")
        tool_name = get_field(raw_item, "name")
        if not tool_name and tool_names is not None and call_id:
            tool_name = tool_names.get(call_id)
        params = {"phase": "output", "name": tool_name or "", "callId": call_id}
        return [TranslatedEvent(EventKind.TOOL_PROGRESS, method, params)]
    if name == "message_output_created":
        return [TranslatedEvent(EventKind.ANSWER_SNAPSHOT, method, text=_message_text(raw_item))]
    if name == "reasoning_item_created":
        return [TranslatedEvent(EventKind.PASSTHROUGH, method, {"itemId": get_field(raw_item, "id")})]
    return [TranslatedEvent(EventKind.PASSTHROUGH, method, {"item": to_jsonable(raw_item)})]


def _message_text(raw_item: Any) -> str:
    parts = get_field(raw_item, "content", default=()) or ()
    if isinstance(parts, str):
        return parts
    texts = [get_field(part, "text", default="") for part in parts if get_field(part, "type") == "output_text"]
    return "".join(text for text in texts if isinstance(text, str))


def _passthrough(raw: Any) -> TranslatedEvent:
    payload = to_jsonable(raw)
    method = "unknown"
    if isinstance(payload, Mapping):
        method = str(payload.get("type") or method)
    else:
        payload = {"value": payload}
    return TranslatedEvent(EventKind.PASSTHROUGH, method, payload)

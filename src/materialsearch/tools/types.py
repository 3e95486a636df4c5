"""Tool specification and handler types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Mapping, Union

__all__ = [
    "ToolSpec",
    "ToolOutput",
    "ToolHandler",
    "AsyncToolHandler",
    "ToolCategory",
    "ToolCallRecord",
]


class ToolCategory:
    """Standard tool categories for organization."""

    LIST = "list"
    SEARCH = "search"
    READ = "read"


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Interface of a tool as advertised to the model.

    Attributes:
        name: Unique identifier for the tool.
        description: What the tool does, written for the model.
        parameters: JSON Schema for the tool's arguments.
        category: Tool category for organization.
        timeout_seconds: Upper bound on a single invocation.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    category: str = ToolCategory.READ
    timeout_seconds: float = 60.0

    @property
    def schema(self) -> dict[str, Any]:
        if self.parameters:
            return dict(self.parameters)
        return {"type": "object", "properties": {}}


@dataclass(slots=True)
class ToolOutput:
    """Handler result plus the accounting the turn needs.

    ``payload`` is merged into the ``{ok: true}`` response sent to the model.
    """

    payload: dict[str, Any]
    hits: int = 0
    injected_chars: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


ToolHandler = Callable[[Mapping[str, Any]], Union[ToolOutput, Mapping[str, Any]]]
AsyncToolHandler = Callable[[Mapping[str, Any]], Coroutine[Any, Any, Union[ToolOutput, Mapping[str, Any]]]]


@dataclass(slots=True, frozen=True)
class ToolCallRecord:
    """One tool invocation made by the agent during a turn.

    Attributes:
        call_id: Local identifier for the call.
        name: Tool name.
        arguments: Arguments after JSON decoding.
        ok: False when the tool returned an error payload.
        duration_ms: Wall time spent in the handler.
        error: Error code for failed calls.
        hits: Number of search hits or listed files returned.
        injected_chars: Characters of corpus text handed back to the agent.
        metadata: Tool-specific extras (search mode, ripgrep argv).
    """

    call_id: str
    name: str
    arguments: Mapping[str, Any]
    ok: bool = True
    duration_ms: float = 0.0
    error: str | None = None
    hits: int = 0
    injected_chars: int = 0
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "name": self.name,
            "arguments": dict(self.arguments),
            "ok": self.ok,
            "duration_ms": round(self.duration_ms, 2),
            "error": self.error,
            "hits": self.hits,
            "injected_chars": self.injected_chars,
            "metadata": dict(self.metadata),
        }

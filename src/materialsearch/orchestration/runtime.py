"""Adapter between the orchestrator and the OpenAI Agents SDK.

The orchestrator only sees :class:`AgentRuntime`; tests substitute a fake.
:class:`OpenAIAgentsRuntime` builds an ``Agent`` per turn, bridges the
:class:`~materialsearch.tools.registry.ToolRegistry` into ``FunctionTool``
objects, and maps ``MaxTurnsExceeded`` onto :class:`BudgetExceededError`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Protocol

from agents import (
    Agent,
    FunctionTool,
    ModelSettings,
    OpenAIResponsesModel,
    RunContextWrapper,
    RunHooks,
    Runner,
    set_tracing_disabled,
)
from agents.exceptions import MaxTurnsExceeded
from agents.memory.session import SessionABC
from openai import AsyncOpenAI
from openai.types.shared import Reasoning

from ..errors import BudgetExceededError
from ..tools.registry import ToolRegistry
from .accounting import TokenUsage
from .cancellation import CancellationHandle

__all__ = [
    "AgentRequest",
    "AgentRunResult",
    "AgentStream",
    "AgentRuntime",
    "OpenAIAgentsRuntime",
    "build_model_settings",
    "format_final_output",
    "to_function_tools",
]

LOGGER = logging.getLogger(__name__)

AGENT_NAME = "MaterialSearchResearchAgent"


@dataclass(slots=True)
class AgentRequest:
    """Everything the runtime needs to drive one turn."""

    model: str
    instructions: str
    user_text: str
    tools: ToolRegistry
    session: SessionABC | None
    max_turns: int
    reasoning_effort: str | None = "low"
    reasoning_summary: str | None = "auto"
    compaction_threshold: int | None = None
    cancellation: CancellationHandle | None = None
    on_final_output: Callable[[str], None] | None = None


@dataclass(slots=True)
class AgentRunResult:
    final_output: Any
    round_trips: int = 1
    usage: TokenUsage | None = None


class AgentStream(Protocol):
    """A streamed run: raw events first, then the final output."""

    def stream_events(self) -> AsyncIterator[Any]: ...

    def cancel(self) -> None: ...

    @property
    def final_output(self) -> Any: ...

    @property
    def round_trips(self) -> int: ...

    @property
    def usage(self) -> TokenUsage | None: ...


class AgentRuntime(Protocol):
    async def run(self, request: AgentRequest) -> AgentRunResult: ...

    def run_streamed(self, request: AgentRequest) -> AgentStream: ...


def format_final_output(output: Any) -> str:
    """Render an agent's final output as display text."""

    if output is None:
        return ""
    if isinstance(output, str):
        return output
    dump = getattr(output, "model_dump_json", None)
    if callable(dump):
        return dump()
    try:
        return json.dumps(output, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(output)


def build_model_settings(request: AgentRequest) -> ModelSettings:
    kwargs: dict[str, Any] = {}
    if request.reasoning_effort or request.reasoning_summary:
        kwargs["reasoning"] = Reasoning(effort=request.reasoning_effort, summary=request.reasoning_summary)
    if request.compaction_threshold:
        kwargs["extra_body"] = {
            "context_management": [
                {"type": "compaction", "compact_threshold": int(request.compaction_threshold)},
            ]
        }
    return ModelSettings(**kwargs)


def to_function_tools(registry: ToolRegistry) -> list[FunctionTool]:
    """Expose every registered tool as an Agents SDK ``FunctionTool``."""

    tools: list[FunctionTool] = []
    for spec in registry.list_tools():

        async def invoke(_ctx: RunContextWrapper[Any], arguments: str, *, _name: str = spec.name) -> str:
            payload = await registry.invoke(_name, arguments)
            return json.dumps(payload, ensure_ascii=False)

        tools.append(
            FunctionTool(
                name=spec.name,
                description=spec.description,
                params_json_schema=spec.schema,
                on_invoke_tool=invoke,
                strict_json_schema=False,
            )
        )
    return tools


class _FinalOutputHooks(RunHooks[Any]):
    def __init__(self, callback: Callable[[str], None] | None) -> None:
        self._callback = callback

    async def on_agent_end(self, context: RunContextWrapper[Any], agent: Agent[Any], output: Any) -> None:
        if self._callback is not None:
            self._callback(format_final_output(output))


class _AgentsStream:
    def __init__(self, result: Any, max_turns: int) -> None:
        self._result = result
        self._max_turns = max_turns

    async def stream_events(self) -> AsyncIterator[Any]:
        try:
            async for event in self._result.stream_events():
                yield event
        except MaxTurnsExceeded as exc:
            raise BudgetExceededError(self._max_turns, str(exc)) from exc

    def cancel(self) -> None:
        self._result.cancel()

    @property
    def final_output(self) -> Any:
        return self._result.final_output

    @property
    def round_trips(self) -> int:
        return len(self._result.raw_responses)

    @property
    def usage(self) -> TokenUsage | None:
        return TokenUsage.from_payload(self._result.context_wrapper.usage)


class OpenAIAgentsRuntime:
    """Runs turns with ``agents.Runner`` against the Responses API."""

    def __init__(self, client: AsyncOpenAI | None = None, *, tracing: bool = False) -> None:
        self._client = client
        set_tracing_disabled(not tracing)

    def build_agent(self, request: AgentRequest) -> Agent[Any]:
        model: Any = request.model
        if self._client is not None:
            model = OpenAIResponsesModel(model=request.model, openai_client=self._client)
        return Agent(
            name=AGENT_NAME,
            instructions=request.instructions,
            model=model,
            model_settings=build_model_settings(request),
            tools=to_function_tools(request.tools),
        )

    async def run(self, request: AgentRequest) -> AgentRunResult:
        agent = self.build_agent(request)
        try:
            result = await Runner.run(
                agent,
                request.user_text,
                max_turns=request.max_turns,
                hooks=_FinalOutputHooks(request.on_final_output),
                session=request.session,
            )
        except MaxTurnsExceeded as exc:
            raise BudgetExceededError(request.max_turns, str(exc)) from exc
        return AgentRunResult(
            final_output=result.final_output,
            round_trips=len(result.raw_responses),
            usage=TokenUsage.from_payload(result.context_wrapper.usage),
        )

    def run_streamed(self, request: AgentRequest) -> AgentStream:
        agent = self.build_agent(request)
        result = Runner.run_streamed(
            agent,
            request.user_text,
            max_turns=request.max_turns,
            hooks=_FinalOutputHooks(request.on_final_output),
            session=request.session,
        )
        stream = _AgentsStream(result, request.max_turns)
        if request.cancellation is not None:
            request.cancellation.add_callback(lambda _reason: stream.cancel())
        LOGGER.debug("Started streamed run for model %s", request.model)
        return stream

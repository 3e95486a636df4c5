"""Tool registry with schema validation and error-as-data invocation.

Every invocation returns a JSON-ready payload. Tool errors never propagate:
they come back as ``{ok: false, error, message}`` so the agent can change
strategy instead of aborting the turn.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from jsonschema import Draft202012Validator
from jsonschema.exceptions import best_match

from ..errors import ErrorCode, ToolError, ValidationError
from .types import AsyncToolHandler, ToolCallRecord, ToolHandler, ToolOutput, ToolSpec

__all__ = [
    "ToolRegistry",
    "ToolRegistration",
    "DuplicateToolError",
    "ToolNotFoundError",
    "ToolCallObserver",
]

LOGGER = logging.getLogger(__name__)

ToolCallObserver = Callable[[ToolCallRecord], None]


class DuplicateToolError(Exception):
    """Raised when attempting to register a tool with a name that already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolNotFoundError(Exception):
    """Raised when a requested tool is not registered."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' not found")


@dataclass(slots=True)
class ToolRegistration:
    name: str
    spec: ToolSpec
    handler: ToolHandler | AsyncToolHandler
    validator: Draft202012Validator
    is_async: bool


class ToolRegistry:
    """Named tools plus the glue to run them safely.

    Example:
        registry = ToolRegistry(on_call=turn.record_tool_call)
        registry.register_function(
            ToolSpec(name="echo", description="Echo", parameters=schema),
            lambda args: {"value": args["value"]},
        )
        payload = await registry.invoke("echo", '{"value": 1}')
    """

    def __init__(self, *, on_call: ToolCallObserver | None = None) -> None:
        self._tools: dict[str, ToolRegistration] = {}
        self._on_call = on_call
        self._call_ids = itertools.count(1)

    def register_function(
        self,
        spec: ToolSpec,
        handler: ToolHandler | AsyncToolHandler,
        *,
        allow_override: bool = False,
    ) -> ToolRegistration:
        """Register ``handler`` under ``spec.name``.

        Sync handlers run in a worker thread so file and subprocess I/O does
        not block the event loop.

        Raises:
            DuplicateToolError: name already registered and ``allow_override`` is False.
        """
        if spec.name in self._tools and not allow_override:
            raise DuplicateToolError(spec.name)
        Draft202012Validator.check_schema(spec.schema)
        registration = ToolRegistration(
            name=spec.name,
            spec=spec,
            handler=handler,
            validator=Draft202012Validator(spec.schema),
            is_async=inspect.iscoroutinefunction(handler),
        )
        self._tools[spec.name] = registration
        LOGGER.debug("Registered tool: %s", spec.name)
        return registration

    def get_required(self, name: str) -> ToolRegistration:
        registration = self._tools.get(name)
        if registration is None:
            raise ToolNotFoundError(name)
        return registration

    def has(self, name: str) -> bool:
        return name in self._tools

    def list_tools(self) -> list[ToolSpec]:
        return [registration.spec for registration in self._tools.values()]

    def list_names(self) -> list[str]:
        return list(self._tools)

    async def invoke(self, name: str, arguments: str | Mapping[str, Any] | None) -> dict[str, Any]:
        """Validate and run a tool, returning its payload (never raising for tool errors)."""

        call_id = f"call_{next(self._call_ids)}"
        start = time.perf_counter()
        decoded: dict[str, Any] = {}
        output: ToolOutput | None = None
        try:
            registration = self._tools.get(name)
            if registration is None:
                raise ValidationError(
                    error_code="unknown_tool",
                    message=f"Unknown tool '{name}'",
                    suggestion=f"Available tools: {', '.join(self._tools) or 'none'}",
                )
            decoded = _decode_arguments(arguments)
            _validate(registration, decoded)
            output = await self._execute(registration, decoded)
            payload: dict[str, Any] = {"ok": True, **output.payload}
        except ToolError as exc:
            LOGGER.info("Tool %s returned error: %s", name, exc)
            payload = exc.to_dict()
        except Exception as exc:
            LOGGER.exception("Tool %s failed unexpectedly", name)
            payload = ToolError(error_code=ErrorCode.INTERNAL_ERROR, message=f"Internal error: {exc}").to_dict()

        record = ToolCallRecord(
            call_id=call_id,
            name=name,
            arguments=decoded,
            ok=bool(payload.get("ok")),
            duration_ms=(time.perf_counter() - start) * 1000.0,
            error=None if payload.get("ok") else str(payload.get("error")),
            hits=output.hits if output else 0,
            injected_chars=output.injected_chars if output else 0,
            metadata=dict(output.metadata) if output else {},
        )
        if self._on_call is not None:
            try:
                self._on_call(record)
            except Exception:
                LOGGER.warning("Tool call observer failed for %s", name, exc_info=True)
        return payload

    async def _execute(self, registration: ToolRegistration, arguments: dict[str, Any]) -> ToolOutput:
        if registration.is_async:
            pending = registration.handler(arguments)
        else:
            pending = asyncio.to_thread(registration.handler, arguments)
        try:
            result = await asyncio.wait_for(pending, timeout=registration.spec.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise ToolError(
                error_code="timeout",
                message=f"Tool '{registration.name}' timed out after {registration.spec.timeout_seconds:.0f}s",
                suggestion="Narrow the query or lower the limits",
            ) from exc
        if isinstance(result, ToolOutput):
            return result
        return ToolOutput(payload=dict(result or {}))

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools


def _decode_arguments(arguments: str | Mapping[str, Any] | None) -> dict[str, Any]:
    if arguments is None or arguments == "":
        return {}
    if isinstance(arguments, Mapping):
        return dict(arguments)
    try:
        decoded = json.loads(arguments)
    except json.JSONDecodeError as exc:
        raise ValidationError(message=f"Arguments are not valid JSON: {exc.msg}") from exc
    if not isinstance(decoded, dict):
        raise ValidationError(message="Arguments must be a JSON object")
    return decoded


def _validate(registration: ToolRegistration, arguments: Mapping[str, Any]) -> None:
    issue = best_match(registration.validator.iter_errors(arguments))
    if issue is None:
        return
    path = ".".join(str(part) for part in issue.absolute_path)
    message = f"{path}: {issue.message}" if path else issue.message
    raise ValidationError(message=message, details={"tool": registration.name})

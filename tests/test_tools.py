"""Tests for the tool registry and the corpus tool bindings."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Mapping

import pytest

from materialsearch.errors import ErrorCode, ToolError
from materialsearch.tools.corpus_tools import CORPUS_TOOL_SPECS, build_corpus_tools
from materialsearch.tools.registry import DuplicateToolError, ToolNotFoundError, ToolRegistry
from materialsearch.tools.types import ToolCallRecord, ToolOutput, ToolSpec
from tests.helpers import missing_rg_runner

ECHO_SPEC = ToolSpec(
    name="echo",
    description="Echo a value",
    parameters={
        "type": "object",
        "properties": {"value": {"type": "integer"}},
        "required": ["value"],
        "additionalProperties": False,
    },
)


def _echo(args: Mapping[str, Any]) -> dict[str, Any]:
    return {"value": args["value"]}


# =============================================================================
# Registry
# =============================================================================


class TestToolRegistry:
    def test_register_and_list(self) -> None:
        registry = ToolRegistry()
        registry.register_function(ECHO_SPEC, _echo)

        assert "echo" in registry
        assert len(registry) == 1
        assert registry.list_names() == ["echo"]
        assert registry.get_required("echo").spec is ECHO_SPEC

    def test_duplicate_registration_is_rejected(self) -> None:
        registry = ToolRegistry()
        registry.register_function(ECHO_SPEC, _echo)

        with pytest.raises(DuplicateToolError):
            registry.register_function(ECHO_SPEC, _echo)
        registry.register_function(ECHO_SPEC, _echo, allow_override=True)

    def test_get_required_unknown(self) -> None:
        with pytest.raises(ToolNotFoundError):
            ToolRegistry().get_required("missing")

    @pytest.mark.asyncio
    async def test_invoke_success_accepts_json_text(self) -> None:
        registry = ToolRegistry()
        registry.register_function(ECHO_SPEC, _echo)

        assert await registry.invoke("echo", '{"value": 3}') == {"ok": True, "value": 3}
        assert await registry.invoke("echo", {"value": 4}) == {"ok": True, "value": 4}

    @pytest.mark.asyncio
    async def test_unknown_tool_is_returned_as_data(self) -> None:
        payload = await ToolRegistry().invoke("nope", "{}")

        assert payload["ok"] is False
        assert payload["error"] == "unknown_tool"

    @pytest.mark.asyncio
    async def test_schema_violation(self) -> None:
        registry = ToolRegistry()
        registry.register_function(ECHO_SPEC, _echo)

        payload = await registry.invoke("echo", '{"value": "three"}')

        assert payload["ok"] is False
        assert payload["error"] == ErrorCode.INVALID_PARAMETER
        assert payload["details"] == {"tool": "echo"}
        assert "value" in payload["message"]

    @pytest.mark.asyncio
    async def test_malformed_json(self) -> None:
        registry = ToolRegistry()
        registry.register_function(ECHO_SPEC, _echo)

        payload = await registry.invoke("echo", "{value: ")
        non_object = await registry.invoke("echo", "[1, 2]")

        assert payload["error"] == ErrorCode.INVALID_PARAMETER
        assert payload["message"].startswith("Arguments are not valid JSON")
        assert non_object["message"] == "Arguments must be a JSON object"

    @pytest.mark.asyncio
    async def test_handler_tool_error_becomes_payload(self) -> None:
        def failing(_: Mapping[str, Any]) -> dict[str, Any]:
            raise ToolError(error_code="file_not_found", message="gone", suggestion="look elsewhere")

        registry = ToolRegistry()
        registry.register_function(ToolSpec(name="fail", description="Fails"), failing)

        assert await registry.invoke("fail", None) == {
            "ok": False,
            "error": "file_not_found",
            "message": "gone",
            "suggestion": "look elsewhere",
        }

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_internal_error(self) -> None:
        def broken(_: Mapping[str, Any]) -> dict[str, Any]:
            raise RuntimeError("boom")

        registry = ToolRegistry()
        registry.register_function(ToolSpec(name="broken", description="Breaks"), broken)

        payload = await registry.invoke("broken", "")

        assert payload["error"] == ErrorCode.INTERNAL_ERROR
        assert "boom" in payload["message"]

    @pytest.mark.asyncio
    async def test_async_handler_timeout(self) -> None:
        async def slow(_: Mapping[str, Any]) -> dict[str, Any]:
            await asyncio.sleep(5)
            return {}

        registry = ToolRegistry()
        registry.register_function(ToolSpec(name="slow", description="Slow", timeout_seconds=0.05), slow)

        payload = await registry.invoke("slow", "{}")

        assert payload["ok"] is False
        assert payload["error"] == "timeout"

    @pytest.mark.asyncio
    async def test_observer_receives_records(self) -> None:
        records: list[ToolCallRecord] = []

        def counted(args: Mapping[str, Any]) -> ToolOutput:
            return ToolOutput(payload={"n": 1}, hits=2, injected_chars=11, metadata={"mode": "x"})

        registry = ToolRegistry(on_call=records.append)
        registry.register_function(ToolSpec(name="counted", description="Counts"), counted)
        registry.register_function(ECHO_SPEC, _echo)

        await registry.invoke("counted", {})
        await registry.invoke("echo", '{"value": "bad"}')

        first, second = records
        assert (first.call_id, first.ok, first.hits, first.injected_chars) == ("call_1", True, 2, 11)
        assert first.metadata == {"mode": "x"}
        assert second.call_id == "call_2"
        assert second.ok is False
        assert second.error == ErrorCode.INVALID_PARAMETER
        assert second.to_dict()["arguments"] == {"value": "bad"}

    @pytest.mark.asyncio
    async def test_failing_observer_does_not_break_invoke(self) -> None:
        def observer(_: ToolCallRecord) -> None:
            raise RuntimeError("observer down")

        registry = ToolRegistry(on_call=observer)
        registry.register_function(ECHO_SPEC, _echo)

        assert await registry.invoke("echo", {"value": 1}) == {"ok": True, "value": 1}


# =============================================================================
# Corpus tools
# =============================================================================


class TestCorpusTools:
    def test_registers_three_tools(self, corpus_dir: Path) -> None:
        registry = build_corpus_tools(corpus_dir)

        assert registry.list_names() == [spec.name for spec in CORPUS_TOOL_SPECS]
        assert registry.list_names() == ["list_corpus_files", "search_corpus_text", "read_corpus_file"]

    @pytest.mark.asyncio
    async def test_list_tool(self, corpus_dir: Path) -> None:
        registry = build_corpus_tools(corpus_dir)

        payload = await registry.invoke("list_corpus_files", {"contains": "deeper", "limit": 5})

        assert payload == {"ok": True, "count": 1, "truncated": False, "files": ["nested/deeper/gamma.txt"]}

    @pytest.mark.asyncio
    async def test_search_tool_records_mode_and_chars(self, corpus_dir: Path) -> None:
        records: list[ToolCallRecord] = []
        registry = build_corpus_tools(corpus_dir, on_call=records.append, runner=missing_rg_runner)

        payload = await registry.invoke("search_corpus_text", {"query": "Hyaluronic"})

        assert payload["ok"] is True
        assert payload["mode"] == "fallback_scan"
        assert payload["hits"] == [
            {"file": "alpha.txt", "line": 1, "text": "Hyaluronic acid improves hydration."},
        ]
        (record,) = records
        assert record.hits == 1
        assert record.injected_chars == len("Hyaluronic acid improves hydration.")
        assert record.metadata["mode"] == "fallback_scan"
        assert "tool_error" in record.metadata

    @pytest.mark.asyncio
    async def test_search_tool_rejects_bad_regex(self, corpus_dir: Path) -> None:
        registry = build_corpus_tools(corpus_dir, runner=missing_rg_runner)

        payload = await registry.invoke("search_corpus_text", {"query": "([", "regex": True})

        assert payload["ok"] is False
        assert payload["error"] == ErrorCode.PATTERN_INVALID

    @pytest.mark.asyncio
    async def test_read_tool_escape_is_data(self, corpus_dir: Path) -> None:
        registry = build_corpus_tools(corpus_dir)

        payload = await registry.invoke("read_corpus_file", {"path": "../../etc/passwd"})

        assert payload["ok"] is False
        assert payload["error"] == ErrorCode.PATH_ESCAPE
        assert payload["path"] == "../../etc/passwd"

    @pytest.mark.asyncio
    async def test_read_tool_window(self, corpus_dir: Path) -> None:
        registry = build_corpus_tools(corpus_dir)

        payload = await registry.invoke("read_corpus_file", '{"path": "nested/beta.txt", "max_lines": 1}')

        assert payload["ok"] is True
        assert payload["text"] == "Retinol is a vitamin A derivative."
        assert (payload["startLine"], payload["endLine"], payload["totalLines"]) == (1, 1, 2)

    @pytest.mark.asyncio
    async def test_unknown_argument_is_rejected(self, corpus_dir: Path) -> None:
        registry = build_corpus_tools(corpus_dir)

        payload = await registry.invoke("read_corpus_file", {"path": "alpha.txt", "mode": "w"})

        assert payload["error"] == ErrorCode.INVALID_PARAMETER

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("tool", "arguments"),
        [
            ("list_corpus_files", {}),
            ("search_corpus_text", {"query": "retinol"}),
            ("read_corpus_file", {"path": "alpha.txt"}),
        ],
    )
    async def test_missing_corpus_root_is_reported(self, tmp_path: Path, tool: str, arguments: dict) -> None:
        registry = build_corpus_tools(tmp_path / "does-not-exist", runner=missing_rg_runner)

        payload = await registry.invoke(tool, arguments)

        assert payload["ok"] is False
        assert payload["error"] == ErrorCode.CORPUS_NOT_FOUND
        assert str(tmp_path / "does-not-exist") in payload["message"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("tool", "arguments"),
        [
            ("list_corpus_files", {"limit": 0}),
            ("search_corpus_text", {"query": "acid", "context_lines": 5}),
            ("search_corpus_text", {"query": "acid", "max_matches": 301}),
            ("read_corpus_file", {"path": "alpha.txt", "start_line": 0}),
            ("read_corpus_file", {"path": "alpha.txt", "max_lines": 801}),
        ],
    )
    async def test_out_of_range_arguments_are_rejected(
        self, corpus_dir: Path, tool: str, arguments: dict
    ) -> None:
        registry = build_corpus_tools(corpus_dir, runner=missing_rg_runner)

        payload = await registry.invoke(tool, arguments)

        assert payload["ok"] is False
        assert payload["error"] == ErrorCode.INVALID_PARAMETER

    def test_schemas_advertise_bounds(self) -> None:
        list_spec, search_spec, read_spec = CORPUS_TOOL_SPECS

        assert list_spec.schema["properties"]["limit"]["maximum"] == 2000
        assert search_spec.schema["properties"]["context_lines"]["maximum"] == 4
        assert search_spec.schema["properties"]["max_matches"]["maximum"] == 300
        assert read_spec.schema["properties"]["max_lines"]["maximum"] == 800

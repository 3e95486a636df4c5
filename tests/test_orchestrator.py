"""Tests for TurnOrchestrator: lifecycle, cancellation, accounting, streaming."""

from __future__ import annotations

import asyncio
import math
from typing import Any

import pytest

from materialsearch.errors import BudgetExceededError, RemoteAgentError, SessionWriteError
from materialsearch.orchestration.accounting import TokenUsage
from materialsearch.orchestration.types import TurnStatus
from tests.helpers import FakeStream, make_settings


async def _wait_for_active(registry, timeout: float = 1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not registry.active():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("turn never registered")
        await asyncio.sleep(0.005)
    return registry.active()[0]


# =============================================================================
# Threads
# =============================================================================


class TestThreads:
    @pytest.mark.asyncio
    async def test_ensure_without_id_starts_conversation(self, orchestrator_parts) -> None:
        orchestrator, backends, threads, _ = orchestrator_parts

        ensured = await orchestrator.ensure_thread(None, preamble="Cosmetics only.")

        assert ensured.thread_id == "conv_1"
        assert ensured.created is True
        assert "conv_1" in backends
        assert threads.get("conv_1").preamble == "Cosmetics only."

    @pytest.mark.asyncio
    async def test_ensure_existing_id_is_idempotent(self, orchestrator_parts) -> None:
        orchestrator, _, _, _ = orchestrator_parts

        first = await orchestrator.ensure_thread("t1")
        second = await orchestrator.ensure_thread("t1")

        assert first.created is True
        assert second.created is False
        assert second.to_dict()["threadId"] == "t1"

    @pytest.mark.asyncio
    async def test_read_thread_messages(self, orchestrator_parts) -> None:
        orchestrator, backends, _, _ = orchestrator_parts
        await orchestrator.ensure_thread("t1")
        backends["t1"].items = [{"type": "message", "role": "user", "content": "hello"}]

        messages = await orchestrator.read_thread_messages("t1")

        assert [message.to_dict() for message in messages] == [{"role": "user", "text": "hello"}]


# =============================================================================
# Completion
# =============================================================================


class TestCompletedTurns:
    @pytest.mark.asyncio
    async def test_single_round_trip_completes(self, orchestrator_parts, runtime) -> None:
        orchestrator, _, threads, registry = orchestrator_parts
        orchestrator.update_settings(make_settings(max_turns=1))

        result = await orchestrator.run_turn("t1", "Which actives hydrate?")

        assert result.status is TurnStatus.COMPLETED
        assert result.turns_used == 1
        assert result.max_turns == 1
        assert result.text == "final answer"
        assert len(registry) == 0
        assert threads.get("t1").preview == "final answer"
        assert runtime.requests[0].max_turns == 1

    @pytest.mark.asyncio
    async def test_request_carries_settings(self, orchestrator_parts, runtime) -> None:
        orchestrator, _, threads, _ = orchestrator_parts
        threads.ensure("t1", preamble="Focus on humectants.")
        orchestrator.update_settings(make_settings(reasoning_effort="high", compaction_threshold=50_000))

        await orchestrator.run_turn("t1", "question", model="gpt-5")

        request = runtime.requests[0]
        assert request.model == "gpt-5"
        assert request.user_text == "question"
        assert request.instructions.startswith("Focus on humectants.\n\nOperational requirements:\n- ")
        assert request.reasoning_effort == "high"
        assert request.compaction_threshold == 50_000
        assert request.cancellation is not None

    @pytest.mark.asyncio
    async def test_compaction_disabled(self, orchestrator_parts, runtime) -> None:
        orchestrator, _, _, _ = orchestrator_parts
        orchestrator.update_settings(make_settings(compaction_enabled=False))

        await orchestrator.run_turn("t1", "question")

        assert runtime.requests[0].compaction_threshold is None

    @pytest.mark.asyncio
    async def test_structured_final_output_is_serialized(self, orchestrator_parts, runtime) -> None:
        orchestrator, _, _, _ = orchestrator_parts
        runtime.final_output = {"materials": ["niacinamide"]}

        result = await orchestrator.run_turn("t1", "question")

        assert result.text == '{"materials": ["niacinamide"]}'

    @pytest.mark.asyncio
    async def test_tool_calls_are_recorded(self, orchestrator_parts, runtime) -> None:
        orchestrator, _, _, _ = orchestrator_parts
        runtime.tool_calls = [
            ("search_corpus_text", {"query": "hyaluronic"}),
            ("read_corpus_file", {"path": "../outside.txt"}),
        ]

        result = await orchestrator.run_turn("t1", "question")

        assert result.status is TurnStatus.COMPLETED
        assert result.tool_call_count == 2
        assert runtime.tool_payloads[0]["mode"] == "fallback_scan"
        assert runtime.tool_payloads[1]["error"] == "path_escape"

    @pytest.mark.asyncio
    async def test_budget_exhaustion_completes_with_flag(self, orchestrator_parts, runtime) -> None:
        orchestrator, _, _, _ = orchestrator_parts
        runtime.error = BudgetExceededError(3)
        runtime.partial_text = "Partial findings"

        result = await orchestrator.run_turn("t1", "question")

        assert result.status is TurnStatus.COMPLETED
        assert result.stopped_by_max_turns is True
        assert result.text == "Partial findings"
        assert result.turns_used == 1

    @pytest.mark.asyncio
    async def test_history_write_failure_is_reported(self, orchestrator_parts, runtime) -> None:
        orchestrator, _, threads, _ = orchestrator_parts
        runtime.error = SessionWriteError("store unreachable", sent_batches=1, total_batches=2)
        runtime.partial_text = "Answer text"

        result = await orchestrator.run_turn("t1", "question")

        assert result.status is TurnStatus.COMPLETED
        assert result.session_error == "store unreachable"
        assert result.to_payload()["sessionError"] == "store unreachable"
        assert threads.get("t1").preview == "Answer text"

    @pytest.mark.asyncio
    async def test_empty_arguments_are_rejected(self, orchestrator_parts) -> None:
        orchestrator, _, _, _ = orchestrator_parts

        with pytest.raises(ValueError):
            await orchestrator.run_turn("", "question")
        with pytest.raises(ValueError):
            await orchestrator.run_turn("t1", "   ")


# =============================================================================
# Errors and cancellation
# =============================================================================


class TestFailures:
    @pytest.mark.asyncio
    async def test_runtime_error_raises_with_result(self, orchestrator_parts, runtime) -> None:
        orchestrator, _, threads, registry = orchestrator_parts
        runtime.error = RuntimeError("upstream 500")

        with pytest.raises(RemoteAgentError) as excinfo:
            await orchestrator.run_turn("t1", "question")

        result = excinfo.value.result
        assert result is not None
        assert result.status is TurnStatus.ERROR
        assert result.error == "upstream 500"
        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert len(registry) == 0
        assert threads.get("t1").preview == ""


class TestCancellation:
    @pytest.mark.asyncio
    async def test_interrupt_after_start(self, orchestrator_parts, runtime) -> None:
        orchestrator, _, threads, registry = orchestrator_parts
        runtime.delay = 5.0
        runtime.partial_text = "Half an answer"

        task = asyncio.create_task(orchestrator.run_turn("t1", "question"))
        handle = await _wait_for_active(registry)
        await asyncio.sleep(0.05)
        assert orchestrator.interrupt(handle.turn_id) is True

        result = await asyncio.wait_for(task, timeout=1.0)

        assert result.status is TurnStatus.INTERRUPTED
        assert result.text == "Half an answer"
        assert handle.reason == "interrupted"
        assert len(registry) == 0
        assert orchestrator.interrupt(handle.turn_id) is False
        assert threads.get("t1").preview == ""

    @pytest.mark.asyncio
    async def test_timeout_interrupts(self, orchestrator_parts, runtime) -> None:
        orchestrator, _, _, registry = orchestrator_parts
        orchestrator.update_settings(make_settings(turn_timeout_seconds=0.05))
        runtime.delay = 5.0

        result = await asyncio.wait_for(orchestrator.run_turn("t1", "question"), timeout=2.0)

        assert result.status is TurnStatus.INTERRUPTED
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_unknown_turn_interrupt_is_noop(self, orchestrator_parts) -> None:
        orchestrator, _, _, _ = orchestrator_parts

        assert orchestrator.interrupt("turn_missing") is False
        assert orchestrator.interrupt("") is False

    @pytest.mark.asyncio
    async def test_caller_cancellation_propagates(self, orchestrator_parts, runtime) -> None:
        orchestrator, _, _, registry = orchestrator_parts
        runtime.delay = 5.0

        task = asyncio.create_task(orchestrator.run_turn("t1", "question"))
        handle = await _wait_for_active(registry)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert handle.reason == "cancelled"
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_active_turns_are_listed(self, orchestrator_parts, runtime) -> None:
        orchestrator, _, _, registry = orchestrator_parts
        runtime.delay = 5.0

        task = asyncio.create_task(orchestrator.run_turn("t1", "question"))
        handle = await _wait_for_active(registry)

        assert orchestrator.active_turns() == [handle.to_dict()]
        orchestrator.interrupt(handle.turn_id)
        await task


# =============================================================================
# Usage accounting
# =============================================================================


class TestUsage:
    @pytest.mark.asyncio
    async def test_reported_usage_wins(self, orchestrator_parts, runtime) -> None:
        orchestrator, _, _, _ = orchestrator_parts
        runtime.usage = TokenUsage(input_tokens=1000, output_tokens=200, total_tokens=1200)

        result = await orchestrator.run_turn("t1", "question")

        assert result.usage_estimated is False
        assert result.usage.total_tokens == 1200
        assert result.estimated_cost_usd == pytest.approx((1000 * 0.25 + 200 * 2.0) / 1_000_000)

    @pytest.mark.asyncio
    async def test_missing_usage_is_estimated(self, orchestrator_parts, runtime) -> None:
        orchestrator, _, _, _ = orchestrator_parts
        runtime.tool_calls = [("read_corpus_file", {"path": "alpha.txt"})]
        injected = len("Hyaluronic acid improves hydration.\nNiacinamide brightens skin.")

        result = await orchestrator.run_turn("t1", "question")

        assert result.usage_estimated is True
        assert result.usage.input_tokens == math.ceil((len("question") + injected) / 4)
        assert result.usage.output_tokens == math.ceil(len("final answer") / 4)
        assert result.estimated_cost_usd is not None

    @pytest.mark.asyncio
    async def test_unpriced_model_has_no_cost(self, orchestrator_parts) -> None:
        orchestrator, _, _, _ = orchestrator_parts

        result = await orchestrator.run_turn("t1", "question", model="local-llama")

        assert result.model == "local-llama"
        assert result.estimated_cost_usd is None


# =============================================================================
# Streaming
# =============================================================================


def _raw(data: dict[str, Any]) -> dict[str, Any]:
    return {"type": "raw_response_event", "data": data}


class TestStreaming:
    @pytest.mark.asyncio
    async def test_event_order_and_accounting(self, orchestrator_parts, runtime) -> None:
        orchestrator, _, _, _ = orchestrator_parts
        runtime.stream = FakeStream(
            [
                _raw({"type": "response.created", "response": {"id": "resp_1"}}),
                _raw({"type": "response.reasoning_summary_part.added", "summary_index": 0, "part": {"text": ""}}),
                _raw({"type": "response.reasoning_summary_text.delta", "summary_index": 0, "delta": "Searching"}),
                _raw({"type": "response.reasoning_summary_part.done", "summary_index": 0, "part": {"text": "Searching"}}),
                {
                    "type": "run_item_stream_event",
                    "name": "tool_called",
                    "item": {"raw_item": {"name": "search_corpus_text", "call_id": "call_1"}},
                },
                _raw({"type": "response.completed", "response": {"id": "resp_1", "usage": {"input_tokens": 50, "output_tokens": 5}}}),
                _raw({"type": "response.created", "response": {"id": "resp_2"}}),
                _raw({"type": "response.output_text.delta", "delta": "Hyaluronic "}),
                _raw({"type": "response.output_text.delta", "delta": "acid."}),
                _raw({"type": "response.compaction.completed"}),
                _raw({"type": "response.completed", "response": {"id": "resp_2", "usage": {"input_tokens": 80, "output_tokens": 9}}}),
            ],
            final_output="Hyaluronic acid.",
            round_trips=2,
        )
        messages: list[dict[str, Any]] = []

        result = await orchestrator.run_turn("t1", "question", stream=True, on_event=messages.append)

        assert messages[0] == {"type": "status", "message": "Running agent"}
        assert messages[1] == {"type": "meta", "threadId": "t1", "turnId": result.turn_id}
        methods = [message["method"] for message in messages[2:]]
        assert methods == [
            "response.created",
            "item/reasoning/summaryPartAdded",
            "item/reasoning/summaryTextDelta",
            "item/reasoning/summaryPartDone",
            "run_item/tool_called",
            "turn/usage",
            "response.created",
            "turn/compaction",
            "turn/usage",
        ]
        assert all(message["type"] == "event" for message in messages[2:])
        assert result.status is TurnStatus.COMPLETED
        assert result.text == "Hyaluronic acid."
        assert result.turns_used == 2
        assert result.usage.input_tokens == 130
        assert result.usage.output_tokens == 14
        assert result.usage_estimated is False
        assert result.compaction_triggered is True

    @pytest.mark.asyncio
    async def test_async_sink_is_awaited(self, orchestrator_parts) -> None:
        orchestrator, _, _, _ = orchestrator_parts
        queue: asyncio.Queue = asyncio.Queue()

        await orchestrator.run_turn("t1", "question", stream=True, on_event=queue.put)

        assert queue.qsize() == 2
        assert (await queue.get())["type"] == "status"

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_fail_turn(self, orchestrator_parts) -> None:
        orchestrator, _, _, _ = orchestrator_parts
        calls: list[dict[str, Any]] = []

        def sink(message: dict[str, Any]) -> None:
            calls.append(message)
            raise ConnectionResetError("client went away")

        result = await orchestrator.run_turn("t1", "question", stream=True, on_event=sink)

        assert result.status is TurnStatus.COMPLETED
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_streamed_interrupt_cancels_run(self, orchestrator_parts, runtime) -> None:
        orchestrator, _, _, registry = orchestrator_parts
        stream = FakeStream(
            [_raw({"type": "response.output_text.delta", "delta": "Partial "})],
            hold=True,
        )
        runtime.stream = stream

        task = asyncio.create_task(orchestrator.run_turn("t1", "question", stream=True))
        handle = await _wait_for_active(registry)
        await asyncio.sleep(0.02)
        orchestrator.interrupt(handle.turn_id)
        result = await asyncio.wait_for(task, timeout=1.0)

        assert result.status is TurnStatus.INTERRUPTED
        assert result.text == "Partial "
        assert stream.cancelled is True

    @pytest.mark.asyncio
    async def test_stream_without_usage_falls_back_to_runtime_usage(self, orchestrator_parts, runtime) -> None:
        orchestrator, _, _, _ = orchestrator_parts
        runtime.stream = FakeStream(
            final_output="done",
            usage=TokenUsage(input_tokens=7, output_tokens=3, total_tokens=10),
        )

        result = await orchestrator.run_turn("t1", "question", stream=True)

        assert result.usage_estimated is False
        assert result.usage.total_tokens == 10

    @pytest.mark.asyncio
    async def test_stream_error_surfaces_as_remote_error(self, orchestrator_parts, runtime) -> None:
        orchestrator, _, _, _ = orchestrator_parts
        runtime.stream = FakeStream(
            [_raw({"type": "response.created", "response": {"id": "resp_1"}})],
            error=RuntimeError("stream broke"),
        )

        with pytest.raises(RemoteAgentError) as excinfo:
            await orchestrator.run_turn("t1", "question", stream=True)

        assert excinfo.value.result.turns_used == 1
        assert excinfo.value.result.status is TurnStatus.ERROR

"""Turn orchestration: one bounded agent run per user message.

:class:`TurnOrchestrator` owns nothing global. The session store, thread
store, cancellation registry, turn logger and agent runtime are injected so
tests can substitute fresh instances per case.

A turn runs as its own asyncio task. Aborting its cancellation handle (from
:meth:`TurnOrchestrator.interrupt` or the timeout watchdog) cancels that task;
the orchestrator then finalizes the turn as ``interrupted`` with whatever text
had accumulated.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ..config import Settings
from ..corpus.paths import resolve_corpus_root
from ..corpus.search import CommandRunner
from ..errors import BudgetExceededError, RemoteAgentError, SessionWriteError
from ..sessions.store import ConversationMessage, SessionStore
from ..sessions.threads import ThreadRecord, ThreadStore
from ..tools.corpus_tools import build_corpus_tools
from ..tools.registry import ToolCallObserver, ToolRegistry
from ..tools.types import ToolCallRecord
from ..utils.logging import bind_turn
from .accounting import estimate_cost_usd, estimate_usage
from .cancellation import CancellationRegistry
from .events import EventKind, TranslatedEvent, translate_event
from .instructions import build_instructions
from .protocol import event_message, meta_message, status_message
from .runtime import AgentRequest, AgentRuntime, format_final_output
from .turn_log import TurnLogger
from .types import ReasoningEvent, Turn, TurnResult, TurnStatus, new_turn_id

__all__ = ["EnsuredThread", "EventSink", "TurnOrchestrator"]

LOGGER = logging.getLogger(__name__)

EventSink = Callable[[dict[str, Any]], "Awaitable[None] | None"]
ToolFactory = Callable[[ToolCallObserver], ToolRegistry]


@dataclass(slots=True, frozen=True)
class EnsuredThread:
    thread_id: str
    created: bool
    conversation_dir: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"threadId": self.thread_id, "created": self.created, "conversationDir": self.conversation_dir}


class _Emitter:
    """Forwards protocol messages to the caller's sink, in order.

    A failing sink is logged once and then ignored so that a vanished client
    cannot change the turn's outcome.
    """

    def __init__(self, sink: EventSink | None) -> None:
        self._sink = sink

    async def __call__(self, message: dict[str, Any]) -> None:
        if self._sink is None:
            return
        try:
            pending = self._sink(message)
            if inspect.isawaitable(pending):
                await pending
        except Exception:
            LOGGER.warning("Event sink failed; dropping further events", exc_info=True)
            self._sink = None


class TurnOrchestrator:
    """Drives turns against thread sessions and reports their outcomes."""

    def __init__(
        self,
        settings: Settings,
        *,
        runtime: AgentRuntime,
        sessions: SessionStore,
        threads: ThreadStore | None = None,
        cancellations: CancellationRegistry | None = None,
        turn_logger: TurnLogger | None = None,
        tool_factory: ToolFactory | None = None,
        command_runner: CommandRunner | None = None,
    ) -> None:
        self._settings = settings
        self._runtime = runtime
        self._sessions = sessions
        self._threads = threads or ThreadStore()
        self._cancellations = cancellations or CancellationRegistry()
        self._turn_logger = turn_logger or TurnLogger(enabled=False)
        self._tool_factory = tool_factory
        self._command_runner = command_runner

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    @property
    def settings(self) -> Settings:
        return self._settings

    def update_settings(self, settings: Settings) -> None:
        """Apply new settings; turns already running keep their snapshot."""

        self._settings = settings

    @property
    def cancellations(self) -> CancellationRegistry:
        return self._cancellations

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------
    async def ensure_thread(self, thread_id: str | None = None, *, preamble: str | None = None) -> EnsuredThread:
        """Bind a session for ``thread_id``, starting a new conversation when it is empty."""

        if not thread_id:
            thread_id = await self._sessions.start_conversation()
        record, created = self._threads.ensure(thread_id, preamble=preamble)
        self._sessions.get_or_create_session(thread_id)
        return EnsuredThread(thread_id=thread_id, created=created, conversation_dir=record.conversation_dir)

    async def read_thread_messages(self, thread_id: str) -> list[ConversationMessage]:
        session = self._sessions.get_or_create_session(thread_id)
        return await self._sessions.read_items(session)

    def list_threads(self) -> list[ThreadRecord]:
        return self._threads.list_threads()

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------
    def interrupt(self, turn_id: str) -> bool:
        """Abort an active turn. Unknown or finished ids return False."""

        if not turn_id:
            return False
        return self._cancellations.cancel(turn_id, "interrupted")

    def active_turns(self) -> list[dict[str, Any]]:
        return [handle.to_dict() for handle in self._cancellations.active()]

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------
    async def run_turn(
        self,
        thread_id: str,
        text: str,
        *,
        model: str | None = None,
        stream: bool = False,
        on_event: EventSink | None = None,
    ) -> TurnResult:
        """Run one turn to a terminal state.

        Returns the :class:`TurnResult` for completed and interrupted turns.
        Round-trip budget exhaustion and history-write failures still complete
        the turn and are reported on the result.

        Raises:
            ValueError: ``thread_id`` or ``text`` is empty.
            RemoteAgentError: the agent run failed; ``exc.result`` holds the
                error-state result.
        """

        if not thread_id:
            raise ValueError("thread_id is required")
        if not text or not text.strip():
            raise ValueError("text is required")

        settings = self._settings
        record, _ = self._threads.ensure(thread_id)
        session = self._sessions.get_or_create_session(thread_id)
        turn = Turn(
            turn_id=new_turn_id(),
            thread_id=thread_id,
            model=(model or "").strip() or settings.default_model,
            user_text=text,
            max_turns=settings.max_turns,
            instructions=build_instructions(record.preamble or settings.default_thread_preamble),
        )
        emit = _Emitter(on_event)
        loop = asyncio.get_running_loop()
        handle = self._cancellations.register(turn.turn_id, thread_id)
        timer = loop.call_later(settings.turn_timeout_seconds, handle.abort, "timeout")
        log_run = self._turn_logger.start_run(turn, directory=record.conversation_dir)

        with bind_turn(turn.turn_id):
            LOGGER.info("Turn %s started on thread %s (model=%s)", turn.turn_id, thread_id, turn.model)
            failure: BaseException | None = None
            outer_cancelled = False
            try:
                turn.start()
                await emit(status_message("Running agent"))
                await emit(meta_message(thread_id, turn.turn_id))

                def on_tool_call(call: ToolCallRecord) -> None:
                    turn.record_tool_call(call)
                    log_run.log_tool_call(call)

                async def run_agent() -> None:
                    request = AgentRequest(
                        model=turn.model,
                        instructions=turn.instructions,
                        user_text=text,
                        tools=self._build_tools(on_tool_call),
                        session=session,
                        max_turns=turn.max_turns,
                        reasoning_effort=settings.reasoning_effort,
                        reasoning_summary=settings.reasoning_summary,
                        compaction_threshold=settings.compaction_threshold if settings.compaction_enabled else None,
                        cancellation=handle,
                        on_final_output=turn.replace_text,
                    )
                    await self._drive(turn, request, stream, emit, log_run)

                task = asyncio.create_task(run_agent())
                handle.add_callback(lambda _reason: loop.call_soon_threadsafe(task.cancel))

                status = TurnStatus.COMPLETED
                try:
                    await task
                except asyncio.CancelledError:
                    if not handle.aborted:
                        outer_cancelled = True
                        handle.abort("cancelled")
                    status = TurnStatus.INTERRUPTED
                except BudgetExceededError as exc:
                    LOGGER.info("Turn %s hit the round-trip budget (%d)", turn.turn_id, exc.max_turns)
                    turn.stopped_by_max_turns = True
                except SessionWriteError as exc:
                    LOGGER.warning("Turn %s could not persist history: %s", turn.turn_id, exc)
                    turn.session_error = str(exc)
                except Exception as exc:
                    LOGGER.exception("Turn %s failed", turn.turn_id)
                    failure = exc
                    status = TurnStatus.ERROR
                if status is TurnStatus.COMPLETED and handle.aborted:
                    status = TurnStatus.INTERRUPTED

                turn.finalize(status, error=_describe(failure) if failure else None)
                result = self._build_result(turn)
                LOGGER.info(
                    "Turn %s %s after %d round trips (%d tool calls)",
                    turn.turn_id,
                    status.value,
                    result.turns_used,
                    result.tool_call_count,
                )
                if status is TurnStatus.COMPLETED and turn.text:
                    _best_effort("thread preview", self._threads.set_preview, thread_id, turn.text)
                _best_effort("turn log", log_run.finish, turn, result)
            finally:
                timer.cancel()
                self._cancellations.remove(turn.turn_id)
                log_run.close()

        if outer_cancelled:
            raise asyncio.CancelledError()
        if failure is not None:
            raise RemoteAgentError(result.error or "Agent run failed", result=result) from failure
        return result

    async def _drive(
        self,
        turn: Turn,
        request: AgentRequest,
        stream: bool,
        emit: _Emitter,
        log_run: Any,
    ) -> None:
        if not stream:
            outcome = await self._runtime.run(request)
            turn.round_trips = max(turn.round_trips, outcome.round_trips)
            if outcome.usage is not None:
                turn.record_usage(outcome.usage)
            turn.replace_text(format_final_output(outcome.final_output))
            return

        agent_stream = self._runtime.run_streamed(request)
        draft = ""
        tool_names: dict[str, str] = {}
        try:
            async for raw in agent_stream.stream_events():
                for event in translate_event(raw, tool_names=tool_names):
                    draft = self._apply_event(turn, event, draft, log_run)
                    if event.forwarded:
                        await emit(event_message(event.method, event.params))
        finally:
            turn.round_trips = max(turn.round_trips, agent_stream.round_trips)
        turn.replace_text(format_final_output(agent_stream.final_output))
        if not turn.usage_reported and agent_stream.usage is not None:
            turn.record_usage(agent_stream.usage)

    def _apply_event(self, turn: Turn, event: TranslatedEvent, draft: str, log_run: Any) -> str:
        """Fold one translated event into the turn; returns the answer draft."""

        kind = event.kind
        if kind is EventKind.RESPONSE_STARTED:
            if event.response_id:
                turn.record_response(event.response_id)
            return ""
        if kind is EventKind.ANSWER_DELTA:
            draft += event.text
            turn.replace_text(draft)
        elif kind is EventKind.ANSWER_SNAPSHOT:
            turn.replace_text(event.text)
        elif kind is EventKind.REASONING_SUMMARY:
            reasoning = ReasoningEvent(phase=event.phase or "added", index=event.index, text=event.text)
            turn.record_reasoning(reasoning)
            log_run.log_reasoning(reasoning)
        elif kind is EventKind.USAGE_UPDATE:
            if event.response_id:
                turn.record_response(event.response_id)
            if event.usage is not None:
                turn.record_usage(event.usage)
                log_run.log_usage(event.usage, response_id=event.response_id)
        elif kind is EventKind.COMPACTION:
            if not turn.compaction_triggered:
                LOGGER.info("Server-side compaction triggered for turn %s", turn.turn_id)
            turn.compaction_triggered = True
        return draft

    def _build_tools(self, on_call: ToolCallObserver) -> ToolRegistry:
        if self._tool_factory is not None:
            return self._tool_factory(on_call)
        root = resolve_corpus_root(self._settings.corpus_root)
        return build_corpus_tools(root, on_call=on_call, runner=self._command_runner)

    def _build_result(self, turn: Turn) -> TurnResult:
        usage = turn.usage
        estimated = not turn.usage_reported
        if estimated:
            usage = estimate_usage(
                query_chars=len(turn.user_text),
                injected_chars=turn.injected_chars,
                reasoning_chars=turn.reasoning_chars,
                answer_chars=len(turn.text),
            )
        turns_used = turn.turns_used
        if turn.status is TurnStatus.COMPLETED:
            turns_used = max(turns_used, 1)
        return TurnResult(
            thread_id=turn.thread_id,
            turn_id=turn.turn_id,
            status=turn.status,
            text=turn.text,
            model=turn.model,
            turns_used=turns_used,
            max_turns=turn.max_turns,
            stopped_by_max_turns=turn.stopped_by_max_turns,
            usage=usage,
            usage_estimated=estimated,
            estimated_cost_usd=estimate_cost_usd(turn.model, usage, self._settings.pricing_overrides),
            tool_call_count=len(turn.tool_calls),
            compaction_triggered=turn.compaction_triggered,
            error=turn.error,
            session_error=turn.session_error,
        )


def _describe(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


def _best_effort(label: str, action: Callable[..., Any], *args: Any) -> None:
    try:
        action(*args)
    except Exception:
        LOGGER.warning("Best-effort %s update failed", label, exc_info=True)

"""Shared test helpers and stub classes.

Reusable fakes for the conversation backend and the agent runtime. Import from
here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Iterable, Sequence

from materialsearch.config import Settings
from materialsearch.corpus.search import CommandResult
from materialsearch.orchestration.accounting import TokenUsage
from materialsearch.orchestration.runtime import AgentRequest, AgentRunResult
from materialsearch.sessions.store import SessionStore


class FakeBackend:
    """In-memory conversation backend recording every write batch.

    ``fail_on_call`` makes the N-th ``add_items`` call (1-based) and every call
    after it raise ``error``.
    """

    def __init__(
        self,
        items: Iterable[Any] = (),
        *,
        fail_on_call: int | None = None,
        error: Exception | None = None,
    ) -> None:
        self.items: list[Any] = list(items)
        self.batches: list[list[Any]] = []
        self.fail_on_call = fail_on_call
        self.error = error or RuntimeError("conversation store unavailable")
        self.calls = 0

    async def get_items(self, limit: int | None = None) -> list[Any]:
        if limit is None:
            return list(self.items)
        return list(self.items[-limit:])

    async def add_items(self, items: list[Any]) -> None:
        self.calls += 1
        if self.fail_on_call is not None and self.calls >= self.fail_on_call:
            raise self.error
        self.batches.append(list(items))
        self.items.extend(items)

    async def pop_item(self) -> Any | None:
        return self.items.pop() if self.items else None

    async def clear_session(self) -> None:
        self.items.clear()


def make_session_store() -> tuple[SessionStore, dict[str, FakeBackend]]:
    """Session store over fake backends; returns the store and its backends by thread id."""

    backends: dict[str, FakeBackend] = {}
    counter = iter(range(1, 10_000))

    def factory(thread_id: str) -> FakeBackend:
        backend = FakeBackend()
        backends[thread_id] = backend
        return backend

    async def starter() -> str:
        return f"conv_{next(counter)}"

    store = SessionStore(
        factory,
        conversation_starter=starter,
        write_retries=1,
        retry_min_seconds=0,
        retry_max_seconds=0,
    )
    return store, backends


def make_settings(**overrides: Any) -> Settings:
    base = {
        "default_model": "gpt-5-mini",
        "max_turns": 25,
        "turn_timeout_seconds": 30.0,
        "turn_logging": False,
        "corpus_root": ".",
    }
    base.update(overrides)
    return Settings(**base)


def write_corpus(root: Path, files: dict[str, str]) -> Path:
    for rel_path, text in files.items():
        target = root / rel_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding="utf-8")
    return root


class StaticRunner:
    """Command runner returning a canned ripgrep result and recording argv."""

    def __init__(self, result: CommandResult | None = None, *, error: Exception | None = None) -> None:
        self.result = result or CommandResult(1, "")
        self.error = error
        self.calls: list[list[str]] = []

    def __call__(self, argv: Sequence[str], cwd: Path, timeout: float) -> CommandResult:
        self.calls.append(list(argv))
        if self.error is not None:
            raise self.error
        return self.result


def missing_rg_runner(argv: Sequence[str], cwd: Path, timeout: float) -> CommandResult:
    raise FileNotFoundError(2, "No such file or directory", argv[0])


class FakeStream:
    """Streamed run replaying ``events``; ``hold`` keeps it open until cancelled."""

    def __init__(
        self,
        events: Sequence[Any] = (),
        *,
        final_output: Any = "",
        round_trips: int = 1,
        usage: TokenUsage | None = None,
        delay: float = 0.0,
        hold: bool = False,
        error: BaseException | None = None,
    ) -> None:
        self._events = list(events)
        self._final_output = final_output
        self._round_trips = round_trips
        self._usage = usage
        self._delay = delay
        self._hold = hold
        self._error = error
        self.cancelled = False

    async def stream_events(self):
        for event in self._events:
            if self._delay:
                await asyncio.sleep(self._delay)
            yield event
        if self._hold:
            await asyncio.Event().wait()
        if self._error is not None:
            raise self._error

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def final_output(self) -> Any:
        return self._final_output

    @property
    def round_trips(self) -> int:
        return self._round_trips

    @property
    def usage(self) -> TokenUsage | None:
        return self._usage


class FakeRuntime:
    """Agent runtime stub.

    ``tool_calls`` are invoked through the request's registry before the run
    finishes; ``partial_text`` is reported through ``on_final_output`` first,
    which lets interrupted turns carry text.
    """

    def __init__(
        self,
        *,
        final_output: Any = "final answer",
        round_trips: int = 1,
        usage: TokenUsage | None = None,
        delay: float = 0.0,
        error: BaseException | None = None,
        tool_calls: Sequence[tuple[str, Any]] = (),
        partial_text: str | None = None,
        stream: FakeStream | None = None,
    ) -> None:
        self.final_output = final_output
        self.round_trips = round_trips
        self.usage = usage
        self.delay = delay
        self.error = error
        self.tool_calls = list(tool_calls)
        self.partial_text = partial_text
        self.stream = stream
        self.requests: list[AgentRequest] = []
        self.tool_payloads: list[dict[str, Any]] = []

    async def run(self, request: AgentRequest) -> AgentRunResult:
        self.requests.append(request)
        for name, arguments in self.tool_calls:
            self.tool_payloads.append(await request.tools.invoke(name, arguments))
        if self.partial_text and request.on_final_output is not None:
            request.on_final_output(self.partial_text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return AgentRunResult(final_output=self.final_output, round_trips=self.round_trips, usage=self.usage)

    def run_streamed(self, request: AgentRequest) -> FakeStream:
        self.requests.append(request)
        stream = self.stream or FakeStream(final_output=self.final_output, round_trips=self.round_trips)
        if request.cancellation is not None:
            request.cancellation.add_callback(lambda _reason: stream.cancel())
        return stream

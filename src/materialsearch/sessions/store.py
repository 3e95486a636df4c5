"""Thread to remote-conversation bindings and chunked history writes."""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, Sequence

from agents import OpenAIConversationsSession
from agents.memory.openai_conversations_session import start_openai_conversations_session
from agents.memory.session import SessionABC
from openai import APIConnectionError, AsyncOpenAI, RateLimitError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import SessionWriteError
from ..utils.payloads import get_field
from .chunking import MAX_ITEMS_PER_WRITE, item_type, plan_batches

__all__ = [
    "ConversationBackend",
    "ConversationMessage",
    "ChunkedConversationSession",
    "SessionStore",
    "message_from_item",
]

LOGGER = logging.getLogger(__name__)

_TEXT_PART_TYPES = frozenset({"input_text", "output_text", "text"})
_VISIBLE_ROLES = frozenset({"user", "assistant"})


class ConversationBackend(Protocol):
    """Remote conversation store (an Agents SDK session)."""

    async def get_items(self, limit: int | None = None) -> list[Any]: ...

    async def add_items(self, items: list[Any]) -> None: ...

    async def pop_item(self) -> Any | None: ...

    async def clear_session(self) -> None: ...


BackendFactory = Callable[[str], ConversationBackend]
ConversationStarter = Callable[[], Awaitable[str]]


@dataclass(slots=True, frozen=True)
class ConversationMessage:
    role: str
    text: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "text": self.text}


def message_from_item(item: Any) -> ConversationMessage | None:
    """Project a stored item onto a UI-visible message, or ``None`` to skip it."""

    if item_type(item) != "message":
        return None
    role = get_field(item, "role")
    if role not in _VISIBLE_ROLES:
        return None
    direct = get_field(item, "text")
    if isinstance(direct, str):
        text = direct
    else:
        content = get_field(item, "content", default="")
        if isinstance(content, str):
            text = content
        else:
            parts = [
                get_field(part, "text", "transcript", default="")
                for part in content or ()
                if get_field(part, "type", default="text") in _TEXT_PART_TYPES
            ]
            text = "".join(part for part in parts if isinstance(part, str))
    text = text.strip()
    return ConversationMessage(role=role, text=text) if text else None


class ChunkedConversationSession(SessionABC):
    """Agents SDK session that writes history in ordered, size-capped batches.

    Writes are serialized per session so concurrent turns on one thread cannot
    interleave batches.
    """

    def __init__(
        self,
        session_id: str,
        backend: ConversationBackend,
        *,
        max_items: int = MAX_ITEMS_PER_WRITE,
        write_retries: int = 3,
        retry_min_seconds: float = 0.5,
        retry_max_seconds: float = 6.0,
    ) -> None:
        self.session_id = session_id
        self._backend = backend
        self._max_items = max_items
        self._write_retries = max(1, write_retries)
        self._retry_min_seconds = retry_min_seconds
        self._retry_max_seconds = retry_max_seconds
        self._pending: list[Any] = []
        self._write_lock = asyncio.Lock()

    @property
    def pending_items(self) -> tuple[Any, ...]:
        return tuple(self._pending)

    async def get_items(self, limit: int | None = None) -> list[Any]:
        return await self._backend.get_items(limit)

    async def add_items(self, items: list[Any]) -> None:
        async with self._write_lock:
            plan = plan_batches(items, self._pending, max_items=self._max_items)
            self._pending = plan.pending
            total = len(plan.batches)
            for sent, batch in enumerate(plan.batches):
                try:
                    await self._send(batch)
                except Exception as exc:
                    LOGGER.error(
                        "History write for %s failed after %d/%d batches: %s",
                        self.session_id,
                        sent,
                        total,
                        exc,
                    )
                    raise SessionWriteError(
                        f"Failed to persist conversation items for {self.session_id}: {exc}",
                        sent_batches=sent,
                        total_batches=total,
                    ) from exc
            if total:
                LOGGER.debug(
                    "Persisted %d items in %d batches for %s (%d held)",
                    plan.item_count,
                    total,
                    self.session_id,
                    len(plan.pending),
                )

    async def pop_item(self) -> Any | None:
        return await self._backend.pop_item()

    async def clear_session(self) -> None:
        async with self._write_lock:
            self._pending = []
            await self._backend.clear_session()

    async def _send(self, batch: list[Any]) -> None:
        async for attempt in self._retrying():
            with attempt:
                await self._backend.add_items(batch)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self._write_retries),
            wait=wait_exponential(multiplier=self._retry_min_seconds, max=self._retry_max_seconds),
            retry=retry_if_exception_type((APIConnectionError, RateLimitError)),
        )


class SessionStore:
    """Process-scoped map from thread id to its conversation session.

    One session per thread for the life of the process, created lazily.
    Callers go through :meth:`append_items` and :meth:`read_items` rather than
    touching the backend.
    """

    def __init__(
        self,
        backend_factory: BackendFactory,
        *,
        conversation_starter: ConversationStarter | None = None,
        write_retries: int = 3,
        retry_min_seconds: float = 0.5,
        retry_max_seconds: float = 6.0,
    ) -> None:
        self._backend_factory = backend_factory
        self._conversation_starter = conversation_starter
        self._write_retries = write_retries
        self._retry_min_seconds = retry_min_seconds
        self._retry_max_seconds = retry_max_seconds
        self._sessions: dict[str, ChunkedConversationSession] = {}
        self._lock = threading.Lock()

    @classmethod
    def for_openai(
        cls,
        client: AsyncOpenAI,
        *,
        write_retries: int = 3,
        retry_min_seconds: float = 0.5,
        retry_max_seconds: float = 6.0,
    ) -> "SessionStore":
        """Store backed by the OpenAI Conversations API."""

        def factory(thread_id: str) -> ConversationBackend:
            return OpenAIConversationsSession(conversation_id=thread_id, openai_client=client)

        async def starter() -> str:
            return await start_openai_conversations_session(client)

        return cls(
            factory,
            conversation_starter=starter,
            write_retries=write_retries,
            retry_min_seconds=retry_min_seconds,
            retry_max_seconds=retry_max_seconds,
        )

    async def start_conversation(self) -> str:
        """Create a new remote conversation and return its id."""

        if self._conversation_starter is None:
            return f"thread_{uuid.uuid4().hex}"
        return await self._conversation_starter()

    def get_or_create_session(self, thread_id: str) -> ChunkedConversationSession:
        if not thread_id:
            raise ValueError("thread_id is required")
        with self._lock:
            session = self._sessions.get(thread_id)
            if session is None:
                session = ChunkedConversationSession(
                    thread_id,
                    self._backend_factory(thread_id),
                    write_retries=self._write_retries,
                    retry_min_seconds=self._retry_min_seconds,
                    retry_max_seconds=self._retry_max_seconds,
                )
                self._sessions[thread_id] = session
                LOGGER.debug("Bound session for thread %s", thread_id)
            return session

    async def append_items(self, session: ChunkedConversationSession, items: Sequence[Any]) -> None:
        """Persist ``items``; raises :class:`SessionWriteError` on partial failure."""

        await session.add_items(list(items))

    async def read_items(self, session: ChunkedConversationSession) -> list[ConversationMessage]:
        messages: list[ConversationMessage] = []
        for item in await session.get_items():
            message = message_from_item(item)
            if message is not None:
                messages.append(message)
        return messages

    def __contains__(self, thread_id: object) -> bool:
        return thread_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

"""Turn state and the records accumulated while a turn runs."""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from ..errors import TurnStateError
from ..tools.types import ToolCallRecord
from .accounting import TokenUsage

__all__ = [
    "TurnStatus",
    "ToolCallRecord",
    "ReasoningEvent",
    "Turn",
    "TurnResult",
    "new_turn_id",
]

LOGGER = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_turn_id() -> str:
    """``turn_<epoch-ms>_<8 hex chars>``; unique within and across processes."""

    return f"turn_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class TurnStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (TurnStatus.COMPLETED, TurnStatus.INTERRUPTED, TurnStatus.ERROR)


@dataclass(slots=True, frozen=True)
class ReasoningEvent:
    phase: str
    index: int
    text: str = ""
    at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {"phase": self.phase, "index": self.index, "text": self.text, "at": self.at.isoformat()}


@dataclass(slots=True, frozen=True)
class TurnResult:
    """Terminal outcome of a turn, shaped for the ``done`` stream event."""

    thread_id: str
    turn_id: str
    status: TurnStatus
    text: str
    model: str
    turns_used: int
    max_turns: int
    stopped_by_max_turns: bool = False
    usage: TokenUsage = field(default_factory=TokenUsage)
    usage_estimated: bool = False
    estimated_cost_usd: float | None = None
    tool_call_count: int = 0
    compaction_triggered: bool = False
    error: str | None = None
    session_error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "threadId": self.thread_id,
            "turnId": self.turn_id,
            "status": self.status.value,
            "text": self.text,
            "model": self.model,
            "turnsUsed": self.turns_used,
            "maxTurns": self.max_turns,
            "stoppedByMaxTurns": self.stopped_by_max_turns,
            "usage": self.usage.to_dict(),
            "usageEstimated": self.usage_estimated,
            "estimatedCostUsd": self.estimated_cost_usd,
            "toolCalls": self.tool_call_count,
            "compactionTriggered": self.compaction_triggered,
        }
        if self.error:
            payload["error"] = self.error
        if self.session_error:
            payload["sessionError"] = self.session_error
        return payload


@dataclass(slots=True)
class Turn:
    """Mutable record of a turn while it runs.

    Status moves ``pending -> running -> completed | interrupted | error`` and
    reaches a terminal state exactly once. Records arriving after that (a tool
    that outlived a cancellation, a late stream event) are dropped.
    """

    turn_id: str
    thread_id: str
    model: str
    user_text: str
    max_turns: int
    instructions: str = ""
    status: TurnStatus = TurnStatus.PENDING
    created_at: datetime = field(default_factory=_utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    text: str = ""
    usage: TokenUsage = field(default_factory=TokenUsage)
    usage_reported: bool = False
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    reasoning: list[ReasoningEvent] = field(default_factory=list)
    response_ids: list[str] = field(default_factory=list)
    round_trips: int = 0
    compaction_triggered: bool = False
    stopped_by_max_turns: bool = False
    error: str | None = None
    session_error: str | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def is_finalized(self) -> bool:
        return self.status.is_terminal

    def start(self) -> None:
        if self.status is not TurnStatus.PENDING:
            raise TurnStateError(f"Turn {self.turn_id} cannot start from {self.status.value}")
        self.status = TurnStatus.RUNNING
        self.started_at = _utcnow()

    def finalize(self, status: TurnStatus, *, error: str | None = None) -> None:
        if not status.is_terminal:
            raise TurnStateError(f"{status.value} is not a terminal status")
        if self.status is not TurnStatus.RUNNING:
            raise TurnStateError(
                f"Turn {self.turn_id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        self.error = error
        self.finished_at = _utcnow()

    # ------------------------------------------------------------------
    # Accumulation
    # ------------------------------------------------------------------
    def replace_text(self, text: str) -> None:
        if not self.is_finalized and text:
            self.text = text

    def record_tool_call(self, record: ToolCallRecord) -> None:
        if self.is_finalized:
            LOGGER.debug("Dropping tool call %s recorded after turn %s finished", record.name, self.turn_id)
            return
        self.tool_calls.append(record)

    def record_reasoning(self, event: ReasoningEvent) -> None:
        if not self.is_finalized:
            self.reasoning.append(event)

    def record_usage(self, usage: TokenUsage) -> None:
        if self.is_finalized:
            return
        self.usage.add(usage)
        self.usage_reported = True

    def record_response(self, response_id: str) -> None:
        if response_id and response_id not in self.response_ids and not self.is_finalized:
            self.response_ids.append(response_id)

    @property
    def injected_chars(self) -> int:
        return sum(record.injected_chars for record in self.tool_calls)

    @property
    def reasoning_chars(self) -> int:
        completed = [event for event in self.reasoning if event.phase == "done"]
        source = completed or [event for event in self.reasoning if event.phase == "delta"]
        return sum(len(event.text) for event in source)

    @property
    def turns_used(self) -> int:
        return max(self.round_trips, len(self.response_ids))

    @property
    def duration_ms(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at or _utcnow()
        return (end - self.started_at).total_seconds() * 1000.0

    def to_record(self) -> dict[str, Any]:
        """Full JSON-ready record for the durable turn log."""

        return {
            "turn_id": self.turn_id,
            "thread_id": self.thread_id,
            "model": self.model,
            "status": self.status.value,
            "user_text": self.user_text,
            "instructions": self.instructions,
            "text": self.text,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": round(self.duration_ms, 2),
            "max_turns": self.max_turns,
            "turns_used": self.turns_used,
            "stopped_by_max_turns": self.stopped_by_max_turns,
            "usage": self.usage.to_dict(),
            "usage_reported": self.usage_reported,
            "tool_calls": [record.to_dict() for record in self.tool_calls],
            "reasoning": [event.to_dict() for event in self.reasoning if event.phase != "delta"],
            "compaction_triggered": self.compaction_triggered,
            "error": self.error,
            "session_error": self.session_error,
        }

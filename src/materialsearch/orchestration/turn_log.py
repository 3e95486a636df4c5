"""Durable per-turn logs: a JSONL side channel plus a JSON record per turn."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from ..tools.types import ToolCallRecord
from ..utils import logging as logging_utils
from ..utils.payloads import to_jsonable
from .accounting import TokenUsage
from .types import ReasoningEvent, Turn, TurnResult

__all__ = ["TurnLogger", "TurnLogRun"]

LOGGER = logging.getLogger(__name__)


def _default_log_dir() -> Path:
    log_path = logging_utils.get_log_path()
    if log_path is not None:
        return log_path.parent / "turns"
    return Path.home() / ".materialsearch" / "logs" / "turns"


@dataclass(slots=True)
class _NullTurnLogRun:
    """No-op run used when turn logging is disabled or could not start."""

    path: Path | None = None

    def log_reasoning(self, *_: Any, **__: Any) -> None:
        return

    def log_tool_call(self, *_: Any, **__: Any) -> None:
        return

    def log_usage(self, *_: Any, **__: Any) -> None:
        return

    def finish(self, *_: Any, **__: Any) -> None:
        return

    def close(self) -> None:
        return


class TurnLogRun:
    """Writes JSONL entries for one turn, flushing after every entry."""

    def __init__(self, path: Path, *, turn: Turn, logger: "TurnLogger") -> None:
        self.path = path
        self._logger = logger
        self._file = path.open("w", encoding="utf-8")
        self._finalized = False
        self._write_entry(
            "start",
            {
                "turn_id": turn.turn_id,
                "thread_id": turn.thread_id,
                "model": turn.model,
                "max_turns": turn.max_turns,
                "user_text": turn.user_text,
                "instructions": turn.instructions,
            },
        )

    @property
    def record_path(self) -> Path:
        return self.path.with_suffix(".json")

    def log_reasoning(self, event: ReasoningEvent) -> None:
        if event.phase == "delta":
            return
        self._write_entry("reasoning", event.to_dict())

    def log_tool_call(self, record: ToolCallRecord) -> None:
        self._write_entry("tool", record.to_dict())

    def log_usage(self, usage: TokenUsage, *, response_id: str | None = None) -> None:
        self._write_entry("usage", {"response_id": response_id, "usage": usage.to_dict()})

    def finish(self, turn: Turn, result: TurnResult) -> None:
        """Write the terminal entry, the turn record, and the chat index entry."""

        if self._finalized:
            return
        self._finalized = True
        if turn.error:
            self._write_entry("failure", {"status": turn.status.value, "message": turn.error})
        else:
            self._write_entry(
                "completion",
                {
                    "status": turn.status.value,
                    "text": turn.text,
                    "tool_call_count": len(turn.tool_calls),
                    "turns_used": turn.turns_used,
                },
            )
        record = turn.to_record()
        record["estimated_cost_usd"] = result.estimated_cost_usd
        record["usage_estimated"] = result.usage_estimated
        self.record_path.write_text(json.dumps(record, ensure_ascii=False, indent=2), encoding="utf-8")
        self._logger.record_chat(turn, result)
        self.close()

    def close(self) -> None:
        if self._file.closed:
            return
        self._file.close()

    def _write_entry(self, event: str, payload: Mapping[str, Any] | None = None) -> None:
        if self._file.closed:
            return
        entry: dict[str, Any] = {"event": event, "timestamp": time.time()}
        if payload:
            for key, value in payload.items():
                entry[key] = to_jsonable(value, max_depth=6)
        try:
            self._file.write(json.dumps(entry, ensure_ascii=False) + "\n")
            self._file.flush()
        except OSError:
            LOGGER.warning("Turn log write failed; closing %s", self.path, exc_info=True)
            self.close()


class TurnLogger:
    """Factory for per-turn logs, plus the per-thread chat index."""

    def __init__(self, *, enabled: bool, base_dir: Path | str | None = None) -> None:
        self.enabled = bool(enabled)
        self._base_dir = Path(base_dir) if base_dir else _default_log_dir()
        self._index_lock = threading.Lock()

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def start_run(self, turn: Turn, *, directory: Path | str | None = None) -> TurnLogRun | _NullTurnLogRun:
        if not self.enabled:
            return _NullTurnLogRun()
        try:
            target = Path(directory) if directory else self._base_dir
            target.mkdir(parents=True, exist_ok=True)
            run = TurnLogRun(target / f"{turn.turn_id}.jsonl", turn=turn, logger=self)
            LOGGER.debug("Turn log started: %s", run.path)
            return run
        except OSError:
            LOGGER.warning("Failed to start turn log for %s", turn.turn_id, exc_info=True)
            return _NullTurnLogRun()

    def chat_index_path(self, thread_id: str) -> Path:
        safe = "".join(ch for ch in thread_id if ch.isalnum() or ch in "-_") or "thread"
        return self._base_dir / "chats" / f"{safe}.json"

    def read_chat_index(self, thread_id: str) -> list[dict[str, Any]]:
        path = self.chat_index_path(thread_id)
        if not path.exists():
            return []
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            LOGGER.warning("Chat index %s is unreadable; starting fresh", path)
            return []
        return [entry for entry in payload.get("turns", []) if isinstance(entry, dict)] if isinstance(payload, dict) else []

    def record_chat(self, turn: Turn, result: TurnResult) -> None:
        """Upsert the turn's summary into ``chats/<thread_id>.json``."""

        summary = {
            "turn_id": turn.turn_id,
            "status": turn.status.value,
            "model": turn.model,
            "user_text": turn.user_text,
            "text": turn.text,
            "started_at": turn.started_at.isoformat() if turn.started_at else None,
            "finished_at": turn.finished_at.isoformat() if turn.finished_at else None,
            "tool_calls": len(turn.tool_calls),
            "usage": result.usage.to_dict(),
            "estimated_cost_usd": result.estimated_cost_usd,
        }
        with self._index_lock:
            entries = [entry for entry in self.read_chat_index(turn.thread_id) if entry.get("turn_id") != turn.turn_id]
            entries.append(summary)
            path = self.chat_index_path(turn.thread_id)
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(
                json.dumps({"thread_id": turn.thread_id, "turns": entries}, ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
            tmp_path.replace(path)

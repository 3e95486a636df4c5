"""Local metadata for chat threads (preamble, preview, timestamps)."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

__all__ = ["PREVIEW_CHARS", "ThreadRecord", "ThreadStore", "make_preview"]

LOGGER = logging.getLogger(__name__)

PREVIEW_CHARS = 220


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def make_preview(text: str) -> str:
    """First :data:`PREVIEW_CHARS` characters of ``text``."""

    return (text or "")[:PREVIEW_CHARS]


@dataclass(slots=True, frozen=True)
class ThreadRecord:
    thread_id: str
    created_at: str
    updated_at: str
    preamble: str | None = None
    preview: str = ""
    conversation_dir: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "threadId": self.thread_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "preamble": self.preamble,
            "preview": self.preview,
            "conversationDir": self.conversation_dir,
        }

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "ThreadRecord":
        return cls(
            thread_id=str(payload["thread_id"]),
            created_at=str(payload.get("created_at") or _now_iso()),
            updated_at=str(payload.get("updated_at") or payload.get("created_at") or _now_iso()),
            preamble=payload.get("preamble"),
            preview=str(payload.get("preview") or ""),
            conversation_dir=payload.get("conversation_dir"),
        )


class ThreadStore:
    """Thread metadata, persisted as one JSON file when ``path`` is given.

    Threads are never deleted here. Writes replace the file atomically.
    """

    def __init__(self, path: Path | None = None, *, conversations_dir: Path | None = None) -> None:
        self._path = path
        self._conversations_dir = conversations_dir
        self._lock = threading.Lock()
        self._threads: dict[str, ThreadRecord] = self._load()

    def get(self, thread_id: str) -> ThreadRecord | None:
        with self._lock:
            return self._threads.get(thread_id)

    def ensure(self, thread_id: str, *, preamble: str | None = None) -> tuple[ThreadRecord, bool]:
        """Return the record for ``thread_id``, creating it if needed.

        Returns:
            ``(record, created)``.
        """

        with self._lock:
            existing = self._threads.get(thread_id)
            if existing is not None:
                return existing, False
            now = _now_iso()
            record = ThreadRecord(
                thread_id=thread_id,
                created_at=now,
                updated_at=now,
                preamble=(preamble or "").strip() or None,
                conversation_dir=self._make_conversation_dir(thread_id),
            )
            self._threads[thread_id] = record
            self._save_locked()
        LOGGER.info("Created thread %s", thread_id)
        return record, True

    def set_preview(self, thread_id: str, answer: str) -> ThreadRecord:
        """Store the truncated answer as the thread preview and bump ``updated_at``."""

        with self._lock:
            record = self._threads.get(thread_id)
            if record is None:
                now = _now_iso()
                record = ThreadRecord(thread_id=thread_id, created_at=now, updated_at=now)
            record = replace(record, preview=make_preview(answer), updated_at=_now_iso())
            self._threads[thread_id] = record
            self._save_locked()
            return record

    def list_threads(self) -> list[ThreadRecord]:
        with self._lock:
            records = list(self._threads.values())
        return sorted(records, key=lambda record: record.updated_at, reverse=True)

    def _make_conversation_dir(self, thread_id: str) -> str | None:
        if self._conversations_dir is None:
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        target = self._conversations_dir / f"{stamp}_{thread_id}"
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Could not create conversation directory %s: %s", target, exc)
            return None
        return str(target)

    def _load(self) -> dict[str, ThreadRecord]:
        if self._path is None or not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Thread metadata %s is unreadable: %s", self._path, exc)
            return {}
        threads: dict[str, ThreadRecord] = {}
        for raw in payload.get("threads", []) if isinstance(payload, dict) else []:
            try:
                record = ThreadRecord.from_mapping(raw)
            except (KeyError, TypeError):
                continue
            threads[record.thread_id] = record
        return threads

    def _save_locked(self) -> None:
        if self._path is None:
            return
        body = json.dumps(
            {"threads": [asdict(record) for record in self._threads.values()]},
            indent=2,
            ensure_ascii=False,
        )
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)

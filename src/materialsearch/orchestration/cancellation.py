"""In-flight turn registry used by interrupts and the timeout watchdog."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from ..errors import DuplicateTurnError

__all__ = ["AbortCallback", "CancellationHandle", "CancellationRegistry"]

LOGGER = logging.getLogger(__name__)

AbortCallback = Callable[[str], None]


@dataclass(slots=True)
class CancellationHandle:
    """Abort signal for one turn.

    Aborting is idempotent. Callbacks added after the abort run immediately.
    """

    turn_id: str
    thread_id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    reason: str | None = None
    _callbacks: list[AbortCallback] = field(default_factory=list, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def aborted(self) -> bool:
        return self.reason is not None

    def add_callback(self, callback: AbortCallback) -> None:
        with self._lock:
            if self.reason is None:
                self._callbacks.append(callback)
                return
            reason = self.reason
        self._invoke(callback, reason)

    def abort(self, reason: str = "interrupted") -> bool:
        """Signal cancellation; returns False if already aborted."""

        with self._lock:
            if self.reason is not None:
                return False
            self.reason = reason
            callbacks, self._callbacks = self._callbacks, []
        LOGGER.info("Aborting turn %s (%s)", self.turn_id, reason)
        for callback in callbacks:
            self._invoke(callback, reason)
        return True

    def _invoke(self, callback: AbortCallback, reason: str) -> None:
        try:
            callback(reason)
        except Exception:
            LOGGER.warning("Abort callback failed for turn %s", self.turn_id, exc_info=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "turnId": self.turn_id,
            "threadId": self.thread_id,
            "createdAt": self.created_at.isoformat(),
            "aborted": self.aborted,
        }


class CancellationRegistry:
    """Turn id to :class:`CancellationHandle`, in memory only.

    Entries are inserted when a turn starts and removed when it finalizes.
    All mutations hold one lock.
    """

    def __init__(self) -> None:
        self._handles: dict[str, CancellationHandle] = {}
        self._lock = threading.Lock()

    def register(self, turn_id: str, thread_id: str) -> CancellationHandle:
        with self._lock:
            if turn_id in self._handles:
                raise DuplicateTurnError(turn_id)
            handle = CancellationHandle(turn_id=turn_id, thread_id=thread_id)
            self._handles[turn_id] = handle
            return handle

    def get(self, turn_id: str) -> CancellationHandle | None:
        with self._lock:
            return self._handles.get(turn_id)

    def remove(self, turn_id: str) -> bool:
        with self._lock:
            return self._handles.pop(turn_id, None) is not None

    def cancel(self, turn_id: str, reason: str = "interrupted") -> bool:
        """Abort ``turn_id`` if it is still active; unknown ids are a no-op."""

        handle = self.get(turn_id)
        if handle is None:
            LOGGER.debug("Ignoring cancel for inactive turn %s", turn_id)
            return False
        return handle.abort(reason)

    def active(self) -> list[CancellationHandle]:
        with self._lock:
            return list(self._handles.values())

    def __contains__(self, turn_id: object) -> bool:
        with self._lock:
            return turn_id in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

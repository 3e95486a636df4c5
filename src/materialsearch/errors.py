"""Error taxonomy for corpus tools, history persistence, and turn execution.

Tool-facing errors serialize to the structured ``{ok: false, ...}`` payloads
returned to the agent. Orchestrator-level errors terminate a turn but carry
enough state for the caller to render a done-shaped result.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .orchestration.types import TurnResult

__all__ = [
    "ErrorCode",
    "MaterialSearchError",
    "ToolError",
    "ValidationError",
    "PathEscapeError",
    "SessionWriteError",
    "RemoteAgentError",
    "BudgetExceededError",
    "TurnStateError",
    "DuplicateTurnError",
]


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Constants for error codes used in tool responses."""

    INVALID_PARAMETER = "invalid_parameter"
    PATTERN_INVALID = "pattern_invalid"
    PATH_ESCAPE = "path_escape"
    FILE_NOT_FOUND = "file_not_found"
    READ_FAILED = "read_failed"
    CORPUS_NOT_FOUND = "corpus_not_found"
    INTERNAL_ERROR = "internal_error"


class MaterialSearchError(Exception):
    """Base class for every error raised by this package."""


# -----------------------------------------------------------------------------
# Tool Errors
# -----------------------------------------------------------------------------

@dataclass
class ToolError(MaterialSearchError):
    """Base exception for errors recovered inside a tool and returned as data.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
        suggestion: Actionable guidance for the agent.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the ``{ok: false}`` payload handed back to the agent."""
        result: dict[str, Any] = {
            "ok": False,
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


@dataclass
class ValidationError(ToolError):
    """Malformed tool input (schema violation or bad pattern)."""

    error_code: str = field(default=ErrorCode.INVALID_PARAMETER)
    message: str = field(default="Invalid tool arguments")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Check the argument names and types against the tool schema")


@dataclass
class PathEscapeError(ToolError):
    """A requested path resolved outside the corpus root."""

    error_code: str = field(default=ErrorCode.PATH_ESCAPE)
    message: str = field(default="Path escapes the corpus root")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Use a relative path returned by list_corpus_files")

    requested_path: str = ""

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.requested_path:
            result["path"] = self.requested_path
        return result


# -----------------------------------------------------------------------------
# Session / Turn Errors
# -----------------------------------------------------------------------------

class SessionWriteError(MaterialSearchError):
    """Persisting conversation items failed part way through a batch sequence.

    Batches before ``sent_batches`` are already stored remotely and must not be
    resent.
    """

    def __init__(self, message: str, *, sent_batches: int = 0, total_batches: int = 0) -> None:
        super().__init__(message)
        self.sent_batches = sent_batches
        self.total_batches = total_batches


class RemoteAgentError(MaterialSearchError):
    """The agent runtime failed for a reason other than cancellation."""

    def __init__(self, message: str, *, result: "TurnResult | None" = None) -> None:
        super().__init__(message)
        self.result = result


class BudgetExceededError(MaterialSearchError):
    """The round-trip budget ran out before the agent produced a final answer."""

    def __init__(self, max_turns: int, message: str | None = None) -> None:
        super().__init__(message or f"Max turns ({max_turns}) exceeded")
        self.max_turns = max_turns


class TurnStateError(MaterialSearchError):
    """Raised on an illegal turn status transition."""


class DuplicateTurnError(MaterialSearchError):
    """Raised when a cancellation handle already exists for a turn id."""

    def __init__(self, turn_id: str) -> None:
        self.turn_id = turn_id
        super().__init__(f"Turn '{turn_id}' is already registered")

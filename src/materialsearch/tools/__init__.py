"""Schema-validated tools exposed to the agent."""

from .corpus_tools import CORPUS_TOOL_SPECS, build_corpus_tools
from .registry import DuplicateToolError, ToolNotFoundError, ToolRegistry
from .types import ToolCallRecord, ToolOutput, ToolSpec

__all__ = [
    "CORPUS_TOOL_SPECS",
    "build_corpus_tools",
    "DuplicateToolError",
    "ToolNotFoundError",
    "ToolRegistry",
    "ToolCallRecord",
    "ToolOutput",
    "ToolSpec",
]

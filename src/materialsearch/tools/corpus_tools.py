"""The three corpus tools offered to the research agent."""

from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Any, Mapping

from ..corpus import search as corpus
from ..errors import ErrorCode, ToolError
from .registry import ToolCallObserver, ToolRegistry
from .types import ToolCategory, ToolOutput, ToolSpec

__all__ = [
    "LIST_TOOL",
    "SEARCH_TOOL",
    "READ_TOOL",
    "CORPUS_TOOL_SPECS",
    "build_corpus_tools",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 400
DEFAULT_MAX_MATCHES = 80

LIST_TOOL = ToolSpec(
    name="list_corpus_files",
    description=(
        "List TXT files in the research corpus. Optionally filter by a case-insensitive "
        f"substring of the relative path. limit defaults to {DEFAULT_LIST_LIMIT} (max {corpus.MAX_LIST_LIMIT})."
    ),
    parameters={
        "type": "object",
        "properties": {
            "contains": {"type": "string", "description": "Substring the relative path must contain."},
            "limit": {
                "type": "integer",
                "minimum": 1,
                "maximum": corpus.MAX_LIST_LIMIT,
                "description": "Maximum number of paths to return.",
            },
        },
        "additionalProperties": False,
    },
    category=ToolCategory.LIST,
)

SEARCH_TOOL = ToolSpec(
    name="search_corpus_text",
    description=(
        "Search the corpus for a literal string or regular expression. Falls back to a "
        "whitespace-insensitive scan when nothing matches, which catches words broken by "
        "OCR/PDF extraction. Returns file, line and text for each hit."
    ),
    parameters={
        "type": "object",
        "properties": {
            "query": {"type": "string", "minLength": 1},
            "regex": {"type": "boolean", "description": "Treat query as a regular expression."},
            "case_sensitive": {"type": "boolean"},
            "context_lines": {"type": "integer", "minimum": 0, "maximum": corpus.MAX_CONTEXT_LINES},
            "max_matches": {"type": "integer", "minimum": 1, "maximum": corpus.MAX_SEARCH_MATCHES},
            "glob": {"type": "string", "description": "Path glob such as '*ingredient*.txt'."},
        },
        "required": ["query"],
        "additionalProperties": False,
    },
    category=ToolCategory.SEARCH,
)

READ_TOOL = ToolSpec(
    name="read_corpus_file",
    description=(
        "Read a window of lines from one corpus file. path is relative to the corpus root; "
        f"max_lines is capped at {corpus.MAX_READ_LINES}."
    ),
    parameters={
        "type": "object",
        "properties": {
            "path": {"type": "string", "minLength": 1},
            "start_line": {"type": "integer", "minimum": 1, "description": "1-based first line."},
            "max_lines": {"type": "integer", "minimum": 1, "maximum": corpus.MAX_READ_LINES},
        },
        "required": ["path"],
        "additionalProperties": False,
    },
    category=ToolCategory.READ,
)

CORPUS_TOOL_SPECS: tuple[ToolSpec, ...] = (LIST_TOOL, SEARCH_TOOL, READ_TOOL)


def _require_root(root: Path) -> None:
    if not Path(root).is_dir():
        raise ToolError(
            error_code=ErrorCode.CORPUS_NOT_FOUND,
            message=f"Corpus directory not found: {root}",
            suggestion="Ask the operator to check the corpus_root setting",
        )


def build_corpus_tools(
    root: Path,
    *,
    on_call: ToolCallObserver | None = None,
    runner: corpus.CommandRunner | None = None,
) -> ToolRegistry:
    """Bind the corpus tools to ``root``; ``on_call`` receives every call record."""

    registry = ToolRegistry(on_call=on_call)

    def list_handler(args: Mapping[str, Any]) -> ToolOutput:
        _require_root(root)
        limit = min(max(int(args.get("limit", DEFAULT_LIST_LIMIT)), 1), corpus.MAX_LIST_LIMIT)
        files = corpus.list_files(root, args.get("contains"), limit)
        return ToolOutput(
            payload={"count": len(files), "truncated": len(files) >= limit, "files": files},
            hits=len(files),
            injected_chars=sum(len(path) for path in files),
        )

    def search_handler(args: Mapping[str, Any]) -> ToolOutput:
        _require_root(root)
        options = corpus.SearchOptions(
            regex=bool(args.get("regex", False)),
            case_sensitive=bool(args.get("case_sensitive", False)),
            context_lines=int(args.get("context_lines", 0)),
            max_matches=int(args.get("max_matches", DEFAULT_MAX_MATCHES)),
            glob=args.get("glob"),
        )
        outcome = corpus.search_text(root, args["query"], options, runner=runner)
        metadata: dict[str, Any] = {"mode": outcome.mode}
        if outcome.command:
            metadata["command"] = shlex.join(outcome.command)
        if outcome.tool_error:
            metadata["tool_error"] = outcome.tool_error
        LOGGER.debug("search %r -> %d hits (%s)", args["query"], len(outcome.hits), outcome.mode)
        return ToolOutput(
            payload={"query": args["query"], **outcome.to_dict()},
            hits=len(outcome.hits),
            injected_chars=outcome.injected_chars,
            metadata=metadata,
        )

    def read_handler(args: Mapping[str, Any]) -> ToolOutput:
        _require_root(root)
        window = corpus.read_file(
            root,
            args["path"],
            int(args.get("start_line", 1)),
            int(args.get("max_lines", corpus.DEFAULT_READ_LINES)),
        )
        return ToolOutput(payload=window.to_dict(), hits=1, injected_chars=len(window.text))

    registry.register_function(LIST_TOOL, list_handler)
    registry.register_function(SEARCH_TOOL, search_handler)
    registry.register_function(READ_TOOL, read_handler)
    return registry

"""Read-only listing, search, and windowed reads over a directory of text files.

``search_text`` tries three strategies in order and stops at the first one that
produces hits:

1. ``primary``: ripgrep as a subprocess, honoring regex, case, context, glob
   and match-count options.
2. ``fallback_scan``: a pure-Python scan, used only when ripgrep could not be
   run at all (missing binary, timeout, or a hard error without output).
3. ``normalized_scan``: whitespace-stripped, lowercased substring matching,
   used only when nothing above matched. Catches terms split by OCR/PDF
   extraction (``hyalu ronic`` vs ``hyaluronic``).
"""

from __future__ import annotations

import fnmatch
import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Iterator, Sequence

from ..errors import ErrorCode, PathEscapeError, ToolError, ValidationError

__all__ = [
    "TEXT_SUFFIXES",
    "MAX_LIST_LIMIT",
    "MAX_SEARCH_MATCHES",
    "MAX_CONTEXT_LINES",
    "MAX_READ_LINES",
    "CommandResult",
    "SearchHit",
    "SearchOptions",
    "SearchOutcome",
    "FileWindow",
    "iter_text_files",
    "list_files",
    "search_text",
    "read_file",
    "resolve_inside",
    "run_command",
    "normalize_for_match",
]

LOGGER = logging.getLogger(__name__)

TEXT_SUFFIXES: tuple[str, ...] = (".txt",)
MAX_LIST_LIMIT = 2000
MAX_SEARCH_MATCHES = 300
MAX_CONTEXT_LINES = 4
MAX_READ_LINES = 800
DEFAULT_READ_LINES = 260
MAX_HIT_CHARS = 500
SEARCH_TIMEOUT_SECONDS = 30.0

_RG_LINE = re.compile(r"^(.+?):(\d+):(.*)$")
_WHITESPACE = re.compile(r"\s+")


# -----------------------------------------------------------------------------
# Result types
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str = ""


CommandRunner = Callable[[Sequence[str], Path, float], CommandResult]


@dataclass(slots=True, frozen=True)
class SearchHit:
    file: str
    line: int
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"file": self.file, "line": self.line, "text": self.text}


@dataclass(slots=True)
class SearchOptions:
    """Search flags; :meth:`normalized` clamps them into supported ranges."""

    regex: bool = False
    case_sensitive: bool = False
    context_lines: int = 0
    max_matches: int = 80
    glob: str | None = None

    def normalized(self) -> "SearchOptions":
        glob = (self.glob or "").strip() or None
        return SearchOptions(
            regex=bool(self.regex),
            case_sensitive=bool(self.case_sensitive),
            context_lines=min(max(int(self.context_lines), 0), MAX_CONTEXT_LINES),
            max_matches=min(max(int(self.max_matches), 1), MAX_SEARCH_MATCHES),
            glob=glob,
        )


@dataclass(slots=True)
class SearchOutcome:
    """Hits plus the strategy that produced them.

    ``command`` is the ripgrep argv when the primary strategy ran;
    ``tool_error`` explains why it was skipped.
    """

    mode: str
    hits: list[SearchHit] = field(default_factory=list)
    command: list[str] | None = None
    tool_error: str | None = None

    @property
    def injected_chars(self) -> int:
        return sum(len(hit.text) for hit in self.hits)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "count": len(self.hits),
            "hits": [hit.to_dict() for hit in self.hits],
        }


@dataclass(slots=True, frozen=True)
class FileWindow:
    path: str
    text: str
    start_line: int
    end_line: int
    total_lines: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "startLine": self.start_line,
            "endLine": self.end_line,
            "totalLines": self.total_lines,
            "text": self.text,
        }


class _SearchToolUnavailable(Exception):
    pass


# -----------------------------------------------------------------------------
# Listing
# -----------------------------------------------------------------------------


def iter_text_files(root: Path | str) -> Iterator[str]:
    """Yield corpus-relative POSIX paths of text files, depth first.

    Uses an explicit stack; unreadable directories and symlinks resolving
    outside ``root`` are skipped.
    """

    root_path = Path(root)
    stack: list[Path] = [root_path]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as it:
                entries = sorted(it, key=lambda entry: entry.name)
        except OSError as exc:
            LOGGER.debug("Skipping unreadable directory %s: %s", current, exc)
            continue
        subdirs: list[Path] = []
        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=False):
                    subdirs.append(Path(entry.path))
                elif entry.is_file() and entry.name.lower().endswith(TEXT_SUFFIXES):
                    rel_path = Path(entry.path).relative_to(root_path).as_posix()
                    if entry.is_symlink():
                        resolve_inside(root_path, rel_path)
                    yield rel_path
            except PathEscapeError:
                LOGGER.debug("Skipping symlink leaving the corpus: %s", entry.path)
            except OSError:
                continue
        # reversed so the alphabetically first directory is popped first
        stack.extend(reversed(subdirs))


def list_files(root: Path | str, contains: str | None = None, limit: int = MAX_LIST_LIMIT) -> list[str]:
    """Return up to ``limit`` relative text-file paths, optionally substring filtered."""

    cap = min(max(int(limit), 1), MAX_LIST_LIMIT)
    needle = (contains or "").strip().lower()
    results: list[str] = []
    for rel_path in iter_text_files(root):
        if needle and needle not in rel_path.lower():
            continue
        results.append(rel_path)
        if len(results) >= cap:
            break
    return results


# -----------------------------------------------------------------------------
# Search
# -----------------------------------------------------------------------------


def run_command(argv: Sequence[str], cwd: Path, timeout: float) -> CommandResult:
    completed = subprocess.run(
        list(argv),
        cwd=cwd,
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        timeout=timeout,
        check=False,
    )
    return CommandResult(completed.returncode, completed.stdout, completed.stderr)


def normalize_for_match(text: str) -> str:
    return _WHITESPACE.sub("", text).lower()


def search_text(
    root: Path | str,
    query: str,
    options: SearchOptions | None = None,
    *,
    runner: CommandRunner | None = None,
    executable: str = "rg",
) -> SearchOutcome:
    """Search the corpus, falling back through the strategies described above.

    Raises:
        ValidationError: empty query, or a regex the fallback scan cannot compile.
    """

    if not isinstance(query, str) or not query.strip():
        raise ValidationError(message="query must be a non-empty string")
    opts = (options or SearchOptions()).normalized()
    root_path = Path(root)

    outcome = SearchOutcome(mode="primary")
    try:
        outcome.hits, outcome.command = _ripgrep(root_path, query, opts, runner or run_command, executable)
    except _SearchToolUnavailable as exc:
        LOGGER.info("ripgrep unavailable, scanning corpus directly: %s", exc)
        outcome.mode = "fallback_scan"
        outcome.tool_error = str(exc)
        outcome.hits = _full_scan(root_path, query, opts)

    if not outcome.hits:
        normalized_query = normalize_for_match(query)
        if normalized_query:
            outcome.mode = "normalized_scan"
            outcome.hits = _normalized_scan(root_path, normalized_query, opts)
    return outcome


def _ripgrep_argv(executable: str, query: str, opts: SearchOptions) -> list[str]:
    argv = [executable, "--line-number", "--no-heading", "--color", "never"]
    argv += ["--max-count", str(opts.max_matches)]
    if not opts.case_sensitive:
        argv.append("--ignore-case")
    if not opts.regex:
        argv.append("--fixed-strings")
    if opts.context_lines:
        argv += ["--context", str(opts.context_lines)]
    if opts.glob:
        argv += ["--glob", opts.glob]
    argv += ["--", query, "."]
    return argv


def _ripgrep(
    root: Path,
    query: str,
    opts: SearchOptions,
    runner: CommandRunner,
    executable: str,
) -> tuple[list[SearchHit], list[str]]:
    argv = _ripgrep_argv(executable, query, opts)
    if runner is run_command and shutil.which(executable) is None:
        raise _SearchToolUnavailable(f"{executable} not found on PATH")
    try:
        result = runner(argv, root, SEARCH_TIMEOUT_SECONDS)
    except (OSError, subprocess.SubprocessError) as exc:
        raise _SearchToolUnavailable(str(exc)) from exc

    hits = _parse_ripgrep_output(result.stdout, opts.max_matches)
    # exit 1 means "no matches"; 2 means an error, possibly with partial output
    if result.returncode >= 2 and not hits:
        detail = (result.stderr or "").strip().splitlines()
        raise _SearchToolUnavailable(detail[0] if detail else f"exit status {result.returncode}")
    return hits, argv


def _parse_ripgrep_output(stdout: str, max_matches: int) -> list[SearchHit]:
    hits: list[SearchHit] = []
    for raw_line in stdout.splitlines():
        match = _RG_LINE.match(raw_line)
        if not match:
            continue
        file_part, line_part, text = match.groups()
        rel_path = PurePosixPath(file_part.replace("\\", "/"))
        if rel_path.parts and rel_path.parts[0] == ".":
            rel_path = PurePosixPath(*rel_path.parts[1:])
        if not str(rel_path).lower().endswith(TEXT_SUFFIXES):
            continue
        hits.append(SearchHit(str(rel_path), int(line_part), text[:MAX_HIT_CHARS]))
        if len(hits) >= max_matches:
            break
    return hits


def _glob_matches(rel_path: str, pattern: str | None) -> bool:
    if not pattern:
        return True
    negate = pattern.startswith("!")
    body = pattern[1:] if negate else pattern
    target = rel_path if "/" in body else PurePosixPath(rel_path).name
    matched = fnmatch.fnmatchcase(target, body)
    return not matched if negate else matched


def _iter_lines(root: Path, opts: SearchOptions) -> Iterator[tuple[str, int, str]]:
    for rel_path in iter_text_files(root):
        if not _glob_matches(rel_path, opts.glob):
            continue
        try:
            with (root / rel_path).open("r", encoding="utf-8", errors="replace") as handle:
                for index, line in enumerate(handle, start=1):
                    yield rel_path, index, line.rstrip("\r\n")
        except OSError as exc:
            LOGGER.debug("Skipping unreadable file %s: %s", rel_path, exc)


def _full_scan(root: Path, query: str, opts: SearchOptions) -> list[SearchHit]:
    flags = 0 if opts.case_sensitive else re.IGNORECASE
    try:
        pattern = re.compile(query if opts.regex else re.escape(query), flags)
    except re.error as exc:
        raise ValidationError(
            error_code=ErrorCode.PATTERN_INVALID,
            message=f"Invalid regular expression: {exc}",
            suggestion="Escape special characters or retry with regex=false",
        ) from exc
    hits: list[SearchHit] = []
    for rel_path, line_no, text in _iter_lines(root, opts):
        if pattern.search(text):
            hits.append(SearchHit(rel_path, line_no, text[:MAX_HIT_CHARS]))
            if len(hits) >= opts.max_matches:
                break
    return hits


def _normalized_scan(root: Path, normalized_query: str, opts: SearchOptions) -> list[SearchHit]:
    hits: list[SearchHit] = []
    for rel_path, line_no, text in _iter_lines(root, opts):
        if normalized_query in normalize_for_match(text):
            hits.append(SearchHit(rel_path, line_no, text[:MAX_HIT_CHARS]))
            if len(hits) >= opts.max_matches:
                break
    return hits


# -----------------------------------------------------------------------------
# Reading
# -----------------------------------------------------------------------------


def resolve_inside(root: Path | str, relative_path: str) -> Path:
    """Resolve ``relative_path`` under ``root`` or raise :class:`PathEscapeError`.

    The root itself does not count as inside. Comparison uses the root plus a
    trailing separator so ``/a/bb`` is never accepted for root ``/a/b``.
    """

    root_path = Path(root).resolve()
    candidate = (root_path / relative_path).resolve()
    prefix = str(root_path).rstrip(os.sep) + os.sep
    if not str(candidate).startswith(prefix):
        raise PathEscapeError(
            message=f"Path '{relative_path}' resolves outside the corpus root",
            requested_path=str(relative_path),
        )
    return candidate


def read_file(
    root: Path | str,
    relative_path: str,
    start_line: int = 1,
    max_lines: int = DEFAULT_READ_LINES,
) -> FileWindow:
    """Return a window of lines from one corpus file (1-based, inclusive)."""

    if not isinstance(relative_path, str) or not relative_path.strip():
        raise ValidationError(message="path must be a non-empty string")
    target = resolve_inside(root, relative_path.strip())
    try:
        content = target.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError as exc:
        raise ToolError(
            error_code=ErrorCode.FILE_NOT_FOUND,
            message=f"File '{relative_path}' does not exist",
            suggestion="Use list_corpus_files to find valid paths",
        ) from exc
    except OSError as exc:
        raise ToolError(error_code=ErrorCode.READ_FAILED, message=f"Could not read '{relative_path}': {exc}") from exc

    lines = content.splitlines()
    total = len(lines)
    window = min(max(int(max_lines), 1), MAX_READ_LINES)
    start = min(max(int(start_line), 1), max(total, 1))
    end = min(total, start + window - 1)
    rel = target.relative_to(Path(root).resolve()).as_posix()
    return FileWindow(
        path=rel,
        text="\n".join(lines[start - 1:end]),
        start_line=start,
        end_line=end,
        total_lines=total,
    )

"""Sandboxed, read-only access to the on-disk text corpus."""

from .paths import resolve_corpus_root, windows_path_to_wsl
from .search import (
    FileWindow,
    SearchHit,
    SearchOptions,
    SearchOutcome,
    list_files,
    read_file,
    resolve_inside,
    search_text,
)

__all__ = [
    "FileWindow",
    "SearchHit",
    "SearchOptions",
    "SearchOutcome",
    "list_files",
    "read_file",
    "resolve_inside",
    "search_text",
    "resolve_corpus_root",
    "windows_path_to_wsl",
]

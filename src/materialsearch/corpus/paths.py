"""Corpus root resolution."""

from __future__ import annotations

import re
import sys
from pathlib import Path

__all__ = ["resolve_corpus_root", "windows_path_to_wsl"]

_DRIVE_PATH = re.compile(r"^([A-Za-z]):[\\/](.*)$")


def windows_path_to_wsl(raw: str) -> str:
    """Map ``C:\\data\\corpus`` onto ``/mnt/c/data/corpus``; other paths pass through."""

    match = _DRIVE_PATH.match(raw.strip())
    if not match:
        return raw
    drive, rest = match.groups()
    rest = rest.replace("\\", "/").strip("/")
    return f"/mnt/{drive.lower()}/{rest}" if rest else f"/mnt/{drive.lower()}"


def resolve_corpus_root(raw: str | Path, *, base_dir: Path | None = None) -> Path:
    """Resolve a configured corpus directory to an absolute path.

    Relative paths are anchored at ``base_dir`` (the working directory when
    omitted). Windows drive paths are translated when running on POSIX.
    """

    text = str(raw).strip() or "."
    if not sys.platform.startswith("win"):
        text = windows_path_to_wsl(text)
    path = Path(text).expanduser()
    if not path.is_absolute():
        path = (base_dir or Path.cwd()) / path
    return path.resolve()

"""Logging setup for the MaterialSearch server.

Concurrent turns interleave their log lines, so every record carries the
turn id bound through :func:`bind_turn` (``-`` outside a turn).
"""

from __future__ import annotations

import contextlib
import contextvars
import logging
import logging.handlers
import os
from pathlib import Path
from typing import Iterator

__all__ = ["setup_logging", "get_log_path", "bind_turn", "current_turn_id"]

_DEFAULT_LOG_DIR = Path.home() / ".materialsearch" / "logs"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "openai", "openai.agents", "uvicorn.access")
_LEVEL_ENV = "MATERIALSEARCH_LOG_LEVEL"
_CONFIGURED = False
_LOG_PATH: Path | None = None
_TURN_ID: contextvars.ContextVar[str] = contextvars.ContextVar("materialsearch_turn_id", default="-")


class _TurnIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.turn_id = _TURN_ID.get()
        return True


def setup_logging(
    level: int | None = None,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 2_000_000,
    backup_count: int = 5,
    force: bool = False,
) -> Path:
    """Configure root logging with a rotating file and optional console handler.

    ``level`` falls back to ``MATERIALSEARCH_LOG_LEVEL`` and then INFO.
    Repeated calls are no-ops unless ``force`` is set.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    resolved_level = level if level is not None else _level_from_env()
    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / "materialsearch.log"

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(turn_id)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    turn_filter = _TurnIdFilter()

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(resolved_level)
        handler.setFormatter(formatter)
        handler.addFilter(turn_filter)

    logging.basicConfig(level=resolved_level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _tune_external_loggers(resolved_level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    """Return the active log file, if logging has been configured."""

    return _LOG_PATH


@contextlib.contextmanager
def bind_turn(turn_id: str) -> Iterator[None]:
    """Tag log records emitted inside the block with ``turn_id``."""

    token = _TURN_ID.set(turn_id)
    try:
        yield
    finally:
        _TURN_ID.reset(token)


def current_turn_id() -> str:
    return _TURN_ID.get()


def _level_from_env() -> int:
    raw = (os.environ.get(_LEVEL_ENV) or "").strip().upper()
    if not raw:
        return logging.INFO
    value = logging.getLevelName(raw)
    return value if isinstance(value, int) else logging.INFO


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("MATERIALSEARCH_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _tune_external_loggers(root_level: int) -> None:
    quiet_level = max(logging.WARNING, root_level)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)

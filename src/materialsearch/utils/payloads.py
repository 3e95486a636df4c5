"""Helpers for reading provider payloads that may be dicts or SDK objects."""

from __future__ import annotations

from typing import Any, Mapping

__all__ = ["get_field", "to_jsonable"]

_MISSING = object()


def get_field(obj: Any, *names: str, default: Any = None) -> Any:
    """Return the first present key/attribute among ``names``.

    Works uniformly on mappings and attribute-style objects (pydantic models,
    dataclasses). ``None`` values count as absent.
    """

    if obj is None:
        return default
    for name in names:
        if isinstance(obj, Mapping):
            value = obj.get(name, _MISSING)
        else:
            value = getattr(obj, name, _MISSING)
        if value is not _MISSING and value is not None:
            return value
    return default


def to_jsonable(value: Any, *, depth: int = 0, max_depth: int = 8) -> Any:
    """Convert ``value`` into JSON-serializable primitives, bounded in depth."""

    if depth > max_depth:
        return repr(value)
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): to_jsonable(val, depth=depth + 1, max_depth=max_depth) for key, val in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(item, depth=depth + 1, max_depth=max_depth) for item in value]
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    model_dump = getattr(value, "model_dump", None)
    if callable(model_dump):
        try:
            return to_jsonable(model_dump(mode="json", exclude_none=True), depth=depth + 1, max_depth=max_depth)
        except (TypeError, ValueError):
            pass
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        try:
            return to_jsonable(to_dict(), depth=depth + 1, max_depth=max_depth)
        except (TypeError, ValueError):
            pass
    return repr(value)

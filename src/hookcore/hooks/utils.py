"""Context access helpers shared by the matcher and builtin handlers."""

from __future__ import annotations

import json
from typing import Any, Mapping, Sequence


class _Missing:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def resolve_context_path(context: Any, path: Sequence[str] | str) -> Any:
    """Walk ``context`` by dotted path; return ``MISSING`` when any part is absent."""
    parts = path.split(".") if isinstance(path, str) else path
    cursor: Any = context
    for part in parts:
        if not isinstance(cursor, Mapping) or part not in cursor:
            return MISSING
        cursor = cursor[part]
    return cursor


def first_value(context: Mapping[str, Any], *paths: str) -> Any:
    for path in paths:
        value = resolve_context_path(context, path)
        if value is not MISSING and value is not None:
            return value
    return None


def canonical_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (int, str)):
        return str(value)
    if isinstance(value, Mapping):
        value = dict(value)
    try:
        return json.dumps(value, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        return str(value)

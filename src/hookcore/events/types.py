"""Lifecycle event model."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping


class EventKind(str, Enum):
    SESSION_START = "SessionStart"
    SESSION_END = "SessionEnd"
    PRE_COMPACT = "PreCompact"
    PRE_TOOL_USE = "PreToolUse"
    POST_TOOL_USE = "PostToolUse"
    STOP = "Stop"
    OBSERVE = "Observe"

    @classmethod
    def parse(cls, value: str | EventKind) -> EventKind:
        """Accept ``PreToolUse``, ``pretooluse``, ``pre_tool_use`` or ``pre-tool-use``."""
        if isinstance(value, cls):
            return value
        normalized = re.sub(r"[\s_\-]", "", str(value or "")).lower()
        for kind in cls:
            if kind.value.lower() == normalized:
                return kind
        raise ValueError(f"未知的事件類型：{value}")


SESSION_EVENT_KINDS = frozenset({EventKind.SESSION_START, EventKind.SESSION_END, EventKind.PRE_COMPACT})
TOOL_EVENT_KINDS = frozenset({EventKind.PRE_TOOL_USE, EventKind.POST_TOOL_USE})


def _now() -> datetime:
    return datetime.now().astimezone()


@dataclass(frozen=True)
class Event:
    kind: EventKind
    context: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_now)

    @classmethod
    def create(cls, kind: str | EventKind, context: Mapping[str, Any] | None = None) -> Event:
        return cls(kind=EventKind.parse(kind), context=dict(context or {}))

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "ts": self.timestamp.isoformat(timespec="milliseconds"),
            "context": dict(self.context),
        }


__all__ = [
    "Event",
    "EventKind",
    "SESSION_EVENT_KINDS",
    "TOOL_EVENT_KINDS",
]

"""Hook data models for hookcore."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Callable, Mapping, Union

from hookcore.events.types import Event, EventKind

from .matcher import Expression

# (event, BuiltinContext) -> output text
BuiltinHandler = Callable[[Event, Any], str]

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"
STATUS_TIMED_OUT = "timed_out"
STATUS_SKIPPED = "skipped"
STATUS_DEFERRED = "deferred"


@dataclass(frozen=True)
class BuiltinAction:
    name: str
    handler: BuiltinHandler = field(compare=False, repr=False)

    def describe(self) -> dict[str, Any]:
        return {"type": "builtin", "name": self.name}


@dataclass(frozen=True)
class CommandAction:
    path: str
    args: tuple[str, ...] = ()

    def describe(self) -> dict[str, Any]:
        return {"type": "command", "path": self.path, "args": list(self.args)}


HookAction = Union[BuiltinAction, CommandAction]


@dataclass(frozen=True)
class Hook:
    hook_id: str
    event: EventKind
    action: HookAction
    matcher: Expression | None = None
    matcher_text: str | None = None
    blocking: bool = False
    timeout_ms: int = 10_000
    order: int = 0
    enabled: bool = True

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.order, self.hook_id)

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.hook_id,
            "event": self.event.value,
            "matcher": self.matcher_text,
            "action": self.action.describe(),
            "blocking": self.blocking,
            "timeoutMs": self.timeout_ms,
            "order": self.order,
            "enabled": self.enabled,
        }


@dataclass(frozen=True)
class HookConfig:
    """Immutable snapshot of every loaded hook plus a per-event index of enabled ones."""

    hooks: tuple[Hook, ...] = ()
    source: str | None = None
    loaded_at: datetime = field(default_factory=lambda: datetime.now().astimezone())
    _by_event: Mapping[EventKind, tuple[Hook, ...]] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def build(cls, hooks: list[Hook] | tuple[Hook, ...], source: str | None = None) -> HookConfig:
        ordered = tuple(sorted(hooks, key=lambda hook: (hook.event.value, hook.order, hook.hook_id)))
        index: dict[EventKind, list[Hook]] = {}
        for hook in ordered:
            if hook.enabled:
                index.setdefault(hook.event, []).append(hook)
        by_event = MappingProxyType({kind: tuple(sorted(items, key=lambda h: h.sort_key)) for kind, items in index.items()})
        return cls(hooks=ordered, source=source, _by_event=by_event)

    def hooks_for(self, kind: EventKind) -> tuple[Hook, ...]:
        return self._by_event.get(kind, ())

    def get(self, hook_id: str) -> Hook | None:
        for hook in self.hooks:
            if hook.hook_id == hook_id:
                return hook
        return None

    def __len__(self) -> int:
        return len(self.hooks)


@dataclass(frozen=True)
class ExecutionResult:
    status: str
    output: str = ""
    reason: str | None = None
    duration_ms: int | None = None

    @classmethod
    def success(cls, output: str = "", duration_ms: int | None = None) -> ExecutionResult:
        return cls(STATUS_SUCCESS, output=output, duration_ms=duration_ms)

    @classmethod
    def failure(cls, reason: str, output: str = "", duration_ms: int | None = None) -> ExecutionResult:
        return cls(STATUS_FAILURE, output=output, reason=reason, duration_ms=duration_ms)

    @classmethod
    def timed_out(cls, timeout_ms: int) -> ExecutionResult:
        return cls(STATUS_TIMED_OUT, reason=f"超過 {timeout_ms} ms", duration_ms=timeout_ms)

    @classmethod
    def skipped(cls, reason: str = "not_matched") -> ExecutionResult:
        return cls(STATUS_SKIPPED, reason=reason)

    @classmethod
    def deferred(cls) -> ExecutionResult:
        return cls(STATUS_DEFERRED)

    @property
    def failed(self) -> bool:
        return self.status in (STATUS_FAILURE, STATUS_TIMED_OUT)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.status}
        if self.output:
            payload["output"] = self.output
        if self.reason is not None:
            payload["reason"] = self.reason
        if self.duration_ms is not None:
            payload["duration_ms"] = self.duration_ms
        return payload


def _freeze(outcomes: Mapping[str, ExecutionResult]) -> Mapping[str, ExecutionResult]:
    return MappingProxyType(dict(outcomes))


@dataclass(frozen=True)
class Observation:
    """Immutable record of one processed event, or of one late command result."""

    event: Event
    matched_hook_ids: tuple[str, ...]
    outcomes: Mapping[str, ExecutionResult]
    sequence_number: int
    follow_up_of: int | None = None
    recorded_at: datetime = field(default_factory=lambda: datetime.now().astimezone())

    @classmethod
    def create(
        cls,
        event: Event,
        matched_hook_ids: list[str] | tuple[str, ...],
        outcomes: Mapping[str, ExecutionResult],
        sequence_number: int,
        *,
        follow_up_of: int | None = None,
    ) -> Observation:
        return cls(
            event=event,
            matched_hook_ids=tuple(matched_hook_ids),
            outcomes=_freeze(outcomes),
            sequence_number=sequence_number,
            follow_up_of=follow_up_of,
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "seq": self.sequence_number,
            "ts": self.recorded_at.isoformat(timespec="milliseconds"),
            "event": self.event.kind.value,
            "event_ts": self.event.timestamp.isoformat(timespec="milliseconds"),
            "context": dict(self.event.context),
            "matched_hooks": list(self.matched_hook_ids),
            "outcomes": {hook_id: result.to_dict() for hook_id, result in self.outcomes.items()},
            "follow_up_of": self.follow_up_of,
        }


@dataclass(frozen=True)
class DispatchResult:
    event: Event
    sequence_number: int
    matched_hook_ids: tuple[str, ...]
    outcomes: Mapping[str, ExecutionResult]
    failed: bool = False
    failed_hook_id: str | None = None

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event.kind.value,
            "seq": self.sequence_number,
            "failed": self.failed,
            "failed_hook_id": self.failed_hook_id,
            "matched_hooks": list(self.matched_hook_ids),
            "outcomes": {hook_id: result.to_dict() for hook_id, result in self.outcomes.items()},
        }

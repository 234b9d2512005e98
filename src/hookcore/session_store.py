"""Most-recent session snapshots for lifecycle handlers."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from typing import Any


logger = logging.getLogger(__name__)

DEFAULT_MAX_SNAPSHOTS = 20


def _now() -> datetime:
    return datetime.now().astimezone()


@dataclass(frozen=True)
class SessionSnapshot:
    session_id: str
    started_at: datetime
    last_activity_at: datetime
    learned_skill_count: int = 0
    tool_call_count: int = 0
    ended_at: datetime | None = None

    @property
    def active(self) -> bool:
        return self.ended_at is None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("started_at", "last_activity_at", "ended_at"):
            value = payload.get(key)
            payload[key] = value.isoformat(timespec="seconds") if value else None
        return payload


@dataclass(frozen=True)
class CompactionAdvice:
    suggest: bool
    tool_call_count: int
    threshold: int


class SessionStore:
    """Bounded snapshot table ordered by last update; the least recently touched session is evicted first."""

    def __init__(self, max_snapshots: int = DEFAULT_MAX_SNAPSHOTS) -> None:
        self.max_snapshots = max(int(max_snapshots), 1)
        self._snapshots: OrderedDict[str, SessionSnapshot] = OrderedDict()
        self._lock = threading.Lock()

    def on_session_start(self, session_id: str, *, learned_skill_count: int = 0, now: datetime | None = None) -> SessionSnapshot:
        current = now or _now()
        snapshot = SessionSnapshot(
            session_id=session_id,
            started_at=current,
            last_activity_at=current,
            learned_skill_count=learned_skill_count,
        )
        with self._lock:
            self._snapshots.pop(session_id, None)
            self._snapshots[session_id] = snapshot
            self._evict()
        return snapshot

    def on_session_end(self, session_id: str, *, now: datetime | None = None) -> SessionSnapshot:
        current = now or _now()
        with self._lock:
            snapshot = self._snapshots.get(session_id)
            if snapshot is None:
                logger.info("session %s 未記錄開始時間，以結束時間補建", session_id)
                snapshot = SessionSnapshot(session_id=session_id, started_at=current, last_activity_at=current)
            finalized = replace(snapshot, last_activity_at=current, ended_at=current)
            self._snapshots[session_id] = finalized
            self._snapshots.move_to_end(session_id)
            self._evict()
        return finalized

    def on_pre_compact(self, session_id: str, *, threshold: int, at_least: int = 0) -> CompactionAdvice:
        with self._lock:
            snapshot = self._snapshots.get(session_id)
        count = max(snapshot.tool_call_count if snapshot else 0, at_least)
        return CompactionAdvice(suggest=count >= threshold, tool_call_count=count, threshold=threshold)

    def record_tool_call(self, session_id: str, *, at_least: int = 0, now: datetime | None = None) -> int:
        """Count one tool call; ``at_least`` seeds the count from a persisted counter."""
        current = now or _now()
        with self._lock:
            snapshot = self._snapshots.get(session_id)
            if snapshot is None:
                snapshot = SessionSnapshot(session_id=session_id, started_at=current, last_activity_at=current)
            count = max(snapshot.tool_call_count, at_least) + 1
            updated = replace(snapshot, last_activity_at=current, tool_call_count=count)
            self._snapshots[session_id] = updated
            self._snapshots.move_to_end(session_id)
            self._evict()
        return updated.tool_call_count

    def get(self, session_id: str) -> SessionSnapshot | None:
        with self._lock:
            return self._snapshots.get(session_id)

    def recent(self) -> list[SessionSnapshot]:
        with self._lock:
            return list(reversed(self._snapshots.values()))

    def __len__(self) -> int:
        with self._lock:
            return len(self._snapshots)

    def _evict(self) -> None:
        while len(self._snapshots) > self.max_snapshots:
            evicted, _ = self._snapshots.popitem(last=False)
            logger.debug("session snapshot %s 已淘汰", evicted)

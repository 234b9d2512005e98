"""Append-only JSONL observation log fed from the learning bus."""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections import deque
from pathlib import Path
from typing import Any, TYPE_CHECKING

from .bus import LearningBus, SubscriptionClosed
from .types import EventKind

if TYPE_CHECKING:
    from hookcore.hooks.types import Observation


logger = logging.getLogger(__name__)

DEFAULT_FLUSH_INTERVAL_S = 1.0
DEFAULT_FLUSH_EVERY = 32


def serialize_observation(observation: Observation) -> str:
    return json.dumps(observation.to_record(), ensure_ascii=False, separators=(",", ":"), default=str)


class ObservationLogWriter:
    """Single bus subscriber that owns the log file handle on its own thread."""

    def __init__(
        self,
        bus: LearningBus[Observation],
        path: Path,
        *,
        flush_interval_s: float = DEFAULT_FLUSH_INTERVAL_S,
        flush_every: int = DEFAULT_FLUSH_EVERY,
    ) -> None:
        self.bus = bus
        self.path = path
        self.flush_interval_s = max(float(flush_interval_s), 0.01)
        self.flush_every = max(int(flush_every), 1)
        self.written = 0
        self._subscription = None
        self._thread: threading.Thread | None = None
        self._done = threading.Event()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._subscription = self.bus.subscribe(name="observation-log")
        self._thread = threading.Thread(target=self._run, name="hookcore-observation-log", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 10.0) -> bool:
        """Close the subscription, drain what is buffered and wait for the file to close."""
        if self._thread is None:
            return True
        if self._subscription is not None:
            self._subscription.close()
        self._thread.join(timeout=timeout)
        return self._done.is_set()

    def wait_closed(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)

    @property
    def dropped(self) -> int:
        return self._subscription.dropped if self._subscription is not None else 0

    def _run(self) -> None:
        subscription = self._subscription
        assert subscription is not None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                self._pump(subscription, handle)
        except Exception as exc:  # noqa: BLE001
            logger.error("observation log 寫入失敗：%s", exc, exc_info=True)
            subscription.close(discard=True)
        finally:
            self._done.set()

    def _pump(self, subscription: Any, handle: Any) -> None:
        pending = 0
        last_flush = time.monotonic()
        while True:
            try:
                observation = subscription.get(timeout=self.flush_interval_s)
            except SubscriptionClosed:
                break
            if observation is not None:
                handle.write(serialize_observation(observation))
                handle.write("\n")
                self.written += 1
                pending += 1
                if observation.event.kind is EventKind.STOP:
                    self._flush(handle, sync=True)
                    pending = 0
                    last_flush = time.monotonic()
                    continue
            due = time.monotonic() - last_flush >= self.flush_interval_s
            if pending and (pending >= self.flush_every or due or observation is None):
                self._flush(handle)
                pending = 0
                last_flush = time.monotonic()
        self._flush(handle, sync=True)

    @staticmethod
    def _flush(handle: Any, sync: bool = False) -> None:
        handle.flush()
        if sync:
            os.fsync(handle.fileno())


def read_observations(path: Path) -> list[dict[str, Any]]:
    """Parse the log, discarding a trailing line that is still being written."""
    if not path.exists():
        return []
    content = path.read_text(encoding="utf-8")
    lines = content.split("\n")
    # The last element is "" for a complete file, otherwise an in-progress line.
    complete = lines[:-1]
    records: list[dict[str, Any]] = []
    for index, line in enumerate(complete):
        if not line.strip():
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError:
            logger.warning("observation log 第 %d 行格式錯誤，已略過", index + 1)
    return records


def tail_observations(path: Path, limit: int = 20) -> list[dict[str, Any]]:
    if limit <= 0:
        return []
    return list(deque(read_observations(path), maxlen=limit))


_TAIL_BLOCK = 64 * 1024


def _sequence_of(raw: bytes) -> int | None:
    try:
        record = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(record, dict):
        return None
    seq = record.get("seq")
    if isinstance(seq, int) and not isinstance(seq, bool):
        return seq
    return None


def last_logged_sequence(path: Path) -> int:
    """Return the ``seq`` of the last complete, parseable record, or 0.

    Reads the file backwards in blocks so a long log is not loaded whole.
    """
    try:
        handle = path.open("rb")
    except FileNotFoundError:
        return 0
    with handle:
        handle.seek(0, os.SEEK_END)
        position = handle.tell()
        buffer = b""
        while position > 0:
            step = min(_TAIL_BLOCK, position)
            position -= step
            handle.seek(position)
            buffer = handle.read(step) + buffer
            lines = buffer.split(b"\n")
            # lines[-1] is "" or an unfinished line; lines[0] may be cut by the block edge.
            candidates = lines[:-1] if position == 0 else lines[1:-1]
            for raw in reversed(candidates):
                seq = _sequence_of(raw)
                if seq is not None:
                    return seq
            buffer = lines[0] + b"\n"
    return 0

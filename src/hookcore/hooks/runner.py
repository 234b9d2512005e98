"""Hook execution engine."""

from __future__ import annotations

import json
import logging
import os
import subprocess
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable

from hookcore.events.bus import LearningBus
from hookcore.events.types import Event

from .errors import ExecutionFailure
from .matcher import evaluate
from .registry import HookRegistry
from .types import (
    BuiltinAction,
    CommandAction,
    DispatchResult,
    ExecutionResult,
    Hook,
    Observation,
)


logger = logging.getLogger(__name__)

CommandRunner = Callable[[CommandAction, Event, int], ExecutionResult]

_KILL_GRACE_S = 2.0


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def run_command(action: CommandAction, event: Event, timeout_ms: int) -> ExecutionResult:
    """Run an external command with the event context as JSON on stdin."""
    payload = json.dumps(dict(event.context), ensure_ascii=False, default=str)
    env = dict(os.environ)
    env["HOOKCORE_EVENT"] = event.kind.value
    start = time.monotonic()
    try:
        process = subprocess.Popen(
            [action.path, *action.args],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=env,
        )
    except OSError as exc:
        return ExecutionResult.failure(f"啟動失敗：{exc}", duration_ms=_elapsed_ms(start))
    try:
        stdout, stderr = process.communicate(input=payload, timeout=timeout_ms / 1000)
    except subprocess.TimeoutExpired:
        process.kill()
        try:
            process.communicate(timeout=_KILL_GRACE_S)
        except subprocess.TimeoutExpired:
            logger.warning("指令 %s 終止後仍未結束輸出", action.path)
        logger.warning("指令 %s 超過 %d ms，已強制終止", action.path, timeout_ms)
        return ExecutionResult.timed_out(timeout_ms)
    duration = _elapsed_ms(start)
    if process.returncode == 0:
        return ExecutionResult.success((stdout or "").strip(), duration_ms=duration)
    reason = (stderr or "").strip() or f"exit code {process.returncode}"
    return ExecutionResult.failure(reason, output=(stdout or "").strip(), duration_ms=duration)


class Dispatcher:
    """Runs the hooks for one event in ``(order, id)`` order on the caller's thread.

    Non-blocking external commands are handed to a worker pool; their result is
    published later as a follow-up observation referencing the dispatch's
    sequence number.
    """

    def __init__(
        self,
        registry: HookRegistry,
        bus: LearningBus[Observation],
        builtin_context: Any,
        *,
        commands_enabled: bool = True,
        hooks_enabled: bool = True,
        max_workers: int = 4,
        command_runner: CommandRunner | None = None,
    ) -> None:
        self.registry = registry
        self.bus = bus
        self.builtin_context = builtin_context
        self.commands_enabled = commands_enabled
        self.hooks_enabled = hooks_enabled
        self.command_runner = command_runner or run_command
        self._executor = ThreadPoolExecutor(max_workers=max(max_workers, 1), thread_name_prefix="hookcore-command")
        self._emit_lock = threading.Lock()
        self._sequence = 0
        self._pending: set[Future[None]] = set()
        self._pending_lock = threading.Lock()

    @property
    def last_sequence_number(self) -> int:
        return self._sequence

    def resume_after(self, sequence_number: int) -> None:
        """Continue numbering after ``sequence_number`` (e.g. the tail of an existing log)."""
        with self._emit_lock:
            self._sequence = max(self._sequence, sequence_number)

    def dispatch(self, event: Event) -> DispatchResult:
        config = self.registry.snapshot()
        hooks = config.hooks_for(event.kind) if self.hooks_enabled else ()
        matched: list[str] = []
        outcomes: dict[str, ExecutionResult] = {}
        deferred: list[Hook] = []
        failed_hook_id: str | None = None

        for hook in hooks:
            if not evaluate(hook.matcher, event.context):
                outcomes[hook.hook_id] = ExecutionResult.skipped()
                continue
            matched.append(hook.hook_id)
            result = self._execute(hook, event, deferred)
            outcomes[hook.hook_id] = result
            if result.failed:
                logger.warning("hook %s 執行失敗（%s）：%s", hook.hook_id, result.status, result.reason)
                if hook.blocking:
                    failed_hook_id = hook.hook_id
                    break

        sequence_number = self._emit(event, matched, outcomes)
        for hook in deferred:
            self._submit(hook, event, sequence_number)

        return DispatchResult(
            event=event,
            sequence_number=sequence_number,
            matched_hook_ids=tuple(matched),
            outcomes=dict(outcomes),
            failed=failed_hook_id is not None,
            failed_hook_id=failed_hook_id,
        )

    def wait_for_deferred(self, timeout: float | None = None) -> bool:
        with self._pending_lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def _execute(self, hook: Hook, event: Event, deferred: list[Hook]) -> ExecutionResult:
        action = hook.action
        if isinstance(action, BuiltinAction):
            return self._run_builtin(hook, action, event)
        if not self.commands_enabled:
            return ExecutionResult.skipped("commands_disabled")
        if hook.blocking:
            return self._run_command(hook, action, event)
        deferred.append(hook)
        return ExecutionResult.deferred()

    def _run_builtin(self, hook: Hook, action: BuiltinAction, event: Event) -> ExecutionResult:
        start = time.monotonic()
        try:
            output = action.handler(event, self.builtin_context)
        except ExecutionFailure as exc:
            return ExecutionResult.failure(str(exc), duration_ms=_elapsed_ms(start))
        except Exception as exc:  # noqa: BLE001
            logger.error("builtin %s（hook %s）發生例外：%s", action.name, hook.hook_id, exc, exc_info=True)
            return ExecutionResult.failure(f"{type(exc).__name__}: {exc}", duration_ms=_elapsed_ms(start))
        return ExecutionResult.success(output or "", duration_ms=_elapsed_ms(start))

    def _run_command(self, hook: Hook, action: Any, event: Event) -> ExecutionResult:
        try:
            return self.command_runner(action, event, hook.timeout_ms)
        except Exception as exc:  # noqa: BLE001
            logger.error("hook %s 執行指令失敗：%s", hook.hook_id, exc, exc_info=True)
            return ExecutionResult.failure(f"{type(exc).__name__}: {exc}")

    def _submit(self, hook: Hook, event: Event, sequence_number: int) -> None:
        try:
            future = self._executor.submit(self._run_deferred, hook, event, sequence_number)
        except RuntimeError:
            logger.warning("worker pool 已關閉，hook %s 改為同步執行", hook.hook_id)
            self._run_deferred(hook, event, sequence_number)
            return
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future[None]) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _run_deferred(self, hook: Hook, event: Event, sequence_number: int) -> None:
        result = self._run_command(hook, hook.action, event)
        if result.failed:
            logger.warning("非阻斷 hook %s 執行失敗（%s）：%s", hook.hook_id, result.status, result.reason)
        self._emit(event, [hook.hook_id], {hook.hook_id: result}, follow_up_of=sequence_number)

    def _emit(
        self,
        event: Event,
        matched: list[str],
        outcomes: dict[str, ExecutionResult],
        *,
        follow_up_of: int | None = None,
    ) -> int:
        # Numbering and publishing share one lock so the log order equals sequence order.
        with self._emit_lock:
            self._sequence += 1
            observation = Observation.create(
                event,
                matched,
                outcomes,
                self._sequence,
                follow_up_of=follow_up_of,
            )
            self.bus.publish(observation)
            return self._sequence

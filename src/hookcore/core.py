"""Host-facing facade wiring registry, dispatcher, bus, log and session store."""

from __future__ import annotations

import logging
import signal
import threading
from typing import Any, Mapping

from .config import Settings, load_settings
from .events.bus import LearningBus
from .events.observation_log import ObservationLogWriter, last_logged_sequence
from .events.types import Event, EventKind
from .hooks.builtins import BuiltinContext
from .hooks.errors import HookError, LoadError
from .hooks.registry import HookRegistry
from .hooks.runner import CommandRunner, Dispatcher
from .hooks.types import DispatchResult, Hook, Observation
from .session_store import SessionSnapshot, SessionStore


logger = logging.getLogger(__name__)


class HookCore:
    """Entry points for the host (``dispatch``) and for admin tooling.

    ``start`` loads the hook configuration and starts the observation log
    writer; ``shutdown`` dispatches a ``Stop`` event, waits for deferred
    commands, then drains and closes the log.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        registry: HookRegistry | None = None,
        command_runner: CommandRunner | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.registry = registry or HookRegistry(
            self.settings.hooks_path,
            default_timeout_ms=self.settings.default_timeout_ms,
        )
        self.session_store = SessionStore(max_snapshots=self.settings.max_snapshots)
        self.bus: LearningBus[Observation] = LearningBus(buffer_size=self.settings.bus_buffer_size)
        self.log_writer = ObservationLogWriter(
            self.bus,
            self.settings.observations_path,
            flush_interval_s=self.settings.flush_interval_s,
            flush_every=self.settings.flush_every,
        )
        context_kwargs: dict[str, Any] = {}
        if environ is not None:
            context_kwargs["environ"] = environ
        self.builtin_context = BuiltinContext(
            session_store=self.session_store,
            data_dir=self.settings.data_dir,
            compact_threshold=self.settings.compact_threshold,
            compact_reminder_every=self.settings.compact_reminder_every,
            min_session_messages=self.settings.min_session_messages,
            **context_kwargs,
        )
        self.dispatcher = Dispatcher(
            self.registry,
            self.bus,
            self.builtin_context,
            commands_enabled=self.settings.commands_enabled,
            hooks_enabled=self.settings.hooks_enabled,
            max_workers=self.settings.max_workers,
            command_runner=command_runner,
        )
        self._state_lock = threading.Lock()
        self._started = False
        self._stopped = False

    def __enter__(self) -> HookCore:
        return self.start()

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()

    @property
    def running(self) -> bool:
        return self._started and not self._stopped

    def start(self) -> HookCore:
        with self._state_lock:
            if self._started:
                return self
            self._started = True
        try:
            self.registry.reload()
        except LoadError:
            logger.error("hook 設定無效，暫以空白設定啟動")
        try:
            self.dispatcher.resume_after(last_logged_sequence(self.settings.observations_path))
        except OSError as exc:
            logger.warning("無法讀取既有 observation log 的序號：%s", exc)
        self.log_writer.start()
        return self

    def dispatch(self, event: Event) -> DispatchResult:
        if self._stopped:
            raise HookError("hookcore 已關閉")
        if not self._started:
            self.start()
        return self.dispatcher.dispatch(event)

    def reload(self) -> int:
        return len(self.registry.reload())

    def shutdown(self, *, timeout: float = 10.0, reason: str = "shutdown", dispatch_stop: bool = True) -> bool:
        with self._state_lock:
            if self._stopped:
                return True
            was_started = self._started
            self._stopped = True
        if was_started and dispatch_stop:
            self.dispatcher.dispatch(Event.create(EventKind.STOP, {"reason": reason}))
        if not self.dispatcher.wait_for_deferred(timeout):
            logger.warning("仍有非阻斷指令未完成，將於逾時後終止")
        self.dispatcher.close()
        self.bus.close()
        drained = self.log_writer.stop(timeout=timeout)
        logger.info("hookcore 已關閉（共 %d 筆 observation）", self.dispatcher.last_sequence_number)
        return drained

    def list_hooks(self) -> list[Hook]:
        return self.registry.list_hooks()

    def set_hook_enabled(self, hook_id: str, enabled: bool) -> Hook:
        return self.registry.set_enabled(hook_id, enabled)

    def get_session_snapshot(self, session_id: str) -> SessionSnapshot | None:
        return self.session_store.get(session_id)

    def status(self) -> dict[str, Any]:
        config = self.registry.snapshot()
        return {
            "running": self.running,
            "hooks": len(config),
            "hooks_source": config.source,
            "hooks_loaded_at": config.loaded_at.isoformat(timespec="seconds"),
            "hooks_enabled": self.settings.hooks_enabled,
            "commands_enabled": self.settings.commands_enabled,
            "last_sequence_number": self.dispatcher.last_sequence_number,
            "observations_path": str(self.settings.observations_path),
            "observations_written": self.log_writer.written,
            "bus": self.bus.stats(),
            "sessions": len(self.session_store),
        }

    def install_signal_handlers(self) -> None:
        """Map SIGINT/SIGTERM to ``shutdown``; must run on the main thread."""

        def _handle(signum: int, _frame: Any) -> None:
            logger.info("收到訊號 %s，開始關閉", signum)
            self.shutdown(reason=f"signal:{signum}")

        for signum in (signal.SIGINT, signal.SIGTERM):
            signal.signal(signum, _handle)

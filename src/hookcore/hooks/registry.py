"""Hook registry with atomically swapped configuration snapshots."""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from pathlib import Path
from typing import Callable

from hookcore.events.types import EventKind

from .errors import LoadError
from .loader import DEFAULT_TIMEOUT_MS, load_hook_config
from .types import Hook, HookConfig


logger = logging.getLogger(__name__)

ConfigSource = Callable[[], HookConfig]


class HookRegistry:
    """Owns the active ``HookConfig``.

    Readers call ``snapshot()`` once and keep the returned immutable object for
    the rest of their work; writers build a complete new ``HookConfig`` and swap
    the reference under ``_swap_lock``.  A failed load never replaces the
    active snapshot.
    """

    def __init__(
        self,
        path: Path | None = None,
        *,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        source: ConfigSource | None = None,
    ) -> None:
        if path is None and source is None:
            raise ValueError("HookRegistry 需要 path 或 source")
        self.path = path
        self.default_timeout_ms = default_timeout_ms
        self._source = source
        self._swap_lock = threading.Lock()
        self._config = HookConfig.build([], source=str(path) if path else None)

    @classmethod
    def from_config(cls, config: HookConfig) -> HookRegistry:
        registry = cls(source=lambda: config)
        registry._config = config
        return registry

    def load(self) -> HookConfig:
        if self._source is not None:
            return self._source()
        assert self.path is not None
        return load_hook_config(self.path, default_timeout_ms=self.default_timeout_ms)

    def reload(self) -> HookConfig:
        """Load again and swap; on ``LoadError`` the previous snapshot keeps serving."""
        try:
            config = self.load()
        except LoadError as exc:
            logger.error("重新載入 hook 設定失敗，保留先前設定：%s", exc)
            raise
        with self._swap_lock:
            self._config = config
        logger.info("已載入 %d 個 hook（%s）", len(config), config.source or "memory")
        return config

    def snapshot(self) -> HookConfig:
        return self._config

    def hooks_for(self, kind: EventKind) -> tuple[Hook, ...]:
        return self._config.hooks_for(kind)

    def list_hooks(self) -> list[Hook]:
        return list(self._config.hooks)

    def set_enabled(self, hook_id: str, enabled: bool) -> Hook:
        with self._swap_lock:
            current = self._config
            hook = current.get(hook_id)
            if hook is None:
                raise KeyError(f"找不到 hook：{hook_id}")
            updated = replace(hook, enabled=enabled)
            hooks = [updated if item.hook_id == hook_id else item for item in current.hooks]
            self._config = HookConfig.build(hooks, source=current.source)
        logger.info("hook %s 已%s", hook_id, "啟用" if enabled else "停用")
        return updated

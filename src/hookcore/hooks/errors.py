"""Hook error definitions."""

from __future__ import annotations


class HookError(RuntimeError):
    """Base class for hook errors."""


class ParseError(HookError, ValueError):
    """Raised when a matcher expression cannot be compiled."""

    def __init__(self, message: str, offset: int) -> None:
        super().__init__(f"{message}（位置 {offset}）")
        self.message = message
        self.offset = offset


class LoadError(HookError):
    """Raised when a hook configuration is rejected as a whole."""

    def __init__(self, errors: dict[str, str], source: str | None = None) -> None:
        self.errors = dict(errors)
        self.source = source
        details = "; ".join(f"{hook_id}: {reason}" for hook_id, reason in self.errors.items())
        prefix = f"hook 設定載入失敗：{source}" if source else "hook 設定載入失敗"
        super().__init__(f"{prefix}（{details}）" if details else prefix)


class ExecutionFailure(HookError):
    """Raised by builtin handlers to report a failed action."""

"""Hook configuration loader and validator."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable

import yaml

from hookcore.events.types import EventKind

from .builtins import resolve_builtin
from .errors import LoadError, ParseError
from .matcher import compile_matcher
from .types import BuiltinAction, CommandAction, Hook, HookAction, HookConfig


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 10_000


def _as_bool(payload: dict[str, Any], key: str, default: bool) -> bool:
    value = payload.get(key, default)
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ValueError(f"{key} 必須為布林值")


def _as_int(payload: dict[str, Any], keys: Iterable[str], default: int) -> int:
    for key in keys:
        if key not in payload or payload[key] is None:
            continue
        value = payload[key]
        if isinstance(value, bool):
            raise ValueError(f"{key} 必須為整數")
        try:
            return int(value)
        except (TypeError, ValueError, OverflowError) as exc:
            raise ValueError(f"{key} 必須為整數") from exc
    return default


def _parse_action(payload: Any) -> HookAction:
    if not isinstance(payload, dict):
        raise ValueError("action 必須為物件")
    action_type = payload.get("type")
    if action_type == "builtin":
        name = payload.get("name")
        if not name or not isinstance(name, str):
            raise ValueError("builtin action 必須提供 name")
        try:
            handler = resolve_builtin(name)
        except KeyError as exc:
            raise ValueError(str(exc.args[0])) from exc
        return BuiltinAction(name=name, handler=handler)
    if action_type == "command":
        path = payload.get("path") or payload.get("command")
        if not path or not isinstance(path, str):
            raise ValueError("command action 必須提供 path")
        args = payload.get("args") or []
        if not isinstance(args, list):
            raise ValueError("action.args 必須為陣列")
        return CommandAction(path=path, args=tuple(str(item) for item in args))
    raise ValueError(f"action.type 必須為 builtin 或 command：{action_type!r}")


def parse_hook(payload: dict[str, Any], *, default_timeout_ms: int = DEFAULT_TIMEOUT_MS) -> Hook:
    hook_id = payload.get("id")
    if not hook_id or not isinstance(hook_id, str):
        raise ValueError("id 不可為空")
    if "event" not in payload:
        raise ValueError("event 不可為空")
    event = EventKind.parse(payload["event"])
    if "action" not in payload:
        raise ValueError("action 不可為空")
    action = _parse_action(payload["action"])

    matcher_text = payload.get("matcher")
    if matcher_text is not None and not isinstance(matcher_text, str):
        raise ValueError("matcher 必須為字串")
    matcher = None
    if matcher_text is not None:
        try:
            matcher = compile_matcher(matcher_text)
        except ParseError as exc:
            raise ValueError(f"matcher 解析失敗：{exc}") from exc

    timeout_ms = _as_int(payload, ("timeoutMs", "timeout_ms"), default_timeout_ms)
    if timeout_ms < 1:
        raise ValueError("timeoutMs 必須大於 0")

    return Hook(
        hook_id=hook_id,
        event=event,
        action=action,
        matcher=matcher,
        matcher_text=matcher_text,
        blocking=_as_bool(payload, "blocking", False),
        timeout_ms=timeout_ms,
        order=_as_int(payload, ("order",), 0),
        enabled=_as_bool(payload, "enabled", True),
    )


def _extract_records(document: Any) -> list[Any]:
    if document is None:
        return []
    if isinstance(document, list):
        return document
    if isinstance(document, dict):
        records = document.get("hooks", [])
        if records is None:
            return []
        if isinstance(records, list):
            return records
    raise ValueError("hook 設定必須為陣列，或含 hooks 陣列的物件")


def build_hook_config(
    records: list[Any],
    *,
    source: str | None = None,
    default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
) -> HookConfig:
    """Validate every record; any failure rejects the whole batch with one ``LoadError``."""
    hooks: list[Hook] = []
    errors: dict[str, str] = {}
    seen: set[str] = set()
    for index, record in enumerate(records):
        label = f"#{index}"
        if isinstance(record, dict) and isinstance(record.get("id"), str) and record.get("id"):
            label = record["id"]
        if not isinstance(record, dict):
            errors[label] = "hook 必須為物件"
            continue
        if label in seen:
            errors[label] = "id 重複"
            continue
        seen.add(label)
        try:
            hooks.append(parse_hook(record, default_timeout_ms=default_timeout_ms))
        except ValueError as exc:
            errors[label] = str(exc)
    if errors:
        raise LoadError(errors, source=source)
    return HookConfig.build(hooks, source=source)


def load_hook_config(path: Path, *, default_timeout_ms: int = DEFAULT_TIMEOUT_MS) -> HookConfig:
    source = str(path)
    if not path.exists():
        logger.info("找不到 hook 設定檔 %s，使用空白設定", path)
        return HookConfig.build([], source=source)
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise LoadError({"<source>": f"讀取 hook 設定失敗：{exc}"}, source=source) from exc
    try:
        records = _extract_records(document)
    except ValueError as exc:
        raise LoadError({"<source>": str(exc)}, source=source) from exc
    return build_hook_config(records, source=source, default_timeout_ms=default_timeout_ms)

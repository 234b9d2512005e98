"""Configuration helpers for hookcore."""

from __future__ import annotations

import os
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

from .fs.atomic import atomic_write_text

DEFAULT_CONFIG: dict[str, Any] = {
    "hookcore": {
        "data_dir": "~/.claude",
    },
    "hooks": {
        "enabled": True,
        "path": None,
        "default_timeout_ms": 10_000,
    },
    "commands": {
        "enabled": True,
        "max_workers": 4,
    },
    "bus": {
        "buffer_size": 1024,
    },
    "observations": {
        "path": None,
        "flush_interval_s": 1.0,
        "flush_every": 32,
    },
    "sessions": {
        "max_snapshots": 20,
        "compact_threshold": 50,
        "compact_reminder_every": 25,
        "min_session_messages": 8,
    },
    "server": {
        "host": "127.0.0.1",
        "port": 8765,
    },
}

HOOKS_CONFIG_NAMES = ("hooks.json", "hooks.yaml", "hooks.yml")
MAX_PARENT_SEARCH = 8

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def deep_merge(base: dict[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    merged = deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise RuntimeError(f"讀取設定檔失敗：{path}") from exc
    if not isinstance(data, dict):
        raise RuntimeError(f"設定檔必須為物件：{path}")
    return data


def write_yaml(path: Path, data: dict[str, Any]) -> None:
    try:
        atomic_write_text(path, yaml.safe_dump(data, allow_unicode=True, sort_keys=False), encoding="utf-8")
    except OSError as exc:
        raise RuntimeError(f"寫入設定檔失敗：{path}") from exc


def set_config_value(config: dict[str, Any], key_path: str, value: Any) -> dict[str, Any]:
    parts = key_path.split(".")
    cursor = config
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[parts[-1]] = value
    return config


def get_config_value(config: dict[str, Any], key_path: str) -> Any:
    cursor: Any = config
    for part in key_path.split("."):
        if not isinstance(cursor, dict) or part not in cursor:
            raise KeyError(f"找不到設定鍵：{key_path}")
        cursor = cursor[part]
    return cursor


def _env_flag(value: str | None) -> bool | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return None


def env_overrides(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Translate the supported environment variables into a config overlay."""
    env = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}
    if env.get("HOOKCORE_HOOKS_PATH"):
        set_config_value(overrides, "hooks.path", env["HOOKCORE_HOOKS_PATH"])
    if env.get("HOOKCORE_OBSERVATIONS_PATH"):
        set_config_value(overrides, "observations.path", env["HOOKCORE_OBSERVATIONS_PATH"])
    disable_commands = _env_flag(env.get("HOOKCORE_DISABLE_COMMANDS"))
    if disable_commands is not None:
        set_config_value(overrides, "commands.enabled", not disable_commands)
    hooks_enabled = _env_flag(env.get("HOOKCORE_HOOKS_ENABLED"))
    if hooks_enabled is not None:
        set_config_value(overrides, "hooks.enabled", hooks_enabled)
    for env_key, key_path in (
        ("COMPACT_THRESHOLD", "sessions.compact_threshold"),
        ("CLAUDE_MIN_SESSION_MESSAGES", "sessions.min_session_messages"),
    ):
        raw = env.get(env_key)
        if raw is None:
            continue
        try:
            set_config_value(overrides, key_path, int(raw))
        except ValueError:
            continue
    return overrides


def _assign_sources(value: Any, source: str) -> Any:
    if isinstance(value, dict):
        return {key: _assign_sources(val, source) for key, val in value.items()}
    return source


def _merge_with_sources(
    base: dict[str, Any],
    sources: dict[str, Any],
    updates: Mapping[str, Any],
    source: str,
) -> None:
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict) and isinstance(sources.get(key), dict):
            _merge_with_sources(base[key], sources[key], value, source)
        else:
            base[key] = value
            sources[key] = _assign_sources(value, source)


def annotate_config(effective: Any, sources: Any) -> Any:
    if isinstance(effective, dict) and isinstance(sources, dict):
        return {key: annotate_config(effective[key], sources.get(key)) for key in effective}
    return {"value": effective, "source": sources}


def resolve_data_dir(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    env_path = env.get("HOOKCORE_HOME")
    if env_path:
        return Path(env_path).expanduser()
    return Path(DEFAULT_CONFIG["hookcore"]["data_dir"]).expanduser()


def find_project_hooks_config(start: Path | None = None) -> Path | None:
    """Nearest ``.claude/hooks/hooks.{json,yaml}`` walking up from ``start``."""
    current = (start or Path.cwd()).resolve()
    for _ in range(MAX_PARENT_SEARCH):
        for name in HOOKS_CONFIG_NAMES:
            candidate = current / ".claude" / "hooks" / name
            if candidate.exists():
                return candidate
        if current.parent == current:
            break
        current = current.parent
    return None


@dataclass
class ConfigResolution:
    effective: dict[str, Any]
    sources: dict[str, Any]

    def annotated(self) -> dict[str, Any]:
        return annotate_config(self.effective, self.sources)


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    hooks_path: Path
    observations_path: Path
    hooks_enabled: bool = True
    commands_enabled: bool = True
    default_timeout_ms: int = 10_000
    max_workers: int = 4
    bus_buffer_size: int = 1024
    flush_interval_s: float = 1.0
    flush_every: int = 32
    max_snapshots: int = 20
    compact_threshold: int = 50
    compact_reminder_every: int = 25
    min_session_messages: int = 8
    server_host: str = "127.0.0.1"
    server_port: int = 8765


class ConfigLoader:
    def __init__(self, data_dir: Path | None = None, environ: Mapping[str, str] | None = None) -> None:
        self.environ = os.environ if environ is None else environ
        self.data_dir = data_dir or resolve_data_dir(self.environ)

    def load_global(self) -> dict[str, Any]:
        return read_yaml(self._global_config_path())

    def resolve(self, cli_overrides: Mapping[str, Any] | None = None) -> ConfigResolution:
        effective = deepcopy(DEFAULT_CONFIG)
        sources = _assign_sources(DEFAULT_CONFIG, "default")

        _merge_with_sources(effective, sources, self.load_global(), "global")
        _merge_with_sources(effective, sources, env_overrides(self.environ), "env")
        if cli_overrides:
            _merge_with_sources(effective, sources, cli_overrides, "cli")

        return ConfigResolution(effective=effective, sources=sources)

    def settings(self, cli_overrides: Mapping[str, Any] | None = None) -> Settings:
        effective = self.resolve(cli_overrides).effective
        hooks_cfg = effective["hooks"]
        observations_cfg = effective["observations"]
        sessions_cfg = effective["sessions"]
        return Settings(
            data_dir=self.data_dir,
            hooks_path=self._resolve_hooks_path(hooks_cfg.get("path")),
            observations_path=self._resolve_path(observations_cfg.get("path"), "observations.jsonl"),
            hooks_enabled=bool(hooks_cfg.get("enabled", True)),
            commands_enabled=bool(effective["commands"].get("enabled", True)),
            default_timeout_ms=int(hooks_cfg.get("default_timeout_ms", 10_000)),
            max_workers=int(effective["commands"].get("max_workers", 4)),
            bus_buffer_size=int(effective["bus"].get("buffer_size", 1024)),
            flush_interval_s=float(observations_cfg.get("flush_interval_s", 1.0)),
            flush_every=int(observations_cfg.get("flush_every", 32)),
            max_snapshots=int(sessions_cfg.get("max_snapshots", 20)),
            compact_threshold=int(sessions_cfg.get("compact_threshold", 50)),
            compact_reminder_every=int(sessions_cfg.get("compact_reminder_every", 25)),
            min_session_messages=int(sessions_cfg.get("min_session_messages", 8)),
            server_host=str(effective["server"].get("host", "127.0.0.1")),
            server_port=int(effective["server"].get("port", 8765)),
        )

    def _global_config_path(self) -> Path:
        return self.data_dir / "config.yaml"

    def _resolve_path(self, value: Any, default_name: str) -> Path:
        if value:
            return Path(str(value)).expanduser()
        return self.data_dir / default_name

    def _resolve_hooks_path(self, value: Any) -> Path:
        if value:
            return Path(str(value)).expanduser()
        project_config = find_project_hooks_config()
        if project_config is not None:
            return project_config
        return self.data_dir / "hooks" / "hooks.json"


def load_settings(
    data_dir: Path | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    return ConfigLoader(data_dir=data_dir, environ=environ).settings(cli_overrides)

"""Command line interface for hookcore."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

import yaml

from .config import ConfigLoader, read_yaml, set_config_value, write_yaml
from .core import HookCore
from .events.observation_log import tail_observations
from .events.types import Event, EventKind
from .hooks.errors import LoadError
from .hooks.loader import load_hook_config
from .logging_utils import setup_logger

EXIT_BLOCKED = 2

logger = logging.getLogger("hookcore.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hookcore", description="hookcore 事件驅動 hook 核心 CLI")
    parser.add_argument(
        "--data-dir",
        default=None,
        help="指定資料夾位置（預設 HOOKCORE_HOME 或 ~/.claude）",
    )

    subparsers = parser.add_subparsers(dest="command")

    hook_parser = subparsers.add_parser("hook", help="從 stdin 讀取事件 context 並派送")
    hook_parser.add_argument("--event", required=True, help="事件類型，例如 PreToolUse")
    hook_parser.add_argument("--config", help="hook 設定檔路徑")
    hook_parser.add_argument("--json", action="store_true", help="以 JSON 輸出派送結果")

    hooks_parser = subparsers.add_parser("hooks", help="hook 設定管理")
    hooks_sub = hooks_parser.add_subparsers(dest="hooks_command")
    hooks_list = hooks_sub.add_parser("list", help="列出 hook")
    hooks_list.add_argument("--config", help="hook 設定檔路徑")
    hooks_list.add_argument("--json", action="store_true", help="以 JSON 輸出")
    hooks_validate = hooks_sub.add_parser("validate", help="驗證 hook 設定檔")
    hooks_validate.add_argument("--config", help="hook 設定檔路徑")

    observations_parser = subparsers.add_parser("observations", help="observation log")
    observations_sub = observations_parser.add_subparsers(dest="observations_command")
    observations_tail = observations_sub.add_parser("tail", help="顯示最後幾筆 observation")
    observations_tail.add_argument("-n", "--lines", type=int, default=20, help="筆數")
    observations_tail.add_argument("--path", help="observation log 路徑")

    config_parser = subparsers.add_parser("config", help="設定管理")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_show = config_sub.add_parser("show", help="顯示合併後設定")
    config_show.add_argument("--sources", action="store_true", help="同時顯示設定來源")
    config_set = config_sub.add_parser("set", help="更新全域設定")
    config_set.add_argument("key", help="設定鍵，例如 sessions.compact_threshold")
    config_set.add_argument("value", help="設定值（以 YAML 解析）")

    serve_parser = subparsers.add_parser("serve", help="啟動 admin API")
    serve_parser.add_argument("--host", help="綁定位址")
    serve_parser.add_argument("--port", type=int, help="埠號")
    serve_parser.add_argument("--config", help="hook 設定檔路徑")

    return parser


def _loader(args: argparse.Namespace) -> ConfigLoader:
    data_dir = Path(args.data_dir).expanduser() if args.data_dir else None
    return ConfigLoader(data_dir=data_dir)


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if getattr(args, "config", None):
        set_config_value(overrides, "hooks.path", args.config)
    return overrides


def _read_stdin_context() -> dict[str, Any]:
    raw = sys.stdin.read()
    if not raw.strip():
        return {}
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("stdin 必須為 JSON 物件")
    return payload


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return

    loader = _loader(args)
    setup_logger("hookcore", loader.data_dir / "logs", stream_level=logging.WARNING)

    try:
        if args.command == "hook":
            code = _handle_hook(loader, args)
            if code:
                sys.exit(code)
        elif args.command == "hooks":
            _handle_hooks(loader, args)
        elif args.command == "observations":
            _handle_observations(loader, args)
        elif args.command == "config":
            _handle_config(loader, args)
        elif args.command == "serve":
            _handle_serve(loader, args)
        else:
            parser.print_help()
    except LoadError as exc:
        print(f"hook 設定無效：{exc.source or ''}", file=sys.stderr)
        for hook_id, reason in exc.errors.items():
            print(f"  {hook_id}: {reason}", file=sys.stderr)
        sys.exit(1)
    except Exception as exc:  # noqa: BLE001
        logger.error("執行失敗：%s", exc, exc_info=True)
        print("發生錯誤，請查看 logs/hookcore.log 取得詳細資訊。", file=sys.stderr)
        sys.exit(1)


def _handle_hook(loader: ConfigLoader, args: argparse.Namespace) -> int:
    kind = EventKind.parse(args.event)
    context = _read_stdin_context()
    core = HookCore(loader.settings(_overrides(args))).start()
    try:
        result = core.dispatch(Event.create(kind, context))
    finally:
        core.shutdown(reason="cli", dispatch_stop=False)

    if args.json:
        print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    for outcome in result.outcomes.values():
        text = outcome.output or (outcome.reason if outcome.failed else "")
        if text:
            print(text, file=sys.stderr)
    if result.failed:
        print(f"[hookcore] blocked by hook {result.failed_hook_id}", file=sys.stderr)
        return EXIT_BLOCKED
    return 0


def _handle_hooks(loader: ConfigLoader, args: argparse.Namespace) -> None:
    settings = loader.settings(_overrides(args))
    if args.hooks_command == "validate":
        config = load_hook_config(settings.hooks_path, default_timeout_ms=settings.default_timeout_ms)
        print(f"設定有效：{settings.hooks_path}（{len(config)} 個 hook）")
        return
    if args.hooks_command == "list":
        config = load_hook_config(settings.hooks_path, default_timeout_ms=settings.default_timeout_ms)
        hooks = [hook.describe() for hook in config.hooks]
        if args.json:
            print(json.dumps(hooks, ensure_ascii=False, indent=2))
            return
        if not hooks:
            print("尚無 hook")
            return
        for item in hooks:
            state = "on " if item["enabled"] else "off"
            blocking = " blocking" if item["blocking"] else ""
            action = item["action"].get("name") or item["action"].get("path")
            matcher = item["matcher"] or "*"
            print(f"[{state}] {item['event']:<12} {item['order']:>4} {item['id']}  {action}{blocking}  ({matcher})")
        return
    print("請指定子命令：list 或 validate", file=sys.stderr)


def _handle_observations(loader: ConfigLoader, args: argparse.Namespace) -> None:
    if args.observations_command != "tail":
        print("請指定子命令：tail", file=sys.stderr)
        return
    path = Path(args.path).expanduser() if args.path else loader.settings().observations_path
    for record in tail_observations(path, args.lines):
        print(json.dumps(record, ensure_ascii=False))


def _handle_config(loader: ConfigLoader, args: argparse.Namespace) -> None:
    if args.config_command == "set":
        path = loader.data_dir / "config.yaml"
        config = read_yaml(path)
        set_config_value(config, args.key, yaml.safe_load(args.value))
        write_yaml(path, config)
        print(f"已更新 {args.key}")
        return
    resolution = loader.resolve()
    payload = resolution.annotated() if getattr(args, "sources", False) else resolution.effective
    print(yaml.safe_dump(payload, allow_unicode=True, sort_keys=False))


def _handle_serve(loader: ConfigLoader, args: argparse.Namespace) -> None:
    from .app import serve

    settings = loader.settings(_overrides(args))
    core = HookCore(settings).start()
    serve(core, host=args.host or settings.server_host, port=args.port or settings.server_port)


if __name__ == "__main__":
    main()

import json
import tempfile
import unittest
from pathlib import Path

import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from hookcore.events.types import EventKind
from hookcore.hooks.errors import LoadError
from hookcore.hooks.loader import build_hook_config, load_hook_config
from hookcore.hooks.registry import HookRegistry
from hookcore.hooks.types import BuiltinAction, CommandAction


VALID_YAML = "\n".join(
    [
        "hooks:",
        "  - id: remind-push",
        "    event: PreToolUse",
        "    matcher: 'tool.name == \"bash\" && tool.args matches \"git push\"'",
        "    order: 5",
        "    action:",
        "      type: builtin",
        "      name: git_push_reminder",
        "  - id: block-docs",
        "    event: pre_tool_use",
        "    blocking: true",
        "    order: 5",
        "    action:",
        "      type: builtin",
        "      name: block_doc_creation",
        "  - id: format",
        "    event: PostToolUse",
        "    timeoutMs: 2500",
        "    action:",
        "      type: command",
        "      path: /usr/bin/true",
        "      args: [--check, 1]",
        "  - id: disabled-one",
        "    event: PreToolUse",
        "    enabled: false",
        "    order: -1",
        "    action:",
        "      type: builtin",
        "      name: tmux_reminder",
    ]
)


class HookLoaderTests(unittest.TestCase):
    def test_load_yaml_orders_and_indexes_enabled_hooks(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "hooks.yaml"
            path.write_text(VALID_YAML, encoding="utf-8")

            config = load_hook_config(path)

            self.assertEqual(len(config), 4)
            self.assertEqual(config.source, str(path))
            pre_ids = [hook.hook_id for hook in config.hooks_for(EventKind.PRE_TOOL_USE)]
            self.assertEqual(pre_ids, ["block-docs", "remind-push"])
            self.assertEqual(config.hooks_for(EventKind.STOP), ())

            fmt = config.get("format")
            assert fmt is not None
            self.assertIsInstance(fmt.action, CommandAction)
            self.assertEqual(fmt.action.args, ("--check", "1"))
            self.assertEqual(fmt.timeout_ms, 2500)
            self.assertIsNone(fmt.matcher)

            block = config.get("block-docs")
            assert block is not None
            self.assertTrue(block.blocking)
            self.assertIsInstance(block.action, BuiltinAction)
            self.assertEqual(block.timeout_ms, 10_000)

            disabled = config.get("disabled-one")
            assert disabled is not None
            self.assertFalse(disabled.enabled)

    def test_load_json_list(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "hooks.json"
            path.write_text(
                json.dumps(
                    [
                        {
                            "id": "start",
                            "event": "SessionStart",
                            "action": {"type": "builtin", "name": "session_start"},
                        }
                    ]
                ),
                encoding="utf-8",
            )
            config = load_hook_config(path, default_timeout_ms=500)
            hook = config.get("start")
            assert hook is not None
            self.assertEqual(hook.event, EventKind.SESSION_START)
            self.assertEqual(hook.timeout_ms, 500)
            self.assertFalse(hook.blocking)
            self.assertEqual(hook.order, 0)
            self.assertTrue(hook.enabled)
            self.assertEqual(hook.describe()["action"], {"type": "builtin", "name": "session_start"})

    def test_missing_file_yields_empty_config(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config = load_hook_config(Path(temp_dir) / "nope.json")
            self.assertEqual(len(config), 0)

    def test_errors_are_aggregated_per_hook(self) -> None:
        records = [
            {"id": "bad-matcher", "event": "PreToolUse", "matcher": "tool.name ==", "action": {"type": "builtin", "name": "git_push_reminder"}},
            {"id": "bad-builtin", "event": "PreToolUse", "action": {"type": "builtin", "name": "does_not_exist"}},
            {"id": "bad-event", "event": "Whenever", "action": {"type": "builtin", "name": "git_push_reminder"}},
            {"id": "bad-timeout", "event": "Stop", "timeoutMs": 0, "action": {"type": "command", "path": "x"}},
            {"event": "Stop", "action": {"type": "command", "path": "x"}},
            {"id": "fine", "event": "Stop", "action": {"type": "command", "path": "x"}},
        ]
        with self.assertRaises(LoadError) as ctx:
            build_hook_config(records, source="inline")

        errors = ctx.exception.errors
        self.assertEqual(set(errors), {"bad-matcher", "bad-builtin", "bad-event", "bad-timeout", "#4"})
        self.assertIn("matcher", errors["bad-matcher"])
        self.assertIn("does_not_exist", errors["bad-builtin"])
        self.assertEqual(ctx.exception.source, "inline")

    def test_non_finite_numbers_are_load_errors(self) -> None:
        records = [
            {"id": "inf-timeout", "event": "Stop", "timeoutMs": float("inf"), "action": {"type": "command", "path": "x"}},
            {"id": "nan-order", "event": "Stop", "order": float("nan"), "action": {"type": "command", "path": "x"}},
            {"id": "deep", "event": "Stop", "matcher": "(" * 400 + "a == 1" + ")" * 400, "action": {"type": "command", "path": "x"}},
        ]
        with self.assertRaises(LoadError) as ctx:
            build_hook_config(records)
        self.assertEqual(set(ctx.exception.errors), {"inf-timeout", "nan-order", "deep"})
        self.assertIn("timeoutMs", ctx.exception.errors["inf-timeout"])

        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "hooks.yaml"
            path.write_text(
                "hooks:\n  - id: inf\n    event: Stop\n    timeoutMs: .inf\n    action: {type: command, path: x}\n",
                encoding="utf-8",
            )
            with self.assertRaises(LoadError):
                load_hook_config(path)

    def test_duplicate_ids_are_rejected(self) -> None:
        record = {"id": "twice", "event": "Stop", "action": {"type": "command", "path": "x"}}
        with self.assertRaises(LoadError) as ctx:
            build_hook_config([record, dict(record)])
        self.assertEqual(list(ctx.exception.errors), ["twice"])

    def test_malformed_yaml_is_a_load_error(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "hooks.yaml"
            path.write_text("hooks: [unclosed", encoding="utf-8")
            with self.assertRaises(LoadError) as ctx:
                load_hook_config(path)
            self.assertIn("<source>", ctx.exception.errors)

            path.write_text("hooks: 3", encoding="utf-8")
            with self.assertRaises(LoadError):
                load_hook_config(path)


class HookRegistryTests(unittest.TestCase):
    def test_reload_failure_keeps_previous_snapshot(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "hooks.yaml"
            path.write_text(VALID_YAML, encoding="utf-8")
            registry = HookRegistry(path)
            registry.reload()
            before = registry.snapshot()

            path.write_text(
                "\n".join(
                    [
                        "- id: broken",
                        "  event: PreToolUse",
                        "  matcher: 'tool.name =='",
                        "  action: {type: builtin, name: git_push_reminder}",
                    ]
                ),
                encoding="utf-8",
            )
            with self.assertRaises(LoadError):
                registry.reload()

            self.assertIs(registry.snapshot(), before)
            self.assertEqual(len(registry.list_hooks()), 4)

    def test_snapshot_is_not_affected_by_later_reload(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "hooks.yaml"
            path.write_text(VALID_YAML, encoding="utf-8")
            registry = HookRegistry(path)
            registry.reload()
            held = registry.snapshot()

            path.write_text("hooks: []", encoding="utf-8")
            registry.reload()

            self.assertEqual(len(held), 4)
            self.assertEqual(len(registry.snapshot()), 0)
            self.assertEqual(len(held.hooks_for(EventKind.PRE_TOOL_USE)), 2)

    def test_set_enabled_swaps_snapshot(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "hooks.yaml"
            path.write_text(VALID_YAML, encoding="utf-8")
            registry = HookRegistry(path)
            registry.reload()
            before = registry.snapshot()

            hook = registry.set_enabled("remind-push", False)

            self.assertFalse(hook.enabled)
            self.assertIsNot(registry.snapshot(), before)
            self.assertEqual([h.hook_id for h in registry.hooks_for(EventKind.PRE_TOOL_USE)], ["block-docs"])
            self.assertEqual(len(before.hooks_for(EventKind.PRE_TOOL_USE)), 2)

            registry.set_enabled("disabled-one", True)
            self.assertEqual(
                [h.hook_id for h in registry.hooks_for(EventKind.PRE_TOOL_USE)],
                ["disabled-one", "block-docs"],
            )
            with self.assertRaises(KeyError):
                registry.set_enabled("unknown", True)

    def test_from_config_serves_immediately(self) -> None:
        config = build_hook_config(
            [{"id": "only", "event": "Stop", "action": {"type": "command", "path": "x"}}]
        )
        registry = HookRegistry.from_config(config)
        self.assertEqual([h.hook_id for h in registry.hooks_for(EventKind.STOP)], ["only"])
        self.assertIs(registry.reload(), config)


if __name__ == "__main__":
    unittest.main()

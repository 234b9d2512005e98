import sys
import tempfile
import threading
import unittest
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from hookcore.events.bus import LearningBus
from hookcore.events.types import Event
from hookcore.hooks.builtins import BUILTIN_HANDLERS, BuiltinContext
from hookcore.hooks.errors import ExecutionFailure, LoadError
from hookcore.hooks.loader import build_hook_config
from hookcore.hooks.registry import HookRegistry
from hookcore.hooks.runner import Dispatcher, run_command
from hookcore.hooks.types import (
    STATUS_DEFERRED,
    STATUS_FAILURE,
    STATUS_SKIPPED,
    STATUS_SUCCESS,
    STATUS_TIMED_OUT,
    CommandAction,
)
from hookcore.session_store import SessionStore


def _builtin_hook(hook_id: str, name: str, **extra) -> dict:
    record = {"id": hook_id, "event": "PreToolUse", "action": {"type": "builtin", "name": name}}
    record.update(extra)
    return record


def _python_hook(hook_id: str, code: str, **extra) -> dict:
    record = {
        "id": hook_id,
        "event": "PostToolUse",
        "action": {"type": "command", "path": sys.executable, "args": ["-c", code]},
    }
    record.update(extra)
    return record


class DispatcherTests(unittest.TestCase):
    def setUp(self) -> None:
        self._temp = tempfile.TemporaryDirectory()
        self.data_dir = Path(self._temp.name)
        self.calls: list[str] = []
        self.calls_lock = threading.Lock()
        self.bus = LearningBus(buffer_size=64)
        self.subscription = self.bus.subscribe("test")
        self.dispatchers: list[Dispatcher] = []

    def tearDown(self) -> None:
        for dispatcher in self.dispatchers:
            dispatcher.close()
        self.bus.close()
        self._temp.cleanup()

    def _recorder(self, name: str):
        def handler(event, ctx):
            with self.calls_lock:
                self.calls.append(name)
            return f"ran {name}"

        return handler

    @staticmethod
    def _failing(event, ctx):
        raise ExecutionFailure("vetoed")

    @staticmethod
    def _crashing(event, ctx):
        raise ZeroDivisionError("boom")

    def _handlers(self) -> dict:
        handlers = {f"rec-{name}": self._recorder(name) for name in ("a", "b", "c", "d")}
        handlers["fail"] = self._failing
        handlers["crash"] = self._crashing
        return handlers

    def _dispatcher(self, records: list[dict], **kwargs) -> Dispatcher:
        with patch.dict(BUILTIN_HANDLERS, self._handlers()):
            config = build_hook_config(records)
        registry = HookRegistry.from_config(config)
        context = BuiltinContext(session_store=SessionStore(), data_dir=self.data_dir)
        dispatcher = Dispatcher(registry, self.bus, context, **kwargs)
        self.dispatchers.append(dispatcher)
        return dispatcher

    def _drain(self) -> list:
        items = []
        while True:
            item = self.subscription.get(timeout=0)
            if item is None:
                return items
            items.append(item)

    def test_hooks_fire_in_order_then_id(self) -> None:
        dispatcher = self._dispatcher(
            [
                _builtin_hook("b", "rec-b", order=1),
                _builtin_hook("a", "rec-a", order=1),
                _builtin_hook("c", "rec-c", order=0),
                _builtin_hook("d", "rec-d", order=2),
            ]
        )
        result = dispatcher.dispatch(Event.create("PreToolUse", {}))

        self.assertEqual(self.calls, ["c", "a", "b", "d"])
        self.assertEqual(result.matched_hook_ids, ("c", "a", "b", "d"))
        self.assertEqual(result.outcomes["a"].output, "ran a")
        self.assertTrue(result.ok)

    def test_blocking_failure_halts_dispatch_and_is_published(self) -> None:
        dispatcher = self._dispatcher(
            [
                _builtin_hook("guard", "fail", blocking=True, order=0),
                _builtin_hook("after", "rec-a", order=1),
            ]
        )
        result = dispatcher.dispatch(Event.create("PreToolUse", {"tool": {"name": "edit"}}))

        self.assertTrue(result.failed)
        self.assertEqual(result.failed_hook_id, "guard")
        self.assertEqual(result.outcomes["guard"].status, STATUS_FAILURE)
        self.assertEqual(result.outcomes["guard"].reason, "vetoed")
        self.assertNotIn("after", result.outcomes)
        self.assertEqual(self.calls, [])

        observations = self._drain()
        self.assertEqual(len(observations), 1)
        self.assertEqual(observations[0].matched_hook_ids, ("guard",))
        self.assertEqual(observations[0].outcomes["guard"].status, STATUS_FAILURE)
        self.assertEqual(observations[0].sequence_number, result.sequence_number)

    def test_non_blocking_failure_continues(self) -> None:
        dispatcher = self._dispatcher(
            [
                _builtin_hook("soft", "crash", order=0),
                _builtin_hook("after", "rec-a", order=1),
            ]
        )
        result = dispatcher.dispatch(Event.create("PreToolUse", {}))

        self.assertFalse(result.failed)
        self.assertEqual(result.outcomes["soft"].status, STATUS_FAILURE)
        self.assertIn("ZeroDivisionError", result.outcomes["soft"].reason)
        self.assertEqual(result.outcomes["after"].status, STATUS_SUCCESS)
        self.assertEqual(self.calls, ["a"])

    def test_unmatched_hooks_are_skipped(self) -> None:
        dispatcher = self._dispatcher(
            [
                _builtin_hook("bash-only", "rec-a", matcher='tool.name == "bash"'),
                _builtin_hook("always", "rec-b"),
            ]
        )
        result = dispatcher.dispatch(Event.create("PreToolUse", {"tool": {"name": "edit"}}))

        self.assertEqual(result.matched_hook_ids, ("always",))
        self.assertEqual(result.outcomes["bash-only"].status, STATUS_SKIPPED)
        self.assertEqual(result.outcomes["bash-only"].reason, "not_matched")
        self.assertEqual(self.calls, ["b"])

    def test_other_event_kinds_are_ignored(self) -> None:
        dispatcher = self._dispatcher([_builtin_hook("pre", "rec-a")])
        result = dispatcher.dispatch(Event.create("Stop", {}))
        self.assertEqual(result.outcomes, {})
        self.assertEqual(self.calls, [])
        self.assertEqual(len(self._drain()), 1)

    def test_hooks_disabled_still_publishes(self) -> None:
        dispatcher = self._dispatcher([_builtin_hook("pre", "rec-a")], hooks_enabled=False)
        result = dispatcher.dispatch(Event.create("PreToolUse", {}))
        self.assertEqual(result.outcomes, {})
        self.assertEqual(self.calls, [])
        self.assertEqual(len(self._drain()), 1)

    def test_sequence_numbers_are_gap_free(self) -> None:
        dispatcher = self._dispatcher([_builtin_hook("pre", "rec-a")])
        results = [dispatcher.dispatch(Event.create("PreToolUse", {"i": index})) for index in range(5)]
        self.assertEqual([result.sequence_number for result in results], [1, 2, 3, 4, 5])
        self.assertEqual([obs.sequence_number for obs in self._drain()], [1, 2, 3, 4, 5])
        self.assertEqual(dispatcher.last_sequence_number, 5)

    def test_resume_after_continues_numbering(self) -> None:
        dispatcher = self._dispatcher([_builtin_hook("pre", "rec-a")])
        dispatcher.resume_after(41)
        dispatcher.resume_after(7)
        result = dispatcher.dispatch(Event.create("PreToolUse", {}))
        self.assertEqual(result.sequence_number, 42)

    def test_long_matcher_chain_dispatches(self) -> None:
        matcher = " || ".join(f"tool.name == t{index}" for index in range(1500))
        dispatcher = self._dispatcher([_builtin_hook("pre", "rec-a", matcher=matcher)])

        result = dispatcher.dispatch(Event.create("PreToolUse", {"tool": {"name": "t1499"}}))
        self.assertEqual(result.matched_hook_ids, ("pre",))
        result = dispatcher.dispatch(Event.create("PreToolUse", {"tool": {"name": "other"}}))
        self.assertEqual(result.matched_hook_ids, ())
        self.assertEqual(self.calls, ["a"])

    def test_concurrent_dispatch_keeps_log_order(self) -> None:
        dispatcher = self._dispatcher([_builtin_hook("pre", "rec-a")])

        def worker() -> None:
            for _ in range(10):
                dispatcher.dispatch(Event.create("PreToolUse", {}))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual([obs.sequence_number for obs in self._drain()], list(range(1, 41)))

    def test_blocking_command_success_reads_context(self) -> None:
        code = "import json, sys; data = json.load(sys.stdin); print(data['tool']['name'])"
        dispatcher = self._dispatcher([_python_hook("echo", code, blocking=True)])
        result = dispatcher.dispatch(Event.create("PostToolUse", {"tool": {"name": "bash"}}))

        self.assertEqual(result.outcomes["echo"].status, STATUS_SUCCESS)
        self.assertEqual(result.outcomes["echo"].output, "bash")

    def test_blocking_command_timeout_halts(self) -> None:
        dispatcher = self._dispatcher(
            [
                _python_hook("slow", "import time; time.sleep(5)", blocking=True, timeoutMs=200),
                _python_hook("next", "print('x')", blocking=True, order=1),
            ]
        )
        result = dispatcher.dispatch(Event.create("PostToolUse", {}))

        self.assertTrue(result.failed)
        self.assertEqual(result.failed_hook_id, "slow")
        self.assertEqual(result.outcomes["slow"].status, STATUS_TIMED_OUT)
        self.assertNotIn("next", result.outcomes)

    def test_commands_disabled_are_skipped(self) -> None:
        dispatcher = self._dispatcher(
            [_python_hook("cmd", "print('x')", blocking=True)],
            commands_enabled=False,
        )
        result = dispatcher.dispatch(Event.create("PostToolUse", {}))

        self.assertFalse(result.failed)
        self.assertEqual(result.matched_hook_ids, ("cmd",))
        self.assertEqual(result.outcomes["cmd"].status, STATUS_SKIPPED)
        self.assertEqual(result.outcomes["cmd"].reason, "commands_disabled")

    def test_non_blocking_command_publishes_follow_up(self) -> None:
        dispatcher = self._dispatcher([_python_hook("later", "print('done')")])
        result = dispatcher.dispatch(Event.create("PostToolUse", {}))

        self.assertEqual(result.outcomes["later"].status, STATUS_DEFERRED)
        self.assertTrue(dispatcher.wait_for_deferred(timeout=10))

        observations = self._drain()
        self.assertEqual(len(observations), 2)
        first, follow_up = observations
        self.assertEqual(first.sequence_number, result.sequence_number)
        self.assertIsNone(first.follow_up_of)
        self.assertEqual(follow_up.follow_up_of, result.sequence_number)
        self.assertEqual(follow_up.outcomes["later"].status, STATUS_SUCCESS)
        self.assertEqual(follow_up.outcomes["later"].output, "done")

    def test_command_runner_exception_is_a_failure(self) -> None:
        def broken_runner(action, event, timeout_ms):
            raise RuntimeError("runner down")

        dispatcher = self._dispatcher(
            [_python_hook("cmd", "print('x')", blocking=True)],
            command_runner=broken_runner,
        )
        result = dispatcher.dispatch(Event.create("PostToolUse", {}))
        self.assertTrue(result.failed)
        self.assertIn("runner down", result.outcomes["cmd"].reason)

    def test_reload_with_malformed_config_keeps_dispatching(self) -> None:
        path = self.data_dir / "hooks.yaml"
        path.write_text(
            "\n".join(
                [
                    "- id: remind",
                    "  event: PreToolUse",
                    "  matcher: 'tool.name == \"bash\"'",
                    "  action: {type: builtin, name: rec-a}",
                ]
            ),
            encoding="utf-8",
        )
        with patch.dict(BUILTIN_HANDLERS, self._handlers()):
            registry = HookRegistry(path)
            registry.reload()
            path.write_text(
                "- id: remind\n  event: PreToolUse\n  matcher: 'tool.name =='\n  action: {type: builtin, name: rec-a}\n",
                encoding="utf-8",
            )
            with self.assertRaises(LoadError):
                registry.reload()

        context = BuiltinContext(session_store=SessionStore(), data_dir=self.data_dir)
        dispatcher = Dispatcher(registry, self.bus, context)
        self.dispatchers.append(dispatcher)
        result = dispatcher.dispatch(Event.create("PreToolUse", {"tool": {"name": "bash"}}))

        self.assertEqual(result.matched_hook_ids, ("remind",))
        self.assertEqual(self.calls, ["a"])


class RunCommandTests(unittest.TestCase):
    def test_non_zero_exit_uses_stderr(self) -> None:
        action = CommandAction(sys.executable, ("-c", "import sys; sys.stderr.write('nope'); sys.exit(3)"))
        result = run_command(action, Event.create("Stop", {}), 5000)
        self.assertEqual(result.status, STATUS_FAILURE)
        self.assertEqual(result.reason, "nope")

    def test_exit_code_reason_when_stderr_empty(self) -> None:
        action = CommandAction(sys.executable, ("-c", "import sys; sys.exit(4)"))
        result = run_command(action, Event.create("Stop", {}), 5000)
        self.assertEqual(result.reason, "exit code 4")

    def test_event_kind_is_exported(self) -> None:
        action = CommandAction(sys.executable, ("-c", "import os; print(os.environ['HOOKCORE_EVENT'])"))
        result = run_command(action, Event.create("SessionEnd", {}), 5000)
        self.assertEqual(result.output, "SessionEnd")

    def test_missing_executable_is_a_failure(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            action = CommandAction(str(Path(temp_dir) / "missing-binary"))
            result = run_command(action, Event.create("Stop", {}), 1000)
        self.assertEqual(result.status, STATUS_FAILURE)
        self.assertTrue(result.failed)


if __name__ == "__main__":
    unittest.main()

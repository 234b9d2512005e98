"""In-process hook handlers.

Every handler takes ``(event, context)`` and returns the text it wants surfaced
to the host.  A handler reports a veto or an error by raising
``ExecutionFailure``; the runner turns that into a ``Failure`` outcome.
"""

from __future__ import annotations

import json
import os
import re
import subprocess
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Mapping

from hookcore.events.types import Event
from hookcore.fs.atomic import atomic_write_json
from hookcore.session_store import SessionStore

from .errors import ExecutionFailure
from .types import BuiltinHandler
from .utils import first_value


_ALLOWED_DOCS_RE = re.compile(r"(README|CLAUDE|AGENTS|CONTRIBUTING)\.md$")
_PR_URL_RE = re.compile(r"https://github\.com/[^/]+/[^/]+/pull/\d+")
_SCRIPT_SUFFIXES = (".js", ".jsx", ".ts", ".tsx")
_FILENAME_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_.-]")
RECENT_SESSION_DAYS = 7


@dataclass
class BuiltinContext:
    session_store: SessionStore
    data_dir: Path
    compact_threshold: int = 50
    compact_reminder_every: int = 25
    min_session_messages: int = 8
    environ: Mapping[str, str] = field(default_factory=lambda: os.environ)

    @property
    def sessions_dir(self) -> Path:
        return self.data_dir / "sessions"

    @property
    def learned_skills_dir(self) -> Path:
        return self.data_dir / "skills" / "learned"

    @property
    def counters_dir(self) -> Path:
        return self.sessions_dir / "counters"

    def session_id(self, event: Event) -> str | None:
        value = first_value(event.context, "session_id", "session.id")
        if value:
            return str(value)
        return self.environ.get("CLAUDE_SESSION_ID") or None


BUILTIN_HANDLERS: dict[str, BuiltinHandler] = {}


def builtin(name: str) -> Callable[[BuiltinHandler], BuiltinHandler]:
    def register(func: BuiltinHandler) -> BuiltinHandler:
        BUILTIN_HANDLERS[name] = func
        return func

    return register


def resolve_builtin(name: str) -> BuiltinHandler:
    try:
        return BUILTIN_HANDLERS[name]
    except KeyError as exc:
        raise KeyError(f"未知的 builtin：{name}") from exc


def _tool_file_path(event: Event) -> str:
    value = first_value(event.context, "tool_input.file_path", "tool.input.file_path", "tool.args.file_path")
    return str(value) if value else ""


def _count_learned_skills(learned_dir: Path) -> int:
    if not learned_dir.exists():
        return 0
    count = 0
    for path in learned_dir.glob("*.md"):
        if path.is_file():
            count += 1
    for path in learned_dir.glob("*/*.md"):
        if path.is_file():
            count += 1
    return count


def _recent_session_files(sessions_dir: Path, now: datetime) -> list[Path]:
    if not sessions_dir.exists():
        return []
    cutoff = (now - timedelta(days=RECENT_SESSION_DAYS)).timestamp()
    recent = [path for path in sessions_dir.iterdir() if path.is_file() and path.stat().st_mtime > cutoff]
    return sorted(recent)


@builtin("session_start")
def session_start(event: Event, ctx: BuiltinContext) -> str:
    try:
        ctx.sessions_dir.mkdir(parents=True, exist_ok=True)
        ctx.learned_skills_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ExecutionFailure(f"建立 session 資料夾失敗：{exc}") from exc

    recent = _recent_session_files(ctx.sessions_dir, datetime.now())
    learned_count = _count_learned_skills(ctx.learned_skills_dir)
    session_id = ctx.session_id(event) or uuid.uuid4().hex
    ctx.session_store.on_session_start(session_id, learned_skill_count=learned_count)

    lines: list[str] = []
    if recent:
        lines.append(f"[SessionStart] Found {len(recent)} recent session(s)")
        lines.append(f"[SessionStart] Latest: {recent[-1]}")
    if learned_count:
        lines.append(f"[SessionStart] {learned_count} learned skill(s) available")
    return "\n".join(lines)


@builtin("session_end")
def session_end(event: Event, ctx: BuiltinContext) -> str:
    session_id = ctx.session_id(event) or uuid.uuid4().hex
    snapshot = ctx.session_store.on_session_end(session_id)
    short = session_id[:8]
    path = ctx.sessions_dir / f"{datetime.now().strftime('%Y-%m-%d')}-{short}-session.json"
    try:
        atomic_write_json(path, snapshot.to_dict())
    except OSError as exc:
        raise ExecutionFailure(f"寫入 session 檔案失敗：{exc}") from exc
    return f"[SessionEnd] Saved {path}"


def _counter_path(ctx: BuiltinContext, session_id: str) -> Path:
    return ctx.counters_dir / f"tool-calls-{_FILENAME_UNSAFE_RE.sub('_', session_id)}.json"


def _read_tool_call_count(path: Path) -> int:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return 0
    count = payload.get("tool_call_count") if isinstance(payload, dict) else None
    return count if isinstance(count, int) and count > 0 else 0


@builtin("pre_compact")
def pre_compact(event: Event, ctx: BuiltinContext) -> str:
    session_id = ctx.session_id(event) or "default"
    advice = ctx.session_store.on_pre_compact(
        session_id,
        threshold=ctx.compact_threshold,
        at_least=_read_tool_call_count(_counter_path(ctx, session_id)),
    )
    path = ctx.sessions_dir / f"pre-compact-{_FILENAME_UNSAFE_RE.sub('_', session_id)}.json"
    payload = {
        "session_id": session_id,
        "timestamp": datetime.now().astimezone().isoformat(timespec="seconds"),
        "tool": first_value(event.context, "tool_name", "tool.name", "tool"),
        "tool_call_count": advice.tool_call_count,
    }
    try:
        atomic_write_json(path, payload)
    except OSError as exc:
        raise ExecutionFailure(f"寫入 pre-compact 檔案失敗：{exc}") from exc
    lines = [f"[PreCompact] Saved {path}"]
    if advice.suggest:
        lines.append(f"[PreCompact] {advice.tool_call_count} tool calls this session, compaction recommended")
    return "\n".join(lines)


@builtin("suggest_compact")
def suggest_compact(event: Event, ctx: BuiltinContext) -> str:
    session_id = ctx.session_id(event) or "default"
    # The counter file carries the count across short-lived processes.
    path = _counter_path(ctx, session_id)
    count = ctx.session_store.record_tool_call(session_id, at_least=_read_tool_call_count(path))
    try:
        atomic_write_json(path, {"session_id": session_id, "tool_call_count": count})
    except OSError as exc:
        raise ExecutionFailure(f"寫入工具呼叫計數失敗：{exc}") from exc
    threshold = ctx.compact_threshold
    if count >= threshold and (count - threshold) % max(ctx.compact_reminder_every, 1) == 0:
        return "[Hook] Consider /compact to keep context focused"
    return ""


@builtin("evaluate_session")
def evaluate_session(event: Event, ctx: BuiltinContext) -> str:
    transcript = first_value(event.context, "transcript_path") or ctx.environ.get("CLAUDE_TRANSCRIPT_PATH")
    if not transcript:
        return "[Evaluate] No transcript path"
    try:
        payload = json.loads(Path(str(transcript)).read_text(encoding="utf-8"))
    except OSError:
        return "[Evaluate] Transcript not readable"
    except json.JSONDecodeError:
        return "[Evaluate] Transcript invalid JSON"

    messages = payload.get("messages") if isinstance(payload, dict) else None
    user_messages = 0
    if isinstance(messages, list):
        user_messages = sum(1 for msg in messages if isinstance(msg, dict) and msg.get("role") == "user")
    if user_messages < ctx.min_session_messages:
        return "[Evaluate] Session too short"

    session_id = ctx.session_id(event) or uuid.uuid4().hex
    now = datetime.now().astimezone()
    path = ctx.learned_skills_dir / f"learned-{now.strftime('%Y-%m-%d')}-{session_id[:8]}.md"
    body = (
        "# Learned Pattern\n\n"
        f"- session_id: {session_id}\n"
        f"- user_messages: {user_messages}\n"
        f"- extracted_at: {now.isoformat(timespec='seconds')}\n"
    )
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(body, encoding="utf-8")
    except OSError as exc:
        raise ExecutionFailure(f"寫入 learned 檔案失敗：{exc}") from exc
    return f"[Evaluate] Learned pattern saved: {path}"


@builtin("warn_console_log")
def warn_console_log(event: Event, ctx: BuiltinContext) -> str:
    path = _tool_file_path(event)
    if not path:
        return ""
    try:
        content = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return ""
    hits = [f"{index}: {line.strip()}" for index, line in enumerate(content.splitlines(), start=1) if "console.log" in line]
    if not hits:
        return ""
    return "\n".join([f"[Hook] WARNING: console.log found in {path}", *hits[:5]])


@builtin("check_console_log")
def check_console_log(event: Event, ctx: BuiltinContext) -> str:
    cwd = first_value(event.context, "cwd")
    try:
        result = subprocess.run(
            ["git", "diff", "--name-only"],
            cwd=str(cwd) if cwd else None,
            text=True,
            capture_output=True,
            check=False,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired):
        return "[Hook] git not available"
    base = Path(str(cwd)) if cwd else Path.cwd()
    lines: list[str] = []
    for name in result.stdout.splitlines():
        if not name.endswith(_SCRIPT_SUFFIXES):
            continue
        try:
            content = (base / name).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        if "console.log" in content:
            lines.append(f"[Hook] console.log found: {name}")
    return "\n".join(lines)


@builtin("block_doc_creation")
def block_doc_creation(event: Event, ctx: BuiltinContext) -> str:
    path = _tool_file_path(event)
    if path.endswith((".md", ".txt")) and not _ALLOWED_DOCS_RE.search(path):
        raise ExecutionFailure(f"[Hook] BLOCKED: Unnecessary documentation file creation: {path}")
    return ""


@builtin("tmux_dev_block")
def tmux_dev_block(event: Event, ctx: BuiltinContext) -> str:
    if not ctx.environ.get("TMUX"):
        raise ExecutionFailure("[Hook] BLOCKED: Dev server should run in tmux")
    return ""


@builtin("tmux_reminder")
def tmux_reminder(event: Event, ctx: BuiltinContext) -> str:
    if not ctx.environ.get("TMUX"):
        return "[Hook] Consider running in tmux for session persistence"
    return ""


@builtin("git_push_reminder")
def git_push_reminder(event: Event, ctx: BuiltinContext) -> str:
    return "[Hook] Review changes before push"


@builtin("pr_create_notice")
def pr_create_notice(event: Event, ctx: BuiltinContext) -> str:
    output: Any = first_value(event.context, "tool_output.output", "tool.output")
    match = _PR_URL_RE.search(str(output or ""))
    if match:
        return f"[Hook] PR created: {match.group(0)}"
    return ""

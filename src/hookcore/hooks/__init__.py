"""Hook system for hookcore."""

from .errors import ExecutionFailure, HookError, LoadError, ParseError
from .loader import build_hook_config, load_hook_config, parse_hook
from .matcher import compile_matcher, evaluate
from .registry import HookRegistry
from .runner import Dispatcher, run_command
from .types import (
    BuiltinAction,
    CommandAction,
    DispatchResult,
    ExecutionResult,
    Hook,
    HookConfig,
    Observation,
)

__all__ = [
    "BuiltinAction",
    "CommandAction",
    "DispatchResult",
    "Dispatcher",
    "ExecutionFailure",
    "ExecutionResult",
    "Hook",
    "HookConfig",
    "HookError",
    "HookRegistry",
    "LoadError",
    "Observation",
    "ParseError",
    "build_hook_config",
    "compile_matcher",
    "evaluate",
    "load_hook_config",
    "parse_hook",
    "run_command",
]

from .base import ExecHandle, Executor, ExecRequest, PollState, PollStatus, classify_output
from .claude import ClaudeExecutor
from .codex import CodexExecutor
from .registry import ExecutorRegistry, build_default_registry, parse_executor_kind, resolve_executor_kind

__all__ = [
    "ClaudeExecutor",
    "CodexExecutor",
    "ExecHandle",
    "ExecRequest",
    "Executor",
    "ExecutorRegistry",
    "PollState",
    "PollStatus",
    "build_default_registry",
    "classify_output",
    "parse_executor_kind",
    "resolve_executor_kind",
]

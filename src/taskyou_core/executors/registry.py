"""Explicit registration of executor backends by ``ExecutorKind``."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional, Union

from ..config import Settings
from ..domain.models import ExecutorKind
from ..errors import UnknownExecutorKind
from .base import Executor
from .claude import ClaudeExecutor
from .codex import CodexExecutor

# Environment keys consulted, in order, for the default executor.
EXECUTOR_ENV_KEYS = ("TASK_EXECUTOR", "WORKFLOW_EXECUTOR", "TASKYOU_EXECUTOR", "WORKTREE_EXECUTOR")


def parse_executor_kind(value: Union[str, ExecutorKind]) -> ExecutorKind:
    if isinstance(value, ExecutorKind):
        return value
    try:
        return ExecutorKind(str(value or "").strip().lower())
    except ValueError:
        raise UnknownExecutorKind(value, [kind.value for kind in ExecutorKind]) from None


def resolve_executor_kind(
    explicit: Optional[Union[str, ExecutorKind]],
    settings: Settings,
    env: Optional[Mapping[str, str]] = None,
) -> ExecutorKind:
    if explicit:
        return parse_executor_kind(explicit)
    environ = os.environ if env is None else env
    for key in EXECUTOR_ENV_KEYS:
        value = str(environ.get(key) or "").strip()
        if value:
            return parse_executor_kind(value)
    return parse_executor_kind(settings.executors.default)


class ExecutorRegistry:
    def __init__(self) -> None:
        self._executors: dict[ExecutorKind, Executor] = {}

    def register(self, executor: Executor) -> None:
        self._executors[executor.kind] = executor

    def get(self, kind: Union[str, ExecutorKind]) -> Executor:
        resolved = parse_executor_kind(kind)
        executor = self._executors.get(resolved)
        if executor is None:
            raise UnknownExecutorKind(resolved.value, [k.value for k in self.kinds()])
        return executor

    def kinds(self) -> list[ExecutorKind]:
        return sorted(self._executors, key=lambda kind: kind.value)

    def available(self) -> list[ExecutorKind]:
        return [kind for kind in self.kinds() if self._executors[kind].is_available()]


def build_default_registry(settings: Settings, runs_dir: Path) -> ExecutorRegistry:
    registry = ExecutorRegistry()
    registry.register(
        ClaudeExecutor(settings.executors.claude, runs_dir, poll_wait_seconds=settings.executors.poll_wait_seconds)
    )
    registry.register(CodexExecutor(settings.executors.codex, runs_dir))
    return registry

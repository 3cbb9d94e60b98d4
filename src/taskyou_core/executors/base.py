"""Backend-agnostic executor contract."""

from __future__ import annotations

import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from ..domain.models import ExecOutcome, ExecResult, ExecutorKind, Task

_NEEDS_INPUT_LINE_RE = re.compile(r"^\s*(?:needs[ _]input|blocked)\s*:\s*(?P<prompt>\S.*)$", re.I | re.M)


@dataclass(frozen=True)
class ExecHandle:
    kind: ExecutorKind
    ref: str
    pid: Optional[int] = None
    run_dir: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind.value, "ref": self.ref}
        if self.pid is not None:
            data["pid"] = self.pid
        if self.run_dir:
            data["run_dir"] = self.run_dir
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecHandle":
        pid = data.get("pid")
        return cls(
            kind=ExecutorKind(str(data.get("kind"))),
            ref=str(data.get("ref") or ""),
            pid=int(pid) if isinstance(pid, int) and not isinstance(pid, bool) else None,
            run_dir=str(data["run_dir"]) if data.get("run_dir") else None,
        )


def new_ref(kind: ExecutorKind) -> str:
    return f"{kind.value}-{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class ExecRequest:
    prompt: str
    workdir: Optional[Path] = None


class PollState(str, Enum):
    RUNNING = "running"
    NEEDS_INPUT = "needs_input"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class PollStatus:
    state: PollState
    prompt: Optional[str] = None
    result: Optional[ExecResult] = None
    reason: Optional[str] = None

    @classmethod
    def running(cls) -> "PollStatus":
        return cls(PollState.RUNNING)

    @classmethod
    def needs_input(cls, prompt: str, result: Optional[ExecResult] = None) -> "PollStatus":
        return cls(PollState.NEEDS_INPUT, prompt=prompt, result=result)

    @classmethod
    def succeeded(cls, result: ExecResult) -> "PollStatus":
        return cls(PollState.SUCCEEDED, result=result)

    @classmethod
    def failed(cls, reason: str) -> "PollStatus":
        return cls(PollState.FAILED, reason=reason)

    @property
    def is_terminal(self) -> bool:
        return self.state in {PollState.SUCCEEDED, PollState.FAILED}


class Executor(ABC):
    """One AI backend able to run, observe, resume and stop a task."""

    kind: ExecutorKind

    @abstractmethod
    def is_available(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def start(self, task: Task, request: ExecRequest) -> ExecHandle:
        raise NotImplementedError

    @abstractmethod
    def poll(self, handle: ExecHandle) -> PollStatus:
        raise NotImplementedError

    @abstractmethod
    def cancel(self, handle: ExecHandle) -> None:
        raise NotImplementedError

    @abstractmethod
    def fetch_result(self, handle: ExecHandle) -> Optional[ExecResult]:
        raise NotImplementedError

    @abstractmethod
    def resume(self, handle: ExecHandle, request: ExecRequest, user_input: str) -> ExecHandle:
        raise NotImplementedError


def _tail(text: str, max_lines: int = 20) -> str:
    lines = [line.rstrip() for line in text.strip().splitlines()]
    return "\n".join(lines[-max_lines:])


def classify_output(exit_code: int, stdout: str, stderr: str, *, label: str) -> PollStatus:
    """Map a finished process to a poll status.

    Only a line starting with ``NEEDS_INPUT: <question>`` (or
    ``BLOCKED: <question>``) asks for input; anything else that exits 0 is a
    success.
    """
    output = {"exit_code": exit_code}
    if exit_code != 0:
        detail = _tail(stderr, 5) or _tail(stdout, 5) or "no output"
        return PollStatus.failed(f"{label} exited with code {exit_code}: {detail}")

    matches = list(_NEEDS_INPUT_LINE_RE.finditer(stdout))
    if matches:
        prompt = matches[-1].group("prompt").strip()
        return PollStatus.needs_input(prompt, ExecResult(ExecOutcome.NEEDS_INPUT, prompt, output))

    summary = _tail(stdout) or f"{label} completed"
    return PollStatus.succeeded(ExecResult(ExecOutcome.SUCCESS, summary, output))

"""Short-lived Codex runs executed synchronously inside ``start``.

The outcome is written to the run directory before ``start`` returns, so
``poll`` works from any process that shares the state root.
"""

from __future__ import annotations

import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Optional

from loguru import logger

from ..config import CodexSettings
from ..domain.models import ExecResult, ExecutorKind, Task
from ..errors import ExecutorUnavailable, InvalidTask
from .base import ExecHandle, Executor, ExecRequest, PollState, PollStatus, classify_output, new_ref
from .runs import CANCELLED, TIMED_OUT, RunDir


class CodexExecutor(Executor):
    kind = ExecutorKind.CODEX

    def __init__(self, settings: CodexSettings, runs_dir: Path) -> None:
        self.settings = settings
        self.runs_dir = runs_dir

    def _binary(self) -> str:
        parts = shlex.split(self.settings.command)
        return parts[0] if parts else ""

    def is_available(self) -> bool:
        binary = self._binary()
        return bool(binary) and shutil.which(binary) is not None

    def _command(self, prompt: str, prompt_path: Path, workdir: Path) -> tuple[list[str], Optional[str]]:
        template = self.settings.command
        try:
            formatted = template.format(prompt_file=str(prompt_path), prompt=prompt, workdir=str(workdir))
        except KeyError as exc:
            raise ValueError(f"Unknown placeholder in codex command: {exc}") from exc
        parts = shlex.split(formatted)
        uses_placeholder = "{prompt_file}" in template or "{prompt}" in template
        if not uses_placeholder and "-" not in parts:
            raise ValueError("Codex command must include {prompt_file}, {prompt}, or '-' to accept stdin input.")
        return parts, None if uses_placeholder else prompt

    def _run_dir(self, handle: ExecHandle) -> RunDir:
        return RunDir(Path(handle.run_dir) if handle.run_dir else self.runs_dir / handle.ref)

    def _run(self, prompt: str, workdir: Path) -> ExecHandle:
        if not self.is_available():
            raise ExecutorUnavailable(f"codex CLI not found on PATH: {self._binary() or self.settings.command}")

        ref = new_ref(self.kind)
        run = RunDir.create(self.runs_dir, ref, prompt)
        command, stdin_text = self._command(prompt, run.prompt_path, workdir)

        logger.info("Running codex {} in {}", ref, workdir)
        try:
            completed = subprocess.run(
                command,
                cwd=str(workdir),
                input=stdin_text,
                capture_output=True,
                text=True,
                timeout=self.settings.timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            run.mark(TIMED_OUT, str(self.settings.timeout_seconds))
        except OSError as exc:
            raise ExecutorUnavailable(f"Failed to spawn codex: {exc}") from exc
        else:
            run.write_output(completed.stdout or "", completed.stderr or "")
            run.write_exit_code(completed.returncode)
        return ExecHandle(kind=self.kind, ref=ref, run_dir=str(run.path))

    def start(self, task: Task, request: ExecRequest) -> ExecHandle:
        if not task.title.strip():
            raise InvalidTask("codex tasks need a title")
        if request.workdir is None:
            raise InvalidTask("codex tasks need a project with a filesystem path")
        return self._run(request.prompt, request.workdir)

    def poll(self, handle: ExecHandle) -> PollStatus:
        run = self._run_dir(handle)
        if not run.exists:
            return PollStatus.failed("executor handle lost")
        if run.marker(CANCELLED) is not None:
            return PollStatus.failed("cancelled")
        if run.marker(TIMED_OUT) is not None:
            return PollStatus.failed(f"codex timed out after {self.settings.timeout_seconds}s")
        exit_code = run.exit_code()
        if exit_code is None:
            return PollStatus.failed("executor handle lost")
        status = classify_output(exit_code, run.stdout(), run.stderr(), label="codex")
        if status.result is not None:
            status.result.output["run_dir"] = str(run.path)
        return status

    def cancel(self, handle: ExecHandle) -> None:
        # Runs complete inside start(); only a paused run can be abandoned.
        run = self._run_dir(handle)
        if run.exists and not self.poll(handle).is_terminal:
            run.mark(CANCELLED)

    def fetch_result(self, handle: ExecHandle) -> Optional[ExecResult]:
        status = self.poll(handle)
        if status.state in {PollState.SUCCEEDED, PollState.NEEDS_INPUT}:
            return status.result
        return None

    def resume(self, handle: ExecHandle, request: ExecRequest, user_input: str) -> ExecHandle:
        # No session support: run again with the earlier prompt and the answer.
        if request.workdir is None:
            raise InvalidTask("codex tasks need a project with a filesystem path")
        run = self._run_dir(handle)
        previous = (run.prompt() if run.exists else "") or request.prompt
        return self._run(f"{previous}\n\nFeedback:\n{user_input}", request.workdir)

"""Long-lived Claude Code runs, observed by polling.

Each run is started under ``supervise.py`` in its own session, so it keeps
going after a short-lived caller (the CLI) exits. The supervisor writes the
exit code into the run directory, and that directory is what ``poll``
reads. The ``Popen`` kept in memory only lets the starting process wait
without sleeping.
"""

from __future__ import annotations

import os
import re
import shutil
import signal
import subprocess
import sys
import threading
from pathlib import Path
from typing import Optional

from loguru import logger

from ..config import ClaudeSettings
from ..domain.models import ExecResult, ExecutorKind, Task, now_iso
from ..errors import ExecutorUnavailable, InvalidTask
from .base import ExecHandle, Executor, ExecRequest, PollState, PollStatus, classify_output, new_ref
from .runs import CANCELLED, RunDir

SUPERVISOR = Path(__file__).with_name("supervise.py")

_SESSION_ID_RE = re.compile(r"Session ID:\s*(\S+)")


def _terminate(process: subprocess.Popen) -> None:
    process.terminate()
    try:
        process.wait(timeout=5)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait(timeout=5)


def _pid_alive(pid: Optional[int]) -> bool:
    if not pid:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ClaudeExecutor(Executor):
    kind = ExecutorKind.CLAUDE

    def __init__(self, settings: ClaudeSettings, runs_dir: Path, *, poll_wait_seconds: float = 0.5) -> None:
        self.settings = settings
        self.runs_dir = runs_dir
        self.poll_wait_seconds = poll_wait_seconds
        # Supervisors started by this process and not yet seen to finish.
        self._processes: dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def is_available(self) -> bool:
        return shutil.which(self.settings.command) is not None

    def _command(self, prompt: str, session_id: Optional[str]) -> list[str]:
        command = [self.settings.command, "--print", "--dangerously-skip-permissions", *self.settings.args]
        if session_id:
            command.extend(["--resume", session_id])
        command.append(prompt)
        return command

    def _run_dir(self, handle: ExecHandle) -> RunDir:
        return RunDir(Path(handle.run_dir) if handle.run_dir else self.runs_dir / handle.ref)

    def _spawn(self, prompt: str, workdir: Optional[Path], session_id: Optional[str] = None) -> ExecHandle:
        if not self.is_available():
            raise ExecutorUnavailable(f"claude CLI not found on PATH: {self.settings.command}")
        self._reap()

        ref = new_ref(self.kind)
        run = RunDir.create(self.runs_dir, ref, prompt)
        command = self._command(prompt, session_id)
        try:
            process = subprocess.Popen(
                [sys.executable, str(SUPERVISOR), str(run.path), "--", *command],
                cwd=str(workdir) if workdir else str(run.path),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            raise ExecutorUnavailable(f"Failed to spawn claude: {exc}") from exc

        run.write_meta(ref=ref, pid=process.pid, session_id=session_id, started_at=now_iso())
        with self._lock:
            self._processes[ref] = process
        logger.info("Started claude run {} (pid {})", ref, process.pid)
        return ExecHandle(kind=self.kind, ref=ref, pid=process.pid, run_dir=str(run.path))

    def start(self, task: Task, request: ExecRequest) -> ExecHandle:
        if not task.title.strip():
            raise InvalidTask("claude tasks need a title")
        if not request.prompt.strip():
            raise InvalidTask("claude tasks need a non-empty prompt")
        return self._spawn(request.prompt, request.workdir)

    def _release(self, ref: str) -> Optional[subprocess.Popen]:
        with self._lock:
            return self._processes.pop(ref, None)

    def _reap(self) -> None:
        # Drop supervisors that exited without being polled from this process.
        with self._lock:
            for ref, process in list(self._processes.items()):
                if process.poll() is not None:
                    del self._processes[ref]

    def _wait_for_exit(self, handle: ExecHandle, run: RunDir) -> Optional[int]:
        """Return the recorded exit code, or None while the run is live."""
        code = run.exit_code()
        if code is not None:
            return code
        with self._lock:
            process = self._processes.get(handle.ref)
        if process is not None:
            try:
                supervisor_code = process.wait(timeout=self.poll_wait_seconds)
            except subprocess.TimeoutExpired:
                return None
            code = run.exit_code()
            return code if code is not None else supervisor_code
        pid = handle.pid or run.meta().get("pid")
        if _pid_alive(pid):
            return None
        code = run.exit_code()
        # The supervisor died without recording anything.
        return code if code is not None else -1

    def _session_id(self, run: RunDir) -> Optional[str]:
        match = _SESSION_ID_RE.search(run.stdout())
        return match.group(1) if match else run.meta().get("session_id")

    def poll(self, handle: ExecHandle) -> PollStatus:
        run = self._run_dir(handle)
        if not run.exists:
            return PollStatus.failed("executor handle lost")
        if run.marker(CANCELLED) is not None:
            return PollStatus.failed("cancelled")

        exit_code = self._wait_for_exit(handle, run)
        if exit_code is None:
            return PollStatus.running()
        self._release(handle.ref)

        status = classify_output(exit_code, run.stdout(), run.stderr(), label="claude")
        if status.result is not None:
            status.result.output.update({"session_id": self._session_id(run), "run_dir": str(run.path)})
        logger.debug("claude run {} finished as {}", handle.ref, status.state.value)
        return status

    def cancel(self, handle: ExecHandle) -> None:
        run = self._run_dir(handle)
        if not run.exists or run.marker(CANCELLED) is not None or run.exit_code() is not None:
            return
        run.mark(CANCELLED)
        process = self._release(handle.ref)
        if process is not None:
            if process.poll() is None:
                _terminate(process)
        else:
            pid = handle.pid or run.meta().get("pid")
            if _pid_alive(pid):
                os.kill(pid, signal.SIGTERM)
        logger.info("Cancelled claude run {}", handle.ref)

    def fetch_result(self, handle: ExecHandle) -> Optional[ExecResult]:
        run = self._run_dir(handle)
        if not run.exists or run.marker(CANCELLED) is not None or run.exit_code() is None:
            return None
        status = self.poll(handle)
        if status.state in {PollState.SUCCEEDED, PollState.NEEDS_INPUT}:
            return status.result
        return None

    def resume(self, handle: ExecHandle, request: ExecRequest, user_input: str) -> ExecHandle:
        run = self._run_dir(handle)
        session_id = self._session_id(run) if run.exists else None
        if session_id:
            prompt = user_input
        else:
            prompt = f"{request.prompt}\n\nFeedback:\n{user_input}"
        new_handle = self._spawn(prompt, request.workdir, session_id=session_id)
        self._release(handle.ref)
        return new_handle

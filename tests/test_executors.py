from __future__ import annotations

import os
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Optional

import pytest
from conftest import install_fake_agent

from taskyou_core.config import ClaudeSettings, CodexSettings, Settings
from taskyou_core.domain.models import ExecOutcome, ExecutorKind, Task
from taskyou_core.errors import ExecutorUnavailable, InvalidTask, UnknownExecutorKind
from taskyou_core.executors.base import ExecHandle, ExecRequest, PollState, PollStatus, classify_output
from taskyou_core.executors.claude import SUPERVISOR, ClaudeExecutor
from taskyou_core.executors.codex import CodexExecutor
from taskyou_core.executors.registry import (
    ExecutorRegistry,
    build_default_registry,
    parse_executor_kind,
    resolve_executor_kind,
)
from taskyou_core.executors.runs import RunDir
from taskyou_core.executors.supervise import main as supervise_main
from taskyou_core.executors.supervise import write_exit_code


class _FakeSupervisor:
    """Stands in for supervise.py: writes the run files when the agent finishes."""

    def __init__(self, argv: list[str], stdout: str = "", stderr: str = "", returncode: int = 0, finished: bool = True):
        self.argv = argv
        self.run_dir = Path(argv[2])
        self.command = argv[argv.index("--") + 1 :]
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode
        self.finished = False
        self.pid = 4242
        self.terminated = False
        if finished:
            self.finish()

    def finish(self) -> None:
        (self.run_dir / "stdout.log").write_text(self.stdout, encoding="utf-8")
        (self.run_dir / "stderr.log").write_text(self.stderr, encoding="utf-8")
        write_exit_code(self.run_dir, self.returncode)
        self.finished = True

    def wait(self, timeout: Optional[float] = None) -> int:
        if not self.finished:
            raise subprocess.TimeoutExpired(self.argv, timeout)
        return self.returncode

    def poll(self) -> Optional[int]:
        return self.returncode if self.finished else None

    def terminate(self) -> None:
        self.terminated = True
        self.returncode = -15
        self.finish()

    def kill(self) -> None:
        self.terminate()


class _PopenRecorder:
    def __init__(self, **process_kwargs: Any) -> None:
        self.process_kwargs = process_kwargs
        self.calls: list[dict[str, Any]] = []
        self.processes: list[_FakeSupervisor] = []

    def __call__(self, argv: list[str], **kwargs: Any) -> _FakeSupervisor:
        self.calls.append({"argv": argv, **kwargs})
        process = _FakeSupervisor(argv, **self.process_kwargs)
        self.processes.append(process)
        return process

    def command(self, index: int = -1) -> list[str]:
        return self.processes[index].command


def _claude(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, **process_kwargs: Any) -> tuple[ClaudeExecutor, _PopenRecorder]:
    recorder = _PopenRecorder(**process_kwargs)
    monkeypatch.setattr("taskyou_core.executors.claude.shutil.which", lambda cmd: f"/usr/bin/{cmd}")
    monkeypatch.setattr("taskyou_core.executors.claude.subprocess.Popen", recorder)
    return ClaudeExecutor(ClaudeSettings(args=("--model", "opus")), tmp_path / "runs", poll_wait_seconds=0.01), recorder


def test_claude_run_succeeds_with_session_id(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    executor, recorder = _claude(
        tmp_path, monkeypatch, stdout="Working on it\nSession ID: sess-42\nAll tests pass.\n"
    )
    handle = executor.start(Task(title="Fix"), ExecRequest("Fix the build", tmp_path))

    call = recorder.calls[0]
    run_dir = tmp_path / "runs" / handle.ref
    assert call["argv"][:4] == [sys.executable, str(SUPERVISOR), str(run_dir), "--"]
    assert call["cwd"] == str(tmp_path)
    assert call["start_new_session"] is True
    command = recorder.command(0)
    assert command[:3] == ["claude", "--print", "--dangerously-skip-permissions"]
    assert command[3:5] == ["--model", "opus"]
    assert command[-1] == "Fix the build"
    assert handle.pid == 4242
    assert handle.run_dir == str(run_dir)

    status = executor.poll(handle)
    assert status.state == PollState.SUCCEEDED
    assert "All tests pass." in status.result.summary
    assert status.result.output["session_id"] == "sess-42"
    assert executor.fetch_result(handle).summary == status.result.summary

    assert (run_dir / "prompt.txt").read_text(encoding="utf-8") == "Fix the build"
    assert RunDir(run_dir).meta()["pid"] == 4242


def test_claude_needs_input_then_resumes_session(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    executor, recorder = _claude(
        tmp_path, monkeypatch, stdout="Session ID: sess-7\nNEEDS_INPUT: which payment provider?\n"
    )
    handle = executor.start(Task(title="Checkout"), ExecRequest("Fix checkout"))

    status = executor.poll(handle)
    assert status.state == PollState.NEEDS_INPUT
    assert status.prompt == "which payment provider?"

    resumed = executor.resume(handle, ExecRequest("Fix checkout"), "stripe")
    assert resumed.ref != handle.ref
    assert recorder.command()[-3:] == ["--resume", "sess-7", "stripe"]
    assert RunDir(Path(resumed.run_dir)).meta()["session_id"] == "sess-7"


def test_claude_resume_without_session_replays_prompt(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    executor, recorder = _claude(tmp_path, monkeypatch, stdout="BLOCKED: need credentials\n")
    handle = executor.start(Task(title="Deploy"), ExecRequest("Deploy it"))
    executor.poll(handle)

    executor.resume(handle, ExecRequest("Deploy it"), "use staging")

    assert recorder.command()[-1] == "Deploy it\n\nFeedback:\nuse staging"


def test_claude_poll_running_then_cancel(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    executor, recorder = _claude(tmp_path, monkeypatch, finished=False)
    handle = executor.start(Task(title="Long"), ExecRequest("Take your time"))

    assert executor.poll(handle).state == PollState.RUNNING

    executor.cancel(handle)
    executor.cancel(handle)

    assert recorder.processes[0].terminated is True
    status = executor.poll(handle)
    assert status.state == PollState.FAILED
    assert status.reason == "cancelled"
    assert executor.fetch_result(handle) is None


def test_claude_nonzero_exit_fails(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    executor, _ = _claude(tmp_path, monkeypatch, stderr="rate limited\n", returncode=2)
    handle = executor.start(Task(title="Oops"), ExecRequest("Try"))

    status = executor.poll(handle)
    assert status.state == PollState.FAILED
    assert "exited with code 2" in status.reason
    assert "rate limited" in status.reason


def test_claude_forgets_finished_processes(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    executor, _ = _claude(tmp_path, monkeypatch, stdout="done\n")
    polled = executor.start(Task(title="One"), ExecRequest("first"))
    executor.poll(polled)
    assert executor._processes == {}

    executor.start(Task(title="Two"), ExecRequest("second"))
    latest = executor.start(Task(title="Three"), ExecRequest("third"))
    assert list(executor._processes) == [latest.ref]

    executor.resume(latest, ExecRequest("third"), "again")
    assert latest.ref not in executor._processes


def test_claude_unavailable_and_invalid(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("taskyou_core.executors.claude.shutil.which", lambda cmd: None)
    executor = ClaudeExecutor(ClaudeSettings(), tmp_path / "runs")

    assert executor.is_available() is False
    with pytest.raises(ExecutorUnavailable):
        executor.start(Task(title="Nope"), ExecRequest("prompt"))
    with pytest.raises(InvalidTask):
        executor.start(Task(title="Empty"), ExecRequest("   "))


def test_claude_lost_handle_fails(tmp_path: Path) -> None:
    executor = ClaudeExecutor(ClaudeSettings(), tmp_path / "runs")
    status = executor.poll(ExecHandle(ExecutorKind.CLAUDE, "claude-gone"))
    assert status.state == PollState.FAILED
    assert status.reason == "executor handle lost"


def test_claude_run_without_recorded_exit_fails(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    executor, _ = _claude(tmp_path, monkeypatch, finished=False)
    handle = executor.start(Task(title="Crash"), ExecRequest("prompt"))
    # Another process sees a dead supervisor that never wrote an exit code.
    other = ClaudeExecutor(ClaudeSettings(), tmp_path / "runs")
    monkeypatch.setattr("taskyou_core.executors.claude._pid_alive", lambda pid: False)

    status = other.poll(handle)
    assert status.state == PollState.FAILED
    assert "exited with code -1" in status.reason


def _poll_until(executor: ClaudeExecutor, handle: ExecHandle, timeout: float = 15.0) -> PollStatus:
    deadline = time.monotonic() + timeout
    status = executor.poll(handle)
    while status.state == PollState.RUNNING and time.monotonic() < deadline:
        time.sleep(0.05)
        status = executor.poll(handle)
    return status


@pytest.mark.skipif(os.name == "nt", reason="needs a POSIX shell")
def test_claude_run_finishes_for_another_executor(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    install_fake_agent(tmp_path, monkeypatch, "sleep 0.3\necho 'Session ID: sess-9'\necho 'All done'")
    starter = ClaudeExecutor(ClaudeSettings(), tmp_path / "runs")
    handle = starter.start(Task(title="Fix"), ExecRequest("Fix checkout", tmp_path))

    # A fresh executor (another process) only has the stored handle.
    restored = ExecHandle.from_dict(handle.to_dict())
    status = _poll_until(ClaudeExecutor(ClaudeSettings(), tmp_path / "runs"), restored)

    assert status.state == PollState.SUCCEEDED
    assert status.result.summary.endswith("All done")
    assert status.result.output["session_id"] == "sess-9"
    assert starter.poll(handle).state == PollState.SUCCEEDED


@pytest.mark.skipif(os.name == "nt", reason="needs a POSIX shell")
def test_claude_cancel_from_another_executor(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    install_fake_agent(tmp_path, monkeypatch, "echo started\nexec sleep 30")
    starter = ClaudeExecutor(ClaudeSettings(), tmp_path / "runs")
    handle = starter.start(Task(title="Long"), ExecRequest("Take your time", tmp_path))
    run = RunDir(Path(handle.run_dir))
    deadline = time.monotonic() + 10
    while "started" not in run.stdout() and time.monotonic() < deadline:
        time.sleep(0.05)

    other = ClaudeExecutor(ClaudeSettings(), tmp_path / "runs")
    other.cancel(handle)

    assert other.poll(handle).reason == "cancelled"
    deadline = time.monotonic() + 10
    while run.exit_code() is None and time.monotonic() < deadline:
        time.sleep(0.05)
    assert run.exit_code() is not None
    assert starter.poll(handle).reason == "cancelled"


@pytest.mark.skipif(os.name == "nt", reason="needs a POSIX shell")
def test_supervisor_records_exit_code_and_output(tmp_path: Path) -> None:
    assert supervise_main([str(tmp_path), "--", "sh", "-c", "echo hi; echo oops >&2; exit 3"]) == 0

    run = RunDir(tmp_path)
    assert run.exit_code() == 3
    assert run.stdout() == "hi\n"
    assert run.stderr() == "oops\n"


def test_supervisor_records_spawn_failure(tmp_path: Path) -> None:
    supervise_main([str(tmp_path), "--", str(tmp_path / "missing-agent")])

    run = RunDir(tmp_path)
    assert run.exit_code() == 127
    assert "missing-agent" in run.stderr()


def test_supervisor_requires_command(tmp_path: Path) -> None:
    with pytest.raises(SystemExit):
        supervise_main([str(tmp_path), "--"])


def test_handle_round_trip_keeps_run_location() -> None:
    handle = ExecHandle(ExecutorKind.CLAUDE, "claude-abc", pid=77, run_dir="/state/runs/claude-abc")
    assert ExecHandle.from_dict(handle.to_dict()) == handle
    assert ExecHandle(ExecutorKind.CODEX, "codex-1").to_dict() == {"kind": "codex", "ref": "codex-1"}
    legacy = ExecHandle.from_dict({"kind": "claude", "ref": "claude-old", "pid": "nope"})
    assert legacy.pid is None and legacy.run_dir is None


class _RunRecorder:
    def __init__(self, stdout: str = "done\n", returncode: int = 0, raise_timeout: bool = False) -> None:
        self.stdout = stdout
        self.returncode = returncode
        self.raise_timeout = raise_timeout
        self.calls: list[dict[str, Any]] = []

    def __call__(self, argv: list[str], **kwargs: Any) -> subprocess.CompletedProcess:
        self.calls.append({"argv": argv, **kwargs})
        if self.raise_timeout:
            raise subprocess.TimeoutExpired(argv, kwargs.get("timeout"))
        return subprocess.CompletedProcess(argv, self.returncode, self.stdout, "")


def _codex(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, command: str = "codex exec -", **run_kwargs: Any
) -> tuple[CodexExecutor, _RunRecorder]:
    recorder = _RunRecorder(**run_kwargs)
    monkeypatch.setattr("taskyou_core.executors.codex.shutil.which", lambda cmd: f"/usr/bin/{cmd}")
    monkeypatch.setattr("taskyou_core.executors.codex.subprocess.run", recorder)
    return CodexExecutor(CodexSettings(command=command, timeout_seconds=60), tmp_path / "runs"), recorder


def test_codex_runs_with_prompt_on_stdin(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    executor, recorder = _codex(tmp_path, monkeypatch, stdout="Refactored module.\n")
    handle = executor.start(Task(title="Refactor"), ExecRequest("Refactor utils", tmp_path))

    call = recorder.calls[0]
    assert call["argv"] == ["codex", "exec", "-"]
    assert call["input"] == "Refactor utils"
    assert call["cwd"] == str(tmp_path)
    assert call["timeout"] == 60

    status = executor.poll(handle)
    assert status.state == PollState.SUCCEEDED
    assert status.result.outcome == ExecOutcome.SUCCESS
    assert status.result.summary == "Refactored module."


def test_codex_prompt_file_placeholder(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    executor, recorder = _codex(tmp_path, monkeypatch, command="codex exec --file {prompt_file}")
    handle = executor.start(Task(title="Docs"), ExecRequest("Write docs", tmp_path))

    call = recorder.calls[0]
    assert call["input"] is None
    prompt_file = Path(call["argv"][-1])
    assert prompt_file == tmp_path / "runs" / handle.ref / "prompt.txt"
    assert prompt_file.read_text(encoding="utf-8") == "Write docs"


def test_codex_rejects_command_without_prompt_channel(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    executor, _ = _codex(tmp_path, monkeypatch, command="codex exec")
    with pytest.raises(ValueError, match="stdin"):
        executor.start(Task(title="Bad"), ExecRequest("prompt", tmp_path))


def test_codex_requires_workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    executor, recorder = _codex(tmp_path, monkeypatch)
    with pytest.raises(InvalidTask, match="filesystem path"):
        executor.start(Task(title="Nowhere"), ExecRequest("prompt"))
    assert recorder.calls == []


def test_codex_timeout_fails_run(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    executor, _ = _codex(tmp_path, monkeypatch, raise_timeout=True)
    handle = executor.start(Task(title="Slow"), ExecRequest("prompt", tmp_path))

    status = executor.poll(handle)
    assert status.state == PollState.FAILED
    assert "timed out after 60s" in status.reason


def test_codex_resume_appends_feedback(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    executor, recorder = _codex(tmp_path, monkeypatch, stdout="needs input: which database?\n")
    handle = executor.start(Task(title="DB"), ExecRequest("Set up the DB", tmp_path))
    assert executor.poll(handle).state == PollState.NEEDS_INPUT

    recorder.stdout = "Configured postgres.\n"
    resumed = executor.resume(handle, ExecRequest("Set up the DB", tmp_path), "postgres")

    assert recorder.calls[-1]["input"] == "Set up the DB\n\nFeedback:\npostgres"
    assert executor.poll(resumed).state == PollState.SUCCEEDED
    assert executor.poll(handle).state == PollState.NEEDS_INPUT


def test_codex_outcome_readable_by_another_executor(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    executor, recorder = _codex(tmp_path, monkeypatch, stdout="NEEDS_INPUT: which database?\n")
    handle = executor.start(Task(title="DB"), ExecRequest("Set up the DB", tmp_path))
    restored = ExecHandle.from_dict(handle.to_dict())
    other = CodexExecutor(CodexSettings(command="codex exec -", timeout_seconds=60), tmp_path / "runs")

    assert other.poll(restored).prompt == "which database?"

    recorder.stdout = "Configured sqlite.\n"
    resumed = other.resume(restored, ExecRequest("ignored", tmp_path), "sqlite")
    assert recorder.calls[-1]["input"] == "Set up the DB\n\nFeedback:\nsqlite"
    assert executor.poll(resumed).result.summary == "Configured sqlite."

    other.cancel(resumed)
    assert executor.poll(resumed).state == PollState.SUCCEEDED


def test_classify_output_variants() -> None:
    needs = classify_output(0, "thinking...\nNEEDS_INPUT: pick a color\n", "", label="x")
    assert needs.state == PollState.NEEDS_INPUT
    assert needs.prompt == "pick a color"

    blocked = classify_output(0, "BLOCKED: need the staging password\n", "", label="x")
    assert blocked.state == PollState.NEEDS_INPUT
    assert blocked.prompt == "need the staging password"

    # Prose that merely mentions input is a normal success.
    prose = classify_output(
        0,
        "Added the checkout form.\nNote: the email field still needs input validation later.\n",
        "",
        label="claude",
    )
    assert prose.state == PollState.SUCCEEDED
    assert prose.result.summary.endswith("needs input validation later.")

    mentioned = classify_output(0, "I hit a wall and needs input here\nWhich branch?\n", "", label="x")
    assert mentioned.state == PollState.SUCCEEDED

    empty = classify_output(0, "", "", label="codex")
    assert empty.state == PollState.SUCCEEDED
    assert empty.result.summary == "codex completed"

    failed = classify_output(1, "", "", label="codex")
    assert failed.reason == "codex exited with code 1: no output"


def test_registry_lookup_and_resolution(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("taskyou_core.executors.claude.shutil.which", lambda cmd: "/usr/bin/claude")
    monkeypatch.setattr("taskyou_core.executors.codex.shutil.which", lambda cmd: None)
    registry = build_default_registry(Settings(), tmp_path / "runs")

    assert registry.kinds() == [ExecutorKind.CLAUDE, ExecutorKind.CODEX]
    assert registry.available() == [ExecutorKind.CLAUDE]
    assert isinstance(registry.get("codex"), CodexExecutor)
    assert parse_executor_kind(" Claude ") == ExecutorKind.CLAUDE

    with pytest.raises(UnknownExecutorKind):
        registry.get("gemini")
    with pytest.raises(UnknownExecutorKind, match="available: none"):
        ExecutorRegistry().get("claude")

    settings = Settings()
    assert resolve_executor_kind(None, settings, env={}) == ExecutorKind.CLAUDE
    assert resolve_executor_kind(None, settings, env={"WORKTREE_EXECUTOR": "codex"}) == ExecutorKind.CODEX
    assert resolve_executor_kind("claude", settings, env={"TASK_EXECUTOR": "codex"}) == ExecutorKind.CLAUDE

from __future__ import annotations

import threading
import time
from dataclasses import replace
from pathlib import Path

import pytest
from conftest import ScriptedExecutor, succeeded

from taskyou_core.config import RetryPolicy, Settings
from taskyou_core.domain.models import ExecutorKind, Task, TaskStatus
from taskyou_core.errors import ExecutorUnavailable, InvalidTask, OrchestratorError, StorageError
from taskyou_core.executors.base import ExecHandle, ExecRequest, PollStatus
from taskyou_core.executors.registry import ExecutorRegistry
from taskyou_core.orchestrator.retry import call_with_retry
from taskyou_core.runtime import Runtime


def _runtime(tmp_path: Path, settings: Settings, registry: ExecutorRegistry, **overrides) -> Runtime:
    return Runtime(tmp_path / "state", settings=replace(settings, **overrides), executors=registry)


def test_tick_starts_pending_up_to_concurrency(tmp_path: Path, settings: Settings, registry: ExecutorRegistry) -> None:
    runtime = _runtime(tmp_path, settings, registry, concurrency=2)
    ids = [runtime.machine.create_task(f"Task {n}").id for n in range(3)]

    assert runtime.orchestrator.tick_once() == 2
    runtime.orchestrator.drain(timeout=5)
    statuses = [runtime.machine.get(task_id).status for task_id in ids]
    assert statuses == [TaskStatus.RUNNING, TaskStatus.RUNNING, TaskStatus.PENDING]

    # Polls finish the first two; no capacity is left for a start this tick.
    runtime.orchestrator.tick_once()
    runtime.orchestrator.drain(timeout=5)
    statuses = [runtime.machine.get(task_id).status for task_id in ids]
    assert statuses == [TaskStatus.SUCCEEDED, TaskStatus.SUCCEEDED, TaskStatus.PENDING]

    runtime.orchestrator.tick_once()
    runtime.orchestrator.drain(timeout=5)
    runtime.orchestrator.tick_once()
    runtime.orchestrator.drain(timeout=5)
    assert runtime.machine.get(ids[2]).status == TaskStatus.SUCCEEDED
    runtime.close(timeout=2)


def test_non_retryable_start_error_parks_task(
    tmp_path: Path, settings: Settings, registry: ExecutorRegistry, claude: ScriptedExecutor
) -> None:
    runtime = _runtime(tmp_path, settings, registry)
    claude.start_error = InvalidTask("claude tasks need a non-empty prompt")
    task = runtime.machine.create_task("Parked")

    runtime.orchestrator.tick_once()
    runtime.orchestrator.drain(timeout=5)

    status = runtime.orchestrator.status()
    assert task.id in status["parked"]
    assert runtime.machine.get(task.id).status == TaskStatus.PENDING

    assert runtime.orchestrator.tick_once() == 0
    runtime.close(timeout=2)


def test_retryable_start_error_is_retried_next_tick(
    tmp_path: Path, settings: Settings, registry: ExecutorRegistry, claude: ScriptedExecutor
) -> None:
    runtime = _runtime(tmp_path, settings, registry)
    claude.start_error = ExecutorUnavailable("claude CLI not found")
    task = runtime.machine.create_task("Flaky")

    runtime.orchestrator.tick_once()
    runtime.orchestrator.drain(timeout=5)
    assert runtime.orchestrator.status()["parked"] == {}

    claude.start_error = None
    runtime.orchestrator.tick_once()
    runtime.orchestrator.drain(timeout=5)
    assert runtime.machine.get(task.id).status == TaskStatus.RUNNING
    runtime.close(timeout=2)


def test_status_counts_tasks(runtime: Runtime) -> None:
    runtime.machine.create_task("One")
    closed = runtime.machine.create_task("Two")
    runtime.machine.close(closed.id)

    status = runtime.orchestrator.status()
    assert status["tasks"]["pending"] == 1
    assert status["tasks"]["cancelled"] == 1
    assert status["running"] is False


def test_worker_thread_runs_tasks_to_completion(runtime: Runtime) -> None:
    task = runtime.machine.create_task("Background")
    runtime.orchestrator.ensure_worker()
    runtime.orchestrator.ensure_worker()

    deadline = time.monotonic() + 10
    while time.monotonic() < deadline:
        if runtime.machine.get(task.id).status == TaskStatus.SUCCEEDED:
            break
        time.sleep(0.02)

    assert runtime.machine.get(task.id).status == TaskStatus.SUCCEEDED
    assert runtime.orchestrator.status()["running"] is True
    runtime.orchestrator.shutdown(timeout=2)
    assert runtime.orchestrator.status()["running"] is False


class _SlowStartExecutor(ScriptedExecutor):
    """Backend whose start blocks until released."""

    def __init__(self, kind: ExecutorKind) -> None:
        super().__init__(kind)
        self.release = threading.Event()
        self.entered: list[str] = []

    def start(self, task: Task, request: ExecRequest) -> ExecHandle:
        with self._lock:
            self.entered.append(task.id)
        self.release.wait(10)
        return super().start(task, request)


def _wait_for(predicate, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            return False
        time.sleep(0.02)
    return True


def test_blocked_starts_do_not_delay_polls_or_exceed_concurrency(tmp_path: Path, settings: Settings) -> None:
    claude = ScriptedExecutor(ExecutorKind.CLAUDE, [PollStatus.running()])
    codex = _SlowStartExecutor(ExecutorKind.CODEX)
    registry = ExecutorRegistry()
    registry.register(claude)
    registry.register(codex)
    runtime = _runtime(tmp_path, settings, registry, concurrency=2)
    orchestrator = runtime.orchestrator

    busy = runtime.machine.create_task("Long claude run", executor_kind="claude")
    runtime.machine.start(busy.id)
    queued = [runtime.machine.create_task(f"Codex {n}", executor_kind="codex").id for n in range(2)]
    try:
        for _ in range(3):
            orchestrator.tick_once()
            time.sleep(0.05)
        assert _wait_for(lambda: len(codex.entered) == 1)
        # One running task plus one start in flight fill both slots.
        assert codex.entered == [queued[0]]

        claude.settle(succeeded("Checkout fixed"))

        def _finished() -> bool:
            orchestrator.tick_once()
            return runtime.machine.get(busy.id).status == TaskStatus.SUCCEEDED

        assert _wait_for(_finished)
        assert runtime.machine.logs(busy.id)[-1].payload["summary"] == "Checkout fixed"
        assert [runtime.machine.get(task_id).status for task_id in queued] == [TaskStatus.PENDING] * 2
        assert len(codex.entered) <= 2
    finally:
        codex.release.set()
        runtime.close(timeout=5)

    assert runtime.machine.get(queued[0]).status == TaskStatus.RUNNING


def test_call_with_retry_backs_off_on_retryable_errors() -> None:
    attempts: list[int] = []
    sleeps: list[float] = []

    def _flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise StorageError("locked")
        return "ok"

    result = call_with_retry(_flaky, RetryPolicy(max_attempts=3, backoff_seconds=0.5), describe="flaky", sleep=sleeps.append)

    assert result == "ok"
    assert sleeps == [0.5, 1.0]


def test_call_with_retry_does_not_retry_permanent_errors() -> None:
    calls: list[int] = []

    def _broken() -> None:
        calls.append(1)
        raise OrchestratorError("nope")

    with pytest.raises(OrchestratorError):
        call_with_retry(_broken, RetryPolicy(max_attempts=5), describe="broken", sleep=lambda _: None)
    assert len(calls) == 1


def test_call_with_retry_gives_up_after_max_attempts() -> None:
    sleeps: list[float] = []

    def _down() -> None:
        raise ExecutorUnavailable("down")

    with pytest.raises(ExecutorUnavailable):
        call_with_retry(_down, RetryPolicy(max_attempts=2, backoff_seconds=1.0), describe="down", sleep=sleeps.append)
    assert sleeps == [1.0]

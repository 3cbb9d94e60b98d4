from __future__ import annotations

import asyncio
import os
import sys
import threading
from pathlib import Path
from typing import Optional

import pytest
from loguru import logger

from taskyou_core.bridge.ports import BridgeError
from taskyou_core.config import BridgeSettings, Settings
from taskyou_core.domain.models import ExecOutcome, ExecResult, ExecutorKind, Task
from taskyou_core.executors.base import ExecHandle, Executor, ExecRequest, PollStatus, new_ref
from taskyou_core.executors.registry import ExecutorRegistry
from taskyou_core.runtime import Runtime
from taskyou_core.sessions.sandbox import LIVE_STATUSES


def succeeded(summary: str = "done") -> PollStatus:
    return PollStatus.succeeded(ExecResult(ExecOutcome.SUCCESS, summary, {"exit_code": 0}))


class ScriptedExecutor(Executor):
    """In-memory backend: each run reports the next scripted poll status."""

    def __init__(self, kind: ExecutorKind, outcomes: Optional[list[PollStatus]] = None) -> None:
        self.kind = kind
        self.outcomes = list(outcomes or [])
        self.available = True
        self.start_error: Optional[Exception] = None
        self.started: list[tuple[str, ExecRequest]] = []
        self.resumed: list[tuple[str, str]] = []
        self.cancelled: list[str] = []
        self._runs: dict[str, PollStatus] = {}
        self._lock = threading.Lock()

    def _next(self) -> PollStatus:
        return self.outcomes.pop(0) if self.outcomes else succeeded()

    def is_available(self) -> bool:
        return self.available

    def start(self, task: Task, request: ExecRequest) -> ExecHandle:
        if self.start_error is not None:
            raise self.start_error
        handle = ExecHandle(self.kind, new_ref(self.kind))
        with self._lock:
            self.started.append((task.id, request))
            self._runs[handle.ref] = self._next()
        return handle

    def poll(self, handle: ExecHandle) -> PollStatus:
        with self._lock:
            status = self._runs.get(handle.ref)
        return status if status is not None else PollStatus.failed("executor handle lost")

    def cancel(self, handle: ExecHandle) -> None:
        with self._lock:
            self.cancelled.append(handle.ref)
            self._runs[handle.ref] = PollStatus.failed("cancelled")

    def fetch_result(self, handle: ExecHandle) -> Optional[ExecResult]:
        return self.poll(handle).result

    def resume(self, handle: ExecHandle, request: ExecRequest, user_input: str) -> ExecHandle:
        new_handle = ExecHandle(self.kind, new_ref(self.kind))
        with self._lock:
            self.resumed.append((handle.ref, user_input))
            self._runs.pop(handle.ref, None)
            self._runs[new_handle.ref] = self._next()
        return new_handle

    def settle(self, status: PollStatus) -> None:
        """Report ``status`` for every run still open."""
        with self._lock:
            for ref in self._runs:
                self._runs[ref] = status


class FakeBridgePort:
    def __init__(self, *, available: bool = True, fail: bool = False) -> None:
        self.available = available
        self.fail = fail
        self.calls: list[tuple] = []
        self._next_id = 100
        self._lock = threading.Lock()

    def is_available(self) -> bool:
        return self.available

    def _check(self, name: str) -> None:
        if self.fail:
            raise BridgeError(f"{name} failed")

    def create(self, title: str, *, body: str = "", project: Optional[str] = None) -> int:
        self._check("create")
        with self._lock:
            self._next_id += 1
            self.calls.append(("create", title, project))
            return self._next_id

    def status(self, external_id: int, status: str) -> None:
        self._check("status")
        with self._lock:
            self.calls.append(("status", external_id, status))

    def close(self, external_id: int) -> None:
        self._check("close")
        with self._lock:
            self.calls.append(("close", external_id))


def install_fake_agent(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, script: str, name: str = "claude") -> Path:
    """Put a shell script named like an agent CLI first on PATH."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)
    agent = bin_dir / name
    agent.write_text(f"#!/bin/sh\n{script}\n", encoding="utf-8")
    agent.chmod(0o755)
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    return agent


@pytest.fixture
def claude() -> ScriptedExecutor:
    return ScriptedExecutor(ExecutorKind.CLAUDE)


@pytest.fixture
def codex() -> ScriptedExecutor:
    return ScriptedExecutor(ExecutorKind.CODEX)


@pytest.fixture
def registry(claude: ScriptedExecutor, codex: ScriptedExecutor) -> ExecutorRegistry:
    registry = ExecutorRegistry()
    registry.register(claude)
    registry.register(codex)
    return registry


@pytest.fixture
def settings() -> Settings:
    return Settings(poll_interval_seconds=0.01, bridge=BridgeSettings(enabled=False))


@pytest.fixture
def runtime(tmp_path: Path, settings: Settings, registry: ExecutorRegistry):
    rt = Runtime(tmp_path / "state", settings=settings, executors=registry)
    yield rt
    rt.close(timeout=2.0)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class EchoStream:
    """Sandbox stream that echoes writes back, after any scripted output."""

    def __init__(self, scripted: Optional[list[bytes]] = None) -> None:
        self.queue: asyncio.Queue[bytes] = asyncio.Queue()
        for chunk in scripted or []:
            self.queue.put_nowait(chunk)
        self.written: list[bytes] = []
        self.closed = False

    async def read(self) -> bytes:
        return await self.queue.get()

    async def write(self, data: bytes) -> None:
        self.written.append(data)
        await self.queue.put(data)

    async def close(self) -> None:
        self.closed = True


class EchoSandboxProvider:
    def __init__(self, scripted: Optional[list[bytes]] = None) -> None:
        self.scripted = scripted
        self.streams: list[EchoStream] = []

    def has_sandbox(self, task: Task) -> bool:
        return task.status in LIVE_STATUSES

    async def open(self, task: Task, user_id: str) -> EchoStream:
        stream = EchoStream(self.scripted)
        self.streams.append(stream)
        return stream


@pytest.fixture(autouse=True)
def _restore_log_sink():
    yield
    # CLI tests point loguru at the captured stderr of a finished test.
    logger.remove()
    logger.add(sys.stderr, level="WARNING")

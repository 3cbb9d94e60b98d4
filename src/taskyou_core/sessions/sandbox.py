from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence

from loguru import logger

from ..domain.models import Task, TaskStatus
from ..errors import SandboxUnavailable

LIVE_STATUSES = frozenset({TaskStatus.RUNNING, TaskStatus.NEEDS_INPUT})


class SandboxStream(Protocol):
    async def read(self) -> bytes:
        """Return the next chunk, or b"" once the sandbox side has closed."""
        ...

    async def write(self, data: bytes) -> None:
        ...

    async def close(self) -> None:
        ...


class SandboxProvider(Protocol):
    def has_sandbox(self, task: Task) -> bool:
        ...

    async def open(self, task: Task, user_id: str) -> SandboxStream:
        ...


class ProcessSandboxStream:
    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self.process = process

    async def read(self) -> bytes:
        if self.process.stdout is None:
            return b""
        return await self.process.stdout.read(4096)

    async def write(self, data: bytes) -> None:
        if self.process.stdin is None or self.process.stdin.is_closing():
            return
        self.process.stdin.write(data)
        await self.process.stdin.drain()

    async def close(self) -> None:
        if self.process.stdin is not None and not self.process.stdin.is_closing():
            self.process.stdin.close()
        if self.process.returncode is not None:
            return
        self.process.terminate()
        try:
            await asyncio.wait_for(self.process.wait(), timeout=5)
        except asyncio.TimeoutError:
            self.process.kill()
            await self.process.wait()


class ProcessSandboxProvider:
    """Run a shell per session in the task's project directory."""

    def __init__(self, command: Sequence[str], resolve_workdir: Callable[[Task], Optional[Path]]) -> None:
        self.command = list(command)
        self._resolve_workdir = resolve_workdir

    def has_sandbox(self, task: Task) -> bool:
        return task.status in LIVE_STATUSES

    async def open(self, task: Task, user_id: str) -> SandboxStream:
        workdir = self._resolve_workdir(task)
        env = dict(os.environ, TASKYOU_TASK_ID=task.id, TASKYOU_USER=user_id)
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(workdir) if workdir else None,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=env,
            )
        except OSError as exc:
            raise SandboxUnavailable(f"Failed to start sandbox shell: {exc}") from exc
        logger.info("Opened sandbox shell for task {} (pid {})", task.id, process.pid)
        return ProcessSandboxStream(process)

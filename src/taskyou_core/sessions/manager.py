"""Interactive terminal sessions into a task's sandbox.

A session never changes task status itself. The one exception is routed:
a complete line typed while the task is waiting for input is submitted as a
``provide_input`` action.
"""

from __future__ import annotations

import asyncio
from typing import Optional, Protocol

from loguru import logger

from ..actions import ActionKind, ActionRouter
from ..domain.models import TaskStatus
from ..errors import OrchestratorError, SandboxUnavailable
from .sandbox import SandboxProvider, SandboxStream

SessionKey = tuple[str, str]


class SessionClient(Protocol):
    async def receive(self) -> Optional[bytes]:
        """Return the next chunk from the user, or None once they disconnect."""
        ...

    async def send(self, data: bytes) -> None:
        ...


class InteractiveSession:
    def __init__(self, manager: "SessionManager", task_id: str, user_id: str, stream: SandboxStream) -> None:
        self.manager = manager
        self.task_id = task_id
        self.user_id = user_id
        self.stream = stream
        self.closed = False
        self._line = bytearray()
        self._relays: set[asyncio.Task] = set()
        self._relay_lock = asyncio.Lock()

    @property
    def key(self) -> SessionKey:
        return (self.task_id, self.user_id)

    async def run(self, client: SessionClient) -> None:
        outbound = asyncio.create_task(self._pump_out(client))
        inbound = asyncio.create_task(self._pump_in(client))
        try:
            done, _ = await asyncio.wait({outbound, inbound}, return_when=asyncio.FIRST_COMPLETED)
            for finished in done:
                if not finished.cancelled() and finished.exception() is not None:
                    logger.warning("Session {} ended with error: {}", self.key, finished.exception())
        finally:
            for pump in (outbound, inbound):
                pump.cancel()
            await asyncio.gather(outbound, inbound, return_exceptions=True)
            await self.close()
            if self._relays:
                await asyncio.gather(*self._relays, return_exceptions=True)

    async def _pump_out(self, client: SessionClient) -> None:
        while True:
            data = await self.stream.read()
            if not data:
                return
            await client.send(data)

    async def _pump_in(self, client: SessionClient) -> None:
        while True:
            data = await client.receive()
            if data is None:
                return
            await self.stream.write(data)
            self._collect_lines(data)

    async def _relay(self, line: str) -> None:
        # One relay at a time, in the order lines were typed.
        async with self._relay_lock:
            await self.manager.relay_input(self.task_id, self.user_id, line)

    def _collect_lines(self, data: bytes) -> None:
        self._line.extend(data.replace(b"\r\n", b"\n").replace(b"\r", b"\n"))
        while b"\n" in self._line:
            raw, _, rest = bytes(self._line).partition(b"\n")
            self._line = bytearray(rest)
            line = raw.decode("utf-8", errors="replace").strip()
            if line:
                relay = asyncio.create_task(self._relay(line))
                self._relays.add(relay)
                relay.add_done_callback(self._relays.discard)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.stream.close()
        finally:
            self.manager._forget(self)
            logger.info("Closed session {}", self.key)


class SessionManager:
    def __init__(self, router: ActionRouter, provider: Optional[SandboxProvider]) -> None:
        self.router = router
        self.provider = provider
        self._sessions: dict[SessionKey, InteractiveSession] = {}

    async def open(self, task_id: str, user_id: str) -> InteractiveSession:
        if self.provider is None:
            raise SandboxUnavailable("No sandbox backend is configured")
        task = await asyncio.to_thread(self.router.machine.get, task_id, owner=user_id)
        if not self.provider.has_sandbox(task):
            raise SandboxUnavailable(f"Task {task_id} has no live sandbox")

        previous = self._sessions.pop((task_id, user_id), None)
        if previous is not None:
            await previous.close()

        stream = await self.provider.open(task, user_id)
        session = InteractiveSession(self, task_id, user_id, stream)
        self._sessions[session.key] = session
        logger.info("Opened session {}", session.key)
        return session

    def get(self, task_id: str, user_id: str) -> Optional[InteractiveSession]:
        return self._sessions.get((task_id, user_id))

    def active(self) -> list[SessionKey]:
        return list(self._sessions)

    def _forget(self, session: InteractiveSession) -> None:
        if self._sessions.get(session.key) is session:
            del self._sessions[session.key]

    async def relay_input(self, task_id: str, user_id: str, line: str) -> bool:
        machine = self.router.machine
        try:
            task = await asyncio.to_thread(machine.get, task_id)
            if task.status != TaskStatus.NEEDS_INPUT:
                return False
            await asyncio.to_thread(
                self.router.submit,
                ActionKind.PROVIDE_INPUT,
                {"task_id": task_id, "input": line},
                owner=user_id,
            )
        except OrchestratorError as exc:
            logger.warning("Could not relay session input for task {}: {}", task_id, exc)
            return False
        logger.info("Relayed session input from {} to task {}", user_id, task_id)
        return True

    async def close_all(self) -> None:
        for session in list(self._sessions.values()):
            await session.close()

from __future__ import annotations

import asyncio
import json
import threading
from typing import Any, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from loguru import logger
from starlette.websockets import WebSocketState

from ..domain.models import Task, TaskLogEntry
from ..errors import NotFound, SandboxUnavailable
from ..runtime import Runtime


class LogStreamHub:
    """Fan committed task log entries out to websocket subscribers.

    Transitions commit on worker threads, so publishing hops onto the loop
    that owns the sockets.
    """

    def __init__(self) -> None:
        self._clients: dict[int, tuple[WebSocket, str]] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = threading.Lock()

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        with self._lock:
            self._loop = loop

    async def handle_connection(self, websocket: WebSocket, task_id: str) -> None:
        self.attach_loop(asyncio.get_running_loop())
        await websocket.accept()
        cid = id(websocket)
        self._clients[cid] = (websocket, task_id)
        try:
            await websocket.send_text(json.dumps({"type": "subscribed", "task_id": task_id}))
            while True:
                message = await websocket.receive_text()
                if message.strip() == "ping":
                    await websocket.send_text(json.dumps({"type": "pong"}))
        except WebSocketDisconnect:
            pass
        finally:
            self._clients.pop(cid, None)

    async def publish(self, task_id: str, event: dict[str, Any]) -> None:
        payload = json.dumps(event)
        stale: list[int] = []
        for cid, (ws, subscribed) in list(self._clients.items()):
            if subscribed != task_id:
                continue
            try:
                await ws.send_text(payload)
            except (RuntimeError, WebSocketDisconnect):
                stale.append(cid)
        for cid in stale:
            self._clients.pop(cid, None)

    def publish_sync(self, task: Task, entry: TaskLogEntry) -> None:
        with self._lock:
            loop = self._loop
        if not self._clients or loop is None or not loop.is_running():
            return
        event = {"type": "log", "task": task.to_dict(), "entry": entry.to_dict()}
        asyncio.run_coroutine_threadsafe(self.publish(task.id, event), loop)


class WebSocketSessionClient:
    """Adapt a websocket to the interactive session client protocol."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    async def receive(self) -> Optional[bytes]:
        message = await self.websocket.receive()
        if message.get("type") == "websocket.disconnect":
            return None
        if message.get("bytes") is not None:
            return message["bytes"]
        return str(message.get("text") or "").encode("utf-8")

    async def send(self, data: bytes) -> None:
        await self.websocket.send_bytes(data)


def create_ws_router(runtime: Runtime, hub: LogStreamHub) -> APIRouter:
    router = APIRouter()

    @router.websocket("/ws/tasks/{task_id}/logs")
    async def task_log_stream(websocket: WebSocket, task_id: str) -> None:
        await hub.handle_connection(websocket, task_id)

    @router.websocket("/ws/tasks/{task_id}/terminal")
    async def task_terminal(websocket: WebSocket, task_id: str, user: str = Query("anonymous")) -> None:
        await websocket.accept()
        try:
            session = await runtime.sessions.open(task_id, user)
        except (SandboxUnavailable, NotFound) as exc:
            await websocket.send_text(json.dumps({"type": "error", "detail": str(exc)}))
            await websocket.close(code=4404 if isinstance(exc, NotFound) else 4503)
            return
        try:
            await session.run(WebSocketSessionClient(websocket))
        except Exception:
            logger.opt(exception=True).warning("Terminal session for task {} failed", task_id)
        finally:
            await session.close()
            if websocket.client_state == WebSocketState.CONNECTED:
                await websocket.close()

    return router

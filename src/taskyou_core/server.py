"""FastAPI application serving the dashboard API."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from .api.router import create_router
from .api.ws import LogStreamHub, create_ws_router
from .errors import (
    ExecutorUnavailable,
    InvalidTask,
    InvalidTransition,
    NotFound,
    OrchestratorError,
    ProjectInUse,
    SandboxUnavailable,
    StorageError,
    UnknownExecutorKind,
    UnsupportedAction,
)
from .runtime import Runtime

_STATUS_CODES: tuple[tuple[type[OrchestratorError], int], ...] = (
    (NotFound, 404),
    (InvalidTransition, 409),
    (ProjectInUse, 409),
    (UnsupportedAction, 400),
    (InvalidTask, 400),
    (UnknownExecutorKind, 400),
    (ExecutorUnavailable, 503),
    (SandboxUnavailable, 503),
    (StorageError, 503),
)


def status_code_for(exc: OrchestratorError) -> int:
    for error_type, code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return code
    return 500


def create_app(
    state_dir: Optional[Path] = None,
    *,
    runtime: Optional[Runtime] = None,
    start_worker: bool = True,
    enable_cors: bool = True,
) -> FastAPI:
    """Create the dashboard app.

    Args:
        state_dir: State root holding the YAML stores and config.
        runtime: Prebuilt runtime (tests inject scripted executors this way).
        start_worker: Start the orchestrator loop with the app.
        enable_cors: Whether to allow cross-origin requests.
    """
    if runtime is None:
        if state_dir is None:
            raise ValueError("create_app needs a state_dir or a runtime")
        runtime = Runtime(state_dir)
    hub = LogStreamHub()
    runtime.machine.add_listener(hub.publish_sync)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        hub.attach_loop(asyncio.get_running_loop())
        if start_worker:
            runtime.orchestrator.ensure_worker()
        logger.info("Dashboard serving state root {}", runtime.container.state_root)
        try:
            yield
        finally:
            await runtime.sessions.close_all()
            await asyncio.to_thread(runtime.close)

    app = FastAPI(
        title="taskyou",
        description="Task orchestration for AI coding agents",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error_handler(request: Request, exc: OrchestratorError) -> JSONResponse:
        code = status_code_for(exc)
        if code >= 500:
            logger.warning("{} {} failed: {}", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=code,
            content={"detail": str(exc), "error": type(exc).__name__, "retryable": exc.retryable},
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(create_router(runtime))
    app.include_router(create_ws_router(runtime, hub))
    return app

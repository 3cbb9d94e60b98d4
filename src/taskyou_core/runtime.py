"""Assemble the store, executors, bridge and services for one state root."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from loguru import logger

from .actions import ActionRouter
from .bridge.ports import BridgePort
from .bridge.synchronizer import BridgeSynchronizer
from .catalog import Catalog
from .config import Settings, load_settings
from .domain.models import Task
from .errors import NotFound
from .executors.registry import ExecutorRegistry, build_default_registry
from .orchestrator.service import OrchestratorService
from .orchestrator.state_machine import TaskStateMachine
from .sessions.manager import SessionManager
from .sessions.sandbox import ProcessSandboxProvider, SandboxProvider
from .storage.container import Container


class Runtime:
    def __init__(
        self,
        state_dir: Path,
        *,
        settings: Optional[Settings] = None,
        executors: Optional[ExecutorRegistry] = None,
        bridge_port: Optional[BridgePort] = None,
        sandbox: Optional[SandboxProvider] = None,
    ) -> None:
        self.container = Container(state_dir)
        self.settings = settings or load_settings(self.container.config.load())
        self.executors = executors or build_default_registry(self.settings, self.container.runs_dir)
        self.bridge = BridgeSynchronizer(self.settings.bridge, bridge_port)
        self.machine = TaskStateMachine(self.container, self.executors, self.bridge, self.settings)
        self.catalog = Catalog(self.container)
        self.router = ActionRouter(self.machine)
        self.orchestrator = OrchestratorService(self.machine, self.settings)
        if sandbox is None and self.settings.sandbox.enabled:
            sandbox = ProcessSandboxProvider(self.settings.sandbox.command, self._workdir)
        self.sessions = SessionManager(self.router, sandbox)

    def _workdir(self, task: Task) -> Optional[Path]:
        if not task.project_id:
            return None
        try:
            project = self.container.projects.get(task.project_id)
        except NotFound:
            return None
        return Path(project.path).expanduser() if project.path else None

    def close(self, *, timeout: float = 10.0) -> None:
        self.orchestrator.shutdown(timeout=timeout)
        self.bridge.shutdown(timeout=timeout)
        logger.debug("Runtime for {} closed", self.container.state_root)

"""Provide the public `taskyou_core` package exports."""

from __future__ import annotations

from .actions import ActionKind, ActionRouter
from .orchestrator import OrchestratorService, TaskStateMachine
from .runtime import Runtime

__version__ = "0.1.0"

__all__ = ["ActionKind", "ActionRouter", "OrchestratorService", "Runtime", "TaskStateMachine", "__version__"]

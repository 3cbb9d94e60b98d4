"""Error taxonomy shared by every layer of the orchestrator.

Callers decide whether to retry by looking at ``retryable``, never at the
message text.
"""

from __future__ import annotations

from typing import Optional


class OrchestratorError(Exception):
    retryable = False


class NotFound(OrchestratorError):
    def __init__(self, kind: str, ref: str) -> None:
        super().__init__(f"{kind} not found: {ref}")
        self.kind = kind
        self.ref = ref


class ProjectNotFound(NotFound):
    def __init__(self, ref: str) -> None:
        super().__init__("Project", ref)


class InvalidTransition(OrchestratorError):
    def __init__(self, task_id: str, current: str, target: str, detail: Optional[str] = None) -> None:
        message = f"Invalid transition for task {task_id}: {current} -> {target}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.task_id = task_id
        self.current = current
        self.target = target


class ExecutorError(OrchestratorError):
    pass


class ExecutorUnavailable(ExecutorError):
    retryable = True


class UnknownExecutorKind(ExecutorError):
    def __init__(self, kind: object, available: Optional[list[str]] = None) -> None:
        message = f"Unknown executor kind '{kind}'"
        if available is not None:
            message = f"{message} (available: {', '.join(available) or 'none'})"
        super().__init__(message)
        self.kind = kind


class InvalidTask(ExecutorError):
    pass


class SandboxUnavailable(OrchestratorError):
    pass


class StorageError(OrchestratorError):
    retryable = True


class UnsupportedAction(OrchestratorError):
    pass


class ProjectInUse(OrchestratorError):
    def __init__(self, project_id: str, active: int) -> None:
        super().__init__(f"Project {project_id} still has {active} active task(s)")
        self.project_id = project_id
        self.active = active

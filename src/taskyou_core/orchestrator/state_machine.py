"""Task lifecycle: the only code path that changes a task's status.

Every transition runs in the same order: check the current status, call the
executor if the transition needs it, compare-and-set the new status together
with its log entry, then hand the committed change to the bridge and to any
log listeners. A losing compare-and-set raises ``InvalidTransition`` and
leaves the task untouched.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Union

from loguru import logger

from ..bridge.synchronizer import BridgeSynchronizer
from ..config import Settings
from ..domain.models import (
    ExecutorKind,
    LogKind,
    Memory,
    Task,
    TaskLogEntry,
    TaskStatus,
    parse_iso,
)
from ..errors import InvalidTask, InvalidTransition, NotFound, ProjectNotFound
from ..executors.base import ExecHandle, Executor, ExecRequest, PollState
from ..executors.registry import ExecutorRegistry, resolve_executor_kind
from ..prompts import build_prompt
from ..storage.container import Container
from ..storage.file_repos import log_entry

_VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.RUNNING, TaskStatus.CANCELLED},
    TaskStatus.RUNNING: {TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.NEEDS_INPUT, TaskStatus.CANCELLED},
    TaskStatus.NEEDS_INPUT: {TaskStatus.RUNNING, TaskStatus.FAILED, TaskStatus.CANCELLED},
    TaskStatus.SUCCEEDED: set(),
    TaskStatus.FAILED: set(),
    TaskStatus.CANCELLED: set(),
}

INPUT_TIMEOUT_REASON = "input_timeout"

LogListener = Callable[[Task, TaskLogEntry], None]


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in _VALID_TRANSITIONS.get(current, set())


class TaskStateMachine:
    def __init__(
        self,
        container: Container,
        executors: ExecutorRegistry,
        bridge: BridgeSynchronizer,
        settings: Settings,
    ) -> None:
        self.container = container
        self.executors = executors
        self.bridge = bridge
        self.settings = settings
        self._listeners: list[LogListener] = []

    def add_listener(self, listener: LogListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: LogListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # -- helpers ---------------------------------------------------------

    def _require(self, task: Task, target: TaskStatus) -> None:
        if not can_transition(task.status, target):
            raise InvalidTransition(task.id, task.status.value, target.value)

    def _notify(self, task: Task, entry: TaskLogEntry) -> None:
        for listener in list(self._listeners):
            try:
                listener(task, entry)
            except Exception:
                logger.opt(exception=True).warning("Log listener failed for task {}", task.id)

    def _commit(
        self,
        task: Task,
        target: TaskStatus,
        payload: Optional[dict[str, Any]] = None,
        changes: Optional[dict[str, Any]] = None,
    ) -> Task:
        entry = log_entry(task.id, LogKind(target.value), **(payload or {}))
        updated = self.container.tasks.transition(
            task.id,
            expected=task.status,
            new_status=target,
            entry=entry,
            changes=changes,
        )
        logger.info("Task {} {} -> {}", task.id, task.status.value, target.value)
        self.bridge.schedule_transition(updated.id, updated.status, self._external_id)
        self._notify(updated, entry)
        return updated

    def _external_id(self, task_id: str) -> Optional[int]:
        try:
            return self.container.tasks.get(task_id).external_id
        except NotFound:
            return None

    def _record_external_id(self, task_id: str, external_id: int) -> None:
        try:
            self.container.tasks.update(task_id, {"external_id": external_id})
        except NotFound:
            logger.debug("Task {} was purged before its mirror id was recorded", task_id)

    def _executor(self, task: Task) -> Executor:
        return self.executors.get(task.executor_kind)

    def _memories(self, task: Task) -> list[Memory]:
        memories: list[Memory] = []
        if task.project_id:
            memories.extend(self.container.memories.list(scope="project", scope_id=task.project_id))
        memories.extend(self.container.memories.list(scope="task", scope_id=task.id))
        return memories

    def build_request(self, task: Task) -> ExecRequest:
        project = None
        if task.project_id:
            try:
                project = self.container.projects.get(task.project_id)
            except NotFound:
                logger.warning("Task {} references missing project {}", task.id, task.project_id)
        task_type = self.container.task_types.get(task.task_type) if task.task_type else None
        prompt = build_prompt(task, project=project, task_type=task_type, memories=self._memories(task))
        workdir = Path(project.path).expanduser() if project and project.path else None
        return ExecRequest(prompt=prompt, workdir=workdir)

    # -- operations ------------------------------------------------------

    def get(self, task_id: str, *, owner: Optional[str] = None) -> Task:
        return self.container.tasks.get(task_id, owner=owner)

    def create_task(
        self,
        title: str,
        *,
        body: str = "",
        project: Optional[str] = None,
        executor_kind: Optional[Union[str, ExecutorKind]] = None,
        task_type: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> Task:
        title = (title or "").strip()
        if not title:
            raise InvalidTask("Task title is required")

        kind = resolve_executor_kind(executor_kind, self.settings)
        self.executors.get(kind)

        if task_type and self.container.task_types.get(task_type) is None:
            raise InvalidTask(f"Unknown task type: {task_type}")

        # Project deletion counts tasks under this lock.
        with self.container.tasks.locked():
            project_record = None
            if project:
                project_record = self.container.projects.find(project, owner=owner)
                if project_record is None:
                    raise ProjectNotFound(project)

            task = Task(
                title=title,
                body=body or "",
                executor_kind=kind,
                project_id=project_record.id if project_record else None,
                task_type=task_type or None,
                owner=owner,
            )
            entry = log_entry(
                task.id,
                LogKind.CREATED,
                title=task.title,
                executor_kind=kind.value,
                project=project_record.name if project_record else None,
            )
            self.container.tasks.create(task, entry)
        logger.info("Created task {} ({}) with executor {}", task.id, task.title, kind.value)
        self.bridge.schedule_create(task, project_record.name if project_record else None, self._record_external_id)
        self._notify(task, entry)
        return task

    def update_task(self, task_id: str, changes: dict[str, Any], *, owner: Optional[str] = None) -> Task:
        self.get(task_id, owner=owner)
        if "task_type" in changes and changes["task_type"] and self.container.task_types.get(changes["task_type"]) is None:
            raise InvalidTask(f"Unknown task type: {changes['task_type']}")
        return self.container.tasks.update(task_id, changes)

    def start(self, task_id: str, *, owner: Optional[str] = None) -> Task:
        task = self.get(task_id, owner=owner)
        if task.status != TaskStatus.PENDING:
            raise InvalidTransition(task.id, task.status.value, TaskStatus.RUNNING.value, detail="only pending tasks start")
        executor = self._executor(task)
        handle = executor.start(task, self.build_request(task))
        try:
            return self._commit(
                task,
                TaskStatus.RUNNING,
                {"executor_kind": task.executor_kind.value, "handle": handle.ref},
                {"handle": handle.to_dict(), "reason": None, "input_prompt": None},
            )
        except Exception:
            executor.cancel(handle)
            raise

    def poll(self, task_id: str) -> Task:
        """Refresh a running task from its executor and apply the outcome."""
        task = self.get(task_id)
        if task.status != TaskStatus.RUNNING:
            return task
        if not task.handle:
            return self._commit(
                task,
                TaskStatus.FAILED,
                {"reason": "executor handle lost"},
                {"reason": "executor handle lost"},
            )

        status = self._executor(task).poll(ExecHandle.from_dict(task.handle))
        if status.state == PollState.RUNNING:
            return task
        if status.state == PollState.NEEDS_INPUT:
            prompt = status.prompt or "Input required"
            return self._commit(task, TaskStatus.NEEDS_INPUT, {"prompt": prompt}, {"input_prompt": prompt})
        if status.state == PollState.SUCCEEDED:
            result = status.result
            payload = {"summary": result.summary, "output": result.output} if result else {}
            return self._commit(task, TaskStatus.SUCCEEDED, payload, {"handle": None, "reason": None})
        reason = status.reason or "executor failed"
        return self._commit(task, TaskStatus.FAILED, {"reason": reason}, {"handle": None, "reason": reason})

    def provide_input(self, task_id: str, text: str, *, owner: Optional[str] = None) -> Task:
        task = self.get(task_id, owner=owner)
        if task.status != TaskStatus.NEEDS_INPUT:
            raise InvalidTransition(
                task.id, task.status.value, TaskStatus.RUNNING.value, detail="task is not waiting for input"
            )
        executor = self._executor(task)
        request = self.build_request(task)
        if task.handle:
            handle = executor.resume(ExecHandle.from_dict(task.handle), request, text)
        else:
            handle = executor.start(task, ExecRequest(f"{request.prompt}\n\nFeedback:\n{text}", request.workdir))
        try:
            return self._commit(
                task,
                TaskStatus.RUNNING,
                {"input": text, "handle": handle.ref},
                {"handle": handle.to_dict(), "input_prompt": None},
            )
        except Exception:
            executor.cancel(handle)
            raise

    def cancel(self, task_id: str, *, reason: str = "cancelled", owner: Optional[str] = None) -> Task:
        task = self.get(task_id, owner=owner)
        if task.status == TaskStatus.CANCELLED:
            return task
        self._require(task, TaskStatus.CANCELLED)
        if task.handle:
            self._executor(task).cancel(ExecHandle.from_dict(task.handle))
        try:
            return self._commit(
                task,
                TaskStatus.CANCELLED,
                {"reason": reason},
                {"handle": None, "reason": reason, "input_prompt": None},
            )
        except InvalidTransition:
            current = self.get(task_id)
            if current.status == TaskStatus.CANCELLED:
                return current
            raise

    def close(self, task_id: str, *, owner: Optional[str] = None) -> Task:
        return self.cancel(task_id, reason="closed", owner=owner)

    def expire_inputs(self, *, now: Optional[datetime] = None, timeout_seconds: Optional[float] = None) -> list[Task]:
        """Fail needs_input tasks that have waited longer than the timeout.

        Does nothing unless a timeout is configured or passed in.
        """
        timeout = timeout_seconds if timeout_seconds is not None else self.settings.input_timeout_seconds
        if timeout is None:
            return []
        now = now or datetime.now(timezone.utc)
        expired: list[Task] = []
        for task in self.container.tasks.list(status=[TaskStatus.NEEDS_INPUT]):
            waiting_since = parse_iso(task.status_changed_at)
            if waiting_since is None or (now - waiting_since).total_seconds() < timeout:
                continue
            if task.handle:
                self._executor(task).cancel(ExecHandle.from_dict(task.handle))
            try:
                expired.append(
                    self._commit(
                        task,
                        TaskStatus.FAILED,
                        {"reason": INPUT_TIMEOUT_REASON},
                        {"handle": None, "reason": INPUT_TIMEOUT_REASON},
                    )
                )
            except InvalidTransition:
                logger.debug("Task {} left needs_input before it expired", task.id)
        return expired

    def check_status(
        self, task_id: str, *, log_limit: int = 10, owner: Optional[str] = None
    ) -> tuple[Task, list[TaskLogEntry]]:
        task = self.get(task_id, owner=owner)
        return task, self.container.logs.for_task(task_id, limit=log_limit)

    def logs(self, task_id: str, *, limit: Optional[int] = None, owner: Optional[str] = None) -> list[TaskLogEntry]:
        self.get(task_id, owner=owner)
        return self.container.logs.for_task(task_id, limit=limit)

    def archive(self, task_id: str, *, owner: Optional[str] = None) -> Task:
        task = self.get(task_id, owner=owner)
        if task.archived:
            return task
        if not task.is_terminal:
            task = self.cancel(task_id, reason="archived", owner=owner)
        entry = log_entry(task.id, LogKind.ARCHIVED)
        archived = self.container.tasks.archive(task.id, entry)
        self._notify(archived, entry)
        return archived

    def purge(self, task_id: str, *, owner: Optional[str] = None) -> bool:
        task = self.get(task_id, owner=owner)
        if not task.is_terminal:
            raise InvalidTransition(task.id, task.status.value, "purged", detail="only finished tasks can be purged")
        removed = self.container.tasks.purge(task.id)
        if removed:
            logger.info("Purged task {}", task.id)
        return removed

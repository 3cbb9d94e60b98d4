"""Route pre-classified inbound actions onto the task state machine.

Front ends (dashboard, email intake, interactive sessions) classify what a
person wants and submit ``(kind, payload)``; this module validates the
payload and makes the matching state machine call.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .domain.models import Task, TaskLogEntry
from .errors import UnsupportedAction
from .orchestrator.state_machine import TaskStateMachine


class ActionKind(str, Enum):
    CREATE = "create"
    PROVIDE_INPUT = "provide_input"
    CHECK_STATUS = "check_status"
    CLOSE = "close"


_KIND_ALIASES = {
    "provideinput": ActionKind.PROVIDE_INPUT,
    "input": ActionKind.PROVIDE_INPUT,
    "checkstatus": ActionKind.CHECK_STATUS,
    "status": ActionKind.CHECK_STATUS,
    "query": ActionKind.CHECK_STATUS,
}


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class CreatePayload(_Payload):
    title: str = Field(min_length=1)
    body: str = ""
    project: Optional[str] = None
    executor_kind: Optional[str] = None
    task_type: Optional[str] = None
    start: bool = False


class ProvideInputPayload(_Payload):
    task_id: str = Field(min_length=1)
    input: str = Field(min_length=1)


class CheckStatusPayload(_Payload):
    task_id: str = Field(min_length=1)
    log_limit: int = Field(default=10, ge=0, le=500)


class ClosePayload(_Payload):
    task_id: str = Field(min_length=1)


_PAYLOADS: dict[ActionKind, type[_Payload]] = {
    ActionKind.CREATE: CreatePayload,
    ActionKind.PROVIDE_INPUT: ProvideInputPayload,
    ActionKind.CHECK_STATUS: CheckStatusPayload,
    ActionKind.CLOSE: ClosePayload,
}


@dataclass
class ActionResult:
    action: ActionKind
    task: Task
    logs: list[TaskLogEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "task": self.task.to_dict(),
            "logs": [entry.to_dict() for entry in self.logs],
        }


def parse_action_kind(kind: Union[str, ActionKind]) -> ActionKind:
    if isinstance(kind, ActionKind):
        return kind
    raw = str(kind or "").strip()
    try:
        return ActionKind(raw.lower())
    except ValueError:
        pass
    alias = _KIND_ALIASES.get(raw.replace("_", "").replace("-", "").lower())
    if alias is None:
        raise UnsupportedAction(f"Unsupported action: {raw or '<empty>'}")
    return alias


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "payload"
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts)


class ActionRouter:
    def __init__(self, machine: TaskStateMachine) -> None:
        self.machine = machine

    def submit(
        self,
        kind: Union[str, ActionKind],
        payload: Optional[dict[str, Any]] = None,
        *,
        owner: Optional[str] = None,
    ) -> ActionResult:
        action = parse_action_kind(kind)
        if payload is not None and not isinstance(payload, dict):
            raise UnsupportedAction(f"Malformed {action.value} action: payload must be an object")
        try:
            parsed = _PAYLOADS[action].model_validate(payload or {})
        except ValidationError as exc:
            raise UnsupportedAction(f"Malformed {action.value} action: {_validation_message(exc)}") from exc

        logger.debug("Routing {} action for owner {}", action.value, owner or "-")
        if action == ActionKind.CREATE:
            return self._create(parsed, owner)
        if action == ActionKind.PROVIDE_INPUT:
            task = self.machine.provide_input(parsed.task_id, parsed.input, owner=owner)
            return ActionResult(action, task)
        if action == ActionKind.CHECK_STATUS:
            task, logs = self.machine.check_status(parsed.task_id, log_limit=parsed.log_limit, owner=owner)
            return ActionResult(action, task, logs)
        task = self.machine.close(parsed.task_id, owner=owner)
        return ActionResult(action, task)

    def _create(self, payload: CreatePayload, owner: Optional[str]) -> ActionResult:
        task = self.machine.create_task(
            payload.title,
            body=payload.body,
            project=payload.project or None,
            executor_kind=payload.executor_kind or None,
            task_type=payload.task_type or None,
            owner=owner,
        )
        if payload.start:
            task = self.machine.start(task.id, owner=owner)
        return ActionResult(ActionKind.CREATE, task)

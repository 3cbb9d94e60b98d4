from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    NEEDS_INPUT = "needs_input"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CANCELLED})


class ExecutorKind(str, Enum):
    CLAUDE = "claude"
    CODEX = "codex"


class LogKind(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    NEEDS_INPUT = "needs_input"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ARCHIVED = "archived"


class ExecOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    NEEDS_INPUT = "needs_input"


MEMORY_CATEGORIES = ("general", "context", "patterns", "decisions", "gotchas")

# Tasks that have never been mirrored to the external tracker.
UNMIRRORED = None


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text or None


def _opt_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class Project:
    id: str = field(default_factory=lambda: _id("proj"))
    name: str = ""
    path: Optional[str] = None
    aliases: list[str] = field(default_factory=list)
    instructions: str = ""
    color: Optional[str] = None
    owner: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def matches(self, ref: str) -> bool:
        needle = str(ref or "").strip().lower()
        if not needle:
            return False
        if needle in {self.id.lower(), self.name.lower()}:
            return True
        return needle in {alias.strip().lower() for alias in self.aliases if alias.strip()}

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Project":
        aliases = data.get("aliases") or []
        if isinstance(aliases, str):
            aliases = [part.strip() for part in aliases.split(",")]
        return cls(
            id=str(data.get("id") or _id("proj")),
            name=str(data.get("name") or ""),
            path=_opt_str(data.get("path")),
            aliases=[str(alias) for alias in aliases if str(alias).strip()],
            instructions=str(data.get("instructions") or ""),
            color=_opt_str(data.get("color")),
            owner=_opt_str(data.get("owner")),
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
        )


@dataclass
class Task:
    id: str = field(default_factory=lambda: _id("task"))
    title: str = ""
    body: str = ""
    status: TaskStatus = TaskStatus.PENDING
    executor_kind: ExecutorKind = ExecutorKind.CLAUDE
    project_id: Optional[str] = None
    task_type: Optional[str] = None
    owner: Optional[str] = None
    external_id: Optional[int] = UNMIRRORED
    reason: Optional[str] = None
    input_prompt: Optional[str] = None
    handle: Optional[dict[str, Any]] = None
    archived: bool = False
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    status_changed_at: str = field(default_factory=now_iso)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["executor_kind"] = self.executor_kind.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        handle = data.get("handle")
        return cls(
            id=str(data.get("id") or _id("task")),
            title=str(data.get("title") or ""),
            body=str(data.get("body") or ""),
            status=TaskStatus(str(data.get("status") or TaskStatus.PENDING.value)),
            executor_kind=ExecutorKind(str(data.get("executor_kind") or ExecutorKind.CLAUDE.value)),
            project_id=_opt_str(data.get("project_id")),
            task_type=_opt_str(data.get("task_type")),
            owner=_opt_str(data.get("owner")),
            external_id=_opt_int(data.get("external_id")),
            reason=_opt_str(data.get("reason")),
            input_prompt=_opt_str(data.get("input_prompt")),
            handle=dict(handle) if isinstance(handle, dict) else None,
            archived=bool(data.get("archived", False)),
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
            status_changed_at=str(data.get("status_changed_at") or data.get("updated_at") or now_iso()),
        )


@dataclass
class TaskLogEntry:
    task_id: str
    kind: LogKind
    payload: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: _id("log"))
    seq: int = 0
    at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "seq": self.seq,
            "at": self.at,
            "kind": self.kind.value,
            "payload": dict(self.payload),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskLogEntry":
        return cls(
            id=str(data.get("id") or _id("log")),
            task_id=str(data.get("task_id") or ""),
            seq=int(data.get("seq") or 0),
            at=str(data.get("at") or now_iso()),
            kind=LogKind(str(data.get("kind"))),
            payload=dict(data.get("payload") or {}),
        )


@dataclass
class Memory:
    scope: str = "project"
    scope_id: str = ""
    key: str = ""
    content: str = ""
    category: str = "general"
    source_task_id: Optional[str] = None
    id: str = field(default_factory=lambda: _id("mem"))
    updated_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Memory":
        category = str(data.get("category") or "general")
        return cls(
            id=str(data.get("id") or _id("mem")),
            scope=str(data.get("scope") or "project"),
            scope_id=str(data.get("scope_id") or ""),
            key=str(data.get("key") or ""),
            content=str(data.get("content") or ""),
            category=category if category in MEMORY_CATEGORIES else "general",
            source_task_id=_opt_str(data.get("source_task_id")),
            updated_at=str(data.get("updated_at") or now_iso()),
        )


@dataclass
class TaskType:
    name: str
    label: str = ""
    instructions: str = ""
    sort_order: int = 0
    builtin: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskType":
        name = str(data.get("name") or "")
        return cls(
            name=name,
            label=str(data.get("label") or name.title()),
            instructions=str(data.get("instructions") or ""),
            sort_order=int(data.get("sort_order") or 0),
            builtin=bool(data.get("builtin", False)),
        )


BUILTIN_TASK_TYPES = (
    TaskType(
        name="code",
        label="Code",
        sort_order=1,
        builtin=True,
        instructions=(
            "You are working on the {{project}} project.\n\n"
            "Task: {{title}}\n\n{{body}}\n\n"
            "{{project_instructions}}\n\n{{memories}}\n\n"
            "Make the change, run the relevant tests, and summarize what you did."
        ),
    ),
    TaskType(
        name="writing",
        label="Writing",
        sort_order=2,
        builtin=True,
        instructions="Write the following.\n\nTopic: {{title}}\n\n{{body}}\n\n{{memories}}",
    ),
    TaskType(
        name="thinking",
        label="Thinking",
        sort_order=3,
        builtin=True,
        instructions=(
            "Think through the following question and give a clear recommendation.\n\n"
            "{{title}}\n\n{{body}}\n\n{{memories}}"
        ),
    ),
)


@dataclass
class ExecResult:
    outcome: ExecOutcome
    summary: str = ""
    output: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"outcome": self.outcome.value, "summary": self.summary, "output": dict(self.output)}

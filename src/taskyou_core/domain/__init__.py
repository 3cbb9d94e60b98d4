from .models import (
    BUILTIN_TASK_TYPES,
    TERMINAL_STATUSES,
    UNMIRRORED,
    ExecOutcome,
    ExecResult,
    ExecutorKind,
    LogKind,
    Memory,
    Project,
    Task,
    TaskLogEntry,
    TaskStatus,
    TaskType,
    now_iso,
)

__all__ = [
    "BUILTIN_TASK_TYPES",
    "TERMINAL_STATUSES",
    "UNMIRRORED",
    "ExecOutcome",
    "ExecResult",
    "ExecutorKind",
    "LogKind",
    "Memory",
    "Project",
    "Task",
    "TaskLogEntry",
    "TaskStatus",
    "TaskType",
    "now_iso",
]

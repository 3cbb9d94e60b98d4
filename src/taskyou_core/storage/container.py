from __future__ import annotations

from pathlib import Path

from .bootstrap import ensure_state_root
from .file_repos import (
    FileConfigRepository,
    FileMemoryRepository,
    FileProjectRepository,
    FileTaskLogRepository,
    FileTaskRepository,
    FileTaskTypeRepository,
)


class Container:
    def __init__(self, state_dir: Path) -> None:
        self.state_root = ensure_state_root(state_dir.expanduser().resolve())
        root = self.state_root

        self.logs = FileTaskLogRepository(root / "task_logs.jsonl", root / "task_logs.lock")
        self.tasks = FileTaskRepository(root / "tasks.yaml", root / "tasks.lock", self.logs)
        self.projects = FileProjectRepository(root / "projects.yaml", root / "projects.lock")
        self.memories = FileMemoryRepository(root / "memories.yaml", root / "memories.lock")
        self.task_types = FileTaskTypeRepository(root / "task_types.yaml", root / "task_types.lock")
        self.config = FileConfigRepository(root / "config.yaml", root / "config.lock")

    @property
    def runs_dir(self) -> Path:
        return self.state_root / "runs"

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ContextManager, Iterable, Optional

from ..domain.models import Memory, Project, Task, TaskLogEntry, TaskStatus, TaskType


class ProjectRepository(ABC):
    @abstractmethod
    def list(self, *, owner: Optional[str] = None) -> list[Project]:
        raise NotImplementedError

    @abstractmethod
    def get(self, project_id: str, *, owner: Optional[str] = None) -> Project:
        raise NotImplementedError

    @abstractmethod
    def find(self, ref: str, *, owner: Optional[str] = None) -> Optional[Project]:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, project: Project) -> Project:
        raise NotImplementedError

    @abstractmethod
    def delete(self, project_id: str) -> bool:
        raise NotImplementedError


class TaskLogRepository(ABC):
    @abstractmethod
    def append(self, entry: TaskLogEntry) -> TaskLogEntry:
        raise NotImplementedError

    @abstractmethod
    def for_task(self, task_id: str, *, limit: Optional[int] = None) -> list[TaskLogEntry]:
        raise NotImplementedError

    @abstractmethod
    def delete_for_task(self, task_id: str) -> int:
        raise NotImplementedError


class TaskRepository(ABC):
    @abstractmethod
    def locked(self) -> ContextManager[None]:
        """Hold the task collection lock across several calls."""
        raise NotImplementedError

    @abstractmethod
    def list(
        self,
        *,
        status: Optional[Iterable[TaskStatus]] = None,
        project_id: Optional[str] = None,
        owner: Optional[str] = None,
        include_archived: bool = False,
    ) -> list[Task]:
        raise NotImplementedError

    @abstractmethod
    def get(self, task_id: str, *, owner: Optional[str] = None) -> Task:
        raise NotImplementedError

    @abstractmethod
    def create(self, task: Task, entry: TaskLogEntry) -> Task:
        raise NotImplementedError

    @abstractmethod
    def transition(
        self,
        task_id: str,
        *,
        expected: TaskStatus,
        new_status: TaskStatus,
        entry: TaskLogEntry,
        changes: Optional[dict[str, Any]] = None,
    ) -> Task:
        raise NotImplementedError

    @abstractmethod
    def update(self, task_id: str, changes: dict[str, Any]) -> Task:
        raise NotImplementedError

    @abstractmethod
    def archive(self, task_id: str, entry: TaskLogEntry) -> Task:
        raise NotImplementedError

    @abstractmethod
    def purge(self, task_id: str) -> bool:
        raise NotImplementedError


class MemoryRepository(ABC):
    @abstractmethod
    def list(self, *, scope: Optional[str] = None, scope_id: Optional[str] = None) -> list[Memory]:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, memory: Memory) -> Memory:
        raise NotImplementedError

    @abstractmethod
    def delete(self, memory_id: str) -> bool:
        raise NotImplementedError


class TaskTypeRepository(ABC):
    @abstractmethod
    def list(self) -> list[TaskType]:
        raise NotImplementedError

    @abstractmethod
    def get(self, name: str) -> Optional[TaskType]:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, task_type: TaskType) -> TaskType:
        raise NotImplementedError

    @abstractmethod
    def delete(self, name: str) -> bool:
        raise NotImplementedError

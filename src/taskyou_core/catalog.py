"""Projects, memories and task types: the records tasks are built from."""

from __future__ import annotations

from typing import Any, Optional

from loguru import logger

from .domain.models import MEMORY_CATEGORIES, TERMINAL_STATUSES, Memory, Project, TaskStatus, TaskType
from .errors import ProjectInUse, ProjectNotFound
from .storage.container import Container

_PROJECT_FIELDS = {"name", "path", "aliases", "instructions", "color"}


class Catalog:
    def __init__(self, container: Container) -> None:
        self.container = container

    # Projects

    def list_projects(self, *, owner: Optional[str] = None) -> list[Project]:
        return self.container.projects.list(owner=owner)

    def resolve_project(self, ref: str, *, owner: Optional[str] = None) -> Project:
        project = self.container.projects.find(ref, owner=owner)
        if project is None:
            raise ProjectNotFound(ref)
        return project

    def create_project(
        self,
        name: str,
        *,
        path: Optional[str] = None,
        aliases: Optional[list[str]] = None,
        instructions: str = "",
        color: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> Project:
        name = (name or "").strip()
        if not name:
            raise ValueError("Project name is required")
        project = Project(
            name=name,
            path=path or None,
            aliases=[alias.strip() for alias in aliases or [] if alias.strip()],
            instructions=instructions or "",
            color=color,
            owner=owner,
        )
        self.container.projects.upsert(project)
        logger.info("Created project {} ({})", project.name, project.id)
        return project

    def update_project(self, ref: str, changes: dict[str, Any], *, owner: Optional[str] = None) -> Project:
        unknown = set(changes) - _PROJECT_FIELDS
        if unknown:
            raise ValueError(f"Unknown project fields: {', '.join(sorted(unknown))}")
        project = self.resolve_project(ref, owner=owner)
        for name, value in changes.items():
            setattr(project, name, value)
        return self.container.projects.upsert(project)

    def delete_project(self, ref: str, *, owner: Optional[str] = None) -> bool:
        project = self.resolve_project(ref, owner=owner)
        # Task creation checks the project under the same lock.
        with self.container.tasks.locked():
            active = self.active_task_count(project.id)
            if active:
                raise ProjectInUse(project.id, active)
            removed = self.container.projects.delete(project.id)
        for memory in self.container.memories.list(scope="project", scope_id=project.id):
            self.container.memories.delete(memory.id)
        logger.info("Deleted project {}", project.name)
        return removed

    def active_task_count(self, project_id: str) -> int:
        # Archiving cancels first, so archived tasks are never active.
        active = [status for status in TaskStatus if status not in TERMINAL_STATUSES]
        return len(self.container.tasks.list(status=active, project_id=project_id))

    # Memories

    def list_memories(self, scope: str, scope_id: str) -> list[Memory]:
        return self.container.memories.list(scope=scope, scope_id=scope_id)

    def set_memory(
        self,
        scope: str,
        scope_id: str,
        key: str,
        content: str,
        *,
        category: str = "general",
        source_task_id: Optional[str] = None,
    ) -> Memory:
        if scope not in {"project", "task"}:
            raise ValueError(f"Unknown memory scope: {scope}")
        if category not in MEMORY_CATEGORIES:
            raise ValueError(f"Unknown memory category: {category}")
        if not key.strip():
            raise ValueError("Memory key is required")
        memory = Memory(
            scope=scope,
            scope_id=scope_id,
            key=key.strip(),
            content=content,
            category=category,
            source_task_id=source_task_id,
        )
        return self.container.memories.upsert(memory)

    def delete_memory(self, memory_id: str) -> bool:
        return self.container.memories.delete(memory_id)

    # Task types

    def list_task_types(self) -> list[TaskType]:
        return self.container.task_types.list()

    def save_task_type(self, task_type: TaskType) -> TaskType:
        if not task_type.name.strip():
            raise ValueError("Task type name is required")
        return self.container.task_types.upsert(task_type)

    def delete_task_type(self, name: str) -> bool:
        return self.container.task_types.delete(name)

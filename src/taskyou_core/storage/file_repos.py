from __future__ import annotations

import json
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, ContextManager, Generic, Iterable, Iterator, Optional, TypeVar

import yaml

from ..domain.models import (
    LogKind,
    Memory,
    Project,
    Task,
    TaskLogEntry,
    TaskStatus,
    TaskType,
    now_iso,
    parse_iso,
)
from ..errors import InvalidTransition, NotFound, StorageError
from ..io_utils import FileLock, atomic_write_yaml, load_yaml_dict
from .interfaces import (
    MemoryRepository,
    ProjectRepository,
    TaskLogRepository,
    TaskRepository,
    TaskTypeRepository,
)

T = TypeVar("T")

SCHEMA_VERSION = 1

# Fields that may change outside of a status transition.
_MUTABLE_TASK_FIELDS = {"title", "body", "task_type", "external_id", "project_id"}


@contextmanager
def _storage_errors(name: str) -> Iterator[None]:
    try:
        yield
    except (OSError, yaml.YAMLError, json.JSONDecodeError) as exc:
        raise StorageError(f"{name}: {exc.__class__.__name__}: {exc}") from exc


class _YamlCollectionRepo(Generic[T]):
    def __init__(
        self,
        path: Path,
        lock_path: Path,
        key: str,
        loader: Callable[[dict[str, Any]], T],
        dumper: Callable[[T], dict[str, Any]],
    ) -> None:
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()
        self._depth = 0
        self._key = key
        self._loader = loader
        self._dumper = dumper

    @contextmanager
    def locked(self) -> Iterator[None]:
        with self._thread_lock:
            # The file lock is not reentrant; nested callers already hold it.
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return
            with _storage_errors(self._path.name):
                with self._lock:
                    self._depth = 1
                    try:
                        yield
                    finally:
                        self._depth = 0

    def load(self) -> list[T]:
        items = load_yaml_dict(self._path).get(self._key, [])
        if not isinstance(items, list):
            return []
        return [self._loader(item) for item in items if isinstance(item, dict)]

    def save(self, items: list[T]) -> None:
        payload = {"version": SCHEMA_VERSION, self._key: [self._dumper(item) for item in items]}
        atomic_write_yaml(self._path, payload)


class FileTaskLogRepository(TaskLogRepository):
    """Task log kept as an append-only JSONL file."""

    def __init__(self, path: Path, lock_path: Path) -> None:
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()

    def _read_all(self) -> list[TaskLogEntry]:
        if not self._path.exists():
            return []
        entries: list[TaskLogEntry] = []
        with self._path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    parsed = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(parsed, dict):
                    entries.append(TaskLogEntry.from_dict(parsed))
        return entries

    def append_with_offset(self, entry: TaskLogEntry) -> int:
        """Append ``entry`` and return the file size before the write.

        The offset lets a caller truncate the entry away again when the rest
        of its unit of work fails to persist.
        """
        with self._thread_lock:
            with _storage_errors(self._path.name):
                with self._lock:
                    previous = [e for e in self._read_all() if e.task_id == entry.task_id]
                    entry.seq = len(previous) + 1
                    if previous:
                        last_at = parse_iso(previous[-1].at)
                        current_at = parse_iso(entry.at)
                        if last_at and current_at and current_at < last_at:
                            entry.at = previous[-1].at
                    self._path.parent.mkdir(parents=True, exist_ok=True)
                    offset = self._path.stat().st_size if self._path.exists() else 0
                    with self._path.open("a", encoding="utf-8") as handle:
                        handle.write(json.dumps(entry.to_dict()) + "\n")
                        handle.flush()
                        os.fsync(handle.fileno())
                    return offset

    def rollback_to(self, offset: int) -> None:
        with self._thread_lock:
            with _storage_errors(self._path.name):
                with self._lock:
                    os.truncate(self._path, offset)

    def append(self, entry: TaskLogEntry) -> TaskLogEntry:
        self.append_with_offset(entry)
        return entry

    def for_task(self, task_id: str, *, limit: Optional[int] = None) -> list[TaskLogEntry]:
        with self._thread_lock:
            with _storage_errors(self._path.name):
                with self._lock:
                    entries = [entry for entry in self._read_all() if entry.task_id == task_id]
        if limit is not None and limit >= 0:
            return entries[-limit:] if limit else []
        return entries

    def delete_for_task(self, task_id: str) -> int:
        with self._thread_lock:
            with _storage_errors(self._path.name):
                with self._lock:
                    entries = self._read_all()
                    keep = [entry for entry in entries if entry.task_id != task_id]
                    tmp_path = self._path.with_suffix(f"{self._path.suffix}.tmp")
                    with tmp_path.open("w", encoding="utf-8") as handle:
                        for entry in keep:
                            handle.write(json.dumps(entry.to_dict()) + "\n")
                        handle.flush()
                        os.fsync(handle.fileno())
                    os.replace(tmp_path, self._path)
        return len(entries) - len(keep)


class FileTaskRepository(TaskRepository):
    def __init__(self, path: Path, lock_path: Path, logs: FileTaskLogRepository) -> None:
        self._repo = _YamlCollectionRepo[Task](
            path,
            lock_path,
            "tasks",
            loader=Task.from_dict,
            dumper=lambda t: t.to_dict(),
        )
        self._logs = logs

    def locked(self) -> ContextManager[None]:
        return self._repo.locked()

    @staticmethod
    def _index(tasks: list[Task], task_id: str) -> int:
        for idx, task in enumerate(tasks):
            if task.id == task_id:
                return idx
        raise NotFound("Task", task_id)

    def _commit(self, tasks: list[Task], entry: Optional[TaskLogEntry]) -> None:
        # The log entry and the task file form one unit: undo the append if
        # the task file cannot be written.
        offset = self._logs.append_with_offset(entry) if entry is not None else None
        try:
            self._repo.save(tasks)
        except (OSError, yaml.YAMLError) as exc:
            if offset is not None:
                self._logs.rollback_to(offset)
            raise StorageError(f"tasks: {exc.__class__.__name__}: {exc}") from exc

    def list(
        self,
        *,
        status: Optional[Iterable[TaskStatus]] = None,
        project_id: Optional[str] = None,
        owner: Optional[str] = None,
        include_archived: bool = False,
    ) -> list[Task]:
        wanted = {TaskStatus(s) for s in status} if status is not None else None
        with self._repo.locked():
            tasks = self._repo.load()
        out: list[Task] = []
        for task in tasks:
            if task.archived and not include_archived:
                continue
            if wanted is not None and task.status not in wanted:
                continue
            if project_id is not None and task.project_id != project_id:
                continue
            if owner is not None and task.owner not in {None, owner}:
                continue
            out.append(task)
        return out

    def get(self, task_id: str, *, owner: Optional[str] = None) -> Task:
        with self._repo.locked():
            tasks = self._repo.load()
        task = tasks[self._index(tasks, task_id)]
        if owner is not None and task.owner not in {None, owner}:
            raise NotFound("Task", task_id)
        return task

    def create(self, task: Task, entry: TaskLogEntry) -> Task:
        with self._repo.locked():
            tasks = self._repo.load()
            if any(existing.id == task.id for existing in tasks):
                raise ValueError(f"Task already exists: {task.id}")
            stamp = now_iso()
            task.created_at = task.created_at or stamp
            task.updated_at = stamp
            task.status_changed_at = stamp
            entry.at = stamp
            tasks.append(task)
            self._commit(tasks, entry)
        return task

    def transition(
        self,
        task_id: str,
        *,
        expected: TaskStatus,
        new_status: TaskStatus,
        entry: TaskLogEntry,
        changes: Optional[dict[str, Any]] = None,
    ) -> Task:
        with self._repo.locked():
            tasks = self._repo.load()
            idx = self._index(tasks, task_id)
            task = tasks[idx]
            if task.status != expected:
                raise InvalidTransition(
                    task_id,
                    task.status.value,
                    new_status.value,
                    detail=f"expected {expected.value}",
                )
            stamp = now_iso()
            for name, value in (changes or {}).items():
                if not hasattr(task, name) or name in {"id", "status"}:
                    raise ValueError(f"Unknown task field: {name}")
                setattr(task, name, value)
            task.status = new_status
            task.updated_at = stamp
            task.status_changed_at = stamp
            entry.at = stamp
            tasks[idx] = task
            self._commit(tasks, entry)
        return task

    def update(self, task_id: str, changes: dict[str, Any]) -> Task:
        unknown = set(changes) - _MUTABLE_TASK_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated directly: {', '.join(sorted(unknown))}")
        with self._repo.locked():
            tasks = self._repo.load()
            idx = self._index(tasks, task_id)
            task = tasks[idx]
            for name, value in changes.items():
                setattr(task, name, value)
            task.updated_at = now_iso()
            tasks[idx] = task
            self._commit(tasks, None)
        return task

    def archive(self, task_id: str, entry: TaskLogEntry) -> Task:
        with self._repo.locked():
            tasks = self._repo.load()
            idx = self._index(tasks, task_id)
            task = tasks[idx]
            if task.archived:
                return task
            task.archived = True
            task.updated_at = now_iso()
            entry.at = task.updated_at
            tasks[idx] = task
            self._commit(tasks, entry)
        return task

    def purge(self, task_id: str) -> bool:
        with self._repo.locked():
            tasks = self._repo.load()
            keep = [task for task in tasks if task.id != task_id]
            if len(keep) == len(tasks):
                return False
            self._repo.save(keep)
        self._logs.delete_for_task(task_id)
        return True


class FileProjectRepository(ProjectRepository):
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._repo = _YamlCollectionRepo[Project](
            path,
            lock_path,
            "projects",
            loader=Project.from_dict,
            dumper=lambda p: p.to_dict(),
        )

    def list(self, *, owner: Optional[str] = None) -> list[Project]:
        with self._repo.locked():
            projects = self._repo.load()
        if owner is None:
            return projects
        return [project for project in projects if project.owner in {None, owner}]

    def get(self, project_id: str, *, owner: Optional[str] = None) -> Project:
        for project in self.list(owner=owner):
            if project.id == project_id:
                return project
        raise NotFound("Project", project_id)

    def find(self, ref: str, *, owner: Optional[str] = None) -> Optional[Project]:
        projects = self.list(owner=owner)
        # Exact id/name beats alias so an alias never shadows a real project.
        for project in projects:
            if ref in {project.id, project.name}:
                return project
        for project in projects:
            if project.matches(ref):
                return project
        return None

    def upsert(self, project: Project) -> Project:
        with self._repo.locked():
            projects = self._repo.load()
            for existing in projects:
                if existing.id != project.id and existing.name.lower() == project.name.lower():
                    raise ValueError(f"Project name already exists: {project.name}")
            project.updated_at = now_iso()
            for idx, existing in enumerate(projects):
                if existing.id == project.id:
                    projects[idx] = project
                    break
            else:
                projects.append(project)
            self._repo.save(projects)
        return project

    def delete(self, project_id: str) -> bool:
        with self._repo.locked():
            projects = self._repo.load()
            keep = [project for project in projects if project.id != project_id]
            if len(keep) == len(projects):
                return False
            self._repo.save(keep)
        return True


class FileMemoryRepository(MemoryRepository):
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._repo = _YamlCollectionRepo[Memory](
            path,
            lock_path,
            "memories",
            loader=Memory.from_dict,
            dumper=lambda m: m.to_dict(),
        )

    def list(self, *, scope: Optional[str] = None, scope_id: Optional[str] = None) -> list[Memory]:
        with self._repo.locked():
            memories = self._repo.load()
        if scope is not None:
            memories = [memory for memory in memories if memory.scope == scope]
        if scope_id is not None:
            memories = [memory for memory in memories if memory.scope_id == scope_id]
        return memories

    def upsert(self, memory: Memory) -> Memory:
        with self._repo.locked():
            memories = self._repo.load()
            memory.updated_at = now_iso()
            for idx, existing in enumerate(memories):
                same_key = (existing.scope, existing.scope_id, existing.key) == (memory.scope, memory.scope_id, memory.key)
                if existing.id == memory.id or (memory.key and same_key):
                    memory.id = existing.id
                    memories[idx] = memory
                    break
            else:
                memories.append(memory)
            self._repo.save(memories)
        return memory

    def delete(self, memory_id: str) -> bool:
        with self._repo.locked():
            memories = self._repo.load()
            keep = [memory for memory in memories if memory.id != memory_id]
            if len(keep) == len(memories):
                return False
            self._repo.save(keep)
        return True


class FileTaskTypeRepository(TaskTypeRepository):
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._repo = _YamlCollectionRepo[TaskType](
            path,
            lock_path,
            "task_types",
            loader=TaskType.from_dict,
            dumper=lambda t: t.to_dict(),
        )

    def list(self) -> list[TaskType]:
        with self._repo.locked():
            types = self._repo.load()
        return sorted(types, key=lambda t: (t.sort_order, t.name))

    def get(self, name: str) -> Optional[TaskType]:
        for task_type in self.list():
            if task_type.name == name:
                return task_type
        return None

    def upsert(self, task_type: TaskType) -> TaskType:
        with self._repo.locked():
            types = self._repo.load()
            for idx, existing in enumerate(types):
                if existing.name == task_type.name:
                    task_type.builtin = existing.builtin
                    types[idx] = task_type
                    break
            else:
                types.append(task_type)
            self._repo.save(types)
        return task_type

    def delete(self, name: str) -> bool:
        with self._repo.locked():
            types = self._repo.load()
            for existing in types:
                if existing.name == name and existing.builtin:
                    raise ValueError(f"Cannot delete built-in task type: {name}")
            keep = [t for t in types if t.name != name]
            if len(keep) == len(types):
                return False
            self._repo.save(keep)
        return True


class FileConfigRepository:
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()

    def load(self) -> dict[str, Any]:
        with self._thread_lock:
            with _storage_errors(self._path.name):
                with self._lock:
                    return load_yaml_dict(self._path)

    def save(self, config: dict[str, Any]) -> dict[str, Any]:
        with self._thread_lock:
            with _storage_errors(self._path.name):
                with self._lock:
                    atomic_write_yaml(self._path, config)
        return config


def log_entry(task_id: str, kind: LogKind, **payload: Any) -> TaskLogEntry:
    return TaskLogEntry(task_id=task_id, kind=kind, payload={k: v for k, v in payload.items() if v is not None})

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Header, HTTPException, Query
from pydantic import BaseModel, Field

from ..domain.models import TaskStatus, TaskType
from ..runtime import Runtime


class CreateProjectRequest(BaseModel):
    name: str
    path: Optional[str] = None
    aliases: list[str] = Field(default_factory=list)
    instructions: str = ""
    color: Optional[str] = None


class UpdateProjectRequest(BaseModel):
    name: Optional[str] = None
    path: Optional[str] = None
    aliases: Optional[list[str]] = None
    instructions: Optional[str] = None
    color: Optional[str] = None


class MemoryRequest(BaseModel):
    content: str
    category: str = "general"
    source_task_id: Optional[str] = None


class CreateTaskRequest(BaseModel):
    title: str
    body: str = ""
    project: Optional[str] = None
    executor_kind: Optional[str] = None
    task_type: Optional[str] = None
    start: bool = False


class UpdateTaskRequest(BaseModel):
    title: Optional[str] = None
    body: Optional[str] = None
    task_type: Optional[str] = None


class ActionRequest(BaseModel):
    action: str
    payload: dict[str, Any] = Field(default_factory=dict)


class TaskTypeRequest(BaseModel):
    name: str
    label: str = ""
    instructions: str = ""
    sort_order: int = 0


def create_router(runtime: Runtime) -> APIRouter:
    router = APIRouter(prefix="/api", tags=["taskyou"])
    catalog = runtime.catalog
    machine = runtime.machine

    def _project_view(project: Any) -> dict[str, Any]:
        data = project.to_dict()
        data["active_tasks"] = catalog.active_task_count(project.id)
        return data

    @router.get("/projects")
    def list_projects(x_user_id: Optional[str] = Header(None)) -> dict[str, Any]:
        return {"projects": [_project_view(p) for p in catalog.list_projects(owner=x_user_id)]}

    @router.post("/projects")
    def create_project(body: CreateProjectRequest, x_user_id: Optional[str] = Header(None)) -> dict[str, Any]:
        try:
            project = catalog.create_project(
                body.name,
                path=body.path,
                aliases=body.aliases,
                instructions=body.instructions,
                color=body.color,
                owner=x_user_id,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"project": _project_view(project)}

    @router.get("/projects/{ref}")
    def get_project(ref: str, x_user_id: Optional[str] = Header(None)) -> dict[str, Any]:
        return {"project": _project_view(catalog.resolve_project(ref, owner=x_user_id))}

    @router.patch("/projects/{ref}")
    def update_project(ref: str, body: UpdateProjectRequest, x_user_id: Optional[str] = Header(None)) -> dict[str, Any]:
        try:
            project = catalog.update_project(ref, body.model_dump(exclude_none=True), owner=x_user_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"project": _project_view(project)}

    @router.delete("/projects/{ref}")
    def delete_project(ref: str, x_user_id: Optional[str] = Header(None)) -> dict[str, Any]:
        return {"deleted": catalog.delete_project(ref, owner=x_user_id)}

    @router.get("/projects/{ref}/memories")
    def list_project_memories(ref: str, x_user_id: Optional[str] = Header(None)) -> dict[str, Any]:
        project = catalog.resolve_project(ref, owner=x_user_id)
        return {"memories": [m.to_dict() for m in catalog.list_memories("project", project.id)]}

    @router.put("/projects/{ref}/memories/{key}")
    def put_project_memory(
        ref: str, key: str, body: MemoryRequest, x_user_id: Optional[str] = Header(None)
    ) -> dict[str, Any]:
        project = catalog.resolve_project(ref, owner=x_user_id)
        try:
            memory = catalog.set_memory(
                "project",
                project.id,
                key,
                body.content,
                category=body.category,
                source_task_id=body.source_task_id,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"memory": memory.to_dict()}

    @router.get("/tasks")
    def list_tasks(
        status: Optional[str] = Query(None),
        project: Optional[str] = Query(None),
        include_archived: bool = Query(False),
        x_user_id: Optional[str] = Header(None),
    ) -> dict[str, Any]:
        statuses = None
        if status:
            try:
                statuses = [TaskStatus(part.strip()) for part in status.split(",") if part.strip()]
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=f"Unknown status: {status}") from exc
        project_id = catalog.resolve_project(project, owner=x_user_id).id if project else None
        tasks = runtime.container.tasks.list(
            status=statuses,
            project_id=project_id,
            owner=x_user_id,
            include_archived=include_archived,
        )
        tasks.sort(key=lambda task: task.created_at)
        return {"tasks": [task.to_dict() for task in tasks]}

    @router.post("/tasks")
    def create_task(body: CreateTaskRequest, x_user_id: Optional[str] = Header(None)) -> dict[str, Any]:
        result = runtime.router.submit("create", body.model_dump(exclude_none=True), owner=x_user_id)
        return {"task": result.task.to_dict()}

    @router.get("/tasks/{task_id}")
    def get_task(task_id: str, x_user_id: Optional[str] = Header(None)) -> dict[str, Any]:
        return {"task": machine.get(task_id, owner=x_user_id).to_dict()}

    @router.patch("/tasks/{task_id}")
    def update_task(task_id: str, body: UpdateTaskRequest, x_user_id: Optional[str] = Header(None)) -> dict[str, Any]:
        changes = body.model_dump(exclude_none=True)
        if "title" in changes and not changes["title"].strip():
            raise HTTPException(status_code=400, detail="Task title cannot be empty")
        task = machine.update_task(task_id, changes, owner=x_user_id)
        return {"task": task.to_dict()}

    @router.delete("/tasks/{task_id}")
    def delete_task(task_id: str, purge: bool = Query(False), x_user_id: Optional[str] = Header(None)) -> dict[str, Any]:
        if purge:
            return {"purged": machine.purge(task_id, owner=x_user_id)}
        return {"task": machine.archive(task_id, owner=x_user_id).to_dict()}

    @router.get("/tasks/{task_id}/logs")
    def task_logs(
        task_id: str,
        limit: Optional[int] = Query(None, ge=0),
        x_user_id: Optional[str] = Header(None),
    ) -> dict[str, Any]:
        return {"logs": [entry.to_dict() for entry in machine.logs(task_id, limit=limit, owner=x_user_id)]}

    @router.post("/tasks/{task_id}/actions")
    def task_action(task_id: str, body: ActionRequest, x_user_id: Optional[str] = Header(None)) -> dict[str, Any]:
        payload = {**body.payload, "task_id": task_id}
        return runtime.router.submit(body.action, payload, owner=x_user_id).to_dict()

    @router.post("/actions")
    def submit_action(body: ActionRequest, x_user_id: Optional[str] = Header(None)) -> dict[str, Any]:
        return runtime.router.submit(body.action, body.payload, owner=x_user_id).to_dict()

    @router.get("/task-types")
    def list_task_types() -> dict[str, Any]:
        return {"task_types": [t.to_dict() for t in catalog.list_task_types()]}

    @router.post("/task-types")
    def save_task_type(body: TaskTypeRequest) -> dict[str, Any]:
        try:
            task_type = catalog.save_task_type(TaskType.from_dict(body.model_dump()))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"task_type": task_type.to_dict()}

    @router.delete("/task-types/{name}")
    def delete_task_type(name: str) -> dict[str, Any]:
        try:
            deleted = catalog.delete_task_type(name)
        except ValueError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        if not deleted:
            raise HTTPException(status_code=404, detail="Task type not found")
        return {"deleted": True}

    @router.get("/executors")
    def list_executors() -> dict[str, Any]:
        available = set(runtime.executors.available())
        return {
            "default": runtime.settings.executors.default,
            "executors": [
                {"kind": kind.value, "available": kind in available} for kind in runtime.executors.kinds()
            ],
        }

    @router.get("/orchestrator")
    def orchestrator_status() -> dict[str, Any]:
        status = runtime.orchestrator.status()
        status["bridge"] = {"available": runtime.bridge.available}
        status["sessions"] = len(runtime.sessions.active())
        return status

    return router

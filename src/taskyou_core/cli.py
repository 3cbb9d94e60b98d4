from __future__ import annotations

import argparse
import json
import sys
import time
from typing import Any, Optional

from rich.console import Console
from rich.table import Table

from .domain.models import TaskStatus
from .errors import OrchestratorError
from .logging_utils import configure_logging, format_log_line
from .runtime import Runtime
from .storage.bootstrap import resolve_state_dir

STATUS_STYLES = {
    TaskStatus.PENDING: "white",
    TaskStatus.RUNNING: "cyan",
    TaskStatus.NEEDS_INPUT: "yellow",
    TaskStatus.SUCCEEDED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.CANCELLED: "dim",
}


def _runtime(args: argparse.Namespace) -> Runtime:
    return Runtime(resolve_state_dir(args.state_dir))


def _emit(payload: dict[str, Any]) -> int:
    sys.stdout.write(json.dumps(payload, indent=2) + "\n")
    return 0


def _project_add(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    try:
        project = runtime.catalog.create_project(
            args.name,
            path=args.path,
            aliases=args.alias or [],
            instructions=args.instructions or "",
            color=args.color,
        )
    except ValueError as exc:
        sys.stderr.write(f"error: {exc}\n")
        return 1
    return _emit({"project": project.to_dict()})


def _project_list(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    projects = runtime.catalog.list_projects()
    if args.json:
        return _emit({"projects": [project.to_dict() for project in projects]})
    table = Table(title="Projects", show_header=True)
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Aliases")
    table.add_column("Path")
    for project in projects:
        table.add_row(project.id, project.name, ", ".join(project.aliases), project.path or "")
    Console().print(table)
    return 0


def _project_show(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    project = runtime.catalog.resolve_project(args.ref)
    memories = runtime.catalog.list_memories("project", project.id)
    return _emit({"project": project.to_dict(), "memories": [memory.to_dict() for memory in memories]})


def _project_delete(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    return _emit({"deleted": runtime.catalog.delete_project(args.ref), "project": args.ref})


def _project_remember(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    project = runtime.catalog.resolve_project(args.ref)
    try:
        memory = runtime.catalog.set_memory("project", project.id, args.key, args.content, category=args.category)
    except ValueError as exc:
        sys.stderr.write(f"error: {exc}\n")
        return 1
    return _emit({"memory": memory.to_dict()})


def _task_create(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    payload = {
        "title": args.title,
        "body": args.body or "",
        "project": args.project,
        "executor_kind": args.executor,
        "task_type": args.task_type,
        "start": args.start,
    }
    result = runtime.router.submit("create", {k: v for k, v in payload.items() if v is not None})
    runtime.bridge.flush(timeout=runtime.settings.bridge.timeout_seconds)
    task = runtime.machine.get(result.task.id)
    return _emit({"task": task.to_dict()})


def _task_list(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    statuses = [TaskStatus(args.status)] if args.status else None
    project_id = runtime.catalog.resolve_project(args.project).id if args.project else None
    tasks = runtime.container.tasks.list(status=statuses, project_id=project_id, include_archived=args.all)
    tasks.sort(key=lambda task: task.created_at)
    if args.json:
        return _emit({"tasks": [task.to_dict() for task in tasks]})
    table = Table(title="Tasks", show_header=True)
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Executor")
    table.add_column("Reason")
    for task in tasks:
        style = STATUS_STYLES.get(task.status, "white")
        table.add_row(
            task.id,
            task.title,
            f"[{style}]{task.status.value}[/{style}]",
            task.executor_kind.value,
            task.reason or task.input_prompt or "",
        )
    Console().print(table)
    return 0


def _task_show(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    result = runtime.router.submit("check_status", {"task_id": args.task_id, "log_limit": args.limit})
    return _emit(result.to_dict())


def _task_logs(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    entries = runtime.machine.logs(args.task_id, limit=args.limit)
    if args.json:
        return _emit({"logs": [entry.to_dict() for entry in entries]})
    for entry in entries:
        sys.stdout.write(format_log_line(entry.to_dict()) + "\n")
    return 0


def _task_input(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    result = runtime.router.submit("provide_input", {"task_id": args.task_id, "input": args.text})
    return _emit({"task": result.task.to_dict()})


def _task_close(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    result = runtime.router.submit("close", {"task_id": args.task_id})
    runtime.bridge.flush(timeout=runtime.settings.bridge.timeout_seconds)
    return _emit({"task": result.task.to_dict()})


def _task_archive(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    if args.purge:
        return _emit({"purged": runtime.machine.purge(args.task_id), "task_id": args.task_id})
    return _emit({"task": runtime.machine.archive(args.task_id).to_dict()})


def _action(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    try:
        payload = json.loads(args.payload) if args.payload else {}
    except json.JSONDecodeError as exc:
        sys.stderr.write(f"error: --payload is not valid JSON: {exc}\n")
        return 1
    result = runtime.router.submit(args.kind, payload)
    return _emit(result.to_dict())


def _executors(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    available = set(runtime.executors.available())
    return _emit(
        {
            "default": runtime.settings.executors.default,
            "executors": [{"kind": kind.value, "available": kind in available} for kind in runtime.executors.kinds()],
        }
    )


def _worker(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    if args.once:
        dispatched = runtime.orchestrator.tick_once()
        runtime.orchestrator.drain()
        summary = {"dispatched": dispatched, **runtime.orchestrator.status()}
        runtime.close()
        return _emit(summary)

    runtime.orchestrator.ensure_worker()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        sys.stderr.write("Stopping worker...\n")
    finally:
        runtime.close()
    return 0


def _server(args: argparse.Namespace) -> int:
    import uvicorn

    from .server import create_app

    app = create_app(resolve_state_dir(args.state_dir))
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="taskyou: orchestrate AI agent tasks")
    parser.add_argument("--state-dir", default=None, help="State directory (default: $TASKYOU_HOME or ~/.taskyou)")
    parser.add_argument("--log-level", default="WARNING", help="Log level for stderr output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    server = subparsers.add_parser("server", help="Start the dashboard API server")
    server.add_argument("--host", default="127.0.0.1")
    server.add_argument("--port", default=8000, type=int)
    server.set_defaults(func=_server)

    worker = subparsers.add_parser("worker", help="Run the orchestrator loop in the foreground")
    worker.add_argument("--once", action="store_true", help="Run a single tick and exit")
    worker.set_defaults(func=_worker)

    executors = subparsers.add_parser("executors", help="List executor backends")
    executors.set_defaults(func=_executors)

    project = subparsers.add_parser("project", help="Manage projects")
    project_sub = project.add_subparsers(dest="project_cmd", required=True)
    padd = project_sub.add_parser("add", help="Create a project")
    padd.add_argument("name")
    padd.add_argument("--path", default=None)
    padd.add_argument("--alias", action="append", help="Alias (repeatable)")
    padd.add_argument("--instructions", default="")
    padd.add_argument("--color", default=None)
    padd.set_defaults(func=_project_add)
    plist = project_sub.add_parser("list", help="List projects")
    plist.add_argument("--json", action="store_true")
    plist.set_defaults(func=_project_list)
    pshow = project_sub.add_parser("show", help="Show a project and its memories")
    pshow.add_argument("ref")
    pshow.set_defaults(func=_project_show)
    pdelete = project_sub.add_parser("delete", help="Delete a project with no active tasks")
    pdelete.add_argument("ref")
    pdelete.set_defaults(func=_project_delete)
    premember = project_sub.add_parser("remember", help="Store a project memory")
    premember.add_argument("ref")
    premember.add_argument("key")
    premember.add_argument("content")
    premember.add_argument("--category", default="general")
    premember.set_defaults(func=_project_remember)

    task = subparsers.add_parser("task", help="Manage tasks")
    task_sub = task.add_subparsers(dest="task_cmd", required=True)
    tcreate = task_sub.add_parser("create", help="Create a task")
    tcreate.add_argument("title")
    tcreate.add_argument("--body", default="")
    tcreate.add_argument("--project", default=None)
    tcreate.add_argument("--executor", default=None, choices=["claude", "codex"])
    tcreate.add_argument("--type", dest="task_type", default=None)
    tcreate.add_argument("--start", action="store_true", help="Start the task immediately")
    tcreate.set_defaults(func=_task_create)
    tlist = task_sub.add_parser("list", help="List tasks")
    tlist.add_argument("--status", default=None, choices=[status.value for status in TaskStatus])
    tlist.add_argument("--project", default=None)
    tlist.add_argument("--all", action="store_true", help="Include archived tasks")
    tlist.add_argument("--json", action="store_true")
    tlist.set_defaults(func=_task_list)
    tshow = task_sub.add_parser("show", help="Show a task and its recent log")
    tshow.add_argument("task_id")
    tshow.add_argument("--limit", default=10, type=int)
    tshow.set_defaults(func=_task_show)
    tlogs = task_sub.add_parser("logs", help="Print a task's log")
    tlogs.add_argument("task_id")
    tlogs.add_argument("--limit", default=None, type=int)
    tlogs.add_argument("--json", action="store_true")
    tlogs.set_defaults(func=_task_logs)
    tinput = task_sub.add_parser("input", help="Answer a task that needs input")
    tinput.add_argument("task_id")
    tinput.add_argument("text")
    tinput.set_defaults(func=_task_input)
    tclose = task_sub.add_parser("close", help="Close (cancel) a task")
    tclose.add_argument("task_id")
    tclose.set_defaults(func=_task_close)
    tarchive = task_sub.add_parser("archive", help="Archive a task")
    tarchive.add_argument("task_id")
    tarchive.add_argument("--purge", action="store_true", help="Delete the task and its log instead")
    tarchive.set_defaults(func=_task_archive)

    action = subparsers.add_parser("action", help="Submit an inbound action")
    action.add_argument("kind", help="create, provide_input, check_status or close")
    action.add_argument("--payload", default=None, help="JSON object payload")
    action.set_defaults(func=_action)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return int(handler(args) or 0)
    except OrchestratorError as exc:
        sys.stderr.write(f"error: {exc}\n")
        return 1

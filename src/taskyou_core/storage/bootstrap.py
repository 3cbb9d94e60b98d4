from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from loguru import logger

from ..domain.models import BUILTIN_TASK_TYPES
from .file_repos import SCHEMA_VERSION, FileConfigRepository, FileTaskTypeRepository

STATE_FILES = {
    "projects": "projects.yaml",
    "tasks": "tasks.yaml",
    "task_types": "task_types.yaml",
    "memories": "memories.yaml",
    "task_logs": "task_logs.jsonl",
    "config": "config.yaml",
}

DEFAULT_CONFIG = {
    "orchestrator": {"concurrency": 2, "poll_interval_seconds": 2.0, "input_timeout_seconds": None},
    "retry": {"max_attempts": 1, "backoff_seconds": 1.0},
    "executors": {
        "default": "claude",
        "poll_wait_seconds": 0.5,
        "claude": {"command": "claude", "args": []},
        "codex": {"command": "codex exec -", "timeout_seconds": 1800},
    },
    "bridge": {"enabled": True, "command": "ty", "timeout_seconds": 30},
    "sandbox": {"enabled": False, "command": ["/bin/sh", "-i"]},
}


def resolve_state_dir(state_dir: Optional[str] = None) -> Path:
    raw = state_dir or os.environ.get("TASKYOU_HOME") or str(Path.home() / ".taskyou")
    return Path(raw).expanduser().resolve()


def ensure_state_root(state_dir: Path) -> Path:
    state_dir.mkdir(parents=True, exist_ok=True)
    (state_dir / "runs").mkdir(exist_ok=True)

    for file_name in STATE_FILES.values():
        target = state_dir / file_name
        if target.exists():
            continue
        if file_name.endswith(".yaml"):
            target.write_text(f"version: {SCHEMA_VERSION}\n", encoding="utf-8")
        else:
            target.touch()

    config_repo = FileConfigRepository(state_dir / "config.yaml", state_dir / "config.lock")
    config = config_repo.load()
    if config.get("schema_version") != SCHEMA_VERSION:
        config["schema_version"] = SCHEMA_VERSION
        config.pop("version", None)
        for section, defaults in DEFAULT_CONFIG.items():
            config.setdefault(section, defaults)
        config_repo.save(config)

    task_types = FileTaskTypeRepository(state_dir / "task_types.yaml", state_dir / "task_types.lock")
    existing = {task_type.name for task_type in task_types.list()}
    for builtin in BUILTIN_TASK_TYPES:
        if builtin.name not in existing:
            task_types.upsert(builtin)
            logger.debug("Seeded built-in task type {}", builtin.name)

    return state_dir

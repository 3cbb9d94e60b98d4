"""On-disk record of one executor run.

Everything needed to observe, resume or cancel a run lives in its
directory under ``<state>/runs/<ref>``, so a run started by one process
(a CLI call, a previous server) can be finished by another.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

from ..domain.models import now_iso
from ..io_utils import read_tail
from .supervise import EXIT_CODE_FILE, STDERR_FILE, STDOUT_FILE, write_exit_code

PROMPT_FILE = "prompt.txt"
META_FILE = "run.json"
CANCELLED = "cancelled"
TIMED_OUT = "timed_out"


class RunDir:
    def __init__(self, path: Path) -> None:
        self.path = path

    @classmethod
    def create(cls, runs_dir: Path, ref: str, prompt: str) -> "RunDir":
        run = cls(runs_dir / ref)
        run.path.mkdir(parents=True, exist_ok=True)
        (run.path / PROMPT_FILE).write_text(prompt, encoding="utf-8")
        return run

    @property
    def exists(self) -> bool:
        return self.path.is_dir()

    @property
    def prompt_path(self) -> Path:
        return self.path / PROMPT_FILE

    def prompt(self) -> str:
        try:
            return self.prompt_path.read_text(encoding="utf-8")
        except OSError:
            return ""

    def stdout(self, max_chars: int = 20000) -> str:
        return read_tail(self.path / STDOUT_FILE, max_chars)

    def stderr(self, max_chars: int = 2000) -> str:
        return read_tail(self.path / STDERR_FILE, max_chars)

    def write_output(self, stdout: str, stderr: str) -> None:
        (self.path / STDOUT_FILE).write_text(stdout, encoding="utf-8")
        (self.path / STDERR_FILE).write_text(stderr, encoding="utf-8")

    def exit_code(self) -> Optional[int]:
        try:
            return int((self.path / EXIT_CODE_FILE).read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def write_exit_code(self, code: int) -> None:
        write_exit_code(self.path, code)

    def meta(self) -> dict[str, Any]:
        try:
            data = json.loads((self.path / META_FILE).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return {}
        return data if isinstance(data, dict) else {}

    def write_meta(self, **fields: Any) -> None:
        data = {**self.meta(), **fields}
        tmp_path = self.path / f"{META_FILE}.tmp"
        tmp_path.write_text(json.dumps(data), encoding="utf-8")
        os.replace(tmp_path, self.path / META_FILE)

    def mark(self, name: str, detail: str = "") -> None:
        (self.path / name).write_text(detail or now_iso(), encoding="utf-8")

    def marker(self, name: str) -> Optional[str]:
        try:
            return (self.path / name).read_text(encoding="utf-8")
        except OSError:
            return None

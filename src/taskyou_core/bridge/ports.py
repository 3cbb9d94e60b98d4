"""Ports onto the external task tracker."""

from __future__ import annotations

import json
import shutil
import subprocess
from typing import Any, Callable, Optional, Protocol


class BridgeError(Exception):
    """Raised by ports; never escapes the synchronizer."""


class BridgePort(Protocol):
    def is_available(self) -> bool:
        ...

    def create(self, title: str, *, body: str = "", project: Optional[str] = None) -> int:
        ...

    def status(self, external_id: int, status: str) -> None:
        ...

    def close(self, external_id: int) -> None:
        ...


class CliBridgePort:
    """Shell out to the ``ty`` CLI.

    ``create`` must print a JSON object with an integer ``id``; a non-zero
    exit, a timeout or unparseable output is a bridge failure.
    """

    def __init__(
        self,
        command: str = "ty",
        *,
        timeout_seconds: int = 30,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self.command = command
        self.timeout_seconds = timeout_seconds
        self._runner = runner
        self._resolved: Optional[str] = None

    def is_available(self) -> bool:
        self._resolved = shutil.which(self.command)
        return self._resolved is not None

    def _run(self, *args: str) -> str:
        argv = [self._resolved or self.command, *args]
        try:
            completed = self._runner(argv, capture_output=True, text=True, timeout=self.timeout_seconds)
        except subprocess.TimeoutExpired as exc:
            raise BridgeError(f"{args[0]} timed out after {self.timeout_seconds}s") from exc
        except OSError as exc:
            raise BridgeError(f"{args[0]} failed to start: {exc}") from exc
        if completed.returncode != 0:
            detail = (completed.stderr or completed.stdout or "").strip()
            raise BridgeError(f"{args[0]} exited with code {completed.returncode}: {detail}")
        return completed.stdout or ""

    def create(self, title: str, *, body: str = "", project: Optional[str] = None) -> int:
        args = ["create", title]
        if body:
            args.extend(["--body", body])
        if project:
            args.extend(["--project", project])
        args.append("--json")
        output = self._run(*args)
        try:
            parsed: Any = json.loads(output)
        except json.JSONDecodeError as exc:
            raise BridgeError(f"create returned unparseable output: {output[:200]!r}") from exc
        external_id = parsed.get("id") if isinstance(parsed, dict) else None
        if not isinstance(external_id, int) or isinstance(external_id, bool):
            raise BridgeError(f"create returned no integer id: {output[:200]!r}")
        return external_id

    def status(self, external_id: int, status: str) -> None:
        self._run("status", str(external_id), status)

    def close(self, external_id: int) -> None:
        self._run("close", str(external_id))

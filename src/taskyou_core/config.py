"""Parse orchestrator configuration from ``config.yaml``."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 1
    backoff_seconds: float = 1.0


@dataclass(frozen=True)
class ClaudeSettings:
    command: str = "claude"
    args: tuple[str, ...] = ()


@dataclass(frozen=True)
class CodexSettings:
    # Accepts {prompt}, {prompt_file}, {workdir} placeholders or '-' for stdin.
    command: str = "codex exec -"
    timeout_seconds: int = 1800


@dataclass(frozen=True)
class ExecutorSettings:
    default: str = "claude"
    poll_wait_seconds: float = 0.5
    claude: ClaudeSettings = field(default_factory=ClaudeSettings)
    codex: CodexSettings = field(default_factory=CodexSettings)


@dataclass(frozen=True)
class BridgeSettings:
    enabled: bool = True
    command: str = "ty"
    timeout_seconds: int = 30


@dataclass(frozen=True)
class SandboxSettings:
    enabled: bool = False
    command: tuple[str, ...] = ("/bin/sh", "-i")


@dataclass(frozen=True)
class Settings:
    concurrency: int = 2
    poll_interval_seconds: float = 2.0
    input_timeout_seconds: Optional[float] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    executors: ExecutorSettings = field(default_factory=ExecutorSettings)
    bridge: BridgeSettings = field(default_factory=BridgeSettings)
    sandbox: SandboxSettings = field(default_factory=SandboxSettings)


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _positive_int(value: Any, name: str, default: int) -> int:
    if value is None:
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc
    if parsed < 1:
        raise ValueError(f"{name} must be >= 1, got {parsed}")
    return parsed


def _non_negative_float(value: Any, name: str, default: Optional[float]) -> Optional[float]:
    if value is None:
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be >= 0, got {parsed}")
    return parsed


def _command_parts(value: Any, default: tuple[str, ...]) -> tuple[str, ...]:
    if isinstance(value, str) and value.strip():
        return tuple(value.split())
    if isinstance(value, (list, tuple)) and value:
        return tuple(str(part) for part in value)
    return default


def load_settings(config: dict[str, Any]) -> Settings:
    orchestrator_cfg = _as_dict(config.get("orchestrator"))
    retry_cfg = _as_dict(config.get("retry"))
    executors_cfg = _as_dict(config.get("executors"))
    claude_cfg = _as_dict(executors_cfg.get("claude"))
    codex_cfg = _as_dict(executors_cfg.get("codex"))
    bridge_cfg = _as_dict(config.get("bridge"))
    sandbox_cfg = _as_dict(config.get("sandbox"))

    default_kind = str(executors_cfg.get("default") or "claude").strip().lower() or "claude"

    return Settings(
        concurrency=_positive_int(orchestrator_cfg.get("concurrency"), "orchestrator.concurrency", 2),
        poll_interval_seconds=_non_negative_float(
            orchestrator_cfg.get("poll_interval_seconds"), "orchestrator.poll_interval_seconds", 2.0
        ),
        input_timeout_seconds=_non_negative_float(
            orchestrator_cfg.get("input_timeout_seconds"), "orchestrator.input_timeout_seconds", None
        ),
        retry=RetryPolicy(
            max_attempts=_positive_int(retry_cfg.get("max_attempts"), "retry.max_attempts", 1),
            backoff_seconds=_non_negative_float(retry_cfg.get("backoff_seconds"), "retry.backoff_seconds", 1.0),
        ),
        executors=ExecutorSettings(
            default=default_kind,
            poll_wait_seconds=_non_negative_float(
                executors_cfg.get("poll_wait_seconds"), "executors.poll_wait_seconds", 0.5
            ),
            claude=ClaudeSettings(
                command=str(claude_cfg.get("command") or "claude").strip(),
                args=tuple(str(arg) for arg in list(claude_cfg.get("args") or [])),
            ),
            codex=CodexSettings(
                command=str(codex_cfg.get("command") or "codex exec -").strip(),
                timeout_seconds=_positive_int(codex_cfg.get("timeout_seconds"), "executors.codex.timeout_seconds", 1800),
            ),
        ),
        bridge=BridgeSettings(
            enabled=bool(bridge_cfg.get("enabled", True)),
            command=str(bridge_cfg.get("command") or "ty").strip(),
            timeout_seconds=_positive_int(bridge_cfg.get("timeout_seconds"), "bridge.timeout_seconds", 30),
        ),
        sandbox=SandboxSettings(
            enabled=bool(sandbox_cfg.get("enabled", False)),
            command=_command_parts(sandbox_cfg.get("command"), ("/bin/sh", "-i")),
        ),
    )

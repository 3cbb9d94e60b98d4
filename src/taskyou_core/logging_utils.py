"""Configure loguru sinks for the CLI, worker and server."""

from __future__ import annotations

import sys

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan> | "
    "{message}"
)


def configure_logging(level: str = "INFO") -> None:
    """Replace the default loguru sink with a formatted stderr sink."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)


def format_log_line(entry: dict) -> str:
    """Render one task log entry as a single human-readable line."""
    payload = entry.get("payload") or {}
    detail = payload.get("reason") or payload.get("summary") or payload.get("prompt") or payload.get("input") or ""
    line = f"{entry.get('at', '')} #{entry.get('seq', '?')} {entry.get('kind', '')}"
    if detail:
        line = f"{line}: {detail}"
    return line

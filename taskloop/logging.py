"""Logging configuration for Taskloop.

Log lines carry the running task's ``task_id`` and ``session_id`` once the
adapter binds them with :func:`bind_task_context`.
"""

import logging
import sys
from pathlib import Path
from typing import TextIO

import structlog

from taskloop.config import get_config

_log_file: TextIO | None = None


def _renderer(fmt: str):
    if fmt == "console":
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def configure_logging(level: str | None = None, log_file: Path | str | None = None) -> None:
    """Configure structured logging for Taskloop.

    Args:
        level: Optional level override (defaults to ``config.logging.level``)
        log_file: Append JSON lines to this file instead of writing to stderr
    """
    global _log_file
    config = get_config()

    log_level = getattr(logging, (level or config.logging.level).upper(), logging.INFO)

    if _log_file is not None:
        _log_file.close()
        _log_file = None

    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        _log_file = open(path, "a", encoding="utf-8", buffering=1)
        fmt = "json"
    else:
        fmt = config.logging.format

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(fmt),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=_log_file or sys.stderr),
        cache_logger_on_first_use=True,
    )


def bind_task_context(task_id: str, session_id: str) -> None:
    """Tag every log line from this context with the task and session ids."""
    structlog.contextvars.bind_contextvars(task_id=task_id, session_id=session_id)


def clear_task_context() -> None:
    structlog.contextvars.unbind_contextvars("task_id", "session_id")


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance (usually ``get_logger(__name__)``)."""
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


log = get_logger(__name__)

"""Task, message and todo data types."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
import secrets
import string
import time
from typing import Literal

TaskStatus = Literal["running", "success", "error", "interrupted"]
TodoStatus = Literal["pending", "in_progress", "done", "completed", "cancelled"]
TodoPriority = Literal["low", "medium", "high"]

_ID_ALPHABET = string.ascii_lowercase + string.digits


def now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(UTC).isoformat()


def _random_suffix(length: int) -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def generate_task_id() -> str:
    return f"task_{int(time.time() * 1000)}_{_random_suffix(9)}"


def create_message_id() -> str:
    return f"msg_{int(time.time() * 1000)}_{_random_suffix(8)}"


@dataclass
class TaskConfig:
    """Caller-supplied input for one task."""

    prompt: str
    task_id: str | None = None
    session_id: str | None = None
    model_id: str | None = None


@dataclass
class TaskMessage:
    """Assistant message shown to the caller.

    Revised in place (same ``id``) while a turn is still streaming.
    """

    id: str
    content: str
    type: Literal["assistant"] = "assistant"
    timestamp: str = field(default_factory=now_iso)


@dataclass
class TodoItem:
    id: str
    content: str
    status: TodoStatus = "pending"
    priority: TodoPriority = "medium"


@dataclass
class TaskResult:
    """Terminal outcome of a task."""

    status: Literal["success", "error", "interrupted"]
    session_id: str | None = None
    error: str | None = None


@dataclass
class Task:
    id: str
    prompt: str
    session_id: str | None = None
    status: TaskStatus = "running"
    messages: list[TaskMessage] = field(default_factory=list)
    created_at: str = field(default_factory=now_iso)
    started_at: str = field(default_factory=now_iso)

"""Public event surface emitted by the agent adapter.

Each event is its own dataclass carrying a ``name`` matching the wire name
hosts already know (``"tool-use"``, ``"todo:update"``, ...). Listeners receive
the dataclass and dispatch with ``isinstance``.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Union

from taskloop.logging import get_logger
from taskloop.models import TaskMessage, TaskResult, TodoItem

log = get_logger(__name__)


@dataclass(frozen=True)
class MessageEvent:
    name: ClassVar[str] = "message"

    message: TaskMessage
    session_id: str | None = None


@dataclass(frozen=True)
class ToolUseEvent:
    name: ClassVar[str] = "tool-use"

    tool_name: str
    tool_input: Any


@dataclass(frozen=True)
class ToolResultEvent:
    name: ClassVar[str] = "tool-result"

    output: str


@dataclass(frozen=True)
class ToolCallCompleteEvent:
    name: ClassVar[str] = "tool-call-complete"

    tool_name: str
    tool_input: Any
    tool_output: str
    session_id: str | None = None


@dataclass(frozen=True)
class ProgressEvent:
    name: ClassVar[str] = "progress"

    stage: str
    message: str | None = None
    model_name: str | None = None


@dataclass(frozen=True)
class DebugEvent:
    name: ClassVar[str] = "debug"

    type: str
    message: str
    data: Any = None


@dataclass(frozen=True)
class TodoUpdateEvent:
    name: ClassVar[str] = "todo:update"

    todos: list[TodoItem] = field(default_factory=list)


@dataclass(frozen=True)
class ReasoningEvent:
    name: ClassVar[str] = "reasoning"

    text: str


@dataclass(frozen=True)
class StepFinishEvent:
    name: ClassVar[str] = "step-finish"

    reason: str
    model: str | None = None


@dataclass(frozen=True)
class CompleteEvent:
    name: ClassVar[str] = "complete"

    result: TaskResult

    @property
    def status(self) -> str:
        return self.result.status


@dataclass(frozen=True)
class ErrorEvent:
    name: ClassVar[str] = "error"

    error: BaseException


AgentEvent = Union[
    MessageEvent,
    ToolUseEvent,
    ToolResultEvent,
    ToolCallCompleteEvent,
    ProgressEvent,
    DebugEvent,
    TodoUpdateEvent,
    ReasoningEvent,
    StepFinishEvent,
    CompleteEvent,
    ErrorEvent,
]

EventListener = Callable[[AgentEvent], None]


class EventChannel:
    """Fan-out of agent events to registered listeners.

    Listener failures are logged and never interrupt the emitting loop.
    """

    def __init__(self):
        self._listeners: list[tuple[EventListener, tuple[type, ...] | None]] = []

    def subscribe(
        self,
        listener: EventListener,
        *event_types: type,
    ) -> Callable[[], None]:
        """Register a listener, optionally filtered to some event classes.

        Returns:
            Callable that removes the listener again
        """
        entry = (listener, tuple(event_types) or None)
        self._listeners.append(entry)

        def _unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return _unsubscribe

    def emit(self, event: AgentEvent) -> None:
        for listener, types in list(self._listeners):
            if types is not None and not isinstance(event, types):
                continue
            try:
                listener(event)
            except Exception as e:
                log.warning("Event listener failed", event=event.name, error=str(e))

    def clear(self) -> None:
        self._listeners.clear()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

"""Completion enforcement for agent tasks.

Small models often stop talking without calling ``complete_task`` even after
declaring a multi-step plan. The enforcer decides after each model run
whether the task is done, needs a continuation nudge, or has to be forced to
completion so it never hangs in ``running``.

States and transitions::

    IDLE --activity--> ACTIVE
    IDLE/ACTIVE --step done--> COMPLETE
    IDLE/ACTIVE --step continue--> ACTIVE
    IDLE/ACTIVE --step unfinished--> CONTINUATION_PENDING
    CONTINUATION_PENDING --continuation started--> ACTIVE
    any non-terminal --forced exit--> COMPLETE

COMPLETE is absorbing until ``reset()``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from taskloop.config import DEFAULT_CONTINUATION_PROMPT
from taskloop.logging import get_logger
from taskloop.models import TodoItem

log = get_logger(__name__)


class CompletionState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    CONTINUATION_PENDING = "continuation_pending"
    COMPLETE = "complete"


class CompletionInput(str, Enum):
    ACTIVITY = "activity"
    STEP_DONE = "step_done"
    STEP_CONTINUE = "step_continue"
    STEP_UNFINISHED = "step_unfinished"
    CONTINUATION_STARTED = "continuation_started"
    FORCED_EXIT = "forced_exit"


class StepAction(str, Enum):
    COMPLETE = "complete"
    PENDING = "pending"
    CONTINUE = "continue"


_S = CompletionState
_I = CompletionInput

TRANSITIONS: dict[tuple[CompletionState, CompletionInput], CompletionState] = {
    (_S.IDLE, _I.ACTIVITY): _S.ACTIVE,
    (_S.ACTIVE, _I.ACTIVITY): _S.ACTIVE,
    (_S.CONTINUATION_PENDING, _I.ACTIVITY): _S.CONTINUATION_PENDING,
    (_S.IDLE, _I.STEP_DONE): _S.COMPLETE,
    (_S.ACTIVE, _I.STEP_DONE): _S.COMPLETE,
    (_S.IDLE, _I.STEP_CONTINUE): _S.ACTIVE,
    (_S.ACTIVE, _I.STEP_CONTINUE): _S.ACTIVE,
    (_S.IDLE, _I.STEP_UNFINISHED): _S.CONTINUATION_PENDING,
    (_S.ACTIVE, _I.STEP_UNFINISHED): _S.CONTINUATION_PENDING,
    (_S.CONTINUATION_PENDING, _I.CONTINUATION_STARTED): _S.ACTIVE,
    (_S.IDLE, _I.FORCED_EXIT): _S.COMPLETE,
    (_S.ACTIVE, _I.FORCED_EXIT): _S.COMPLETE,
    (_S.CONTINUATION_PENDING, _I.FORCED_EXIT): _S.COMPLETE,
}

STOP_REASONS = {"stop", "end_turn"}


@dataclass
class CompletionEnforcerCallbacks:
    on_start_continuation: Callable[[str], Awaitable[None]]
    on_complete: Callable[[], None]
    on_debug: Callable[[str, str, Any], None] | None = None


@dataclass
class _CompletionFlags:
    requires_completion: bool = False
    tools_used_in_step: bool = False
    completion_signalled: bool = False
    continuation_attempts: int = 0
    todos: list[TodoItem] = field(default_factory=list)
    complete_input: Any = None


class CompletionEnforcer:
    """Per-adapter completion state machine. Call ``reset()`` at task start."""

    def __init__(
        self,
        callbacks: CompletionEnforcerCallbacks,
        max_continuation_attempts: int = 1,
        continuation_prompt: str = DEFAULT_CONTINUATION_PROMPT,
    ):
        self._callbacks = callbacks
        self.max_continuation_attempts = max(1, int(max_continuation_attempts))
        self.continuation_prompt = continuation_prompt
        self._state = CompletionState.IDLE
        self._flags = _CompletionFlags()

    @property
    def state(self) -> CompletionState:
        return self._state

    @property
    def requires_completion(self) -> bool:
        return self._flags.requires_completion

    @property
    def completion_signalled(self) -> bool:
        return self._flags.completion_signalled

    @property
    def continuation_attempts(self) -> int:
        return self._flags.continuation_attempts

    @property
    def todos(self) -> list[TodoItem]:
        return list(self._flags.todos)

    def reset(self) -> None:
        self._state = CompletionState.IDLE
        self._flags = _CompletionFlags()

    def _debug(self, kind: str, message: str, data: Any = None) -> None:
        log.debug(message, kind=kind, state=self._state.value)
        if self._callbacks.on_debug is not None:
            self._callbacks.on_debug(kind, message, data)

    def _transition(self, event: CompletionInput) -> CompletionState:
        if self._state is CompletionState.COMPLETE:
            return self._state
        target = TRANSITIONS.get((self._state, event))
        if target is None:
            self._debug(
                "completion",
                f"Ignored {event.value} in state {self._state.value}",
            )
            return self._state
        if target is not self._state:
            self._debug("completion", f"{self._state.value} -> {target.value} on {event.value}")
        self._state = target
        return target

    def mark_task_requires_completion(self) -> None:
        self._flags.requires_completion = True
        self._transition(CompletionInput.ACTIVITY)

    def update_todos(self, todos: list[TodoItem]) -> None:
        self._flags.todos = list(todos)
        self._transition(CompletionInput.ACTIVITY)

    def mark_tools_used(self, substantive: bool = True) -> None:
        if substantive:
            self._flags.tools_used_in_step = True
        self._transition(CompletionInput.ACTIVITY)

    def handle_complete_task_detection(self, tool_input: Any) -> None:
        self._flags.completion_signalled = True
        self._flags.complete_input = tool_input
        self._debug("completion", "complete_task detected", tool_input)
        self._transition(CompletionInput.ACTIVITY)

    def handle_step_boundary(self, reason: str) -> None:
        """Intermediate step finished inside one model run.

        A ``tool_use`` boundary means the model got the tool results and
        another step, so its tool use no longer counts as the final step's.
        """
        if reason == "tool_use":
            self._flags.tools_used_in_step = False

    def handle_step_finish(self, reason: str) -> StepAction:
        """Decide what follows a finished model run.

        Args:
            reason: Normalized finish reason (``stop``, ``tool_use``, ``end_turn``)
        """
        if self._state is CompletionState.COMPLETE:
            return StepAction.COMPLETE

        flags = self._flags
        stopped = reason in STOP_REASONS

        if flags.completion_signalled:
            action, event = StepAction.COMPLETE, CompletionInput.STEP_DONE
        elif not flags.requires_completion:
            if stopped:
                action, event = StepAction.COMPLETE, CompletionInput.STEP_DONE
            else:
                action, event = StepAction.CONTINUE, CompletionInput.STEP_CONTINUE
        elif stopped and not flags.tools_used_in_step:
            action, event = StepAction.PENDING, CompletionInput.STEP_UNFINISHED
        else:
            action, event = StepAction.CONTINUE, CompletionInput.STEP_CONTINUE

        flags.tools_used_in_step = False
        self._transition(event)
        self._debug("completion", f"Step finished ({reason}) -> {action.value}")
        return action

    async def handle_process_exit(self, code: int = 0) -> None:
        """Drive a pending continuation, or force completion when out of attempts."""
        if self._state is CompletionState.COMPLETE:
            return

        if (
            self._state is CompletionState.CONTINUATION_PENDING
            and self._flags.continuation_attempts < self.max_continuation_attempts
        ):
            self._flags.continuation_attempts += 1
            self._debug(
                "continuation",
                f"Starting continuation {self._flags.continuation_attempts}/{self.max_continuation_attempts}",
                {"exit_code": code},
            )
            self._transition(CompletionInput.CONTINUATION_STARTED)
            await self._callbacks.on_start_continuation(self.continuation_prompt)
            return

        self._debug(
            "continuation",
            "Continuation budget exhausted, forcing completion",
            {"exit_code": code, "attempts": self._flags.continuation_attempts},
        )
        self._transition(CompletionInput.FORCED_EXIT)
        self._callbacks.on_complete()

"""Agent adapter: runs one task through the model/tool loop.

The adapter owns task and session identity, connects the tool gateway,
folds the model's step parts into caller-facing events and guarantees that
exactly one ``complete`` event is emitted per task.
"""

import asyncio
import re
import time
import uuid
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Awaitable, Callable

from taskloop.agent_config import AgentConfig, TaskContext
from taskloop.completion import CompletionEnforcer, CompletionEnforcerCallbacks, StepAction
from taskloop.config import AgentSettings, get_config
from taskloop.events import (
    AgentEvent,
    CompleteEvent,
    DebugEvent,
    ErrorEvent,
    EventChannel,
    MessageEvent,
    ProgressEvent,
    ReasoningEvent,
    StepFinishEvent,
    TodoUpdateEvent,
    ToolCallCompleteEvent,
    ToolResultEvent,
    ToolUseEvent,
)
from taskloop.exceptions import (
    DisposedError,
    TaskAlreadyRunningError,
    ToolError,
    UnsupportedProviderError,
)
from taskloop.invoker import (
    FinishPart,
    ReasoningDelta,
    StepFinishPart,
    StepPart,
    TextDelta,
    ToolCallPart,
    ToolResultPart,
    select_tool_choice,
    stream_steps,
)
from taskloop.llm import LLMProvider, create_model
from taskloop.logging import bind_task_context, clear_task_context, get_logger
from taskloop.models import (
    Task,
    TaskConfig,
    TaskMessage,
    TaskResult,
    TodoItem,
    create_message_id,
    generate_task_id,
)
from taskloop.sanitize import sanitize_assistant_text_for_display
from taskloop.tools.gateway import ToolGateway
from taskloop.tools.registry import ToolSet, coerce_tool_output

log = get_logger(__name__)

SESSION_ID_PREFIX = "ai-sdk-"

HACKATHON_SEARCH_TOOL = "hb_scout_search_hackathons"
_HACKATHON_QUERY_RE = re.compile(r"(?:hackathon-buddy\s+)?(?:search\s+for\s+|find\s+)(.+)", re.IGNORECASE)

EMPTY_OUTPUT_FALLBACK = (
    "The model returned no output. Try a larger model in Settings (e.g. Groq "
    "llama-3.1-70b-versatile, Ollama llama3.2:3b, or Claude). Small models often "
    "struggle with many tools."
)

_NON_TASK_TOOLS = (
    "skill",
    "start_task",
    "discard",
    "todowrite",
    "complete_task",
    "AskUserQuestion",
    "report_checkpoint",
    "report_thought",
    "request_file_permission",
)
_TODO_STATUSES = {"pending", "in_progress", "done", "completed", "cancelled"}
_TODO_PRIORITIES = {"low", "medium", "high"}

ModelFactory = Callable[..., LLMProvider | None]
StreamFactory = Callable[..., AsyncIterator[StepPart]]


class _TaskAborted(Exception):
    """The abort signal fired while a setup step was pending."""


def _is_tool(tool_name: str, bare_name: str) -> bool:
    return tool_name == bare_name or tool_name.endswith(f"_{bare_name}")


def to_step_reason(stream_reason: str) -> str:
    """Map a stream finish reason onto ``stop`` / ``tool_use`` / ``end_turn``."""
    if stream_reason == "stop":
        return "stop"
    if stream_reason == "tool-calls":
        return "tool_use"
    return "end_turn"


@dataclass
class AgentAdapterOptions:
    """Host-provided collaborators for the adapter."""

    get_agent_config: Callable[[TaskConfig, TaskContext], Awaitable[AgentConfig]]
    on_before_start: Callable[[TaskContext], Awaitable[None]] | None = None
    on_before_task_start: Callable[[TaskContext], None] | None = None
    get_model_display_name: Callable[[str], str] | None = None
    model_factory: ModelFactory = create_model
    gateway_factory: Callable[[], ToolGateway] | None = None
    stream_factory: StreamFactory = stream_steps
    settings: AgentSettings | None = None
    clock: Callable[[], float] = time.monotonic


@dataclass(frozen=True)
class _TurnState:
    """Accumulator for the assistant message currently being streamed."""

    message_id: str | None = None
    text: str = ""
    last_emit_ms: float = 0.0


@dataclass
class _StreamStats:
    part_count: int = 0
    tool_calls: int = 0
    text_chars: int = 0
    last_finish_reason: str = "stop"


class AgentAdapter:
    """Drives one task at a time; create separate instances for concurrent tasks."""

    def __init__(self, options: AgentAdapterOptions, task_id: str | None = None):
        self.options = options
        self.settings = options.settings or get_config().agent
        self.events = EventChannel()
        self._task_id: str | None = task_id
        self._session_id: str | None = None
        self._model_id: str | None = None
        self._task: Task | None = None
        self._messages: list[TaskMessage] = []
        self._has_completed = False
        self._is_disposed = False
        self._in_flight = False
        self._start_task_called = False
        self._abort_event: asyncio.Event | None = None
        self._gateway: ToolGateway | None = None
        self._models: list[LLMProvider] = []
        self._enforcer = CompletionEnforcer(
            CompletionEnforcerCallbacks(
                on_start_continuation=self._run_continuation,
                on_complete=lambda: self._finish("success"),
                on_debug=lambda kind, message, data=None: self._emit(DebugEvent(kind, message, data)),
            ),
            max_continuation_attempts=self.settings.max_continuation_attempts,
            continuation_prompt=self.settings.continuation_prompt,
        )

    # ------------------------------------------------------------------
    # Accessors

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def task_id(self) -> str | None:
        return self._task_id

    @property
    def running(self) -> bool:
        return (
            not self._has_completed
            and self._abort_event is not None
            and not self._abort_event.is_set()
        )

    @property
    def is_disposed(self) -> bool:
        return self._is_disposed

    @property
    def messages(self) -> list[TaskMessage]:
        return list(self._messages)

    @property
    def completion_enforcer(self) -> CompletionEnforcer:
        return self._enforcer

    def subscribe(self, listener: Callable[[AgentEvent], None], *event_types: type) -> Callable[[], None]:
        return self.events.subscribe(listener, *event_types)

    def _emit(self, event: AgentEvent) -> None:
        self.events.emit(event)

    # ------------------------------------------------------------------
    # Terminal outcome

    def _finish(self, status: str, error: str | None = None) -> bool:
        """Emit the task's single ``complete`` event. Later calls are no-ops."""
        if self._has_completed or self._task is None:
            log.debug("Ignoring duplicate completion", status=status)
            return False
        self._has_completed = True
        self._task.status = status  # type: ignore[assignment]
        self._emit(CompleteEvent(TaskResult(status=status, session_id=self._session_id, error=error)))  # type: ignore[arg-type]
        log.info("Task finished", status=status)
        return True

    def _fail(self, err: BaseException) -> None:
        if self._has_completed:
            log.warning("Error after task completion", error=str(err))
            return
        log.error("Task failed", error=str(err), error_type=type(err).__name__)
        self._emit(ErrorEvent(err))
        self._finish("error", error=str(err))

    # ------------------------------------------------------------------
    # Task lifecycle

    async def start_task(self, config: TaskConfig) -> Task:
        """Run a task to completion and return its final snapshot.

        Raises:
            DisposedError if the adapter was disposed
            TaskAlreadyRunningError if a task is already in flight
        """
        if self._is_disposed:
            raise DisposedError()
        if self._in_flight:
            raise TaskAlreadyRunningError(self._task_id)

        self._in_flight = True
        self._task_id = config.task_id or generate_task_id()
        self._session_id = config.session_id or f"{SESSION_ID_PREFIX}{int(time.time() * 1000)}"
        self._model_id = config.model_id
        self._messages = []
        self._has_completed = False
        self._start_task_called = False
        self._enforcer.reset()
        self._abort_event = asyncio.Event()
        self._task = Task(
            id=self._task_id,
            prompt=config.prompt,
            session_id=self._session_id,
            messages=self._messages,
        )
        context = TaskContext(task_id=self._task_id, session_id=self._session_id, config=config)
        bind_task_context(self._task_id, self._session_id)

        try:
            if self.options.on_before_task_start is not None:
                self.options.on_before_task_start(context)
            await self._until_aborted(self._run_pre_start(context))

            agent_config = await self._until_aborted(self.options.get_agent_config(config, context))
            self._check_aborted()
            model = self._create_model(agent_config)
            display_name = self._model_display_name()

            self._emit(ProgressEvent("loading", f"Connecting to {display_name}...", display_name))

            tools = await self._connect_tools(agent_config)

            self._emit(ProgressEvent("connecting", f"Running with {display_name}...", display_name))

            if not await self._try_direct_hackathon_search(config.prompt, tools):
                await self._run_agent_loop(
                    config.prompt,
                    agent_config.system_prompt,
                    model,
                    tools,
                    agent_config.provider,
                )
            if self._aborted:
                self._finish("interrupted")
        except _TaskAborted:
            log.info("Task aborted during setup")
            self._finish("interrupted")
        except asyncio.CancelledError:
            self._finish("interrupted")
            raise
        except Exception as err:
            self._fail(err)
        finally:
            await self._close_connections()
            await self._close_models()
            self._in_flight = False
            clear_task_context()

        return replace(self._task, messages=list(self._messages))

    async def resume_session(self, session_id: str, prompt: str) -> Task:
        return await self.start_task(TaskConfig(prompt=prompt, session_id=session_id))

    async def send_response(self, response: str) -> None:
        # Permission/question responses are handled out of band.
        return None

    async def cancel_task(self) -> None:
        if self._abort_event is not None:
            self._abort_event.set()
        self._finish("interrupted")

    async def interrupt_task(self) -> None:
        await self.cancel_task()

    async def dispose(self) -> None:
        """Abort, release tool connections and drop listeners. Idempotent.

        A task still in flight is completed as ``interrupted`` and closes its
        own connections once the abort unwinds it.
        """
        if self._is_disposed:
            return
        self._is_disposed = True
        if self._abort_event is not None:
            self._abort_event.set()
        if self._in_flight:
            self._finish("interrupted")
        else:
            await self._close_connections()
            await self._close_models()
        self.events.clear()

    # ------------------------------------------------------------------
    # Setup helpers

    def _check_aborted(self) -> None:
        if self._aborted:
            raise _TaskAborted()

    async def _until_aborted(self, awaitable: Awaitable[Any]) -> Any:
        """Await a setup step, giving up as soon as the abort signal fires.

        Raises:
            _TaskAborted if the abort signal wins the race
        """
        step = asyncio.ensure_future(awaitable)
        if self._abort_event is None:
            return await step
        if self._abort_event.is_set():
            step.cancel()
            raise _TaskAborted()

        abort_wait = asyncio.ensure_future(self._abort_event.wait())
        try:
            done, _ = await asyncio.wait({step, abort_wait}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            step.cancel()
            abort_wait.cancel()
            raise
        if step in done:
            abort_wait.cancel()
            return step.result()

        step.cancel()
        try:
            await step
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Setup step failed after abort", error=str(e))
        raise _TaskAborted()

    async def _run_pre_start(self, context: TaskContext) -> None:
        """Await the pre-start hook and any parked warm-up together."""
        pending: list[Awaitable[Any]] = []
        if self.options.on_before_start is not None:
            pending.append(self.options.on_before_start(context))
        if context.warmup is not None:
            pending.append(context.warmup)
            context.warmup = None
        if not pending:
            return
        results = await asyncio.gather(*pending, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result

    def _create_model(self, agent_config: AgentConfig) -> LLMProvider:
        model = self.options.model_factory(
            provider=agent_config.provider,
            model_id=agent_config.model_id,
            api_key=agent_config.api_key,
            base_url=agent_config.base_url,
            timeout=self.settings.request_timeout_seconds,
        )
        if model is None:
            raise UnsupportedProviderError(agent_config.provider)
        self._models.append(model)
        return model

    def _model_display_name(self) -> str:
        if self._model_id and self.options.get_model_display_name is not None:
            return self.options.get_model_display_name(self._model_id)
        return "AI"

    def _new_gateway(self) -> ToolGateway:
        if self.options.gateway_factory is not None:
            return self.options.gateway_factory()
        return ToolGateway(tool_timeout_seconds=self.settings.tool_timeout_seconds)

    async def _connect_tools(self, agent_config: AgentConfig) -> ToolSet:
        self._check_aborted()
        gateway = self._new_gateway()
        self._gateway = gateway
        result = await self._until_aborted(gateway.connect(agent_config.mcp_server_specs))
        return result.tools

    async def _close_connections(self) -> None:
        gateway, self._gateway = self._gateway, None
        if gateway is None:
            return
        report = await gateway.close()
        if not report.ok:
            log.warning("Some tool connections failed to close", failures=len(report.failures))

    async def _close_models(self) -> None:
        models, self._models = self._models, []
        for model in models:
            try:
                await model.close()
            except Exception as e:
                log.warning("Error closing model client", error=str(e))

    # ------------------------------------------------------------------
    # Direct bypass

    async def _try_direct_hackathon_search(self, prompt: str, tools: ToolSet) -> bool:
        """Answer hackathon search prompts by calling the search tool directly.

        Small models regularly fail this flow when given the full tool set, so
        it skips the model entirely: execute search, emit result, complete.
        """
        if HACKATHON_SEARCH_TOOL not in tools:
            return False

        lower = (prompt or "").strip().lower()
        if "/hackathon-buddy" not in lower and not (
            "hackathon" in lower and ("search" in lower or "find" in lower)
        ):
            return False

        query = "hackathons"
        match = _HACKATHON_QUERY_RE.search(prompt)
        if match and match.group(1).strip():
            query = match.group(1).strip()

        self._emit(ProgressEvent("tool-use", "Searching hackathons..."))

        try:
            result = await tools.execute(
                HACKATHON_SEARCH_TOOL,
                {"query": query, "platform": "all", "response_format": "markdown"},
                abort_event=self._abort_event,
                timeout_seconds=self.settings.tool_timeout_seconds,
            )
        except ToolError as e:
            log.warning("Direct hackathon search failed", error=str(e))
            return False
        if not result.success:
            log.warning("Direct hackathon search returned an error", error=result.error)
            return False

        self._publish_message(create_message_id(), coerce_tool_output(result))
        self._finish("success")
        return True

    # ------------------------------------------------------------------
    # Agent loop

    async def _run_agent_loop(
        self,
        user_prompt: str,
        system_prompt: str,
        model: LLMProvider,
        tools: ToolSet,
        provider: str | None = None,
    ) -> None:
        tool_count = len(tools)
        tool_choice = select_tool_choice(tools, provider)
        self._emit(DebugEvent("stream", f"toolChoice: {tool_choice}, toolCount: {tool_count}"))

        stream = self.options.stream_factory(
            model,
            system_prompt,
            user_prompt,
            tools,
            tool_choice=tool_choice,
            max_steps=self.settings.max_steps,
            abort_event=self._abort_event,
            max_tokens=self.settings.max_tokens,
            tool_timeout_seconds=self.settings.tool_timeout_seconds,
        )

        turn = _TurnState()
        stats = _StreamStats()
        async for part in stream:
            if self._aborted:
                break
            stats.part_count += 1
            if stats.part_count <= 3 or stats.part_count % 20 == 0:
                self._emit(DebugEvent("stream", f"Part #{stats.part_count}: {part.type}"))

            if isinstance(part, TextDelta):
                stats.text_chars += len(part.text)
                turn = self._on_text_delta(turn, part.text)
            elif isinstance(part, ReasoningDelta):
                self._emit(ReasoningEvent(part.text))
            elif isinstance(part, ToolCallPart):
                stats.tool_calls += 1
                # Text after a tool call belongs to a new message.
                turn = self._flush_turn(turn)
                self._handle_tool_call(part.tool_name, part.args)
            elif isinstance(part, ToolResultPart):
                self._handle_tool_result(part.tool_name, part.args, coerce_tool_output(part.result))
            elif isinstance(part, StepFinishPart):
                turn = self._flush_turn(turn)
                stats.last_finish_reason = part.finish_reason
                reason = to_step_reason(part.finish_reason)
                self._emit(StepFinishEvent(reason, model=getattr(model, "model", None)))
                self._enforcer.handle_step_boundary(reason)
            elif isinstance(part, FinishPart):
                turn = self._flush_turn(turn)
                stats.last_finish_reason = part.finish_reason or stats.last_finish_reason

        if self._aborted:
            log.info("Agent loop aborted", parts=stats.part_count)
            return

        log.info(
            "Stream ended",
            parts=stats.part_count,
            finish_reason=stats.last_finish_reason,
            text_length=stats.text_chars,
            tool_calls=stats.tool_calls,
        )

        if stats.text_chars == 0 and stats.tool_calls == 0 and tool_count > 0:
            self._publish_message(create_message_id(), EMPTY_OUTPUT_FALLBACK)

        action = self._enforcer.handle_step_finish(to_step_reason(stats.last_finish_reason))

        if action is StepAction.COMPLETE:
            self._finish("success")
            return

        if action is StepAction.PENDING:
            await self._enforcer.handle_process_exit(0)

        # A run that simply stops is not an error.
        if not self._has_completed and not self._aborted:
            self._finish("success")

    @property
    def _aborted(self) -> bool:
        return self._abort_event is not None and self._abort_event.is_set()

    async def _run_continuation(self, prompt: str) -> None:
        """Re-run the loop with a nudge prompt in the same session."""
        task_config = TaskConfig(prompt=prompt, task_id=self._task_id, session_id=self._session_id)
        context = TaskContext(
            task_id=self._task_id or "default",
            session_id=self._session_id or "",
            config=task_config,
            is_continuation=True,
        )
        agent_config = await self._until_aborted(self.options.get_agent_config(task_config, context))
        self._check_aborted()
        try:
            model = self._create_model(agent_config)
        except UnsupportedProviderError as e:
            self._emit(DebugEvent("continuation", "Continuation skipped", {"error": str(e)}))
            return

        await self._close_connections()
        tools = await self._connect_tools(agent_config)
        await self._run_agent_loop(prompt, agent_config.system_prompt, model, tools, agent_config.provider)

    # ------------------------------------------------------------------
    # Streamed text

    def _publish_message(self, message_id: str, content: str) -> TaskMessage:
        """Insert or replace (by id) an assistant message and emit it."""
        message = TaskMessage(id=message_id, content=content)
        for idx, existing in enumerate(self._messages):
            if existing.id == message_id:
                self._messages[idx] = message
                break
        else:
            self._messages.append(message)
        self._emit(MessageEvent(message, session_id=self._session_id))
        return message

    def _on_text_delta(self, turn: _TurnState, fragment: str) -> _TurnState:
        text = turn.text + fragment
        display = sanitize_assistant_text_for_display(text)
        if not display:
            return replace(turn, text=text)

        now_ms = self.options.clock() * 1000
        is_first = turn.message_id is None
        message_id = turn.message_id or create_message_id()
        if not is_first and now_ms - turn.last_emit_ms < self.settings.emit_throttle_ms:
            return _TurnState(message_id=message_id, text=text, last_emit_ms=turn.last_emit_ms)

        self._publish_message(message_id, display)
        self._emit(ReasoningEvent(display))
        return _TurnState(message_id=message_id, text=text, last_emit_ms=now_ms)

    def _flush_turn(self, turn: _TurnState) -> _TurnState:
        """Emit the turn's final text regardless of throttle and start a new turn."""
        if turn.message_id and turn.text:
            display = sanitize_assistant_text_for_display(turn.text)
            if display:
                self._publish_message(turn.message_id, display)
        return _TurnState()

    # ------------------------------------------------------------------
    # Tool bookkeeping

    def _handle_tool_call(self, tool_name: str, tool_input: Any) -> None:
        payload = tool_input if isinstance(tool_input, dict) else {}

        if _is_tool(tool_name, "start_task"):
            self._start_task_called = True
            steps = payload.get("steps")
            if payload.get("needs_planning") and payload.get("goal") and isinstance(steps, list) and steps:
                self._enforcer.mark_task_requires_completion()
                todos = [
                    TodoItem(
                        id=str(i + 1),
                        content=str(step),
                        status="in_progress" if i == 0 else "pending",
                    )
                    for i, step in enumerate(steps)
                ]
                self._emit(TodoUpdateEvent(todos))
                self._enforcer.update_todos(todos)

        if not self._start_task_called and not self._is_exempt_tool(tool_name):
            self._emit(DebugEvent("warning", f'Tool "{tool_name}" called before start_task'))

        self._enforcer.mark_tools_used(not self._is_non_task_continuation_tool(tool_name))

        if _is_tool(tool_name, "complete_task"):
            self._enforcer.handle_complete_task_detection(tool_input)

        if _is_tool(tool_name, "todowrite"):
            todos = self._parse_todowrite(payload.get("todos"))
            if todos:
                self._emit(TodoUpdateEvent(todos))
                self._enforcer.update_todos(todos)

        self._emit(ToolUseEvent(tool_name, tool_input))
        self._emit(ProgressEvent("tool-use", f"Using {tool_name}"))

    @staticmethod
    def _parse_todowrite(raw: Any) -> list[TodoItem]:
        if not isinstance(raw, list):
            return []
        todos: list[TodoItem] = []
        for entry in raw:
            if not isinstance(entry, dict) or not entry.get("content"):
                continue
            status = str(entry.get("status") or "pending")
            priority = str(entry.get("priority") or "medium")
            todos.append(
                TodoItem(
                    id=str(entry.get("id") or uuid.uuid4()),
                    content=str(entry["content"]),
                    status=status if status in _TODO_STATUSES else "pending",  # type: ignore[arg-type]
                    priority=priority if priority in _TODO_PRIORITIES else "medium",  # type: ignore[arg-type]
                )
            )
        return todos

    def _handle_tool_result(self, tool_name: str, tool_input: Any, output: str) -> None:
        self._emit(ToolResultEvent(output))
        self._emit(
            ToolCallCompleteEvent(
                tool_name=tool_name,
                tool_input=tool_input,
                tool_output=output,
                session_id=self._session_id,
            )
        )

    @staticmethod
    def _is_exempt_tool(tool_name: str) -> bool:
        return _is_tool(tool_name, "todowrite") or _is_tool(tool_name, "start_task")

    @staticmethod
    def _is_non_task_continuation_tool(tool_name: str) -> bool:
        return any(_is_tool(tool_name, name) for name in _NON_TASK_TOOLS)

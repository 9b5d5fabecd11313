"""Multi-step model invocation producing a flat stream of step parts.

One call to ``stream_steps`` runs up to ``max_steps`` model turns: each turn
streams text/reasoning, then the tool calls it requested are executed and
their results are fed back for the next turn. The caller sees the parts in
order and never has to know where one HTTP request ends and the next begins.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, AsyncIterator, ClassVar, TypeVar, Union

from taskloop.exceptions import StreamError, ToolError
from taskloop.llm import LLMProvider, Message, StreamChunk, ToolCall, ToolChoice
from taskloop.logging import get_logger
from taskloop.tools.registry import ToolResult, ToolSet

log = get_logger(__name__)

T = TypeVar("T")

START_TOOL = "start_task"

# Providers that reject tool_choice="required".
_NO_REQUIRED_TOOL_CHOICE = {"groq"}


@dataclass(frozen=True)
class TextDelta:
    type: ClassVar[str] = "text-delta"

    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    type: ClassVar[str] = "reasoning"

    text: str


@dataclass(frozen=True)
class ToolCallPart:
    type: ClassVar[str] = "tool-call"

    tool_call_id: str
    tool_name: str
    args: dict[str, Any]


@dataclass(frozen=True)
class ToolResultPart:
    type: ClassVar[str] = "tool-result"

    tool_call_id: str
    tool_name: str
    args: dict[str, Any]
    result: Any


@dataclass(frozen=True)
class StepFinishPart:
    type: ClassVar[str] = "step-finish"

    finish_reason: str


@dataclass(frozen=True)
class FinishPart:
    type: ClassVar[str] = "finish"

    finish_reason: str


StepPart = Union[TextDelta, ReasoningDelta, ToolCallPart, ToolResultPart, StepFinishPart, FinishPart]


def select_tool_choice(tools: ToolSet, provider: str | None = None) -> ToolChoice:
    """Pick the first-step tool choice.

    Force the start tool when one exists; otherwise require a tool call,
    except for providers known to reject ``required``.
    """
    if len(tools) == 0:
        return "auto"
    start_tool = tools.find_first(START_TOOL)
    if start_tool:
        return {"type": "tool", "tool_name": start_tool}
    if (provider or "").lower() in _NO_REQUIRED_TOOL_CHOICE:
        return "auto"
    return "required"


def normalize_stream_finish_reason(reason: str | None) -> str:
    """Map provider finish reasons onto ``stop`` / ``tool-calls`` / other."""
    value = (reason or "stop").strip().lower()
    if value in {"tool_calls", "tool-calls", "function_call", "tool_use"}:
        return "tool-calls"
    return value


class _Aborted(Exception):
    pass


async def _next_or_abort(iterator: AsyncIterator[T], abort_event: asyncio.Event | None) -> T:
    """Await the next item, racing it against the abort signal.

    Raises:
        StopAsyncIteration at end of stream
        _Aborted when the abort signal fires first
    """
    if abort_event is None:
        return await iterator.__anext__()
    if abort_event.is_set():
        raise _Aborted()

    next_task = asyncio.ensure_future(iterator.__anext__())
    abort_task = asyncio.ensure_future(abort_event.wait())
    try:
        done, _ = await asyncio.wait({next_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        next_task.cancel()
        abort_task.cancel()
        raise
    if next_task in done:
        abort_task.cancel()
        return next_task.result()

    next_task.cancel()
    try:
        await next_task
    except (asyncio.CancelledError, StopAsyncIteration):
        pass
    except Exception as e:
        log.debug("Stream read failed after abort", error=str(e))
    raise _Aborted()


async def stream_steps(
    model: LLMProvider,
    system_prompt: str,
    user_prompt: str,
    tools: ToolSet,
    tool_choice: ToolChoice = "auto",
    max_steps: int = 20,
    abort_event: asyncio.Event | None = None,
    max_tokens: int | None = None,
    tool_timeout_seconds: float | None = None,
) -> AsyncIterator[StepPart]:
    """Run the model for up to ``max_steps`` turns and yield its parts.

    Tool failures are reported back to the model as ``Error: ...`` results
    rather than ending the stream. Once ``abort_event`` is set no further
    parts are yielded.

    Raises:
        StreamError on provider/transport failure
    """
    messages = [
        Message(role="system", content=system_prompt),
        Message(role="user", content=user_prompt),
    ]
    definitions = tools.get_definitions() if len(tools) else None
    choice: ToolChoice = tool_choice
    last_reason = "stop"

    try:
        for step in range(max(1, max_steps)):
            step_text = ""
            step_calls: list[ToolCall] = []
            finish_reason: str | None = None

            chunks = model.stream_chat(
                messages,
                tools=definitions,
                tool_choice=choice if definitions else None,
                max_tokens=max_tokens,
            )
            try:
                while True:
                    try:
                        chunk: StreamChunk = await _next_or_abort(chunks, abort_event)
                    except StopAsyncIteration:
                        break
                    if chunk.kind == "text" and chunk.text:
                        step_text += chunk.text
                        yield TextDelta(chunk.text)
                    elif chunk.kind == "reasoning" and chunk.text:
                        yield ReasoningDelta(chunk.text)
                    elif chunk.kind == "tool_call" and chunk.tool_call is not None:
                        step_calls.append(chunk.tool_call)
                    elif chunk.kind == "finish":
                        finish_reason = chunk.finish_reason
            finally:
                aclose = getattr(chunks, "aclose", None)
                if aclose is not None:
                    await aclose()

            messages.append(Message(role="assistant", content=step_text, tool_calls=list(step_calls)))

            for call in step_calls:
                yield ToolCallPart(tool_call_id=call.id, tool_name=call.name, args=call.arguments)

            for call in step_calls:
                if abort_event is not None and abort_event.is_set():
                    raise _Aborted()
                try:
                    result = await tools.execute(
                        call.name,
                        call.arguments,
                        abort_event=abort_event,
                        timeout_seconds=tool_timeout_seconds,
                    )
                except ToolError as e:
                    if abort_event is not None and abort_event.is_set():
                        raise _Aborted()
                    log.warning("Tool call failed", tool=call.name, error=str(e))
                    result = ToolResult(success=False, error=str(e))
                yield ToolResultPart(
                    tool_call_id=call.id,
                    tool_name=call.name,
                    args=call.arguments,
                    result=result,
                )
                messages.append(
                    Message(
                        role="tool",
                        content=result.to_model_text(),
                        tool_call_id=call.id,
                        tool_name=call.name,
                    )
                )

            last_reason = "tool-calls" if step_calls else normalize_stream_finish_reason(finish_reason)
            yield StepFinishPart(last_reason)

            if not step_calls:
                break
            # Only the first step is forced.
            choice = "auto"
            log.debug("Model step finished", step=step + 1, tool_calls=len(step_calls))
    except _Aborted:
        log.info("Model stream aborted")
        return
    except StreamError:
        raise
    except asyncio.CancelledError:
        raise
    except Exception as e:
        raise StreamError(str(e)) from e

    yield FinishPart(last_reason)

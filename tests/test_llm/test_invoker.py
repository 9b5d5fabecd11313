import asyncio

import pytest

from taskloop.exceptions import StreamError
from taskloop.invoker import (
    FinishPart,
    StepFinishPart,
    TextDelta,
    ToolCallPart,
    ToolResultPart,
    normalize_stream_finish_reason,
    select_tool_choice,
    stream_steps,
)
from taskloop.llm import LLMProvider, LLMResponse, StreamChunk, ToolCall
from taskloop.tools.registry import Tool, ToolResult, ToolSet


class NamedTool(Tool):
    def __init__(self, name: str, fail: bool = False):
        self.name = name
        self.description = name
        self.parameters = {"type": "object", "properties": {}, "required": []}
        self.fail = fail

    async def execute(self, **kwargs):
        if self.fail:
            raise RuntimeError("tool exploded")
        return ToolResult(success=True, content=f"{self.name} done")


class StepModel(LLMProvider):
    provider = "fake"
    model = "fake"

    def __init__(self, steps):
        self.steps = list(steps)
        self.requests = []

    async def complete(self, messages, tools=None, tool_choice=None, max_tokens=None):
        return LLMResponse(content="")

    async def stream_chat(self, messages, tools=None, tool_choice=None, max_tokens=None):
        self.requests.append({"messages": list(messages), "tool_choice": tool_choice})
        for chunk in self.steps.pop(0):
            yield chunk


def tool_set(*names: str, failing: set[str] | None = None) -> ToolSet:
    tools = ToolSet()
    for name in names:
        tools.register(NamedTool(name, fail=name in (failing or set())))
    return tools


def test_tool_choice_rule():
    assert select_tool_choice(ToolSet()) == "auto"
    assert select_tool_choice(tool_set("lookup", "start_task")) == {"type": "tool", "tool_name": "start_task"}
    assert select_tool_choice(tool_set("core_start_task")) == {"type": "tool", "tool_name": "core_start_task"}
    assert select_tool_choice(tool_set("lookup"), provider="groq") == "auto"
    assert select_tool_choice(tool_set("lookup"), provider="openai") == "required"


def test_finish_reason_normalization():
    assert normalize_stream_finish_reason("tool_calls") == "tool-calls"
    assert normalize_stream_finish_reason("tool-calls") == "tool-calls"
    assert normalize_stream_finish_reason(None) == "stop"
    assert normalize_stream_finish_reason("length") == "length"


@pytest.mark.asyncio
async def test_stream_runs_tools_between_steps_and_forces_only_first_step():
    model = StepModel(
        [
            [
                StreamChunk(kind="tool_call", tool_call=ToolCall(id="c1", name="start_task", arguments={"goal": "g"})),
                StreamChunk(kind="finish", finish_reason="tool_calls"),
            ],
            [StreamChunk(kind="text", text="done"), StreamChunk(kind="finish", finish_reason="stop")],
        ]
    )
    tools = tool_set("start_task")
    forced = select_tool_choice(tools)

    parts = [part async for part in stream_steps(model, "sys", "go", tools, tool_choice=forced)]

    assert [part.type for part in parts] == [
        "tool-call",
        "tool-result",
        "step-finish",
        "text-delta",
        "step-finish",
        "finish",
    ]
    assert isinstance(parts[0], ToolCallPart) and parts[0].args == {"goal": "g"}
    assert isinstance(parts[1], ToolResultPart) and parts[1].result.content == "start_task done"
    assert parts[2] == StepFinishPart("tool-calls")
    assert parts[3] == TextDelta("done")
    assert parts[-1] == FinishPart("stop")
    assert model.requests[0]["tool_choice"] == forced
    assert model.requests[1]["tool_choice"] == "auto"
    tool_message = model.requests[1]["messages"][-1]
    assert tool_message.role == "tool" and tool_message.content == "start_task done"


@pytest.mark.asyncio
async def test_tool_failure_is_fed_back_as_error_result():
    model = StepModel(
        [
            [
                StreamChunk(kind="tool_call", tool_call=ToolCall(id="c1", name="lookup", arguments={})),
                StreamChunk(kind="finish", finish_reason="tool_calls"),
            ],
            [StreamChunk(kind="text", text="sorry"), StreamChunk(kind="finish", finish_reason="stop")],
        ]
    )

    parts = [part async for part in stream_steps(model, "sys", "go", tool_set("lookup", failing={"lookup"}))]

    result_part = next(part for part in parts if isinstance(part, ToolResultPart))
    assert result_part.result.success is False
    assert model.requests[1]["messages"][-1].content.startswith("Error: ")


@pytest.mark.asyncio
async def test_max_steps_bounds_the_stream():
    looping = [
        [
            StreamChunk(kind="tool_call", tool_call=ToolCall(id=f"c{i}", name="lookup", arguments={})),
            StreamChunk(kind="finish", finish_reason="tool_calls"),
        ]
        for i in range(5)
    ]
    model = StepModel(looping)

    parts = [part async for part in stream_steps(model, "sys", "go", tool_set("lookup"), max_steps=2)]

    assert len(model.requests) == 2
    assert parts[-1] == FinishPart("tool-calls")


@pytest.mark.asyncio
async def test_abort_stops_delivery_promptly():
    class Hanging(StepModel):
        async def stream_chat(self, messages, tools=None, tool_choice=None, max_tokens=None):
            yield StreamChunk(kind="text", text="first")
            await asyncio.sleep(30)
            yield StreamChunk(kind="text", text="never")

    abort = asyncio.Event()
    received = []

    async def consume():
        async for part in stream_steps(Hanging([]), "sys", "go", ToolSet(), abort_event=abort):
            received.append(part)
            abort.set()

    await asyncio.wait_for(consume(), timeout=2)

    assert received == [TextDelta("first")]


@pytest.mark.asyncio
async def test_provider_failure_becomes_stream_error():
    class Broken(StepModel):
        async def stream_chat(self, messages, tools=None, tool_choice=None, max_tokens=None):
            raise ConnectionError("reset by peer")
            yield

    with pytest.raises(StreamError, match="reset by peer"):
        async for _ in stream_steps(Broken([]), "sys", "go", ToolSet()):
            pass

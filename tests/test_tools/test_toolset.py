import asyncio

import pytest

from taskloop.exceptions import ToolExecutionError, ToolNotFoundError
from taskloop.tools.registry import Tool, ToolResult, ToolSet, coerce_tool_output


class EchoTool(Tool):
    def __init__(self, name: str, reply: str = "ok"):
        self.name = name
        self.description = f"Echo tool {name}"
        self.parameters = {"type": "object", "properties": {}, "required": []}
        self.reply = reply
        self.calls: list[dict] = []

    async def execute(self, **kwargs):
        self.calls.append(kwargs)
        return ToolResult(success=True, content=self.reply)


class SlowTool(Tool):
    name = "slow"
    description = "Slow"
    parameters = {"type": "object", "properties": {}, "required": []}
    timeout_seconds = 1.0

    def __init__(self):
        self.cancelled = False

    async def execute(self, **kwargs):
        try:
            await asyncio.sleep(10.0)
            return ToolResult(success=True, content="done")
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class BrokenTool(Tool):
    name = "broken"
    description = "Broken"
    parameters = {"type": "object", "properties": {}, "required": []}

    async def execute(self, **kwargs):
        raise RuntimeError("boom")


def test_collision_keeps_first_bare_and_prefixes_later():
    tools = ToolSet()

    first = tools.register(EchoTool("search", "A"), provider="providerA")
    second = tools.register(EchoTool("search", "B"), provider="providerB")

    assert first == "search"
    assert second == "providerB_search"
    assert tools.names() == ["search", "providerB_search"]
    assert tools.provider_of("providerB_search") == "providerB"
    assert [d["name"] for d in tools.get_definitions()] == ["search", "providerB_search"]


@pytest.mark.asyncio
async def test_colliding_prefixed_name_never_replaces_earlier_tool():
    tools = ToolSet()

    tools.register(EchoTool("search", "A"), provider="providerA")
    tools.register(EchoTool("search", "B"), provider="providerB")
    third = tools.register(EchoTool("search", "B2"), provider="providerB")
    unnamed = tools.register(EchoTool("search", "C"))

    assert third == "providerB_search_2"
    assert unnamed == "search_2"
    assert len(tools) == 4
    assert (await tools.execute("search", {})).content == "A"
    assert (await tools.execute("providerB_search", {})).content == "B"
    assert (await tools.execute("providerB_search_2", {})).content == "B2"


def test_find_first_prefers_bare_then_suffix():
    tools = ToolSet()
    tools.register(EchoTool("lookup"), provider="a")
    assert tools.find_first("start_task") is None

    tools.register(EchoTool("core_start_task"), provider="core")
    assert tools.find_first("start_task") == "core_start_task"

    tools.register(EchoTool("start_task"), provider="other")
    assert tools.find_first("start_task") == "start_task"


def test_get_unknown_tool_raises():
    with pytest.raises(ToolNotFoundError):
        ToolSet().get("missing")


@pytest.mark.asyncio
async def test_execute_passes_arguments():
    tools = ToolSet()
    echo = EchoTool("echo", "pong")
    tools.register(echo)

    result = await tools.execute("echo", {"q": "ping"})

    assert result.content == "pong"
    assert echo.calls == [{"q": "ping"}]


@pytest.mark.asyncio
async def test_execute_times_out_and_cancels_tool():
    tools = ToolSet()
    slow = SlowTool()
    tools.register(slow)

    with pytest.raises(ToolExecutionError, match="timed out after 1s"):
        await tools.execute("slow", {})
    assert slow.cancelled is True


@pytest.mark.asyncio
async def test_execute_aborts_when_event_is_set():
    tools = ToolSet()
    slow = SlowTool()
    slow.timeout_seconds = 20.0
    tools.register(slow)
    abort = asyncio.Event()

    async def _abort_soon():
        await asyncio.sleep(0.05)
        abort.set()

    aborter = asyncio.create_task(_abort_soon())
    with pytest.raises(ToolExecutionError, match="Execution aborted"):
        await tools.execute("slow", {}, abort_event=abort)
    await aborter
    assert slow.cancelled is True


@pytest.mark.asyncio
async def test_execute_wraps_tool_exceptions():
    tools = ToolSet()
    tools.register(BrokenTool())

    with pytest.raises(ToolExecutionError, match="boom"):
        await tools.execute("broken", {})


def test_failed_result_always_has_error_text():
    result = ToolResult(success=False)

    assert result.error == "Tool execution failed"
    assert result.to_model_text() == "Error: Tool execution failed"


def test_coerce_tool_output_shapes():
    assert coerce_tool_output("plain") == "plain"
    assert coerce_tool_output({"result": "inner"}) == "inner"
    assert coerce_tool_output({"content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}) == "a\nb"
    assert coerce_tool_output(ToolResult(success=True, content="done")) == "done"
    assert coerce_tool_output(None) == ""
    assert coerce_tool_output({"n": 1}) == '{"n": 1}'

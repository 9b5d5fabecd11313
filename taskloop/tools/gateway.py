"""Tool gateway: connects stdio MCP servers and merges their tools.

Usage:
    gateway = ToolGateway()
    try:
        result = await gateway.connect(specs)
        ...
    finally:
        await gateway.close()
"""

import os
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from pydantic import BaseModel, Field

from taskloop.cleanup import CloseReport, close_all
from taskloop.exceptions import ToolConnectionError
from taskloop.logging import get_logger
from taskloop.tools.registry import Tool, ToolResult, ToolSet

log = get_logger(__name__)


class ToolProviderSpec(BaseModel):
    """One tool provider: a name plus the argv that launches it."""

    name: str
    command: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None


@dataclass
class ProviderTool:
    """Tool description as listed by a provider."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)


class McpConnection:
    """Live stdio MCP session. ``close()`` is idempotent and never raises."""

    def __init__(self, name: str, session: ClientSession, stack: AsyncExitStack):
        self.name = name
        self._session = session
        self._stack = stack
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def list_tools(self) -> list[ProviderTool]:
        listed = await self._session.list_tools()
        return [
            ProviderTool(
                name=tool.name,
                description=tool.description or "",
                input_schema=dict(tool.inputSchema or {}),
            )
            for tool in listed.tools
        ]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        result = await self._session.call_tool(name, arguments)
        parts: list[str] = []
        for item in result.content or []:
            text = getattr(item, "text", None)
            parts.append(text if text is not None else str(item))
        content = "\n".join(parts)
        if result.isError:
            return ToolResult(success=False, content=content, error=content)
        return ToolResult(success=True, content=content)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._stack.aclose()
        except Exception as e:
            # Provider may already have exited.
            log.warning("MCP connection close failed", provider=self.name, error=str(e))


class McpTool(Tool):
    """Tool backed by a call on a provider connection."""

    def __init__(self, connection: McpConnection, listed: ProviderTool, timeout_seconds: float = 120.0):
        self._connection = connection
        self.name = listed.name
        self.description = listed.description
        self.parameters = listed.input_schema or {"type": "object", "properties": {}}
        self.timeout_seconds = timeout_seconds

    async def execute(self, **kwargs: Any) -> ToolResult:
        return await self._connection.call_tool(self.name, kwargs)


Connector = Callable[[ToolProviderSpec], Awaitable[Any]]


async def open_mcp_connection(spec: ToolProviderSpec) -> McpConnection:
    """Launch a stdio MCP server and initialize a client session."""
    command, *args = spec.command
    env = {**os.environ, **spec.env} if spec.env else None
    params = StdioServerParameters(command=command, args=args, env=env)

    stack = AsyncExitStack()
    try:
        read_stream, write_stream = await stack.enter_async_context(stdio_client(params))
        session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
        await session.initialize()
    except BaseException:
        await stack.aclose()
        raise
    return McpConnection(spec.name, session, stack)


@dataclass
class GatewayResult:
    tools: ToolSet
    connections: list[Any]


class ToolGateway:
    """Connects tool providers in order and tracks every opened connection.

    A failed provider aborts ``connect`` with ``ToolConnectionError``; the
    connections opened before it stay in ``connections`` so ``close()`` can
    still shut them down.
    """

    def __init__(
        self,
        connector: Connector | None = None,
        tool_timeout_seconds: float = 120.0,
    ):
        self._connector = connector or open_mcp_connection
        self._tool_timeout_seconds = tool_timeout_seconds
        self.connections: list[Any] = []
        self.tools = ToolSet()

    async def connect(self, specs: list[ToolProviderSpec]) -> GatewayResult:
        for spec in specs:
            if len(spec.command) < 1:
                log.warning("Skipping tool provider with empty command", provider=spec.name)
                continue

            try:
                connection = await self._connector(spec)
            except Exception as e:
                log.error("Failed to connect tool provider", provider=spec.name, error=str(e))
                raise ToolConnectionError(spec.name, str(e)) from e
            self.connections.append(connection)

            try:
                listed = await connection.list_tools()
            except Exception as e:
                log.error("Failed to list tools", provider=spec.name, error=str(e))
                raise ToolConnectionError(spec.name, f"listing tools failed: {e}") from e

            for provider_tool in listed:
                self.tools.register(
                    McpTool(connection, provider_tool, timeout_seconds=self._tool_timeout_seconds),
                    provider=spec.name,
                )
            log.info("Loaded provider tools", provider=spec.name, count=len(listed))

        return GatewayResult(tools=self.tools, connections=list(self.connections))

    async def close(self) -> CloseReport:
        """Close all tracked connections. Safe to call repeatedly."""
        connections, self.connections = self.connections, []
        return await close_all(connections)

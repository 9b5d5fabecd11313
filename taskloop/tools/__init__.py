"""Tools package for Taskloop."""

from taskloop.tools.registry import Tool, ToolResult, ToolSet, coerce_tool_output
from taskloop.tools.gateway import (
    GatewayResult,
    McpConnection,
    McpTool,
    ToolGateway,
    ToolProviderSpec,
)

__all__ = [
    "Tool",
    "ToolResult",
    "ToolSet",
    "coerce_tool_output",
    "GatewayResult",
    "McpConnection",
    "McpTool",
    "ToolGateway",
    "ToolProviderSpec",
]

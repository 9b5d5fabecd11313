"""Taskloop - agent task runner with MCP tools and completion enforcement."""

__version__ = "0.1.0"

from taskloop.config import Config
from taskloop.agent import AgentAdapter, AgentAdapterOptions
from taskloop.direct_chat import run_direct_chat

__all__ = ["AgentAdapter", "AgentAdapterOptions", "Config", "run_direct_chat", "__version__"]

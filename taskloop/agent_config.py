"""Agent configuration and per-task context."""

from dataclasses import dataclass
from typing import Any, Awaitable

from taskloop.config import Config, get_config
from taskloop.models import TaskConfig
from taskloop.tools.gateway import ToolProviderSpec


@dataclass
class AgentConfig:
    """Everything the adapter needs to run one task."""

    system_prompt: str
    mcp_server_specs: list[ToolProviderSpec]
    provider: str
    model_id: str
    api_key: str | None = None
    base_url: str | None = None


@dataclass
class TaskContext:
    """Per-task state shared by the host hooks and config resolution.

    Created by ``start_task`` and handed to ``on_before_task_start``,
    ``on_before_start`` and ``get_agent_config`` in that order. Hooks record
    their decisions here (``browser_mode``) and may park a warm-up awaitable
    in ``warmup``; the adapter awaits it alongside the pre-start hook.
    """

    task_id: str
    session_id: str
    config: TaskConfig
    browser_mode: str | None = None
    warmup: Awaitable[Any] | None = None
    is_continuation: bool = False


def to_agent_config(
    generated_config: dict[str, Any],
    provider: str,
    model_id: str,
    api_key: str | None = None,
    base_url: str | None = None,
) -> AgentConfig:
    """Build an AgentConfig from a generated host config.

    Only local (stdio) MCP servers that are enabled and have a command are
    kept; remote connectors are not handled by the tool gateway.
    """
    specs: list[ToolProviderSpec] = []
    servers = generated_config.get("mcp_servers") or generated_config.get("mcpServers") or {}
    for name, server in servers.items():
        if not isinstance(server, dict):
            continue
        command = server.get("command") or []
        if server.get("type", "local") != "local" or not command or server.get("enabled") is False:
            continue
        env = server.get("environment") or server.get("env")
        specs.append(
            ToolProviderSpec(
                name=name,
                command=[str(part) for part in command],
                env={str(k): str(v) for k, v in env.items()} if isinstance(env, dict) else None,
            )
        )

    system_prompt = generated_config.get("system_prompt") or generated_config.get("systemPrompt") or ""
    return AgentConfig(
        system_prompt=str(system_prompt),
        mcp_server_specs=specs,
        provider=provider,
        model_id=model_id,
        api_key=api_key or None,
        base_url=base_url or None,
    )


def agent_config_from_settings(config: Config | None = None) -> AgentConfig:
    """AgentConfig built from the loaded Taskloop configuration."""
    cfg = config or get_config()
    return to_agent_config(
        {
            "system_prompt": cfg.agent.system_prompt,
            "mcp_servers": {
                server.name: {
                    "type": "local",
                    "command": server.command,
                    "environment": server.env or None,
                    "enabled": server.enabled,
                }
                for server in cfg.mcp_servers
            },
        },
        provider=cfg.model.provider,
        model_id=cfg.model.model,
        api_key=cfg.model.api_key,
        base_url=cfg.model.base_url,
    )

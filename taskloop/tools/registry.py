"""Tool base class and the merged per-task tool set."""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Iterator

from pydantic import BaseModel, model_validator

from taskloop.exceptions import ToolExecutionError, ToolNotFoundError
from taskloop.logging import get_logger

log = get_logger(__name__)


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self

    def to_model_text(self) -> str:
        """Text handed back to the model for this result."""
        return self.content if self.success else f"Error: {self.error}"


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float = 120.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            ToolResult with success status and content
        """
        pass

    def get_definition(self, name: str | None = None) -> dict[str, Any]:
        """OpenAI function-style definition, optionally under an alias."""
        return {
            "name": name or self.name,
            "description": self.description,
            "parameters": self.parameters or {"type": "object", "properties": {}},
        }


def coerce_tool_output(result: Any) -> str:
    """Turn a tool result payload into displayable text.

    Strings pass through; otherwise a nested ``result`` field wins; MCP-style
    ``content`` blocks contribute their text; anything else is JSON-encoded.
    """
    if isinstance(result, str):
        return result
    if isinstance(result, ToolResult):
        return result.to_model_text()
    if isinstance(result, dict):
        if "result" in result:
            return coerce_tool_output(result["result"])
        blocks = result.get("content")
        if isinstance(blocks, list):
            texts = [
                str(block.get("text", ""))
                for block in blocks
                if isinstance(block, dict) and block.get("type") == "text"
            ]
            if texts:
                return "\n".join(texts)
    if result is None:
        return ""
    try:
        return json.dumps(result, default=str)
    except (TypeError, ValueError):
        return str(result)


class ToolSet:
    """Combined tool namespace for one task.

    The first provider to register a name keeps it bare; later providers
    registering the same name get ``<provider>_<name>``, plus a numeric
    suffix if that key is taken too. Earlier tools are never replaced.
    """

    def __init__(self):
        self._tools: dict[str, Tool] = {}
        self._providers: dict[str, str] = {}

    def register(self, tool: Tool, provider: str | None = None) -> str:
        """Register a tool and return the key it is exposed under."""
        if not tool.name:
            raise ValueError("Tool must have a name")

        key = tool.name
        if key in self._tools:
            base = f"{provider}_{tool.name}" if provider else tool.name
            key = base
            suffix = 2
            while key in self._tools:
                key = f"{base}_{suffix}"
                suffix += 1
            log.warning("Tool name collision", tool=tool.name, provider=provider, key=key)
        self._tools[key] = tool
        self._providers[key] = provider or ""
        return key

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[str]:
        return iter(self._tools)

    def names(self) -> list[str]:
        return list(self._tools)

    def provider_of(self, name: str) -> str:
        return self._providers.get(name, "")

    def get(self, name: str) -> Tool:
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def find_first(self, bare_name: str) -> str | None:
        """Find ``bare_name`` or the first key ending in ``_<bare_name>``."""
        if bare_name in self._tools:
            return bare_name
        suffix = f"_{bare_name}"
        return next((key for key in self._tools if key.endswith(suffix)), None)

    def get_definitions(self) -> list[dict[str, Any]]:
        return [tool.get_definition(name=key) for key, tool in self._tools.items()]

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            pass

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        abort_event: asyncio.Event | None = None,
        timeout_seconds: float | None = None,
    ) -> ToolResult:
        """Execute a tool by name, racing it against timeout and abort.

        Raises:
            ToolNotFoundError if tool not found
            ToolExecutionError if execution fails, times out or is aborted
        """
        tool = self.get(name)

        execute_task: asyncio.Task[ToolResult] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        try:
            log.info("Executing tool", tool=name)
            timeout = float(timeout_seconds or getattr(tool, "timeout_seconds", 120.0) or 120.0)
            timeout = max(1.0, timeout)

            execute_task = asyncio.create_task(tool.execute(**arguments))
            waiters: set[asyncio.Task[Any]] = {execute_task}
            if abort_event is not None:
                abort_wait_task = asyncio.create_task(abort_event.wait())
                waiters.add(abort_wait_task)
            done, _ = await asyncio.wait(
                waiters,
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                result = await execute_task
                if not isinstance(result, ToolResult):
                    raise ToolExecutionError(name, "Tool returned invalid result payload")
                log.info("Tool executed", tool=name, success=result.success)
                return result

            await self._cancel_task(execute_task)
            if abort_wait_task is not None and abort_wait_task in done:
                raise ToolExecutionError(name, "Execution aborted")

            timeout_label = int(timeout) if timeout.is_integer() else timeout
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            await self._cancel_task(execute_task)
            raise
        except ToolExecutionError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e))
        finally:
            await self._cancel_task(abort_wait_task)

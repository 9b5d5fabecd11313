"""Command line entry point for Taskloop."""

import asyncio
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from taskloop.agent import AgentAdapter, AgentAdapterOptions
from taskloop.agent_config import AgentConfig, TaskContext, agent_config_from_settings
from taskloop.config import Config, set_config
from taskloop.direct_chat import DirectChatCallbacks, get_direct_chat_config, run_direct_chat
from taskloop.events import (
    AgentEvent,
    CompleteEvent,
    ErrorEvent,
    MessageEvent,
    ProgressEvent,
    TodoUpdateEvent,
    ToolResultEvent,
    ToolUseEvent,
)
from taskloop.exceptions import LLMError
from taskloop.logging import configure_logging, log
from taskloop.models import TaskConfig

app = typer.Typer(help="Taskloop - run agent tasks against MCP tool providers")
console = Console()


def _load_config(config: str, model: str, provider: str) -> Config:
    if config:
        try:
            cfg = Config.from_yaml(Path(config))
        except Exception as e:
            log.error("Failed to load config", path=config, error=str(e))
            cfg = Config.load()
    else:
        cfg = Config.load()

    if model:
        cfg.model.model = model
    if provider:
        cfg.model.provider = provider
    set_config(cfg)
    return cfg


class EventPrinter:
    """Renders adapter events to the console.

    Streamed messages are revised in place, so only the latest content per
    message id is printed once the turn moves on.
    """

    def __init__(self, out: Console):
        self.out = out
        self._pending: dict[str, str] = {}

    def _flush(self) -> None:
        for content in self._pending.values():
            self.out.print(content, markup=False)
        self._pending.clear()

    def __call__(self, event: AgentEvent) -> None:
        if isinstance(event, MessageEvent):
            self._pending[event.message.id] = event.message.content
            return

        self._flush()
        if isinstance(event, ProgressEvent):
            self.out.print(f"[dim]{escape(event.message or event.stage)}[/dim]")
        elif isinstance(event, ToolUseEvent):
            self.out.print(f"[cyan]> {escape(event.tool_name)}[/cyan] [dim]{escape(str(event.tool_input))}[/dim]")
        elif isinstance(event, ToolResultEvent):
            preview = event.output if len(event.output) <= 200 else event.output[:200] + "..."
            self.out.print(f"[dim]{escape(preview)}[/dim]")
        elif isinstance(event, TodoUpdateEvent):
            for todo in event.todos:
                mark = "x" if todo.status in ("done", "completed") else " "
                self.out.print(escape(f"  [{mark}] {todo.content}"))
        elif isinstance(event, ErrorEvent):
            self.out.print(f"[red]Error:[/red] {escape(str(event.error))}")
        elif isinstance(event, CompleteEvent):
            style = "green" if event.status == "success" else "yellow"
            self.out.print(Panel(f"Task finished: {event.status}", style=style))


async def _run_task(cfg: Config, prompt: str) -> str:
    async def get_agent_config(task_config: TaskConfig, context: TaskContext) -> AgentConfig:
        return agent_config_from_settings(cfg)

    adapter = AgentAdapter(
        AgentAdapterOptions(
            get_agent_config=get_agent_config,
            get_model_display_name=lambda model_id: model_id,
            settings=cfg.agent,
        )
    )
    adapter.subscribe(EventPrinter(console))
    try:
        task = await adapter.start_task(TaskConfig(prompt=prompt, model_id=cfg.model.model))
    except asyncio.CancelledError:
        await adapter.cancel_task()
        raise
    finally:
        await adapter.dispose()
    return task.status


@app.command()
def run(
    prompt: str = typer.Argument(..., help="Task prompt"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
    log_file: str = typer.Option("", "--log-file", help="Write JSON logs to this file instead of stderr"),
) -> None:
    """Run a task through the agent loop."""
    cfg = _load_config(config, model, provider)
    configure_logging("DEBUG" if verbose else None, log_file=log_file or None)

    try:
        status = asyncio.run(_run_task(cfg, prompt))
    except KeyboardInterrupt:
        log.info("Interrupted")
        sys.exit(130)
    if status != "success":
        sys.exit(1)


@app.command()
def chat(
    prompt: str = typer.Argument(..., help="Message to send"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
    log_file: str = typer.Option("", "--log-file", help="Write JSON logs to this file instead of stderr"),
) -> None:
    """Send a simple prompt straight to the model, without tools."""
    cfg = _load_config(config, model, provider)
    configure_logging("DEBUG" if verbose else None, log_file=log_file or None)

    chat_config = get_direct_chat_config(
        cfg.model.provider,
        cfg.model.model,
        base_url=cfg.model.base_url or None,
        api_key=cfg.model.api_key or None,
    )
    if chat_config is None:
        console.print(f"[red]Direct chat is not supported for provider {cfg.model.provider}[/red]")
        sys.exit(2)

    callbacks = DirectChatCallbacks(
        on_progress=lambda stage, message: console.print(f"[dim]{escape(message or stage)}[/dim]"),
        on_message=lambda message: console.print(message.content, markup=False),
    )
    try:
        asyncio.run(run_direct_chat(prompt, chat_config, callbacks, settings=cfg.direct_chat))
    except LLMError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)


@app.command()
def version() -> None:
    """Show version information."""
    from taskloop import __version__

    console.print(f"Taskloop v{__version__}")


if __name__ == "__main__":
    app()

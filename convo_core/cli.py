"""convo CLI - run a tool-calling conversation from the command line."""

import asyncio
import importlib
import json
import sys
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from convo_core import __version__
from convo_core.config import Settings, get_settings
from convo_core.core.logging import configure_logging
from convo_core.errors import ConvoError
from convo_core.llm.base import EffortLevel
from convo_core.llm.orchestrator import ConversationResult, create_orchestrator
from convo_core.llm.tools import ToolRegistry

console = Console()
err_console = Console(stderr=True)


def load_tools(module_name: Optional[str]) -> ToolRegistry:
    """Build a registry from a module exposing ``register(registry)``."""
    registry = ToolRegistry()
    if not module_name:
        return registry

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise click.BadParameter(f"Cannot import {module_name}: {e}", param_hint="--tools-module")

    register = getattr(module, "register", None)
    if not callable(register):
        raise click.BadParameter(
            f"{module_name} has no register(registry) function",
            param_hint="--tools-module",
        )
    register(registry)
    return registry


def _print_summary(result: ConversationResult) -> None:
    table = Table(title="Conversation")
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    table.add_row("Iterations", str(result.iteration_count))
    table.add_row("Tools used", ", ".join(c["name"] for c in result.tool_calls) or "-")
    table.add_row("Max iterations hit", "yes" if result.max_iterations_reached else "no")
    table.add_row("Total tokens", str(result.usage.total_tokens))

    err_console.print(table)


async def _ask(
    settings: Settings,
    prompt: str,
    registry: ToolRegistry,
    stream: bool,
    persona: Optional[str],
    effort: str,
    max_iterations: Optional[int],
) -> ConversationResult:
    async with create_orchestrator(settings, registry) as orchestrator:
        def on_tool_call(call, result):
            if result is None:
                err_console.print(f"[yellow]→[/yellow] {call.name} {escape(call.arguments_json)}")
            elif result.success:
                err_console.print(f"[green]✓[/green] {call.name} ({result.execution_time_ms:.0f} ms)")
            else:
                err_console.print(f"[red]✗[/red] {call.name}: {escape(result.error or '')}")

        if stream:
            result = await orchestrator.run_streaming(
                prompt,
                on_chunk=lambda text, metadata: console.print(text, end="", markup=False, soft_wrap=True),
                persona=persona,
                effort_hint=effort,
                on_tool_call=on_tool_call,
                max_iterations=max_iterations,
            )
            console.print()
            return result

        result = await orchestrator.run(
            prompt,
            persona=persona,
            effort_hint=effort,
            on_tool_call=on_tool_call,
            max_iterations=max_iterations,
        )
        console.print(result.text, markup=False)
        return result


@click.group()
@click.version_option(version=__version__, prog_name="convo")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, debug: bool):
    """convo - resilient LLM conversations with tool calling.

    \b
    Examples:
      convo ask "Summarize the latest release notes"
      convo ask --stream --tools-module mytools "Find three papers on RAG"
      convo settings
    """
    ctx.ensure_object(dict)
    settings = get_settings()
    configure_logging(
        level="debug" if debug else settings.log_level,
        fmt=settings.log_format,
    )
    ctx.obj["settings"] = settings


@cli.command("ask")
@click.argument("prompt")
@click.option("--stream", is_flag=True, help="Stream the answer as it is generated")
@click.option("--persona", default=None, help="Persona used to scale tool timeouts")
@click.option("--effort", type=click.Choice([e.value for e in EffortLevel]),
              default=EffortLevel.MEDIUM.value, help="Reasoning effort hint")
@click.option("--max-iterations", type=click.IntRange(min=1), default=None,
              help="Override the conversation iteration cap")
@click.option("--tools-module", default=None,
              help="Module exposing register(registry) to add tools")
@click.option("--summary", is_flag=True, help="Print a summary table after the answer")
@click.pass_context
def ask(
    ctx: click.Context,
    prompt: str,
    stream: bool,
    persona: Optional[str],
    effort: str,
    max_iterations: Optional[int],
    tools_module: Optional[str],
    summary: bool,
):
    """Ask a question and let the model call tools as needed."""
    registry = load_tools(tools_module)

    try:
        result = asyncio.run(_ask(
            ctx.obj["settings"],
            prompt,
            registry,
            stream,
            persona,
            effort,
            max_iterations,
        ))
    except ConvoError as e:
        err_console.print(f"[red]✗[/red] {escape(str(e))}")
        sys.exit(1)

    if summary:
        _print_summary(result)


@cli.command("settings")
@click.pass_context
def show_settings(ctx: click.Context):
    """Show the effective configuration."""
    settings: Settings = ctx.obj["settings"]

    table = Table(title="Settings")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    for key, value in settings.masked().items():
        if isinstance(value, dict):
            value = json.dumps(value)
        table.add_row(key, str(value))

    console.print(table)


def main():
    """Main entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()

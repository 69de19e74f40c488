"""Conductor CLI: run requests through the task engine from a terminal.

Usage:
    conductor ask "list the files here"          # Run a request
    conductor "what's in README.md?"             # Shorthand for ask
    conductor ask --auto-run "run the tests"     # Skip confirmations
    conductor ask --scripted replies.txt "hi"    # Replay canned model replies
    conductor serve                              # WebSocket confirmation bridge
    conductor config                             # Show configuration
    conductor config provider.model=gpt-4o       # Set configuration
    conductor profiles                           # Context window profiles
    conductor timeline                           # Recent engine events
"""

import asyncio
import datetime
import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from conductor import __version__
from conductor.config import ConductorConfig, ensure_conductor_home
from conductor.context_window import DEFAULT_PROFILES
from conductor.errors import ConductorError, ConfigurationError
from conductor.events import EVENT_APPROVAL_NEEDED, EVENT_CONTEXT_TRUNCATED, EVENT_TOOL_RESULT, EVENT_TOOL_USE
from conductor.memory import MemoryStore
from conductor.orchestrator import TaskOrchestrator, TaskStatus

console = Console()

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


def _run_async(coro):
    """Run async function from sync context."""
    return asyncio.run(coro)


def _load_config(config_path: str | None) -> ConductorConfig:
    try:
        return ConductorConfig.load(Path(config_path) if config_path else None)
    except ConfigurationError as e:
        console.print(f"[bold red]Configuration error:[/] {e}")
        sys.exit(1)


class ConductorCLI(click.Group):
    """Custom group that routes unknown commands to 'ask'."""

    def parse_args(self, ctx, args):
        """If the first arg isn't a known command or option, treat all args as a request."""
        if args and args[0] not in self.commands and not args[0].startswith("-"):
            args = ["ask"] + args
        return super().parse_args(ctx, args)


@click.group(cls=ConductorCLI)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.option("--config", "config_path", default=None, help="Path to config.json")
@click.version_option(__version__, prog_name="conductor")
@click.pass_context
def cli(ctx, verbose, config_path):
    """Conductor: a conversational agent runtime.

    Send a request:
        conductor "summarize the files in this folder"
        conductor ask --auto-run "run the test suite"
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# --- Requests ---


class _ConfirmationPrompter:
    """Answers approval_needed events with interactive prompts, one at a time."""

    def __init__(self, orchestrator: TaskOrchestrator):
        self._orchestrator = orchestrator
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

    def __call__(self, event: dict) -> None:
        metadata = event.get("metadata") or {}
        if event["event_type"] != EVENT_APPROVAL_NEEDED or metadata.get("auto_run"):
            return
        task = asyncio.ensure_future(self._prompt(metadata))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _prompt(self, pending: dict) -> None:
        async with self._lock:
            console.print(Panel(
                f"[bold]{pending.get('description', '')}[/]\n"
                f"[dim]command:[/] {pending.get('command', '')}\n"
                f"[dim]directory:[/] {pending.get('directory', '')}",
                title="[yellow]Confirmation needed[/]",
                border_style="yellow",
            ))
            approved = await asyncio.to_thread(click.confirm, "Allow this?", default=False)
            if approved:
                self._orchestrator.approve(pending["id"])
            else:
                self._orchestrator.reject(pending["id"])


def _print_progress(event: dict) -> None:
    event_type = event["event_type"]
    if event_type == EVENT_TOOL_USE:
        console.print(f"  [cyan]>[/] {event['summary']}")
    elif event_type == EVENT_TOOL_RESULT:
        console.print(f"  [dim]{event['summary']}[/]")
    elif event_type == EVENT_CONTEXT_TRUNCATED:
        console.print(f"  [yellow]context truncated:[/] {event['summary']}")


@cli.command()
@click.argument("message", nargs=-1, required=True)
@click.option("--auto-run", is_flag=True, help="Approve every confirmation automatically")
@click.option("--scripted", "script", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Replay model replies from a file instead of calling a provider")
@click.option("--workspace", "-w", default=None, help="Workspace root for file and shell capabilities")
@click.pass_context
def ask(ctx, message, auto_run, script, workspace):
    """Send a request to the model and run the capabilities it asks for.

    Examples:
        conductor ask "what files are in src?"
        conductor ask --auto-run "run pytest and summarize failures"
    """
    config = _load_config(ctx.obj.get("config_path"))
    if auto_run:
        config.approval.auto_run = True
    if workspace:
        config.tools.workspace = workspace
    _run_async(_ask(config, " ".join(message), script))


async def _ask(config: ConductorConfig, message: str, script: str | None) -> None:
    ensure_conductor_home()
    store = MemoryStore()
    try:
        orchestrator = TaskOrchestrator.from_config(
            config, store=store, script=Path(script) if script else None
        )
    except ConductorError as e:
        console.print(f"[bold red]Cannot start:[/] {e}")
        sys.exit(1)

    orchestrator.events.add_listener(_print_progress)
    orchestrator.events.add_listener(_ConfirmationPrompter(orchestrator))

    console.print(f"[dim]model: {orchestrator.model_id}  workspace: {config.tools.workspace}[/]")
    result = await orchestrator.run(message)

    style = {
        TaskStatus.COMPLETED: "green",
        TaskStatus.FAILED: "red",
        TaskStatus.CANCELLED: "yellow",
    }.get(result.status, "white")
    console.print(Panel(
        result.output or "(no output)",
        title=f"[{style}]{result.status.value}[/] [dim]{result.task_id} · {result.rounds} round(s)[/]",
        border_style=style,
    ))
    if result.status == TaskStatus.FAILED:
        sys.exit(1)


# --- Bridge ---


@cli.command()
@click.option("--scripted", "script", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Replay model replies from a file instead of calling a provider")
@click.pass_context
def serve(ctx, script):
    """Run the WebSocket confirmation bridge (foreground)."""
    from conductor.ws_server import run_bridge

    logging.getLogger("conductor").setLevel(logging.INFO)
    config = _load_config(ctx.obj.get("config_path"))
    console.print(
        f"[bold blue]Conductor bridge[/] on ws://{config.server.host}:{config.server.port} "
        "[dim](Ctrl+C to stop)[/]"
    )
    try:
        _run_async(run_bridge(ctx.obj.get("config_path"), script))
    except KeyboardInterrupt:
        console.print("[dim]stopped[/]")


# --- Configuration ---


@cli.command()
@click.argument("key_value", nargs=-1)
@click.pass_context
def config(ctx, key_value):
    """View or set configuration.

    Examples:
        conductor config                              # show all
        conductor config provider.model=gpt-4o        # switch model
        conductor config approval.auto_run=true       # skip confirmations
    """
    config_path = ctx.obj.get("config_path")
    cfg = _load_config(config_path)
    if not key_value:
        console.print_json(json.dumps(cfg.to_dict()))
        return

    kv = " ".join(key_value)
    if "=" not in kv:
        console.print("[red]Usage: conductor config <section>.<key>=<value>[/]")
        sys.exit(1)
    key, value = kv.split("=", 1)
    try:
        cfg.set_value(key.strip(), value.strip())
    except ConfigurationError as e:
        console.print(f"[red]{e}[/]")
        sys.exit(1)
    cfg.save(Path(config_path) if config_path else None)
    console.print(f"[green]Set {key.strip()} = {value.strip()}[/]")


@cli.command()
@click.pass_context
def profiles(ctx):
    """Show context window profiles (built-in plus configured overrides)."""
    cfg = _load_config(ctx.obj.get("config_path"))
    merged = {mid: (p.max_tokens, p.buffer_tokens, "built-in") for mid, p in DEFAULT_PROFILES.items()}
    for mid, p in cfg.context.profiles.items():
        merged[mid] = (int(p["max_tokens"]), int(p.get("buffer_tokens", 0)), "config")

    table = Table(title="Context Window Profiles")
    table.add_column("Model", style="cyan")
    table.add_column("Max tokens", justify="right")
    table.add_column("Buffer", justify="right")
    table.add_column("Allowed", justify="right", style="green")
    table.add_column("Source", style="dim")
    for mid, (max_tokens, buffer_tokens, source) in sorted(merged.items()):
        marker = " *" if mid == cfg.provider.model else ""
        table.add_row(f"{mid}{marker}", f"{max_tokens:,}", f"{buffer_tokens:,}",
                      f"{max_tokens - buffer_tokens:,}", source)
    console.print(table)


# --- Timeline ---


@cli.command()
@click.option("--limit", "-n", default=20, help="Number of events to show")
@click.option("--type", "-T", "event_type", default=None, help="Filter by event type")
@click.option("--task", "task_id", default=None, help="Filter by task id")
def timeline(limit, event_type, task_id):
    """Show recent engine events."""
    ensure_conductor_home()
    memory = MemoryStore()
    events = memory.get_timeline(limit=limit, event_type=event_type, task_id=task_id)
    if not events:
        console.print("[dim]No events recorded yet.[/]")
        return

    table = Table(title="Timeline")
    table.add_column("Time", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Task", style="dim")
    table.add_column("Summary")
    for e in reversed(events):
        ts = datetime.datetime.fromtimestamp(e["timestamp"]).strftime("%Y-%m-%d %H:%M:%S")
        table.add_row(ts, e["event_type"], e["task_id"] or "", e["summary"][:100])
    console.print(table)


def main():
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()

"""CLI entry point for the orchestration engine.

Usage:
    indokq "Create hello.txt containing Hello World"
    indokq --agent execution --model claude-opus-4-1 "Fix the failing test"
    indokq --task-file tasks/feature.md --config indokq.yaml
    indokq --replay session.yaml --auto-approve "Create hello.txt"
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import threading
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.syntax import Syntax
from rich.text import Text

from indokq.adapters.event_bus import EventBus
from indokq.adapters.events import (
    AgentCompleted,
    AgentError,
    AgentSpawned,
    ApprovalNeeded,
    ApprovalResolved,
    EngineFinished,
    OrchestratorEvent,
    StreamChunk,
    ToolError,
    ToolRequested,
    ToolResult,
)

from .approval import ApprovalLevel, PendingApproval
from .config import EngineConfig
from .engine import OrchestrationEngine
from .models import AgentOutcome, ApprovalDecision
from .providers.base import ModelProvider
from .providers.scripted import ScriptedProvider
from .yaml_config import load_yaml_config

logger = logging.getLogger(__name__)

_DECISION_CHOICES = {
    "a": ApprovalDecision.APPROVE,
    "r": ApprovalDecision.REJECT,
    "e": ApprovalDecision.EDIT,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="indokq",
        description="Streaming multi-agent coding assistant",
    )
    parser.add_argument(
        "task",
        nargs="?",
        default=None,
        help="The task to run (inline string)",
    )
    parser.add_argument(
        "--task-file", "-f",
        default=None,
        help="Read task from a file (.md, .txt, etc.)",
    )
    parser.add_argument(
        "--agent",
        default=None,
        help="Top-level agent type (default: orchestrator)",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML file with engine settings and agent definitions",
    )
    parser.add_argument(
        "--model",
        default=None,
        help="Model name (default: from config)",
    )
    parser.add_argument(
        "--max-depth",
        type=int,
        default=None,
        help="Maximum agent nesting depth (default: 5)",
    )
    parser.add_argument(
        "--no-stream",
        action="store_true",
        help="Use single-shot requests instead of streaming",
    )
    parser.add_argument(
        "--tools-module",
        default=None,
        help=(
            "Python file that exports a register_tools(dispatcher) "
            "function"
        ),
    )
    parser.add_argument(
        "--replay",
        default=None,
        help="Replay scripted model responses from a YAML/JSON file",
    )
    parser.add_argument(
        "--auto-approve",
        action="store_true",
        help="Run every tool and apply proposed changes without asking (approval level 3)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    task = _resolve_task(args.task, args.task_file)
    config, registry = _build_config(args)

    console = Console()
    bus = EventBus()
    config.event_callback = bus

    provider: ModelProvider | None = None
    if args.replay:
        provider = ScriptedProvider.from_file(args.replay)

    approver = TerminalApprover(console)
    if config.approval_level < ApprovalLevel.HIGH:
        config.approval_callback = approver

    engine = OrchestrationEngine(config, provider=provider, registry=registry)
    approver.engine = engine

    if args.tools_module:
        _load_tools(engine, args.tools_module)

    try:
        outcome = asyncio.run(_run(engine, bus, console, task, args.agent))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        return 130

    return 0 if outcome.success else 1


def _build_config(args: argparse.Namespace):
    """Merge env vars, the optional YAML file and CLI flags."""
    registry = None
    if args.config:
        loaded = load_yaml_config(args.config, base=EngineConfig.from_env())
        config = loaded.engine
        registry = loaded.build_registry()
    else:
        config = EngineConfig.from_env()

    if args.model is not None:
        config.model = args.model
    if args.max_depth is not None:
        config.max_agent_depth = args.max_depth
    if args.no_stream:
        config.stream_responses = False
    if args.auto_approve:
        config.approval_level = ApprovalLevel.HIGH
    return config, registry


async def _run(
    engine: OrchestrationEngine,
    bus: EventBus,
    console: Console,
    task: str,
    agent_type: str | None,
) -> AgentOutcome:
    renderer = asyncio.create_task(_render_events(bus, console))
    try:
        outcome = await engine.run(task, agent_type)
    except asyncio.CancelledError:
        engine.cancel("interrupted")
        raise
    finally:
        bus.close()
        await renderer
        await engine.shutdown()
    return outcome


class TerminalApprover:
    """Approval callback that asks on the terminal.

    Prompts run on daemon threads rather than the default executor, so
    a cancelled run never waits for a pending answer before exiting.
    """

    def __init__(self, console: Console) -> None:
        self.console = console
        self.engine: OrchestrationEngine | None = None
        self._prompts: set[asyncio.Task] = set()

    async def __call__(self, pending: PendingApproval) -> None:
        # Prompt off the turn loop so other tool calls keep running.
        task = asyncio.create_task(self._ask(pending))
        self._prompts.add(task)
        task.add_done_callback(self._prompts.discard)

    def _question(self, pending: PendingApproval) -> str:
        choices = "([green]a[/green]pprove/[red]r[/red]eject/[cyan]e[/cyan]dit)"
        if pending.is_file_change:
            return f"Apply changes to [bold]{pending.path}[/bold]? {choices}"
        return f"Run [bold]{pending.tool_name}[/bold] ({pending.reason})? {choices}"

    async def _ask(self, pending: PendingApproval) -> None:
        answer = await run_in_daemon_thread(
            Prompt.ask,
            self._question(pending),
            choices=list(_DECISION_CHOICES),
            default="a",
            console=self.console,
        )
        if self.engine is not None:
            self.engine.resolve_approval(
                pending.approval_id, _DECISION_CHOICES[answer],
            )


def run_in_daemon_thread(func, *args, **kwargs) -> asyncio.Future:
    """Run a blocking call on a daemon thread and await its result.

    Cancelling the returned future abandons the call; the thread is
    left blocked but does not keep the interpreter alive.
    """
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    def deliver(setter, value) -> None:
        if not future.done():
            setter(value)

    def worker() -> None:
        try:
            result = func(*args, **kwargs)
        except Exception as exc:
            outcome = (future.set_exception, exc)
        else:
            outcome = (future.set_result, result)
        try:
            loop.call_soon_threadsafe(deliver, *outcome)
        except RuntimeError:
            logger.debug("Event loop closed before %s returned", func.__name__)

    threading.Thread(target=worker, name="indokq-prompt", daemon=True).start()
    return future


async def _render_events(bus: EventBus, console: Console) -> None:
    async for event in bus.consume():
        render_event(console, event)


def render_event(console: Console, event: OrchestratorEvent) -> None:
    """Print one engine event to the terminal."""
    if isinstance(event, StreamChunk):
        console.print(event.text, end="", markup=False, highlight=False)
    elif isinstance(event, AgentSpawned):
        if event.parent_id is not None:
            console.print(
                f"\n[magenta]> spawned {event.name or event.agent_type}[/magenta] "
                f"[dim]({event.agent_id[:8]}, depth {event.depth})[/dim]"
            )
    elif isinstance(event, ToolRequested):
        console.print(
            f"\n[cyan]tool[/cyan] {event.tool_name} [dim]{event.call_id[:12]}[/dim]"
        )
    elif isinstance(event, ToolResult):
        console.print(Text(_truncate(event.output), style="dim"))
    elif isinstance(event, ToolError):
        console.print(Text(f"{event.tool_name}: {event.error}", style="red"))
    elif isinstance(event, ApprovalNeeded):
        if event.path:
            body = event.diff or event.description or event.path
            console.print(Panel(
                Syntax(body, "diff", word_wrap=True),
                title=f"Proposed change: {event.path}",
                border_style="yellow",
            ))
        else:
            console.print(Panel(
                Syntax(event.description or "{}", "json", word_wrap=True),
                title=f"Approve {event.tool_name}: {event.reason}",
                border_style="yellow",
            ))
    elif isinstance(event, ApprovalResolved):
        subject = event.path or event.tool_name
        console.print(f"[yellow]{subject}: {event.decision}[/yellow]")
    elif isinstance(event, AgentError):
        style = "bold red" if event.fatal else "red"
        console.print(Text(f"\n{event.agent_type}: {event.error}", style=style))
    elif isinstance(event, AgentCompleted):
        if event.parent_id is not None:
            console.print(
                f"[magenta]< {event.agent_type} {event.status}[/magenta] "
                f"[dim]({event.turns} turns, {event.duration_seconds:.1f}s)[/dim]"
            )
    elif isinstance(event, EngineFinished):
        style = "green" if event.success else "red"
        console.print()
        console.print(Panel(
            event.summary or event.error or event.status,
            title=f"Result: {event.status}",
            border_style=style,
        ))


def _truncate(text: str, limit: int = 400) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"... ({len(text) - limit} more chars)"


def _resolve_task(inline: str | None, file_path: str | None) -> str:
    """Get task from inline arg or file. Exactly one must be provided."""
    if inline and file_path:
        print("Error: Provide either a task string or --task-file, not both.")
        sys.exit(1)

    if file_path:
        p = Path(file_path)
        if not p.is_file():
            print(f"Error: Task file not found: {file_path}")
            sys.exit(1)
        return p.read_text(encoding="utf-8").strip()

    if inline:
        return inline

    print("Error: Provide a task string or --task-file.")
    sys.exit(1)


def _load_tools(engine: OrchestrationEngine, path: str) -> None:
    """Load tool handlers from a Python file.

    The file must export a register_tools(dispatcher) function.
    """
    import importlib.util

    spec = importlib.util.spec_from_file_location("indokq_tools", path)
    if spec is None or spec.loader is None:
        print(f"Error: Cannot load tools file: {path}")
        sys.exit(1)

    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)

    register_fn = getattr(module, "register_tools", None)
    if register_fn is None:
        print(
            f"Error: {path} must export a "
            f"register_tools(dispatcher) function"
        )
        sys.exit(1)

    register_fn(engine.dispatcher)
    logger.info("Registered tools from %s: %s", path, engine.dispatcher.tool_names)


if __name__ == "__main__":
    sys.exit(main())

"""Tests for the command-line entry point."""
from __future__ import annotations

import asyncio
import threading
from types import SimpleNamespace

import pytest
import yaml
from rich.console import Console

from indokq.adapters.events import AgentError, EngineFinished, StreamChunk, ToolRequested
from indokq.engine import cli
from indokq.engine.approval import PendingApproval, ProposedChange
from indokq.engine.models import ApprovalDecision


def _make_console():
    return Console(record=True, width=100, color_system=None)


def test_parser_flags():
    args = cli.build_parser().parse_args([
        "--agent", "execution", "--max-depth", "2", "--no-stream",
        "--auto-approve", "-v", "Fix the tests",
    ])
    assert args.task == "Fix the tests"
    assert args.agent == "execution"
    assert args.max_depth == 2
    assert args.no_stream and args.auto_approve and args.verbose
    config, registry = cli._build_config(args)
    assert config.approval_level == 3
    assert registry is None


def test_resolve_task_from_file(tmp_path):
    task_file = tmp_path / "task.md"
    task_file.write_text("  Build feature X\n")
    assert cli._resolve_task(None, str(task_file)) == "Build feature X"


def test_resolve_task_requires_exactly_one(tmp_path):
    with pytest.raises(SystemExit):
        cli._resolve_task(None, None)
    with pytest.raises(SystemExit):
        cli._resolve_task("inline", str(tmp_path / "task.md"))
    with pytest.raises(SystemExit):
        cli._resolve_task(None, str(tmp_path / "missing.md"))


def test_render_event_output():
    console = _make_console()
    cli.render_event(console, StreamChunk(agent_id="a", text="Looking around"))
    cli.render_event(console, ToolRequested(agent_id="a", call_id="call_1", tool_name="list_files"))
    cli.render_event(console, AgentError(agent_type="terminus", error="boom"))
    cli.render_event(console, EngineFinished(success=True, status="completed", summary="All good"))
    text = console.export_text()
    assert "Looking around" in text
    assert "tool list_files" in text
    assert "terminus: boom" in text
    assert "Result: completed" in text
    assert "All good" in text


def test_main_replays_a_session(tmp_path, monkeypatch, capsys):
    for name in ("INDOKQ_STREAM", "INDOKQ_APPROVAL_LEVEL", "TOOL_APPROVAL_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    replay = tmp_path / "replay.yaml"
    replay.write_text(yaml.safe_dump({"responses": [
        {"content": [
            {"type": "text", "text": "Summarizing."},
            {"type": "tool_use", "id": "c1", "name": "task_complete",
             "input": {"summary": "Notes summarized"}},
        ]},
    ]}))

    code = cli.main(["--replay", str(replay), "--agent", "synthesis", "Summarize notes"])

    assert code == 0
    out = capsys.readouterr().out
    assert "Summarizing." in out
    assert "Notes summarized" in out


def test_main_reports_failure(tmp_path, monkeypatch):
    monkeypatch.delenv("INDOKQ_MAX_TURNS_WITHOUT_TOOL_USE", raising=False)
    replay = tmp_path / "replay.json"
    replay.write_text('{"responses": [{"content": []}, {"content": []}]}')

    assert cli.main(["--replay", str(replay), "--agent", "synthesis", "Do nothing"]) == 1


def test_load_tools_module(tmp_path):
    module = tmp_path / "tools.py"
    module.write_text(
        "async def read_file(args):\n"
        "    return 'contents'\n"
        "\n"
        "def register_tools(dispatcher):\n"
        "    dispatcher.register('read_file', read_file)\n"
    )

    class _Engine:
        def __init__(self):
            from indokq.engine.tool_dispatcher import ToolDispatcher
            self.dispatcher = ToolDispatcher()

    engine = _Engine()
    cli._load_tools(engine, str(module))
    assert engine.dispatcher.has("read_file")


def test_config_file_keeps_environment_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-env")
    monkeypatch.setenv("INDOKQ_MAX_TURNS", "7")
    monkeypatch.delenv("INDOKQ_API_KEY", raising=False)
    config_file = tmp_path / "c.yaml"
    config_file.write_text(yaml.safe_dump({"engine": {"max_agent_depth": 3}}))

    args = cli.build_parser().parse_args(["--config", str(config_file), "task"])
    config, registry = cli._build_config(args)

    assert config.api_key == "sk-env"
    assert config.max_turns == 7
    assert config.max_agent_depth == 3
    assert "terminus" in registry


@pytest.mark.asyncio
async def test_terminal_approver_resolves_through_engine(monkeypatch):
    questions = []

    def fake_ask(question, **kwargs):
        questions.append(question)
        return "r"

    monkeypatch.setattr(cli.Prompt, "ask", fake_ask)
    resolved = []
    approver = cli.TerminalApprover(_make_console())
    approver.engine = SimpleNamespace(
        resolve_approval=lambda approval_id, decision: resolved.append((approval_id, decision)),
    )
    pending = PendingApproval(ProposedChange("notes.txt", "", "x"), approval_id="ap-1")

    await approver._ask(pending)

    assert resolved == [("ap-1", ApprovalDecision.REJECT)]
    assert "notes.txt" in questions[0]


@pytest.mark.asyncio
async def test_open_prompt_does_not_block_cancellation(monkeypatch):
    release = threading.Event()
    monkeypatch.setattr(cli.Prompt, "ask", lambda *args, **kwargs: release.wait(5) and "a")
    approver = cli.TerminalApprover(_make_console())
    pending = PendingApproval(
        tool_name="execute_command", arguments={"command": "make"}, reason="Command safety unknown",
    )

    prompt = asyncio.create_task(approver._ask(pending))
    await asyncio.sleep(0.01)
    prompt.cancel()
    with pytest.raises(asyncio.CancelledError):
        await asyncio.wait_for(prompt, timeout=1.0)
    release.set()


@pytest.mark.asyncio
async def test_run_in_daemon_thread_forwards_errors():
    def boom():
        raise EOFError("stdin closed")

    with pytest.raises(EOFError):
        await cli.run_in_daemon_thread(boom)
    assert await cli.run_in_daemon_thread(lambda: 42) == 42

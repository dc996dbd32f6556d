"""Turn loop tests driven by the scripted provider."""
from __future__ import annotations

import asyncio
import json

import pytest

from indokq.engine.approval import ApprovalGate, LocalFileWriter
from indokq.engine.cancellation import CancellationSignal
from indokq.engine.config import EngineConfig
from indokq.engine.models import (
    AgentDefinition,
    AgentSession,
    ConversationTurn,
    OutcomeStatus,
)
from indokq.engine.providers.scripted import ScriptedProvider
from indokq.engine.tool_dispatcher import ToolDispatcher
from indokq.engine.tool_specs import default_catalog
from indokq.engine.turn_loop import NUDGE_PROMPT, TurnLoop


def _tool_use(call_id, name, arguments):
    return {"type": "tool_use", "id": call_id, "name": name, "input": arguments}


def _text(text):
    return {"type": "text", "text": text}


def _make_session(task, tools=("create_file", "read_file", "edit_file", "task_complete")):
    definition = AgentDefinition(
        agent_type="execution",
        system_prompt="You write code.",
        tool_names=tuple(tools),
    )
    return AgentSession(
        definition=definition,
        cancellation=CancellationSignal(),
        history=[ConversationTurn.user_text(task)],
    )


def _make_loop(session, provider, dispatcher=None, events=None, **config_overrides):
    async def on_event(event):
        if events is not None:
            events.append(event)

    config = EngineConfig(**config_overrides)
    return TurnLoop(
        session,
        provider=provider,
        dispatcher=dispatcher or ToolDispatcher(),
        catalog=default_catalog(),
        config=config,
        event_callback=on_event,
    )


@pytest.mark.asyncio
async def test_create_file_then_final_answer(tmp_path):
    created = {}

    async def create_file(args):
        (tmp_path / args["path"]).write_text(args["content"])
        created[args["path"]] = args["content"]
        return f"Created {args['path']}"

    dispatcher = ToolDispatcher()
    dispatcher.register("create_file", create_file)
    provider = ScriptedProvider([
        {
            "content": [
                _text("I'll create the file."),
                _tool_use("call_1", "create_file",
                          {"path": "hello.txt", "content": "Hello World"}),
            ],
            "fragment_size": 7,
        },
        {"content": [_text("Done. hello.txt now says Hello World.")]},
    ])
    events = []
    session = _make_session("Create hello.txt containing Hello World")

    outcome = await _make_loop(session, provider, dispatcher, events).run()

    assert outcome.status == OutcomeStatus.COMPLETED
    assert outcome.final_text == "Done. hello.txt now says Hello World."
    assert outcome.turns == 2
    assert (tmp_path / "hello.txt").read_text() == "Hello World"

    second = provider.requests[1].turns
    assert [t["role"] for t in second] == ["user", "assistant", "user"]
    assert second[1]["content"][1]["input"] == {"path": "hello.txt", "content": "Hello World"}
    assert second[2]["content"] == [
        {"type": "tool_result", "tool_use_id": "call_1", "content": "Created hello.txt"},
    ]
    kinds = [e["event"] for e in events]
    assert "tool_requested" in kinds and "tool_result" in kinds
    assert kinds[-1] == "agent_completed"


@pytest.mark.asyncio
async def test_system_prompt_only_on_first_request():
    provider = ScriptedProvider([
        {"content": [_tool_use("c1", "task_complete", {"summary": "x"})]},
    ])
    provider_two = ScriptedProvider([
        {"content": [_tool_use("c1", "read_file", {"path": ""})]},
        {"content": [_text("ok")]},
    ])
    await _make_loop(_make_session("t"), provider).run()
    await _make_loop(_make_session("t"), provider_two).run()

    assert provider.requests[0].system_prompt == "You write code."
    assert [r.system_prompt for r in provider_two.requests] == ["You write code.", None]
    assert provider_two.requests[0].tool_names == [
        "create_file", "read_file", "edit_file", "task_complete",
    ]


@pytest.mark.asyncio
async def test_results_follow_call_order():
    async def slow_read(args):
        await asyncio.sleep(0.05)
        return f"slow {args['path']}"

    async def fast_create(args):
        return "fast"

    dispatcher = ToolDispatcher()
    dispatcher.register("read_file", slow_read)
    dispatcher.register("create_file", fast_create)
    provider = ScriptedProvider([
        {"content": [
            _tool_use("c1", "read_file", {"path": "a.txt"}),
            _tool_use("c2", "read_file", {}),
            _tool_use("c3", "create_file", {"path": "b.txt", "content": ""}),
        ]},
        {"content": [_text("finished")]},
    ])

    outcome = await _make_loop(_make_session("t"), provider, dispatcher).run()

    assert outcome.success
    results = provider.requests[1].turns[-1]["content"]
    assert [r["tool_use_id"] for r in results] == ["c1", "c2", "c3"]
    assert results[0]["content"] == "slow a.txt"
    assert results[1] == {
        "type": "tool_result", "tool_use_id": "c2",
        "content": "Error: Empty tool input", "is_error": True,
    }
    assert results[2]["content"] == "fast"


@pytest.mark.asyncio
async def test_tool_outside_agent_tool_set_is_rejected():
    provider = ScriptedProvider([
        {"content": [_tool_use("c1", "execute_command", {"command": "ls"})]},
        {"content": [_text("giving up")]},
    ])
    await _make_loop(_make_session("t"), provider).run()
    result = provider.requests[1].turns[-1]["content"][0]
    assert result["content"] == "Error: Unknown tool: execute_command"
    assert result["is_error"] is True


@pytest.mark.asyncio
async def test_circuit_breaker_stops_after_threshold():
    bad = {"content": [_tool_use("c", "read_file", {"path": ""})]}
    provider = ScriptedProvider([bad, bad, bad, {"content": [_text("never sent")]}])
    events = []

    outcome = await _make_loop(_make_session("t"), provider, events=events).run()

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.error.startswith("Circuit breaker: tool 'read_file'")
    assert len(provider.requests) == 3
    assert provider.remaining() == 1
    [error] = [e for e in events if e["event"] == "agent_error"]
    assert error["circuit_breaker"] is True


@pytest.mark.asyncio
async def test_task_complete_ends_the_loop():
    provider = ScriptedProvider([
        {"content": [
            _text("Wrapping up."),
            _tool_use("c1", "task_complete", {"summary": "Added tests", "status": "success"}),
        ]},
        {"content": [_text("should not be requested")]},
    ])
    outcome = await _make_loop(_make_session("t"), provider).run()

    assert outcome.success
    assert outcome.final_text == "Added tests"
    assert "Task completed: Added tests (Status: success)" in outcome.output
    assert len(provider.requests) == 1


@pytest.mark.asyncio
async def test_empty_turns_are_nudged_then_fail():
    provider = ScriptedProvider([{"content": []}, {"content": []}])
    session = _make_session("t")

    outcome = await _make_loop(session, provider).run()

    assert outcome.status == OutcomeStatus.FAILED
    assert "made no progress" in outcome.error
    assert len(provider.requests) == 2
    assert provider.requests[1].turns[-1]["content"][0]["text"] == NUDGE_PROMPT
    assert [t.role for t in session.history] == ["user", "user"]


@pytest.mark.asyncio
async def test_tool_use_resets_progress_counter():
    provider = ScriptedProvider([
        {"content": []},
        {"content": [_tool_use("c1", "read_file", {"path": ""})]},
        {"content": []},
        {"content": [_text("done")]},
    ])
    outcome = await _make_loop(_make_session("t"), provider).run()
    assert outcome.success
    assert outcome.final_text == "done"


@pytest.mark.asyncio
async def test_max_turns_cap():
    loop_forever = {"content": [_tool_use("c", "task_complete", {"summary": ""})]}
    provider = ScriptedProvider([loop_forever] * 5)
    outcome = await _make_loop(
        _make_session("t"), provider,
        max_turns=2, validation_failure_threshold=0,
    ).run()
    assert outcome.status == OutcomeStatus.FAILED
    assert "maximum of 2 turns" in outcome.error
    assert len(provider.requests) == 2


@pytest.mark.asyncio
async def test_cancel_mid_stream_discards_partial_turn():
    events = [
        {"type": "message_start", "message": {"id": "m1"}},
        {"type": "content_block_start", "index": 0,
         "content_block": {"type": "text", "text": ""}},
    ] + [
        {"type": "content_block_delta", "index": 0,
         "delta": {"type": "text_delta", "text": f"chunk{i} "}}
        for i in range(20)
    ]
    provider = ScriptedProvider([{"events": events, "delay": 0.01}])
    session = _make_session("t")
    seen = []

    async def on_event(event):
        if event["event"] == "stream_chunk":
            seen.append(event["text"])
            if len(seen) == 2:
                session.cancellation.cancel("user")

    loop = TurnLoop(
        session,
        provider=provider,
        dispatcher=ToolDispatcher(),
        catalog=default_catalog(),
        config=EngineConfig(),
        event_callback=on_event,
    )
    outcome = await loop.run()

    assert outcome.status == OutcomeStatus.CANCELLED
    assert outcome.error is None
    assert seen == ["chunk0 ", "chunk1 "]
    assert len(session.history) == 1
    assert len(provider.requests) == 1


@pytest.mark.asyncio
async def test_cancel_before_first_request():
    provider = ScriptedProvider([{"content": [_text("hi")]}])
    session = _make_session("t")
    session.cancellation.cancel("early")
    outcome = await _make_loop(session, provider).run()
    assert outcome.cancelled
    assert provider.requests == []


@pytest.mark.asyncio
async def test_non_streaming_mode():
    provider = ScriptedProvider([
        {"content": [_tool_use("c1", "task_complete", {"summary": "single shot"})]},
    ])
    outcome = await _make_loop(
        _make_session("t"), provider, stream_responses=False,
    ).run()
    assert outcome.final_text == "single shot"
    assert provider.requests[0].streamed is False


@pytest.mark.asyncio
async def test_history_window_keeps_task_turn():
    responses = [
        {"content": [_tool_use(f"c{i}", "read_file", {"path": f"{i}.txt"})]}
        for i in range(4)
    ] + [{"content": [_text("done")]}]
    dispatcher = ToolDispatcher()

    async def read_file(args):
        return "contents"

    dispatcher.register("read_file", read_file)
    provider = ScriptedProvider(responses)

    await _make_loop(
        _make_session("original task"), provider, dispatcher, history_max_turns=3,
    ).run()

    last = provider.requests[-1].turns
    assert len(last) == 3
    assert last[0]["content"][0]["text"] == "original task"
    assert last[1]["role"] == "assistant"
    assert last[2]["content"][0]["tool_use_id"] == "c3"


@pytest.mark.asyncio
async def test_proposed_change_waits_for_approval(tmp_path):
    (tmp_path / "app.py").write_text("print('hi')\n")

    async def edit_file(args):
        return json.dumps({
            "requiresApproval": True,
            "diff": "-print('hi')\n+print('bye')\n",
            "pendingChanges": {
                "path": args["path"],
                "oldContent": "print('hi')\n",
                "newContent": args["content"],
            },
        })

    async def approve(pending):
        pending.resolve("approve")

    dispatcher = ToolDispatcher()
    dispatcher.register("edit_file", edit_file)
    provider = ScriptedProvider([
        {"content": [_tool_use("c1", "edit_file",
                               {"path": "app.py", "content": "print('bye')\n"})]},
        {"content": [_text("edited")]},
    ])
    events = []

    async def on_event(event):
        events.append(event)

    loop = TurnLoop(
        _make_session("t"),
        provider=provider,
        dispatcher=dispatcher,
        catalog=default_catalog(),
        config=EngineConfig(),
        approval_gate=ApprovalGate(
            LocalFileWriter(tmp_path), event_callback=on_event, approval_callback=approve,
        ),
        event_callback=on_event,
    )
    outcome = await loop.run()

    assert outcome.success
    assert (tmp_path / "app.py").read_text() == "print('bye')\n"
    result = provider.requests[1].turns[-1]["content"][0]
    assert result["content"] == "Changes applied to app.py"
    phases = [e["new_phase"] for e in events if e["event"] == "phase_changed"]
    assert "awaiting_approval" in phases


def _edit_response(path, content):
    async def edit_file(args):
        return json.dumps({
            "requiresApproval": True,
            "diff": f"-old\n+{content}",
            "pendingChanges": {"path": path, "oldContent": "old\n", "newContent": content},
        })
    return edit_file


@pytest.mark.asyncio
async def test_rejected_edit_is_fed_back_and_not_written(tmp_path):
    (tmp_path / "app.py").write_text("old\n")

    async def reject(pending):
        pending.resolve("reject")

    dispatcher = ToolDispatcher()
    dispatcher.register("edit_file", _edit_response("app.py", "new\n"))
    provider = ScriptedProvider([
        {"content": [_tool_use("c1", "edit_file", {"path": "app.py", "content": "new\n"})]},
        {"content": [_text("Left it alone.")]},
    ])
    loop = TurnLoop(
        _make_session("t"),
        provider=provider,
        dispatcher=dispatcher,
        catalog=default_catalog(),
        config=EngineConfig(),
        approval_gate=ApprovalGate(LocalFileWriter(tmp_path), approval_callback=reject),
    )

    outcome = await loop.run()

    assert outcome.final_text == "Left it alone."
    assert (tmp_path / "app.py").read_text() == "old\n"
    result = provider.requests[1].turns[-1]["content"][0]
    assert result == {
        "type": "tool_result", "tool_use_id": "c1", "content": "Changes rejected by user",
    }


@pytest.mark.asyncio
async def test_siblings_finish_while_one_call_awaits_approval(tmp_path):
    finished = []
    gate = ApprovalGate(LocalFileWriter(tmp_path))

    async def read_file(args):
        finished.append(args["path"])
        return "contents"

    dispatcher = ToolDispatcher()
    dispatcher.register("edit_file", _edit_response("a.txt", "new\n"))
    dispatcher.register("read_file", read_file)
    provider = ScriptedProvider([
        {"content": [
            _tool_use("c1", "edit_file", {"path": "a.txt", "content": "new\n"}),
            _tool_use("c2", "read_file", {"path": "b.txt"}),
            _tool_use("c3", "read_file", {"path": "c.txt"}),
        ]},
        {"content": [_text("done")]},
    ])
    loop = TurnLoop(
        _make_session("t"),
        provider=provider,
        dispatcher=dispatcher,
        catalog=default_catalog(),
        config=EngineConfig(),
        approval_gate=gate,
    )
    run = asyncio.create_task(loop.run())
    for _ in range(100):
        if gate.pending:
            break
        await asyncio.sleep(0.01)

    [pending] = gate.pending
    await asyncio.sleep(0.02)
    assert finished == ["b.txt", "c.txt"]
    assert loop.phase.value == "awaiting_approval"
    assert len(provider.requests) == 1

    gate.resolve(pending.approval_id, "reject")
    outcome = await asyncio.wait_for(run, timeout=2.0)

    assert outcome.success
    results = provider.requests[1].turns[-1]["content"]
    assert [r["tool_use_id"] for r in results] == ["c1", "c2", "c3"]
    assert results[0]["content"] == "Changes rejected by user"


@pytest.mark.asyncio
async def test_held_command_runs_once_approved(tmp_path):
    ran = []

    async def execute_command(args):
        ran.append(args["command"])
        return "deployed"

    async def approve(pending):
        assert pending.tool_name == "execute_command"
        assert pending.reason == "Command safety unknown"
        pending.resolve("approve")

    dispatcher = ToolDispatcher()
    dispatcher.register("execute_command", execute_command)
    provider = ScriptedProvider([
        {"content": [_tool_use("c1", "execute_command", {"command": "make deploy"})]},
        {"content": [_text("done")]},
    ])
    loop = TurnLoop(
        _make_session("t", tools=("execute_command", "task_complete")),
        provider=provider,
        dispatcher=dispatcher,
        catalog=default_catalog(),
        config=EngineConfig(),
        approval_gate=ApprovalGate(LocalFileWriter(tmp_path), approval_callback=approve),
    )

    await loop.run()

    assert ran == ["make deploy"]
    assert provider.requests[1].turns[-1]["content"][0]["content"] == "deployed"


@pytest.mark.asyncio
async def test_malformed_argument_json_is_reported():
    events = [
        {"type": "message_start", "message": {"id": "m1"}},
        {"type": "content_block_start", "index": 0,
         "content_block": {"type": "tool_use", "id": "c1", "name": "read_file"}},
        {"type": "content_block_delta", "index": 0,
         "delta": {"type": "input_json_delta", "partial_json": '{"path": '}},
        {"type": "content_block_stop", "index": 0},
        {"type": "message_stop"},
    ]
    provider = ScriptedProvider([{"events": events}, {"content": [_text("sorry")]}])

    await _make_loop(_make_session("t"), provider).run()

    result = provider.requests[1].turns[-1]["content"][0]
    assert result["is_error"] is True
    assert result["content"] == 'Error: Malformed tool input JSON: {"path":'

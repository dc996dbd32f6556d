"""Tests for rebuilding assistant turns from stream events."""
from __future__ import annotations

import pytest

from indokq.engine.block_accumulator import BlockAccumulator, events_from_message
from indokq.engine.models import TextBlock, ToolCallBlock


def _start_tool(call_id, name, index=0):
    return {
        "type": "content_block_start",
        "index": index,
        "content_block": {"type": "tool_use", "id": call_id, "name": name, "input": {}},
    }


def _args(fragment, index=0):
    return {
        "type": "content_block_delta",
        "index": index,
        "delta": {"type": "input_json_delta", "partial_json": fragment},
    }


def _text(text, index=0):
    return {
        "type": "content_block_delta",
        "index": index,
        "delta": {"type": "text_delta", "text": text},
    }


def _stop(index=0):
    return {"type": "content_block_stop", "index": index}


def _feed(acc, events):
    return [acc.feed(e) for e in events]


def test_fragmented_arguments_parse_on_close():
    acc = BlockAccumulator()
    _feed(acc, [
        _start_tool("call_1", "read_file"),
        _args('{"pa'),
        _args('th": "src/'),
        _args('main.py"}'),
    ])
    call = acc.open_block
    assert isinstance(call, ToolCallBlock)
    assert call.arguments is None

    acc.feed(_stop())
    assert call.closed
    assert call.arguments == {"path": "src/main.py"}


def test_each_tool_call_owns_its_fragments():
    acc = BlockAccumulator()
    _feed(acc, [
        _start_tool("call_1", "read_file", 0),
        _args('{"path": ', 0),
        _args('"a.txt"}', 0),
        _stop(0),
        _start_tool("call_2", "read_file", 1),
        _args('{"path": "b.txt"}', 1),
        _stop(1),
    ])
    turn = acc.finish()
    assert [c.id for c in turn.tool_calls] == ["call_1", "call_2"]
    assert [c.arguments for c in turn.tool_calls] == [
        {"path": "a.txt"}, {"path": "b.txt"},
    ]


def test_malformed_arguments_leave_arguments_unset():
    acc = BlockAccumulator()
    _feed(acc, [_start_tool("call_1", "read_file"), _args('{"path": '), _stop()])
    call = acc.finish().tool_calls[0]
    assert call.arguments is None
    assert call.raw_arguments == '{"path": '


def test_tool_call_without_fragments_has_empty_arguments():
    acc = BlockAccumulator()
    _feed(acc, [_start_tool("call_1", "list_files"), _stop()])
    assert acc.finish().tool_calls[0].arguments == {}


def test_closed_tool_call_rejects_more_fragments():
    block = ToolCallBlock(id="call_1", name="read_file")
    block.append_arguments("{}")
    block.close()
    with pytest.raises(ValueError):
        block.append_arguments("x")


def test_text_deltas_are_returned_and_joined():
    acc = BlockAccumulator()
    fragments = _feed(acc, [
        {"type": "content_block_start", "index": 0,
         "content_block": {"type": "text", "text": ""}},
        _text("Hello"),
        _text(", world"),
        _stop(),
    ])
    assert [f for f in fragments if f] == ["Hello", ", world"]
    assert acc.finish().text == "Hello, world"


def test_text_without_start_opens_implicit_block():
    acc = BlockAccumulator()
    assert acc.feed(_text("orphan")) == "orphan"
    turn = acc.finish()
    assert isinstance(turn.content[0], TextBlock)
    assert turn.text == "orphan"


def test_unsupported_block_contents_are_ignored():
    acc = BlockAccumulator()
    fragments = _feed(acc, [
        {"type": "content_block_start", "index": 0,
         "content_block": {"type": "thinking", "thinking": ""}},
        _text("hidden"),
        _stop(),
    ])
    assert fragments == [None, None, None]
    assert acc.finish().content == []


def test_text_delta_during_tool_call_is_dropped():
    acc = BlockAccumulator()
    _feed(acc, [_start_tool("call_1", "read_file"), _text("stray"), _stop()])
    turn = acc.finish()
    assert turn.text == ""
    assert len(turn.tool_calls) == 1


def test_message_metadata_is_recorded():
    acc = BlockAccumulator()
    _feed(acc, [
        {"type": "message_start",
         "message": {"id": "msg_1", "usage": {"input_tokens": 10}}},
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"},
         "usage": {"output_tokens": 5}},
    ])
    assert acc.message_id == "msg_1"
    assert acc.stop_reason == "tool_use"
    assert acc.usage == {"input_tokens": 10, "output_tokens": 5}


def test_single_shot_message_converts_to_same_turn():
    message = {
        "id": "msg_2",
        "content": [
            {"type": "text", "text": "Reading it."},
            {"type": "tool_use", "id": "call_9", "name": "read_file",
             "input": {"path": "README.md"}},
        ],
        "stop_reason": "tool_use",
    }
    acc = BlockAccumulator()
    for event in events_from_message(message):
        acc.feed(event)
    turn = acc.finish()
    assert turn.role == "assistant"
    assert turn.text == "Reading it."
    assert turn.tool_calls[0].arguments == {"path": "README.md"}
    assert acc.stop_reason == "tool_use"
    assert [b.to_api() for b in turn.content] == message["content"]

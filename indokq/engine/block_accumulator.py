"""Rebuilds an assistant turn from streamed protocol events.

Events follow the Messages API streaming protocol::

    message_start
    content_block_start   {index, content_block: {type: text | tool_use}}
    content_block_delta   {delta: {type: text_delta | input_json_delta}}
    content_block_stop
    message_delta         {delta: {stop_reason}, usage}
    message_stop

Deltas go to the most recently opened block only. A tool call's
argument JSON is parsed once, when its block stops.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from .models import ContentBlock, ConversationTurn, TextBlock, ToolCallBlock

logger = logging.getLogger(__name__)


class BlockAccumulator:
    """Accumulates content blocks for one assistant turn."""

    def __init__(self) -> None:
        self.blocks: list[ContentBlock] = []
        self._open: TextBlock | ToolCallBlock | None = None
        # True while an unsupported block (e.g. thinking) is open.
        self._ignoring = False
        self.stop_reason: str | None = None
        self.usage: dict[str, Any] = {}
        self.message_id: str | None = None

    @property
    def open_block(self) -> TextBlock | ToolCallBlock | None:
        return self._open

    def feed(self, event: dict[str, Any]) -> str | None:
        """Apply one protocol event.

        Returns the text fragment to show the observer, if the event
        carried one.
        """
        etype = event.get("type")
        if etype == "content_block_start":
            self._start(event.get("content_block") or {})
        elif etype == "content_block_delta":
            return self._delta(event.get("delta") or {})
        elif etype == "content_block_stop":
            self._close_open()
            self._ignoring = False
        elif etype == "message_start":
            message = event.get("message") or {}
            self.message_id = message.get("id")
            self._merge_usage(message.get("usage"))
        elif etype == "message_delta":
            delta = event.get("delta") or {}
            if delta.get("stop_reason"):
                self.stop_reason = delta["stop_reason"]
            self._merge_usage(event.get("usage"))
        elif etype == "error":
            logger.warning("Provider stream error event: %s", event.get("error"))
        return None

    def finish(self) -> ConversationTurn:
        """Close any open block and return the completed assistant turn."""
        self._close_open()
        return ConversationTurn(role="assistant", content=list(self.blocks))

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.blocks if isinstance(b, TextBlock))

    def _start(self, block: dict[str, Any]) -> None:
        self._close_open()
        btype = block.get("type")
        if btype == "text":
            opened: TextBlock | ToolCallBlock = TextBlock(text=block.get("text", ""))
        elif btype == "tool_use":
            opened = ToolCallBlock(id=block.get("id", ""), name=block.get("name", ""))
        else:
            logger.debug("Ignoring content block of type %s", btype)
            self._ignoring = True
            return
        self._ignoring = False
        self.blocks.append(opened)
        self._open = opened

    def _delta(self, delta: dict[str, Any]) -> str | None:
        dtype = delta.get("type")
        if dtype == "text_delta":
            text = delta.get("text", "")
            if not text:
                return None
            if not isinstance(self._open, TextBlock):
                if self._ignoring or isinstance(self._open, ToolCallBlock):
                    logger.debug("Dropping text delta outside a text block")
                    return None
                # Text arrived without a start event
                self._open = TextBlock()
                self.blocks.append(self._open)
            self._open.text += text
            return text
        if dtype == "input_json_delta":
            if isinstance(self._open, ToolCallBlock):
                self._open.append_arguments(delta.get("partial_json", ""))
            else:
                logger.debug("Dropping argument fragment with no open tool call")
            return None
        logger.debug("Ignoring delta of type %s", dtype)
        return None

    def _close_open(self) -> None:
        if isinstance(self._open, ToolCallBlock):
            self._open.close()
        self._open = None

    def _merge_usage(self, usage: dict[str, Any] | None) -> None:
        if usage:
            self.usage.update(usage)


def events_from_message(message: dict[str, Any]) -> list[dict[str, Any]]:
    """Convert a single-shot Messages API response into stream events.

    Lets non-streaming responses flow through the same accumulator.
    """
    events: list[dict[str, Any]] = [{
        "type": "message_start",
        "message": {"id": message.get("id"), "usage": message.get("usage") or {}},
    }]
    for index, block in enumerate(message.get("content") or []):
        btype = block.get("type")
        if btype == "text":
            events.append({
                "type": "content_block_start",
                "index": index,
                "content_block": {"type": "text", "text": ""},
            })
            events.append({
                "type": "content_block_delta",
                "index": index,
                "delta": {"type": "text_delta", "text": block.get("text", "")},
            })
        elif btype == "tool_use":
            events.append({
                "type": "content_block_start",
                "index": index,
                "content_block": {
                    "type": "tool_use",
                    "id": block.get("id", ""),
                    "name": block.get("name", ""),
                    "input": {},
                },
            })
            events.append({
                "type": "content_block_delta",
                "index": index,
                "delta": {
                    "type": "input_json_delta",
                    "partial_json": _dump_input(block.get("input")),
                },
            })
        else:
            continue
        events.append({"type": "content_block_stop", "index": index})
    events.append({
        "type": "message_delta",
        "delta": {"stop_reason": message.get("stop_reason")},
        "usage": {},
    })
    events.append({"type": "message_stop"})
    return events


def _dump_input(value: Any) -> str:
    if value is None:
        return ""
    return json.dumps(value)

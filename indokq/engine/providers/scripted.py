"""Replay provider for offline runs and tests.

Responses are Messages API message dicts (``{"content": [...]}``) or
ready-made event lists. They are served in order, either from one
shared queue or from per-task queues keyed by the text of the
conversation's first turn, which lets concurrent agents each follow
their own script.

Example YAML (``indokq --replay script.yaml``)::

    responses:
      "create hello.txt":
        - content:
            - {type: tool_use, id: call_1, name: create_file,
               input: {path: hello.txt, content: hi}}
        - content:
            - {type: text, text: Created hello.txt}
"""
from __future__ import annotations

import asyncio
import copy
import json
import logging
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator

import yaml

from ..block_accumulator import BlockAccumulator, events_from_message
from ..cancellation import CancellationSignal
from .base import ModelProvider, ModelRequest

logger = logging.getLogger(__name__)

DEFAULT_KEY = "*"


@dataclass
class ScriptedResponse:
    """One canned model response."""
    message: dict[str, Any] | None = None
    events: list[dict[str, Any]] | None = None
    # Seconds to sleep before each event.
    delay: float = 0.0
    # Split argument JSON into fragments of this size (0 = whole).
    fragment_size: int = 0

    def to_events(self) -> list[dict[str, Any]]:
        if self.events is not None:
            return copy.deepcopy(self.events)
        events = events_from_message(self.message or {"content": []})
        if self.fragment_size > 0:
            events = _fragment_arguments(events, self.fragment_size)
        return events

    @classmethod
    def coerce(cls, value: Any) -> ScriptedResponse:
        if isinstance(value, ScriptedResponse):
            return value
        if isinstance(value, str):
            return cls(message={"content": [{"type": "text", "text": value}]})
        if isinstance(value, list):
            return cls(events=value)
        if isinstance(value, Mapping):
            data = dict(value)
            delay = float(data.pop("delay", 0.0))
            fragment_size = int(data.pop("fragment_size", 0))
            if "events" in data:
                return cls(events=list(data["events"]), delay=delay)
            return cls(message=data, delay=delay, fragment_size=fragment_size)
        raise TypeError(f"Unsupported scripted response: {value!r}")


def _fragment_arguments(events: list[dict[str, Any]], size: int) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for event in events:
        delta = event.get("delta") or {}
        if event.get("type") == "content_block_delta" and delta.get("type") == "input_json_delta":
            raw = delta.get("partial_json", "")
            for i in range(0, len(raw), size):
                out.append({
                    "type": "content_block_delta",
                    "index": event.get("index"),
                    "delta": {"type": "input_json_delta", "partial_json": raw[i:i + size]},
                })
            continue
        out.append(event)
    return out


@dataclass
class RecordedRequest:
    """Snapshot of a request, for assertions."""
    system_prompt: str | None
    turns: list[dict[str, Any]]
    tool_names: list[str]
    agent_type: str = ""
    streamed: bool = True


@dataclass
class ScriptedProvider(ModelProvider):
    """Serves canned responses in order."""
    responses: Mapping[str, Iterable[Any]] | Iterable[Any] = field(default_factory=list)
    requests: list[RecordedRequest] = field(default_factory=list)

    def __post_init__(self) -> None:
        if isinstance(self.responses, Mapping):
            queues = self.responses
        else:
            queues = {DEFAULT_KEY: self.responses}
        self._queues: dict[str, deque[ScriptedResponse]] = {
            key: deque(ScriptedResponse.coerce(r) for r in items)
            for key, items in queues.items()
        }

    @property
    def name(self) -> str:
        return "scripted"

    @classmethod
    def from_file(cls, path: str | Path) -> ScriptedProvider:
        path = Path(path)
        with open(path, encoding="utf-8") as f:
            if path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f) or {}
        responses = data.get("responses", data) if isinstance(data, dict) else data
        logger.info("Loaded scripted responses from %s", path)
        return cls(responses=responses)

    def remaining(self, key: str = DEFAULT_KEY) -> int:
        return len(self._queues.get(key, ()))

    def _next(self, request: ModelRequest, streamed: bool) -> ScriptedResponse:
        self.requests.append(RecordedRequest(
            system_prompt=request.system_prompt,
            turns=[copy.deepcopy(t.to_api()) for t in request.turns],
            tool_names=[t.name for t in request.tools],
            agent_type=request.agent_type,
            streamed=streamed,
        ))
        key = request.task_text
        queue = self._queues.get(key)
        if queue is None:
            queue = self._queues.get(DEFAULT_KEY)
        if not queue:
            raise LookupError(f"No scripted response left for task {key!r}")
        return queue.popleft()

    async def stream_message(
        self,
        request: ModelRequest,
        cancellation: CancellationSignal | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        response = self._next(request, streamed=True)
        for event in response.to_events():
            if cancellation is not None and cancellation.is_cancelled:
                return
            if response.delay:
                await asyncio.sleep(response.delay)
            else:
                await asyncio.sleep(0)
            yield event

    async def send_message(self, request: ModelRequest) -> dict[str, Any]:
        response = self._next(request, streamed=False)
        if response.delay:
            await asyncio.sleep(response.delay)
        if response.message is not None:
            return copy.deepcopy(response.message)
        return _message_from_events(response.to_events())


def _message_from_events(events: list[dict[str, Any]]) -> dict[str, Any]:
    acc = BlockAccumulator()
    for event in events:
        acc.feed(event)
    turn = acc.finish()
    return {"content": [b.to_api() for b in turn.content], "stop_reason": acc.stop_reason}

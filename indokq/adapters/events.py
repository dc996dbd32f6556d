"""Event types emitted by the orchestration engine.

Each event corresponds to an engine callback dict, parsed into
a typed dataclass for safe consumption by a frontend.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class OrchestratorEvent:
    """Base event from the orchestration engine."""
    event_type: str = ""


@dataclass
class EngineStarted(OrchestratorEvent):
    event_type: str = "engine_started"
    task_definition: str = ""
    agent_type: str = ""


@dataclass
class EngineFinished(OrchestratorEvent):
    event_type: str = "engine_finished"
    success: bool = True
    status: str = ""
    summary: str = ""
    error: str | None = None
    duration_seconds: float = 0.0


@dataclass
class AgentSpawned(OrchestratorEvent):
    event_type: str = "agent_spawned"
    agent_id: str = ""
    parent_id: str | None = None
    agent_type: str = ""
    name: str = ""
    depth: int = 0
    prompt: str = ""


@dataclass
class PhaseChanged(OrchestratorEvent):
    event_type: str = "phase_changed"
    agent_id: str = ""
    agent_type: str = ""
    old_phase: str = ""
    new_phase: str = ""


@dataclass
class StreamChunk(OrchestratorEvent):
    event_type: str = "stream_chunk"
    agent_id: str = ""
    text: str = ""


@dataclass
class ToolRequested(OrchestratorEvent):
    event_type: str = "tool_requested"
    agent_id: str = ""
    call_id: str = ""
    tool_name: str = ""
    arguments: dict[str, Any] | None = None


@dataclass
class ToolResult(OrchestratorEvent):
    event_type: str = "tool_result"
    agent_id: str = ""
    call_id: str = ""
    tool_name: str = ""
    output: str = ""


@dataclass
class ToolError(OrchestratorEvent):
    event_type: str = "tool_error"
    agent_id: str = ""
    call_id: str = ""
    tool_name: str = ""
    error: str = ""


@dataclass
class ApprovalNeeded(OrchestratorEvent):
    event_type: str = "approval_needed"
    agent_id: str = ""
    approval_id: str = ""
    call_id: str = ""
    tool_name: str = ""
    path: str = ""
    diff: str = ""
    description: str = ""
    reason: str = ""


@dataclass
class ApprovalResolved(OrchestratorEvent):
    event_type: str = "approval_resolved"
    agent_id: str = ""
    approval_id: str = ""
    call_id: str = ""
    tool_name: str = ""
    path: str = ""
    decision: str = ""


@dataclass
class AgentCompleted(OrchestratorEvent):
    event_type: str = "agent_completed"
    agent_id: str = ""
    agent_type: str = ""
    parent_id: str | None = None
    status: str = ""
    final_text: str = ""
    error: str | None = None
    turns: int = 0
    duration_seconds: float = 0.0


@dataclass
class AgentError(OrchestratorEvent):
    event_type: str = "agent_error"
    agent_id: str = ""
    agent_type: str = ""
    error: str = ""
    fatal: bool = True
    circuit_breaker: bool = False


# Map of event type strings to dataclass constructors
_EVENT_MAP: dict[str, type[OrchestratorEvent]] = {
    "engine_started": EngineStarted,
    "engine_finished": EngineFinished,
    "agent_spawned": AgentSpawned,
    "phase_changed": PhaseChanged,
    "stream_chunk": StreamChunk,
    "tool_requested": ToolRequested,
    "tool_result": ToolResult,
    "tool_error": ToolError,
    "approval_needed": ApprovalNeeded,
    "approval_resolved": ApprovalResolved,
    "agent_completed": AgentCompleted,
    "agent_error": AgentError,
}


def event_to_dict(event: OrchestratorEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    # Engine callbacks use "event" rather than "event_type"
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> OrchestratorEvent:
    """Convert an engine callback dict to a typed event dataclass.

    Unknown keys are dropped; unknown event names map to the base class.
    """
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, OrchestratorEvent)
    valid_fields = set(cls.__dataclass_fields__)
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    filtered["event_type"] = event_type
    return cls(**filtered)

"""Core data models for the orchestration engine.

Content blocks, conversation turns, agent definitions and outcomes.
Single source of truth to avoid circular imports.
"""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from .cancellation import CancellationSignal

logger = logging.getLogger(__name__)


class TurnPhase(str, Enum):
    """Turn loop phases. See lifecycle.py for transition rules."""
    REQUESTING = "requesting"
    STREAMING = "streaming"
    ACCUMULATING = "accumulating"
    DISPATCHING = "dispatching"
    AWAITING_APPROVAL = "awaiting_approval"
    SPAWNING = "spawning"
    TERMINATED = "terminated"


class OutcomeStatus(str, Enum):
    """How a turn loop ended."""
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ApprovalDecision(str, Enum):
    """Decisions a human can deliver for a pending mutation."""
    APPROVE = "approve"
    REJECT = "reject"
    EDIT = "edit"


def _make_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TextBlock:
    """Prose emitted by the model."""
    text: str = ""

    @property
    def type(self) -> str:
        return "text"

    def to_api(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass
class ToolCallBlock:
    """A tool invocation whose JSON arguments may arrive in fragments.

    ``raw_arguments`` grows while the block is open. ``close()``
    parses it into ``arguments`` and freezes the block. A buffer that
    is not valid JSON leaves ``arguments`` as None so the validation
    gate can reject the call with a readable error.
    """
    id: str
    name: str
    raw_arguments: str = ""
    arguments: dict[str, Any] | None = None
    closed: bool = False

    @property
    def type(self) -> str:
        return "tool_use"

    def append_arguments(self, fragment: str) -> None:
        if self.closed:
            raise ValueError(f"Tool call {self.id} is closed")
        self.raw_arguments += fragment

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if not self.raw_arguments.strip():
            self.arguments = {}
            return
        try:
            parsed = json.loads(self.raw_arguments)
        except json.JSONDecodeError as exc:
            logger.debug(
                "Unparseable arguments for tool call %s (%s): %s",
                self.id[:8], self.name, exc,
            )
            return
        if isinstance(parsed, dict):
            self.arguments = parsed
        else:
            logger.debug(
                "Tool call %s (%s) arguments are not an object",
                self.id[:8], self.name,
            )

    def to_api(self) -> dict[str, Any]:
        return {
            "type": "tool_use",
            "id": self.id,
            "name": self.name,
            "input": self.arguments if self.arguments is not None else {},
        }


@dataclass
class ToolResultBlock:
    """Result of one tool call, fed back to the model."""
    call_id: str
    payload: str
    is_error: bool = False

    @property
    def type(self) -> str:
        return "tool_result"

    def to_api(self) -> dict[str, Any]:
        block: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self.call_id,
            "content": self.payload,
        }
        if self.is_error:
            block["is_error"] = True
        return block


ContentBlock = Union[TextBlock, ToolCallBlock, ToolResultBlock]


@dataclass
class ConversationTurn:
    """One role-tagged entry in a conversation history."""
    role: str
    content: list[ContentBlock] = field(default_factory=list)

    @classmethod
    def user_text(cls, text: str) -> ConversationTurn:
        return cls(role="user", content=[TextBlock(text=text)])

    @property
    def text(self) -> str:
        return "".join(
            b.text for b in self.content if isinstance(b, TextBlock)
        )

    @property
    def tool_calls(self) -> list[ToolCallBlock]:
        return [b for b in self.content if isinstance(b, ToolCallBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]

    def to_api(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": [b.to_api() for b in self.content],
        }


@dataclass(frozen=True)
class AgentDefinition:
    """Named agent template resolved by the agent registry."""
    agent_type: str
    system_prompt: str
    tool_names: tuple[str, ...] = ()
    display_name: str = ""
    spawner_prompt: str = ""
    # Empty means any registered agent may be spawned.
    spawnable_agents: tuple[str, ...] = ()
    # Overrides EngineConfig.history_max_turns when set.
    history_max_turns: int | None = None

    @property
    def can_spawn(self) -> bool:
        return "spawn_agents" in self.tool_names


@dataclass
class SpawnRequest:
    """One entry of a spawn_agents batch."""
    agent_type: str
    prompt: str


@dataclass
class ToolExecutionResult:
    """What the tool dispatcher hands back for one call."""
    success: bool
    output: str = ""
    error: str | None = None


@dataclass
class AgentSession:
    """Per-agent conversation state, owned by exactly one turn loop."""
    definition: AgentDefinition
    cancellation: CancellationSignal
    session_id: str = field(default_factory=_make_id)
    parent_id: str | None = None
    depth: int = 0
    history: list[ConversationTurn] = field(default_factory=list)
    turns_without_tool_use: int = 0
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def agent_type(self) -> str:
        return self.definition.agent_type

    @property
    def system_prompt(self) -> str:
        return self.definition.system_prompt


@dataclass
class AgentOutcome:
    """Terminal result of a turn loop."""
    agent_id: str
    agent_type: str
    status: OutcomeStatus
    output: str = ""
    final_text: str = ""
    error: str | None = None
    turns: int = 0
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == OutcomeStatus.COMPLETED

    @property
    def cancelled(self) -> bool:
        return self.status == OutcomeStatus.CANCELLED

"""Abstract base for model providers.

A provider turns a conversation into Messages API protocol events.
The turn loop calls stream_message() for live streaming and
send_message() for the single-shot variant; both take the same
inputs so the loop can switch between them freely.
"""
from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from ..cancellation import CancellationSignal
from ..models import ConversationTurn
from ..tool_specs import ToolSpec

logger = logging.getLogger(__name__)


@dataclass
class ModelRequest:
    """Everything a provider needs for one model call."""
    turns: list[ConversationTurn]
    system_prompt: str | None = None
    tools: list[ToolSpec] = field(default_factory=list)
    max_tokens: int | None = None
    # Informational: which agent is asking.
    agent_id: str = ""
    agent_type: str = ""

    @property
    def task_text(self) -> str:
        return self.turns[0].text if self.turns else ""

    def to_payload(self, model: str, max_tokens: int, *, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": self.max_tokens or max_tokens,
            "messages": [turn.to_api() for turn in self.turns],
        }
        if self.system_prompt:
            payload["system"] = self.system_prompt
        if self.tools:
            payload["tools"] = [spec.to_api() for spec in self.tools]
        if stream:
            payload["stream"] = True
        return payload


class ModelProvider(abc.ABC):
    """Abstract provider interface.

    Implementations:
    - AnthropicProvider: Messages API over HTTP (aiohttp)
    - ScriptedProvider: replays canned responses (offline runs, tests)
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'anthropic', 'scripted')."""

    @abc.abstractmethod
    def stream_message(
        self,
        request: ModelRequest,
        cancellation: CancellationSignal | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Open a response stream.

        Yields raw protocol events (message_start, content_block_*,
        message_delta, message_stop) in arrival order.
        """

    @abc.abstractmethod
    async def send_message(self, request: ModelRequest) -> dict[str, Any]:
        """Single-shot call. Returns the complete Messages API response."""

    def is_available(self) -> bool:
        return True

    async def close(self) -> None:
        """Release network resources. Default: nothing to release."""

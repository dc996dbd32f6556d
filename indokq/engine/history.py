"""Sliding-window trimming of conversation history.

The first turn (the task statement) is always kept. Of the rest only
the most recent turns survive, and the cut is moved back whenever it
would separate a tool call from its result.
"""
from __future__ import annotations

import logging

from .models import ConversationTurn

logger = logging.getLogger(__name__)


class HistoryManager:
    """Bounds the history sent with each model request."""

    def __init__(self, max_turns: int = 5) -> None:
        self.max_turns = max_turns

    def trim(self, history: list[ConversationTurn]) -> list[ConversationTurn]:
        """Return ``[history[0]] + tail`` when the cap is exceeded.

        The tail holds the last ``max_turns - 1`` turns, widened so it
        starts with an assistant turn. A user turn carrying tool
        results is therefore never kept without the assistant turn
        that issued the calls. The input list is not modified.
        """
        if self.max_turns <= 0 or len(history) <= self.max_turns:
            return list(history)

        keep = max(self.max_turns - 1, 1)
        start = len(history) - keep
        # Never open the tail with a user turn: the task turn is user too,
        # and tool results need their calls.
        while start > 1 and history[start].role != "assistant":
            start -= 1
        if start <= 1:
            return list(history)

        trimmed = [history[0], *history[start:]]
        logger.debug(
            "History trimmed from %d to %d turns", len(history), len(trimmed),
        )
        return trimmed

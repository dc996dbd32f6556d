"""Tool execution boundary.

Concrete tools live outside the engine. They are registered here as
async handlers taking the validated arguments. ``dispatch`` never
raises for ordinary failures: an unknown name or a handler exception
becomes an error result that the turn loop feeds back to the model.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from .models import ToolExecutionResult

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any]], Awaitable[ToolExecutionResult | str]]


class ToolExecutor(Protocol):
    """What the turn loop needs from a tool backend."""

    async def dispatch(
        self, name: str, arguments: dict[str, Any],
    ) -> ToolExecutionResult: ...


async def _task_complete(arguments: dict[str, Any]) -> ToolExecutionResult:
    status = arguments.get("status") or "success"
    return ToolExecutionResult(
        success=True,
        output=f"Task completed: {arguments.get('summary', '')} (Status: {status})",
    )


class ToolDispatcher:
    """Registry of async tool handlers keyed by tool name."""

    def __init__(self) -> None:
        self._handlers: dict[str, ToolHandler] = {
            "task_complete": _task_complete,
        }

    def register(self, name: str, handler: ToolHandler) -> None:
        if name in self._handlers:
            logger.info("Replacing handler for tool %s", name)
        self._handlers[name] = handler

    def unregister(self, name: str) -> None:
        self._handlers.pop(name, None)

    def has(self, name: str) -> bool:
        return name in self._handlers

    @property
    def tool_names(self) -> list[str]:
        return list(self._handlers)

    async def dispatch(
        self, name: str, arguments: dict[str, Any],
    ) -> ToolExecutionResult:
        handler = self._handlers.get(name)
        if handler is None:
            return ToolExecutionResult(
                success=False, error=f"Unknown tool: {name}",
            )
        try:
            result = await handler(arguments)
        except Exception as exc:
            logger.warning("Tool %s raised: %s", name, exc, exc_info=True)
            return ToolExecutionResult(success=False, error=str(exc) or type(exc).__name__)
        if isinstance(result, str):
            return ToolExecutionResult(success=True, output=result)
        return result


def result_payload(result: ToolExecutionResult) -> tuple[str, bool]:
    """Text and error flag for the tool_result block of *result*."""
    if result.success:
        return (result.output or "Success", False)
    return (f"Error: {result.error or 'Tool failed'}", True)

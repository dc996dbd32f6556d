"""Exception hierarchy for the orchestration engine.

Specific exceptions for each failure mode. Tool and spawn failures
are normally folded into results; the classes here mark the cases
that end a turn loop or an individual spawn entry.
"""
from __future__ import annotations


class OrchestrationError(Exception):
    """Base exception for all orchestration errors."""


class AgentNotFoundError(OrchestrationError):
    """Requested agent type is not in the registry."""
    def __init__(self, agent_type: str):
        self.agent_type = agent_type
        super().__init__(f"Agent not found: {agent_type}")


class AgentSpawnError(OrchestrationError):
    """A child agent could not be started."""
    def __init__(self, agent_type: str, reason: str):
        self.agent_type = agent_type
        self.reason = reason
        super().__init__(f"Failed to spawn agent {agent_type}: {reason}")


class MaxDepthExceededError(OrchestrationError):
    """Agent hierarchy exceeded maximum nesting depth."""
    def __init__(self, agent_type: str, depth: int, max_depth: int):
        self.agent_type = agent_type
        self.depth = depth
        self.max_depth = max_depth
        super().__init__(
            f"Agent {agent_type} at depth {depth} exceeds max {max_depth}"
        )


class CircuitBreakerTrippedError(OrchestrationError):
    """A tool failed validation too many times in a row."""
    def __init__(self, tool_name: str, failures: int, last_error: str = ""):
        self.tool_name = tool_name
        self.failures = failures
        self.last_error = last_error
        message = (
            f"Circuit breaker: tool '{tool_name}' failed validation "
            f"{failures} times in a row"
        )
        if last_error:
            message += f" (last error: {last_error})"
        super().__init__(message)


class NoProgressError(OrchestrationError):
    """The model kept answering without text or tool calls."""
    def __init__(self, agent_id: str, turns: int):
        self.agent_id = agent_id
        self.turns = turns
        super().__init__(
            f"Agent {agent_id} made no progress after {turns} "
            f"consecutive turns without tool use"
        )


class MaxTurnsExceededError(OrchestrationError):
    """Turn loop hit its hard cap on model requests."""
    def __init__(self, agent_id: str, max_turns: int):
        self.agent_id = agent_id
        self.max_turns = max_turns
        super().__init__(
            f"Agent {agent_id} exceeded the maximum of {max_turns} turns"
        )


class ExecutionCancelledError(OrchestrationError):
    """Cancellation was observed at a suspension point.

    Used for control flow only; the turn loop maps it to a
    cancelled outcome instead of reporting a failure.
    """
    def __init__(self, where: str = ""):
        self.where = where
        super().__init__(
            f"Execution cancelled ({where})" if where else "Execution cancelled"
        )


class ProviderError(OrchestrationError):
    """The model provider rejected the request."""
    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        super().__init__(f"API Error: {status} - {body}")


class StreamTransportError(OrchestrationError):
    """The connection to the model provider failed."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Stream transport failed: {reason}")

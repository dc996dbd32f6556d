"""Agent spawner: runs agents, top-level and nested.

Every agent gets a fresh AgentSession and its own TurnLoop. A
``spawn_agents`` call runs all requested children concurrently and
answers the parent with one JSON array, in request order::

    [
      {"agent_type": "terminus", "result": "..."},
      {"agent_type": "environment", "error": "Agent not found: environment"}
    ]

Per-entry failures (unknown type, depth limit, child failure) never
affect siblings. Children share the parent's cancellation signal.
"""
from __future__ import annotations

import json
import logging

from .agent_registry import AgentRegistry
from .approval import ApprovalGate
from .cancellation import CancellationSignal
from .config import EngineConfig, EventCallback, fire_event
from .errors import (
    AgentSpawnError,
    ExecutionCancelledError,
    MaxDepthExceededError,
    OrchestrationError,
)
from .models import AgentOutcome, AgentSession, ConversationTurn, SpawnRequest
from .providers.base import ModelProvider
from .tool_dispatcher import ToolExecutor
from .tool_specs import ToolCatalog
from .turn_loop import TurnLoop, gather_or_cancel

logger = logging.getLogger(__name__)


class AgentSpawner:
    """Creates sessions and drives their turn loops."""

    def __init__(
        self,
        registry: AgentRegistry,
        *,
        provider: ModelProvider,
        dispatcher: ToolExecutor,
        catalog: ToolCatalog,
        config: EngineConfig,
        approval_gate: ApprovalGate | None = None,
        event_callback: EventCallback | None = None,
    ) -> None:
        self._registry = registry
        self._provider = provider
        self._dispatcher = dispatcher
        self._catalog = catalog
        self._config = config
        self._approval_gate = approval_gate
        self._event_callback = event_callback

    def create_session(
        self,
        agent_type: str,
        prompt: str,
        *,
        parent: AgentSession | None = None,
        cancellation: CancellationSignal | None = None,
    ) -> AgentSession:
        """Build a session for *agent_type* with *prompt* as turn 0.

        Raises:
            AgentNotFoundError: If the type is not registered.
            MaxDepthExceededError: If nesting limit exceeded.
            AgentSpawnError: If the parent may not spawn this type.
        """
        definition = self._registry.get(agent_type)
        depth = parent.depth + 1 if parent is not None else 0
        if depth > self._config.max_agent_depth:
            raise MaxDepthExceededError(agent_type, depth, self._config.max_agent_depth)
        if (
            parent is not None
            and self._config.enforce_spawnable_agents
            and parent.definition.spawnable_agents
            and agent_type not in parent.definition.spawnable_agents
        ):
            raise AgentSpawnError(
                agent_type,
                f"{parent.agent_type} may only spawn "
                f"{', '.join(parent.definition.spawnable_agents)}",
            )
        if parent is not None:
            signal = parent.cancellation
        else:
            signal = cancellation or CancellationSignal()
        return AgentSession(
            definition=definition,
            cancellation=signal,
            parent_id=parent.session_id if parent is not None else None,
            depth=depth,
            history=[ConversationTurn.user_text(prompt)],
        )

    async def run_session(self, session: AgentSession) -> AgentOutcome:
        """Run one session's turn loop to completion."""
        await fire_event(self._event_callback, {
            "event": "agent_spawned",
            "agent_id": session.session_id,
            "parent_id": session.parent_id,
            "agent_type": session.agent_type,
            "name": session.definition.display_name or session.agent_type,
            "depth": session.depth,
            "prompt": session.history[0].text if session.history else "",
        })
        loop = TurnLoop(
            session,
            provider=self._provider,
            dispatcher=self._dispatcher,
            catalog=self._catalog,
            config=self._config,
            approval_gate=self._approval_gate,
            spawner=self,
            event_callback=self._event_callback,
        )
        return await loop.run()

    async def run_agent(
        self,
        agent_type: str,
        prompt: str,
        *,
        cancellation: CancellationSignal | None = None,
    ) -> AgentOutcome:
        """Run a top-level agent."""
        session = self.create_session(agent_type, prompt, cancellation=cancellation)
        return await self.run_session(session)

    async def spawn(
        self, parent: AgentSession, requests: list[SpawnRequest],
    ) -> str:
        """Run *requests* concurrently and aggregate their outcomes as JSON."""
        parent.cancellation.raise_if_cancelled("before spawn")
        logger.info(
            "Agent %s spawning %d agents: %s",
            parent.session_id[:8], len(requests),
            ", ".join(r.agent_type for r in requests),
        )
        entries = await gather_or_cancel(*(
            self._run_entry(parent, request) for request in requests
        ))
        return json.dumps(entries, indent=2)

    async def _run_entry(
        self, parent: AgentSession, request: SpawnRequest,
    ) -> dict[str, str]:
        try:
            session = self.create_session(
                request.agent_type, request.prompt, parent=parent,
            )
        except OrchestrationError as exc:
            logger.warning(
                "Agent %s could not spawn %s: %s",
                parent.session_id[:8], request.agent_type, exc,
            )
            await fire_event(self._event_callback, {
                "event": "agent_error",
                "agent_id": parent.session_id,
                "agent_type": request.agent_type,
                "error": str(exc),
                "fatal": False,
            })
            return {"agent_type": request.agent_type, "error": str(exc)}

        outcome = await self.run_session(session)
        if outcome.success:
            return {
                "agent_type": request.agent_type,
                "result": outcome.output or outcome.final_text,
            }
        if outcome.cancelled:
            return {
                "agent_type": request.agent_type,
                "error": str(ExecutionCancelledError()),
            }
        return {
            "agent_type": request.agent_type,
            "error": outcome.error or "Agent failed",
        }

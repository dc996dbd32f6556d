"""Top-level orchestration engine.

Wires together the agent registry, tool catalog, tool dispatcher,
approval gate, model provider and agent spawner. Single entry point
for running a task.

Usage:
    from indokq.engine import OrchestrationEngine

    engine = OrchestrationEngine()
    engine.dispatcher.register("read_file", read_file_handler)
    outcome = await engine.run("Summarize the README")
"""
from __future__ import annotations

import logging
import time

from .agent_registry import AgentRegistry, default_registry
from .agent_spawner import AgentSpawner
from .approval import (
    ApprovalGate,
    ApprovalPolicy,
    FileWriter,
    LocalFileWriter,
    PendingApproval,
)
from .cancellation import CancellationSignal
from .config import EngineConfig, fire_event
from .models import AgentOutcome, ApprovalDecision, OutcomeStatus
from .providers.anthropic_provider import AnthropicProvider
from .providers.base import ModelProvider
from .tool_dispatcher import ToolDispatcher
from .tool_specs import ToolCatalog, default_catalog

logger = logging.getLogger(__name__)


class OrchestrationEngine:
    """Main orchestration engine.

    One engine runs one task at a time. ``cancel()`` and
    ``resolve_approval()`` are safe to call from any coroutine on the
    same event loop while ``run()`` is in progress.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        provider: ModelProvider | None = None,
        registry: AgentRegistry | None = None,
        catalog: ToolCatalog | None = None,
        dispatcher: ToolDispatcher | None = None,
        file_writer: FileWriter | None = None,
    ) -> None:
        self._config = config or EngineConfig.from_env()
        self._event_callback = self._config.event_callback
        self._provider = provider or AnthropicProvider(self._config)
        self._registry = registry or default_registry()
        self._catalog = catalog or default_catalog()
        self.dispatcher = dispatcher or ToolDispatcher()
        self._approval_gate = ApprovalGate(
            file_writer or LocalFileWriter(),
            policy=ApprovalPolicy(self._config.approval_level),
            event_callback=self._event_callback,
            approval_callback=self._config.approval_callback,
        )
        self._spawner = AgentSpawner(
            self._registry,
            provider=self._provider,
            dispatcher=self.dispatcher,
            catalog=self._catalog,
            config=self._config,
            approval_gate=self._approval_gate,
            event_callback=self._event_callback,
        )
        self._cancellation: CancellationSignal | None = None
        logger.info(
            "OrchestrationEngine ready: provider=%s agents=%d tools=%d",
            self._provider.name, len(self._registry), len(self._catalog),
        )

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def registry(self) -> AgentRegistry:
        return self._registry

    @property
    def is_running(self) -> bool:
        return self._cancellation is not None

    @property
    def pending_approvals(self) -> list[PendingApproval]:
        return self._approval_gate.pending

    async def run(self, task: str, agent_type: str | None = None) -> AgentOutcome:
        """Run *task* with the top-level agent and return its outcome."""
        if self._cancellation is not None:
            raise RuntimeError("OrchestrationEngine is already running a task")
        agent_type = agent_type or self._config.root_agent
        self._cancellation = CancellationSignal()
        start = time.monotonic()
        await fire_event(self._event_callback, {
            "event": "engine_started",
            "task_definition": task,
            "agent_type": agent_type,
        })
        try:
            outcome = await self._spawner.run_agent(
                agent_type, task, cancellation=self._cancellation,
            )
        finally:
            self._cancellation = None

        await fire_event(self._event_callback, {
            "event": "engine_finished",
            "success": outcome.success,
            "status": outcome.status.value,
            "summary": outcome.final_text,
            "error": outcome.error,
            "duration_seconds": time.monotonic() - start,
        })
        if outcome.status == OutcomeStatus.CANCELLED:
            logger.info("Task cancelled after %.1fs", outcome.duration_seconds)
        return outcome

    def cancel(self, reason: str = "user request") -> bool:
        """Request cancellation; takes effect at the next suspension point."""
        if self._cancellation is None:
            return False
        self._cancellation.cancel(reason)
        return True

    def resolve_approval(
        self, approval_id: str, decision: ApprovalDecision | str,
    ) -> bool:
        """Deliver a human decision for a pending change."""
        return self._approval_gate.resolve(approval_id, decision)

    async def shutdown(self) -> None:
        """Cancel any running task and release provider resources."""
        self.cancel("shutdown")
        await self._provider.close()

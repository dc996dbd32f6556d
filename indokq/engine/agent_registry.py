"""Registry of named agent definitions.

Built once at startup and never mutated afterwards. Layering YAML
definitions over the built-ins produces a new registry instead of
changing the existing one.

Example:
    registry = default_registry().with_definitions([
        AgentDefinition(
            agent_type="reviewer",
            system_prompt="You review diffs...",
            tool_names=("read_file", "grep_codebase", "task_complete"),
        ),
    ])
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from types import MappingProxyType

from .errors import AgentNotFoundError
from .models import AgentDefinition

logger = logging.getLogger(__name__)


class AgentRegistry:
    """Immutable agent_type -> AgentDefinition mapping."""

    def __init__(self, definitions: Iterable[AgentDefinition] = ()) -> None:
        self._definitions: Mapping[str, AgentDefinition] = MappingProxyType(
            {d.agent_type: d for d in definitions}
        )

    def get(self, agent_type: str) -> AgentDefinition:
        """Get a definition by type.

        Raises AgentNotFoundError if not found.
        """
        definition = self._definitions.get(agent_type)
        if definition is None:
            raise AgentNotFoundError(agent_type)
        return definition

    def __contains__(self, agent_type: object) -> bool:
        return agent_type in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def list_types(self) -> list[str]:
        return list(self._definitions)

    def with_definitions(self, definitions: Iterable[AgentDefinition]) -> AgentRegistry:
        """Return a new registry with *definitions* added or replaced."""
        merged = dict(self._definitions)
        for definition in definitions:
            if definition.agent_type in merged:
                logger.info("Agent definition overridden: %s", definition.agent_type)
            else:
                logger.info("Agent definition registered: %s", definition.agent_type)
            merged[definition.agent_type] = definition
        return AgentRegistry(merged.values())


BUILTIN_AGENTS: tuple[AgentDefinition, ...] = (
    AgentDefinition(
        agent_type="orchestrator",
        display_name="Orchestrator",
        spawner_prompt="Analyzes tasks and decides which phase agents to spawn",
        tool_names=("spawn_agents",),
        spawnable_agents=("prediction", "intelligence", "synthesis", "execution"),
        system_prompt=(
            "You are the main orchestrator. Break the user's task into "
            "phases and delegate each phase with spawn_agents. Agents in "
            "one spawn_agents call run concurrently and their results come "
            "back together. When the work is done, answer the user directly "
            "without calling tools."
        ),
    ),
    AgentDefinition(
        agent_type="prediction",
        display_name="Task Predictor",
        spawner_prompt="Analyzes task requirements and predicts needed resources",
        system_prompt=(
            "You predict what a task needs: likely files, commands and "
            "risks. Answer concisely in plain text."
        ),
    ),
    AgentDefinition(
        agent_type="intelligence",
        display_name="Intelligence Coordinator",
        spawner_prompt="Coordinates parallel intelligence gathering agents",
        tool_names=("spawn_agents", "task_complete"),
        spawnable_agents=("terminus", "environment"),
        system_prompt=(
            "You coordinate intelligence gathering. Spawn exploration "
            "agents in parallel, then call task_complete with what they "
            "found."
        ),
    ),
    AgentDefinition(
        agent_type="terminus",
        display_name="Terminus Explorer",
        spawner_prompt="Quick exploration and reasoning agent",
        tool_names=(
            "list_files", "search_files", "grep_codebase", "read_file",
            "task_complete",
        ),
        system_prompt=(
            "You are a rapid exploration agent. Inspect the codebase with "
            "the read-only tools you have and call task_complete with your "
            "findings."
        ),
    ),
    AgentDefinition(
        agent_type="environment",
        display_name="Environment Analyzer",
        spawner_prompt="Analyzes system state and environment configuration",
        tool_names=("list_files", "read_file", "execute_command", "task_complete"),
        system_prompt=(
            "You analyze the system environment and project configuration. "
            "Call task_complete with a short report."
        ),
    ),
    AgentDefinition(
        agent_type="synthesis",
        display_name="Intelligence Synthesizer",
        spawner_prompt="Combines intelligence findings into actionable insights",
        tool_names=("task_complete",),
        system_prompt=(
            "You combine findings from several sources into a clear, "
            "actionable plan. Call task_complete with the plan."
        ),
    ),
    AgentDefinition(
        agent_type="execution",
        display_name="Execution Agent",
        spawner_prompt="Executes the synthesized plan using available tools",
        tool_names=(
            "list_files", "read_file", "create_file", "edit_file",
            "propose_file_changes", "execute_command", "search_files",
            "grep_codebase", "task_complete",
        ),
        system_prompt=(
            "You carry out an agreed plan. Prefer edit_file or "
            "propose_file_changes for existing files; the user approves "
            "each change. Call task_complete when finished."
        ),
    ),
)


def default_registry() -> AgentRegistry:
    return AgentRegistry(BUILTIN_AGENTS)

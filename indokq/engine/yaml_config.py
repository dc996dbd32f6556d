"""YAML configuration loader.

One file can override engine settings and add or replace agent
definitions. Without a file, env vars and the built-in agents are
used unchanged.

Example YAML:
    engine:
      model: claude-sonnet-4-5-20250929
      max_agent_depth: 3
      history_max_turns: 7
      api_key: ${ANTHROPIC_API_KEY}

    agents:
      reviewer:
        display_name: Code Reviewer
        system_prompt: |
          You review diffs and point out bugs.
        tools: [read_file, grep_codebase, task_complete]
      orchestrator:
        system_prompt: |
          ...
        tools: [spawn_agents]
        spawnable_agents: [reviewer, terminus]
"""
from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .agent_registry import AgentRegistry, default_registry
from .config import EngineConfig
from .models import AgentDefinition

logger = logging.getLogger(__name__)

# Callbacks are wired in code, never from YAML.
_NON_YAML_FIELDS = {"event_callback", "approval_callback"}


@dataclass
class OrchestrationConfig:
    """Complete parsed YAML configuration."""
    engine: EngineConfig
    agents: list[AgentDefinition] = field(default_factory=list)

    def build_registry(self, base: AgentRegistry | None = None) -> AgentRegistry:
        """Layer the YAML agents over *base* (the built-ins by default)."""
        return (base or default_registry()).with_definitions(self.agents)


def _expand(value: Any) -> Any:
    if isinstance(value, str):
        return os.path.expandvars(value)
    return value


def _coerce(current: Any, value: Any) -> Any:
    """Coerce a YAML scalar to the type of the existing setting."""
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, str):
        return str(value)
    return value


def parse_engine_section(
    raw: dict[str, Any], base: EngineConfig | None = None,
) -> EngineConfig:
    """Apply an ``engine:`` mapping on top of *base*."""
    base = base or EngineConfig()
    known = {
        f.name for f in dataclasses.fields(EngineConfig)
        if f.name not in _NON_YAML_FIELDS
    }
    overrides: dict[str, Any] = {}
    for key, value in (raw or {}).items():
        if key not in known:
            logger.warning("Ignoring unknown engine setting: %s", key)
            continue
        overrides[key] = _coerce(getattr(base, key), _expand(value))
    return dataclasses.replace(base, **overrides)


def parse_agent(agent_type: str, raw: dict[str, Any]) -> AgentDefinition:
    """Build an AgentDefinition from one ``agents:`` entry."""
    if not isinstance(raw, dict):
        raise ValueError(f"Agent '{agent_type}' must be a mapping")
    system_prompt = raw.get("system_prompt")
    if not system_prompt:
        raise ValueError(f"Agent '{agent_type}' is missing system_prompt")
    history = raw.get("history_max_turns")
    return AgentDefinition(
        agent_type=agent_type,
        system_prompt=str(system_prompt).strip(),
        tool_names=tuple(raw.get("tools") or raw.get("tool_names") or ()),
        display_name=str(raw.get("display_name") or raw.get("name") or ""),
        spawner_prompt=str(raw.get("spawner_prompt") or ""),
        spawnable_agents=tuple(raw.get("spawnable_agents") or ()),
        history_max_turns=int(history) if history is not None else None,
    )


def load_yaml_config(
    path: str | Path, base: EngineConfig | None = None,
) -> OrchestrationConfig:
    """Load and parse a YAML config file.

    ``engine:`` settings override *base* (defaults when omitted);
    ``agents:`` entries become AgentDefinitions.
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        logger.info("load_yaml_config: successfully read and parsed %s", path)
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    engine = parse_engine_section(raw.get("engine") or {}, base)
    agents = [
        parse_agent(str(agent_type), agent_raw or {})
        for agent_type, agent_raw in (raw.get("agents") or {}).items()
    ]
    logger.info(
        "Parsed YAML config %s: %d engine overrides, %d agents",
        path.name, len(raw.get("engine") or {}), len(agents),
    )
    return OrchestrationConfig(engine=engine, agents=agents)

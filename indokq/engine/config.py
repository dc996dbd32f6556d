"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via INDOKQ_* env vars
(provider credentials also accept the usual ANTHROPIC_* names).
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .approval import PendingApproval

logger = logging.getLogger(__name__)


# Optional async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]

# Optional async callback notified of each pending mutation.
# Signature: async def callback(approval: PendingApproval) -> None
# The surface answers later through OrchestrationEngine.resolve_approval().
ApprovalCallback = Callable[["PendingApproval"], Awaitable[None]]

_TRUE_VALUES = {"1", "true", "yes", "on"}


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set. Observer errors never break the engine."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.debug(
            "Event callback failed for %s", event.get("event"), exc_info=True,
        )


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in _TRUE_VALUES


@dataclass
class EngineConfig:
    """Orchestration engine configuration."""

    # Provider endpoint and credentials
    api_base_url: str = "https://api.anthropic.com"
    api_key: str = field(default="", repr=False)
    auth_token: str = field(default="", repr=False)
    anthropic_version: str = "2023-06-01"
    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 8192
    # Single-shot requests use a smaller output budget.
    max_tokens_non_streaming: int = 4096
    request_timeout_seconds: float = 600.0
    stream_responses: bool = True

    # Top-level agent
    root_agent: str = "orchestrator"

    # Turn loop guards
    validation_failure_threshold: int = 3
    max_turns_without_tool_use: int = 2
    # 0 disables the hard cap.
    max_turns: int = 50
    # Original task + last (history_max_turns - 1) turns. 0 disables trimming.
    history_max_turns: int = 5
    max_agent_depth: int = 5
    # Reject spawns outside the parent's spawnable_agents list.
    enforce_spawnable_agents: bool = False

    # Approval level (TOOL_APPROVAL_LEVEL scale):
    # 0 = every tool call asks, 1 = read-only tools run freely,
    # 2 = file edits and safe commands also run freely,
    # 3 = nothing asks and proposed changes are applied directly.
    approval_level: int = 2

    # Logging
    log_level: str = "INFO"

    # Optional async callback for real-time event observation.
    # Receives dicts like {"event": "stream_chunk", "agent_id": "...", ...}
    event_callback: EventCallback | None = field(default=None, repr=False)

    # Optional async callback for pending file mutations.
    approval_callback: ApprovalCallback | None = field(
        default=None, repr=False,
    )

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from INDOKQ_* / ANTHROPIC_* environment variables."""
        overrides = {
            k: v for k, v in os.environ.items() if k.startswith("INDOKQ_")
        }
        if overrides:
            logger.info(
                "EngineConfig.from_env: INDOKQ_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(overrides.items())),
            )
        else:
            logger.debug(
                "EngineConfig.from_env: no INDOKQ_* env vars set, using defaults"
            )

        config = cls(
            api_base_url=os.getenv(
                "INDOKQ_API_BASE_URL",
                os.getenv("ANTHROPIC_BASE_URL", cls.api_base_url),
            ),
            api_key=os.getenv(
                "INDOKQ_API_KEY", os.getenv("ANTHROPIC_API_KEY", ""),
            ),
            auth_token=os.getenv(
                "INDOKQ_AUTH_TOKEN", os.getenv("ANTHROPIC_AUTH_TOKEN", ""),
            ),
            model=os.getenv(
                "INDOKQ_MODEL", os.getenv("MODEL_NAME", cls.model),
            ),
            max_tokens=int(os.getenv(
                "INDOKQ_MAX_TOKENS", str(cls.max_tokens)
            )),
            request_timeout_seconds=float(os.getenv(
                "INDOKQ_REQUEST_TIMEOUT", str(cls.request_timeout_seconds)
            )),
            stream_responses=_env_flag(
                "INDOKQ_STREAM", cls.stream_responses,
            ),
            root_agent=os.getenv("INDOKQ_ROOT_AGENT", cls.root_agent),
            validation_failure_threshold=int(os.getenv(
                "INDOKQ_VALIDATION_FAILURE_THRESHOLD",
                str(cls.validation_failure_threshold),
            )),
            max_turns_without_tool_use=int(os.getenv(
                "INDOKQ_MAX_TURNS_WITHOUT_TOOL_USE",
                str(cls.max_turns_without_tool_use),
            )),
            max_turns=int(os.getenv("INDOKQ_MAX_TURNS", str(cls.max_turns))),
            history_max_turns=int(os.getenv(
                "INDOKQ_HISTORY_MAX_TURNS", str(cls.history_max_turns)
            )),
            max_agent_depth=int(os.getenv(
                "INDOKQ_MAX_DEPTH", str(cls.max_agent_depth)
            )),
            enforce_spawnable_agents=_env_flag(
                "INDOKQ_ENFORCE_SPAWNABLE", cls.enforce_spawnable_agents,
            ),
            approval_level=int(os.getenv(
                "INDOKQ_APPROVAL_LEVEL",
                os.getenv("TOOL_APPROVAL_LEVEL", str(cls.approval_level)),
            )),
            log_level=os.getenv(
                "INDOKQ_LOG_LEVEL", os.getenv("LOG_LEVEL", cls.log_level),
            ).upper(),
        )
        logger.info(
            "EngineConfig.from_env: model=%s base_url=%s stream=%s log_level=%s",
            config.model, config.api_base_url,
            config.stream_responses, config.log_level,
        )
        return config

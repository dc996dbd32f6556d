"""indokq engine: streaming tool-use orchestration for nested agents."""
from .models import (
    AgentDefinition,
    AgentOutcome,
    AgentSession,
    ApprovalDecision,
    ConversationTurn,
    OutcomeStatus,
    SpawnRequest,
    TextBlock,
    ToolCallBlock,
    ToolExecutionResult,
    ToolResultBlock,
    TurnPhase,
)
from .config import EngineConfig
from .cancellation import CancellationSignal
from .errors import (
    AgentNotFoundError,
    AgentSpawnError,
    CircuitBreakerTrippedError,
    ExecutionCancelledError,
    MaxDepthExceededError,
    MaxTurnsExceededError,
    NoProgressError,
    OrchestrationError,
    ProviderError,
    StreamTransportError,
)

__all__ = [
    # Core engine (lazy import to avoid circular deps)
    "OrchestrationEngine",
    # Models
    "AgentDefinition",
    "AgentOutcome",
    "AgentSession",
    "ApprovalDecision",
    "ConversationTurn",
    "OutcomeStatus",
    "SpawnRequest",
    "TextBlock",
    "ToolCallBlock",
    "ToolExecutionResult",
    "ToolResultBlock",
    "TurnPhase",
    # Config
    "EngineConfig",
    "CancellationSignal",
    # YAML config (lazy import)
    "OrchestrationConfig",
    "load_yaml_config",
    # Registries and tools (lazy import)
    "AgentRegistry",
    "ToolCatalog",
    "ToolDispatcher",
    # Errors
    "AgentNotFoundError",
    "AgentSpawnError",
    "CircuitBreakerTrippedError",
    "ExecutionCancelledError",
    "MaxDepthExceededError",
    "MaxTurnsExceededError",
    "NoProgressError",
    "OrchestrationError",
    "ProviderError",
    "StreamTransportError",
]


def __getattr__(name: str):
    if name == "OrchestrationEngine":
        from .engine import OrchestrationEngine
        return OrchestrationEngine
    if name == "OrchestrationConfig":
        from .yaml_config import OrchestrationConfig
        return OrchestrationConfig
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "AgentRegistry":
        from .agent_registry import AgentRegistry
        return AgentRegistry
    if name == "ToolCatalog":
        from .tool_specs import ToolCatalog
        return ToolCatalog
    if name == "ToolDispatcher":
        from .tool_dispatcher import ToolDispatcher
        return ToolDispatcher
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

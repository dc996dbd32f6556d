"""Model provider abstraction."""
from .base import ModelProvider, ModelRequest
from .anthropic_provider import AnthropicProvider
from .scripted import ScriptedProvider, ScriptedResponse

__all__ = [
    "ModelProvider",
    "ModelRequest",
    "AnthropicProvider",
    "ScriptedProvider",
    "ScriptedResponse",
]

"""webchat-bridge: web chat providers behind one OpenAI/Ollama-compatible API."""

from .config import load_config, validate_config
from .providers import build_provider
from .types import (
    BridgeConfig,
    BridgeError,
    ConversationSession,
    Delta,
    Phase,
    ProviderEvent,
    RawFrame,
)

__version__ = "0.1.0"

__all__ = [
    "build_provider",
    "load_config",
    "validate_config",
    "BridgeConfig",
    "BridgeError",
    "ConversationSession",
    "Delta",
    "Phase",
    "ProviderEvent",
    "RawFrame",
]

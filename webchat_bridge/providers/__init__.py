"""Upstream provider strategies."""

from __future__ import annotations

from ..types import ConfigError, ProviderConfig
from .base import Provider
from .deepseek import DeepSeekProvider
from .kimi import KimiProvider
from .openai_compat import (
    CerebrasProvider,
    NvidiaProvider,
    OpenAICompatProvider,
    VercelProvider,
)
from .qwen import QwenProvider

PROVIDER_TYPES: dict[str, type[Provider]] = {
    "qwen": QwenProvider,
    "kimi": KimiProvider,
    "deepseek": DeepSeekProvider,
    "openai": OpenAICompatProvider,
    "nvidia": NvidiaProvider,
    "cerebras": CerebrasProvider,
    "vercel": VercelProvider,
}


def build_provider(config: ProviderConfig) -> Provider:
    """Instantiate the strategy named by a provider config section."""
    cls = PROVIDER_TYPES.get(config.strategy)
    if cls is None:
        raise ConfigError(
            f"Unknown provider type '{config.strategy}' "
            f"(known: {', '.join(sorted(PROVIDER_TYPES))})"
        )
    return cls(config)


__all__ = ["PROVIDER_TYPES", "Provider", "build_provider"]

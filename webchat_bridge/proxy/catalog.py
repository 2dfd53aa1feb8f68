"""Model catalog responses in Ollama and OpenAI shapes.

Editor integrations discover models through Ollama's ``/api/tags`` and
``/api/show`` before they ever send a chat request, so the bridge answers
those from the active provider's catalog.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone

from ..providers.base import Provider
from ..types import ModelInfo

# Reported size of every model; clients only display it.
NOMINAL_SIZE = 100_000_000_000
PROMPT_TEMPLATE = "{{ .System }}{{ .Prompt }}"


def _digest(name: str) -> str:
    return "sha256:" + hashlib.sha256(name.encode()).hexdigest()


def _family(provider: Provider, model: ModelInfo) -> str:
    return model.family or provider.family or provider.name


def _details(provider: Provider, model: ModelInfo) -> dict:
    family = _family(provider, model)
    return {
        "parent_model": "",
        "format": "gguf",
        "family": family,
        "families": [family],
        "parameter_size": model.parameter_size,
        "quantization_level": "Q4_0",
        "description": model.description,
    }


def ollama_tags(provider: Provider) -> dict:
    """Body of ``/api/tags``."""
    now = datetime.now(timezone.utc).isoformat()
    return {
        "models": [
            {
                "name": m.name,
                "model": m.name,
                "display_name": m.display_name or m.name,
                "tags": list(m.tags),
                "modified_at": now,
                "size": NOMINAL_SIZE,
                "digest": _digest(m.name),
                "details": _details(provider, m),
            }
            for m in provider.models
        ],
    }


def ollama_show(provider: Provider, name: str | None) -> dict:
    """Body of ``/api/show`` for *name* (unknown names are described generically)."""
    model = provider.find_model(name)
    family = _family(provider, model)
    display = model.display_name or model.name
    capabilities = ["completion", "tools"]
    if model.thinking:
        capabilities.append("thinking")
    return {
        "template": PROMPT_TEMPLATE,
        "capabilities": capabilities,
        "details": {
            **_details(provider, model),
            "name": display,
            "thinking_enabled": model.thinking,
        },
        "model_info": {
            "general.basename": display,
            "general.architecture": family,
            "general.name": display,
            f"{family}.context_length": model.context_length,
        },
    }


def openai_models(provider: Provider) -> dict:
    """Body of ``/v1/models``."""
    return {
        "object": "list",
        "data": [
            {
                "id": m.name,
                "object": "model",
                "created": 0,
                "owned_by": provider.label,
            }
            for m in provider.models
        ],
    }

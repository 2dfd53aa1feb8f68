"""Provider strategy interface.

Each upstream chat service has a distinct request schema, event schema and
conversation model. ``Provider`` is the strategy interface; concrete
subclasses build upstream requests and supply the per-stream
:class:`~webchat_bridge.core.normalizer.PhaseClassifier` that understands
the provider's events.

Usage:

    provider = build_provider(config.providers["qwen"])
    model = provider.find_model("qwen3-thinking")
    request = provider.build_request(client, session, model, messages)
    normalizer = Normalizer(provider.new_classifier(model))
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import httpx

from ..config import resolve_api_key
from ..core.conversation import message_text
from ..core.decoder import DEFAULT_SENTINEL, FrameDecoder
from ..core.normalizer import PhaseClassifier
from ..types import ConversationSession, ModelInfo, ProviderConfig, UpstreamError

# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def last_user_text(messages: list[dict], default: str = "Hello") -> str:
    """Text of the most recent user message."""
    for msg in reversed(messages):
        if msg.get("role") == "user":
            text = message_text(msg)
            if text:
                return text
    return default


def plain_messages(messages: list[dict]) -> list[dict]:
    """Flatten content blocks so every message carries string content."""
    return [
        {"role": m.get("role", "user"), "content": message_text(m)}
        for m in messages
    ]


def raise_for_status(resp: httpx.Response, provider: str, what: str) -> None:
    if resp.status_code >= 400:
        raise UpstreamError(
            f"{provider} {what} failed with HTTP {resp.status_code}: {resp.text[:200]}",
            provider=provider,
            status_code=resp.status_code,
        )


# ---------------------------------------------------------------------------
# ABC
# ---------------------------------------------------------------------------

class Provider(ABC):
    """Strategy interface for one upstream chat service."""

    #: registry name, also the default ``type`` of a provider config section
    name: str = ""
    #: ``"http"`` (SSE over httpx) or ``"browser"`` (captured page traffic)
    transport: str = "http"
    #: completion sentinel on ``data:`` lines, ``None`` if the provider has none
    sentinel: str | None = DEFAULT_SENTINEL
    #: whether the upstream keeps server-side conversation threads
    stateful: bool = False
    default_base_url: str = ""
    family: str = ""

    def __init__(self, config: ProviderConfig | None = None) -> None:
        self.config = config or ProviderConfig(name=self.name)
        self.base_url = (self.config.base_url or self.default_base_url).rstrip("/")
        self.api_key = resolve_api_key(self.config)
        self.models: list[ModelInfo] = self.config.models or self.default_models()

    @property
    def label(self) -> str:
        """Configured section name (``nvidia``, ``cerebras``...)."""
        return self.config.name or self.name

    # -- Catalog -------------------------------------------------------------

    @abstractmethod
    def default_models(self) -> list[ModelInfo]:
        """Built-in catalog used when the config lists no models."""

    def find_model(self, name: str | None) -> ModelInfo:
        """Resolve a caller-supplied model name against the catalog.

        Unknown names pass through unchanged so OpenAI-compatible gateways
        can serve models missing from the catalog.
        """
        if not name:
            return self.models[0] if self.models else ModelInfo(name="default")
        for model in self.models:
            if name in (model.name, model.upstream):
                return model
        # Ollama clients append ":latest"
        base = name.split(":", 1)[0]
        for model in self.models:
            if base == model.name:
                return model
        return ModelInfo(name=name, family=self.family)

    # -- Stream parsing ------------------------------------------------------

    @abstractmethod
    def new_classifier(self, model: ModelInfo) -> PhaseClassifier:
        """Fresh classifier for one upstream response."""

    def new_decoder(self) -> FrameDecoder:
        return FrameDecoder(sentinel=self.sentinel)

    # -- Upstream conversation -----------------------------------------------

    async def create_conversation(
        self, client: httpx.AsyncClient, model: ModelInfo | None = None,
    ) -> str | None:
        """Open a new upstream chat and return its id (``None`` if N/A)."""
        return None

    def headers(self) -> dict[str, str]:
        headers = {"content-type": "application/json", **self.config.headers}
        if self.api_key:
            headers["authorization"] = f"Bearer {self.api_key}"
        return headers

    def build_request(
        self,
        client: httpx.AsyncClient,
        session: ConversationSession,
        model: ModelInfo,
        messages: list[dict],
        params: dict | None = None,
    ) -> httpx.Request:
        """Upstream streaming request for one turn (HTTP transport)."""
        raise NotImplementedError(f"{self.name} does not use the HTTP transport")

    def build_prompt(
        self,
        session: ConversationSession,
        model: ModelInfo,
        messages: list[dict],
    ) -> str:
        """Text typed into the chat page for one turn (browser transport)."""
        return last_user_text(messages)

    def describe(self) -> str:
        return f"{self.name} ({self.transport}, {self.base_url or 'no base url'})"

"""kimi.com web chat provider.

Events carry their type inside the JSON payload::

    {"event": "resp", "id": "..."}
    {"event": "k1", "text": "..."}        reasoning
    {"event": "cmpl", "text": "..."}      answer text
    {"event": "all_done"}
    {"event": "error", "error_msg": "..."}

Unlike Qwen, the full prior history is sent with each turn and the upstream
chat id only groups the conversation in the web UI.
"""

from __future__ import annotations

import httpx

from ..core.conversation import message_text
from ..core.normalizer import PhaseClassifier, error_delta, final_delta
from ..types import (
    ConversationSession,
    Delta,
    Linkage,
    ModelInfo,
    Phase,
    ProviderEvent,
    UpstreamError,
)
from .base import Provider, last_user_text, raise_for_status


class KimiClassifier(PhaseClassifier):

    def classify(self, event: ProviderEvent) -> list[Delta]:
        data = event.data
        kind = data.get("event") or event.event
        if kind == "k1":
            self.switch(Phase.THINKING)
            return self.text(data.get("text") or "")
        if kind == "cmpl":
            self.switch(Phase.ANSWER)
            return self.text(data.get("text") or "")
        if kind == "all_done":
            return [final_delta()]
        if kind == "error":
            message = data.get("error_msg") or data.get("message") or "unknown error"
            return [error_delta(str(message))]
        return []

    def linkage(self, event: ProviderEvent) -> Linkage | None:
        data = event.data
        if (data.get("event") or event.event) == "resp" and data.get("id"):
            return Linkage(parent_id=str(data["id"]))
        return None


class KimiProvider(Provider):
    name = "kimi"
    stateful = True
    default_base_url = "https://www.kimi.com"
    family = "kimi"

    def default_models(self) -> list[ModelInfo]:
        return [
            ModelInfo(
                name="k2",
                display_name="K2 (WEB)",
                family="kimi",
                description="Flagship model",
                tags=["flagship", "standard"],
            ),
            ModelInfo(
                name="k1.5",
                display_name="Kimi 1.5 (WEB)",
                family="kimi",
                description="Long-context reasoning model",
                tags=["reasoning", "standard"],
                thinking=True,
            ),
        ]

    def new_classifier(self, model: ModelInfo) -> PhaseClassifier:
        return KimiClassifier()

    async def create_conversation(
        self, client: httpx.AsyncClient, model: ModelInfo | None = None,
    ) -> str | None:
        resp = await client.post(
            f"{self.base_url}/api/chat",
            headers=self.headers(),
            json={"name": "Copilot Chat", "is_example": False},
        )
        raise_for_status(resp, self.name, "chat creation")
        body = resp.json()
        chat_id = body.get("id") if isinstance(body, dict) else None
        if not chat_id:
            raise UpstreamError("kimi chat creation returned no id", provider=self.name)
        return chat_id

    def build_payload(self, model: ModelInfo, messages: list[dict]) -> dict:
        history: list[dict] = []
        current: list[dict] = []
        for i, msg in enumerate(messages):
            role = msg.get("role")
            if role == "user" and i == len(messages) - 1:
                current.append({"role": "user", "content": message_text(msg)})
            elif role in ("user", "assistant"):
                history.append({"role": role, "content": message_text(msg)})
        if not current:
            current.append({"role": "user", "content": last_user_text(messages)})

        return {
            "kimiplus_id": "",
            "extend": {"sidebar": True},
            "model": model.upstream_name,
            "use_search": False,
            "messages": current,
            "refs": [],
            "history": history,
            "scene_labels": [],
            "use_semantic_memory": False,
            "use_deep_research": False,
        }

    def build_request(
        self,
        client: httpx.AsyncClient,
        session: ConversationSession,
        model: ModelInfo,
        messages: list[dict],
        params: dict | None = None,
    ) -> httpx.Request:
        return client.build_request(
            "POST",
            f"{self.base_url}/api/chat/{session.chat_id}/completion/stream",
            headers=self.headers(),
            json=self.build_payload(model, messages),
        )

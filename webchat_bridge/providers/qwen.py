"""chat.qwen.ai web chat provider.

The web API threads a conversation through ``chat_id`` plus the id of the
previous response. Only the newest user message is sent each turn; the
upstream keeps the history. Events look like::

    {"response.created": {"chat_id": "...", "response_id": "..."}}
    {"choices": [{"delta": {"content": "...", "phase": "think"}}]}
    {"choices": [{"delta": {"content": "", "phase": "think", "status": "finished"}}]}
    {"choices": [{"delta": {"content": "...", "phase": "answer"}}]}
    {"choices": [{"delta": {"content": "", "phase": "answer", "status": "finished"}}]}
"""

from __future__ import annotations

import time
import uuid

import httpx

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

UPSTREAM_MODEL = "qwen3-235b-a22b"


class QwenClassifier(PhaseClassifier):

    def classify(self, event: ProviderEvent) -> list[Delta]:
        data = event.data
        if data.get("success") is False or data.get("error"):
            err = data.get("error") or data.get("data", {})
            if isinstance(err, dict):
                message = err.get("message") or err.get("details") or err.get("code") or "unknown error"
            else:
                message = str(err)
            return [error_delta(str(message))]

        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            return []
        delta = choices[0].get("delta") or {}
        phase = delta.get("phase")
        status = delta.get("status")
        content = delta.get("content") or ""

        if phase == "think":
            self.switch(Phase.THINKING)
            out = self.text(content)
            if status == "finished":
                self.switch(Phase.ANSWER)
            return out

        # "answer" or no phase at all
        self.switch(Phase.ANSWER)
        out = self.text(content)
        if status == "finished":
            out.append(final_delta())
        return out

    def linkage(self, event: ProviderEvent) -> Linkage | None:
        created = event.data.get("response.created")
        if not isinstance(created, dict):
            return None
        parent = created.get("response_id")
        chat = created.get("chat_id")
        if not parent and not chat:
            return None
        return Linkage(parent_id=parent, chat_id=chat)


class QwenProvider(Provider):
    name = "qwen"
    stateful = True
    default_base_url = "https://chat.qwen.ai"
    family = "qwen"

    def default_models(self) -> list[ModelInfo]:
        return [
            ModelInfo(
                name="qwen3-normal",
                upstream=UPSTREAM_MODEL,
                display_name="Qwen3",
                family="qwen",
                description="Qwen3 235B, direct answers",
                tags=["qwen", "standard"],
            ),
            ModelInfo(
                name="qwen3-thinking",
                upstream=UPSTREAM_MODEL,
                display_name="Qwen3 (Thinking)",
                family="qwen",
                description="Qwen3 235B with visible reasoning",
                tags=["qwen", "thinking"],
                thinking=True,
            ),
        ]

    def find_model(self, name: str | None) -> ModelInfo:
        model = super().find_model(name)
        if model.upstream or model in self.models:
            return model
        # unknown alias: keep the caller's name, infer thinking from it
        return ModelInfo(
            name=model.name,
            upstream=UPSTREAM_MODEL,
            family="qwen",
            thinking="thinking" in model.name,
        )

    def new_classifier(self, model: ModelInfo) -> PhaseClassifier:
        return QwenClassifier()

    def headers(self) -> dict[str, str]:
        headers = {
            "accept": "*/*",
            "content-type": "application/json",
            "source": "web",
            "x-accel-buffering": "no",
            "x-request-id": str(uuid.uuid4()),
            **self.config.headers,
        }
        if self.api_key:
            headers["authorization"] = f"Bearer {self.api_key}"
        return headers

    async def create_conversation(
        self, client: httpx.AsyncClient, model: ModelInfo | None = None,
    ) -> str | None:
        upstream = model.upstream_name if model else UPSTREAM_MODEL
        resp = await client.post(
            f"{self.base_url}/api/v2/chats/new",
            headers=self.headers(),
            json={
                "title": "New Chat",
                "models": [upstream],
                "chat_mode": "normal",
                "chat_type": "t2t",
                "timestamp": int(time.time() * 1000),
            },
        )
        raise_for_status(resp, self.name, "chat creation")
        body = resp.json()
        data = body.get("data") if isinstance(body, dict) else None
        chat_id = data.get("id") if isinstance(data, dict) else None
        if not chat_id:
            raise UpstreamError("qwen chat creation returned no id", provider=self.name)
        return chat_id

    def build_payload(
        self,
        session: ConversationSession,
        model: ModelInfo,
        messages: list[dict],
    ) -> dict:
        timestamp = int(time.time())
        upstream = model.upstream_name
        user_msg = {
            "fid": str(uuid.uuid4()),
            "parentId": session.parent_id,
            "childrenIds": [str(uuid.uuid4())],
            "role": "user",
            "content": last_user_text(messages),
            "user_action": "chat",
            "files": [],
            "timestamp": timestamp,
            "models": [upstream],
            "chat_type": "t2t",
            "feature_config": {
                "thinking_enabled": model.thinking,
                "output_schema": "phase",
            },
            "extra": {"meta": {"subChatType": "t2t"}},
            "sub_chat_type": "t2t",
            "parent_id": session.parent_id,
        }
        return {
            "stream": True,
            "incremental_output": True,
            "chat_id": session.chat_id,
            "chat_mode": "normal",
            "model": upstream,
            "parent_id": session.parent_id,
            "messages": [user_msg],
            "timestamp": timestamp,
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
            f"{self.base_url}/api/v2/chat/completions",
            params={"chat_id": session.chat_id},
            headers=self.headers(),
            json=self.build_payload(session, model, messages),
        )

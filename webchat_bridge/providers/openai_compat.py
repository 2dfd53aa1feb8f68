"""OpenAI-compatible streaming APIs (NVIDIA NIM, Cerebras, Vercel AI gateway).

These upstreams are stateless: the full message history goes out with every
turn and there is no upstream chat to track. Reasoning arrives either as
``delta.reasoning_content`` (or ``delta.reasoning``) or inline in the content
between ``<think>`` and ``</think>``.
"""

from __future__ import annotations

import httpx

from ..core.normalizer import PhaseClassifier, error_delta, final_delta
from ..types import ConversationSession, Delta, ModelInfo, Phase, ProviderEvent
from .base import Provider, plain_messages

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"

# Caller fields forwarded to the upstream as-is.
PASSTHROUGH_PARAMS = ("temperature", "top_p", "max_tokens", "stop", "seed")


def _partial_suffix(text: str, tag: str) -> int:
    """Length of the longest suffix of *text* that is a proper prefix of *tag*."""
    for k in range(min(len(tag) - 1, len(text)), 0, -1):
        if text.endswith(tag[:k]):
            return k
    return 0


class OpenAIClassifier(PhaseClassifier):

    def __init__(self) -> None:
        super().__init__()
        self._pending = ""   # possible partial <think> tag held back
        self._in_inline_think = False

    def classify(self, event: ProviderEvent) -> list[Delta]:
        data = event.data
        if data.get("error"):
            err = data["error"]
            message = err.get("message", str(err)) if isinstance(err, dict) else str(err)
            return [error_delta(message)]

        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            return []
        choice = choices[0]
        delta = choice.get("delta") or {}

        out: list[Delta] = []
        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        if isinstance(reasoning, str) and reasoning:
            self.switch(Phase.THINKING)
            out.extend(self.text(reasoning))

        content = delta.get("content")
        if isinstance(content, str) and content:
            if self.phase is Phase.THINKING and not self._in_inline_think:
                self.switch(Phase.ANSWER)
            out.extend(self._inline(content))

        if choice.get("finish_reason"):
            if self._pending:
                out.extend(self.text(self._pending))
                self._pending = ""
            out.append(final_delta())
        return out

    def _inline(self, text: str) -> list[Delta]:
        text = self._pending + text
        self._pending = ""
        out: list[Delta] = []
        while text:
            tag = THINK_CLOSE if self._in_inline_think else THINK_OPEN
            idx = text.find(tag)
            if idx != -1:
                out.extend(self.text(text[:idx]))
                self._in_inline_think = not self._in_inline_think
                self.switch(Phase.THINKING if self._in_inline_think else Phase.ANSWER)
                text = text[idx + len(tag):]
                continue
            keep = _partial_suffix(text, tag)
            if keep:
                self._pending = text[-keep:]
                text = text[:-keep]
            out.extend(self.text(text))
            break
        return out


class OpenAICompatProvider(Provider):
    name = "openai"
    family = "openai"

    def default_models(self) -> list[ModelInfo]:
        return []

    def new_classifier(self, model: ModelInfo) -> PhaseClassifier:
        return OpenAIClassifier()

    def build_payload(
        self,
        model: ModelInfo,
        messages: list[dict],
        params: dict | None = None,
    ) -> dict:
        payload: dict = {
            "model": model.upstream_name,
            "messages": plain_messages(messages),
            "stream": True,
        }
        payload.update(self.config.options)
        for key in PASSTHROUGH_PARAMS:
            if params and params.get(key) is not None:
                payload[key] = params[key]
        return payload

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
            f"{self.base_url}/chat/completions",
            headers=self.headers(),
            json=self.build_payload(model, messages, params),
        )


# ---------------------------------------------------------------------------
# Preconfigured gateways
# ---------------------------------------------------------------------------

class NvidiaProvider(OpenAICompatProvider):
    name = "nvidia"
    default_base_url = "https://integrate.api.nvidia.com/v1"

    def default_models(self) -> list[ModelInfo]:
        return [
            ModelInfo(name="kimi-k2", upstream="moonshotai/kimi-k2-instruct",
                      display_name="Kimi K2 Instruct (NVIDIA LLM)", family="kimi",
                      tags=["kimi", "standard"], description="Kimi K2 Instruct Model"),
            ModelInfo(name="deepseek-r1", upstream="deepseek-ai/deepseek-r1-0528",
                      display_name="DeepSeek R1-0528 (NVIDIA LLM)", family="deepseek",
                      tags=["deepseek", "reasoning"], thinking=True,
                      description="DeepSeek R1-0528 with reasoning tokens"),
            ModelInfo(name="qwen3-235b-a22b", upstream="qwen/qwen3-235b-a22b",
                      display_name="Qwen3-235B-A22B (NVIDIA LLM)", family="qwen",
                      tags=["qwen", "reasoning"], thinking=True,
                      description="Qwen3-235B-A22B with reasoning tokens"),
            ModelInfo(name="qwq-32b", upstream="qwen/qwq-32b",
                      display_name="Qwen QWQ-32B (NVIDIA LLM)", family="qwen",
                      tags=["qwen", "qwq"], description="Qwen QWQ-32B Model"),
        ]


class CerebrasProvider(OpenAICompatProvider):
    name = "cerebras"
    default_base_url = "https://api.cerebras.ai/v1"

    def default_models(self) -> list[ModelInfo]:
        return [
            ModelInfo(name="qwen-3-235b-instruct", upstream="qwen-3-235b-a22b-instruct-2507",
                      display_name="Qwen3 235B Instruct (Cerebras)", family="qwen",
                      tags=["qwen", "standard"], context_length=65_536),
            ModelInfo(name="qwen-3-235b-thinking", upstream="qwen-3-235b-a22b-thinking-2507",
                      display_name="Qwen3 235B Thinking (Cerebras)", family="qwen",
                      tags=["qwen", "reasoning"], thinking=True, context_length=65_536),
            ModelInfo(name="qwen-3-coder-480b", display_name="Qwen3 Coder 480B (Cerebras)",
                      family="qwen", tags=["qwen", "coder"], context_length=65_536),
            ModelInfo(name="gpt-oss-120b", display_name="GPT-OSS 120B (Cerebras)",
                      family="gpt-oss", tags=["openai", "reasoning"], thinking=True,
                      context_length=65_536),
        ]


class VercelProvider(OpenAICompatProvider):
    name = "vercel"
    default_base_url = "https://ai-gateway.vercel.sh/v1"

    def default_models(self) -> list[ModelInfo]:
        return [
            ModelInfo(name="alibaba/qwen-3-32b", display_name="Qwen3 32B (Vercel)",
                      family="qwen", tags=["qwen"]),
            ModelInfo(name="moonshotai/kimi-k2", display_name="Kimi K2 (Vercel)",
                      family="kimi", tags=["kimi"]),
            ModelInfo(name="zai/glm-4.5", display_name="GLM 4.5 (Vercel)",
                      family="glm", tags=["glm"]),
        ]

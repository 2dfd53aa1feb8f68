"""chat.deepseek.com provider (browser-captured).

DeepSeek's page is driven through a browser binding; the completion body is
read from the captured network response once it has finished loading, so
the whole turn arrives as one blob. The body is an SSE stream of JSON
patches against a response document::

    event: ready
    data: {"request_message_id": 1, "response_message_id": 2}
    data: {"v": {"response": {"message_id": 2, ...}}}
    data: {"p": "response/thinking_content", "v": "Let me"}
    data: {"v": " think"}                      appends to the last path
    data: {"p": "response/thinking_elapsed_secs", "v": 3}
    data: {"p": "response/content", "v": "Hello"}
    data: {"p": "response/status", "v": "FINISHED"}
    event: close
"""

from __future__ import annotations

from ..core.normalizer import PhaseClassifier, error_delta, final_delta
from ..types import Delta, Linkage, ModelInfo, Phase, ProviderEvent
from .base import Provider

COMPLETION_PATH = "/api/v0/chat/completion"


class DeepSeekClassifier(PhaseClassifier):
    """Follows the JSON-patch paths of one DeepSeek response."""

    def __init__(self) -> None:
        super().__init__()
        self.last_path: str | None = None

    def classify(self, event: ProviderEvent) -> list[Delta]:
        if event.event == "close":
            return [final_delta()]
        data = event.data
        if event.event == "error" or "error" in data:
            err = data.get("error") or data.get("msg") or "unknown error"
            if isinstance(err, dict):
                err = err.get("message") or err
            return [error_delta(str(err))]
        if not data:
            return []
        return self._patch(data.get("p"), data.get("v"), data.get("o"))

    def _patch(self, path: str | None, value, op: str | None = None) -> list[Delta]:
        if path is None:
            if not isinstance(value, str):
                return []  # initial response snapshot
            path = self.last_path
            if path is None:
                return self.text(value)
        else:
            self.last_path = path

        if op == "BATCH" and isinstance(value, list):
            out: list[Delta] = []
            for item in value:
                if isinstance(item, dict) and item.get("p"):
                    out.extend(self._patch(f"{path}/{item['p']}", item.get("v"), item.get("o")))
                    if out and out[-1].is_final:
                        break
            return out

        if path.endswith("thinking_content"):
            self.switch(Phase.THINKING)
            return self.text(value) if isinstance(value, str) else []
        if path.endswith("thinking_elapsed_secs"):
            self.switch(Phase.ANSWER)
            return []
        if path.endswith("/content"):
            self.switch(Phase.ANSWER)
            return self.text(value) if isinstance(value, str) else []
        if path.endswith("/status"):
            if value == "FINISHED":
                return [final_delta()]
            if value in ("FAILED", "ERROR", "CONTENT_FILTER"):
                return [error_delta(f"deepseek response {str(value).lower()}")]
        return []

    def linkage(self, event: ProviderEvent) -> Linkage | None:
        data = event.data
        msg_id = data.get("response_message_id")
        if msg_id is None:
            value = data.get("v")
            if data.get("p") is None and isinstance(value, dict):
                msg_id = (value.get("response") or {}).get("message_id")
        if msg_id is None:
            return None
        return Linkage(parent_id=str(msg_id))


class DeepSeekProvider(Provider):
    name = "deepseek"
    transport = "browser"
    sentinel = None
    stateful = True
    default_base_url = "https://chat.deepseek.com"
    family = "deepseek"

    @property
    def capture_url(self) -> str:
        """Prefix of the network response that carries the completion."""
        return self.base_url + COMPLETION_PATH

    def default_models(self) -> list[ModelInfo]:
        return [
            ModelInfo(
                name="deepseek-r1",
                display_name="DeepSeek R1 (WEB)",
                family="deepseek",
                description="DeepSeek reasoning model via chat.deepseek.com",
                tags=["deepseek", "reasoning"],
                thinking=True,
                context_length=65_536,
            ),
        ]

    def new_classifier(self, model: ModelInfo) -> PhaseClassifier:
        return DeepSeekClassifier()

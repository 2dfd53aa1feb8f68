"""Shared fixtures for webchat-bridge tests."""

from __future__ import annotations

import asyncio
import json

import pytest

from webchat_bridge.config import load_config
from webchat_bridge.types import BridgeConfig, RawFrame


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def sse(*payloads, event: str | None = None, done: bool = False) -> bytes:
    """Build an SSE body from JSON-able payloads."""
    lines = []
    if event:
        lines.append(f"event: {event}\n")
    for p in payloads:
        lines.append(f"data: {json.dumps(p)}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def parse_sse(body: bytes | list[bytes]) -> list:
    """Parse emitted SSE into chunk dicts, with ``"[DONE]"`` for the sentinel."""
    if isinstance(body, list):
        body = b"".join(body)
    out: list = []
    for block in body.decode().split("\n\n"):
        block = block.strip()
        if not block.startswith("data: "):
            continue
        data = block[len("data: "):]
        out.append(data if data == "[DONE]" else json.loads(data))
    return out


def contents(chunks: list) -> list[str]:
    """``delta.content`` of each chunk that has one."""
    return [
        c["choices"][0]["delta"]["content"]
        for c in chunks
        if isinstance(c, dict) and "content" in c["choices"][0]["delta"]
    ]


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSource:
    """Event source over canned frames; optionally never ends."""

    def __init__(self, frames: list[bytes | str], *, blob: bool = False, hang: bool = False) -> None:
        self.payloads = frames
        self.blob = blob
        self.hang = hang
        self.closed = False

    async def frames(self):
        for i, payload in enumerate(self.payloads, 1):
            yield RawFrame(source="fake", payload=payload, seq=i)
        if self.hang:
            await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True


class FakeBinding:
    """In-memory browser page that answers each prompt with a canned body."""

    def __init__(self, body: str, *, url: str, base64_encoded: bool = False) -> None:
        self.body = body
        self.url = url
        self.base64_encoded = base64_encoded
        self.prompts: list[str] = []
        self._response_cbs: list = []
        self._finished_cbs: list = []
        self._next_id = 0

    def on_network_response(self, callback) -> None:
        self._response_cbs.append(callback)

    def on_loading_finished(self, callback) -> None:
        self._finished_cbs.append(callback)

    def off(self, callback) -> None:
        if callback in self._response_cbs:
            self._response_cbs.remove(callback)
        if callback in self._finished_cbs:
            self._finished_cbs.remove(callback)

    @property
    def listeners(self) -> int:
        return len(self._response_cbs) + len(self._finished_cbs)

    async def submit_prompt(self, text: str) -> None:
        self.prompts.append(text)
        self._next_id += 1
        request_id = f"req-{self._next_id}"
        loop = asyncio.get_running_loop()
        loop.call_soon(self._deliver, request_id)

    def _deliver(self, request_id: str) -> None:
        # unrelated traffic first, then the completion
        for cb in list(self._response_cbs):
            cb({"requestId": "other", "response": {"url": "https://example.com/x", "headers": {}}})
            cb({
                "requestId": request_id,
                "response": {"url": self.url, "headers": {"Content-Type": "text/event-stream"}},
            })
        for cb in list(self._finished_cbs):
            cb({"requestId": "other"})
            cb({"requestId": request_id})

    async def get_response_body(self, request_id: str) -> tuple[str, bool]:
        return self.body, self.base64_encoded


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def openai_config() -> BridgeConfig:
    return load_config(config_dict={
        "provider": "gateway",
        "providers": {
            "gateway": {
                "type": "openai",
                "base_url": "https://llm.example.com/v1",
                "api_key": "sk-test",
                "models": [
                    "plain-model",
                    {"name": "reasoner", "upstream": "vendor/reasoner-1", "thinking": True},
                ],
            },
        },
        "stream": {"timeout_seconds": 5},
    })

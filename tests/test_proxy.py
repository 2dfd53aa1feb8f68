"""Tests for webchat_bridge.proxy.server."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from starlette.testclient import TestClient

from webchat_bridge.config import load_config
from webchat_bridge.proxy.metrics import ProxyMetrics
from webchat_bridge.proxy.server import create_app

from conftest import FakeBinding, contents, parse_sse, sse


def oai_chunk(content: str | None = None, reasoning: str | None = None, finish: str | None = None):
    delta: dict = {}
    if content is not None:
        delta["content"] = content
    if reasoning is not None:
        delta["reasoning_content"] = reasoning
    return {"choices": [{"index": 0, "delta": delta, "finish_reason": finish}]}


OPENAI_BODY = sse(
    oai_chunk(reasoning="let me think"),
    oai_chunk("hello!"),
    oai_chunk(finish="stop"),
    done=True,
)


class Upstream:
    """MockTransport handler recording requests, answering by path."""

    def __init__(self, routes: dict) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes[request.url.path]
        return route(request) if callable(route) else route

    def bodies(self, path: str) -> list[dict]:
        return [json.loads(r.content) for r in self.requests if r.url.path == path]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def _sse_response(body: bytes) -> httpx.Response:
    return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})


@pytest.fixture
def upstream() -> Upstream:
    return Upstream({"/v1/chat/completions": lambda r: _sse_response(OPENAI_BODY)})


@pytest.fixture
def app(openai_config, upstream, clock):
    return create_app(openai_config, client=upstream.client(), clock=clock)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def chat(client, *, stream=True, headers=None, **body):
    payload = {
        "model": "reasoner",
        "messages": [{"role": "user", "content": "hi"}],
        "stream": stream,
        **body,
    }
    return client.post("/v1/chat/completions", json=payload, headers=headers or {})


# ---------------------------------------------------------------------------
# Chat completions
# ---------------------------------------------------------------------------


class TestChatCompletionsStreaming:
    def test_thinking_then_answer(self, client, upstream):
        resp = chat(client)
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.headers["cache-control"] == "no-cache"
        assert resp.headers["x-accel-buffering"] == "no"

        chunks = parse_sse(resp.content)
        assert chunks[0]["choices"][0]["delta"]["role"] == "assistant"
        assert contents(chunks) == ["<thinking>\nlet me think\n</thinking>\n\n", "hello!"]
        assert chunks[-2]["choices"][0]["finish_reason"] == "stop"
        assert chunks[-1] == "[DONE]"
        assert all(c["model"] == "reasoner" for c in chunks[:-1])

        sent = upstream.bodies("/v1/chat/completions")[0]
        assert sent["model"] == "vendor/reasoner-1"
        assert sent["stream"] is True
        assert upstream.requests[0].headers["authorization"] == "Bearer sk-test"

    def test_params_forwarded(self, client, upstream):
        chat(client, temperature=0.3)
        assert upstream.bodies("/v1/chat/completions")[0]["temperature"] == 0.3

    def test_missing_model_uses_first_catalog_entry(self, client, upstream):
        resp = client.post("/v1/chat/completions", json={
            "messages": [{"role": "user", "content": "hi"}], "stream": True,
        })
        chunks = parse_sse(resp.content)
        assert chunks[0]["model"] == "plain-model"
        assert upstream.bodies("/v1/chat/completions")[0]["model"] == "plain-model"

    def test_upstream_http_error_is_error_chunk(self, openai_config, clock):
        upstream = Upstream({"/v1/chat/completions": httpx.Response(502, text="bad gateway")})
        metrics = ProxyMetrics()
        app = create_app(openai_config, client=upstream.client(), clock=clock, metrics=metrics)
        with TestClient(app) as c:
            chunks = parse_sse(chat(c).content)
        assert len(chunks) == 2
        text = chunks[0]["choices"][0]["delta"]["content"]
        assert text.startswith("Error: ") and "502" in text
        assert chunks[0]["choices"][0]["finish_reason"] == "stop"
        assert chunks[1] == "[DONE]"
        assert metrics.snapshot()["total_errors"] == 1

    def test_timeout_is_error_chunk(self, openai_config, clock):
        class Hanging(httpx.AsyncByteStream):
            closed = False

            async def __aiter__(self):
                yield sse(oai_chunk("par"))
                await asyncio.sleep(30)

            async def aclose(self):
                Hanging.closed = True

        openai_config.stream.timeout_seconds = 0.2
        upstream = Upstream({"/v1/chat/completions": lambda r: httpx.Response(200, stream=Hanging())})
        metrics = ProxyMetrics()
        app = create_app(openai_config, client=upstream.client(), clock=clock, metrics=metrics)
        with TestClient(app) as c:
            chunks = parse_sse(chat(c).content)
        assert contents(chunks) == ["par", "Error: upstream timed out after 0.2s"]
        stops = [ch for ch in chunks if isinstance(ch, dict) and ch["choices"][0]["finish_reason"]]
        assert len(stops) == 1
        assert chunks[-1] == "[DONE]"
        assert Hanging.closed
        assert metrics.snapshot()["total_timeouts"] == 1


class TestChatCompletionsNonStreaming:
    def test_returns_completion(self, client):
        resp = chat(client, stream=False)
        assert resp.status_code == 200
        data = resp.json()
        assert data["object"] == "chat.completion"
        assert data["model"] == "reasoner"
        assert data["choices"][0]["message"]["content"] == (
            "<thinking>\nlet me think\n</thinking>\n\nhello!"
        )
        assert data["usage"]["completion_tokens"] > 0


class TestValidation:
    def test_invalid_json(self, client):
        resp = client.post("/v1/chat/completions", content=b"{nope")
        assert resp.status_code == 400
        assert resp.json()["error"]["type"] == "invalid_request_error"

    def test_missing_messages(self, client):
        resp = client.post("/v1/chat/completions", json={"model": "x"})
        assert resp.status_code == 400
        assert "messages" in resp.json()["error"]["message"]

    def test_non_object_body(self, client):
        resp = client.post("/v1/chat/completions", json=["a"])
        assert resp.status_code == 400


class TestConflicts:
    def test_concurrent_turn_rejected(self, app, client):
        state = app.state.bridge
        session = asyncio.run(state.manager.resolve("conv-1"))
        asyncio.run(session.turn_lock.acquire())
        try:
            resp = chat(client, headers={"x-conversation-id": "conv-1"})
        finally:
            session.turn_lock.release()
        assert resp.status_code == 409
        assert resp.headers["retry-after"] == "1"
        assert resp.json()["error"]["type"] == "conflict_error"
        assert state.metrics.snapshot()["total_conflicts"] == 1

        # once the turn is over the same conversation is served again
        assert chat(client, headers={"x-conversation-id": "conv-1"}).status_code == 200

    @pytest.mark.asyncio
    async def test_overlapping_requests_one_rejected(self, openai_config, clock):
        async def slow(request):
            await asyncio.sleep(0.3)
            return _sse_response(OPENAI_BODY)

        upstream = Upstream({"/v1/chat/completions": slow})
        app = create_app(openai_config, client=upstream.client(), clock=clock)
        payload = {"model": "reasoner", "messages": [{"role": "user", "content": "hi"}], "stream": True}
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://bridge") as c:
            r1, r2 = await asyncio.gather(*(
                c.post("/v1/chat/completions", json=payload, headers={"x-conversation-id": "same"})
                for _ in range(2)
            ))
        by_status = {r.status_code: r for r in (r1, r2)}
        assert sorted(by_status) == [200, 409]
        assert by_status[409].headers["retry-after"] == "1"
        assert parse_sse(by_status[200].content)[-1] == "[DONE]"
        assert len(upstream.requests) == 1
        assert not app.state.bridge.registry.get("same").in_flight

    @pytest.mark.asyncio
    async def test_overlapping_requests_queued(self, openai_config, clock):
        async def slow(request):
            await asyncio.sleep(0.1)
            return _sse_response(OPENAI_BODY)

        openai_config.sessions.on_conflict = "queue"
        upstream = Upstream({"/v1/chat/completions": slow})
        app = create_app(openai_config, client=upstream.client(), clock=clock)
        payload = {"model": "reasoner", "messages": [{"role": "user", "content": "hi"}], "stream": False}
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://bridge") as c:
            responses = await asyncio.gather(*(
                c.post("/v1/chat/completions", json=payload, headers={"x-conversation-id": "same"})
                for _ in range(2)
            ))
        assert [r.status_code for r in responses] == [200, 200]
        assert len(upstream.requests) == 2
        assert app.state.bridge.registry.get("same").turns == 2

    def test_sessions_tracked_per_conversation(self, app, client):
        chat(client, headers={"x-conversation-id": "a"})
        chat(client, headers={"x-conversation-id": "b"})
        chat(client, headers={"x-conversation-id": "a"})
        registry = app.state.bridge.registry
        assert sorted(registry.keys()) == ["a", "b"]
        assert registry.get("a").turns == 2


# ---------------------------------------------------------------------------
# Stateful and browser providers
# ---------------------------------------------------------------------------


def qwen_body(response_id: str) -> bytes:
    return sse(
        {"response.created": {"chat_id": "chat-A", "response_id": response_id}},
        {"choices": [{"delta": {"content": "hi", "phase": "answer"}}]},
        {"choices": [{"delta": {"content": "", "phase": "answer", "status": "finished"}}]},
    )


class TestQwenConversation:
    def test_parent_id_threads_turns(self, clock):
        replies = iter(["r-1", "r-2"])
        upstream = Upstream({
            "/api/v2/chats/new": httpx.Response(200, json={"data": {"id": "chat-A"}}),
            "/api/v2/chat/completions": lambda r: _sse_response(qwen_body(next(replies))),
        })
        config = load_config(config_dict={"provider": "qwen"})
        app = create_app(config, client=upstream.client(), clock=clock)
        history = [{"role": "user", "content": "first"}]
        with TestClient(app) as c:
            r1 = c.post("/v1/chat/completions", json={
                "model": "qwen3-normal", "messages": history, "stream": True,
            })
            assert contents(parse_sse(r1.content)) == ["hi"]
            r2 = c.post("/v1/chat/completions", json={
                "model": "qwen3-normal",
                "messages": [*history, {"role": "assistant", "content": "hi"},
                             {"role": "user", "content": "second"}],
                "stream": True,
            })
            assert r2.status_code == 200

        assert len(upstream.bodies("/api/v2/chats/new")) == 1
        turns = upstream.bodies("/api/v2/chat/completions")
        assert turns[0]["parent_id"] is None
        assert turns[1]["parent_id"] == "r-1"
        assert turns[1]["chat_id"] == "chat-A"
        assert turns[1]["messages"][0]["content"] == "second"

    def test_chat_creation_failure_is_error_completion(self, clock):
        upstream = Upstream({"/api/v2/chats/new": httpx.Response(403, text="forbidden")})
        config = load_config(config_dict={"provider": "qwen"})
        app = create_app(config, client=upstream.client(), clock=clock)
        with TestClient(app) as c:
            resp = c.post("/v1/chat/completions", json={
                "messages": [{"role": "user", "content": "hi"}], "stream": False,
            })
        assert resp.status_code == 200
        assert resp.json()["choices"][0]["message"]["content"].startswith("Error: ")

    def test_chat_creation_connect_error_is_error_chunk(self, clock):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        upstream = Upstream({"/api/v2/chats/new": refuse})
        metrics = ProxyMetrics()
        config = load_config(config_dict={"provider": "qwen"})
        app = create_app(config, client=upstream.client(), clock=clock, metrics=metrics)
        with TestClient(app) as c:
            resp = c.post("/v1/chat/completions", json={
                "messages": [{"role": "user", "content": "hi"}], "stream": True,
            })
        assert resp.status_code == 200
        chunks = parse_sse(resp.content)
        assert "ConnectError" in contents(chunks)[0]
        assert chunks[-2]["choices"][0]["finish_reason"] == "stop"
        assert chunks[-1] == "[DONE]"
        assert metrics.snapshot()["total_errors"] == 1

    def test_chat_creation_non_json_body_is_error_chunk(self, clock):
        upstream = Upstream({
            "/api/chat": httpx.Response(200, text="<html>login</html>"),
        })
        config = load_config(config_dict={"provider": "kimi"})
        app = create_app(config, client=upstream.client(), clock=clock)
        with TestClient(app) as c:
            resp = c.post("/v1/chat/completions", json={
                "messages": [{"role": "user", "content": "hi"}], "stream": True,
            })
        assert resp.status_code == 200
        chunks = parse_sse(resp.content)
        assert contents(chunks)[0].startswith("Error: kimi chat creation failed")
        assert chunks[-1] == "[DONE]"

    def test_chat_creation_bounded_by_turn_timeout(self, clock):
        async def stall(request):
            await asyncio.sleep(5)
            return httpx.Response(200, json={"data": {"id": "late"}})

        upstream = Upstream({"/api/v2/chats/new": stall})
        config = load_config(config_dict={
            "provider": "qwen", "providers": {"qwen": {"timeout_seconds": 0.2}},
        })
        app = create_app(config, client=upstream.client(), clock=clock)
        with TestClient(app) as c:
            resp = c.post("/v1/chat/completions", json={
                "messages": [{"role": "user", "content": "hi"}], "stream": False,
            })
        content = resp.json()["choices"][0]["message"]["content"]
        assert content == "Error: qwen chat creation timed out after 0.2s"

    def test_fixed_chat_id_skips_creation(self, clock):
        upstream = Upstream({
            "/api/v2/chat/completions": lambda r: _sse_response(qwen_body("r-1")),
        })
        config = load_config(config_dict={
            "provider": "qwen", "providers": {"qwen": {"chat_id": "pinned"}},
        })
        app = create_app(config, client=upstream.client(), clock=clock)
        with TestClient(app) as c:
            c.post("/v1/chat/completions", json={"messages": [{"role": "user", "content": "x"}]})
        assert [r.url.path for r in upstream.requests] == ["/api/v2/chat/completions"]
        assert upstream.requests[0].url.params["chat_id"] == "pinned"


DEEPSEEK_BODY = (
    'data: {"p": "response/thinking_content", "v": "pondering"}\n\n'
    'data: {"p": "response/content", "v": "answer"}\n\n'
    'data: {"p": "response/status", "v": "FINISHED"}\n\n'
)


class TestBrowserProvider:
    def test_captured_blob_streamed(self, clock):
        config = load_config(config_dict={"provider": "deepseek"})
        binding = FakeBinding(DEEPSEEK_BODY, url="https://chat.deepseek.com/api/v0/chat/completion")
        app = create_app(config, binding=binding, clock=clock)
        with TestClient(app) as c:
            resp = c.post("/v1/chat/completions", json={
                "messages": [{"role": "user", "content": "why?"}], "stream": True,
            })
        chunks = parse_sse(resp.content)
        assert contents(chunks) == ["<thinking>\npondering\n</thinking>\n\n", "answer"]
        assert chunks[-1] == "[DONE]"
        assert binding.prompts == ["why?"]

    def test_missing_binding_is_error_chunk(self, clock):
        config = load_config(config_dict={"provider": "deepseek"})
        app = create_app(config, clock=clock)
        with TestClient(app) as c:
            resp = c.post("/v1/chat/completions", json={
                "messages": [{"role": "user", "content": "x"}], "stream": True,
            })
        chunks = parse_sse(resp.content)
        assert "browser binding" in chunks[0]["choices"][0]["delta"]["content"]
        assert chunks[-1] == "[DONE]"


# ---------------------------------------------------------------------------
# Discovery and stats
# ---------------------------------------------------------------------------


class TestCatalogEndpoints:
    def test_tags(self, client):
        for method in (client.get, client.post):
            models = method("/api/tags").json()["models"]
            assert [m["name"] for m in models] == ["plain-model", "reasoner"]
            assert models[0]["digest"].startswith("sha256:")

    def test_show(self, client):
        data = client.post("/api/show", json={"model": "reasoner"}).json()
        assert "thinking" in data["capabilities"]
        assert data["details"]["thinking_enabled"] is True
        assert data["template"] == "{{ .System }}{{ .Prompt }}"
        assert data["model_info"]["openai.context_length"] == 32768

    def test_show_tolerates_bad_body(self, client):
        resp = client.post("/api/show", content=b"not json")
        assert resp.status_code == 200

    def test_version(self, client):
        assert client.get("/api/version").json() == {"version": "0.6.4"}

    def test_openai_models(self, client):
        data = client.get("/v1/models").json()
        assert data["object"] == "list"
        assert [m["id"] for m in data["data"]] == ["plain-model", "reasoner"]
        assert data["data"][0]["owned_by"] == "gateway"


class TestStats:
    def test_counts_requests(self, client):
        chat(client)
        chat(client, stream=False)
        stats = client.get("/api/stats").json()
        assert stats["total_requests"] == 2
        assert stats["total_responses"] == 2
        assert stats["active_sessions"] == 1
        assert stats["est_completion_tokens"] > 0

"""HTTP front end: OpenAI/Ollama-compatible endpoints over one provider.

Callers speak the OpenAI chat-completions protocol (plus the Ollama
discovery endpoints editors probe first). Each request is resolved to an
upstream conversation, sent to the configured provider, and the provider's
stream is translated back through the decode/normalize/emit pipeline.

Usage:
    webchat-bridge serve --provider qwen --port 11434
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from datetime import datetime

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from ..config import load_config
from ..core.conversation import (
    ConversationManager,
    TurnLease,
    conversation_key,
    is_first_turn,
    message_text,
)
from ..core.emitter import OutputEmitter, collect_completion, estimate_tokens
from ..core.normalizer import Normalizer, error_delta
from ..core.pipeline import run_turn, stream_sse
from ..core.registry import SessionRegistry
from ..providers import Provider, build_provider
from ..types import (
    BridgeConfig,
    BridgeError,
    ConversationSession,
    Delta,
    ModelInfo,
    ProviderConfig,
    SessionConflictError,
    StreamTimeoutError,
    UpstreamError,
)
from ..upstream import BrowserBinding, BrowserEventSource, EventSource, HttpEventSource
from .catalog import ollama_show, ollama_tags, openai_models
from .metrics import ProxyMetrics

logger = logging.getLogger(__name__)

_STREAM_HEADERS = {
    "cache-control": "no-cache",
    "x-accel-buffering": "no",
}


def _error_body(message: str, etype: str = "invalid_request_error") -> dict:
    return {"error": {"message": message, "type": etype}}


# ---------------------------------------------------------------------------
# Per-listener state
# ---------------------------------------------------------------------------

class BridgeState:
    """Provider, sessions and collaborators behind one listener."""

    def __init__(
        self,
        config: BridgeConfig,
        provider: Provider,
        *,
        client: httpx.AsyncClient,
        metrics: ProxyMetrics,
        clock: Callable[[], float] = time.time,
        binding: BrowserBinding | None = None,
    ) -> None:
        self.config = config
        self.provider = provider
        self.client = client
        self.metrics = metrics
        self.clock = clock
        self.binding = binding
        self.registry = SessionRegistry(
            max_age=config.sessions.max_age_seconds,
            sweep_interval=config.sessions.sweep_interval_seconds,
            clock=clock,
        )
        self.manager = ConversationManager(
            self.registry,
            create_chat=self._create_chat if provider.stateful else None,
            fixed_chat_id=provider.config.chat_id,
            on_conflict=config.sessions.on_conflict,
        )
        # One page per browser provider: turns against it run one at a time.
        self.browser_lock = asyncio.Lock()

    @property
    def timeout(self) -> float:
        return self.provider.config.timeout_seconds or self.config.stream.timeout_seconds

    async def _create_chat(self, model: ModelInfo | None) -> str | None:
        label = self.provider.label
        try:
            return await asyncio.wait_for(
                self.provider.create_conversation(self.client, model), self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamError(
                f"{label} chat creation timed out after {self.timeout:g}s", provider=label,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            # transport failures and non-JSON bodies (e.g. an expired login page)
            raise UpstreamError(
                f"{label} chat creation failed: {e.__class__.__name__}: {e}", provider=label,
            ) from e

    def new_emitter(self, model_name: str) -> OutputEmitter:
        stream = self.config.stream
        return OutputEmitter(
            model_name,
            thinking_mode=stream.thinking_mode,
            thinking_open=stream.thinking_open,
            thinking_close=stream.thinking_close,
            clock=self.clock,
        )

    def open_source(
        self,
        session: ConversationSession,
        model: ModelInfo,
        messages: list[dict],
        params: dict,
    ) -> EventSource:
        provider = self.provider
        if provider.transport == "browser":
            if self.binding is None:
                raise UpstreamError(
                    f"{provider.label} needs a browser binding and none is attached",
                    provider=provider.label,
                )
            return BrowserEventSource(
                self.binding,
                provider.build_prompt(session, model, messages),
                capture_url=getattr(provider, "capture_url", provider.base_url),
                lock=self.browser_lock,
                provider=provider.label,
            )
        request = provider.build_request(self.client, session, model, messages, params)
        return HttpEventSource(self.client, request, provider=provider.label)

    def _record_failure(self, err: BridgeError) -> None:
        etype = "timeout" if isinstance(err, StreamTimeoutError) else "error"
        self.metrics.record({"type": etype, "provider": self.provider.label, "message": str(err)})

    async def turn_deltas(
        self,
        lease: TurnLease,
        model: ModelInfo,
        messages: list[dict],
        params: dict,
    ) -> AsyncGenerator[Delta, None]:
        """Run one upstream turn, releasing the turn lease when it ends."""
        session = lease.session
        try:
            try:
                source = self.open_source(session, model, messages, params)
            except UpstreamError as e:
                logger.warning("Cannot open upstream: %s", e)
                self._record_failure(e)
                yield error_delta(str(e))
                return

            async def on_linkage(link) -> None:
                await self.manager.advance(session, link.parent_id, chat_id=link.chat_id)

            deltas = run_turn(
                source,
                Normalizer(self.provider.new_classifier(model)),
                decoder=self.provider.new_decoder(),
                timeout=self.timeout,
                on_linkage=on_linkage,
                on_error=self._record_failure,
            )
            try:
                async for delta in deltas:
                    if delta.is_final and not delta.is_error:
                        await self.manager.complete_turn(session)
                    yield delta
            finally:
                await deltas.aclose()
        finally:
            lease.release()


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

class _TurnStreamingResponse(StreamingResponse):
    """StreamingResponse that gives the turn lease back once it is done.

    The body generator releases the lease too; this covers a client that
    disconnects before the body is ever iterated.
    """

    def __init__(self, content, lease: TurnLease, **kwargs) -> None:
        super().__init__(content, **kwargs)
        self.lease = lease

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.lease.release()


async def _handle_streaming(
    state: BridgeState,
    lease: TurnLease,
    model: ModelInfo,
    model_name: str,
    messages: list[dict],
    params: dict,
    prompt_tokens: int,
) -> StreamingResponse:
    session = lease.session
    emitter = state.new_emitter(model_name)
    t0 = time.monotonic()

    async def generate():
        first_token_ms: float | None = None
        frames = stream_sse(state.turn_deltas(lease, model, messages, params), emitter)
        try:
            async for frame in frames:
                if first_token_ms is None:
                    first_token_ms = round((time.monotonic() - t0) * 1000, 1)
                yield frame
        finally:
            await frames.aclose()
            lease.release()
            completion_tokens = (emitter.answer_chars + emitter.thinking_chars) // 4
            state.metrics.record({
                "type": "response",
                "provider": state.provider.label,
                "model": model_name,
                "session": session.key[:12],
                "streaming": True,
                "total_ms": round((time.monotonic() - t0) * 1000, 1),
                "first_token_ms": first_token_ms,
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "finished": emitter.finished,
            })
            logger.info(
                "Turn done: session=%s model=%s ~%d tokens in %.0fms",
                session.key[:12], model_name, completion_tokens,
                (time.monotonic() - t0) * 1000,
            )

    return _TurnStreamingResponse(
        generate(),
        lease,
        media_type="text/event-stream",
        headers=_STREAM_HEADERS,
    )


async def _handle_non_streaming(
    state: BridgeState,
    lease: TurnLease,
    model: ModelInfo,
    model_name: str,
    messages: list[dict],
    params: dict,
    prompt_text: str,
) -> JSONResponse:
    session = lease.session
    t0 = time.monotonic()
    deltas: list[Delta] = []
    try:
        async for delta in state.turn_deltas(lease, model, messages, params):
            deltas.append(delta)
    finally:
        lease.release()

    stream = state.config.stream
    completion = collect_completion(
        deltas,
        model_name,
        prompt_text=prompt_text,
        thinking_mode=stream.thinking_mode,
        thinking_open=stream.thinking_open,
        thinking_close=stream.thinking_close,
        clock=state.clock,
    )
    state.metrics.record({
        "type": "response",
        "provider": state.provider.label,
        "model": model_name,
        "session": session.key[:12],
        "streaming": False,
        "total_ms": round((time.monotonic() - t0) * 1000, 1),
        "prompt_tokens": completion["usage"]["prompt_tokens"],
        "completion_tokens": completion["usage"]["completion_tokens"],
        "finished": True,
    })
    return JSONResponse(completion)


def _conflict_response(state: BridgeState, err: SessionConflictError) -> JSONResponse:
    state.metrics.record({"type": "conflict", "session": err.key[:12]})
    logger.info("Rejecting concurrent turn for session %s", err.key[:12])
    return JSONResponse(
        _error_body(str(err), "conflict_error"),
        status_code=409,
        headers={"retry-after": "1"},
    )


def _upstream_failure(
    state: BridgeState,
    model_name: str,
    message: str,
    is_streaming: bool,
    prompt_text: str,
) -> StreamingResponse | JSONResponse:
    """Report a failure that happened before the turn could start."""
    if is_streaming:
        frames = state.new_emitter(model_name).emit(error_delta(message))
        return StreamingResponse(
            iter(frames), media_type="text/event-stream", headers=_STREAM_HEADERS,
        )
    return JSONResponse(collect_completion(
        [error_delta(message)], model_name, prompt_text=prompt_text, clock=state.clock,
    ))


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    config: BridgeConfig | None = None,
    *,
    provider: Provider | None = None,
    provider_name: str | None = None,
    clock: Callable[[], float] | None = None,
    client: httpx.AsyncClient | None = None,
    binding: BrowserBinding | None = None,
    metrics: ProxyMetrics | None = None,
    instance_label: str = "",
) -> FastAPI:
    """Create the FastAPI app for one provider.

    Args:
        config: Loaded configuration (auto-discovered when omitted).
        provider: Ready provider instance; built from config when omitted.
        provider_name: Config section to serve instead of ``config.provider``.
        clock: Wall clock for sessions and chunk timestamps.
        client: Shared httpx client; one is created (and closed) otherwise.
        binding: Browser binding for browser-transport providers.
        metrics: Shared metrics collector.
        instance_label: Shown in the app title in multi-instance mode.
    """
    config = config or load_config()
    if provider is None:
        name = provider_name or config.provider
        provider = build_provider(config.providers.get(name) or ProviderConfig(name=name))
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=httpx.Timeout(120.0, connect=10.0))
    metrics = metrics or ProxyMetrics()

    state = BridgeState(
        config,
        provider,
        client=client,
        metrics=metrics,
        clock=clock or time.time,
        binding=binding,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        sweeper = asyncio.create_task(state.registry.run_sweeper())
        yield
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        if owns_client:
            await client.aclose()

    _app_title = "webchat-bridge"
    if instance_label:
        _app_title += f" [{instance_label}]"
    app = FastAPI(title=_app_title, lifespan=lifespan)
    app.state.bridge = state
    app.state.instance_label = instance_label

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request):
        try:
            body = json.loads(await request.body())
        except (json.JSONDecodeError, UnicodeDecodeError):
            return JSONResponse(_error_body("request body is not valid JSON"), status_code=400)
        if not isinstance(body, dict):
            return JSONResponse(_error_body("request body must be a JSON object"), status_code=400)
        messages = body.get("messages")
        if not isinstance(messages, list) or not messages:
            return JSONResponse(_error_body("'messages' must be a non-empty list"), status_code=400)

        model = provider.find_model(body.get("model"))
        model_name = body.get("model") or model.name
        is_streaming = bool(body.get("stream", False))
        key = conversation_key(body, request.headers)
        reset = (
            config.sessions.reset_on_first_turn
            and provider.stateful
            and is_first_turn(messages)
        )
        prompt_text = "\n".join(message_text(m) for m in messages)

        _now = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        print(
            f"[{_now}] POST /v1/chat/completions model={model_name} "
            f"msgs={len(messages)} stream={is_streaming} session={key[:12]}",
            flush=True,
        )
        metrics.record({
            "type": "request",
            "provider": provider.label,
            "model": model_name,
            "session": key[:12],
            "messages": len(messages),
            "streaming": is_streaming,
        })

        # The turn lock is taken here, before any response exists, so a
        # concurrent turn is refused with 409 rather than an error chunk.
        try:
            lease = await state.manager.begin_turn(key, reset=reset, model=model)
        except SessionConflictError as e:
            return _conflict_response(state, e)
        except UpstreamError as e:
            logger.warning("Could not start upstream conversation: %s", e)
            state._record_failure(e)
            return _upstream_failure(state, model_name, str(e), is_streaming, prompt_text)

        if is_streaming:
            return await _handle_streaming(
                state, lease, model, model_name, messages, body,
                prompt_tokens=estimate_tokens(prompt_text),
            )
        return await _handle_non_streaming(
            state, lease, model, model_name, messages, body, prompt_text,
        )

    @app.api_route("/api/tags", methods=["GET", "POST"])
    async def api_tags():
        return JSONResponse(ollama_tags(provider))

    @app.post("/api/show")
    async def api_show(request: Request):
        try:
            body = json.loads(await request.body() or b"{}")
        except json.JSONDecodeError:
            body = {}
        name = (body.get("model") or body.get("name")) if isinstance(body, dict) else None
        return JSONResponse(ollama_show(provider, name))

    @app.get("/api/version")
    async def api_version():
        return JSONResponse({"version": config.server.version})

    @app.get("/v1/models")
    async def list_models():
        return JSONResponse(openai_models(provider))

    @app.get("/api/stats")
    async def api_stats():
        return JSONResponse(metrics.snapshot(active_sessions=len(state.registry)))

    return app

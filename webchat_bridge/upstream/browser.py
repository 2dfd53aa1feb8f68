"""Browser event source: captured page traffic as RawFrames.

Browser-mediated providers are driven by typing into a live chat page. The
completion is read from the page's own network traffic: the binding reports
responses and finished loads, and once the completion request finishes its
body is fetched and delivered as a single blob frame.

No concrete binding ships with this package. Anything that satisfies
:class:`BrowserBinding` (a CDP session, a Playwright page wrapper, a test
fake) can be injected.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from collections.abc import AsyncIterator, Callable
from typing import Protocol, runtime_checkable

from ..types import RawFrame, UpstreamError

logger = logging.getLogger(__name__)

EVENT_STREAM = "text/event-stream"


@runtime_checkable
class BrowserBinding(Protocol):
    """Minimal surface of a controllable browser page."""

    def on_network_response(self, callback: Callable[[dict], None]) -> None: ...

    def on_loading_finished(self, callback: Callable[[dict], None]) -> None: ...

    def off(self, callback: Callable[[dict], None]) -> None: ...

    async def get_response_body(self, request_id: str) -> tuple[str, bool]: ...

    async def submit_prompt(self, text: str) -> None: ...


class BrowserEventSource:
    """Submit one prompt and deliver the captured completion body.

    *lock* is shared by every turn against the same page; it is held from
    prompt submission until the source is closed, so concurrent requests
    queue instead of interleaving their input.
    """

    blob = True

    def __init__(
        self,
        binding: BrowserBinding,
        prompt: str,
        *,
        capture_url: str,
        lock: asyncio.Lock,
        provider: str = "",
    ) -> None:
        self.binding = binding
        self.prompt = prompt
        self.capture_url = capture_url
        self.lock = lock
        self.provider = provider
        self._watched: set[str] = set()
        self._finished: asyncio.Queue[str] = asyncio.Queue()
        self._attached = False
        self._holds_lock = False
        self.closed = False

    # -- binding callbacks ---------------------------------------------------

    def _on_response(self, params: dict) -> None:
        response = params.get("response") or {}
        url = response.get("url", "")
        headers = {k.lower(): v for k, v in (response.get("headers") or {}).items()}
        if url.startswith(self.capture_url) and EVENT_STREAM in headers.get("content-type", ""):
            self._watched.add(params.get("requestId", ""))

    def _on_finished(self, params: dict) -> None:
        request_id = params.get("requestId", "")
        if request_id in self._watched:
            self._watched.discard(request_id)
            self._finished.put_nowait(request_id)

    # -- iteration -----------------------------------------------------------

    async def frames(self) -> AsyncIterator[RawFrame]:
        await self.lock.acquire()
        self._holds_lock = True
        try:
            self.binding.on_network_response(self._on_response)
            self.binding.on_loading_finished(self._on_finished)
            self._attached = True

            try:
                await self.binding.submit_prompt(self.prompt)
            except Exception as e:
                raise UpstreamError(
                    f"could not submit prompt to {self.provider} page: {e}",
                    provider=self.provider,
                ) from e

            request_id = await self._finished.get()
            try:
                body, base64_encoded = await self.binding.get_response_body(request_id)
            except Exception as e:
                raise UpstreamError(
                    f"could not read {self.provider} response body: {e}",
                    provider=self.provider,
                ) from e

            text = (
                base64.b64decode(body).decode("utf-8", errors="replace")
                if base64_encoded else body
            )
            logger.debug("Captured %d chars from %s", len(text), self.provider)
            yield RawFrame(source=self.provider, payload=text, seq=1)
        finally:
            self._release()

    def _release(self) -> None:
        if self._attached:
            self.binding.off(self._on_response)
            self.binding.off(self._on_finished)
            self._attached = False
        if self._holds_lock:
            self._holds_lock = False
            self.lock.release()

    async def aclose(self) -> None:
        self.closed = True
        self._release()

"""HTTP event source: one streaming upstream response as RawFrames."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

import httpx

from ..types import RawFrame, UpstreamError

logger = logging.getLogger(__name__)


class HttpEventSource:
    """Send a prepared request and yield its body chunks as they arrive.

    The connection is opened lazily on the first iteration, so the turn
    deadline covers connect and response headers as well as the body.
    Non-2xx responses and transport failures become :class:`UpstreamError`.
    """

    blob = False

    def __init__(
        self,
        client: httpx.AsyncClient,
        request: httpx.Request,
        provider: str = "",
    ) -> None:
        self.client = client
        self.request = request
        self.provider = provider
        self._response: httpx.Response | None = None
        self.closed = False
        self.status_code: int | None = None

    async def frames(self) -> AsyncIterator[RawFrame]:
        try:
            self._response = await self.client.send(self.request, stream=True)
        except httpx.HTTPError as e:
            raise UpstreamError(
                f"{self.provider} request failed: {e.__class__.__name__}: {e}",
                provider=self.provider,
            ) from e

        resp = self._response
        self.status_code = resp.status_code
        if resp.status_code >= 300:
            try:
                body = await resp.aread()
            except httpx.HTTPError as e:
                raise UpstreamError(
                    f"{self.provider} returned HTTP {resp.status_code} "
                    f"(body unreadable: {e.__class__.__name__}: {e})",
                    provider=self.provider,
                    status_code=resp.status_code,
                ) from e
            finally:
                await self.aclose()
            text = body.decode("utf-8", errors="replace")[:200]
            logger.warning(
                "%s upstream returned HTTP %d: %s", self.provider, resp.status_code, text,
            )
            raise UpstreamError(
                f"{self.provider} returned HTTP {resp.status_code}: {text}",
                provider=self.provider,
                status_code=resp.status_code,
            )

        seq = 0
        try:
            async for chunk in resp.aiter_bytes():
                seq += 1
                yield RawFrame(source=self.provider, payload=chunk, seq=seq)
        except httpx.HTTPError as e:
            raise UpstreamError(
                f"{self.provider} stream interrupted: {e.__class__.__name__}: {e}",
                provider=self.provider,
            ) from e

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._response is not None:
            await self._response.aclose()

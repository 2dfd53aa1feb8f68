"""One upstream turn, end to end: frames -> events -> Deltas -> SSE.

:func:`run_turn` drives an event source through the decoder and normalizer
under a single overall deadline and reports linkage as it is seen.
Whatever goes wrong upstream (HTTP errors, a dead page, a timeout) ends the
Delta stream with exactly one error Delta; nothing is raised to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable

from ..types import (
    BridgeError,
    Delta,
    Linkage,
    ProviderEvent,
    StreamTimeoutError,
    UpstreamError,
)
from ..upstream import EventSource
from .decoder import FrameDecoder, decode_frames
from .emitter import OutputEmitter
from .normalizer import Normalizer, error_delta

logger = logging.getLogger(__name__)

LinkageCallback = Callable[[Linkage], Awaitable[None]]


async def run_turn(
    source: EventSource,
    normalizer: Normalizer,
    *,
    decoder: FrameDecoder | None = None,
    timeout: float = 30.0,
    on_linkage: LinkageCallback | None = None,
    on_error: Callable[[BridgeError], None] | None = None,
) -> AsyncGenerator[Delta, None]:
    """Yield the Deltas of one turn in upstream arrival order.

    The stream always ends with exactly one final Delta. The source is
    closed on every exit path, including the caller abandoning iteration.
    """
    events = decode_frames(source.frames(), decoder)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    async def next_event() -> ProviderEvent | None:
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise StreamTimeoutError(timeout)
        try:
            return await asyncio.wait_for(events.__anext__(), remaining)
        except StopAsyncIteration:
            return None
        except asyncio.TimeoutError:
            raise StreamTimeoutError(timeout) from None

    async def link(event: ProviderEvent) -> None:
        found = normalizer.linkage(event)
        if found is not None and on_linkage is not None:
            await on_linkage(found)

    try:
        if source.blob:
            collected: list[ProviderEvent] = []
            while (event := await next_event()) is not None:
                await link(event)
                collected.append(event)
            for delta in normalizer.coalesce(collected):
                yield delta
            return

        while not normalizer.finished:
            event = await next_event()
            if event is None:
                break
            await link(event)
            for delta in normalizer.feed(event):
                yield delta
        for delta in normalizer.finish():
            yield delta
    except StreamTimeoutError as e:
        logger.warning("Upstream turn timed out after %gs", e.seconds)
        if on_error is not None:
            on_error(e)
        for delta in normalizer.fail(str(e)):
            yield delta
    except UpstreamError as e:
        logger.warning("Upstream error: %s", e)
        if on_error is not None:
            on_error(e)
        for delta in normalizer.fail(str(e)):
            yield delta
    finally:
        await events.aclose()
        await source.aclose()


async def stream_sse(
    deltas: AsyncGenerator[Delta, None],
    emitter: OutputEmitter,
) -> AsyncIterator[bytes]:
    """Render a Delta stream as SSE frames, closing it exactly once."""
    try:
        async for delta in deltas:
            for frame in emitter.emit(delta):
                yield frame
            if emitter.finished:
                break
    except BridgeError as e:
        logger.warning("Turn aborted: %s", e)
        for frame in emitter.emit(error_delta(str(e))):
            yield frame
    finally:
        await deltas.aclose()
    for frame in emitter.finish():
        yield frame

"""Frame decoder: raw upstream frames -> ProviderEvents.

Upstreams deliver SSE bodies in arbitrary chunks. A ``data:`` line may be
split across two frames, and so may a multi-byte UTF-8 character, so the
decoder keeps both a text remainder and an incremental byte decoder between
calls to :meth:`FrameDecoder.feed`.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator

from ..types import DecodeError, ProviderEvent, RawFrame

logger = logging.getLogger(__name__)

DEFAULT_SENTINEL = "[DONE]"


class FrameDecoder:
    """Incremental SSE line decoder for one upstream response.

    ``feed()`` returns the events completed by a frame, in order. Once the
    completion sentinel is seen the decoder is closed and ignores all
    further input.
    """

    def __init__(self, sentinel: str | None = DEFAULT_SENTINEL) -> None:
        self.sentinel = sentinel
        self._bytes = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buf = ""
        self._event = ""
        self._event_has_data = False
        self._seq = 0
        self.closed = False
        self.dropped = 0

    def feed(self, frame: RawFrame | bytes | str) -> list[ProviderEvent]:
        if self.closed:
            return []
        payload = frame.payload if isinstance(frame, RawFrame) else frame
        if isinstance(payload, bytes):
            text = self._bytes.decode(payload)
        else:
            text = payload
        self._buf += text

        events: list[ProviderEvent] = []
        while not self.closed:
            idx = self._buf.find("\n")
            if idx == -1:
                break
            line = self._buf[:idx]
            self._buf = self._buf[idx + 1:]
            self._handle_line(line.rstrip("\r"), events)
        return events

    def flush(self) -> list[ProviderEvent]:
        """Process whatever is left once the transport has ended."""
        if self.closed:
            return []
        tail = self._bytes.decode(b"", final=True)
        self._buf += tail
        events: list[ProviderEvent] = []
        if self._buf:
            line, self._buf = self._buf, ""
            self._handle_line(line.rstrip("\r"), events)
        if not self.closed:
            self._handle_line("", events)
        return events

    # ------------------------------------------------------------------
    # Line handling
    # ------------------------------------------------------------------

    def _handle_line(self, line: str, out: list[ProviderEvent]) -> None:
        if not line:
            # Blank line ends the SSE event. A named event with no data line
            # is still meaningful (e.g. ``event: close``).
            if self._event and not self._event_has_data:
                out.append(self._make_event({}))
            self._event = ""
            self._event_has_data = False
            return

        if line.startswith("event:"):
            self._event = line[6:].strip()
            return

        if not line.startswith("data:"):
            # comments, id:, retry:
            return

        self._event_has_data = True
        data_str = line[5:]
        if data_str.startswith(" "):
            data_str = data_str[1:]
        data_str = data_str.strip()
        if not data_str:
            return

        if self.sentinel is not None and data_str == self.sentinel:
            out.append(self._make_event({}, done=True))
            self.closed = True
            return

        try:
            out.append(self._make_event(_parse_payload(data_str)))
        except DecodeError as e:
            self.dropped += 1
            logger.debug("Dropping undecodable frame: %s", e)

    def _make_event(self, data: dict, done: bool = False) -> ProviderEvent:
        self._seq += 1
        return ProviderEvent(data=data, event=self._event, seq=self._seq, done=done)


def _parse_payload(data_str: str) -> dict:
    try:
        data = json.loads(data_str)
    except json.JSONDecodeError as e:
        raise DecodeError(f"malformed JSON ({e.msg}): {data_str[:80]!r}") from e
    if not isinstance(data, dict):
        raise DecodeError(f"expected a JSON object, got {type(data).__name__}")
    return data


async def decode_frames(
    frames: AsyncIterable[RawFrame],
    decoder: FrameDecoder | None = None,
) -> AsyncIterator[ProviderEvent]:
    """Lazily decode an async stream of frames into ProviderEvents."""
    decoder = decoder or FrameDecoder()
    async for frame in frames:
        for event in decoder.feed(frame):
            yield event
        if decoder.closed:
            return
    for event in decoder.flush():
        yield event

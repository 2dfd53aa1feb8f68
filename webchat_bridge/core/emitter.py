"""Output emitter: canonical Deltas -> OpenAI-style streaming chunks.

State machine::

    NOT_STARTED --first text--> STREAMING --final Delta--> FINISHED

The first chunk that carries text also carries ``role: "assistant"``. A
final Delta produces one ``finish_reason: "stop"`` chunk followed by the
``data: [DONE]`` sentinel; anything written after that is ignored.
"""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import Callable, Iterable
from enum import Enum

from ..types import Delta, Phase

DONE_SSE = b"data: [DONE]\n\n"

DEFAULT_THINKING_OPEN = "<thinking>\n"
DEFAULT_THINKING_CLOSE = "\n</thinking>\n\n"


class EmitterState(str, Enum):
    NOT_STARTED = "not_started"
    STREAMING = "streaming"
    FINISHED = "finished"


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex[:24]}"


def to_sse(chunk: dict) -> bytes:
    """Render one chunk as an SSE ``data:`` frame."""
    return f"data: {json.dumps(chunk, ensure_ascii=False)}\n\n".encode()


def estimate_tokens(text: str) -> int:
    return len(text) // 4


class OutputEmitter:
    """Turn the Deltas of one stream into SSE frames.

    ``thinking_mode`` controls how reasoning text reaches the caller:

    - ``buffered``: collected and sent as one wrapped chunk right before the
      first answer text (or the stop chunk);
    - ``stream``: sent as it arrives, the open delimiter on the first
      thinking chunk and the close delimiter on the first answer chunk;
    - ``hidden``: dropped.
    """

    def __init__(
        self,
        model: str,
        *,
        thinking_mode: str = "buffered",
        thinking_open: str = DEFAULT_THINKING_OPEN,
        thinking_close: str = DEFAULT_THINKING_CLOSE,
        clock: Callable[[], float] = time.time,
        completion_id: str | None = None,
    ) -> None:
        self.model = model
        self.thinking_mode = thinking_mode
        self.thinking_open = thinking_open
        self.thinking_close = thinking_close
        self.clock = clock
        self.id = completion_id or new_completion_id()
        self.created = int(clock())
        self.state = EmitterState.NOT_STARTED
        self._thinking_buf: list[str] = []
        self._thinking_open = False   # stream mode: open delimiter sent
        self.answer_chars = 0
        self.thinking_chars = 0

    @property
    def finished(self) -> bool:
        return self.state is EmitterState.FINISHED

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def emit(self, delta: Delta) -> list[bytes]:
        """Return the SSE frames produced by *delta* (possibly none)."""
        if self.finished:
            return []
        if delta.is_final:
            return self._finalize(delta)
        if delta.phase is Phase.THINKING:
            return self._thinking(delta.text)
        return self._answer(delta.text)

    def finish(self) -> list[bytes]:
        """Close a stream that ended without a final Delta. Idempotent."""
        if self.finished:
            return []
        return self._finalize(Delta(Phase.ANSWER, "", is_final=True))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _thinking(self, text: str) -> list[bytes]:
        if not text or self.thinking_mode == "hidden":
            return []
        self.thinking_chars += len(text)
        if self.thinking_mode == "buffered":
            self._thinking_buf.append(text)
            return []
        if not self._thinking_open:
            self._thinking_open = True
            text = self.thinking_open + text
        return [self._content_chunk(text)]

    def _answer(self, text: str) -> list[bytes]:
        if not text:
            return []
        self.answer_chars += len(text)
        frames: list[bytes] = []
        if self._pending_flush:
            frames.append(self._flush_buffer())
        frames.append(self._content_chunk(self._close_thinking() + text))
        return frames

    def _finalize(self, delta: Delta) -> list[bytes]:
        frames: list[bytes] = []
        if self._pending_flush:
            frames.append(self._flush_buffer())
        closing = self._close_thinking()

        content = closing + delta.text
        if delta.text:
            self.answer_chars += len(delta.text)
        frames.append(self._chunk(content, finish_reason="stop"))
        frames.append(DONE_SSE)
        self.state = EmitterState.FINISHED
        return frames

    @property
    def _pending_flush(self) -> bool:
        return self.thinking_mode == "buffered" and bool(self._thinking_buf)

    def _flush_buffer(self) -> bytes:
        text = "".join(self._thinking_buf)
        self._thinking_buf.clear()
        return self._content_chunk(self.thinking_open + text + self.thinking_close)

    def _close_thinking(self) -> str:
        if self._thinking_open:
            self._thinking_open = False
            return self.thinking_close
        return ""

    def _content_chunk(self, text: str) -> bytes:
        return self._chunk(text, finish_reason=None)

    def _chunk(self, text: str, finish_reason: str | None) -> bytes:
        delta: dict = {}
        if text:
            if self.state is EmitterState.NOT_STARTED:
                delta["role"] = "assistant"
                self.state = EmitterState.STREAMING
            delta["content"] = text
        chunk = {
            "id": self.id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [{
                "index": 0,
                "delta": delta,
                "finish_reason": finish_reason,
            }],
        }
        return to_sse(chunk)


def collect_completion(
    deltas: Iterable[Delta],
    model: str,
    *,
    prompt_text: str = "",
    thinking_mode: str = "buffered",
    thinking_open: str = DEFAULT_THINKING_OPEN,
    thinking_close: str = DEFAULT_THINKING_CLOSE,
    clock: Callable[[], float] = time.time,
) -> dict:
    """Aggregate a whole turn into one non-streaming ``chat.completion``."""
    thinking: list[str] = []
    answer: list[str] = []
    for delta in deltas:
        if delta.phase is Phase.THINKING and not delta.is_final:
            thinking.append(delta.text)
        else:
            answer.append(delta.text)
        if delta.is_final:
            break

    content = "".join(answer)
    reasoning = "".join(thinking)
    if reasoning and thinking_mode != "hidden":
        content = thinking_open + reasoning + thinking_close + content

    prompt_tokens = estimate_tokens(prompt_text)
    completion_tokens = estimate_tokens(content)
    return {
        "id": new_completion_id(),
        "object": "chat.completion",
        "created": int(clock()),
        "model": model,
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": content},
            "finish_reason": "stop",
        }],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }

"""Upstream event sources: where RawFrames come from."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol

from ..types import RawFrame
from .browser import BrowserBinding, BrowserEventSource
from .http import HttpEventSource


class EventSource(Protocol):
    """One upstream turn as an async stream of frames.

    ``blob`` sources deliver the whole turn in one frame once it is
    complete; streaming sources deliver frames as they arrive.
    """

    blob: bool

    def frames(self) -> AsyncIterator[RawFrame]: ...

    async def aclose(self) -> None: ...


__all__ = ["BrowserBinding", "BrowserEventSource", "EventSource", "HttpEventSource"]

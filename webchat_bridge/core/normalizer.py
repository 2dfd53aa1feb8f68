"""Phase classification and delta normalization.

Every upstream has its own way of saying "this text is reasoning", "the
answer starts here" and "the turn is over". A :class:`PhaseClassifier`
subclass knows one provider's schema and turns a single ProviderEvent into
zero or more Deltas. The :class:`Normalizer` wraps a classifier and enforces
the stream-level rules that hold for every provider:

- at most one final Delta per stream, and nothing after it;
- the decoder's completion sentinel becomes the final Delta when the
  classifier has not already produced one;
- empty non-final text is dropped.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable

from ..types import Delta, Linkage, Phase, ProviderEvent

logger = logging.getLogger(__name__)


def final_delta() -> Delta:
    return Delta(Phase.ANSWER, "", is_final=True)


def error_delta(message: str) -> Delta:
    return Delta(Phase.ANSWER, f"Error: {message}", is_final=True, is_error=True)


# ---------------------------------------------------------------------------
# Classifier ABC
# ---------------------------------------------------------------------------

class PhaseClassifier(ABC):
    """Per-stream, per-provider event classifier.

    Holds the phase flag and any parse state a provider needs (e.g. the
    last JSON path for path-less DeepSeek patches). One instance serves
    exactly one upstream response.
    """

    def __init__(self, initial_phase: Phase = Phase.ANSWER) -> None:
        self.phase = initial_phase

    @abstractmethod
    def classify(self, event: ProviderEvent) -> list[Delta]:
        """Map one provider event to Deltas (possibly none)."""

    def linkage(self, event: ProviderEvent) -> Linkage | None:
        """Return linkage identifiers carried by *event*, if any."""
        return None

    # -- helpers for subclasses --------------------------------------------

    def text(self, text: str) -> list[Delta]:
        """Emit *text* in the current phase."""
        if not text:
            return []
        return [Delta(self.phase, text)]

    def switch(self, phase: Phase) -> None:
        if phase != self.phase:
            logger.debug("phase %s -> %s", self.phase.value, phase.value)
            self.phase = phase


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------

class Normalizer:
    """Apply stream-level invariants on top of a provider classifier."""

    def __init__(self, classifier: PhaseClassifier) -> None:
        self.classifier = classifier
        self.finished = False

    @property
    def phase(self) -> Phase:
        return self.classifier.phase

    def feed(self, event: ProviderEvent) -> list[Delta]:
        if self.finished:
            return []
        if event.done:
            self.finished = True
            return [final_delta()]

        out: list[Delta] = []
        for delta in self.classifier.classify(event):
            if delta.is_final:
                out.append(delta)
                self.finished = True
                break
            if delta.text:
                out.append(delta)
        return out

    def linkage(self, event: ProviderEvent) -> Linkage | None:
        return self.classifier.linkage(event)

    def fail(self, message: str) -> list[Delta]:
        """Close the stream with a single error Delta."""
        if self.finished:
            return []
        self.finished = True
        return [error_delta(message)]

    def finish(self) -> list[Delta]:
        """Close the stream when the transport ended without a terminal event."""
        if self.finished:
            return []
        self.finished = True
        return [final_delta()]

    def coalesce(self, events: Iterable[ProviderEvent]) -> list[Delta]:
        """Normalize a whole turn delivered at once.

        Consecutive same-phase text is merged, so the result is one
        non-final Delta per phase run followed by exactly one final Delta.
        """
        merged: list[Delta] = []
        terminal: Delta | None = None
        for event in events:
            for delta in self.feed(event):
                if delta.is_final:
                    terminal = delta
                elif merged and merged[-1].phase == delta.phase:
                    merged[-1] = Delta(delta.phase, merged[-1].text + delta.text)
                else:
                    merged.append(delta)
            if terminal is not None:
                break
        if terminal is None:
            self.finished = True
            terminal = final_delta()
        return [*merged, terminal]

"""Transcript accumulator for the current voice session."""

from __future__ import annotations

import logging
import threading

from voice_order_agent.errors import TranscriptFinalizedError

logger = logging.getLogger(__name__)


class TranscriptAccumulator:
    """
    Append-only transcript buffer.

    Fragments are kept in the order they are appended. Once finalized the
    buffer is read-only; appending afterwards indicates a lifecycle bug
    upstream and raises TranscriptFinalizedError.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._fragments: list[str] = []
        self._finalized = False

    @property
    def finalized(self) -> bool:
        return self._finalized

    def append(self, fragment: str) -> None:
        """Append one recognized text fragment."""
        with self._lock:
            if self._finalized:
                logger.error("[VOICE][TRANSCRIPT] append after finalize fragment=%r", fragment[:40])
                raise TranscriptFinalizedError("Transcript already finalized")
            if fragment:
                self._fragments.append(fragment)

    def finalize(self) -> str:
        """Mark the transcript finalized and return its full text."""
        with self._lock:
            self._finalized = True
            return "".join(self._fragments)


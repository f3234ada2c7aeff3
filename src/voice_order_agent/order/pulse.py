"""Transient "just confirmed" markers for recently updated order lines."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

DEFAULT_PULSE_WINDOW_S = 1.5


class ConfirmationPulseScheduler:
    """
    Tracks which catalog items were updated within the last window.

    Expiry is passive: stale pulses are pruned on tick() and whenever
    active_ids() is read. Pulsing an id that is already active restarts its
    window instead of stacking a second expiry.
    """

    def __init__(
        self,
        window_s: float = DEFAULT_PULSE_WINDOW_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window_s = window_s
        self._clock = clock
        self._lock = threading.Lock()
        self._expires_at: dict[int, float] = {}

    @property
    def window_s(self) -> float:
        return self._window_s

    def pulse(self, catalog_id: int) -> float:
        """Start (or restart) the confirmation window for an item; returns its expiry."""
        with self._lock:
            expires_at = self._clock() + self._window_s
            self._expires_at[catalog_id] = expires_at
            return expires_at

    def active_ids(self) -> frozenset[int]:
        """Snapshot of ids whose window has not yet elapsed."""
        with self._lock:
            self._prune_locked(self._clock())
            return frozenset(self._expires_at)

    def tick(self) -> list[int]:
        """Drop expired pulses and return the ids that expired."""
        with self._lock:
            return self._prune_locked(self._clock())

    def _prune_locked(self, now: float) -> list[int]:
        expired = [cid for cid, expires_at in self._expires_at.items() if expires_at <= now]
        for cid in expired:
            del self._expires_at[cid]
        return expired

"""Speaker playback channel.

Decoded buffers from the live session are scheduled back to back: each one
starts at max(next_start_offset, now) and pushes next_start_offset forward by
its duration, so playback never overlaps even when audio arrives faster than
real time. interrupt() (barge-in) drops everything in flight.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from voice_order_agent.errors import DeviceUnavailable
from voice_order_agent.voice.capture import require_sounddevice
from voice_order_agent.voice.codec import DecodedAudio, decode_frame

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlaybackConfig:
    sample_rate: int = 24000
    channels: int = 1
    dtype: str = "float32"


@dataclass(eq=False)
class ScheduledBuffer:
    """One buffer placed on the playback timeline."""

    buffer_id: int
    start_at: float
    duration_s: float
    samples: np.ndarray  # (frames, channels), ready for the output stream
    cursor: int = field(default=0)

    @property
    def end_at(self) -> float:
        return self.start_at + self.duration_s

    @property
    def remaining(self) -> int:
        return int(self.samples.shape[0]) - self.cursor


class PlaybackQueue:
    """
    Playback timeline bookkeeping.

    next_start_offset only moves forward, except on interrupt(), which clears
    the active buffers and resets it to the current clock time.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._ids = itertools.count(1)
        self.next_start_offset: float = 0.0
        self.active_buffers: set[ScheduledBuffer] = set()
        self.pending: deque[ScheduledBuffer] = deque()

    def schedule(self, samples: np.ndarray, duration_s: float) -> ScheduledBuffer:
        start_at = max(self.next_start_offset, self._clock())
        handle = ScheduledBuffer(
            buffer_id=next(self._ids),
            start_at=start_at,
            duration_s=duration_s,
            samples=samples,
        )
        self.next_start_offset = start_at + duration_s
        self.active_buffers.add(handle)
        self.pending.append(handle)
        return handle

    def interrupt(self) -> int:
        stopped = len(self.active_buffers)
        self.active_buffers.clear()
        self.pending.clear()
        self.next_start_offset = self._clock()
        return stopped

    def prune(self) -> None:
        """Forget buffers whose scheduled end has passed."""
        now = self._clock()
        for handle in [h for h in self.active_buffers if h.end_at <= now]:
            self.active_buffers.discard(handle)

    def fill(self, out: np.ndarray) -> int:
        """Copy pending samples into out sequentially; returns frames written."""
        written = 0
        wanted = int(out.shape[0])
        while written < wanted and self.pending:
            head = self.pending[0]
            n = min(head.remaining, wanted - written)
            out[written : written + n] = head.samples[head.cursor : head.cursor + n]
            head.cursor += n
            written += n
            if head.remaining <= 0:
                self.pending.popleft()
                self.active_buffers.discard(head)
        return written


class AudioPlaybackChannel:
    def __init__(
        self,
        config: PlaybackConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        stream_factory: Callable[..., Any] | None = None,
    ) -> None:
        self._config = config or PlaybackConfig()
        self._stream_factory = stream_factory
        self._lock = threading.Lock()
        self._queue = PlaybackQueue(clock)
        self._stream = None

    @property
    def config(self) -> PlaybackConfig:
        return self._config

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    @property
    def next_start_offset(self) -> float:
        with self._lock:
            return self._queue.next_start_offset

    @property
    def active_buffers(self) -> frozenset[ScheduledBuffer]:
        with self._lock:
            self._queue.prune()
            return frozenset(self._queue.active_buffers)

    def open(self) -> "AudioPlaybackChannel":
        """Open the output device.

        Raises:
            DeviceUnavailable: No output device could be opened.
        """
        if self._stream is not None:
            return self

        factory = self._stream_factory
        if factory is None:
            factory = require_sounddevice().OutputStream

        stream = None
        try:
            stream = factory(
                samplerate=self._config.sample_rate,
                channels=self._config.channels,
                dtype=self._config.dtype,
                callback=self._callback,
            )
            stream.start()
        except Exception as e:
            if stream is not None:
                try:
                    stream.close()
                except Exception:
                    logger.debug("[VOICE][PLAYBACK] close after failed start raised", exc_info=True)
            raise DeviceUnavailable(f"Speaker unavailable: {e}") from e

        with self._lock:
            self._queue.next_start_offset = 0.0
            self._stream = stream
        logger.info("[VOICE][PLAYBACK] opened rate=%d", self._config.sample_rate)
        return self

    def enqueue(self, data: bytes, sample_rate: int, channels: int) -> ScheduledBuffer | None:
        """Decode a PCM16 buffer and schedule it after everything already queued.

        Raises:
            MisalignedBuffer: If data is not aligned to the channel count.
        """
        decoded = decode_frame(data, sample_rate, channels)
        if decoded.frames == 0:
            return None
        if sample_rate != self._config.sample_rate:
            logger.warning(
                "[VOICE][PLAYBACK] buffer rate %d differs from output rate %d; playing unresampled",
                sample_rate,
                self._config.sample_rate,
            )

        samples = self._to_output_layout(decoded)
        with self._lock:
            if self._stream is None:
                logger.debug("[VOICE][PLAYBACK] enqueue on closed channel ignored")
                return None
            return self._queue.schedule(samples, decoded.duration_s)

    def interrupt(self) -> None:
        """Stop all active buffers now and restart the timeline at the current time."""
        with self._lock:
            stopped = self._queue.interrupt()
        logger.info("[VOICE][PLAYBACK] interrupted, stopped %d buffer(s)", stopped)

    def close(self) -> None:
        """Release the output device. Safe to call repeatedly."""
        with self._lock:
            stream = self._stream
            self._stream = None
            self._queue.interrupt()

        if stream is None:
            return

        try:
            stream.stop()
        finally:
            stream.close()
        logger.info("[VOICE][PLAYBACK] closed")

    def _to_output_layout(self, decoded: DecodedAudio) -> np.ndarray:
        interleaved = decoded.samples.T
        if decoded.channels == self._config.channels:
            return np.ascontiguousarray(interleaved, dtype=np.float32)
        mono = interleaved.mean(axis=1, keepdims=True)
        return np.ascontiguousarray(np.repeat(mono, self._config.channels, axis=1), dtype=np.float32)

    def _callback(self, outdata, frames, time, status):  # noqa: ANN001
        if status:
            logger.debug(f"Output status: {status}")
        outdata.fill(0)
        with self._lock:
            self._queue.fill(outdata)

"""Microphone capture channel.

Owns the live input stream. Every block delivered by the audio callback is
encoded as PCM16 and handed to a caller-supplied sink. The sink runs on the
audio thread, so it must return quickly: returning False means "not now",
and the frame is queued (never dropped) until the sink accepts it again.
"""

from __future__ import annotations

import logging
import threading
import warnings
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import numpy as np

from voice_order_agent.errors import (
    CaptureBackpressure,
    CodecError,
    DeviceUnavailable,
    PermissionDenied,
    VoiceOrderError,
)
from voice_order_agent.voice.codec import CAPTURE_SAMPLE_RATE, PcmBlob, create_blob

logger = logging.getLogger(__name__)

FrameSink = Callable[[PcmBlob], bool]

_PERMISSION_MARKERS = ("permission", "denied", "not authorized", "not permitted")


@dataclass(frozen=True)
class CaptureConfig:
    sample_rate: int = CAPTURE_SAMPLE_RATE
    channels: int = 1
    block_size: int = 4096
    dtype: str = "float32"


def require_sounddevice():
    try:
        import sounddevice as sd  # type: ignore

        return sd
    except (ImportError, OSError) as e:  # pragma: no cover
        raise DeviceUnavailable(
            "sounddevice is required for voice ordering. "
            "If you see 'PortAudio library not found', install PortAudio "
            "(Debian/Ubuntu: sudo apt-get install portaudio19-dev)."
        ) from e


def classify_device_error(error: Exception) -> VoiceOrderError:
    """Map a host audio error to PermissionDenied or DeviceUnavailable."""
    if isinstance(error, VoiceOrderError):
        return error
    message = str(error).lower()
    if isinstance(error, PermissionError) or any(m in message for m in _PERMISSION_MARKERS):
        return PermissionDenied(f"Microphone access denied: {error}")
    return DeviceUnavailable(f"Microphone unavailable: {error}")


class AudioCaptureChannel:
    def __init__(
        self,
        config: CaptureConfig | None = None,
        *,
        stream_factory: Callable[..., Any] | None = None,
    ) -> None:
        self._config = config or CaptureConfig()
        self._stream_factory = stream_factory
        self._lock = threading.Lock()
        self._stream = None
        self._sink: FrameSink | None = None
        self._pending: deque[PcmBlob] = deque()
        self._backpressure_events = 0
        self._dropped_blocks = 0

    @property
    def config(self) -> CaptureConfig:
        return self._config

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    @property
    def pending_frames(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def backpressure_events(self) -> int:
        return self._backpressure_events

    @property
    def dropped_blocks(self) -> int:
        return self._dropped_blocks

    def open(self, sink: FrameSink) -> "AudioCaptureChannel":
        """Request the microphone and start streaming frames into sink.

        Raises:
            PermissionDenied: The user or host refused microphone access.
            DeviceUnavailable: No input device could be opened.
        """
        if self._stream is not None:
            return self

        factory = self._stream_factory
        if factory is None:
            factory = require_sounddevice().InputStream

        with self._lock:
            self._sink = sink
            self._pending.clear()

        stream = None
        try:
            stream = factory(
                samplerate=self._config.sample_rate,
                channels=self._config.channels,
                dtype=self._config.dtype,
                blocksize=self._config.block_size,
                callback=self._callback,
            )
            stream.start()
        except Exception as e:
            if stream is not None:
                try:
                    stream.close()
                except Exception:
                    logger.debug("[VOICE][CAPTURE] close after failed start raised", exc_info=True)
            with self._lock:
                self._sink = None
            raise classify_device_error(e) from e

        self._stream = stream
        logger.info(
            "[VOICE][CAPTURE] opened rate=%d block=%d",
            self._config.sample_rate,
            self._config.block_size,
        )
        return self

    def close(self) -> None:
        """Stop capture and release the device. Safe to call repeatedly."""
        with self._lock:
            stream = self._stream
            self._stream = None
            self._sink = None
            discarded = len(self._pending)
            self._pending.clear()

        if stream is None:
            return

        try:
            stream.stop()
        finally:
            stream.close()

        if discarded:
            logger.info("[VOICE][CAPTURE] discarded %d unsent frame(s) on close", discarded)
        logger.info("[VOICE][CAPTURE] closed")

    def _callback(self, indata, frames, time, status):  # noqa: ANN001
        if status:
            logger.debug(f"Input status: {status}")
        self.push_block(indata.copy())

    def push_block(self, block: np.ndarray) -> None:
        """Encode one captured block and forward it, in capture order."""
        try:
            blob = create_blob(block, self._config.sample_rate)
        except CodecError as e:
            self._dropped_blocks += 1
            logger.warning(f"[VOICE][CAPTURE] dropped malformed block: {e}")
            return

        with self._lock:
            if self._sink is None:
                return
            self._pending.append(blob)
            self._drain_locked()

    def _drain_locked(self) -> None:
        sink = self._sink
        while self._pending and sink is not None:
            if not sink(self._pending[0]):
                break
            self._pending.popleft()

        if self._pending:
            self._backpressure_events += 1
            queued = len(self._pending)
            logger.warning("[VOICE][CAPTURE] backpressure: %d frame(s) queued", queued)
            warnings.warn(
                CaptureBackpressure(f"{queued} captured frame(s) waiting for the network sink"),
                stacklevel=2,
            )

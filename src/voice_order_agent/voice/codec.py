"""PCM16 audio codec for the live session wire format.

Pure functions only: float samples in [-1, 1] <-> 16-bit little-endian PCM,
plus the base64 wrapping used by JSON transports. No resampling happens here;
callers declare the sample rate in the MIME type.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass

import numpy as np

from voice_order_agent.errors import CodecError, MisalignedBuffer

CAPTURE_SAMPLE_RATE = 16000
PCM_MIME_TYPE = f"audio/pcm;rate={CAPTURE_SAMPLE_RATE}"

_PCM16 = np.dtype("<i2")
_PCM16_SCALE = 32768.0


def pcm_mime_type(sample_rate: int) -> str:
    return f"audio/pcm;rate={sample_rate}"


@dataclass(frozen=True)
class PcmBlob:
    """One wire-ready audio frame: raw PCM16 bytes plus its MIME tag."""

    data: bytes
    mime_type: str = PCM_MIME_TYPE

    def to_wire(self) -> dict[str, str]:
        return {"data": encode_base64(self.data), "mimeType": self.mime_type}


@dataclass(frozen=True)
class DecodedAudio:
    """Planar float32 audio, shape (channels, frames)."""

    samples: np.ndarray
    sample_rate: int

    @property
    def channels(self) -> int:
        return int(self.samples.shape[0])

    @property
    def frames(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration_s(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.frames / float(self.sample_rate)


def encode_frame(samples: np.ndarray | list[float]) -> bytes:
    """Scale mono float samples to signed 16-bit little-endian PCM."""
    arr = np.asarray(samples, dtype=np.float32)
    if arr.ndim == 2 and arr.shape[1] == 1:
        arr = arr[:, 0]
    if arr.ndim != 1:
        raise CodecError(f"Expected a mono frame, got array with shape {arr.shape}")

    arr = np.nan_to_num(arr, nan=0.0, posinf=1.0, neginf=-1.0)
    scaled = np.clip(arr * _PCM16_SCALE, -32768, 32767)
    return scaled.astype(_PCM16).tobytes()


def create_blob(samples: np.ndarray | list[float], sample_rate: int = CAPTURE_SAMPLE_RATE) -> PcmBlob:
    return PcmBlob(data=encode_frame(samples), mime_type=pcm_mime_type(sample_rate))


def decode_frame(data: bytes, sample_rate: int, channels: int) -> DecodedAudio:
    """Decode interleaved PCM16 bytes into planar float32 samples.

    Raises:
        MisalignedBuffer: If the byte length is not a multiple of 2 * channels.
    """
    if channels < 1:
        raise CodecError(f"Channel count must be positive, got {channels}")
    if len(data) % (2 * channels) != 0:
        raise MisalignedBuffer(len(data), channels)

    interleaved = np.frombuffer(data, dtype=_PCM16)
    planar = interleaved.reshape(-1, channels).T.astype(np.float32) / _PCM16_SCALE
    return DecodedAudio(samples=np.ascontiguousarray(planar), sample_rate=sample_rate)


def encode_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_base64(data: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CodecError(f"Invalid base64 audio payload: {e}") from e


def sample_rate_from_mime(mime_type: str | None, default: int) -> int:
    """Read the rate=... parameter of an audio/pcm MIME type."""
    for param in (mime_type or "").split(";")[1:]:
        key, _, value = param.strip().partition("=")
        if key.strip().lower() == "rate":
            try:
                return int(value)
            except ValueError:
                return default
    return default

"""
Error taxonomy for voice ordering.

Session-level errors end only the current voice session; per-item errors are
reported through logging and never surface to the user.
"""


class VoiceOrderError(Exception):
    """Base class for all voice ordering errors."""


class PermissionDenied(VoiceOrderError):
    """Microphone access was refused by the user or the host."""


class DeviceUnavailable(VoiceOrderError):
    """No usable audio input or output device could be opened."""


class NetworkSessionError(VoiceOrderError):
    """The live audio session could not be opened or failed while streaming."""


class CodecError(VoiceOrderError):
    """An audio payload could not be encoded or decoded."""


class MisalignedBuffer(CodecError):
    """A PCM16 payload length is not a multiple of 2 * channel count."""

    def __init__(self, length: int, channels: int) -> None:
        super().__init__(
            f"PCM16 buffer of {length} bytes is not aligned to {channels} channel(s)"
        )
        self.length = length
        self.channels = channels


class ParsingUnavailable(VoiceOrderError):
    """The transcript parser failed, timed out, or returned an invalid payload."""


class UnresolvableVegetableName(VoiceOrderError):
    """A parsed vegetable name matched no catalog entry."""

    def __init__(self, raw_name: str) -> None:
        super().__init__(f"No catalog entry matches {raw_name!r}")
        self.raw_name = raw_name


class TranscriptFinalizedError(VoiceOrderError):
    """Text was appended to a transcript that has already been finalized."""


class SessionAlreadyActive(VoiceOrderError):
    """A voice session was started while another one is still open."""


class StoreError(VoiceOrderError):
    """The catalog/ordering API rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CaptureBackpressure(Warning):
    """Captured frames are being queued because the network sink is not keeping up."""

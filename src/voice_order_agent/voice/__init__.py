"""Live voice ordering subsystem.

mic -> live session -> transcript -> parser -> order reconciliation
                    `-> speaker

The session controller is the single owner of every resource a voice session
holds; all termination paths go through its one teardown.
"""

from voice_order_agent.voice.capture import AudioCaptureChannel, CaptureConfig
from voice_order_agent.voice.codec import PCM_MIME_TYPE, DecodedAudio, PcmBlob, create_blob, decode_frame, encode_frame
from voice_order_agent.voice.playback import AudioPlaybackChannel, PlaybackConfig, PlaybackQueue
from voice_order_agent.voice.transcript import TranscriptAccumulator
from voice_order_agent.voice.transport import GeminiLiveTransport, LiveSessionConfig, LiveTransport
from voice_order_agent.voice.voice_session import (
    AudioSession,
    SessionOutcome,
    SessionState,
    VoiceSessionConfig,
    VoiceSessionController,
)

__all__ = [
    "AudioCaptureChannel",
    "AudioPlaybackChannel",
    "AudioSession",
    "CaptureConfig",
    "DecodedAudio",
    "GeminiLiveTransport",
    "LiveSessionConfig",
    "LiveTransport",
    "PCM_MIME_TYPE",
    "PcmBlob",
    "PlaybackConfig",
    "PlaybackQueue",
    "SessionOutcome",
    "SessionState",
    "TranscriptAccumulator",
    "VoiceSessionConfig",
    "VoiceSessionController",
    "create_blob",
    "decode_frame",
    "encode_frame",
]

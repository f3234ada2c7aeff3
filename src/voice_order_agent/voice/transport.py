"""Bidirectional live audio session transport.

The session is opened with audio output and input transcription enabled.
Outbound traffic is PCM16 frames; inbound traffic is translated into a small
tagged union of events so the session controller never touches SDK types.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any, Protocol, Union

from voice_order_agent.config import get_settings
from voice_order_agent.errors import CodecError, NetworkSessionError
from voice_order_agent.voice.codec import PcmBlob, decode_base64, sample_rate_from_mime

logger = logging.getLogger(__name__)

LIVE_OUTPUT_SAMPLE_RATE = 24000


@dataclass(frozen=True)
class TranscriptionFragment:
    text: str


@dataclass(frozen=True)
class AudioOutputChunk:
    data: bytes
    sample_rate: int = LIVE_OUTPUT_SAMPLE_RATE
    channels: int = 1


@dataclass(frozen=True)
class InterruptedSignal:
    pass


@dataclass(frozen=True)
class TurnCompleteSignal:
    pass


@dataclass(frozen=True)
class SessionErrorSignal:
    message: str


@dataclass(frozen=True)
class SessionClosedSignal:
    reason: str = ""


LiveEvent = Union[
    TranscriptionFragment,
    AudioOutputChunk,
    InterruptedSignal,
    TurnCompleteSignal,
    SessionErrorSignal,
    SessionClosedSignal,
]


class LiveTransport(Protocol):
    async def open(self) -> str: ...

    async def send_audio(self, blob: PcmBlob) -> None: ...

    def events(self) -> AsyncIterator[LiveEvent]: ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class LiveSessionConfig:
    model: str = "gemini-2.5-flash-native-audio-preview-09-2025"
    api_key: str | None = None
    output_sample_rate: int = LIVE_OUTPUT_SAMPLE_RATE


def translate_server_message(message: Any, output_sample_rate: int = LIVE_OUTPUT_SAMPLE_RATE) -> list[LiveEvent]:
    """Translate one live server message into events, in a stable order."""
    content = getattr(message, "server_content", None)
    if content is None:
        return []

    events: list[LiveEvent] = []

    transcription = getattr(content, "input_transcription", None)
    text = getattr(transcription, "text", None) if transcription is not None else None
    if text:
        events.append(TranscriptionFragment(text=text))

    model_turn = getattr(content, "model_turn", None)
    for part in getattr(model_turn, "parts", None) or []:
        inline = getattr(part, "inline_data", None)
        data = getattr(inline, "data", None) if inline is not None else None
        if not data:
            continue
        if isinstance(data, str):
            try:
                data = decode_base64(data)
            except CodecError as e:
                logger.warning(f"[VOICE][SESSION] dropped undecodable audio part: {e}")
                continue
        rate = sample_rate_from_mime(getattr(inline, "mime_type", None), output_sample_rate)
        events.append(AudioOutputChunk(data=bytes(data), sample_rate=rate))

    if getattr(content, "interrupted", False):
        events.append(InterruptedSignal())
    if getattr(content, "turn_complete", False):
        events.append(TurnCompleteSignal())
    return events


class GeminiLiveTransport:
    """Gemini Live API session (google-genai)."""

    def __init__(self, config: LiveSessionConfig | None = None) -> None:
        if config is None:
            settings = get_settings()
            config = LiveSessionConfig(
                model=settings.live_model,
                api_key=settings.google_api_key,
                output_sample_rate=settings.playback_sample_rate,
            )
        self._config = config
        self._stack: AsyncExitStack | None = None
        self._session = None
        self._closed = True

    @property
    def config(self) -> LiveSessionConfig:
        return self._config

    async def open(self) -> str:
        """Connect the live session.

        Raises:
            NetworkSessionError: If the session cannot be established.
        """
        if not self._config.api_key:
            raise NetworkSessionError("Google API key is not configured (set GOOGLE_API_KEY)")

        from google import genai
        from google.genai import types

        client = genai.Client(api_key=self._config.api_key)
        connect_config = types.LiveConnectConfig(
            response_modalities=[types.Modality.AUDIO],
            input_audio_transcription=types.AudioTranscriptionConfig(),
        )

        stack = AsyncExitStack()
        try:
            self._session = await stack.enter_async_context(
                client.aio.live.connect(model=self._config.model, config=connect_config)
            )
        except Exception as e:
            await stack.aclose()
            raise NetworkSessionError(f"Could not open live session: {e}") from e

        self._stack = stack
        self._closed = False
        session_id = getattr(self._session, "session_id", None) or f"live-{id(self._session):x}"
        logger.info("[VOICE][SESSION] live session opened model=%s", self._config.model)
        return str(session_id)

    async def send_audio(self, blob: PcmBlob) -> None:
        if self._closed or self._session is None:
            raise NetworkSessionError("Live session is not open")

        from google.genai import types

        try:
            await self._session.send_realtime_input(
                audio=types.Blob(data=blob.data, mime_type=blob.mime_type)
            )
        except Exception as e:
            raise NetworkSessionError(f"Sending audio failed: {e}") from e

    async def events(self) -> AsyncIterator[LiveEvent]:
        """Yield inbound events until the session closes."""
        from websockets.exceptions import ConnectionClosedOK

        if self._session is None:
            return

        try:
            # receive() ends after each turn_complete; an empty turn means the stream is gone.
            while not self._closed:
                received = 0
                async for message in self._session.receive():
                    received += 1
                    for event in translate_server_message(message, self._config.output_sample_rate):
                        yield event
                if received == 0 and not self._closed:
                    yield SessionClosedSignal(reason="live stream ended")
                    return
        except ConnectionClosedOK:
            if not self._closed:
                yield SessionClosedSignal(reason="server closed the session")
        except Exception as e:
            if not self._closed:
                yield SessionErrorSignal(message=str(e))

    async def close(self) -> None:
        """Close the live session. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        stack, self._stack = self._stack, None
        self._session = None
        if stack is not None:
            try:
                await stack.aclose()
            except Exception as e:
                logger.warning(f"[VOICE][SESSION] error while closing live session: {e}")
        logger.info("[VOICE][SESSION] live session closed")

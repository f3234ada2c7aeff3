"""Voice ordering session (glue layer).

This module orchestrates one live voice-ordering attempt:
mic -> live session -> transcript (+ spoken replies to the speaker)
and, once the session is over, transcript -> parser -> order reconciliation.

Lifecycle: IDLE -> OPENING -> STREAMING -> CLOSING -> CLOSED, with FAILED
reachable while opening. User stop, server turn-complete, server error, server
close and leaving the context manager all converge on one teardown, guarded by
a single state transition so it runs exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from voice_order_agent.agents.order_parser import OrderParserBase
from voice_order_agent.errors import (
    CodecError,
    NetworkSessionError,
    SessionAlreadyActive,
    VoiceOrderError,
)
from voice_order_agent.order.reconciler import OrderQuantityReconciler, ReconciliationResult
from voice_order_agent.order.schemas import CatalogEntry, ParsedOrderItem
from voice_order_agent.services.store_client import StoreClientBase
from voice_order_agent.voice.capture import AudioCaptureChannel
from voice_order_agent.voice.codec import PcmBlob
from voice_order_agent.voice.playback import AudioPlaybackChannel
from voice_order_agent.voice.transcript import TranscriptAccumulator
from voice_order_agent.voice.transport import (
    AudioOutputChunk,
    InterruptedSignal,
    LiveTransport,
    SessionClosedSignal,
    SessionErrorSignal,
    TranscriptionFragment,
    TurnCompleteSignal,
)

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    OPENING = "opening"
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


_STARTABLE_STATES = frozenset({SessionState.IDLE, SessionState.CLOSED, SessionState.FAILED})


@dataclass
class AudioSession:
    """One open voice-ordering attempt."""

    state: SessionState = SessionState.OPENING
    session_id: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    stop_reason: str | None = None
    failure: VoiceOrderError | None = None


@dataclass
class SessionOutcome:
    """What a finished session produced."""

    session: AudioSession
    transcript: str = ""
    parsed_items: list[ParsedOrderItem] = field(default_factory=list)
    reconciliation: ReconciliationResult | None = None

    @property
    def failed(self) -> bool:
        return self.session.failure is not None

    @property
    def changed_ids(self) -> list[int]:
        return self.reconciliation.changed_ids if self.reconciliation else []


@dataclass(frozen=True)
class VoiceSessionConfig:
    backpressure_frames: int = 32
    parse_timeout_s: float = 30.0


class VoiceSessionController:
    def __init__(
        self,
        *,
        transport: LiveTransport,
        capture: AudioCaptureChannel,
        playback: AudioPlaybackChannel,
        parser: OrderParserBase,
        reconciler: OrderQuantityReconciler,
        store: StoreClientBase,
        config: VoiceSessionConfig | None = None,
    ) -> None:
        self._transport = transport
        self._capture = capture
        self._playback = playback
        self._parser = parser
        self._reconciler = reconciler
        self._store = store
        self._config = config or VoiceSessionConfig()

        self._state_lock = threading.Lock()
        self._session: AudioSession | None = None
        self._stop_requested = False
        self._transcript = TranscriptAccumulator()
        self._catalog: list[CatalogEntry] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self._outbound: asyncio.Queue[PcmBlob] | None = None
        self._tasks: list[asyncio.Task[Any]] = []
        self._closed_event: asyncio.Event | None = None
        self._teardown_task: asyncio.Future[None] | None = None
        self._outcome: SessionOutcome | None = None

    @property
    def config(self) -> VoiceSessionConfig:
        return self._config

    @property
    def state(self) -> SessionState:
        session = self._session
        return session.state if session is not None else SessionState.IDLE

    @property
    def session(self) -> AudioSession | None:
        return self._session

    @property
    def outcome(self) -> SessionOutcome | None:
        return self._outcome

    @property
    def catalog(self) -> list[CatalogEntry]:
        """Catalog fetched for the current session."""
        return list(self._catalog)

    async def __aenter__(self) -> "VoiceSessionController":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        await self.close()

    async def start(self) -> AudioSession:
        """Open capture, the live session and playback, then start streaming.

        Anything acquired before a failure is released again before the error
        is re-raised, and the session ends in FAILED.

        Raises:
            SessionAlreadyActive: A session is already opening or streaming.
            PermissionDenied, DeviceUnavailable, NetworkSessionError, StoreError.
        """
        with self._state_lock:
            if self.state not in _STARTABLE_STATES:
                raise SessionAlreadyActive(f"Voice session already {self.state.value}")
            session = AudioSession()
            self._session = session
            self._stop_requested = False
            self._transcript = TranscriptAccumulator()
            self._outcome = None
            self._tasks = []
            self._teardown_task = None
            self._loop = asyncio.get_running_loop()
            self._outbound = asyncio.Queue()
            self._closed_event = asyncio.Event()

        logger.info("[VOICE][SESSION] opening")
        acquired: list[tuple[str, Callable[[], Awaitable[None]]]] = []
        try:
            self._catalog = await self._store.list_catalog()

            await asyncio.to_thread(self._capture.open, self._on_capture_frame)
            acquired.append(("capture", self._release_capture))

            session.session_id = await self._transport.open()
            acquired.append(("network", self._release_network))

            await asyncio.to_thread(self._playback.open)
            acquired.append(("playback", self._release_playback))
        except Exception as e:
            failure = e if isinstance(e, VoiceOrderError) else NetworkSessionError(str(e))
            logger.warning(f"[VOICE][SESSION] open failed: {failure}")
            for name, release in reversed(acquired):
                await self._release_quietly(name, release)
            with self._state_lock:
                session.state = SessionState.FAILED
                session.failure = failure
            self._outcome = SessionOutcome(session=session)
            self._closed_event.set()
            if failure is e:
                raise
            raise failure from e

        with self._state_lock:
            if self._stop_requested:
                # Stop arrived while opening: go straight to teardown.
                session.state = SessionState.CLOSING
                session.stop_reason = "user_stop"
                stream = False
            else:
                session.state = SessionState.STREAMING
                stream = True

        if not stream:
            await self._run_teardown()
            return session

        self._tasks = [
            asyncio.create_task(self._send_loop(), name="voice-send"),
            asyncio.create_task(self._receive_loop(), name="voice-receive"),
        ]
        logger.info("[VOICE][SESSION] streaming session_id=%s", session.session_id)
        return session

    async def user_stop(self) -> None:
        """Stop the session on user request. Extra calls are no-ops."""
        with self._state_lock:
            if self.state is SessionState.OPENING:
                self._stop_requested = True
                logger.info("[VOICE][SESSION] stop requested while opening")
                return
        await self._finish("user_stop")

    async def wait_closed(self) -> SessionOutcome | None:
        """Wait until the current session has fully closed and been processed."""
        if self._closed_event is None:
            return self._outcome
        await self._closed_event.wait()
        return self._outcome

    async def close(self) -> SessionOutcome | None:
        """Stop any live session and wait for it to finish."""
        if self._session is None:
            return None
        await self.user_stop()
        return await self.wait_closed()

    async def _finish(self, reason: str, failure: VoiceOrderError | None = None) -> bool:
        """Claim the STREAMING -> CLOSING transition; only the winner tears down."""
        with self._state_lock:
            session = self._session
            if session is None or session.state is not SessionState.STREAMING:
                return False
            session.state = SessionState.CLOSING
            session.stop_reason = reason
            session.failure = failure

        if failure is not None:
            logger.warning(f"[VOICE][SESSION] closing reason={reason} error={failure}")
        else:
            logger.info("[VOICE][SESSION] closing reason=%s", reason)
        await self._run_teardown()
        return True

    async def _run_teardown(self) -> None:
        """Run the one teardown for this session to completion.

        Teardown runs as its own task and callers await it shielded, so a
        caller that is cancelled mid-release (a timeout around user_stop(),
        Ctrl-C) does not leave the session half closed.
        """
        task = self._teardown_task
        if task is None:
            task = self._teardown_task = asyncio.ensure_future(self._teardown())
        await asyncio.shield(task)

    async def _teardown(self) -> None:
        session = self._session
        if session is None:
            return

        outcome = SessionOutcome(session=session)
        try:
            await self._stop_tasks()
            discarded = self._drain_outbound()
            if discarded:
                logger.info("[VOICE][SESSION] discarded %d unsent frame(s)", discarded)

            for name, release in (
                ("capture", self._release_capture),
                ("playback", self._release_playback),
                ("network", self._release_network),
            ):
                await self._release_quietly(name, release)

            with self._state_lock:
                session.state = SessionState.CLOSED

            outcome.transcript = self._transcript.finalize()
            if outcome.transcript.strip():
                await self._process_transcript(outcome)
            else:
                logger.info("[VOICE][SESSION] closed with empty transcript")
        finally:
            with self._state_lock:
                if session.state is not SessionState.CLOSED:
                    logger.warning("[VOICE][SESSION] teardown interrupted before all resources were released")
                    session.state = SessionState.CLOSED
            self._outcome = outcome
            if self._closed_event is not None:
                self._closed_event.set()

    async def _process_transcript(self, outcome: SessionOutcome) -> None:
        text = outcome.transcript
        try:
            items = await asyncio.wait_for(self._parser.parse(text), timeout=self._config.parse_timeout_s)
        except Exception as e:
            logger.warning(f"[ORDER] parser unavailable, using substring fallback: {e}")
            outcome.reconciliation = self._reconciler.reconcile_fallback(text, self._catalog)
            return

        outcome.parsed_items = items
        try:
            await self._store.log_voice_transcript(text, items)
        except Exception as e:
            logger.info(f"[ORDER] transcript telemetry failed: {e}")
        outcome.reconciliation = self._reconciler.reconcile(items, self._catalog)

    async def _release_capture(self) -> None:
        await asyncio.to_thread(self._capture.close)

    async def _release_playback(self) -> None:
        await asyncio.to_thread(self._playback.close)

    async def _release_network(self) -> None:
        await self._transport.close()

    async def _release_quietly(self, name: str, release: Callable[[], Awaitable[None]]) -> None:
        try:
            await release()
        except Exception as e:
            logger.warning(f"[VOICE][SESSION] releasing {name} failed: {e}")

    async def _stop_tasks(self) -> None:
        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current and not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _drain_outbound(self) -> int:
        queue = self._outbound
        drained = 0
        while queue is not None and not queue.empty():
            queue.get_nowait()
            drained += 1
        return drained

    def _is_streaming(self) -> bool:
        return self.state is SessionState.STREAMING

    def _on_capture_frame(self, blob: PcmBlob) -> bool:
        """Sink for the capture channel; runs on the audio thread."""
        loop, queue = self._loop, self._outbound
        if loop is None or queue is None or self.state not in (SessionState.OPENING, SessionState.STREAMING):
            # Session is stopping: accept and drop so nothing reaches a closed channel.
            return True
        if queue.qsize() >= self._config.backpressure_frames:
            return False
        try:
            loop.call_soon_threadsafe(queue.put_nowait, blob)
        except RuntimeError:
            # Event loop already closed.
            return True
        return True

    async def _send_loop(self) -> None:
        queue = self._outbound
        if queue is None:
            return
        while True:
            blob = await queue.get()
            if not self._is_streaming():
                continue
            try:
                await self._transport.send_audio(blob)
            except VoiceOrderError as e:
                await self._finish("send_error", e)
                return
            except Exception as e:
                await self._finish("send_error", NetworkSessionError(str(e)))
                return

    async def _receive_loop(self) -> None:
        try:
            async for event in self._transport.events():
                if not self._is_streaming():
                    return
                if isinstance(event, TranscriptionFragment):
                    self._transcript.append(event.text)
                    logger.debug("[VOICE][SESSION] transcript += %r", event.text)
                elif isinstance(event, AudioOutputChunk):
                    self._play(event)
                elif isinstance(event, InterruptedSignal):
                    self._playback.interrupt()
                elif isinstance(event, TurnCompleteSignal):
                    await self._finish("turn_complete")
                    return
                elif isinstance(event, SessionErrorSignal):
                    await self._finish("server_error", NetworkSessionError(event.message))
                    return
                elif isinstance(event, SessionClosedSignal):
                    await self._finish("server_closed")
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._finish("server_error", NetworkSessionError(str(e)))
            return
        await self._finish("server_closed")

    def _play(self, chunk: AudioOutputChunk) -> None:
        try:
            self._playback.enqueue(chunk.data, chunk.sample_rate, chunk.channels)
        except CodecError as e:
            logger.warning(f"[VOICE][PLAYBACK] dropped frame: {e}")

import asyncio
import time

import pytest

from voice_order_agent.errors import (
    DeviceUnavailable,
    NetworkSessionError,
    ParsingUnavailable,
    PermissionDenied,
    SessionAlreadyActive,
    StoreError,
)
from voice_order_agent.order.order_state import OrderState
from voice_order_agent.order.pulse import ConfirmationPulseScheduler
from voice_order_agent.order.reconciler import OrderQuantityReconciler
from voice_order_agent.order.schemas import CatalogEntry, ParsedOrderItem
from voice_order_agent.services.store_client import StoreClientBase
from voice_order_agent.voice.codec import create_blob, decode_frame
from voice_order_agent.voice.transport import (
    AudioOutputChunk,
    InterruptedSignal,
    SessionErrorSignal,
    TranscriptionFragment,
    TurnCompleteSignal,
)
from voice_order_agent.voice.voice_session import SessionState, VoiceSessionConfig, VoiceSessionController

CATALOG = [
    CatalogEntry.model_validate({"id": 1, "name": {"EN": "Tomato", "HI": "टमाटर"}, "price": 40}),
    CatalogEntry.model_validate({"id": 3, "name": {"EN": "Onion", "HI": "प्याज"}, "price": 30}),
]


class FakeCapture:
    def __init__(self, open_error: Exception | None = None, close_delay: float = 0.0) -> None:
        self.close_delay = close_delay
        self.sink = None
        self.opens = 0
        self.closes = 0
        self._open_error = open_error

    def open(self, sink):
        if self._open_error is not None:
            raise self._open_error
        self.opens += 1
        self.sink = sink
        return self

    def close(self) -> None:
        time.sleep(self.close_delay)
        self.closes += 1


class FakePlayback:
    def __init__(self, open_error: Exception | None = None) -> None:
        self.opens = 0
        self.closes = 0
        self.interrupts = 0
        self.enqueued: list[bytes] = []
        self._open_error = open_error

    def open(self):
        if self._open_error is not None:
            raise self._open_error
        self.opens += 1
        return self

    def enqueue(self, data: bytes, sample_rate: int, channels: int):
        decode_frame(data, sample_rate, channels)
        self.enqueued.append(data)

    def interrupt(self) -> None:
        self.interrupts += 1

    def close(self) -> None:
        self.closes += 1


class FakeTransport:
    def __init__(self, open_error: Exception | None = None, hold_open: bool = False) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()
        self.sent: list[bytes] = []
        self.opens = 0
        self.closes = 0
        self.delivered = 0
        self.opening = False
        self.open_gate = asyncio.Event()
        self.send_gate = asyncio.Event()
        self.send_gate.set()
        if not hold_open:
            self.open_gate.set()
        self._open_error = open_error

    def push(self, *events) -> None:
        for event in events:
            self.queue.put_nowait(event)

    async def open(self) -> str:
        self.opening = True
        await self.open_gate.wait()
        if self._open_error is not None:
            raise self._open_error
        self.opens += 1
        # Each session gets a fresh event stream.
        self.queue = asyncio.Queue()
        return f"session-{self.opens}"

    async def send_audio(self, blob) -> None:
        await self.send_gate.wait()
        self.sent.append(blob.data)

    async def events(self):
        while True:
            event = await self.queue.get()
            if event is None:
                return
            yield event
            self.delivered += 1

    async def close(self) -> None:
        self.closes += 1
        self.queue.put_nowait(None)


class FakeParser:
    def __init__(self, items: list[ParsedOrderItem] | None = None, error: Exception | None = None) -> None:
        self.items = items or []
        self.error = error
        self.calls: list[str] = []

    async def parse(self, transcript: str) -> list[ParsedOrderItem]:
        self.calls.append(transcript)
        if self.error is not None:
            raise self.error
        return list(self.items)


class FakeStore(StoreClientBase):
    def __init__(self, catalog_error: Exception | None = None) -> None:
        self.catalog_error = catalog_error
        self.logged: list[str] = []

    async def list_catalog(self) -> list[CatalogEntry]:
        if self.catalog_error is not None:
            raise self.catalog_error
        return list(CATALOG)

    async def submit_order(self, user_id, items) -> None:
        raise AssertionError("submit_order should not be called by the session")

    async def log_voice_transcript(self, transcript, items) -> None:
        self.logged.append(transcript)


class Harness:
    def __init__(
        self,
        *,
        transport: FakeTransport | None = None,
        capture: FakeCapture | None = None,
        playback: FakePlayback | None = None,
        parser: FakeParser | None = None,
        store: FakeStore | None = None,
        config: VoiceSessionConfig | None = None,
    ) -> None:
        self.transport = transport or FakeTransport()
        self.capture = capture or FakeCapture()
        self.playback = playback or FakePlayback()
        self.parser = parser or FakeParser()
        self.store = store or FakeStore()
        self.order = OrderState()
        self.reconciler = OrderQuantityReconciler(self.order, ConfirmationPulseScheduler())
        self.controller = VoiceSessionController(
            transport=self.transport,
            capture=self.capture,
            playback=self.playback,
            parser=self.parser,
            reconciler=self.reconciler,
            store=self.store,
            config=config,
        )

    def release_counts(self) -> tuple[int, int, int]:
        return self.capture.closes, self.playback.closes, self.transport.closes


async def _until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


async def _closed(controller: VoiceSessionController):
    return await asyncio.wait_for(controller.wait_closed(), timeout=2.0)


@pytest.mark.asyncio
async def test_turn_complete_racing_user_stop_tears_down_once():
    h = Harness(parser=FakeParser([ParsedOrderItem(vegetable="tomato", quantity="500g")]))
    await h.controller.start()
    assert h.controller.state is SessionState.STREAMING

    h.transport.push(TranscriptionFragment("half a kilo "), TranscriptionFragment("tomato"))
    await _until(lambda: h.transport.delivered == 2)

    h.transport.push(TurnCompleteSignal())
    await asyncio.gather(h.controller.user_stop(), h.controller.user_stop())
    outcome = await _closed(h.controller)

    assert h.release_counts() == (1, 1, 1)
    assert h.controller.state is SessionState.CLOSED
    assert outcome.transcript == "half a kilo tomato"
    assert h.parser.calls == ["half a kilo tomato"]
    assert h.store.logged == ["half a kilo tomato"]
    assert h.order.as_dict() == {1: "500g"}

    # Late stops are no-ops.
    await h.controller.user_stop()
    assert h.release_counts() == (1, 1, 1)


@pytest.mark.asyncio
async def test_stop_while_opening_skips_streaming():
    h = Harness(transport=FakeTransport(hold_open=True))

    start = asyncio.create_task(h.controller.start())
    await _until(lambda: h.transport.opening)
    assert h.controller.state is SessionState.OPENING

    await h.controller.user_stop()
    h.transport.open_gate.set()
    session = await asyncio.wait_for(start, timeout=2.0)

    assert session.stop_reason == "user_stop"
    assert h.controller.state is SessionState.CLOSED
    assert h.release_counts() == (1, 1, 1)
    assert h.parser.calls == []
    assert h.transport.sent == []


@pytest.mark.asyncio
async def test_playback_failure_rolls_back_capture_and_network():
    h = Harness(playback=FakePlayback(open_error=DeviceUnavailable("no speaker")))

    with pytest.raises(DeviceUnavailable):
        await h.controller.start()

    assert h.controller.state is SessionState.FAILED
    assert h.release_counts() == (1, 0, 1)
    assert isinstance(h.controller.outcome.session.failure, DeviceUnavailable)


@pytest.mark.asyncio
async def test_network_failure_releases_capture_only():
    h = Harness(transport=FakeTransport(open_error=ConnectionError("refused")))

    with pytest.raises(NetworkSessionError):
        await h.controller.start()

    assert h.controller.state is SessionState.FAILED
    assert h.release_counts() == (1, 0, 0)
    assert h.playback.opens == 0


@pytest.mark.asyncio
async def test_permission_denied_opens_nothing():
    h = Harness(capture=FakeCapture(open_error=PermissionDenied("mic blocked")))

    with pytest.raises(PermissionDenied):
        await h.controller.start()

    assert h.transport.opens == 0
    assert h.playback.opens == 0
    assert h.release_counts() == (0, 0, 0)


@pytest.mark.asyncio
async def test_catalog_failure_fails_the_session():
    h = Harness(store=FakeStore(catalog_error=StoreError("offline")))

    with pytest.raises(StoreError):
        await h.controller.start()

    assert h.controller.state is SessionState.FAILED
    assert h.capture.opens == 0


@pytest.mark.asyncio
async def test_server_error_still_parses_transcript():
    h = Harness(parser=FakeParser([ParsedOrderItem(vegetable="onion", quantity="1kg")]))
    await h.controller.start()

    h.transport.push(TranscriptionFragment("one kilo onion"), SessionErrorSignal("socket reset"))
    outcome = await _closed(h.controller)

    assert outcome.failed
    assert outcome.session.stop_reason == "server_error"
    assert h.parser.calls == ["one kilo onion"]
    assert h.order.as_dict() == {3: "1kg"}
    assert h.release_counts() == (1, 1, 1)


@pytest.mark.asyncio
async def test_parser_failure_uses_substring_fallback():
    h = Harness(parser=FakeParser(error=ParsingUnavailable("timeout")))
    await h.controller.start()

    h.transport.push(TranscriptionFragment("दो किलो टमाटर और एक किलो प्याज"), TurnCompleteSignal())
    outcome = await _closed(h.controller)

    assert outcome.reconciliation.used_fallback
    assert h.order.as_dict() == {1: "1kg", 3: "1kg"}
    assert sorted(outcome.changed_ids) == [1, 3]
    assert h.store.logged == []


@pytest.mark.asyncio
async def test_empty_transcript_skips_parser():
    h = Harness()
    await h.controller.start()

    h.transport.push(TurnCompleteSignal())
    outcome = await _closed(h.controller)

    assert outcome.transcript == ""
    assert h.parser.calls == []
    assert len(h.order) == 0


@pytest.mark.asyncio
async def test_barge_in_interrupts_playback():
    h = Harness()
    await h.controller.start()

    h.transport.push(AudioOutputChunk(b"\x00\x00" * 240), InterruptedSignal())
    await _until(lambda: h.playback.interrupts == 1)

    assert len(h.playback.enqueued) == 1
    assert h.controller.state is SessionState.STREAMING
    await h.controller.close()


@pytest.mark.asyncio
async def test_misaligned_chunk_is_dropped_and_session_continues():
    h = Harness()
    await h.controller.start()

    h.transport.push(AudioOutputChunk(b"\x01\x02\x03"), AudioOutputChunk(b"\x00\x00" * 4))
    await _until(lambda: h.transport.delivered == 2)

    assert h.playback.enqueued == [b"\x00\x00" * 4]
    assert h.controller.state is SessionState.STREAMING
    await h.controller.close()
    assert h.controller.state is SessionState.CLOSED


@pytest.mark.asyncio
async def test_second_start_while_streaming_is_rejected():
    h = Harness()
    await h.controller.start()

    with pytest.raises(SessionAlreadyActive):
        await h.controller.start()

    await h.controller.close()
    assert h.release_counts() == (1, 1, 1)


@pytest.mark.asyncio
async def test_captured_frames_are_sent_in_order_with_backpressure():
    h = Harness(config=VoiceSessionConfig(backpressure_frames=2))
    await h.controller.start()
    h.transport.send_gate.clear()

    blobs = [create_blob([v, v]) for v in (0.1, 0.2, 0.3)]
    accepted = []
    for blob in blobs:
        accepted.append(h.capture.sink(blob))
        await asyncio.sleep(0.01)
    # One frame is held by the blocked sender, two fill the queue.
    assert accepted == [True, True, True]
    assert h.capture.sink(create_blob([0.4, 0.4])) is False

    h.transport.send_gate.set()
    await _until(lambda: len(h.transport.sent) == 3)
    assert h.transport.sent == [b.data for b in blobs]

    await h.controller.close()
    # After teardown the sink accepts and drops.
    assert h.capture.sink(create_blob([0.5, 0.5])) is True
    assert len(h.transport.sent) == 3


@pytest.mark.asyncio
async def test_context_manager_closes_and_session_can_restart():
    h = Harness()
    async with h.controller as controller:
        await controller.start()
    assert h.controller.state is SessionState.CLOSED

    await h.controller.start()
    assert h.controller.state is SessionState.STREAMING
    await h.controller.close()
    assert h.release_counts() == (2, 2, 2)


@pytest.mark.asyncio
async def test_cancelled_stop_still_completes_teardown():
    h = Harness(capture=FakeCapture(close_delay=0.2))
    await h.controller.start()
    h.transport.push(TranscriptionFragment("one kilo tomato"))
    await _until(lambda: h.transport.delivered == 1)

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(h.controller.user_stop(), timeout=0.05)

    outcome = await asyncio.wait_for(h.controller.close(), timeout=2.0)

    assert h.controller.state is SessionState.CLOSED
    assert h.release_counts() == (1, 1, 1)
    assert outcome.transcript == "one kilo tomato"
    assert h.parser.calls == ["one kilo tomato"]

    await h.controller.start()
    assert h.controller.state is SessionState.STREAMING
    await h.controller.close()

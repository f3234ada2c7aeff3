import numpy as np
import pytest

from voice_order_agent.errors import CaptureBackpressure, DeviceUnavailable, PermissionDenied
from voice_order_agent.voice.capture import AudioCaptureChannel, CaptureConfig, classify_device_error


class FakeStream:
    def __init__(self, **kwargs) -> None:
        self.kwargs = kwargs
        self.started = False
        self.stopped = 0
        self.closed = 0

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped += 1

    def close(self) -> None:
        self.closed += 1


class FakeStreamFactory:
    def __init__(self, fail_with: Exception | None = None) -> None:
        self.streams: list[FakeStream] = []
        self._fail_with = fail_with

    def __call__(self, **kwargs) -> FakeStream:
        if self._fail_with is not None:
            raise self._fail_with
        stream = FakeStream(**kwargs)
        self.streams.append(stream)
        return stream


class GatedSink:
    """Records frames; refuses them while the gate is closed."""

    def __init__(self) -> None:
        self.accepting = True
        self.frames: list[bytes] = []

    def __call__(self, blob) -> bool:
        if not self.accepting:
            return False
        self.frames.append(blob.data)
        return True


def _block(value: float, frames: int = 4) -> np.ndarray:
    return np.full((frames, 1), value, dtype=np.float32)


def _first_sample(data: bytes) -> int:
    return int(np.frombuffer(data, dtype="<i2")[0])


def test_open_passes_capture_config_to_stream() -> None:
    factory = FakeStreamFactory()
    channel = AudioCaptureChannel(CaptureConfig(block_size=1024), stream_factory=factory)

    channel.open(GatedSink())

    stream = factory.streams[0]
    assert stream.started
    assert stream.kwargs["samplerate"] == 16000
    assert stream.kwargs["channels"] == 1
    assert stream.kwargs["blocksize"] == 1024
    assert channel.is_open


def test_audio_callback_forwards_encoded_frames() -> None:
    factory = FakeStreamFactory()
    sink = GatedSink()
    channel = AudioCaptureChannel(stream_factory=factory)
    channel.open(sink)

    callback = factory.streams[0].kwargs["callback"]
    callback(_block(0.5), 4, None, None)

    assert len(sink.frames) == 1
    assert len(sink.frames[0]) == 8
    assert _first_sample(sink.frames[0]) == 16384


def test_backpressure_queues_frames_and_never_drops_them() -> None:
    sink = GatedSink()
    channel = AudioCaptureChannel(stream_factory=FakeStreamFactory())
    channel.open(sink)

    sink.accepting = False
    with pytest.warns(CaptureBackpressure):
        for value in (0.1, 0.2, 0.3):
            channel.push_block(_block(value))

    assert sink.frames == []
    assert channel.pending_frames == 3
    assert channel.backpressure_events == 3

    sink.accepting = True
    channel.push_block(_block(0.4))

    assert channel.pending_frames == 0
    assert [_first_sample(f) for f in sink.frames] == [3276, 6553, 9830, 13107]


def test_malformed_block_is_dropped_and_next_block_forwarded() -> None:
    sink = GatedSink()
    channel = AudioCaptureChannel(stream_factory=FakeStreamFactory())
    channel.open(sink)

    channel.push_block(np.zeros((4, 2), dtype=np.float32))
    channel.push_block(_block(0.5))

    assert channel.dropped_blocks == 1
    assert len(sink.frames) == 1


def test_close_is_idempotent_and_discards_pending_frames() -> None:
    factory = FakeStreamFactory()
    sink = GatedSink()
    channel = AudioCaptureChannel(stream_factory=factory)
    channel.open(sink)

    sink.accepting = False
    with pytest.warns(CaptureBackpressure):
        channel.push_block(_block(0.1))

    channel.close()
    channel.close()

    stream = factory.streams[0]
    assert stream.stopped == 1
    assert stream.closed == 1
    assert channel.pending_frames == 0
    assert not channel.is_open

    sink.accepting = True
    channel.push_block(_block(0.2))
    assert sink.frames == []


def test_open_failures_are_classified() -> None:
    denied = AudioCaptureChannel(stream_factory=FakeStreamFactory(fail_with=PermissionError("mic blocked")))
    with pytest.raises(PermissionDenied):
        denied.open(GatedSink())

    missing = AudioCaptureChannel(stream_factory=FakeStreamFactory(fail_with=OSError("Error querying device -1")))
    with pytest.raises(DeviceUnavailable):
        missing.open(GatedSink())

    assert not denied.is_open
    assert not missing.is_open


def test_classify_device_error_reads_permission_text() -> None:
    assert isinstance(classify_device_error(RuntimeError("Permission denied by user")), PermissionDenied)
    assert isinstance(classify_device_error(RuntimeError("Invalid sample rate")), DeviceUnavailable)

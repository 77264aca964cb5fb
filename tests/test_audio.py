import asyncio
import base64
import time

import pytest

from audio import AudioRecorder, AudioStreamer, resolve_input_device
from errors import DeviceError
from settings import AudioConfig


class FakeStream:
    def __init__(self, chunks=()):
        self.chunks = list(chunks)
        self.active = True
        self.closed = False
        self.stop_calls = 0
        self.start_calls = 0
        self.written = []

    def read(self, n, exception_on_overflow=False):
        if self.chunks:
            return self.chunks.pop(0)
        time.sleep(0.005)
        return b""

    def write(self, data):
        self.written.append(data)

    def stop_stream(self):
        self.stop_calls += 1
        self.active = False

    def start_stream(self):
        self.start_calls += 1
        self.active = True

    def is_active(self):
        return self.active

    def close(self):
        self.closed = True


class FakePyAudio:
    def __init__(self, stream=None, fail_indices=(), fail_default=False, devices=()):
        self.stream = stream or FakeStream()
        self.fail_indices = set(fail_indices)
        self.fail_default = fail_default
        self.devices = list(devices)
        self.opened = []
        self.terminated = 0

    def open(self, **kwargs):
        self.opened.append(kwargs)
        index = kwargs.get("input_device_index")
        if index in self.fail_indices or (index is None and self.fail_default):
            raise OSError("Invalid input device")
        return self.stream

    def get_device_count(self):
        return len(self.devices)

    def get_device_info_by_index(self, i):
        return self.devices[i]

    def terminate(self):
        self.terminated += 1


async def _wait_for(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def test_resolve_input_device_prefers_name():
    pya = FakePyAudio(devices=[
        {"name": "Speakers", "maxInputChannels": 0},
        {"name": "USB Microphone", "maxInputChannels": 1},
    ])
    assert resolve_input_device(pya, 0, "usb microphone") == 1
    assert resolve_input_device(pya, 0, "missing") == 0
    assert resolve_input_device(pya, None, None) is None


async def test_chunks_are_delivered_as_base64():
    pya = FakePyAudio(FakeStream([b"\x01\x02", b"\x03\x04"]))
    recorder = AudioRecorder(AudioConfig(), pya_factory=lambda: pya)
    chunks = []

    await recorder.start(chunks.append)
    await _wait_for(lambda: len(chunks) == 2)
    await recorder.stop()

    assert chunks == [base64.b64encode(b"\x01\x02").decode(), base64.b64encode(b"\x03\x04").decode()]
    opened = pya.opened[0]
    assert opened["rate"] == 16000
    assert opened["channels"] == 1
    assert opened["frames_per_buffer"] == 1024
    assert opened["input"] is True


async def test_slow_sink_does_not_block_reads():
    pya = FakePyAudio(FakeStream([b"a", b"b", b"c"]))
    recorder = AudioRecorder(AudioConfig(), pya_factory=lambda: pya)
    started = []

    async def slow_sink(chunk):
        started.append(chunk)
        await asyncio.sleep(10)

    await recorder.start(slow_sink)
    await _wait_for(lambda: len(started) == 3)
    await recorder.stop()


async def test_falls_back_to_default_device():
    pya = FakePyAudio(fail_indices={3})
    recorder = AudioRecorder(AudioConfig(input_device_index=3), pya_factory=lambda: pya)

    await recorder.start(lambda chunk: None)

    assert recorder.is_recording
    assert pya.opened[0]["input_device_index"] == 3
    assert "input_device_index" not in pya.opened[1]
    await recorder.stop()


async def test_open_failure_raises_device_error():
    pya = FakePyAudio(fail_default=True)
    recorder = AudioRecorder(AudioConfig(), pya_factory=lambda: pya)

    with pytest.raises(DeviceError):
        await recorder.start(lambda chunk: None)
    assert not recorder.is_recording
    assert pya.terminated == 1


async def test_suspend_and_resume():
    pya = FakePyAudio()
    recorder = AudioRecorder(AudioConfig(), pya_factory=lambda: pya)
    await recorder.start(lambda chunk: None)

    await recorder.toggle_mic()
    assert recorder.is_suspended
    assert pya.stream.stop_calls == 1

    await recorder.toggle_mic()
    assert not recorder.is_suspended
    assert pya.stream.start_calls == 1
    await recorder.stop()


async def test_stop_is_idempotent():
    pya = FakePyAudio()
    recorder = AudioRecorder(AudioConfig(), pya_factory=lambda: pya)
    await recorder.start(lambda chunk: None)

    await recorder.stop()
    await recorder.stop()

    assert pya.stream.closed
    assert pya.terminated == 1
    assert not recorder.is_recording


async def test_streamer_writes_and_flushes():
    stream = FakeStream()
    pya = FakePyAudio(stream)
    streamer = AudioStreamer(AudioConfig(), pya_factory=lambda: pya)

    streamer.stream_audio(b"dropped before init")
    await streamer.initialize()
    assert pya.opened[0]["rate"] == 24000
    assert pya.opened[0]["output"] is True

    streamer.stream_audio(b"one")
    await _wait_for(lambda: stream.written == [b"one"])

    streamer.stream_audio(b"two")
    streamer.stream_audio(b"three")
    assert streamer.stop() == 2

    await streamer.close()
    assert stream.written == [b"one"]
    assert not streamer.is_initialized
    assert pya.terminated == 1


async def test_streamer_open_failure_raises_device_error():
    pya = FakePyAudio(fail_default=True)
    streamer = AudioStreamer(AudioConfig(), pya_factory=lambda: pya)
    with pytest.raises(DeviceError):
        await streamer.initialize()
    assert not streamer.is_initialized


async def test_concurrent_initialize_opens_one_output_stream():
    pya = FakePyAudio(FakeStream())
    factory_calls = []

    def factory():
        factory_calls.append(1)
        return pya

    streamer = AudioStreamer(AudioConfig(), pya_factory=factory)
    await asyncio.gather(streamer.initialize(), streamer.initialize(), streamer.initialize())

    assert len(pya.opened) == 1
    assert len(factory_calls) == 1
    await streamer.close()
    assert pya.terminated == 1

import asyncio
import json

import pytest
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from events import EventBus, TranscriberEvent
from settings import AgentConfig, ModelConfig, TranscriptionConfig

_CLOSE = object()


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self):
        self.state = State.OPEN
        self.sent = []
        self.close_code = None
        self.close_reason = ""
        self._incoming = asyncio.Queue()

    async def send(self, data):
        if self.state is not State.OPEN:
            raise ConnectionClosed(None, None)
        self.sent.append(data)

    async def close(self, code=1000, reason=""):
        if self.state is State.CLOSED:
            return
        self.state = State.CLOSED
        self.close_code = code
        self.close_reason = reason
        self._incoming.put_nowait(_CLOSE)

    def feed(self, frame):
        self._incoming.put_nowait(frame if isinstance(frame, (str, bytes)) else json.dumps(frame))

    def drop(self, code=1006, reason=""):
        """Close from the server side."""
        self.state = State.CLOSED
        self.close_code = code
        self.close_reason = reason
        self._incoming.put_nowait(_CLOSE)

    def json_frames(self):
        return [json.loads(x) for x in self.sent if isinstance(x, str)]

    def binary_frames(self):
        return [x for x in self.sent if isinstance(x, (bytes, bytearray))]

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Callable used in place of websockets' connect(); records every attempt."""

    def __init__(self, fail_with=None):
        self.calls = []
        self.sockets = []
        self.fail_with = fail_with

    async def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.fail_with is not None:
            raise self.fail_with
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws

    @property
    def last(self):
        return self.sockets[-1]


class FakeTranscriber:
    def __init__(self, name="fake", fail=False):
        self.name = name
        self.events = EventBus(TranscriberEvent)
        self.is_connected = False
        self.is_connecting = False
        self.fail = fail
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.audio = []

    def start_connect(self):
        self.is_connecting = True

    async def connect(self):
        self.connect_calls += 1
        self.is_connecting = False
        if self.fail:
            from errors import TransportConnectionError
            raise TransportConnectionError("no deepgram")
        self.is_connected = True

    async def send_audio(self, chunk):
        self.audio.append(chunk)

    async def disconnect(self):
        self.disconnect_calls += 1
        self.is_connected = False
        self.is_connecting = False


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def model_config():
    return ModelConfig(system_instruction="Be brief.", start_message=".")


@pytest.fixture
def fast_transcription():
    return TranscriptionConfig(settle_delay_sec=0.0, reconnect_delay_sec=0.0, idle_timeout_sec=60.0)


@pytest.fixture
def agent_config(model_config, fast_transcription):
    return AgentConfig(
        model=model_config,
        transcription=fast_transcription,
        gemini_api_key="test-key",
        deepgram_api_key="dg-key",
    )


async def settle(rounds: int = 5):
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)

import asyncio
import base64

import pytest

from conftest import FakeConnector, settle
from errors import InvalidToolResponse, NotConnected, ProtocolParseError, TransportConnectionError
from events import ModelEvent
from gemini_live import (
    GeminiLiveClient,
    ToolCall,
    ToolResponse,
    build_setup_message,
    classify_frame,
    decode_frame,
)


def _record(client):
    seen = []
    for event in ModelEvent:
        client.events.on(event, lambda payload, e=event: seen.append((e, payload)))
    return seen


def _audio_part(raw: bytes):
    return {"inlineData": {"mimeType": "audio/pcm;rate=24000", "data": base64.b64encode(raw).decode()}}


# --------------------------------------------------------------------------------------
# classify_frame
# --------------------------------------------------------------------------------------
def test_only_last_text_part_is_emitted():
    events = classify_frame({"serverContent": {"modelTurn": {"parts": [{"text": "a"}, {"text": "ab"}]}}})
    assert events == [(ModelEvent.TEXT, "ab")]


def test_interrupted_short_circuits_the_frame():
    frame = {
        "serverContent": {
            "interrupted": True,
            "turnComplete": True,
            "modelTurn": {"parts": [{"text": "hi"}, _audio_part(b"\x01\x02"), {"executableCode": {}}]},
        }
    }
    assert classify_frame(frame) == [(ModelEvent.INTERRUPTED, None)]


def test_turn_complete_does_not_stop_part_processing():
    frame = {"serverContent": {"turnComplete": True, "modelTurn": {"parts": [{"text": "bye"}]}}}
    assert classify_frame(frame) == [(ModelEvent.TEXT, "bye"), (ModelEvent.TURN_COMPLETE, None)]


def test_turn_complete_follows_trailing_audio():
    frame = {"serverContent": {"turnComplete": True, "modelTurn": {"parts": [_audio_part(b"tail")]}}}
    assert classify_frame(frame) == [(ModelEvent.AUDIO, b"tail"), (ModelEvent.TURN_COMPLETE, None)]


def test_blank_text_part_does_not_hide_earlier_text():
    frame = {"serverContent": {"modelTurn": {"parts": [{"text": "a"}, {"text": ""}]}}}
    assert classify_frame(frame) == [(ModelEvent.TEXT, "a")]
    assert classify_frame({"serverContent": {"modelTurn": {"parts": [{"text": " "}]}}}) == []


def test_audio_parts_are_decoded_in_order_and_other_parts_grouped():
    other = {"executableCode": {"code": "print(1)"}}
    frame = {"serverContent": {"modelTurn": {"parts": [_audio_part(b"one"), other, _audio_part(b"two")]}}}
    assert classify_frame(frame) == [
        (ModelEvent.AUDIO, b"one"),
        (ModelEvent.AUDIO, b"two"),
        (ModelEvent.CONTENT, {"modelTurn": {"parts": [other]}}),
    ]


def test_tool_call_and_cancellation():
    events = classify_frame({"toolCall": {"functionCalls": [{"id": "c1", "name": "get_time_context", "args": {}}]}})
    assert len(events) == 1
    event, payload = events[0]
    assert event is ModelEvent.TOOL_CALL
    assert isinstance(payload, ToolCall)
    assert payload.function_calls[0].id == "c1"

    assert classify_frame({"toolCallCancellation": {"ids": ["c1"]}}) == [(ModelEvent.TOOL_CALL_CANCELLATION, ["c1"])]


def test_invalid_audio_raises_parse_error():
    frame = {"serverContent": {"modelTurn": {"parts": [{"inlineData": {"mimeType": "audio/pcm", "data": "!!not-b64!!"}}]}}}
    with pytest.raises(ProtocolParseError):
        classify_frame(frame)


def test_decode_frame_rejects_non_objects():
    with pytest.raises(ProtocolParseError):
        decode_frame("not json")
    with pytest.raises(ProtocolParseError):
        decode_frame("[1, 2]")
    assert decode_frame(b'{"setupComplete": {}}') == {"setupComplete": {}}


def test_setup_message_shape(model_config):
    decls = [{"name": "get_time_context", "parameters": {"type": "OBJECT", "properties": {}}}]
    setup = build_setup_message(model_config, decls)["setup"]
    assert setup["model"] == "models/gemini-2.0-flash-exp"
    assert setup["generationConfig"]["temperature"] == 1.8
    assert setup["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
    assert setup["tools"] == [{"functionDeclarations": decls}]


# --------------------------------------------------------------------------------------
# GeminiLiveClient
# --------------------------------------------------------------------------------------
async def test_send_text_while_disconnected_connects_then_sends(model_config, connector):
    client = GeminiLiveClient(model_config, "key", connect_fn=connector)

    await client.send_text("hello", True)

    assert len(connector.calls) == 1
    frames = connector.last.json_frames()
    assert "setup" in frames[0]
    assert frames[1] == {
        "clientContent": {"turns": [{"role": "user", "parts": [{"text": "hello"}]}], "turnComplete": True}
    }
    await client.disconnect()


async def test_send_attempts_exactly_one_connect_before_failing(model_config):
    connector = FakeConnector(fail_with=OSError("refused"))
    client = GeminiLiveClient(model_config, "key", connect_fn=connector)

    with pytest.raises(NotConnected):
        await client.send_audio("AAAA")
    assert len(connector.calls) == 1

    with pytest.raises(TransportConnectionError):
        await client.connect()


async def test_concurrent_connects_share_one_transport(model_config, connector):
    client = GeminiLiveClient(model_config, "key", connect_fn=connector)
    await asyncio.gather(client.connect(), client.connect(), client.connect())
    assert len(connector.calls) == 1
    await client.disconnect()


async def test_abandoned_connect_failure_is_retrieved(model_config):
    gate = asyncio.Event()

    async def slow_refusal(url, **kwargs):
        await gate.wait()
        raise OSError("refused")

    client = GeminiLiveClient(model_config, "key", connect_fn=slow_refusal)
    caller = asyncio.ensure_future(client.connect())
    await settle()
    connect_task = client._connect_task
    caller.cancel()
    await settle()

    gate.set()
    await settle()

    assert connect_task.done()
    # Nobody awaited the shared task, yet asyncio will not warn about it.
    assert connect_task._log_traceback is False
    assert isinstance(connect_task.exception(), TransportConnectionError)


async def test_inbound_frames_are_deduplicated_and_bad_frames_survive(model_config, connector):
    client = GeminiLiveClient(model_config, "key", connect_fn=connector)
    seen = _record(client)
    await client.connect()
    ws = connector.last

    ws.feed({"serverContent": {"modelTurn": {"parts": [{"text": "a"}, {"text": "ab"}]}}})
    ws.feed({"serverContent": {"modelTurn": {"parts": [{"text": "ab"}]}}})
    ws.feed("{broken")
    ws.feed({"serverContent": {"turnComplete": True}})
    ws.feed({"serverContent": {"modelTurn": {"parts": [{"text": "ab"}]}}})
    await settle(10)

    texts = [p for e, p in seen if e is ModelEvent.TEXT]
    assert texts == ["ab", "ab"]
    assert (ModelEvent.TURN_COMPLETE, None) in seen
    assert client.is_connected
    await client.disconnect()


async def test_tool_response_requires_pending_id(model_config, connector):
    client = GeminiLiveClient(model_config, "key", connect_fn=connector)
    await client.connect()

    with pytest.raises(InvalidToolResponse):
        await client.send_tool_response(ToolResponse(id="", name="x"))
    with pytest.raises(InvalidToolResponse):
        await client.send_tool_response({"id": "unknown", "output": 1})

    connector.last.feed({"toolCall": {"functionCalls": [{"id": "c7", "name": "get_time_context"}]}})
    await settle()
    assert client.pending_tool_call_ids == ["c7"]

    await client.send_tool_response({"id": "c7", "output": {"result": "ok"}})
    assert connector.last.json_frames()[-1] == {
        "toolResult": {
            "functionResponse": {
                "name": "get_time_context",
                "response": {"id": "c7", "output": {"result": "ok"}, "error": None},
            }
        }
    }
    assert client.pending_tool_call_ids == []
    await client.disconnect()


async def test_cancellation_clears_pending_call(model_config, connector):
    client = GeminiLiveClient(model_config, "key", connect_fn=connector)
    await client.connect()
    connector.last.feed({"toolCall": {"functionCalls": [{"id": "c1", "name": "slow"}]}})
    connector.last.feed({"toolCallCancellation": {"ids": ["c1"]}})
    await settle()

    with pytest.raises(InvalidToolResponse):
        await client.send_tool_response({"id": "c1", "output": None})
    await client.disconnect()


async def test_disconnect_twice_is_harmless(model_config, connector):
    client = GeminiLiveClient(model_config, "key", connect_fn=connector)
    seen = _record(client)
    await client.connect()

    await client.disconnect()
    await client.disconnect()

    assert not client.is_connected
    assert [e for e, _ in seen].count(ModelEvent.DISCONNECTED) == 1


async def test_unexpected_close_emits_disconnected(model_config, connector):
    client = GeminiLiveClient(model_config, "key", connect_fn=connector)
    seen = _record(client)
    await client.connect()

    connector.last.drop(1011, "boom")
    await settle()

    assert not client.is_connected
    assert any(e is ModelEvent.DISCONNECTED for e, _ in seen)

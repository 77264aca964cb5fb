import asyncio
from types import SimpleNamespace

import openai
import pytest

from conftest import settle
from errors import InvalidToolResponse, TransportConnectionError
from events import ModelEvent
from model_factory import create_model_client
from openai_chat import OpenAIChatClient, to_openai_tools
from settings import AgentConfig, ModelConfig

DECLARATIONS = [
    {
        "name": "get_time_context",
        "description": "Current date and time.",
        "parameters": {"type": "OBJECT", "properties": {"tz": {"type": "STRING"}}},
    }
]


def _text(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content, tool_calls=None))])


def _tool(index, id=None, name=None, arguments=None):
    call = SimpleNamespace(index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments))
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=None, tool_calls=[call]))])


class FakeCompletions:
    """Each streamed request plays the next script; an asyncio.Event in a script blocks until set."""

    def __init__(self, *scripts):
        self.scripts = list(scripts)
        self.calls = []
        self.validate_error = None
        self.error = None

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if not kwargs.get("stream"):
            if self.validate_error is not None:
                raise self.validate_error
            return SimpleNamespace(choices=[])
        if self.error is not None:
            raise self.error
        return self._stream(self.scripts.pop(0) if self.scripts else [])

    async def _stream(self, script):
        for item in script:
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            yield item

    @property
    def streamed(self):
        return [c for c in self.calls if c.get("stream")]


def _client(completions, tools=None, config=None):
    fake = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return OpenAIChatClient(config or ModelConfig(system_instruction="Be brief."), None, tools, client=fake)


def _record(client):
    seen = []
    for event in ModelEvent:
        client.events.on(event, lambda payload, e=event: seen.append((e, payload)))
    return seen


def test_api_key_is_required():
    with pytest.raises(ValueError):
        OpenAIChatClient(ModelConfig(), "  ")


def test_declarations_become_function_tools():
    assert to_openai_tools(DECLARATIONS) == [
        {
            "type": "function",
            "function": {
                "name": "get_time_context",
                "description": "Current date and time.",
                "parameters": {"type": "object", "properties": {"tz": {"type": "string"}}},
            },
        }
    ]
    assert to_openai_tools([{"name": "noop"}])[0]["function"]["parameters"] == {"type": "object", "properties": {}}


async def test_connect_validates_the_key_with_one_token():
    completions = FakeCompletions()
    client = _client(completions)
    seen = _record(client)

    await client.connect()
    await client.connect()

    assert len(completions.calls) == 1
    assert completions.calls[0]["max_tokens"] == 1
    assert client.is_connected
    assert seen == [(ModelEvent.CONNECTED, None)]


async def test_rejected_key_fails_the_connect():
    completions = FakeCompletions()
    completions.validate_error = openai.OpenAIError("invalid api key")
    client = _client(completions)

    with pytest.raises(TransportConnectionError, match="invalid api key"):
        await client.connect()
    assert not client.is_connected


async def test_turn_streams_text_deltas_then_completes():
    completions = FakeCompletions([_text("Hel"), _text(""), _text("lo")])
    client = _client(completions, DECLARATIONS)
    seen = _record(client)
    await client.connect()

    await client.send_text("hi")

    assert seen[1:] == [(ModelEvent.TEXT, "Hel"), (ModelEvent.TEXT, "lo"), (ModelEvent.TURN_COMPLETE, None)]
    request = completions.streamed[0]
    assert request["messages"][0] == {"role": "system", "content": "Be brief."}
    assert request["messages"][1] == {"role": "user", "content": "hi"}
    assert request["tools"][0]["function"]["parameters"]["type"] == "object"
    assert client.conversation[-1] == {"role": "assistant", "content": "Hello"}


async def test_unfinished_turn_is_held_until_end_of_turn():
    completions = FakeCompletions([_text("ok")])
    client = _client(completions)
    await client.connect()

    await client.send_image("ZnJhbWU=")
    await client.send_text("what is this?", end_of_turn=False)
    assert completions.streamed == []

    await client.send_text("answer briefly")
    messages = completions.streamed[0]["messages"]
    assert messages[1]["content"][0]["image_url"]["url"] == "data:image/jpeg;base64,ZnJhbWU="
    assert [m["content"] for m in messages[2:]] == ["what is this?", "answer briefly"]


async def test_streamed_tool_calls_wait_for_every_response():
    completions = FakeCompletions(
        [
            _tool(0, id="call_a", name="get_time_context", arguments='{"tz": '),
            _tool(1, id="call_b", name="get_time_context", arguments="{}"),
            _tool(0, arguments='"UTC"}'),
        ],
        [_text("It is noon.")],
    )
    client = _client(completions, DECLARATIONS)
    seen = _record(client)
    await client.connect()

    await client.send_text("what time is it?")

    calls = [p for e, p in seen if e is ModelEvent.TOOL_CALL]
    assert len(calls) == 1
    assert [(fc.id, fc.args) for fc in calls[0].function_calls] == [("call_a", {"tz": "UTC"}), ("call_b", {})]
    assert client.pending_tool_call_ids == ["call_a", "call_b"]

    with pytest.raises(InvalidToolResponse):
        await client.send_tool_response({"id": "call_zz", "output": 1})

    await client.send_tool_response({"id": "call_a", "output": {"time": "12:00"}})
    assert len(completions.streamed) == 1

    await client.send_tool_response({"id": "call_b", "error": "tz unknown"})
    assert len(completions.streamed) == 2
    tail = completions.streamed[1]["messages"][-2:]
    assert tail == [
        {"role": "tool", "tool_call_id": "call_a", "content": '{"time": "12:00"}'},
        {"role": "tool", "tool_call_id": "call_b", "content": "tz unknown"},
    ]
    assert (ModelEvent.TEXT, "It is noon.") in seen


async def test_new_turn_interrupts_a_streaming_answer():
    gate = asyncio.Event()
    completions = FakeCompletions([_text("long "), gate, _text("answer")], [_text("short")])
    client = _client(completions)
    seen = _record(client)
    await client.connect()

    first = asyncio.ensure_future(client.send_text("tell me a story"))
    await settle()
    await client.send_text("stop")
    await first

    texts = [p for e, p in seen if e is ModelEvent.TEXT]
    assert texts == ["long ", "short"]
    assert [e for e, _ in seen].count(ModelEvent.INTERRUPTED) == 1
    assert [e for e, _ in seen].count(ModelEvent.TURN_COMPLETE) == 1


async def test_request_error_is_spoken_back():
    completions = FakeCompletions()
    completions.error = openai.OpenAIError("boom")
    client = _client(completions)
    seen = _record(client)
    await client.connect()

    await client.send_text("hi")

    assert seen[1:] == [(ModelEvent.TEXT, "Sorry, an error occurred: boom"), (ModelEvent.TURN_COMPLETE, None)]


async def test_audio_is_dropped():
    completions = FakeCompletions()
    client = _client(completions)
    await client.connect()
    await client.send_audio("AAAA")
    assert len(completions.calls) == 1
    assert client.conversation == []


async def test_disconnect_twice_is_harmless():
    client = _client(FakeCompletions())
    seen = _record(client)
    await client.connect()

    await client.disconnect()
    await client.disconnect()

    assert not client.is_connected
    assert [e for e, _ in seen].count(ModelEvent.DISCONNECTED) == 1


def test_factory_selects_openai_transport():
    config = AgentConfig(model=ModelConfig(transport="openai", openai_model="gpt-4o-mini"), openai_api_key="sk-test")
    client = create_model_client(config, DECLARATIONS)
    assert isinstance(client, OpenAIChatClient)
    assert client.model_name == "gpt-4o-mini"
    assert client.tools[0]["function"]["name"] == "get_time_context"

    with pytest.raises(ValueError):
        create_model_client(AgentConfig(model=ModelConfig(transport="openai")))

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Union

import openai
from openai import AsyncOpenAI

from errors import InvalidToolResponse, TransportConnectionError
from events import EventBus, ModelEvent
from gemini_live import FunctionCall, ToolCall, ToolResponse
from settings import ModelConfig

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_MODEL = "gpt-4o"


def _json_schema(schema: Any) -> Any:
    """Gemini declarations spell types in upper case ("OBJECT"); JSON Schema wants lower case."""
    if isinstance(schema, dict):
        out = {}
        for k, v in schema.items():
            if k == "type" and isinstance(v, str):
                out[k] = v.lower()
            else:
                out[k] = _json_schema(v)
        return out
    if isinstance(schema, list):
        return [_json_schema(v) for v in schema]
    return schema


def to_openai_tools(declarations: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    tools = []
    for decl in declarations:
        fn: Dict[str, Any] = {"name": decl["name"]}
        if decl.get("description"):
            fn["description"] = decl["description"]
        fn["parameters"] = _json_schema(decl.get("parameters") or {"type": "OBJECT", "properties": {}})
        tools.append({"type": "function", "function": fn})
    return tools


class OpenAIChatClient:
    """
    Chat-completions backend. Each completed user turn streams one response;
    every content delta becomes a `text` event and the end of the stream a
    `turn_complete`. A new turn while a response is still streaming cancels it
    and emits `interrupted`.

    Tool calls are collected from the stream and published as one `tool_call`.
    The follow-up request goes out once every pending call has been answered.
    """

    supports_realtime = False

    def __init__(
        self,
        config: ModelConfig,
        api_key: Optional[str] = None,
        tool_declarations: Optional[List[Dict[str, Any]]] = None,
        *,
        name: str = "OpenAI",
        client: Optional[Any] = None,
    ):
        api_key = (api_key or "").strip()
        if client is None and not api_key:
            raise ValueError("API key is required for OpenAI model")
        self.name = name
        self.config = config
        self.model_name = config.openai_model or DEFAULT_OPENAI_MODEL
        self.client = client or AsyncOpenAI(api_key=api_key)
        self.tools = to_openai_tools(tool_declarations or [])
        self.events: EventBus[ModelEvent] = EventBus(ModelEvent)

        self._conversation: List[Dict[str, Any]] = []
        self._pending_tool_calls: Dict[str, str] = {}
        self._request_task: Optional[asyncio.Task] = None
        self._connected = False
        logger.info("[OPENAI] Model initialized with %s", self.model_name)

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def conversation(self) -> List[Dict[str, Any]]:
        return list(self._conversation)

    @property
    def pending_tool_call_ids(self) -> List[str]:
        return list(self._pending_tool_calls)

    async def connect(self) -> None:
        """No persistent connection; a one-token request validates the key."""
        if self._connected:
            return
        try:
            await self.client.chat.completions.create(
                model=self.model_name,
                messages=[
                    {"role": "system", "content": "Hello! This is a test message."},
                    {"role": "user", "content": "Hi"},
                ],
                max_tokens=1,
            )
        except openai.OpenAIError as e:
            logger.error("[OPENAI] API key validation failed: %s", e)
            raise TransportConnectionError(f"OpenAI API key validation failed: {e}") from e
        self._connected = True
        logger.info("[OPENAI] API key validated successfully")
        self.events.emit(ModelEvent.CONNECTED)

    async def disconnect(self) -> None:
        if not self._connected and self._request_task is None:
            return
        await self._cancel_request(emit=False)
        self._conversation.clear()
        self._pending_tool_calls.clear()
        self._connected = False
        logger.info("[OPENAI] Disconnected")
        self.events.emit(ModelEvent.DISCONNECTED, {"code": 1000, "reason": "client disconnect"})

    async def send_text(self, text: str, end_of_turn: bool = True) -> None:
        self._conversation.append({"role": "user", "content": text})
        await self._cancel_request()
        if end_of_turn:
            await self._request()

    async def send_image(self, b64_image: str, mime_type: str = "image/jpeg") -> None:
        # Attached to the next request.
        self._conversation.append({
            "role": "user",
            "content": [{"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{b64_image}"}}],
        })
        logger.debug("[OPENAI] Image of %d KB prepared", round(len(b64_image) / 1024))

    async def send_audio(self, b64_audio: str) -> None:
        logger.debug("[OPENAI] Direct audio streaming is not supported; chunk dropped")

    async def send_tool_response(self, response: Union[ToolResponse, Dict[str, Any]]) -> None:
        if isinstance(response, dict):
            response = ToolResponse(
                id=str(response.get("id") or ""),
                name=str(response.get("name") or ""),
                output=response.get("output"),
                error=response.get("error"),
            )
        if response is None or not response.id:
            raise InvalidToolResponse("Tool response must include an id")
        name = self._pending_tool_calls.pop(response.id, None)
        if name is None:
            raise InvalidToolResponse(f"No pending tool call with id '{response.id}'")

        self._conversation.append({
            "role": "tool",
            "tool_call_id": response.id,
            "content": response.error if response.error else json.dumps(response.output, default=str),
        })
        if not self._pending_tool_calls:
            await self._request()

    # ----------------------------------------------------------------------------------
    # Requests
    # ----------------------------------------------------------------------------------
    async def _cancel_request(self, emit: bool = True) -> None:
        task, self._request_task = self._request_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        if emit:
            self.events.emit(ModelEvent.INTERRUPTED)

    async def _request(self) -> None:
        if not self._conversation:
            logger.debug("[OPENAI] Skipping request: empty conversation")
            return
        task = asyncio.ensure_future(self._stream_response())
        self._request_task = task
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                # Superseded by a newer turn or by disconnect().
                return
            raise
        finally:
            if self._request_task is task:
                self._request_task = None

    def _build_request(self) -> Dict[str, Any]:
        messages: List[Dict[str, Any]] = []
        if self.config.system_instruction:
            messages.append({"role": "system", "content": self.config.system_instruction})
        messages += self._conversation
        request: Dict[str, Any] = {
            "model": self.model_name,
            "messages": messages,
            "stream": True,
            "temperature": self.config.temperature,
            "top_p": self.config.top_p,
        }
        if self.tools:
            request["tools"] = self.tools
        return request

    async def _stream_response(self) -> None:
        text: List[str] = []
        calls: Dict[int, Dict[str, str]] = {}
        try:
            stream = await self.client.chat.completions.create(**self._build_request())
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                content = getattr(delta, "content", None)
                if content:
                    text.append(content)
                    self.events.emit(ModelEvent.TEXT, content)
                for tc in getattr(delta, "tool_calls", None) or []:
                    slot = calls.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                    if tc.id:
                        slot["id"] = tc.id
                    if tc.function is not None:
                        slot["name"] += tc.function.name or ""
                        slot["arguments"] += tc.function.arguments or ""
        except openai.OpenAIError as e:
            logger.error("[OPENAI] Request error: %s", e)
            self.events.emit(ModelEvent.TEXT, f"Sorry, an error occurred: {e}")
            self.events.emit(ModelEvent.TURN_COMPLETE)
            return

        ordered = [calls[i] for i in sorted(calls)]
        message: Dict[str, Any] = {"role": "assistant", "content": "".join(text) or None}
        if ordered:
            message["tool_calls"] = [
                {"id": c["id"], "type": "function", "function": {"name": c["name"], "arguments": c["arguments"]}}
                for c in ordered
            ]
        self._conversation.append(message)

        function_calls = [self._function_call(c) for c in ordered]

        if function_calls:
            for fc in function_calls:
                self._pending_tool_calls[fc.id] = fc.name
            self.events.emit(ModelEvent.TOOL_CALL, ToolCall(function_calls=function_calls))
        logger.debug("[OPENAI] Stream complete")
        self.events.emit(ModelEvent.TURN_COMPLETE)

    def _function_call(self, slot: Dict[str, str]) -> FunctionCall:
        try:
            args = json.loads(slot["arguments"]) if slot["arguments"] else {}
        except json.JSONDecodeError as e:
            logger.error("[OPENAI] Could not parse arguments for %s: %s", slot["name"], e)
            args = {}
        return FunctionCall(id=slot["id"], name=slot["name"], args=args if isinstance(args, dict) else {})

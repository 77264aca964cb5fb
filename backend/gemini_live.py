"""
Raw WebSocket client for the Gemini Live (BidiGenerateContent) API.

Outbound frames are JSON objects carrying exactly one of `setup`,
`clientContent`, `realtimeInput` or `toolResult`. Inbound frames carry one of
`toolCall`, `toolCallCancellation` or `serverContent`; `classify_frame` turns
them into a flat list of (ModelEvent, payload) pairs which the client then
publishes on its EventBus.
"""

import asyncio
import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from errors import InvalidToolResponse, NotConnected, ProtocolParseError, TransportConnectionError
from events import EventBus, ModelEvent
from settings import ModelConfig

logger = logging.getLogger(__name__)

GEMINI_WEBSOCKET_HOST = "generativelanguage.googleapis.com"
GEMINI_API_VERSION = "v1alpha"
AUDIO_MIME_PREFIX = "audio/pcm"
IMAGE_MIME_TYPE = "image/jpeg"


@dataclass
class FunctionCall:
    id: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "FunctionCall":
        return cls(id=str(d.get("id") or ""), name=str(d.get("name") or ""), args=dict(d.get("args") or {}))


@dataclass
class ToolCall:
    function_calls: List[FunctionCall] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ToolCall":
        calls = d.get("functionCalls") or []
        if not isinstance(calls, list):
            raise ProtocolParseError("toolCall.functionCalls is not a list", d)
        return cls(function_calls=[FunctionCall.from_dict(fc) for fc in calls if isinstance(fc, dict)])


@dataclass
class ToolResponse:
    id: str
    name: str
    output: Any = None
    error: Optional[str] = None


def build_websocket_url(api_key: str, api_version: str = GEMINI_API_VERSION) -> str:
    return (
        f"wss://{GEMINI_WEBSOCKET_HOST}/ws/"
        f"google.ai.generativelanguage.{api_version}.GenerativeService.BidiGenerateContent"
        f"?key={api_key}"
    )


def build_setup_message(config: ModelConfig, tool_declarations: Optional[List[Dict[str, Any]]] = None) -> dict:
    model = config.name
    if not model.startswith("models/"):
        model = f"models/{model}"

    setup: Dict[str, Any] = {
        "model": model,
        "generationConfig": config.generation_config(),
    }
    if config.system_instruction:
        setup["systemInstruction"] = {"parts": [{"text": config.system_instruction}]}
    if tool_declarations:
        setup["tools"] = [{"functionDeclarations": list(tool_declarations)}]
    return {"setup": setup}


def build_text_message(text: str, end_of_turn: bool = True) -> dict:
    return {
        "clientContent": {
            "turns": [{"role": "user", "parts": [{"text": text}]}],
            "turnComplete": bool(end_of_turn),
        }
    }


def build_media_message(mime_type: str, b64_data: str) -> dict:
    return {"realtimeInput": {"mediaChunks": [{"mimeType": mime_type, "data": b64_data}]}}


def build_tool_response_message(response: ToolResponse) -> dict:
    return {
        "toolResult": {
            "functionResponse": {
                "name": response.name,
                "response": {
                    "id": response.id,
                    "output": response.output,
                    "error": response.error,
                },
            }
        }
    }


def decode_frame(raw: Union[str, bytes, bytearray]) -> Dict[str, Any]:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolParseError(f"Frame is not UTF-8: {e}", raw) from e
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolParseError(f"Frame is not JSON: {e}", raw) from e
    if not isinstance(frame, dict):
        raise ProtocolParseError("Frame is not a JSON object", raw)
    return frame


def _is_audio_part(part: Dict[str, Any]) -> bool:
    inline = part.get("inlineData")
    if not isinstance(inline, dict):
        return False
    return str(inline.get("mimeType") or "").startswith(AUDIO_MIME_PREFIX)


def classify_frame(frame: Dict[str, Any]) -> List[Tuple[ModelEvent, Any]]:
    """
    Split one inbound frame into events, in emission order.

    - toolCall / toolCallCancellation end processing of the frame.
    - serverContent.interrupted emits INTERRUPTED and nothing else.
    - serverContent.turnComplete emits TURN_COMPLETE after the frame's parts.
    - Of the text parts only the last non-blank one is emitted.
    - Audio parts are base64-decoded and emitted one by one, in order.
    - Remaining parts are grouped into a single CONTENT event.
    """
    if "toolCall" in frame:
        tool_call = frame.get("toolCall")
        if not isinstance(tool_call, dict):
            raise ProtocolParseError("toolCall is not an object", frame)
        return [(ModelEvent.TOOL_CALL, ToolCall.from_dict(tool_call))]

    if "toolCallCancellation" in frame:
        cancellation = frame.get("toolCallCancellation") or {}
        ids = cancellation.get("ids") if isinstance(cancellation, dict) else None
        return [(ModelEvent.TOOL_CALL_CANCELLATION, [str(i) for i in (ids or [])])]

    server_content = frame.get("serverContent")
    if server_content is None:
        return []
    if not isinstance(server_content, dict):
        raise ProtocolParseError("serverContent is not an object", frame)

    if server_content.get("interrupted"):
        return [(ModelEvent.INTERRUPTED, None)]

    out = _classify_parts(server_content.get("modelTurn"), frame)
    if server_content.get("turnComplete"):
        out.append((ModelEvent.TURN_COMPLETE, None))
    return out


def _has_text(part: Any) -> bool:
    text = part.get("text") if isinstance(part, dict) else None
    return isinstance(text, str) and bool(text.strip())


def _classify_parts(model_turn: Any, frame: Dict[str, Any]) -> List[Tuple[ModelEvent, Any]]:
    out: List[Tuple[ModelEvent, Any]] = []
    if not model_turn:
        return out
    parts = model_turn.get("parts") if isinstance(model_turn, dict) else None
    if parts is None:
        return out
    if not isinstance(parts, list):
        raise ProtocolParseError("modelTurn.parts is not a list", frame)

    text_parts = [p for p in parts if _has_text(p)]
    audio_parts = [p for p in parts if isinstance(p, dict) and _is_audio_part(p)]
    other_parts = [p for p in parts if not (isinstance(p, dict) and ("text" in p or _is_audio_part(p)))]

    if text_parts:
        out.append((ModelEvent.TEXT, text_parts[-1]["text"]))

    for part in audio_parts:
        b64 = part["inlineData"].get("data")
        if not b64:
            continue
        try:
            out.append((ModelEvent.AUDIO, base64.b64decode(b64, validate=True)))
        except (binascii.Error, ValueError, TypeError) as e:
            raise ProtocolParseError(f"Audio part is not valid base64: {e}", frame) from e

    if other_parts:
        out.append((ModelEvent.CONTENT, {"modelTurn": {"parts": other_parts}}))
    return out


def _is_open(ws) -> bool:
    return ws is not None and getattr(ws, "state", None) is State.OPEN


def _consume_exception(task: asyncio.Task) -> None:
    # Every awaiter of a shared connect may have been cancelled; the failure is already logged.
    if not task.cancelled():
        task.exception()


class GeminiLiveClient:
    """
    Single duplex connection to the Gemini Live API.

    `connect()` is idempotent: concurrent callers share one in-flight attempt.
    Every send lazily connects once and raises NotConnected if the transport is
    still not open afterwards.
    """

    supports_realtime = True

    def __init__(
        self,
        config: ModelConfig,
        api_key: str,
        tool_declarations: Optional[List[Dict[str, Any]]] = None,
        *,
        name: str = "GeminiLive",
        url: Optional[str] = None,
        connect_fn: Optional[Callable[..., Any]] = None,
    ):
        if not api_key:
            raise ValueError("API key is required for Gemini model")
        self.name = name
        self.config = config
        self.tool_declarations = list(tool_declarations or [])
        self.url = url or build_websocket_url(api_key)
        self.events: EventBus[ModelEvent] = EventBus(ModelEvent)
        self.last_emitted_text = ""

        self._connect_fn = connect_fn or websocket_connect
        self._ws = None
        self._connect_task: Optional[asyncio.Task] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._pending_tool_calls: Dict[str, str] = {}

    @property
    def is_connected(self) -> bool:
        return _is_open(self._ws)

    @property
    def pending_tool_call_ids(self) -> List[str]:
        return list(self._pending_tool_calls)

    async def connect(self) -> None:
        if self.is_connected:
            return
        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.ensure_future(self._open())
            self._connect_task.add_done_callback(_consume_exception)
        await asyncio.shield(self._connect_task)

    async def _open(self) -> None:
        logger.info("[GEMINI] Establishing %s WebSocket connection...", self.name)
        try:
            ws = await self._connect_fn(self.url, max_size=None)
        except Exception as e:
            logger.error("[GEMINI] Could not connect to Gemini API. Reason: %s", e)
            raise TransportConnectionError(f"Could not connect to Gemini API. Reason: {e}") from e

        setup = build_setup_message(self.config, self.tool_declarations)
        try:
            await ws.send(json.dumps(setup))
        except Exception as e:
            await self._close_quietly(ws)
            raise TransportConnectionError(f"Failed to send setup to Gemini API: {e}") from e

        self._ws = ws
        self.last_emitted_text = ""
        self._receive_task = asyncio.ensure_future(self._receive_loop(ws))
        logger.info("[GEMINI] Connected; setup sent for %s", setup["setup"]["model"])
        self.events.emit(ModelEvent.CONNECTED)

    async def _receive_loop(self, ws) -> None:
        close_info: Dict[str, Any] = {"code": None, "reason": ""}
        try:
            async for raw in ws:
                self.handle_frame(raw)
        except ConnectionClosed as e:
            rcvd = getattr(e, "rcvd", None)
            close_info = {"code": getattr(rcvd, "code", None), "reason": getattr(rcvd, "reason", "")}
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("[GEMINI] Receive loop failed: %s", e)
            close_info = {"code": None, "reason": str(e)}
        finally:
            if self._ws is ws:
                # Closed by the peer or the network, not by disconnect().
                self._ws = None
                self._pending_tool_calls.clear()
                logger.warning("[GEMINI] Connection closed unexpectedly: %s", close_info)
                self.events.emit(ModelEvent.DISCONNECTED, close_info)

    def handle_frame(self, raw: Union[str, bytes, bytearray]) -> None:
        """Classify one inbound frame and publish its events. Bad frames are logged and dropped."""
        try:
            frame = decode_frame(raw)
            classified = classify_frame(frame)
        except ProtocolParseError as e:
            logger.error("[GEMINI] Error processing Gemini WebSocket response: %s", e)
            return

        if not classified:
            if "setupComplete" in frame:
                logger.debug("[GEMINI] Setup complete")
            else:
                logger.debug("[GEMINI] Received unmatched message: %s", str(frame)[:200])
            return

        for event, payload in classified:
            if event is ModelEvent.TEXT:
                if payload == self.last_emitted_text:
                    continue
                self.last_emitted_text = payload
            elif event is ModelEvent.TOOL_CALL:
                for fc in payload.function_calls:
                    if fc.id:
                        self._pending_tool_calls[fc.id] = fc.name
            elif event is ModelEvent.TOOL_CALL_CANCELLATION:
                for call_id in payload:
                    self._pending_tool_calls.pop(call_id, None)
            elif event in (ModelEvent.TURN_COMPLETE, ModelEvent.INTERRUPTED):
                self.last_emitted_text = ""
            self.events.emit(event, payload)

    async def _send_json(self, payload: dict) -> None:
        if not self.is_connected:
            try:
                await self.connect()
            except TransportConnectionError as e:
                raise NotConnected(f"{self.name} is not connected: {e}") from e
        if not self.is_connected:
            raise NotConnected(f"{self.name} WebSocket is not in OPEN state")
        try:
            await self._ws.send(json.dumps(payload))
        except ConnectionClosed as e:
            raise NotConnected(f"{self.name} connection closed during send: {e}") from e

    async def send_text(self, text: str, end_of_turn: bool = True) -> None:
        await self._send_json(build_text_message(text, end_of_turn))
        logger.debug("[GEMINI] Text sent: %s", text)

    async def send_image(self, b64_image: str, mime_type: str = IMAGE_MIME_TYPE) -> None:
        await self._send_json(build_media_message(mime_type, b64_image))
        logger.debug("[GEMINI] Image with size of %d KB sent", round(len(b64_image) / 1024))

    async def send_audio(self, b64_audio: str) -> None:
        await self._send_json(build_media_message(AUDIO_MIME_PREFIX, b64_audio))

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
        if response.id not in self._pending_tool_calls:
            raise InvalidToolResponse(f"No pending tool call with id '{response.id}'")
        if not response.name:
            response.name = self._pending_tool_calls[response.id]

        await self._send_json(build_tool_response_message(response))
        self._pending_tool_calls.pop(response.id, None)
        logger.debug("[GEMINI] Tool response sent for %s (%s)", response.name, response.id)

    async def disconnect(self) -> None:
        ws, self._ws = self._ws, None
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        self._connect_task = None
        task, self._receive_task = self._receive_task, None
        if task is not None and not task.done():
            task.cancel()
        self._pending_tool_calls.clear()
        if ws is None:
            return
        await self._close_quietly(ws)
        logger.info("[GEMINI] Successfully disconnected from %s", self.name)
        self.events.emit(ModelEvent.DISCONNECTED, {"code": 1000, "reason": "client disconnect"})

    async def _close_quietly(self, ws) -> None:
        try:
            await ws.close()
        except Exception as e:
            logger.debug("[GEMINI] Error while closing socket: %s", e)

import logging
from typing import Any, Dict, List, Optional

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from events import EventBus, ModelEvent
from settings import ModelConfig

logger = logging.getLogger(__name__)

ALTERNATIVE_MODELS = (
    ("gemini-2.0-flash", "Gemini 2.0 Flash"),
    ("gemini-1.5-pro", "Gemini 1.5 Pro"),
    ("gemini-1.5-flash", "Gemini 1.5 Flash"),
)


def _short_model_name(full_name: str) -> str:
    return full_name.split("/")[-1]


class GeminiRestClient:
    """
    Request/response fallback for when no live connection is wanted.

    Publishes the same events as GeminiLiveClient (text, turn_complete) but has
    no persistent transport: audio, images, interruptions and tool calls are
    not available. Conversation history is kept client-side and sent with
    every request.
    """

    supports_realtime = False

    def __init__(
        self,
        config: ModelConfig,
        api_key: Optional[str] = None,
        *,
        name: str = "GeminiRest",
        client: Optional[Any] = None,
    ):
        if client is None and not api_key:
            raise ValueError("API key is required for Gemini model")
        self.name = name
        self.config = config
        self.client = client or genai.Client(api_key=api_key)
        self.events: EventBus[ModelEvent] = EventBus(ModelEvent)
        self._history: List[types.Content] = []
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def history(self) -> List[types.Content]:
        return list(self._history)

    async def connect(self) -> None:
        if self._connected:
            return
        self._connected = True
        logger.info("[GEMINI] %s REST API client initialized", self.name)
        self.events.emit(ModelEvent.CONNECTED)

    async def disconnect(self) -> None:
        if not self._connected:
            return
        self._connected = False
        self._history.clear()
        logger.info("[GEMINI] %s disconnected", self.name)
        self.events.emit(ModelEvent.DISCONNECTED, {"code": 1000, "reason": "client disconnect"})

    def _generate_config(self) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            system_instruction=self.config.system_instruction or None,
            temperature=self.config.temperature,
            top_p=self.config.top_p,
            top_k=self.config.top_k,
        )

    async def send_text(self, text: str, end_of_turn: bool = True) -> None:
        """Queue `text` as a user part; the request goes out once the turn ends."""
        self._history.append(types.Content(role="user", parts=[types.Part(text=text)]))
        if not end_of_turn:
            return

        logger.debug("[GEMINI] Sending text to %s via REST API: %s", self.name, text)
        try:
            response = await self.client.aio.models.generate_content(
                model=self.config.name,
                contents=self._history,
                config=self._generate_config(),
            )
        except genai_errors.APIError as e:
            logger.error("[GEMINI] API error (%s): %s", e.code, e.message)
            self._finish_turn(self._describe_api_error(e))
            return
        except Exception as e:
            logger.error("[GEMINI] Error sending text to %s: %s", self.name, e)
            self._finish_turn(f"Sorry, an error occurred: {e}")
            return

        candidates = getattr(response, "candidates", None) or []
        content = getattr(candidates[0], "content", None) if candidates else None
        parts = getattr(content, "parts", None) or []
        texts = [p.text for p in parts if getattr(p, "text", None)]
        if not texts:
            logger.error("[GEMINI] No valid response from %s", self.name)
            self._finish_turn("Sorry, I couldn't generate a response. Please try again.")
            return

        self._history.append(types.Content(role="model", parts=[types.Part(text=t) for t in texts]))
        for t in texts:
            self.events.emit(ModelEvent.TEXT, t)
        self.events.emit(ModelEvent.TURN_COMPLETE)

    def _finish_turn(self, message: str) -> None:
        self.events.emit(ModelEvent.TEXT, message)
        self.events.emit(ModelEvent.TURN_COMPLETE)

    def _describe_api_error(self, e: "genai_errors.APIError") -> str:
        message = str(e.message or "")
        if e.code == 404 and "not found" in message.lower():
            model = _short_model_name(self.config.name)
            lines = [f'The model "{model}" is not available. Please try one of these models instead:']
            lines += [f"- {name} ({label})" for name, label in ALTERNATIVE_MODELS if name != model]
            return "\n".join(lines)
        return f"Sorry, an error occurred: API error ({e.code}): {message}"

    async def send_image(self, b64_image: str, mime_type: str = "image/jpeg") -> None:
        logger.warning("[GEMINI] Images are not supported in REST API mode")

    async def send_audio(self, b64_audio: str) -> None:
        logger.debug("[GEMINI] Audio is not supported in REST API mode; chunk dropped")

    async def send_tool_response(self, response: Dict[str, Any]) -> None:
        logger.warning("[GEMINI] Tool responses are not supported in REST API mode")

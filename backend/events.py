import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Set, Type, TypeVar

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)
Handler = Callable[[Any], Any]


class ModelEvent(Enum):
    TEXT = "text"
    AUDIO = "audio"
    CONTENT = "content"
    TOOL_CALL = "tool_call"
    TOOL_CALL_CANCELLATION = "tool_call_cancellation"
    TURN_COMPLETE = "turn_complete"
    INTERRUPTED = "interrupted"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class TranscriberEvent(Enum):
    TRANSCRIPTION = "transcription"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class AgentEvent(Enum):
    TEXT = "text"
    TEXT_SENT = "text_sent"
    AUDIO = "audio"
    TOOL_CALL = "tool_call"
    TURN_COMPLETE = "turn_complete"
    INTERRUPTED = "interrupted"
    TRANSCRIPTION = "transcription"
    USER_TRANSCRIPTION = "user_transcription"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    SCREENSHARE_STOPPED = "screenshare_stopped"
    ERROR = "error"


class EventBus(Generic[E]):
    """
    Publish/subscribe over a closed set of event names.

    Handlers may be plain callables or coroutine functions. Coroutines are
    scheduled as tasks so that `emit` never waits on a subscriber; a handler
    that raises is logged and does not affect the emitter or other handlers.
    """

    def __init__(self, events: Type[E]):
        self._events = events
        self._handlers: Dict[E, List[Handler]] = {}
        self._tasks: Set[asyncio.Task] = set()

    def _check(self, event: E) -> None:
        if not isinstance(event, self._events):
            raise TypeError(f"{event!r} is not a {self._events.__name__}")

    def on(self, event: E, handler: Handler) -> Callable[[], bool]:
        self._check(event)
        self._handlers.setdefault(event, []).append(handler)
        return lambda: self.off(event, handler)

    def once(self, event: E, handler: Handler) -> Callable[[], bool]:
        def _wrapper(payload):
            self.off(event, _wrapper)
            return handler(payload)

        return self.on(event, _wrapper)

    def off(self, event: E, handler: Handler) -> bool:
        handlers = self._handlers.get(event)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        if not handlers:
            del self._handlers[event]
        return True

    def clear(self) -> None:
        self._handlers.clear()

    def listener_count(self, event: E) -> int:
        return len(self._handlers.get(event, []))

    def emit(self, event: E, payload: Any = None) -> None:
        self._check(event)
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(payload)
            except Exception as e:
                logger.exception("[EVENTS] Handler for %s failed: %s", event.value, e)
                continue
            if asyncio.iscoroutine(result):
                self._spawn(event, result)

    def _spawn(self, event: E, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task):
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error("[EVENTS] Async handler for %s failed: %s", event.value, exc)

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for every scheduled handler task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_pending(self) -> None:
        for task in list(self._tasks):
            task.cancel()

"""
Deepgram live transcription side channel.

One instance per audio direction (user microphone, model speech). The channel
is connected lazily, queues audio while it is not open (bounded, oldest chunk
dropped first), closes itself after a quiet period and reconnects with a
linear backoff only after unexpected closes.
"""

import asyncio
import json
import logging
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional
from urllib.parse import urlencode

from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from backoff import BackoffPolicy, linear_delay
from errors import TransportConnectionError
from events import EventBus, TranscriberEvent
from settings import TranscriptionConfig

logger = logging.getLogger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"
NORMAL_CLOSURE = 1000
INTERNAL_ERROR = 1011


class ChannelState(Enum):
    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"


def is_retryable_close(close_info: Any) -> bool:
    """Normal closures and server idle timeouts are expected; anything else is retried."""
    if not isinstance(close_info, dict):
        return True
    code = close_info.get("code")
    reason = str(close_info.get("reason") or "")
    if code == NORMAL_CLOSURE:
        return False
    if code == INTERNAL_ERROR and "timeout" in reason.lower():
        return False
    return True


def default_backoff(config: TranscriptionConfig) -> BackoffPolicy:
    return BackoffPolicy(
        max_attempts=config.max_reconnect_attempts,
        delay=linear_delay(config.reconnect_delay_sec),
        is_retryable=is_retryable_close,
    )


def _is_open(ws) -> bool:
    return ws is not None and getattr(ws, "state", None) is State.OPEN


def _consume_exception(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()


class DeepgramTranscriber:
    def __init__(
        self,
        api_key: str,
        sample_rate: int,
        config: Optional[TranscriptionConfig] = None,
        *,
        name: str = "transcriber",
        connect_fn: Optional[Callable[..., Any]] = None,
        backoff: Optional[BackoffPolicy] = None,
    ):
        if not api_key:
            raise ValueError("Deepgram API key is required")
        self.api_key = api_key
        self.sample_rate = int(sample_rate)
        self.config = config or TranscriptionConfig()
        self.name = name
        self.backoff = backoff or default_backoff(self.config)
        self.events: EventBus[TranscriberEvent] = EventBus(TranscriberEvent)

        self.state = ChannelState.CLOSED
        self.reconnect_attempts = 0
        self.pending_audio: Deque[bytes] = deque(maxlen=self.config.pending_audio_limit)

        self._connect_fn = connect_fn or websocket_connect
        self._ws = None
        self._connect_task: Optional[asyncio.Task] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._idle_handle: Optional[asyncio.TimerHandle] = None
        self._idle_task: Optional[asyncio.Task] = None

    @property
    def url(self) -> str:
        query = urlencode(
            {
                "encoding": "linear16",
                "sample_rate": self.sample_rate,
                "channels": 1,
                "model": self.config.model,
                "language": self.config.language,
                "punctuate": "true",
            }
        )
        return f"{DEEPGRAM_LISTEN_URL}?{query}"

    @property
    def is_connected(self) -> bool:
        return self.state is ChannelState.OPEN and _is_open(self._ws)

    @property
    def is_connecting(self) -> bool:
        return self.state is ChannelState.CONNECTING

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def configuration_message(self) -> Dict[str, Any]:
        return {
            "type": "Configure",
            "features": {
                "model": self.config.model,
                "language": self.config.language,
                "encoding": "linear16",
                "sample_rate": self.sample_rate,
                "channels": 1,
                "interim_results": False,
                "punctuate": True,
                "endpointing": 800,
            },
        }

    # ----------------------------------------------------------------------------------
    # Connection
    # ----------------------------------------------------------------------------------
    def start_connect(self) -> asyncio.Task:
        """Begin connecting without waiting; the channel is CONNECTING as soon as this returns."""
        if self._connect_task is None or self._connect_task.done():
            self.state = ChannelState.CONNECTING
            self._connect_task = asyncio.ensure_future(self._open())
            self._connect_task.add_done_callback(_consume_exception)
        else:
            logger.debug("[DEEPGRAM] %s: connection already in progress, waiting...", self.name)
        return self._connect_task

    async def connect(self) -> None:
        if self.is_connected:
            return
        await asyncio.shield(self.start_connect())

    async def _open(self) -> None:
        stale, self._ws = self._ws, None
        if stale is not None:
            await self._close_quietly(stale)

        logger.info("[DEEPGRAM] %s: connecting...", self.name)
        try:
            ws = await self._connect_fn(
                self.url,
                additional_headers={"Authorization": f"Token {self.api_key}"},
            )
        except Exception as e:
            self.state = ChannelState.CLOSED
            self.events.emit(TranscriberEvent.ERROR, e)
            raise TransportConnectionError(f"Could not connect to Deepgram: {e}") from e

        self._ws = ws
        self._receive_task = asyncio.ensure_future(self._receive_loop(ws))

        # Configuration sent right on open races the server; give it a moment.
        await asyncio.sleep(self.config.settle_delay_sec)
        if self._ws is not ws or not _is_open(ws):
            self.state = ChannelState.CLOSED
            raise TransportConnectionError(f"Deepgram socket for {self.name} closed before it was ready")

        try:
            await ws.send(json.dumps(self.configuration_message()))
        except ConnectionClosed as e:
            self.state = ChannelState.CLOSED
            raise TransportConnectionError(f"Deepgram socket closed while configuring: {e}") from e

        self.state = ChannelState.OPEN
        self.reconnect_attempts = 0
        self._arm_idle_timer()
        logger.info("[DEEPGRAM] %s: connected", self.name)
        await self._flush_pending()
        self.events.emit(TranscriberEvent.CONNECTED)

    async def _flush_pending(self) -> None:
        if not self.pending_audio:
            return
        logger.debug("[DEEPGRAM] %s: sending %d pending audio chunks", self.name, len(self.pending_audio))
        while self.pending_audio and self.is_connected:
            chunk = self.pending_audio.popleft()
            try:
                await self._ws.send(chunk)
            except ConnectionClosed:
                self.pending_audio.appendleft(chunk)
                break

    async def _receive_loop(self, ws) -> None:
        close_info: Optional[Dict[str, Any]] = None
        try:
            async for raw in ws:
                self.handle_message(raw)
        except ConnectionClosed as e:
            rcvd = getattr(e, "rcvd", None)
            close_info = {"code": getattr(rcvd, "code", None), "reason": getattr(rcvd, "reason", "") or ""}
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("[DEEPGRAM] %s: receive loop failed: %s", self.name, e)
            close_info = {"code": None, "reason": str(e)}
        finally:
            if self._ws is ws:
                if close_info is None:
                    close_info = {
                        "code": getattr(ws, "close_code", None),
                        "reason": getattr(ws, "close_reason", "") or "",
                    }
                self._on_closed(close_info)

    def _on_closed(self, close_info: Dict[str, Any]) -> None:
        logger.info("[DEEPGRAM] %s: connection closed: %s - %s", self.name, close_info.get("code"), close_info.get("reason"))
        self._ws = None
        self.state = ChannelState.CLOSED
        self._cancel_idle_timer()
        self.events.emit(TranscriberEvent.DISCONNECTED, close_info)

        if not self.backoff.is_retryable(close_info):
            logger.debug("[DEEPGRAM] %s: expected closure, will reconnect when needed", self.name)
            return
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self.reconnect_pending:
            return
        if not self.backoff.can_retry(self.reconnect_attempts):
            logger.debug("[DEEPGRAM] %s: reconnect ceiling reached (%d)", self.name, self.reconnect_attempts)
            return
        self.reconnect_attempts += 1
        delay = self.backoff.delay_for(self.reconnect_attempts)
        logger.info(
            "[DEEPGRAM] %s: attempting to reconnect (%d/%d) in %.1fs",
            self.name, self.reconnect_attempts, self.backoff.max_attempts, delay,
        )
        self._reconnect_task = asyncio.ensure_future(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.connect()
        except TransportConnectionError as e:
            logger.warning("[DEEPGRAM] %s: reconnect failed: %s", self.name, e)
            self._reconnect_task = None
            self._schedule_reconnect()

    # ----------------------------------------------------------------------------------
    # Traffic
    # ----------------------------------------------------------------------------------
    def handle_message(self, raw) -> None:
        try:
            response = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.error("[DEEPGRAM] %s: error processing message: %s", self.name, e)
            self.events.emit(TranscriberEvent.ERROR, e)
            return
        if not isinstance(response, dict):
            return

        if response.get("type") == "Results":
            channel = response.get("channel") or {}
            alternatives = channel.get("alternatives") or []
            transcript = alternatives[0].get("transcript") if alternatives else None
            if transcript and transcript.strip():
                logger.debug("[DEEPGRAM] %s: transcript: %s", self.name, transcript)
                self.events.emit(TranscriberEvent.TRANSCRIPTION, transcript)
        else:
            logger.debug("[DEEPGRAM] %s: received message type %s", self.name, response.get("type"))

    def _enqueue(self, chunk: bytes) -> None:
        if len(self.pending_audio) == self.pending_audio.maxlen:
            logger.debug("[DEEPGRAM] %s: pending queue full, dropping oldest chunk", self.name)
        self.pending_audio.append(chunk)

    async def send_audio(self, chunk: bytes) -> None:
        if self.state is ChannelState.OPEN:
            self._arm_idle_timer()
            if _is_open(self._ws):
                try:
                    await self._ws.send(chunk)
                    return
                except ConnectionClosed:
                    pass
            self.state = ChannelState.CLOSED

        self._enqueue(chunk)
        if self.state is ChannelState.CONNECTING:
            return
        self._schedule_reconnect()

    # ----------------------------------------------------------------------------------
    # Idle timeout
    # ----------------------------------------------------------------------------------
    def _arm_idle_timer(self) -> None:
        self._cancel_idle_timer()
        loop = asyncio.get_running_loop()
        self._idle_handle = loop.call_later(self.config.idle_timeout_sec, self._on_idle)

    def _cancel_idle_timer(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def _on_idle(self) -> None:
        self._idle_handle = None
        logger.info("[DEEPGRAM] %s: auto-disconnecting due to inactivity", self.name)
        self._idle_task = asyncio.ensure_future(self.disconnect())

    # ----------------------------------------------------------------------------------
    # Teardown
    # ----------------------------------------------------------------------------------
    async def disconnect(self) -> None:
        self._cancel_idle_timer()
        current = asyncio.current_task()
        for task in (self._reconnect_task, self._connect_task, self._receive_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._reconnect_task = None
        self._connect_task = None
        self._receive_task = None

        ws, self._ws = self._ws, None
        self.state = ChannelState.CLOSED
        self.reconnect_attempts = 0
        self.pending_audio.clear()
        if ws is None:
            return

        if _is_open(ws):
            try:
                await ws.send(json.dumps({"type": "CloseStream"}))
            except ConnectionClosed:
                pass
        await self._close_quietly(ws)
        logger.info("[DEEPGRAM] %s: disconnected", self.name)
        self.events.emit(TranscriberEvent.DISCONNECTED, {"code": NORMAL_CLOSURE, "reason": "Normal closure"})

    async def _close_quietly(self, ws) -> None:
        try:
            await ws.close(NORMAL_CLOSURE, "Normal closure")
        except Exception as e:
            logger.warning("[DEEPGRAM] %s: error during clean disconnect: %s", self.name, e)

"""
LiveAgent: one conversational session over the model link, the optional
Deepgram side channels, the microphone, the playback sink, and the camera and
screen capture loops.

Lifecycle
    connect() -> initialize() -> toggle_mic() / toggle_camera() / toggle_screen_share() -> disconnect()

Every child is created by an injected factory so the whole session can be
driven with fakes. Children only talk to each other through events wired here.
"""

import asyncio
import base64
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from audio import AudioRecorder, AudioStreamer
from backoff import BackoffPolicy, linear_delay
from capture import CameraCapture, MediaCapture, ScreenCapture
from errors import DeviceError, InvalidToolResponse, NotConnected, TeardownError, TransportConnectionError
from events import AgentEvent, EventBus, ModelEvent, TranscriberEvent
from gemini_live import FunctionCall, ToolCall, ToolResponse
from model_factory import create_model_client
from settings import AgentConfig, AudioConfig, TranscriptionConfig
from tools import ToolManager
from transcriber import DeepgramTranscriber

logger = logging.getLogger(__name__)

MAX_SCREEN_FAILURES = 10


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def _default_recorder_factory(config: AudioConfig, on_error: Callable[[Exception], Any]) -> AudioRecorder:
    return AudioRecorder(config, on_error=on_error)


def _default_transcriber_factory(api_key: str, sample_rate: int, config: TranscriptionConfig, name: str) -> DeepgramTranscriber:
    return DeepgramTranscriber(api_key, sample_rate, config, name=name)


class LiveAgent:
    def __init__(
        self,
        config: AgentConfig,
        *,
        name: str = "GeminiAgent",
        tool_manager: Optional[ToolManager] = None,
        client_factory: Optional[Callable[[AgentConfig, List[Dict[str, Any]]], Any]] = None,
        recorder_factory: Optional[Callable[[AudioConfig, Callable[[Exception], Any]], Any]] = None,
        streamer_factory: Optional[Callable[[AudioConfig], Any]] = None,
        transcriber_factory: Optional[Callable[[str, int, TranscriptionConfig, str], Any]] = None,
        camera: Optional[MediaCapture] = None,
        screen: Optional[MediaCapture] = None,
    ):
        self.name = name
        self.config = config
        self.tool_manager = tool_manager if tool_manager is not None else ToolManager()
        self.events: EventBus[AgentEvent] = EventBus(AgentEvent)

        self._client_factory = client_factory or create_model_client
        self._recorder_factory = recorder_factory or _default_recorder_factory
        self._streamer_factory = streamer_factory or AudioStreamer
        self._transcriber_factory = transcriber_factory or _default_transcriber_factory

        self.camera: MediaCapture = camera or CameraCapture(config.capture)
        self.screen: MediaCapture = screen or ScreenCapture(config.capture)

        self.state = ConnectionState.DISCONNECTED
        self.initialized = False
        self.client = None
        self.recorder = None
        self.streamer = None
        self.model_transcriber = None
        self.user_transcriber = None

        # One reconnect of the model link after a mic toggle, then give up.
        self.model_reconnect = BackoffPolicy(max_attempts=1, delay=linear_delay(0.0))

        self._camera_task: Optional[asyncio.Task] = None
        self._screen_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._unsubscribers: List[Callable[[], bool]] = []
        self._mic_lock = asyncio.Lock()
        self._init_lock = asyncio.Lock()
        self._model_turn_audio = False
        self._playback_failed = False
        self._playback_epoch = 0
        self._audio_send_failing = False
        self._closing = False

    # ----------------------------------------------------------------------------------
    # State
    # ----------------------------------------------------------------------------------
    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def mic_on(self) -> bool:
        return self.recorder is not None and self.recorder.is_recording and not self.recorder.is_suspended

    @property
    def camera_on(self) -> bool:
        return self._camera_task is not None

    @property
    def screen_on(self) -> bool:
        return self._screen_task is not None

    def status(self) -> Dict[str, Any]:
        return {
            "connection": self.state.value,
            "initialized": self.initialized,
            "mic": self.mic_on,
            "camera": self.camera_on,
            "screen": self.screen_on,
            "transport": self.config.model.transport,
        }

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task):
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error("[AGENT] Background task failed: %s", t.exception())

        task.add_done_callback(_done)
        return task

    # ----------------------------------------------------------------------------------
    # Connection
    # ----------------------------------------------------------------------------------
    async def connect(self) -> None:
        if self.is_connected and self.client is not None:
            return
        if self.client is None:
            self.client = self._client_factory(self.config, self.tool_manager.get_declarations())
            self._wire_client(self.client)

        self.state = ConnectionState.CONNECTING
        try:
            await self.client.connect()
        except Exception:
            if self.state is ConnectionState.CONNECTING:
                self.state = ConnectionState.DISCONNECTED
            raise
        self.state = ConnectionState.CONNECTED
        logger.info("[AGENT] %s connected", self.name)
        self.events.emit(AgentEvent.CONNECTED)

    def _wire_client(self, client) -> None:
        ev = client.events
        self._unsubscribers += [
            ev.on(ModelEvent.TEXT, lambda text: self.events.emit(AgentEvent.TEXT, text)),
            ev.on(ModelEvent.AUDIO, self._on_model_audio),
            ev.on(ModelEvent.CONTENT, self._on_model_content),
            ev.on(ModelEvent.TOOL_CALL, self._on_tool_call),
            ev.on(ModelEvent.TOOL_CALL_CANCELLATION, self._on_tool_call_cancellation),
            ev.on(ModelEvent.TURN_COMPLETE, self._on_turn_complete),
            ev.on(ModelEvent.INTERRUPTED, self._on_interrupted),
            ev.on(ModelEvent.DISCONNECTED, self._on_model_disconnected),
            ev.on(ModelEvent.ERROR, lambda err: self.events.emit(AgentEvent.ERROR, str(err))),
        ]

    async def initialize(self) -> None:
        async with self._init_lock:
            if self.initialized:
                return
            if not self.is_connected:
                await self.connect()

            self.streamer = self._streamer_factory(self.config.audio)
            try:
                await self.streamer.initialize()
            except DeviceError as e:
                # Text still works without playback; opening the device is retried next turn.
                self._playback_failed = True
                logger.error("[AGENT] Audio playback unavailable: %s", e)
                self.events.emit(AgentEvent.ERROR, str(e))

            self.recorder = self._recorder_factory(self.config.audio, self._on_recorder_error)
            self._create_transcribers()

            self.initialized = True
            logger.info("[AGENT] %s initialized successfully", self.client.name)

            if self.config.model.start_message:
                # Trigger the model to start speaking first.
                await self.client.send_text(self.config.model.start_message)

    def _create_transcribers(self) -> None:
        t_cfg = self.config.transcription
        api_key = self.config.deepgram_api_key
        if not api_key:
            if t_cfg.transcribe_model_speech or t_cfg.transcribe_user_speech:
                logger.warning("[AGENT] No Deepgram API key provided, transcription disabled")
            return

        if t_cfg.transcribe_model_speech:
            self.model_transcriber = self._transcriber_factory(
                api_key, self.config.audio.receive_sample_rate, t_cfg, "model"
            )
            self._wire_transcriber(self.model_transcriber, AgentEvent.TRANSCRIPTION)
        if t_cfg.transcribe_user_speech:
            self.user_transcriber = self._transcriber_factory(
                api_key, self.config.audio.send_sample_rate, t_cfg, "user"
            )
            self._wire_transcriber(self.user_transcriber, AgentEvent.USER_TRANSCRIPTION)

    def _wire_transcriber(self, transcriber, forward_as: AgentEvent) -> None:
        ev = transcriber.events
        self._unsubscribers += [
            ev.on(TranscriberEvent.TRANSCRIPTION, lambda text: self.events.emit(forward_as, text)),
            ev.on(
                TranscriberEvent.ERROR,
                lambda err: logger.warning("[AGENT] %s transcription unavailable: %s", transcriber.name, err),
            ),
        ]

    async def send_text(self, text: str) -> None:
        if self.client is None:
            raise NotConnected("Agent is not connected")
        await self.client.send_text(text)
        self.events.emit(AgentEvent.TEXT_SENT, text)

    # ----------------------------------------------------------------------------------
    # Transcription side channels
    # ----------------------------------------------------------------------------------
    def _start_transcriber(self, transcriber) -> None:
        if transcriber is None or transcriber.is_connected or transcriber.is_connecting:
            return
        transcriber.start_connect()
        self._spawn(self._await_transcriber(transcriber))

    async def _await_transcriber(self, transcriber) -> None:
        try:
            await transcriber.connect()
        except TransportConnectionError as e:
            logger.warning("[AGENT] Failed to connect %s transcriber: %s", transcriber.name, e)

    async def _send_to_transcriber(self, transcriber, chunk: bytes) -> None:
        try:
            await transcriber.send_audio(chunk)
        except Exception as e:
            logger.warning("[AGENT] Error sending audio to %s transcriber: %s", transcriber.name, e)

    # ----------------------------------------------------------------------------------
    # Microphone
    # ----------------------------------------------------------------------------------
    async def _on_mic_chunk(self, b64_chunk: str) -> None:
        client = self.client
        if client is not None and client.supports_realtime:
            try:
                await client.send_audio(b64_chunk)
                self._audio_send_failing = False
            except NotConnected as e:
                if not self._audio_send_failing:
                    self._audio_send_failing = True
                    logger.error("[AGENT] Error sending audio data: %s", e)
                    self.events.emit(AgentEvent.ERROR, f"Error sending audio data: {e}")

        if self.user_transcriber is not None:
            await self._send_to_transcriber(self.user_transcriber, base64.b64decode(b64_chunk))

    def _on_recorder_error(self, error: Exception) -> None:
        self.events.emit(AgentEvent.ERROR, str(error))

    async def toggle_mic(self) -> None:
        async with self._mic_lock:
            try:
                await self._toggle_mic()
            except TransportConnectionError as e:
                # The toggle's own connect() was the one attempt.
                logger.error("[AGENT] Error in toggle_mic: %s", e)
                raise
            except Exception as e:
                logger.error("[AGENT] Error in toggle_mic: %s", e)
                try:
                    await self._reconnect_model_once()
                except TransportConnectionError as reconnect_error:
                    logger.error("[AGENT] Failed to reconnect model after error: %s", reconnect_error)
                raise
            await self._reconnect_model_once()

    async def _toggle_mic(self) -> None:
        if not self.is_connected:
            logger.info("[AGENT] Not connected. Attempting to connect before toggle mic...")
            await self.connect()
        if not self.initialized:
            await self.initialize()

        recorder = self.recorder
        if not recorder.is_recording:
            self._start_transcriber(self.user_transcriber)
            await recorder.start(self._on_mic_chunk)
            logger.info("[AGENT] Microphone started")
        elif not recorder.is_suspended:
            await recorder.suspend_mic()
            if self.user_transcriber is not None:
                await self.user_transcriber.disconnect()
            logger.info("[AGENT] Microphone suspended")
        else:
            self._start_transcriber(self.user_transcriber)
            await recorder.resume_mic()
            logger.info("[AGENT] Microphone resumed")

    async def _reconnect_model_once(self) -> None:
        client = self.client
        if client is None or not client.supports_realtime or client.is_connected:
            return
        attempts = 0
        while True:
            attempts += 1
            try:
                logger.info("[AGENT] Model link is closed, attempting to reconnect (%d)...", attempts)
                await client.connect()
            except TransportConnectionError:
                self.state = ConnectionState.DISCONNECTED
                if not self.model_reconnect.can_retry(attempts):
                    raise
                await asyncio.sleep(self.model_reconnect.delay_for(attempts))
                continue
            self.state = ConnectionState.CONNECTED
            logger.info("[AGENT] %s reconnected", self.name)
            self.events.emit(AgentEvent.CONNECTED)
            return

    # ----------------------------------------------------------------------------------
    # Model events
    # ----------------------------------------------------------------------------------
    def _on_model_audio(self, data: bytes) -> None:
        # Turn bookkeeping stays synchronous so it is ordered with turn_complete.
        self._spawn(self._play(data, self._playback_epoch))

        transcriber = self.model_transcriber
        if transcriber is not None:
            if not self._model_turn_audio:
                # First audio of this turn.
                self._model_turn_audio = True
                self._start_transcriber(transcriber)
            self._spawn(self._send_to_transcriber(transcriber, data))

        self.events.emit(AgentEvent.AUDIO, data)

    async def _play(self, data: bytes, epoch: int) -> None:
        streamer = self.streamer
        if streamer is None:
            return
        if not streamer.is_initialized:
            if self._playback_failed:
                return
            try:
                await streamer.initialize()
            except DeviceError as e:
                if not self._playback_failed:
                    self._playback_failed = True
                    logger.error("[AGENT] Audio playback unavailable: %s", e)
                    self.events.emit(AgentEvent.ERROR, str(e))
                return
        if epoch != self._playback_epoch:
            return
        streamer.stream_audio(data)

    def _on_model_content(self, content: Dict[str, Any]) -> None:
        logger.debug("[AGENT] Unhandled model content: %s", str(content)[:200])

    def _end_model_turn(self) -> None:
        self._model_turn_audio = False
        self._playback_failed = False
        transcriber = self.model_transcriber
        if transcriber is not None and (transcriber.is_connected or transcriber.is_connecting):
            logger.debug("[AGENT] Disconnecting model transcriber at end of turn")
            self._spawn(transcriber.disconnect())

    def _on_turn_complete(self, _payload=None) -> None:
        logger.info("[AGENT] Model finished speaking")
        self.events.emit(AgentEvent.TURN_COMPLETE)
        self._end_model_turn()

    def _on_interrupted(self, _payload=None) -> None:
        # Chunks still waiting to be played belong to the interrupted answer.
        self._playback_epoch += 1
        if self.streamer is not None:
            self.streamer.stop()
        self.events.emit(AgentEvent.INTERRUPTED)
        self._end_model_turn()

    def _on_model_disconnected(self, close_info=None) -> None:
        if self._closing:
            return
        logger.warning("[AGENT] Model connection closed: %s", close_info)
        self.state = ConnectionState.DISCONNECTED
        self.events.emit(AgentEvent.DISCONNECTED, close_info)

    def _on_tool_call(self, tool_call: ToolCall) -> None:
        self.events.emit(AgentEvent.TOOL_CALL, tool_call)
        for fc in tool_call.function_calls:
            self._spawn(self._dispatch_tool(fc))

    def _on_tool_call_cancellation(self, ids) -> None:
        logger.info("[AGENT] Tool calls cancelled by the model: %s", ids)

    async def _dispatch_tool(self, function_call: FunctionCall) -> None:
        response: ToolResponse = await self.tool_manager.handle(function_call)
        client = self.client
        if client is None:
            return
        try:
            await client.send_tool_response(response)
        except (InvalidToolResponse, NotConnected) as e:
            logger.error("[AGENT] Could not send tool response for %s: %s", function_call.name, e)
            self.events.emit(AgentEvent.ERROR, f"Tool response failed: {e}")

    # ----------------------------------------------------------------------------------
    # Camera / screen
    # ----------------------------------------------------------------------------------
    async def _capture_loop(self, device: MediaCapture, tag: str, max_failures: Optional[int] = None) -> bool:
        """Send one frame per interval. Returns True if it gave up after repeated failures."""
        failures = 0
        interval = self.config.capture.interval_sec
        while True:
            await asyncio.sleep(interval)
            try:
                frame = await device.capture()
            except DeviceError as e:
                failures += 1
                logger.error("[%s] Capture error (%d): %s", tag, failures, e)
                if max_failures is not None and failures >= max_failures:
                    return True
                continue
            failures = 0
            if not frame:
                continue
            try:
                await self.client.send_image(frame)
            except NotConnected as e:
                logger.warning("[%s] Frame dropped: %s", tag, e)

    def _require_realtime(self, what: str) -> None:
        if not self.is_connected:
            raise NotConnected(f"Must be connected to start {what}")
        if not self.client.supports_realtime:
            raise NotConnected(f"{what.capitalize()} is not supported by the {self.config.model.transport} transport")

    async def start_camera_capture(self) -> None:
        self._require_realtime("camera capture")
        if self._camera_task is not None:
            return
        try:
            await self.camera.initialize()
        except DeviceError:
            await self.camera.dispose()
            raise
        self._camera_task = asyncio.ensure_future(self._capture_loop(self.camera, "CAMERA"))
        logger.info("[CAMERA] Camera capture started")

    async def stop_camera_capture(self) -> None:
        task, self._camera_task = self._camera_task, None
        await self._cancel(task)
        await self.camera.dispose()
        logger.info("[CAMERA] Camera capture stopped")

    async def toggle_camera(self) -> bool:
        if self.camera_on:
            await self.stop_camera_capture()
        else:
            await self.start_camera_capture()
        return self.camera_on

    async def start_screen_share(self) -> None:
        self._require_realtime("screen sharing")
        if self._screen_task is not None:
            return
        try:
            await self.screen.initialize()
        except DeviceError:
            await self.screen.dispose()
            raise
        self._screen_task = asyncio.ensure_future(self._screen_loop())
        logger.info("[SCREEN] Screen sharing started")

    async def _screen_loop(self) -> None:
        gave_up = await self._capture_loop(self.screen, "SCREEN", MAX_SCREEN_FAILURES)
        if gave_up:
            logger.warning("[SCREEN] Too many capture failures, stopping screen sharing")
            self._screen_task = None
            await self.screen.dispose()
            self.events.emit(AgentEvent.SCREENSHARE_STOPPED)

    async def stop_screen_share(self) -> None:
        task, self._screen_task = self._screen_task, None
        await self._cancel(task)
        await self.screen.dispose()
        logger.info("[SCREEN] Screen sharing stopped")

    async def toggle_screen_share(self) -> bool:
        if self.screen_on:
            await self.stop_screen_share()
        else:
            await self.start_screen_share()
        return self.screen_on

    @staticmethod
    async def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ----------------------------------------------------------------------------------
    # Teardown
    # ----------------------------------------------------------------------------------
    async def disconnect(self) -> None:
        """
        Release every child in a fixed order: capture timers, capture devices,
        microphone, playback, transcribers, model link. A failing child does not
        stop the rest; all failures are raised together as TeardownError.
        """
        if self._closing:
            return
        if self.state is ConnectionState.DISCONNECTED and self.client is None:
            return
        self._closing = True
        errors: List[BaseException] = []

        async def attempt(label: str, fn: Callable[[], Awaitable[Any]]) -> None:
            try:
                await fn()
            except Exception as e:
                logger.error("[AGENT] Error while stopping %s: %s", label, e)
                errors.append(e)

        try:
            camera_task, self._camera_task = self._camera_task, None
            screen_task, self._screen_task = self._screen_task, None
            await attempt("camera timer", lambda: self._cancel(camera_task))
            await attempt("screen timer", lambda: self._cancel(screen_task))

            current = asyncio.current_task()
            for task in list(self._tasks):
                if task is not current:
                    task.cancel()
            if self.client is not None:
                self.client.events.cancel_pending()

            await attempt("camera", self.camera.dispose)
            await attempt("screen", self.screen.dispose)
            if self.recorder is not None:
                await attempt("microphone", self.recorder.stop)
            if self.streamer is not None:
                await attempt("playback", self.streamer.close)
            if self.model_transcriber is not None:
                await attempt("model transcriber", self.model_transcriber.disconnect)
            if self.user_transcriber is not None:
                await attempt("user transcriber", self.user_transcriber.disconnect)
            if self.client is not None:
                await attempt("model client", self.client.disconnect)
        finally:
            for unsubscribe in self._unsubscribers:
                unsubscribe()
            self._unsubscribers.clear()
            self.client = None
            self.recorder = None
            self.streamer = None
            self.model_transcriber = None
            self.user_transcriber = None
            self.initialized = False
            self._model_turn_audio = False
            self._playback_failed = False
            self._audio_send_failing = False
            self.state = ConnectionState.DISCONNECTED
            self._closing = False

        logger.info("[AGENT] Disconnected and cleaned up all resources")
        self.events.emit(AgentEvent.DISCONNECTED, {"code": 1000, "reason": "client disconnect"})
        if errors:
            raise TeardownError(errors)

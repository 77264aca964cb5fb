import asyncio
import base64
import logging
from typing import Any, Callable, Optional, Set

from errors import DeviceError
from settings import AudioConfig

logger = logging.getLogger(__name__)

try:
    import pyaudio
    AUDIO_AVAILABLE = True
except ImportError:
    pyaudio = None
    AUDIO_AVAILABLE = False

if AUDIO_AVAILABLE:
    FORMAT = pyaudio.paInt16
else:
    FORMAT = 8  # paInt16 value as fallback
CHANNELS = 1

READ_ERROR_REPORT_EVERY = 20
STOP_GRACE_SEC = 1.0


def _default_pya_factory():
    if not AUDIO_AVAILABLE:
        raise DeviceError("pyaudio is not installed; audio features are unavailable")
    return pyaudio.PyAudio()


def resolve_input_device(pya, device_index: Optional[int], device_name: Optional[str]) -> Optional[int]:
    """Map the configured device name/index to a PyAudio index, or None for the default device."""
    if device_name:
        wanted = device_name.lower()
        for i in range(pya.get_device_count()):
            try:
                info = pya.get_device_info_by_index(i)
            except Exception:
                continue
            if info.get("maxInputChannels", 0) <= 0:
                continue
            name = str(info.get("name", "")).lower()
            if wanted in name or name in wanted:
                logger.info("[AUDIO] Resolved input device '%s' to index %d (%s)", device_name, i, info.get("name"))
                return i
        logger.warning("[AUDIO] Could not find device matching '%s'", device_name)

    if device_index is not None:
        try:
            return int(device_index)
        except (TypeError, ValueError):
            logger.warning("[AUDIO] Invalid device index '%s', reverting to default", device_index)
    return None


class AudioRecorder:
    """
    Microphone capture: 16-bit mono PCM at a fixed sample rate, read in
    fixed-size frames and delivered to `on_chunk` as base64 strings.

    Chunks are delivered fire-and-forget; a slow sink never delays the next read.
    """

    def __init__(
        self,
        config: Optional[AudioConfig] = None,
        *,
        pya_factory: Optional[Callable[[], Any]] = None,
        on_error: Optional[Callable[[Exception], Any]] = None,
    ):
        self.config = config or AudioConfig()
        self.sample_rate = self.config.send_sample_rate
        self.chunk_size = self.config.chunk_size
        self.on_error = on_error
        self.on_chunk: Optional[Callable[[str], Any]] = None

        self.stream = None
        self.is_recording = False
        self.is_suspended = False

        self._pya_factory = pya_factory or _default_pya_factory
        self._pya = None
        self._read_task: Optional[asyncio.Task] = None
        self._resumed = asyncio.Event()
        self._sink_tasks: Set[asyncio.Task] = set()

    def _open_stream(self, device_index: Optional[int]):
        kwargs = {
            "format": FORMAT,
            "channels": CHANNELS,
            "rate": self.sample_rate,
            "input": True,
            "frames_per_buffer": self.chunk_size,
        }
        if device_index is not None:
            kwargs["input_device_index"] = device_index
        return self._pya.open(**kwargs)

    async def start(self, on_chunk: Callable[[str], Any]) -> None:
        if self.is_recording:
            return
        self.on_chunk = on_chunk
        try:
            self._pya = self._pya_factory()
        except DeviceError:
            raise
        except Exception as e:
            raise DeviceError(f"Failed to initialise audio system: {e}") from e

        device_index = resolve_input_device(self._pya, self.config.input_device_index, self.config.input_device_name)
        try:
            stream = await asyncio.to_thread(self._open_stream, device_index)
        except Exception as e:
            if device_index is None:
                self._terminate()
                raise DeviceError(f"Failed to start audio recording: {e}") from e
            logger.warning("[AUDIO] Selected microphone is unavailable (%s), falling back to default", e)
            try:
                stream = await asyncio.to_thread(self._open_stream, None)
            except Exception as e2:
                self._terminate()
                raise DeviceError(f"Failed to start audio recording: {e2}") from e2

        self.stream = stream
        self.is_recording = True
        self.is_suspended = False
        self._resumed.set()
        self._read_task = asyncio.ensure_future(self._read_loop())
        logger.info("[AUDIO] Recording started at %d Hz (device %s)", self.sample_rate, device_index if device_index is not None else "default")

    async def _read_loop(self) -> None:
        failures = 0
        while self.is_recording:
            if self.is_suspended:
                await self._resumed.wait()
                continue
            try:
                data = await asyncio.to_thread(self.stream.read, self.chunk_size, exception_on_overflow=False)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if not self.is_recording or self.is_suspended:
                    continue
                failures += 1
                if failures % READ_ERROR_REPORT_EVERY == 1:
                    logger.error("[AUDIO] Error reading audio: %s", e)
                    if self.on_error:
                        self.on_error(DeviceError(f"Microphone read failed: {e}"))
                await asyncio.sleep(0.1)
                continue

            failures = 0
            if not data or self.is_suspended or not self.is_recording:
                continue
            self._deliver(base64.b64encode(data).decode("ascii"))

    def _deliver(self, b64_chunk: str) -> None:
        if self.on_chunk is None:
            return
        try:
            result = self.on_chunk(b64_chunk)
        except Exception as e:
            logger.error("[AUDIO] Chunk sink failed: %s", e)
            return
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._sink_tasks.add(task)
            task.add_done_callback(self._sink_done)

    def _sink_done(self, task: asyncio.Task) -> None:
        self._sink_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("[AUDIO] Chunk sink failed: %s", task.exception())

    async def suspend_mic(self) -> None:
        if not self.is_recording or self.is_suspended:
            return
        self.is_suspended = True
        self._resumed.clear()
        try:
            await asyncio.to_thread(self.stream.stop_stream)
        except Exception as e:
            raise DeviceError(f"Failed to suspend microphone: {e}") from e
        logger.info("[AUDIO] Microphone suspended")

    async def resume_mic(self) -> None:
        if not self.is_recording or not self.is_suspended:
            return
        try:
            await asyncio.to_thread(self.stream.start_stream)
        except Exception as e:
            raise DeviceError(f"Failed to resume microphone: {e}") from e
        self.is_suspended = False
        self._resumed.set()
        logger.info("[AUDIO] Microphone resumed")

    async def toggle_mic(self) -> None:
        if self.is_suspended:
            await self.resume_mic()
        else:
            await self.suspend_mic()

    async def stop(self) -> None:
        if not self.is_recording and self.stream is None:
            return
        self.is_recording = False
        self._resumed.set()

        task, self._read_task = self._read_task, None
        if task is not None and not task.done():
            # Let the in-flight read return before the stream is closed under it.
            done, _ = await asyncio.wait({task}, timeout=STOP_GRACE_SEC)
            if not done:
                task.cancel()
        for t in list(self._sink_tasks):
            t.cancel()

        stream, self.stream = self.stream, None
        if stream is not None:
            try:
                if stream.is_active():
                    stream.stop_stream()
                stream.close()
            except Exception as e:
                logger.warning("[AUDIO] Error closing input stream: %s", e)
        self._terminate()
        self.is_suspended = False
        logger.info("[AUDIO] Recording stopped")

    def _terminate(self) -> None:
        if self._pya is not None:
            try:
                self._pya.terminate()
            except Exception:
                pass
            self._pya = None


class AudioStreamer:
    """Playback sink for model audio. `stop()` drops whatever is still queued."""

    def __init__(self, config: Optional[AudioConfig] = None, *, pya_factory: Optional[Callable[[], Any]] = None):
        self.config = config or AudioConfig()
        self.sample_rate = self.config.receive_sample_rate
        self.is_initialized = False

        self._pya_factory = pya_factory or _default_pya_factory
        self._pya = None
        self._stream = None
        self._queue: Optional[asyncio.Queue] = None
        self._play_task: Optional[asyncio.Task] = None
        self._init_lock = asyncio.Lock()

    def _open_output(self):
        kwargs = {
            "format": FORMAT,
            "channels": CHANNELS,
            "rate": self.sample_rate,
            "output": True,
        }
        if self.config.output_device_index is not None:
            kwargs["output_device_index"] = self.config.output_device_index
        return self._pya.open(**kwargs)

    async def initialize(self) -> None:
        # Concurrent callers wait for the first one; only one output stream is opened.
        async with self._init_lock:
            if self.is_initialized:
                return
            try:
                self._pya = self._pya_factory()
                self._stream = await asyncio.to_thread(self._open_output)
            except Exception as e:
                self._terminate()
                raise DeviceError(f"Failed to open audio output: {e}") from e
            self._queue = asyncio.Queue()
            self._play_task = asyncio.ensure_future(self._play_loop())
            self.is_initialized = True

    async def _play_loop(self) -> None:
        while True:
            chunk = await self._queue.get()
            try:
                await asyncio.to_thread(self._stream.write, chunk)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("[AUDIO] Playback write failed: %s", e)

    def stream_audio(self, data: bytes) -> None:
        if not self.is_initialized or self._queue is None:
            logger.debug("[AUDIO] Playback not initialised; dropping %d bytes", len(data))
            return
        self._queue.put_nowait(bytes(data))

    def stop(self) -> int:
        """Drop queued chunks (used on interruption). Returns how many were dropped."""
        count = 0
        if self._queue is None:
            return count
        while not self._queue.empty():
            self._queue.get_nowait()
            count += 1
        if count:
            logger.debug("[AUDIO] Cleared %d chunks from playback queue due to interruption", count)
        return count

    async def close(self) -> None:
        self.stop()
        task, self._play_task = self._play_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop_stream()
                stream.close()
            except Exception as e:
                logger.warning("[AUDIO] Error closing output stream: %s", e)
        self._terminate()
        self._queue = None
        self.is_initialized = False

    def _terminate(self) -> None:
        if self._pya is not None:
            try:
                self._pya.terminate()
            except Exception:
                pass
            self._pya = None


def list_input_devices(pya_factory: Optional[Callable[[], Any]] = None):
    p = (pya_factory or _default_pya_factory)()
    try:
        return [
            (i, p.get_device_info_by_index(i).get("name"))
            for i in range(p.get_device_count())
            if p.get_device_info_by_index(i).get("maxInputChannels", 0) > 0
        ]
    finally:
        p.terminate()


def list_output_devices(pya_factory: Optional[Callable[[], Any]] = None):
    p = (pya_factory or _default_pya_factory)()
    try:
        return [
            (i, p.get_device_info_by_index(i).get("name"))
            for i in range(p.get_device_count())
            if p.get_device_info_by_index(i).get("maxOutputChannels", 0) > 0
        ]
    finally:
        p.terminate()

import asyncio
import base64
import io
import logging
import sys
from typing import Optional, Protocol, runtime_checkable

import PIL.Image

from errors import DeviceError
from settings import CaptureConfig

logger = logging.getLogger(__name__)

try:
    import cv2
    CAMERA_AVAILABLE = True
except ImportError:
    cv2 = None
    CAMERA_AVAILABLE = False

try:
    import mss
    SCREEN_AVAILABLE = True
except ImportError:
    mss = None
    SCREEN_AVAILABLE = False

# Default device index per facing mode; most laptops expose the front camera first.
FACING_MODE_INDEX = {"user": 0, "environment": 1}


@runtime_checkable
class MediaCapture(Protocol):
    async def initialize(self) -> None: ...

    async def capture(self) -> Optional[str]: ...

    async def dispose(self) -> None: ...


def _resample_filter():
    resampling = getattr(PIL.Image, "Resampling", None)
    if resampling:
        return resampling.BILINEAR
    return PIL.Image.BILINEAR


def encode_jpeg(img: PIL.Image.Image, max_size: Optional[int], quality: int) -> str:
    """Downscale `img` to fit `max_size` and return it as a base64 JPEG string."""
    if img.mode != "RGB":
        img = img.convert("RGB")
    if max_size:
        img.thumbnail([max_size, max_size], resample=_resample_filter())
    image_io = io.BytesIO()
    img.save(image_io, format="JPEG", quality=int(quality), optimize=False)
    return base64.b64encode(image_io.getvalue()).decode("ascii")


def _camera_backend() -> int:
    backend = 0
    if sys.platform == "darwin" and hasattr(cv2, "CAP_AVFOUNDATION"):
        backend = cv2.CAP_AVFOUNDATION
    elif sys.platform.startswith("win") and hasattr(cv2, "CAP_DSHOW"):
        backend = cv2.CAP_DSHOW
    return backend


class CameraCapture:
    def __init__(self, config: Optional[CaptureConfig] = None):
        self.config = config or CaptureConfig()
        self._cap = None

    @property
    def is_initialized(self) -> bool:
        return self._cap is not None

    def _candidate_indices(self):
        preferred = self.config.camera_index
        if preferred is None:
            preferred = FACING_MODE_INDEX.get(self.config.facing_mode, 0)
        indices = [preferred]
        if preferred != 0:
            indices.append(0)
        return indices

    def _open(self):
        backend = _camera_backend()
        for index in self._candidate_indices():
            cap = cv2.VideoCapture(index, backend)
            if cap is not None and cap.isOpened():
                logger.info("[CAMERA] Opened camera index %d (%s)", index, self.config.facing_mode)
                return cap
            if cap is not None:
                cap.release()
            logger.warning("[CAMERA] Camera index %d unavailable", index)
        return None

    async def initialize(self) -> None:
        if self._cap is not None:
            return
        if not CAMERA_AVAILABLE:
            raise DeviceError("opencv-python is not installed; camera capture is unavailable")
        cap = await asyncio.to_thread(self._open)
        if cap is None:
            raise DeviceError("Failed to initialize camera: no usable device")
        self._cap = cap

    def _grab(self) -> Optional[str]:
        ret, frame = self._cap.read()
        if not ret:
            return None
        frame_rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        img = PIL.Image.fromarray(frame_rgb)
        return encode_jpeg(img, self.config.max_size, self.config.jpeg_quality)

    async def capture(self) -> Optional[str]:
        if self._cap is None:
            raise DeviceError("Camera not initialized. Call initialize() first")
        return await asyncio.to_thread(self._grab)

    async def dispose(self) -> None:
        cap, self._cap = self._cap, None
        if cap is not None:
            await asyncio.to_thread(cap.release)
            logger.info("[CAMERA] Released")


class ScreenCapture:
    """Grabs one monitor with mss. A fresh mss handle is opened per grab since handles are bound to a thread."""

    def __init__(self, config: Optional[CaptureConfig] = None):
        self.config = config or CaptureConfig()
        self._ready = False

    @property
    def is_initialized(self) -> bool:
        return self._ready

    def _count_monitors(self) -> int:
        with mss.mss() as sct:
            return len(sct.monitors)

    async def initialize(self) -> None:
        if self._ready:
            return
        if not SCREEN_AVAILABLE:
            raise DeviceError("mss is not installed; screen sharing is unavailable")
        try:
            count = await asyncio.to_thread(self._count_monitors)
        except Exception as e:
            raise DeviceError(f"Failed to initialize screen capture: {e}") from e
        self._ready = True
        logger.info("[SCREEN] Screen capture ready (monitor %d of %d)", self.config.screen_monitor, max(count - 1, 0))

    def _monitor(self, monitors):
        idx = self.config.screen_monitor
        if not monitors:
            return {"left": 0, "top": 0, "width": 1280, "height": 720}
        if idx == 0:
            return monitors[0]
        if 0 < idx < len(monitors):
            return monitors[idx]
        return monitors[1] if len(monitors) > 1 else monitors[0]

    def _grab(self) -> str:
        with mss.mss() as sct:
            shot = sct.grab(self._monitor(sct.monitors))
        img = PIL.Image.frombytes("RGB", shot.size, shot.bgra, "raw", "BGRX")
        return encode_jpeg(img, self.config.max_size, self.config.jpeg_quality)

    async def capture(self) -> Optional[str]:
        if not self._ready:
            raise DeviceError("Screen capture not initialized. Call initialize() first")
        try:
            return await asyncio.to_thread(self._grab)
        except Exception as e:
            raise DeviceError(f"Screen capture failed: {e}") from e

    async def dispose(self) -> None:
        if self._ready:
            self._ready = False
            logger.info("[SCREEN] Released")

import base64
import io

import PIL.Image
import pytest

from capture import CameraCapture, MediaCapture, ScreenCapture, encode_jpeg
from errors import DeviceError
from settings import CaptureConfig


def test_encode_jpeg_downscales_and_converts():
    img = PIL.Image.new("RGBA", (1000, 500), (255, 0, 0, 255))
    encoded = encode_jpeg(img, 640, 80)

    decoded = PIL.Image.open(io.BytesIO(base64.b64decode(encoded)))
    assert decoded.format == "JPEG"
    assert decoded.size == (640, 320)


def test_encode_jpeg_keeps_small_images():
    img = PIL.Image.new("RGB", (100, 50))
    decoded = PIL.Image.open(io.BytesIO(base64.b64decode(encode_jpeg(img, 640, 80))))
    assert decoded.size == (100, 50)


def test_camera_candidates_follow_facing_mode():
    assert CameraCapture(CaptureConfig(facing_mode="user"))._candidate_indices() == [0]
    assert CameraCapture(CaptureConfig(facing_mode="environment"))._candidate_indices() == [1, 0]
    assert CameraCapture(CaptureConfig(camera_index=2))._candidate_indices() == [2, 0]


@pytest.mark.parametrize(
    "index, expected",
    [(0, "all"), (1, "first"), (2, "second"), (7, "first")],
)
def test_screen_monitor_selection(index, expected):
    monitors = [{"name": "all"}, {"name": "first"}, {"name": "second"}]
    screen = ScreenCapture(CaptureConfig(screen_monitor=index))
    assert screen._monitor(monitors)["name"] == expected


def test_screen_monitor_without_monitors():
    assert ScreenCapture(CaptureConfig())._monitor([]) == {"left": 0, "top": 0, "width": 1280, "height": 720}


async def test_capture_before_initialize_raises():
    with pytest.raises(DeviceError):
        await CameraCapture().capture()
    with pytest.raises(DeviceError):
        await ScreenCapture().capture()


async def test_dispose_without_initialize_is_harmless():
    await CameraCapture().dispose()
    await ScreenCapture().dispose()


def test_captures_satisfy_protocol():
    assert isinstance(CameraCapture(), MediaCapture)
    assert isinstance(ScreenCapture(), MediaCapture)

"""
Tests for camera acquisition.

cv2.VideoCapture is patched, so no device is needed.
"""

from unittest.mock import MagicMock, patch

import pytest

from docverify.scanning import camera as camera_module
from docverify.scanning.camera import CameraDevice, acquire_camera
from docverify.scanning.exceptions import DeviceBusy, DeviceNotFound, DeviceUnsupported

from helpers import blank_frame


def _capture(opened: bool = True, frame_ok: bool = True) -> MagicMock:
    capture = MagicMock()
    capture.isOpened.return_value = opened
    capture.read.return_value = (frame_ok, blank_frame() if frame_ok else None)
    return capture


@pytest.fixture(autouse=True)
def release_active_camera():
    yield
    active = CameraDevice.active()
    if active is not None:
        active.release()


class TestCameraDevice:

    def test_open_and_release(self):
        capture = _capture()
        with patch.object(camera_module.cv2, "VideoCapture", return_value=capture):
            device = CameraDevice(0).open()

        assert device.is_open
        assert CameraDevice.active() is device
        assert device.read() is not None

        device.release()

        assert not device.is_open
        assert CameraDevice.active() is None
        assert device.read() is None
        capture.release.assert_called_once()

    def test_release_twice(self):
        with patch.object(camera_module.cv2, "VideoCapture", return_value=_capture()):
            device = CameraDevice(0).open()

        device.release()
        device.release()

        assert CameraDevice.active() is None

    def test_second_camera_is_busy(self):
        with patch.object(camera_module.cv2, "VideoCapture", return_value=_capture()):
            first = CameraDevice(0).open()

            with pytest.raises(DeviceBusy):
                CameraDevice(1).open()

            first.release()
            second = CameraDevice(1).open()

        assert CameraDevice.active() is second

    def test_device_missing(self, monkeypatch):
        monkeypatch.setattr(camera_module.sys, "platform", "darwin")

        with patch.object(camera_module.cv2, "VideoCapture", return_value=_capture(opened=False)):
            with pytest.raises(DeviceNotFound):
                CameraDevice(7).open()

        assert CameraDevice.active() is None

    def test_no_frames_is_unsupported(self):
        capture = _capture(frame_ok=False)
        with patch.object(camera_module.cv2, "VideoCapture", return_value=capture):
            with pytest.raises(DeviceUnsupported):
                CameraDevice(0).open()

        capture.release.assert_called_once()
        assert CameraDevice.active() is None


class TestAcquireCamera:

    @pytest.mark.asyncio
    async def test_acquire_off_loop(self):
        with patch.object(camera_module.cv2, "VideoCapture", return_value=_capture()):
            device = await acquire_camera(3)

        assert device.index == 3
        assert device.is_open

    @pytest.mark.asyncio
    async def test_acquire_error_propagates(self, monkeypatch):
        monkeypatch.setattr(camera_module.sys, "platform", "darwin")

        with patch.object(camera_module.cv2, "VideoCapture", return_value=_capture(opened=False)):
            with pytest.raises(DeviceNotFound):
                await acquire_camera(0)

"""
OpenCV camera acquisition for live QR capture.

The camera is a process-wide singleton: only one CameraDevice may be open
at a time. Releasing is idempotent.
"""

import os
import sys
import asyncio
import logging
import threading
from pathlib import Path
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import cv2
import numpy as np

from docverify.config import settings
from docverify.scanning.exceptions import (
    AcquisitionError,
    DeviceBusy,
    DeviceNotFound,
    DeviceUnsupported,
    PermissionDenied,
)

logger = logging.getLogger(__name__)

_executor = ThreadPoolExecutor(max_workers=1)


class CameraDevice:
    """A single OpenCV VideoCapture, usable as a decoder frame source."""

    _active: Optional["CameraDevice"] = None
    _registry_lock = threading.Lock()

    def __init__(self, index: Optional[int] = None):
        self.index = settings.camera_index if index is None else index
        self._capture = None
        # Serializes read() against release() across executor threads
        self._lock = threading.Lock()

    @classmethod
    def active(cls) -> Optional["CameraDevice"]:
        """The currently open camera, if any."""
        return cls._active

    @property
    def is_open(self) -> bool:
        return self._capture is not None

    def open(self) -> "CameraDevice":
        """Start acquisition. Blocks until the OS grants or denies the device."""
        with CameraDevice._registry_lock:
            if CameraDevice._active is not None and CameraDevice._active is not self:
                raise DeviceBusy(detail=f"camera {CameraDevice._active.index} is open")
            if self._capture is not None:
                return self

            if not hasattr(cv2, "VideoCapture"):
                raise DeviceUnsupported(detail="OpenCV built without video support")

            capture = cv2.VideoCapture(self.index)
            if not capture.isOpened():
                capture.release()
                raise self._classify_open_failure()

            ok, _ = capture.read()
            if not ok:
                capture.release()
                raise DeviceUnsupported(detail=f"camera {self.index} produced no frames")

            self._capture = capture
            CameraDevice._active = self

        logger.info(f"Camera {self.index} acquired")
        return self

    def _classify_open_failure(self) -> AcquisitionError:
        """Work out why VideoCapture refused to open."""
        if sys.platform.startswith("linux"):
            device = Path(f"/dev/video{self.index}")
            if not device.exists():
                return DeviceNotFound(detail=str(device))
            if not os.access(device, os.R_OK | os.W_OK):
                return PermissionDenied(detail=str(device))
            return DeviceUnsupported(detail=f"{device} could not be opened")
        return DeviceNotFound(detail=f"camera index {self.index}")

    def read(self) -> Optional[np.ndarray]:
        with self._lock:
            if self._capture is None:
                return None
            ok, frame = self._capture.read()
        return frame if ok else None

    def release(self) -> None:
        """Stop acquisition. Safe to call when already released."""
        with self._lock:
            capture, self._capture = self._capture, None

        if capture is not None:
            capture.release()
            logger.info(f"Camera {self.index} released")

        with CameraDevice._registry_lock:
            if CameraDevice._active is self:
                CameraDevice._active = None


async def acquire_camera(index: Optional[int] = None) -> CameraDevice:
    """Open a camera without blocking the event loop."""
    camera = CameraDevice(index)
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(_executor, camera.open)

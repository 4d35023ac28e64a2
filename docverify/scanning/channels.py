"""
Input channels for document verification.

Three mutually exclusive ways to get a document identifier into a session:
- Manual: typed identifier + optional typed access key
- Live capture: scan a QR code with the camera
- Image upload: decode a QR code from a still image

Each channel implements the same capability set (acquire, decode_one,
release). The controller keeps exactly one channel active, stops the camera
before switching away, and auto-submits the first decoded payload.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from typing_extensions import Protocol

from docverify.models.schemas import Channel, Phase, SessionState
from docverify.scanning.camera import acquire_camera
from docverify.scanning.decoder import FrameSource, decode_from_stream, decode_image_async
from docverify.scanning.exceptions import AcquisitionError, DecodeError
from docverify.verification.session import VerificationSession
from docverify.verification.transitions import InvalidTransition

logger = logging.getLogger(__name__)

CameraFactory = Callable[[], Awaitable[FrameSource]]


class ChannelCapability(Protocol):
    channel: Channel

    async def acquire(self) -> None:
        ...

    async def decode_one(self, source: Any = None) -> Optional[str]:
        ...

    async def release(self) -> None:
        ...


class ManualChannel:
    """Typed text is the payload; nothing to acquire."""

    channel = Channel.MANUAL

    async def acquire(self) -> None:
        pass

    async def decode_one(self, source: Any = None) -> Optional[str]:
        return source

    async def release(self) -> None:
        pass


class ImageUploadChannel:
    """One decode attempt per uploaded image."""

    channel = Channel.IMAGE_UPLOAD

    async def acquire(self) -> None:
        pass

    async def decode_one(self, source: Any = None) -> Optional[str]:
        return await decode_image_async(source)

    async def release(self) -> None:
        pass


class LiveCaptureChannel:
    """Camera-backed channel; decodes frames until the first hit."""

    channel = Channel.LIVE_CAPTURE

    def __init__(self, camera_factory: CameraFactory = acquire_camera, fps: Optional[int] = None):
        self._camera_factory = camera_factory
        self._fps = fps
        self._camera = None

    @property
    def is_active(self) -> bool:
        return self._camera is not None

    async def acquire(self) -> None:
        if self._camera is None:
            self._camera = await self._camera_factory()

    async def decode_one(self, source: Any = None) -> Optional[str]:
        """First payload from the camera, or None if it closed first."""
        if self._camera is None:
            return None

        stream = decode_from_stream(self._camera, self._fps)
        try:
            async for event in stream:
                logger.info(f"QR code captured at frame {event.frame_index}")
                return event.payload
        finally:
            await stream.aclose()
        return None

    async def release(self) -> None:
        camera, self._camera = self._camera, None
        if camera is not None:
            loop = asyncio.get_event_loop()
            await loop.run_in_executor(None, camera.release)


class InputChannelController:
    """Feeds one active input channel into a verification session."""

    def __init__(
        self,
        session: VerificationSession,
        camera_factory: CameraFactory = acquire_camera,
        fps: Optional[int] = None,
    ):
        self.session = session
        self._channels: Dict[Channel, Any] = {
            Channel.MANUAL: ManualChannel(),
            Channel.LIVE_CAPTURE: LiveCaptureChannel(camera_factory, fps),
            Channel.IMAGE_UPLOAD: ImageUploadChannel(),
        }
        # Access key typed in the manual form; used when a scanned code has none
        self._manual_secret: Optional[str] = None
        # Running while the camera is acquired and decoding
        self._capture_task: Optional[asyncio.Task] = None
        # Last capture, kept until it has submitted its payload
        self._last_capture: Optional[asyncio.Task] = None

    @property
    def active_channel(self) -> Channel:
        return self.session.state.active_channel

    @property
    def capturing(self) -> bool:
        return self._capture_task is not None and not self._capture_task.done()

    @property
    def camera_active(self) -> bool:
        return self._channels[Channel.LIVE_CAPTURE].is_active

    async def select_channel(self, channel: Channel) -> SessionState:
        """Activate `channel`; live capture is always stopped first."""
        await self.stop_capture()
        logger.info(f"Channel: {self.active_channel.value} -> {channel.value}")
        return self.session.select_channel(channel)

    async def _activate(self, channel: Channel) -> None:
        if self.active_channel != channel:
            await self.select_channel(channel)

    async def _decode(self, capability: ChannelCapability, source: Any = None) -> Optional[str]:
        try:
            return await capability.decode_one(source)
        finally:
            await capability.release()

    # -------------------------------------------------------------------------
    # Manual
    # -------------------------------------------------------------------------

    async def submit_manual(self, identifier: str, secret: Optional[str] = None) -> SessionState:
        """Explicit submission of the manual form."""
        await self._activate(Channel.MANUAL)
        self._manual_secret = (secret or "").strip() or None

        capability = self._channels[Channel.MANUAL]
        await capability.acquire()
        payload = await self._decode(capability, identifier or "")
        return await self.session.submit(payload, fallback_secret=self._manual_secret)

    # -------------------------------------------------------------------------
    # Image upload
    # -------------------------------------------------------------------------

    async def submit_image(self, image: Any) -> SessionState:
        """Decode an uploaded image and submit it straight away."""
        await self._activate(Channel.IMAGE_UPLOAD)

        capability = self._channels[Channel.IMAGE_UPLOAD]
        await capability.acquire()
        try:
            payload = await self._decode(capability, image)
        except DecodeError as e:
            return self.session.report(e)

        return await self.session.submit(payload, fallback_secret=self._manual_secret)

    # -------------------------------------------------------------------------
    # Live capture
    # -------------------------------------------------------------------------

    async def start_capture(self) -> SessionState:
        """
        Acquire the camera and start decoding in the background.

        Returns once the camera is granted or denied. The first decoded
        payload stops the camera and is submitted automatically.
        """
        await self._activate(Channel.LIVE_CAPTURE)
        if self.capturing:
            return self.session.state
        if self.session.state.phase == Phase.RESULT:
            raise InvalidTransition("start capture", Phase.RESULT, "reset first")

        capability = self._channels[Channel.LIVE_CAPTURE]
        try:
            await capability.acquire()
        except AcquisitionError as e:
            return self.session.report(e)

        self._capture_task = asyncio.ensure_future(self._capture(capability))
        self._last_capture = self._capture_task
        return self.session.state

    async def _capture(self, capability: LiveCaptureChannel) -> SessionState:
        payload = await self._decode(capability)
        self._capture_task = None

        if payload is None:
            return self.session.state
        return await self.session.submit(payload, fallback_secret=self._manual_secret)

    async def wait_for_capture(self) -> SessionState:
        """Wait for the current capture to decode and verify (or be stopped)."""
        task = self._last_capture
        if task is None:
            return self.session.state

        await asyncio.wait({task})
        if task.cancelled():
            return self.session.state
        return task.result()

    async def stop_capture(self) -> None:
        """Stop the camera. Safe to call when nothing is running."""
        task, self._capture_task = self._capture_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        await self._channels[Channel.LIVE_CAPTURE].release()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def reset(self) -> SessionState:
        """Start over: camera stopped, typed key forgotten, session idle."""
        await self.stop_capture()
        self._manual_secret = None
        return self.session.reset()

    async def close(self) -> None:
        """Teardown: release the camera and discard the session's result."""
        await self.reset()
        self._last_capture = None

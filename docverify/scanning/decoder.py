"""
QR Code Decoding Service.

Takes a still image or a stream of camera frames and returns the embedded
payload string.
Handles:
1. Loading images from paths, raw upload bytes, PIL images or arrays
2. Multiple preprocessing methods (none, Otsu, adaptive threshold)
3. One-shot image decoding with a terminal error
4. Lazy, restartable decoding of a live frame stream

Usage:
    from docverify.scanning.decoder import decode_from_image

    payload = decode_from_image("path/to/qr.png")
"""

import io
import time
import asyncio
import logging
from pathlib import Path
from dataclasses import dataclass
from concurrent.futures import ThreadPoolExecutor
from typing import AsyncIterator, Optional, Sequence, Tuple, Union

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError
from typing_extensions import Protocol

from docverify.config import settings
from docverify.scanning.exceptions import NoCodeFound, Unreadable

logger = logging.getLogger(__name__)

# Thread pool for running blocking frame reads and decodes in async context
_executor = ThreadPoolExecutor(max_workers=2)

ImageInput = Union[str, Path, bytes, Image.Image, np.ndarray]


@dataclass
class DecodeEvent:
    """One successful decode from a frame stream."""
    payload: str
    frame_index: int
    method: str
    timestamp: float


class FrameSource(Protocol):
    """Anything that hands out video frames (a camera, a recorded clip)."""

    @property
    def is_open(self) -> bool:
        ...

    def read(self) -> Optional[np.ndarray]:
        """Return the next frame, or None when no frame is available."""
        ...


def load_image(image: ImageInput) -> np.ndarray:
    """Load any supported image input as an OpenCV array."""
    if isinstance(image, np.ndarray):
        if image.size == 0:
            raise Unreadable(detail="empty image array")
        return image

    if isinstance(image, Image.Image):
        return cv2.cvtColor(np.array(image.convert("RGB")), cv2.COLOR_RGB2BGR)

    if isinstance(image, (str, Path)):
        path = Path(image)
        if not path.is_file():
            raise Unreadable(detail=f"file not found: {path}")
        image = path.read_bytes()

    if not image:
        raise Unreadable(detail="empty upload")

    buffer = np.frombuffer(image, dtype=np.uint8)
    img = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if img is not None:
        return img

    # OpenCV can't open some formats (e.g. GIF); let Pillow try
    try:
        with Image.open(io.BytesIO(image)) as pil_image:
            return cv2.cvtColor(np.array(pil_image.convert("RGB")), cv2.COLOR_RGB2BGR)
    except (UnidentifiedImageError, OSError) as e:
        raise Unreadable(detail=str(e)) from e


def preprocess_for_decode(img: np.ndarray, method: str = "none") -> np.ndarray:
    """Preprocess image for QR detection."""
    if img.ndim == 2:
        gray = img
    elif img.shape[2] == 4:
        gray = cv2.cvtColor(img, cv2.COLOR_BGRA2GRAY)
    else:
        gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)

    if method == "otsu":
        _, thresh = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
        return thresh
    elif method == "adaptive":
        return cv2.adaptiveThreshold(
            gray, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C, cv2.THRESH_BINARY, 11, 2
        )
    return gray


def decode_frame(
    frame: Optional[np.ndarray],
    methods: Optional[Sequence[str]] = None,
) -> Optional[Tuple[str, str]]:
    """
    Try to decode a QR code in a single frame.

    Returns (payload, method) or None. A miss is not an error: most frames
    from a camera being aimed contain no readable code.
    """
    if frame is None or frame.size == 0:
        return None

    detector = cv2.QRCodeDetector()
    for method in methods or settings.decode_preprocess:
        try:
            processed = preprocess_for_decode(frame, method)
            payload, _, _ = detector.detectAndDecode(processed)
        except cv2.error as e:
            logger.debug(f"Decode attempt failed ({method}): {e}")
            continue

        if payload:
            return payload, method

    return None


def decode_from_image(image: ImageInput) -> str:
    """
    Main entry point: decode the QR payload of a still image.

    Raises Unreadable if the image can't be loaded, NoCodeFound if it
    holds no readable code.
    """
    img = load_image(image)
    result = decode_frame(img)

    if result is None:
        logger.warning("No QR code found in image")
        raise NoCodeFound()

    payload, method = result
    logger.info(f"QR code decoded from image: method={method}, length={len(payload)}")
    return payload


async def decode_image_async(image: ImageInput) -> str:
    """Decode a still image without blocking the event loop."""
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(_executor, decode_from_image, image)


def _read_and_decode(frame_source: FrameSource) -> Optional[Tuple[str, str]]:
    return decode_frame(frame_source.read())


async def decode_from_stream(
    frame_source: FrameSource,
    fps: Optional[int] = None,
) -> AsyncIterator[DecodeEvent]:
    """
    Decode QR codes from a frame stream, yielding one event per hit.

    Runs until the source closes. Each call starts a fresh pass over the
    source, so stopping and restarting acquisition is safe.
    """
    fps = settings.capture_fps if fps is None else fps
    interval = 1.0 / fps if fps > 0 else 0.0
    loop = asyncio.get_event_loop()
    frame_index = 0

    while frame_source.is_open:
        result = await loop.run_in_executor(_executor, _read_and_decode, frame_source)
        frame_index += 1

        if result is not None:
            payload, method = result
            logger.debug(f"Frame {frame_index}: decoded with {method}")
            yield DecodeEvent(
                payload=payload,
                frame_index=frame_index,
                method=method,
                timestamp=time.time(),
            )

        await asyncio.sleep(interval)


if __name__ == "__main__":
    """Decode a QR image directly."""
    import sys

    from docverify.verification.normalizer import normalize
    from docverify.scanning.exceptions import DecodeError

    if len(sys.argv) < 2:
        print("Usage: python -m docverify.scanning.decoder <qr_image>")
        sys.exit(1)

    logging.basicConfig(level=logging.INFO)

    file_path = sys.argv[1]
    print(f"Processing: {file_path}")

    try:
        payload = decode_from_image(Path(file_path))
    except DecodeError as e:
        print(f"\nFailed to decode: {e}")
        sys.exit(1)

    resolved = normalize(payload)
    print("\n=== QR DECODED ===")
    print(f"Payload: {payload}")
    if resolved:
        print(f"Identifier: {resolved.identifier}")
        print(f"Access key: {'present' if resolved.secret else 'none'}")

"""
Test helpers: an in-memory verification service, a scripted camera and
QR code images.
"""

import asyncio
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union

import numpy as np
import qrcode

from docverify.models.schemas import (
    AccessCounters,
    DocumentRecord,
    FileMetadata,
    NotFound,
    Tier,
    Verified,
)
from docverify.scanning.exceptions import AcquisitionError


def make_record(document_id: str, title: str = "Bachelor of Science") -> DocumentRecord:
    """A full-tier record as the service would return it."""
    return DocumentRecord(
        document_id=document_id,
        title=title,
        document_hash="9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08",
        confidence_score=0.97,
        created_at=datetime(2024, 5, 14, 9, 30, tzinfo=timezone.utc),
        blockchain_verified=True,
        extracted_fields={"recipientName": "Ada Lovelace", "grade": "First Class"},
        file=FileMetadata(original_filename="degree.pdf", file_type="application/pdf", file_size=48213),
        counters=AccessCounters(access_count=3, verification_count=7),
    )


class FakeVerificationClient:
    """
    In-memory verification service.

    Unknown IDs are not found, a matching access key gives full disclosure,
    anything else (no key, wrong key) gives partial disclosure.
    """

    def __init__(self, documents: Optional[Dict[str, str]] = None):
        documents = documents if documents is not None else {"DOC-ABC12345": "SECRET-1", "DOC-XYZ": "K1"}
        self.records = {doc_id: (secret, make_record(doc_id)) for doc_id, secret in documents.items()}
        self.calls: List[tuple] = []
        # identifier -> event the call waits on before answering
        self.gates: Dict[str, Union[asyncio.Event, threading.Event]] = {}
        self.fail = False

    async def verify(self, identifier: str, secret: Optional[str] = None):
        self.calls.append((identifier, secret))

        gate = self.gates.get(identifier)
        if isinstance(gate, threading.Event):
            # Released from another thread (API tests)
            loop = asyncio.get_event_loop()
            await loop.run_in_executor(None, gate.wait)
        elif gate is not None:
            await gate.wait()

        if self.fail:
            return NotFound(reason="verification failed, please retry")

        if identifier not in self.records:
            return NotFound(reason="Certificate not found")

        true_secret, record = self.records[identifier]
        tier = Tier.FULL if secret and secret == true_secret else Tier.PARTIAL
        return Verified(tier=tier, record=record.scoped(tier))


class FakeCamera:
    """Scripted frame source; closes itself once the frames run out."""

    def __init__(self, frames: List[Optional[np.ndarray]]):
        self.frames = list(frames)
        self.reads = 0
        self.released = False

    @property
    def is_open(self) -> bool:
        return not self.released and self.reads < len(self.frames)

    def read(self) -> Optional[np.ndarray]:
        if not self.is_open:
            return None
        frame = self.frames[self.reads]
        self.reads += 1
        return frame

    def release(self) -> None:
        self.released = True


def qr_image(payload: str):
    """PIL image of a QR code encoding `payload`."""
    return qrcode.make(payload).convert("RGB")


def qr_frame(payload: str) -> np.ndarray:
    return np.array(qr_image(payload))[:, :, ::-1].copy()


def blank_frame() -> np.ndarray:
    return np.full((240, 320, 3), 255, dtype=np.uint8)


def camera_factory(camera: FakeCamera):
    async def _factory():
        return camera
    return _factory


def failing_camera_factory(error: AcquisitionError):
    async def _factory():
        raise error
    return _factory



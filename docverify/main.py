"""
DocVerify - FastAPI Application

Document verification sessions with tiered disclosure.

Endpoints:
- /sessions - create a verification session
- /sessions/{id}/manual, /upload, /capture/start - the three input channels
- /sessions/{id}/unlock - upgrade a partial result with an access key
- /sessions/{id}/retry, /reset - recover from a failed verification
- /verify/{identifier} - deep-link verification (?key=<access key>)
"""

import time
import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, Optional

from fastapi import FastAPI, UploadFile, File, HTTPException, Form, Request
from fastapi.responses import JSONResponse
import aiofiles
import aiofiles.os

from docverify.config import settings
from docverify.models.schemas import Channel, SessionState
from docverify.scanning.channels import InputChannelController
from docverify.verification.client import HttpVerificationClient
from docverify.verification.pipeline import verify_payload
from docverify.verification.session import VerificationSession
from docverify.verification.transitions import InvalidTransition

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Client will be initialized lazily when needed
_client = None

# Open sessions by id, and when each was last used (time.monotonic)
_sessions: Dict[str, InputChannelController] = {}
_last_used: Dict[str, float] = {}


def get_client():
    """Get or initialize the verification service client."""
    global _client
    if _client is None:
        _client = HttpVerificationClient()
    return _client


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Teardown: every open camera is released, late responses are dropped
    for session_id in list(_sessions):
        await _close_session(session_id)
    if isinstance(_client, HttpVerificationClient):
        _client.close()


# Create FastAPI app
app = FastAPI(
    title="DocVerify",
    description="Tiered document verification by ID, QR scan or QR image",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


def _get_controller(session_id: str) -> InputChannelController:
    controller = _sessions.get(session_id)
    if controller is None:
        raise HTTPException(status_code=404, detail="Session not found")
    _last_used[session_id] = time.monotonic()
    return controller


async def _close_session(session_id: str) -> None:
    controller = _sessions.pop(session_id, None)
    _last_used.pop(session_id, None)
    if controller is not None:
        await controller.close()


async def _prune_sessions() -> None:
    """Close idle sessions, then the least recently used ones above the cap."""
    now = time.monotonic()
    for session_id in [s for s, t in _last_used.items() if now - t > settings.session_idle_seconds]:
        logger.info(f"Session {session_id} expired")
        await _close_session(session_id)

    while _sessions and len(_sessions) >= settings.max_sessions:
        oldest = min(_sessions, key=lambda s: _last_used.get(s, 0.0))
        logger.info(f"Session {oldest} evicted: {len(_sessions)} open")
        await _close_session(oldest)


def _state_response(session_id: str, state: SessionState) -> dict:
    return {
        "session_id": session_id,
        "tier": state.tier.value if state.tier else None,
        **state.model_dump(mode="json"),
    }


# =============================================================================
# Core Endpoints
# =============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": "1.0.0",
        "verifier_url": settings.verifier_base_url,
        "open_sessions": len(_sessions),
    }


@app.post("/sessions")
async def create_session():
    """Open a verification session in the manual channel."""
    await _prune_sessions()
    session_id = str(uuid.uuid4())[:8]
    _last_used[session_id] = time.monotonic()
    _sessions[session_id] = InputChannelController(VerificationSession(get_client()))
    logger.info(f"Session {session_id} opened")
    return _state_response(session_id, _sessions[session_id].session.state)


@app.get("/sessions/{session_id}")
async def get_session(session_id: str):
    controller = _get_controller(session_id)
    return {
        **_state_response(session_id, controller.session.state),
        "capturing": controller.capturing,
    }


@app.delete("/sessions/{session_id}")
async def close_session(session_id: str):
    """Tear the session down, releasing the camera if it holds it."""
    _get_controller(session_id)
    await _close_session(session_id)
    logger.info(f"Session {session_id} closed")
    return {"session_id": session_id, "status": "closed"}


@app.post("/sessions/{session_id}/channel")
async def select_channel(session_id: str, channel: Channel = Form(...)):
    controller = _get_controller(session_id)
    state = await controller.select_channel(channel)
    return _state_response(session_id, state)


@app.post("/sessions/{session_id}/manual")
async def submit_manual(
    session_id: str,
    identifier: str = Form(""),
    access_key: Optional[str] = Form(None),
):
    """Verify a typed document ID, optionally with an access key."""
    controller = _get_controller(session_id)
    state = await controller.submit_manual(identifier, access_key)
    return _state_response(session_id, state)


@app.post("/sessions/{session_id}/upload")
async def upload_qr_image(session_id: str, file: UploadFile = File(...)):
    """Decode a QR code image and verify what it encodes."""
    controller = _get_controller(session_id)

    # Validate file type
    file_ext = Path(file.filename or "").suffix.lower()
    if file_ext not in settings.allowed_image_types:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid file type. Allowed: {settings.allowed_image_types}"
        )

    content = await file.read()
    if len(content) > settings.max_upload_bytes:
        raise HTTPException(status_code=413, detail="Image too large")

    # Save uploaded file
    file_id = str(uuid.uuid4())[:8]
    file_path = settings.upload_dir / f"qr_{session_id}_{file_id}{file_ext}"

    async with aiofiles.open(file_path, "wb") as f:
        await f.write(content)

    logger.info(f"Processing QR upload: {file_path}")

    try:
        state = await controller.submit_image(file_path)
    finally:
        await aiofiles.os.remove(file_path)
    return _state_response(session_id, state)


@app.post("/sessions/{session_id}/capture/start")
async def start_capture(session_id: str):
    """Start scanning with the camera; the first code read is verified."""
    controller = _get_controller(session_id)
    state = await controller.start_capture()
    return {**_state_response(session_id, state), "capturing": controller.capturing}


@app.post("/sessions/{session_id}/capture/stop")
async def stop_capture(session_id: str):
    controller = _get_controller(session_id)
    await controller.stop_capture()
    return {**_state_response(session_id, controller.session.state), "capturing": False}


@app.post("/sessions/{session_id}/unlock")
async def unlock(session_id: str, access_key: str = Form(...)):
    """Upgrade a partial result to full disclosure."""
    controller = _get_controller(session_id)
    state = await controller.session.unlock(access_key)
    return _state_response(session_id, state)


@app.post("/sessions/{session_id}/retry")
async def retry(session_id: str):
    controller = _get_controller(session_id)
    state = await controller.session.retry()
    return _state_response(session_id, state)


@app.post("/sessions/{session_id}/reset")
async def reset(session_id: str):
    controller = _get_controller(session_id)
    state = await controller.reset()
    return _state_response(session_id, state)


@app.get("/verify/{identifier}")
async def verify_link(identifier: str, key: Optional[str] = None):
    """Verify straight from a shared link, without a session."""
    resolved, outcome = await verify_payload(identifier, get_client(), fallback_secret=key)
    return {
        "identifier": resolved.identifier if resolved else identifier,
        "outcome": outcome.model_dump(mode="json") if outcome else None,
    }


# =============================================================================
# Run
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "docverify.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )

"""
Tests for the FastAPI endpoints.

The verification service is replaced by the in-memory fake.
"""

import io
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi.testclient import TestClient

from docverify import main

from helpers import FakeVerificationClient, blank_frame, qr_image


def _png(image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def api(monkeypatch, tmp_path):
    monkeypatch.setattr(main, "_client", FakeVerificationClient())
    monkeypatch.setattr(main.settings, "max_sessions", 100)
    monkeypatch.setattr(main.settings, "session_idle_seconds", 30 * 60)
    monkeypatch.setattr(main.settings, "upload_dir", tmp_path)
    with TestClient(main.app) as test_client:
        yield test_client
    main._sessions.clear()
    main._last_used.clear()


@pytest.fixture
def session_id(api) -> str:
    response = api.post("/sessions")
    assert response.status_code == 200
    return response.json()["session_id"]


class TestHealth:

    def test_health(self, api):
        response = api.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestSessions:

    def test_new_session_is_idle(self, api):
        data = api.post("/sessions").json()

        assert data["phase"] == "idle"
        assert data["active_channel"] == "manual"
        assert data["tier"] is None

    def test_unknown_session(self, api):
        assert api.get("/sessions/nope").status_code == 404

    def test_close_session(self, api, session_id):
        assert api.delete(f"/sessions/{session_id}").json()["status"] == "closed"
        assert api.get(f"/sessions/{session_id}").status_code == 404

    def test_select_channel(self, api, session_id):
        data = api.post(f"/sessions/{session_id}/channel", data={"channel": "image_upload"}).json()

        assert data["active_channel"] == "image_upload"
        assert data["phase"] == "idle"


class TestManualFlow:

    def test_manual_with_key_is_full(self, api, session_id):
        response = api.post(
            f"/sessions/{session_id}/manual",
            data={"identifier": "DOC-ABC12345", "access_key": "SECRET-1"},
        )

        data = response.json()
        assert data["phase"] == "result"
        assert data["tier"] == "full"
        assert data["outcome"]["record"]["document_id"] == "DOC-ABC12345"
        assert data["outcome"]["record"]["counters"]["access_count"] == 3

    def test_unlock_partial_result(self, api, session_id):
        partial = api.post(f"/sessions/{session_id}/manual", data={"identifier": "DOC-ABC12345"}).json()
        assert partial["tier"] == "partial"
        assert partial["outcome"]["record"]["extracted_fields"] is None

        full = api.post(f"/sessions/{session_id}/unlock", data={"access_key": "SECRET-1"}).json()

        assert full["tier"] == "full"
        assert full["resolved"]["identifier"] == "DOC-ABC12345"

    def test_new_document_without_reset_conflicts(self, api, session_id):
        api.post(f"/sessions/{session_id}/manual", data={"identifier": "DOC-ABC12345"})

        response = api.post(f"/sessions/{session_id}/manual", data={"identifier": "DOC-XYZ"})

        assert response.status_code == 409

    def test_reset(self, api, session_id):
        api.post(f"/sessions/{session_id}/manual", data={"identifier": "DOC-ABC12345"})

        data = api.post(f"/sessions/{session_id}/reset").json()

        assert data["phase"] == "idle"
        assert data["resolved"] is None

    def test_unknown_document_then_retry(self, api, session_id):
        data = api.post(f"/sessions/{session_id}/manual", data={"identifier": "DOC-NOPE"}).json()
        assert data["outcome"]["kind"] == "not_found"
        assert data["notice"]["action"] == "retry"

        retried = api.post(f"/sessions/{session_id}/retry").json()

        assert retried["phase"] == "result"
        assert retried["outcome"]["kind"] == "not_found"


class TestUpload:

    def test_qr_image(self, api, session_id):
        files = {"file": ("qr.png", _png(qr_image('{"certificateId": "DOC-XYZ", "accessKey": "K1"}')), "image/png")}

        data = api.post(f"/sessions/{session_id}/upload", files=files).json()

        assert data["active_channel"] == "image_upload"
        assert data["resolved"]["identifier"] == "DOC-XYZ"
        assert data["tier"] == "full"

    def test_image_without_code(self, api, session_id):
        from PIL import Image

        files = {"file": ("blank.png", _png(Image.fromarray(blank_frame())), "image/png")}

        data = api.post(f"/sessions/{session_id}/upload", files=files).json()

        assert data["phase"] == "idle"
        assert data["notice"]["code"] == "no_code_found"

    def test_rejects_other_file_types(self, api, session_id):
        files = {"file": ("notes.txt", b"DOC-XYZ", "text/plain")}

        response = api.post(f"/sessions/{session_id}/upload", files=files)

        assert response.status_code == 400

    @pytest.mark.parametrize("image", ["qr", "blank"])
    def test_upload_removed_after_decode(self, api, session_id, tmp_path, image):
        from PIL import Image

        picture = qr_image("DOC-XYZ") if image == "qr" else Image.fromarray(blank_frame())
        files = {"file": ("scan.png", _png(picture), "image/png")}

        response = api.post(f"/sessions/{session_id}/upload", files=files)

        assert response.status_code == 200
        assert list(tmp_path.iterdir()) == []


class TestVerifyLink:

    def test_link_with_key(self, api):
        data = api.get("/verify/DOC-XYZ", params={"key": "K1"}).json()

        assert data["identifier"] == "DOC-XYZ"
        assert data["outcome"]["tier"] == "full"

    def test_link_without_key(self, api):
        data = api.get("/verify/DOC-XYZ").json()

        assert data["outcome"]["kind"] == "verified"
        assert data["outcome"]["tier"] == "partial"


class TestSessionLimits:
    """Abandoned sessions don't pile up."""

    def test_oldest_session_evicted_at_cap(self, api, monkeypatch):
        monkeypatch.setattr(main.settings, "max_sessions", 2)

        first = api.post("/sessions").json()["session_id"]
        second = api.post("/sessions").json()["session_id"]
        api.get(f"/sessions/{first}")
        third = api.post("/sessions").json()["session_id"]

        assert api.get(f"/sessions/{second}").status_code == 404
        assert api.get(f"/sessions/{first}").status_code == 200
        assert api.get(f"/sessions/{third}").status_code == 200

    def test_idle_session_expires(self, api, session_id):
        main._last_used[session_id] -= 2 * main.settings.session_idle_seconds

        api.post("/sessions")

        assert api.get(f"/sessions/{session_id}").status_code == 404


class TestWhileVerifying:
    """Requests arriving while a verification is running."""

    def _start_gated(self, api, session_id, pool):
        fake = main._client
        fake.gates["DOC-ABC12345"] = threading.Event()
        pending = pool.submit(
            api.post, f"/sessions/{session_id}/manual", data={"identifier": "DOC-ABC12345"}
        )
        deadline = time.monotonic() + 5
        while not fake.calls:
            assert time.monotonic() < deadline, "verification never started"
            time.sleep(0.01)
        return fake.gates["DOC-ABC12345"], pending

    def test_rejected_retry_keeps_verification(self, api, session_id):
        with ThreadPoolExecutor(max_workers=1) as pool:
            gate, pending = self._start_gated(api, session_id, pool)

            assert api.post(f"/sessions/{session_id}/retry").status_code == 409

            gate.set()
            data = pending.result(timeout=10).json()

        assert data["phase"] == "result"
        assert data["tier"] == "partial"
        assert api.get(f"/sessions/{session_id}").json()["phase"] == "result"

    def test_blank_manual_keeps_verification(self, api, session_id):
        with ThreadPoolExecutor(max_workers=1) as pool:
            gate, pending = self._start_gated(api, session_id, pool)

            blank = api.post(f"/sessions/{session_id}/manual", data={"identifier": "   "}).json()
            assert blank["notice"]["code"] == "missing_identifier"

            gate.set()
            pending.result(timeout=10)

        data = api.get(f"/sessions/{session_id}").json()
        assert data["phase"] == "result"
        assert data["resolved"]["identifier"] == "DOC-ABC12345"

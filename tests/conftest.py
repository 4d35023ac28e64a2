"""Pytest fixtures shared across the test suite."""

import json

import pytest

from helpers import FakeVerificationClient


@pytest.fixture
def client():
    return FakeVerificationClient()


@pytest.fixture
def structured_payload() -> str:
    return json.dumps({"certificateId": "DOC-XYZ", "accessKey": "K1"})

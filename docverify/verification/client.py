"""
HTTP client for the DocVerify verification service.

Classifies every response into a VerificationOutcome:
- NotFound: identifier unknown, or the service could not be reached
- Verified(partial): identifier exists, no valid access key
- Verified(full): identifier exists and the access key matched

Transport failures are reported to callers exactly like an unknown
identifier (both are recovered by retrying); the real cause is logged.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional
from urllib.parse import quote, urlencode

import requests
from pydantic import ValidationError
from typing_extensions import Protocol

from docverify.config import settings
from docverify.models.schemas import (
    DocumentRecord,
    NotFound,
    Tier,
    VerificationOutcome,
    Verified,
)

logger = logging.getLogger(__name__)

RETRY_REASON = "verification failed, please retry"
NOT_FOUND_REASON = "Certificate not found"


class VerificationClient(Protocol):
    """What the session needs from a verification backend."""

    async def verify(self, identifier: str, secret: Optional[str] = None) -> VerificationOutcome:
        ...


def classify_response(status_code: int, body: Any) -> VerificationOutcome:
    """Turn a service response into an outcome."""
    if status_code >= 500 or not isinstance(body, dict):
        logger.warning(f"Verification service error: status={status_code}")
        return NotFound(reason=RETRY_REASON)

    if status_code >= 400 or not body.get("success"):
        return NotFound(reason=body.get("message") or NOT_FOUND_REASON)

    data: Dict[str, Any] = body.get("data") or {}
    full = bool(data.get("fullAccess")) or data.get("accessLevel") == Tier.FULL.value
    tier = Tier.FULL if full else Tier.PARTIAL

    if "blockchainVerified" in body and "blockchainVerified" not in data:
        data = {**data, "blockchainVerified": body["blockchainVerified"]}

    try:
        record = DocumentRecord.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Malformed verification record: {e}")
        return NotFound(reason=RETRY_REASON)

    return Verified(tier=tier, record=record.scoped(tier))


class HttpVerificationClient:
    """
    Verification client over the service's JSON API.

    Uses a persistent requests session; blocking calls run on a thread pool
    so the event loop stays free.
    """

    def __init__(
        self,
        base_url: str = None,
        timeout: float = None,
        api_key: Optional[str] = None,
        max_workers: int = 4,
    ):
        self.base_url = (base_url or settings.verifier_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.verifier_timeout
        self.api_key = api_key if api_key is not None else settings.verifier_api_key
        self._session = requests.Session()
        self._session.headers["Accept"] = "application/json"
        if self.api_key:
            self._session.headers["X-API-Key"] = self.api_key
        self._executor = ThreadPoolExecutor(max_workers=max_workers)

    async def _call(self, method: str, path: str, **kwargs) -> VerificationOutcome:
        url = f"{self.base_url}{path}"

        def _request() -> VerificationOutcome:
            try:
                response = self._session.request(method, url, timeout=self.timeout, **kwargs)
            except requests.RequestException as e:
                logger.warning(f"Verification request failed: {method} {url}: {e}")
                return NotFound(reason=RETRY_REASON)

            try:
                body = response.json()
            except ValueError:
                logger.warning(f"Verification response is not JSON: status={response.status_code}")
                return NotFound(reason=RETRY_REASON)

            return classify_response(response.status_code, body)

        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(self._executor, _request)

    async def verify(self, identifier: str, secret: Optional[str] = None) -> VerificationOutcome:
        """Verify a document; a matching access key unlocks full disclosure."""
        payload = {"certificateId": identifier, "accessKey": secret or ""}
        outcome = await self._call("POST", "/verify", json=payload)
        logger.info(
            f"Verified {identifier}: {outcome.kind}"
            + (f" tier={outcome.tier.value}" if isinstance(outcome, Verified) else "")
        )
        return outcome

    async def quick_verify(self, identifier: str) -> VerificationOutcome:
        """Existence check returning primary details only."""
        outcome = await self._call("GET", f"/verify/quick/{quote(identifier, safe='')}")
        if isinstance(outcome, Verified) and outcome.tier == Tier.FULL:
            return Verified(tier=Tier.PARTIAL, record=outcome.record)
        return outcome

    def download_url(self, identifier: str, secret: str) -> str:
        """Link to the original file; the service checks the access key."""
        query = urlencode({"accessKey": secret})
        return f"{self.base_url}/download/{quote(identifier, safe='')}?{query}"

    async def health(self) -> bool:
        def _ping() -> bool:
            try:
                response = self._session.get(f"{self.base_url}/health", timeout=self.timeout)
                return response.ok and bool(response.json().get("success"))
            except (requests.RequestException, ValueError) as e:
                logger.warning(f"Verification service health check failed: {e}")
                return False

        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(self._executor, _ping)

    def close(self) -> None:
        self._session.close()
        self._executor.shutdown(wait=False)

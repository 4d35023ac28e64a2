"""
Payload normalization.

Turns whatever a channel captured (typed text, a decoded QR payload) into a
ResolvedInput. Three payload shapes are recognised:
- JSON objects as printed by the issuer: {"certificateId": ..., "accessKey": ...}
- Verification links: https://host/verify/<id>?key=<access key>
- Anything else: the whole string is the identifier

Normalization never raises.
"""

import re
import json
import logging
import unicodedata
from typing import Any, Optional, Tuple
from urllib.parse import parse_qs, unquote, urlsplit

from docverify.models.schemas import ResolvedInput

logger = logging.getLogger(__name__)

IDENTIFIER_KEYS = ("certificateId", "documentId", "identifier", "id")
SECRET_KEYS = ("accessKey", "secret", "key")

_VERIFY_PATH = re.compile(r"/verify/([^/?#]+)/?$")


def _clean(raw: str) -> str:
    """Strip surrounding whitespace and invisible format characters."""
    text = "".join(c for c in raw if unicodedata.category(c) != "Cf")
    return text.strip()


def _first_string(data: dict, keys: Tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _from_json(text: str) -> Optional[Tuple[str, Optional[str]]]:
    try:
        data: Any = json.loads(text)
    except (ValueError, TypeError):
        return None

    if not isinstance(data, dict):
        return None

    identifier = _first_string(data, IDENTIFIER_KEYS)
    if identifier is None:
        return None
    return identifier, _first_string(data, SECRET_KEYS)


def _from_link(text: str) -> Optional[Tuple[str, Optional[str]]]:
    parts = urlsplit(text)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None

    match = _VERIFY_PATH.search(parts.path)
    if not match:
        return None

    identifier = unquote(match.group(1)).strip()
    if not identifier:
        return None

    keys = parse_qs(parts.query).get("key") or parse_qs(parts.query).get("accessKey")
    secret = keys[0].strip() if keys and keys[0].strip() else None
    return identifier, secret


def normalize(raw: Optional[str], fallback_secret: Optional[str] = None) -> Optional[ResolvedInput]:
    """
    Resolve a raw payload into (identifier, secret).

    A secret carried by the payload wins over `fallback_secret` (one typed
    earlier); the fallback is used only when the payload has none.

    Returns None only when there is nothing to resolve (blank input).
    """
    text = _clean(raw or "")
    if not text:
        return None

    parsed = _from_json(text) or _from_link(text)
    if parsed:
        identifier, secret = parsed
        source = "structured"
    else:
        identifier, secret = text, None
        source = "bare"

    resolved = ResolvedInput(identifier=identifier, secret=secret or fallback_secret)
    logger.debug(
        f"Normalized {source} payload: identifier={resolved.identifier}, "
        f"secret={'yes' if resolved.secret else 'no'}"
    )
    return resolved

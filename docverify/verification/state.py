"""
State definition for the resolve/verify graph.
"""

from typing import Any, List, Optional
from typing_extensions import TypedDict

from docverify.models.schemas import ResolvedInput


class VerificationState(TypedDict, total=False):
    """State passed between nodes in the verification graph."""

    # Input: either a raw payload to resolve, or an already resolved input
    raw_payload: Optional[str]
    fallback_secret: Optional[str]
    resolved: Optional[ResolvedInput]

    # Verification backend (anything with `async verify(identifier, secret)`)
    client: Any

    # VerificationOutcome once the verify node ran
    outcome: Optional[Any]

    # Errors encountered
    errors: List[str]

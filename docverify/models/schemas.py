"""
Pydantic schemas for tiered document verification.

These models define:
- The canonical (identifier, secret) pair resolved from any input channel
- Disclosure-scoped document records returned by the verification service
- Verification outcomes (not found / verified at a tier)
- The verification session state
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from typing_extensions import Annotated


class Channel(str, Enum):
    MANUAL = "manual"
    LIVE_CAPTURE = "live_capture"
    IMAGE_UPLOAD = "image_upload"


class Phase(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    VERIFYING = "verifying"
    RESULT = "result"


class Tier(str, Enum):
    PARTIAL = "partial"
    FULL = "full"


class ResolvedInput(BaseModel):
    """Canonical (identifier, secret) pair produced by any input channel."""

    model_config = ConfigDict(frozen=True)

    identifier: str = Field(..., description="Public document identifier")
    secret: Optional[str] = Field(None, description="Access key for full disclosure")

    @field_validator("identifier")
    @classmethod
    def require_identifier(cls, v: str) -> str:
        """Identifier must be non-empty once resolved."""
        v = v.strip()
        if not v:
            raise ValueError("identifier must not be empty")
        return v

    @field_validator("secret")
    @classmethod
    def blank_secret_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    def with_secret(self, secret: Optional[str]) -> "ResolvedInput":
        """Return a new input for the same identifier carrying `secret`."""
        return ResolvedInput(identifier=self.identifier, secret=secret)


class _ServiceModel(BaseModel):
    """Accepts the verification service's camelCase JSON as well as field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FileMetadata(_ServiceModel):
    """Original-file metadata, disclosed at full tier only."""

    original_filename: Optional[str] = None
    file_type: Optional[str] = None
    file_size: Optional[int] = Field(None, ge=0)
    download_url: Optional[str] = None


class AccessCounters(_ServiceModel):
    """Access/usage counters, disclosed at full tier only."""

    access_count: int = Field(default=0, ge=0)
    verification_count: int = Field(default=0, ge=0)
    last_verified_at: Optional[datetime] = None


# Fields that only exist on a full-tier record
FULL_TIER_FIELDS = frozenset({"extracted_fields", "file", "counters"})


class DocumentRecord(_ServiceModel):
    """
    Disclosure-scoped view of an issued document.

    Partial tier carries the identity/integrity fields; full tier adds the
    extracted field set, original-file metadata and access counters.
    """

    document_id: str = Field(..., description="Stable document identifier")
    title: str = Field(default="Untitled Certificate")
    document_hash: str = Field(..., description="Integrity hash of the document")
    confidence_score: float = Field(default=1.0, ge=0.0, le=1.0)
    created_at: Optional[datetime] = None
    blockchain_verified: Optional[bool] = None

    # Full tier only
    extracted_fields: Optional[Dict[str, Any]] = None
    file: Optional[FileMetadata] = None
    counters: Optional[AccessCounters] = None

    @model_validator(mode="before")
    @classmethod
    def accept_certificate_id(cls, data: Any) -> Any:
        """The service names the identifier `certificateId`."""
        if isinstance(data, dict) and "certificateId" in data and "documentId" not in data:
            data = {**data, "documentId": data["certificateId"]}
        return data

    def scoped(self, tier: Tier) -> "DocumentRecord":
        """Return the view of this record visible at `tier`."""
        if tier == Tier.FULL:
            return self
        return self.model_copy(update={name: None for name in FULL_TIER_FIELDS})

    def visible_fields(self) -> set[str]:
        """Names of the fields that carry a value."""
        return {name for name, value in self if value is not None}


class NotFound(BaseModel):
    """Identifier does not exist, or the service could not be reached."""

    kind: Literal["not_found"] = "not_found"
    reason: str


class Verified(BaseModel):
    """Identifier exists; `record` is scoped to `tier`."""

    kind: Literal["verified"] = "verified"
    tier: Tier
    record: DocumentRecord

    @model_validator(mode="after")
    def scope_record(self) -> "Verified":
        if self.tier == Tier.PARTIAL and self.record.visible_fields() & FULL_TIER_FIELDS:
            self.record = self.record.scoped(Tier.PARTIAL)
        return self


VerificationOutcome = Annotated[Union[NotFound, Verified], Field(discriminator="kind")]


class Notice(BaseModel):
    """A user-facing message paired with the next action to take."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    action: str


class SessionState(BaseModel):
    """
    Immutable snapshot of a verification session.

    Transitions live in `docverify.verification.transitions` and always
    return a new snapshot.
    """

    model_config = ConfigDict(frozen=True)

    phase: Phase = Phase.IDLE
    active_channel: Channel = Channel.MANUAL
    resolved: Optional[ResolvedInput] = None
    outcome: Optional[VerificationOutcome] = None
    generation: int = 0
    notice: Optional[Notice] = None

    @property
    def tier(self) -> Optional[Tier]:
        """Disclosure tier of the current result, if verified."""
        if isinstance(self.outcome, Verified):
            return self.outcome.tier
        return None

"""
Pydantic models for certification records and certification outcomes.
"""

from datetime import datetime, timezone
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from enum import Enum

from artcert.models.fingerprint import Fingerprint


class OutcomeStatus(str, Enum):
    """Terminal states of one certification request."""
    EXACT_DUPLICATE = "exact_duplicate"
    NEAR_DUPLICATE = "near_duplicate"
    CERTIFIED = "certified"
    ORIGINAL = "original"  # read-only check found no match; nothing was written


class CertificationMetadata(BaseModel):
    """Submission details captured with a certification. Immutable once built."""
    model_config = ConfigDict(frozen=True)

    original_name: str = Field(..., min_length=1, description="Original filename of the artwork")
    uploaded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc),
                                  description="Upload timestamp (UTC)")
    source_origin: str = Field(default="unknown", description="Network origin of the submitter")
    storage_locator: str = Field(default="", description="URI of the stored raw file")

    @field_validator("original_name")
    @classmethod
    def validate_original_name(cls, v):
        if not v.strip():
            raise ValueError("original_name must not be blank")
        return v

    @field_validator("uploaded_at")
    @classmethod
    def validate_uploaded_at(cls, v):
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class CertificationRecord(BaseModel):
    """A permanent proof that a fingerprint was certified as original."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    certification_id: str = Field(..., min_length=1, description="Globally unique certification ID")
    fingerprint: Fingerprint = Field(..., description="Fingerprint at certification time")
    metadata: CertificationMetadata
    certified_at: datetime = Field(..., description="Commit timestamp; defines certification order")

    @property
    def order_key(self) -> tuple:
        return (self.certified_at, self.certification_id)


class CertificationOutcome(BaseModel):
    """Result of classifying (and possibly certifying) a fingerprint."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True, use_enum_values=False)

    status: OutcomeStatus
    fingerprint: Fingerprint
    record: Optional[CertificationRecord] = Field(None, description="New or previously certified record")
    distance: Optional[int] = Field(None, ge=0, description="Hamming distance to the matched record")
    attempts: int = Field(default=1, ge=1, description="Insert attempts consumed")

    @property
    def is_duplicate(self) -> bool:
        return self.status in (OutcomeStatus.EXACT_DUPLICATE, OutcomeStatus.NEAR_DUPLICATE)

"""
Pydantic models for API requests and responses.
"""

from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field

from .certification import CertificationOutcome, CertificationRecord, OutcomeStatus


class CertificateResponse(BaseModel):
    """Public view of a certification record."""
    certification_id: str = Field(..., description="Globally unique certification ID")
    fingerprint: str = Field(..., description="Fingerprint as zero-padded hex")
    fingerprint_bits: int = Field(..., description="Fingerprint length in bits")
    original_name: str = Field(..., description="Original filename")
    uploaded_at: datetime = Field(..., description="Upload timestamp")
    source_origin: str = Field(..., description="Network origin of the submitter")
    storage_locator: str = Field(..., description="URI of the stored raw file")
    certified_at: datetime = Field(..., description="Certification timestamp")

    @classmethod
    def from_record(cls, record: CertificationRecord) -> "CertificateResponse":
        meta = record.metadata
        return cls(
            certification_id=record.certification_id,
            fingerprint=record.fingerprint.to_hex(),
            fingerprint_bits=record.fingerprint.bits,
            original_name=meta.original_name,
            uploaded_at=meta.uploaded_at,
            source_origin=meta.source_origin,
            storage_locator=meta.storage_locator,
            certified_at=record.certified_at,
        )


class CertificationResponse(BaseModel):
    """Response model for certify and check requests."""
    status: OutcomeStatus = Field(..., description="Classification outcome")
    fingerprint: str = Field(..., description="Fingerprint of the submission")
    certificate: Optional[CertificateResponse] = Field(None, description="New or matching certificate")
    distance: Optional[int] = Field(None, description="Hamming distance to the matching certificate")
    similarity_score: Optional[float] = Field(None, ge=0.0, le=1.0, description="Display similarity (0.0 to 1.0)")
    message: str = Field(..., description="Human-readable message")

    class Config:
        use_enum_values = True

    @classmethod
    def from_outcome(cls, outcome: CertificationOutcome, similarity: Optional[float] = None) -> "CertificationResponse":
        status = outcome.status
        record = outcome.record
        if status == OutcomeStatus.CERTIFIED:
            message = f"Artwork certified as original: {record.certification_id}"
        elif status == OutcomeStatus.EXACT_DUPLICATE:
            message = f"Identical artwork already certified: {record.certification_id}"
        elif status == OutcomeStatus.NEAR_DUPLICATE:
            message = (f"Visually similar artwork already certified: {record.certification_id} "
                       f"(distance {outcome.distance})")
        else:
            message = "No similar certified artwork found"
        return cls(
            status=status,
            fingerprint=outcome.fingerprint.to_hex(),
            certificate=CertificateResponse.from_record(record) if record else None,
            distance=outcome.distance,
            similarity_score=similarity,
            message=message,
        )


class FingerprintRequest(BaseModel):
    """Request model for clients that compute fingerprints themselves."""
    fingerprint: str = Field(..., min_length=1, description="Fingerprint as hex")
    original_name: Optional[str] = Field(None, description="Original filename (required to certify)")
    storage_locator: Optional[str] = Field(None, description="Where the raw file is stored")


class ErrorResponse(BaseModel):
    """Error response model."""
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Overall service status")
    version: str = Field(..., description="API version")
    components: Dict[str, Any] = Field(..., description="Component health status")

"""
Certification authority: drives one submission to a terminal outcome.

    Received -> ExactDuplicate | NearDuplicate | Certified

Exact lookup runs first, then the near-duplicate query, then the atomic
insert. A ConflictError from the insert means a concurrent submission won;
the decision is re-run against the updated index, a bounded number of times.
Record store outages propagate untouched.
"""

import structlog
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union
from pydantic import ValidationError

from artcert.core.errors import CertificationRaceExhaustedError, ConflictError, MalformedInputError
from artcert.models.fingerprint import Fingerprint
from artcert.core.index import FingerprintIndex, RecordBuilder
from artcert.core.utils import new_certification_id, utcnow
from artcert.models.certification import (
    CertificationMetadata, CertificationOutcome, CertificationRecord, OutcomeStatus
)

logger = structlog.get_logger()

DEFAULT_MAX_ATTEMPTS = 3


class CertificationAuthority:
    """Decides duplicate / near-duplicate / original and mints certifications."""

    def __init__(self,
                 index: FingerprintIndex,
                 fingerprint_bits: Optional[int] = None,
                 max_attempts: int = DEFAULT_MAX_ATTEMPTS,
                 id_factory: Callable[[], str] = new_certification_id,
                 clock: Callable[[], datetime] = utcnow):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        bits = fingerprint_bits if fingerprint_bits is not None else index.bits
        if bits is None:
            raise ValueError("Fingerprint length must be configured on the authority or the index")
        if index.bits is not None and index.bits != bits:
            raise ValueError(f"Authority expects {bits}-bit fingerprints, index holds {index.bits}-bit")
        self.index = index
        self.fingerprint_bits = bits
        self.max_attempts = max_attempts
        self._id_factory = id_factory
        self._clock = clock

    @property
    def threshold(self) -> int:
        return self.index.threshold

    def _validate_fingerprint(self, fingerprint: Fingerprint):
        if not isinstance(fingerprint, Fingerprint):
            raise MalformedInputError(f"Expected a Fingerprint, got {type(fingerprint).__name__}")
        if fingerprint.bits != self.fingerprint_bits:
            raise MalformedInputError(
                f"Fingerprint has {fingerprint.bits} bits, expected {self.fingerprint_bits}"
            )

    @staticmethod
    def _validate_metadata(metadata: Union[CertificationMetadata, Dict[str, Any], None]) -> CertificationMetadata:
        if metadata is None:
            raise MalformedInputError("Certification metadata is required")
        if isinstance(metadata, CertificationMetadata):
            return metadata
        try:
            return CertificationMetadata.model_validate(metadata)
        except ValidationError as e:
            raise MalformedInputError(f"Invalid certification metadata: {e}") from e

    def _builder(self, metadata: CertificationMetadata) -> RecordBuilder:
        def build(fp: Fingerprint) -> CertificationRecord:
            return CertificationRecord(
                certification_id=self._id_factory(),
                fingerprint=fp,
                metadata=metadata,
                certified_at=self._clock(),
            )
        return build

    def _classify(self, fingerprint: Fingerprint, attempt: int) -> Optional[CertificationOutcome]:
        existing = self.index.find_exact(fingerprint)
        if existing is not None:
            return CertificationOutcome(
                status=OutcomeStatus.EXACT_DUPLICATE,
                fingerprint=fingerprint,
                record=existing,
                distance=0,
                attempts=attempt,
            )

        nearest = self.index.find_nearest(fingerprint, self.threshold)
        if nearest is not None:
            record, distance = nearest
            return CertificationOutcome(
                status=OutcomeStatus.NEAR_DUPLICATE,
                fingerprint=fingerprint,
                record=record,
                distance=distance,
                attempts=attempt,
            )
        return None

    def check(self, fingerprint: Fingerprint) -> CertificationOutcome:
        """Read-only classification. Returns ORIGINAL when nothing matches; writes nothing."""
        self._validate_fingerprint(fingerprint)
        outcome = self._classify(fingerprint, attempt=1)
        if outcome is None:
            outcome = CertificationOutcome(status=OutcomeStatus.ORIGINAL, fingerprint=fingerprint)
        logger.debug("Fingerprint checked", fingerprint=fingerprint.to_hex(), status=outcome.status.value)
        return outcome

    def certify(self, fingerprint: Fingerprint,
                metadata: Union[CertificationMetadata, Dict[str, Any]]) -> CertificationOutcome:
        """
        Classify `fingerprint` and certify it if it is original.

        Returns:
            CertificationOutcome with status EXACT_DUPLICATE, NEAR_DUPLICATE or CERTIFIED

        Raises:
            MalformedInputError: wrong fingerprint length or invalid metadata
            StoreUnavailableError: the record store could not be reached
            CertificationRaceExhaustedError: conflicts persisted past max_attempts
        """
        self._validate_fingerprint(fingerprint)
        metadata = self._validate_metadata(metadata)
        builder = self._builder(metadata)

        for attempt in range(1, self.max_attempts + 1):
            outcome = self._classify(fingerprint, attempt)
            if outcome is not None:
                logger.info("Submission matched existing certification",
                            fingerprint=fingerprint.to_hex(),
                            status=outcome.status.value,
                            certification_id=outcome.record.certification_id,
                            distance=outcome.distance,
                            attempt=attempt)
                return outcome

            try:
                record = self.index.insert_if_absent(fingerprint, builder)
            except ConflictError as e:
                logger.warning("Certification conflict, retrying",
                               fingerprint=fingerprint.to_hex(),
                               attempt=attempt,
                               max_attempts=self.max_attempts,
                               existing_id=e.existing_id)
                continue

            logger.info("Artwork certified",
                        certification_id=record.certification_id,
                        fingerprint=fingerprint.to_hex(),
                        original_name=metadata.original_name,
                        attempt=attempt)
            return CertificationOutcome(
                status=OutcomeStatus.CERTIFIED,
                fingerprint=fingerprint,
                record=record,
                attempts=attempt,
            )

        logger.error("Certification race exhausted",
                     fingerprint=fingerprint.to_hex(), attempts=self.max_attempts)
        raise CertificationRaceExhaustedError(
            f"Could not certify {fingerprint} after {self.max_attempts} conflicting attempts",
            attempts=self.max_attempts,
        )

    def lookup(self, certification_id: str) -> Optional[CertificationRecord]:
        """Verification lookup by certification ID."""
        if not certification_id or not certification_id.strip():
            raise MalformedInputError("Certification ID is required")
        return self.index.find_by_id(certification_id.strip())

    def stats(self) -> Dict[str, Any]:
        return {
            "certified_count": len(self.index),
            "near_duplicate_threshold": self.threshold,
            "fingerprint_bits": self.fingerprint_bits,
            "index_kind": self.index.kind,
            "max_attempts": self.max_attempts,
        }

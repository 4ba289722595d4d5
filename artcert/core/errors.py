"""
Exception hierarchy for the certification pipeline.

Duplicate and near-duplicate classifications are returned as outcomes, not
raised; everything here is a failure the caller has to act on.
"""


class CertificationError(Exception):
    """Base class for certification failures."""
    pass


class MalformedInputError(CertificationError, ValueError):
    """Input rejected before touching the index. Never retried."""
    pass


class ConflictError(CertificationError):
    """A concurrent insert committed a matching fingerprint first."""

    def __init__(self, message: str, existing_id: str = None):
        super().__init__(message)
        self.existing_id = existing_id


class StoreUnavailableError(CertificationError):
    """The record store could not be reached. Transient, retryable by the caller."""
    pass


class CertificationRaceExhaustedError(CertificationError):
    """Conflict retries ran out while certifying the same fingerprint."""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts

"""
Core certification pipeline: fingerprints, similarity, index, authority and record stores.
"""

from artcert.models.fingerprint import Fingerprint
from .similarity import hamming_distance, similarity_score
from .errors import (
    CertificationError,
    MalformedInputError,
    ConflictError,
    StoreUnavailableError,
    CertificationRaceExhaustedError,
)
from .records import RecordStore, InMemoryRecordStore
from .index import FingerprintIndex, LinearScanIndex, BandedIndex, build_index
from .authority import CertificationAuthority

"""
Record store interface and the in-memory implementation.

The store is the durable source of truth for certification records. The
fingerprint index is a cached view over it and commits through
`atomic_insert`, which evaluates the uniqueness predicate, stamps the commit
time and writes the record in one indivisible step.
"""

import threading
import structlog
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Tuple

from artcert.core.errors import ConflictError
from artcert.models.fingerprint import Fingerprint
from artcert.models.certification import CertificationRecord
from artcert.core.utils import utcnow

logger = structlog.get_logger()

# Returns True when `record` may be inserted next to the given existing records.
UniquenessPredicate = Callable[[Iterable[CertificationRecord]], bool]


class RecordStore(ABC):
    """Durable persistence of certification records."""

    @abstractmethod
    def load_all_fingerprints(self) -> List[Tuple[Fingerprint, CertificationRecord]]:
        """All records in certification order (certified_at, certification_id)."""
        pass

    @abstractmethod
    def atomic_insert(self, record: CertificationRecord,
                      uniqueness_predicate: UniquenessPredicate) -> CertificationRecord:
        """
        Insert `record` if `uniqueness_predicate` holds over the stored records.

        `certified_at` is reassigned inside the atomic section so that
        certification order always matches commit order, whichever process
        built the record.

        Returns:
            The record as committed

        Raises:
            ConflictError: the predicate failed or the fingerprint already exists
            StoreUnavailableError: the backing store could not be reached
        """
        pass

    @abstractmethod
    def find_by_id(self, certification_id: str) -> Optional[CertificationRecord]:
        pass

    @abstractmethod
    def count(self) -> int:
        pass

    def check_connection(self) -> bool:
        return True


class InMemoryRecordStore(RecordStore):
    """
    Process-local store guarded by a lock. Used for development and tests.

    `records` seeds the store with already-committed history, kept as given.
    """

    def __init__(self, records: Iterable[CertificationRecord] = (), clock: Callable[[], datetime] = utcnow):
        self._lock = threading.Lock()
        self._clock = clock
        self._records: List[CertificationRecord] = []
        self._by_id = {}
        self._fingerprints = set()
        self._last_certified_at: Optional[datetime] = None
        for record in records:
            self._append(record)

    def _append(self, record: CertificationRecord):
        self._records.append(record)
        self._by_id[record.certification_id] = record
        self._fingerprints.add(record.fingerprint)
        if self._last_certified_at is None or record.certified_at > self._last_certified_at:
            self._last_certified_at = record.certified_at

    def _commit_time(self) -> datetime:
        now = self._clock()
        if self._last_certified_at is not None and now <= self._last_certified_at:
            now = self._last_certified_at + timedelta(microseconds=1)
        return now

    def load_all_fingerprints(self) -> List[Tuple[Fingerprint, CertificationRecord]]:
        with self._lock:
            records = sorted(self._records, key=lambda r: r.order_key)
        return [(r.fingerprint, r) for r in records]

    def atomic_insert(self, record: CertificationRecord,
                      uniqueness_predicate: UniquenessPredicate) -> CertificationRecord:
        with self._lock:
            if record.certification_id in self._by_id:
                raise ConflictError(f"Certification ID already exists: {record.certification_id}",
                                    existing_id=record.certification_id)
            if record.fingerprint in self._fingerprints or not uniqueness_predicate(tuple(self._records)):
                logger.info("Store rejected conflicting certification",
                            certification_id=record.certification_id,
                            fingerprint=record.fingerprint.to_hex())
                raise ConflictError(f"Conflicting fingerprint already stored: {record.fingerprint}")

            committed = record.model_copy(update={"certified_at": self._commit_time()})
            self._append(committed)

        logger.debug("Certification record stored", certification_id=committed.certification_id,
                     certified_at=committed.certified_at.isoformat())
        return committed

    def find_by_id(self, certification_id: str) -> Optional[CertificationRecord]:
        with self._lock:
            return self._by_id.get(certification_id)

    def count(self) -> int:
        with self._lock:
            return len(self._records)

"""
Fingerprint index over all certified records.

The index answers exact and nearest-within-threshold queries and is the only
component that admits new records. Reads work on immutable snapshots and never
take the write lock; `insert_if_absent` re-validates and commits under a lock
scoped to the index instance, with the record store providing the same
guarantee across processes.

Two implementations share one contract:

- `LinearScanIndex` scans every certified fingerprint per query. Baseline.
- `BandedIndex` splits the fingerprint into T + 1 disjoint bands. Two
  fingerprints within Hamming distance T differ in at most T bands, so they
  agree exactly on at least one band; only records sharing a band bucket with
  the query are scored.
"""

import threading
import structlog
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from artcert.core.errors import ConflictError
from artcert.models.fingerprint import Fingerprint
from artcert.core.similarity import hamming_distance
from artcert.core.records import RecordStore, UniquenessPredicate
from artcert.models.certification import CertificationRecord

logger = structlog.get_logger()

RecordBuilder = Callable[[Fingerprint], CertificationRecord]


class FingerprintIndex(ABC):
    """Queryable, write-guarded view of the certified set."""

    kind = "abstract"

    def __init__(self, store: RecordStore, threshold: int, bits: Optional[int] = None):
        if threshold < 0:
            raise ValueError(f"Near-duplicate threshold must be >= 0, got {threshold}")
        if bits is not None and bits <= 0:
            raise ValueError(f"Fingerprint length must be positive, got {bits}")
        self.store = store
        self.threshold = threshold
        self.bits = bits
        self._write_lock = threading.Lock()
        self._by_fingerprint: Dict[Fingerprint, CertificationRecord] = {}
        self._by_id: Dict[str, CertificationRecord] = {}

    @abstractmethod
    def _candidates(self, fp: Fingerprint) -> Iterable[CertificationRecord]:
        """Records that may lie within the index threshold of `fp`."""
        pass

    @abstractmethod
    def _add(self, record: CertificationRecord) -> None:
        """Make `record` visible to `_candidates`. Called with the write lock held."""
        pass

    def __len__(self) -> int:
        return len(self._by_id)

    def records(self) -> List[CertificationRecord]:
        """Snapshot of all records in certification order."""
        return sorted(tuple(self._by_id.values()), key=lambda r: r.order_key)

    def _check_length(self, fp: Fingerprint):
        if self.bits is not None and fp.bits != self.bits:
            raise ValueError(f"Fingerprint has {fp.bits} bits, index holds {self.bits}-bit fingerprints")

    def find_exact(self, fp: Fingerprint) -> Optional[CertificationRecord]:
        self._check_length(fp)
        return self._by_fingerprint.get(fp)

    def find_nearest(self, fp: Fingerprint, threshold: Optional[int] = None) -> Optional[Tuple[CertificationRecord, int]]:
        """
        Closest certified record within `threshold` (defaults to the index threshold).

        Ties on distance go to the earliest certification, then the smallest
        certification ID, so repeated queries always return the same record.
        """
        self._check_length(fp)
        if threshold is None:
            threshold = self.threshold
        if threshold > self.threshold:
            raise ValueError(f"Query threshold {threshold} exceeds index threshold {self.threshold}")

        best = None
        best_key = None
        for record in self._candidates(fp):
            distance = hamming_distance(fp, record.fingerprint)
            if distance > threshold:
                continue
            key = (distance, record.certified_at, record.certification_id)
            if best_key is None or key < best_key:
                best, best_key = record, key

        if best is None:
            return None
        return best, best_key[0]

    def find_by_id(self, certification_id: str) -> Optional[CertificationRecord]:
        record = self._by_id.get(certification_id)
        if record is None:
            # Another process may have certified it since we last refreshed
            record = self.store.find_by_id(certification_id)
        return record

    def _uniqueness_predicate(self, fp: Fingerprint) -> UniquenessPredicate:
        threshold = self.threshold

        def is_unique(existing: Iterable[CertificationRecord]) -> bool:
            return all(
                r.fingerprint.bits != fp.bits or hamming_distance(fp, r.fingerprint) > threshold
                for r in existing
            )

        return is_unique

    def insert_if_absent(self, fp: Fingerprint, builder: RecordBuilder) -> CertificationRecord:
        """
        Commit a new record for `fp` unless a matching one exists.

        Re-runs the exact and near-duplicate checks under the write lock,
        builds the record (minting its ID) only once those pass, then commits
        through the record store. Returns the record as committed, with the
        store-assigned `certified_at`.

        Raises:
            ConflictError: a matching record was committed first
            StoreUnavailableError: the record store could not be reached
        """
        self._check_length(fp)
        with self._write_lock:
            existing = self.find_exact(fp)
            if existing is None:
                nearest = self.find_nearest(fp)
                existing = nearest[0] if nearest else None
            if existing is not None:
                logger.info("Insert lost race to concurrent certification",
                            fingerprint=fp.to_hex(), existing_id=existing.certification_id)
                raise ConflictError(f"Fingerprint {fp} conflicts with {existing.certification_id}",
                                    existing_id=existing.certification_id)

            record = builder(fp)
            if record.fingerprint != fp:
                raise ValueError("Builder produced a record for a different fingerprint")

            try:
                record = self.store.atomic_insert(record, self._uniqueness_predicate(fp))
            except ConflictError:
                # Committed elsewhere; pull it in so the caller's retry sees it
                self._refresh_locked()
                raise

            self._index_record(record)

        logger.info("Fingerprint indexed", certification_id=record.certification_id,
                    fingerprint=fp.to_hex(), indexed=len(self))
        return record

    def _index_record(self, record: CertificationRecord):
        if self.bits is None:
            self.bits = record.fingerprint.bits
        self._add(record)
        self._by_fingerprint[record.fingerprint] = record
        self._by_id[record.certification_id] = record

    def _refresh_locked(self) -> int:
        added = 0
        for fp, record in self.store.load_all_fingerprints():
            if record.certification_id in self._by_id:
                continue
            if self.bits is not None and fp.bits != self.bits:
                logger.warning("Skipping stored fingerprint of foreign length",
                               certification_id=record.certification_id, bits=fp.bits,
                               index_bits=self.bits)
                continue
            self._index_record(record)
            added += 1
        if added:
            logger.info("Index refreshed from record store", added=added, indexed=len(self))
        return added

    def refresh(self) -> int:
        """Load records committed to the store but not yet indexed. Returns the count added."""
        with self._write_lock:
            return self._refresh_locked()

    def hydrate(self) -> int:
        """Populate the index from the store at startup."""
        added = self.refresh()
        logger.info("Fingerprint index hydrated", kind=self.kind, records=len(self),
                    threshold=self.threshold, bits=self.bits)
        return added


class LinearScanIndex(FingerprintIndex):
    """Baseline index: every query scores the full certified set."""

    kind = "linear"

    def __init__(self, store: RecordStore, threshold: int, bits: Optional[int] = None):
        super().__init__(store, threshold, bits)
        self._snapshot: Tuple[CertificationRecord, ...] = ()

    def _candidates(self, fp: Fingerprint) -> Iterable[CertificationRecord]:
        return self._snapshot

    def _add(self, record: CertificationRecord) -> None:
        self._snapshot = self._snapshot + (record,)


class BandedIndex(FingerprintIndex):
    """Pigeonhole band index: sublinear candidate lookup for small thresholds."""

    kind = "banded"

    def __init__(self, store: RecordStore, threshold: int, bits: int):
        if bits is None:
            raise ValueError("BandedIndex needs the fingerprint length up front")
        super().__init__(store, threshold, bits)
        self._bands = self._band_layout(bits, threshold + 1)
        self._buckets: List[Dict[int, Tuple[CertificationRecord, ...]]] = [{} for _ in self._bands]
        self._snapshot: Tuple[CertificationRecord, ...] = ()

    @staticmethod
    def _band_layout(bits: int, n_bands: int) -> List[Tuple[int, int]]:
        """(start, width) pairs covering all bits in `n_bands` near-equal bands."""
        if n_bands > bits:
            # Threshold too wide for the pigeonhole argument; every record is a candidate
            return []
        base, extra = divmod(bits, n_bands)
        layout = []
        start = 0
        for i in range(n_bands):
            width = base + (1 if i < extra else 0)
            layout.append((start, width))
            start += width
        return layout

    def _candidates(self, fp: Fingerprint) -> Iterable[CertificationRecord]:
        if not self._bands:
            return self._snapshot
        seen = {}
        for bucket, (start, width) in zip(self._buckets, self._bands):
            for record in bucket.get(fp.band(start, width), ()):
                seen[record.certification_id] = record
        return seen.values()

    def _add(self, record: CertificationRecord) -> None:
        fp = record.fingerprint
        for bucket, (start, width) in zip(self._buckets, self._bands):
            key = fp.band(start, width)
            bucket[key] = bucket.get(key, ()) + (record,)
        self._snapshot = self._snapshot + (record,)


INDEX_KINDS = {
    LinearScanIndex.kind: LinearScanIndex,
    BandedIndex.kind: BandedIndex,
}


def build_index(kind: str, store: RecordStore, threshold: int, bits: int) -> FingerprintIndex:
    """Construct an index by name ("linear" or "banded")."""
    try:
        index_cls = INDEX_KINDS[kind]
    except KeyError:
        raise ValueError(f"Unknown index kind: {kind}. Supported: {', '.join(INDEX_KINDS)}")
    return index_cls(store, threshold, bits)

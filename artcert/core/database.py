import psycopg2
import structlog
from typing import List, Optional, Tuple
from psycopg2 import errors, extras
from psycopg2.pool import ThreadedConnectionPool, PoolError
from contextlib import contextmanager

from artcert.core.errors import ConflictError, StoreUnavailableError
from artcert.models.fingerprint import Fingerprint
from artcert.core.records import RecordStore, UniquenessPredicate
from artcert.models.certification import CertificationMetadata, CertificationRecord

logger = structlog.get_logger()

# Connection pool configuration
MIN_CONNECTIONS = 1
MAX_CONNECTIONS = 20

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS certifications (
    certification_id VARCHAR(64) PRIMARY KEY,
    fingerprint VARCHAR(128) NOT NULL UNIQUE,
    fingerprint_bits INTEGER NOT NULL,
    original_name TEXT NOT NULL,
    uploaded_at TIMESTAMPTZ NOT NULL,
    source_origin TEXT NOT NULL,
    storage_locator TEXT NOT NULL,
    certified_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_certifications_certified_at
    ON certifications (certified_at, certification_id);
"""

SELECT_COLUMNS = """
    certification_id, fingerprint, fingerprint_bits, original_name,
    uploaded_at, source_origin, storage_locator, certified_at
"""

# Commit time is taken under the table lock and kept strictly increasing, so
# certified_at order is commit order across every writer process.
INSERT_SQL = """
INSERT INTO certifications (
    certification_id, fingerprint, fingerprint_bits, original_name,
    uploaded_at, source_origin, storage_locator, certified_at
)
SELECT %s, %s, %s, %s, %s, %s, %s,
       GREATEST(clock_timestamp(),
                COALESCE(MAX(certified_at), '-infinity'::timestamptz) + INTERVAL '1 microsecond')
FROM certifications
RETURNING certified_at
"""


# Errors that mean the database is unreachable rather than the statement being wrong
UNAVAILABLE_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError, PoolError)


class PostgresRecordStore(RecordStore):
    """
    Certification records in a Postgres table.

    `atomic_insert` takes a SHARE ROW EXCLUSIVE lock on the table for the
    duration of one transaction, so concurrent writers (in any process) are
    serialized while plain reads continue. `certified_at` is assigned by the
    database inside that transaction. The UNIQUE constraint on the
    fingerprint column backs up the exact-duplicate check.
    """

    def __init__(self, dsn: str, min_connections: int = MIN_CONNECTIONS,
                 max_connections: int = MAX_CONNECTIONS):
        self.dsn = dsn
        self.min_connections = min_connections
        self.max_connections = max_connections
        self._pool = None

    def initialize(self):
        """Create the connection pool."""
        if self._pool is not None:
            return
        try:
            self._pool = ThreadedConnectionPool(self.min_connections, self.max_connections, self.dsn)
            logger.info("Postgres connection pool initialized",
                        min_connections=self.min_connections,
                        max_connections=self.max_connections)
        except UNAVAILABLE_ERRORS as e:
            logger.error("Failed to initialize Postgres connection pool", error=str(e))
            raise StoreUnavailableError(f"Record store unavailable: {e}") from e

    def close(self):
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
            logger.info("Postgres connection pool closed")

    @contextmanager
    def get_db_connection(self):
        """Context manager for pooled connections; rolls back on any failure."""
        if self._pool is None:
            self.initialize()

        conn = None
        try:
            conn = self._pool.getconn()
            yield conn
        except UNAVAILABLE_ERRORS as e:
            if conn is not None and not conn.closed:
                conn.rollback()
            logger.error("Record store unavailable", error=str(e))
            raise StoreUnavailableError(f"Record store unavailable: {e}") from e
        except Exception:
            if conn is not None and not conn.closed:
                conn.rollback()
            raise
        finally:
            if conn is not None:
                self._pool.putconn(conn, close=bool(conn.closed))

    def ensure_schema(self):
        with self.get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)
            conn.commit()
        logger.info("Certification schema ensured")

    @staticmethod
    def _row_to_record(row) -> CertificationRecord:
        return CertificationRecord(
            certification_id=row["certification_id"],
            fingerprint=Fingerprint.from_hex(row["fingerprint"], bits=row["fingerprint_bits"]),
            metadata=CertificationMetadata(
                original_name=row["original_name"],
                uploaded_at=row["uploaded_at"],
                source_origin=row["source_origin"],
                storage_locator=row["storage_locator"],
            ),
            certified_at=row["certified_at"],
        )

    def load_all_fingerprints(self) -> List[Tuple[Fingerprint, CertificationRecord]]:
        sql = f"SELECT {SELECT_COLUMNS} FROM certifications ORDER BY certified_at, certification_id"
        with self.get_db_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(sql)
                rows = cur.fetchall()
            conn.commit()

        records = [self._row_to_record(row) for row in rows]
        logger.debug("Loaded certification records", count=len(records))
        return [(r.fingerprint, r) for r in records]

    def atomic_insert(self, record: CertificationRecord,
                      uniqueness_predicate: UniquenessPredicate) -> CertificationRecord:
        meta = record.metadata
        with self.get_db_connection() as conn:
            try:
                with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                    cur.execute("LOCK TABLE certifications IN SHARE ROW EXCLUSIVE MODE")
                    cur.execute(
                        f"SELECT {SELECT_COLUMNS} FROM certifications WHERE fingerprint_bits = %s",
                        (record.fingerprint.bits,),
                    )
                    existing = [self._row_to_record(row) for row in cur.fetchall()]

                    if not uniqueness_predicate(existing):
                        raise ConflictError(f"Conflicting fingerprint already stored: {record.fingerprint}")

                    cur.execute(INSERT_SQL, (
                        record.certification_id,
                        record.fingerprint.to_hex(),
                        record.fingerprint.bits,
                        meta.original_name,
                        meta.uploaded_at,
                        meta.source_origin,
                        meta.storage_locator,
                    ))
                    certified_at = cur.fetchone()["certified_at"]
                conn.commit()
            except errors.UniqueViolation as e:
                conn.rollback()
                logger.info("Unique constraint rejected certification",
                            certification_id=record.certification_id, error=str(e))
                raise ConflictError(f"Fingerprint already certified: {record.fingerprint}") from e
            except ConflictError:
                conn.rollback()
                logger.info("Store rejected conflicting certification",
                            certification_id=record.certification_id,
                            fingerprint=record.fingerprint.to_hex())
                raise

        logger.info("Certification record stored", certification_id=record.certification_id,
                    certified_at=certified_at.isoformat())
        return record.model_copy(update={"certified_at": certified_at})

    def find_by_id(self, certification_id: str) -> Optional[CertificationRecord]:
        sql = f"SELECT {SELECT_COLUMNS} FROM certifications WHERE certification_id = %s"
        with self.get_db_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(sql, (certification_id,))
                row = cur.fetchone()
            conn.commit()
        return self._row_to_record(row) if row else None

    def count(self) -> int:
        with self.get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*) FROM certifications")
                result = cur.fetchone()
            conn.commit()
        return result[0]

    def check_connection(self) -> bool:
        """Check if the database connection is working."""
        try:
            with self.get_db_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    result = cur.fetchone()
                conn.commit()
            return result[0] == 1
        except StoreUnavailableError:
            return False

"""
UniKYC Record Store

The authoritative mapping from canonical identifier to KYC record, and the
only component allowed to change a record's status or its time-lock
``decrypted`` flag.

Mutations are linearized per key:
- per identifier for create/supersede (one submission at a time),
- per record id for transitions and the decrypted flag.
Lock order is always identifier before record.

Reads return immutable snapshots and never take the mutation locks; a
reader may see a slightly stale status, which is harmless because status
is re-evaluated against the clock on every read.

Records are never deleted. A resubmission writes a new record and marks
the previous one with ``superseded_by``.
"""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .errors import InvalidTransition, RecordNotFound, ValidationError
from .identifiers import CanonicalIdentifier
from .logging_config import audit_log
from .records import KycEvent, KycRecord, KycStatus, evaluate_status, next_status


class _KeyedLocks:
    """Lazily created re-entrant lock per key."""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = defaultdict(threading.RLock)
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks[key]
        with lock:
            yield


class RecordStore(ABC):
    """
    Base record store.

    Subclasses provide snapshot reads and the write primitives; the
    state machine and locking live here so every backend enforces them
    identically.
    """

    def __init__(self):
        self._locks = _KeyedLocks()

    # ------------------------------------------------------------------
    # Backend primitives
    # ------------------------------------------------------------------

    @abstractmethod
    def get(self, record_id: str) -> Optional[KycRecord]:
        pass

    @abstractmethod
    def get_current(self, identifier: CanonicalIdentifier) -> Optional[KycRecord]:
        pass

    @abstractmethod
    def get_by_request(self, request_id: str) -> Optional[KycRecord]:
        """Record whose time-lock carries ``request_id``."""
        pass

    @abstractmethod
    def history(self, identifier: CanonicalIdentifier) -> List[KycRecord]:
        """All records ever written for ``identifier``, oldest first."""
        pass

    @abstractmethod
    def _write(self, record: KycRecord, make_current: bool = False) -> None:
        """Insert or replace ``record``; optionally point its identifier at it."""
        pass

    @abstractmethod
    def _write_superseding(self, superseded: KycRecord, record: KycRecord) -> None:
        """
        Write the closed-out previous record and make ``record`` current
        as one unit: either both land or neither does.
        """
        pass

    @abstractmethod
    def all_records(self) -> List[KycRecord]:
        pass

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def require(self, record_id: str) -> KycRecord:
        record = self.get(record_id)
        if record is None:
            raise RecordNotFound(f"no record {record_id}", record_id=record_id)
        return record

    def create_or_supersede(self, record: KycRecord, now: datetime) -> Optional[KycRecord]:
        """
        Make ``record`` the current record for its identifier.

        The previous current record, if any, must allow a resubmission; it
        is kept with ``superseded_by`` set and an active one is closed out
        as expired.

        Returns:
            The superseded record snapshot, or None for a first submission

        Raises:
            InvalidTransition: the current record is still pending
        """
        if record.status != KycStatus.PENDING:
            raise ValidationError("new records must be pending", record_id=record.id)

        with self._locks.hold("identifier:" + record.identifier.address):
            prior = self.get_current(record.identifier)
            if prior is None:
                next_status(KycStatus.NONE, KycEvent.SUBMIT)
                self._write(record, make_current=True)
                audit_log.record_created(record.id, record.identifier.address, _request_id(record))
                return None

            with self._locks.hold("record:" + prior.id):
                prior = self.require(prior.id)
                effective = evaluate_status(prior, now)
                next_status(effective, KycEvent.SUBMIT)

                closed = KycStatus.EXPIRED if effective == KycStatus.ACTIVE else effective
                superseded = prior.with_changes(status=closed, superseded_by=record.id)
                self._write_superseding(superseded, record)

            if closed != prior.status:
                audit_log.status_transition(prior.id, prior.status.value, closed.value, reason="superseded")
            audit_log.record_superseded(prior.id, record.id)
            audit_log.record_created(record.id, record.identifier.address, _request_id(record))
            return superseded

    def transition(self, record_id: str, event: KycEvent, now: datetime, **changes) -> KycRecord:
        """
        Apply an operator event (approve/reject) to a current record.

        Raises:
            RecordNotFound
            InvalidTransition: illegal from the evaluated status, or the
                record has been superseded
        """
        if event == KycEvent.SUBMIT:
            raise InvalidTransition("submissions go through create_or_supersede")

        with self._locks.hold("record:" + record_id):
            record = self.require(record_id)
            if not record.is_current:
                raise InvalidTransition(
                    f"record {record_id} was superseded by {record.superseded_by}",
                    record_id=record_id,
                )
            current = evaluate_status(record, now)
            target = next_status(current, event)
            updated = record.with_changes(status=target, **changes)
            self._write(updated)

        audit_log.status_transition(record_id, current.value, target.value, reason=changes.get("rejection_reason"))
        return updated

    def refresh_status(self, record_id: str, now: datetime) -> KycRecord:
        """Persist the evaluated status if it differs from the stored one."""
        with self._locks.hold("record:" + record_id):
            record = self.require(record_id)
            effective = evaluate_status(record, now)
            if effective == record.status:
                return record
            updated = record.with_changes(status=effective)
            self._write(updated)

        audit_log.status_transition(record_id, record.status.value, effective.value, reason="expiry elapsed")
        return updated

    def mark_decrypted(self, record_id: str) -> KycRecord:
        """Set ``time_lock.decrypted``. Idempotent."""
        with self._locks.hold("record:" + record_id):
            record = self.require(record_id)
            if record.time_lock is None:
                raise ValidationError(f"record {record_id} has no time-lock", record_id=record_id)
            if record.time_lock.decrypted:
                return record
            updated = record.with_changes(time_lock=replace(record.time_lock, decrypted=True))
            self._write(updated)
            return updated


def _request_id(record: KycRecord) -> str:
    return record.time_lock.request_id if record.time_lock else ""


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class InMemoryRecordStore(RecordStore):
    """
    In-memory record store for development/testing.

    WARNING: Not persistent across restarts.
    """

    def __init__(self):
        super().__init__()
        self._records: Dict[str, KycRecord] = {}
        self._current: Dict[str, str] = {}
        self._history: Dict[str, List[str]] = defaultdict(list)
        self._by_request: Dict[str, str] = {}
        self._write_lock = threading.Lock()

    def get(self, record_id: str) -> Optional[KycRecord]:
        return self._records.get(record_id)

    def get_current(self, identifier: CanonicalIdentifier) -> Optional[KycRecord]:
        record_id = self._current.get(identifier.address)
        return self._records.get(record_id) if record_id else None

    def get_by_request(self, request_id: str) -> Optional[KycRecord]:
        record_id = self._by_request.get(request_id)
        return self._records.get(record_id) if record_id else None

    def history(self, identifier: CanonicalIdentifier) -> List[KycRecord]:
        return [self._records[i] for i in list(self._history.get(identifier.address, []))]

    def all_records(self) -> List[KycRecord]:
        return list(self._records.values())

    def _put(self, record: KycRecord, make_current: bool = False) -> None:
        """Caller holds ``_write_lock``."""
        address = record.identifier.address
        is_new = record.id not in self._records
        # Record first, then the indexes that point at it.
        self._records[record.id] = record
        if is_new:
            self._history[address].append(record.id)
        if record.time_lock is not None:
            self._by_request[record.time_lock.request_id] = record.id
        if make_current:
            self._current[address] = record.id

    def _write(self, record: KycRecord, make_current: bool = False) -> None:
        with self._write_lock:
            self._put(record, make_current)

    def _write_superseding(self, superseded: KycRecord, record: KycRecord) -> None:
        with self._write_lock:
            previous = self._records[superseded.id]
            self._put(superseded)
            try:
                self._put(record, make_current=True)
            except Exception:
                self._records[superseded.id] = previous
                raise


# =============================================================================
# SQLITE STORE
# =============================================================================

class SqliteRecordStore(RecordStore):
    """
    SQLite-backed record store.

    One connection per thread, WAL journal so readers never wait on the
    writer. Records are stored as canonical JSON alongside the columns
    needed for lookups.
    """

    def __init__(self, db_path: str = "data/unikyc.db"):
        super().__init__()
        self.db_path = Path(db_path)
        self._local = threading.local()
        self.init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a thread-local database connection.
        Connections are reused within the same thread.
        """
        conn = getattr(self._local, "conn", None)
        if conn is None:
            if str(self.db_path) != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Commit on success, roll back on failure."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def init_db(self) -> None:
        """Create schema. Safe to call multiple times."""
        with self._transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS kyc_records (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                record_id TEXT NOT NULL UNIQUE,
                address TEXT NOT NULL,
                request_id TEXT,
                status TEXT NOT NULL,
                record_json TEXT NOT NULL
            );""")
            conn.execute("""
            CREATE TABLE IF NOT EXISTS current_records (
                address TEXT PRIMARY KEY,
                record_id TEXT NOT NULL
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_kyc_records_address
            ON kyc_records(address);""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_kyc_records_request
            ON kyc_records(request_id);""")

    def _row_to_record(self, row: Optional[sqlite3.Row]) -> Optional[KycRecord]:
        if row is None:
            return None
        return KycRecord.from_dict(json.loads(row["record_json"]))

    def get(self, record_id: str) -> Optional[KycRecord]:
        cur = self._get_connection().execute(
            "SELECT record_json FROM kyc_records WHERE record_id=?", (record_id,)
        )
        return self._row_to_record(cur.fetchone())

    def get_current(self, identifier: CanonicalIdentifier) -> Optional[KycRecord]:
        cur = self._get_connection().execute(
            "SELECT r.record_json FROM current_records c "
            "JOIN kyc_records r ON r.record_id = c.record_id WHERE c.address=?",
            (identifier.address,),
        )
        return self._row_to_record(cur.fetchone())

    def get_by_request(self, request_id: str) -> Optional[KycRecord]:
        cur = self._get_connection().execute(
            "SELECT record_json FROM kyc_records WHERE request_id=? ORDER BY seq DESC LIMIT 1",
            (request_id,),
        )
        return self._row_to_record(cur.fetchone())

    def history(self, identifier: CanonicalIdentifier) -> List[KycRecord]:
        cur = self._get_connection().execute(
            "SELECT record_json FROM kyc_records WHERE address=? ORDER BY seq ASC",
            (identifier.address,),
        )
        return [self._row_to_record(row) for row in cur.fetchall()]

    def all_records(self) -> List[KycRecord]:
        cur = self._get_connection().execute("SELECT record_json FROM kyc_records ORDER BY seq ASC")
        return [self._row_to_record(row) for row in cur.fetchall()]

    def _upsert(self, conn: sqlite3.Connection, record: KycRecord, make_current: bool = False) -> None:
        request_id = record.time_lock.request_id if record.time_lock else None
        payload = json.dumps(record.to_dict(), sort_keys=True)
        conn.execute(
            "INSERT INTO kyc_records(record_id, address, request_id, status, record_json) "
            "VALUES(?,?,?,?,?) "
            "ON CONFLICT(record_id) DO UPDATE SET status=excluded.status, "
            "request_id=excluded.request_id, record_json=excluded.record_json",
            (record.id, record.identifier.address, request_id, record.status.value, payload),
        )
        if make_current:
            conn.execute(
                "INSERT OR REPLACE INTO current_records(address, record_id) VALUES(?,?)",
                (record.identifier.address, record.id),
            )

    def _write(self, record: KycRecord, make_current: bool = False) -> None:
        with self._transaction() as conn:
            self._upsert(conn, record, make_current)

    def _write_superseding(self, superseded: KycRecord, record: KycRecord) -> None:
        with self._transaction() as conn:
            self._upsert(conn, superseded)
            self._upsert(conn, record, make_current=True)

    def reset(self) -> None:
        """Clear all tables but keep the schema (test isolation)."""
        with self._transaction() as conn:
            conn.execute("DELETE FROM kyc_records")
            conn.execute("DELETE FROM current_records")

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

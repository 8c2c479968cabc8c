"""
UniKYC Record Store Test Suite

Both backends run the same cases: state machine enforcement, supersede
bookkeeping, the decrypted flag and lookups.
"""

import os
import shutil
import sqlite3
import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

from unikyc.errors import ErrorCode, InvalidTransition, RecordNotFound, ValidationError
from unikyc.identifiers import CanonicalIdentifier
from unikyc.records import KycEvent, KycRecord, KycStatus, TimeLock
from unikyc.store import InMemoryRecordStore, SqliteRecordStore
from unikyc.threshold import THREE_OF_FIVE

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)
ALICE = CanonicalIdentifier("0x" + "a1" * 20, "alice.eth")


def make_record(record_id: str, request_id: str, identifier=ALICE) -> KycRecord:
    return KycRecord(
        id=record_id,
        identifier=identifier,
        status=KycStatus.PENDING,
        created_at=NOW,
        threshold_scheme=THREE_OF_FIVE,
        encrypted_payload_ref="sha256-" + record_id,
        time_lock=TimeLock(unlock_block_height=1010, request_id=request_id, chain_id=84532),
        metadata={"version": "1.0.0", "schema": "kyc-v1", "tags": ["kyc", "verification"]},
    )


class RecordStoreCases:
    """Shared cases; subclasses provide make_store() and name their row-level write."""

    row_write = ""

    def make_store(self):
        raise NotImplementedError

    def failing_writes_for(self, record_id):
        """Patch the backend so writing ``record_id`` fails like a lost disk."""
        original = getattr(self.store, self.row_write)

        def write(*args, **kwargs):
            record = next(a for a in args if isinstance(a, KycRecord))
            if record.id == record_id:
                raise sqlite3.OperationalError("disk I/O error")
            return original(*args, **kwargs)

        return mock.patch.object(self.store, self.row_write, side_effect=write)

    def setUp(self):
        self.store = self.make_store()

    def test_first_submission(self):
        superseded = self.store.create_or_supersede(make_record("kyc-1", "1"), NOW)
        self.assertIsNone(superseded)
        current = self.store.get_current(ALICE)
        self.assertEqual(current.id, "kyc-1")
        self.assertEqual(current.status, KycStatus.PENDING)
        self.assertEqual(current.identifier.name, "alice.eth")
        self.assertEqual(self.store.get_by_request("1").id, "kyc-1")

    def test_new_records_must_be_pending(self):
        record = make_record("kyc-1", "1").with_changes(status=KycStatus.ACTIVE)
        with self.assertRaises(ValidationError):
            self.store.create_or_supersede(record, NOW)

    def test_approve_and_reject_only_from_pending(self):
        self.store.create_or_supersede(make_record("kyc-1", "1"), NOW)
        rejected = self.store.transition("kyc-1", KycEvent.REJECT, NOW, rejection_reason="blurry")
        self.assertEqual(rejected.status, KycStatus.REJECTED)
        self.assertEqual(rejected.rejection_reason, "blurry")
        with self.assertRaises(InvalidTransition) as ctx:
            self.store.transition("kyc-1", KycEvent.APPROVE, NOW)
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID_TRANSITION)
        self.assertEqual(self.store.get("kyc-1").status, KycStatus.REJECTED)

    def test_transition_unknown_record(self):
        with self.assertRaises(RecordNotFound):
            self.store.transition("kyc-missing", KycEvent.APPROVE, NOW)

    def test_resubmit_while_pending_is_invalid(self):
        self.store.create_or_supersede(make_record("kyc-1", "1"), NOW)
        with self.assertRaises(InvalidTransition):
            self.store.create_or_supersede(make_record("kyc-2", "2"), NOW)
        self.assertEqual(self.store.get_current(ALICE).id, "kyc-1")
        self.assertIsNone(self.store.get("kyc-2"))

    def test_supersede_active_record(self):
        self.store.create_or_supersede(make_record("kyc-1", "1"), NOW)
        self.store.transition(
            "kyc-1", KycEvent.APPROVE, NOW,
            last_verified_at=NOW, expiry_date=NOW + timedelta(days=365),
        )
        superseded = self.store.create_or_supersede(make_record("kyc-2", "2"), NOW)

        self.assertEqual(superseded.id, "kyc-1")
        self.assertEqual(superseded.status, KycStatus.EXPIRED)
        self.assertEqual(superseded.superseded_by, "kyc-2")
        self.assertEqual(self.store.get_current(ALICE).id, "kyc-2")
        self.assertEqual([r.id for r in self.store.history(ALICE)], ["kyc-1", "kyc-2"])

    def test_failed_supersede_leaves_previous_record_untouched(self):
        self.store.create_or_supersede(make_record("kyc-1", "1"), NOW)
        self.store.transition(
            "kyc-1", KycEvent.APPROVE, NOW,
            last_verified_at=NOW, expiry_date=NOW + timedelta(days=365),
        )
        with self.failing_writes_for("kyc-2"):
            with self.assertRaises(sqlite3.OperationalError):
                self.store.create_or_supersede(make_record("kyc-2", "2"), NOW)

        prior = self.store.get("kyc-1")
        self.assertIsNone(prior.superseded_by)
        self.assertEqual(prior.status, KycStatus.ACTIVE)
        self.assertIsNone(self.store.get("kyc-2"))
        self.assertEqual(self.store.get_current(ALICE).id, "kyc-1")

        superseded = self.store.create_or_supersede(make_record("kyc-3", "3"), NOW)
        self.assertEqual(superseded.superseded_by, "kyc-3")
        self.assertEqual([r.id for r in self.store.history(ALICE)], ["kyc-1", "kyc-3"])

    def test_superseded_rejected_record_keeps_status(self):
        self.store.create_or_supersede(make_record("kyc-1", "1"), NOW)
        self.store.transition("kyc-1", KycEvent.REJECT, NOW)
        self.store.create_or_supersede(make_record("kyc-2", "2"), NOW)
        self.assertEqual(self.store.get("kyc-1").status, KycStatus.REJECTED)

    def test_superseded_record_cannot_transition(self):
        self.store.create_or_supersede(make_record("kyc-1", "1"), NOW)
        self.store.transition("kyc-1", KycEvent.REJECT, NOW)
        self.store.create_or_supersede(make_record("kyc-2", "2"), NOW)
        with self.assertRaises(InvalidTransition):
            self.store.transition("kyc-1", KycEvent.APPROVE, NOW)

    def test_refresh_status_writes_expiry(self):
        self.store.create_or_supersede(make_record("kyc-1", "1"), NOW)
        self.store.transition(
            "kyc-1", KycEvent.APPROVE, NOW,
            last_verified_at=NOW, expiry_date=NOW + timedelta(days=1),
        )
        unchanged = self.store.refresh_status("kyc-1", NOW + timedelta(hours=1))
        self.assertEqual(unchanged.status, KycStatus.ACTIVE)
        refreshed = self.store.refresh_status("kyc-1", NOW + timedelta(days=2))
        self.assertEqual(refreshed.status, KycStatus.EXPIRED)
        self.assertEqual(self.store.get("kyc-1").status, KycStatus.EXPIRED)

    def test_reject_after_lazy_expiry_is_invalid(self):
        self.store.create_or_supersede(make_record("kyc-1", "1"), NOW)
        self.store.transition(
            "kyc-1", KycEvent.APPROVE, NOW,
            last_verified_at=NOW, expiry_date=NOW + timedelta(days=1),
        )
        with self.assertRaises(InvalidTransition):
            self.store.transition("kyc-1", KycEvent.REJECT, NOW + timedelta(days=2))

    def test_mark_decrypted_is_idempotent(self):
        self.store.create_or_supersede(make_record("kyc-1", "1"), NOW)
        first = self.store.mark_decrypted("kyc-1")
        second = self.store.mark_decrypted("kyc-1")
        self.assertTrue(first.time_lock.decrypted)
        self.assertEqual(first, second)
        self.assertTrue(self.store.get_by_request("1").time_lock.decrypted)

    def test_history_of_unknown_identifier(self):
        self.assertEqual(self.store.history(CanonicalIdentifier("0x" + "00" * 20)), [])
        self.assertIsNone(self.store.get_current(CanonicalIdentifier("0x" + "00" * 20)))

    def test_record_roundtrip(self):
        record = make_record("kyc-1", "1")
        self.store.create_or_supersede(record, NOW)
        self.assertEqual(self.store.get("kyc-1"), record)

    def test_concurrent_submissions_yield_one_pending(self):
        errors = []
        barrier = threading.Barrier(8)

        def submit(i):
            barrier.wait()
            try:
                self.store.create_or_supersede(make_record(f"kyc-{i}", str(i)), NOW)
            except InvalidTransition as e:
                errors.append(e)

        threads = [threading.Thread(target=submit, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(errors), 7)
        self.assertEqual(len(self.store.history(ALICE)), 1)


class TestInMemoryRecordStore(RecordStoreCases, unittest.TestCase):

    row_write = "_put"

    def make_store(self):
        return InMemoryRecordStore()


class TestSqliteRecordStore(RecordStoreCases, unittest.TestCase):

    row_write = "_upsert"

    def make_store(self):
        self.tmpdir = tempfile.mkdtemp()
        return SqliteRecordStore(os.path.join(self.tmpdir, "records.db"))

    def tearDown(self):
        self.store.close()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_survives_reopen(self):
        self.store.create_or_supersede(make_record("kyc-1", "1"), NOW)
        reopened = SqliteRecordStore(str(self.store.db_path))
        self.assertEqual(reopened.get_current(ALICE).id, "kyc-1")
        reopened.close()

    def test_reset(self):
        self.store.create_or_supersede(make_record("kyc-1", "1"), NOW)
        self.store.reset()
        self.assertIsNone(self.store.get("kyc-1"))
        self.assertEqual(self.store.all_records(), [])


if __name__ == "__main__":
    unittest.main()

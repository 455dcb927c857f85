"""Tests for the import ledger."""

import pytest

from review_pipeline.directory_db import DirectoryDB
from review_pipeline.errors import BatchAlreadyCompletedError, BatchNotFoundError
from review_pipeline.ledger import ImportLedger
from review_pipeline.models import BatchStatus, BatchType


def _make_ledger(tmp_path, max_errors=100):
    db = DirectoryDB(str(tmp_path / "directory.db"))
    return db, ImportLedger(db, max_errors=max_errors)


class TestBatchLifecycle:
    def test_create_is_pending(self, tmp_path):
        db, ledger = _make_ledger(tmp_path)
        batch_id = ledger.create_batch(BatchType.BULK_CSV, "yelp", 10, {"file": "x.csv"})
        batch = ledger.get_batch(batch_id)
        assert batch.status == BatchStatus.PENDING
        assert batch.expected_count == 10
        assert batch.metadata == {"file": "x.csv"}
        assert batch.processed_count == 0
        db.close()

    def test_begin_record_complete(self, tmp_path):
        db, ledger = _make_ledger(tmp_path)
        batch_id = ledger.create_batch("bulk-csv", "direct")
        assert ledger.begin(batch_id).status == BatchStatus.PROCESSING

        ledger.record(batch_id, {"created": 3, "duplicate": 1})
        ledger.record(batch_id, {"created": 2, "validation_failed": 1}, ["row 7: bad rating"])
        batch = ledger.complete_batch(batch_id)

        assert batch.status == BatchStatus.COMPLETED
        assert batch.tallies["created"] == 5
        assert batch.tallies["duplicate"] == 1
        assert batch.tallies["validation_failed"] == 1
        assert batch.processed_count == 7
        assert batch.errors == ["row 7: bad rating"]
        assert batch.completed_at is not None
        db.close()

    def test_record_grows_expected(self, tmp_path):
        db, ledger = _make_ledger(tmp_path)
        batch_id = ledger.create_batch(BatchType.SCHEDULED_SYNC, "gmb_api")
        ledger.record(batch_id, {"created": 4}, expected=4)
        ledger.record(batch_id, {"created": 1}, expected=2)
        assert ledger.get_batch(batch_id).expected_count == 6
        db.close()

    def test_fail_batch(self, tmp_path):
        db, ledger = _make_ledger(tmp_path)
        batch_id = ledger.create_batch("bulk-csv", "direct")
        ledger.begin(batch_id)
        batch = ledger.fail_batch(batch_id, "disk full")
        assert batch.status == BatchStatus.FAILED
        assert batch.errors == ["disk full"]
        db.close()

    def test_unknown_batch(self, tmp_path):
        db, ledger = _make_ledger(tmp_path)
        assert ledger.get_batch("nope") is None
        with pytest.raises(BatchNotFoundError):
            ledger.begin("nope")
        with pytest.raises(BatchNotFoundError):
            ledger.record("nope", {"created": 1})
        db.close()


class TestForceReprocess:
    def test_completed_batch_is_immutable(self, tmp_path):
        db, ledger = _make_ledger(tmp_path)
        batch_id = ledger.create_batch("bulk-csv", "direct")
        ledger.begin(batch_id)
        ledger.complete_batch(batch_id, {"created": 2})
        with pytest.raises(BatchAlreadyCompletedError):
            ledger.begin(batch_id)
        assert ledger.get_batch(batch_id).tallies["created"] == 2
        db.close()

    def test_force_resets_tallies(self, tmp_path):
        db, ledger = _make_ledger(tmp_path)
        batch_id = ledger.create_batch("bulk-csv", "direct")
        ledger.begin(batch_id)
        ledger.complete_batch(batch_id, {"created": 2}, ["row 1: bad"])

        batch = ledger.begin(batch_id, force=True)
        assert batch.status == BatchStatus.PROCESSING
        assert batch.processed_count == 0
        assert batch.errors == []
        assert batch.force_reprocessed == 1
        assert batch.completed_at is None
        db.close()


class TestErrors:
    def test_error_list_is_bounded(self, tmp_path):
        db, ledger = _make_ledger(tmp_path, max_errors=3)
        batch_id = ledger.create_batch("bulk-csv", "direct")
        ledger.record(batch_id, {"validation_failed": 2}, ["e1", "e2"])
        ledger.record(batch_id, {"validation_failed": 2}, ["e3", "e4"])
        batch = ledger.get_batch(batch_id)
        assert batch.errors == ["e1", "e2", "e3"]
        assert batch.tallies["validation_failed"] == 4
        db.close()


class TestListBatches:
    def test_filters(self, tmp_path):
        db, ledger = _make_ledger(tmp_path)
        a = ledger.create_batch("bulk-csv", "direct")
        b = ledger.create_batch("scheduled-sync", "gmb_api")
        ledger.begin(a)
        ledger.complete_batch(a)

        assert {x.batch_id for x in ledger.list_batches()} == {a, b}
        assert [x.batch_id for x in ledger.list_batches(status="completed")] == [a]
        assert [x.batch_id for x in ledger.list_batches(batch_type="scheduled-sync")] == [b]
        db.close()

    def test_newest_first(self, tmp_path):
        db, ledger = _make_ledger(tmp_path)
        first = ledger.create_batch("bulk-csv", "direct")
        second = ledger.create_batch("bulk-csv", "direct")
        assert [x.batch_id for x in ledger.list_batches()] == [second, first]
        db.close()

"""Tests for record validation and per-business ingestion."""

import threading
from unittest.mock import patch

import pytest

from review_pipeline.directory_db import DirectoryDB
from review_pipeline.errors import BusinessNotFoundError, ValidationError
from review_pipeline.ingest import (
    ReviewIngestor, synthetic_review_id, to_record, validate_record,
)
from review_pipeline.models import Outcome


def _make_ingestor(tmp_path, tier="free", config=None):
    db = DirectoryDB(str(tmp_path / "directory.db"))
    business = db.upsert_business("b1", "Cafe", place_id="p1", plan_tier=tier)
    return db, business, ReviewIngestor(db, config)


def _raw(rid=None, rating=5, text=None, author="Jane Doe", **kwargs):
    record = {"review_id": rid, "rating": rating, "author_name": author,
              "text": text if text is not None else f"Review body {rid}"}
    record.update(kwargs)
    return record


class TestValidateRecord:
    def test_valid(self):
        review = validate_record({"rating": "4", "text": " ok ", "verified": "yes"},
                                 default_source="yelp")
        assert review.rating == 4
        assert review.text == "ok"
        assert review.author_name == "Anonymous"
        assert review.verified is True
        assert review.source == "yelp"
        assert review.review_id is None

    def test_whole_float_rating(self):
        assert validate_record({"rating": "5.0"}).rating == 5

    @pytest.mark.parametrize("rating", [None, "", 0, 6, 7, "4.5", "five", True])
    def test_bad_rating(self, rating):
        with pytest.raises(ValidationError) as exc:
            validate_record({"rating": rating})
        assert exc.value.field == "rating"

    def test_non_text_body(self):
        with pytest.raises(ValidationError):
            validate_record({"rating": 5, "text": 42})

    def test_not_a_mapping(self):
        with pytest.raises(ValidationError):
            validate_record(["rating", 5])

    def test_empty_text_allowed(self):
        assert validate_record({"rating": 3}).text == ""

    def test_timestamps(self):
        assert validate_record({"rating": 5, "published_at": "2025-06-01T10:00:00Z"}) \
            .published_at == "2025-06-01T10:00:00+00:00"
        assert validate_record({"rating": 5, "published_at": 0}) \
            .published_at == "1970-01-01T00:00:00+00:00"
        with pytest.raises(ValidationError):
            validate_record({"rating": 5, "published_at": "last tuesday"})


class TestSyntheticIds:
    def test_deterministic(self):
        a = synthetic_review_id("b1", "Jane Doe", "2025-01-01T00:00:00+00:00")
        b = synthetic_review_id("b1", " jane  doe ", "2025-01-01T00:00:00+00:00")
        assert a == b
        assert a.startswith("syn_")

    def test_business_scoped(self):
        assert synthetic_review_id("b1", "Jane", "t") != synthetic_review_id("b2", "Jane", "t")

    def test_undated_records_keyed_on_text(self):
        assert synthetic_review_id("b1", "Jane", None, "great") != \
            synthetic_review_id("b1", "Jane", None, "awful")

    def test_to_record_marks_synthetic(self):
        record = to_record(validate_record({"rating": 5, "author_name": "Jane"}), "b1", "batch")
        assert record.id_synthetic
        assert record.import_batch_id == "batch"
        real = to_record(validate_record({"rating": 5, "review_id": "r9"}), "b1")
        assert real.review_id == "r9"
        assert not real.id_synthetic


class TestIngest:
    def test_every_record_gets_one_outcome(self, tmp_path):
        db, business, ingestor = _make_ingestor(tmp_path)
        records = [_raw("r1"), _raw("r2", text="Something else entirely"),
                   _raw("r1"), _raw("r3", rating=9)]
        result = ingestor.ingest(business, records, source="gmb_api")
        assert result.tallies == {"created": 2, "updated": 0, "duplicate": 1,
                                  "quota_skipped": 0, "validation_failed": 1}
        assert sum(result.tallies.values()) == len(records)
        assert db.count_reviews("b1") == 2
        db.close()

    def test_error_messages_carry_position(self, tmp_path):
        db, business, ingestor = _make_ingestor(tmp_path)
        result = ingestor.ingest(business, [_raw("r1"), _raw("r2", rating=7)],
                                 label="row", positions=[2, 3])
        assert len(result.errors) == 1
        assert result.errors[0].startswith("row 3 (b1):")
        db.close()

    def test_quota_caps_new_reviews(self, tmp_path):
        db, business, ingestor = _make_ingestor(
            tmp_path, config={"quotas": {"free": {"max_import": 2}}})
        records = [_raw(f"r{i}", text=f"distinct body number {i} " * (i + 1)) for i in range(4)]
        result = ingestor.ingest(business, records)
        assert result.tallies["created"] == 2
        assert result.tallies["quota_skipped"] == 2
        assert db.count_reviews("b1") == 2
        db.close()

    def test_duplicates_do_not_use_quota(self, tmp_path):
        db, business, ingestor = _make_ingestor(
            tmp_path, config={"quotas": {"free": {"max_import": 1}}})
        ingestor.ingest(business, [_raw("r1")])
        result = ingestor.ingest(business, [_raw("r1")])
        assert result.tallies["duplicate"] == 1
        assert result.tallies["quota_skipped"] == 0
        db.close()

    def test_enrichment_updates_stored_review(self, tmp_path):
        db, business, ingestor = _make_ingestor(tmp_path)
        ingestor.ingest(business, [_raw("r1")])
        result = ingestor.ingest(business, [_raw("r1", reply_text="Thank you!")])
        assert result.tallies["updated"] == 1
        assert db.get_review("b1", "r1").reply_text == "Thank you!"
        db.close()

    def test_rerun_is_idempotent(self, tmp_path):
        db, business, ingestor = _make_ingestor(tmp_path)
        records = [_raw("r1"), _raw(None, text="No id here", author="Sam")]
        first = ingestor.ingest(business, records)
        second = ingestor.ingest(business, records)
        assert first.tallies["created"] == 2
        assert second.tallies["duplicate"] == 2
        assert db.count_reviews("b1") == 2
        db.close()

    def test_fuzzy_copy_from_another_platform(self, tmp_path):
        db, business, ingestor = _make_ingestor(tmp_path)
        ingestor.ingest(business, [_raw("g1", text="Lovely staff and great espresso")],
                        source="gmb_api")
        result = ingestor.ingest(
            business, [_raw(None, text="Lovely staff and great espresso!")], source="yelp")
        assert result.tallies["duplicate"] == 1
        db.close()

    def test_in_batch_duplicates(self, tmp_path):
        db, business, ingestor = _make_ingestor(tmp_path)
        records = [_raw(None, text="Best bagels in town", published_at="2025-01-01"),
                   _raw(None, text="Best bagels in town.", published_at="2025-01-02")]
        result = ingestor.ingest(business, records, source="direct")
        assert result.tallies["created"] == 1
        assert result.tallies["duplicate"] == 1
        db.close()

    def test_aggregates_refreshed(self, tmp_path):
        db, business, ingestor = _make_ingestor(tmp_path)
        result = ingestor.ingest(business, [
            _raw("r1", rating=5), _raw("r2", rating=4, text="other words"),
        ])
        assert result.review_count == 2
        assert result.average_rating == 4.5
        stored = db.get_business("b1")
        assert stored.review_count == 2
        assert stored.average_rating == 4.5
        db.close()

    def test_batch_attribution(self, tmp_path):
        db, business, ingestor = _make_ingestor(tmp_path)
        ingestor.ingest(business, [_raw("r1")], batch_id=None, source="gmb_api")
        review = db.get_review("b1", "r1", source="gmb_api")
        assert review.source == "gmb_api"
        assert review.import_batch_id is None
        db.close()

    def test_same_id_from_different_sources(self, tmp_path):
        db, business, ingestor = _make_ingestor(tmp_path)
        ingestor.ingest(business, [_raw("123", rating=5, author="Ann", text="Lovely place")],
                        source="yelp")
        result = ingestor.ingest(
            business, [_raw("123", rating=1, author="Bob", text="Cold food, rude staff")],
            source="facebook")
        assert result.tallies["created"] == 1
        assert result.tallies["duplicate"] == 0
        assert db.count_reviews("b1") == 2
        assert db.get_review("b1", "123", source="yelp").author_name == "Ann"
        assert db.get_review("b1", "123", source="facebook").rating == 1
        db.close()

    def test_snapshot_read_under_write_lock(self, tmp_path):
        db, business, ingestor = _make_ingestor(tmp_path)
        seen = []
        original = db.get_reviews

        def recording(*args, **kwargs):
            seen.append(db.backend.in_transaction())
            return original(*args, **kwargs)

        with patch.object(db, "get_reviews", side_effect=recording):
            ingestor.ingest(business, [_raw("r1")])
        assert seen == [True]
        db.close()

    def test_outcome_values_match_tally_names(self):
        assert {o.value for o in Outcome} - {"accepted"} == {
            "created", "updated", "duplicate", "quota_skipped", "validation_failed"}


class TestConcurrentIngest:
    """Two connections ingesting for one business at the same moment."""

    def _run(self, tmp_path, batches, config=None):
        path = str(tmp_path / "directory.db")
        setup = DirectoryDB(path)
        setup.upsert_business("b1", "Cafe", place_id="p1", plan_tier="free")
        barrier = threading.Barrier(len(batches), timeout=30)
        results = [None] * len(batches)
        errors = []

        def worker(index, records):
            db = DirectoryDB(path)
            try:
                business = db.require_business("b1")
                barrier.wait()
                results[index] = ReviewIngestor(db, config).ingest(
                    business, records, source="gmb_api")
            except Exception as e:
                errors.append(e)
            finally:
                db.close()

        threads = [threading.Thread(target=worker, args=(i, records))
                   for i, records in enumerate(batches)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)
        assert errors == []
        return setup, results

    def test_quota_cap_holds_across_connections(self, tmp_path):
        batches = [
            [_raw(f"t{t}-r{i}", text=f"thread {t} review {i}") for i in range(50)]
            for t in range(2)
        ]
        db, results = self._run(tmp_path, batches,
                                config={"quotas": {"free": {"max_import": 50}}})
        assert db.count_reviews("b1") == 50
        assert sum(r.tallies["created"] for r in results) == 50
        assert sum(r.tallies["quota_skipped"] for r in results) == 50
        assert db.get_business("b1").review_count == 50
        db.close()

    def test_same_review_from_two_connections_stored_once(self, tmp_path):
        batches = [[_raw("r1")], [_raw("r1")]]
        db, results = self._run(tmp_path, batches)
        assert db.count_reviews("b1") == 1
        assert sorted(r.tallies["created"] for r in results) == [0, 1]
        assert sorted(r.tallies["duplicate"] for r in results) == [0, 1]
        db.close()


class TestDuplicateCleanup:
    def _seed(self, db):
        # Stored before cross-source dedup existed: the same review twice.
        db.insert_review(to_record(validate_record(
            _raw("y1", text="Great coffee, friendly staff", source="yelp",
                 published_at="2025-01-01")), "b1"))
        db.insert_review(to_record(validate_record(
            _raw("g1", text="Great coffee, friendly staff!", source="gmb_import",
                 published_at="2025-01-01")), "b1"))
        db.insert_review(to_record(validate_record(
            _raw("g2", rating=2, text="Slow service", source="gmb_import")), "b1"))
        db.refresh_aggregates("b1")

    def test_find_duplicates(self, tmp_path):
        db, business, ingestor = _make_ingestor(tmp_path)
        self._seed(db)
        pairs = ingestor.find_duplicates("b1")
        assert len(pairs) == 1
        assert {pairs[0].primary.review_id, pairs[0].duplicate.review_id} == {"y1", "g1"}
        db.close()

    def test_dry_run_deletes_nothing(self, tmp_path):
        db, business, ingestor = _make_ingestor(tmp_path)
        self._seed(db)
        summary = ingestor.remove_duplicates("b1")
        assert summary["dry_run"] is True
        assert summary["removed"] == 0
        assert summary["kept"] == 1
        assert {"action": "remove", "review_id": "y1", "source": "yelp",
                "reason": "keeping gmb_import over yelp (higher authority)"} in summary["actions"]
        assert db.count_reviews("b1") == 3
        db.close()

    def test_remove_keeps_authoritative_copy(self, tmp_path):
        db, business, ingestor = _make_ingestor(tmp_path)
        self._seed(db)
        summary = ingestor.remove_duplicates("b1", dry_run=False)
        assert summary["removed"] == 1
        assert db.get_review("b1", "y1", source="yelp") is None
        assert db.get_review("b1", "g1", source="gmb_import") is not None
        stored = db.get_business("b1")
        assert stored.review_count == 2
        assert stored.average_rating == 3.5
        db.close()

    def test_unknown_business(self, tmp_path):
        db, business, ingestor = _make_ingestor(tmp_path)
        with pytest.raises(BusinessNotFoundError):
            ingestor.remove_duplicates("nope")
        db.close()

"""Tests for bulk review import."""

from unittest.mock import patch

import pytest

from review_pipeline.bulk_import import (
    PRESETS, BulkImporter, FieldMapping, import_rows, read_csv_rows, resolve_mapping,
)
from review_pipeline.directory_db import DirectoryDB
from review_pipeline.errors import BatchAlreadyCompletedError
from review_pipeline.models import BatchStatus, BatchType

_MAPPING = {"business_id": "biz", "review_id": "id", "rating": "stars",
            "text": "body", "author_name": "who"}


def _make_importer(tmp_path, tier="power", **import_cfg):
    db = DirectoryDB(str(tmp_path / "directory.db"))
    db.upsert_business("b1", "Blue Bottle Coffee", place_id="p1", plan_tier=tier)
    db.upsert_business("b2", "Sightglass Coffee", place_id="p2", plan_tier=tier)
    config = {"import": dict({"chunk_delay": 0}, **import_cfg)}
    return db, BulkImporter(db, config)


def _rows(start, stop, business="b1", stars="5"):
    return [{"biz": business, "id": f"r{i}", "stars": stars,
             "body": f"Visit number {i} was memorable", "who": f"Guest {i}"}
            for i in range(start, stop)]


class TestFieldMapping:
    def test_rating_required(self):
        with pytest.raises(ValueError):
            FieldMapping({"business_id": "biz"})

    def test_business_reference_required(self):
        with pytest.raises(ValueError):
            FieldMapping({"rating": "stars"})

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError):
            FieldMapping({"business_id": "biz", "rating": "stars", "mood": "m"})

    def test_extract_drops_unmapped_and_empty(self):
        mapping = FieldMapping({"business_id": "biz", "rating": "stars", "text": "body"})
        record = mapping.extract({"biz": " b1 ", "stars": "4", "body": "",
                                  "author_name": "Should not appear"})
        assert record == {"business_id": "b1", "rating": "4"}

    def test_missing_columns(self):
        mapping = FieldMapping(_MAPPING)
        assert mapping.missing_columns(["biz", "id", "stars"]) == ["body", "who"]

    def test_presets_are_valid(self):
        for name in PRESETS:
            assert FieldMapping.preset(name).columns


class TestResolveMapping:
    def test_preset_with_override(self):
        mapping, source = resolve_mapping(preset="yelp", columns={"rating": "score"})
        assert mapping.columns["rating"] == "score"
        assert mapping.columns["text"] == "text"
        assert source == "yelp"

    def test_explicit_source_wins(self):
        _, source = resolve_mapping(preset="yelp", source="partner-feed")
        assert source == "partner-feed"

    def test_columns_only(self):
        _, source = resolve_mapping(columns=_MAPPING)
        assert source == "direct"

    def test_nothing_given(self):
        with pytest.raises(ValueError):
            resolve_mapping()

    def test_unknown_preset(self):
        with pytest.raises(ValueError):
            resolve_mapping(preset="tripadvisor")


class TestReadCsv:
    def test_reads_rows_with_bom(self, tmp_path):
        path = tmp_path / "export.csv"
        path.write_text("\ufeffbiz,stars,body\nb1,5,\"Great, really\"\n", encoding="utf-8")
        assert read_csv_rows(str(path)) == [{"biz": "b1", "stars": "5", "body": "Great, really"}]


class TestBulkImport:
    def test_thousand_rows_with_fifty_already_stored(self, tmp_path):
        db, importer = _make_importer(tmp_path)
        mapping = FieldMapping(_MAPPING)
        importer.run(_rows(0, 50), mapping)

        batch = importer.run(_rows(0, 1000), mapping)

        assert batch.status == BatchStatus.COMPLETED
        assert batch.tallies["created"] == 950
        assert batch.tallies["duplicate"] == 50
        assert batch.processed_count == 1000
        assert batch.expected_count == 1000
        assert db.count_reviews("b1") == 1000
        db.close()

    def test_bad_rating_does_not_abort(self, tmp_path):
        db, importer = _make_importer(tmp_path)
        rows = _rows(0, 3)
        rows[1]["stars"] = "7"
        batch = importer.run(rows, FieldMapping(_MAPPING))
        assert batch.status == BatchStatus.COMPLETED
        assert batch.tallies["created"] == 2
        assert batch.tallies["validation_failed"] == 1
        assert batch.errors[0].startswith("row 2 ")
        db.close()

    def test_unmapped_fields_stay_absent(self, tmp_path):
        db, importer = _make_importer(tmp_path)
        mapping = FieldMapping({"business_id": "biz", "review_id": "id", "rating": "stars"})
        importer.run([{"biz": "b1", "id": "r1", "stars": "4", "text": "hello",
                       "author_name": "Jane"}], mapping)
        review = db.get_review("b1", "r1", source="direct")
        assert review.text == ""
        assert review.author_name == "Anonymous"
        db.close()

    def test_business_resolution(self, tmp_path):
        db, importer = _make_importer(tmp_path)
        mapping = FieldMapping({"business_name": "name", "place_id": "pid",
                                "rating": "stars", "text": "body"})
        rows = [
            {"name": "Blue Bottle Coffee SF", "stars": "5", "body": "a"},
            {"name": "Whatever", "pid": "p2", "stars": "4", "body": "b"},
            {"name": "Zzz Unknown Place", "stars": "3", "body": "c"},
        ]
        batch = importer.run(rows, mapping, source="yelp")
        assert batch.tallies["created"] == 2
        assert batch.tallies["validation_failed"] == 1
        assert "no business match" in batch.errors[0]
        assert db.count_reviews("b1") == 1
        assert db.count_reviews("b2") == 1
        assert db.get_reviews("b2")[0].source == "yelp"
        db.close()

    def test_unknown_business_id(self, tmp_path):
        db, importer = _make_importer(tmp_path)
        batch = importer.run(_rows(0, 2, business="nope"), FieldMapping(_MAPPING))
        assert batch.tallies["validation_failed"] == 2
        db.close()

    def test_quota_applies(self, tmp_path):
        db, importer = _make_importer(tmp_path, tier="free")
        batch = importer.run(_rows(0, 60), FieldMapping(_MAPPING))
        assert batch.tallies["created"] == 50
        assert batch.tallies["quota_skipped"] == 10
        db.close()

    def test_chunks_pause_between(self, tmp_path):
        db, importer = _make_importer(tmp_path, chunk_size=10, chunk_delay=0.01)
        with patch("review_pipeline.bulk_import.time.sleep") as sleep:
            batch = importer.run(_rows(0, 25), FieldMapping(_MAPPING))
        assert sleep.call_count == 2
        assert batch.tallies["created"] == 25
        db.close()

    def test_records_attributed_to_batch(self, tmp_path):
        db, importer = _make_importer(tmp_path)
        batch = importer.run(_rows(0, 2), FieldMapping(_MAPPING),
                             batch_type=BatchType.EXTERNAL_BULK,
                             metadata={"file": "feed.json"})
        assert batch.batch_type == BatchType.EXTERNAL_BULK
        assert batch.metadata["file"] == "feed.json"
        assert batch.metadata["mapping"] == _MAPPING
        assert all(r.import_batch_id == batch.batch_id for r in db.get_reviews("b1"))
        db.close()

    def test_failure_marks_batch_failed(self, tmp_path):
        db, importer = _make_importer(tmp_path)
        with patch.object(importer.ingestor, "ingest", side_effect=RuntimeError("disk gone")):
            with pytest.raises(RuntimeError):
                importer.run(_rows(0, 2), FieldMapping(_MAPPING))
        batch = importer.ledger.list_batches()[0]
        assert batch.status == BatchStatus.FAILED
        assert "disk gone" in batch.errors[0]
        db.close()


class TestReprocess:
    def test_completed_batch_requires_force(self, tmp_path):
        db, importer = _make_importer(tmp_path)
        mapping = FieldMapping(_MAPPING)
        batch = importer.run(_rows(0, 5), mapping)
        with pytest.raises(BatchAlreadyCompletedError):
            importer.run(_rows(0, 5), mapping, batch_id=batch.batch_id)
        assert db.count_reviews("b1") == 5
        db.close()

    def test_force_reprocess_is_idempotent(self, tmp_path):
        db, importer = _make_importer(tmp_path)
        mapping = FieldMapping(_MAPPING)
        batch = importer.run(_rows(0, 5), mapping)
        again = importer.run(_rows(0, 5), mapping, batch_id=batch.batch_id, force=True)
        assert again.batch_id == batch.batch_id
        assert again.force_reprocessed == 1
        assert again.tallies["created"] == 0
        assert again.tallies["duplicate"] == 5
        assert db.count_reviews("b1") == 5
        db.close()


class TestImportRows:
    def test_opens_own_connection(self, tmp_path):
        db, _ = _make_importer(tmp_path)
        db.close()
        batch = import_rows(str(tmp_path / "directory.db"), _rows(0, 3),
                            FieldMapping(_MAPPING), {"import": {"chunk_delay": 0}},
                            source="direct")
        assert batch.tallies["created"] == 3

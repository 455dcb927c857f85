"""Tests for sync scheduling: priorities, selection and queue refill."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from review_pipeline.directory_db import DirectoryDB, to_iso
from review_pipeline.models import SyncStatus
from review_pipeline.scheduler import (
    compute_priority, enqueue_businesses, refill, select_for_sync,
)
from review_pipeline.sync_queue import SyncQueue

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def _make_directory(tmp_path):
    """
    b_free:     free, never synced
    b_power:    power, synced an hour ago
    b_pro:      pro, synced two days ago
    b_starter:  starter, synced three days ago
    plus businesses that must never be selected.
    """
    db = DirectoryDB(str(tmp_path / "directory.db"))
    db.upsert_business("b_free", "Free", place_id="p_free", plan_tier="free")
    db.upsert_business("b_power", "Power", place_id="p_power", plan_tier="power")
    db.upsert_business("b_pro", "Pro", place_id="p_pro", plan_tier="pro")
    db.upsert_business("b_starter", "Starter", place_id="p_starter", plan_tier="starter")
    db.upsert_business("b_noplace", "No Place", plan_tier="power")
    db.upsert_business("b_disabled", "Disabled", place_id="p_dis", plan_tier="power",
                       sync_enabled=False)
    db.upsert_business("b_syncing", "Syncing", place_id="p_sync", plan_tier="power")
    db.upsert_business("b_queued", "Queued", place_id="p_q", plan_tier="power")

    db.set_sync_status("b_power", SyncStatus.IDLE, synced_at=to_iso(NOW - timedelta(hours=1)))
    db.set_sync_status("b_pro", SyncStatus.IDLE, synced_at=to_iso(NOW - timedelta(days=2)))
    db.set_sync_status("b_starter", SyncStatus.IDLE, synced_at=to_iso(NOW - timedelta(days=3)))
    db.set_sync_status("b_syncing", SyncStatus.SYNCING)
    queue = SyncQueue(db, clock=lambda: NOW)
    queue.enqueue_bulk([("b_queued", "p_q")])
    return db, queue


class TestComputePriority:
    def test_recency_bonus(self):
        assert compute_priority("power", None, NOW) == 103
        assert compute_priority("power", to_iso(NOW - timedelta(days=2)), NOW) == 102
        assert compute_priority("power", to_iso(NOW - timedelta(hours=1)), NOW) == 100

    def test_tier_dominates_recency(self):
        never_synced_free = compute_priority("free", None, NOW)
        recent_starter = compute_priority("starter", to_iso(NOW), NOW)
        assert never_synced_free < recent_starter

    def test_stale_window(self):
        synced = to_iso(NOW - timedelta(hours=5))
        assert compute_priority("pro", synced, NOW, stale_after_hours=4) == 72
        assert compute_priority("pro", synced, NOW, stale_after_hours=6) == 70


class TestSelectForSync:
    def test_skips_ineligible_and_orders_by_priority(self, tmp_path):
        db, _ = _make_directory(tmp_path)
        selected = select_for_sync(db, 10, now=NOW)
        assert [b.business_id for b in selected] == ["b_pro", "b_starter", "b_free"]
        db.close()

    def test_include_recent(self, tmp_path):
        db, _ = _make_directory(tmp_path)
        selected = select_for_sync(db, 10, include_recent=True, now=NOW)
        assert [b.business_id for b in selected] == ["b_power", "b_pro", "b_starter", "b_free"]
        db.close()

    def test_limit(self, tmp_path):
        db, _ = _make_directory(tmp_path)
        assert len(select_for_sync(db, 2, now=NOW)) == 2
        db.close()


class TestEnqueueBusinesses:
    def test_priorities_applied(self, tmp_path):
        db, queue = _make_directory(tmp_path)
        businesses = [db.get_business("b_free"), db.get_business("b_pro")]
        assert enqueue_businesses(queue, businesses, NOW) == {"added": 2, "already_queued": 0}
        assert queue.get_active_item("b_free").priority == 33
        assert queue.get_active_item("b_pro").priority == 72
        db.close()

    def test_already_queued_counted(self, tmp_path):
        db, queue = _make_directory(tmp_path)
        result = enqueue_businesses(queue, [db.get_business("b_queued")], NOW)
        assert result == {"added": 0, "already_queued": 1}
        db.close()


class TestRefill:
    def test_full_queue_adds_nothing(self):
        queue = MagicMock()
        queue.status.return_value = {"pending_count": 600}
        db = MagicMock()
        result = refill(queue, db)
        assert result == {"pending_count": 600, "selected": 0, "added": 0, "already_queued": 0}
        queue.enqueue_bulk.assert_not_called()
        db.list_businesses.assert_not_called()

    def test_tops_up_low_queue(self, tmp_path):
        db, queue = _make_directory(tmp_path)
        result = refill(queue, db, now=NOW)
        assert result["pending_count"] == 1
        assert result["selected"] == 3
        assert result["added"] == 3
        assert queue.status()["pending_count"] == 4
        db.close()

    def test_room_capped_by_max_per_refill(self, tmp_path):
        db, queue = _make_directory(tmp_path)
        result = refill(queue, db, refill_below=10, refill_target=20, max_per_refill=2, now=NOW)
        assert result["added"] == 2
        assert queue.get_active_item("b_pro") is not None
        assert queue.get_active_item("b_free") is None
        db.close()

    def test_room_capped_by_target(self, tmp_path):
        db, queue = _make_directory(tmp_path)
        result = refill(queue, db, refill_below=5, refill_target=2, max_per_refill=10, now=NOW)
        assert result["added"] == 1
        db.close()

    def test_thresholds_from_config(self, tmp_path):
        db, queue = _make_directory(tmp_path)
        result = refill(queue, db, config={"scheduler": {"refill_below": 1}}, now=NOW)
        assert result["added"] == 0
        db.close()

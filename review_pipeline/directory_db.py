"""
SQLite-backed directory store: businesses, reviews, sync queue rows and
import batches.

Thread safety: each thread/worker MUST create its own DirectoryDB instance
(and thus its own connection). WAL mode allows concurrent readers and one
writer; cross-connection atomicity comes from BEGIN IMMEDIATE transactions.

Do NOT share a single DirectoryDB instance across threads.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional, List

from review_pipeline.database_backend import SQLiteBackend
from review_pipeline.errors import BusinessNotFoundError
from review_pipeline.models import Business, PlanTier, ReviewRecord, SyncStatus

log = logging.getLogger("pipeline")

SCHEMA_VERSION = 2

_SCHEMA_DDL = """
-- Schema version tracking (single-row model)
CREATE TABLE IF NOT EXISTS schema_version (
    id             INTEGER PRIMARY KEY CHECK (id = 1),
    version        INTEGER NOT NULL,
    applied_at     TEXT NOT NULL,
    description    TEXT
);

-- Directory businesses (sync fields and aggregates owned by the pipeline)
CREATE TABLE IF NOT EXISTS businesses (
    business_id     TEXT PRIMARY KEY,
    name            TEXT NOT NULL,
    place_id        TEXT UNIQUE,
    plan_tier       TEXT NOT NULL DEFAULT 'free',
    review_count    INTEGER NOT NULL DEFAULT 0,
    average_rating  REAL,
    sync_status     TEXT NOT NULL DEFAULT 'idle',
    last_sync_at    TEXT,
    last_sync_error TEXT,
    sync_enabled    INTEGER NOT NULL DEFAULT 1,
    created_at      TEXT NOT NULL
);

-- Import ledger (declared before reviews for FK validity)
CREATE TABLE IF NOT EXISTS import_batches (
    batch_id          TEXT PRIMARY KEY,
    batch_type        TEXT NOT NULL,
    source            TEXT NOT NULL,
    status            TEXT NOT NULL DEFAULT 'pending',
    expected_count    INTEGER NOT NULL DEFAULT 0,
    created           INTEGER NOT NULL DEFAULT 0,
    updated           INTEGER NOT NULL DEFAULT 0,
    duplicate         INTEGER NOT NULL DEFAULT 0,
    quota_skipped     INTEGER NOT NULL DEFAULT 0,
    validation_failed INTEGER NOT NULL DEFAULT 0,
    errors            TEXT NOT NULL DEFAULT '[]',
    metadata          TEXT NOT NULL DEFAULT '{}',
    force_reprocessed INTEGER NOT NULL DEFAULT 0,
    created_at        TEXT NOT NULL,
    completed_at      TEXT
);

-- Accepted reviews
CREATE TABLE IF NOT EXISTS reviews (
    review_id       TEXT NOT NULL,
    business_id     TEXT NOT NULL,
    id_synthetic    INTEGER NOT NULL DEFAULT 0,
    rating          INTEGER NOT NULL CHECK (rating BETWEEN 1 AND 5),
    text            TEXT NOT NULL DEFAULT '',
    author_name     TEXT NOT NULL DEFAULT 'Anonymous',
    published_at    TEXT,
    source          TEXT NOT NULL DEFAULT '',
    reply_text      TEXT,
    verified        INTEGER NOT NULL DEFAULT 0,
    accepted_at     TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    import_batch_id TEXT,
    -- Review ids are only unique within their source
    PRIMARY KEY (business_id, source, review_id),
    FOREIGN KEY (business_id) REFERENCES businesses(business_id) ON DELETE CASCADE,
    FOREIGN KEY (import_batch_id) REFERENCES import_batches(batch_id) ON DELETE SET NULL
);

-- Durable sync queue
CREATE TABLE IF NOT EXISTS sync_queue (
    item_id          INTEGER PRIMARY KEY AUTOINCREMENT,
    business_id      TEXT NOT NULL,
    place_id         TEXT,
    priority         INTEGER NOT NULL DEFAULT 5,
    state            TEXT NOT NULL DEFAULT 'pending',
    retry_count      INTEGER NOT NULL DEFAULT 0,
    last_error       TEXT,
    requested_at     TEXT NOT NULL,
    next_eligible_at TEXT NOT NULL,
    started_at       TEXT,
    processed_at     TEXT,
    results          TEXT,
    FOREIGN KEY (business_id) REFERENCES businesses(business_id) ON DELETE CASCADE
);

-- At most one pending/processing row per business
CREATE UNIQUE INDEX IF NOT EXISTS uq_queue_active_business
    ON sync_queue(business_id) WHERE state IN ('pending', 'processing');

-- Indexes
CREATE INDEX IF NOT EXISTS idx_queue_dequeue
    ON sync_queue(state, next_eligible_at, priority DESC, requested_at);
CREATE INDEX IF NOT EXISTS idx_queue_processed ON sync_queue(state, processed_at);
CREATE INDEX IF NOT EXISTS idx_reviews_business ON reviews(business_id);
CREATE INDEX IF NOT EXISTS idx_reviews_batch ON reviews(import_batch_id);
CREATE INDEX IF NOT EXISTS idx_businesses_sync ON businesses(sync_status, last_sync_at);
CREATE INDEX IF NOT EXISTS idx_batches_status ON import_batches(status, created_at);
"""

# v2: reviews keyed on (business_id, source, review_id); untagged reviews get source ''.
_MIGRATIONS: Dict[int, List[str]] = {
    2: ["""
CREATE TABLE reviews_v2 (
    review_id       TEXT NOT NULL,
    business_id     TEXT NOT NULL,
    id_synthetic    INTEGER NOT NULL DEFAULT 0,
    rating          INTEGER NOT NULL CHECK (rating BETWEEN 1 AND 5),
    text            TEXT NOT NULL DEFAULT '',
    author_name     TEXT NOT NULL DEFAULT 'Anonymous',
    published_at    TEXT,
    source          TEXT NOT NULL DEFAULT '',
    reply_text      TEXT,
    verified        INTEGER NOT NULL DEFAULT 0,
    accepted_at     TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    import_batch_id TEXT,
    PRIMARY KEY (business_id, source, review_id),
    FOREIGN KEY (business_id) REFERENCES businesses(business_id) ON DELETE CASCADE,
    FOREIGN KEY (import_batch_id) REFERENCES import_batches(batch_id) ON DELETE SET NULL
);
INSERT INTO reviews_v2 (review_id, business_id, id_synthetic, rating, text, author_name,
                        published_at, source, reply_text, verified, accepted_at,
                        updated_at, import_batch_id)
    SELECT review_id, business_id, id_synthetic, rating, text, author_name,
           published_at, COALESCE(source, ''), reply_text, verified, accepted_at,
           updated_at, import_batch_id
    FROM reviews;
DROP TABLE reviews;
ALTER TABLE reviews_v2 RENAME TO reviews;
CREATE INDEX IF NOT EXISTS idx_reviews_business ON reviews(business_id);
CREATE INDEX IF NOT EXISTS idx_reviews_batch ON reviews(import_batch_id);
"""],
}


def _now_utc() -> str:
    """Return current UTC time as ISO 8601 string (fixed microsecond precision)."""
    return to_iso(datetime.now(timezone.utc))


def to_iso(moment: datetime) -> str:
    """Serialize a datetime so stored timestamps compare lexicographically."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


class DirectoryDB:
    """
    SQLite database for the business directory and its review store.

    Thread safety: each thread/worker MUST create its own DirectoryDB.
    """

    def __init__(self, db_path: str = "directory.db"):
        self.backend = SQLiteBackend(db_path)
        self.backend.connect()
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables if they don't exist, apply migrations if needed."""
        current = self.backend.get_schema_version()
        if current == 0:
            self.backend.init_schema(SCHEMA_VERSION, [_SCHEMA_DDL])
        elif current < SCHEMA_VERSION:
            self.backend.migrate(current, SCHEMA_VERSION, _MIGRATIONS)

    @property
    def db_path(self) -> str:
        return self.backend.db_path

    @contextmanager
    def transaction(self):
        """Context manager for explicit write transactions."""
        with self.backend.transaction():
            yield

    # === Business Management ===

    def upsert_business(self, business_id: str, name: str,
                        place_id: Optional[str] = None,
                        plan_tier: Any = PlanTier.FREE,
                        sync_enabled: bool = True) -> Business:
        """Register or update a directory business. Sync fields are left untouched on update."""
        tier = PlanTier.parse(plan_tier).value
        self.backend.execute(
            "INSERT INTO businesses (business_id, name, place_id, plan_tier, "
            "sync_enabled, created_at) VALUES (?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(business_id) DO UPDATE SET name = excluded.name, "
            "place_id = excluded.place_id, plan_tier = excluded.plan_tier, "
            "sync_enabled = excluded.sync_enabled",
            (business_id, name, place_id or None, tier, int(sync_enabled), _now_utc())
        )
        return self.get_business(business_id)

    def get_business(self, business_id: str) -> Optional[Business]:
        row = self.backend.fetchone(
            "SELECT * FROM businesses WHERE business_id = ?", (business_id,)
        )
        return Business.from_row(row) if row else None

    def require_business(self, business_id: str) -> Business:
        business = self.get_business(business_id)
        if business is None:
            raise BusinessNotFoundError(f"Business {business_id} not found")
        return business

    def get_business_by_place_id(self, place_id: str) -> Optional[Business]:
        row = self.backend.fetchone(
            "SELECT * FROM businesses WHERE place_id = ?", (place_id,)
        )
        return Business.from_row(row) if row else None

    def list_businesses(self, sync_enabled_only: bool = False) -> List[Business]:
        """List all businesses in registration order."""
        sql = "SELECT * FROM businesses"
        if sync_enabled_only:
            sql += " WHERE sync_enabled = 1"
        sql += " ORDER BY created_at, business_id"
        return [Business.from_row(r) for r in self.backend.fetchall(sql)]

    def set_sync_status(self, business_id: str, status: SyncStatus,
                        error: Optional[str] = None,
                        synced_at: Optional[str] = None) -> None:
        """
        Move a business through idle/syncing/error.

        A successful sync (idle with synced_at) clears last_sync_error; an
        error records it. Entering syncing leaves the previous error visible.
        """
        status = SyncStatus(status)
        if status == SyncStatus.ERROR:
            self.backend.execute(
                "UPDATE businesses SET sync_status = ?, last_sync_error = ? "
                "WHERE business_id = ?",
                (status.value, error, business_id)
            )
        elif synced_at:
            self.backend.execute(
                "UPDATE businesses SET sync_status = ?, last_sync_at = ?, "
                "last_sync_error = NULL WHERE business_id = ?",
                (status.value, synced_at, business_id)
            )
        else:
            self.backend.execute(
                "UPDATE businesses SET sync_status = ? WHERE business_id = ?",
                (status.value, business_id)
            )

    def set_sync_enabled(self, business_id: str, enabled: bool) -> Business:
        """Include or exclude a business from scheduled syncs."""
        cursor = self.backend.execute(
            "UPDATE businesses SET sync_enabled = ? WHERE business_id = ?",
            (int(bool(enabled)), business_id)
        )
        if cursor.rowcount == 0:
            raise BusinessNotFoundError(f"Business {business_id} not found")
        log.info(f"Sync {'enabled' if enabled else 'disabled'} for {business_id}")
        return self.get_business(business_id)

    def refresh_aggregates(self, business_id: str) -> Dict[str, Any]:
        """Recompute accepted-review count and average rating (1 decimal) from stored reviews."""
        row = self.backend.fetchone(
            "SELECT COUNT(*) AS cnt, AVG(rating) AS avg_rating "
            "FROM reviews WHERE business_id = ?",
            (business_id,)
        )
        count = row["cnt"] if row else 0
        average = round(row["avg_rating"], 1) if row and row["avg_rating"] is not None else None
        self.backend.execute(
            "UPDATE businesses SET review_count = ?, average_rating = ? WHERE business_id = ?",
            (count, average, business_id)
        )
        return {"review_count": count, "average_rating": average}

    # === Review Operations ===

    def get_reviews(self, business_id: str, limit: int = None,
                    offset: int = 0) -> List[ReviewRecord]:
        """Get stored reviews for a business, newest accepted first."""
        sql = "SELECT * FROM reviews WHERE business_id = ? ORDER BY accepted_at DESC, review_id"
        params: list = [business_id]
        if limit:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        return [ReviewRecord.from_row(r) for r in self.backend.fetchall(sql, tuple(params))]

    def get_review(self, business_id: str, review_id: str,
                   source: Optional[str] = None) -> Optional[ReviewRecord]:
        """Look up a review by its source-scoped id; source None means untagged."""
        row = self.backend.fetchone(
            "SELECT * FROM reviews WHERE business_id = ? AND source = ? AND review_id = ?",
            (business_id, source or "", review_id)
        )
        return ReviewRecord.from_row(row) if row else None

    def count_reviews(self, business_id: str) -> int:
        return self.backend.scalar(
            "SELECT COUNT(*) FROM reviews WHERE business_id = ?", (business_id,)
        )

    def insert_review(self, record: ReviewRecord) -> ReviewRecord:
        """Insert an accepted review; stamps accepted_at/updated_at."""
        now = _now_utc()
        record.accepted_at = record.accepted_at or now
        record.updated_at = now
        self.backend.execute(
            "INSERT INTO reviews (review_id, business_id, id_synthetic, rating, text, "
            "author_name, published_at, source, reply_text, verified, accepted_at, "
            "updated_at, import_batch_id) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (record.review_id, record.business_id, int(record.id_synthetic),
             record.rating, record.text or "", record.author_name or "Anonymous",
             record.published_at, record.source or "", record.reply_text,
             int(bool(record.verified)), record.accepted_at, record.updated_at,
             record.import_batch_id)
        )
        return record

    def update_review(self, business_id: str, review_id: str,
                      updates: Dict[str, Any], source: Optional[str] = None) -> bool:
        """Apply field updates to a stored review. Returns True if a row changed."""
        allowed = {"text", "author_name", "published_at", "reply_text", "verified"}
        fields = {k: v for k, v in updates.items() if k in allowed}
        if not fields:
            return False
        if "verified" in fields:
            fields["verified"] = int(bool(fields["verified"]))
        assignments = ", ".join(f"{name} = ?" for name in fields)
        cursor = self.backend.execute(
            f"UPDATE reviews SET {assignments}, updated_at = ? "
            f"WHERE business_id = ? AND source = ? AND review_id = ?",
            tuple(fields.values()) + (_now_utc(), business_id, source or "", review_id)
        )
        return cursor.rowcount == 1

    def delete_review(self, business_id: str, review_id: str,
                      source: Optional[str] = None) -> bool:
        cursor = self.backend.execute(
            "DELETE FROM reviews WHERE business_id = ? AND source = ? AND review_id = ?",
            (business_id, source or "", review_id)
        )
        return cursor.rowcount == 1

    # === Stats ===

    def get_stats(self) -> Dict[str, Any]:
        """Database statistics."""
        stats: Dict[str, Any] = {}
        for table in ["businesses", "reviews", "sync_queue", "import_batches"]:
            stats[f"{table}_count"] = self.backend.scalar(f"SELECT COUNT(*) FROM {table}")

        stats["queue_by_state"] = {
            r["state"]: r["cnt"] for r in self.backend.fetchall(
                "SELECT state, COUNT(*) AS cnt FROM sync_queue GROUP BY state"
            )
        }

        db_path = Path(self.backend.db_path)
        stats["db_size_bytes"] = db_path.stat().st_size if db_path.exists() else 0

        stats["businesses"] = self.backend.fetchall(
            "SELECT business_id, name, plan_tier, review_count, average_rating, "
            "sync_status, last_sync_at FROM businesses ORDER BY last_sync_at DESC"
        )
        return stats

    def get_schema_version(self) -> int:
        return self.backend.get_schema_version()

    # === Cleanup ===

    def close(self) -> None:
        """Close the database connection."""
        self.backend.close()

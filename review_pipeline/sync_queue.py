"""
Durable priority queue of per-business sync requests.

Rows live in the sync_queue table; every state transition is a guarded
UPDATE inside a BEGIN IMMEDIATE transaction, so the queue survives restarts
and concurrent workers on separate connections never claim the same row.

Invariant: at most one row per business in pending/processing. A partial
unique index enforces it; enqueue uses INSERT OR IGNORE against that index.

Retry delays are plain timestamps (next_eligible_at) that dequeue filters
on. A retryable failure goes straight back to pending with a future
next_eligible_at; the interval until then is the failed-retryable phase.
"""

import json
import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional, List, Iterable, Callable

from review_pipeline.directory_db import DirectoryDB, to_iso
from review_pipeline.models import (
    ACTIVE_QUEUE_STATES, QueueState, SyncQueueItem, SyncStatus,
)

log = logging.getLogger("pipeline")

DEFAULT_PRIORITY = 5
STUCK_ERROR = "Processing timeout - marked as stuck"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _item_key(item) -> tuple:
    """Accept {'business_id', 'place_id'} dicts, (business_id, place_id) pairs or Business objects."""
    if isinstance(item, dict):
        return item["business_id"], item.get("place_id")
    if isinstance(item, (tuple, list)):
        return item[0], (item[1] if len(item) > 1 else None)
    return item.business_id, getattr(item, "place_id", None)


class SyncQueue:
    """
    Sync queue bound to one DirectoryDB connection.

    Each worker thread builds its own SyncQueue over its own DirectoryDB.
    """

    def __init__(self, db: DirectoryDB, config: Optional[Dict[str, Any]] = None,
                 clock: Callable[[], datetime] = _utcnow,
                 rng: Optional[random.Random] = None):
        queue_cfg = (config or {}).get("queue", {}) or {}
        self.db = db
        self.backend = db.backend
        self.max_retries = int(queue_cfg.get("max_retries", 3))
        self.backoff_base = float(queue_cfg.get("backoff_base_seconds", 60))
        self.backoff_max = float(queue_cfg.get("backoff_max_seconds", 3600))
        self.backoff_jitter = float(queue_cfg.get("backoff_jitter", 0.2))
        self.recent_window_hours = float(queue_cfg.get("recent_window_hours", 24))
        self.clock = clock
        self.rng = rng or random.Random()

    def _now(self) -> str:
        return to_iso(self.clock())

    # === Enqueue ===

    def enqueue_bulk(self, items: Iterable[Any],
                     priority: int = DEFAULT_PRIORITY) -> Dict[str, int]:
        """
        Queue a sync for each business not already pending or processing.

        Args:
            items: {'business_id', 'place_id'} dicts, pairs, or Business objects
            priority: Higher is served sooner

        Returns:
            {'added': N, 'already_queued': N}
        """
        added = already_queued = 0
        now = self._now()
        with self.db.transaction():
            for item in items:
                business_id, place_id = _item_key(item)
                cursor = self.backend.execute(
                    "INSERT OR IGNORE INTO sync_queue (business_id, place_id, priority, "
                    "state, retry_count, requested_at, next_eligible_at) "
                    "VALUES (?, ?, ?, ?, 0, ?, ?)",
                    (business_id, place_id, int(priority), QueueState.PENDING.value, now, now)
                )
                if cursor.rowcount == 1:
                    added += 1
                else:
                    already_queued += 1

        if added or already_queued:
            log.info(f"Enqueued {added} business(es) at priority {priority} "
                     f"({already_queued} already queued)")
        return {"added": added, "already_queued": already_queued}

    # === Claim ===

    def dequeue_batch(self, max_items: int = 1) -> List[SyncQueueItem]:
        """
        Claim up to *max_items* eligible pending rows, highest priority first,
        oldest request first within a priority.
        """
        if max_items <= 0:
            return []
        now = self._now()
        claimed = []
        with self.db.transaction():
            rows = self.backend.fetchall(
                "SELECT item_id FROM sync_queue "
                "WHERE state = ? AND next_eligible_at <= ? "
                "ORDER BY priority DESC, requested_at ASC, item_id ASC LIMIT ?",
                (QueueState.PENDING.value, now, int(max_items))
            )
            for row in rows:
                if self._claim_row(row["item_id"], now):
                    claimed.append(row["item_id"])
        return [self.get_item(item_id) for item_id in claimed]

    def claim(self, item_id: int) -> Optional[SyncQueueItem]:
        """Claim one specific pending item regardless of its backoff gate."""
        with self.db.transaction():
            ok = self._claim_row(item_id, self._now())
        return self.get_item(item_id) if ok else None

    def _claim_row(self, item_id: int, now: str) -> bool:
        # Compare-and-swap: only a row still pending can be claimed.
        cursor = self.backend.execute(
            "UPDATE sync_queue SET state = ?, started_at = ? "
            "WHERE item_id = ? AND state = ?",
            (QueueState.PROCESSING.value, now, item_id, QueueState.PENDING.value)
        )
        return cursor.rowcount == 1

    # === Completion ===

    def mark_completed(self, item_id: int,
                       results: Optional[Dict[str, Any]] = None) -> bool:
        """processing -> completed. Returns False if the item was not processing."""
        cursor = self.backend.execute(
            "UPDATE sync_queue SET state = ?, processed_at = ?, last_error = NULL, "
            "results = ? WHERE item_id = ? AND state = ?",
            (QueueState.COMPLETED.value, self._now(),
             json.dumps(results) if results is not None else None,
             item_id, QueueState.PROCESSING.value)
        )
        return cursor.rowcount == 1

    def backoff(self, retry_count: int) -> float:
        """Seconds to wait before attempt *retry_count*: base * 2^n, capped, plus jitter."""
        delay = min(self.backoff_base * (2 ** retry_count), self.backoff_max)
        if self.backoff_jitter > 0:
            delay += self.rng.uniform(0, self.backoff_jitter * delay)
        return delay

    def mark_failed(self, item_id: int, error: str, retryable: bool,
                    results: Optional[Dict[str, Any]] = None) -> Optional[QueueState]:
        """
        Record a failed attempt.

        Retryable failures go back to pending behind a backoff gate until the
        retry count exceeds max_retries; non-retryable ones go straight to
        failed_terminal. Terminal failure also flags the business.

        Returns:
            The item's new state, or its current state if it was not
            processing (nothing changes in that case), or None if unknown.
        """
        with self.db.transaction():
            row = self.backend.fetchone(
                "SELECT * FROM sync_queue WHERE item_id = ?", (item_id,)
            )
            if row is None:
                return None
            if row["state"] != QueueState.PROCESSING.value:
                return QueueState(row["state"])
            state = self._fail_row(row, error, retryable, results)

        context = {"business_id": row["business_id"], "item_id": item_id}
        if state == QueueState.FAILED_TERMINAL:
            log.error(f"Sync for business {row['business_id']} failed permanently: {error}",
                      extra=context)
        else:
            log.warning(f"Sync for business {row['business_id']} failed "
                        f"(attempt {row['retry_count'] + 1}), will retry: {error}",
                        extra=context)
        return state

    def _fail_row(self, row: Dict[str, Any], error: str, retryable: bool,
                  results: Optional[Dict[str, Any]] = None) -> QueueState:
        now_dt = self.clock()
        now = to_iso(now_dt)
        retry_count = row["retry_count"]
        if retryable:
            retry_count += 1

        encoded = json.dumps(results) if results is not None else row.get("results")
        if retryable and retry_count <= self.max_retries:
            eligible = to_iso(now_dt + timedelta(seconds=self.backoff(retry_count)))
            self.backend.execute(
                "UPDATE sync_queue SET state = ?, retry_count = ?, last_error = ?, "
                "next_eligible_at = ?, started_at = NULL, results = ? WHERE item_id = ?",
                (QueueState.PENDING.value, retry_count, error, eligible, encoded,
                 row["item_id"])
            )
            return QueueState.PENDING

        self.backend.execute(
            "UPDATE sync_queue SET state = ?, retry_count = ?, last_error = ?, "
            "processed_at = ?, results = ? WHERE item_id = ?",
            (QueueState.FAILED_TERMINAL.value, retry_count, error, now, encoded,
             row["item_id"])
        )
        self.db.set_sync_status(row["business_id"], SyncStatus.ERROR, error=error)
        return QueueState.FAILED_TERMINAL

    # === Visibility ===

    def status(self) -> Dict[str, int]:
        """Queue depth and recent outcomes, for the scheduler and operators."""
        now_dt = self.clock()
        now = to_iso(now_dt)
        since = to_iso(now_dt - timedelta(hours=self.recent_window_hours))
        counts = {
            r["state"]: r["cnt"] for r in self.backend.fetchall(
                "SELECT state, COUNT(*) AS cnt FROM sync_queue GROUP BY state"
            )
        }
        recent = {
            r["state"]: r["cnt"] for r in self.backend.fetchall(
                "SELECT state, COUNT(*) AS cnt FROM sync_queue "
                "WHERE processed_at >= ? GROUP BY state",
                (since,)
            )
        }
        waiting = self.backend.scalar(
            "SELECT COUNT(*) FROM sync_queue WHERE state = ? AND retry_count > 0 "
            "AND next_eligible_at > ?",
            (QueueState.PENDING.value, now)
        )
        return {
            "pending_count": counts.get(QueueState.PENDING.value, 0),
            "processing_count": counts.get(QueueState.PROCESSING.value, 0),
            "recent_completed": recent.get(QueueState.COMPLETED.value, 0),
            "recent_failed": recent.get(QueueState.FAILED_TERMINAL.value, 0),
            "retry_waiting_count": waiting,
        }

    def get_item(self, item_id: int) -> Optional[SyncQueueItem]:
        row = self.backend.fetchone(
            "SELECT * FROM sync_queue WHERE item_id = ?", (item_id,)
        )
        return SyncQueueItem.from_row(row) if row else None

    def get_active_item(self, business_id: str) -> Optional[SyncQueueItem]:
        """The business's pending or processing item, if any."""
        row = self.backend.fetchone(
            "SELECT * FROM sync_queue WHERE business_id = ? AND state IN (?, ?)",
            (business_id,) + ACTIVE_QUEUE_STATES
        )
        return SyncQueueItem.from_row(row) if row else None

    def list_items(self, state: Optional[str] = None, limit: int = 100) -> List[SyncQueueItem]:
        sql = "SELECT * FROM sync_queue"
        params: list = []
        if state:
            sql += " WHERE state = ?"
            params.append(QueueState(state).value)
        sql += " ORDER BY priority DESC, requested_at ASC, item_id ASC LIMIT ?"
        params.append(limit)
        return [SyncQueueItem.from_row(r) for r in self.backend.fetchall(sql, tuple(params))]

    def history(self, business_id: str, limit: int = 10) -> List[SyncQueueItem]:
        """A business's sync requests, newest first, whatever their state."""
        rows = self.backend.fetchall(
            "SELECT * FROM sync_queue WHERE business_id = ? "
            "ORDER BY requested_at DESC, item_id DESC LIMIT ?",
            (business_id, limit)
        )
        return [SyncQueueItem.from_row(r) for r in rows]

    def recent_activity(self, limit: int = 20) -> List[SyncQueueItem]:
        """Finished syncs across all businesses, most recently processed first."""
        rows = self.backend.fetchall(
            "SELECT q.*, b.name AS business_name FROM sync_queue q "
            "JOIN businesses b ON b.business_id = q.business_id "
            "WHERE q.state IN (?, ?) ORDER BY q.processed_at DESC, q.item_id DESC LIMIT ?",
            (QueueState.COMPLETED.value, QueueState.FAILED_TERMINAL.value, limit)
        )
        return [SyncQueueItem.from_row(r) for r in rows]

    # === Maintenance ===

    def release_stuck(self, older_than_seconds: int = 300) -> int:
        """
        Fail processing items whose worker went away (crash, kill) as a
        retryable timeout. Returns the number of items released.
        """
        cutoff = to_iso(self.clock() - timedelta(seconds=older_than_seconds))
        released = 0
        with self.db.transaction():
            rows = self.backend.fetchall(
                "SELECT * FROM sync_queue WHERE state = ? AND started_at < ?",
                (QueueState.PROCESSING.value, cutoff)
            )
            for row in rows:
                self._fail_row(row, STUCK_ERROR, retryable=True)
                self.db.set_sync_status(row["business_id"], SyncStatus.ERROR, error=STUCK_ERROR)
                released += 1
        if released:
            log.warning(f"Released {released} stuck queue item(s)")
        return released

    def retry_failed(self, business_ids: Optional[Iterable[str]] = None) -> int:
        """
        Give terminally failed items a fresh set of retries.

        Skips businesses that already have an active item.
        """
        now = self._now()
        reset = 0
        with self.db.transaction():
            sql = "SELECT item_id, business_id FROM sync_queue WHERE state = ?"
            params: list = [QueueState.FAILED_TERMINAL.value]
            ids = list(business_ids) if business_ids is not None else None
            if ids is not None:
                if not ids:
                    return 0
                sql += f" AND business_id IN ({', '.join('?' * len(ids))})"
                params.extend(ids)
            sql += " ORDER BY processed_at DESC"
            seen = set()
            for row in self.backend.fetchall(sql, tuple(params)):
                if row["business_id"] in seen:
                    continue
                seen.add(row["business_id"])
                cursor = self.backend.execute(
                    "UPDATE OR IGNORE sync_queue SET state = ?, retry_count = 0, "
                    "next_eligible_at = ?, started_at = NULL, processed_at = NULL "
                    "WHERE item_id = ?",
                    (QueueState.PENDING.value, now, row["item_id"])
                )
                reset += cursor.rowcount
        if reset:
            log.info(f"Reset {reset} failed queue item(s) to pending")
        return reset

    def cancel_pending(self, business_ids: Optional[Iterable[str]] = None) -> int:
        """Delete pending (not processing) items, optionally for specific businesses."""
        sql = "DELETE FROM sync_queue WHERE state = ?"
        params: list = [QueueState.PENDING.value]
        if business_ids is not None:
            ids = list(business_ids)
            if not ids:
                return 0
            sql += f" AND business_id IN ({', '.join('?' * len(ids))})"
            params.extend(ids)
        cursor = self.backend.execute(sql, tuple(params))
        if cursor.rowcount:
            log.info(f"Cancelled {cursor.rowcount} pending queue item(s)")
        return cursor.rowcount

    def purge_finished(self, older_than_hours: int = 168) -> int:
        """Delete completed and terminally failed rows older than the cutoff."""
        cutoff = to_iso(self.clock() - timedelta(hours=older_than_hours))
        cursor = self.backend.execute(
            "DELETE FROM sync_queue WHERE state IN (?, ?) AND processed_at < ?",
            (QueueState.COMPLETED.value, QueueState.FAILED_TERMINAL.value, cutoff)
        )
        return cursor.rowcount

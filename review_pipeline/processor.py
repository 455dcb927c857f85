"""
Queue processor: a bounded worker pool that drains the sync queue.

Each worker owns its own DirectoryDB connection and loops
dequeue -> fetch -> ingest -> complete until no eligible item is left.
Source failures are classified and handed to SyncQueue.mark_failed; every
record outcome is tallied on the run's import batch and on the queue item.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, Future
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List, Callable

from review_pipeline.directory_db import DirectoryDB, to_iso
from review_pipeline.errors import (
    BusinessNotFoundError, PermanentSourceError, SourceError, TransientSourceError,
)
from review_pipeline.ingest import ReviewIngestor
from review_pipeline.ledger import ImportLedger
from review_pipeline.models import (
    BatchType, QueueState, SyncQueueItem, SyncStatus, add_tallies, empty_tallies,
)
from review_pipeline.source_adapter import ReviewSourceClient
from review_pipeline.sync_queue import SyncQueue

log = logging.getLogger("pipeline")

MANUAL_PRIORITY = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _WorkerContext:
    """Per-thread resources: one connection and the helpers bound to it."""

    def __init__(self, processor: "QueueProcessor"):
        self.db = DirectoryDB(processor.db_path)
        self.queue = SyncQueue(self.db, processor.config, clock=processor.clock)
        self.ledger = ImportLedger(self.db, processor.max_errors)
        self.ingestor = ReviewIngestor(self.db, processor.config)

    def close(self) -> None:
        self.db.close()


class QueueProcessor:
    """Worker pool over the durable sync queue"""

    def __init__(self, db_path: str, config: Optional[Dict[str, Any]] = None,
                 source: Optional[Any] = None,
                 concurrency: Optional[int] = None,
                 clock: Callable[[], datetime] = _utcnow):
        """
        Initialize the processor.

        Args:
            db_path: SQLite file shared by all workers
            config: Loaded configuration (processor/queue/import sections)
            source: Object with fetch(place_id, max_records); defaults to
                ReviewSourceClient built from config
            concurrency: Worker count (default processor.concurrency, 3)
            clock: UTC clock, injectable for tests
        """
        self.db_path = db_path
        self.config = config or {}
        proc_cfg = self.config.get("processor", {}) or {}
        self.concurrency = int(concurrency or proc_cfg.get("concurrency", 3))
        self.batch_size = int(proc_cfg.get("batch_size", 1))
        self.max_records = int(proc_cfg.get("max_records_per_sync", 200))
        self.source_tag = proc_cfg.get("source_tag", "gmb_api")
        self.max_errors = int((self.config.get("import", {}) or {}).get("max_errors", 100))
        self.source = source or ReviewSourceClient(self.config)
        self.clock = clock

        self.executor = ThreadPoolExecutor(max_workers=self.concurrency,
                                           thread_name_prefix="sync-worker")
        self._runner = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sync-drain")
        self.lock = threading.Lock()
        self._stop_event = threading.Event()
        self._running: Optional[Future] = None
        self._budget: Optional[int] = None
        self._batch_id: Optional[str] = None
        self.last_run: Optional[Dict[str, Any]] = None

    # === Draining ===

    def drain(self, batch_type=BatchType.SCHEDULED_SYNC,
              max_items: Optional[int] = None) -> Dict[str, Any]:
        """
        Process eligible queue items until none are left.

        Args:
            batch_type: Ledger type for this run
            max_items: Stop after claiming this many items (None = no cap)

        Returns:
            Run summary with batch id, per-result counts and record tallies
        """
        self._stop_event.clear()
        with self.lock:
            self._budget = max_items
            self._batch_id = None
        batch_type = BatchType(batch_type)

        started = _utcnow()
        futures = [self.executor.submit(self._worker_loop, n, batch_type)
                   for n in range(self.concurrency)]

        summary = {"processed": 0, "completed": 0, "retried": 0, "failed": 0,
                   "tallies": empty_tallies()}
        run_errors: List[str] = []
        for future in futures:
            try:
                counts = future.result()
            except Exception as e:
                log.exception("Sync worker crashed")
                run_errors.append(f"Worker crashed: {e}")
                continue
            for key in ("processed", "completed", "retried", "failed"):
                summary[key] += counts[key]
            add_tallies(summary["tallies"], counts["tallies"])

        summary["batch_id"] = self._finish_batch(run_errors)
        summary["duration_seconds"] = round((_utcnow() - started).total_seconds(), 3)
        self.last_run = summary
        log.info(f"Queue drain finished: {summary['processed']} item(s), "
                 f"{summary['completed']} completed, {summary['retried']} retrying, "
                 f"{summary['failed']} failed")
        return summary

    def start_drain(self, batch_type=BatchType.SCHEDULED_SYNC,
                    max_items: Optional[int] = None) -> bool:
        """Run drain() in the background. False if a drain is already running."""
        with self.lock:
            if self._running is not None and not self._running.done():
                return False
            self._running = self._runner.submit(self.drain, batch_type, max_items)
        return True

    def is_running(self) -> bool:
        with self.lock:
            return self._running is not None and not self._running.done()

    def stop(self) -> None:
        """Ask workers to stop after their current item."""
        self._stop_event.set()

    def _take_budget(self) -> bool:
        with self.lock:
            if self._budget is None:
                return True
            if self._budget <= 0:
                return False
            self._budget -= 1
            return True

    def _batch_for(self, ctx: _WorkerContext, batch_type: BatchType) -> str:
        # One ledger batch per run, opened by whichever worker claims first.
        with self.lock:
            if self._batch_id is None:
                self._batch_id = ctx.ledger.create_batch(
                    batch_type, self.source_tag, 0,
                    metadata={"concurrency": self.concurrency})
                ctx.ledger.begin(self._batch_id)
            return self._batch_id

    def _finish_batch(self, run_errors: List[str]) -> Optional[str]:
        with self.lock:
            batch_id = self._batch_id
        if batch_id is None:
            return None
        db = DirectoryDB(self.db_path)
        try:
            ledger = ImportLedger(db, self.max_errors)
            if run_errors:
                ledger.fail_batch(batch_id, "; ".join(run_errors))
            else:
                ledger.complete_batch(batch_id)
        finally:
            db.close()
        return batch_id

    def _worker_loop(self, worker_no: int, batch_type: BatchType) -> Dict[str, Any]:
        counts = {"processed": 0, "completed": 0, "retried": 0, "failed": 0,
                  "tallies": empty_tallies()}
        ctx = _WorkerContext(self)
        try:
            while not self._stop_event.is_set():
                if not self._take_budget():
                    break
                items = ctx.queue.dequeue_batch(1 if self._budget is not None else self.batch_size)
                if not items:
                    break
                batch_id = self._batch_for(ctx, batch_type)
                for item in items:
                    outcome, tallies = self.process_item(ctx, item, batch_id)
                    counts["processed"] += 1
                    counts[outcome] += 1
                    add_tallies(counts["tallies"], tallies)
        finally:
            ctx.close()
        log.debug(f"Sync worker {worker_no} done: {counts['processed']} item(s)")
        return counts

    # === One item ===

    def process_item(self, ctx: _WorkerContext, item: SyncQueueItem,
                     batch_id: str) -> tuple:
        """
        Sync one claimed queue item.

        Returns:
            (result, tallies) where result is 'completed', 'retried' or 'failed'
        """
        business = ctx.db.get_business(item.business_id)
        if business is None:
            return self._fail(ctx, item, batch_id,
                              BusinessNotFoundError(f"Business {item.business_id} not found"),
                              retryable=False)

        place_id = item.place_id or business.place_id
        ctx.db.set_sync_status(business.business_id, SyncStatus.SYNCING)
        if not place_id:
            return self._fail(ctx, item, batch_id,
                              PermanentSourceError("Business has no place identifier"),
                              retryable=False)

        try:
            records = self.source.fetch(place_id, self.max_records)
        except SourceError as e:
            return self._fail(ctx, item, batch_id, e, retryable=e.retryable)
        except Exception as e:
            log.exception(f"Unexpected error fetching reviews for {business.business_id}",
                          extra={"batch_id": batch_id, "business_id": business.business_id})
            return self._fail(ctx, item, batch_id, TransientSourceError(str(e)),
                              retryable=True)

        fetched = len(records)
        records = list(records)[:self.max_records]
        try:
            result = ctx.ingestor.ingest(business, records, batch_id=batch_id,
                                         source=self.source_tag)
        except Exception as e:
            log.exception(f"Failed to store reviews for {business.business_id}",
                          extra={"batch_id": batch_id, "business_id": business.business_id})
            return self._fail(ctx, item, batch_id, TransientSourceError(str(e)),
                              retryable=True)

        ctx.db.set_sync_status(business.business_id, SyncStatus.IDLE,
                               synced_at=to_iso(self.clock()))
        ctx.queue.mark_completed(item.item_id, results={
            "fetched": fetched, "tallies": result.tallies,
            "review_count": result.review_count,
        })
        ctx.ledger.record(batch_id, result.tallies, result.errors,
                          expected=len(records))
        log.info(f"Synced {business.business_id}: {result.tallies}",
                 extra={"batch_id": batch_id, "business_id": business.business_id,
                        "item_id": item.item_id})
        return "completed", result.tallies

    def _fail(self, ctx: _WorkerContext, item: SyncQueueItem, batch_id: str,
              error: Exception, retryable: bool) -> tuple:
        message = str(error) or error.__class__.__name__
        state = ctx.queue.mark_failed(item.item_id, message, retryable)
        if state != QueueState.FAILED_TERMINAL and ctx.db.get_business(item.business_id):
            ctx.db.set_sync_status(item.business_id, SyncStatus.ERROR, error=message)
        ctx.ledger.record(batch_id, errors=[f"{item.business_id}: {message}"])
        if state == QueueState.PENDING:
            return "retried", empty_tallies()
        return "failed", empty_tallies()

    # === Manual sync ===

    def sync_now(self, business_id: str) -> Dict[str, Any]:
        """
        Sync one business immediately, through the queue so the one-active-item
        rule still holds. Returns {'status': 'already_processing'} if a worker
        has it.
        """
        ctx = _WorkerContext(self)
        try:
            business = ctx.db.get_business(business_id)
            if business is None:
                raise BusinessNotFoundError(f"Business {business_id} not found")
            ctx.queue.enqueue_bulk([business], priority=MANUAL_PRIORITY)
            active = ctx.queue.get_active_item(business_id)
            item = ctx.queue.claim(active.item_id) if active else None
            if item is None:
                return {"business_id": business_id, "status": "already_processing"}

            batch_id = ctx.ledger.create_batch(BatchType.MANUAL_SYNC, self.source_tag, 0,
                                               metadata={"business_id": business_id})
            ctx.ledger.begin(batch_id)
            outcome, tallies = self.process_item(ctx, item, batch_id)
            batch = ctx.ledger.complete_batch(batch_id)
            return {
                "business_id": business_id,
                "status": outcome,
                "batch_id": batch_id,
                "tallies": tallies,
                "errors": batch.errors,
            }
        finally:
            ctx.close()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "concurrency": self.concurrency,
            "running": self.is_running(),
            "last_run": self.last_run,
        }

    def shutdown(self):
        """Stop workers and release the pools"""
        log.info("Shutting down queue processor")
        self.stop()
        self._runner.shutdown(wait=True)
        self.executor.shutdown(wait=True)
        close = getattr(self.source, "close", None)
        if callable(close):
            close()

"""
Import ledger: provenance and outcome tallies of every bulk operation.

Tallies are applied as SQL increments so concurrent workers and sequential
chunks of one batch never overwrite each other. A completed batch is
immutable; processing it again requires force, which resets the tallies
and bumps the force_reprocessed counter.
"""

import json
import logging
import uuid
from typing import Dict, Any, Optional, List, Iterable

from review_pipeline.directory_db import DirectoryDB, _now_utc
from review_pipeline.errors import BatchAlreadyCompletedError, BatchNotFoundError
from review_pipeline.models import (
    BatchStatus, BatchType, ImportBatch, TALLY_FIELDS,
)

log = logging.getLogger("pipeline")

DEFAULT_MAX_ERRORS = 100


class ImportLedger:
    """Import batch bookkeeping on top of a DirectoryDB connection"""

    def __init__(self, db: DirectoryDB, max_errors: int = DEFAULT_MAX_ERRORS):
        self.db = db
        self.backend = db.backend
        self.max_errors = max_errors

    def create_batch(self, batch_type, source: str, expected_count: int = 0,
                     metadata: Optional[Dict[str, Any]] = None) -> str:
        """Open a new batch in state pending and return its id."""
        batch_id = uuid.uuid4().hex
        self.backend.execute(
            "INSERT INTO import_batches (batch_id, batch_type, source, status, "
            "expected_count, metadata, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (batch_id, BatchType(batch_type).value, source, BatchStatus.PENDING.value,
             int(expected_count), json.dumps(metadata or {}), _now_utc())
        )
        log.info(f"Created import batch {batch_id} ({BatchType(batch_type).value}, "
                 f"source={source}, expected={expected_count})",
                 extra={"batch_id": batch_id})
        return batch_id

    def get_batch(self, batch_id: str) -> Optional[ImportBatch]:
        row = self.backend.fetchone(
            "SELECT * FROM import_batches WHERE batch_id = ?", (batch_id,)
        )
        return self._to_batch(row) if row else None

    def require_batch(self, batch_id: str) -> ImportBatch:
        batch = self.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Import batch {batch_id} not found")
        return batch

    def list_batches(self, status: Optional[str] = None,
                     batch_type: Optional[str] = None,
                     limit: int = 50) -> List[ImportBatch]:
        """Newest first."""
        sql = "SELECT * FROM import_batches WHERE 1=1"
        params: list = []
        if status:
            sql += " AND status = ?"
            params.append(BatchStatus(status).value)
        if batch_type:
            sql += " AND batch_type = ?"
            params.append(BatchType(batch_type).value)
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        return [self._to_batch(r) for r in self.backend.fetchall(sql, tuple(params))]

    def begin(self, batch_id: str, force: bool = False) -> ImportBatch:
        """
        Move a batch to processing.

        Raises:
            BatchNotFoundError: unknown batch id
            BatchAlreadyCompletedError: batch is completed and force is False
        """
        with self.db.transaction():
            batch = self.require_batch(batch_id)
            if batch.status == BatchStatus.COMPLETED:
                if not force:
                    raise BatchAlreadyCompletedError(
                        f"Import batch {batch_id} already completed; pass force to reprocess"
                    )
                self.backend.execute(
                    "UPDATE import_batches SET status = ?, created = 0, updated = 0, "
                    "duplicate = 0, quota_skipped = 0, validation_failed = 0, "
                    "errors = '[]', completed_at = NULL, "
                    "force_reprocessed = force_reprocessed + 1 WHERE batch_id = ?",
                    (BatchStatus.PROCESSING.value, batch_id)
                )
                log.warning(f"Force-reprocessing completed import batch {batch_id}",
                            extra={"batch_id": batch_id})
            else:
                self.backend.execute(
                    "UPDATE import_batches SET status = ? WHERE batch_id = ?",
                    (BatchStatus.PROCESSING.value, batch_id)
                )
        return self.require_batch(batch_id)

    def record(self, batch_id: str, tallies: Optional[Dict[str, int]] = None,
               errors: Iterable[str] = (), expected: int = 0) -> None:
        """
        Atomically add *tallies* and append *errors* (bounded) to a batch.

        *expected* grows expected_count for operations that learn their size
        as they go (queue drains).
        """
        tallies = tallies or {}
        errors = [str(e) for e in errors if e]
        increments = [(name, int(tallies.get(name, 0))) for name in TALLY_FIELDS]
        increments.append(("expected_count", int(expected)))
        if not errors and not any(n for _, n in increments):
            return

        with self.db.transaction():
            assignments = ", ".join(f"{name} = {name} + ?" for name, _ in increments)
            cursor = self.backend.execute(
                f"UPDATE import_batches SET {assignments} WHERE batch_id = ?",
                tuple(n for _, n in increments) + (batch_id,)
            )
            if cursor.rowcount == 0:
                raise BatchNotFoundError(f"Import batch {batch_id} not found")
            if errors:
                self._append_errors(batch_id, errors)

    def complete_batch(self, batch_id: str, tallies: Optional[Dict[str, int]] = None,
                       errors: Iterable[str] = ()) -> ImportBatch:
        """Apply any final tallies and mark the batch completed."""
        with self.db.transaction():
            self.record(batch_id, tallies, errors)
            self.backend.execute(
                "UPDATE import_batches SET status = ?, completed_at = ? WHERE batch_id = ?",
                (BatchStatus.COMPLETED.value, _now_utc(), batch_id)
            )
        batch = self.require_batch(batch_id)
        log.info(f"Completed import batch {batch_id}: {batch.tallies}",
                 extra={"batch_id": batch_id})
        return batch

    def fail_batch(self, batch_id: str, error: str) -> ImportBatch:
        """Mark the operation itself as failed (not individual records)."""
        with self.db.transaction():
            self.require_batch(batch_id)
            self._append_errors(batch_id, [str(error)])
            self.backend.execute(
                "UPDATE import_batches SET status = ?, completed_at = ? WHERE batch_id = ?",
                (BatchStatus.FAILED.value, _now_utc(), batch_id)
            )
        log.error(f"Import batch {batch_id} failed: {error}", extra={"batch_id": batch_id})
        return self.require_batch(batch_id)

    # === Private helpers ===

    def _append_errors(self, batch_id: str, errors: List[str]) -> None:
        row = self.backend.fetchone(
            "SELECT errors FROM import_batches WHERE batch_id = ?", (batch_id,)
        )
        current = json.loads(row["errors"]) if row and row["errors"] else []
        room = self.max_errors - len(current)
        if room <= 0:
            return
        current.extend(errors[:room])
        self.backend.execute(
            "UPDATE import_batches SET errors = ? WHERE batch_id = ?",
            (json.dumps(current, ensure_ascii=False), batch_id)
        )

    @staticmethod
    def _to_batch(row: Dict[str, Any]) -> ImportBatch:
        return ImportBatch(
            batch_id=row["batch_id"],
            batch_type=BatchType(row["batch_type"]),
            source=row["source"],
            status=BatchStatus(row["status"]),
            expected_count=row["expected_count"],
            tallies={name: row[name] for name in TALLY_FIELDS},
            errors=json.loads(row["errors"] or "[]"),
            metadata=json.loads(row["metadata"] or "{}"),
            force_reprocessed=row["force_reprocessed"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )

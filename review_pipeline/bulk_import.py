"""
Bulk review import from spreadsheet exports.

The producer hands over parsed rows plus a field mapping (logical field ->
source column). The mapping is validated before any row is touched;
logical fields it does not map are absent for every row, never guessed
from column names. Rows are processed in chunks with a short pause in
between, each chunk's tallies applied to the ledger atomically.
"""

import csv
import logging
import time
from collections import OrderedDict
from typing import Dict, Any, Optional, List, Iterable, Tuple

from review_pipeline.directory_db import DirectoryDB
from review_pipeline.ingest import IngestResult, ReviewIngestor
from review_pipeline.ledger import ImportLedger
from review_pipeline.matcher import (
    AUTO_ACCEPT_THRESHOLD, CANDIDATE_FLOOR, MAX_ALTERNATIVES, match_business,
)
from review_pipeline.models import (
    BatchType, Business, ImportBatch, Outcome, add_tallies, empty_tallies,
)

log = logging.getLogger("pipeline")

LOGICAL_FIELDS = (
    "business_id", "business_name", "place_id",
    "review_id", "rating", "text", "author_name", "published_at",
    "reply_text", "verified", "source",
)
BUSINESS_FIELDS = ("business_id", "business_name", "place_id")

# Known export layouts: (mapping, default source tag)
PRESETS: Dict[str, Dict[str, Any]] = {
    "google_my_business": {
        "source": "gmb_import",
        "columns": {
            "business_name": "Business_Name",
            "review_id": "Review_ID",
            "rating": "Rating",
            "text": "Review_Text",
            "author_name": "Reviewer_Name",
            "verified": "Verified",
            "published_at": "Created_Date",
            "reply_text": "Owner_Reply",
        },
    },
    "yelp": {
        "source": "yelp",
        "columns": {
            "business_name": "business_name",
            "review_id": "review_id",
            "rating": "stars",
            "text": "text",
            "author_name": "user_name",
            "verified": "verified",
            "published_at": "date",
        },
    },
    "facebook": {
        "source": "facebook",
        "columns": {
            "business_name": "page_name",
            "review_id": "review_id",
            "rating": "rating",
            "text": "review_text",
            "author_name": "reviewer_name",
            "verified": "verified",
            "published_at": "created_time",
            "reply_text": "page_reply",
        },
    },
    "generic": {
        "source": "direct",
        "columns": {
            "business_name": "Business Name",
            "review_id": "Review ID",
            "rating": "Rating",
            "text": "Review",
            "author_name": "Reviewer",
            "verified": "Verified",
            "published_at": "Date",
        },
    },
}


class FieldMapping:
    """Validated logical-field -> source-column mapping"""

    def __init__(self, columns: Dict[str, str]):
        unknown = sorted(set(columns) - set(LOGICAL_FIELDS))
        if unknown:
            raise ValueError(f"Unknown logical field(s) in mapping: {', '.join(unknown)}")
        cleaned = {k: v for k, v in columns.items() if v}
        if "rating" not in cleaned:
            raise ValueError("Field mapping must map 'rating'")
        if not any(f in cleaned for f in BUSINESS_FIELDS):
            raise ValueError(
                "Field mapping must map one of business_id, business_name, place_id"
            )
        self.columns = cleaned

    @classmethod
    def preset(cls, name: str) -> "FieldMapping":
        return resolve_mapping(preset=name)[0]

    def extract(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Logical record for *row*; unmapped fields and empty cells are absent."""
        record = {}
        for logical, column in self.columns.items():
            value = row.get(column)
            if isinstance(value, str):
                value = value.strip()
            if value is None or value == "":
                continue
            record[logical] = value
        return record

    def missing_columns(self, headers: Iterable[str]) -> List[str]:
        """Mapped columns that the export does not have."""
        present = set(headers)
        return [c for c in self.columns.values() if c not in present]

    def to_dict(self) -> Dict[str, str]:
        return dict(self.columns)


def resolve_mapping(preset: Optional[str] = None,
                    columns: Optional[Dict[str, str]] = None,
                    source: Optional[str] = None) -> Tuple[FieldMapping, str]:
    """
    Build a FieldMapping from a preset, explicit columns, or a preset with
    column overrides. Returns the mapping and the source tag to use.
    """
    if not preset and not columns:
        raise ValueError("A mapping preset or explicit column mapping is required")
    merged: Dict[str, str] = {}
    default_source = "direct"
    if preset:
        if preset not in PRESETS:
            raise ValueError(f"Unknown mapping preset '{preset}'. "
                             f"Choose from: {', '.join(sorted(PRESETS))}")
        merged.update(PRESETS[preset]["columns"])
        default_source = PRESETS[preset]["source"]
    merged.update(columns or {})
    return FieldMapping(merged), source or default_source


def read_csv_rows(path: str, encoding: str = "utf-8-sig") -> List[Dict[str, str]]:
    """Read a CSV export into row dicts keyed by header."""
    with open(path, "r", encoding=encoding, newline="") as f:
        return list(csv.DictReader(f))


def _chunks(items: List[Any], size: int) -> Iterable[List[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class BulkImporter:
    """Runs a bulk import against one DirectoryDB connection"""

    def __init__(self, db: DirectoryDB, config: Optional[Dict[str, Any]] = None):
        self.db = db
        self.config = config or {}
        import_cfg = self.config.get("import", {}) or {}
        self.chunk_size = max(int(import_cfg.get("chunk_size", 500)), 1)
        self.chunk_delay = float(import_cfg.get("chunk_delay", 0.1))
        self.auto_accept = float(import_cfg.get("auto_match_threshold", AUTO_ACCEPT_THRESHOLD))
        self.floor = float(import_cfg.get("candidate_floor", CANDIDATE_FLOOR))
        self.max_alternatives = int(import_cfg.get("max_alternatives", MAX_ALTERNATIVES))
        self.ledger = ImportLedger(db, int(import_cfg.get("max_errors", 100)))
        self.ingestor = ReviewIngestor(db, self.config)

    def run(self, rows: List[Dict[str, Any]], mapping: FieldMapping,
            source: str = "direct",
            batch_type=BatchType.BULK_CSV,
            batch_id: Optional[str] = None,
            force: bool = False,
            metadata: Optional[Dict[str, Any]] = None) -> ImportBatch:
        """
        Import *rows* as one ledger batch.

        Args:
            rows: Parsed rows (column -> cell)
            mapping: Validated FieldMapping
            source: Platform tag for rows that do not map 'source'
            batch_type: bulk-csv or external-bulk
            batch_id: Existing batch to (re)process instead of creating one
            force: Allow reprocessing a completed batch
            metadata: Provenance stored on a newly created batch

        Returns:
            The completed ImportBatch

        Raises:
            BatchAlreadyCompletedError: batch_id is completed and force is False
        """
        rows = list(rows)
        if batch_id is None:
            info = dict(metadata or {})
            info["mapping"] = mapping.to_dict()
            batch_id = self.ledger.create_batch(batch_type, source, len(rows), info)
        self.ledger.begin(batch_id, force=force)

        try:
            directory = self.db.list_businesses()
            by_id = {b.business_id: b for b in directory}
            for number, chunk in enumerate(_chunks(list(enumerate(rows, start=1)),
                                                   self.chunk_size)):
                if number and self.chunk_delay:
                    time.sleep(self.chunk_delay)
                tallies, errors = self._process_chunk(chunk, mapping, source,
                                                      directory, by_id, batch_id)
                self.ledger.record(batch_id, tallies, errors)
                log.info(f"Import batch {batch_id}: chunk {number + 1} "
                         f"({len(chunk)} rows) {tallies}", extra={"batch_id": batch_id})
        except Exception as e:
            log.exception(f"Import batch {batch_id} aborted", extra={"batch_id": batch_id})
            self.ledger.fail_batch(batch_id, f"{e.__class__.__name__}: {e}")
            raise

        return self.ledger.complete_batch(batch_id)

    def _process_chunk(self, chunk, mapping: FieldMapping, source: str,
                       directory: List[Business], by_id: Dict[str, Business],
                       batch_id: str):
        tallies = empty_tallies()
        errors: List[str] = []
        grouped: "OrderedDict[str, List[tuple]]" = OrderedDict()

        for row_number, row in chunk:
            record = mapping.extract(row)
            business = self._resolve_business(record, directory, by_id)
            if business is None:
                tallies[Outcome.VALIDATION_FAILED.value] += 1
                name = record.get("business_name") or record.get("place_id") or "?"
                errors.append(f"row {row_number}: no business match for {name!r}")
                continue
            grouped.setdefault(business.business_id, []).append((row_number, record))

        for business_id, entries in grouped.items():
            result: IngestResult = self.ingestor.ingest(
                by_id[business_id],
                [record for _, record in entries],
                batch_id=batch_id,
                source=source,
                label="row",
                positions=[n for n, _ in entries],
            )
            add_tallies(tallies, result.tallies)
            errors.extend(result.errors)
        return tallies, errors

    def _resolve_business(self, record: Dict[str, Any], directory: List[Business],
                          by_id: Dict[str, Business]) -> Optional[Business]:
        business_id = record.get("business_id")
        if business_id:
            return by_id.get(str(business_id))

        candidate = match_business(
            record.get("business_name", ""),
            directory,
            place_id=record.get("place_id"),
            auto_accept=self.auto_accept,
            floor=self.floor,
            max_alternatives=self.max_alternatives,
        )
        if not candidate.matched:
            return None
        return by_id.get(candidate.business_id)


def import_rows(db_path: str, rows: List[Dict[str, Any]], mapping: FieldMapping,
                config: Optional[Dict[str, Any]] = None, **kwargs) -> ImportBatch:
    """Open a connection, run one import, close."""
    db = DirectoryDB(db_path)
    try:
        return BulkImporter(db, config).run(rows, mapping, **kwargs)
    finally:
        db.close()


"""
Per-business review ingestion, shared by the queue processor and bulk import.

For each incoming record: validate -> assign id -> dedup -> quota -> write.
Every record lands in exactly one outcome tally. Record-level problems are
tallied, never raised, so one bad row cannot abort a sync or an import.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List, Iterable

from review_pipeline.deduplicator import (
    Deduplicator, SIMILARITY_THRESHOLD, DuplicatePair, find_duplicates, plan_removals,
)
from review_pipeline.directory_db import DirectoryDB
from review_pipeline.errors import ValidationError
from review_pipeline.models import (
    Business, Outcome, ReviewRecord, SourceReview, empty_tallies,
)
from review_pipeline.quota import build_quota_table, check_quota
from review_pipeline.similarity import normalize_text

log = logging.getLogger("pipeline")

_TRUE_STRINGS = {"true", "1", "yes", "y", "on", "verified"}


# === Validation ===

def _parse_rating(value: Any) -> int:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError("Missing rating", field="rating")
    if isinstance(value, bool):
        raise ValidationError(f"Invalid rating {value!r}", field="rating")
    try:
        number = float(str(value).strip())
    except ValueError:
        raise ValidationError(f"Invalid rating {value!r}", field="rating") from None
    if not number.is_integer():
        raise ValidationError(f"Rating must be a whole number, got {value!r}", field="rating")
    rating = int(number)
    if rating < 1 or rating > 5:
        raise ValidationError(f"Rating {rating} out of range 1-5", field="rating")
    return rating


def _parse_timestamp(value: Any) -> Optional[str]:
    """ISO strings, datetimes and epoch s/ms/us become ISO 8601 UTC strings."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        moment = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return moment.astimezone(timezone.utc).isoformat()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        number = float(value)
        if number > 2e14:
            number /= 1_000_000
        elif number > 2e11:
            number /= 1000
        return datetime.fromtimestamp(number, tz=timezone.utc).isoformat()
    text = str(value).strip()
    try:
        moment = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        if text.isdigit():
            return _parse_timestamp(int(text))
        raise ValidationError(f"Unparseable published timestamp {value!r}",
                              field="published_at") from None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in _TRUE_STRINGS


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def validate_record(raw: Dict[str, Any], default_source: Optional[str] = None) -> SourceReview:
    """
    Turn a raw record dict into a SourceReview.

    Raises:
        ValidationError: missing or out-of-range rating, non-text review
            body, unparseable timestamp
    """
    if not isinstance(raw, dict):
        raise ValidationError(f"Record is not a mapping: {type(raw).__name__}")

    text = raw.get("text")
    if text is not None and not isinstance(text, str):
        raise ValidationError("Review text must be a string", field="text")

    return SourceReview(
        rating=_parse_rating(raw.get("rating")),
        author_name=_optional_str(raw.get("author_name")) or "Anonymous",
        text=(text or "").strip(),
        review_id=_optional_str(raw.get("review_id")),
        published_at=_parse_timestamp(raw.get("published_at")),
        reply_text=_optional_str(raw.get("reply_text")),
        verified=_parse_bool(raw.get("verified")),
        source=_optional_str(raw.get("source")) or default_source,
    )


def synthetic_review_id(business_id: str, author_name: str,
                        published_at: Optional[str], text: str = "") -> str:
    """
    Deterministic id for records whose source provides none.

    Keyed on business, normalized author and published timestamp. Undated
    records add the normalized text so one author's undated reviews stay apart.
    """
    parts = [business_id, normalize_text(author_name), published_at or ""]
    if not published_at:
        parts.append(normalize_text(text))
    key = "|".join(parts)
    return "syn_" + hashlib.sha256(key.encode("utf-8")).hexdigest()[:24]


def to_record(review: SourceReview, business_id: str,
              batch_id: Optional[str] = None) -> ReviewRecord:
    """Build the prospective stored record, deriving an id when the source gave none."""
    synthetic = review.review_id is None
    review_id = review.review_id or synthetic_review_id(
        business_id, review.author_name, review.published_at, review.text)
    return ReviewRecord(
        review_id=review_id,
        business_id=business_id,
        rating=review.rating,
        text=review.text,
        author_name=review.author_name,
        published_at=review.published_at,
        source=review.source,
        reply_text=review.reply_text,
        verified=review.verified,
        id_synthetic=synthetic,
        import_batch_id=batch_id,
    )


# === Ingestion ===

@dataclass
class IngestResult:
    """Tallies and record-level error messages for one business"""
    tallies: Dict[str, int] = field(default_factory=empty_tallies)
    errors: List[str] = field(default_factory=list)
    review_count: int = 0
    average_rating: Optional[float] = None

    def count(self, outcome: Outcome) -> None:
        self.tallies[outcome.value] += 1


class ReviewIngestor:
    """Runs records for one business through dedup, quota and storage."""

    def __init__(self, db: DirectoryDB, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.db = db
        self.threshold = float((config.get("dedup", {}) or {}).get(
            "similarity_threshold", SIMILARITY_THRESHOLD))
        self.quota_table = build_quota_table(config.get("quotas"))

    def ingest(self, business: Business, records: Iterable[Dict[str, Any]],
               batch_id: Optional[str] = None, source: Optional[str] = None,
               label: str = "record",
               positions: Optional[List[int]] = None) -> IngestResult:
        """
        Ingest *records* for *business* and refresh its aggregates.

        Args:
            business: Owning business (tier decides the quota)
            records: Raw record dicts (see validate_record)
            batch_id: Import batch the accepted reviews are attributed to
            source: Platform tag for records that carry none
            label: Prefix for error messages ("row", "record")
            positions: Caller-side numbers of the records (e.g. CSV rows)

        Returns:
            IngestResult with one tally per record
        """
        result = IngestResult()

        with self.db.transaction():
            # Read under the write lock: dedup and quota see every committed review.
            dedup = Deduplicator(self.db.get_reviews(business.business_id), self.threshold)
            accepted_count = len(dedup)

            for index, raw in enumerate(records):
                try:
                    review = validate_record(raw, default_source=source)
                except ValidationError as e:
                    result.count(Outcome.VALIDATION_FAILED)
                    position = positions[index] if positions else index
                    result.errors.append(f"{label} {position} ({business.business_id}): {e}")
                    continue

                candidate = to_record(review, business.business_id, batch_id)
                decision = dedup.decide(candidate)

                if decision.outcome == Outcome.UPDATED:
                    self.db.update_review(business.business_id, decision.match.review_id,
                                          decision.updates, source=decision.match.source)
                    for name, value in decision.updates.items():
                        setattr(decision.match, name, value)
                    dedup.remember(decision.match)
                    result.count(Outcome.UPDATED)
                    continue
                if decision.outcome == Outcome.DUPLICATE:
                    result.count(Outcome.DUPLICATE)
                    continue

                if check_quota(business.plan_tier, accepted_count,
                               self.quota_table) == Outcome.QUOTA_SKIPPED:
                    result.count(Outcome.QUOTA_SKIPPED)
                    continue

                self.db.insert_review(candidate)
                dedup.remember(candidate)
                accepted_count += 1
                result.count(Outcome.CREATED)

            aggregates = self.db.refresh_aggregates(business.business_id)

        result.review_count = aggregates["review_count"]
        result.average_rating = aggregates["average_rating"]
        log.debug(f"Ingested records for {business.business_id}: {result.tallies}")
        return result

    # === Stored duplicates ===

    def find_duplicates(self, business_id: str) -> List[DuplicatePair]:
        """Scan a business's stored reviews for copies the ingestion rules would merge."""
        self.db.require_business(business_id)
        return find_duplicates(self.db.get_reviews(business_id), self.threshold)

    def remove_duplicates(self, business_id: str, dry_run: bool = True) -> Dict[str, Any]:
        """
        Delete all but the most authoritative copy of each stored duplicate.

        Args:
            business_id: Business whose reviews are scanned
            dry_run: Only report the plan; nothing is deleted

        Returns:
            Dict with removed/kept counts, the per-review actions and dry_run
        """
        self.db.require_business(business_id)
        with self.db.transaction():
            pairs = find_duplicates(self.db.get_reviews(business_id), self.threshold)
            actions = plan_removals(pairs)
            removed = 0
            if not dry_run:
                for action in actions:
                    if action.action != "remove":
                        continue
                    if self.db.delete_review(business_id, action.review.review_id,
                                             source=action.review.source):
                        removed += 1
                if removed:
                    self.db.refresh_aggregates(business_id)

        kept = sum(1 for a in actions if a.action == "keep")
        if removed:
            log.info(f"Removed {removed} duplicate review(s) for {business_id}")
        return {
            "business_id": business_id,
            "dry_run": dry_run,
            "removed": removed,
            "kept": kept,
            "actions": [a.to_dict() for a in actions],
        }

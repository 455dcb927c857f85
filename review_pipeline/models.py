"""
Domain types for the review ingestion pipeline.
"""

import json
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, Any, Optional, List


class PlanTier(str, Enum):
    """Business plan tier, ordered free < starter < pro < power"""
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    POWER = "power"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    @classmethod
    def parse(cls, value: Any) -> "PlanTier":
        """Accept a PlanTier or a case-insensitive tier name."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown plan tier: {value!r}") from None


_TIER_ORDER = [PlanTier.FREE, PlanTier.STARTER, PlanTier.PRO, PlanTier.POWER]


class SyncStatus(str, Enum):
    """Business sync status"""
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class QueueState(str, Enum):
    """
    Sync queue item state.

    A retryable failure goes back to pending with a future next_eligible_at;
    there is no separate waiting state.
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED_TERMINAL = "failed_terminal"


ACTIVE_QUEUE_STATES = (QueueState.PENDING.value, QueueState.PROCESSING.value)


class BatchType(str, Enum):
    """Import batch type"""
    SCHEDULED_SYNC = "scheduled-sync"
    MANUAL_SYNC = "manual-sync"
    BULK_CSV = "bulk-csv"
    EXTERNAL_BULK = "external-bulk"


class BatchStatus(str, Enum):
    """Import batch status"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Outcome(str, Enum):
    """Per-record ingestion outcome. Each maps to exactly one batch tally."""
    CREATED = "created"
    UPDATED = "updated"
    DUPLICATE = "duplicate"
    QUOTA_SKIPPED = "quota_skipped"
    VALIDATION_FAILED = "validation_failed"
    # Quota check result only, never tallied.
    ACCEPTED = "accepted"


TALLY_FIELDS = (
    Outcome.CREATED.value,
    Outcome.UPDATED.value,
    Outcome.DUPLICATE.value,
    Outcome.QUOTA_SKIPPED.value,
    Outcome.VALIDATION_FAILED.value,
)


def empty_tallies() -> Dict[str, int]:
    return {name: 0 for name in TALLY_FIELDS}


def add_tallies(target: Dict[str, int], other: Dict[str, int]) -> Dict[str, int]:
    """Add *other* into *target* in place and return it."""
    for name in TALLY_FIELDS:
        target[name] = target.get(name, 0) + other.get(name, 0)
    return target


@dataclass
class Business:
    """Directory business, restricted to the fields the pipeline touches"""
    business_id: str
    name: str
    place_id: Optional[str] = None
    plan_tier: PlanTier = PlanTier.FREE
    review_count: int = 0
    average_rating: Optional[float] = None
    sync_status: SyncStatus = SyncStatus.IDLE
    last_sync_at: Optional[str] = None
    last_sync_error: Optional[str] = None
    sync_enabled: bool = True

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Business":
        return cls(
            business_id=row["business_id"],
            name=row["name"],
            place_id=row.get("place_id"),
            plan_tier=PlanTier.parse(row.get("plan_tier") or "free"),
            review_count=row.get("review_count") or 0,
            average_rating=row.get("average_rating"),
            sync_status=SyncStatus(row.get("sync_status") or "idle"),
            last_sync_at=row.get("last_sync_at"),
            last_sync_error=row.get("last_sync_error"),
            sync_enabled=bool(row.get("sync_enabled", 1)),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["plan_tier"] = self.plan_tier.value
        data["sync_status"] = self.sync_status.value
        return data


@dataclass
class SourceReview:
    """A validated incoming review, before dedup and quota"""
    rating: int
    author_name: str = "Anonymous"
    text: str = ""
    review_id: Optional[str] = None
    published_at: Optional[str] = None
    reply_text: Optional[str] = None
    verified: bool = False
    source: Optional[str] = None


@dataclass
class ReviewRecord:
    """A stored review"""
    review_id: str
    business_id: str
    rating: int
    text: str = ""
    author_name: str = "Anonymous"
    published_at: Optional[str] = None
    source: Optional[str] = None
    reply_text: Optional[str] = None
    verified: bool = False
    id_synthetic: bool = False
    accepted_at: Optional[str] = None
    updated_at: Optional[str] = None
    import_batch_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ReviewRecord":
        return cls(
            review_id=row["review_id"],
            business_id=row["business_id"],
            rating=row["rating"],
            text=row.get("text") or "",
            author_name=row.get("author_name") or "Anonymous",
            published_at=row.get("published_at"),
            source=row.get("source") or None,
            reply_text=row.get("reply_text"),
            verified=bool(row.get("verified")),
            id_synthetic=bool(row.get("id_synthetic")),
            accepted_at=row.get("accepted_at"),
            updated_at=row.get("updated_at"),
            import_batch_id=row.get("import_batch_id"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncQueueItem:
    """One per-business synchronization request"""
    item_id: int
    business_id: str
    place_id: Optional[str]
    priority: int
    state: QueueState
    retry_count: int = 0
    last_error: Optional[str] = None
    requested_at: Optional[str] = None
    next_eligible_at: Optional[str] = None
    started_at: Optional[str] = None
    processed_at: Optional[str] = None
    results: Optional[Dict[str, Any]] = None
    business_name: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SyncQueueItem":
        results = row.get("results")
        return cls(
            item_id=row["item_id"],
            business_id=row["business_id"],
            place_id=row.get("place_id"),
            priority=row["priority"],
            state=QueueState(row["state"]),
            retry_count=row.get("retry_count") or 0,
            last_error=row.get("last_error"),
            requested_at=row.get("requested_at"),
            next_eligible_at=row.get("next_eligible_at"),
            started_at=row.get("started_at"),
            processed_at=row.get("processed_at"),
            results=json.loads(results) if results else None,
            business_name=row.get("business_name"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


@dataclass
class ImportBatch:
    """Provenance and outcome record of one bulk operation"""
    batch_id: str
    batch_type: BatchType
    source: str
    status: BatchStatus
    expected_count: int = 0
    tallies: Dict[str, int] = field(default_factory=empty_tallies)
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    force_reprocessed: int = 0
    created_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def processed_count(self) -> int:
        return sum(self.tallies.get(name, 0) for name in TALLY_FIELDS)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "batch_type": self.batch_type.value,
            "source": self.source,
            "status": self.status.value,
            "expected_count": self.expected_count,
            "tallies": dict(self.tallies),
            "processed_count": self.processed_count,
            "errors": list(self.errors),
            "metadata": dict(self.metadata),
            "force_reprocessed": self.force_reprocessed,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }


@dataclass
class MatchAlternative:
    """A ranked business candidate"""
    business_id: str
    name: str
    confidence: int


@dataclass
class BusinessMatchCandidate:
    """Fuzzy matcher result; never persisted"""
    source_name: str
    business_id: Optional[str]
    confidence: int
    alternatives: List[MatchAlternative] = field(default_factory=list)
    method: str = "none"

    @property
    def matched(self) -> bool:
        return self.business_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

"""
Review deduplication.

Two tiers, evaluated in order for every candidate:

1. Exact: same business, same source, same review id. Review ids are only
   unique within their source, so a Yelp "123" and a Facebook "123" are
   different reviews. Duplicate, unless the candidate carries a field the
   stored record lacks, in which case the stored record is updated in place.
2. Fuzzy: same normalized author, same rating and normalized text
   similarity >= threshold. Pairs where both sides carry real ids from the
   same source are never fuzzy-compared: the source says they differ.

The candidate is checked against the stored reviews of the business and
against records accepted earlier in the same batch. No I/O happens here.

find_duplicates() runs the same rules over an already-stored corpus, and
plan_removals() picks which copy of each duplicate group survives.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Any, Tuple

from review_pipeline.models import Outcome, ReviewRecord
from review_pipeline.similarity import normalize_text, similarity

SIMILARITY_THRESHOLD = 0.90

# Fields an incoming record may fill in on a stored one.
ENRICHABLE_FIELDS = ("text", "author_name", "published_at", "reply_text", "verified")

# Which copy of a duplicate to keep; unknown sources rank 0.
SOURCE_AUTHORITY = {
    "gmb_api": 10,
    "gmb_import": 9,
    "facebook": 5,
    "yelp": 5,
    "direct": 3,
    "manual": 1,
}

ReviewKey = Tuple[str, str]


def review_key(record: ReviewRecord) -> ReviewKey:
    """(source, review_id); untagged records share the '' source."""
    return (record.source or "", record.review_id)


@dataclass
class DedupDecision:
    """Result of a dedup check"""
    outcome: Outcome
    match: Optional[ReviewRecord] = None
    updates: Dict[str, Any] = field(default_factory=dict)
    reason: str = ""
    score: float = 0.0


def _is_blank(field_name: str, value) -> bool:
    if field_name == "author_name":
        return not value or value == "Anonymous"
    if field_name == "verified":
        return not value
    return value is None or (isinstance(value, str) and not value.strip())


def enrichment(stored: ReviewRecord, candidate: ReviewRecord) -> Dict[str, Any]:
    """Fields that are blank on *stored* but present on *candidate*."""
    updates = {}
    for name in ENRICHABLE_FIELDS:
        new_value = getattr(candidate, name)
        if _is_blank(name, getattr(stored, name)) and not _is_blank(name, new_value):
            updates[name] = new_value
    return updates


def _both_source_ids(a: ReviewRecord, b: ReviewRecord) -> bool:
    return (not a.id_synthetic and not b.id_synthetic
            and (a.source or "") == (b.source or ""))


class Deduplicator:
    """
    Dedup state for one business within one ingestion pass.

    Holds an index of the stored reviews plus whatever was accepted so far,
    keyed by (source, review id) and by normalized author.
    """

    def __init__(self, existing: Iterable[ReviewRecord] = (),
                 threshold: float = SIMILARITY_THRESHOLD):
        self.threshold = threshold
        self._by_id: Dict[ReviewKey, ReviewRecord] = {}
        self._by_author: Dict[str, List[ReviewRecord]] = {}
        self._normalized_text: Dict[ReviewKey, str] = {}
        self._author_key: Dict[ReviewKey, str] = {}
        for record in existing:
            self.remember(record)

    def __len__(self) -> int:
        return len(self._by_id)

    def remember(self, record: ReviewRecord) -> None:
        """Add an accepted record (or replace one after an in-place update)."""
        key = review_key(record)
        previous = self._by_id.get(key)
        if previous is not None:
            # Look up by the key it was filed under; the record may have changed since.
            bucket = self._by_author.get(self._author_key[key], [])
            bucket[:] = [r for r in bucket if r is not previous]
        author = normalize_text(record.author_name)
        self._by_id[key] = record
        self._author_key[key] = author
        self._by_author.setdefault(author, []).append(record)
        self._normalized_text[key] = normalize_text(record.text)

    def decide(self, candidate: ReviewRecord) -> DedupDecision:
        stored = self._by_id.get(review_key(candidate))
        if stored is not None:
            updates = enrichment(stored, candidate)
            if updates:
                return DedupDecision(Outcome.UPDATED, stored, updates, "exact id, enriched", 1.0)
            return DedupDecision(Outcome.DUPLICATE, stored, reason="exact id", score=1.0)

        author = normalize_text(candidate.author_name)
        text = normalize_text(candidate.text)
        for other in self._by_author.get(author, ()):
            if other.rating != candidate.rating:
                continue
            if _both_source_ids(candidate, other):
                continue
            score = similarity(text, self._normalized_text[review_key(other)])
            if score >= self.threshold:
                return DedupDecision(Outcome.DUPLICATE, other,
                                     reason=f"fuzzy {score:.2f}", score=score)

        return DedupDecision(Outcome.CREATED)


def decide(candidate: ReviewRecord,
           existing: Iterable[ReviewRecord],
           accepted_in_batch: Iterable[ReviewRecord] = (),
           threshold: float = SIMILARITY_THRESHOLD) -> DedupDecision:
    """One-shot form: dedup *candidate* against stored records and batch siblings."""
    dedup = Deduplicator(existing, threshold)
    for record in accepted_in_batch:
        dedup.remember(record)
    return dedup.decide(candidate)


# === Stored-corpus scan ===

@dataclass
class DuplicatePair:
    """A stored review that duplicates an earlier-accepted one"""
    primary: ReviewRecord
    duplicate: ReviewRecord
    score: float
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primary": _summary(self.primary),
            "duplicate": _summary(self.duplicate),
            "score": round(self.score, 3),
            "reason": self.reason,
        }


def _summary(record: ReviewRecord) -> Dict[str, Any]:
    return {
        "review_id": record.review_id,
        "source": record.source,
        "author_name": record.author_name,
        "rating": record.rating,
        "text": record.text[:100],
        "accepted_at": record.accepted_at,
    }


def find_duplicates(reviews: Iterable[ReviewRecord],
                    threshold: float = SIMILARITY_THRESHOLD) -> List[DuplicatePair]:
    """
    Pairs of stored reviews that the ingestion rules would have merged.

    Reviews are replayed oldest-accepted first; each one that matches an
    earlier survivor is reported against it and not indexed itself, so every
    duplicate appears in exactly one pair.
    """
    ordered = sorted(reviews, key=lambda r: (r.accepted_at or "", r.source or "", r.review_id))
    dedup = Deduplicator(threshold=threshold)
    pairs: List[DuplicatePair] = []
    for record in ordered:
        decision = dedup.decide(record)
        if decision.outcome == Outcome.CREATED:
            dedup.remember(record)
        else:
            pairs.append(DuplicatePair(decision.match, record, decision.score, decision.reason))
    return pairs


def authority(record: ReviewRecord) -> int:
    return SOURCE_AUTHORITY.get(record.source or "", 0)


@dataclass
class RemovalAction:
    """Keep or remove one review of a duplicate group"""
    action: str
    review: ReviewRecord
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "review_id": self.review.review_id,
            "source": self.review.source,
            "reason": self.reason,
        }


def plan_removals(pairs: Iterable[DuplicatePair]) -> List[RemovalAction]:
    """
    Keep the highest-authority copy of each duplicate group and remove the
    rest. Equal authority keeps the most recently accepted copy.
    """
    groups: Dict[ReviewKey, List[ReviewRecord]] = {}
    for pair in pairs:
        group = groups.setdefault(review_key(pair.primary), [pair.primary])
        group.append(pair.duplicate)

    actions: List[RemovalAction] = []
    for group in groups.values():
        keep = max(group, key=lambda r: (authority(r), r.accepted_at or ""))
        for record in group:
            if record is keep:
                continue
            if authority(keep) > authority(record):
                reason = f"keeping {keep.source} over {record.source} (higher authority)"
            else:
                reason = "keeping more recent review"
            actions.append(RemovalAction("remove", record, reason))
        actions.append(RemovalAction("keep", keep, f"{len(group) - 1} duplicate(s) removed"))
    return actions

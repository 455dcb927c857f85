"""
Business matching for records that name a business by free text.

A stored place identifier always wins. Otherwise candidates are ranked by
normalized-name similarity: anything under the floor is dropped, and only a
best candidate at or above the auto-accept threshold is matched during
unattended processing. Lower-scoring candidates are returned as
alternatives for manual disambiguation.

Everything here is pure; the directory snapshot is passed in.
"""

from typing import Iterable, List, Optional, Sequence, Tuple

from review_pipeline.errors import DirectoryNotLoadedError
from review_pipeline.models import Business, BusinessMatchCandidate, MatchAlternative
from review_pipeline.similarity import normalize_name, similarity

CANDIDATE_FLOOR = 0.30
AUTO_ACCEPT_THRESHOLD = 0.70
MAX_ALTERNATIVES = 5


def _score_candidates(name: str, businesses: Iterable[Business],
                      floor: float) -> List[Tuple[float, Business]]:
    target = normalize_name(name)
    if not target:
        return []

    scored = []
    for index, business in enumerate(businesses):
        score = similarity(target, normalize_name(business.name))
        if score < floor:
            continue
        scored.append((score, index, business))

    # Stable on ties: directory order.
    scored.sort(key=lambda entry: (-entry[0], entry[1]))
    return [(score, business) for score, _, business in scored]


def _alternative(score: float, business: Business) -> MatchAlternative:
    return MatchAlternative(business.business_id, business.name, int(round(score * 100)))


def rank_candidates(name: str, businesses: Iterable[Business],
                    floor: float = CANDIDATE_FLOOR) -> List[MatchAlternative]:
    """Rank businesses by normalized-name similarity, best first, dropping those under *floor*."""
    return [_alternative(score, b) for score, b in _score_candidates(name, businesses, floor)]


def match_business(source_name: str,
                   businesses: Optional[Sequence[Business]],
                   place_id: Optional[str] = None,
                   auto_accept: float = AUTO_ACCEPT_THRESHOLD,
                   floor: float = CANDIDATE_FLOOR,
                   max_alternatives: int = MAX_ALTERNATIVES) -> BusinessMatchCandidate:
    """
    Resolve a free-text business reference against the directory.

    Args:
        source_name: Business name as it appears on the incoming record
        businesses: Directory snapshot; None means the directory is not loaded
        place_id: External place identifier from the record, if any
        auto_accept: Minimum similarity for an automatic match
        floor: Minimum similarity for a candidate to be surfaced at all
        max_alternatives: Cap on the alternatives list

    Returns:
        BusinessMatchCandidate with confidence 0-100

    Raises:
        DirectoryNotLoadedError: businesses is None
    """
    if businesses is None:
        raise DirectoryNotLoadedError(
            f"Cannot match {source_name!r}: business directory is not loaded"
        )

    if place_id:
        for business in businesses:
            if business.place_id and business.place_id == place_id:
                return BusinessMatchCandidate(
                    source_name=source_name,
                    business_id=business.business_id,
                    confidence=100,
                    alternatives=[],
                    method="place_id",
                )

    scored = _score_candidates(source_name, businesses, floor)
    if not scored:
        return BusinessMatchCandidate(source_name, None, 0, [], "none")

    best_score, best = scored[0]
    if best_score >= auto_accept:
        return BusinessMatchCandidate(
            source_name=source_name,
            business_id=best.business_id,
            confidence=int(round(best_score * 100)),
            alternatives=[_alternative(s, b) for s, b in scored[1:1 + max_alternatives]],
            method="name",
        )

    return BusinessMatchCandidate(
        source_name=source_name,
        business_id=None,
        confidence=int(round(best_score * 100)),
        alternatives=[_alternative(s, b) for s, b in scored[:max_alternatives]],
        method="name",
    )

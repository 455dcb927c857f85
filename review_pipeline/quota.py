"""
Tier quotas.

max_import caps how many accepted reviews a business may hold; it is
checked before every insert. max_display gates read-time presentation and
is carried here only so the table lives in one place. None means unlimited.
"""

import copy
import logging
from typing import Dict, Any, Optional

from review_pipeline.models import Outcome, PlanTier

log = logging.getLogger("pipeline")

TIER_QUOTAS: Dict[PlanTier, Dict[str, Optional[int]]] = {
    PlanTier.FREE: {"max_import": 50, "max_display": 3},
    PlanTier.STARTER: {"max_import": 200, "max_display": 8},
    PlanTier.PRO: {"max_import": 1000, "max_display": 15},
    PlanTier.POWER: {"max_import": None, "max_display": None},
}


def build_quota_table(overrides: Optional[Dict[str, Any]] = None
                      ) -> Dict[PlanTier, Dict[str, Optional[int]]]:
    """Return TIER_QUOTAS with per-tier overrides (from the quotas config section) applied."""
    table = copy.deepcopy(TIER_QUOTAS)
    for tier_name, values in (overrides or {}).items():
        try:
            tier = PlanTier.parse(tier_name)
        except ValueError:
            log.warning("Ignoring quota override for unknown tier '%s'", tier_name)
            continue
        for key in ("max_import", "max_display"):
            if isinstance(values, dict) and key in values:
                table[tier][key] = values[key]
    return table


def quota_for(tier, table: Optional[Dict[PlanTier, Dict[str, Optional[int]]]] = None
              ) -> Dict[str, Optional[int]]:
    return dict((table or TIER_QUOTAS)[PlanTier.parse(tier)])


def check_quota(tier, accepted_count: int,
                table: Optional[Dict[PlanTier, Dict[str, Optional[int]]]] = None) -> Outcome:
    """ACCEPTED if one more review fits under max_import, else QUOTA_SKIPPED."""
    cap = quota_for(tier, table)["max_import"]
    if cap is not None and accepted_count >= cap:
        return Outcome.QUOTA_SKIPPED
    return Outcome.ACCEPTED


def remaining(tier, accepted_count: int,
              table: Optional[Dict[PlanTier, Dict[str, Optional[int]]]] = None) -> Optional[int]:
    """Reviews still importable for the tier, or None when unlimited."""
    cap = quota_for(tier, table)["max_import"]
    if cap is None:
        return None
    return max(cap - accepted_count, 0)

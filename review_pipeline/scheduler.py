"""
Scheduler call patterns: who to sync next, at what priority, and when to
top up the queue.

Priority = tier weight * 10 + recency bonus, so plan tier always dominates
and, within a tier, never-synced beats stale beats recently synced.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional, List

from review_pipeline.directory_db import DirectoryDB, from_iso
from review_pipeline.models import Business, PlanTier, SyncStatus
from review_pipeline.sync_queue import SyncQueue

log = logging.getLogger("pipeline")

TIER_PRIORITY = {
    PlanTier.POWER: 10,
    PlanTier.PRO: 7,
    PlanTier.STARTER: 5,
    PlanTier.FREE: 3,
}

NEVER_SYNCED_BONUS = 3
STALE_BONUS = 2


def compute_priority(tier, last_sync_at: Optional[str],
                     now: Optional[datetime] = None,
                     stale_after_hours: float = 24) -> int:
    """Numeric queue priority for a business; higher is served sooner."""
    now = now or datetime.now(timezone.utc)
    base = TIER_PRIORITY[PlanTier.parse(tier)] * 10
    synced = from_iso(last_sync_at)
    if synced is None:
        return base + NEVER_SYNCED_BONUS
    if now - synced >= timedelta(hours=stale_after_hours):
        return base + STALE_BONUS
    return base


def select_for_sync(db: DirectoryDB, limit: int,
                    include_recent: bool = False,
                    now: Optional[datetime] = None,
                    stale_after_hours: float = 24) -> List[Business]:
    """
    Businesses due for a sync, best priority first.

    Skips businesses without a place id, with sync disabled, currently
    syncing, or already queued; recently synced ones too unless
    include_recent. Ties go to the business synced longest ago.
    """
    now = now or datetime.now(timezone.utc)
    queued = {
        r["business_id"] for r in db.backend.fetchall(
            "SELECT business_id FROM sync_queue WHERE state IN ('pending', 'processing')"
        )
    }
    cutoff = now - timedelta(hours=stale_after_hours)

    due = []
    for business in db.list_businesses(sync_enabled_only=True):
        if not business.place_id or business.business_id in queued:
            continue
        if business.sync_status == SyncStatus.SYNCING:
            continue
        synced = from_iso(business.last_sync_at)
        if synced is not None and synced > cutoff and not include_recent:
            continue
        due.append(business)

    def sort_key(b: Business):
        return (-compute_priority(b.plan_tier, b.last_sync_at, now, stale_after_hours),
                b.last_sync_at or "")

    due.sort(key=sort_key)
    return due[:limit]


def enqueue_businesses(queue: SyncQueue, businesses: List[Business],
                       now: Optional[datetime] = None,
                       stale_after_hours: float = 24) -> Dict[str, int]:
    """Enqueue *businesses*, one enqueue_bulk call per computed priority."""
    by_priority: Dict[int, List[Business]] = defaultdict(list)
    for business in businesses:
        priority = compute_priority(business.plan_tier, business.last_sync_at,
                                    now, stale_after_hours)
        by_priority[priority].append(business)

    totals = {"added": 0, "already_queued": 0}
    for priority in sorted(by_priority, reverse=True):
        result = queue.enqueue_bulk(by_priority[priority], priority)
        totals["added"] += result["added"]
        totals["already_queued"] += result["already_queued"]
    return totals


def refill(queue: SyncQueue, db: DirectoryDB,
           refill_below: Optional[int] = None,
           refill_target: Optional[int] = None,
           max_per_refill: Optional[int] = None,
           config: Optional[Dict[str, Any]] = None,
           now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Top up the queue when it runs low.

    Does nothing while pending_count >= refill_below. Otherwise adds up to
    min(refill_target - pending_count, max_per_refill) due businesses.
    Thresholds not passed explicitly come from the scheduler config section.
    """
    sched_cfg = (config or {}).get("scheduler", {}) or {}
    if refill_below is None:
        refill_below = int(sched_cfg.get("refill_below", 500))
    if refill_target is None:
        refill_target = int(sched_cfg.get("refill_target", 600))
    if max_per_refill is None:
        max_per_refill = int(sched_cfg.get("max_per_refill", 300))
    stale_after = float(sched_cfg.get("stale_after_hours", 24))

    pending = queue.status()["pending_count"]
    result = {"pending_count": pending, "selected": 0, "added": 0, "already_queued": 0}
    if pending >= refill_below:
        log.debug(f"Queue has {pending} pending item(s); no refill needed")
        return result

    room = min(refill_target - pending, max_per_refill)
    if room <= 0:
        return result

    businesses = select_for_sync(db, room, now=now, stale_after_hours=stale_after)
    result["selected"] = len(businesses)
    result.update(enqueue_businesses(queue, businesses, now, stale_after))
    log.info(f"Refill: {result['added']} added, {pending} were pending")
    return result

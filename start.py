#!/usr/bin/env python3
"""
Review Ingestion Pipeline
=========================

Main entry point for queue, import and directory management commands.
"""

import json
import sys
from pathlib import Path

from review_pipeline.cli import parse_arguments
from review_pipeline.config import load_config


def _get_db_path(config, args):
    """Resolve database path from CLI args or config."""
    if getattr(args, "db_path", None):
        return args.db_path
    return config.get("db_path", "directory.db")


def _open_db(config, args):
    from review_pipeline.directory_db import DirectoryDB
    return DirectoryDB(_get_db_path(config, args))


def _print_tallies(tallies, indent="  "):
    for name, count in tallies.items():
        print(f"{indent}{name + ':':<19}{count}")


# ------------------------------------------------------------------
# Sync queue commands
# ------------------------------------------------------------------

def _run_enqueue(config, args):
    """Run the enqueue command."""
    from review_pipeline.scheduler import enqueue_businesses
    from review_pipeline.sync_queue import SyncQueue

    db = _open_db(config, args)
    try:
        if getattr(args, "all_businesses", False):
            businesses = [b for b in db.list_businesses(sync_enabled_only=True) if b.place_id]
        else:
            ids = getattr(args, "business_ids", None) or []
            if not ids:
                print("Error: Give business IDs or use --all")
                sys.exit(1)
            businesses = []
            for business_id in ids:
                business = db.get_business(business_id)
                if business is None:
                    print(f"  {business_id}: not found, skipped")
                elif not business.place_id:
                    print(f"  {business_id}: no place ID, skipped")
                else:
                    businesses.append(business)

        queue = SyncQueue(db, config)
        priority = getattr(args, "priority", None)
        if priority is not None:
            result = queue.enqueue_bulk(businesses, priority)
        else:
            stale_after = config.get("scheduler", {}).get("stale_after_hours", 24)
            result = enqueue_businesses(queue, businesses, stale_after_hours=stale_after)
        print(f"Added {result['added']}, already queued {result['already_queued']}.")
    finally:
        db.close()


def _run_drain(config, args):
    """Run the drain command."""
    from review_pipeline.processor import QueueProcessor

    db_path = _get_db_path(config, args)
    if getattr(args, "refill", False):
        _run_refill(config, args)

    processor = QueueProcessor(db_path, config,
                               concurrency=getattr(args, "concurrency", None))
    try:
        summary = processor.drain(max_items=getattr(args, "max_items", None))
    finally:
        processor.shutdown()

    print("Queue Drain")
    print("=" * 40)
    print(f"  Items processed:  {summary['processed']}")
    print(f"  Completed:        {summary['completed']}")
    print(f"  Retrying:         {summary['retried']}")
    print(f"  Failed:           {summary['failed']}")
    print(f"  Batch:            {summary['batch_id'] or '-'}")
    print(f"  Duration:         {summary['duration_seconds']}s")
    print("\nRecord tallies:")
    _print_tallies(summary["tallies"])


def _run_sync_now(config, args):
    """Run the sync-now command."""
    from review_pipeline.errors import BusinessNotFoundError
    from review_pipeline.processor import QueueProcessor

    processor = QueueProcessor(_get_db_path(config, args), config, concurrency=1)
    try:
        result = processor.sync_now(args.business_id)
    except BusinessNotFoundError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        processor.shutdown()

    if result["status"] == "already_processing":
        print(f"Business {args.business_id} is already being synced.")
        return
    print(f"Sync of {args.business_id}: {result['status']} (batch {result['batch_id']})")
    _print_tallies(result["tallies"])
    for error in result.get("errors", []):
        print(f"  error: {error}")
    if result["status"] != "completed":
        sys.exit(1)


def _run_queue_status(config, args):
    """Run the queue-status command."""
    from review_pipeline.sync_queue import SyncQueue

    db = _open_db(config, args)
    try:
        status = SyncQueue(db, config).status()
        print("Sync Queue")
        print("=" * 40)
        print(f"  Pending:          {status['pending_count']}")
        print(f"  Processing:       {status['processing_count']}")
        print(f"  Waiting to retry: {status['retry_waiting_count']}")
        print(f"  Completed (24h):  {status['recent_completed']}")
        print(f"  Failed (24h):     {status['recent_failed']}")
    finally:
        db.close()


def _run_queue_items(config, args):
    """Run the queue-items command."""
    from review_pipeline.sync_queue import SyncQueue

    db = _open_db(config, args)
    try:
        items = SyncQueue(db, config).list_items(
            state=getattr(args, "state", None), limit=getattr(args, "limit", 50),
        )
        if not items:
            print("No queue items found.")
            return
        print(f"{'ID':<7} {'Business':<20} {'State':<17} {'Prio':<5} {'Tries':<6} {'Next eligible':<27}")
        print("=" * 85)
        for item in items:
            print(f"{item.item_id:<7} {item.business_id:<20} {item.state.value:<17} "
                  f"{item.priority:<5} {item.retry_count:<6} {item.next_eligible_at or '-':<27}")
            if item.last_error:
                print(f"        error: {item.last_error}")
    finally:
        db.close()


def _run_release_stuck(config, args):
    """Run the release-stuck command."""
    from review_pipeline.sync_queue import SyncQueue

    older_than = getattr(args, "older_than", None)
    if older_than is None:
        older_than = config.get("queue", {}).get("stuck_after_seconds", 300)
    db = _open_db(config, args)
    try:
        count = SyncQueue(db, config).release_stuck(older_than)
        print(f"Released {count} stuck item(s).")
    finally:
        db.close()


def _run_retry_failed(config, args):
    """Run the retry-failed command."""
    from review_pipeline.sync_queue import SyncQueue

    db = _open_db(config, args)
    try:
        ids = getattr(args, "business_ids", None) or None
        count = SyncQueue(db, config).retry_failed(ids)
        print(f"Re-queued {count} failed item(s).")
    finally:
        db.close()


def _run_cancel_pending(config, args):
    """Run the cancel-pending command."""
    from review_pipeline.sync_queue import SyncQueue

    ids = getattr(args, "business_ids", None) or None
    if not getattr(args, "confirm", False):
        target = ", ".join(ids) if ids else "ALL businesses"
        answer = input(f"Cancel pending syncs for {target}? [y/N]: ")
        if answer.lower() != "y":
            print("Cancelled.")
            return

    db = _open_db(config, args)
    try:
        count = SyncQueue(db, config).cancel_pending(ids)
        print(f"Removed {count} pending item(s).")
    finally:
        db.close()


def _run_purge_queue(config, args):
    """Run the purge-queue command."""
    from review_pipeline.sync_queue import SyncQueue

    db = _open_db(config, args)
    try:
        count = SyncQueue(db, config).purge_finished(args.older_than_hours)
        print(f"Purged {count} finished item(s).")
    finally:
        db.close()


def _run_sync_history(config, args):
    """Run the sync-history command."""
    from review_pipeline.errors import BusinessNotFoundError
    from review_pipeline.sync_queue import SyncQueue

    business_id = getattr(args, "business_id", None)
    limit = getattr(args, "limit", None)
    db = _open_db(config, args)
    try:
        queue = SyncQueue(db, config)
        if business_id:
            try:
                db.require_business(business_id)
            except BusinessNotFoundError as e:
                print(f"Error: {e}")
                sys.exit(1)
            items = queue.history(business_id, limit=limit or 10)
        else:
            items = queue.recent_activity(limit=limit or 20)
    finally:
        db.close()

    if not items:
        print("No sync history found.")
        return
    print(f"{'ID':<7} {'Business':<20} {'State':<17} {'Requested':<20} {'Finished':<20} {'Created':<8}")
    print("=" * 95)
    for item in items:
        created = ((item.results or {}).get("tallies") or {}).get("created", "-")
        print(f"{item.item_id:<7} {(item.business_name or item.business_id)[:20]:<20} "
              f"{item.state.value:<17} {(item.requested_at or '-')[:19]:<20} "
              f"{(item.processed_at or '-')[:19]:<20} {created!s:<8}")
        if item.last_error:
            print(f"        error: {item.last_error}")


def _run_refill(config, args):
    """Run the refill command."""
    from review_pipeline.scheduler import refill
    from review_pipeline.sync_queue import SyncQueue

    db = _open_db(config, args)
    try:
        result = refill(SyncQueue(db, config), db, config=config)
        print(f"Refill: {result['added']} added "
              f"({result['selected']} due, {result['pending_count']} were pending).")
    finally:
        db.close()


# ------------------------------------------------------------------
# Import commands
# ------------------------------------------------------------------

def _build_mapping(args):
    """FieldMapping and source tag from --preset, --mapping and --source."""
    from review_pipeline.bulk_import import resolve_mapping

    return resolve_mapping(
        preset=getattr(args, "preset", None),
        columns=getattr(args, "mapping", None),
        source=getattr(args, "source", None),
    )


def _run_import_csv(config, args):
    """Run the import-csv command."""
    from review_pipeline.bulk_import import BulkImporter, read_csv_rows
    from review_pipeline.errors import LedgerError

    csv_path = Path(args.csv_path)
    if not csv_path.exists():
        print(f"CSV file not found: {csv_path}")
        sys.exit(1)

    try:
        mapping, source = _build_mapping(args)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    rows = read_csv_rows(str(csv_path))
    if rows:
        missing = mapping.missing_columns(rows[0].keys())
        if missing:
            print(f"Warning: columns not in file, treated as absent: {', '.join(missing)}")

    db = _open_db(config, args)
    try:
        batch = BulkImporter(db, config).run(
            rows, mapping,
            source=source,
            batch_type=getattr(args, "batch_type", "bulk-csv"),
            batch_id=getattr(args, "batch_id", None),
            force=getattr(args, "force", False),
            metadata={"file": csv_path.name},
        )
    except LedgerError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        db.close()

    print(f"Imported {csv_path.name}: batch {batch.batch_id} {batch.status.value}")
    _print_tallies(batch.tallies)
    if batch.errors:
        print(f"\nErrors ({len(batch.errors)}):")
        for error in batch.errors[:20]:
            print(f"  {error}")


def _run_batches(config, args):
    """Run the batches command."""
    from review_pipeline.ledger import ImportLedger

    db = _open_db(config, args)
    try:
        batches = ImportLedger(db).list_batches(
            status=getattr(args, "status", None),
            batch_type=getattr(args, "batch_type", None),
            limit=getattr(args, "limit", 20),
        )
        if not batches:
            print("No import batches found.")
            return
        print(f"{'Batch':<34} {'Type':<15} {'Status':<11} {'Created':<8} {'Dup':<6} "
              f"{'Quota':<6} {'Invalid':<8} {'Started':<20}")
        print("=" * 112)
        for b in batches:
            t = b.tallies
            print(f"{b.batch_id:<34} {b.batch_type.value:<15} {b.status.value:<11} "
                  f"{t['created']:<8} {t['duplicate']:<6} {t['quota_skipped']:<6} "
                  f"{t['validation_failed']:<8} {(b.created_at or '')[:19]:<20}")
    finally:
        db.close()


def _run_batch_show(config, args):
    """Run the batch-show command."""
    from review_pipeline.ledger import ImportLedger

    db = _open_db(config, args)
    try:
        batch = ImportLedger(db).get_batch(args.batch_id)
        if batch is None:
            print(f"Import batch {args.batch_id} not found.")
            sys.exit(1)
        print(json.dumps(batch.to_dict(), ensure_ascii=False, indent=2))
    finally:
        db.close()


# ------------------------------------------------------------------
# Directory commands
# ------------------------------------------------------------------

def _run_business_add(config, args):
    """Run the business-add command."""
    db = _open_db(config, args)
    try:
        business = db.upsert_business(
            args.business_id, args.name,
            place_id=getattr(args, "place_id", None),
            plan_tier=getattr(args, "tier", "free"),
            sync_enabled=getattr(args, "sync_enabled", True),
        )
        print(f"Saved business {business.business_id}: {business.name} "
              f"({business.plan_tier.value}, place {business.place_id or '-'})")
    finally:
        db.close()


def _run_business_sync(config, args):
    """Run the business-sync command."""
    from review_pipeline.errors import BusinessNotFoundError

    db = _open_db(config, args)
    try:
        business = db.set_sync_enabled(args.business_id, args.enabled)
    except BusinessNotFoundError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        db.close()
    state = "enabled" if business.sync_enabled else "disabled"
    print(f"Scheduled sync {state} for {business.business_id}.")


def _run_businesses(config, args):
    """Run the businesses command."""
    db = _open_db(config, args)
    try:
        businesses = db.list_businesses()
        if not businesses:
            print("No businesses registered.")
            return
        print(f"{'ID':<20} {'Name':<30} {'Tier':<8} {'Reviews':<8} {'Avg':<5} "
              f"{'Status':<8} {'Last sync':<20}")
        print("=" * 103)
        for b in businesses:
            avg = f"{b.average_rating:.1f}" if b.average_rating is not None else "-"
            print(f"{b.business_id:<20} {b.name[:30]:<30} {b.plan_tier.value:<8} "
                  f"{b.review_count:<8} {avg:<5} {b.sync_status.value:<8} "
                  f"{(b.last_sync_at or 'never')[:19]:<20}")
            if b.last_sync_error:
                print(f"    error: {b.last_sync_error}")
    finally:
        db.close()


def _run_find_duplicates(config, args):
    """Run the find-duplicates command."""
    from review_pipeline.errors import BusinessNotFoundError
    from review_pipeline.ingest import ReviewIngestor

    remove = getattr(args, "remove", False)
    db = _open_db(config, args)
    try:
        summary = ReviewIngestor(db, config).remove_duplicates(
            args.business_id, dry_run=not remove)
    except BusinessNotFoundError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        db.close()

    removals = [a for a in summary["actions"] if a["action"] == "remove"]
    if not removals:
        print(f"No duplicate reviews found for {args.business_id}.")
        return
    for action in summary["actions"]:
        marker = "keep  " if action["action"] == "keep" else "remove"
        print(f"  {marker} {action['source'] or '-':<12} {action['review_id']:<30} "
              f"{action['reason']}")
    if remove:
        print(f"Removed {summary['removed']} duplicate review(s).")
    else:
        print(f"{len(removals)} duplicate review(s) found. Re-run with --remove to delete them.")


def _run_match(config, args):
    """Run the match command."""
    from review_pipeline.matcher import match_business

    import_cfg = config.get("import", {})
    db = _open_db(config, args)
    try:
        candidate = match_business(
            args.name, db.list_businesses(),
            place_id=getattr(args, "place_id", None),
            auto_accept=import_cfg.get("auto_match_threshold", 0.70),
            floor=import_cfg.get("candidate_floor", 0.30),
            max_alternatives=import_cfg.get("max_alternatives", 5),
        )
    finally:
        db.close()

    if candidate.matched:
        print(f"Matched '{args.name}' -> {candidate.business_id} "
              f"({candidate.confidence}%, {candidate.method})")
    else:
        print(f"No confident match for '{args.name}'.")
    if candidate.alternatives:
        print("Alternatives:")
        for alt in candidate.alternatives:
            print(f"  {alt.confidence:>3}%  {alt.business_id}: {alt.name}")


def _run_db_stats(config, args):
    """Run the db-stats command."""
    db = _open_db(config, args)
    try:
        stats = db.get_stats()
        print("Database Statistics")
        print("=" * 40)
        print(f"  Businesses:       {stats.get('businesses_count', 0)}")
        print(f"  Reviews:          {stats.get('reviews_count', 0)}")
        print(f"  Queue items:      {stats.get('sync_queue_count', 0)}")
        print(f"  Import batches:   {stats.get('import_batches_count', 0)}")
        size_bytes = stats.get("db_size_bytes", 0)
        if size_bytes > 1024 * 1024:
            print(f"  DB size:          {size_bytes / (1024*1024):.1f} MB")
        else:
            print(f"  DB size:          {size_bytes / 1024:.1f} KB")

        by_state = stats.get("queue_by_state", {})
        if by_state:
            print("\nQueue by state:")
            for state, count in sorted(by_state.items()):
                print(f"  {state}: {count}")

        businesses = stats.get("businesses", [])
        if businesses:
            print("\nPer-business breakdown:")
            for b in businesses:
                print(f"  {b['business_id']}: {b.get('name', '?')} "
                      f"({b.get('review_count', 0)} reviews, {b.get('plan_tier')}, "
                      f"last sync: {b.get('last_sync_at') or 'never'})")
    finally:
        db.close()


def _run_logs(config, args):
    """Run the logs viewer command."""
    log_dir = config.get("log_dir", "logs")
    log_file = config.get("log_file", "pipeline.log")
    log_path = Path(log_dir) / log_file

    if not log_path.exists():
        print(f"Log file not found: {log_path}")
        sys.exit(1)

    lines = getattr(args, "lines", 50)
    follow = getattr(args, "follow", False)
    filters = {
        "level": (getattr(args, "level", None) or "").upper(),
        "batch_id": getattr(args, "batch", None),
        "business_id": getattr(args, "business", None),
    }
    filters = {name: value for name, value in filters.items() if value}

    def _wanted(line):
        if not filters:
            return True
        try:
            entry = json.loads(line)
            return all(entry.get(name) == value for name, value in filters.items())
        except (json.JSONDecodeError, AttributeError):
            return True

    with open(log_path, "r", encoding="utf-8") as f:
        all_lines = f.readlines()
    tail = all_lines[-lines:] if lines < len(all_lines) else all_lines
    for line in tail:
        line = line.rstrip()
        if line and _wanted(line):
            print(line)

    if follow:
        import time
        with open(log_path, "r", encoding="utf-8") as f:
            f.seek(0, 2)  # seek to end
            try:
                while True:
                    line = f.readline()
                    if not line:
                        time.sleep(0.3)
                        continue
                    line = line.rstrip()
                    if _wanted(line):
                        print(line)
            except KeyboardInterrupt:
                pass


def main():
    """Main function to parse arguments and run the selected command."""
    args = parse_arguments()
    config = load_config(args.config)

    # Setup structured logging (skip for 'logs' viewer, it reads raw files)
    if args.command != "logs":
        from review_pipeline.log_manager import setup_logging
        setup_logging(
            level=config.get("log_level", "INFO"),
            log_dir=config.get("log_dir", "logs"),
            log_file=config.get("log_file", "pipeline.log"),
        )

    commands = {
        "enqueue": _run_enqueue,
        "drain": _run_drain,
        "sync-now": _run_sync_now,
        "queue-status": _run_queue_status,
        "queue-items": _run_queue_items,
        "release-stuck": _run_release_stuck,
        "retry-failed": _run_retry_failed,
        "cancel-pending": _run_cancel_pending,
        "refill": _run_refill,
        "purge-queue": _run_purge_queue,
        "sync-history": _run_sync_history,
        "import-csv": _run_import_csv,
        "batches": _run_batches,
        "batch-show": _run_batch_show,
        "business-add": _run_business_add,
        "business-sync": _run_business_sync,
        "businesses": _run_businesses,
        "find-duplicates": _run_find_duplicates,
        "match": _run_match,
        "db-stats": _run_db_stats,
        "logs": _run_logs,
    }

    handler = commands.get(args.command)
    if handler:
        handler(config, args)
    else:
        print(f"Unknown command: {args.command}")
        sys.exit(1)


if __name__ == "__main__":
    main()

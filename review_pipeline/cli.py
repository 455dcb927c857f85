"""
Command line interface handling for the review ingestion pipeline.

Subcommands:
  enqueue         Queue syncs for businesses
  drain           Process the sync queue until nothing is eligible
  sync-now        Sync one business immediately
  queue-status    Show queue depth and recent outcomes
  queue-items     List queue items
  release-stuck   Release items left in processing by a dead worker
  retry-failed    Re-queue terminally failed items
  cancel-pending  Drop pending items
  refill          Top up the queue from the directory
  purge-queue     Delete old finished queue items
  sync-history    Show a business's sync history or recent sync activity
  import-csv      Bulk import reviews from a CSV export
  batches         List import batches
  batch-show      Show one import batch
  business-add    Register or update a directory business
  business-sync   Turn scheduled syncs on or off for a business
  businesses      List directory businesses
  find-duplicates Scan stored reviews for duplicates and optionally remove them
  match           Fuzzy-match a business name against the directory
  db-stats        Show database statistics
  logs            View the JSON log file
"""

import argparse
import json
from pathlib import Path

from review_pipeline.config import DEFAULT_CONFIG_PATH
from review_pipeline.models import BatchStatus, BatchType, PlanTier, QueueState


def _str_to_bool(value: str) -> bool:
    """Parse boolean string for argparse (type=bool is broken)."""
    if value.lower() in ("true", "1", "yes", "on"):
        return True
    if value.lower() in ("false", "0", "no", "off"):
        return False
    raise argparse.ArgumentTypeError(f"Boolean value expected, got '{value}'")


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    """Add common arguments shared across subcommands."""
    parser.add_argument(
        "--config", type=str, default=None,
        help="path to custom configuration file",
    )
    parser.add_argument(
        "--db-path", type=str, default=None,
        help="path to SQLite database file (default: directory.db)",
    )


def _build_queue_parsers(sub: argparse._SubParsersAction) -> None:
    """Build the sync queue subcommands."""
    # enqueue
    sp = sub.add_parser("enqueue", help="Queue syncs for businesses")
    _add_common_args(sp)
    sp.add_argument(
        "business_ids", nargs="*",
        help="business IDs to queue (omit with --all)",
    )
    sp.add_argument(
        "--all", action="store_true", dest="all_businesses",
        help="queue every sync-enabled business with a place ID",
    )
    sp.add_argument(
        "--priority", type=int, default=None,
        help="queue priority (default: computed from plan tier and last sync)",
    )

    # drain
    sp = sub.add_parser("drain", help="Process the sync queue")
    _add_common_args(sp)
    sp.add_argument(
        "--concurrency", type=int, default=None,
        help="number of sync workers (default: processor.concurrency)",
    )
    sp.add_argument(
        "--max-items", type=int, default=None,
        help="stop after this many queue items",
    )
    sp.add_argument(
        "--refill", action="store_true",
        help="top up the queue from the directory before draining",
    )

    # sync-now
    sp = sub.add_parser("sync-now", help="Sync one business immediately")
    _add_common_args(sp)
    sp.add_argument("business_id", help="business ID to sync")

    # queue-status
    sp = sub.add_parser("queue-status", help="Show queue depth and recent outcomes")
    _add_common_args(sp)

    # queue-items
    sp = sub.add_parser("queue-items", help="List queue items")
    _add_common_args(sp)
    sp.add_argument(
        "--state", choices=[s.value for s in QueueState], default=None,
        help="only items in this state",
    )
    sp.add_argument(
        "--limit", type=int, default=50,
        help="max items to show (default: 50)",
    )

    # release-stuck
    sp = sub.add_parser("release-stuck", help="Release items stuck in processing")
    _add_common_args(sp)
    sp.add_argument(
        "--older-than", type=int, default=None,
        help="seconds in processing before an item counts as stuck "
             "(default: queue.stuck_after_seconds)",
    )

    # retry-failed
    sp = sub.add_parser("retry-failed", help="Re-queue terminally failed items")
    _add_common_args(sp)
    sp.add_argument(
        "business_ids", nargs="*",
        help="only these businesses (default: all)",
    )

    # cancel-pending
    sp = sub.add_parser("cancel-pending", help="Drop pending queue items")
    _add_common_args(sp)
    sp.add_argument(
        "business_ids", nargs="*",
        help="only these businesses (default: all)",
    )
    sp.add_argument(
        "--confirm", action="store_true",
        help="skip confirmation prompt",
    )

    # refill
    sp = sub.add_parser("refill", help="Top up the queue from the directory")
    _add_common_args(sp)

    # purge-queue
    sp = sub.add_parser("purge-queue", help="Delete old completed and failed queue items")
    _add_common_args(sp)
    sp.add_argument(
        "--older-than-hours", type=int, default=168,
        help="only items finished more than this many hours ago (default: 168)",
    )

    # sync-history
    sp = sub.add_parser("sync-history", help="Show sync history and recent activity")
    _add_common_args(sp)
    sp.add_argument(
        "business_id", nargs="?", default=None,
        help="business ID (omit for recent syncs across all businesses)",
    )
    sp.add_argument(
        "--limit", "-n", type=int, default=None,
        help="max items to show (default: 10 per business, 20 overall)",
    )


def _build_import_parsers(sub: argparse._SubParsersAction) -> None:
    """Build the bulk import and ledger subcommands."""
    # import-csv
    sp = sub.add_parser("import-csv", help="Bulk import reviews from a CSV export")
    _add_common_args(sp)
    sp.add_argument("csv_path", help="path to the CSV file")
    sp.add_argument(
        "--preset", type=str, default=None,
        help="known export layout: google_my_business, yelp, facebook, generic",
    )
    sp.add_argument(
        "--mapping", type=str, default=None,
        help='JSON logical field -> column mapping (e.g. \'{"rating":"Stars"}\')',
    )
    sp.add_argument(
        "--source", type=str, default=None,
        help="platform tag for rows without a source column",
    )
    sp.add_argument(
        "--batch-type", choices=(BatchType.BULK_CSV.value, BatchType.EXTERNAL_BULK.value),
        default=BatchType.BULK_CSV.value,
        help="ledger batch type (default: bulk-csv)",
    )
    sp.add_argument(
        "--batch-id", type=str, default=None,
        help="reprocess this existing batch instead of opening a new one",
    )
    sp.add_argument(
        "--force", action="store_true",
        help="allow reprocessing a completed batch",
    )

    # batches
    sp = sub.add_parser("batches", help="List import batches")
    _add_common_args(sp)
    sp.add_argument(
        "--status", choices=[s.value for s in BatchStatus], default=None,
        help="only batches in this status",
    )
    sp.add_argument(
        "--type", dest="batch_type", choices=[t.value for t in BatchType], default=None,
        help="only batches of this type",
    )
    sp.add_argument(
        "--limit", type=int, default=20,
        help="max batches to show (default: 20)",
    )

    # batch-show
    sp = sub.add_parser("batch-show", help="Show one import batch")
    _add_common_args(sp)
    sp.add_argument("batch_id", help="import batch ID")


def _build_directory_parsers(sub: argparse._SubParsersAction) -> None:
    """Build the business directory and management subcommands."""
    # business-add
    sp = sub.add_parser("business-add", help="Register or update a directory business")
    _add_common_args(sp)
    sp.add_argument("business_id", help="business ID")
    sp.add_argument("name", help="business name")
    sp.add_argument(
        "--place-id", type=str, default=None,
        help="external place identifier at the review source",
    )
    sp.add_argument(
        "--tier", choices=[t.value for t in PlanTier], default=PlanTier.FREE.value,
        help="plan tier (default: free)",
    )
    sp.add_argument(
        "--sync-enabled", type=_str_to_bool, default=True,
        help="include in scheduled syncs (true/false)",
    )

    # business-sync
    sp = sub.add_parser("business-sync", help="Turn scheduled syncs on or off for a business")
    _add_common_args(sp)
    sp.add_argument("business_id", help="business ID")
    sp.add_argument("enabled", type=_str_to_bool, help="on/off (true/false)")

    # businesses
    sp = sub.add_parser("businesses", help="List directory businesses")
    _add_common_args(sp)

    # find-duplicates
    sp = sub.add_parser("find-duplicates", help="Scan a business's stored reviews for duplicates")
    _add_common_args(sp)
    sp.add_argument("business_id", help="business ID")
    sp.add_argument(
        "--remove", action="store_true",
        help="delete all but the most authoritative copy of each duplicate",
    )

    # match
    sp = sub.add_parser("match", help="Fuzzy-match a business name against the directory")
    _add_common_args(sp)
    sp.add_argument("name", help="business name as it appears in the source")
    sp.add_argument(
        "--place-id", type=str, default=None,
        help="exact place identifier to try first",
    )

    # db-stats
    sp = sub.add_parser("db-stats", help="Show database statistics")
    _add_common_args(sp)

    # logs
    sp = sub.add_parser("logs", help="View the JSON log file")
    _add_common_args(sp)
    sp.add_argument(
        "--lines", "-n", type=int, default=50,
        help="number of trailing lines to show (default: 50)",
    )
    sp.add_argument(
        "--level", type=str, default=None,
        help="only show entries at this level (e.g. ERROR)",
    )
    sp.add_argument(
        "--batch", type=str, default=None,
        help="only show entries logged for this import batch id",
    )
    sp.add_argument(
        "--business", type=str, default=None,
        help="only show entries logged for this business id",
    )
    sp.add_argument(
        "--follow", "-f", action="store_true",
        help="keep printing new lines as they are written",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the top-level parser with all subcommands."""
    ap = argparse.ArgumentParser(
        description="Review Ingestion Pipeline",
    )
    sub = ap.add_subparsers(dest="command")

    _build_queue_parsers(sub)
    _build_import_parsers(sub)
    _build_directory_parsers(sub)

    _add_common_args(ap)
    return ap


def parse_arguments(argv=None):
    """Parse command line arguments with subcommands."""
    ap = build_parser()
    args = ap.parse_args(argv)

    if args.command is None:
        ap.print_help()
        ap.exit(1)

    # Handle config path
    if getattr(args, "config", None) is not None:
        args.config = Path(args.config)
    else:
        args.config = DEFAULT_CONFIG_PATH

    # Process mapping JSON if provided
    if getattr(args, "mapping", None):
        try:
            args.mapping = json.loads(args.mapping)
        except json.JSONDecodeError:
            ap.error(f"Could not parse --mapping JSON: {args.mapping}")
        if not isinstance(args.mapping, dict):
            ap.error("--mapping must be a JSON object")

    return args

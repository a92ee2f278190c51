"""Command-line entry point for one-off syncs, store statistics and backfills.

Usage:
  issuesync-sync                      # incremental sync from the last checkpoint
  issuesync-sync --full --state open  # full sync of open issues
  issuesync-sync --since 2024-01-01T00:00:00
  issuesync-sync --stats-only
  issuesync-sync --backfill
"""

from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime
from typing import Optional, Sequence

from pydantic import ValidationError

from issuesync.config import settings
from issuesync.errors import IssueSyncError
from issuesync.events import json_default
from issuesync.models.base import SessionLocal, init_db
from issuesync.services.aggregation import generate_stats
from issuesync.services.backfill import backfill_person_refs
from issuesync.services.sync_service import SyncOptions, SyncService

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="issuesync-sync", description="Mirror GitHub issues into the local store"
    )
    parser.add_argument(
        "--since",
        type=datetime.fromisoformat,
        help="Only fetch issues updated at or after this ISO timestamp",
    )
    parser.add_argument("--state", choices=["open", "closed", "all"], default="all")
    parser.add_argument("--labels", help="Comma-separated label filter")
    parser.add_argument("--limit", type=int, default=settings.sync_limit, help="Maximum issues to sync")
    parser.add_argument("--batch-size", type=int, default=settings.sync_batch_size)
    parser.add_argument("--full", action="store_true", help="Ignore the checkpoint and sync everything")
    parser.add_argument("--stats-only", action="store_true", help="Print store statistics and exit")
    parser.add_argument("--backfill", action="store_true", help="Link issues to Person rows and exit")
    return parser


def _print_json(title: str, payload) -> None:
    print(f"{title}:")
    print(json.dumps(payload, indent=2, default=json_default))


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    init_db()
    db = SessionLocal()
    try:
        if args.stats_only:
            _print_json("Database statistics", generate_stats(db))
            return 0

        if args.backfill:
            _print_json("Person backfill", backfill_person_refs(db))
            return 0

        options = SyncOptions(
            state=args.state,
            labels=args.labels,
            batch_size=args.batch_size,
            sync_limit=args.limit,
            since=args.since,
            full_sync=args.full,
            triggered_by="cli",
        )
        result = SyncService(db).run_sync(options)
        _print_json("Sync completed", result.as_dict())
        _print_json("Database statistics", generate_stats(db))
        return 0
    except ValidationError as e:
        logger.error(f"Invalid options: {e}")
        return 2
    except IssueSyncError as e:
        logger.error(f"Sync failed ({e.kind}): {e.message}")
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())

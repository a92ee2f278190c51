"""Sync checkpoint (cursor) persistence"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.orm import Session

from issuesync.models import Issue, SyncCheckpoint
from issuesync.models.base import utcnow

logger = logging.getLogger(__name__)

DEFAULT_SKEW = timedelta(hours=1)


class CheckpointStore:
    """Reads and replaces the single checkpoint row of one target"""

    def __init__(self, db: Session, target: str):
        self.db = db
        self.target = target

    def read_checkpoint(self) -> Optional[SyncCheckpoint]:
        """Return the last completed run's checkpoint, or None if there never was one."""
        row = self.db.query(SyncCheckpoint).filter(SyncCheckpoint.target == self.target).first()
        if row is None or row.last_updated_at is None:
            return None
        return row

    def incremental_since(self, skew: timedelta = DEFAULT_SKEW) -> Optional[datetime]:
        """Start of the next incremental window, or None for a full sync."""
        checkpoint = self.read_checkpoint()
        if checkpoint is None:
            logger.info(f"No sync checkpoint for {self.target}; performing full sync")
            return None
        since = checkpoint.last_updated_at - skew
        logger.info(f"Incremental sync for {self.target}: fetching issues updated since {since}")
        return since

    def compute_counters(self) -> Dict[str, int]:
        """Aggregate counters recomputed from the store."""
        total_issues = self.db.query(Issue).count()
        total_prs = self.db.query(Issue).filter(Issue.is_pull_request == True).count()  # noqa: E712
        merged_prs = (
            self.db.query(Issue)
            .filter(Issue.is_pull_request == True, Issue.merged_at.isnot(None))  # noqa: E712
            .count()
        )
        closed_issues = self.db.query(Issue).filter(Issue.state == "closed").count()
        return {
            "total_issues": total_issues,
            "total_prs": total_prs,
            "merged_prs": merged_prs,
            "closed_issues": closed_issues,
        }

    def write_checkpoint(self, counters: Dict[str, int], *, at: Optional[datetime] = None) -> SyncCheckpoint:
        """Replace the target's checkpoint with ``at`` (default now) and the counters."""
        row = self.db.query(SyncCheckpoint).filter(SyncCheckpoint.target == self.target).first()
        if row is None:
            row = SyncCheckpoint(target=self.target)
            self.db.add(row)

        row.last_updated_at = at or utcnow()
        row.total_issues = int(counters.get("total_issues", 0))
        row.total_prs = int(counters.get("total_prs", 0))
        row.merged_prs = int(counters.get("merged_prs", 0))
        row.closed_issues = int(counters.get("closed_issues", 0))

        self.db.commit()
        self.db.refresh(row)
        logger.info(f"Sync checkpoint updated for {self.target}: {row.counters()}")
        return row

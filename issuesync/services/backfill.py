"""Person reference backfill for mirrored issues"""

import logging
from typing import Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from issuesync.config import settings
from issuesync.models import Issue, IssueAssignee, Person

logger = logging.getLogger(__name__)


def _stamp(db: Session, model, external_col, person_col, external_ids) -> int:
    """Set ``person_col`` wherever it is null and ``external_col`` matches a person."""
    person_id = (
        select(Person.id).where(Person.external_id == external_col).limit(1).scalar_subquery()
    )
    result = db.execute(
        update(model)
        .where(person_col.is_(None), external_col.in_(external_ids))
        .values({person_col.key: person_id})
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def backfill_person_refs(db: Session, batch_size: Optional[int] = None) -> Dict[str, int]:
    """Link issue authors, assignees and closers to Person rows.

    Walks persons with an external id in batches and only fills references
    that are still empty, so running it again changes nothing.
    """
    batch_size = batch_size or settings.backfill_person_batch_size
    stats = {"persons": 0, "batches": 0, "users": 0, "assignees": 0, "closed_by": 0}

    last_id = 0
    while True:
        rows = (
            db.query(Person.id, Person.external_id)
            .filter(Person.id > last_id, Person.external_id.isnot(None))
            .order_by(Person.id)
            .limit(batch_size)
            .all()
        )
        if not rows:
            break
        last_id = rows[-1][0]
        external_ids = [int(row[1]) for row in rows]

        try:
            stats["users"] += _stamp(db, Issue, Issue.user_external_id, Issue.user_person_id, external_ids)
            stats["closed_by"] += _stamp(
                db, Issue, Issue.closed_by_external_id, Issue.closed_by_person_id, external_ids
            )
            stats["assignees"] += _stamp(
                db, IssueAssignee, IssueAssignee.external_id, IssueAssignee.person_id, external_ids
            )
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Person backfill failed after {stats['batches']} batches: {e}")
            raise

        stats["persons"] += len(rows)
        stats["batches"] += 1
        logger.debug(f"Backfilled person batch #{stats['batches']} ({len(rows)} persons)")

    logger.info(
        f"Person backfill complete: {stats['users']} authors, {stats['assignees']} assignees, "
        f"{stats['closed_by']} closers linked across {stats['persons']} persons"
    )
    return stats

"""Idempotent batch upsert of canonical issues"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from issuesync.models import Issue, IssueAssignee, IssueLabel
from issuesync.services.normalizer import CanonicalIssue, IssueActor

logger = logging.getLogger(__name__)


@dataclass
class BatchWriteResult:
    matched: int = 0
    modified: int = 0
    upserted: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {"matched": self.matched, "modified": self.modified, "upserted": self.upserted}


def _actor_tuple(external_id: Optional[int], login: Optional[str], person_ref: Optional[int]):
    if external_id is None:
        return None
    return (int(external_id), login, person_ref)


def _row_snapshot(row: Issue) -> Dict[str, Any]:
    return {
        "number": row.number,
        "title": row.title,
        "state": row.state,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
        "closed_at": row.closed_at,
        "user": _actor_tuple(row.user_external_id, row.user_login, row.user_person_id),
        "closed_by": _actor_tuple(
            row.closed_by_external_id, row.closed_by_login, row.closed_by_person_id
        ),
        "assignees": [(a.external_id, a.login, a.person_id) for a in row.assignees],
        "labels": [label.name for label in row.labels],
        "issue_type": row.issue_type,
        "is_pull_request": bool(row.is_pull_request),
        "merged_at": row.merged_at,
        "has_sub_issues": bool(row.has_sub_issues),
        "url": row.url,
    }


def _canonical_snapshot(issue: CanonicalIssue) -> Dict[str, Any]:
    def actor(a: Optional[IssueActor]):
        return (a.external_id, a.login, a.person_ref) if a else None

    return {
        "number": issue.number,
        "title": issue.title,
        "state": issue.state,
        "created_at": issue.created_at,
        "updated_at": issue.updated_at,
        "closed_at": issue.closed_at,
        "user": actor(issue.user),
        "closed_by": actor(issue.closed_by[0] if issue.closed_by else None),
        "assignees": [(a.external_id, a.login, a.person_ref) for a in issue.assignees],
        "labels": list(issue.labels),
        "issue_type": issue.issue_type,
        "is_pull_request": bool(issue.is_pull_request),
        "merged_at": issue.merged_at,
        "has_sub_issues": bool(issue.has_sub_issues),
        "url": issue.url,
    }


class BatchWriter:
    """Apply canonical issues as unconditional upserts keyed by external id.

    The remote tracker is the source of truth, so every field (including the
    child assignee/label rows) is overwritten. Each issue is written inside
    its own savepoint; the batch is committed once at the end.
    """

    def __init__(self, db: Session):
        self.db = db

    def _apply(self, row: Issue, issue: CanonicalIssue) -> None:
        row.number = issue.number
        row.title = issue.title
        row.state = issue.state
        row.created_at = issue.created_at
        row.updated_at = issue.updated_at
        row.closed_at = issue.closed_at

        row.user_external_id = issue.user.external_id if issue.user else None
        row.user_login = issue.user.login if issue.user else None
        row.user_person_id = issue.user.person_ref if issue.user else None

        closer = issue.closed_by[0] if issue.closed_by else None
        row.closed_by_external_id = closer.external_id if closer else None
        row.closed_by_login = closer.login if closer else None
        row.closed_by_person_id = closer.person_ref if closer else None

        row.issue_type = issue.issue_type
        row.is_pull_request = bool(issue.is_pull_request)
        row.merged_at = issue.merged_at
        row.has_sub_issues = bool(issue.has_sub_issues)
        row.url = issue.url

        # Old child rows must be gone before re-inserting the same unique keys.
        row.assignees.clear()
        row.labels.clear()
        self.db.flush()

        row.assignees.extend(
            IssueAssignee(
                position=pos,
                external_id=a.external_id,
                login=a.login,
                person_id=a.person_ref,
            )
            for pos, a in enumerate(issue.assignees)
        )
        row.labels.extend(IssueLabel(name=name) for name in issue.labels)

    def write_one(self, issue: CanonicalIssue, result: BatchWriteResult) -> None:
        with self.db.begin_nested():
            row = self.db.query(Issue).filter(Issue.external_id == issue.external_id).first()
            if row is None:
                row = Issue(external_id=issue.external_id)
                self.db.add(row)
                self._apply(row, issue)
                result.upserted += 1
            else:
                result.matched += 1
                if _row_snapshot(row) != _canonical_snapshot(issue):
                    result.modified += 1
                self._apply(row, issue)
            self.db.flush()

    def write_batch(self, issues: List[CanonicalIssue]) -> BatchWriteResult:
        """Upsert a batch; returns matched/modified/upserted counts."""
        # Within one batch the last observation of an id wins.
        latest: Dict[int, CanonicalIssue] = {}
        for issue in issues:
            latest[issue.external_id] = issue

        result = BatchWriteResult()
        try:
            for issue in latest.values():
                self.write_one(issue, result)
            self.db.commit()
        except Exception as e:
            logger.error(f"Failed to write batch of {len(latest)} issues: {e}")
            self.db.rollback()
            raise

        logger.debug(
            f"Bulk write result: {result.matched} matched, {result.modified} modified, "
            f"{result.upserted} upserted"
        )
        return result

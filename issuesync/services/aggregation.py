"""Aggregation queries over mirrored issues"""

import logging
import math
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, case, func
from sqlalchemy.orm import Session, selectinload

from issuesync.errors import ValidationFailure
from issuesync.models import Issue, IssueAssignee, IssueLabel, Person
from issuesync.models.base import utcnow
from issuesync.services.filters import IssuePredicate

logger = logging.getLogger(__name__)

DEFAULT_PAGE_LIMIT = 15
MAX_PAGE_LIMIT = 100

ISSUE_SORT_FIELDS = {
    "created_at": Issue.created_at,
    "updated_at": Issue.updated_at,
    "closed_at": Issue.closed_at,
    "title": Issue.title,
    "number": Issue.number,
    "state": Issue.state,
}

ASSIGNEE_SORT_FIELDS = ("open_issues", "closed_issues", "total_issues", "name")


def check_sort(sort_by: Optional[str], sort_order: Optional[str], fields, default: str) -> tuple[str, bool]:
    """Snake-cased sort field and whether it is descending.

    camelCase names (openIssues) are accepted; anything outside ``fields``
    raises ValidationFailure.
    """
    errors = []
    field = re.sub(r"(?<!^)(?=[A-Z])", "_", sort_by).lower() if sort_by else default
    if field not in fields:
        errors.append(
            {"field": "sort_by", "message": f"sort_by must be one of: {', '.join(sorted(fields))}"}
        )
    order = (sort_order or "desc").lower()
    if order not in ("asc", "desc"):
        errors.append({"field": "sort_order", "message": "sort_order must be asc or desc"})
    if errors:
        raise ValidationFailure("Invalid sort parameters", errors=errors)
    return field, order == "desc"


def check_page(page: int = 1, limit: int = DEFAULT_PAGE_LIMIT) -> tuple[int, int]:
    """Validate offset pagination input; limit is capped at MAX_PAGE_LIMIT."""
    errors = []
    if page < 1:
        errors.append({"field": "page", "message": "page must be >= 1"})
    if limit < 1:
        errors.append({"field": "limit", "message": "limit must be >= 1"})
    if errors:
        raise ValidationFailure("Invalid pagination parameters", errors=errors)
    return page, min(limit, MAX_PAGE_LIMIT)


def pagination_info(page: int, limit: int, total_count: int) -> Dict[str, Any]:
    total_pages = math.ceil(total_count / limit) if limit else 0
    return {
        "current_page": page,
        "total_pages": total_pages,
        "total_count": total_count,
        "limit": limit,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }


def _days(delta: timedelta) -> int:
    return math.floor(delta.total_seconds() / 86400)


def _state_counts(db: Session, predicate: IssuePredicate) -> Dict[str, int]:
    rows = predicate.apply(db.query(Issue.state, func.count(Issue.id))).group_by(Issue.state).all()
    return {state: count for state, count in rows}


def counts_by_state_and_label(db: Session, predicate: IssuePredicate) -> List[Dict[str, Any]]:
    """Per state: issue count plus per-label issue counts (unlabelled issues under None)."""
    state_totals = _state_counts(db, predicate)
    query = (
        db.query(Issue.state, IssueLabel.name, func.count(Issue.id))
        .select_from(Issue)
        .outerjoin(IssueLabel, IssueLabel.issue_id == Issue.id)
    )
    rows = (
        predicate.apply(query)
        .group_by(Issue.state, IssueLabel.name)
        .order_by(Issue.state, IssueLabel.name)
        .all()
    )

    grouped: Dict[str, Dict[str, Any]] = {}
    for state, label, count in rows:
        entry = grouped.setdefault(
            state, {"state": state, "state_count": state_totals.get(state, 0), "labels": []}
        )
        entry["labels"].append({"label": label, "count": count})
    return list(grouped.values())


def _issue_metrics(db: Session, predicate: IssuePredicate, total_count: int, now: datetime) -> Dict[str, Any]:
    rows = predicate.apply(
        db.query(Issue.state, Issue.created_at, Issue.updated_at, Issue.closed_at)
    ).all()

    stale_before = now - timedelta(days=predicate.stale_days)
    stale_count = sum(
        1 for r in rows if r.state == "open" and r.updated_at is not None and r.updated_at < stale_before
    )

    metrics: Dict[str, Any] = {"total_count": total_count, "stale_count": stale_count}

    if predicate.state != "closed":
        ages = [_days(now - r.created_at) for r in rows if r.state == "open" and r.created_at]
        metrics["average_age_in_days"] = round(sum(ages) / len(ages)) if ages else 0

    if predicate.state != "open":
        resolutions = [
            _days(r.closed_at - r.created_at) for r in rows if r.closed_at and r.created_at
        ]
        metrics["average_resolution_time_in_days"] = (
            round(sum(resolutions) / len(resolutions)) if resolutions else 0
        )

    metrics["counts_by_state_and_label"] = counts_by_state_and_label(db, predicate)
    return metrics


def list_issues(
    db: Session,
    predicate: IssuePredicate,
    *,
    sort_by: Optional[str] = None,
    sort_order: str = "desc",
    page: int = 1,
    limit: int = DEFAULT_PAGE_LIMIT,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Paginated issues matching ``predicate`` with metrics over the whole match."""
    page, limit = check_page(page, limit)
    sort_by, descending = check_sort(sort_by, sort_order, ISSUE_SORT_FIELDS, "updated_at")
    column = ISSUE_SORT_FIELDS[sort_by]

    base = predicate.apply(db.query(Issue))
    total_count = base.count()

    order = [column.desc(), Issue.id.desc()] if descending else [column.asc(), Issue.id.asc()]
    issues = (
        base.options(selectinload(Issue.assignees), selectinload(Issue.labels))
        .order_by(*order)
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    return {
        "data": issues,
        "pagination": pagination_info(page, limit, total_count),
        "metrics": _issue_metrics(db, predicate, total_count, now or utcnow()),
    }


def _assignee_totals_query(db: Session, predicate: IssuePredicate):
    """One row per assignee: open/closed counts, display name and first-seen order."""
    open_count = func.sum(case((Issue.state == "open", 1), else_=0))
    closed_count = func.sum(case((Issue.state == "closed", 1), else_=0))
    name = func.coalesce(Person.name, IssueAssignee.login)

    query = (
        db.query(
            IssueAssignee.external_id.label("external_id"),
            IssueAssignee.login.label("login"),
            name.label("name"),
            open_count.label("open_issues"),
            closed_count.label("closed_issues"),
            (open_count + closed_count).label("total_issues"),
            func.min(IssueAssignee.id).label("first_seen"),
        )
        .select_from(Issue)
        .join(IssueAssignee, IssueAssignee.issue_id == Issue.id)
        .outerjoin(Person, Person.external_id == IssueAssignee.external_id)
    )
    query = predicate.apply(query)
    # The issue-level match lets co-assignees through; filter the unwound rows too.
    post = predicate.assignee_clauses()
    if post:
        query = query.filter(and_(*post))
    sort_columns = {
        "open_issues": open_count,
        "closed_issues": closed_count,
        "total_issues": open_count + closed_count,
        "name": name,
    }
    return query.group_by(IssueAssignee.external_id, IssueAssignee.login, Person.name), sort_columns


def _assignee_breakdown(db: Session, predicate: IssuePredicate, keys: List[tuple]) -> Dict[tuple, list]:
    """Per-(assignee, state, label) counts for the given (external_id, login) keys."""
    if not keys:
        return {}
    query = (
        db.query(
            IssueAssignee.external_id,
            IssueAssignee.login,
            Issue.state,
            IssueLabel.name,
            func.count(Issue.id),
        )
        .select_from(Issue)
        .join(IssueAssignee, IssueAssignee.issue_id == Issue.id)
        .outerjoin(IssueLabel, IssueLabel.issue_id == Issue.id)
    )
    query = predicate.apply(query).filter(
        IssueAssignee.external_id.in_(sorted({k[0] for k in keys}))
    )
    post = predicate.assignee_clauses()
    if post:
        query = query.filter(and_(*post))
    rows = (
        query.group_by(IssueAssignee.external_id, IssueAssignee.login, Issue.state, IssueLabel.name)
        .order_by(Issue.state, IssueLabel.name)
        .all()
    )

    nested: Dict[tuple, Dict[str, list]] = {}
    for external_id, login, state, label, count in rows:
        states = nested.setdefault((external_id, login), {})
        states.setdefault(state, []).append({"label": label, "count": count})
    return nested


def assignee_stats(
    db: Session,
    predicate: IssuePredicate,
    *,
    sort_by: Optional[str] = None,
    sort_order: str = "desc",
    page: int = 1,
    limit: int = DEFAULT_PAGE_LIMIT,
) -> Dict[str, Any]:
    """Per-assignee open/closed/total counts, nested by state and label."""
    page, limit = check_page(page, limit)
    sort_by, descending = check_sort(sort_by, sort_order, ASSIGNEE_SORT_FIELDS, "total_issues")

    grouped, sort_columns = _assignee_totals_query(db, predicate)
    total_count = grouped.count()

    key = sort_columns[sort_by]
    ordered = grouped.order_by(key.desc() if descending else key.asc(), func.min(IssueAssignee.id))
    rows = ordered.offset((page - 1) * limit).limit(limit).all()

    breakdown = _assignee_breakdown(db, predicate, [(r.external_id, r.login) for r in rows])

    data = []
    for row in rows:
        open_issues = int(row.open_issues or 0)
        closed_issues = int(row.closed_issues or 0)
        state_totals = {"open": open_issues, "closed": closed_issues}
        states = breakdown.get((row.external_id, row.login), {})
        data.append(
            {
                "employee": {
                    "github_id": row.external_id,
                    "login": row.login,
                    "name": row.name,
                    "counts_by_state_and_label": [
                        {"state": state, "state_count": state_totals.get(state, 0), "labels": labels}
                        for state, labels in states.items()
                    ],
                },
                "open_issues": open_issues,
                "closed_issues": closed_issues,
                "total_issues": open_issues + closed_issues,
            }
        )

    return {"data": data, "pagination": pagination_info(page, limit, total_count)}


def summary(db: Session, predicate: IssuePredicate) -> Dict[str, int]:
    """Total/open/closed counts for the predicate."""
    counts = _state_counts(db, predicate)
    return {
        "total_issues": sum(counts.values()),
        "open_issues": counts.get("open", 0),
        "closed_issues": counts.get("closed", 0),
    }


def generate_stats(db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Whole-store statistics (CLI --stats-only)."""
    now = now or utcnow()

    def issue_ref(issue: Optional[Issue]):
        if issue is None:
            return None
        return {"number": issue.number, "created_at": issue.created_at}

    prs = db.query(Issue).filter(Issue.is_pull_request == True)  # noqa: E712
    total_prs = prs.count()
    pr_open = prs.filter(Issue.merged_at.is_(None), Issue.state == "open").count()
    pr_unmerged_closed = prs.filter(Issue.merged_at.is_(None), Issue.state == "closed").count()

    label_count = func.count(IssueLabel.id)
    top_labels = (
        db.query(IssueLabel.name, label_count)
        .group_by(IssueLabel.name)
        .order_by(label_count.desc(), IssueLabel.name)
        .limit(20)
        .all()
    )
    assignee_count = func.count(IssueAssignee.id)
    top_assignees = (
        db.query(IssueAssignee.login, assignee_count)
        .group_by(IssueAssignee.login)
        .order_by(assignee_count.desc(), IssueAssignee.login)
        .limit(20)
        .all()
    )

    return {
        "total_count": db.query(Issue).count(),
        "open_count": db.query(Issue).filter(Issue.state == "open").count(),
        "closed_count": db.query(Issue).filter(Issue.state == "closed").count(),
        "recently_updated": db.query(Issue).filter(Issue.updated_at >= now - timedelta(days=7)).count(),
        "oldest_issue": issue_ref(db.query(Issue).order_by(Issue.created_at.asc(), Issue.id).first()),
        "newest_issue": issue_ref(db.query(Issue).order_by(Issue.created_at.desc(), Issue.id.desc()).first()),
        "prs": total_prs,
        "pr_ongoing": pr_open,
        "pr_failed": pr_unmerged_closed,
        "pr_merged": total_prs - pr_open - pr_unmerged_closed,
        "top_labels": [{"label": name, "count": count} for name, count in top_labels],
        "top_assignees": [{"login": login, "count": count} for login, count in top_assignees],
    }

"""Translation of UI-level filter parameters into an issue predicate"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, List, Literal, Mapping, Optional, Set

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy import and_, exists
from sqlalchemy.orm import Query, Session, aliased

from issuesync.errors import ValidationFailure
from issuesync.models import Issue, IssueAssignee, IssueLabel
from issuesync.services.hierarchy import HierarchyResolver

logger = logging.getLogger(__name__)

# Matches no tracker account; stands in for an empty candidate set.
IMPOSSIBLE_ASSIGNEE_ID = -1

END_OF_DAY = time(23, 59, 59, 999000)

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _split(value):
    if value is None:
        return None
    if isinstance(value, str):
        value = value.split(",")
    cleaned = [str(v).strip() for v in value if str(v).strip()]
    return cleaned or None


def _as_date(value) -> Optional[date]:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if isinstance(value, str) and _DATE_ONLY.match(value.strip()):
        return date.fromisoformat(value.strip())
    return None


class FilterCriteria(BaseModel):
    """Filter parameters shared by the issue list, stats and summary queries.

    Closed model: unknown keys are a validation failure rather than being
    silently ignored. Date-only upper bounds are inclusive of the whole day.
    """

    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    updated_from: Optional[datetime] = None
    updated_to: Optional[datetime] = None
    closed_from: Optional[datetime] = None
    closed_to: Optional[datetime] = None

    state: Optional[Literal["open", "closed", "all"]] = None
    labels: Optional[List[str]] = None

    assignee_ids: Optional[List[int]] = None
    assignees: Optional[List[str]] = None
    team_lead_id: Optional[int] = None
    include_indirect: bool = False
    modules: Optional[List[str]] = None

    pull_request: Optional[bool] = None
    user: Optional[str] = None
    created_by_id: Optional[int] = None
    closed_by_id: Optional[int] = None
    issue_type: Optional[str] = None

    stale_days: int = Field(30, ge=0)

    class Config:
        extra = "forbid"

    @field_validator("labels", "assignees", "modules", "assignee_ids", mode="before")
    @classmethod
    def _comma_list(cls, value):
        return _split(value)

    @field_validator("created_from", "updated_from", "closed_from", mode="before")
    @classmethod
    def _start_of_day(cls, value):
        day = _as_date(value)
        if day is not None:
            return datetime.combine(day, time.min)
        return value

    @field_validator("created_to", "updated_to", "closed_to", mode="before")
    @classmethod
    def _end_of_day(cls, value):
        day = _as_date(value)
        if day is not None:
            return datetime.combine(day, END_OF_DAY)
        return value

    @field_validator(
        "created_from", "created_to", "updated_from", "updated_to", "closed_from", "closed_to"
    )
    @classmethod
    def _utc_naive(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None or value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    @property
    def has_closed_range(self) -> bool:
        return self.closed_from is not None or self.closed_to is not None

    @property
    def has_employee_filter(self) -> bool:
        return bool(self.modules) or self.team_lead_id is not None

    @classmethod
    def from_query_params(cls, params: Mapping[str, Any]) -> "FilterCriteria":
        """Validate raw (string) parameters, raising ValidationFailure on bad input."""
        data = {k: v for k, v in params.items() if v not in (None, "")}
        try:
            return cls(**data)
        except ValidationError as e:
            errors = [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ]
            raise ValidationFailure("Invalid filter parameters", errors=errors) from e


@dataclass
class IssuePredicate:
    """Store-level predicate built from one FilterCriteria"""

    clauses: List[Any] = field(default_factory=list)
    state: Optional[str] = None
    assignee_ids: Optional[Set[int]] = None
    assignee_logins: Optional[List[str]] = None
    stale_days: int = 30

    def apply(self, query: Query) -> Query:
        if self.clauses:
            query = query.filter(and_(*self.clauses))
        return query

    def assignee_clauses(self) -> List[Any]:
        """Conditions on a joined IssueAssignee row, re-applied after unwinding."""
        clauses = []
        if self.assignee_ids is not None:
            clauses.append(IssueAssignee.external_id.in_(sorted(self.assignee_ids)))
        if self.assignee_logins:
            clauses.append(IssueAssignee.login.in_(self.assignee_logins))
        return clauses


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _date_range(column, start: Optional[datetime], end: Optional[datetime]) -> List[Any]:
    clauses = []
    if start is not None:
        clauses.append(column >= start)
    if end is not None:
        clauses.append(column <= end)
    return clauses


def resolve_assignee_ids(db: Session, filters: FilterCriteria) -> Optional[Set[int]]:
    """Effective assignee id set, or None when no id-based filter was given.

    Module and team-lead candidates are intersected with each other and then
    with any explicit ids. An empty result stays an empty set.
    """
    candidates: Optional[Set[int]] = None

    if filters.has_employee_filter:
        resolver = HierarchyResolver(db)
        if filters.modules:
            candidates = resolver.resolve_module_members(filters.modules)
        if filters.team_lead_id is not None:
            reports = resolver.resolve_reports(filters.team_lead_id, filters.include_indirect)
            candidates = reports if candidates is None else candidates & reports

    if filters.assignee_ids is not None:
        explicit = {int(i) for i in filters.assignee_ids}
        candidates = explicit if candidates is None else candidates & explicit

    return candidates


def build_query(db: Session, filters: FilterCriteria, *, default_to_open: bool = True) -> IssuePredicate:
    """Build the predicate for ``filters``.

    State precedence: an explicit open/closed state, then closed-by or a
    closed-date bound (forces closed), then the ``default_to_open`` fallback
    unless ``all`` was asked for.
    """
    clauses: List[Any] = []

    clauses += _date_range(Issue.created_at, filters.created_from, filters.created_to)
    clauses += _date_range(Issue.updated_at, filters.updated_from, filters.updated_to)
    if filters.has_closed_range:
        clauses += _date_range(Issue.closed_at, filters.closed_from, filters.closed_to)
        clauses.append(Issue.closed_at.isnot(None))

    if filters.state and filters.state != "all":
        state = filters.state
    elif filters.closed_by_id is not None or filters.has_closed_range:
        state = "closed"
    elif default_to_open and filters.state != "all":
        state = "open"
    else:
        state = None
    if state:
        clauses.append(Issue.state == state)

    if filters.pull_request is not None:
        clauses.append(Issue.is_pull_request == filters.pull_request)
    if filters.user:
        clauses.append(Issue.user_login == filters.user)
    if filters.created_by_id is not None:
        clauses.append(Issue.user_external_id == filters.created_by_id)
    if filters.closed_by_id is not None:
        clauses.append(Issue.closed_by_external_id == filters.closed_by_id)
    if filters.issue_type:
        clauses.append(Issue.issue_type == filters.issue_type)

    # Every requested label must match some label (case-insensitive substring).
    # Subqueries use aliases so they stay uncorrelated from joined child tables.
    for label in filters.labels or []:
        label_row = aliased(IssueLabel)
        clauses.append(
            exists().where(
                label_row.issue_id == Issue.id,
                label_row.name.ilike(f"%{_escape_like(label)}%", escape="\\"),
            )
        )

    if filters.assignees:
        assignee_row = aliased(IssueAssignee)
        clauses.append(
            exists().where(
                assignee_row.issue_id == Issue.id, assignee_row.login.in_(filters.assignees)
            )
        )

    assignee_ids = resolve_assignee_ids(db, filters)
    if assignee_ids is not None:
        if not assignee_ids:
            logger.info("Employee filter resolved to no accounts; query matches nothing")
            assignee_ids = {IMPOSSIBLE_ASSIGNEE_ID}
        assignee_row = aliased(IssueAssignee)
        clauses.append(
            exists().where(
                assignee_row.issue_id == Issue.id,
                assignee_row.external_id.in_(sorted(assignee_ids)),
            )
        )

    return IssuePredicate(
        clauses=clauses,
        state=state,
        assignee_ids=assignee_ids,
        assignee_logins=filters.assignees,
        stale_days=filters.stale_days,
    )
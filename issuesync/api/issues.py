"""Issue query endpoints"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from issuesync.models.base import get_db
from issuesync.services import aggregation
from issuesync.services.filters import FilterCriteria, build_query

router = APIRouter(prefix="/api/issues", tags=["issues"])

# Query parameters that are not filters.
PAGING_PARAMS = {"page", "limit", "sort_by", "sort_order"}


class AssigneeResponse(BaseModel):
    external_id: int
    login: Optional[str] = None
    person_id: Optional[int] = None

    class Config:
        from_attributes = True


class IssueResponse(BaseModel):
    id: int
    external_id: int
    number: int
    title: Optional[str] = None
    state: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    user_external_id: Optional[int] = None
    user_login: Optional[str] = None
    user_person_id: Optional[int] = None
    closed_by_external_id: Optional[int] = None
    closed_by_login: Optional[str] = None
    closed_by_person_id: Optional[int] = None
    issue_type: Optional[str] = None
    is_pull_request: bool
    merged_at: Optional[datetime] = None
    has_sub_issues: bool
    url: Optional[str] = None
    assignees: List[AssigneeResponse] = []
    label_names: List[str] = []

    class Config:
        from_attributes = True


class SummaryResponse(BaseModel):
    total_issues: int
    open_issues: int
    closed_issues: int


def get_filters(request: Request) -> FilterCriteria:
    """Parse every non-paging query parameter as a filter; unknown ones are rejected."""
    params = {k: v for k, v in request.query_params.items() if k not in PAGING_PARAMS}
    return FilterCriteria.from_query_params(params)


@router.get("")
def get_issues(
    page: int = 1,
    limit: int = aggregation.DEFAULT_PAGE_LIMIT,
    sort_by: Optional[str] = None,
    sort_order: str = "desc",
    filters: FilterCriteria = Depends(get_filters),
    db: Session = Depends(get_db),
):
    """Paginated issue list with metrics; defaults to open issues"""
    predicate = build_query(db, filters, default_to_open=True)
    result = aggregation.list_issues(
        db, predicate, sort_by=sort_by, sort_order=sort_order, page=page, limit=limit
    )
    result["data"] = [IssueResponse.model_validate(issue) for issue in result["data"]]
    return result


@router.get("/stats")
def get_assignee_stats(
    page: int = 1,
    limit: int = aggregation.DEFAULT_PAGE_LIMIT,
    sort_by: Optional[str] = None,
    sort_order: str = "desc",
    filters: FilterCriteria = Depends(get_filters),
    db: Session = Depends(get_db),
):
    """Per-assignee statistics over all states unless filtered"""
    predicate = build_query(db, filters, default_to_open=False)
    return aggregation.assignee_stats(
        db, predicate, sort_by=sort_by, sort_order=sort_order, page=page, limit=limit
    )


@router.get("/summary", response_model=SummaryResponse)
def get_summary(filters: FilterCriteria = Depends(get_filters), db: Session = Depends(get_db)):
    """Total, open and closed counts"""
    predicate = build_query(db, filters, default_to_open=False)
    return aggregation.summary(db, predicate)

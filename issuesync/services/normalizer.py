"""Raw GitHub issue -> canonical issue mapping"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class IssueActor:
    """Author, assignee or closer reduced to the fields reporting needs"""

    external_id: int
    login: Optional[str]
    person_ref: Optional[int] = None


@dataclass
class CanonicalIssue:
    """Store-ready representation of one remote issue or pull request"""

    external_id: int
    number: int
    title: Optional[str]
    state: str
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    closed_at: Optional[datetime]
    user: Optional[IssueActor]
    assignees: List[IssueActor] = field(default_factory=list)
    labels: List[str] = field(default_factory=list)
    closed_by: List[IssueActor] = field(default_factory=list)
    issue_type: Optional[str] = None
    is_pull_request: bool = False
    merged_at: Optional[datetime] = None
    has_sub_issues: bool = False
    url: Optional[str] = None


def parse_github_datetime(value: Any) -> Optional[datetime]:
    """Parse GitHub ISO8601 timestamps into UTC tz-naive datetimes."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _actor(raw: Optional[Dict[str, Any]]) -> Optional[IssueActor]:
    if not raw or raw.get("id") is None:
        return None
    return IssueActor(external_id=int(raw["id"]), login=raw.get("login"))


def _label_names(raw_labels: Any) -> List[str]:
    names: List[str] = []
    for label in raw_labels or []:
        name = label if isinstance(label, str) else (label or {}).get("name")
        if name and name not in names:
            names.append(name)
    return names


def is_pull_request(raw: Dict[str, Any]) -> bool:
    """Any of: pull_request marker, draft key, or a /pull/ URL.

    The issues endpoint is inconsistent about which of these it populates.
    """
    if raw.get("pull_request") is not None:
        return True
    if "draft" in raw:
        return True
    url = raw.get("html_url") or ""
    return "/pull/" in url


def _issue_type(raw: Dict[str, Any]) -> Optional[str]:
    value = raw.get("type")
    if isinstance(value, dict):
        return value.get("name") or None
    return value or None


def _has_sub_issues(raw: Dict[str, Any]) -> bool:
    summary = raw.get("sub_issues_summary")
    if not summary:
        return False
    try:
        return int(summary.get("total") or 0) > 0
    except (TypeError, ValueError, AttributeError):
        return False


def normalize_issue(raw: Dict[str, Any]) -> CanonicalIssue:
    """Map one raw issue payload to a CanonicalIssue.

    Person references are left unset; they are stamped later by the backfill
    job (see services/backfill.py).
    """
    pr = is_pull_request(raw)
    pr_payload = raw.get("pull_request")
    if not isinstance(pr_payload, dict):
        pr_payload = {}

    assignees: List[IssueActor] = []
    seen = set()
    for raw_assignee in raw.get("assignees") or []:
        actor = _actor(raw_assignee)
        if actor is None or actor.external_id in seen:
            continue
        seen.add(actor.external_id)
        assignees.append(actor)

    closer = _actor(raw.get("closed_by"))

    return CanonicalIssue(
        external_id=int(raw["id"]),
        number=int(raw["number"]),
        title=raw.get("title"),
        state=raw.get("state") or "open",
        created_at=parse_github_datetime(raw.get("created_at")),
        updated_at=parse_github_datetime(raw.get("updated_at")),
        closed_at=parse_github_datetime(raw.get("closed_at")),
        user=_actor(raw.get("user")),
        assignees=assignees,
        labels=_label_names(raw.get("labels")),
        closed_by=[closer] if closer else [],
        issue_type=_issue_type(raw),
        is_pull_request=pr,
        merged_at=parse_github_datetime(pr_payload.get("merged_at")) if pr else None,
        has_sub_issues=_has_sub_issues(raw),
        url=raw.get("html_url"),
    )

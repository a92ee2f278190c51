"""Database models"""

from issuesync.models.base import Base
from issuesync.models.issue import Issue, IssueAssignee, IssueLabel
from issuesync.models.person import Person, PersonModule
from issuesync.models.sync_checkpoint import SyncCheckpoint
from issuesync.models.sync_run import SyncLock, SyncRun

__all__ = [
    "Base",
    "Issue",
    "IssueAssignee",
    "IssueLabel",
    "Person",
    "PersonModule",
    "SyncCheckpoint",
    "SyncRun",
    "SyncLock",
]

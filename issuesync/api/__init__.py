"""API routes"""

from issuesync.api import issues, sync

__all__ = ["issues", "sync"]

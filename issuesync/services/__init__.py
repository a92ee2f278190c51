"""Services"""

from issuesync.services.batch_writer import BatchWriter
from issuesync.services.checkpoint import CheckpointStore
from issuesync.services.github_client import GitHubClient
from issuesync.services.hierarchy import HierarchyResolver
from issuesync.services.sync_service import SyncService

__all__ = ["BatchWriter", "CheckpointStore", "GitHubClient", "HierarchyResolver", "SyncService"]

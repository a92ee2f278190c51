"""Sync checkpoint model"""
from sqlalchemy import Column, DateTime, Integer, String

from issuesync.models.base import Base, utcnow


class SyncCheckpoint(Base):
    """Cursor and aggregate counters of the last successful run, one row per target"""

    __tablename__ = "sync_checkpoints"

    id = Column(Integer, primary_key=True, index=True)
    target = Column(String, unique=True, nullable=False, index=True)  # "owner/repo"

    last_updated_at = Column(DateTime, nullable=True)

    total_issues = Column(Integer, nullable=False, default=0)
    total_prs = Column(Integer, nullable=False, default=0)
    merged_prs = Column(Integer, nullable=False, default=0)
    closed_issues = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def counters(self) -> dict:
        return {
            "total_issues": self.total_issues,
            "total_prs": self.total_prs,
            "merged_prs": self.merged_prs,
            "closed_issues": self.closed_issues,
        }

    def __repr__(self):
        return f"<SyncCheckpoint(target='{self.target}', last_updated_at={self.last_updated_at})>"

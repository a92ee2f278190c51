"""Sync run history and run lock models"""
import enum

from sqlalchemy import Boolean, Column, DateTime, Enum, Integer, String, Text

from issuesync.models.base import Base, utcnow


class SyncRunStatus(str, enum.Enum):
    """Sync run status enumeration"""
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SyncRun(Base):
    """Log of sync runs"""

    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(String, unique=True, nullable=False, index=True)
    target = Column(String, nullable=False, index=True)

    status = Column(Enum(SyncRunStatus), nullable=False, default=SyncRunStatus.RUNNING)
    triggered_by = Column(String, nullable=True)
    full_sync = Column(Boolean, nullable=False, default=False)
    since = Column(DateTime, nullable=True)

    issue_count = Column(Integer, nullable=False, default=0)
    batch_count = Column(Integer, nullable=False, default=0)

    message = Column(Text, nullable=True)
    error_kind = Column(String, nullable=True)

    started_at = Column(DateTime, default=utcnow, index=True)
    finished_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<SyncRun(target='{self.target}', status={self.status})>"


class SyncLock(Base):
    """Lease held by the active run of a target; unique per target"""

    __tablename__ = "sync_locks"

    id = Column(Integer, primary_key=True, index=True)
    target = Column(String, unique=True, nullable=False)
    run_id = Column(String, nullable=False)
    acquired_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<SyncLock(target='{self.target}', run_id='{self.run_id}')>"

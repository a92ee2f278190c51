"""Sync management endpoints"""
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from issuesync.config import settings
from issuesync.events import sync_events
from issuesync.models import SyncRun
from issuesync.models.base import SessionLocal, get_db
from issuesync.models.sync_run import SyncRunStatus
from issuesync.services.backfill import backfill_person_refs
from issuesync.services.checkpoint import CheckpointStore
from issuesync.services.github_client import GitHubClient
from issuesync.services.sync_service import (
    SyncOptions,
    SyncService,
    get_last_sync_status,
    run_registry,
)

router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncRunResponse(BaseModel):
    id: int
    run_id: str
    target: str
    status: SyncRunStatus
    triggered_by: Optional[str] = None
    full_sync: bool
    since: Optional[datetime] = None
    issue_count: int
    batch_count: int
    message: Optional[str] = None
    error_kind: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CheckpointResponse(BaseModel):
    target: str
    last_updated_at: Optional[datetime] = None
    total_issues: int
    total_prs: int
    merged_prs: int
    closed_issues: int

    class Config:
        from_attributes = True


def get_github_client() -> Optional[GitHubClient]:
    """Client used by sync endpoints; None builds one from settings on first use."""
    return None


def get_session_factory():
    """Session factory for syncs that outlive the request"""
    return SessionLocal


# Background syncs run one at a time
sync_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sync-trigger")


@router.post("/trigger")
def trigger_sync(
    response: Response,
    options: Optional[SyncOptions] = Body(None),
    background: bool = False,
    db: Session = Depends(get_db),
    client: Optional[GitHubClient] = Depends(get_github_client),
    session_factory=Depends(get_session_factory),
):
    """Run a sync of the configured repository.

    With ``background=true`` the run is queued and 202 is returned with its
    run id; completion is announced on the event stream.
    """
    options = options or SyncOptions()
    if not options.triggered_by:
        options.triggered_by = "api"

    if background:
        sync_db = session_factory()
        sync_service = SyncService(sync_db, client)
        try:
            run_id = sync_service.start_in_background(options, sync_executor)
        except Exception:
            sync_db.close()
            raise
        response.status_code = 202
        return {
            "accepted": True,
            "run_id": run_id,
            "target": sync_service.target,
            "message": f"Sync of {sync_service.target} started",
        }

    sync_service = SyncService(db, client)
    result = sync_service.run_sync(options)
    return result.as_dict()


@router.post("/cancel")
def cancel_sync():
    """Request cancellation of the active run at its next page boundary"""
    cancelled = run_registry.cancel(settings.target)
    if cancelled:
        return {"cancelled": True, "message": f"Cancellation requested for {settings.target}"}
    return {"cancelled": False, "message": f"No sync of {settings.target} is running"}


@router.get("/status")
def sync_status(db: Session = Depends(get_db)):
    """Last sync run, whether one is running, and the current checkpoint"""
    checkpoint = CheckpointStore(db, settings.target).read_checkpoint()
    return {
        "target": settings.target,
        "running": run_registry.is_running(settings.target),
        "last_sync": get_last_sync_status(db, settings.target),
        "checkpoint": CheckpointResponse.model_validate(checkpoint) if checkpoint else None,
    }


@router.get("/runs", response_model=List[SyncRunResponse])
def list_sync_runs(limit: int = 50, db: Session = Depends(get_db)):
    """List recorded sync runs, newest first"""
    runs = (
        db.query(SyncRun)
        .filter(SyncRun.target == settings.target)
        .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
        .limit(min(max(limit, 1), 500))
        .all()
    )
    return runs


@router.get("/stream")
async def stream_sync_events():
    """Server-sent events for sync completion and failure"""
    return StreamingResponse(
        sync_events.stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/backfill")
def trigger_backfill(db: Session = Depends(get_db)):
    """Link mirrored issues to Person rows"""
    return backfill_person_refs(db)


@router.get("/token")
def validate_token(client: Optional[GitHubClient] = Depends(get_github_client)):
    """Check the configured GitHub credential and report its expiration"""
    client = client or GitHubClient.from_settings(settings)
    return {"valid": True, **client.check_token()}

"""Issue synchronization service"""

import logging
import threading
import uuid
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from issuesync.config import settings
from issuesync.errors import IssueSyncError, SyncCancelled, SyncInProgress
from issuesync.events import SYNC_COMPLETED, SYNC_ERROR, SyncEventChannel, sync_events
from issuesync.models import SyncLock, SyncRun
from issuesync.models.base import utcnow
from issuesync.models.sync_run import SyncRunStatus
from issuesync.services.batch_writer import BatchWriter, BatchWriteResult
from issuesync.services.checkpoint import CheckpointStore
from issuesync.services.github_client import GitHubClient, IssuePage
from issuesync.services.normalizer import CanonicalIssue, normalize_issue

logger = logging.getLogger(__name__)


class SyncOptions(BaseModel):
    """Options of one sync run"""

    state: Literal["open", "closed", "all"] = "all"
    labels: Optional[List[str]] = None
    batch_size: int = Field(100, ge=1, le=100)
    sync_limit: int = Field(100000, ge=1)
    since: Optional[datetime] = None
    full_sync: bool = False
    triggered_by: Optional[str] = None

    class Config:
        extra = "forbid"

    @field_validator("labels", mode="before")
    @classmethod
    def _split_labels(cls, value):
        if isinstance(value, str):
            value = value.split(",")
        if value is None:
            return None
        cleaned = [str(v).strip() for v in value if str(v).strip()]
        return cleaned or None

    @field_validator("since")
    @classmethod
    def _utc_naive(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None or value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass
class SyncRunResult:
    run_id: str
    target: str
    issue_count: int
    batch_count: int
    since: Optional[datetime]
    counters: Dict[str, int]
    checkpoint: Dict[str, Any]
    writes: Dict[str, int] = field(default_factory=dict)
    token_expiration: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "target": self.target,
            "issue_count": self.issue_count,
            "batch_count": self.batch_count,
            "since": self.since,
            "counters": self.counters,
            "checkpoint": self.checkpoint,
            "writes": self.writes,
            "token_expiration": self.token_expiration,
        }


class SyncRunRegistry:
    """In-process single-flight guard and cancellation tokens, keyed by target"""

    def __init__(self):
        self._lock = threading.Lock()
        self._active: Dict[str, threading.Event] = {}

    def begin(self, target: str) -> threading.Event:
        with self._lock:
            if target in self._active:
                raise SyncInProgress(
                    f"A synchronization of {target} is already running. Please try again later."
                )
            cancel = threading.Event()
            self._active[target] = cancel
            return cancel

    def end(self, target: str) -> None:
        with self._lock:
            self._active.pop(target, None)

    def cancel(self, target: str) -> bool:
        with self._lock:
            cancel = self._active.get(target)
        if cancel is None:
            return False
        cancel.set()
        return True

    def is_running(self, target: str) -> bool:
        with self._lock:
            return target in self._active


# Global registry instance
run_registry = SyncRunRegistry()


class SyncService:
    """Mirrors one GitHub repository's issues into the local store"""

    def __init__(
        self,
        db: Session,
        client: Optional[GitHubClient] = None,
        *,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
        events: Optional[SyncEventChannel] = None,
        registry: Optional[SyncRunRegistry] = None,
        skew: Optional[timedelta] = None,
        lock_ttl: Optional[timedelta] = None,
    ):
        self.db = db
        self.client = client
        self.owner = owner or settings.github_owner
        self.repo = repo or settings.github_repo
        self.events = events or sync_events
        self.registry = registry or run_registry
        self.skew = skew if skew is not None else timedelta(minutes=settings.incremental_skew_minutes)
        self.lock_ttl = lock_ttl or timedelta(minutes=settings.sync_lock_ttl_minutes)
        self.checkpoints = CheckpointStore(db, self.target)

    @property
    def target(self) -> str:
        return f"{self.owner}/{self.repo}"

    def _get_client(self) -> GitHubClient:
        """Get or create the GitHub client"""
        if self.client is None:
            self.client = GitHubClient.from_settings(settings)
        return self.client

    # -- run lock -----------------------------------------------------------

    def _acquire_lock(self, run_id: str) -> None:
        """Take the target's lease row; a live lease held elsewhere rejects the run."""
        now = utcnow()
        self.db.query(SyncLock).filter(
            SyncLock.target == self.target, SyncLock.expires_at < now
        ).delete()
        self.db.add(
            SyncLock(target=self.target, run_id=run_id, acquired_at=now, expires_at=now + self.lock_ttl)
        )
        try:
            self.db.commit()
        except IntegrityError:
            # Another worker holds the lease.
            self.db.rollback()
            raise SyncInProgress(
                f"A synchronization of {self.target} is already running. Please try again later."
            )

    def _renew_lock(self, run_id: str) -> None:
        """Push the lease expiry forward; losing the lease aborts the run."""
        renewed = (
            self.db.query(SyncLock)
            .filter(SyncLock.target == self.target, SyncLock.run_id == run_id)
            .update({SyncLock.expires_at: utcnow() + self.lock_ttl})
        )
        self.db.commit()
        if not renewed:
            raise SyncInProgress(
                f"Sync lease for {self.target} was taken over by another run; stopping this one"
            )

    def _release_lock(self, run_id: str) -> None:
        try:
            self.db.query(SyncLock).filter(
                SyncLock.target == self.target, SyncLock.run_id == run_id
            ).delete()
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to release sync lock for {self.target}: {e}")

    # -- run log ------------------------------------------------------------

    def _start_run(self, run_id: str, options: SyncOptions, since: Optional[datetime]) -> SyncRun:
        run = SyncRun(
            run_id=run_id,
            target=self.target,
            status=SyncRunStatus.RUNNING,
            triggered_by=options.triggered_by or "unknown",
            full_sync=bool(options.full_sync),
            since=since,
            message="Sync started",
        )
        self.db.add(run)
        self.db.commit()
        return run

    def _finish_run(
        self,
        run: SyncRun,
        status: SyncRunStatus,
        message: str,
        *,
        issue_count: int = 0,
        batch_count: int = 0,
        error_kind: Optional[str] = None,
    ) -> None:
        try:
            run.status = status
            run.message = message
            run.issue_count = issue_count
            run.batch_count = batch_count
            run.error_kind = error_kind
            run.finished_at = utcnow()
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to persist sync run {run.run_id}: {e}")

    # -- sync ---------------------------------------------------------------

    def resolve_since(self, options: SyncOptions) -> Optional[datetime]:
        """Explicit `since` wins; otherwise the checkpoint minus skew unless full sync."""
        if options.since is not None:
            logger.info(f"Sync triggered with an explicit 'since' date: {options.since}")
            return options.since
        if options.full_sync:
            logger.info(f"Full sync requested for {self.target}")
            return None
        return self.checkpoints.incremental_since(self.skew)

    def run_sync(self, options: Optional[SyncOptions] = None) -> SyncRunResult:
        """Run one sync of the target; raises IssueSyncError subclasses on failure."""
        options = options or SyncOptions()
        run_id, cancel = self._reserve()
        return self._run_reserved(run_id, options, cancel)

    def start_in_background(self, options: SyncOptions, executor: Executor) -> str:
        """Reserve the target now and run the sync on ``executor``.

        Rejection (SyncInProgress) happens here, before anything is queued. The
        service owns its session from then on and closes it when the run ends.
        """
        run_id, cancel = self._reserve()
        try:
            executor.submit(self._run_in_background, run_id, options, cancel)
        except Exception:
            self._release_lock(run_id)
            self.registry.end(self.target)
            raise
        logger.info(f"Queued background sync {run_id} of {self.target}")
        return run_id

    def _run_in_background(self, run_id: str, options: SyncOptions, cancel: threading.Event) -> None:
        try:
            self._run_reserved(run_id, options, cancel)
        except IssueSyncError as e:
            logger.warning(f"Background sync {run_id} of {self.target} ended: {e.message}")
        except Exception as e:
            logger.error(f"Background sync {run_id} of {self.target} failed: {e}")
        finally:
            self.db.close()

    def _reserve(self) -> tuple[str, threading.Event]:
        cancel = self.registry.begin(self.target)
        run_id = uuid.uuid4().hex
        try:
            self._acquire_lock(run_id)
        except Exception:
            self.registry.end(self.target)
            raise
        return run_id, cancel

    def _run_reserved(self, run_id: str, options: SyncOptions, cancel: threading.Event) -> SyncRunResult:
        try:
            try:
                return self._run_locked(run_id, options, cancel)
            finally:
                self._release_lock(run_id)
        finally:
            self.registry.end(self.target)

    def _run_locked(self, run_id: str, options: SyncOptions, cancel: threading.Event) -> SyncRunResult:
        since = self.resolve_since(options)
        run = self._start_run(run_id, options, since)
        progress = {"issue_count": 0, "batch_count": 0}

        logger.info(
            f"Fetching issues from {self.target} (state={options.state}, since={since}, "
            f"labels={options.labels}, batch_size={options.batch_size})"
        )
        try:
            writes, token_expiration = self._pump(run_id, options, since, cancel, progress)

            counters = self.checkpoints.compute_counters()
            checkpoint = self.checkpoints.write_checkpoint(counters)
        except SyncCancelled as e:
            logger.warning(f"Sync of {self.target} cancelled after {progress['issue_count']} issues")
            self._finish_run(
                run, SyncRunStatus.CANCELLED, e.message, error_kind=e.kind, **progress
            )
            self.events.publish(SYNC_ERROR, {"target": self.target, "run_id": run_id, **e.to_dict()})
            raise
        except IssueSyncError as e:
            logger.error(f"Sync failed for {self.target}: {e.message}")
            self._finish_run(run, SyncRunStatus.FAILED, f"Sync failed: {e.message}", error_kind=e.kind, **progress)
            self.events.publish(SYNC_ERROR, {"target": self.target, "run_id": run_id, **e.to_dict()})
            raise
        except Exception as e:
            logger.error(f"Sync failed for {self.target}: {e}")
            self._finish_run(
                run, SyncRunStatus.FAILED, f"Sync failed: {e}", error_kind="internal_error", **progress
            )
            self.events.publish(
                SYNC_ERROR,
                {"target": self.target, "run_id": run_id, "kind": "internal_error", "message": str(e)},
            )
            raise

        message = (
            f"Synced {progress['issue_count']} issues in {progress['batch_count']} batches "
            f"(triggered by {options.triggered_by or 'unknown'})"
        )
        self._finish_run(run, SyncRunStatus.SUCCESS, message, **progress)
        logger.info(f"Sync completed for {self.target}: {message}; counters: {counters}")

        result = SyncRunResult(
            run_id=run_id,
            target=self.target,
            issue_count=progress["issue_count"],
            batch_count=progress["batch_count"],
            since=since,
            counters=counters,
            checkpoint={"last_updated_at": checkpoint.last_updated_at, **checkpoint.counters()},
            writes=writes.as_dict(),
            token_expiration=token_expiration,
        )
        self.events.publish(SYNC_COMPLETED, {"message": message, **result.as_dict()})
        return result

    def _flush(self, writer: BatchWriter, batch: List[CanonicalIssue], totals: BatchWriteResult, progress: dict) -> None:
        if not batch:
            return
        result = writer.write_batch(batch)
        totals.matched += result.matched
        totals.modified += result.modified
        totals.upserted += result.upserted
        progress["batch_count"] += 1
        logger.info(f"Processed batch #{progress['batch_count']} ({len(batch)} issues)")

    def _pump(
        self,
        run_id: str,
        options: SyncOptions,
        since: Optional[datetime],
        cancel: threading.Event,
        progress: dict,
    ) -> tuple[BatchWriteResult, Optional[str]]:
        """Fetch pages, normalize and write batches.

        While a page is normalized and written, the next one is prefetched by a
        single worker; writes stay serialized on this thread. Cancellation is
        checked before every page fetch. The run lease is renewed as each page
        arrives.
        """
        client = self._get_client()
        writer = BatchWriter(self.db)
        totals = BatchWriteResult()
        token_expiration: Optional[str] = None
        batch: List[CanonicalIssue] = []
        limit = options.sync_limit

        request = client.first_page_request(
            self.owner,
            self.repo,
            state=options.state,
            since=since,
            labels=options.labels,
            per_page=options.batch_size,
        )

        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="issue-prefetch") as pool:
            if cancel.is_set():
                raise SyncCancelled(f"Sync of {self.target} cancelled before the first page")
            pending: Optional[Future] = pool.submit(client.fetch_page, request)
            cancelled = False

            while pending is not None:
                page: IssuePage = pending.result()
                pending = None
                self._renew_lock(run_id)
                if page.rate_limit_remaining is not None:
                    logger.debug(f"Page {page.page} fetched; {page.rate_limit_remaining} API requests left")
                token_expiration = page.token_expiration or token_expiration

                room = limit - progress["issue_count"]
                if page.next_request is not None and len(page.items) < room:
                    if cancel.is_set():
                        cancelled = True
                    else:
                        pending = pool.submit(client.fetch_page, page.next_request)

                for raw in page.items:
                    if progress["issue_count"] >= limit:
                        break
                    batch.append(normalize_issue(raw))
                    progress["issue_count"] += 1
                    if len(batch) >= options.batch_size:
                        self._flush(writer, batch, totals, progress)
                        batch = []

                if progress["issue_count"] >= limit:
                    logger.info(f"Reached sync limit of {limit} issues")
                    break

            self._flush(writer, batch, totals, progress)

            if cancelled:
                raise SyncCancelled(
                    f"Sync of {self.target} cancelled after {progress['issue_count']} issues; "
                    "written batches are kept and the checkpoint was not advanced"
                )

        logger.info(f"Synced {progress['issue_count']} issues in {progress['batch_count']} batches")
        return totals, token_expiration


def get_last_sync_status(db: Session, target: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Message and timestamp of the newest recorded run, or None."""
    target = target or settings.target
    run = (
        db.query(SyncRun)
        .filter(SyncRun.target == target)
        .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
        .first()
    )
    if run is None:
        return None
    return {
        "message": run.message,
        "timestamp": run.finished_at or run.started_at,
        "status": run.status.value if hasattr(run.status, "value") else run.status,
        "run_id": run.run_id,
        "issue_count": run.issue_count,
        "error_kind": run.error_kind,
    }

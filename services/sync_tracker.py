# services/sync_tracker.py
"""
Durable job records for sync runs (table ``sync_jobs``).

pending -> running -> completed | failed | cancelled
running -> paused -> running (manual resume) | cancelled
"""
import traceback
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

import models
import schemas
from config import settings
from utils import get_logger, now_utc

logger = get_logger("sync-jobs")

PENDING, RUNNING, COMPLETED, FAILED, CANCELLED, PAUSED = (
    "pending", "running", "completed", "failed", "cancelled", "paused")

TERMINAL = {COMPLETED, FAILED, CANCELLED}
STOPPED = {CANCELLED, PAUSED}

ALLOWED_TRANSITIONS = {
    PENDING: {RUNNING, FAILED, CANCELLED},
    RUNNING: {COMPLETED, FAILED, CANCELLED, PAUSED},
    PAUSED: {RUNNING, CANCELLED},
    COMPLETED: set(),
    FAILED: set(),
    CANCELLED: set(),
}


class InvalidTransition(Exception):
    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(f"Sync job {job_id}: cannot go from '{current}' to '{target}'")
        self.job_id, self.current, self.target = job_id, current, target


def job_type(kind: str, mode: str) -> str:
    if kind == "customers":
        return "shopify_customers"
    return f"shopify_{kind}_{'initial' if mode == 'full' else 'incremental'}"


def _transition(job: models.SyncJob, target: str) -> None:
    if target not in ALLOWED_TRANSITIONS.get(job.status, set()):
        raise InvalidTransition(job.id, job.status, target)
    logger.info("job=%s %s -> %s", job.id, job.status, target)
    job.status = target


def create_job(db: Session, organization_id: str, kind: str, mode: str,
               integration_id: Optional[int] = None, config: Optional[Dict[str, Any]] = None,
               created_by: Optional[str] = None, page_size: Optional[int] = None) -> models.SyncJob:
    job = models.SyncJob(
        id=str(uuid.uuid4()),
        organization_id=organization_id,
        integration_id=integration_id,
        type=job_type(kind, mode),
        entity_kind=kind,
        mode=mode,
        status=PENDING,
        page_size=page_size or settings.page_size,
        config=config or {},
        errors=[],
        created_by=created_by,
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info("Created sync job %s type=%s org=%s", job.id, job.type, organization_id)
    return job


def get_job(db: Session, job_id: str) -> Optional[models.SyncJob]:
    return db.query(models.SyncJob).filter(models.SyncJob.id == job_id).first()


def mark_running(db: Session, job: models.SyncJob) -> models.SyncJob:
    resumed = job.status == PAUSED
    _transition(job, RUNNING)
    now = now_utc()
    if not job.started_at or not resumed:
        job.started_at = now
    job.last_activity_at = now
    job.error_message = None
    db.commit()
    return job


@dataclass
class ProgressDelta:
    """Counters accumulated between two progress flushes."""
    total: int = 0
    processed: int = 0
    success: int = 0
    errors: int = 0
    skipped: int = 0
    pages: int = 0

    def add(self, other: "ProgressDelta") -> None:
        self.total += other.total
        self.processed += other.processed
        self.success += other.success
        self.errors += other.errors
        self.skipped += other.skipped
        self.pages += other.pages

    def __bool__(self) -> bool:
        return any((self.total, self.processed, self.success, self.errors, self.skipped, self.pages))


def update_progress(db: Session, job: models.SyncJob, delta: ProgressDelta,
                    cursor: Optional[str] = None, commit: bool = True) -> models.SyncJob:
    job.total_items = (job.total_items or 0) + delta.total
    job.processed_items = (job.processed_items or 0) + delta.processed
    job.success_count = (job.success_count or 0) + delta.success
    job.error_count = (job.error_count or 0) + delta.errors
    job.skip_count = (job.skip_count or 0) + delta.skipped
    job.current_page = (job.current_page or 0) + delta.pages
    if cursor is not None:
        job.next_page_token = cursor
    job.last_activity_at = now_utc()
    if commit:
        db.commit()
    return job


def record_error(job: models.SyncJob, message: str, external_id: Optional[str] = None) -> None:
    """Appends to the job's structured error list (capped). Committed with the next progress flush."""
    errors = list(job.errors or [])
    if len(errors) >= settings.max_job_errors:
        return
    errors.append({"timestamp": now_utc().isoformat(), "externalId": external_id, "message": message})
    job.errors = errors
    job.last_error = message


def mark_completed(db: Session, job: models.SyncJob, summary: Optional[Dict[str, Any]] = None) -> models.SyncJob:
    _transition(job, COMPLETED)
    now = now_utc()
    job.completed_at = now
    job.last_activity_at = now
    job.next_page_token = None
    if summary:
        job.job_metadata = {**(job.job_metadata or {}), **summary}
    db.commit()
    return job


def mark_failed(db: Session, job: models.SyncJob, error: BaseException) -> models.SyncJob:
    _transition(job, FAILED)
    now = now_utc()
    job.error_message = str(error) or type(error).__name__
    job.last_error = "".join(traceback.format_exception(type(error), error, error.__traceback__))[-4000:]
    job.completed_at = now
    job.last_activity_at = now
    db.commit()
    logger.error("job=%s failed: %s", job.id, job.error_message)
    return job


def request_cancel(db: Session, job: models.SyncJob) -> models.SyncJob:
    _transition(job, CANCELLED)
    job.completed_at = now_utc()
    db.commit()
    return job


def request_pause(db: Session, job: models.SyncJob) -> models.SyncJob:
    _transition(job, PAUSED)
    db.commit()
    return job


def resume(db: Session, job: models.SyncJob) -> models.SyncJob:
    if job.status != PAUSED:
        raise InvalidTransition(job.id, job.status, RUNNING)
    return mark_running(db, job)


def stop_requested(db: Session, job: models.SyncJob) -> bool:
    """Re-reads the status column; another process may have cancelled or paused the job."""
    current = db.query(models.SyncJob.status).filter(models.SyncJob.id == job.id).scalar()
    return current in STOPPED


def is_terminal(job: models.SyncJob) -> bool:
    return job.status in TERMINAL


def to_status(job: models.SyncJob) -> schemas.SyncJobStatus:
    return schemas.SyncJobStatus.model_validate(job)

# routes/sync_status.py

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

import schemas
from services import sync_tracker
from routes.base import get_session

router = APIRouter(
    prefix="/api/sync-status",
    tags=["Sync Status"],
    responses={404: {"description": "Not found"}},
)


@router.get("/{job_id}", response_model=schemas.SyncJobStatus)
def get_status(job_id: str, db: Session = Depends(get_session)):
    """
    Pollable endpoint to get the status of a sync job.
    """
    job = sync_tracker.get_job(db, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Sync job not found")
    return sync_tracker.to_status(job)

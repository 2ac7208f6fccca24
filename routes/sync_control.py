from typing import Dict, Any
from fastapi import APIRouter, Depends, BackgroundTasks, HTTPException, Body, Query
from sqlalchemy.orm import Session

import models
import schemas
from crud import integration as crud_integration
from services import sync_runner, sync_tracker
from services.sync_service import SyncContext, run_sync_in_background
from routes.base import get_session, get_sync_context

router = APIRouter(prefix="/api/sync-control", tags=["Sync Control"])


def _job_or_404(db: Session, job_id: str) -> models.SyncJob:
    job = sync_tracker.get_job(db, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Sync job not found")
    return job


@router.get("/jobs")
def list_jobs(
    organization_id: str = Query(...),
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_session),
) -> Dict[str, Any]:
    jobs = db.query(models.SyncJob).filter(
        models.SyncJob.organization_id == organization_id
    ).order_by(models.SyncJob.created_at.desc()).limit(limit).all()
    return {"jobs": [sync_tracker.to_status(j).model_dump(mode="json") for j in jobs]}


@router.post("/{entity_kind}")
def trigger_sync(
    entity_kind: schemas.EntityKind,
    background_tasks: BackgroundTasks,
    payload: schemas.SyncRequest = Body(...),
    db: Session = Depends(get_session),
    ctx: SyncContext = Depends(get_sync_context),
) -> Dict[str, Any]:
    integration = crud_integration.get_active_integration(db, payload.organization_id, payload.integration_id)
    if not integration:
        raise HTTPException(status_code=404, detail="Integration not found or inactive")

    job = sync_tracker.create_job(
        db, payload.organization_id, entity_kind, payload.mode,
        integration_id=integration.id,
        config={"fetchAll": payload.mode == "full", "source": payload.source,
                "dateFrom": payload.updated_since.isoformat() if payload.updated_since else None,
                "entityIds": payload.entity_ids},
    )
    background_tasks.add_task(
        run_sync_in_background,
        sync_runner.run_sync,
        ctx,
        organization_id=payload.organization_id,
        integration_id=integration.id,
        entity_kind=entity_kind,
        mode=payload.mode,
        job_id=job.id,
        updated_since=payload.updated_since,
        entity_ids=payload.entity_ids,
        source=payload.source,
    )
    return {"status": "ok", "message": f"{entity_kind.capitalize()} sync started for {integration.shop_domain}.",
            "job_id": job.id}


def _control(db: Session, job_id: str, action) -> models.SyncJob:
    job = _job_or_404(db, job_id)
    try:
        return action(db, job)
    except sync_tracker.InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/jobs/{job_id}/cancel")
def cancel_job(job_id: str, db: Session = Depends(get_session)) -> Dict[str, Any]:
    job = _control(db, job_id, sync_tracker.request_cancel)
    return {"status": "ok", "job": sync_tracker.to_status(job).model_dump(mode="json")}


@router.post("/jobs/{job_id}/pause")
def pause_job(job_id: str, db: Session = Depends(get_session)) -> Dict[str, Any]:
    job = _control(db, job_id, sync_tracker.request_pause)
    return {"status": "ok", "job": sync_tracker.to_status(job).model_dump(mode="json")}


@router.post("/jobs/{job_id}/resume")
def resume_job(
    job_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_session),
    ctx: SyncContext = Depends(get_sync_context),
) -> Dict[str, Any]:
    job = _control(db, job_id, sync_tracker.resume)
    config = job.config or {}
    background_tasks.add_task(
        run_sync_in_background,
        sync_runner.run_sync,
        ctx,
        organization_id=job.organization_id,
        integration_id=job.integration_id,
        entity_kind=job.entity_kind,
        mode=job.mode,
        job_id=job.id,
        entity_ids=config.get("entityIds"),
        source=config.get("source") or "manual",
    )
    return {"status": "ok", "job": sync_tracker.to_status(job).model_dump(mode="json")}

# services/sync_runner.py
"""
One sync run = one entity kind for one organization, executed as a
sequential page loop:

    fetch page -> transform -> upsert staging -> link internal rows -> progress

Record-level failures are counted on the job and the loop moves on;
API and staging-write failures fail the job and propagate.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

import models
import schemas
from crud import integration as crud_integration
from crud import staging as crud_staging
from crud.utils import chunked
from services import sync_tracker
from services.customer_linker import link_customers
from services.order_linker import link_orders, relink_order_items
from services.product_linker import LinkResult, link_products
from services.sync_service import SyncContext
from services.sync_tracker import ProgressDelta
from services.transformers import transform_record
from utils import get_logger, now_utc, parse_dt

logger = get_logger("sync")

# runs shorter than this many pages skip the inter-page delay
SMALL_RUN_PAGES = 2


class IntegrationNotFound(Exception):
    pass


def _link_products_and_items(db: Session, organization_id: str, ids: List[str]) -> LinkResult:
    result = link_products(db, organization_id, ids)
    relinked = relink_order_items(db, organization_id, ids)
    if relinked:
        logger.info("Re-linked %d order items to products (org=%s)", relinked, organization_id)
    return result


@dataclass(frozen=True)
class EntitySync:
    kind: str
    link: Callable[[Session, str, List[str]], LinkResult]
    delay_setting: str


ENTITY_SYNCS: Dict[str, EntitySync] = {
    "products": EntitySync("products", _link_products_and_items, "product_page_delay_ms"),
    "orders": EntitySync("orders", link_orders, "order_page_delay_ms"),
    "customers": EntitySync("customers", link_customers, "customer_page_delay_ms"),
}


@dataclass
class SyncOutcome:
    job_id: str
    status: str
    pages: int = 0
    processed: int = 0
    success: int = 0
    errors: int = 0


def build_query_filter(mode: str, watermark: Optional[datetime], buffer_minutes: int,
                       entity_ids: Optional[List[str]] = None) -> Optional[str]:
    """
    Server-side search filter. Incremental runs look back ``buffer_minutes``
    before the watermark to absorb clock and indexing skew.
    """
    parts = []
    if mode == "incremental" and watermark is not None:
        since = parse_dt(watermark) - timedelta(minutes=buffer_minutes)
        parts.append(f"updated_at:>='{since.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')}'")
    if entity_ids:
        ids = " OR ".join(f"id:{str(i).split('/')[-1]}" for i in entity_ids)
        parts.append(f"({ids})")
    return " AND ".join(parts) or None


def _record_id(payload: Any, index: int) -> str:
    if isinstance(payload, dict):
        ext = payload.get("legacyResourceId") or payload.get("id")
        if ext:
            return str(ext).split("/")[-1]
    return f"#{index}"


def process_page(db: Session, job: models.SyncJob, entity: EntitySync, organization_id: str,
                 records: List[Dict[str, Any]], synced_at: datetime,
                 linker_batch_size: int = 200) -> ProgressDelta:
    """
    Transform, stage and link one page. The linker sees at most
    ``linker_batch_size`` ids per call. Staging write errors propagate.
    """
    delta = ProgressDelta(total=len(records), processed=len(records), pages=1)
    failures: Dict[str, str] = {}
    rows_by_table: Dict[str, List[Dict[str, Any]]] = {}
    staged_ids: List[str] = []

    for index, payload in enumerate(records):
        try:
            bundle = transform_record(entity.kind, payload, organization_id, synced_at)
        except Exception as e:
            ext = _record_id(payload, index)
            logger.warning("Skipping %s %s (org=%s): transform failed: %s", entity.kind, ext, organization_id, e)
            failures[ext] = f"{type(e).__name__}: {e}"
            continue
        for table, rows in bundle.rows.items():
            rows_by_table.setdefault(table, []).extend(rows)
        staged_ids.append(bundle.external_id)

    crud_staging.upsert_batch_rows(db, rows_by_table)

    result = LinkResult()
    for ids in chunked(staged_ids, linker_batch_size):
        result.merge(entity.link(db, organization_id, list(ids)))
    failures.update(result.failed)

    for ext, message in failures.items():
        sync_tracker.record_error(job, message, ext)
    delta.errors = min(len(failures), len(records))
    delta.success = len(records) - delta.errors
    delta.skipped = result.unchanged
    return delta


def _stopped(job_db: Session, job: models.SyncJob, pending: ProgressDelta, cursor: Optional[str],
             pages: int) -> SyncOutcome:
    if pending:
        sync_tracker.update_progress(job_db, job, pending, cursor)
    job_db.refresh(job)
    logger.info("Sync job %s stopped (%s) after %d pages", job.id, job.status, pages)
    return SyncOutcome(job.id, job.status, pages, job.processed_items, job.success_count, job.error_count)


def run_sync(ctx: SyncContext, organization_id: str, integration_id: int, entity_kind: str,
             mode: str = "incremental", job_id: Optional[str] = None,
             updated_since: Optional[datetime] = None, entity_ids: Optional[List[str]] = None,
             source: str = "scheduled") -> SyncOutcome:
    """
    Runs (or resumes) one sync job. Without ``job_id`` a job record is
    created first. Returns the final job state; re-raises job-fatal errors
    after recording them on the job.
    """
    entity = ENTITY_SYNCS[entity_kind]
    cfg = ctx.settings
    db: Session = ctx.session_factory()
    job_db: Session = ctx.session_factory()
    job = None
    pending = ProgressDelta()
    pages = 0
    try:
        integration = crud_integration.get_active_integration(db, organization_id, integration_id)
        if job_id:
            job = sync_tracker.get_job(job_db, job_id)
            if job is None:
                logger.warning("Sync job %s not found; creating a new one", job_id)
        if job is None:
            job = sync_tracker.create_job(
                job_db, organization_id, entity_kind, mode,
                integration_id=integration.id if integration else None,
                config={"fetchAll": mode == "full", "source": source,
                        "dateFrom": updated_since.isoformat() if updated_since else None,
                        "entityIds": entity_ids or None},
            )
        if sync_tracker.is_terminal(job):
            logger.info("Sync job %s is already %s; nothing to do", job.id, job.status)
            return SyncOutcome(job.id, job.status, processed=job.processed_items,
                               success=job.success_count, errors=job.error_count)

        if integration is None:
            raise IntegrationNotFound(
                f"Shopify integration {integration_id} not found or inactive for organization {organization_id}")

        if job.status == sync_tracker.RUNNING:
            # already moved back to running by a manual resume
            resuming = True
        else:
            resuming = job.status == sync_tracker.PAUSED
            sync_tracker.mark_running(job_db, job)
        run_started = now_utc()
        client = ctx.client_for(integration)

        watermark = updated_since or crud_integration.get_watermark(integration, entity_kind)
        query_filter = build_query_filter(mode, watermark, cfg.incremental_buffer_minutes, entity_ids)
        cursor = job.next_page_token if resuming else None
        logger.info(
            "Starting %s sync job=%s org=%s mode=%s filter=%s resume_cursor=%s",
            entity_kind, job.id, organization_id, mode, query_filter, bool(cursor),
        )

        while True:
            if pages and sync_tracker.stop_requested(job_db, job):
                return _stopped(job_db, job, pending, cursor, pages)

            page = client.fetch_page(entity_kind, cursor=cursor, query_filter=query_filter, page_size=cfg.page_size)
            pages += 1
            delta = process_page(db, job, entity, organization_id, page.records, now_utc(),
                                 cfg.linker_batch_size)
            pending.add(delta)
            cursor = page.next_cursor or cursor

            more = mode == "full" and page.has_more and bool(page.next_cursor)
            if not more or pages % max(1, cfg.progress_every_pages) == 0:
                sync_tracker.update_progress(job_db, job, pending, cursor)
                pending = ProgressDelta()
            logger.info(
                "%s page %d job=%s records=%d success=%d errors=%d more=%s",
                entity_kind, pages, job.id, delta.processed, delta.success, delta.errors, more,
            )
            if not more:
                break
            delay_ms = getattr(cfg, entity.delay_setting)
            if pages >= SMALL_RUN_PAGES and delay_ms > 0:
                ctx.sleep(delay_ms / 1000.0)

        # a cancel or pause that landed during the last page wins over completion
        if sync_tracker.stop_requested(job_db, job):
            return _stopped(job_db, job, pending, cursor, pages)
        sync_tracker.mark_completed(job_db, job, {"pages": pages})
        if not entity_ids:
            crud_integration.set_watermark(db, integration, entity_kind, run_started)
        logger.info(
            "Completed %s sync job=%s processed=%d success=%d errors=%d",
            entity_kind, job.id, job.processed_items, job.success_count, job.error_count,
        )
        return SyncOutcome(job.id, job.status, pages, job.processed_items, job.success_count, job.error_count)

    except Exception as e:
        logger.exception("%s sync failed org=%s job=%s: %s", entity_kind, organization_id,
                         job.id if job else None, e)
        if job is not None:
            try:
                job_db.rollback()
                if pending:
                    sync_tracker.update_progress(job_db, job, pending, commit=False)
                if not sync_tracker.is_terminal(job):
                    sync_tracker.mark_failed(job_db, job, e)
            except Exception as tracker_error:
                logger.error("Could not record failure on job %s: %s", job.id, tracker_error)
        raise
    finally:
        db.close()
        job_db.close()


def run_sync_request(ctx: SyncContext, request: schemas.SyncRequest) -> SyncOutcome:
    return run_sync(
        ctx,
        organization_id=request.organization_id,
        integration_id=request.integration_id,
        entity_kind=request.entity_kind,
        mode=request.mode,
        job_id=request.job_id,
        updated_since=request.updated_since,
        entity_ids=request.entity_ids,
        source=request.source,
    )

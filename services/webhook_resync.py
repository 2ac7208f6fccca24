# services/webhook_resync.py
"""
Single-record re-sync driven by webhook notifications.

The webhook body is never trusted as the record: create/update events
re-fetch the current record from the API and run it through the same
transform -> stage -> link path as a page of a sync run.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

import schemas
from crud import integration as crud_integration
from crud import staging as crud_staging
from services.customer_linker import deactivate_customer
from services.order_linker import deactivate_order
from services.product_linker import deactivate_product
from services.sync_runner import ENTITY_SYNCS, IntegrationNotFound
from services.sync_service import SyncContext
from services.transformers import transform_record
from utils import get_logger, now_utc

logger = get_logger("webhooks")

SOFT_DELETES = {
    "products": (crud_staging.soft_delete_product, deactivate_product),
    "orders": (crud_staging.soft_delete_order, deactivate_order),
    "customers": (crud_staging.soft_delete_customer, deactivate_customer),
}


@dataclass
class WebhookResult:
    entity_kind: str
    external_id: str
    action: str
    outcome: str
    error: Optional[str] = None


def _delete(db: Session, event: schemas.WebhookEvent) -> WebhookResult:
    soft_delete_staged, deactivate = SOFT_DELETES[event.entity_kind]
    internal_id = soft_delete_staged(db, event.organization_id, event.external_id, now_utc())
    deactivate(db, event.organization_id, internal_id, event.external_id)
    logger.info("Deactivated %s %s (org=%s)", event.entity_kind, event.external_id, event.organization_id)
    return WebhookResult(event.entity_kind, event.external_id, event.action, "deactivated")


def handle_webhook_event(ctx: SyncContext, event: schemas.WebhookEvent) -> WebhookResult:
    """
    Applies one webhook event. A create/update for a record the API no
    longer returns is handled as a delete. API errors propagate.
    """
    db: Session = ctx.session_factory()
    try:
        integration = crud_integration.get_active_integration(db, event.organization_id, event.integration_id)
        if integration is None:
            raise IntegrationNotFound(
                f"Shopify integration {event.integration_id} not found or inactive "
                f"for organization {event.organization_id}")

        if event.action == "delete":
            return _delete(db, event)

        payload = ctx.client_for(integration).fetch_one(event.entity_kind, event.external_id)
        if payload is None:
            logger.info("%s %s no longer exists upstream; treating %s as delete",
                        event.entity_kind, event.external_id, event.action)
            return _delete(db, event)

        received_at = now_utc()
        bundle = transform_record(event.entity_kind, payload, event.organization_id, received_at)
        crud_staging.upsert_batch_rows(db, bundle.rows)
        crud_staging.mark_webhook_received(db, event.entity_kind, event.organization_id,
                                           bundle.external_id, received_at)

        result = ENTITY_SYNCS[event.entity_kind].link(db, event.organization_id, [bundle.external_id])
        if result.failed:
            error = result.failed.get(bundle.external_id) or next(iter(result.failed.values()))
            logger.warning("Webhook %s %s staged but not linked: %s", event.entity_kind, bundle.external_id, error)
            return WebhookResult(event.entity_kind, bundle.external_id, event.action, "failed", error)
        outcome = "created" if result.created else "updated" if result.updated else "unchanged"
        logger.info("Webhook %s %s %s -> %s (org=%s)", event.action, event.entity_kind,
                    bundle.external_id, outcome, event.organization_id)
        return WebhookResult(event.entity_kind, bundle.external_id, event.action, outcome)
    finally:
        db.close()

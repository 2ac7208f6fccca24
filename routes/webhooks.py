# routes/webhooks.py
from typing import Dict, Tuple

from fastapi import APIRouter, Depends, HTTPException, Request, Header, BackgroundTasks
from sqlalchemy.orm import Session

import schemas
from crud import integration as crud_integration
from services.sync_service import SyncContext, run_sync_in_background
from services.webhook_resync import handle_webhook_event
from routes.base import get_session, get_sync_context
from utils import get_logger, verify_hmac

logger = get_logger("webhooks")

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])

# topic -> (entity kind, action)
TOPICS: Dict[str, Tuple[str, str]] = {
    "products/create": ("products", "create"),
    "products/update": ("products", "update"),
    "products/delete": ("products", "delete"),
    "orders/create": ("orders", "create"),
    "orders/updated": ("orders", "update"),
    "orders/edited": ("orders", "update"),
    "orders/paid": ("orders", "update"),
    "orders/cancelled": ("orders", "update"),
    "orders/fulfilled": ("orders", "update"),
    "orders/delete": ("orders", "delete"),
    "customers/create": ("customers", "create"),
    "customers/update": ("customers", "update"),
    "customers/delete": ("customers", "delete"),
}


@router.post("/{integration_id}")
async def receive_webhook(
    integration_id: int,
    request: Request,
    background_tasks: BackgroundTasks,
    x_shopify_hmac_sha256: str = Header(None),
    x_shopify_topic: str = Header(None),
    db: Session = Depends(get_session),
    ctx: SyncContext = Depends(get_sync_context),
):
    """
    Receives webhooks, verifies them, and schedules a single-record re-sync
    for the referenced entity. The body is only used for the record id.
    """
    if not x_shopify_hmac_sha256:
        raise HTTPException(status_code=400, detail="Missing HMAC header")

    integration = crud_integration.get_integration(db, integration_id)
    if not integration or not integration.is_active:
        raise HTTPException(status_code=404, detail="Integration not found")

    raw_body = await request.body()
    if not verify_hmac(integration.webhook_secret, raw_body, x_shopify_hmac_sha256):
        raise HTTPException(status_code=401, detail="Invalid HMAC signature")

    route = TOPICS.get(x_shopify_topic or "")
    if route is None:
        logger.info("Ignoring unhandled webhook topic %s (integration=%s)", x_shopify_topic, integration_id)
        return {"status": "ignored", "topic": x_shopify_topic}

    payload = await request.json()
    external_id = None
    if isinstance(payload, dict):
        external_id = payload.get("id") or payload.get("admin_graphql_api_id")
    if not external_id:
        raise HTTPException(status_code=400, detail="Webhook payload has no record id")

    kind, action = route
    event = schemas.WebhookEvent(
        organization_id=integration.organization_id,
        integration_id=integration.id,
        entity_kind=kind,
        external_id=str(external_id),
        action=action,
    )
    background_tasks.add_task(run_sync_in_background, handle_webhook_event, ctx, event=event)
    return {"status": "ok", "entity_kind": kind, "action": action, "external_id": event.external_id}

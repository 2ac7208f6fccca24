# services/order_linker.py
"""
Derive internal orders (and their items, tags and notes) from staged
Shopify orders.

Existing internal orders only get their status-derived fields refreshed so
manual edits to addresses/customer data survive re-syncs. Items are always
replaced wholesale from the current line items.
"""
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

import models
from config import settings
from crud import staging as crud_staging
from schemas import ShopifyLineItemRecord
from services import note_extractor, tag_extractor
from services.product_linker import LinkResult, get_mapping
from services.transformers import extract_date
from utils import get_logger, apply_changes, first_match, split_tags, to_decimal, now_utc, parse_dt

logger = get_logger("linker")

# first match wins, evaluated top to bottom
ORDER_STATUS_RULES = [
    (lambda o: (o.fulfillment_status or "").lower() == "fulfilled", "completed"),
    (lambda o: o.cancelled_at is not None, "cancelled"),
    (lambda o: (o.financial_status or "").lower() == "paid", "confirmed"),
]
DEFAULT_ORDER_STATUS = "pending"

PAYMENT_STATUS_RULES = [
    (lambda o: (o.financial_status or "").lower() == "paid", "paid"),
    (lambda o: (o.financial_status or "").lower() == "partially_paid", "partially_paid"),
    (lambda o: (o.financial_status or "").lower() in ("refunded", "partially_refunded"), "refunded"),
]
DEFAULT_PAYMENT_STATUS = "unpaid"

STATUS_FIELDS = (
    "status", "payment_status", "completed_at", "financial_status", "fulfillment_status",
    "paid_amount", "cancelled_at", "cancel_reason", "is_active",
)


def order_status(staged: models.ShopifyOrder) -> str:
    return first_match(ORDER_STATUS_RULES, staged, default=DEFAULT_ORDER_STATUS)


def payment_status(staged: models.ShopifyOrder) -> str:
    return first_match(PAYMENT_STATUS_RULES, staged, default=DEFAULT_PAYMENT_STATUS)


def due_date_for(staged: models.ShopifyOrder, fallback_days: Optional[int] = None) -> date:
    """Tag date, then structured pickup/delivery date, then order date + fallback offset."""
    for tag in split_tags(staged.tags):
        found = extract_date(tag)
        if found:
            return found
    found = extract_date(staged.pickup_date)
    if found:
        return found
    days = settings.due_date_fallback_days if fallback_days is None else fallback_days
    created = parse_dt(staged.shopify_created_at) or now_utc()
    return (created + timedelta(days=days)).date()


def _money(val) -> Decimal:
    return to_decimal(val, Decimal("0"))


def status_values(staged: models.ShopifyOrder) -> Dict[str, Any]:
    status = order_status(staged)
    pay = payment_status(staged)
    return {
        "status": status,
        "payment_status": pay,
        "completed_at": (staged.closed_at or staged.shopify_updated_at) if status == "completed" else None,
        "financial_status": staged.financial_status,
        "fulfillment_status": staged.fulfillment_status,
        "paid_amount": _money(staged.total_price) if pay == "paid" else Decimal("0"),
        "cancelled_at": staged.cancelled_at,
        "cancel_reason": staged.cancel_reason,
        "is_active": bool(staged.is_active),
    }


def _address(raw: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    return {k: v for k, v in raw.items() if v not in (None, "")}


def new_order_values(db: Session, staged: models.ShopifyOrder) -> Dict[str, Any]:
    customer_id = None
    if staged.shopify_customer_id:
        customer_id = db.query(models.Customer.id).filter(
            models.Customer.organization_id == staged.organization_id,
            models.Customer.shopify_customer_id == staged.shopify_customer_id,
        ).scalar()
    values = {
        "organization_id": staged.organization_id,
        "shopify_order_id": staged.shopify_order_id,
        "order_number": staged.order_number,
        "customer_id": customer_id,
        "customer_name": staged.customer_name,
        "customer_email": staged.email,
        "customer_phone": staged.phone,
        "fulfillment_type": staged.fulfillment_method or "shipping",
        "order_date": staged.shopify_created_at,
        "due_date": due_date_for(staged),
        "pickup_location": staged.pickup_location,
        "delivery_address": _address(staged.shipping_address),
        "billing_address": _address(staged.billing_address),
        "currency": staged.currency,
        "subtotal": _money(staged.subtotal_price),
        "tax_amount": _money(staged.total_tax),
        "discount_amount": _money(staged.total_discounts),
        "shipping_amount": _money(staged.total_shipping),
        "total": _money(staged.total_price),
        "source": "shopify",
        "synced_at": now_utc(),
    }
    values.update(status_values(staged))
    return values


# --- Items ---

def item_rows(db: Session, order: models.Order, staged: models.ShopifyOrder) -> List[Dict[str, Any]]:
    rows = []
    for index, raw in enumerate(staged.line_items or []):
        line = ShopifyLineItemRecord.model_validate(raw)
        product_ext = line.product.external_id if line.product else None
        variant_ext = line.variant.external_id if line.variant else None
        mapping = get_mapping(db, order.organization_id, product_ext, variant_ext)
        quantity = line.quantity if line.quantity and line.quantity > 0 else 1
        unit_price = _money(line.original_unit_price_set.amount if line.original_unit_price_set else None)
        subtotal = to_decimal(line.discounted_total_set.amount if line.discounted_total_set else None)
        customizations = {
            a.key: a.value for a in line.custom_attributes
            if a.key and not a.key.startswith("_") and a.value is not None
        }
        rows.append({
            "organization_id": order.organization_id,
            "order_id": order.id,
            "product_id": mapping.internal_product_id if mapping else None,
            "variant_id": mapping.internal_variant_id if mapping else None,
            "item_type": "product" if mapping else "custom",
            "name": line.title or line.name or "Item",
            "description": line.variant_title,
            "sku": line.sku,
            "quantity": quantity,
            "unit_price": unit_price,
            "subtotal": subtotal if subtotal is not None else unit_price * quantity,
            "external_item_id": line.external_id,
            "shopify_product_id": product_ext,
            "shopify_variant_id": variant_ext,
            "customizations": customizations or None,
            "display_order": index,
        })
    return rows


def replace_order_items(db: Session, order: models.Order, staged: models.ShopifyOrder) -> List[models.OrderItem]:
    """Deletes the order's items and re-creates them from the staged line items. Does not commit."""
    db.query(models.OrderItem).filter(models.OrderItem.order_id == order.id).delete(synchronize_session=False)
    db.expire(order, ["items"])
    items = [models.OrderItem(**row) for row in item_rows(db, order, staged)]
    db.add_all(items)
    db.flush()
    return items


def relink_order_items(db: Session, organization_id: str, shopify_product_ids: Sequence[str]) -> int:
    """
    Points unlinked ``custom`` items at internal products once a mapping for
    their Shopify product/variant exists (orders synced before the products
    were). Returns the number of items linked.
    """
    if not shopify_product_ids:
        return 0
    items = db.query(models.OrderItem).filter(
        models.OrderItem.organization_id == organization_id,
        models.OrderItem.shopify_product_id.in_(list(shopify_product_ids)),
        models.OrderItem.product_id.is_(None),
    ).all()
    linked = 0
    for item in items:
        mapping = get_mapping(db, organization_id, item.shopify_product_id, item.shopify_variant_id)
        if mapping:
            item.product_id = mapping.internal_product_id
            item.variant_id = mapping.internal_variant_id
            item.item_type = "product"
            linked += 1
    if linked:
        db.commit()
    return linked


# --- Linking ---

def _find_order(db: Session, staged: models.ShopifyOrder) -> Optional[models.Order]:
    order = None
    if staged.internal_order_id:
        order = db.get(models.Order, staged.internal_order_id)
    if order is None:
        order = db.query(models.Order).filter(
            models.Order.organization_id == staged.organization_id,
            models.Order.shopify_order_id == staged.shopify_order_id,
        ).first()
    return order


def link_order(db: Session, staged: models.ShopifyOrder) -> str:
    """Resolves one staged order; returns 'created' or 'updated'. Does not commit."""
    order = _find_order(db, staged)
    if order is None:
        order = models.Order(**new_order_values(db, staged))
        db.add(order)
        db.flush()
        outcome = "created"
    else:
        apply_changes(order, status_values(staged), STATUS_FIELDS)
        order.synced_at = now_utc()
        outcome = "updated"

    if staged.internal_order_id != order.id:
        staged.internal_order_id = order.id

    items = replace_order_items(db, order, staged)
    note_extractor.replace_order_notes(db, staged.organization_id, order.id, staged, items)
    return outcome


def link_orders(db: Session, organization_id: str, shopify_order_ids: List[str]) -> LinkResult:
    """
    Creates or refreshes internal orders for the given staged orders, then
    links their tags. One commit per order; failures are isolated per order.
    """
    result = LinkResult()
    tag_strings: Dict[int, str] = {}
    tagged: Dict[int, str] = {}
    for staged in crud_staging.get_staged_orders(db, organization_id, shopify_order_ids):
        try:
            outcome = link_order(db, staged)
            db.commit()
            setattr(result, outcome, getattr(result, outcome) + 1)
            result.linked += 1
            if staged.tags:
                tag_strings[staged.internal_order_id] = staged.tags
                tagged[staged.internal_order_id] = staged.shopify_order_id
        except Exception as e:
            db.rollback()
            logger.exception("Failed to link order %s (org=%s): %s", staged.shopify_order_id, organization_id, e)
            result.record_failure(staged.shopify_order_id, e)

    if tag_strings:
        try:
            tag_extractor.sync_entity_tags(db, organization_id, "order", tag_strings)
        except Exception as e:
            db.rollback()
            logger.exception("Failed to link order tags (org=%s): %s", organization_id, e)
            for order_ext in tagged.values():
                result.record_failure(order_ext, e)
                result.linked -= 1

    logger.info(
        "Linked orders org=%s linked=%d created=%d updated=%d failed=%d",
        organization_id, result.linked, result.created, result.updated, len(result.failed),
    )
    return result


def deactivate_order(db: Session, organization_id: str, internal_order_id: Optional[int],
                     shopify_order_id: str) -> None:
    order = db.get(models.Order, internal_order_id) if internal_order_id else None
    if order is None:
        order = db.query(models.Order).filter(
            models.Order.organization_id == organization_id,
            models.Order.shopify_order_id == shopify_order_id,
        ).first()
    if order is None:
        return
    order.is_active = False
    db.commit()

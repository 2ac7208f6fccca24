# services/customer_linker.py
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

import models
from crud import staging as crud_staging
from services.product_linker import LinkResult
from utils import get_logger, apply_changes, to_decimal

logger = get_logger("linker")

CUSTOMER_FIELDS = (
    "first_name", "last_name", "email", "phone", "shopify_customer_id", "shopify_tags",
    "total_spent", "orders_count", "accepts_marketing", "is_active",
)


def customer_values(sc: models.ShopifyCustomer) -> Dict[str, Any]:
    return {
        "organization_id": sc.organization_id,
        "first_name": sc.first_name,
        "last_name": sc.last_name,
        "email": sc.email,
        "phone": sc.phone,
        "shopify_customer_id": sc.shopify_customer_id,
        "shopify_tags": sc.tags or None,
        "total_spent": to_decimal(sc.total_spent, Decimal("0")),
        "orders_count": sc.orders_count or 0,
        "accepts_marketing": bool(sc.accepts_marketing),
        "is_active": bool(sc.is_active),
    }


def find_customer(db: Session, sc: models.ShopifyCustomer) -> Optional[models.Customer]:
    """
    Linked row first, then the Shopify id, then an email match against
    customers not yet tied to any Shopify customer.
    """
    if sc.internal_customer_id:
        customer = db.get(models.Customer, sc.internal_customer_id)
        if customer is not None:
            return customer
    customer = db.query(models.Customer).filter(
        models.Customer.organization_id == sc.organization_id,
        models.Customer.shopify_customer_id == sc.shopify_customer_id,
    ).first()
    if customer is not None or not sc.email:
        return customer
    return db.query(models.Customer).filter(
        models.Customer.organization_id == sc.organization_id,
        func.lower(models.Customer.email) == sc.email.strip().lower(),
        models.Customer.shopify_customer_id.is_(None),
    ).order_by(models.Customer.id).first()


def link_customers(db: Session, organization_id: str, shopify_customer_ids: List[str]) -> LinkResult:
    """Updates matching internal customers or creates new ones, then links staging rows to them."""
    result = LinkResult()
    for sc in crud_staging.get_staged_customers(db, organization_id, shopify_customer_ids):
        try:
            values = customer_values(sc)
            customer = find_customer(db, sc)
            if customer is None:
                customer = models.Customer(source="shopify", **values)
                db.add(customer)
                db.flush()
                result.created += 1
            elif apply_changes(customer, values, CUSTOMER_FIELDS):
                result.updated += 1
            else:
                result.unchanged += 1
            if sc.internal_customer_id != customer.id:
                sc.internal_customer_id = customer.id
            db.commit()
            result.linked += 1
        except Exception as e:
            db.rollback()
            logger.exception("Failed to link customer %s (org=%s): %s", sc.shopify_customer_id, organization_id, e)
            result.record_failure(sc.shopify_customer_id, e)

    logger.info(
        "Linked customers org=%s linked=%d created=%d updated=%d unchanged=%d failed=%d",
        organization_id, result.linked, result.created, result.updated, result.unchanged, len(result.failed),
    )
    return result


def deactivate_customer(db: Session, organization_id: str, internal_customer_id: Optional[int],
                        shopify_customer_id: str) -> None:
    customer = db.get(models.Customer, internal_customer_id) if internal_customer_id else None
    if customer is None:
        customer = db.query(models.Customer).filter(
            models.Customer.organization_id == organization_id,
            models.Customer.shopify_customer_id == shopify_customer_id,
        ).first()
    if customer is None:
        return
    customer.is_active = False
    db.commit()

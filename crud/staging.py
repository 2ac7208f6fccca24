# crud/staging.py
"""
Staging upserts. Pure persistence: rows arrive fully shaped from
``services.transformers`` and are written keyed by (organization, external id).
The ``internal_*_id`` back-references belong to the linkers and are never
overwritten here.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

import models
from config import settings
from .utils import upsert_batch

# table key -> (model, conflict keys, linker-owned columns, statement size)
STAGING_TABLES = {
    "products": (models.ShopifyProduct, ("organization_id", "shopify_product_id"), ("internal_product_id",), None),
    "variants": (models.ShopifyVariant, ("organization_id", "shopify_variant_id"), ("internal_variant_id",), None),
    # order rows carry line items, addresses and the raw payload
    "orders": (models.ShopifyOrder, ("organization_id", "shopify_order_id"), ("internal_order_id",), "wide"),
    "customers": (models.ShopifyCustomer, ("organization_id", "shopify_customer_id"), ("internal_customer_id",), None),
}

# products before variants so a product row exists for every staged variant
WRITE_ORDER = ("products", "variants", "orders", "customers")


def upsert_staging_rows(db: Session, table: str, rows: List[Dict[str, Any]],
                        batch_size: Optional[int] = None, sub_batch_size: Optional[int] = None) -> int:
    model, keys, preserve, width = STAGING_TABLES[table]
    size = batch_size or settings.staging_batch_size
    if width == "wide":
        size = min(size, sub_batch_size or settings.staging_sub_batch_size)
    return upsert_batch(db, model, rows, keys, preserve=preserve, batch_size=size)


def upsert_batch_rows(db: Session, rows_by_table: Dict[str, List[Dict[str, Any]]], **kwargs) -> Dict[str, int]:
    """
    Writes every table in ``rows_by_table`` and commits once.
    Errors propagate after a rollback; the caller decides whether the page fails.
    """
    written: Dict[str, int] = {}
    try:
        for table in WRITE_ORDER:
            rows = rows_by_table.get(table) or []
            if rows:
                written[table] = upsert_staging_rows(db, table, rows, **kwargs)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return written


# --- Lookups used by the linkers ---

def get_staged_products(db: Session, organization_id: str, product_ids: List[str]) -> List[models.ShopifyProduct]:
    if not product_ids:
        return []
    return db.query(models.ShopifyProduct).filter(
        models.ShopifyProduct.organization_id == organization_id,
        models.ShopifyProduct.shopify_product_id.in_(product_ids),
    ).order_by(models.ShopifyProduct.id).all()


def get_staged_variants(db: Session, organization_id: str, product_ids: List[str]) -> List[models.ShopifyVariant]:
    if not product_ids:
        return []
    return db.query(models.ShopifyVariant).filter(
        models.ShopifyVariant.organization_id == organization_id,
        models.ShopifyVariant.shopify_product_id.in_(product_ids),
    ).order_by(models.ShopifyVariant.shopify_product_id, models.ShopifyVariant.position,
               models.ShopifyVariant.id).all()


def get_staged_orders(db: Session, organization_id: str, order_ids: List[str]) -> List[models.ShopifyOrder]:
    if not order_ids:
        return []
    return db.query(models.ShopifyOrder).filter(
        models.ShopifyOrder.organization_id == organization_id,
        models.ShopifyOrder.shopify_order_id.in_(order_ids),
    ).order_by(models.ShopifyOrder.id).all()


def get_staged_customers(db: Session, organization_id: str, customer_ids: List[str]) -> List[models.ShopifyCustomer]:
    if not customer_ids:
        return []
    return db.query(models.ShopifyCustomer).filter(
        models.ShopifyCustomer.organization_id == organization_id,
        models.ShopifyCustomer.shopify_customer_id.in_(customer_ids),
    ).order_by(models.ShopifyCustomer.id).all()


# --- Webhook helpers ---

def mark_webhook_received(db: Session, kind: str, organization_id: str, external_id: str, at: datetime) -> None:
    model, keys, _, _ = STAGING_TABLES[kind]
    db.query(model).filter(
        model.organization_id == organization_id,
        getattr(model, keys[1]) == external_id,
    ).update({"last_webhook_at": at}, synchronize_session=False)
    db.commit()


def soft_delete_product(db: Session, organization_id: str, product_id: str, at: datetime) -> Optional[int]:
    """Deactivates the staged product and its variants. Returns the linked internal product id."""
    staged = db.query(models.ShopifyProduct).filter(
        models.ShopifyProduct.organization_id == organization_id,
        models.ShopifyProduct.shopify_product_id == product_id,
    ).first()
    db.query(models.ShopifyVariant).filter(
        models.ShopifyVariant.organization_id == organization_id,
        models.ShopifyVariant.shopify_product_id == product_id,
    ).update({"is_active": False, "last_webhook_at": at}, synchronize_session=False)
    if not staged:
        db.commit()
        return None
    staged.is_active = False
    staged.status = "deleted"
    staged.last_webhook_at = at
    db.commit()
    return staged.internal_product_id


def soft_delete_order(db: Session, organization_id: str, order_id: str, at: datetime) -> Optional[int]:
    staged = db.query(models.ShopifyOrder).filter(
        models.ShopifyOrder.organization_id == organization_id,
        models.ShopifyOrder.shopify_order_id == order_id,
    ).first()
    if not staged:
        return None
    staged.is_active = False
    staged.last_webhook_at = at
    db.commit()
    return staged.internal_order_id


def soft_delete_customer(db: Session, organization_id: str, customer_id: str, at: datetime) -> Optional[int]:
    staged = db.query(models.ShopifyCustomer).filter(
        models.ShopifyCustomer.organization_id == organization_id,
        models.ShopifyCustomer.shopify_customer_id == customer_id,
    ).first()
    if not staged:
        return None
    staged.is_active = False
    staged.state = "deleted"
    staged.last_webhook_at = at
    db.commit()
    return staged.internal_customer_id

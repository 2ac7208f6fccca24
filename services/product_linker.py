# services/product_linker.py
"""
Derive internal products/variants from staged Shopify products.

Writes are skipped for rows whose mapped fields already match (field-level
dirty check), so repeated incremental syncs of unchanged products touch
nothing but the staging tables.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

import models
from crud import staging as crud_staging
from services import tag_extractor
from utils import get_logger, apply_changes, changed_fields, split_tags, to_decimal, now_utc

logger = get_logger("linker")

PRODUCT_FIELDS = (
    "type", "name", "description", "handle", "sku", "price", "category", "tags",
    "primary_image_url", "is_active", "is_published", "published_at", "source",
)
VARIANT_FIELDS = (
    "product_id", "name", "sku", "barcode", "price", "compare_at_price",
    "option1_name", "option1_value", "option2_name", "option2_value", "option3_name", "option3_value",
    "track_inventory", "inventory_quantity", "allow_backorder", "sort_order",
    "is_default", "is_active", "is_available",
)


@dataclass
class LinkResult:
    """Outcome of linking one batch. ``unchanged`` records are also counted as linked."""
    linked: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: Dict[str, str] = field(default_factory=dict)

    def record_failure(self, external_id: str, error: Exception) -> None:
        self.failed[external_id] = f"{type(error).__name__}: {error}"

    def merge(self, other: "LinkResult") -> None:
        self.linked += other.linked
        self.created += other.created
        self.updated += other.updated
        self.unchanged += other.unchanged
        self.failed.update(other.failed)


# --- Field mapping ---

def product_values(sp: models.ShopifyProduct, variants: List[models.ShopifyVariant]) -> Dict[str, Any]:
    first = variants[0] if variants else None
    status = (sp.status or "").lower()
    return {
        "organization_id": sp.organization_id,
        "shopify_product_id": sp.shopify_product_id,
        "type": sp.product_type or "custom",
        "name": sp.title or sp.handle or f"Shopify product {sp.shopify_product_id}",
        "description": sp.body_html,
        "handle": sp.handle,
        "sku": first.sku if first else None,
        "price": to_decimal(first.price, Decimal("0")) if first else Decimal("0"),
        "category": sp.product_type,
        "tags": split_tags(sp.tags),
        "primary_image_url": sp.featured_image_url,
        "is_active": bool(sp.is_active) and status == "active",
        "is_published": status == "active" and sp.published_at is not None,
        "published_at": sp.published_at,
        "source": "shopify",
    }


def variant_values(sv: models.ShopifyVariant, product_id: int) -> Dict[str, Any]:
    policy = (sv.inventory_policy or "").lower()
    qty = sv.inventory_quantity or 0
    allow_backorder = policy == "continue"
    return {
        "organization_id": sv.organization_id,
        "product_id": product_id,
        "shopify_variant_id": sv.shopify_variant_id,
        "name": sv.title or "Default",
        "sku": sv.sku,
        "barcode": sv.barcode,
        "price": to_decimal(sv.price, Decimal("0")),
        "compare_at_price": to_decimal(sv.compare_at_price),
        "option1_name": sv.option1_name,
        "option1_value": sv.option1_value,
        "option2_name": sv.option2_name,
        "option2_value": sv.option2_value,
        "option3_name": sv.option3_name,
        "option3_value": sv.option3_value,
        "track_inventory": policy == "deny",
        "inventory_quantity": qty,
        "allow_backorder": allow_backorder,
        "sort_order": sv.position or 0,
        "is_default": sv.position == 1,
        "is_active": bool(sv.is_active),
        "is_available": bool(sv.is_active) and (allow_backorder or qty > 0),
    }


def _mapping_label(product: models.Product, variant: Optional[models.ProductVariant]) -> str:
    if variant is None or variant.name in (None, "", "Default", "Default Title"):
        return product.name
    return f"{product.name} - {variant.name}"


# --- Mapping table ---

def _existing_mappings(db: Session, organization_id: str, product_ids: List[str]) -> Dict[Tuple[str, str], models.ProductMapping]:
    rows = db.query(models.ProductMapping).filter(
        models.ProductMapping.organization_id == organization_id,
        models.ProductMapping.shopify_product_id.in_(product_ids),
    ).all()
    return {(m.shopify_product_id, m.shopify_variant_id): m for m in rows}


def _ensure_mapping(db: Session, existing: Dict[Tuple[str, str], models.ProductMapping],
                    organization_id: str, shopify_product_id: str, shopify_variant_id: str,
                    product: models.Product, variant: Optional[models.ProductVariant]) -> bool:
    values = {
        "internal_product_id": product.id,
        "internal_variant_id": variant.id if variant is not None else None,
        "label": _mapping_label(product, variant),
    }
    key = (shopify_product_id, shopify_variant_id)
    mapping = existing.get(key)
    if mapping is None:
        mapping = models.ProductMapping(
            organization_id=organization_id,
            shopify_product_id=shopify_product_id,
            shopify_variant_id=shopify_variant_id,
            last_synced_at=now_utc(),
            **values,
        )
        db.add(mapping)
        existing[key] = mapping
        return True
    if apply_changes(mapping, values):
        mapping.last_synced_at = now_utc()
        return True
    return False


def get_mapping(db: Session, organization_id: str, shopify_product_id: Optional[str],
                shopify_variant_id: Optional[str]) -> Optional[models.ProductMapping]:
    """Resolves a line item: variant row first, then the product-level row."""
    if not shopify_product_id and not shopify_variant_id:
        return None
    q = db.query(models.ProductMapping).filter(models.ProductMapping.organization_id == organization_id)
    if shopify_variant_id:
        filters = [models.ProductMapping.shopify_variant_id == shopify_variant_id]
        if shopify_product_id:
            filters.append(models.ProductMapping.shopify_product_id == shopify_product_id)
        mapping = q.filter(*filters).first()
        if mapping:
            return mapping
    if shopify_product_id:
        return q.filter(
            models.ProductMapping.shopify_product_id == shopify_product_id,
            models.ProductMapping.shopify_variant_id == "",
        ).first()
    return None


# --- Linking ---

def _link_one(db: Session, sp: models.ShopifyProduct, variants: List[models.ShopifyVariant],
              products_by_ext: Dict[str, models.Product], variants_by_ext: Dict[str, models.ProductVariant],
              mappings: Dict[Tuple[str, str], models.ProductMapping]) -> str:
    """Links one staged product and its variants. Returns 'created' | 'updated' | 'unchanged'."""
    org = sp.organization_id
    outcome = "unchanged"

    values = product_values(sp, variants)
    product = products_by_ext.get(sp.shopify_product_id)
    if product is None and sp.internal_product_id:
        product = db.get(models.Product, sp.internal_product_id)
    if product is None:
        product = models.Product(**values)
        db.add(product)
        db.flush()
        products_by_ext[sp.shopify_product_id] = product
        outcome = "created"
    elif apply_changes(product, values, PRODUCT_FIELDS):
        outcome = "updated"

    if sp.internal_product_id != product.id:
        sp.internal_product_id = product.id

    touched = _ensure_mapping(db, mappings, org, sp.shopify_product_id, "", product, None)

    for sv in variants:
        v_values = variant_values(sv, product.id)
        variant = variants_by_ext.get(sv.shopify_variant_id)
        if variant is None and sv.internal_variant_id:
            variant = db.get(models.ProductVariant, sv.internal_variant_id)
        if variant is None:
            variant = models.ProductVariant(**v_values)
            db.add(variant)
            db.flush()
            variants_by_ext[sv.shopify_variant_id] = variant
            touched = True
        elif changed_fields(variant, v_values, VARIANT_FIELDS):
            apply_changes(variant, v_values, VARIANT_FIELDS)
            touched = True
        if sv.internal_variant_id != variant.id:
            sv.internal_variant_id = variant.id
        touched = _ensure_mapping(db, mappings, org, sp.shopify_product_id, sv.shopify_variant_id,
                                  product, variant) or touched

    if outcome == "unchanged" and touched:
        outcome = "updated"
    return outcome


def link_products(db: Session, organization_id: str, shopify_product_ids: List[str]) -> LinkResult:
    """
    Creates or refreshes internal products, variants and product mappings for
    the given staged products, then links their tags. One commit per product;
    a failing product is rolled back, recorded in the result and the batch
    continues.
    """
    result = LinkResult()
    if not shopify_product_ids:
        return result

    staged = crud_staging.get_staged_products(db, organization_id, shopify_product_ids)
    staged_variants = crud_staging.get_staged_variants(db, organization_id, shopify_product_ids)
    variants_by_product: Dict[str, List[models.ShopifyVariant]] = defaultdict(list)
    for sv in staged_variants:
        variants_by_product[sv.shopify_product_id].append(sv)

    products_by_ext = {
        p.shopify_product_id: p for p in db.query(models.Product).filter(
            models.Product.organization_id == organization_id,
            models.Product.shopify_product_id.in_(shopify_product_ids),
        ).all()
    }
    variant_ids = [sv.shopify_variant_id for sv in staged_variants]
    variants_by_ext = {
        v.shopify_variant_id: v for v in db.query(models.ProductVariant).filter(
            models.ProductVariant.organization_id == organization_id,
            models.ProductVariant.shopify_variant_id.in_(variant_ids),
        ).all()
    } if variant_ids else {}
    mappings = _existing_mappings(db, organization_id, shopify_product_ids)
    tag_strings: Dict[int, str] = {}
    tagged: Dict[int, str] = {}

    for sp in staged:
        try:
            outcome = _link_one(db, sp, variants_by_product.get(sp.shopify_product_id, []),
                                products_by_ext, variants_by_ext, mappings)
            if db.dirty or db.new:
                db.commit()
            setattr(result, outcome, getattr(result, outcome) + 1)
            result.linked += 1
            if sp.tags:
                tag_strings[sp.internal_product_id] = sp.tags
                tagged[sp.internal_product_id] = sp.shopify_product_id
        except Exception as e:
            db.rollback()
            logger.exception("Failed to link product %s (org=%s): %s", sp.shopify_product_id, organization_id, e)
            result.record_failure(sp.shopify_product_id, e)
            # identity map was expired by the rollback; drop cached rows that may not exist
            products_by_ext.pop(sp.shopify_product_id, None)
            for sv in variants_by_product.get(sp.shopify_product_id, []):
                variants_by_ext.pop(sv.shopify_variant_id, None)
            mappings = _existing_mappings(db, organization_id, shopify_product_ids)

    if tag_strings:
        try:
            tag_extractor.sync_entity_tags(db, organization_id, "product", tag_strings)
        except Exception as e:
            db.rollback()
            logger.exception("Failed to link product tags (org=%s): %s", organization_id, e)
            for product_ext in tagged.values():
                result.record_failure(product_ext, e)
                result.linked -= 1

    logger.info(
        "Linked products org=%s linked=%d created=%d updated=%d unchanged=%d failed=%d",
        organization_id, result.linked, result.created, result.updated, result.unchanged, len(result.failed),
    )
    return result


def deactivate_product(db: Session, organization_id: str, internal_product_id: Optional[int],
                       shopify_product_id: str) -> None:
    product = None
    if internal_product_id:
        product = db.get(models.Product, internal_product_id)
    if product is None:
        product = db.query(models.Product).filter(
            models.Product.organization_id == organization_id,
            models.Product.shopify_product_id == shopify_product_id,
        ).first()
    if product is None:
        return
    product.is_active = False
    product.is_published = False
    for variant in product.variants:
        variant.is_active = False
        variant.is_available = False
    db.commit()

# services/transformers.py
"""
Map platform records onto staging-table rows.

Every transformer takes a validated record from ``schemas`` and returns plain
dicts keyed by staging column name. They never touch the database and fall
back to defaults for every optional field.
"""
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl

from schemas import (ShopifyProductRecord, ShopifyVariantRecord, ShopifyOrderRecord,
                     ShopifyCustomerRecord, RECORD_TYPES)
from utils import get_logger, money_text, join_tags, to_int, now_utc, first_match

logger = get_logger("transform")

MAX_OPTIONS = 3
STRUCTURED_ATTRIBUTE = "_zapietid"

LOCAL_DELIVERY_WORDS = ("local delivery", "local-delivery", "local_delivery")
PICKUP_WORDS = ("pickup", "pick up", "pick-up", "in-store pickup")

_ISO_DATE = re.compile(r"(?<!\d)(\d{4})[-/](\d{1,2})[-/](\d{1,2})(?!\d)")
_US_DATE = re.compile(r"(?<!\d)(\d{1,2})/(\d{1,2})/(\d{4})(?!\d)")


def extract_date(text: Optional[str]) -> Optional[date]:
    """Finds the first YYYY-MM-DD (or YYYY/MM/DD) or MM/DD/YYYY date inside ``text``."""
    if not text:
        return None
    for pattern, order in ((_ISO_DATE, (0, 1, 2)), (_US_DATE, (2, 0, 1))):
        for m in pattern.finditer(str(text)):
            parts = m.groups()
            try:
                return date(int(parts[order[0]]), int(parts[order[1]]), int(parts[order[2]]))
            except ValueError:
                continue
    return None


@dataclass
class StagingBundle:
    """Staging rows derived from one platform record, keyed by staging table."""
    kind: str
    external_id: str
    rows: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)


# =========================
# Products
# =========================

def _variant_options(option_names: List[str], variant: ShopifyVariantRecord) -> Dict[str, Optional[str]]:
    selected = {o.name: o.value for o in variant.selected_options if o.name}
    out: Dict[str, Optional[str]] = {}
    for i in range(MAX_OPTIONS):
        name = option_names[i] if i < len(option_names) else None
        out[f"option{i + 1}_name"] = name
        out[f"option{i + 1}_value"] = selected.get(name) if name else None
    return out


def transform_variant(variant: ShopifyVariantRecord, product: ShopifyProductRecord, organization_id: str,
                      option_names: List[str], synced_at: datetime) -> Dict[str, Any]:
    weight = variant.inventory_item.measurement.weight if (
        variant.inventory_item and variant.inventory_item.measurement) else None
    requires_shipping = variant.inventory_item.requires_shipping if variant.inventory_item else None
    sku = (variant.sku or "").strip() or None
    row = {
        "organization_id": organization_id,
        "shopify_variant_id": variant.external_id,
        "shopify_product_id": product.external_id,
        "shopify_gid": variant.id,
        "title": variant.title,
        "sku": sku,
        "barcode": (variant.barcode or "").strip() or None,
        "price": money_text(variant.price),
        "compare_at_price": money_text(variant.compare_at_price),
        "position": variant.position,
        "inventory_policy": (variant.inventory_policy or "").lower() or None,
        "inventory_quantity": variant.inventory_quantity or 0,
        "weight": weight.value if weight else None,
        "weight_unit": weight.unit.lower() if weight and weight.unit else None,
        "image_src": variant.image.url if variant.image else None,
        "requires_shipping": True if requires_shipping is None else requires_shipping,
        "taxable": True if variant.taxable is None else variant.taxable,
        "is_active": (product.status or "").lower() == "active",
        "shopify_created_at": variant.created_at,
        "shopify_updated_at": variant.updated_at,
        "raw_data": variant.raw,
        "synced_at": synced_at,
    }
    row.update(_variant_options(option_names, variant))
    return row


def transform_product(record: ShopifyProductRecord, organization_id: str,
                      synced_at: Optional[datetime] = None) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
    synced_at = synced_at or now_utc()
    option_names = [o.name for o in record.options if o.name]
    if len(option_names) > MAX_OPTIONS:
        logger.warning(
            "Product %s has %d options; only the first %d are kept (%s dropped)",
            record.external_id, len(option_names), MAX_OPTIONS, ", ".join(option_names[MAX_OPTIONS:]),
        )
    option_names = option_names[:MAX_OPTIONS]

    image_urls = [img.url for img in record.images if img.url]
    featured = record.featured_image.url if record.featured_image and record.featured_image.url else None
    product_row = {
        "organization_id": organization_id,
        "shopify_product_id": record.external_id,
        "shopify_gid": record.id,
        "title": record.title,
        "body_html": record.body_html,
        "vendor": record.vendor,
        "product_type": record.product_type,
        "handle": record.handle,
        "status": (record.status or "").lower() or None,
        "tags": join_tags(record.tags),
        "option_names": option_names,
        "featured_image_url": featured or (image_urls[0] if image_urls else None),
        "image_urls": image_urls,
        "published_at": record.published_at,
        "shopify_created_at": record.created_at,
        "shopify_updated_at": record.updated_at,
        "is_active": True,
        "raw_product_data": record.raw,
        "synced_at": synced_at,
    }
    variant_rows = [
        transform_variant(v, record, organization_id, option_names, synced_at)
        for v in record.variants
    ]
    return product_row, variant_rows


# =========================
# Orders: fulfillment classification
# =========================

@dataclass
class FulfillmentInfo:
    method: str = "shipping"
    date: Optional[str] = None
    location: Optional[str] = None


@dataclass
class _OrderSignals:
    structured_method: Optional[str]
    structured_date: Optional[str]
    structured_location: Optional[str]
    shipping_text: str
    shipping_title: Optional[str]
    tags_text: str


_STRUCTURED_METHODS = {"P": "pickup", "D": "delivery", "S": "shipping"}


def parse_structured_attribute(value: Optional[str]) -> Dict[str, str]:
    """Parses ``M=D&L=112097&D=2025-10-20T00:00:00Z`` into its parts."""
    if not value:
        return {}
    return {k.upper(): v for k, v in parse_qsl(str(value), keep_blank_values=False)}


def _structured_signals(record: ShopifyOrderRecord) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    attributes = list(record.custom_attributes)
    for item in record.line_items:
        attributes.extend(item.custom_attributes)

    for attr in attributes:
        if (attr.key or "").lower() == STRUCTURED_ATTRIBUTE and attr.value:
            parts = parse_structured_attribute(attr.value)
            method = _STRUCTURED_METHODS.get((parts.get("M") or "").upper())
            if not method and parts.get("L"):
                method = "pickup"
            if method:
                raw_date = parts.get("D")
                day = extract_date(raw_date)
                return method, day.isoformat() if day else None, parts.get("L")

    method = when = where = None
    for attr in record.custom_attributes:
        key = (attr.key or "").strip().lower()
        if not attr.value:
            continue
        if key.startswith("pickup-location") or key.startswith("pickup location"):
            method = method or "pickup"
            where = where or attr.value
        elif key in ("pickup-date", "pickup date"):
            method = method or "pickup"
            when = when or attr.value
        elif key in ("delivery-date", "delivery date"):
            method = method or "delivery"
            when = when or attr.value
    day = extract_date(when)
    return method, day.isoformat() if day else None, where


def _signals(record: ShopifyOrderRecord) -> _OrderSignals:
    method, when, where = _structured_signals(record)
    shipping_parts = []
    for line in record.shipping_lines:
        shipping_parts.extend([line.title or "", line.code or ""])
    title = next((line.title for line in record.shipping_lines if line.title), None)
    return _OrderSignals(
        structured_method=method,
        structured_date=when,
        structured_location=where,
        shipping_text=" ".join(shipping_parts).lower(),
        shipping_title=title,
        tags_text=",".join(record.tags).lower(),
    )


def _mentions(attr: str, words) -> Any:
    return lambda s: any(w in getattr(s, attr) for w in words)


# first match wins
FULFILLMENT_RULES = [
    (lambda s: s.structured_method is not None, lambda s: s.structured_method),
    (_mentions("shipping_text", LOCAL_DELIVERY_WORDS), lambda s: "delivery"),
    (_mentions("shipping_text", PICKUP_WORDS), lambda s: "pickup"),
    (_mentions("tags_text", LOCAL_DELIVERY_WORDS), lambda s: "delivery"),
    (_mentions("tags_text", PICKUP_WORDS), lambda s: "pickup"),
]
DEFAULT_FULFILLMENT = "shipping"


def classify_fulfillment(record: ShopifyOrderRecord) -> FulfillmentInfo:
    signals = _signals(record)
    resolve = first_match(FULFILLMENT_RULES, signals, default=lambda s: DEFAULT_FULFILLMENT)
    method = resolve(signals)

    location = None
    if method == "pickup":
        location = signals.shipping_title or signals.structured_location
    elif method == "delivery":
        location = f"LOCAL_DELIVERY: {signals.shipping_title or 'Local Delivery'}"
    return FulfillmentInfo(method=method, date=signals.structured_date, location=location)


# =========================
# Orders
# =========================

def _customer_name(record: ShopifyOrderRecord) -> Optional[str]:
    sources = [record.customer.model_dump() if record.customer else {}, record.shipping_address or {},
               record.billing_address or {}]
    for src in sources:
        first = src.get("first_name") or src.get("firstName") or ""
        last = src.get("last_name") or src.get("lastName") or ""
        name = f"{first} {last}".strip()
        if name:
            return name
    return None


def transform_order(record: ShopifyOrderRecord, organization_id: str,
                    synced_at: Optional[datetime] = None) -> Dict[str, Any]:
    synced_at = synced_at or now_utc()
    fulfillment = classify_fulfillment(record)
    customer = record.customer
    return {
        "organization_id": organization_id,
        "shopify_order_id": record.external_id,
        "shopify_gid": record.id,
        "name": record.name,
        "order_number": (record.name or "").lstrip("#") or record.external_id,
        "email": record.email or (customer.email if customer else None),
        "phone": record.phone or (customer.phone if customer else None),
        "customer_name": _customer_name(record),
        "shopify_customer_id": customer.external_id if customer else None,
        "financial_status": (record.display_financial_status or "").lower() or None,
        "fulfillment_status": (record.display_fulfillment_status or "").lower() or None,
        "cancelled_at": record.cancelled_at,
        "cancel_reason": record.cancel_reason,
        "closed_at": record.closed_at,
        "processed_at": record.processed_at,
        "currency": record.currency_code,
        "subtotal_price": money_text(record.subtotal_price_set.amount if record.subtotal_price_set else None),
        "total_price": money_text(record.total_price_set.amount if record.total_price_set else None),
        "total_tax": money_text(record.total_tax_set.amount if record.total_tax_set else None),
        "total_discounts": money_text(record.total_discounts_set.amount if record.total_discounts_set else None),
        "total_shipping": money_text(
            record.total_shipping_price_set.amount if record.total_shipping_price_set else None),
        "tags": join_tags(record.tags),
        "note": record.note,
        "note_attributes": [{"name": a.key, "value": a.value} for a in record.custom_attributes if a.key],
        "line_items": [li.model_dump(mode="json", by_alias=True, exclude_none=True) for li in record.line_items],
        "shipping_lines": [sl.model_dump(mode="json", by_alias=True, exclude_none=True) for sl in record.shipping_lines],
        "shipping_address": record.shipping_address,
        "billing_address": record.billing_address,
        "fulfillment_method": fulfillment.method,
        "pickup_date": fulfillment.date,
        "pickup_location": fulfillment.location,
        "shopify_created_at": record.created_at,
        "shopify_updated_at": record.updated_at,
        "is_active": True,
        "raw_data": record.raw,
        "synced_at": synced_at,
    }


# =========================
# Customers
# =========================

def transform_customer(record: ShopifyCustomerRecord, organization_id: str,
                       synced_at: Optional[datetime] = None) -> Dict[str, Any]:
    synced_at = synced_at or now_utc()
    email_consent = record.email_marketing_consent or {}
    return {
        "organization_id": organization_id,
        "shopify_customer_id": record.external_id,
        "shopify_gid": record.id,
        "email": record.email,
        "first_name": record.first_name,
        "last_name": record.last_name,
        "phone": record.phone,
        "state": (record.state or "").lower() or None,
        "verified_email": bool(record.verified_email),
        "accepts_marketing": (email_consent.get("marketingState") or "").upper() == "SUBSCRIBED",
        "marketing_opt_in_level": email_consent.get("marketingOptInLevel"),
        "email_marketing_consent": record.email_marketing_consent,
        "sms_marketing_consent": record.sms_marketing_consent,
        "default_address_id": record.default_address.external_id if record.default_address else None,
        "addresses": record.addresses,
        "orders_count": to_int(record.number_of_orders, 0),
        "total_spent": money_text(record.amount_spent.amount if record.amount_spent else None) or "0.00",
        "currency": record.amount_spent.currency_code if record.amount_spent else None,
        "tags": join_tags(record.tags),
        "note": record.note,
        "shopify_created_at": record.created_at,
        "shopify_updated_at": record.updated_at,
        "is_active": True,
        "raw_data": record.raw,
        "synced_at": synced_at,
    }


# =========================
# Dispatch
# =========================

def transform_record(kind: str, payload: Dict[str, Any], organization_id: str,
                     synced_at: Optional[datetime] = None) -> StagingBundle:
    """
    Validates one raw API node and maps it to staging rows. Raises
    ``pydantic.ValidationError`` for payloads that are not a record of ``kind``.
    """
    record = RECORD_TYPES[kind].from_payload(payload)
    if kind == "products":
        product_row, variant_rows = transform_product(record, organization_id, synced_at)
        return StagingBundle(kind, record.external_id, {"products": [product_row], "variants": variant_rows})
    if kind == "orders":
        return StagingBundle(kind, record.external_id, {"orders": [transform_order(record, organization_id, synced_at)]})
    if kind == "customers":
        return StagingBundle(kind, record.external_id,
                             {"customers": [transform_customer(record, organization_id, synced_at)]})
    raise ValueError(f"Unknown entity kind '{kind}'")

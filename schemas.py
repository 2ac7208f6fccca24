# schemas.py
from __future__ import annotations

from typing import Optional, List, Dict, Any, Literal
from datetime import datetime
from pydantic import (BaseModel, Field, ConfigDict, AliasChoices, PrivateAttr,
                      field_validator, model_validator)
from pydantic.alias_generators import to_camel

EntityKind = Literal["products", "orders", "customers"]
SyncMode = Literal["full", "incremental"]
WebhookAction = Literal["create", "update", "delete"]

# =========================
# Base model configurations
# =========================

class ORMBase(BaseModel):
    """Base for models mapped to SQLAlchemy objects."""
    model_config = ConfigDict(from_attributes=True)

class APIBase(BaseModel):
    """Base for models mapped to external API payloads."""
    model_config = ConfigDict(
        populate_by_name=True,
        extra="allow",
        alias_generator=to_camel,
        coerce_numbers_to_str=True,
    )

    @model_validator(mode="before")
    @classmethod
    def drop_nulls(cls, data):
        # explicit nulls fall back to field defaults (empty lists etc.)
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class ExternalRecord(APIBase):
    """
    A platform record. Known fields are typed, anything else the API returns
    stays available through ``model_extra``, and the untouched payload is kept
    in ``raw`` for the staging tables.
    """
    _raw: Dict[str, Any] = PrivateAttr(default_factory=dict)

    id: str
    legacy_resource_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]):
        record = cls.model_validate(payload)
        record._raw = payload
        return record

    @property
    def raw(self) -> Dict[str, Any]:
        return self._raw or self.model_dump(by_alias=True, mode="json")

    @property
    def external_id(self) -> str:
        if self.legacy_resource_id:
            return str(self.legacy_resource_id)
        return str(self.id).split("/")[-1]


def _tags_to_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [t.strip() for t in value.split(",") if t.strip()]
    return [str(t).strip() for t in value if t is not None and str(t).strip()]


# =========================
# Shared nested shapes
# =========================

class Money(APIBase):
    amount: Optional[str] = None
    currency_code: Optional[str] = None

class MoneySet(APIBase):
    shop_money: Optional[Money] = None

    @property
    def amount(self) -> Optional[str]:
        return self.shop_money.amount if self.shop_money else None

class Attribute(APIBase):
    key: Optional[str] = Field(None, validation_alias=AliasChoices("key", "name"))
    value: Optional[str] = None

class ResourceRef(APIBase):
    id: Optional[str] = None
    legacy_resource_id: Optional[str] = None

    @property
    def external_id(self) -> Optional[str]:
        if self.legacy_resource_id:
            return str(self.legacy_resource_id)
        if self.id:
            return str(self.id).split("/")[-1]
        return None

class ImageRef(APIBase):
    url: Optional[str] = Field(None, validation_alias=AliasChoices("url", "src"))


# =========================
# Products
# =========================

class ProductOption(APIBase):
    name: Optional[str] = None
    values: List[str] = Field(default_factory=list)

class SelectedOption(APIBase):
    name: Optional[str] = None
    value: Optional[str] = None

class Weight(APIBase):
    value: Optional[str] = None
    unit: Optional[str] = None

class Measurement(APIBase):
    weight: Optional[Weight] = None

class InventoryItem(APIBase):
    requires_shipping: Optional[bool] = None
    measurement: Optional[Measurement] = None

class ShopifyVariantRecord(ExternalRecord):
    title: Optional[str] = None
    sku: Optional[str] = None
    barcode: Optional[str] = None
    price: Optional[str] = None
    compare_at_price: Optional[str] = None
    position: Optional[int] = None
    inventory_policy: Optional[str] = None
    inventory_quantity: Optional[int] = None
    taxable: Optional[bool] = None
    selected_options: List[SelectedOption] = Field(default_factory=list)
    image: Optional[ImageRef] = None
    inventory_item: Optional[InventoryItem] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class ShopifyProductRecord(ExternalRecord):
    title: Optional[str] = None
    body_html: Optional[str] = Field(None, validation_alias=AliasChoices("descriptionHtml", "bodyHtml", "body_html"))
    vendor: Optional[str] = None
    product_type: Optional[str] = None
    handle: Optional[str] = None
    status: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    options: List[ProductOption] = Field(default_factory=list)
    featured_image: Optional[ImageRef] = None
    images: List[ImageRef] = Field(default_factory=list)
    variants: List[ShopifyVariantRecord] = Field(default_factory=list)
    published_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("tags", mode="before")
    @classmethod
    def split_tags(cls, value):
        return _tags_to_list(value)


# =========================
# Orders
# =========================

class ShippingLine(APIBase):
    title: Optional[str] = None
    code: Optional[str] = None
    source: Optional[str] = None

class OrderCustomer(ResourceRef):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

class ShopifyLineItemRecord(APIBase):
    id: Optional[str] = None
    name: Optional[str] = None
    title: Optional[str] = None
    quantity: Optional[int] = None
    sku: Optional[str] = None
    variant_title: Optional[str] = None
    custom_attributes: List[Attribute] = Field(
        default_factory=list,
        validation_alias=AliasChoices("customAttributes", "properties", "custom_attributes"),
    )
    original_unit_price_set: Optional[MoneySet] = None
    discounted_total_set: Optional[MoneySet] = None
    product: Optional[ResourceRef] = None
    variant: Optional[ResourceRef] = None

    @property
    def external_id(self) -> Optional[str]:
        return str(self.id).split("/")[-1] if self.id else None

class ShopifyOrderRecord(ExternalRecord):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    note: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    closed_at: Optional[datetime] = None
    display_financial_status: Optional[str] = None
    display_fulfillment_status: Optional[str] = None
    currency_code: Optional[str] = None
    subtotal_price_set: Optional[MoneySet] = None
    total_price_set: Optional[MoneySet] = None
    total_tax_set: Optional[MoneySet] = None
    total_discounts_set: Optional[MoneySet] = None
    total_shipping_price_set: Optional[MoneySet] = None
    custom_attributes: List[Attribute] = Field(
        default_factory=list,
        validation_alias=AliasChoices("customAttributes", "noteAttributes", "note_attributes"),
    )
    customer: Optional[OrderCustomer] = None
    shipping_address: Optional[Dict[str, Any]] = None
    billing_address: Optional[Dict[str, Any]] = None
    shipping_lines: List[ShippingLine] = Field(default_factory=list)
    line_items: List[ShopifyLineItemRecord] = Field(default_factory=list)

    @field_validator("tags", mode="before")
    @classmethod
    def split_tags(cls, value):
        return _tags_to_list(value)


# =========================
# Customers
# =========================

class MarketingConsent(APIBase):
    marketing_state: Optional[str] = None
    marketing_opt_in_level: Optional[str] = None
    consent_updated_at: Optional[str] = None

class ShopifyCustomerRecord(ExternalRecord):
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    state: Optional[str] = None
    verified_email: Optional[bool] = None
    note: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    number_of_orders: Optional[str] = Field(None, validation_alias=AliasChoices("numberOfOrders", "ordersCount"))
    amount_spent: Optional[Money] = None
    email_marketing_consent: Optional[Dict[str, Any]] = None
    sms_marketing_consent: Optional[Dict[str, Any]] = None
    default_address: Optional[ResourceRef] = None
    addresses: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("tags", mode="before")
    @classmethod
    def split_tags(cls, value):
        return _tags_to_list(value)


RECORD_TYPES = {
    "products": ShopifyProductRecord,
    "orders": ShopifyOrderRecord,
    "customers": ShopifyCustomerRecord,
}


# ======================================================
# App-specific schemas (for API requests / responses)
# ======================================================

class SyncRequest(BaseModel):
    organization_id: str
    integration_id: int
    entity_kind: EntityKind = "orders"
    mode: SyncMode = "incremental"
    job_id: Optional[str] = None
    updated_since: Optional[datetime] = None
    entity_ids: Optional[List[str]] = None
    source: str = "manual"

class WebhookEvent(BaseModel):
    organization_id: str
    integration_id: int
    entity_kind: EntityKind
    external_id: str
    action: WebhookAction

    @model_validator(mode="after")
    def normalize_id(self):
        self.external_id = str(self.external_id).split("/")[-1]
        return self

class SyncJobStatus(ORMBase):
    id: str
    type: str
    entity_kind: str
    mode: str
    status: str
    processed_items: int = 0
    total_items: int = 0
    success_count: int = 0
    error_count: int = 0
    skip_count: int = 0
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None

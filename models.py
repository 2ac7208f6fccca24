# models.py

from sqlalchemy import (Column, Integer, String, DateTime, Date, Text, JSON,
                        ForeignKey, NUMERIC, BOOLEAN, Index, UniqueConstraint)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.dialects.postgresql import JSONB
from database import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class ShopifyIntegration(Base):
    __tablename__ = "shopify_integrations"
    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(64), nullable=False, index=True)
    shop_domain = Column(String(255), unique=True, nullable=False)
    access_token = Column(String(255), nullable=False)
    scope = Column(Text)
    webhook_secret = Column(String(255), nullable=True)
    is_active = Column(BOOLEAN, default=True, nullable=False)

    last_product_sync_at = Column(DateTime(timezone=True))
    last_order_sync_at = Column(DateTime(timezone=True))
    last_customer_sync_at = Column(DateTime(timezone=True))

    installed_at = Column(DateTime(timezone=True), server_default=func.now())
    uninstalled_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class SyncJob(Base):
    __tablename__ = "sync_jobs"
    id = Column(String(64), primary_key=True)
    organization_id = Column(String(64), nullable=False, index=True)
    integration_id = Column(Integer, ForeignKey("shopify_integrations.id"), nullable=True)

    type = Column(String(64), nullable=False)
    entity_kind = Column(String(32), nullable=False)
    mode = Column(String(32), nullable=False, default="full")
    status = Column(String(32), nullable=False, default="pending", index=True)

    # progress
    total_items = Column(Integer, default=0, nullable=False)
    processed_items = Column(Integer, default=0, nullable=False)
    success_count = Column(Integer, default=0, nullable=False)
    error_count = Column(Integer, default=0, nullable=False)
    skip_count = Column(Integer, default=0, nullable=False)

    # pagination
    current_page = Column(Integer, default=0, nullable=False)
    page_size = Column(Integer, default=250, nullable=False)
    next_page_token = Column(Text)

    config = Column(JSONType)

    error_message = Column(Text)
    last_error = Column(Text)
    errors = Column(JSONType)

    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    last_activity_at = Column(DateTime(timezone=True))

    job_metadata = Column("metadata", JSONType)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    created_by = Column(String(255))

    __table_args__ = (
        Index("ix_sync_jobs_org_kind", "organization_id", "entity_kind"),
    )


# =========================
# Staging tables
# =========================

class ShopifyProduct(Base):
    __tablename__ = "shopify_products"
    id = Column(Integer, primary_key=True)
    organization_id = Column(String(64), nullable=False)
    shopify_product_id = Column(String(64), nullable=False)
    shopify_gid = Column(String(255))
    title = Column(String(512))
    body_html = Column(Text)
    vendor = Column(String(255))
    product_type = Column(String(255))
    handle = Column(String(255))
    status = Column(String(50))
    tags = Column(Text)
    option_names = Column(JSONType)
    featured_image_url = Column(String(2048))
    image_urls = Column(JSONType)
    published_at = Column(DateTime(timezone=True))
    shopify_created_at = Column(DateTime(timezone=True))
    shopify_updated_at = Column(DateTime(timezone=True))
    is_active = Column(BOOLEAN, default=True, nullable=False)

    internal_product_id = Column(Integer, nullable=True)
    raw_product_data = Column(JSONType)
    synced_at = Column(DateTime(timezone=True))
    last_webhook_at = Column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("organization_id", "shopify_product_id", name="uq_shopify_products_org_product"),
    )


class ShopifyVariant(Base):
    __tablename__ = "shopify_variants"
    id = Column(Integer, primary_key=True)
    organization_id = Column(String(64), nullable=False)
    shopify_variant_id = Column(String(64), nullable=False)
    shopify_product_id = Column(String(64), nullable=False, index=True)
    shopify_gid = Column(String(255))
    title = Column(String(512))
    sku = Column(String(255))
    barcode = Column(String(255))
    price = Column(String(32))
    compare_at_price = Column(String(32))
    position = Column(Integer)
    inventory_policy = Column(String(32))
    inventory_quantity = Column(Integer, default=0)
    weight = Column(String(32))
    weight_unit = Column(String(32))
    option1_name = Column(String(255))
    option1_value = Column(String(255))
    option2_name = Column(String(255))
    option2_value = Column(String(255))
    option3_name = Column(String(255))
    option3_value = Column(String(255))
    image_src = Column(String(2048))
    requires_shipping = Column(BOOLEAN, default=True)
    taxable = Column(BOOLEAN, default=True)
    is_active = Column(BOOLEAN, default=True, nullable=False)
    shopify_created_at = Column(DateTime(timezone=True))
    shopify_updated_at = Column(DateTime(timezone=True))

    internal_variant_id = Column(Integer, nullable=True)
    raw_data = Column(JSONType)
    synced_at = Column(DateTime(timezone=True))
    last_webhook_at = Column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("organization_id", "shopify_variant_id", name="uq_shopify_variants_org_variant"),
    )


class ShopifyOrder(Base):
    __tablename__ = "shopify_orders"
    id = Column(Integer, primary_key=True)
    organization_id = Column(String(64), nullable=False)
    shopify_order_id = Column(String(64), nullable=False)
    shopify_gid = Column(String(255))
    name = Column(String(64))
    order_number = Column(String(64))
    email = Column(String(255))
    phone = Column(String(64))
    customer_name = Column(String(255))
    shopify_customer_id = Column(String(64))

    financial_status = Column(String(50))
    fulfillment_status = Column(String(50))
    cancelled_at = Column(DateTime(timezone=True))
    cancel_reason = Column(String(255))
    closed_at = Column(DateTime(timezone=True))
    processed_at = Column(DateTime(timezone=True))

    currency = Column(String(10))
    subtotal_price = Column(String(32))
    total_price = Column(String(32))
    total_tax = Column(String(32))
    total_discounts = Column(String(32))
    total_shipping = Column(String(32))

    tags = Column(Text)
    note = Column(Text)
    note_attributes = Column(JSONType)
    line_items = Column(JSONType)
    shipping_lines = Column(JSONType)
    shipping_address = Column(JSONType)
    billing_address = Column(JSONType)

    fulfillment_method = Column(String(32))
    pickup_date = Column(String(32))
    pickup_location = Column(String(512))

    shopify_created_at = Column(DateTime(timezone=True))
    shopify_updated_at = Column(DateTime(timezone=True))
    is_active = Column(BOOLEAN, default=True, nullable=False)

    internal_order_id = Column(Integer, nullable=True)
    raw_data = Column(JSONType)
    synced_at = Column(DateTime(timezone=True))
    last_webhook_at = Column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("organization_id", "shopify_order_id", name="uq_shopify_orders_org_order"),
    )


class ShopifyCustomer(Base):
    __tablename__ = "shopify_customers"
    id = Column(Integer, primary_key=True)
    organization_id = Column(String(64), nullable=False)
    shopify_customer_id = Column(String(64), nullable=False)
    shopify_gid = Column(String(255))
    email = Column(String(255), index=True)
    first_name = Column(String(255))
    last_name = Column(String(255))
    phone = Column(String(64))
    state = Column(String(32))
    verified_email = Column(BOOLEAN, default=False)
    accepts_marketing = Column(BOOLEAN, default=False)
    marketing_opt_in_level = Column(String(64))
    email_marketing_consent = Column(JSONType)
    sms_marketing_consent = Column(JSONType)
    default_address_id = Column(String(64))
    addresses = Column(JSONType)
    orders_count = Column(Integer, default=0)
    total_spent = Column(String(32))
    currency = Column(String(10))
    tags = Column(Text)
    note = Column(Text)
    shopify_created_at = Column(DateTime(timezone=True))
    shopify_updated_at = Column(DateTime(timezone=True))
    is_active = Column(BOOLEAN, default=True, nullable=False)

    internal_customer_id = Column(Integer, nullable=True)
    raw_data = Column(JSONType)
    synced_at = Column(DateTime(timezone=True))
    last_webhook_at = Column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("organization_id", "shopify_customer_id", name="uq_shopify_customers_org_customer"),
    )


# =========================
# Internal entities
# =========================

class Product(Base):
    __tablename__ = "products"
    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(64), nullable=False, index=True)
    shopify_product_id = Column(String(64))
    type = Column(String(64), default="custom")
    name = Column(String(512), nullable=False)
    description = Column(Text)
    handle = Column(String(255))
    sku = Column(String(255))
    price = Column(NUMERIC(12, 2))
    category = Column(String(255))
    tags = Column(JSONType)
    primary_image_url = Column(String(2048))
    is_active = Column(BOOLEAN, default=True, nullable=False)
    is_published = Column(BOOLEAN, default=False, nullable=False)
    published_at = Column(DateTime(timezone=True))
    source = Column(String(32), default="manual")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    variants = relationship("ProductVariant", back_populates="product", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("organization_id", "shopify_product_id", name="uq_products_org_shopify_product"),
    )


class ProductVariant(Base):
    __tablename__ = "product_variants"
    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(64), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    shopify_variant_id = Column(String(64))
    name = Column(String(512), nullable=False)
    sku = Column(String(255))
    barcode = Column(String(255))
    price = Column(NUMERIC(12, 2))
    compare_at_price = Column(NUMERIC(12, 2))
    option1_name = Column(String(255))
    option1_value = Column(String(255))
    option2_name = Column(String(255))
    option2_value = Column(String(255))
    option3_name = Column(String(255))
    option3_value = Column(String(255))
    track_inventory = Column(BOOLEAN, default=False, nullable=False)
    inventory_quantity = Column(Integer, default=0)
    allow_backorder = Column(BOOLEAN, default=False, nullable=False)
    sort_order = Column(Integer, default=0)
    is_default = Column(BOOLEAN, default=False, nullable=False)
    is_active = Column(BOOLEAN, default=True, nullable=False)
    is_available = Column(BOOLEAN, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    product = relationship("Product", back_populates="variants")

    __table_args__ = (
        UniqueConstraint("organization_id", "shopify_variant_id", name="uq_variants_org_shopify_variant"),
    )


class ProductMapping(Base):
    __tablename__ = "product_mappings"
    id = Column(Integer, primary_key=True)
    organization_id = Column(String(64), nullable=False)
    shopify_product_id = Column(String(64), nullable=False)
    # '' marks the product-level row
    shopify_variant_id = Column(String(64), nullable=False, default="")
    internal_product_id = Column(Integer, nullable=False)
    internal_variant_id = Column(Integer, nullable=True)
    label = Column(String(1024))
    last_synced_at = Column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("organization_id", "shopify_product_id", "shopify_variant_id", name="uq_product_mappings_key"),
    )


class Customer(Base):
    __tablename__ = "customers"
    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(64), nullable=False, index=True)
    first_name = Column(String(255))
    last_name = Column(String(255))
    email = Column(String(255), index=True)
    phone = Column(String(64))
    shopify_customer_id = Column(String(64), index=True)
    shopify_tags = Column(Text)
    total_spent = Column(NUMERIC(12, 2), default=0)
    orders_count = Column(Integer, default=0)
    accepts_marketing = Column(BOOLEAN, default=False, nullable=False)
    is_active = Column(BOOLEAN, default=True, nullable=False)
    source = Column(String(32), default="manual")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(64), nullable=False, index=True)
    order_number = Column(String(64))
    shopify_order_id = Column(String(64))
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True)
    customer_name = Column(String(255))
    customer_email = Column(String(255))
    customer_phone = Column(String(64))

    status = Column(String(32), default="pending", nullable=False)
    payment_status = Column(String(32), default="unpaid", nullable=False)
    fulfillment_type = Column(String(32), default="shipping", nullable=False)
    financial_status = Column(String(50))
    fulfillment_status = Column(String(50))

    order_date = Column(DateTime(timezone=True))
    due_date = Column(Date)
    pickup_location = Column(String(512))
    delivery_address = Column(JSONType)
    billing_address = Column(JSONType)

    currency = Column(String(10))
    subtotal = Column(NUMERIC(12, 2), default=0)
    tax_amount = Column(NUMERIC(12, 2), default=0)
    discount_amount = Column(NUMERIC(12, 2), default=0)
    shipping_amount = Column(NUMERIC(12, 2), default=0)
    total = Column(NUMERIC(12, 2), default=0)
    paid_amount = Column(NUMERIC(12, 2), default=0)

    completed_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    cancel_reason = Column(String(255))
    is_active = Column(BOOLEAN, default=True, nullable=False)
    source = Column(String(32), default="manual")
    synced_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan",
                         order_by="OrderItem.display_order")

    __table_args__ = (
        UniqueConstraint("organization_id", "shopify_order_id", name="uq_orders_org_shopify_order"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(64), nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, nullable=True)
    variant_id = Column(Integer, nullable=True)
    item_type = Column(String(32), default="custom", nullable=False)
    name = Column(String(512), nullable=False)
    description = Column(Text)
    sku = Column(String(255))
    quantity = Column(Integer, default=1, nullable=False)
    unit_price = Column(NUMERIC(12, 2), default=0)
    subtotal = Column(NUMERIC(12, 2), default=0)
    external_item_id = Column(String(64))
    shopify_product_id = Column(String(64))
    shopify_variant_id = Column(String(64))
    customizations = Column(JSONType)
    display_order = Column(Integer, default=0)

    order = relationship("Order", back_populates="items")


class Tag(Base):
    __tablename__ = "tags"
    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    display_name = Column(String(255))
    description = Column(Text)
    usage_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_tags_org_name"),
    )


class Taggable(Base):
    __tablename__ = "taggables"
    id = Column(Integer, primary_key=True)
    organization_id = Column(String(64), nullable=False)
    tag_id = Column(Integer, ForeignKey("tags.id"), nullable=False)
    taggable_type = Column(String(32), nullable=False)
    taggable_id = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("tag_id", "taggable_type", "taggable_id", name="uq_taggables_link"),
    )


class Note(Base):
    __tablename__ = "notes"
    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(64), nullable=False)
    entity_type = Column(String(32), nullable=False)
    entity_id = Column(Integer, nullable=False)
    # owning order, also set for item-level notes so a re-sync can clear them
    order_id = Column(Integer, nullable=True, index=True)
    note_type = Column(String(32), nullable=False)
    title = Column(String(512))
    content = Column(Text, nullable=False)
    visibility = Column(String(16), default="internal", nullable=False)
    priority = Column(Integer, default=5)
    attribute_name = Column(String(255))
    source = Column(String(32), default="manual", nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_notes_entity", "entity_type", "entity_id"),
    )

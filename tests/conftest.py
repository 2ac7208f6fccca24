import os

# keep the module-level engine off disk; tests build their own per-test engines
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest

import models  # noqa: F401
from config import Settings
from crud import integration as crud_integration
from crud import staging as crud_staging
from database import Base, build_engine, make_session_factory
from services.sync_service import SyncContext
from services.transformers import transform_record
from shopify_service import Page

ORG = "org-test"


# ---------------------------------------------------------------------------
# Payload builders (nodes as returned by ShopifyService, connections flattened)
# ---------------------------------------------------------------------------

def money(amount):
    return {"shopMoney": {"amount": amount, "currencyCode": "USD"}}


def variant_payload(product_id, position, **extra):
    variant_id = product_id * 100 + position
    node = {
        "id": f"gid://shopify/ProductVariant/{variant_id}",
        "legacyResourceId": str(variant_id),
        "title": f"Size {position}",
        "sku": f"SKU-{variant_id}",
        "price": "19.5",
        "position": position,
        "inventoryPolicy": "DENY",
        "inventoryQuantity": 5,
        "taxable": True,
        "selectedOptions": [{"name": "Size", "value": f"Size {position}"}],
        "inventoryItem": {"requiresShipping": True},
        "createdAt": "2024-01-01T00:00:00Z",
        "updatedAt": "2024-02-01T00:00:00Z",
    }
    node.update(extra)
    return node


def product_payload(product_id, variants=2, **extra):
    node = {
        "id": f"gid://shopify/Product/{product_id}",
        "legacyResourceId": str(product_id),
        "title": f"Product {product_id}",
        "descriptionHtml": "<p>Fresh</p>",
        "vendor": "Acme",
        "productType": "Flowers",
        "handle": f"product-{product_id}",
        "status": "ACTIVE",
        "tags": ["summer"],
        "publishedAt": "2024-01-01T00:00:00Z",
        "createdAt": "2024-01-01T00:00:00Z",
        "updatedAt": "2024-02-01T00:00:00Z",
        "options": [{"name": "Size", "values": [f"Size {i}" for i in range(1, variants + 1)]}],
        "featuredImage": {"url": f"https://cdn.example.com/{product_id}.jpg"},
        "images": [{"url": f"https://cdn.example.com/{product_id}.jpg"}],
        "variants": [variant_payload(product_id, i) for i in range(1, variants + 1)],
    }
    node.update(extra)
    return node


def line_item_payload(item_id, product_id=None, variant_id=None, quantity=2, price="20.00", properties=(), **extra):
    node = {
        "id": f"gid://shopify/LineItem/{item_id}",
        "name": "Bouquet - Large",
        "title": "Bouquet",
        "quantity": quantity,
        "sku": f"LI-{item_id}",
        "variantTitle": "Large",
        "customAttributes": [{"key": k, "value": v} for k, v in properties],
        "originalUnitPriceSet": money(price),
        "product": {"id": f"gid://shopify/Product/{product_id}", "legacyResourceId": str(product_id)}
        if product_id else None,
        "variant": {"id": f"gid://shopify/ProductVariant/{variant_id}", "legacyResourceId": str(variant_id)}
        if variant_id else None,
    }
    node.update(extra)
    return node


def order_payload(order_id, line_items=None, shipping_title="Standard Shipping", tags=(), attributes=(),
                  financial="PAID", fulfillment="UNFULFILLED", customer_id=None, **extra):
    node = {
        "id": f"gid://shopify/Order/{order_id}",
        "legacyResourceId": str(order_id),
        "name": f"#{1000 + order_id}",
        "email": "buyer@example.com",
        "tags": list(tags),
        "createdAt": "2024-03-01T10:00:00Z",
        "updatedAt": "2024-03-02T10:00:00Z",
        "processedAt": "2024-03-01T10:00:00Z",
        "displayFinancialStatus": financial,
        "displayFulfillmentStatus": fulfillment,
        "currencyCode": "USD",
        "subtotalPriceSet": money("40.00"),
        "totalPriceSet": money("45.0"),
        "totalTaxSet": money("5.00"),
        "totalDiscountsSet": money("0.00"),
        "totalShippingPriceSet": money("0.00"),
        "customAttributes": [{"key": k, "value": v} for k, v in attributes],
        "customer": {
            "id": f"gid://shopify/Customer/{customer_id}",
            "legacyResourceId": str(customer_id),
            "firstName": "Ada",
            "lastName": "Lovelace",
            "email": "ada@example.com",
        } if customer_id else None,
        "shippingAddress": {"firstName": "Ada", "lastName": "Lovelace", "address1": "1 Main St", "city": "Springfield"},
        "shippingLines": [{"title": shipping_title, "code": shipping_title}] if shipping_title else [],
        "lineItems": line_items if line_items is not None else [line_item_payload(order_id * 10 + 1)],
    }
    node.update(extra)
    return node


def customer_payload(customer_id, **extra):
    node = {
        "id": f"gid://shopify/Customer/{customer_id}",
        "legacyResourceId": str(customer_id),
        "email": f"customer{customer_id}@example.com",
        "firstName": "Grace",
        "lastName": f"Hopper {customer_id}",
        "state": "ENABLED",
        "verifiedEmail": True,
        "tags": ["vip"],
        "numberOfOrders": "3",
        "amountSpent": {"amount": "120.5", "currencyCode": "USD"},
        "emailMarketingConsent": {"marketingState": "SUBSCRIBED", "marketingOptInLevel": "SINGLE_OPT_IN"},
        "createdAt": "2024-01-01T00:00:00Z",
        "updatedAt": "2024-02-01T00:00:00Z",
    }
    node.update(extra)
    return node


def stage(db, kind, payloads):
    """Transforms and stages payloads; returns their external ids."""
    rows_by_table = {}
    ids = []
    for payload in payloads:
        bundle = transform_record(kind, payload, ORG)
        for table, rows in bundle.rows.items():
            rows_by_table.setdefault(table, []).extend(rows)
        ids.append(bundle.external_id)
    crud_staging.upsert_batch_rows(db, rows_by_table)
    return ids


# ---------------------------------------------------------------------------
# Fake API client
# ---------------------------------------------------------------------------

class FakeClient:
    """
    Serves scripted pages. Cursor ``cursor-N`` points at page N. ``after_fetch``
    runs after every page is served (used to cancel a job mid-run).
    """

    def __init__(self, pages=None, records=None, after_fetch=None, error=None):
        self.pages = list(pages or [])
        self.records = dict(records or {})
        self.after_fetch = after_fetch
        self.error = error
        self.calls = []

    def fetch_page(self, kind, cursor=None, query_filter=None, page_size=250):
        self.calls.append({"kind": kind, "cursor": cursor, "query_filter": query_filter, "page_size": page_size})
        if self.error is not None:
            raise self.error
        index = int(cursor.rsplit("-", 1)[1]) if cursor else 0
        has_more = index + 1 < len(self.pages)
        page = Page(
            records=[dict(r) for r in self.pages[index]] if self.pages else [],
            next_cursor=f"cursor-{index + 1}" if has_more else None,
            has_more=has_more,
        )
        if self.after_fetch:
            self.after_fetch(len(self.calls))
        return page

    def fetch_one(self, kind, external_id):
        self.calls.append({"kind": kind, "external_id": external_id})
        return self.records.get(str(external_id))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'sync.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def integration(db):
    return crud_integration.create_integration(
        db, ORG, "test-shop.myshopify.com", "shpat_test", webhook_secret="hush")


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_context(session_factory, sleeps):
    def _make(client, **overrides):
        cfg = Settings(**overrides)
        return SyncContext(
            session_factory=session_factory,
            settings=cfg,
            sleep=sleeps.append,
            client_factory=lambda integration: client,
        )
    return _make

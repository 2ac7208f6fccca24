# shopify_service.py
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests

from utils import get_logger

logger = get_logger("shopify")

PLATFORM_MAX_PAGE_SIZE = 250
THROTTLE_DELAYS = (2.0, 5.0, 10.0)
TRANSIENT_BASE_DELAY = 1.0


def gid_to_id(gid: Optional[str]) -> Optional[str]:
    if not gid:
        return None
    tail = str(gid).split("/")[-1].split("?")[0]
    return tail or None


def id_to_gid(kind: str, external_id: str) -> str:
    if str(external_id).startswith("gid://"):
        return str(external_id)
    return f"gid://shopify/{GID_TYPES[kind]}/{external_id}"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ShopifyAPIError(Exception):
    retryable = False

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.errors = errors or []
        self.status_code = status_code


class ShopifyThrottledError(ShopifyAPIError):
    retryable = True


class ShopifyTransientError(ShopifyAPIError):
    retryable = True


class ShopifyFatalError(ShopifyAPIError):
    pass


# ---------------------------------------------------------------------------
# Shared token bucket
# ---------------------------------------------------------------------------

class RateLimiter:
    """
    Token bucket shared by every client in the process. One instance per
    external API so concurrent sync runs draw from the same budget.
    """

    def __init__(self, rate_per_second: float, capacity: int,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        if rate_per_second <= 0 or capacity <= 0:
            raise ValueError("rate_per_second and capacity must be positive")
        self.rate = float(rate_per_second)
        self.capacity = float(capacity)
        self._tokens = float(capacity)
        self._clock = clock
        self._sleep = sleep
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated = now

    def acquire(self, tokens: float = 1.0) -> float:
        """Blocks until ``tokens`` are available. Returns the total time waited."""
        waited = 0.0
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    return waited
                wait = (tokens - self._tokens) / self.rate
            self._sleep(wait)
            waited += wait


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

MONEY_FRAGMENT = "fragment MoneyFragment on MoneyBag { shopMoney { amount currencyCode } }"

PRODUCT_FRAGMENT = """
fragment ProductFragment on Product {
  id legacyResourceId title descriptionHtml vendor productType handle status tags
  publishedAt createdAt updatedAt
  options { name values }
  featuredImage { url }
  images(first: 10) { edges { node { url } } }
  variants(first: 100) {
    edges {
      node {
        id legacyResourceId title sku barcode price compareAtPrice position
        inventoryPolicy inventoryQuantity taxable createdAt updatedAt
        selectedOptions { name value }
        image { url }
        inventoryItem { requiresShipping measurement { weight { value unit } } }
      }
    }
  }
}
"""

ORDER_FRAGMENT = """
fragment OrderFragment on Order {
  id legacyResourceId name email phone note tags
  createdAt updatedAt processedAt cancelledAt cancelReason closedAt
  displayFinancialStatus displayFulfillmentStatus currencyCode
  subtotalPriceSet { ...MoneyFragment }
  totalPriceSet { ...MoneyFragment }
  totalTaxSet { ...MoneyFragment }
  totalDiscountsSet { ...MoneyFragment }
  totalShippingPriceSet { ...MoneyFragment }
  customAttributes { key value }
  customer { id legacyResourceId firstName lastName email phone }
  shippingAddress { firstName lastName company address1 address2 city province provinceCode zip country countryCodeV2 phone }
  billingAddress { firstName lastName company address1 address2 city province provinceCode zip country countryCodeV2 phone }
  shippingLines(first: 5) { edges { node { title code source } } }
  lineItems(first: 100) {
    edges {
      node {
        id name title quantity sku variantTitle
        customAttributes { key value }
        originalUnitPriceSet { ...MoneyFragment }
        discountedTotalSet { ...MoneyFragment }
        product { id legacyResourceId }
        variant { id legacyResourceId }
      }
    }
  }
}
"""

CUSTOMER_FRAGMENT = """
fragment CustomerFragment on Customer {
  id legacyResourceId email firstName lastName phone state verifiedEmail note tags
  numberOfOrders createdAt updatedAt
  amountSpent { amount currencyCode }
  emailMarketingConsent { marketingState marketingOptInLevel consentUpdatedAt }
  smsMarketingConsent { marketingState marketingOptInLevel consentUpdatedAt consentCollectedFrom }
  defaultAddress { id }
  addresses { id firstName lastName company address1 address2 city province zip country phone }
}
"""

PAGE_QUERIES = {
    "products": f"""
{PRODUCT_FRAGMENT}
query GetProducts($first: Int!, $cursor: String, $query: String) {{
  products(first: $first, after: $cursor, query: $query, sortKey: UPDATED_AT, reverse: true) {{
    pageInfo {{ hasNextPage endCursor }}
    edges {{ node {{ ...ProductFragment }} }}
  }}
}}
""",
    "orders": f"""
{MONEY_FRAGMENT}
{ORDER_FRAGMENT}
query GetOrders($first: Int!, $cursor: String, $query: String) {{
  orders(first: $first, after: $cursor, query: $query, sortKey: UPDATED_AT, reverse: true) {{
    pageInfo {{ hasNextPage endCursor }}
    edges {{ node {{ ...OrderFragment }} }}
  }}
}}
""",
    "customers": f"""
{CUSTOMER_FRAGMENT}
query GetCustomers($first: Int!, $cursor: String, $query: String) {{
  customers(first: $first, after: $cursor, query: $query, sortKey: UPDATED_AT, reverse: true) {{
    pageInfo {{ hasNextPage endCursor }}
    edges {{ node {{ ...CustomerFragment }} }}
  }}
}}
""",
}

SINGLE_QUERIES = {
    "products": f"""
{PRODUCT_FRAGMENT}
query GetProduct($id: ID!) {{ product(id: $id) {{ ...ProductFragment }} }}
""",
    "orders": f"""
{MONEY_FRAGMENT}
{ORDER_FRAGMENT}
query GetOrder($id: ID!) {{ order(id: $id) {{ ...OrderFragment }} }}
""",
    "customers": f"""
{CUSTOMER_FRAGMENT}
query GetCustomer($id: ID!) {{ customer(id: $id) {{ ...CustomerFragment }} }}
""",
}

SINGLE_ROOTS = {"products": "product", "orders": "order", "customers": "customer"}
GID_TYPES = {"products": "Product", "orders": "Order", "customers": "Customer"}
ENTITY_KINDS = tuple(PAGE_QUERIES.keys())


@dataclass
class Page:
    records: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False


def _flatten_edges(data: Optional[Dict]) -> List:
    if not data:
        return []
    if isinstance(data, list):
        return data
    if "edges" in data:
        return [edge["node"] for edge in data.get("edges") or [] if edge and edge.get("node") is not None]
    if "nodes" in data:
        return list(data.get("nodes") or [])
    return []


def _normalize_record(kind: str, node: Dict[str, Any]) -> Dict[str, Any]:
    """Replaces connection objects inside one record with plain lists."""
    if kind == "products":
        node["variants"] = _flatten_edges(node.get("variants"))
        node["images"] = _flatten_edges(node.get("images"))
    elif kind == "orders":
        node["lineItems"] = _flatten_edges(node.get("lineItems"))
        node["shippingLines"] = _flatten_edges(node.get("shippingLines"))
    elif kind == "customers":
        node["addresses"] = _flatten_edges(node.get("addresses"))
    return node


def _classify_graphql_errors(errors: List[Dict[str, Any]]) -> ShopifyAPIError:
    messages = "; ".join(str(e.get("message", e)) for e in errors)
    throttled = any(
        (e.get("extensions") or {}).get("code") == "THROTTLED"
        or "throttled" in str(e.get("message", "")).lower()
        or "rate limit" in str(e.get("message", "")).lower()
        for e in errors
    )
    if throttled:
        return ShopifyThrottledError(f"GraphQL throttled: {messages}", errors)
    if any("timeout" in str(e.get("message", "")).lower() for e in errors):
        return ShopifyTransientError(f"GraphQL timeout: {messages}", errors)
    return ShopifyFatalError(f"GraphQL API Error: {messages}", errors)


class ShopifyService:
    """
    Client for the Shopify Admin GraphQL API.

    The client keeps no state between calls besides its configuration, so one
    instance per integration is safe to use from concurrent sync runs; the
    ``rate_limiter`` is the piece shared across instances.
    """

    def __init__(self, store_url: str, token: str, api_version: str = "2024-10",
                 organization_id: Optional[str] = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 max_retries: int = 3, timeout: float = 30.0,
                 sleep: Callable[[float], None] = time.sleep,
                 session: Optional[requests.Session] = None):
        if not all([store_url, token]):
            raise ValueError("Store URL and Access Token are required.")
        self.api_endpoint = f"https://{store_url}/admin/api/{api_version}/graphql.json"
        self.headers = {"Content-Type": "application/json", "X-Shopify-Access-Token": token}
        self.organization_id = organization_id
        self.rate_limiter = rate_limiter
        self.max_retries = max_retries
        self.timeout = timeout
        self.sleep = sleep
        self.http = session or requests
        self.last_retries: List[Dict[str, Any]] = []

    # ---------- transport ----------

    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.rate_limiter is not None:
            self.rate_limiter.acquire()
        try:
            response = self.http.post(self.api_endpoint, headers=self.headers, json=payload, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise ShopifyTransientError(f"Request timeout: {e}") from e
        except requests.exceptions.ConnectionError as e:
            raise ShopifyTransientError(f"Network error: {e}") from e

        status = response.status_code
        if status == 429:
            raise ShopifyThrottledError("HTTP 429: rate limit exceeded", status_code=status)
        if status >= 500:
            raise ShopifyTransientError(f"HTTP {status}: {response.reason}", status_code=status)
        if status >= 400:
            raise ShopifyFatalError(f"HTTP {status}: {response.reason}", status_code=status)

        try:
            body = response.json()
        except ValueError as e:
            raise ShopifyFatalError(f"Malformed response body: {e}", status_code=status) from e

        errors = body.get("errors") if isinstance(body, dict) else None
        if errors:
            if isinstance(errors, str):
                errors = [{"message": errors}]
            raise _classify_graphql_errors(errors)
        if not isinstance(body, dict) or body.get("data") is None:
            raise ShopifyFatalError("Response carried no data", status_code=status)
        return body["data"]

    def _retry_delay(self, error: ShopifyAPIError, attempt: int) -> float:
        if isinstance(error, ShopifyThrottledError):
            return THROTTLE_DELAYS[min(attempt, len(THROTTLE_DELAYS) - 1)]
        return TRANSIENT_BASE_DELAY * (2 ** attempt)

    def _execute_query(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload = {"query": query, "variables": variables or {}}
        attempt = 0
        retries: List[Dict[str, Any]] = []
        self.last_retries = retries
        while True:
            try:
                return self._post(payload)
            except ShopifyAPIError as e:
                if e.retryable and attempt < self.max_retries:
                    delay = self._retry_delay(e, attempt)
                    retries.append({"attempt": attempt + 1, "delay": delay, "error": str(e)})
                    logger.warning(
                        "Retrying Shopify query attempt=%d delay=%.1fs org=%s kind=%s error=%s",
                        attempt + 1, delay, self.organization_id, type(e).__name__, e,
                    )
                    self.sleep(delay)
                    attempt += 1
                    continue
                logger.error(
                    "Shopify query failed org=%s retries=%d error=%s query=%r",
                    self.organization_id, attempt, e, query.strip()[:200],
                )
                raise

    # ---------- public API ----------

    def fetch_page(self, kind: str, cursor: Optional[str] = None, query_filter: Optional[str] = None,
                   page_size: int = PLATFORM_MAX_PAGE_SIZE) -> Page:
        """
        Fetches one page of ``kind`` ('products' | 'orders' | 'customers'),
        newest-updated first, after ``cursor``.
        """
        if kind not in PAGE_QUERIES:
            raise ValueError(f"Unknown entity kind '{kind}'")
        variables = {
            "first": max(1, min(int(page_size), PLATFORM_MAX_PAGE_SIZE)),
            "cursor": cursor,
            "query": query_filter,
        }
        data = self._execute_query(PAGE_QUERIES[kind], variables)
        connection = data.get(kind) or {}
        page_info = connection.get("pageInfo") or {}
        records = [_normalize_record(kind, node) for node in _flatten_edges(connection)]
        has_more = bool(page_info.get("hasNextPage"))
        return Page(records=records, next_cursor=page_info.get("endCursor"), has_more=has_more)

    def fetch_one(self, kind: str, external_id: str) -> Optional[Dict[str, Any]]:
        """Fetches a single record by numeric id or gid. Returns None when it no longer exists."""
        if kind not in SINGLE_QUERIES:
            raise ValueError(f"Unknown entity kind '{kind}'")
        data = self._execute_query(SINGLE_QUERIES[kind], {"id": id_to_gid(kind, external_id)})
        node = data.get(SINGLE_ROOTS[kind])
        if not node:
            return None
        return _normalize_record(kind, node)

from datetime import date

import pytest
from pydantic import ValidationError

from schemas import ShopifyOrderRecord
from services.transformers import (classify_fulfillment, extract_date, parse_structured_attribute,
                                   transform_record)
from conftest import ORG, customer_payload, line_item_payload, order_payload, product_payload


def _fulfillment(**kwargs):
    return classify_fulfillment(ShopifyOrderRecord.from_payload(order_payload(1, **kwargs)))


def test_product_rows_carry_variants_and_options():
    bundle = transform_record("products", product_payload(5), ORG)

    assert bundle.external_id == "5"
    [product] = bundle.rows["products"]
    variants = bundle.rows["variants"]
    assert product["status"] == "active"
    assert product["tags"] == "summer"
    assert product["option_names"] == ["Size"]
    assert product["body_html"] == "<p>Fresh</p>"
    assert [v["shopify_variant_id"] for v in variants] == ["501", "502"]
    assert variants[0]["price"] == "19.50"
    assert variants[0]["option1_name"] == "Size"
    assert variants[0]["option1_value"] == "Size 1"
    assert variants[0]["option2_name"] is None
    assert variants[0]["inventory_policy"] == "deny"
    assert all(v["is_active"] for v in variants)


def test_more_than_three_options_are_truncated(caplog):
    options = [{"name": n, "values": ["x"]} for n in ("Size", "Color", "Material", "Finish")]
    variant = {
        "id": "gid://shopify/ProductVariant/901",
        "selectedOptions": [{"name": n, "value": "x"} for n in ("Size", "Color", "Material", "Finish")],
    }
    payload = product_payload(9, options=options, variants=0)
    payload["variants"] = [variant]

    bundle = transform_record("products", payload, ORG)

    assert bundle.rows["products"][0]["option_names"] == ["Size", "Color", "Material"]
    row = bundle.rows["variants"][0]
    assert row["option3_name"] == "Material"
    assert "option4_name" not in row
    assert "Finish" in caplog.text


def test_draft_product_variants_are_inactive():
    bundle = transform_record("products", product_payload(6, status="DRAFT"), ORG)
    assert not any(v["is_active"] for v in bundle.rows["variants"])


def test_local_delivery_shipping_line_means_delivery():
    info = _fulfillment(shipping_title="Local Delivery")
    assert info.method == "delivery"
    assert info.location == "LOCAL_DELIVERY: Local Delivery"


def test_pickup_shipping_line_means_pickup():
    info = _fulfillment(shipping_title="Pickup at Main St")
    assert info.method == "pickup"
    assert info.location == "Pickup at Main St"


def test_no_signal_means_shipping():
    info = _fulfillment(shipping_title="Standard Shipping")
    assert info.method == "shipping"
    assert info.location is None
    assert info.date is None


def test_tags_are_consulted_after_shipping_lines():
    assert _fulfillment(shipping_title="Standard Shipping", tags=["Local Delivery"]).method == "delivery"
    assert _fulfillment(shipping_title=None, tags=["pickup"]).method == "pickup"


def test_structured_attribute_wins_over_shipping_text():
    info = _fulfillment(
        shipping_title=None,
        attributes=[("_ZapietId", "M=P&L=112097&D=2025-10-20T00:00:00Z")],
        tags=["Local Delivery"],
    )
    assert info.method == "pickup"
    assert info.date == "2025-10-20"
    assert info.location == "112097"


def test_structured_attribute_on_line_item():
    item = line_item_payload(11, properties=[("_ZapietId", "M=D&D=2025-11-02T00:00:00Z")])
    info = _fulfillment(shipping_title="Standard Shipping", line_items=[item])
    assert info.method == "delivery"
    assert info.date == "2025-11-02"
    assert info.location == "LOCAL_DELIVERY: Standard Shipping"


def test_pickup_attributes():
    info = _fulfillment(
        shipping_title=None,
        attributes=[("Pickup-Location-Company", "Main St Store"), ("Pickup-Date", "2024/03/05")],
    )
    assert info.method == "pickup"
    assert info.date == "2024-03-05"
    assert info.location == "Main St Store"


def test_parse_structured_attribute():
    assert parse_structured_attribute("M=P&L=1&D=2025-01-02") == {"M": "P", "L": "1", "D": "2025-01-02"}
    assert parse_structured_attribute(None) == {}


def test_order_row():
    payload = order_payload(
        3,
        customer_id=42,
        tags=["VIP", "2024-03-09"],
        attributes=[("Gift Note", "Happy birthday")],
        line_items=[line_item_payload(31, product_id=5, variant_id=501)],
    )
    [row] = transform_record("orders", payload, ORG).rows["orders"]

    assert row["shopify_order_id"] == "3"
    assert row["order_number"] == "1003"
    assert row["total_price"] == "45.00"
    assert row["financial_status"] == "paid"
    assert row["fulfillment_status"] == "unfulfilled"
    assert row["shopify_customer_id"] == "42"
    assert row["customer_name"] == "Ada Lovelace"
    assert row["tags"] == "VIP, 2024-03-09"
    assert row["note_attributes"] == [{"name": "Gift Note", "value": "Happy birthday"}]
    assert row["line_items"][0]["product"]["legacyResourceId"] == "5"
    assert row["fulfillment_method"] == "shipping"


def test_customer_row():
    [row] = transform_record("customers", customer_payload(8), ORG).rows["customers"]
    assert row["accepts_marketing"] is True
    assert row["orders_count"] == 3
    assert row["total_spent"] == "120.50"
    assert row["state"] == "enabled"
    assert row["tags"] == "vip"


def test_customer_without_spend_defaults_to_zero():
    [row] = transform_record("customers", customer_payload(9, amountSpent=None,
                                                           emailMarketingConsent=None), ORG).rows["customers"]
    assert row["total_spent"] == "0.00"
    assert row["accepts_marketing"] is False


def test_invalid_payload_raises():
    with pytest.raises(ValidationError):
        transform_record("products", {"title": "no id"}, ORG)


@pytest.mark.parametrize("text,expected", [
    ("Delivery 2024-05-01", date(2024, 5, 1)),
    ("05/02/2024", date(2024, 5, 2)),
    ("2024-13-40", None),
    ("no date here", None),
    (None, None),
])
def test_extract_date(text, expected):
    assert extract_date(text) == expected

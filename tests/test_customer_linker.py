from decimal import Decimal

import models
from services.customer_linker import deactivate_customer, link_customers
from conftest import ORG, customer_payload, stage


def test_new_customer_is_created(db):
    result = link_customers(db, ORG, stage(db, "customers", [customer_payload(8)]))

    assert (result.created, result.linked) == (1, 1)
    customer = db.query(models.Customer).one()
    assert customer.email == "customer8@example.com"
    assert customer.shopify_customer_id == "8"
    assert customer.total_spent == Decimal("120.50")
    assert customer.orders_count == 3
    assert customer.accepts_marketing is True
    assert customer.source == "shopify"
    assert db.query(models.ShopifyCustomer).one().internal_customer_id == customer.id


def test_existing_customer_is_matched_by_email(db):
    manual = models.Customer(organization_id=ORG, first_name="Grace", email="Customer8@Example.com", source="manual")
    db.add(manual)
    db.commit()

    result = link_customers(db, ORG, stage(db, "customers", [customer_payload(8)]))

    assert result.updated == 1
    assert db.query(models.Customer).count() == 1
    db.refresh(manual)
    assert manual.shopify_customer_id == "8"
    assert manual.source == "manual"


def test_email_match_skips_customers_linked_elsewhere(db):
    other = models.Customer(organization_id=ORG, email="customer8@example.com", shopify_customer_id="7")
    db.add(other)
    db.commit()

    result = link_customers(db, ORG, stage(db, "customers", [customer_payload(8)]))

    assert result.created == 1
    assert db.query(models.Customer).count() == 2


def test_unchanged_customer_counts_as_unchanged(db):
    ids = stage(db, "customers", [customer_payload(8)])
    link_customers(db, ORG, ids)

    result = link_customers(db, ORG, ids)

    assert result.unchanged == 1
    assert db.query(models.Customer).count() == 1


def test_deactivate_customer(db):
    link_customers(db, ORG, stage(db, "customers", [customer_payload(8)]))

    deactivate_customer(db, ORG, None, "8")

    assert db.query(models.Customer).one().is_active is False

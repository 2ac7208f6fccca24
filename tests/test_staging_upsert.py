import pytest
from sqlalchemy.exc import IntegrityError

import models
from crud import staging as crud_staging
from crud.utils import upsert_batch
from services.transformers import transform_record
from conftest import ORG, order_payload, product_payload, stage


def test_restaging_updates_in_place(db):
    stage(db, "products", [product_payload(1)])
    stage(db, "products", [product_payload(1, title="Renamed")])

    rows = db.query(models.ShopifyProduct).all()
    assert len(rows) == 1
    assert rows[0].title == "Renamed"
    assert db.query(models.ShopifyVariant).count() == 2


def test_restaging_keeps_linker_back_references(db):
    stage(db, "products", [product_payload(1)])
    staged = db.query(models.ShopifyProduct).one()
    staged.internal_product_id = 77
    db.commit()

    stage(db, "products", [product_payload(1, title="Renamed")])
    db.expire_all()

    staged = db.query(models.ShopifyProduct).one()
    assert staged.title == "Renamed"
    assert staged.internal_product_id == 77


def test_same_external_id_in_other_organization_is_separate(db):
    stage(db, "products", [product_payload(1)])
    bundle = transform_record("products", product_payload(1), "org-other")
    crud_staging.upsert_batch_rows(db, bundle.rows)

    assert db.query(models.ShopifyProduct).count() == 2


def test_wide_order_rows_are_written_in_sub_batches(db):
    ids = stage(db, "orders", [order_payload(i) for i in range(1, 121)])

    assert len(ids) == 120
    assert db.query(models.ShopifyOrder).count() == 120


def test_duplicate_keys_in_one_call_keep_the_last_row(db):
    rows = [
        {"organization_id": ORG, "shopify_product_id": "1", "title": "First", "is_active": True},
        {"organization_id": ORG, "shopify_product_id": "1", "title": "Second", "is_active": True},
    ]
    sent = upsert_batch(db, models.ShopifyProduct, rows, ("organization_id", "shopify_product_id"))
    db.commit()

    assert sent == 1
    assert db.query(models.ShopifyProduct).one().title == "Second"


def test_failed_batch_writes_nothing(db):
    good = transform_record("orders", order_payload(1), ORG).rows["orders"][0]
    bad = dict(good, shopify_order_id=None)

    with pytest.raises(IntegrityError):
        crud_staging.upsert_batch_rows(db, {"orders": [good, bad]})

    assert db.query(models.ShopifyOrder).count() == 0


def test_soft_delete_product_deactivates_variants(db):
    stage(db, "products", [product_payload(1)])

    crud_staging.soft_delete_product(db, ORG, "1", at=None)

    staged = db.query(models.ShopifyProduct).one()
    assert staged.status == "deleted"
    assert staged.is_active is False
    assert all(not v.is_active for v in db.query(models.ShopifyVariant).all())

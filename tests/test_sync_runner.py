from datetime import datetime, timezone

import pytest

import models
import schemas
from services import sync_tracker
from services.sync_runner import IntegrationNotFound, build_query_filter, run_sync, run_sync_request
from services.sync_tracker import ProgressDelta
from shopify_service import ShopifyFatalError
from conftest import ORG, FakeClient, customer_payload, line_item_payload, order_payload, product_payload, stage

SNAPSHOT_EXCLUDE = {"id", "created_at", "updated_at", "synced_at", "last_synced_at"}


def _snapshot(db, model):
    db.expire_all()
    return [
        {c.key: getattr(row, c.key) for c in model.__table__.columns if c.key not in SNAPSHOT_EXCLUDE}
        for row in db.query(model).order_by(model.id).all()
    ]


def test_full_run_walks_every_page(db, integration, make_context, sleeps):
    pages = [
        [customer_payload(i) for i in range(1, 201)],
        [customer_payload(i) for i in range(201, 401)],
        [customer_payload(i) for i in range(401, 448)],
    ]
    client = FakeClient(pages=pages)
    ctx = make_context(client, page_size=200)

    outcome = run_sync(ctx, ORG, integration.id, "customers", mode="full")

    assert outcome.status == "completed"
    assert (outcome.pages, outcome.processed, outcome.success, outcome.errors) == (3, 447, 447, 0)
    assert [c["cursor"] for c in client.calls] == [None, "cursor-1", "cursor-2"]
    assert all(c["query_filter"] is None and c["page_size"] == 200 for c in client.calls)
    assert sleeps == [0.25]

    job = sync_tracker.get_job(db, outcome.job_id)
    assert (job.total_items, job.processed_items, job.success_count, job.error_count) == (447, 447, 447, 0)
    assert job.current_page == 3
    assert job.type == "shopify_customers"
    assert job.config == {"fetchAll": True, "source": "scheduled", "dateFrom": None, "entityIds": None}
    assert db.query(models.Customer).count() == 447

    db.refresh(integration)
    assert integration.last_customer_sync_at is not None


def test_rerunning_an_unchanged_catalog_is_idempotent(db, integration, make_context):
    pages = [[product_payload(1), product_payload(2)], [product_payload(3, variants=1)]]
    ctx = make_context(FakeClient(pages=pages))

    run_sync(ctx, ORG, integration.id, "products", mode="full")
    before = {m: _snapshot(db, m) for m in (models.Product, models.ProductVariant, models.ProductMapping)}

    ctx = make_context(FakeClient(pages=pages))
    outcome = run_sync(ctx, ORG, integration.id, "products", mode="full")
    after = {m: _snapshot(db, m) for m in (models.Product, models.ProductVariant, models.ProductMapping)}

    assert after == before
    job = sync_tracker.get_job(db, outcome.job_id)
    assert job.skip_count == 3
    assert job.success_count == 3


def test_order_rerun_produces_the_same_rows(db, integration, make_context):
    payload = order_payload(1, note="Ring twice", tags=["VIP"],
                            line_items=[line_item_payload(11, properties=[("Card Message", "Hi")])])
    pages = [[payload]]

    run_sync(make_context(FakeClient(pages=pages)), ORG, integration.id, "orders", mode="full")
    before = {m: _snapshot(db, m) for m in (models.Order, models.Note, models.Tag)}
    items_before = [{k: v for k, v in row.items() if k != "order_id"} for row in _snapshot(db, models.OrderItem)]

    run_sync(make_context(FakeClient(pages=pages)), ORG, integration.id, "orders", mode="full")
    after = {m: _snapshot(db, m) for m in (models.Order, models.Note, models.Tag)}
    items_after = [{k: v for k, v in row.items() if k != "order_id"} for row in _snapshot(db, models.OrderItem)]

    # notes point at the recreated item, so compare them without entity ids
    for rows in (before[models.Note], after[models.Note]):
        for row in rows:
            row.pop("entity_id")
    assert after == before
    assert items_after == items_before


def test_cancel_between_pages(db, session_factory, integration, make_context):
    job = sync_tracker.create_job(db, ORG, "products", "full", integration_id=integration.id)

    def cancel_after_first_page(call_number):
        if call_number == 1:
            other = session_factory()
            try:
                sync_tracker.request_cancel(other, sync_tracker.get_job(other, job.id))
            finally:
                other.close()

    pages = [[product_payload(1), product_payload(2)], [product_payload(3)], [product_payload(4)]]
    client = FakeClient(pages=pages, after_fetch=cancel_after_first_page)

    outcome = run_sync(make_context(client), ORG, integration.id, "products", mode="full", job_id=job.id)

    assert outcome.status == "cancelled"
    assert outcome.processed == 2
    assert len(client.calls) == 1
    db.expire_all()
    job = sync_tracker.get_job(db, job.id)
    assert job.status == "cancelled"
    assert job.processed_items == 2
    assert job.next_page_token == "cursor-1"
    assert db.query(models.Product).count() == 2


@pytest.mark.parametrize("stop,expected", [
    (sync_tracker.request_cancel, "cancelled"),
    (sync_tracker.request_pause, "paused"),
])
def test_stop_during_last_page_is_not_completed(db, session_factory, integration, make_context, stop, expected):
    job = sync_tracker.create_job(db, ORG, "orders", "incremental", integration_id=integration.id)

    def stop_job(call_number):
        other = session_factory()
        try:
            stop(other, sync_tracker.get_job(other, job.id))
        finally:
            other.close()

    client = FakeClient(pages=[[order_payload(1)]], after_fetch=stop_job)

    outcome = run_sync(make_context(client), ORG, integration.id, "orders", job_id=job.id)

    assert outcome.status == expected
    assert outcome.processed == 1
    db.expire_all()
    job = sync_tracker.get_job(db, job.id)
    assert job.status == expected
    assert job.processed_items == 1
    assert job.error_message is None
    db.refresh(integration)
    assert integration.last_order_sync_at is None


def test_resumed_job_continues_from_saved_cursor(db, integration, make_context):
    job = sync_tracker.create_job(db, ORG, "products", "full", integration_id=integration.id)
    sync_tracker.mark_running(db, job)
    sync_tracker.update_progress(db, job, ProgressDelta(total=1, processed=1, success=1, pages=1), cursor="cursor-1")
    sync_tracker.request_pause(db, job)
    sync_tracker.resume(db, job)

    pages = [[product_payload(1)], [product_payload(2)], [product_payload(3)]]
    client = FakeClient(pages=pages)
    outcome = run_sync(make_context(client), ORG, integration.id, "products", mode="full", job_id=job.id)

    assert [c["cursor"] for c in client.calls] == ["cursor-1", "cursor-2"]
    assert outcome.status == "completed"
    assert outcome.processed == 3
    assert {p.shopify_product_id for p in db.query(models.Product).all()} == {"2", "3"}


def test_empty_job_id_creates_a_job(db, integration, make_context):
    outcome = run_sync(make_context(FakeClient(pages=[[]])), ORG, integration.id, "orders", job_id="")

    job = sync_tracker.get_job(db, outcome.job_id)
    assert job is not None
    assert job.type == "shopify_orders_incremental"
    assert job.config["fetchAll"] is False
    assert job.status == "completed"
    assert job.processed_items == 0


def test_incremental_run_filters_by_watermark(db, integration, make_context):
    integration.last_order_sync_at = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    db.commit()
    client = FakeClient(pages=[[order_payload(1)], [order_payload(2)]])

    run_sync(make_context(client), ORG, integration.id, "orders", mode="incremental")

    assert len(client.calls) == 1
    assert client.calls[0]["query_filter"] == "updated_at:>='2024-05-01T11:58:00Z'"
    db.refresh(integration)
    assert integration.last_order_sync_at > datetime(2024, 5, 1, 12, 0)


def test_updated_since_overrides_watermark(integration, make_context):
    client = FakeClient(pages=[[]])

    run_sync(make_context(client), ORG, integration.id, "orders", mode="incremental",
             updated_since=datetime(2024, 1, 1, tzinfo=timezone.utc))

    assert client.calls[0]["query_filter"] == "updated_at:>='2023-12-31T23:58:00Z'"


def test_build_query_filter():
    assert build_query_filter("full", datetime(2024, 1, 1, tzinfo=timezone.utc), 2) is None
    assert build_query_filter("incremental", None, 2) is None
    assert build_query_filter("incremental", None, 2, ["gid://shopify/Order/5", "6"]) == "(id:5 OR id:6)"


def test_bad_records_are_counted_and_skipped(db, integration, make_context):
    page = [customer_payload(1), {"email": "no-id@example.com"}, customer_payload(3)]

    outcome = run_sync(make_context(FakeClient(pages=[page])), ORG, integration.id, "customers", mode="full")

    assert outcome.status == "completed"
    assert (outcome.processed, outcome.success, outcome.errors) == (3, 2, 1)
    job = sync_tracker.get_job(db, outcome.job_id)
    assert job.success_count + job.error_count == job.processed_items
    assert [e["externalId"] for e in job.errors] == ["#1"]
    assert db.query(models.Customer).count() == 2


def test_api_failure_fails_the_job(db, integration, make_context):
    client = FakeClient(error=ShopifyFatalError("GraphQL API Error: bad field"))

    with pytest.raises(ShopifyFatalError):
        run_sync(make_context(client), ORG, integration.id, "products", mode="full")

    job = db.query(models.SyncJob).one()
    assert job.status == "failed"
    assert "bad field" in job.error_message
    db.refresh(integration)
    assert integration.last_product_sync_at is None


def test_missing_integration_fails_the_job(db, make_context):
    with pytest.raises(IntegrationNotFound):
        run_sync(make_context(FakeClient(pages=[[]])), ORG, 999, "orders")

    assert db.query(models.SyncJob).one().status == "failed"


def test_finished_job_is_not_rerun(db, integration, make_context):
    outcome = run_sync(make_context(FakeClient(pages=[[]])), ORG, integration.id, "orders")
    client = FakeClient(pages=[[order_payload(1)]])

    again = run_sync(make_context(client), ORG, integration.id, "orders", job_id=outcome.job_id)

    assert again.status == "completed"
    assert client.calls == []


def test_product_run_links_earlier_order_items(db, integration, make_context):
    stage(db, "orders", [order_payload(1, line_items=[line_item_payload(11, product_id=5, variant_id=501)])])
    from services.order_linker import link_orders
    link_orders(db, ORG, ["1"])
    assert db.query(models.OrderItem).one().item_type == "custom"

    run_sync(make_context(FakeClient(pages=[[product_payload(5)]])), ORG, integration.id, "products", mode="full")

    db.expire_all()
    assert db.query(models.OrderItem).one().item_type == "product"


def test_run_sync_request_limits_to_entity_ids(db, integration, make_context):
    client = FakeClient(pages=[[customer_payload(5)]])
    request = schemas.SyncRequest(organization_id=ORG, integration_id=integration.id, entity_kind="customers",
                                  entity_ids=["gid://shopify/Customer/5"], source="manual")

    outcome = run_sync_request(make_context(client), request)

    assert outcome.status == "completed"
    assert client.calls[0]["query_filter"] == "(id:5)"
    db.refresh(integration)
    assert integration.last_customer_sync_at is None


def test_linker_receives_bounded_id_batches(db, integration, make_context, monkeypatch):
    from services import sync_runner
    batches = []
    entity = sync_runner.ENTITY_SYNCS["customers"]

    def recording_link(session, organization_id, ids):
        batches.append(list(ids))
        return entity.link(session, organization_id, ids)

    monkeypatch.setitem(sync_runner.ENTITY_SYNCS, "customers",
                        sync_runner.EntitySync("customers", recording_link, entity.delay_setting))
    page = [customer_payload(i) for i in range(1, 6)]

    outcome = run_sync(make_context(FakeClient(pages=[page]), linker_batch_size=2),
                       ORG, integration.id, "customers", mode="full")

    assert outcome.success == 5
    assert batches == [["1", "2"], ["3", "4"], ["5"]]
    assert db.query(models.Customer).count() == 5

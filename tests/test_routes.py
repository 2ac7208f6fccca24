import base64
import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

import main
import models
from services import sync_tracker
from conftest import ORG, FakeClient, product_payload


def _sign(body: bytes, secret: str = "hush") -> str:
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


@pytest.fixture
def fake_client():
    return FakeClient(pages=[[product_payload(1)]], records={"5": product_payload(5)})


@pytest.fixture
def api(make_context, fake_client):
    with TestClient(main.create_app(make_context(fake_client), create_tables=False)) as client:
        yield client


def test_health(api):
    assert api.get("/health").json() == {"status": "ok"}


def test_trigger_sync_runs_in_background(api, db, integration):
    response = api.post("/api/sync-control/products",
                        json={"organization_id": ORG, "integration_id": integration.id, "mode": "full"})

    assert response.status_code == 200
    job_id = response.json()["job_id"]

    status = api.get(f"/api/sync-status/{job_id}").json()
    assert status["status"] == "completed"
    assert status["entity_kind"] == "products"
    assert status["processed_items"] == 1
    assert db.query(models.Product).count() == 1

    listed = api.get("/api/sync-control/jobs", params={"organization_id": ORG}).json()["jobs"]
    assert [j["id"] for j in listed] == [job_id]


def test_trigger_sync_for_unknown_integration(api):
    response = api.post("/api/sync-control/orders", json={"organization_id": ORG, "integration_id": 999})

    assert response.status_code == 404


def test_trigger_sync_rejects_unknown_kind(api, integration):
    response = api.post("/api/sync-control/invoices",
                        json={"organization_id": ORG, "integration_id": integration.id})

    assert response.status_code == 422


def test_cancel_then_cancel_again(api, db, integration):
    job = sync_tracker.create_job(db, ORG, "orders", "full", integration_id=integration.id)

    first = api.post(f"/api/sync-control/jobs/{job.id}/cancel")
    second = api.post(f"/api/sync-control/jobs/{job.id}/cancel")

    assert first.status_code == 200
    assert first.json()["job"]["status"] == "cancelled"
    assert second.status_code == 409


def test_pause_pending_job_conflicts(api, db, integration):
    job = sync_tracker.create_job(db, ORG, "orders", "full", integration_id=integration.id)

    assert api.post(f"/api/sync-control/jobs/{job.id}/pause").status_code == 409


def test_resume_paused_job(api, db, integration, fake_client):
    job = sync_tracker.create_job(db, ORG, "products", "full", integration_id=integration.id,
                                  config={"fetchAll": True, "source": "manual"})
    sync_tracker.mark_running(db, job)
    sync_tracker.request_pause(db, job)

    response = api.post(f"/api/sync-control/jobs/{job.id}/resume")

    assert response.status_code == 200
    assert response.json()["job"]["status"] == "running"
    assert api.get(f"/api/sync-status/{job.id}").json()["status"] == "completed"
    assert [c["cursor"] for c in fake_client.calls] == [None]


def test_unknown_job_status(api):
    assert api.get("/api/sync-status/nope").status_code == 404
    assert api.post("/api/sync-control/jobs/nope/cancel").status_code == 404


def test_webhook_resyncs_the_record(api, db, integration, fake_client):
    body = json.dumps({"id": 5}).encode()

    response = api.post(f"/api/webhooks/{integration.id}", content=body, headers={
        "X-Shopify-Hmac-Sha256": _sign(body), "X-Shopify-Topic": "products/update",
        "Content-Type": "application/json"})

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "entity_kind": "products", "action": "update", "external_id": "5"}
    assert fake_client.calls == [{"kind": "products", "external_id": "5"}]
    assert db.query(models.Product).one().shopify_product_id == "5"


def test_webhook_with_bad_signature(api, integration):
    body = json.dumps({"id": 5}).encode()

    response = api.post(f"/api/webhooks/{integration.id}", content=body, headers={
        "X-Shopify-Hmac-Sha256": _sign(body, "wrong"), "X-Shopify-Topic": "products/update"})

    assert response.status_code == 401


def test_webhook_without_signature(api, integration):
    response = api.post(f"/api/webhooks/{integration.id}", content=b"{}",
                        headers={"X-Shopify-Topic": "products/update"})

    assert response.status_code == 400


def test_webhook_unknown_topic_is_ignored(api, integration, fake_client):
    body = json.dumps({"id": 5}).encode()

    response = api.post(f"/api/webhooks/{integration.id}", content=body, headers={
        "X-Shopify-Hmac-Sha256": _sign(body), "X-Shopify-Topic": "app/uninstalled"})

    assert response.json() == {"status": "ignored", "topic": "app/uninstalled"}
    assert fake_client.calls == []

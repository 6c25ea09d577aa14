import json
from datetime import date
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from bilee.app.config import Settings
from bilee.app.deps import get_pipeline
from bilee.app.main import app
from bilee.app.pipeline import build_pipeline
from bilee.app.security import HmacSignatureScheme
from bilee.tests.fakes import InMemorySessionStore, make_session

SECRET = "whsec_api"


@pytest.fixture
def pipeline():
    cfg = Settings()
    cfg.webhook_secret = SECRET
    cfg.webhook_signature_scheme = "hmac-sha256"
    p = build_pipeline(InMemorySessionStore(), cfg)
    app.dependency_overrides[get_pipeline] = lambda: p
    yield p
    app.dependency_overrides.clear()


@pytest.fixture
def client(pipeline):
    return TestClient(app, raise_server_exceptions=False)


def _signed(payload):
    body = json.dumps(payload).encode("utf-8")
    return body, {"Content-Type": "application/json", "X-Signature": HmacSignatureScheme(SECRET).sign(body)}


def test_webhook_success(client, pipeline):
    pipeline.store.sessions["s1"] = make_session()
    body, headers = _signed({"session_id": "s1", "transaction_id": "t1", "status": "SUCCESS", "amount": 100})

    res = client.post("/webhooks/upi", content=body, headers=headers)

    assert res.status_code == 200
    assert res.json() == {"success": True, "session_id": "s1", "transaction_id": "t1", "status": "SUCCESS"}
    assert pipeline.store.sessions["s1"].payment_status == "PAID"


def test_webhook_missing_signature_is_401(client, pipeline):
    pipeline.store.sessions["s1"] = make_session()
    body, _ = _signed({"session_id": "s1", "transaction_id": "t1", "status": "SUCCESS", "amount": 100})

    res = client.post("/webhooks/upi", content=body, headers={"Content-Type": "application/json"})

    assert res.status_code == 401
    data = res.json()
    assert data["reason"] == "missing_signature"
    assert data["request_id"]
    assert pipeline.store.calls == []


def test_webhook_error_statuses(client, pipeline):
    pipeline.store.sessions["s1"] = make_session()

    body, headers = _signed({"session_id": "nope", "transaction_id": "t1", "status": "SUCCESS", "amount": 100})
    assert client.post("/webhooks/upi", content=body, headers=headers).status_code == 404

    body, headers = _signed({"session_id": "s1", "transaction_id": "t1", "status": "SUCCESS", "amount": 150})
    res = client.post("/webhooks/upi", content=body, headers=headers)
    assert res.status_code == 400
    assert res.json()["reason"] == "amount_mismatch"

    body, headers = _signed({"session_id": "s1", "status": "SUCCESS", "amount": 100})
    res = client.post("/webhooks/upi", content=body, headers=headers)
    assert res.status_code == 400
    assert res.json()["reason"] == "missing_fields"


def test_webhook_without_secret_is_unavailable(client, pipeline):
    pipeline.cfg.webhook_secret = ""
    body, headers = _signed({"session_id": "s1", "transaction_id": "t1", "status": "SUCCESS", "amount": 100})

    res = client.post("/webhooks/upi", content=body, headers=headers)

    assert res.status_code == 503


def test_store_outage_maps_to_503(client, pipeline):
    pipeline.store.fail_on.add("get_session")
    body, headers = _signed({"session_id": "s1", "transaction_id": "t1", "status": "SUCCESS", "amount": 100})

    res = client.post("/webhooks/upi", content=body, headers=headers)

    assert res.status_code == 503
    assert res.json()["reason"] == "store_unavailable"


def test_create_and_fetch_session(client, pipeline):
    res = client.post(
        "/sessions",
        json={
            "id": "s42",
            "merchant_id": "m1",
            "items": [{"name": "Coffee", "qty": 2, "unit_price": "5.00"}],
            "subtotal": "10.00",
            "total": "10.00",
        },
    )
    assert res.status_code == 200
    data = res.json()
    assert data["id"] == "s42"
    assert data["status"] == "ACTIVE"
    assert data["payment_status"] == "PENDING"
    assert Decimal(str(data["items"][0]["line_total"])) == Decimal("10.00")
    assert [e[0] for e in pipeline.store.events] == ["created"]

    res = client.get("/sessions/s42")
    assert res.status_code == 200
    assert res.json()["merchant_id"] == "m1"

    assert client.get("/sessions/missing").status_code == 404


def test_create_walk_in_session_is_paid(client, pipeline):
    res = client.post(
        "/sessions",
        json={"merchant_id": "m1", "total": "20", "payment_status": "paid", "payment_method": "Cash"},
    )
    assert res.status_code == 200
    data = res.json()
    assert data["payment_status"] == "PAID"
    assert data["payment_confirmed"] is True
    assert data["payment_method"] == "cash"
    assert data["payment_time"] is not None


def test_create_session_cannot_start_failed(client):
    res = client.post("/sessions", json={"merchant_id": "m1", "payment_status": "FAILED"})
    assert res.status_code == 400


def test_confirm_payment_is_idempotent(client, pipeline):
    pipeline.store.sessions["s1"] = make_session()

    res = client.post("/sessions/s1/confirm-payment", json={"payment_method": "upi", "transaction_id": "t1"})
    assert res.status_code == 200
    assert res.json()["payment_status"] == "PAID"

    res = client.post("/sessions/s1/confirm-payment", json={"payment_method": "card", "transaction_id": "t2"})
    assert res.status_code == 200
    assert res.json()["transaction_id"] == "t1"
    assert len(pipeline.store.events) == 1

    res = client.post("/sessions/missing/confirm-payment", json={"payment_method": "upi"})
    assert res.status_code == 404


def test_daily_aggregate_recompute_and_read(client, pipeline):
    assert client.get("/reports/daily-aggregates", params={"merchant_id": "m1", "date": "2026-01-15"}).status_code == 404

    res = client.post("/reports/daily-aggregates/recompute", json={"merchant_id": "m1", "date": "2026-01-15"})
    assert res.status_code == 200
    assert res.json()["orders_count"] == 0
    assert ("m1", date(2026, 1, 15)) in pipeline.store.aggregates

    res = client.get("/reports/daily-aggregates", params={"merchant_id": "m1", "date": "2026-01-15"})
    assert res.status_code == 200
    assert res.json()["date"] == "2026-01-15"


def test_request_validation_is_422(client):
    res = client.post("/sessions", json={"merchant_id": ""})
    assert res.status_code == 422


def test_health_live_and_meta(client):
    res = client.get("/health/live")
    assert res.status_code == 200
    assert res.json()["service"] == "bilee-settlement"
    assert "X-Request-Id" in res.headers
    assert client.get("/meta").json()["service"] == "bilee-settlement"

import base64
import json

import pytest
from fastapi.testclient import TestClient

from app.config import settings
from app.main import app
from app.models_sqlalchemy.models import IntegrationLog, Job, Order, Product
from app.services.shipstation.auth import generate_webhook_signature

from conftest import STORE_ID, make_integration, make_order, make_product


def basic(username="key-123", password="secret-456"):
    return {"Authorization": "Basic " + base64.b64encode(f"{username}:{password}".encode()).decode()}


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def shop(db):
    product = make_product(db, sku="MUG", stock=10)
    order = make_order(db, items=[(product, 2)])
    db.commit()
    make_integration(db)
    return product, order


def ship_payload(order_id="1001", **extra):
    payload = {
        "resource_type": "ITEM_SHIP_NOTIFY",
        "resource_url": "https://ssapi.example.com/shipments?batchId=1",
        "order_id": order_id,
        "tracking_number": "1Z999",
        "carrier_code": "ups",
    }
    payload.update(extra)
    return payload


SHIP_NOTICE = """<?xml version="1.0" encoding="utf-8"?>
<ShipNotice>
  <OrderNumber>1001</OrderNumber>
  <TrackingNumber>9400111</TrackingNumber>
  <Carrier>USPS</Carrier>
  <ShipDate>03/06/2024 10:15</ShipDate>
</ShipNotice>"""


def test_health_endpoints(client):
    assert client.get("/healthz").json() == {"status": "ok"}
    response = client.get("/healthz/db")
    assert response.status_code == 200
    assert response.json()["database"] == "connected"
    assert "X-Request-ID" in response.headers


def test_request_id_is_echoed(client):
    response = client.get("/healthz", headers={"X-Request-ID": "abc123"})
    assert response.headers["X-Request-ID"] == "abc123"


def test_webhook_challenge_and_health_check(client):
    assert client.get("/api/shipstation/webhook", params={"challenge": "xyz"}).json() == {"challenge": "xyz"}
    health = client.get("/api/shipstation/webhook").json()
    assert health["status"] == "healthy"
    assert health["service"] == "shipstation-webhook"


@pytest.mark.parametrize(
    "body",
    [
        {"order_id": "1001"},
        {"resource_type": "ITEM_SHIP_NOTIFY"},
    ],
)
def test_webhook_without_resource_fields_is_acknowledged(client, body):
    response = client.post("/api/shipstation/webhook", json=body)
    assert response.status_code == 200
    assert response.json() == {"success": False, "error": "Invalid webhook payload"}


def test_webhook_with_unparseable_body(client):
    response = client.post("/api/shipstation/webhook", content=b"not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 200
    assert response.json()["success"] is False


def test_webhook_ships_order(client, db, shop):
    product, order = shop

    response = client.post("/api/shipstation/webhook", json=ship_payload())

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "message": "Webhook processed successfully",
        "duplicate": False,
        "order_id": order.id,
    }
    db.expire_all()
    assert db.get(Order, order.id).status == "shipped"
    assert db.get(Product, product.id).stock_quantity == 8

    again = client.post("/api/shipstation/webhook", json=ship_payload())
    assert again.json()["duplicate"] is True


def test_webhook_accepts_form_posts(client, db, shop):
    _, order = shop
    response = client.post("/api/shipstation/webhook", data={"payload": json.dumps(ship_payload())})
    assert response.json()["order_id"] == order.id


def test_webhook_failure_queues_urgent_retry(client, db, shop):
    response = client.post("/api/shipstation/webhook", json=ship_payload(order_id="unknown"))

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "Webhook processing failed"}
    db.expire_all()
    (job,) = db.query(Job).filter(Job.job_type == "shipment_processing").all()
    assert job.priority == "urgent"
    assert job.payload["webhook_payload"]["order_id"] == "unknown"
    assert job.payload["webhook_type"] == "shipstation_webhook"


def test_webhook_auth_when_required(client, db, shop, monkeypatch):
    monkeypatch.setattr(settings, "SHIPSTATION_WEBHOOK_AUTH_REQUIRED", True)

    denied = client.post("/api/shipstation/webhook", json=ship_payload())
    assert denied.status_code == 401
    assert denied.json() == {"success": False, "error": "Authentication failed"}

    allowed = client.post("/api/shipstation/webhook", json=ship_payload(), headers=basic())
    assert allowed.status_code == 200

    db.expire_all()
    statuses = sorted(
        log.status for log in db.query(IntegrationLog).filter(IntegrationLog.operation == "authentication")
    )
    assert statuses == ["failure", "success"]


def test_webhook_signature_is_checked_for_known_store(client, db, shop):
    body = json.dumps(ship_payload()).encode()
    headers = {**basic(), "Content-Type": "application/json"}

    bad = client.post(
        "/api/shipstation/webhook", content=body, headers={**headers, "X-ShipStation-Signature": "deadbeef"}
    )
    assert bad.status_code == 401
    assert bad.json()["error"] == "Invalid signature"

    signature = generate_webhook_signature(body, "secret-456")
    good = client.post(
        "/api/shipstation/webhook", content=body, headers={**headers, "X-ShipStation-Signature": f"sha256={signature}"}
    )
    assert good.status_code == 200
    assert good.json()["success"] is True


def test_export_requires_authentication(client, db, shop):
    response = client.get("/api/shipstation/orders", params={"action": "export"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHORIZED"


@pytest.mark.parametrize(
    "params,code",
    [
        ({"action": "import", "start_date": "01/01/2024 00:00", "end_date": "01/02/2024 00:00"}, "INVALID_ACTION"),
        ({"action": "export", "start_date": "01/01/2024 00:00"}, "MISSING_DATES"),
        ({"action": "export", "start_date": "2024-01-01", "end_date": "01/02/2024 00:00"}, "INVALID_DATE"),
    ],
)
def test_export_rejects_bad_parameters(client, db, shop, params, code):
    response = client.get("/api/shipstation/orders", params=params, headers=basic())
    assert response.status_code == 400
    assert response.json()["error"]["code"] == code


def test_export_returns_orders_as_xml(client, db, shop):
    make_order(db, order_number="GONE", status="cancelled")
    db.commit()

    response = client.get(
        "/api/shipstation/orders",
        params={"action": "export", "start_date": "01/01/2020 00:00", "end_date": "12/31/2099 23:59"},
        headers=basic(),
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/xml")
    assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"
    assert "<OrderNumber>1001</OrderNumber>" in response.text
    assert "GONE" not in response.text


def test_export_is_scoped_to_authenticated_store(client, db, shop):
    make_order(db, order_number="OTHER-1", store_id="store-2")
    db.commit()
    make_integration(db, store_id="store-2", api_key="key-2", api_secret="secret-2")

    response = client.get(
        "/api/shipstation/orders",
        params={"action": "export", "start_date": "01/01/2020 00:00", "end_date": "12/31/2099 23:59"},
        headers=basic("key-2", "secret-2"),
    )

    assert "OTHER-1" in response.text
    assert "<OrderNumber>1001</OrderNumber>" not in response.text


def test_ship_notice_xml_marks_order_shipped(client, db, shop):
    product, order = shop

    response = client.post(
        "/api/shipstation/orders",
        content=SHIP_NOTICE,
        headers={**basic(), "Content-Type": "application/xml"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["order_id"] == order.id
    assert body["tracking_number"] == "9400111"
    db.expire_all()
    stored = db.get(Order, order.id)
    assert stored.status == "shipped"
    assert stored.tracking_url.endswith("tLabels=9400111")
    assert db.get(Product, product.id).stock_quantity == 8

    replay = client.post("/api/shipstation/orders", content=SHIP_NOTICE, headers=basic())
    assert replay.json()["duplicate"] is True


@pytest.mark.parametrize(
    "xml,status_code,code",
    [
        ("<ShipNotice>", 400, "INVALID_XML"),
        ("<ShipNotice><Carrier>UPS</Carrier></ShipNotice>", 400, "VALIDATION_ERROR"),
        (SHIP_NOTICE.replace("1001", "9999"), 404, "ORDER_NOT_FOUND"),
    ],
)
def test_ship_notice_errors(client, db, shop, xml, status_code, code):
    response = client.post("/api/shipstation/orders", content=xml, headers=basic())
    assert response.status_code == status_code
    assert response.json()["error"]["code"] == code


def test_ship_notice_for_cancelled_order_conflicts(client, db, shop):
    _, order = shop
    order.status = "cancelled"
    db.commit()

    response = client.post("/api/shipstation/orders", content=SHIP_NOTICE, headers=basic())
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "INVALID_STATUS"


def test_put_updates_status_and_tracking(client, db, shop):
    _, order = shop

    response = client.put(
        "/api/shipstation/orders/1001",
        json={"status": "shipped", "trackingNumber": "1Z55", "carrierCode": "ups"},
        headers=basic(),
    )

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "order_id": order.id,
        "order_number": "1001",
        "status": "shipped",
        "tracking_number": "1Z55",
    }


def test_put_errors(client, db, shop):
    missing = client.put("/api/shipstation/orders/nope", json={"status": "shipped"}, headers=basic())
    assert missing.status_code == 404

    bad_json = client.put(
        "/api/shipstation/orders/1001", content=b"{", headers={**basic(), "Content-Type": "application/json"}
    )
    assert bad_json.status_code == 400
    assert bad_json.json()["error"]["code"] == "INVALID_JSON"

    client.put("/api/shipstation/orders/1001", json={"status": "cancelled"}, headers=basic())
    conflict = client.put("/api/shipstation/orders/1001", json={"status": "shipped"}, headers=basic())
    assert conflict.status_code == 409


def test_webhook_is_scoped_to_authenticated_store(client, db, monkeypatch):
    monkeypatch.setattr(settings, "SHIPSTATION_WEBHOOK_AUTH_REQUIRED", True)
    mug_a = make_product(db, sku="MUG", stock=10, store_id="store-a")
    mug_b = make_product(db, sku="MUG", stock=10, store_id="store-b")
    order_a = make_order(db, store_id="store-a", items=[(mug_a, 2)])
    order_b = make_order(db, store_id="store-b", items=[(mug_b, 2)])
    db.commit()
    make_integration(db, store_id="store-a", api_key="key-a", api_secret="secret-a")
    make_integration(db, store_id="store-b", api_key="key-b", api_secret="secret-b")

    response = client.post("/api/shipstation/webhook", json=ship_payload(), headers=basic("key-b", "secret-b"))

    assert response.status_code == 200
    assert response.json()["order_id"] == order_b.id
    db.expire_all()
    assert (db.get(Order, order_b.id).status, db.get(Product, mug_b.id).stock_quantity) == ("shipped", 8)
    assert (db.get(Order, order_a.id).status, db.get(Product, mug_a.id).stock_quantity) == ("confirmed", 10)


def test_unauthenticated_webhook_for_shared_order_number_is_refused(client, db):
    for store in ("store-a", "store-b"):
        make_order(db, store_id=store)
    db.commit()

    response = client.post("/api/shipstation/webhook", json=ship_payload())

    assert response.status_code == 200
    assert response.json() == {"success": False, "error": "Invalid webhook payload"}
    db.expire_all()
    assert {o.status for o in db.query(Order).all()} == {"confirmed"}
    assert db.query(Job).filter(Job.job_type == "shipment_processing").count() == 0


def test_webhook_with_non_finite_cost_is_acknowledged(client, db, shop):
    _, order = shop

    response = client.post("/api/shipstation/webhook", json=ship_payload(shipment_cost="NaN"))

    assert response.status_code == 200
    assert response.json()["order_id"] == order.id
    db.expire_all()
    assert db.get(Order, order.id).shipment_cost is None
    assert db.query(Job).filter(Job.job_type == "shipment_processing").count() == 0


def test_webhook_with_undecodable_signature_header_is_rejected(client, db, shop):
    body = json.dumps(ship_payload()).encode()
    headers = {**basic(), "Content-Type": "application/json", "X-ShipStation-Signature": "sha256=café".encode()}

    response = client.post("/api/shipstation/webhook", content=body, headers=headers)

    assert response.status_code == 401
    assert response.json()["error"] == "Invalid signature"

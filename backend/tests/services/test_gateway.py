import base64
import json
from datetime import datetime, timezone

import httpx
import pytest

from app.config import settings
from app.models_sqlalchemy.models import IntegrationLog, Order
from app.services.shipstation.credentials import PLACEHOLDER_SHIP_FROM, StoreCredentials
from app.services.shipstation.gateway import (
    CarrierOrder,
    CarrierOrderItem,
    LegacyShipStationGateway,
    ShipStationV2Gateway,
    build_legacy_order,
    build_v2_shipment,
    camelize,
    get_gateway_for_store,
    submit_order_to_carrier,
)

from conftest import STORE_ID, make_integration, make_order, make_product


SHIP_FROM = {
    "name": "Main Warehouse",
    "address_line1": "500 Dock Rd",
    "city_locality": "Reno",
    "state_province": "NV",
    "postal_code": "89501",
    "country_code": "US",
}


def creds(**configuration):
    return StoreCredentials(
        store_id=STORE_ID,
        integration_id="int-1",
        api_key="key-123",
        api_secret="secret-456",
        configuration=configuration,
    )


def carrier_order():
    return CarrierOrder(
        store_id=STORE_ID,
        order_number="1001",
        customer_email="jane.doe@example.com",
        ship_to={"name": "Jane Doe", "street": "1 Main St", "city": "Springfield", "state": "IL", "postal_code": "62701"},
        items=[
            CarrierOrderItem(sku="MUG", name="Mug & Saucer", quantity=2, unit_price=1250, product_id="p-1", weight_oz=8),
            CarrierOrderItem(sku="CAP", name="Cap", quantity=1, unit_price=999),
        ],
        total_amount=4599,
        shipping_amount=500,
    )


class Recorder:
    """MockTransport handler returning a canned response and keeping requests."""

    def __init__(self, status_code=200, **response):
        self.status_code = status_code
        self.response = response
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        return httpx.Response(self.status_code, **self.response)

    @property
    def transport(self):
        return httpx.MockTransport(self)


def _logs(db, operation):
    db.expire_all()
    return db.query(IntegrationLog).filter(IntegrationLog.operation == operation).all()


def test_camelize_drops_none_and_recurses():
    assert camelize({"ship_to": {"postal_code": "1", "street2": None}, "items": [{"unit_price": 1}]}) == {
        "shipTo": {"postalCode": "1"},
        "items": [{"unitPrice": 1}],
    }


def test_legacy_document_weights_and_amounts():
    document = build_legacy_order(carrier_order())
    assert document["order_status"] == "awaiting_shipment"
    assert document["amount_paid"] == 45.99
    assert document["items"][0]["weight"] == {"value": 1.0, "units": "pounds"}
    assert document["items"][1]["weight"]["value"] == 0.5
    assert document["weight"]["value"] == 1.5
    assert document["bill_to"] == document["ship_to"]
    assert document["ship_to"]["street1"] == "1 Main St"


def test_legacy_order_key_is_stable_across_retries():
    first = build_legacy_order(carrier_order(), now=datetime(2024, 3, 5, 12, 0, tzinfo=timezone.utc))
    retry = build_legacy_order(carrier_order(), now=datetime(2024, 3, 5, 12, 7, tzinfo=timezone.utc))
    assert first["order_key"] == retry["order_key"] == "1001"


def test_v2_document_carries_ship_from():
    payload = build_v2_shipment(carrier_order(), SHIP_FROM)
    (shipment,) = payload["shipments"]
    assert shipment["external_shipment_id"] == "1001"
    assert shipment["ship_from"] == SHIP_FROM
    assert shipment["ship_to"]["country_code"] == "US"
    assert shipment["items"][0]["external_order_item_id"] == "1001-p-1"
    assert shipment["amount_paid"] == {"currency": "USD", "amount": 45.99}


@pytest.mark.asyncio
async def test_legacy_xml_order_creation(db):
    recorder = Recorder(200, json={"orderId": 987654, "orderStatus": "awaiting_shipment"})
    gateway = LegacyShipStationGateway(creds(), transport=recorder.transport)

    result = await gateway.create_shipment(carrier_order())

    assert result.success
    assert result.carrier_order_id == "987654"
    assert result.status == "awaiting_shipment"

    (request,) = recorder.requests
    assert request.method == "POST"
    assert request.url.path == "/orders/createorder"
    assert request.headers["content-type"] == "application/xml"
    expected = base64.b64encode(b"key-123:secret-456").decode()
    assert request.headers["authorization"] == f"Basic {expected}"
    body = request.content.decode()
    assert "<OrderNumber>1001</OrderNumber>" in body
    assert "Mug &amp; Saucer" in body or "<![CDATA[Mug & Saucer]]>" in body

    (log,) = _logs(db, "order_create")
    assert log.status == "success"
    assert log.request_data["headers"]["Authorization"] == "***"
    assert "secret-456" not in json.dumps(log.request_data)


@pytest.mark.asyncio
async def test_legacy_xml_response_body_is_read():
    recorder = Recorder(200, text="<Order><OrderId>55</OrderId></Order>", headers={"content-type": "application/xml"})
    gateway = LegacyShipStationGateway(creds(), transport=recorder.transport)

    result = await gateway.create_shipment(carrier_order())

    assert result.carrier_order_id == "55"


@pytest.mark.asyncio
async def test_legacy_json_payload_format():
    recorder = Recorder(200, json={"orderId": 1})
    gateway = LegacyShipStationGateway(creds(payload_format="json"), transport=recorder.transport)

    await gateway.create_shipment(carrier_order())

    sent = json.loads(recorder.requests[0].content)
    assert sent["orderNumber"] == "1001"
    assert sent["shipTo"]["postalCode"] == "62701"
    assert sent["items"][0]["unitPrice"] == 12.5


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code,retryable", [(500, True), (503, True), (429, True), (400, False), (401, False)])
async def test_http_failures_report_retryability(db, status_code, retryable):
    recorder = Recorder(status_code, json={"message": "carrier says no"})
    gateway = LegacyShipStationGateway(creds(), transport=recorder.transport)

    result = await gateway.create_shipment(carrier_order())

    assert not result.success
    assert result.status_code == status_code
    assert result.retryable is retryable
    assert result.error == "carrier says no"
    (log,) = _logs(db, "order_create")
    assert log.status == "failure"
    assert log.error_message == "carrier says no"


@pytest.mark.asyncio
async def test_network_errors_are_retryable(db):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    gateway = LegacyShipStationGateway(creds(), transport=httpx.MockTransport(refuse))

    result = await gateway.create_shipment(carrier_order())

    assert not result.success
    assert result.retryable
    assert result.status_code is None
    (log,) = _logs(db, "order_create")
    assert log.error_message.startswith("ConnectError")


@pytest.mark.asyncio
async def test_connection_checks():
    legacy = Recorder(200, json=[{"code": "ups"}])
    v2 = Recorder(200, json={"carriers": []})

    assert (await LegacyShipStationGateway(creds(), transport=legacy.transport).test_connection()).success
    assert (await ShipStationV2Gateway(creds(), transport=v2.transport).test_connection()).success
    assert legacy.requests[0].url.path == "/carriers"
    assert v2.requests[0].url.path == "/v2/carriers"
    assert v2.requests[0].headers["api-key"] == "key-123"


@pytest.mark.asyncio
async def test_v2_shipment_creation():
    recorder = Recorder(200, json={"has_errors": False, "shipments": [{"shipment_id": "se-42", "shipment_status": "pending"}]})
    gateway = ShipStationV2Gateway(creds(ship_from=SHIP_FROM), transport=recorder.transport)

    result = await gateway.create_shipment(carrier_order())

    assert result.success
    assert result.carrier_order_id == "se-42"
    assert result.status == "pending"
    sent = json.loads(recorder.requests[0].content)
    assert sent["shipments"][0]["ship_from"]["postal_code"] == "89501"


@pytest.mark.asyncio
async def test_v2_errors_inside_success_response():
    recorder = Recorder(
        200, json={"has_errors": True, "shipments": [{"errors": [{"message": "Invalid postal code"}]}]}
    )
    gateway = ShipStationV2Gateway(creds(ship_from=SHIP_FROM), transport=recorder.transport)

    result = await gateway.create_shipment(carrier_order())

    assert not result.success
    assert not result.retryable
    assert result.error == "Shipment creation failed: Invalid postal code"


@pytest.mark.asyncio
async def test_v2_without_ship_from_fails_before_calling_carrier(db):
    recorder = Recorder(200, json={})
    gateway = ShipStationV2Gateway(creds(), transport=recorder.transport)

    result = await gateway.create_shipment(carrier_order())

    assert not result.success
    assert result.error == "ship_from_not_configured"
    assert recorder.requests == []
    (log,) = _logs(db, "shipment_create")
    assert log.status == "failure"


@pytest.mark.asyncio
async def test_v2_placeholder_ship_from_is_flagged(db, monkeypatch):
    monkeypatch.setattr(settings, "SHIPSTATION_ALLOW_PLACEHOLDER_SHIP_FROM", True)
    recorder = Recorder(200, json={"shipments": [{"shipment_id": "se-1"}]})
    gateway = ShipStationV2Gateway(creds(), transport=recorder.transport)

    result = await gateway.create_shipment(carrier_order())

    assert result.success
    sent = json.loads(recorder.requests[0].content)
    assert sent["shipments"][0]["ship_from"] == PLACEHOLDER_SHIP_FROM
    statuses = sorted(log.status for log in _logs(db, "shipment_create"))
    assert statuses == ["success", "warning"]


def test_gateway_selection_by_api_version(db):
    assert get_gateway_for_store(STORE_ID) is None

    make_integration(db)
    assert isinstance(get_gateway_for_store(STORE_ID), LegacyShipStationGateway)

    make_integration(db, configuration={"api_version": "V2"})
    gateway = get_gateway_for_store(STORE_ID)
    assert isinstance(gateway, ShipStationV2Gateway)
    assert gateway.base_url == settings.SHIPSTATION_V2_BASE_URL


@pytest.mark.asyncio
async def test_submit_order_stores_carrier_id(db):
    product = make_product(db, sku="MUG", stock=5)
    order = make_order(db, items=[(product, 1)])
    db.commit()
    make_integration(db, configuration={"api_version": "v2", "shipFromAddress": SHIP_FROM})
    recorder = Recorder(200, json={"shipments": [{"shipment_id": "se-777"}]})

    result = await submit_order_to_carrier(order.id, transport=recorder.transport)

    assert result.success
    db.expire_all()
    assert db.get(Order, order.id).shipstation_order_id == "se-777"
    sent = json.loads(recorder.requests[0].content)
    assert sent["shipments"][0]["items"][0]["sku"] == "MUG"
    assert sent["shipments"][0]["ship_to"]["name"] == "Jane Doe"


@pytest.mark.asyncio
async def test_submit_order_failures(db):
    missing = await submit_order_to_carrier("no-such-order")
    assert missing.error.startswith("Order not found")

    order = make_order(db)
    db.commit()
    unconfigured = await submit_order_to_carrier(order.id)
    assert unconfigured.error == "credentials_not_configured"
    assert not unconfigured.retryable

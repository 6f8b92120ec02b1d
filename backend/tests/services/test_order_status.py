from datetime import datetime, timedelta, timezone

import pytest

from app.models_sqlalchemy.models import (
    IntegrationLog,
    InventoryLog,
    Job,
    Order,
    Product,
    ShipmentNotification,
    WebhookEvent,
)
from app.services import order_status_service
from app.services.order_status_service import (
    AmbiguousOrderError,
    InvalidTransitionError,
    OrderNotFoundError,
    OrderPatch,
    apply_shipment_event,
    apply_webhook_payload,
    can_transition,
    export_orders,
    get_order_tracking_info,
    get_shipment_notifications,
    process_shipment_notification,
    update_order_from_carrier,
)
from app.services.shipstation.payloads import (
    SHIP_NOTIFY,
    InvalidWebhookPayloadError,
    ShipmentEvent,
    parse_webhook_payload,
    payload_dedupe_key,
)
from app.services.shipstation.xml_parser import parse_order_xml

from conftest import STORE_ID, make_order, make_product


def ship_notify(order_id="1001", tracking="1Z999", carrier="ups", **extra):
    payload = {
        "resource_type": "ITEM_SHIP_NOTIFY",
        "resource_url": "https://ssapi.example.com/shipments?batchId=1",
        "order_id": order_id,
        "tracking_number": tracking,
        "carrier_code": carrier,
        "ship_date": "2024-03-06T10:15:00Z",
    }
    payload.update(extra)
    return payload


def delivered_notify(order_id="1001", **extra):
    payload = {
        "resource_type": "ITEM_DELIVERED_NOTIFY",
        "resource_url": "https://ssapi.example.com/shipments?batchId=2",
        "order_id": order_id,
        "tracking_number": "1Z999",
        "delivered_date": "2024-03-08T09:00:00Z",
    }
    payload.update(extra)
    return payload


def _notification_jobs(db):
    return db.query(Job).filter(Job.job_type == "order_notification").all()


@pytest.fixture
def shop(db):
    product = make_product(db, sku="MUG", stock=10)
    order = make_order(db, items=[(product, 2)])
    db.commit()
    return product, order


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        ("pending", "confirmed", True),
        ("confirmed", "shipped", True),
        ("shipped", "shipped", True),
        ("shipped", "delivered", True),
        ("delivered", "shipped", False),
        ("cancelled", "shipped", False),
        ("refunded", "refunded", False),
        ("delivered", "refunded", True),
        (None, "confirmed", True),
    ],
)
def test_transition_table(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_order_patch_only_writes_set_fields(db, shop):
    _, order = shop
    order.carrier = "fedex"
    written = OrderPatch(status="processing", tracking_number="T1").apply(order)
    assert written == ["status", "tracking_number"]
    assert order.carrier == "fedex"


def test_first_ship_notify_ships_decrements_and_queues_notification(db, shop):
    product, order = shop

    outcome = apply_webhook_payload(ship_notify())

    assert outcome.order_id == order.id
    assert outcome.status == "shipped"
    assert not outcome.duplicate

    db.expire_all()
    stored = db.get(Order, order.id)
    assert stored.status == "shipped"
    assert stored.tracking_number == "1Z999"
    assert stored.carrier == "ups"
    assert stored.tracking_url == "https://wwwapps.ups.com/tracking/tracking.cgi?tracknum=1Z999"
    assert stored.shipped_at is not None
    assert stored.shipment_data["tracking_number"] == "1Z999"
    # The carrier id matched on order number, so it is not copied over.
    assert stored.shipstation_order_id is None

    assert db.get(Product, product.id).stock_quantity == 8
    logs = db.query(InventoryLog).filter(InventoryLog.reference_id == order.id).all()
    assert len(logs) == 1
    assert logs[0].reference_type == "order"

    jobs = _notification_jobs(db)
    assert len(jobs) == 1
    assert jobs[0].payload["notification_type"] == "shipped"
    assert jobs[0].payload["order_id"] == order.id

    (note,) = get_shipment_notifications(order.id)
    assert note.notification_type == "shipped"
    assert note.email_sent is False


def test_repeat_ship_notify_updates_tracking_without_second_decrement(db, shop):
    product, order = shop
    apply_webhook_payload(ship_notify(tracking="1Z-OLD"))

    outcome = apply_webhook_payload(ship_notify(tracking="1Z-NEW", carrier="fedex"))

    assert outcome.status == "shipped"
    db.expire_all()
    stored = db.get(Order, order.id)
    assert stored.tracking_number == "1Z-NEW"
    assert stored.tracking_url.startswith("https://www.fedex.com/")
    assert db.get(Product, product.id).stock_quantity == 8
    assert db.query(InventoryLog).filter(InventoryLog.product_id == product.id).count() == 1


def test_ship_notify_for_already_shipped_order_does_not_decrement(db):
    product = make_product(db, sku="MUG", stock=10)
    order = make_order(db, status="shipped", items=[(product, 3)], tracking_number="OLD")
    db.commit()

    apply_webhook_payload(ship_notify(tracking="NEW"))

    db.expire_all()
    assert db.get(Order, order.id).tracking_number == "NEW"
    assert db.get(Product, product.id).stock_quantity == 10
    assert db.query(InventoryLog).count() == 0


def test_duplicate_payload_is_applied_once(db, shop):
    product, order = shop
    payload = ship_notify()

    first = apply_webhook_payload(payload)
    second = apply_webhook_payload(dict(reversed(list(payload.items()))))

    assert not first.duplicate
    assert second.duplicate
    db.expire_all()
    assert db.get(Product, product.id).stock_quantity == 8
    assert len(_notification_jobs(db)) == 1
    (event,) = db.query(WebhookEvent).all()
    assert event.status == "processed"
    assert event.processed_at is not None


def test_ship_notify_matches_carrier_order_id(db):
    product = make_product(db, stock=5)
    order = make_order(db, order_number="A-77", items=[(product, 1)], shipstation_order_id="998877")
    db.commit()

    outcome = apply_webhook_payload(ship_notify(order_id="998877"))

    assert outcome.order_id == order.id


def test_ship_notify_records_carrier_id_when_new(db, shop):
    _, order = shop
    apply_webhook_payload(ship_notify(order_id="555", order_number="1001"))
    db.expire_all()
    assert db.get(Order, order.id).shipstation_order_id == "555"


def test_delivered_notify_after_ship(db, shop):
    product, order = shop
    apply_webhook_payload(ship_notify())

    outcome = apply_webhook_payload(delivered_notify())

    assert outcome.status == "delivered"
    db.expire_all()
    stored = db.get(Order, order.id)
    assert stored.status == "delivered"
    assert stored.delivered_at is not None
    assert stored.actual_delivery_date is not None
    assert db.get(Product, product.id).stock_quantity == 8
    types = sorted(job.payload["notification_type"] for job in _notification_jobs(db))
    assert types == ["delivered", "shipped"]


def test_delivered_notify_for_unshipped_order_passes_through_shipped(db, shop):
    product, order = shop

    outcome = apply_webhook_payload(delivered_notify())

    assert outcome.status == "delivered"
    db.expire_all()
    stored = db.get(Order, order.id)
    assert stored.shipped_at is not None
    assert db.get(Product, product.id).stock_quantity == 8


def test_ship_notify_on_delivered_order_keeps_delivered(db, shop):
    _, order = shop
    apply_webhook_payload(ship_notify())
    apply_webhook_payload(delivered_notify())

    outcome = apply_webhook_payload(ship_notify(tracking="1Z-CORRECTED"))

    assert outcome.status == "delivered"
    db.expire_all()
    stored = db.get(Order, order.id)
    assert stored.status == "delivered"
    assert stored.tracking_number == "1Z-CORRECTED"


@pytest.mark.parametrize("closed", ["cancelled", "refunded"])
def test_closed_orders_reject_ship_notify(db, closed):
    product = make_product(db, stock=10)
    order = make_order(db, status=closed, items=[(product, 1)])
    db.commit()
    payload = ship_notify()

    with pytest.raises(InvalidTransitionError):
        apply_webhook_payload(payload)

    db.expire_all()
    assert db.get(Order, order.id).status == closed
    assert db.get(Product, product.id).stock_quantity == 10
    (event,) = db.query(WebhookEvent).all()
    assert event.status == "failed"
    assert event.attempts == 1
    assert db.query(IntegrationLog).filter(IntegrationLog.status == "failure").count() == 1


def test_failed_event_can_be_applied_later(db):
    with pytest.raises(OrderNotFoundError):
        apply_webhook_payload(ship_notify(order_id="2002"))

    product = make_product(db, stock=4)
    order = make_order(db, order_number="2002", items=[(product, 1)])
    db.commit()

    outcome = apply_webhook_payload(ship_notify(order_id="2002"))
    assert outcome.order_id == order.id
    db.expire_all()
    (event,) = db.query(WebhookEvent).all()
    assert event.status == "processed"
    assert event.attempts == 2


def test_unknown_order_raises_not_found(db):
    with pytest.raises(OrderNotFoundError):
        apply_webhook_payload(ship_notify(order_id="does-not-exist"))


def test_event_without_order_reference_is_invalid(db):
    with pytest.raises(InvalidWebhookPayloadError):
        apply_shipment_event(ShipmentEvent(resource_type=SHIP_NOTIFY, tracking_number="1Z"))


def test_order_notify_is_acknowledged_without_changes(db, shop):
    _, order = shop
    outcome = apply_webhook_payload({"resource_type": "ITEM_ORDER_NOTIFY", "resource_url": "x", "order_id": "1001"})
    assert outcome.ignored
    db.expire_all()
    assert db.get(Order, order.id).status == "confirmed"


def test_store_scope_limits_lookup(db, shop):
    event = ShipmentEvent(resource_type=SHIP_NOTIFY, carrier_order_id="1001", tracking_number="1Z")
    with pytest.raises(OrderNotFoundError):
        apply_shipment_event(event, store_id="another-store")


def test_process_shipment_notification_returns_bool(db, shop):
    assert process_shipment_notification({"order_id": "1001"}) is False
    assert process_shipment_notification(ship_notify(order_id="nope")) is False
    assert process_shipment_notification(ship_notify()) is True


def test_carrier_status_update_by_order_number(db, shop):
    product, order = shop

    updated = update_order_from_carrier(
        STORE_ID, "1001", {"status": "shipped", "tracking_number": "9400", "carrier": "usps"}
    )

    assert updated.status == "shipped"
    assert updated.tracking_number == "9400"
    assert updated.tracking_url.endswith("tLabels=9400")
    assert updated.shipped_at is not None
    db.expire_all()
    assert db.get(Product, product.id).stock_quantity == 8


def test_carrier_status_update_tracking_only(db, shop):
    _, order = shop
    updated = update_order_from_carrier(STORE_ID, order.id, {"tracking_number": "T-1"})
    assert updated.status == "confirmed"
    assert updated.tracking_number == "T-1"


def test_carrier_status_update_errors(db, shop):
    _, order = shop
    with pytest.raises(OrderNotFoundError):
        update_order_from_carrier("other-store", order.id, {"status": "shipped"})

    cancelled = make_order(db, order_number="1002", status="cancelled")
    db.commit()
    with pytest.raises(InvalidTransitionError):
        update_order_from_carrier(STORE_ID, cancelled.order_number, {"status": "shipped"})


def test_export_excludes_closed_and_skips_invalid_orders(db):
    make_order(db, order_number="OK-1")
    make_order(db, order_number="OK-2", status="shipped")
    make_order(db, order_number="GONE", status="cancelled")
    make_order(db, order_number="BACK", status="refunded")
    make_order(db, order_number="NO-MAIL", customer_email=None)
    make_order(db, order_number="ELSEWHERE", store_id="other-store")
    db.commit()

    now = datetime.now(timezone.utc)
    export = export_orders(STORE_ID, now - timedelta(hours=1), now + timedelta(hours=1))

    assert export.exported == 2
    assert export.skipped == ["NO-MAIL"]
    assert export.page == 1
    assert export.total_pages == 1
    numbers = sorted(o.order_number for o in parse_order_xml(export.xml))
    assert numbers == ["OK-1", "OK-2"]


def test_export_paginates_and_respects_window(db):
    for n in range(3):
        make_order(db, order_number=f"P-{n}")
    db.commit()

    now = datetime.now(timezone.utc)
    page_two = export_orders(STORE_ID, now - timedelta(hours=1), now + timedelta(hours=1), page=2, page_size=2)
    assert page_two.total_pages == 2
    assert page_two.exported == 1
    assert '<Orders pages="2" page="2">' in page_two.xml

    old = export_orders(STORE_ID, now - timedelta(days=3), now - timedelta(days=2))
    assert old.exported == 0
    assert old.total_pages == 1


def test_tracking_info(db, shop):
    _, order = shop
    assert get_order_tracking_info("missing") is None

    apply_webhook_payload(ship_notify())
    info = get_order_tracking_info(order.id)
    assert info["status"] == "shipped"
    assert info["tracking_number"] == "1Z999"
    assert info["carrier"] == "ups"
    assert info["shipped_at"].startswith("2024-03-06T10:15")
    assert db.query(ShipmentNotification).count() == 1


@pytest.fixture
def two_stores(db):
    """Two stores that both hold an order numbered 1001."""
    mug_a = make_product(db, sku="MUG", stock=10, store_id="store-a")
    mug_b = make_product(db, sku="MUG", stock=10, store_id="store-b")
    order_a = make_order(db, store_id="store-a", items=[(mug_a, 2)])
    order_b = make_order(db, store_id="store-b", items=[(mug_b, 2)])
    db.commit()
    return (mug_a, order_a), (mug_b, order_b)


def test_scoped_ship_notify_only_touches_callers_store(db, two_stores):
    (mug_a, order_a), (mug_b, order_b) = two_stores

    outcome = apply_webhook_payload(ship_notify(), store_id="store-b")

    assert outcome.order_id == order_b.id
    db.expire_all()
    assert db.get(Order, order_b.id).status == "shipped"
    assert db.get(Product, mug_b.id).stock_quantity == 8
    assert db.get(Order, order_a.id).status == "confirmed"
    assert db.get(Product, mug_a.id).stock_quantity == 10


def test_unscoped_event_matching_several_stores_is_refused(db, two_stores):
    (mug_a, order_a), (mug_b, order_b) = two_stores

    with pytest.raises(AmbiguousOrderError):
        apply_webhook_payload(ship_notify())

    db.expire_all()
    assert [db.get(Order, o.id).status for o in (order_a, order_b)] == ["confirmed", "confirmed"]
    assert [db.get(Product, p.id).stock_quantity for p in (mug_a, mug_b)] == [10, 10]
    assert process_shipment_notification(ship_notify(tracking="other")) is False


def test_concurrent_delivery_losing_inbox_insert_is_a_duplicate(db, shop, monkeypatch):
    product, order = shop
    apply_webhook_payload(ship_notify())

    # The second delivery looked the key up before the first one committed.
    real_find = order_status_service._find_inbox_row
    calls = []

    def find_after_race(session, dedupe_key):
        calls.append(dedupe_key)
        return None if len(calls) == 1 else real_find(session, dedupe_key)

    monkeypatch.setattr(order_status_service, "_find_inbox_row", find_after_race)

    outcome = apply_webhook_payload(ship_notify())

    assert outcome.duplicate
    db.expire_all()
    (event,) = db.query(WebhookEvent).all()
    assert event.status == "processed"
    assert event.attempts == 1
    assert db.get(Product, product.id).stock_quantity == 8
    assert len(_notification_jobs(db)) == 1


def test_failure_record_never_downgrades_processed_event(db, shop):
    payload = ship_notify()
    apply_webhook_payload(payload)

    order_status_service._record_failure(
        parse_webhook_payload(payload), payload_dedupe_key(payload), STORE_ID, RuntimeError("late failure"), 5
    )

    db.expire_all()
    (event,) = db.query(WebhookEvent).all()
    assert event.status == "processed"
    assert event.error is None
    assert event.attempts == 1

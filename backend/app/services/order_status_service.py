from __future__ import annotations

import math
import time
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models_sqlalchemy.models import (
    JobPriority,
    JobType,
    Order,
    OrderStatus,
    ShipmentNotification,
    WebhookEvent,
    WebhookEventStatus,
)
from app.services.integration_log import _get_session, log_integration
from app.services.inventory_service import decrement_order_items, shipment_already_applied
from app.services.job_queue.backend import enqueue_job
from app.services.shipstation.payloads import (
    DELIVERED_NOTIFY,
    KNOWN_RESOURCE_TYPES,
    ORDER_NOTIFY,
    SHIP_NOTIFY,
    InvalidWebhookPayloadError,
    ShipmentEvent,
    parse_webhook_payload,
    payload_dedupe_key,
)
from app.services.shipstation.utils import (
    create_pagination_params,
    generate_tracking_url,
    map_shipstation_status_to_internal,
    validate_order_for_export,
)
from app.services.shipstation.xml_builder import export_orders_to_xml
from app.utils.logger import logger


class OrderNotFoundError(LookupError):
    pass


class InvalidTransitionError(ValueError):
    pass


class AmbiguousOrderError(InvalidWebhookPayloadError):
    """An unscoped event whose order reference exists in several stores."""


class DuplicateEventError(Exception):
    """Another delivery of the same event inserted its inbox row first."""


_S = OrderStatus

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    _S.PENDING.value: frozenset({_S.CONFIRMED.value, _S.PROCESSING.value, _S.SHIPPED.value, _S.CANCELLED.value}),
    _S.CONFIRMED.value: frozenset(
        {_S.PROCESSING.value, _S.SHIPPED.value, _S.CANCELLED.value, _S.REFUNDED.value}
    ),
    _S.PROCESSING.value: frozenset({_S.SHIPPED.value, _S.CANCELLED.value, _S.REFUNDED.value}),
    _S.SHIPPED.value: frozenset({_S.SHIPPED.value, _S.DELIVERED.value, _S.REFUNDED.value}),
    _S.DELIVERED.value: frozenset({_S.REFUNDED.value}),
    _S.CANCELLED.value: frozenset(),
    _S.REFUNDED.value: frozenset(),
}

_CLOSED = (_S.CANCELLED.value, _S.REFUNDED.value)


def can_transition(current: Optional[str], target: str) -> bool:
    if current == target and current not in _CLOSED:
        return True
    return target in TRANSITIONS.get(current or _S.PENDING.value, frozenset())


def _ensure_transition(order: Order, target: str) -> None:
    if not can_transition(order.status, target):
        raise InvalidTransitionError(
            f"Order {order.order_number} cannot move from {order.status} to {target}"
        )


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OrderPatch:
    """Sparse update for an order: only fields that are set get written."""

    status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    shipstation_order_id: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None
    carrier_code: Optional[str] = None
    service_code: Optional[str] = None
    package_code: Optional[str] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    estimated_delivery_date: Optional[datetime] = None
    actual_delivery_date: Optional[datetime] = None
    shipment_cost: Optional[int] = None
    label_url: Optional[str] = None
    form_url: Optional[str] = None
    notes: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}

    def apply(self, order: Order) -> List[str]:
        """Write the set fields onto ``order``; returns the names written."""
        changes = self.changes()
        for name, value in changes.items():
            setattr(order, name, value)
        if changes:
            order.updated_at = _now_utc()
        return sorted(changes)


@dataclass
class EventOutcome:
    order_id: Optional[str] = None
    status: Optional[str] = None
    duplicate: bool = False
    ignored: bool = False


def find_order_by_carrier_id(
    session: Session,
    carrier_order_id: Optional[str],
    order_number: Optional[str] = None,
    *,
    store_id: Optional[str] = None,
) -> Optional[Order]:
    """Exact match on ``shipstation_order_id``, then on the order number.

    Without ``store_id`` the lookup spans every store and raises
    AmbiguousOrderError when the reference matches orders in more than one.
    """

    def first_unique(query) -> Optional[Order]:
        if store_id:
            return query.filter(Order.store_id == store_id).first()
        matches = query.limit(10).all()
        if len({o.store_id for o in matches}) > 1:
            raise AmbiguousOrderError(
                f"Order reference matches orders in several stores: {carrier_order_id or order_number}"
            )
        return matches[0] if matches else None

    if carrier_order_id:
        order = first_unique(session.query(Order).filter(Order.shipstation_order_id == carrier_order_id))
        if order is not None:
            return order
    for number in (carrier_order_id, order_number):
        if number:
            order = first_unique(session.query(Order).filter(Order.order_number == number))
            if order is not None:
                return order
    return None


def _resolve_order(session: Session, event: ShipmentEvent, store_id: Optional[str]) -> Order:
    if not event.lookup_id:
        raise InvalidWebhookPayloadError("order_id or order_number is required")
    order = find_order_by_carrier_id(session, event.carrier_order_id, event.order_number, store_id=store_id)
    if order is None:
        raise OrderNotFoundError(f"Order not found for carrier order id: {event.lookup_id}")
    return order


def _record_notification(session: Session, order: Order, notification_type: str, message: str) -> None:
    session.add(
        ShipmentNotification(
            order_id=order.id,
            notification_type=notification_type,
            tracking_number=order.tracking_number,
            carrier=order.carrier,
            tracking_url=order.tracking_url,
            message=message,
            email_sent=False,
        )
    )


def _decrement_once(session: Session, order: Order) -> None:
    if shipment_already_applied(session, order.id):
        logger.info("Shipment inventory already applied for order %s", order.id)
        return
    decrement_order_items(session, order)


def store_tracking_info(order: Order, event: ShipmentEvent) -> None:
    """Persist the denormalised shipment snapshot and derived tracking URL."""
    order.shipment_data = event.snapshot()
    if event.tracking_number:
        order.tracking_url = generate_tracking_url(event.tracking_number, event.carrier_code)


def _handle_ship_notify(session: Session, event: ShipmentEvent, store_id: Optional[str]) -> Order:
    order = _resolve_order(session, event, store_id)
    previous = order.status

    if previous in _CLOSED:
        raise InvalidTransitionError(f"Order {order.order_number} is {previous}; ship notification rejected")

    target = _S.SHIPPED.value
    if previous == _S.DELIVERED.value:
        logger.warning(
            "Ship notification for delivered order %s; updating tracking only", order.order_number
        )
        target = _S.DELIVERED.value
    else:
        _ensure_transition(order, target)

    tracking_url = (
        generate_tracking_url(event.tracking_number, event.carrier_code) if event.tracking_number else None
    )
    carrier_order_id = event.carrier_order_id
    if order.shipstation_order_id or carrier_order_id == order.order_number:
        carrier_order_id = None
    OrderPatch(
        status=target,
        shipstation_order_id=carrier_order_id,
        tracking_number=event.tracking_number,
        tracking_url=tracking_url,
        carrier=event.carrier_code,
        carrier_code=event.carrier_code,
        service_code=event.service_code,
        package_code=event.package_code,
        shipped_at=event.ship_date or (None if order.shipped_at else _now_utc()),
        estimated_delivery_date=event.estimated_delivery_date,
        shipment_cost=event.shipment_cost,
        label_url=event.label_url,
        form_url=event.form_url,
        notes=event.notes,
    ).apply(order)
    store_tracking_info(order, event)

    if previous not in (_S.SHIPPED.value, _S.DELIVERED.value):
        _decrement_once(session, order)

    if event.tracking_number:
        _record_notification(
            session, order, "shipped", f"Shipment created with tracking number: {event.tracking_number}"
        )

    enqueue_job(
        JobType.ORDER_NOTIFICATION.value,
        {
            "order_id": order.id,
            "notification_type": "shipped",
            "tracking_number": event.tracking_number,
            "carrier": event.carrier_code,
            "tracking_url": tracking_url,
            "estimated_delivery": event.estimated_delivery_date.isoformat()
            if event.estimated_delivery_date
            else None,
        },
        priority=JobPriority.MEDIUM.value,
        db=session,
    )
    logger.info("Order %s marked %s (was %s)", order.order_number, target, previous)
    return order


def _handle_delivered_notify(session: Session, event: ShipmentEvent, store_id: Optional[str]) -> Order:
    order = _resolve_order(session, event, store_id)
    previous = order.status

    if previous in _CLOSED:
        raise InvalidTransitionError(f"Order {order.order_number} is {previous}; delivery notification rejected")

    if previous not in (_S.SHIPPED.value, _S.DELIVERED.value):
        # Ship notification never arrived: pass through shipped first.
        logger.warning("Delivery notification for unshipped order %s (%s)", order.order_number, previous)
        _ensure_transition(order, _S.SHIPPED.value)
        OrderPatch(status=_S.SHIPPED.value, shipped_at=order.shipped_at or _now_utc()).apply(order)
        _decrement_once(session, order)

    delivered_at = event.delivered_date or _now_utc()
    OrderPatch(
        status=_S.DELIVERED.value,
        tracking_number=event.tracking_number,
        delivered_at=delivered_at,
        actual_delivery_date=delivered_at,
    ).apply(order)

    _record_notification(session, order, "delivered", "Order delivered")
    enqueue_job(
        JobType.ORDER_NOTIFICATION.value,
        {
            "order_id": order.id,
            "notification_type": "delivered",
            "delivered_date": delivered_at.isoformat(),
            "tracking_number": event.tracking_number or order.tracking_number,
        },
        priority=JobPriority.MEDIUM.value,
        db=session,
    )
    logger.info("Order %s marked delivered", order.order_number)
    return order


def _find_inbox_row(session: Session, dedupe_key: str) -> Optional[WebhookEvent]:
    return session.query(WebhookEvent).filter(WebhookEvent.dedupe_key == dedupe_key).one_or_none()


def _inbox_row(session: Session, dedupe_key: str, event: ShipmentEvent) -> WebhookEvent:
    row = _find_inbox_row(session, dedupe_key)
    if row is None:
        row = WebhookEvent(
            dedupe_key=dedupe_key,
            resource_type=event.resource_type,
            carrier_order_id=event.lookup_id,
            status=WebhookEventStatus.RECEIVED.value,
            payload=event.raw or None,
            attempts=0,
        )
        session.add(row)
        try:
            session.flush()
        except IntegrityError as exc:
            raise DuplicateEventError(dedupe_key) from exc
    return row


def _record_failure(
    event: ShipmentEvent,
    dedupe_key: Optional[str],
    store_id: Optional[str],
    error: Exception,
    elapsed_ms: int,
) -> None:
    session, _ = _get_session(None)
    try:
        if dedupe_key:
            row = _inbox_row(session, dedupe_key, event)
            if row.status == WebhookEventStatus.PROCESSED.value:
                logger.info("Carrier event %s already processed; keeping its status", dedupe_key)
            else:
                row.status = WebhookEventStatus.FAILED.value
                row.error = str(error)
                row.attempts = (row.attempts or 0) + 1
        log_integration(
            operation="webhook_processing",
            status="failure",
            store_id=store_id,
            request_data={"resource_type": event.resource_type, "order_id": event.lookup_id},
            error_message=str(error),
            execution_time_ms=elapsed_ms,
            db=session,
        )
        session.commit()
    except Exception:
        session.rollback()
        logger.error("Could not record webhook failure for %s", event.lookup_id, exc_info=True)
    finally:
        session.close()


def apply_shipment_event(
    event: ShipmentEvent,
    *,
    dedupe_key: Optional[str] = None,
    store_id: Optional[str] = None,
    db: Optional[Session] = None,
) -> EventOutcome:
    """Apply one carrier event to its order in a single transaction.

    Raises OrderNotFoundError, InvalidTransitionError and
    InvalidWebhookPayloadError for events that will never succeed; other
    exceptions are transient. On failure the session is rolled back and the
    failure is recorded in a separate transaction.
    """
    start = time.time()
    session, owns_session = _get_session(db)
    try:
        inbox = _inbox_row(session, dedupe_key, event) if dedupe_key else None
        if inbox is not None and inbox.status == WebhookEventStatus.PROCESSED.value:
            logger.info("Duplicate carrier event %s for %s ignored", event.resource_type, event.lookup_id)
            return EventOutcome(duplicate=True)

        order: Optional[Order] = None
        outcome = EventOutcome()
        if event.resource_type == SHIP_NOTIFY:
            order = _handle_ship_notify(session, event, store_id)
        elif event.resource_type == DELIVERED_NOTIFY:
            order = _handle_delivered_notify(session, event, store_id)
        elif event.resource_type == ORDER_NOTIFY:
            logger.info("Order notification received for %s", event.lookup_id)
            outcome.ignored = True
        else:
            logger.warning("Unhandled resource type: %s", event.resource_type)
            outcome.ignored = True

        if order is not None:
            outcome.order_id = order.id
            outcome.status = order.status

        if inbox is not None:
            inbox.status = WebhookEventStatus.PROCESSED.value
            inbox.attempts = (inbox.attempts or 0) + 1
            inbox.error = None
            inbox.processed_at = _now_utc()

        log_integration(
            operation="webhook_processing",
            status="success",
            store_id=order.store_id if order is not None else store_id,
            request_data={"resource_type": event.resource_type, "order_id": event.lookup_id},
            response_data={"order_id": outcome.order_id, "status": outcome.status, "ignored": outcome.ignored},
            execution_time_ms=int((time.time() - start) * 1000),
            db=session,
        )

        if owns_session:
            session.commit()
        else:
            session.flush()
        return outcome
    except DuplicateEventError:
        session.rollback()
        logger.info("Carrier event %s for %s is already being applied", event.resource_type, event.lookup_id)
        return EventOutcome(duplicate=True)
    except Exception as exc:
        session.rollback()
        logger.error("Error processing carrier event %s for %s: %s", event.resource_type, event.lookup_id, exc)
        _record_failure(event, dedupe_key, store_id, exc, int((time.time() - start) * 1000))
        raise
    finally:
        if owns_session:
            session.close()


def apply_webhook_payload(
    payload: Dict[str, Any],
    *,
    store_id: Optional[str] = None,
    db: Optional[Session] = None,
) -> EventOutcome:
    """Parse, deduplicate and apply a JSON webhook body. Raises like apply_shipment_event.

    ``store_id`` scopes the order lookup to the authenticated store.
    """
    event = parse_webhook_payload(payload)
    return apply_shipment_event(event, dedupe_key=payload_dedupe_key(payload), store_id=store_id, db=db)


def process_shipment_notification(
    payload: Dict[str, Any],
    *,
    store_id: Optional[str] = None,
    db: Optional[Session] = None,
) -> bool:
    """Boolean wrapper around apply_webhook_payload for HTTP callers."""
    try:
        apply_webhook_payload(payload, store_id=store_id, db=db)
        return True
    except InvalidWebhookPayloadError as exc:
        logger.warning("Rejected carrier webhook: %s", exc)
        return False
    except Exception:
        logger.error("Carrier webhook processing failed", exc_info=True)
        return False


def is_known_resource_type(resource_type: Optional[str]) -> bool:
    return (resource_type or "").upper() in KNOWN_RESOURCE_TYPES


def update_order_from_carrier(
    store_id: str,
    order_ref: str,
    data: Dict[str, Any],
    *,
    db: Optional[Session] = None,
) -> Order:
    """Status/tracking update pushed by the carrier's custom-store endpoint.

    ``order_ref`` is the internal id or the order number. ``status`` is in
    carrier vocabulary.
    """
    start = time.time()
    session, owns_session = _get_session(db)
    try:
        order = (
            session.query(Order)
            .filter(Order.store_id == store_id)
            .filter((Order.id == order_ref) | (Order.order_number == order_ref))
            .first()
        )
        if order is None:
            raise OrderNotFoundError(f"Order not found: {order_ref}")

        previous = order.status
        target = map_shipstation_status_to_internal(data["status"]) if data.get("status") else None
        if target and target != previous:
            _ensure_transition(order, target)

        carrier = data.get("carrier") or None
        tracking_number = data.get("tracking_number") or None
        OrderPatch(
            status=target,
            tracking_number=tracking_number,
            carrier=carrier,
            tracking_url=generate_tracking_url(tracking_number, carrier or order.carrier) if tracking_number else None,
            shipped_at=_now_utc() if target == _S.SHIPPED.value and not order.shipped_at else None,
            delivered_at=_now_utc() if target == _S.DELIVERED.value and not order.delivered_at else None,
        ).apply(order)

        if target == _S.SHIPPED.value and previous not in (_S.SHIPPED.value, _S.DELIVERED.value):
            _decrement_once(session, order)

        log_integration(
            operation="order_update",
            status="success",
            store_id=store_id,
            request_data={"order_ref": order_ref, "status": data.get("status"), "tracking_number": tracking_number},
            response_data={"order_id": order.id, "status": order.status},
            execution_time_ms=int((time.time() - start) * 1000),
            db=session,
        )
        if owns_session:
            session.commit()
            session.refresh(order)
        else:
            session.flush()
        return order
    except Exception:
        session.rollback()
        raise
    finally:
        if owns_session:
            session.close()


def get_order_tracking_info(order_id: str, *, db: Optional[Session] = None) -> Optional[Dict[str, Any]]:
    session, owns_session = _get_session(db)
    try:
        order = session.get(Order, order_id)
        if order is None:
            return None

        def iso(dt: Optional[datetime]) -> Optional[str]:
            return dt.isoformat() if dt else None

        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "status": order.status,
            "tracking_number": order.tracking_number,
            "tracking_url": order.tracking_url,
            "carrier": order.carrier,
            "service_code": order.service_code,
            "shipped_at": iso(order.shipped_at),
            "estimated_delivery_date": iso(order.estimated_delivery_date),
            "delivered_at": iso(order.delivered_at),
            "shipment_data": order.shipment_data,
        }
    finally:
        if owns_session:
            session.close()


def get_shipment_notifications(order_id: str, *, db: Optional[Session] = None) -> List[ShipmentNotification]:
    session, owns_session = _get_session(db)
    try:
        return (
            session.query(ShipmentNotification)
            .filter(ShipmentNotification.order_id == order_id)
            .order_by(ShipmentNotification.created_at.desc())
            .all()
        )
    finally:
        if owns_session:
            session.close()


@dataclass
class OrderExport:
    xml: str
    page: int
    total_pages: int
    exported: int
    skipped: List[str]


def export_orders(
    store_id: str,
    start: datetime,
    end: datetime,
    *,
    page: Any = 1,
    page_size: Any = None,
    advanced: bool = False,
    db: Optional[Session] = None,
) -> OrderExport:
    """Paginated XML export of orders modified in ``[start, end]``.

    Cancelled and refunded orders are excluded; orders failing export
    validation are skipped and reported.
    """
    begin = time.time()
    page, size = create_pagination_params(page, page_size)
    # Stored timestamps are UTC.
    if start.tzinfo is not None:
        start = start.astimezone(timezone.utc)
    if end.tzinfo is not None:
        end = end.astimezone(timezone.utc)
    session, owns_session = _get_session(db)
    try:
        query = (
            session.query(Order)
            .filter(Order.store_id == store_id)
            .filter(Order.updated_at >= start)
            .filter(Order.updated_at <= end)
            .filter(Order.status.notin_(_CLOSED))
        )
        total = query.count()
        total_pages = max(1, math.ceil(total / size))
        orders = query.order_by(Order.updated_at.desc()).offset((page - 1) * size).limit(size).all()

        exportable: List[Order] = []
        skipped: List[str] = []
        for order in orders:
            ok, errors = validate_order_for_export(order)
            if ok:
                exportable.append(order)
            else:
                logger.warning("Skipping order %s in export: %s", order.order_number, "; ".join(errors))
                skipped.append(order.order_number)

        xml = export_orders_to_xml(exportable, page=page, total_pages=total_pages, advanced=advanced)

        log_integration(
            operation="order_export",
            status="success" if not skipped else "warning",
            store_id=store_id,
            request_data={"start": start.isoformat(), "end": end.isoformat(), "page": page, "page_size": size},
            response_data={"orders_exported": len(exportable), "skipped": skipped, "total_pages": total_pages},
            execution_time_ms=int((time.time() - begin) * 1000),
            db=session,
        )
        if owns_session:
            session.commit()
        else:
            session.flush()
        return OrderExport(xml=xml, page=page, total_pages=total_pages, exported=len(exportable), skipped=skipped)
    except Exception:
        if owns_session:
            session.rollback()
        raise
    finally:
        if owns_session:
            session.close()

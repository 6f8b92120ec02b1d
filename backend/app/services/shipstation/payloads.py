from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from app.services.shipstation.utils import parse_iso_datetime, parse_money


SHIP_NOTIFY = "ITEM_SHIP_NOTIFY"
DELIVERED_NOTIFY = "ITEM_DELIVERED_NOTIFY"
ORDER_NOTIFY = "ITEM_ORDER_NOTIFY"

KNOWN_RESOURCE_TYPES = {SHIP_NOTIFY, DELIVERED_NOTIFY, ORDER_NOTIFY}


class InvalidWebhookPayloadError(ValueError):
    """Carrier payload is structurally unusable (not retryable)."""


def _str_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _float_or_none(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class ShipmentEvent:
    """Normalised carrier event consumed by the order status machine.

    Both JSON webhooks and legacy XML ship notifications are converted into
    this shape. Money is integer cents, weight is pounds.
    """

    resource_type: str
    carrier_order_id: Optional[str] = None
    order_number: Optional[str] = None
    resource_url: Optional[str] = None
    resource_id: Optional[str] = None
    shipment_id: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier_code: Optional[str] = None
    service_code: Optional[str] = None
    package_code: Optional[str] = None
    delivery_confirmation: Optional[str] = None
    ship_date: Optional[datetime] = None
    estimated_delivery_date: Optional[datetime] = None
    delivered_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    shipment_cost: Optional[int] = None
    weight: Optional[float] = None
    dimensions: Optional[Dict[str, Any]] = None
    ship_to: Optional[Dict[str, Any]] = None
    label_url: Optional[str] = None
    form_url: Optional[str] = None
    notes: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def lookup_id(self) -> Optional[str]:
        return self.carrier_order_id or self.order_number

    def snapshot(self) -> Dict[str, Any]:
        """Denormalised shipment document stored on ``orders.shipment_data``."""

        def iso(dt: Optional[datetime]) -> Optional[str]:
            return dt.isoformat() if dt else None

        return {
            "shipment_id": self.shipment_id or str(uuid.uuid4()),
            "order_id": self.carrier_order_id or "unknown",
            "order_number": self.order_number or self.carrier_order_id or "unknown",
            "create_date": iso(self.created_at),
            "ship_date": iso(self.ship_date),
            "shipment_cost": self.shipment_cost,
            "tracking_number": self.tracking_number,
            "carrier_code": self.carrier_code,
            "service_code": self.service_code,
            "package_code": self.package_code,
            "confirmation": self.delivery_confirmation,
            "weight": {"value": self.weight, "units": "lb"} if self.weight else None,
            "dimensions": self.dimensions,
            "ship_to": self.ship_to,
            "label_data": self.label_url,
            "form_data": self.form_url,
        }


def parse_webhook_payload(payload: Any) -> ShipmentEvent:
    """Convert a JSON webhook body (snake_case keys) into a ShipmentEvent."""
    if not isinstance(payload, dict):
        raise InvalidWebhookPayloadError("webhook payload must be a JSON object")

    resource_type = _str_or_none(payload.get("resource_type"))
    if not resource_type:
        raise InvalidWebhookPayloadError("resource_type is required")

    dimensions = payload.get("dimensions")
    ship_to = payload.get("ship_to")

    return ShipmentEvent(
        resource_type=resource_type.upper(),
        carrier_order_id=_str_or_none(payload.get("order_id")),
        order_number=_str_or_none(payload.get("order_number")),
        resource_url=_str_or_none(payload.get("resource_url")),
        resource_id=_str_or_none(payload.get("resource_id")),
        shipment_id=_str_or_none(payload.get("shipment_id")),
        tracking_number=_str_or_none(payload.get("tracking_number")),
        carrier_code=_str_or_none(payload.get("carrier_code")),
        service_code=_str_or_none(payload.get("service_code")),
        package_code=_str_or_none(payload.get("package_code")),
        delivery_confirmation=_str_or_none(payload.get("delivery_confirmation")),
        ship_date=parse_iso_datetime(payload.get("ship_date")),
        estimated_delivery_date=parse_iso_datetime(payload.get("estimated_delivery_date")),
        delivered_date=parse_iso_datetime(
            payload.get("delivered_date") or payload.get("actual_delivery_date")
        ),
        created_at=parse_iso_datetime(payload.get("created_at")),
        shipment_cost=parse_money(payload.get("shipment_cost")),
        weight=_float_or_none(payload.get("weight")),
        dimensions=dimensions if isinstance(dimensions, dict) else None,
        ship_to=ship_to if isinstance(ship_to, dict) else None,
        label_url=_str_or_none(payload.get("label_url")),
        form_url=_str_or_none(payload.get("form_url")),
        raw=dict(payload),
    )


def payload_dedupe_key(payload: Dict[str, Any]) -> str:
    """SHA-256 over the canonical JSON form (sorted keys) of a payload."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def body_dedupe_key(body: bytes) -> str:
    """SHA-256 of a raw (non-JSON) request body."""
    return hashlib.sha256(body).hexdigest()

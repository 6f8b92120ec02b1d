from __future__ import annotations

import json
import re
from datetime import datetime, timezone, tzinfo
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple
from xml.sax.saxutils import escape
from zoneinfo import ZoneInfo

from app.config import settings


SHIPSTATION_DATE_FORMAT = "%m/%d/%Y %H:%M"

MAX_PAGE_SIZE = 500
DEFAULT_PAGE_SIZE = 50

# Internal order status -> carrier order status
_STATUS_TO_CARRIER: Dict[str, str] = {
    "pending": "awaiting_payment",
    "confirmed": "awaiting_fulfillment",
    "processing": "awaiting_fulfillment",
    "shipped": "shipped",
    "delivered": "shipped",
    "cancelled": "cancelled",
    "refunded": "cancelled",
}

# Carrier order status -> internal order status
_STATUS_FROM_CARRIER: Dict[str, str] = {
    "awaiting_payment": "pending",
    "awaiting_fulfillment": "confirmed",
    "awaiting_shipment": "confirmed",
    "shipped": "shipped",
    "delivered": "delivered",
    "cancelled": "cancelled",
    "on_hold": "pending",
}

_TRACKING_URL_TEMPLATES: Dict[str, str] = {
    "ups": "https://wwwapps.ups.com/tracking/tracking.cgi?tracknum={n}",
    "fedex": "https://www.fedex.com/apps/fedextrack/?tracknumbers={n}",
    "usps": "https://tools.usps.com/go/TrackConfirmAction.action?tLabels={n}",
    "dhl": "https://www.dhl.com/us-en/home/tracking/tracking-express.html?submit=1&tracking-id={n}",
    "ontrac": "https://www.ontrac.com/trackingres.asp?tracking_number={n}",
}
_GENERIC_TRACKER = "https://www.packagetrackr.com/track/{n}"

_XML_ENTITIES = {'"': "&quot;", "'": "&#39;"}

_CENTS = Decimal("0.01")


class ShipStationXMLError(ValueError):
    """Carrier XML could not be built or parsed."""


def _carrier_tz() -> tzinfo:
    name = (settings.SHIPSTATION_TIMEZONE or "UTC").strip()
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------


def format_date_for_shipstation(value: datetime) -> str:
    """Render ``value`` as ``MM/dd/yyyy HH:mm``.

    Seconds and timezone are dropped. Aware datetimes are first converted to
    the carrier timezone; naive ones are assumed to already be in it.
    """
    if value.tzinfo is not None:
        value = value.astimezone(_carrier_tz())
    return value.strftime(SHIPSTATION_DATE_FORMAT)


def parse_shipstation_date(value: str) -> datetime:
    """Parse ``MM/dd/yyyy HH:mm`` into a naive datetime. Raises ValueError."""
    if value is None:
        raise ValueError("date string is required")
    text = str(value).strip()
    try:
        return datetime.strptime(text, SHIPSTATION_DATE_FORMAT)
    except ValueError:
        # Tolerate seconds, which some exports append.
        return datetime.strptime(text, SHIPSTATION_DATE_FORMAT + ":%S")


def to_carrier_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Attach the carrier timezone to a naive carrier datetime."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=_carrier_tz())


def parse_iso_datetime(value: Any) -> Optional[datetime]:
    """Best-effort parser for ISO8601 strings found in JSON webhooks.

    Falls back to the carrier ``MM/dd/yyyy HH:mm`` format. Returns None for
    empty or unparseable input.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    s = str(value).strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        pass
    try:
        return to_carrier_aware(parse_shipstation_date(s))
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Status vocabulary
# ---------------------------------------------------------------------------


def map_order_status_to_shipstation(internal_status: Optional[str]) -> str:
    return _STATUS_TO_CARRIER.get((internal_status or "").lower(), "awaiting_fulfillment")


def map_shipstation_status_to_internal(carrier_status: Optional[str]) -> str:
    return _STATUS_FROM_CARRIER.get((carrier_status or "").strip().lower(), "confirmed")


def generate_tracking_url(tracking_number: Optional[str], carrier_code: Optional[str]) -> str:
    if not tracking_number:
        return ""
    carrier = (carrier_code or "").strip().lower()
    template = _TRACKING_URL_TEMPLATES.get(carrier, _GENERIC_TRACKER)
    return template.format(n=tracking_number)


# ---------------------------------------------------------------------------
# XML text helpers
# ---------------------------------------------------------------------------


def escape_xml(value: Any) -> str:
    if value is None:
        return ""
    return escape(str(value), _XML_ENTITIES)


def create_cdata(value: Any) -> str:
    # CDATA cannot contain "]]>" safely; split if needed.
    s = "" if value is None else str(value)
    if not s:
        return ""
    return "<![CDATA[" + s.replace("]]>", "]]]]><![CDATA[>") + "]]>"


def format_shipstation_error(message: str, code: Optional[str] = None) -> str:
    return json.dumps(
        {
            "error": {
                "message": message,
                "code": code or "GENERAL_ERROR",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        }
    )


# ---------------------------------------------------------------------------
# Money, weight, dimensions
# ---------------------------------------------------------------------------


def format_money(cents: Optional[int]) -> str:
    """Integer cents -> ``"12.34"``."""
    amount = Decimal(int(cents or 0)) / 100
    return str(amount.quantize(_CENTS))


def cents_to_amount(cents: Optional[int]) -> float:
    """Integer cents -> float dollars for JSON request bodies."""
    return float(Decimal(int(cents or 0)) / 100)


def parse_money(value: Any) -> Optional[int]:
    """Decimal dollar string/number -> integer cents (half-up).

    None if blank, unparseable, NaN/Infinity or too large to represent.
    """
    if value is None:
        return None
    s = str(value).strip().replace(",", "")
    if not s:
        return None
    try:
        amount = Decimal(s)
        if not amount.is_finite():
            return None
        return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except InvalidOperation:
        return None


def convert_weight_to_ounces(weight_in_pounds: float) -> int:
    return int(Decimal(str(weight_in_pounds * 16)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_dimensions(dimensions: Optional[str]) -> Dict[str, float]:
    """``"10x5x3"`` -> ``{"length": 10.0, "width": 5.0, "height": 3.0}``."""
    values: List[float] = []
    for part in re.split(r"[xX]", dimensions or ""):
        try:
            values.append(float(part.strip()))
        except ValueError:
            values.append(0.0)
    values += [0.0] * (3 - len(values))
    return {"length": values[0], "width": values[1], "height": values[2]}


# ---------------------------------------------------------------------------
# Export helpers
# ---------------------------------------------------------------------------


def create_pagination_params(page: Any = 1, page_size: Any = DEFAULT_PAGE_SIZE) -> Tuple[int, int]:
    try:
        page_i = int(page)
    except (TypeError, ValueError):
        page_i = 1
    try:
        size_i = int(page_size)
    except (TypeError, ValueError):
        size_i = DEFAULT_PAGE_SIZE
    return max(1, page_i), min(MAX_PAGE_SIZE, max(1, size_i))


def validate_order_for_export(order: Any) -> Tuple[bool, List[str]]:
    """Check the fields the carrier needs to import an order.

    ``order`` may be an ORM Order or any object exposing the same attributes.
    """
    errors: List[str] = []

    if not getattr(order, "customer_email", None):
        errors.append("Customer email is required")

    address = getattr(order, "shipping_address", None)
    if not address:
        errors.append("Shipping address is required")
    else:
        for key, label in (
            ("street", "street"),
            ("city", "city"),
            ("state", "state"),
            ("postal_code", "postal code"),
            ("country", "country"),
        ):
            if not address.get(key):
                errors.append(f"Shipping address {label} is required")

    if not getattr(order, "order_number", None):
        errors.append("Order number is required")

    return not errors, errors

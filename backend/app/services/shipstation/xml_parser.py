from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from xml.etree import ElementTree as ET

from app.services.shipstation.payloads import SHIP_NOTIFY, ShipmentEvent
from app.services.shipstation.utils import (
    ShipStationXMLError,
    map_shipstation_status_to_internal,
    parse_money,
    parse_shipstation_date,
    to_carrier_aware,
)


_SHIPMENT_ROOTS = ("ShipmentNotification", "ShipmentUpdate", "Shipment")


def safe_get_string(node: Any) -> str:
    """Text content of a node, or "" when absent.

    Handles plain strings, elements with attributes or mixed content, and
    xml2js-style ``{"_": text}`` dictionaries.
    """
    if node is None:
        return ""
    if isinstance(node, ET.Element):
        return "".join(node.itertext()).strip()
    if isinstance(node, dict):
        return str(node.get("_", "")).strip()
    return str(node).strip()


def safe_get_boolean(node: Any) -> bool:
    return safe_get_string(node).lower() in {"true", "1", "yes"}


def _text(parent: Optional[ET.Element], tag: str) -> str:
    if parent is None:
        return ""
    return safe_get_string(parent.find(tag))


def _date(parent: ET.Element, tag: str) -> Optional[datetime]:
    raw = _text(parent, tag)
    if not raw:
        return None
    try:
        return parse_shipstation_date(raw)
    except ValueError:
        return None


def _float(parent: Optional[ET.Element], tag: str, default: Optional[float] = None) -> Optional[float]:
    raw = _text(parent, tag)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _int(parent: ET.Element, tag: str, default: int) -> int:
    raw = _text(parent, tag)
    try:
        return int(float(raw))
    except (ValueError, OverflowError):
        return default


def _parse_root(xml_text: str) -> ET.Element:
    if not xml_text or not xml_text.strip():
        raise ShipStationXMLError("empty XML document")
    try:
        return ET.fromstring(xml_text.strip().encode("utf-8"))
    except ET.ParseError as exc:
        raise ShipStationXMLError(f"invalid XML: {exc}") from exc


def _parse_address(node: Optional[ET.Element]) -> Optional[Dict[str, str]]:
    if node is None:
        return None
    return {
        "name": _text(node, "Name"),
        "street": _text(node, "Address1"),
        "street2": _text(node, "Address2"),
        "city": _text(node, "City"),
        "state": _text(node, "State"),
        "postal_code": _text(node, "PostalCode"),
        "country": _text(node, "Country"),
        "company": _text(node, "Company"),
        "phone": _text(node, "Phone"),
        "email": _text(node, "Email"),
    }


@dataclass
class ShipmentNotificationData:
    order_id: str = ""
    order_number: str = ""
    shipment_id: str = ""
    tracking_number: str = ""
    carrier_code: str = ""
    service_code: str = ""
    package_code: str = ""
    label_url: str = ""
    form_url: str = ""
    delivery_confirmation: str = ""
    signature_required: bool = False
    adult_signature: bool = False
    void_indicator: bool = False
    gift_message: bool = False
    custom_field1: str = ""
    custom_field2: str = ""
    custom_field3: str = ""
    internal_notes: str = ""
    customer_notes: str = ""
    gift_notes: str = ""
    requested_shipping_service: str = ""
    notify_error_message: str = ""
    ship_date: Optional[datetime] = None
    create_date: Optional[datetime] = None
    estimated_delivery_date: Optional[datetime] = None
    actual_delivery_date: Optional[datetime] = None
    void_date: Optional[datetime] = None
    hold_until_date: Optional[datetime] = None
    shipment_cost: Optional[int] = None
    insurance_cost: Optional[int] = None
    weight: Optional[float] = None
    dimensions: Optional[Dict[str, Any]] = None
    ship_to: Optional[Dict[str, str]] = None

    def to_event(self) -> ShipmentEvent:
        """Express this XML notification as a ship-notify event."""
        return ShipmentEvent(
            resource_type=SHIP_NOTIFY,
            carrier_order_id=self.order_id or None,
            order_number=self.order_number or None,
            shipment_id=self.shipment_id or None,
            tracking_number=self.tracking_number or None,
            carrier_code=self.carrier_code or None,
            service_code=self.service_code or None,
            package_code=self.package_code or None,
            delivery_confirmation=self.delivery_confirmation or None,
            ship_date=to_carrier_aware(self.ship_date),
            estimated_delivery_date=to_carrier_aware(self.estimated_delivery_date),
            delivered_date=to_carrier_aware(self.actual_delivery_date),
            created_at=to_carrier_aware(self.create_date),
            shipment_cost=self.shipment_cost,
            weight=self.weight,
            dimensions=self.dimensions,
            ship_to=self.ship_to,
            label_url=self.label_url or None,
            form_url=self.form_url or None,
            notes=self.customer_notes or self.internal_notes or None,
        )


def parse_shipment_notification(xml_text: str) -> ShipmentNotificationData:
    root = _parse_root(xml_text)
    shipment = root
    if root.tag not in _SHIPMENT_ROOTS:
        for tag in _SHIPMENT_ROOTS:
            found = root.find(f".//{tag}")
            if found is not None:
                shipment = found
                break

    data = ShipmentNotificationData(
        order_id=_text(shipment, "OrderId") or _text(shipment, "OrderID") or _text(shipment, "OrderNumber"),
        order_number=_text(shipment, "OrderNumber"),
        shipment_id=_text(shipment, "ShipmentId"),
        tracking_number=_text(shipment, "TrackingNumber"),
        carrier_code=_text(shipment, "CarrierCode") or _text(shipment, "Carrier"),
        service_code=_text(shipment, "ServiceCode") or _text(shipment, "Service"),
        package_code=_text(shipment, "PackageCode"),
        label_url=_text(shipment, "LabelUrl"),
        form_url=_text(shipment, "FormUrl"),
        delivery_confirmation=_text(shipment, "DeliveryConfirmation"),
        signature_required=safe_get_boolean(shipment.find("SignatureRequired")),
        adult_signature=safe_get_boolean(shipment.find("AdultSignature")),
        void_indicator=safe_get_boolean(shipment.find("VoidIndicator")),
        gift_message=safe_get_boolean(shipment.find("GiftMessage")),
        custom_field1=_text(shipment, "CustomField1"),
        custom_field2=_text(shipment, "CustomField2"),
        custom_field3=_text(shipment, "CustomField3"),
        internal_notes=_text(shipment, "InternalNotes"),
        customer_notes=_text(shipment, "CustomerNotes"),
        gift_notes=_text(shipment, "GiftNotes"),
        requested_shipping_service=_text(shipment, "RequestedShippingService"),
        notify_error_message=_text(shipment, "NotifyErrorMessage"),
        ship_date=_date(shipment, "ShipDate"),
        create_date=_date(shipment, "CreateDate"),
        estimated_delivery_date=_date(shipment, "EstimatedDeliveryDate"),
        actual_delivery_date=_date(shipment, "ActualDeliveryDate"),
        void_date=_date(shipment, "VoidDate"),
        hold_until_date=_date(shipment, "HoldUntilDate"),
        shipment_cost=parse_money(_text(shipment, "ShipmentCost")),
        insurance_cost=parse_money(_text(shipment, "InsuranceCost")),
        weight=_float(shipment, "Weight"),
    )

    dims = shipment.find("Dimensions")
    if dims is not None:
        data.dimensions = {
            "length": _float(dims, "Length", 0.0),
            "width": _float(dims, "Width", 0.0),
            "height": _float(dims, "Height", 0.0),
            "units": _text(dims, "Units") or "inches",
        }

    ship_to = shipment.find("ShipTo")
    if ship_to is None:
        ship_to = shipment.find("Recipient")
    data.ship_to = _parse_address(ship_to)
    return data


def validate_shipment_notification(data: ShipmentNotificationData) -> Tuple[bool, List[str]]:
    errors: List[str] = []
    if not data.order_id and not data.order_number:
        errors.append("Order ID or Order Number is required")
    if not data.tracking_number and not data.shipment_id:
        errors.append("Tracking Number or Shipment ID is required")
    return not errors, errors


@dataclass
class ParsedOrderItem:
    sku: str
    name: str
    quantity: int
    unit_price: Optional[int]
    total_price: Optional[int]
    product_id: str = ""
    image_url: str = ""
    weight: float = 0.0
    weight_units: str = ""
    location: str = ""
    warehouse_location: str = ""
    options: str = ""
    fulfillment_sku: str = ""


@dataclass
class ParsedOrder:
    order_number: str
    order_date: Optional[datetime]
    order_status: str
    last_modified: Optional[datetime]
    shipping_method: str = ""
    payment_method: str = ""
    order_total: Optional[int] = None
    tax_amount: Optional[int] = None
    shipping_amount: Optional[int] = None
    custom_field1: str = ""
    custom_field2: str = ""
    custom_field3: str = ""
    notes: str = ""
    source: str = ""
    customer_code: str = ""
    customer_email: str = ""
    bill_to: Optional[Dict[str, str]] = None
    ship_to: Optional[Dict[str, str]] = None
    items: List[ParsedOrderItem] = field(default_factory=list)


def _parse_item(node: ET.Element) -> ParsedOrderItem:
    return ParsedOrderItem(
        sku=_text(node, "SKU"),
        name=_text(node, "Name"),
        quantity=_int(node, "Quantity", 1),
        unit_price=parse_money(_text(node, "UnitPrice")),
        total_price=parse_money(_text(node, "TotalPrice")),
        product_id=_text(node, "ProductId"),
        image_url=_text(node, "ImageUrl"),
        weight=_float(node, "Weight", 0.0) or 0.0,
        weight_units=_text(node, "WeightUnits"),
        location=_text(node, "Location"),
        warehouse_location=_text(node, "WarehouseLocation"),
        options=_text(node, "Options"),
        fulfillment_sku=_text(node, "FulfillmentSku"),
    )


def _parse_order(node: ET.Element) -> ParsedOrder:
    order = ParsedOrder(
        order_number=_text(node, "OrderNumber"),
        order_date=_date(node, "OrderDate"),
        order_status=map_shipstation_status_to_internal(_text(node, "OrderStatus")),
        last_modified=_date(node, "LastModified"),
        shipping_method=_text(node, "ShippingMethod"),
        payment_method=_text(node, "PaymentMethod"),
        order_total=parse_money(_text(node, "OrderTotal")),
        tax_amount=parse_money(_text(node, "TaxAmount")),
        shipping_amount=parse_money(_text(node, "ShippingAmount")),
        custom_field1=_text(node, "CustomField1"),
        custom_field2=_text(node, "CustomField2"),
        custom_field3=_text(node, "CustomField3"),
        notes=_text(node, "Notes"),
        source=_text(node, "Source"),
    )

    customer = node.find("Customer")
    if customer is not None:
        order.customer_code = _text(customer, "CustomerCode")
        bill_to = _parse_address(customer.find("BillTo"))
        order.bill_to = bill_to
        order.ship_to = _parse_address(customer.find("ShipTo"))
        # CustomerCode is usually the e-mail; BillTo/Email wins when present.
        order.customer_email = (bill_to or {}).get("email") or order.customer_code

    items_node = node.find("Items")
    item_nodes = items_node.findall("Item") if items_node is not None else node.findall("Item")
    order.items = [_parse_item(item) for item in item_nodes]
    return order


def parse_order_xml(xml_text: str) -> List[ParsedOrder]:
    """Parse an ``<Orders>`` export, a bare ``<Order>``, or any wrapper of them.

    One ``<Order>`` and many ``<Order>`` children both yield a list.
    """
    root = _parse_root(xml_text)
    if root.tag == "Order":
        return [_parse_order(root)]
    nodes = root.findall("Order")
    if not nodes and root.find("OrderNumber") is not None:
        nodes = [root]
    return [_parse_order(n) for n in nodes]

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from app.services.shipstation.utils import (
    ShipStationXMLError,
    convert_weight_to_ounces,
    create_cdata,
    escape_xml,
    format_date_for_shipstation,
    format_money,
    map_order_status_to_shipstation,
)


XML_HEADER = '<?xml version="1.0" encoding="utf-8"?>'

# Keys whose values are free text and go out as CDATA.
_CDATA_KEYS = {"name", "notes", "customer_notes", "internal_notes", "gift_message", "description"}


def _pascal(key: str) -> str:
    return "".join(part[:1].upper() + part[1:] for part in re.split(r"[_\s]+", key) if part)


def extract_customer_name(email: Optional[str], address: Optional[Mapping[str, Any]]) -> str:
    """Company name if present, otherwise a readable form of the e-mail user."""
    if address and address.get("company"):
        return str(address["company"])
    username = (email or "").split("@")[0]
    username = re.sub(r"[._-]", " ", username)
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), username)


def build_customer_xml(order: Any) -> str:
    shipping = getattr(order, "shipping_address", None)
    if not shipping:
        raise ShipStationXMLError("Shipping address is required for ShipStation export")
    billing = getattr(order, "billing_address", None) or shipping
    email = getattr(order, "customer_email", None) or ""
    phone = getattr(order, "customer_phone", None) or ""
    name = extract_customer_name(email, shipping)

    return (
        "    <Customer>\n"
        f"      <CustomerCode>{escape_xml(email)}</CustomerCode>\n"
        "      <BillTo>\n"
        f"        <Name>{escape_xml(name)}</Name>\n"
        f"        <Company>{escape_xml(billing.get('company'))}</Company>\n"
        f"        <Phone>{escape_xml(billing.get('phone') or phone)}</Phone>\n"
        f"        <Email>{escape_xml(email)}</Email>\n"
        "      </BillTo>\n"
        "      <ShipTo>\n"
        f"        <Name>{escape_xml(name)}</Name>\n"
        f"        <Company>{escape_xml(shipping.get('company'))}</Company>\n"
        f"        <Address1>{escape_xml(shipping.get('street'))}</Address1>\n"
        f"        <Address2>{escape_xml(shipping.get('street2'))}</Address2>\n"
        f"        <City>{escape_xml(shipping.get('city'))}</City>\n"
        f"        <State>{escape_xml(shipping.get('state'))}</State>\n"
        f"        <PostalCode>{escape_xml(shipping.get('postal_code'))}</PostalCode>\n"
        f"        <Country>{escape_xml(shipping.get('country'))}</Country>\n"
        f"        <Phone>{escape_xml(shipping.get('phone') or phone)}</Phone>\n"
        "      </ShipTo>\n"
        "    </Customer>"
    )


def _build_item_xml(item: Any) -> str:
    sku = getattr(item, "product_sku", None) or getattr(item, "product_id", None)
    weight_oz = getattr(item, "weight_oz", None) or 0
    return (
        "      <Item>\n"
        f"        <SKU>{escape_xml(sku)}</SKU>\n"
        f"        <Name>{create_cdata(getattr(item, 'product_name', ''))}</Name>\n"
        "        <ImageUrl></ImageUrl>\n"
        f"        <Weight>{weight_oz:g}</Weight>\n"
        "        <WeightUnits>Ounces</WeightUnits>\n"
        f"        <Quantity>{int(getattr(item, 'quantity', 0) or 0)}</Quantity>\n"
        f"        <UnitPrice>{format_money(getattr(item, 'price', 0))}</UnitPrice>\n"
        f"        <TotalPrice>{format_money(getattr(item, 'total', 0))}</TotalPrice>\n"
        "        <Location></Location>\n"
        "        <WarehouseLocation></WarehouseLocation>\n"
        "        <Options></Options>\n"
        f"        <ProductId>{escape_xml(getattr(item, 'product_id', None))}</ProductId>\n"
        f"        <FulfillmentSku>{escape_xml(sku)}</FulfillmentSku>\n"
        "      </Item>"
    )


def build_items_xml(items: Iterable[Any]) -> str:
    body = "\n".join(_build_item_xml(item) for item in items)
    return f"    <Items>\n{body}\n    </Items>"


def _build_international_options_xml(options: Mapping[str, Any]) -> str:
    parts: List[str] = ["    <InternationalOptions>"]
    if options.get("contents"):
        parts.append(f"      <Contents>{escape_xml(options['contents'])}</Contents>")
    if options.get("non_delivery"):
        parts.append(f"      <NonDelivery>{escape_xml(options['non_delivery'])}</NonDelivery>")
    customs_items = options.get("customs_items") or []
    if isinstance(customs_items, list) and customs_items:
        parts.append("      <CustomsItems>")
        for ci in customs_items:
            parts.append("        <CustomsItem>")
            parts.append(f"          <Description>{create_cdata(ci.get('description'))}</Description>")
            parts.append(f"          <Quantity>{int(ci.get('quantity') or 0)}</Quantity>")
            parts.append(f"          <Value>{format_money(ci.get('value'))}</Value>")
            if ci.get("harmonized_tariff_code"):
                parts.append(
                    f"          <HarmonizedTariffCode>{escape_xml(ci['harmonized_tariff_code'])}</HarmonizedTariffCode>"
                )
            if ci.get("country_of_origin"):
                parts.append(f"          <CountryOfOrigin>{escape_xml(ci['country_of_origin'])}</CountryOfOrigin>")
            parts.append("        </CustomsItem>")
        parts.append("      </CustomsItems>")
    parts.append("    </InternationalOptions>")
    return "\n".join(parts)


def _build_advanced_options_xml(options: Mapping[str, Any]) -> str:
    parts = ["    <AdvancedOptions>"]
    for key, value in options.items():
        if value is None:
            continue
        tag = _pascal(str(key))
        if isinstance(value, bool):
            value = "true" if value else "false"
        parts.append(f"      <{tag}>{escape_xml(value)}</{tag}>")
    parts.append("    </AdvancedOptions>")
    return "\n".join(parts)


def _build_advanced_fields(order: Any) -> List[str]:
    fields: List[str] = []
    for attr, tag in (
        ("shipstation_order_id", "ShipStationOrderId"),
        ("tracking_number", "TrackingNumber"),
        ("carrier", "Carrier"),
        ("service_code", "ServiceCode"),
        ("package_code", "PackageCode"),
        ("confirmation_delivery", "Confirmation"),
    ):
        value = getattr(order, attr, None)
        if value:
            fields.append(f"    <{tag}>{escape_xml(value)}</{tag}>")

    weight = getattr(order, "shipment_weight", None)
    if weight:
        fields.append(f"    <Weight>{convert_weight_to_ounces(weight)}</Weight>")
        fields.append("    <WeightUnits>Ounces</WeightUnits>")

    dims = getattr(order, "shipment_dimensions", None)
    if dims:
        fields.append("    <Dimensions>")
        fields.append(f"      <Length>{dims.get('length', 0)}</Length>")
        fields.append(f"      <Width>{dims.get('width', 0)}</Width>")
        fields.append(f"      <Height>{dims.get('height', 0)}</Height>")
        fields.append(f"      <Units>{escape_xml(dims.get('units') or 'inches')}</Units>")
        fields.append("    </Dimensions>")

    intl = getattr(order, "international_options", None)
    if intl:
        fields.append(_build_international_options_xml(intl))

    adv = getattr(order, "advanced_options", None)
    if adv:
        fields.append(_build_advanced_options_xml(adv))
    return fields


def build_order_xml(order: Any, items: Optional[Sequence[Any]] = None, *, advanced: bool = False) -> str:
    """Render one order as an ``<Order>`` element.

    ``advanced`` appends carrier fields (tracking, package, dimensions,
    international and advanced options) when the order carries them.
    """
    if items is None:
        items = list(getattr(order, "items", None) or [])

    lines = [
        "  <Order>",
        f"    <OrderNumber>{escape_xml(order.order_number)}</OrderNumber>",
        f"    <OrderDate>{format_date_for_shipstation(order.created_at)}</OrderDate>",
        f"    <OrderStatus>{map_order_status_to_shipstation(order.status)}</OrderStatus>",
        f"    <LastModified>{format_date_for_shipstation(order.updated_at or order.created_at)}</LastModified>",
        f"    <ShippingMethod>{escape_xml(order.shipping_method or 'Standard')}</ShippingMethod>",
        f"    <PaymentMethod>{escape_xml(order.payment_method or 'Credit Card')}</PaymentMethod>",
        f"    <OrderTotal>{format_money(order.total_amount)}</OrderTotal>",
        f"    <TaxAmount>{format_money(order.tax_amount)}</TaxAmount>",
        f"    <ShippingAmount>{format_money(order.shipping_amount)}</ShippingAmount>",
        f"    <CustomField1>{escape_xml(order.id)}</CustomField1>",
        f"    <CustomField2>{escape_xml(order.store_id)}</CustomField2>",
        f"    <CustomField3>{escape_xml(order.currency)}</CustomField3>",
        "    <Source>Store</Source>",
        build_customer_xml(order),
        build_items_xml(items),
        f"    <Notes>{create_cdata(order.notes)}</Notes>",
    ]
    if advanced:
        lines.extend(_build_advanced_fields(order))
    lines.append("  </Order>")
    return "\n".join(lines)


def export_orders_to_xml(orders: Sequence[Any], page: int = 1, total_pages: int = 1, *, advanced: bool = False) -> str:
    body = "\n".join(build_order_xml(order, advanced=advanced) for order in orders)
    return f'{XML_HEADER}\n<Orders pages="{total_pages}" page="{page}">\n{body}\n</Orders>'


def _dict_to_xml(tag: str, value: Any, indent: int) -> str:
    pad = "  " * indent
    element = _pascal(tag)
    if isinstance(value, Mapping):
        inner = "\n".join(_dict_to_xml(k, v, indent + 1) for k, v in value.items() if v is not None)
        return f"{pad}<{element}>\n{inner}\n{pad}</{element}>"
    if isinstance(value, (list, tuple)):
        child = tag[:-1] if tag.endswith("s") else f"{tag}_item"
        inner = "\n".join(_dict_to_xml(child, v, indent + 1) for v in value)
        return f"{pad}<{element}>\n{inner}\n{pad}</{element}>"
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif tag in _CDATA_KEYS:
        text = create_cdata(value)
    else:
        text = escape_xml(value)
    return f"{pad}<{element}>{text}</{element}>"


def build_create_order_xml(carrier_order: Mapping[str, Any]) -> str:
    """Serialize the nested create-order document for the legacy endpoint.

    Keys are snake_case and become PascalCase elements; lists repeat a
    singular child element (``items`` -> ``<Items><Item>``).
    """
    body = "\n".join(_dict_to_xml(k, v, 1) for k, v in carrier_order.items() if v is not None)
    return f"{XML_HEADER}\n<Order>\n{body}\n</Order>"

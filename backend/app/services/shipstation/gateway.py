from __future__ import annotations

import base64
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.models_sqlalchemy.models import Order
from app.services.integration_log import _get_session, log_integration
from app.services.order_status_service import OrderPatch
from app.services.shipstation.credentials import StoreCredentials, get_store_credentials, resolve_ship_from
from app.services.shipstation.utils import cents_to_amount
from app.services.shipstation.xml_builder import build_create_order_xml
from app.utils.crypto import CredentialDecryptError
from app.utils.logger import logger, mask_credentials, mask_headers


# Used when an item carries no weight of its own.
FALLBACK_ITEM_WEIGHT_LB = 0.5
MIN_ORDER_WEIGHT_LB = 0.1
DEFAULT_DIMENSIONS_IN = {"units": "inches", "length": 12, "width": 9, "height": 3}


@dataclass
class CarrierOrderItem:
    sku: str
    name: str
    quantity: int
    unit_price: int  # cents
    product_id: Optional[str] = None
    image_url: Optional[str] = None
    weight_oz: Optional[float] = None

    @property
    def weight_lb(self) -> float:
        if self.weight_oz:
            return round(self.weight_oz / 16.0 * self.quantity, 4)
        return FALLBACK_ITEM_WEIGHT_LB * self.quantity


@dataclass
class CarrierOrder:
    """Carrier-neutral description of an order to be shipped."""

    store_id: str
    order_number: str
    customer_email: str
    ship_to: Dict[str, Any]
    items: List[CarrierOrderItem] = field(default_factory=list)
    bill_to: Optional[Dict[str, Any]] = None
    customer_phone: Optional[str] = None
    total_amount: int = 0
    tax_amount: int = 0
    shipping_amount: int = 0
    currency: str = "USD"
    shipping_method: Optional[str] = None
    notes: Optional[str] = None
    order_date: Optional[datetime] = None

    @property
    def total_weight_lb(self) -> float:
        return max(sum(item.weight_lb for item in self.items), MIN_ORDER_WEIGHT_LB)

    @classmethod
    def from_order(cls, order: Order) -> "CarrierOrder":
        address = dict(order.shipping_address or {})
        return cls(
            store_id=order.store_id,
            order_number=order.order_number,
            customer_email=order.customer_email or "",
            customer_phone=order.customer_phone or address.get("phone"),
            ship_to=address,
            bill_to=dict(order.billing_address) if order.billing_address else None,
            items=[
                CarrierOrderItem(
                    sku=item.product_sku or str(item.product_id or item.id),
                    name=item.product_name,
                    quantity=int(item.quantity),
                    unit_price=int(item.price or 0),
                    product_id=item.product_id,
                    weight_oz=item.weight_oz,
                )
                for item in order.items
            ],
            total_amount=int(order.total_amount or 0),
            tax_amount=int(order.tax_amount or 0),
            shipping_amount=int(order.shipping_amount or 0),
            currency=order.currency or "USD",
            shipping_method=order.shipping_method,
            notes=order.notes,
            order_date=order.created_at,
        )


@dataclass
class CarrierResult:
    success: bool
    carrier_order_id: Optional[str] = None
    status: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    status_code: Optional[int] = None
    retryable: bool = False

    @classmethod
    def failure(cls, error: str, *, status_code: Optional[int] = None, retryable: bool = False) -> "CarrierResult":
        return cls(success=False, error=error, status_code=status_code, retryable=retryable)


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def camelize(value: Any) -> Any:
    """snake_case dict keys to camelCase, recursively."""
    if isinstance(value, Mapping):
        return {_camel(k): camelize(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [camelize(v) for v in value]
    return value


def _recipient_name(address: Mapping[str, Any]) -> str:
    if address.get("name"):
        return str(address["name"])
    name = " ".join(p for p in (address.get("first_name"), address.get("last_name")) if p)
    return name or "Customer"


def _legacy_address(address: Mapping[str, Any], phone: Optional[str]) -> Dict[str, Any]:
    return {
        "name": _recipient_name(address),
        "company": address.get("company"),
        "street1": address.get("street") or address.get("address") or "",
        "street2": address.get("street2"),
        "city": address.get("city") or "",
        "state": address.get("state") or "",
        "postal_code": address.get("postal_code") or address.get("zip_code") or "",
        "country": address.get("country") or "US",
        "phone": address.get("phone") or phone,
        "residential": True,
    }


def build_legacy_order(order: CarrierOrder, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Carrier-neutral order -> legacy create-order document (snake_case keys)."""
    now = now or datetime.now(timezone.utc)
    order_date = (order.order_date or now).isoformat()
    ship_to = _legacy_address(order.ship_to, order.customer_phone)
    bill_to = _legacy_address(order.bill_to, order.customer_phone) if order.bill_to else dict(ship_to)

    return {
        "order_number": order.order_number,
        "order_key": order.order_number,
        "order_date": order_date,
        "payment_date": order_date,
        "ship_by_date": (now + timedelta(days=7)).isoformat(),
        "order_status": "awaiting_shipment",
        "customer_username": order.customer_email,
        "customer_email": order.customer_email,
        "bill_to": bill_to,
        "ship_to": ship_to,
        "items": [
            {
                "line_item_key": f"{order.order_number}-item-{index}",
                "sku": item.sku,
                "name": item.name,
                "image_url": item.image_url,
                "weight": {"value": item.weight_lb, "units": "pounds"},
                "quantity": item.quantity,
                "unit_price": cents_to_amount(item.unit_price),
                "tax_amount": 0,
                "shipping_amount": 0,
                "adjustment": False,
            }
            for index, item in enumerate(order.items, start=1)
        ],
        "amount_paid": cents_to_amount(order.total_amount),
        "tax_amount": cents_to_amount(order.tax_amount),
        "shipping_amount": cents_to_amount(order.shipping_amount),
        "customer_notes": order.notes or "",
        "internal_notes": f"Order created for store {order.store_id}",
        "gift": False,
        "payment_method": "Online Payment",
        "requested_shipping_service": order.shipping_method or "Standard",
        "package_code": "package",
        "weight": {"value": order.total_weight_lb, "units": "pounds"},
        "dimensions": dict(DEFAULT_DIMENSIONS_IN),
        "advanced_options": {
            "source": "Store",
            "custom_field1": f"Store ID: {order.store_id}",
            "custom_field2": f"Order Date: {now.date().isoformat()}",
        },
    }


def build_v2_shipment(order: CarrierOrder, ship_from: Dict[str, Any]) -> Dict[str, Any]:
    address = order.ship_to
    return {
        "shipments": [
            {
                "external_shipment_id": order.order_number,
                "ship_to": {
                    "name": _recipient_name(address),
                    "phone": address.get("phone") or order.customer_phone or "",
                    "email": order.customer_email,
                    "company_name": address.get("company") or "",
                    "address_line1": address.get("street") or address.get("address") or "",
                    "address_line2": address.get("street2") or "",
                    "city_locality": address.get("city") or "",
                    "state_province": address.get("state") or "",
                    "postal_code": address.get("postal_code") or address.get("zip_code") or "",
                    "country_code": address.get("country") or "US",
                    "address_residential_indicator": "unknown",
                },
                "ship_from": ship_from,
                "items": [
                    {
                        "name": item.name,
                        "sku": item.sku,
                        "quantity": item.quantity,
                        "unit_price": cents_to_amount(item.unit_price),
                        "external_order_item_id": f"{order.order_number}-{item.product_id or item.sku}",
                    }
                    for item in order.items
                ],
                "amount_paid": {"currency": order.currency, "amount": cents_to_amount(order.total_amount)},
                "shipping_paid": {"currency": order.currency, "amount": cents_to_amount(order.shipping_amount)},
            }
        ]
    }


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = body.get("message") or body.get("error") or body.get("ExceptionMessage")
        if not message and isinstance(body.get("errors"), list) and body["errors"]:
            first = body["errors"][0]
            message = first.get("message") if isinstance(first, dict) else str(first)
        if message:
            return str(message)
    text = (response.text or "").strip()
    if text:
        return text[:500]
    return f"HTTP {response.status_code}"


def _document(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"raw": (response.text or "")[:2000]}
    return body if isinstance(body, dict) else {"data": body}


class CarrierGateway:
    """Outbound client for one store's carrier account.

    Implementations never raise for HTTP or network problems; they return a
    failed CarrierResult instead.
    """

    name = "base"

    def __init__(
        self,
        credentials: StoreCredentials,
        *,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.credentials = credentials
        self.base_url = (base_url or self.default_base_url()).rstrip("/")
        self._transport = transport

    @classmethod
    def default_base_url(cls) -> str:  # pragma: no cover - interface
        raise NotImplementedError

    async def create_shipment(self, order: CarrierOrder) -> CarrierResult:  # pragma: no cover - interface
        raise NotImplementedError

    async def test_connection(self) -> CarrierResult:  # pragma: no cover - interface
        raise NotImplementedError

    def _auth_headers(self) -> Dict[str, str]:  # pragma: no cover - interface
        raise NotImplementedError

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(
                settings.SHIPSTATION_HTTP_TIMEOUT_SECONDS,
                connect=settings.SHIPSTATION_CONNECT_TIMEOUT_SECONDS,
            ),
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        headers: Optional[Dict[str, str]] = None,
        content: Optional[str] = None,
        json_body: Optional[Dict[str, Any]] = None,
        log_request: Optional[Dict[str, Any]] = None,
    ) -> CarrierResult:
        all_headers = {**self._auth_headers(), **(headers or {})}
        request_log = {
            "method": method,
            "url": f"{self.base_url}{path}",
            "headers": mask_headers(all_headers),
            "payload": mask_credentials(log_request) if log_request else None,
        }
        start = time.time()
        try:
            async with self._client() as client:
                response = await client.request(method, path, headers=all_headers, content=content, json=json_body)
        except httpx.RequestError as exc:
            elapsed = int((time.time() - start) * 1000)
            logger.error("%s %s %s failed: %s", self.name, method, path, exc)
            log_integration(
                operation=operation,
                status="failure",
                store_id=self.credentials.store_id,
                request_data=request_log,
                error_message=f"{exc.__class__.__name__}: {exc}",
                execution_time_ms=elapsed,
            )
            return CarrierResult.failure(str(exc) or exc.__class__.__name__, retryable=True)

        elapsed = int((time.time() - start) * 1000)
        logger.info("%s %s %s -> %s (%sms)", self.name, method, path, response.status_code, elapsed)

        if response.is_success:
            data = _document(response)
            log_integration(
                operation=operation,
                status="success",
                store_id=self.credentials.store_id,
                request_data=request_log,
                response_data={"status_code": response.status_code, "body": data},
                execution_time_ms=elapsed,
            )
            return CarrierResult(success=True, data=data, status_code=response.status_code)

        message = _error_message(response)
        log_integration(
            operation=operation,
            status="failure",
            store_id=self.credentials.store_id,
            request_data=request_log,
            response_data={"status_code": response.status_code},
            error_message=message,
            execution_time_ms=elapsed,
        )
        return CarrierResult.failure(
            message,
            status_code=response.status_code,
            retryable=response.status_code >= 500 or response.status_code == 429,
        )


class LegacyShipStationGateway(CarrierGateway):
    """Basic-Auth client for the legacy order API (XML or JSON bodies)."""

    name = "shipstation-legacy"

    @classmethod
    def default_base_url(cls) -> str:
        return settings.SHIPSTATION_LEGACY_BASE_URL

    @property
    def payload_format(self) -> str:
        fmt = str(self.credentials.configuration.get("payload_format") or "xml").lower()
        return fmt if fmt in ("xml", "json") else "xml"

    def _auth_headers(self) -> Dict[str, str]:
        token = f"{self.credentials.api_key or ''}:{self.credentials.api_secret or ''}"
        return {"Authorization": "Basic " + base64.b64encode(token.encode("utf-8")).decode("ascii")}

    async def create_shipment(self, order: CarrierOrder) -> CarrierResult:
        document = build_legacy_order(order)
        summary = {"order_number": order.order_number, "items": len(order.items), "format": self.payload_format}

        if self.payload_format == "xml":
            result = await self._request(
                "POST",
                "/orders/createorder",
                operation="order_create",
                headers={"Content-Type": "application/xml", "Accept": "application/json"},
                content=build_create_order_xml(document),
                log_request=summary,
            )
        else:
            result = await self._request(
                "POST",
                "/orders/createorder",
                operation="order_create",
                headers={"Accept": "application/json"},
                json_body=camelize(document),
                log_request=summary,
            )

        if result.success:
            carrier_id = result.data.get("orderId") or _xml_order_id(result.data.get("raw"))
            result.carrier_order_id = str(carrier_id) if carrier_id else None
            result.status = result.data.get("orderStatus") or "awaiting_shipment"
            logger.info("Legacy carrier order created for %s: %s", order.order_number, result.carrier_order_id)
        return result

    async def test_connection(self) -> CarrierResult:
        return await self._request("GET", "/carriers", operation="credential_test")


def _xml_order_id(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    match = re.search(r"<OrderId>\s*([^<\s]+)\s*</OrderId>", raw, re.IGNORECASE)
    return match.group(1) if match else None


class ShipStationV2Gateway(CarrierGateway):
    """API-key client for the v2 shipments API."""

    name = "shipstation-v2"

    def __init__(self, credentials: StoreCredentials, *, db: Optional[Session] = None, **kwargs: Any):
        super().__init__(credentials, **kwargs)
        self._db = db

    @classmethod
    def default_base_url(cls) -> str:
        return settings.SHIPSTATION_V2_BASE_URL

    def _auth_headers(self) -> Dict[str, str]:
        return {"api-key": self.credentials.api_key or ""}

    async def create_shipment(self, order: CarrierOrder) -> CarrierResult:
        resolution = resolve_ship_from(
            self.credentials.store_id,
            self.credentials.configuration,
            allow_placeholder=settings.SHIPSTATION_ALLOW_PLACEHOLDER_SHIP_FROM,
            db=self._db,
        )
        if resolution.address is None:
            log_integration(
                operation="shipment_create",
                status="failure",
                store_id=self.credentials.store_id,
                request_data={"order_number": order.order_number},
                error_message="ship_from_not_configured",
            )
            return CarrierResult.failure("ship_from_not_configured")
        if resolution.is_placeholder:
            log_integration(
                operation="shipment_create",
                status="warning",
                store_id=self.credentials.store_id,
                request_data={"order_number": order.order_number},
                error_message="Shipping from placeholder warehouse address; configure a ship-from address",
            )

        payload = build_v2_shipment(order, resolution.address)
        result = await self._request(
            "POST",
            "/v2/shipments",
            operation="shipment_create",
            json_body=payload,
            log_request={
                "external_shipment_id": order.order_number,
                "items": len(order.items),
                "ship_from_source": resolution.source,
            },
        )
        if not result.success:
            return result

        shipments = result.data.get("shipments") or [{}]
        first = shipments[0] if isinstance(shipments[0], dict) else {}
        errors = first.get("errors") or []
        if result.data.get("has_errors") or errors:
            message = ", ".join(str(e.get("message") if isinstance(e, dict) else e) for e in errors) or "Unknown error"
            logger.error("v2 shipment creation failed for %s: %s", order.order_number, message)
            return CarrierResult.failure(f"Shipment creation failed: {message}", status_code=result.status_code)

        result.carrier_order_id = first.get("shipment_id")
        result.status = first.get("shipment_status")
        logger.info("v2 shipment created for %s: %s", order.order_number, result.carrier_order_id)
        return result

    async def test_connection(self) -> CarrierResult:
        return await self._request("GET", "/v2/carriers", operation="credential_test")


GATEWAYS = {
    "legacy": LegacyShipStationGateway,
    "v2": ShipStationV2Gateway,
}


def gateway_for_credentials(
    credentials: StoreCredentials,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    db: Optional[Session] = None,
) -> CarrierGateway:
    gateway_cls = GATEWAYS.get(credentials.api_version, LegacyShipStationGateway)
    if gateway_cls is ShipStationV2Gateway:
        return ShipStationV2Gateway(credentials, transport=transport, db=db)
    return gateway_cls(credentials, transport=transport)


def get_gateway_for_store(
    store_id: str,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    db: Optional[Session] = None,
) -> Optional[CarrierGateway]:
    """Gateway chosen by the integration's ``api_version`` (legacy or v2).

    Returns None when the store has no active integration. Raises
    CredentialDecryptError when its credentials cannot be decrypted.
    """
    credentials = get_store_credentials(store_id, db=db)
    if credentials is None:
        return None
    return gateway_for_credentials(credentials, transport=transport, db=db)


async def submit_order_to_carrier(
    order_id: str,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    db: Optional[Session] = None,
) -> CarrierResult:
    """Send an order to its store's carrier account and remember the carrier id."""
    session, owns_session = _get_session(db)
    try:
        order = session.get(Order, order_id)
        if order is None:
            return CarrierResult.failure(f"Order not found: {order_id}")
        carrier_order = CarrierOrder.from_order(order)

        try:
            gateway = get_gateway_for_store(order.store_id, transport=transport, db=session)
        except CredentialDecryptError as exc:
            if owns_session:
                session.commit()
            return CarrierResult.failure(f"credentials_unreadable: {exc}")
        if gateway is None:
            return CarrierResult.failure("credentials_not_configured")

        result = await gateway.create_shipment(carrier_order)
        if result.success and result.carrier_order_id:
            OrderPatch(shipstation_order_id=result.carrier_order_id).apply(order)
            if owns_session:
                session.commit()
            else:
                session.flush()
        return result
    except Exception:
        if owns_session:
            session.rollback()
        raise
    finally:
        if owns_session:
            session.close()

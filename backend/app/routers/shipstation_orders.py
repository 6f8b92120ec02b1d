from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app.models_sqlalchemy import get_db
from app.services.order_status_service import (
    InvalidTransitionError,
    OrderNotFoundError,
    apply_shipment_event,
    export_orders,
    update_order_from_carrier,
)
from app.services.shipstation.auth import AuthResult, authenticate_multi, log_auth_attempt
from app.services.shipstation.payloads import body_dedupe_key
from app.services.shipstation.utils import (
    ShipStationXMLError,
    format_shipstation_error,
    parse_shipstation_date,
    to_carrier_aware,
)
from app.services.shipstation.xml_parser import parse_shipment_notification, validate_shipment_notification
from app.utils.logger import logger


router = APIRouter(prefix="/api/shipstation/orders", tags=["shipstation_orders"])

_NO_CACHE = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def _error(message: str, status_code: int, code: Optional[str] = None) -> Response:
    return Response(
        content=format_shipstation_error(message, code),
        status_code=status_code,
        media_type="application/json",
    )


def _authenticate(request: Request, db: Session) -> AuthResult:
    result = authenticate_multi(request.headers, db=db)
    log_auth_attempt(
        headers=request.headers,
        method=f"{request.method} {request.url.path}",
        result=result,
        client_host=request.client.host if request.client else None,
        db=db,
    )
    db.commit()
    return result


@router.get("")
async def export_orders_endpoint(
    request: Request,
    action: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    page: Optional[str] = Query("1"),
    page_size: Optional[str] = Query(None),
    advanced: bool = Query(False),
    db: Session = Depends(get_db),
) -> Response:
    """Custom-store export: orders modified between two carrier-format dates."""
    auth = _authenticate(request, db)
    if not auth.success:
        return _error("Authentication failed", 401, "UNAUTHORIZED")

    if (action or "").lower() != "export":
        return _error("Unsupported action", 400, "INVALID_ACTION")
    if not start_date or not end_date:
        return _error("start_date and end_date are required", 400, "MISSING_DATES")
    try:
        start = to_carrier_aware(parse_shipstation_date(start_date))
        end = to_carrier_aware(parse_shipstation_date(end_date))
    except ValueError:
        return _error("Dates must use MM/dd/yyyy HH:mm", 400, "INVALID_DATE")

    try:
        export = export_orders(auth.store_id, start, end, page=page, page_size=page_size, advanced=advanced, db=db)
        db.commit()
    except Exception:
        logger.error("Order export failed for store %s", auth.store_id, exc_info=True)
        db.rollback()
        return _error("Internal server error", 500)

    logger.info(
        "Exported %s orders for store %s (page %s/%s)", export.exported, auth.store_id, export.page, export.total_pages
    )
    return Response(content=export.xml, media_type="application/xml; charset=utf-8", headers=_NO_CACHE)


@router.post("")
async def shipment_notification_endpoint(request: Request, db: Session = Depends(get_db)) -> Response:
    """XML ship-notify pushed by the carrier for a custom store."""
    auth = _authenticate(request, db)
    if not auth.success:
        return _error("Authentication failed", 401, "UNAUTHORIZED")

    raw_body = await request.body()
    try:
        data = parse_shipment_notification(raw_body.decode("utf-8", errors="replace"))
    except ShipStationXMLError as exc:
        logger.warning("Invalid shipment notification XML from store %s: %s", auth.store_id, exc)
        return _error("Invalid XML", 400, "INVALID_XML")

    valid, errors = validate_shipment_notification(data)
    if not valid:
        return _error("; ".join(errors), 400, "VALIDATION_ERROR")

    try:
        outcome = apply_shipment_event(
            data.to_event(),
            dedupe_key=body_dedupe_key(raw_body),
            store_id=auth.store_id,
        )
    except OrderNotFoundError:
        return _error("Order not found", 404, "ORDER_NOT_FOUND")
    except InvalidTransitionError as exc:
        logger.warning("Shipment notification rejected: %s", exc)
        return _error("Order cannot be shipped in its current status", 409, "INVALID_STATUS")
    except Exception:
        logger.error("Shipment notification failed for store %s", auth.store_id, exc_info=True)
        return _error("Internal server error", 500)

    return JSONResponse(
        {
            "success": True,
            "message": "Shipment notification processed successfully",
            "order_id": outcome.order_id,
            "tracking_number": data.tracking_number or None,
            "duplicate": outcome.duplicate,
        }
    )


@router.put("/{order_number}")
async def update_order_endpoint(order_number: str, request: Request, db: Session = Depends(get_db)) -> Response:
    auth = _authenticate(request, db)
    if not auth.success:
        return _error("Authentication failed", 401, "UNAUTHORIZED")

    try:
        body: Any = await request.json()
    except ValueError:
        return _error("Invalid JSON body", 400, "INVALID_JSON")
    if not isinstance(body, dict):
        return _error("Invalid JSON body", 400, "INVALID_JSON")

    update: Dict[str, Any] = {
        "status": body.get("status"),
        "tracking_number": body.get("tracking_number") or body.get("trackingNumber"),
        "carrier": body.get("carrier") or body.get("carrierCode"),
    }
    try:
        order = update_order_from_carrier(auth.store_id, order_number, update, db=db)
        db.commit()
    except OrderNotFoundError:
        return _error("Order not found", 404, "ORDER_NOT_FOUND")
    except InvalidTransitionError as exc:
        logger.warning("Order update rejected for %s: %s", order_number, exc)
        return _error("Status change not allowed", 409, "INVALID_STATUS")
    except Exception:
        logger.error("Order update failed for %s", order_number, exc_info=True)
        return _error("Internal server error", 500)

    return JSONResponse(
        {
            "success": True,
            "order_id": order.id,
            "order_number": order.order_number,
            "status": order.status,
            "tracking_number": order.tracking_number,
        }
    )

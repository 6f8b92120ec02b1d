from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from app.models_sqlalchemy.models import JobType
from app.services.inventory_service import ProductNotFoundError, update_inventory_after_shipment
from app.services.notification_service import send_order_notification
from app.services.order_status_service import (
    InvalidTransitionError,
    OrderNotFoundError,
    apply_webhook_payload,
)
from app.services.shipstation.gateway import submit_order_to_carrier
from app.services.shipstation.payloads import InvalidWebhookPayloadError
from app.utils.logger import logger


class TerminalJobError(Exception):
    """Raised by a handler when retrying cannot help."""


@dataclass
class JobResult:
    ok: bool
    retryable: bool = True
    message: Optional[str] = None

    @classmethod
    def success(cls) -> "JobResult":
        return cls(ok=True)

    @classmethod
    def retry(cls, message: str) -> "JobResult":
        return cls(ok=False, retryable=True, message=message)

    @classmethod
    def terminal(cls, message: str) -> "JobResult":
        return cls(ok=False, retryable=False, message=message)


JobHandler = Callable[[Dict[str, Any]], Awaitable[Union[JobResult, bool]]]

# Failures that come out the same on every attempt.
PERMANENT_ERRORS = (
    OrderNotFoundError,
    InvalidTransitionError,
    InvalidWebhookPayloadError,
    ProductNotFoundError,
)


def _apply_webhook(webhook_payload: Any, store_id: Optional[str] = None) -> JobResult:
    try:
        outcome = apply_webhook_payload(webhook_payload, store_id=store_id)
    except PERMANENT_ERRORS as exc:
        raise TerminalJobError(str(exc)) from exc
    if outcome.duplicate:
        logger.info("Queued webhook was already processed")
    return JobResult.success()


async def handle_order_notification(payload: Dict[str, Any]) -> JobResult:
    order_id = payload.get("order_id")
    notification_type = payload.get("notification_type")
    if not order_id or not notification_type:
        return JobResult.terminal("Missing required fields: order_id, notification_type")

    data = {k: v for k, v in payload.items() if k not in ("order_id", "notification_type")}
    try:
        sent = await send_order_notification(order_id, notification_type, data)
    except (OrderNotFoundError, ValueError) as exc:
        return JobResult.terminal(str(exc))
    if not sent:
        return JobResult.retry("Notification transport reported failure")
    return JobResult.success()


async def handle_inventory_update(payload: Dict[str, Any]) -> JobResult:
    order_id = payload.get("order_id")
    if not order_id:
        return JobResult.terminal("Missing required field: order_id")

    result = update_inventory_after_shipment(order_id, payload.get("shipment_data"))
    if result.get("success"):
        return JobResult.success()
    if result.get("error_code") == "order_not_found":
        return JobResult.terminal(result.get("error") or "Order not found")
    return JobResult.retry(result.get("error") or "Inventory update failed")


async def handle_shipment_processing(payload: Dict[str, Any]) -> JobResult:
    """Replay a carrier webhook, or submit an order to the carrier."""
    webhook_payload = payload.get("webhook_payload")
    if webhook_payload:
        return _apply_webhook(webhook_payload, payload.get("store_id"))

    order_id = payload.get("order_id")
    if order_id:
        result = await submit_order_to_carrier(order_id)
        if result.success:
            return JobResult.success()
        if result.retryable:
            return JobResult.retry(result.error or "Carrier submission failed")
        return JobResult.terminal(result.error or "Carrier submission rejected")

    return JobResult.terminal("Missing required field: webhook_payload or order_id")


async def handle_webhook_processing(payload: Dict[str, Any]) -> JobResult:
    webhook_type = payload.get("webhook_type")
    webhook_data = payload.get("webhook_data")
    if not webhook_type or not webhook_data:
        return JobResult.terminal("Missing required fields: webhook_type, webhook_data")
    if webhook_type != "shipstation_webhook":
        return JobResult.terminal(f"Unknown webhook type: {webhook_type}")
    return _apply_webhook(webhook_data, payload.get("store_id"))


DEFAULT_HANDLERS: Dict[str, JobHandler] = {
    JobType.ORDER_NOTIFICATION.value: handle_order_notification,
    JobType.INVENTORY_UPDATE.value: handle_inventory_update,
    JobType.SHIPMENT_PROCESSING.value: handle_shipment_processing,
    JobType.WEBHOOK_PROCESSING.value: handle_webhook_processing,
}

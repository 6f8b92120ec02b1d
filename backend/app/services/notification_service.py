from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.models_sqlalchemy.models import Order, ShipmentNotification
from app.services.integration_log import _get_session
from app.services.order_status_service import OrderNotFoundError
from app.utils.logger import logger


NOTIFICATION_TYPES = ("shipped", "delivered", "exception")

_SUBJECTS = {
    "shipped": "Your order {order_number} has shipped",
    "delivered": "Your order {order_number} has been delivered",
    "exception": "Delivery update for order {order_number}",
}


@dataclass
class NotificationMessage:
    order_id: str
    notification_type: str
    to: str
    subject: str
    data: Dict[str, Any] = field(default_factory=dict)


class NotificationSender(ABC):
    """Outbound customer messaging transport."""

    @abstractmethod
    async def send(self, message: NotificationMessage) -> bool:
        ...


class LoggingNotificationSender(NotificationSender):
    """Writes the message to the application log instead of mailing it."""

    async def send(self, message: NotificationMessage) -> bool:
        logger.info(
            "Notification %s for order %s to %s: %s",
            message.notification_type,
            message.order_id,
            message.to,
            message.subject,
        )
        return True


_sender: NotificationSender = LoggingNotificationSender()


def get_notification_sender() -> NotificationSender:
    return _sender


def set_notification_sender(sender: NotificationSender) -> None:
    global _sender
    _sender = sender


async def send_order_notification(
    order_id: str,
    notification_type: str,
    data: Optional[Dict[str, Any]] = None,
    *,
    db: Optional[Session] = None,
) -> bool:
    """Send a customer notification for an order.

    Raises OrderNotFoundError for unknown orders and ValueError when the
    message cannot be addressed; returns the transport's result otherwise.
    Successful sends mark matching shipment_notifications rows as emailed.
    """
    if notification_type not in NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type: {notification_type}")

    session, owns_session = _get_session(db)
    try:
        order = session.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(f"Order not found: {order_id}")
        if not order.customer_email:
            raise ValueError(f"Order {order_id} has no customer email")

        message = NotificationMessage(
            order_id=order.id,
            notification_type=notification_type,
            to=order.customer_email,
            subject=_SUBJECTS[notification_type].format(order_number=order.order_number),
            data=dict(data or {}),
        )
        sent = await get_notification_sender().send(message)
        if not sent:
            logger.warning("Notification %s for order %s was not sent", notification_type, order_id)
            return False

        now = datetime.now(timezone.utc)
        pending = (
            session.query(ShipmentNotification)
            .filter(ShipmentNotification.order_id == order.id)
            .filter(ShipmentNotification.notification_type == notification_type)
            .filter(ShipmentNotification.email_sent.is_(False))
            .all()
        )
        for row in pending:
            row.email_sent = True
            row.sent_at = now

        if owns_session:
            session.commit()
        else:
            session.flush()
        return True
    except Exception:
        if owns_session:
            session.rollback()
        raise
    finally:
        if owns_session:
            session.close()

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from . import Base


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class JobType(str, enum.Enum):
    ORDER_NOTIFICATION = "order_notification"
    INVENTORY_UPDATE = "inventory_update"
    SHIPMENT_PROCESSING = "shipment_processing"
    WEBHOOK_PROCESSING = "webhook_processing"


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


class JobPriority(str, enum.Enum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class InventoryChangeReason(str, enum.Enum):
    SALE = "sale"
    RETURN = "return"
    DAMAGE = "damage"
    THEFT = "theft"
    FOUND = "found"
    ADJUSTMENT = "adjustment"
    SHIPMENT = "shipment"


class IntegrationLogStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


class WebhookEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"


class Job(Base):
    """Row in the background job queue.

    ``attempts`` never exceeds ``max_attempts``; ``retrying`` rows carry a
    future ``scheduled_at`` and are picked up again once it elapses.
    """

    __tablename__ = "job_queue"

    id = Column(String(36), primary_key=True, default=_uuid)
    job_type = Column(String(50), nullable=False)
    payload = Column(JSONType, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value)
    priority = Column(String(10), nullable=False, default=JobPriority.MEDIUM.value)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    scheduled_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_now_utc,
        server_default=func.now(),
        onupdate=_now_utc,
    )

    __table_args__ = (
        Index("idx_job_queue_status_scheduled", "status", "scheduled_at"),
        Index("idx_job_queue_job_type", "job_type"),
        Index("idx_job_queue_created_at", "created_at"),
    )


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    store_id = Column(String(36), nullable=False, index=True)
    order_number = Column(String(100), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value)
    fulfillment_status = Column(String(20), nullable=True)

    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)
    shipping_address = Column(JSONType, nullable=True)
    billing_address = Column(JSONType, nullable=True)
    shipping_method = Column(String(100), nullable=True)
    payment_method = Column(String(100), nullable=True)

    # Money in integer cents
    total_amount = Column(Integer, nullable=False, default=0)
    tax_amount = Column(Integer, nullable=False, default=0)
    shipping_amount = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    notes = Column(Text, nullable=True)

    # Carrier / fulfillment fields
    shipstation_order_id = Column(String(100), nullable=True, index=True)
    tracking_number = Column(String(100), nullable=True)
    tracking_url = Column(Text, nullable=True)
    carrier = Column(String(50), nullable=True)
    carrier_code = Column(String(50), nullable=True)
    service_code = Column(String(100), nullable=True)
    package_code = Column(String(50), nullable=True)
    confirmation_delivery = Column(String(50), nullable=True)
    shipment_weight = Column(Float, nullable=True)  # pounds
    shipment_dimensions = Column(JSONType, nullable=True)
    international_options = Column(JSONType, nullable=True)
    advanced_options = Column(JSONType, nullable=True)
    shipment_cost = Column(Integer, nullable=True)  # cents
    label_url = Column(Text, nullable=True)
    form_url = Column(Text, nullable=True)
    shipment_data = Column(JSONType, nullable=True)
    shipped_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    estimated_delivery_date = Column(DateTime(timezone=True), nullable=True)
    actual_delivery_date = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_now_utc,
        server_default=func.now(),
        onupdate=_now_utc,
    )

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_orders_store_updated", "store_id", "updated_at"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=True, index=True)
    product_sku = Column(String(100), nullable=True)
    product_name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Integer, nullable=False, default=0)  # cents per unit
    total = Column(Integer, nullable=False, default=0)  # cents
    weight_oz = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())

    order = relationship("Order", back_populates="items")


class Product(Base):
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=_uuid)
    store_id = Column(String(36), nullable=False, index=True)
    sku = Column(String(100), nullable=True)
    name = Column(String(255), nullable=False)
    price = Column(Integer, nullable=False, default=0)  # cents
    stock_quantity = Column(Integer, nullable=False, default=0)
    track_inventory = Column(Boolean, nullable=False, default=True)
    low_stock_threshold = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_now_utc,
        server_default=func.now(),
        onupdate=_now_utc,
    )

    __table_args__ = (
        UniqueConstraint("store_id", "sku", name="uq_products_store_sku"),
    )


class WarehouseInventory(Base):
    """Per-warehouse stock snapshot fed by external inventory syncs."""

    __tablename__ = "inventory"

    id = Column(String(36), primary_key=True, default=_uuid)
    product_id = Column(String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    warehouse_id = Column(String(100), nullable=False)
    available_quantity = Column(Integer, nullable=False, default=0)
    allocated_quantity = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, onupdate=_now_utc)

    __table_args__ = (
        UniqueConstraint("product_id", "warehouse_id", name="uq_inventory_product_warehouse"),
    )


class InventoryLog(Base):
    """Append-only audit trail of stock mutations."""

    __tablename__ = "inventory_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    store_id = Column(String(36), nullable=True, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    change_type = Column(String(20), nullable=False)
    quantity_change = Column(Integer, nullable=False)
    quantity_after = Column(Integer, nullable=False)
    reference_type = Column(String(50), nullable=True)
    reference_id = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())

    __table_args__ = (
        Index("idx_inventory_logs_reference", "reference_type", "reference_id"),
    )


class IntegrationLog(Base):
    __tablename__ = "integration_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    store_id = Column(String(36), nullable=True, index=True)
    integration_type = Column(String(50), nullable=False, default="shipstation")
    operation = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False)
    request_data = Column(JSONType, nullable=True)
    response_data = Column(JSONType, nullable=True)
    error_message = Column(Text, nullable=True)
    execution_time_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())

    __table_args__ = (
        Index("idx_integration_logs_operation_created", "operation", "created_at"),
    )


class IntegrationAlert(Base):
    """Alert raised from integration_logs failure patterns."""

    __tablename__ = "integration_alerts"

    id = Column(String(36), primary_key=True, default=_uuid)
    store_id = Column(String(36), nullable=True, index=True)
    integration_type = Column(String(50), nullable=False, default="shipstation")
    operation = Column(String(50), nullable=False)
    level = Column(String(20), nullable=False)
    alert_type = Column(String(50), nullable=False)
    message = Column(Text, nullable=False)
    details = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())

    __table_args__ = (
        Index("idx_integration_alerts_created", "created_at"),
    )


class StoreIntegration(Base):
    __tablename__ = "store_integrations"

    id = Column(String(36), primary_key=True, default=_uuid)
    store_id = Column(String(36), nullable=False, index=True)
    integration_type = Column(String(50), nullable=False, default="shipstation")
    api_key_encrypted = Column(Text, nullable=True)
    api_secret_encrypted = Column(Text, nullable=True)
    shipstation_username = Column(String(100), nullable=True, unique=True)
    shipstation_password_hash = Column(Text, nullable=True)
    shipstation_auth_enabled = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    configuration = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_now_utc,
        server_default=func.now(),
        onupdate=_now_utc,
    )

    __table_args__ = (
        UniqueConstraint("store_id", "integration_type", name="uq_store_integrations_store_type"),
    )


class ShipFrom(Base):
    __tablename__ = "shipfroms"

    id = Column(String(36), primary_key=True, default=_uuid)
    store_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    company_name = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    address_line1 = Column(String(255), nullable=False)
    address_line2 = Column(String(255), nullable=True)
    city_locality = Column(String(100), nullable=False)
    state_province = Column(String(100), nullable=False)
    postal_code = Column(String(20), nullable=False)
    country_code = Column(String(2), nullable=False, default="US")
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())


class ShipmentNotification(Base):
    __tablename__ = "shipment_notifications"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    notification_type = Column(String(20), nullable=False)
    tracking_number = Column(String(100), nullable=True)
    carrier = Column(String(50), nullable=True)
    tracking_url = Column(Text, nullable=True)
    message = Column(Text, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    email_sent = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())


class WebhookEvent(Base):
    """Inbox of carrier webhook deliveries, keyed by payload hash."""

    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    dedupe_key = Column(String(64), nullable=False, unique=True)
    resource_type = Column(String(50), nullable=True)
    carrier_order_id = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False, default=WebhookEventStatus.RECEIVED.value)
    payload = Column(JSONType, nullable=True)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())

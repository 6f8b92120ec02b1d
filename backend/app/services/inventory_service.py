from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.models_sqlalchemy.models import (
    InventoryChangeReason,
    InventoryLog,
    Order,
    Product,
    WarehouseInventory,
)
from app.services.integration_log import _get_session, log_integration
from app.utils.logger import logger


STOCK_OK = "ok"
STOCK_WARNING = "warning"
STOCK_CRITICAL = "critical"

_VALID_REASONS = {r.value for r in InventoryChangeReason}


class ProductNotFoundError(LookupError):
    pass


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class InventoryAdjustment:
    """Intent to change one product's stock. Never persisted itself.

    With ``target_quantity`` set, stock is set to that absolute value and
    ``quantity_change`` is ignored; the delta logged is the one actually
    applied.
    """

    product_id: str
    quantity_change: int
    reason: str
    sku: Optional[str] = None
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    notes: Optional[str] = None
    target_quantity: Optional[int] = None


@dataclass
class InventoryAdjustmentResult:
    product_id: str
    applied: bool
    quantity_after: Optional[int] = None
    clamped: bool = False
    stock_level: str = STOCK_OK
    quantity_change: int = 0


def classify_stock_level(quantity: int, threshold: Optional[int] = None) -> str:
    warning_at = settings.LOW_STOCK_THRESHOLD if threshold is None else threshold
    if quantity <= settings.CRITICAL_STOCK_THRESHOLD:
        return STOCK_CRITICAL
    if quantity <= warning_at:
        return STOCK_WARNING
    return STOCK_OK


def _tracked(product_id: str):
    return (Product.id == product_id, Product.track_inventory.is_(True))


def _atomic_add(session: Session, product_id: str, delta: int) -> Optional[Tuple[Any, bool]]:
    """Add ``delta`` to stock in a single statement, flooring at zero.

    Returns ``(row, clamped)`` where row carries the new quantity, or None
    when the product does not track inventory.
    """
    now = _now_utc()
    returning = (Product.stock_quantity, Product.store_id, Product.low_stock_threshold)

    for _ in range(3):
        row = session.execute(
            update(Product)
            .where(*_tracked(product_id), Product.stock_quantity + delta >= 0)
            .values(stock_quantity=Product.stock_quantity + delta, updated_at=now)
            .returning(*returning)
            .execution_options(synchronize_session="fetch")
        ).first()
        if row is not None:
            return row, False

        row = session.execute(
            update(Product)
            .where(*_tracked(product_id), Product.stock_quantity + delta < 0)
            .values(stock_quantity=0, updated_at=now)
            .returning(*returning)
            .execution_options(synchronize_session="fetch")
        ).first()
        if row is not None:
            return row, True

        track = session.query(Product.track_inventory).filter(Product.id == product_id).first()
        if track is None:
            raise ProductNotFoundError(f"Product not found: {product_id}")
        if not track.track_inventory:
            return None
        # Stock moved between the two statements; try again.

    raise RuntimeError(f"Could not apply stock change to product {product_id}")


def _atomic_set(session: Session, product_id: str, target: int) -> Optional[Tuple[Any, int]]:
    """Set stock to ``target``; returns ``(row, delta)`` against the value replaced.

    The current quantity is read under a row lock, bypassing the identity
    map, and the update only lands if it is still that value.
    """
    now = _now_utc()
    returning = (Product.stock_quantity, Product.store_id, Product.low_stock_threshold)

    for _ in range(3):
        current = session.execute(
            select(Product.stock_quantity).where(*_tracked(product_id)).with_for_update()
        ).first()
        if current is None:
            track = session.query(Product.track_inventory).filter(Product.id == product_id).first()
            if track is None:
                raise ProductNotFoundError(f"Product not found: {product_id}")
            return None

        previous = int(current.stock_quantity or 0)
        row = session.execute(
            update(Product)
            .where(*_tracked(product_id), Product.stock_quantity == current.stock_quantity)
            .values(stock_quantity=target, updated_at=now)
            .returning(*returning)
            .execution_options(synchronize_session="fetch")
        ).first()
        if row is not None:
            return row, target - previous

    raise RuntimeError(f"Could not set stock for product {product_id}")


def apply_adjustment(adjustment: InventoryAdjustment, *, db: Optional[Session] = None) -> InventoryAdjustmentResult:
    """Apply a signed stock delta and append one inventory_logs row.

    This is the only code path that writes ``products.stock_quantity``.
    Untracked products are left alone; results below zero are floored at
    zero and logged as a warning.
    """
    if adjustment.reason not in _VALID_REASONS:
        raise ValueError(f"Unknown inventory change reason: {adjustment.reason}")
    setting = adjustment.target_quantity is not None
    if setting and int(adjustment.target_quantity) < 0:
        raise ValueError(f"Target quantity must not be negative: {adjustment.target_quantity}")

    session, owns_session = _get_session(db)
    try:
        clamped = False
        if setting:
            outcome = _atomic_set(session, adjustment.product_id, int(adjustment.target_quantity))
            if outcome is None:
                return InventoryAdjustmentResult(product_id=adjustment.product_id, applied=False)
            row, change = outcome
        else:
            change = int(adjustment.quantity_change)
            outcome = _atomic_add(session, adjustment.product_id, change)
            if outcome is None:
                return InventoryAdjustmentResult(product_id=adjustment.product_id, applied=False)
            row, clamped = outcome

        notes = adjustment.notes
        if clamped:
            logger.warning(
                "Stock for product %s (%s) would go negative by change %s; clamped at 0",
                adjustment.product_id,
                adjustment.sku or "-",
                adjustment.quantity_change,
            )
            notes = f"{notes} (clamped at 0)" if notes else "clamped at 0"

        # A set that finds stock already at target changes nothing.
        if change or not setting:
            session.add(
                InventoryLog(
                    store_id=row.store_id,
                    product_id=adjustment.product_id,
                    change_type=adjustment.reason,
                    quantity_change=change,
                    quantity_after=row.stock_quantity,
                    reference_type=adjustment.reference_type,
                    reference_id=adjustment.reference_id,
                    notes=notes,
                )
            )

        level = classify_stock_level(row.stock_quantity, row.low_stock_threshold)
        if level == STOCK_CRITICAL:
            logger.warning("Critical stock for product %s: %s left", adjustment.product_id, row.stock_quantity)
        elif level == STOCK_WARNING:
            logger.info("Low stock for product %s: %s left", adjustment.product_id, row.stock_quantity)

        if owns_session:
            session.commit()
        else:
            session.flush()

        logger.info(
            "Inventory adjusted for %s: %+d (new total: %s)",
            adjustment.sku or adjustment.product_id,
            change,
            row.stock_quantity,
        )
        return InventoryAdjustmentResult(
            product_id=adjustment.product_id,
            applied=True,
            quantity_after=row.stock_quantity,
            clamped=clamped,
            stock_level=level,
            quantity_change=change,
        )
    except Exception:
        if owns_session:
            session.rollback()
        raise
    finally:
        if owns_session:
            session.close()


def check_low_stock(product_id: str, *, db: Optional[Session] = None) -> str:
    session, owns_session = _get_session(db)
    try:
        product = session.get(Product, product_id)
        if product is None:
            raise ProductNotFoundError(f"Product not found: {product_id}")
        return classify_stock_level(product.stock_quantity, product.low_stock_threshold)
    finally:
        if owns_session:
            session.close()


def decrement_order_items(
    session: Session,
    order: Order,
    *,
    reason: str = InventoryChangeReason.SHIPMENT.value,
) -> List[InventoryAdjustmentResult]:
    """Decrement stock for every line item of ``order`` inside ``session``.

    The caller owns the transaction, so all items commit or roll back together.
    """
    results: List[InventoryAdjustmentResult] = []
    for item in order.items:
        if not item.product_id:
            logger.warning("Order %s item %s has no product; skipping stock change", order.id, item.id)
            continue
        results.append(
            apply_adjustment(
                InventoryAdjustment(
                    product_id=item.product_id,
                    sku=item.product_sku,
                    quantity_change=-int(item.quantity),
                    reason=reason,
                    reference_type="order",
                    reference_id=order.id,
                    notes=f"Inventory adjustment for shipped order - {reason}",
                ),
                db=session,
            )
        )
    return results


def shipment_already_applied(session: Session, order_id: str) -> bool:
    return (
        session.query(InventoryLog.id)
        .filter(InventoryLog.reference_type == "order")
        .filter(InventoryLog.reference_id == order_id)
        .filter(InventoryLog.change_type == InventoryChangeReason.SHIPMENT.value)
        .first()
        is not None
    )


def update_inventory_after_shipment(
    order_id: str,
    shipment_data: Optional[Dict[str, Any]] = None,
    *,
    db: Optional[Session] = None,
) -> Dict[str, Any]:
    """Decrement stock for a shipped order in one transaction.

    Returns a summary dict. ``error_code`` is ``order_not_found`` when the
    order does not exist, which callers should not retry.
    """
    start = time.time()
    session, owns_session = _get_session(db)
    store_id: Optional[str] = None
    try:
        order = session.get(Order, order_id)
        if order is None:
            return {"success": False, "order_id": order_id, "error": "Order not found", "error_code": "order_not_found"}
        store_id = order.store_id

        if shipment_already_applied(session, order_id):
            logger.info("Shipment inventory already applied for order %s; skipping", order_id)
            return {"success": True, "order_id": order_id, "adjusted": 0, "skipped": True}

        results = decrement_order_items(session, order)
        order.fulfillment_status = "shipped"

        log_integration(
            operation="inventory_sync",
            status="success",
            store_id=store_id,
            request_data={"order_id": order_id, "shipment_data": shipment_data or {}},
            response_data={"adjusted": sum(1 for r in results if r.applied)},
            execution_time_ms=int((time.time() - start) * 1000),
            db=session,
        )

        if owns_session:
            session.commit()
        else:
            session.flush()
        return {
            "success": True,
            "order_id": order_id,
            "adjusted": sum(1 for r in results if r.applied),
            "skipped": False,
        }
    except (ProductNotFoundError, SQLAlchemyError) as exc:
        logger.error("Inventory update after shipment failed for order %s: %s", order_id, exc)
        session.rollback()
        log_integration(
            operation="inventory_sync",
            status="failure",
            store_id=store_id,
            request_data={"order_id": order_id},
            error_message=str(exc),
            execution_time_ms=int((time.time() - start) * 1000),
            db=session,
        )
        if owns_session:
            session.commit()
        return {"success": False, "order_id": order_id, "error": str(exc)}
    finally:
        if owns_session:
            session.close()


def _upsert_warehouse_row(session: Session, product_id: str, item: Dict[str, Any]) -> None:
    row = (
        session.query(WarehouseInventory)
        .filter(WarehouseInventory.product_id == product_id)
        .filter(WarehouseInventory.warehouse_id == str(item["warehouse_id"]))
        .one_or_none()
    )
    if row is None:
        row = WarehouseInventory(product_id=product_id, warehouse_id=str(item["warehouse_id"]))
        session.add(row)
    row.available_quantity = int(item.get("available_quantity") or 0)
    row.allocated_quantity = int(item.get("allocated_quantity") or 0)
    row.updated_at = _now_utc()


def sync_with_external_feed(
    store_id: str,
    items: Sequence[Dict[str, Any]],
    *,
    db: Optional[Session] = None,
) -> Dict[str, Any]:
    """Reconcile stock against an external feed keyed by SKU.

    Each item is ``{sku, available_quantity, allocated_quantity?, warehouse_id?}``.
    Per-item problems are collected; database errors abort the whole sync.
    """
    start = time.time()
    session, owns_session = _get_session(db)
    synced = 0
    errors: List[str] = []
    try:
        for item in items:
            sku = str(item.get("sku") or "").strip()
            if not sku:
                errors.append("Item without SKU skipped")
                continue
            try:
                target = int(item.get("available_quantity"))
            except (TypeError, ValueError):
                errors.append(f"Invalid available_quantity for SKU {sku}")
                continue

            product = (
                session.query(Product)
                .filter(Product.store_id == store_id)
                .filter(Product.sku == sku)
                .one_or_none()
            )
            if product is None:
                errors.append(f"Product not found for SKU {sku}")
                continue

            try:
                apply_adjustment(
                    InventoryAdjustment(
                        product_id=product.id,
                        sku=sku,
                        quantity_change=0,
                        target_quantity=target,
                        reason=InventoryChangeReason.ADJUSTMENT.value,
                        reference_type="manual",
                        reference_id=f"sync:{store_id}",
                        notes="External inventory sync",
                    ),
                    db=session,
                )
                if item.get("warehouse_id"):
                    _upsert_warehouse_row(session, product.id, item)
                synced += 1
            except (ProductNotFoundError, ValueError) as exc:
                errors.append(f"SKU {sku}: {exc}")

        log_integration(
            operation="inventory_sync",
            status="success" if not errors else "warning",
            store_id=store_id,
            request_data={"items": len(items)},
            response_data={"synced": synced, "errors": errors[:50]},
            execution_time_ms=int((time.time() - start) * 1000),
            db=session,
        )
        if owns_session:
            session.commit()
        else:
            session.flush()
        return {"success": not errors, "synced": synced, "errors": errors}
    except SQLAlchemyError as exc:
        logger.error("Inventory sync failed for store %s", store_id, exc_info=True)
        session.rollback()
        return {"success": False, "synced": 0, "errors": errors + [f"Sync aborted: {exc}"]}
    finally:
        if owns_session:
            session.close()


def handle_stock_level_adjustments(
    adjustments: Sequence[Dict[str, Any]],
    *,
    db: Optional[Session] = None,
) -> Dict[str, Any]:
    """Bulk manual adjustments.

    Each entry is ``{product_id, adjustment_type: increase|decrease|set,
    quantity, reason?, notes?}``.
    """
    session, owns_session = _get_session(db)
    processed = 0
    errors: List[str] = []
    try:
        for entry in adjustments:
            product_id = entry.get("product_id")
            kind = str(entry.get("adjustment_type") or "").lower()
            try:
                quantity = int(entry.get("quantity"))
            except (TypeError, ValueError):
                errors.append(f"Invalid quantity for product {product_id}")
                continue
            if quantity < 0:
                errors.append(f"Quantity must not be negative for product {product_id}")
                continue

            product = session.get(Product, product_id) if product_id else None
            if product is None:
                errors.append(f"Product not found: {product_id}")
                continue

            target: Optional[int] = None
            if kind == "increase":
                delta = quantity
            elif kind == "decrease":
                delta = -quantity
            elif kind == "set":
                delta, target = 0, quantity
            else:
                errors.append(f"Unknown adjustment type '{kind}' for product {product_id}")
                continue

            if delta == 0 and target is None:
                processed += 1
                continue
            try:
                apply_adjustment(
                    InventoryAdjustment(
                        product_id=product.id,
                        sku=product.sku,
                        quantity_change=delta,
                        target_quantity=target,
                        reason=entry.get("reason") or InventoryChangeReason.ADJUSTMENT.value,
                        reference_type="manual",
                        reference_id=entry.get("reference_id"),
                        notes=entry.get("notes") or f"Manual stock {kind}",
                    ),
                    db=session,
                )
                processed += 1
            except (ProductNotFoundError, ValueError) as exc:
                errors.append(f"Product {product_id}: {exc}")

        if owns_session:
            session.commit()
        else:
            session.flush()
        return {"success": not errors, "processed": processed, "errors": errors}
    except SQLAlchemyError as exc:
        logger.error("Bulk stock adjustment failed", exc_info=True)
        session.rollback()
        return {"success": False, "processed": 0, "errors": errors + [f"Adjustment aborted: {exc}"]}
    finally:
        if owns_session:
            session.close()


def get_low_stock_products(store_id: str, *, db: Optional[Session] = None) -> List[Dict[str, Any]]:
    session, owns_session = _get_session(db)
    try:
        threshold = func.coalesce(Product.low_stock_threshold, settings.LOW_STOCK_THRESHOLD)
        rows = (
            session.query(Product)
            .filter(Product.store_id == store_id)
            .filter(Product.track_inventory.is_(True))
            .filter(Product.stock_quantity <= threshold)
            .order_by(Product.stock_quantity.asc(), Product.name.asc())
            .all()
        )
        return [
            {
                "product_id": p.id,
                "sku": p.sku,
                "name": p.name,
                "stock_quantity": p.stock_quantity,
                "stock_level": classify_stock_level(p.stock_quantity, p.low_stock_threshold),
            }
            for p in rows
        ]
    finally:
        if owns_session:
            session.close()


def get_inventory_summary(store_id: str, *, db: Optional[Session] = None) -> Dict[str, int]:
    session, owns_session = _get_session(db)
    try:
        base = session.query(Product).filter(Product.store_id == store_id)
        tracked = base.filter(Product.track_inventory.is_(True))
        threshold = func.coalesce(Product.low_stock_threshold, settings.LOW_STOCK_THRESHOLD)
        return {
            "total_products": base.count(),
            "tracked_products": tracked.count(),
            "total_units": int(
                session.query(func.coalesce(func.sum(Product.stock_quantity), 0))
                .filter(Product.store_id == store_id, Product.track_inventory.is_(True))
                .scalar()
                or 0
            ),
            "low_stock": tracked.filter(Product.stock_quantity > 0, Product.stock_quantity <= threshold).count(),
            "out_of_stock": tracked.filter(Product.stock_quantity <= 0).count(),
        }
    finally:
        if owns_session:
            session.close()


def get_inventory_history(product_id: str, *, limit: int = 50, db: Optional[Session] = None) -> List[InventoryLog]:
    session, owns_session = _get_session(db)
    try:
        return (
            session.query(InventoryLog)
            .filter(InventoryLog.product_id == product_id)
            .order_by(InventoryLog.created_at.desc())
            .limit(max(1, min(limit, 500)))
            .all()
        )
    finally:
        if owns_session:
            session.close()

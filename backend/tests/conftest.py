import os
import sys

# Settings are read at import time; point them at an in-memory database and
# keep the background loop out of TestClient startup.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JOB_QUEUE_ENABLED", "false")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from app.models_sqlalchemy import Base, SessionLocal
from app.models_sqlalchemy import models
from app.services.shipstation.credentials import save_store_credentials


STORE_ID = "store-1"


@pytest.fixture(autouse=True)
def engine():
    """Fresh in-memory database per test, shared by every SessionLocal()."""
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    SessionLocal.configure(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def db(engine):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def make_product(db, *, sku="SKU-1", stock=10, store_id=STORE_ID, track=True, threshold=None, name=None):
    product = models.Product(
        store_id=store_id,
        sku=sku,
        name=name or f"Product {sku}",
        price=1999,
        stock_quantity=stock,
        track_inventory=track,
        low_stock_threshold=threshold,
    )
    db.add(product)
    db.flush()
    return product


def make_order(db, *, order_number="1001", status="confirmed", store_id=STORE_ID, items=(), **fields):
    """``items`` is a sequence of ``(product, quantity)`` pairs."""
    values = dict(
        store_id=store_id,
        order_number=order_number,
        status=status,
        customer_email="jane.doe@example.com",
        customer_phone="555-0100",
        shipping_address={
            "name": "Jane Doe",
            "street": "1 Main St",
            "city": "Springfield",
            "state": "IL",
            "postal_code": "62701",
            "country": "US",
        },
        total_amount=4500,
        tax_amount=300,
        shipping_amount=500,
    )
    values.update(fields)
    order = models.Order(**values)
    for product, quantity in items:
        order.items.append(
            models.OrderItem(
                product_id=product.id,
                product_sku=product.sku,
                product_name=product.name,
                quantity=quantity,
                price=product.price,
                total=product.price * quantity,
            )
        )
    db.add(order)
    db.flush()
    return order


def make_integration(db, *, store_id=STORE_ID, api_key="key-123", api_secret="secret-456", configuration=None):
    integration = save_store_credentials(
        store_id,
        api_key=api_key,
        api_secret=api_secret,
        configuration=configuration or {},
        db=db,
    )
    db.commit()
    return integration

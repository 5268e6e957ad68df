"""Shared fixtures: a throwaway SQLite database per test, plus floor/order factories."""
import os

# Must be set before any app module builds the default engine
os.environ.setdefault("DATABASE_URL", "sqlite:///./picking-test.db")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("RUN_OUTBOX_DISPATCHER", "0")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.db import models  # noqa: F401
from app.db.base import Base
from app.db.models.picking import Order, PickCart, PickCell, ProductSku
from app.db.models.settings import AppSetting
from services.picking import batches


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path / 'picking.db'}", future=True)
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    from fastapi.testclient import TestClient

    from app.db.session import get_db
    from main import app

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def line(sku, quantity=1, name=None):
    return {"sku": sku, "name": name or sku, "quantity": quantity}


@pytest.fixture
def make_cart(db):
    def _make(name="Cart-1", color="red"):
        cart = PickCart(name=name, color=color)
        db.add(cart)
        db.commit()
        return cart
    return _make


@pytest.fixture
def make_cell(db):
    def _make(name="Cell-A"):
        cell = PickCell(name=name)
        db.add(cell)
        db.commit()
        return cell
    return _make


@pytest.fixture
def make_orders(db):
    def _make(item_lists, *, personalized=False, prefix="1000"):
        """``item_lists`` is a list of item lists; order numbers are assigned in order."""
        orders = []
        for i, items in enumerate(item_lists, start=1):
            o = Order(order_number=f"{prefix}{i:03d}", items=items, raw_payload={}, is_personalized=personalized)
            db.add(o)
            orders.append(o)
        db.commit()
        return orders
    return _make


@pytest.fixture
def released_batch(db):
    """Batch the given orders and release them so they can be claimed."""
    def _make(orders, *, batch_type="ORDER_BY_SIZE", cells=(), personalized=False):
        result = batches.create_batch(
            db,
            order_numbers=[o.order_number for o in orders],
            batch_type=batch_type,
            cell_ids=[c.id for c in cells],
            personalized=personalized,
        )
        released = [batches.release_batch(db, batch_id=b["id"]) for b in result["batches"]]
        return released[0] if len(released) == 1 else released
    return _make


@pytest.fixture
def set_locations(db):
    def _set(mapping):
        for sku, location in mapping.items():
            db.add(ProductSku(sku=sku, bin_location=location))
        db.commit()
    return _set


@pytest.fixture
def set_picking_settings(db):
    def _set(**values):
        db.add(AppSetting(key="picking", value=values))
        db.commit()
    return _set

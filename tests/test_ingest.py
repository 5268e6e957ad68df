import pytest

from app.core.errors import ValidationFailed
from app.db.models.picking import Order
from services.picking import batches
from services.picking.ingest import ingest_orders, normalize_order, normalize_order_payload


def test_normalize_alternative_field_names():
    doc = normalize_order({
        "orderNumber": " 5001 ",
        "orderStatus": "awaiting_shipment",
        "shipTo": {"name": "Ada Lovelace"},
        "lineItems": [{"SKU": "mug-01", "qty": "2", "description": "Mug"}, "garbage"],
    })
    assert doc.order_number == "5001"
    assert doc.status == "AWAITING_SHIPMENT"
    assert doc.customer_name == "Ada Lovelace"
    assert [ln.model_dump() for ln in doc.items] == [{"sku": "mug-01", "name": "Mug", "quantity": 2}]
    assert not doc.is_personalized


def test_personalization_flag_on_a_line():
    doc = normalize_order({"id": 7, "items": [{"sku": "PEN", "engravingText": "For Bo"}]})
    assert doc.order_number == "7"
    assert doc.is_personalized


def test_unknown_status_defaults_to_awaiting_shipment():
    assert normalize_order({"id": 1, "status": "weird"}).status == "AWAITING_SHIPMENT"


def test_payload_shapes():
    assert len(normalize_order_payload({"id": 1})) == 1
    assert len(normalize_order_payload([{"id": 1}, {"id": 2}])) == 2
    assert len(normalize_order_payload({"orders": [{"id": 1}]})) == 1
    with pytest.raises(ValidationFailed):
        normalize_order_payload("nope")
    with pytest.raises(ValidationFailed):
        normalize_order_payload([{"items": []}])


def test_ingest_creates_updates_and_classifies(db):
    body = {"orders": [
        {"orderNumber": "1001", "items": [{"sku": "MUG", "quantity": 1}]},
        {"orderNumber": "1002", "items": [{"sku": "CAP", "quantity": 3}]},
        {"orderNumber": "SO-77", "items": [{"sku": "MUG", "quantity": 100}]},
        {"orderNumber": "1002", "items": [{"sku": "CAP", "quantity": 1}]},
    ]}

    result = ingest_orders(db, body)

    assert result["received"] == 4
    assert result["created"] == 2
    assert result["updated"] == 1
    assert result["skipped_order_numbers"] == ["SO-77"]
    assert result["classification"] == {"SINGLE": 2}
    assert db.query(Order).count() == 2


def test_reingest_keeps_lines_of_batched_orders(db, make_cell):
    cell = make_cell()
    ingest_orders(db, [{"id": "1001", "items": [{"sku": "CAP", "quantity": 3}]}])
    batches.create_batch(db, order_numbers=["1001"], cell_ids=[cell.id])

    result = ingest_orders(db, [{"id": "1001", "status": "ON_HOLD", "items": [{"sku": "MUG"}]}])

    order = db.query(Order).filter(Order.order_number == "1001").one()
    assert result["updated"] == 1
    assert order.status == "ON_HOLD"
    assert order.items == [{"sku": "CAP", "name": None, "quantity": 3}]

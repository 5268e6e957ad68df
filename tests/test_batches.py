from datetime import datetime, timezone

import pytest

from app.core.errors import InvalidTransition, NotFound, ValidationFailed
from app.db.models.picking import BatchCellAssignment, BulkBatch, Order, PickBatch
from services.picking import batches

from conftest import line


def test_size_category_boundaries():
    assert batches.size_category(12) == "standard"
    assert batches.size_category(13) == "oversized"
    assert batches.size_category(24) == "oversized"
    assert batches.size_category(25) == "print_only"


def test_batch_names_sequence_per_day(db, make_cell, make_orders):
    when = datetime(2026, 2, 5, 9, 30, tzinfo=timezone.utc)
    assert batches.generate_batch_name(db, "S", now=when) == "S-Feb05-001"
    db.add(PickBatch(name="S-Feb05-001", type="ORDER_BY_SIZE"))
    db.add(PickBatch(name="S-Feb05-007", type="ORDER_BY_SIZE"))
    db.commit()
    assert batches.generate_batch_name(db, "S", now=when) == "S-Feb05-008"
    assert batches.generate_batch_name(db, "BK", now=when) == "BK-Feb05-001"


def test_order_by_size_splits_standard_oversized_and_print_only(db, make_cell, make_orders):
    cell = make_cell()
    orders = make_orders([[line("A", 3)], [line("B", 20)], [line("C", 30)]])

    result = batches.create_batch(db, order_numbers=[o.order_number for o in orders],
                                  batch_type="ORDER_BY_SIZE", cell_ids=[cell.id])

    assert [(b["name"][:1], b["is_oversized"], b["total_orders"]) for b in result["batches"]] == [
        ("S", False, 1), ("O", True, 1),
    ]
    assert result["summary"]["print_only_order_numbers"] == ["1000003"]
    assert db.query(Order).filter(Order.order_number == "1000003").one().batch_id is None


def test_create_batch_validation(db, make_cell, make_orders):
    cell = make_cell()
    orders = make_orders([[line("A", 2)]])
    numbers = [o.order_number for o in orders]
    with pytest.raises(ValidationFailed):
        batches.create_batch(db, order_numbers=[], cell_ids=[cell.id])
    with pytest.raises(ValidationFailed):
        batches.create_batch(db, order_numbers=numbers, batch_type="WAVE", cell_ids=[cell.id])
    with pytest.raises(ValidationFailed):
        batches.create_batch(db, order_numbers=numbers, cell_ids=[])
    with pytest.raises(NotFound):
        batches.create_batch(db, order_numbers=numbers, cell_ids=["missing"])


def test_orders_only_batch_once(db, make_cell, make_orders):
    cell = make_cell()
    numbers = [o.order_number for o in make_orders([[line("A", 2)]])]
    batches.create_batch(db, order_numbers=numbers, cell_ids=[cell.id])
    with pytest.raises(ValidationFailed):
        batches.create_batch(db, order_numbers=numbers, cell_ids=[cell.id])


def test_auto_batching_by_classification(db, make_cell, make_orders, set_picking_settings):
    set_picking_settings(bulk_threshold=2)
    cell = make_cell()
    make_orders([[line("MUG")], [line("RED"), line("BLUE")], [line("BLUE"), line("RED")], [line("CAP", 3)]])
    make_orders([[line("PEN")]], personalized=True, prefix="9000")

    result = batches.batch_classified_pool(db, cell_ids=[cell.id], release=True)

    kinds = {(b["type"], b["is_personalized"]): b for b in result["batches"]}
    assert set(kinds) == {("SINGLES", False), ("BULK", False), ("ORDER_BY_SIZE", False), ("ORDER_BY_SIZE", True)}
    assert all(b["status"] == "RELEASED" for b in result["batches"])
    personalized = kinds[("ORDER_BY_SIZE", True)]
    assert personalized["name"].startswith("P-")
    assert db.query(BatchCellAssignment).filter(BatchCellAssignment.batch_id == personalized["id"]).count() == 0


def test_release_requires_cells_and_draft(db, make_cell, make_orders):
    cell = make_cell()
    numbers = [o.order_number for o in make_orders([[line("A", 2)]])]
    batch_id = batches.create_batch(db, order_numbers=numbers, cell_ids=[cell.id])["batches"][0]["id"]

    batches.set_batch_cells(db, batch_id=batch_id, cell_ids=[])
    with pytest.raises(ValidationFailed):
        batches.release_batch(db, batch_id=batch_id)

    batches.set_batch_cells(db, batch_id=batch_id, cell_ids=[cell.id])
    batch = batches.release_batch(db, batch_id=batch_id)
    assert batch.status == "RELEASED"
    with pytest.raises(InvalidTransition):
        batches.release_batch(db, batch_id=batch_id)


def test_reorder_queue_keeps_unlisted_batches_after(db, make_cell, make_orders):
    cell = make_cell()
    ids = []
    for prefix in ("1000", "2000", "3000"):
        numbers = [o.order_number for o in make_orders([[line("A", 2)]], prefix=prefix)]
        ids.append(batches.create_batch(db, order_numbers=numbers, cell_ids=[cell.id])["batches"][0]["id"])

    queue = batches.reorder_cell_queue(db, cell_id=cell.id, batch_ids=[ids[2]])

    assert [q["batch_id"] for q in queue] == [ids[2], ids[0], ids[1]]
    assert [q["priority"] for q in queue] == [0, 1, 2]
    with pytest.raises(ValidationFailed):
        batches.reorder_cell_queue(db, cell_id=cell.id, batch_ids=["unknown"])


def test_bulk_batch_rejects_orders_wider_than_a_shelf_row(db, make_cell, make_orders):
    cell = make_cell()
    wide = make_orders([[line("RED", 3), line("BLUE", 4)] for _ in range(4)])
    with pytest.raises(ValidationFailed) as exc:
        batches.create_batch(db, order_numbers=[o.order_number for o in wide], batch_type="BULK",
                             cell_ids=[cell.id])
    assert exc.value.details["order_numbers"] == [o.order_number for o in wide]
    assert db.query(PickBatch).count() == 0
    assert db.query(BulkBatch).count() == 0

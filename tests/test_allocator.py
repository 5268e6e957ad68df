import pytest

from app.core.errors import CartNotAvailable, ConcurrentClaim, NoOrdersAvailable, NotFound, ValidationFailed
from app.db.models.picking import BulkBatch, ChunkBulkBatchAssignment, Order, PickBatch, PickCart
from app.db.models.security_audit import AuditLog
from app.events.outbox import OutboxEvent
from services.picking import batches
from services.picking.allocator import claim_chunk
from services.picking.bins import attach_orders

from conftest import line


@pytest.fixture
def floor(make_cart, make_cell):
    return make_cart(), make_cell()


def _orders_on(db, chunk_id):
    return db.query(Order).filter(Order.chunk_id == chunk_id).order_by(Order.bin_number).all()


def test_claim_lays_orders_out_on_cart(db, floor, make_orders, released_batch):
    cart, cell = floor
    orders = make_orders([[line("A", 2)], [line("B", 2)], [line("C", 2)]])
    batch = released_batch(orders, cells=[cell])

    chunk = claim_chunk(db, cart_id=cart.id, picker_name="dana", cell_id=cell.id)

    assert chunk.chunk_number == 1
    assert chunk.status == "PICKING"
    assert chunk.picking_mode == "ORDER_BY_SIZE"
    assert chunk.orders_in_chunk == 3
    assert [o.bin_number for o in _orders_on(db, chunk.id)] == [1, 2, 3]
    db.refresh(cart)
    db.refresh(batch)
    assert cart.status == "PICKING"
    assert batch.status == "IN_PROGRESS"
    assert db.query(OutboxEvent).filter(OutboxEvent.topic == "picking.chunk.claimed").count() == 1
    assert db.query(AuditLog).filter(AuditLog.action == "PICK_CHUNK_CLAIMED").count() == 1


def test_claim_validates_input(db, floor):
    cart, cell = floor
    with pytest.raises(ValidationFailed, match="cartId"):
        claim_chunk(db, cart_id="", picker_name="dana", cell_id=cell.id)
    with pytest.raises(ValidationFailed, match="pickerName"):
        claim_chunk(db, cart_id=cart.id, picker_name="  ", cell_id=cell.id)
    with pytest.raises(ValidationFailed, match="cellId"):
        claim_chunk(db, cart_id=cart.id, picker_name="dana")
    with pytest.raises(NotFound):
        claim_chunk(db, cart_id="missing", picker_name="dana", cell_id=cell.id)
    with pytest.raises(NotFound):
        claim_chunk(db, cart_id=cart.id, picker_name="dana", cell_id="missing")


def test_busy_cart_is_rejected(db, floor, make_orders, released_batch):
    cart, cell = floor
    released_batch(make_orders([[line("A", 2)], [line("B", 2)]]), cells=[cell])
    claim_chunk(db, cart_id=cart.id, picker_name="dana", cell_id=cell.id)

    with pytest.raises(CartNotAvailable):
        claim_chunk(db, cart_id=cart.id, picker_name="lee", cell_id=cell.id)


def test_nothing_to_pick_leaves_cart_available(db, floor):
    cart, cell = floor
    with pytest.raises(NoOrdersAvailable):
        claim_chunk(db, cart_id=cart.id, picker_name="dana", cell_id=cell.id)
    db.refresh(cart)
    assert cart.status == "AVAILABLE"


def test_stale_cart_read_loses_the_race(session_factory, floor, make_orders, released_batch):
    cart, cell = floor
    released_batch(make_orders([[line("A", 2)], [line("B", 2)]]), cells=[cell])

    slow = session_factory()
    fast = session_factory()
    try:
        assert slow.get(PickCart, cart.id).status == "AVAILABLE"
        claim_chunk(fast, cart_id=cart.id, picker_name="fast", cell_id=cell.id)

        with pytest.raises(CartNotAvailable):
            claim_chunk(slow, cart_id=cart.id, picker_name="slow", cell_id=cell.id)
        assert slow.query(Order).filter(Order.chunk_id.isnot(None)).count() == 2
    finally:
        slow.close()
        fast.close()


def test_stale_order_read_cannot_attach_twice(session_factory, floor, make_orders, released_batch):
    cart, cell = floor
    orders = make_orders([[line("A", 2)], [line("B", 2)]])
    released_batch(orders, cells=[cell])

    slow = session_factory()
    fast = session_factory()
    try:
        stale = slow.query(Order).order_by(Order.order_number).all()
        chunk = claim_chunk(fast, cart_id=cart.id, picker_name="fast", cell_id=cell.id)

        with pytest.raises(ConcurrentClaim):
            attach_orders(slow, chunk, stale)
        slow.rollback()
        assert {o.chunk_id for o in fast.query(Order).all()} == {chunk.id}
    finally:
        slow.close()
        fast.close()


def test_claims_never_share_orders(db, make_cart, make_cell, make_orders, released_batch, set_picking_settings):
    set_picking_settings(standard_max_bins=2)
    cell = make_cell()
    carts = [make_cart(f"Cart-{i}") for i in range(3)]
    released_batch(make_orders([[line("A", 2)], [line("B", 2)], [line("C", 2)]]), cells=[cell])

    first = claim_chunk(db, cart_id=carts[0].id, picker_name="a", cell_id=cell.id)
    second = claim_chunk(db, cart_id=carts[1].id, picker_name="b", cell_id=cell.id)
    with pytest.raises(NoOrdersAvailable):
        claim_chunk(db, cart_id=carts[2].id, picker_name="c", cell_id=cell.id)

    assert (first.chunk_number, second.chunk_number) == (1, 2)
    assert first.orders_in_chunk == 2
    assert second.orders_in_chunk == 1
    first_numbers = {o.order_number for o in _orders_on(db, first.id)}
    second_numbers = {o.order_number for o in _orders_on(db, second.id)}
    assert not first_numbers & second_numbers


def test_cell_queue_order_decides_the_batch(db, floor, make_orders, released_batch):
    cart, cell = floor
    early = released_batch(make_orders([[line("A", 2)]], prefix="1000"), cells=[cell])
    late = released_batch(make_orders([[line("B", 2)]], prefix="2000"), cells=[cell])
    batches.reorder_cell_queue(db, cell_id=cell.id, batch_ids=[late.id, early.id])

    chunk = claim_chunk(db, cart_id=cart.id, picker_name="dana", cell_id=cell.id)
    assert chunk.batch_id == late.id


def test_singles_chunk_groups_by_sku(db, floor, make_orders, released_batch, set_locations):
    cart, cell = floor
    set_locations({"MUG": "B-01", "CAP": "A-01"})
    orders = make_orders([[line("MUG")], [line("MUG")], [line("CAP")], [line("MUG")]])
    released_batch(orders, batch_type="SINGLES", cells=[cell])

    chunk = claim_chunk(db, cart_id=cart.id, picker_name="dana", cell_id=cell.id)

    bins = {o.order_number: o.bin_number for o in _orders_on(db, chunk.id)}
    assert chunk.picking_mode == "SINGLES"
    assert bins == {"1000003": 1, "1000001": 2, "1000002": 2, "1000004": 2}


def test_bulk_chunk_takes_whole_shelves(db, floor, make_orders, released_batch, set_picking_settings):
    set_picking_settings(bulk_max_orders_per_split=2)
    cart, cell = floor
    orders = make_orders([[line("RED"), line("WHITE")] for _ in range(5)])
    batch = released_batch(orders, batch_type="BULK", cells=[cell])
    assert db.query(BulkBatch).filter(BulkBatch.batch_id == batch.id).count() == 3

    chunk = claim_chunk(db, cart_id=cart.id, picker_name="dana", cell_id=cell.id)

    assert chunk.orders_in_chunk == 5
    assert sorted(o.bin_number for o in _orders_on(db, chunk.id)) == [1, 2, 3, 4, 5]
    shelves = (db.query(ChunkBulkBatchAssignment)
               .filter(ChunkBulkBatchAssignment.chunk_id == chunk.id)
               .order_by(ChunkBulkBatchAssignment.shelf_number)
               .all())
    assert [s.shelf_number for s in shelves] == [1, 2, 3]
    assert {bb.status for bb in db.query(BulkBatch).all()} == {"ASSIGNED"}


def test_personalized_claim_needs_no_cell(db, make_cart, make_orders, released_batch):
    cart = make_cart()
    orders = make_orders([[line("PEN")], [line("PEN", 2)]], personalized=True)
    batch = released_batch(orders, personalized=True)
    assert batch.is_personalized

    chunk = claim_chunk(db, cart_id=cart.id, picker_name="dana", personalized=True)
    assert chunk.is_personalized
    assert chunk.orders_in_chunk == 2


def test_unreleased_batches_are_not_pickable(db, floor, make_orders):
    cart, cell = floor
    orders = make_orders([[line("A", 2)]])
    batches.create_batch(db, order_numbers=[o.order_number for o in orders], batch_type="ORDER_BY_SIZE",
                         cell_ids=[cell.id])
    assert db.query(PickBatch).one().status == "DRAFT"

    with pytest.raises(NoOrdersAvailable):
        claim_chunk(db, cart_id=cart.id, picker_name="dana", cell_id=cell.id)

"""Chunk claiming.

A picker with a free cart asks for work; we pick the batch, pull a bounded
set of unassigned orders for its picking mode, create the chunk and lay the
orders out on the cart. Everything happens in one transaction: the cart flip
and the order attach are both conditional updates, so two pickers racing for
the same cart or the same orders cannot both win.
"""
from __future__ import annotations

from collections import defaultdict

import structlog
from sqlalchemy import exists, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from app.core.audit import audit
from app.core.errors import CartNotAvailable, ConcurrentClaim, NoOrdersAvailable, NotFound, ValidationFailed
from app.db.models.common import utc_now
from app.db.models.picking import (
    BATCH_BULK, BATCH_SINGLES, CART_AVAILABLE, CART_PICKING, CHUNK_PICKING,
    ORDER_AWAITING_SHIPMENT, PICKABLE_BATCH_STATUSES,
    BatchCellAssignment, BulkBatch, Chunk, Order, PickBatch, PickCart, PickCell,
)
from app.db.session import atomic
from app.events.bus import publish
from services.picking.bins import LocationResolver, ProductSkuLocationResolver, assign_bins
from services.picking.settings import PickingSettings, load_settings
from services.picking.signature import dominant_sku

logger = structlog.get_logger(__name__)


def _unassigned(batch_id):
    return (Order.batch_id == batch_id,
            Order.chunk_id.is_(None),
            Order.status == ORDER_AWAITING_SHIPMENT)


def _has_unassigned_orders():
    return exists().where(*_unassigned(PickBatch.id))


def _has_claimable_shelf():
    return exists().where(
        BulkBatch.batch_id == PickBatch.id,
        BulkBatch.status == "PENDING",
        Order.bulk_batch_id == BulkBatch.id,
        Order.chunk_id.is_(None),
        Order.status == ORDER_AWAITING_SHIPMENT,
    )


def select_batch(db: Session, *, cell_id: str | None, personalized: bool) -> PickBatch | None:
    q = db.query(PickBatch).filter(PickBatch.status.in_(PICKABLE_BATCH_STATUSES), _has_unassigned_orders())
    # Bulk orders are only claimable through a PENDING shelf
    q = q.filter(or_(PickBatch.type != BATCH_BULK, _has_claimable_shelf()))
    if personalized:
        no_cells = ~exists().where(BatchCellAssignment.batch_id == PickBatch.id)
        q = q.filter(PickBatch.is_personalized == True, no_cells)  # noqa: E712
        return q.order_by(PickBatch.priority.asc(), PickBatch.created_at.asc()).first()

    return (q.join(BatchCellAssignment, BatchCellAssignment.batch_id == PickBatch.id)
            .filter(BatchCellAssignment.cell_id == cell_id)
            .order_by(BatchCellAssignment.priority.asc(), PickBatch.priority.asc(), PickBatch.created_at.asc())
            .first())


def _fifo(q):
    return q.order_by(Order.created_at.asc(), Order.order_number.asc())


def select_singles_orders(db: Session, batch: PickBatch, settings: PickingSettings) -> list[Order]:
    rows = _fifo(db.query(Order).filter(*_unassigned(batch.id))).with_for_update(skip_locked=True).all()

    groups: dict[str, list[Order]] = defaultdict(list)
    for o in rows:
        groups[dominant_sku(o.items) or ""].append(o)

    max_bins = settings.max_bins(oversized=batch.is_oversized)
    largest_first = sorted(groups.items(), key=lambda kv: (-len(kv[1]), kv[0]))[:max_bins]
    selected: list[Order] = []
    for _, members in largest_first:
        selected.extend(members[:settings.singles_max_orders_per_bin])
    return selected


def select_bulk_orders(db: Session, batch: PickBatch, settings: PickingSettings) -> tuple[list[Order], list[BulkBatch]]:
    has_orders = exists().where(
        Order.bulk_batch_id == BulkBatch.id,
        Order.chunk_id.is_(None),
        Order.status == ORDER_AWAITING_SHIPMENT,
    )
    shelves = (db.query(BulkBatch)
               .filter(BulkBatch.batch_id == batch.id, BulkBatch.status == "PENDING", has_orders)
               .order_by(BulkBatch.split_index.asc())
               .limit(settings.bulk_max_shelves)
               .with_for_update(skip_locked=True)
               .all())
    if not shelves:
        return [], []

    orders = _fifo(db.query(Order).filter(
        Order.bulk_batch_id.in_([bb.id for bb in shelves]),
        Order.chunk_id.is_(None),
        Order.status == ORDER_AWAITING_SHIPMENT,
    )).with_for_update(skip_locked=True).all()
    return orders, shelves


def select_default_orders(db: Session, batch: PickBatch, settings: PickingSettings) -> list[Order]:
    return (_fifo(db.query(Order).filter(*_unassigned(batch.id)))
            .limit(settings.max_bins(oversized=batch.is_oversized))
            .with_for_update(skip_locked=True)
            .all())


def next_chunk_number(db: Session, batch_id: str) -> int:
    current = db.query(func.max(Chunk.chunk_number)).filter(Chunk.batch_id == batch_id).scalar()
    return (current or 0) + 1


def _take_cart(db: Session, cart: PickCart) -> None:
    result = db.execute(
        update(PickCart)
        .where(PickCart.id == cart.id, PickCart.status == CART_AVAILABLE, PickCart.active == True)  # noqa: E712
        .values(status=CART_PICKING)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise CartNotAvailable("Cart is already in use", cart_id=cart.id)
    set_committed_value(cart, "status", CART_PICKING)


def claim_chunk(
    db: Session,
    *,
    cart_id: str | None,
    picker_name: str | None,
    cell_id: str | None = None,
    personalized: bool = False,
    resolver: LocationResolver | None = None,
) -> Chunk:
    cart_id = (cart_id or "").strip()
    picker_name = (picker_name or "").strip()
    cell_id = (cell_id or "").strip() or None
    if not cart_id:
        raise ValidationFailed("cartId is required")
    if not picker_name:
        raise ValidationFailed("pickerName is required")
    if not personalized and not cell_id:
        raise ValidationFailed("cellId is required unless claiming personalized work")

    cart = db.get(PickCart, cart_id)
    if not cart or not cart.active:
        raise NotFound("Cart not found", cart_id=cart_id)
    if cart.status != CART_AVAILABLE:
        raise CartNotAvailable(f"Cart is {cart.status}", cart_id=cart_id, status=cart.status)
    if not personalized:
        cell = db.get(PickCell, cell_id)
        if not cell or not cell.active:
            raise NotFound("Cell not found", cell_id=cell_id)

    settings = load_settings(db)
    resolver = resolver or ProductSkuLocationResolver(db)
    log = logger.bind(cart_id=cart_id, picker=picker_name, cell_id=cell_id, personalized=personalized)

    with atomic(db):
        _take_cart(db, cart)

        batch = select_batch(db, cell_id=cell_id, personalized=personalized)
        if batch is None:
            raise NoOrdersAvailable("No orders available to pick", cell_id=cell_id, personalized=personalized)

        bulk_batches: list[BulkBatch] = []
        if batch.type == BATCH_BULK:
            orders, bulk_batches = select_bulk_orders(db, batch, settings)
        elif batch.type == BATCH_SINGLES:
            orders = select_singles_orders(db, batch, settings)
        else:
            orders = select_default_orders(db, batch, settings)
        if not orders:
            raise NoOrdersAvailable("No orders available to pick", batch_id=batch.id)

        now = utc_now()
        chunk = Chunk(
            batch_id=batch.id,
            chunk_number=next_chunk_number(db, batch.id),
            status=CHUNK_PICKING,
            picking_mode=batch.type,
            is_personalized=batch.is_personalized,
            cart_id=cart.id,
            picker_name=picker_name,
            orders_in_chunk=len(orders),
            orders_skipped=0,
            claimed_at=now,
            picking_started_at=now,
        )
        db.add(chunk)
        try:
            db.flush()
        except IntegrityError as e:
            raise ConcurrentClaim("Chunk number already taken, retry the claim", batch_id=batch.id) from e

        plan = assign_bins(db, chunk, orders, resolver=resolver, bulk_batches=bulk_batches)

        if batch.status in ("ACTIVE", "RELEASED"):
            batch.status = "IN_PROGRESS"

        audit(db, actor=picker_name, action="PICK_CHUNK_CLAIMED", entity_type="Chunk", entity_id=chunk.id,
              payload={"batch_id": batch.id, "cart_id": cart.id, "chunk_number": chunk.chunk_number,
                       "orders": len(orders), "bins": plan.bin_count})
        publish(db, "picking.chunk.claimed", {
            "chunk_id": chunk.id,
            "batch_id": batch.id,
            "cart_id": cart.id,
            "picker_name": picker_name,
            "picking_mode": chunk.picking_mode,
            "order_numbers": [o.order_number for o in orders],
        })

    log.info("chunk_claimed", chunk_id=chunk.id, batch=batch.name, chunk_number=chunk.chunk_number,
             mode=chunk.picking_mode, orders=len(orders))
    return chunk

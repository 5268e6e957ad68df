"""Chunk state transitions after the claim.

    PICKING --complete_chunk--> PICKED               (cart PICKED_READY)
    PICKING --complete_chunk--> READY_FOR_ENGRAVING  (personalized, cart ENGRAVING)
    PICKING | PICKED --cancel_chunk--> CANCELLED     (cart AVAILABLE)

Stock-outs are a partial compensation: only the affected orders go back to
the pool and the chunk keeps picking.
"""
from __future__ import annotations

from datetime import datetime

import structlog
from sqlalchemy import func, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from app.core.audit import audit
from app.core.errors import InvalidTransition, NotFound, ValidationFailed
from app.db.models.common import as_utc, utc_now
from app.db.models.picking import (
    ACTIVE_CHUNK_STATUSES, CART_AVAILABLE, CART_ENGRAVING, CART_PICKED_READY,
    CHUNK_CANCELLED, CHUNK_PICKED, CHUNK_PICKING, CHUNK_READY_FOR_ENGRAVING,
    ORDER_AWAITING_SHIPMENT, BulkBatch, Chunk, ChunkBulkBatchAssignment, Order, PickBatch, PickCart,
)
from app.db.session import atomic
from app.events.bus import publish
from services.picking.bulk import requeue_bulk_orders

logger = structlog.get_logger(__name__)

DEFAULT_CANCEL_REASON = "picker_cancelled"
DEFAULT_RELEASE_REASON = "admin_release"


def duration_seconds(start: datetime | None, end: datetime | None) -> int | None:
    if start is None or end is None:
        return None
    return max(0, int((as_utc(end) - as_utc(start)).total_seconds()))


def get_chunk(db: Session, chunk_id: str | None) -> Chunk:
    if not chunk_id:
        raise ValidationFailed("chunkId is required")
    chunk = db.get(Chunk, chunk_id)
    if not chunk:
        raise NotFound("Chunk not found", chunk_id=chunk_id)
    return chunk


def require_status(chunk: Chunk, *allowed: str, action: str) -> None:
    if chunk.status not in allowed:
        raise InvalidTransition(
            f"Cannot {action} a chunk in status {chunk.status}",
            chunk_id=chunk.id, status=chunk.status, allowed=list(allowed),
        )


def transition(db: Session, chunk: Chunk, allowed: tuple[str, ...], new_status: str, *, action: str) -> None:
    """Conditional status flip; a concurrent transition makes this one fail."""
    result = db.execute(
        update(Chunk)
        .where(Chunk.id == chunk.id, Chunk.status.in_(allowed))
        .values(status=new_status)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidTransition(f"Cannot {action} chunk, it changed concurrently", chunk_id=chunk.id)
    set_committed_value(chunk, "status", new_status)


def chunk_orders(db: Session, chunk_id: str) -> list[Order]:
    return (db.query(Order)
            .filter(Order.chunk_id == chunk_id)
            .order_by(Order.bin_number.asc(), Order.order_number.asc())
            .all())


def _unassign(db: Session, chunk_id: str, order_ids: list[str]) -> int:
    if not order_ids:
        return 0
    result = db.execute(
        update(Order)
        .where(Order.id.in_(order_ids), Order.chunk_id == chunk_id)
        .values(chunk_id=None, bin_number=None)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount


def _chunk_bulk_batch_ids(db: Session, chunk_id: str) -> list[str]:
    rows = (db.query(ChunkBulkBatchAssignment.bulk_batch_id)
            .filter(ChunkBulkBatchAssignment.chunk_id == chunk_id)
            .all())
    return [r[0] for r in rows]


def _free_cart_if_idle(db: Session, cart_id: str, *, except_chunk_id: str) -> bool:
    others = (db.query(func.count(Chunk.id))
              .filter(Chunk.cart_id == cart_id,
                      Chunk.id != except_chunk_id,
                      Chunk.status.in_(ACTIVE_CHUNK_STATUSES))
              .scalar())
    if others:
        return False
    cart = db.get(PickCart, cart_id)
    if cart is not None:
        cart.status = CART_AVAILABLE
    return True


def maybe_complete_batch(db: Session, batch_id: str) -> bool:
    """Close the batch once nothing is left to claim and nobody is picking it."""
    batch = db.get(PickBatch, batch_id)
    if batch is None or batch.status == "COMPLETED":
        return False
    waiting = (db.query(func.count(Order.id))
               .filter(Order.batch_id == batch_id,
                       Order.chunk_id.is_(None),
                       Order.status == ORDER_AWAITING_SHIPMENT)
               .scalar())
    picking = (db.query(func.count(Chunk.id))
               .filter(Chunk.batch_id == batch_id, Chunk.status == CHUNK_PICKING)
               .scalar())
    if waiting or picking:
        return False
    batch.status = "COMPLETED"
    batch.completed_at = utc_now()
    logger.info("batch_completed", batch_id=batch_id, name=batch.name)
    return True


def complete_bin(db: Session, *, chunk_id: str, bin_number: int | None) -> dict:
    """Picker confirms a bin is filled. No state change beyond validation."""
    chunk = get_chunk(db, chunk_id)
    require_status(chunk, CHUNK_PICKING, action="complete a bin of")
    if bin_number is None:
        raise ValidationFailed("binNumber is required")
    numbers = [o.order_number for o in chunk_orders(db, chunk.id) if o.bin_number == bin_number]
    if not numbers:
        raise NotFound("Bin not found in chunk", chunk_id=chunk.id, bin_number=bin_number)
    logger.debug("bin_completed", chunk_id=chunk.id, bin_number=bin_number, orders=len(numbers))
    return {"chunk_id": chunk.id, "bin_number": bin_number, "order_numbers": numbers}


def complete_chunk(db: Session, *, chunk_id: str) -> Chunk:
    chunk = get_chunk(db, chunk_id)
    require_status(chunk, CHUNK_PICKING, action="complete")

    with atomic(db):
        now = utc_now()
        chunk.picking_completed_at = now
        chunk.pick_duration_seconds = duration_seconds(chunk.picking_started_at, now)
        cart = db.get(PickCart, chunk.cart_id)
        orders = chunk_orders(db, chunk.id)

        if chunk.is_personalized:
            transition(db, chunk, (CHUNK_PICKING,), CHUNK_READY_FOR_ENGRAVING, action="complete")
            if cart is not None:
                cart.status = CART_ENGRAVING
            topic = "picking.chunk.ready_for_engraving"
        else:
            transition(db, chunk, (CHUNK_PICKING,), CHUNK_PICKED, action="complete")
            if cart is not None:
                cart.status = CART_PICKED_READY
            bulk_ids = _chunk_bulk_batch_ids(db, chunk.id)
            if bulk_ids:
                db.query(BulkBatch).filter(BulkBatch.id.in_(bulk_ids)).update(
                    {BulkBatch.status: "PICKED"}, synchronize_session=False)
            topic = "picking.chunk.picked"

        db.flush()
        maybe_complete_batch(db, chunk.batch_id)
        audit(db, actor=chunk.picker_name, action="PICK_CHUNK_COMPLETED", entity_type="Chunk", entity_id=chunk.id,
              payload={"status": chunk.status, "pick_duration_seconds": chunk.pick_duration_seconds})
        publish(db, topic, {
            "chunk_id": chunk.id,
            "batch_id": chunk.batch_id,
            "cart_id": chunk.cart_id,
            "order_numbers": [o.order_number for o in orders],
        })

    logger.info("chunk_completed", chunk_id=chunk.id, status=chunk.status,
                pick_duration_seconds=chunk.pick_duration_seconds)
    return chunk


def mark_out_of_stock(db: Session, *, chunk_id: str, sku: str | None, affected_bin_numbers: list[int] | None,
                      reported_by: str | None = None) -> dict:
    """Return the orders in the affected bins to the pool; the rest of the chunk carries on."""
    bins = sorted({int(b) for b in (affected_bin_numbers or [])})
    if not bins:
        raise ValidationFailed("affectedBinNumbers is required")
    chunk = get_chunk(db, chunk_id)
    require_status(chunk, CHUNK_PICKING, action="report a stock-out on")

    with atomic(db):
        affected = [o for o in chunk_orders(db, chunk.id) if o.bin_number in bins]
        if not affected:
            raise ValidationFailed("No orders in those bins", chunk_id=chunk.id, bins=bins)

        released = _unassign(db, chunk.id, [o.id for o in affected])
        chunk.orders_in_chunk = max(0, chunk.orders_in_chunk - released)
        chunk.orders_skipped = chunk.orders_skipped + released
        requeue_bulk_orders(db, affected)

        numbers = [o.order_number for o in affected]
        audit(db, actor=reported_by or chunk.picker_name, action="PICK_OUT_OF_STOCK", entity_type="Chunk",
              entity_id=chunk.id, payload={"sku": sku, "bins": bins, "order_numbers": numbers})
        publish(db, "picking.chunk.stock_out", {
            "chunk_id": chunk.id, "sku": sku, "bins": bins, "order_numbers": numbers,
        })

    logger.warning("stock_out_reported", chunk_id=chunk_id, sku=sku, bins=bins, orders_returned=released)
    return {"orders_returned": released, "affected_order_numbers": numbers}


def _cancel(db: Session, chunk: Chunk, *, reason: str, actor: str) -> int:
    transition(db, chunk, (CHUNK_PICKING, CHUNK_PICKED), CHUNK_CANCELLED, action="cancel")
    orders = chunk_orders(db, chunk.id)
    returned = _unassign(db, chunk.id, [o.id for o in orders])

    bulk_ids = _chunk_bulk_batch_ids(db, chunk.id)
    if bulk_ids:
        # A picked chunk has already flipped its splits to PICKED
        db.query(BulkBatch).filter(BulkBatch.id.in_(bulk_ids), BulkBatch.status.in_(("ASSIGNED", "PICKED"))).update(
            {BulkBatch.status: "PENDING"}, synchronize_session=False)

    batch = db.get(PickBatch, chunk.batch_id)
    if returned and batch is not None and batch.status == "COMPLETED":
        # Returned orders must be claimable again
        batch.status = "IN_PROGRESS"
        batch.completed_at = None

    chunk.cancel_reason = reason
    chunk.cancelled_at = utc_now()
    chunk.orders_skipped = chunk.orders_skipped + returned
    chunk.orders_in_chunk = 0
    _free_cart_if_idle(db, chunk.cart_id, except_chunk_id=chunk.id)

    audit(db, actor=actor, action="PICK_CHUNK_CANCELLED", entity_type="Chunk", entity_id=chunk.id,
          payload={"reason": reason, "orders_returned": returned})
    publish(db, "picking.chunk.cancelled", {
        "chunk_id": chunk.id, "cart_id": chunk.cart_id, "reason": reason, "orders_returned": returned,
    })
    return returned


def cancel_chunk(db: Session, *, chunk_id: str, reason: str | None = None, actor: str | None = None) -> Chunk:
    chunk = get_chunk(db, chunk_id)
    require_status(chunk, CHUNK_PICKING, CHUNK_PICKED, action="cancel")

    with atomic(db):
        returned = _cancel(db, chunk, reason=reason or DEFAULT_CANCEL_REASON, actor=actor or chunk.picker_name)

    logger.info("chunk_cancelled", chunk_id=chunk_id, reason=reason or DEFAULT_CANCEL_REASON, orders_returned=returned)
    return chunk


def release_cart(db: Session, *, cart_id: str, reason: str | None = None, actor: str = "operator") -> dict:
    """Operator override: cancel whatever the cart is picking and make it available again."""
    cart = db.get(PickCart, cart_id)
    if not cart:
        raise NotFound("Cart not found", cart_id=cart_id)
    if cart.status == CART_AVAILABLE:
        raise InvalidTransition("Cart is already available", cart_id=cart_id)

    engraving = (db.query(Chunk)
                 .filter(Chunk.cart_id == cart_id, Chunk.status == CHUNK_READY_FOR_ENGRAVING)
                 .first())
    if engraving is not None:
        raise InvalidTransition("Cart holds a chunk awaiting engraving", cart_id=cart_id, chunk_id=engraving.id)

    reason = reason or DEFAULT_RELEASE_REASON
    with atomic(db):
        chunks = (db.query(Chunk)
                  .filter(Chunk.cart_id == cart_id, Chunk.status.in_((CHUNK_PICKING, CHUNK_PICKED)))
                  .all())
        returned = sum(_cancel(db, c, reason=reason, actor=actor) for c in chunks)
        cart.status = CART_AVAILABLE
        audit(db, actor=actor, action="PICK_CART_RELEASED", entity_type="PickCart", entity_id=cart_id,
              payload={"reason": reason, "chunks_cancelled": len(chunks), "orders_returned": returned})

    logger.info("cart_released", cart_id=cart_id, reason=reason, chunks_cancelled=len(chunks), orders_returned=returned)
    return {"cart_id": cart_id, "chunks_cancelled": len(chunks), "orders_returned": returned}

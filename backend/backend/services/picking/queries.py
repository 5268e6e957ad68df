from __future__ import annotations

from collections import defaultdict

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.errors import NotFound
from app.db.models.picking import (
    ACTIVE_CHUNK_STATUSES, CART_AVAILABLE, CHUNK_READY_FOR_ENGRAVING, ORDER_AWAITING_SHIPMENT,
    PICKABLE_BATCH_STATUSES, BatchCellAssignment, BulkBatch, Chunk, ChunkBulkBatchAssignment, Order,
    PickBatch, PickCart, PickCell,
)
from services.picking.engraving import engraving_items, load_progress
from services.picking.lifecycle import chunk_orders


def _iso(value):
    return value.isoformat() if value else None


def cart_out(cart: PickCart) -> dict:
    return {"id": cart.id, "name": cart.name, "color": cart.color, "status": cart.status, "active": cart.active}


def chunk_out(chunk: Chunk) -> dict:
    return {
        "id": chunk.id,
        "batch_id": chunk.batch_id,
        "chunk_number": chunk.chunk_number,
        "status": chunk.status,
        "picking_mode": chunk.picking_mode,
        "is_personalized": chunk.is_personalized,
        "cart_id": chunk.cart_id,
        "picker_name": chunk.picker_name,
        "orders_in_chunk": chunk.orders_in_chunk,
        "orders_skipped": chunk.orders_skipped,
        "claimed_at": _iso(chunk.claimed_at),
        "picking_started_at": _iso(chunk.picking_started_at),
        "picking_completed_at": _iso(chunk.picking_completed_at),
        "pick_duration_seconds": chunk.pick_duration_seconds,
        "cancel_reason": chunk.cancel_reason,
        "engraver_name": chunk.engraver_name,
        "items_engraved": chunk.items_engraved,
    }


def _unassigned_counts(db: Session, batch_ids: list[str]) -> dict[str, int]:
    if not batch_ids:
        return {}
    rows = (db.query(Order.batch_id, func.count(Order.id))
            .filter(Order.batch_id.in_(batch_ids),
                    Order.chunk_id.is_(None),
                    Order.status == ORDER_AWAITING_SHIPMENT)
            .group_by(Order.batch_id)
            .all())
    return dict(rows)


def available_carts(db: Session) -> list[dict]:
    rows = (db.query(PickCart)
            .filter(PickCart.active == True, PickCart.status == CART_AVAILABLE)  # noqa: E712
            .order_by(PickCart.name.asc())
            .all())
    return [cart_out(c) for c in rows]


def active_cells(db: Session) -> list[dict]:
    cells = db.query(PickCell).filter(PickCell.active == True).order_by(PickCell.name.asc()).all()  # noqa: E712
    assignments = (db.query(BatchCellAssignment.cell_id, BatchCellAssignment.batch_id)
                   .join(PickBatch, PickBatch.id == BatchCellAssignment.batch_id)
                   .filter(PickBatch.status.in_(PICKABLE_BATCH_STATUSES))
                   .all())
    batches_by_cell: dict[str, list[str]] = defaultdict(list)
    for cell_id, batch_id in assignments:
        batches_by_cell[cell_id].append(batch_id)
    remaining = _unassigned_counts(db, [b for _, b in assignments])

    return [{
        "id": c.id,
        "name": c.name,
        "batches": len(batches_by_cell[c.id]),
        "orders_remaining": sum(remaining.get(b, 0) for b in batches_by_cell[c.id]),
    } for c in cells]


def cell_state(db: Session, cell_id: str) -> dict:
    """The cell's batch queue in pick order, plus the chunks being worked from it."""
    cell = db.get(PickCell, cell_id)
    if not cell:
        raise NotFound("Cell not found", cell_id=cell_id)

    rows = (db.query(PickBatch, BatchCellAssignment.priority)
            .join(BatchCellAssignment, BatchCellAssignment.batch_id == PickBatch.id)
            .filter(BatchCellAssignment.cell_id == cell_id, PickBatch.status != "COMPLETED")
            .order_by(BatchCellAssignment.priority.asc(), PickBatch.priority.asc())
            .all())
    batch_ids = [b.id for b, _ in rows]
    remaining = _unassigned_counts(db, batch_ids)
    chunks = []
    if batch_ids:
        chunks = (db.query(Chunk)
                  .filter(Chunk.batch_id.in_(batch_ids), Chunk.status.in_(ACTIVE_CHUNK_STATUSES))
                  .order_by(Chunk.claimed_at.asc())
                  .all())
    return {
        "cell": {"id": cell.id, "name": cell.name, "active": cell.active},
        "batches": [{
            "id": b.id, "name": b.name, "type": b.type, "status": b.status,
            "queue_priority": priority, "total_orders": b.total_orders,
            "orders_remaining": remaining.get(b.id, 0),
        } for b, priority in rows],
        "active_chunks": [chunk_out(c) for c in chunks],
    }


def personalized_backlog(db: Session) -> dict:
    waiting = (db.query(func.count(Order.id))
               .join(PickBatch, PickBatch.id == Order.batch_id)
               .filter(PickBatch.is_personalized == True,  # noqa: E712
                       PickBatch.status.in_(PICKABLE_BATCH_STATUSES),
                       Order.chunk_id.is_(None),
                       Order.status == ORDER_AWAITING_SHIPMENT)
               .scalar())
    unbatched = (db.query(func.count(Order.id))
                 .filter(Order.is_personalized == True,  # noqa: E712
                         Order.batch_id.is_(None),
                         Order.status == ORDER_AWAITING_SHIPMENT)
                 .scalar())
    awaiting_engraving = (db.query(func.count(Chunk.id))
                          .filter(Chunk.status == CHUNK_READY_FOR_ENGRAVING)
                          .scalar())
    return {
        "orders_ready_to_pick": waiting or 0,
        "orders_not_batched": unbatched or 0,
        "chunks_awaiting_engraving": awaiting_engraving or 0,
    }


def chunk_detail(db: Session, chunk_id: str) -> dict:
    chunk = db.get(Chunk, chunk_id)
    if not chunk:
        raise NotFound("Chunk not found", chunk_id=chunk_id)

    bins: dict[int, list[dict]] = defaultdict(list)
    for o in chunk_orders(db, chunk.id):
        bins[o.bin_number].append({"order_number": o.order_number, "items": o.items, "bulk_batch_id": o.bulk_batch_id})

    shelves = (db.query(ChunkBulkBatchAssignment.shelf_number, BulkBatch)
               .join(BulkBatch, BulkBatch.id == ChunkBulkBatchAssignment.bulk_batch_id)
               .filter(ChunkBulkBatchAssignment.chunk_id == chunk.id)
               .order_by(ChunkBulkBatchAssignment.shelf_number.asc())
               .all())
    return {
        "chunk": chunk_out(chunk),
        "bins": [{"bin_number": n, "orders": bins[n]} for n in sorted(bins, key=lambda n: (n is None, n or 0))],
        "shelves": [{
            "shelf_number": shelf,
            "bulk_batch_id": bb.id,
            "signature": bb.group_signature,
            "order_count": bb.order_count,
            "sku_layout": bb.sku_layout,
        } for shelf, bb in shelves],
    }


def engraving_detail(db: Session, chunk_id: str) -> dict:
    chunk = db.get(Chunk, chunk_id)
    if not chunk:
        raise NotFound("Chunk not found", chunk_id=chunk_id)
    progress = load_progress(chunk)
    items = engraving_items(chunk_orders(db, chunk.id))
    for item in items:
        item["engraved"] = item["index"] in progress.completed_indices
    return {
        "chunk": chunk_out(chunk),
        "progress": progress.to_json(),
        "total_items": len(items),
        "items": items,
    }

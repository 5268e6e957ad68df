"""Batch management: pooling classified orders into named, releasable batches."""
from __future__ import annotations

import re
from collections import defaultdict
from datetime import datetime

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.errors import InvalidTransition, NotFound, ValidationFailed
from app.db.models.common import utc_now
from app.db.models.picking import (
    BATCH_BULK, BATCH_ORDER_BY_SIZE, BATCH_SINGLES,
    CLASS_BULK, CLASS_ORDER_BY_SIZE, CLASS_PERSONALIZED, CLASS_SINGLE,
    BatchCellAssignment, Order, PickBatch, PickCell,
)
from app.db.session import atomic
from app.events.bus import publish
from services.picking.bulk import create_bulk_batches
from services.picking.classifier import can_be_bulk, pooled_orders_query, reclassify_pool
from services.picking.settings import load_settings
from services.picking.signature import compute_signature

logger = structlog.get_logger(__name__)

BATCH_TYPES = (BATCH_SINGLES, BATCH_BULK, BATCH_ORDER_BY_SIZE)

# Orders above these unit counts need a larger bin, or cannot go on a cart at all
STANDARD_MAX_ITEMS = 12
OVERSIZED_MAX_ITEMS = 24

SIZE_STANDARD = "standard"
SIZE_OVERSIZED = "oversized"
SIZE_PRINT_ONLY = "print_only"


def size_category(item_count: int) -> str:
    if item_count <= STANDARD_MAX_ITEMS:
        return SIZE_STANDARD
    if item_count <= OVERSIZED_MAX_ITEMS:
        return SIZE_OVERSIZED
    return SIZE_PRINT_ONLY


def batch_prefix(batch_type: str, *, oversized: bool = False, personalized: bool = False) -> str:
    if personalized:
        return "P"
    if batch_type == BATCH_SINGLES:
        return "SG"
    if batch_type == BATCH_BULK:
        return "BK"
    return "O" if oversized else "S"


def generate_batch_name(db: Session, prefix: str, now: datetime | None = None) -> str:
    """``S-Feb05-001``: prefix, day, then a per-day sequence."""
    now = now or utc_now()
    day_prefix = f"{prefix}-{now.strftime('%b')}{now.day:02d}"
    names = [r[0] for r in db.query(PickBatch.name).filter(PickBatch.name.like(f"{day_prefix}-%")).all()]
    seq = 0
    for name in names:
        m = re.search(r"-(\d+)$", name)
        if m:
            seq = max(seq, int(m.group(1)))
    return f"{day_prefix}-{seq + 1:03d}"


def _next_batch_priority(db: Session) -> int:
    current = db.query(func.max(PickBatch.priority)).scalar()
    return (current if current is not None else -1) + 1


def _next_cell_priority(db: Session, cell_id: str) -> int:
    current = (db.query(func.max(BatchCellAssignment.priority))
               .filter(BatchCellAssignment.cell_id == cell_id)
               .scalar())
    return (current if current is not None else -1) + 1


def _load_cells(db: Session, cell_ids: list[str]) -> list[PickCell]:
    cells = []
    for cell_id in dict.fromkeys(cell_ids):
        cell = db.get(PickCell, cell_id)
        if not cell:
            raise NotFound("Cell not found", cell_id=cell_id)
        if not cell.active:
            raise ValidationFailed("Cell is not active", cell_id=cell_id)
        cells.append(cell)
    return cells


def _assign_cells(db: Session, batch: PickBatch, cells: list[PickCell]) -> None:
    for cell in cells:
        db.add(BatchCellAssignment(batch_id=batch.id, cell_id=cell.id, priority=_next_cell_priority(db, cell.id)))
        db.flush()


def _new_batch(db: Session, orders: list[Order], *, batch_type: str, cells: list[PickCell],
               oversized: bool = False, personalized: bool = False, priority: int | None = None) -> PickBatch:
    batch = PickBatch(
        name=generate_batch_name(db, batch_prefix(batch_type, oversized=oversized, personalized=personalized)),
        type=batch_type,
        status="DRAFT",
        priority=_next_batch_priority(db) if priority is None else priority,
        is_personalized=personalized,
        is_oversized=oversized,
        total_orders=len(orders),
    )
    db.add(batch)
    db.flush()
    for o in orders:
        o.batch_id = batch.id
    if batch_type == BATCH_BULK:
        create_bulk_batches(db, batch, orders, max_per_split=load_settings(db).bulk_max_orders_per_split)
    if not personalized:
        _assign_cells(db, batch, cells)
    db.flush()
    return batch


def _split_by_size(orders: list[Order]) -> dict[str, list[Order]]:
    sized: dict[str, list[Order]] = defaultdict(list)
    for o in orders:
        sized[size_category(compute_signature(o.items).item_count)].append(o)
    return sized


def batch_summary(batch: PickBatch) -> dict:
    return {
        "id": batch.id,
        "name": batch.name,
        "type": batch.type,
        "status": batch.status,
        "priority": batch.priority,
        "is_personalized": batch.is_personalized,
        "is_oversized": batch.is_oversized,
        "total_orders": batch.total_orders,
    }


def create_batch(db: Session, *, order_numbers: list[str], batch_type: str = BATCH_ORDER_BY_SIZE,
                 cell_ids: list[str] | None = None, personalized: bool = False, priority: int | None = None,
                 actor: str = "operator") -> dict:
    """Batch explicitly selected orders.

    ORDER_BY_SIZE selections are split into a standard and an oversized batch;
    orders too large for any bin are left out and reported as print-only.
    """
    if not order_numbers:
        raise ValidationFailed("orderNumbers are required")
    if batch_type not in BATCH_TYPES:
        raise ValidationFailed("Unknown batch type", batch_type=batch_type, allowed=list(BATCH_TYPES))
    cell_ids = cell_ids or []
    if personalized and cell_ids:
        raise ValidationFailed("Personalized batches are not routed to cells")
    if not personalized and not cell_ids:
        raise ValidationFailed("cellIds are required")
    cells = _load_cells(db, cell_ids)

    with atomic(db):
        orders = (pooled_orders_query(db)
                  .filter(Order.order_number.in_(order_numbers))
                  .order_by(Order.created_at.asc(), Order.order_number.asc())
                  .all())
        if not orders:
            raise ValidationFailed("No eligible orders found; orders must be awaiting shipment and not already batched")
        if batch_type == BATCH_BULK:
            too_wide = [o.order_number for o in orders if not can_be_bulk(compute_signature(o.items))]
            if too_wide:
                raise ValidationFailed("Bulk orders must hold 2 to 4 units", order_numbers=too_wide)

        created: list[PickBatch] = []
        print_only: list[str] = []
        if batch_type == BATCH_ORDER_BY_SIZE:
            sized = _split_by_size(orders)
            print_only = [o.order_number for o in sized.get(SIZE_PRINT_ONLY, [])]
            for category in (SIZE_STANDARD, SIZE_OVERSIZED):
                if sized.get(category):
                    created.append(_new_batch(db, sized[category], batch_type=batch_type, cells=cells,
                                              oversized=category == SIZE_OVERSIZED, personalized=personalized,
                                              priority=priority))
        else:
            created.append(_new_batch(db, orders, batch_type=batch_type, cells=cells,
                                      personalized=personalized, priority=priority))

        for b in created:
            audit(db, actor=actor, action="PICK_BATCH_CREATED", entity_type="PickBatch", entity_id=b.id,
                  payload={"name": b.name, "type": b.type, "orders": b.total_orders})

    logger.info("batches_created", batches=[b.name for b in created], print_only=len(print_only))
    return {
        "batches": [batch_summary(b) for b in created],
        "summary": {
            "orders_batched": sum(b.total_orders for b in created),
            "print_only_order_numbers": print_only,
        },
    }


def batch_classified_pool(db: Session, *, cell_ids: list[str], release: bool = False,
                          actor: str = "operator") -> dict:
    """Reclassify the pool and turn every classification into its own batch."""
    cells = _load_cells(db, cell_ids or [])
    if not cells:
        raise ValidationFailed("cellIds are required")

    with atomic(db):
        reclassify_pool(db)
        by_class: dict[str, list[Order]] = defaultdict(list)
        for o in pooled_orders_query(db).order_by(Order.created_at.asc(), Order.order_number.asc()).all():
            by_class[o.classification].append(o)

        created: list[PickBatch] = []
        print_only: list[str] = []
        if by_class.get(CLASS_SINGLE):
            created.append(_new_batch(db, by_class[CLASS_SINGLE], batch_type=BATCH_SINGLES, cells=cells))
        if by_class.get(CLASS_BULK):
            created.append(_new_batch(db, by_class[CLASS_BULK], batch_type=BATCH_BULK, cells=cells))
        if by_class.get(CLASS_ORDER_BY_SIZE):
            sized = _split_by_size(by_class[CLASS_ORDER_BY_SIZE])
            print_only = [o.order_number for o in sized.get(SIZE_PRINT_ONLY, [])]
            for category in (SIZE_STANDARD, SIZE_OVERSIZED):
                if sized.get(category):
                    created.append(_new_batch(db, sized[category], batch_type=BATCH_ORDER_BY_SIZE, cells=cells,
                                              oversized=category == SIZE_OVERSIZED))
        if by_class.get(CLASS_PERSONALIZED):
            created.append(_new_batch(db, by_class[CLASS_PERSONALIZED], batch_type=BATCH_ORDER_BY_SIZE,
                                      cells=[], personalized=True))

        if release:
            for b in created:
                _release(db, b)
        for b in created:
            audit(db, actor=actor, action="PICK_BATCH_CREATED", entity_type="PickBatch", entity_id=b.id,
                  payload={"name": b.name, "type": b.type, "orders": b.total_orders, "auto": True})

    logger.info("pool_batched", batches=len(created), released=release, print_only=len(print_only))
    return {
        "batches": [batch_summary(b) for b in created],
        "summary": {"print_only_order_numbers": print_only},
    }


def set_batch_cells(db: Session, *, batch_id: str, cell_ids: list[str], actor: str = "operator") -> list[dict]:
    """Replace the cells a batch is routed to. Cells already assigned keep their queue position."""
    batch = db.get(PickBatch, batch_id)
    if not batch:
        raise NotFound("Batch not found", batch_id=batch_id)
    if batch.is_personalized and cell_ids:
        raise ValidationFailed("Personalized batches are not routed to cells")
    cells = _load_cells(db, cell_ids)

    with atomic(db):
        existing = {a.cell_id: a for a in
                    db.query(BatchCellAssignment).filter(BatchCellAssignment.batch_id == batch_id).all()}
        wanted = {c.id for c in cells}
        for cell_id, assignment in existing.items():
            if cell_id not in wanted:
                db.delete(assignment)
        db.flush()
        _assign_cells(db, batch, [c for c in cells if c.id not in existing])
        audit(db, actor=actor, action="PICK_BATCH_CELLS_SET", entity_type="PickBatch", entity_id=batch_id,
              payload={"cell_ids": sorted(wanted)})

    rows = (db.query(BatchCellAssignment)
            .filter(BatchCellAssignment.batch_id == batch_id)
            .order_by(BatchCellAssignment.cell_id.asc())
            .all())
    return [{"cell_id": r.cell_id, "priority": r.priority} for r in rows]


def reorder_cell_queue(db: Session, *, cell_id: str, batch_ids: list[str], actor: str = "operator") -> list[dict]:
    """Set a cell's batch order; batches not listed keep their relative order after the listed ones."""
    assignments = (db.query(BatchCellAssignment)
                   .filter(BatchCellAssignment.cell_id == cell_id)
                   .order_by(BatchCellAssignment.priority.asc())
                   .all())
    by_batch = {a.batch_id: a for a in assignments}
    unknown = [b for b in batch_ids if b not in by_batch]
    if unknown:
        raise ValidationFailed("Batches are not assigned to this cell", cell_id=cell_id, batch_ids=unknown)

    listed = list(dict.fromkeys(batch_ids))
    ordered = [by_batch[b] for b in listed] + [a for a in assignments if a.batch_id not in listed]
    with atomic(db):
        for priority, assignment in enumerate(ordered):
            assignment.priority = priority
        audit(db, actor=actor, action="PICK_CELL_QUEUE_REORDERED", entity_type="PickCell", entity_id=cell_id,
              payload={"batch_ids": [a.batch_id for a in ordered]})
    return [{"batch_id": a.batch_id, "priority": a.priority} for a in ordered]


def _release(db: Session, batch: PickBatch) -> None:
    if batch.status != "DRAFT":
        raise InvalidTransition(f"Cannot release a batch in status {batch.status}", batch_id=batch.id)
    if not batch.is_personalized:
        cells = (db.query(func.count(BatchCellAssignment.id))
                 .filter(BatchCellAssignment.batch_id == batch.id)
                 .scalar())
        if not cells:
            raise ValidationFailed("Batch has no cells to be picked from", batch_id=batch.id)
    batch.status = "RELEASED"
    batch.released_at = utc_now()
    publish(db, "picking.batch.released", {"batch_id": batch.id, "name": batch.name, "type": batch.type})


def release_batch(db: Session, *, batch_id: str, actor: str = "operator") -> PickBatch:
    batch = db.get(PickBatch, batch_id)
    if not batch:
        raise NotFound("Batch not found", batch_id=batch_id)
    with atomic(db):
        _release(db, batch)
        audit(db, actor=actor, action="PICK_BATCH_RELEASED", entity_type="PickBatch", entity_id=batch_id,
              payload={"name": batch.name})
    logger.info("batch_released", batch_id=batch_id, name=batch.name)
    return batch

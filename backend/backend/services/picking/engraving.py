"""Engraving sub-workflow for personalized chunks.

Items are numbered 0..N-1 across the chunk in bin order (one index per unit).
Progress is checkpointed after every item so a station can resume after a
pause or a browser reload.
"""
from __future__ import annotations

import structlog
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.errors import Conflict, InvalidTransition, ValidationFailed
from app.db.models.common import utc_now
from app.db.models.picking import (
    CART_PICKED_READY, CHUNK_READY_FOR_ENGRAVING, CHUNK_READY_FOR_SHIPPING, Chunk, Order, PickCart,
)
from app.db.session import atomic
from app.events.bus import publish
from services.picking.lifecycle import chunk_orders, duration_seconds, get_chunk, require_status, transition
from services.picking.signature import physical_items, line_quantity

logger = structlog.get_logger(__name__)


class EngravingProgress(BaseModel):
    completed_indices: set[int] = Field(default_factory=set)
    current_index: int = Field(default=0, ge=0)
    paused_duration_ms: int = Field(default=0, ge=0)

    def to_json(self) -> dict:
        return {
            "completed_indices": sorted(self.completed_indices),
            "current_index": self.current_index,
            "paused_duration_ms": self.paused_duration_ms,
        }


def engraving_items(orders: list[Order]) -> list[dict]:
    items = []
    for o in sorted(orders, key=lambda o: (o.bin_number or 0, o.order_number)):
        for line in physical_items(o.items):
            for unit in range(line_quantity(line.get("quantity"))):
                items.append({
                    "index": len(items),
                    "order_number": o.order_number,
                    "bin_number": o.bin_number,
                    "sku": str(line.get("sku") or "").upper().strip(),
                    "name": line.get("name"),
                    "unit": unit,
                })
    return items


def load_progress(chunk: Chunk) -> EngravingProgress:
    return EngravingProgress.model_validate(chunk.engraving_progress or {})


def validate_checkpoint(previous: EngravingProgress, proposed: dict, total_items: int) -> EngravingProgress:
    """Reject checkpoints that would lose work or point outside the chunk."""
    try:
        progress = EngravingProgress.model_validate(proposed)
    except ValidationError as e:
        raise ValidationFailed("Invalid engraving progress", errors=[err["msg"] for err in e.errors()]) from e

    out_of_range = sorted(i for i in progress.completed_indices if not 0 <= i < total_items)
    if out_of_range:
        raise ValidationFailed("Item index out of range", indices=out_of_range, total_items=total_items)
    if progress.current_index > total_items:
        raise ValidationFailed("Current index out of range", current_index=progress.current_index, total_items=total_items)
    if not previous.completed_indices <= progress.completed_indices:
        raise ValidationFailed("Engraved items cannot be un-engraved",
                               missing=sorted(previous.completed_indices - progress.completed_indices))
    if progress.paused_duration_ms < previous.paused_duration_ms:
        raise ValidationFailed("Paused duration cannot decrease",
                               previous=previous.paused_duration_ms, proposed=progress.paused_duration_ms)
    return progress


def _require_started(chunk: Chunk) -> None:
    if chunk.engraving_started_at is None:
        raise InvalidTransition("Engraving has not been started", chunk_id=chunk.id)


def _save_progress(db: Session, chunk: Chunk, progress: EngravingProgress, *, event: str) -> None:
    chunk.engraving_progress = progress.to_json()
    chunk.items_engraved = len(progress.completed_indices)
    publish(db, "picking.engraving.progress", {
        "chunk_id": chunk.id,
        "event": event,
        "engraver_name": chunk.engraver_name,
        "items_engraved": chunk.items_engraved,
        "current_index": progress.current_index,
    })


def start_engraving(db: Session, *, chunk_id: str, engraver_name: str | None) -> Chunk:
    """Start, or resume, engraving a personalized chunk."""
    engraver_name = (engraver_name or "").strip()
    if not engraver_name:
        raise ValidationFailed("engraverName is required")
    chunk = get_chunk(db, chunk_id)
    require_status(chunk, CHUNK_READY_FOR_ENGRAVING, action="start engraving")

    resumed = chunk.engraving_started_at is not None
    with atomic(db):
        chunk.engraver_name = engraver_name
        if not resumed:
            chunk.engraving_started_at = utc_now()
            chunk.engraving_progress = EngravingProgress().to_json()
            chunk.items_engraved = 0
        publish(db, "picking.engraving.started", {
            "chunk_id": chunk.id, "engraver_name": engraver_name, "resumed": resumed,
        })

    logger.info("engraving_started", chunk_id=chunk_id, engraver=engraver_name, resumed=resumed)
    return chunk


def mark_engraved_item(db: Session, *, chunk_id: str, item_index: int | None, current_index: int | None = None,
                       paused_duration_ms: int | None = None) -> Chunk:
    if item_index is None:
        raise ValidationFailed("itemIndex is required")
    chunk = get_chunk(db, chunk_id)
    require_status(chunk, CHUNK_READY_FOR_ENGRAVING, action="engrave items of")
    _require_started(chunk)

    total = len(engraving_items(chunk_orders(db, chunk.id)))
    previous = load_progress(chunk)
    progress = validate_checkpoint(previous, {
        "completed_indices": previous.completed_indices | {item_index},
        "current_index": item_index + 1 if current_index is None else current_index,
        "paused_duration_ms": previous.paused_duration_ms if paused_duration_ms is None else paused_duration_ms,
    }, total)

    with atomic(db):
        _save_progress(db, chunk, progress, event="item")

    logger.debug("engraving_checkpoint", chunk_id=chunk_id, item_index=item_index, items_engraved=chunk.items_engraved)
    return chunk


def mark_engraved(db: Session, *, chunk_id: str, bin_number: int | None) -> Chunk:
    """Mark every item of the order in ``bin_number`` engraved."""
    if bin_number is None:
        raise ValidationFailed("binNumber is required")
    chunk = get_chunk(db, chunk_id)
    require_status(chunk, CHUNK_READY_FOR_ENGRAVING, action="engrave items of")
    _require_started(chunk)

    items = engraving_items(chunk_orders(db, chunk.id))
    in_bin = {i["index"] for i in items if i["bin_number"] == bin_number}
    if not in_bin:
        raise ValidationFailed("No items in that bin", chunk_id=chunk_id, bin_number=bin_number)

    previous = load_progress(chunk)
    completed = previous.completed_indices | in_bin
    progress = validate_checkpoint(previous, {
        "completed_indices": completed,
        "current_index": max(previous.current_index, max(in_bin) + 1),
        "paused_duration_ms": previous.paused_duration_ms,
    }, len(items))

    with atomic(db):
        _save_progress(db, chunk, progress, event="bin")

    logger.info("engraving_bin_done", chunk_id=chunk_id, bin_number=bin_number, items_engraved=chunk.items_engraved)
    return chunk


def complete_engraving(db: Session, *, chunk_id: str) -> Chunk:
    chunk = get_chunk(db, chunk_id)
    require_status(chunk, CHUNK_READY_FOR_ENGRAVING, action="complete engraving of")
    _require_started(chunk)

    total = len(engraving_items(chunk_orders(db, chunk.id)))
    progress = load_progress(chunk)
    if len(progress.completed_indices) < total:
        raise Conflict("Not every item has been engraved", items_engraved=len(progress.completed_indices), total_items=total)

    with atomic(db):
        now = utc_now()
        transition(db, chunk, (CHUNK_READY_FOR_ENGRAVING,), CHUNK_READY_FOR_SHIPPING, action="complete engraving of")
        chunk.engraving_completed_at = now
        elapsed = duration_seconds(chunk.engraving_started_at, now) or 0
        chunk.engraving_duration_seconds = max(0, elapsed - progress.paused_duration_ms // 1000)
        cart = db.get(PickCart, chunk.cart_id)
        if cart is not None:
            cart.status = CART_PICKED_READY
        audit(db, actor=chunk.engraver_name or "engraver", action="PICK_ENGRAVING_COMPLETED", entity_type="Chunk",
              entity_id=chunk.id, payload={"items_engraved": chunk.items_engraved,
                                           "engraving_duration_seconds": chunk.engraving_duration_seconds})
        publish(db, "picking.engraving.completed", {
            "chunk_id": chunk.id, "cart_id": chunk.cart_id, "engraver_name": chunk.engraver_name,
            "items_engraved": chunk.items_engraved,
        })

    logger.info("engraving_completed", chunk_id=chunk_id, duration_seconds=chunk.engraving_duration_seconds)
    return chunk


def cancel_engraving(db: Session, *, chunk_id: str) -> Chunk:
    """Hand the chunk back to the queue; only allowed before anything was engraved."""
    chunk = get_chunk(db, chunk_id)
    require_status(chunk, CHUNK_READY_FOR_ENGRAVING, action="cancel engraving of")
    if chunk.items_engraved:
        raise InvalidTransition("Items have already been engraved", chunk_id=chunk_id, items_engraved=chunk.items_engraved)

    with atomic(db):
        engraver = chunk.engraver_name
        chunk.engraver_name = None
        chunk.engraving_started_at = None
        chunk.engraving_progress = None
        publish(db, "picking.engraving.cancelled", {"chunk_id": chunk.id, "engraver_name": engraver})

    logger.info("engraving_cancelled", chunk_id=chunk_id, engraver=engraver)
    return chunk

from __future__ import annotations

from typing import Any, Callable

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from app.core.errors import Conflict, ValidationFailed
from app.core.logging import bind_picker
from app.db.models.picking import PickCart, PickCell, ProductSku
from app.db.session import atomic, get_db
from services.picking import allocator, batches, engraving, lifecycle, queries
from services.picking.classifier import reclassify_pool
from services.picking.ingest import ingest_orders

router = APIRouter(prefix="/pick", tags=["picking"])
batches_router = APIRouter(prefix="/batches", tags=["picking_batches"])
orders_router = APIRouter(prefix="/orders", tags=["picking_orders"])


# ---- Schemas ----
class _CamelIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ActionIn(_CamelIn):
    action: str
    cart_id: str | None = Field(default=None, alias="cartId")
    picker_name: str | None = Field(default=None, alias="pickerName")
    cell_id: str | None = Field(default=None, alias="cellId")
    personalized: bool = False
    chunk_id: str | None = Field(default=None, alias="chunkId")
    bin_number: int | None = Field(default=None, alias="binNumber")
    sku: str | None = None
    affected_bin_numbers: list[int] = Field(default_factory=list, alias="affectedBinNumbers")
    reason: str | None = None
    engraver_name: str | None = Field(default=None, alias="engraverName")
    item_index: int | None = Field(default=None, alias="itemIndex")
    current_index: int | None = Field(default=None, alias="currentIndex")
    paused_duration_ms: int | None = Field(default=None, alias="pausedDurationMs")


class CartIn(_CamelIn):
    name: str = Field(..., max_length=64)
    color: str | None = Field(default=None, max_length=32)


class CellIn(_CamelIn):
    name: str = Field(..., max_length=64)


class ProductSkuIn(_CamelIn):
    sku: str = Field(..., max_length=64)
    name: str | None = Field(default=None, max_length=256)
    bin_location: str | None = Field(default=None, alias="binLocation", max_length=64)


class ReleaseCartIn(_CamelIn):
    reason: str | None = None


class BatchIn(_CamelIn):
    order_numbers: list[str] = Field(default_factory=list, alias="orderNumbers")
    type: str = "ORDER_BY_SIZE"
    cell_ids: list[str] = Field(default_factory=list, alias="cellIds")
    personalized: bool = False
    priority: int | None = None


class AutoBatchIn(_CamelIn):
    cell_ids: list[str] = Field(default_factory=list, alias="cellIds")
    release: bool = False


class BatchCellsIn(_CamelIn):
    cell_ids: list[str] = Field(default_factory=list, alias="cellIds")


class CellQueueIn(_CamelIn):
    batch_ids: list[str] = Field(default_factory=list, alias="batchIds")


# ---- Actions ----
def _claim(db: Session, a: ActionIn) -> dict:
    bind_picker(picker=a.picker_name, cart_id=a.cart_id)
    chunk = allocator.claim_chunk(db, cart_id=a.cart_id, picker_name=a.picker_name, cell_id=a.cell_id,
                                  personalized=a.personalized)
    return queries.chunk_detail(db, chunk.id)


def _complete_bin(db: Session, a: ActionIn) -> dict:
    return lifecycle.complete_bin(db, chunk_id=a.chunk_id, bin_number=a.bin_number)


def _complete_chunk(db: Session, a: ActionIn) -> dict:
    return {"chunk": queries.chunk_out(lifecycle.complete_chunk(db, chunk_id=a.chunk_id))}


def _out_of_stock(db: Session, a: ActionIn) -> dict:
    return lifecycle.mark_out_of_stock(db, chunk_id=a.chunk_id, sku=a.sku,
                                       affected_bin_numbers=a.affected_bin_numbers, reported_by=a.picker_name)


def _cancel_chunk(db: Session, a: ActionIn) -> dict:
    chunk = lifecycle.cancel_chunk(db, chunk_id=a.chunk_id, reason=a.reason, actor=a.picker_name)
    return {"chunk": queries.chunk_out(chunk)}


def _start_engraving(db: Session, a: ActionIn) -> dict:
    engraving.start_engraving(db, chunk_id=a.chunk_id, engraver_name=a.engraver_name)
    return queries.engraving_detail(db, a.chunk_id)


def _mark_engraved_item(db: Session, a: ActionIn) -> dict:
    engraving.mark_engraved_item(db, chunk_id=a.chunk_id, item_index=a.item_index,
                                 current_index=a.current_index, paused_duration_ms=a.paused_duration_ms)
    return queries.engraving_detail(db, a.chunk_id)


def _mark_engraved(db: Session, a: ActionIn) -> dict:
    engraving.mark_engraved(db, chunk_id=a.chunk_id, bin_number=a.bin_number)
    return queries.engraving_detail(db, a.chunk_id)


def _complete_engraving(db: Session, a: ActionIn) -> dict:
    return {"chunk": queries.chunk_out(engraving.complete_engraving(db, chunk_id=a.chunk_id))}


def _cancel_engraving(db: Session, a: ActionIn) -> dict:
    return {"chunk": queries.chunk_out(engraving.cancel_engraving(db, chunk_id=a.chunk_id))}


ACTIONS: dict[str, Callable[[Session, ActionIn], dict]] = {
    "claim-chunk": _claim,
    "complete-bin": _complete_bin,
    "complete-chunk": _complete_chunk,
    "out-of-stock": _out_of_stock,
    "cancel-chunk": _cancel_chunk,
    "start-engraving": _start_engraving,
    "mark-engraved-item": _mark_engraved_item,
    "mark-engraved": _mark_engraved,
    "complete-engraving": _complete_engraving,
    "cancel-engraving": _cancel_engraving,
}


@router.post("/actions")
def pick_action(payload: ActionIn, db: Session = Depends(get_db)):
    handler = ACTIONS.get(payload.action)
    if handler is None:
        raise ValidationFailed("Unknown action", action=payload.action, allowed=sorted(ACTIONS))
    return handler(db, payload)


# ---- Queries ----
@router.get("/carts/available")
def carts_available(db: Session = Depends(get_db)):
    return queries.available_carts(db)


@router.get("/cells/active")
def cells_active(db: Session = Depends(get_db)):
    return queries.active_cells(db)


@router.get("/cells/{cell_id}/state")
def cell_state(cell_id: str, db: Session = Depends(get_db)):
    return queries.cell_state(db, cell_id)


@router.get("/personalized/backlog")
def personalized_backlog(db: Session = Depends(get_db)):
    return queries.personalized_backlog(db)


@router.get("/chunks/{chunk_id}")
def chunk_detail(chunk_id: str, db: Session = Depends(get_db)):
    return queries.chunk_detail(db, chunk_id)


@router.get("/chunks/{chunk_id}/engraving")
def chunk_engraving(chunk_id: str, db: Session = Depends(get_db)):
    return queries.engraving_detail(db, chunk_id)


# ---- Floor setup ----
def _create_unique(db: Session, row: Any, model, name: str):
    if db.query(model).filter(model.name == name).first():
        raise Conflict(f"{model.__name__} already exists", name=name)
    with atomic(db):
        db.add(row)
    return row


@router.post("/carts")
def create_cart(payload: CartIn, db: Session = Depends(get_db)):
    cart = _create_unique(db, PickCart(name=payload.name, color=payload.color), PickCart, payload.name)
    return queries.cart_out(cart)


@router.post("/cells")
def create_cell(payload: CellIn, db: Session = Depends(get_db)):
    cell = _create_unique(db, PickCell(name=payload.name), PickCell, payload.name)
    return {"id": cell.id, "name": cell.name, "active": cell.active}


@router.put("/locations")
def upsert_locations(payload: list[ProductSkuIn] = Body(...), db: Session = Depends(get_db)):
    """Bulk upsert of SKU storage locations used for pick-path ordering."""
    with atomic(db):
        for p in payload:
            sku = p.sku.upper().strip()
            row = db.query(ProductSku).filter(ProductSku.sku == sku).first()
            if row is None:
                row = ProductSku(sku=sku)
                db.add(row)
            row.name = p.name if p.name is not None else row.name
            row.bin_location = p.bin_location
    return {"ok": True, "count": len(payload)}


@router.post("/carts/{cart_id}/release")
def release_cart(cart_id: str, payload: ReleaseCartIn | None = None, db: Session = Depends(get_db)):
    return lifecycle.release_cart(db, cart_id=cart_id, reason=payload.reason if payload else None)


@router.put("/cells/{cell_id}/queue")
def reorder_cell_queue(cell_id: str, payload: CellQueueIn, db: Session = Depends(get_db)):
    return batches.reorder_cell_queue(db, cell_id=cell_id, batch_ids=payload.batch_ids)


# ---- Batches ----
@batches_router.post("/classify")
def classify_pool(db: Session = Depends(get_db)):
    with atomic(db):
        counts = reclassify_pool(db)
    return {"classification": counts}


@batches_router.post("")
def create_batch(payload: BatchIn, db: Session = Depends(get_db)):
    return batches.create_batch(db, order_numbers=payload.order_numbers, batch_type=payload.type,
                                cell_ids=payload.cell_ids, personalized=payload.personalized,
                                priority=payload.priority)


@batches_router.post("/auto")
def auto_batch(payload: AutoBatchIn, db: Session = Depends(get_db)):
    return batches.batch_classified_pool(db, cell_ids=payload.cell_ids, release=payload.release)


@batches_router.put("/{batch_id}/cells")
def set_batch_cells(batch_id: str, payload: BatchCellsIn, db: Session = Depends(get_db)):
    return batches.set_batch_cells(db, batch_id=batch_id, cell_ids=payload.cell_ids)


@batches_router.post("/{batch_id}/release")
def release_batch(batch_id: str, db: Session = Depends(get_db)):
    return batches.batch_summary(batches.release_batch(db, batch_id=batch_id))


# ---- Ingestion ----
@orders_router.post("/ingest")
def ingest(payload: Any = Body(...), db: Session = Depends(get_db)):
    return ingest_orders(db, payload)

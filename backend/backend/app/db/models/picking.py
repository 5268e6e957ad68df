from __future__ import annotations
from datetime import datetime
from sqlalchemy import String, DateTime, Boolean, Integer, JSON, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt

# Order lifecycle as seen by the picking floor
ORDER_AWAITING_SHIPMENT = "AWAITING_SHIPMENT"

# Classification tags
CLASS_SINGLE = "SINGLE"
CLASS_BULK = "BULK"
CLASS_ORDER_BY_SIZE = "ORDER_BY_SIZE"
CLASS_PERSONALIZED = "PERSONALIZED"

# Batch types and statuses
BATCH_SINGLES = "SINGLES"
BATCH_BULK = "BULK"
BATCH_ORDER_BY_SIZE = "ORDER_BY_SIZE"
PICKABLE_BATCH_STATUSES = ("ACTIVE", "RELEASED", "IN_PROGRESS")

# Chunk statuses
CHUNK_PICKING = "PICKING"
CHUNK_PICKED = "PICKED"
CHUNK_READY_FOR_ENGRAVING = "READY_FOR_ENGRAVING"
CHUNK_READY_FOR_SHIPPING = "READY_FOR_SHIPPING"
CHUNK_CANCELLED = "CANCELLED"
ACTIVE_CHUNK_STATUSES = (CHUNK_PICKING, CHUNK_PICKED, CHUNK_READY_FOR_ENGRAVING)

# Cart statuses
CART_AVAILABLE = "AVAILABLE"
CART_PICKING = "PICKING"
CART_ENGRAVING = "ENGRAVING"
CART_PICKED_READY = "PICKED_READY"


class Order(Base, HasId, HasCreatedAt):
    """An unshipped order as the picking engine sees it.

    ``items`` holds the canonical line list ``[{sku, name, quantity}]``; the raw
    inbound document is kept in ``raw_payload``.
    """
    __tablename__ = "pick_order"

    order_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    status: Mapped[str] = mapped_column(String(24), default=ORDER_AWAITING_SHIPMENT, nullable=False, index=True)
    customer_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    items: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    raw_payload: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    is_personalized: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    classification: Mapped[str | None] = mapped_column(String(24), nullable=True, index=True)
    signature: Mapped[str | None] = mapped_column(String(1024), nullable=True, index=True)
    item_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    batch_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("pick_batch.id"), nullable=True, index=True)
    bulk_batch_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("pick_bulk_batch.id"), nullable=True, index=True)
    chunk_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("pick_chunk.id"), nullable=True, index=True)
    bin_number: Mapped[int | None] = mapped_column(Integer, nullable=True)


Index("ix_pick_order_pool", Order.status, Order.batch_id, Order.chunk_id)


class PickBatch(Base, HasId, HasCreatedAt):
    __tablename__ = "pick_batch"

    name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    type: Mapped[str] = mapped_column(String(24), nullable=False, index=True)  # SINGLES/BULK/ORDER_BY_SIZE
    status: Mapped[str] = mapped_column(String(24), default="DRAFT", nullable=False, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_personalized: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_oversized: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    total_orders: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class BatchCellAssignment(Base, HasId, HasCreatedAt):
    """Which cells may pull from a batch, and in what order (lower priority first)."""
    __tablename__ = "pick_batch_cell"

    batch_id: Mapped[str] = mapped_column(String(36), ForeignKey("pick_batch.id"), nullable=False, index=True)
    cell_id: Mapped[str] = mapped_column(String(36), ForeignKey("pick_cell.id"), nullable=False, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("batch_id", "cell_id", name="uq_pick_batch_cell"),
    )


class BulkBatch(Base, HasId, HasCreatedAt):
    """One split of a group of identical orders, picked together onto one shelf."""
    __tablename__ = "pick_bulk_batch"

    batch_id: Mapped[str] = mapped_column(String(36), ForeignKey("pick_batch.id"), nullable=False, index=True)
    group_signature: Mapped[str] = mapped_column(String(1024), nullable=False, index=True)
    split_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_splits: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    order_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sku_layout: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    status: Mapped[str] = mapped_column(String(24), default="PENDING", nullable=False, index=True)  # PENDING/ASSIGNED/PICKED


class Chunk(Base, HasId, HasCreatedAt):
    """The unit of work a picker claims: a set of orders on one cart."""
    __tablename__ = "pick_chunk"

    batch_id: Mapped[str] = mapped_column(String(36), ForeignKey("pick_batch.id"), nullable=False, index=True)
    chunk_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(32), default=CHUNK_PICKING, nullable=False, index=True)
    picking_mode: Mapped[str] = mapped_column(String(24), nullable=False)
    is_personalized: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    cart_id: Mapped[str] = mapped_column(String(36), ForeignKey("pick_cart.id"), nullable=False, index=True)
    picker_name: Mapped[str] = mapped_column(String(128), nullable=False)
    orders_in_chunk: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    orders_skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    picking_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    picking_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    pick_duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String(256), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Engraving sub-state (personalized chunks only)
    engraver_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    engraving_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    engraving_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    engraving_duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    engraving_progress: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    items_engraved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("batch_id", "chunk_number", name="uq_pick_chunk_number"),
    )

Index("ix_pick_chunk_cart_status", Chunk.cart_id, Chunk.status)


class ChunkBulkBatchAssignment(Base, HasId, HasCreatedAt):
    __tablename__ = "pick_chunk_bulk_batch"

    chunk_id: Mapped[str] = mapped_column(String(36), ForeignKey("pick_chunk.id"), nullable=False, index=True)
    bulk_batch_id: Mapped[str] = mapped_column(String(36), ForeignKey("pick_bulk_batch.id"), nullable=False, index=True)
    shelf_number: Mapped[int] = mapped_column(Integer, nullable=False)


class PickCart(Base, HasId, HasCreatedAt):
    __tablename__ = "pick_cart"

    name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    color: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(24), default=CART_AVAILABLE, nullable=False, index=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class PickCell(Base, HasId, HasCreatedAt):
    __tablename__ = "pick_cell"

    name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class ProductSku(Base, HasId, HasCreatedAt):
    """SKU master slice used for pick-path ordering."""
    __tablename__ = "pick_product_sku"

    sku: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    bin_location: Mapped[str | None] = mapped_column(String(64), nullable=True)
